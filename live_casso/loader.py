from __future__ import annotations

import logging
import pickle
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional

import torch

from live_casso.config import LiveConfig
from live_casso.stylizers import (
    IdentityStylizer,
    OptimizationStylizer,
    Stylizer,
    TorchScriptStylizer,
    TransformerNetStylizer,
)
from live_casso.vgg19_features import find_vgg_weights, load_vgg19_slice

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadResult:
    """Outcome of loading a stylizer. The caller decides whether a failure is fatal."""

    stylizer: Optional[Stylizer] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.stylizer is not None and self.error is None


def _common_kwargs(cfg: LiveConfig) -> Dict[str, object]:
    return {"device": cfg.device, "max_side": cfg.max_side, "channels_last": cfg.channels_last}


def _require_file(value: Optional[str], what: str) -> Path:
    if not value:
        raise FileNotFoundError(f"No {what} configured")
    p = Path(value).expanduser()
    if not p.is_file():
        raise FileNotFoundError(f"Missing {what}: {p}")
    return p


def _load_transformer(cfg: LiveConfig) -> Stylizer:
    path = _require_file(cfg.model_path, "model checkpoint (.pth)")
    return TransformerNetStylizer.from_checkpoint(path, **_common_kwargs(cfg))


def _load_torchscript(cfg: LiveConfig) -> Stylizer:
    path = _require_file(cfg.model_path, "TorchScript model")
    return TorchScriptStylizer.from_file(path, input_scale=cfg.input_scale, **_common_kwargs(cfg))


def _load_optimization(cfg: LiveConfig) -> Stylizer:
    style = _require_file(cfg.style_path, "style image")
    weights = _require_file(cfg.vgg_weights, "VGG weights") if cfg.vgg_weights else find_vgg_weights()
    vgg = load_vgg19_slice(weights, max_conv=cfg.max_conv, device=torch.device(cfg.device), channels_last=cfg.channels_last)
    return OptimizationStylizer.from_files(
        vgg,
        style,
        content_conv=cfg.content_conv,
        style_convs=cfg.style_convs,
        steps=cfg.opt_steps,
        lr=cfg.opt_lr,
        style_weight=cfg.style_weight,
        content_weight=cfg.content_weight,
        tv_weight=cfg.tv_weight,
        **_common_kwargs(cfg),
    )


def _load_identity(cfg: LiveConfig) -> Stylizer:
    return IdentityStylizer(**_common_kwargs(cfg))


BACKENDS: Dict[str, Callable[[LiveConfig], Stylizer]] = {
    "transformer": _load_transformer,
    "torchscript": _load_torchscript,
    "optimization": _load_optimization,
    "identity": _load_identity,
}


def load_stylizer(cfg: LiveConfig) -> LoadResult:
    factory = BACKENDS.get(cfg.backend)
    if factory is None:
        error = f"Unknown backend {cfg.backend!r} (choose from {', '.join(BACKENDS)})"
        logger.error(error)
        return LoadResult(error=error)
    try:
        cfg.validate()
        stylizer = factory(cfg)
    except (OSError, RuntimeError, ValueError, KeyError, pickle.UnpicklingError) as e:
        # OSError covers FileNotFoundError; torch reports bad checkpoints as RuntimeError.
        error = f"Could not load {cfg.backend} stylizer: {e}"
        logger.error(error)
        return LoadResult(error=error)
    logger.info("Loaded stylizer %s", stylizer.describe())
    return LoadResult(stylizer=stylizer)
