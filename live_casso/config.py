from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

import torch

logger = logging.getLogger(__name__)

ENV_PREFIX = "LIVE_CASSO_"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

BACKEND_CHOICES = ("transformer", "torchscript", "optimization", "identity")

# Same spirit as the Pi-casso Streamlit presets, retuned for per-frame work.
PRESETS: Dict[str, Dict[str, object]] = {
    "fast": {"max_side": 192, "opt_steps": 2, "opt_lr": 0.05},
    "balanced": {"max_side": 256, "opt_steps": 4, "opt_lr": 0.04},
    "high": {"max_side": 384, "opt_steps": 8, "opt_lr": 0.03},
}


def repo_root() -> Path:
    return Path(__file__).resolve().parent.parent


@dataclass
class LiveConfig:
    backend: str = "transformer"
    model_path: Optional[str] = None
    style_path: Optional[str] = None
    vgg_weights: Optional[str] = None

    source: str = "0"
    width: Optional[int] = None
    height: Optional[int] = None

    device: str = "cpu"
    max_side: int = 256
    channels_last: bool = True
    num_threads: int = 4
    interop_threads: int = 1
    input_scale: float = 1.0

    # optimization backend only
    max_conv: int = 5
    content_conv: int = 4
    style_convs: tuple = field(default=(1, 2, 3, 4, 5))
    opt_steps: int = 4
    opt_lr: float = 0.04
    style_weight: float = 100000.0
    content_weight: float = 1.0
    tv_weight: float = 0.0

    log_level: str = "INFO"

    @classmethod
    def from_preset(cls, name: str, **overrides: object) -> "LiveConfig":
        if name not in PRESETS:
            raise ValueError(f"Unknown preset {name!r} (choose from {', '.join(PRESETS)})")
        values = dict(PRESETS[name])
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)  # type: ignore[arg-type]

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, base: Optional["LiveConfig"] = None) -> "LiveConfig":
        """Apply ``LIVE_CASSO_<FIELD>`` variables on top of ``base`` (or defaults)."""
        env = os.environ if environ is None else environ
        cfg = base if base is not None else cls()
        updates: Dict[str, object] = {}
        for f in dataclasses.fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            updates[f.name] = _coerce(f.name, getattr(cfg, f.name), raw)
        return dataclasses.replace(cfg, **updates) if updates else cfg

    def with_overrides(self, **overrides: object) -> "LiveConfig":
        known = {f.name for f in dataclasses.fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise TypeError(f"Unknown config fields: {', '.join(sorted(unknown))}")
        updates = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(self, **updates) if updates else self

    def validate(self) -> None:
        if self.backend not in BACKEND_CHOICES:
            raise ValueError(f"Unknown backend {self.backend!r} (choose from {', '.join(BACKEND_CHOICES)})")
        if self.max_side < 4:
            raise ValueError("max_side must be >= 4")
        if self.input_scale <= 0:
            raise ValueError("input_scale must be > 0")
        if self.opt_steps < 1:
            raise ValueError("opt_steps must be >= 1")
        if not 1 <= self.content_conv <= self.max_conv:
            raise ValueError("content_conv must be within 1..max_conv")
        if any(not 1 <= c <= self.max_conv for c in self.style_convs):
            raise ValueError("style_convs must be within 1..max_conv")


def _coerce(name: str, current: object, raw: str) -> object:
    raw = raw.strip()
    try:
        if isinstance(current, bool):
            lowered = raw.lower()
            if lowered in {"1", "true", "yes", "on"}:
                return True
            if lowered in {"0", "false", "no", "off"}:
                return False
            raise ValueError(raw)
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
        if isinstance(current, tuple):
            return tuple(int(p) for p in raw.split(",") if p.strip())
        if name in {"width", "height"}:
            return int(raw)
    except ValueError as e:
        raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}") from e
    return raw


def configure_logging(level: str | int = "INFO") -> None:
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level!r}")
        level = resolved
    logging.basicConfig(level=level, format=LOG_FORMAT)


def configure_torch_threads(num_threads: int, interop_threads: int) -> None:
    """Set torch intra/inter-op threads.

    PyTorch refuses to change inter-op threads once parallel work has started,
    so a failure is logged and the current setting is kept.
    """
    try:
        torch.set_num_threads(int(num_threads))
    except RuntimeError as e:
        logger.warning("Could not set torch threads (%s)", e)
    try:
        torch.set_num_interop_threads(int(interop_threads))
    except RuntimeError as e:
        logger.warning("Could not set torch interop threads (%s)", e)
