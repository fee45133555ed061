from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Iterable, List, Set

import torch
import torch.nn as nn

from live_casso.config import repo_root

VGG_MEAN = torch.tensor([0.485, 0.456, 0.406], dtype=torch.float32).view(1, 3, 1, 1)
VGG_STD = torch.tensor([0.229, 0.224, 0.225], dtype=torch.float32).view(1, 3, 1, 1)

VGG_WEIGHTS_FILENAME = "vgg19_conv1_to_conv5.pth"

# torchvision's VGG19.features layout; "M" is a 2x2 max-pool.
_VGG19_CFG: List[int | str] = [64, 64, "M", 128, 128, "M", 256, 256, 256, 256, "M", 512, 512, 512, 512, "M", 512, 512, 512, 512, "M"]


def build_vgg19_features_until_conv(max_conv: int = 5) -> nn.Sequential:
    """VGG19.features truncated right after conv_{max_conv}.

    Layer indices line up with torchvision's VGG19.features, so a state_dict
    sliced from it loads with ``strict=True``.
    """
    if max_conv < 1:
        raise ValueError("max_conv must be >= 1")
    layers: List[nn.Module] = []
    in_channels = 3
    convs = 0
    for v in _VGG19_CFG:
        if v == "M":
            layers.append(nn.MaxPool2d(kernel_size=2, stride=2))
            continue
        layers.append(nn.Conv2d(in_channels, int(v), kernel_size=3, padding=1))
        convs += 1
        if convs >= max_conv:
            break
        layers.append(nn.ReLU(inplace=False))
        in_channels = int(v)
    return nn.Sequential(*layers)


def extract_conv_features(features: nn.Sequential, x: torch.Tensor, conv_ids: Iterable[int]) -> Dict[int, torch.Tensor]:
    """Run the slice and collect outputs at the requested 1-indexed convs."""
    want: Set[int] = {int(i) for i in conv_ids}
    last = max(want) if want else 0
    out: Dict[int, torch.Tensor] = {}
    convs = 0
    h = x
    for layer in features:
        h = layer(h)
        if isinstance(layer, nn.Conv2d):
            convs += 1
            if convs in want:
                out[convs] = h
            if convs >= last:
                break
    return out


def load_vgg19_slice(path: str | Path, max_conv: int, device: torch.device, channels_last: bool) -> nn.Sequential:
    feats = build_vgg19_features_until_conv(max_conv=max_conv).to(device).eval()
    sd = torch.load(path, map_location=device)
    feats.load_state_dict(sd, strict=True)
    for p in feats.parameters():
        p.requires_grad_(False)
    if channels_last and device.type == "cpu":
        feats = feats.to(memory_format=torch.channels_last)
    return feats


def find_vgg_weights() -> Path:
    env = os.environ.get("LIVE_CASSO_VGG_WEIGHTS")
    if env:
        p = Path(env).expanduser()
        if p.exists():
            return p
    for p in (repo_root() / VGG_WEIGHTS_FILENAME, Path.cwd() / VGG_WEIGHTS_FILENAME):
        if p.exists():
            return p
    raise FileNotFoundError(
        f"Missing VGG weights file. Place `{VGG_WEIGHTS_FILENAME}` in the repo root "
        "or set env var `LIVE_CASSO_VGG_WEIGHTS`."
    )


def vgg_normalize(x: torch.Tensor) -> torch.Tensor:
    return (x - VGG_MEAN.to(device=x.device)) / VGG_STD.to(device=x.device)


def gram_matrix(feat: torch.Tensor) -> torch.Tensor:
    _, c, h, w = feat.shape
    f = feat.reshape(c, h * w)
    return (f @ f.t()) / float(c * h * w)


def tv_loss(img: torch.Tensor) -> torch.Tensor:
    dx = img[:, :, :, 1:] - img[:, :, :, :-1]
    dy = img[:, :, 1:, :] - img[:, :, :-1, :]
    return dx.abs().mean() + dy.abs().mean()
