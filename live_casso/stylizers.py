"""Inference backends.

Every backend exposes the same two-step interface so the pipeline can treat the
model as an opaque, swappable resource:

* ``prepare(frame)`` builds a request from an RGB uint8 frame (validation,
  resize, tensor conversion). It runs on the frame-delivery thread.
* ``stylize(request)`` runs the model and returns a fresh RGB uint8 frame. It
  runs on the inference worker.
"""

from __future__ import annotations

import logging
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from live_casso.imaging import frame_to_tensor, load_image_rgb, resize_frame, tensor_to_frame, validate_frame
from live_casso.vgg19_features import extract_conv_features, gram_matrix, tv_loss, vgg_normalize

logger = logging.getLogger(__name__)


class StylizeError(RuntimeError):
    """Inference failed for one frame."""


class Stylizer(ABC):
    name = "base"

    def __init__(self, device: torch.device | str = "cpu", max_side: Optional[int] = 256, channels_last: bool = False) -> None:
        self.device = torch.device(device)
        self.max_side = max_side
        self.channels_last = channels_last

    def prepare(self, frame: np.ndarray) -> torch.Tensor:
        frame = resize_frame(validate_frame(frame), self.max_side)
        return frame_to_tensor(frame, self.device, scale=self.input_scale, channels_last=self.channels_last)

    @property
    def input_scale(self) -> float:
        return 1.0

    @abstractmethod
    def stylize(self, request: torch.Tensor) -> np.ndarray:
        ...

    def __call__(self, frame: np.ndarray) -> np.ndarray:
        return self.stylize(self.prepare(frame))

    def reset(self) -> None:
        """Forget per-stream state before a new stream starts."""

    def describe(self) -> str:
        return f"{self.name} (device={self.device}, max_side={self.max_side})"


class IdentityStylizer(Stylizer):
    """Passthrough; exercises the whole frame path without a model."""

    name = "identity"

    def stylize(self, request: torch.Tensor) -> np.ndarray:
        return tensor_to_frame(request)


# --- feed-forward network (Johnson et al., "Perceptual Losses") -------------


class ConvLayer(nn.Module):
    def __init__(self, in_channels: int, out_channels: int, kernel_size: int, stride: int) -> None:
        super().__init__()
        self.reflection_pad = nn.ReflectionPad2d(kernel_size // 2)
        self.conv2d = nn.Conv2d(in_channels, out_channels, kernel_size, stride)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.conv2d(self.reflection_pad(x))


class ResidualBlock(nn.Module):
    def __init__(self, channels: int) -> None:
        super().__init__()
        self.conv1 = ConvLayer(channels, channels, kernel_size=3, stride=1)
        self.in1 = nn.InstanceNorm2d(channels, affine=True)
        self.conv2 = ConvLayer(channels, channels, kernel_size=3, stride=1)
        self.in2 = nn.InstanceNorm2d(channels, affine=True)
        self.relu = nn.ReLU()

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        out = self.relu(self.in1(self.conv1(x)))
        out = self.in2(self.conv2(out))
        return out + x


class UpsampleConvLayer(nn.Module):
    """Nearest upsample then conv; avoids the checkerboard of transposed convs."""

    def __init__(self, in_channels: int, out_channels: int, kernel_size: int, stride: int, upsample: Optional[int] = None) -> None:
        super().__init__()
        self.upsample = upsample
        self.reflection_pad = nn.ReflectionPad2d(kernel_size // 2)
        self.conv2d = nn.Conv2d(in_channels, out_channels, kernel_size, stride)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        if self.upsample:
            x = F.interpolate(x, mode="nearest", scale_factor=self.upsample)
        return self.conv2d(self.reflection_pad(x))


class TransformerNet(nn.Module):
    def __init__(self) -> None:
        super().__init__()
        self.conv1 = ConvLayer(3, 32, kernel_size=9, stride=1)
        self.in1 = nn.InstanceNorm2d(32, affine=True)
        self.conv2 = ConvLayer(32, 64, kernel_size=3, stride=2)
        self.in2 = nn.InstanceNorm2d(64, affine=True)
        self.conv3 = ConvLayer(64, 128, kernel_size=3, stride=2)
        self.in3 = nn.InstanceNorm2d(128, affine=True)
        self.res1 = ResidualBlock(128)
        self.res2 = ResidualBlock(128)
        self.res3 = ResidualBlock(128)
        self.res4 = ResidualBlock(128)
        self.res5 = ResidualBlock(128)
        self.deconv1 = UpsampleConvLayer(128, 64, kernel_size=3, stride=1, upsample=2)
        self.in4 = nn.InstanceNorm2d(64, affine=True)
        self.deconv2 = UpsampleConvLayer(64, 32, kernel_size=3, stride=1, upsample=2)
        self.in5 = nn.InstanceNorm2d(32, affine=True)
        self.deconv3 = ConvLayer(32, 3, kernel_size=9, stride=1)
        self.relu = nn.ReLU()

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        y = self.relu(self.in1(self.conv1(x)))
        y = self.relu(self.in2(self.conv2(y)))
        y = self.relu(self.in3(self.conv3(y)))
        y = self.res5(self.res4(self.res3(self.res2(self.res1(y)))))
        y = self.relu(self.in4(self.deconv1(y)))
        y = self.relu(self.in5(self.deconv2(y)))
        return self.deconv3(y)


# InstanceNorm checkpoints saved by torch < 0.4 carry running stats that
# current InstanceNorm2d(affine=True) does not expect.
_LEGACY_NORM_KEY = re.compile(r"in\d+\.running_(mean|var)$")


def clean_transformer_state_dict(sd: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
    return {k: v for k, v in sd.items() if not _LEGACY_NORM_KEY.search(k)}


class TransformerNetStylizer(Stylizer):
    name = "transformer"

    def __init__(self, net: TransformerNet, **kwargs) -> None:
        super().__init__(**kwargs)
        self.net = net.to(self.device).eval()
        for p in self.net.parameters():
            p.requires_grad_(False)

    @classmethod
    def from_checkpoint(cls, path: str | Path, **kwargs) -> "TransformerNetStylizer":
        device = torch.device(kwargs.get("device", "cpu"))
        sd = torch.load(path, map_location=device)
        if not isinstance(sd, dict):
            raise ValueError(f"{path} does not contain a state_dict")
        net = TransformerNet()
        net.load_state_dict(clean_transformer_state_dict(sd), strict=True)
        return cls(net, **kwargs)

    @property
    def input_scale(self) -> float:
        return 255.0

    def stylize(self, request: torch.Tensor) -> np.ndarray:
        with torch.no_grad():
            out = self.net(request)
        return tensor_to_frame(out, scale=255.0)


class TorchScriptStylizer(Stylizer):
    """Any scripted/traced model mapping 1x3xHxW -> 1x3xH'xW'."""

    name = "torchscript"

    def __init__(self, module: torch.nn.Module, input_scale: float = 1.0, **kwargs) -> None:
        super().__init__(**kwargs)
        self.module = module
        self._input_scale = float(input_scale)

    @classmethod
    def from_file(cls, path: str | Path, input_scale: float = 1.0, **kwargs) -> "TorchScriptStylizer":
        device = torch.device(kwargs.get("device", "cpu"))
        module = torch.jit.load(str(path), map_location=device).eval()
        return cls(module, input_scale=input_scale, **kwargs)

    @property
    def input_scale(self) -> float:
        return self._input_scale

    def stylize(self, request: torch.Tensor) -> np.ndarray:
        with torch.no_grad():
            out = self.module(request)
        if not isinstance(out, torch.Tensor) or out.dim() != 4 or out.shape[1] != 3:
            shape = tuple(out.shape) if isinstance(out, torch.Tensor) else type(out).__name__
            raise StylizeError(f"Model returned {shape}, expected a 1x3xHxW tensor")
        return tensor_to_frame(out, scale=self._input_scale)


class OptimizationStylizer(Stylizer):
    """Per-frame optimization NST over a truncated VGG19.

    Style Gram targets are computed once. Each frame gets a handful of Adam
    steps, starting from the previous output when the frame size is unchanged.
    Calls are serialized by a lock since the warm start is per-stream state;
    call ``reset`` when a new stream begins.
    """

    name = "optimization"

    def __init__(
        self,
        vgg: nn.Sequential,
        style_frame: np.ndarray,
        content_conv: int = 4,
        style_convs: Sequence[int] = (1, 2, 3, 4, 5),
        steps: int = 4,
        lr: float = 0.04,
        style_weight: float = 100000.0,
        content_weight: float = 1.0,
        tv_weight: float = 0.0,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        if steps < 1:
            raise ValueError("steps must be >= 1")
        self.vgg = vgg
        self.content_conv = int(content_conv)
        self.style_convs: List[int] = [int(c) for c in style_convs]
        self.steps = int(steps)
        self.lr = float(lr)
        self.style_weight = float(style_weight)
        self.content_weight = float(content_weight)
        self.tv_weight = float(tv_weight)
        self._conv_ids = sorted(set([self.content_conv] + self.style_convs))
        self._prev: Optional[torch.Tensor] = None
        self._lock = threading.Lock()
        self.last_losses: Dict[str, float] = {}

        style = self.prepare(style_frame)
        with torch.no_grad():
            feats = extract_conv_features(self.vgg, vgg_normalize(style), self.style_convs)
        self.style_targets: Dict[int, torch.Tensor] = {cid: gram_matrix(feats[cid]).detach() for cid in self.style_convs}

    @classmethod
    def from_files(cls, vgg: nn.Sequential, style_path: str | Path, **kwargs) -> "OptimizationStylizer":
        return cls(vgg, load_image_rgb(style_path), **kwargs)

    def reset(self) -> None:
        with self._lock:
            self._prev = None

    def stylize(self, request: torch.Tensor) -> np.ndarray:
        with self._lock:
            return self._optimize(request)

    def _optimize(self, request: torch.Tensor) -> np.ndarray:
        with torch.no_grad():
            content_target = extract_conv_features(self.vgg, vgg_normalize(request), [self.content_conv])[self.content_conv].detach()

        if self._prev is not None and self._prev.shape == request.shape:
            init = self._prev
        else:
            init = request
        x = nn.Parameter(init.clone().detach())
        opt = torch.optim.Adam([x], lr=self.lr)

        for _ in range(self.steps):
            opt.zero_grad(set_to_none=True)
            feats = extract_conv_features(self.vgg, vgg_normalize(x), self._conv_ids)
            c_loss = F.mse_loss(feats[self.content_conv], content_target)
            s_loss = torch.zeros((), device=x.device)
            for cid in self.style_convs:
                s_loss = s_loss + F.mse_loss(gram_matrix(feats[cid]), self.style_targets[cid])
            tv = tv_loss(x) if self.tv_weight > 0 else torch.zeros((), device=x.device)
            loss = self.content_weight * c_loss + self.style_weight * s_loss + self.tv_weight * tv
            if not torch.isfinite(loss):
                self._prev = None
                raise StylizeError("Optimization diverged (non-finite loss)")
            loss.backward()
            opt.step()
            with torch.no_grad():
                x.clamp_(0.0, 1.0)

        self.last_losses = {
            "content": float(c_loss.detach().cpu()),
            "style": float(s_loss.detach().cpu()),
            "tv": float(tv.detach().cpu()),
            "total": float(loss.detach().cpu()),
        }
        self._prev = x.detach()
        return tensor_to_frame(self._prev)

    def describe(self) -> str:
        return f"{super().describe()} steps={self.steps} lr={self.lr}"
