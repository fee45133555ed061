from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple

import numpy as np
import torch
from PIL import Image


def validate_frame(frame: np.ndarray) -> np.ndarray:
    """Check that ``frame`` is an RGB ``H x W x 3`` uint8 array."""
    if not isinstance(frame, np.ndarray):
        raise ValueError(f"Expected a numpy array, got {type(frame).__name__}")
    if frame.ndim != 3 or frame.shape[2] != 3:
        raise ValueError(f"Expected an HxWx3 frame, got shape {tuple(frame.shape)}")
    if frame.dtype != np.uint8:
        raise ValueError(f"Expected uint8 pixels, got {frame.dtype}")
    if frame.shape[0] == 0 or frame.shape[1] == 0:
        raise ValueError("Empty frame")
    return frame


def fit_size(height: int, width: int, max_side: Optional[int]) -> Tuple[int, int]:
    """Target (height, width): longer side scaled to ``max_side``, both multiples of 4."""
    if not max_side or max_side <= 0:
        return height, width
    scale = float(max_side) / float(max(height, width))
    h = max(4, int(round(height * scale)) // 4 * 4)
    w = max(4, int(round(width * scale)) // 4 * 4)
    return h, w


def resize_frame(frame: np.ndarray, max_side: Optional[int]) -> np.ndarray:
    h, w = fit_size(frame.shape[0], frame.shape[1], max_side)
    if (h, w) == frame.shape[:2]:
        return frame
    img = Image.fromarray(frame).resize((w, h), resample=Image.BICUBIC)
    return np.asarray(img, dtype=np.uint8)


def frame_to_tensor(
    frame: np.ndarray,
    device: torch.device,
    scale: float = 1.0,
    channels_last: bool = False,
) -> torch.Tensor:
    arr = frame.astype(np.float32) * (float(scale) / 255.0)
    t = torch.from_numpy(arr).permute(2, 0, 1).contiguous().unsqueeze(0)
    t = t.to(device=device, dtype=torch.float32)
    if channels_last and device.type == "cpu":
        t = t.contiguous(memory_format=torch.channels_last)
    return t


def tensor_to_frame(t: torch.Tensor, scale: float = 1.0) -> np.ndarray:
    t = t.detach().cpu().float()
    if t.dim() == 4:
        t = t[0]
    if t.dim() != 3 or t.shape[0] != 3:
        raise ValueError(f"Expected a 3xHxW (or 1x3xHxW) tensor, got {tuple(t.shape)}")
    t = (t / float(scale)).clamp(0, 1)
    arr = (t.permute(1, 2, 0).numpy() * 255.0 + 0.5).astype(np.uint8)
    return np.ascontiguousarray(arr)


def frame_to_pil(frame: np.ndarray) -> Image.Image:
    return Image.fromarray(validate_frame(frame))


def load_image_rgb(path: str | Path) -> np.ndarray:
    img = Image.open(path).convert("RGB")
    return np.asarray(img, dtype=np.uint8).copy()


def save_frame(frame: np.ndarray, path: str | Path) -> None:
    out_path = Path(path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    frame_to_pil(frame).save(out_path)


def rgb_to_bgr(frame: np.ndarray) -> np.ndarray:
    return np.ascontiguousarray(frame[:, :, ::-1])


# Channel reversal is its own inverse.
bgr_to_rgb = rgb_to_bgr
