from __future__ import annotations

import argparse
from pathlib import Path

import torch
import torch.nn as nn

from live_casso.vgg19_features import VGG_WEIGHTS_FILENAME


def slice_end_index(features: nn.Sequential, max_conv: int) -> int:
    convs = 0
    for idx, layer in enumerate(features):
        if isinstance(layer, nn.Conv2d):
            convs += 1
            if convs == max_conv:
                return idx + 1
    raise ValueError(f"Could not find conv_{max_conv} in the feature stack")


def export_vgg19_slice(features: nn.Sequential, out: str | Path, max_conv: int = 5) -> Path:
    """Save ``features[:conv_{max_conv}]`` as a state_dict loadable by ``load_vgg19_slice``."""
    if max_conv < 1:
        raise ValueError("max_conv must be >= 1")
    end = slice_end_index(features, max_conv)
    out_path = Path(out)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    torch.save(features[:end].state_dict(), out_path)
    return out_path


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=(
            "Export the truncated VGG19.features weights used by the `optimization` backend. "
            "Needs torchvision; run it once on a dev machine and copy the file over."
        )
    )
    p.add_argument("--out", type=str, default=VGG_WEIGHTS_FILENAME, help="Output .pth path.")
    p.add_argument("--max-conv", type=int, default=5, help="Export up to conv_{max_conv} (recommended: 5).")
    return p


def main() -> None:
    args = build_parser().parse_args()
    try:
        from torchvision.models import VGG19_Weights, vgg19  # type: ignore
    except ImportError as e:
        raise SystemExit("torchvision is required for the export (pip install 'live-casso[export]').") from e

    features = vgg19(weights=VGG19_Weights.DEFAULT).eval().features
    try:
        out_path = export_vgg19_slice(features, args.out, max_conv=int(args.max_conv))
    except ValueError as e:
        raise SystemExit(str(e)) from e
    size_mb = out_path.stat().st_size / (1024 * 1024)
    print(f"Saved: {out_path} ({size_mb:.1f} MB)  convs={args.max_conv}")


if __name__ == "__main__":
    main()
