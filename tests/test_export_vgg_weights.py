from __future__ import annotations

import pytest
import torch

from live_casso.export_vgg_weights import export_vgg19_slice, slice_end_index
from live_casso.vgg19_features import build_vgg19_features_until_conv, extract_conv_features, load_vgg19_slice


def test_slice_end_index_matches_torchvision_layout() -> None:
    full = build_vgg19_features_until_conv(max_conv=16)
    # conv_5 sits after two pools: conv,relu,conv,relu,pool,conv,relu,conv,relu,pool,conv
    assert slice_end_index(full, 5) == 11
    with pytest.raises(ValueError):
        slice_end_index(full, 17)


def test_exported_slice_loads_and_matches(tmp_path) -> None:
    torch.manual_seed(0)
    full = build_vgg19_features_until_conv(max_conv=16).eval()
    path = export_vgg19_slice(full, tmp_path / "w" / "vgg.pth", max_conv=3)
    vgg = load_vgg19_slice(path, max_conv=3, device=torch.device("cpu"), channels_last=False)
    assert not any(p.requires_grad for p in vgg.parameters())

    x = torch.rand(1, 3, 16, 16)
    with torch.no_grad():
        ours = extract_conv_features(vgg, x, [3])[3]
        ref = extract_conv_features(full, x, [3])[3]
    torch.testing.assert_close(ours, ref)


def test_export_rejects_bad_max_conv(tmp_path) -> None:
    with pytest.raises(ValueError):
        export_vgg19_slice(build_vgg19_features_until_conv(2), tmp_path / "x.pth", max_conv=0)
