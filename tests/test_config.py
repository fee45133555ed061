from __future__ import annotations

import logging

import pytest

from live_casso.config import PRESETS, LiveConfig, configure_logging


def test_preset_values_and_overrides() -> None:
    cfg = LiveConfig.from_preset("fast", backend="identity", max_side=None)
    assert cfg.max_side == PRESETS["fast"]["max_side"]
    assert cfg.opt_steps == PRESETS["fast"]["opt_steps"]
    assert cfg.backend == "identity"


def test_unknown_preset() -> None:
    with pytest.raises(ValueError):
        LiveConfig.from_preset("ultra")


def test_from_env_coerces_types() -> None:
    env = {
        "LIVE_CASSO_BACKEND": "torchscript",
        "LIVE_CASSO_MAX_SIDE": "320",
        "LIVE_CASSO_CHANNELS_LAST": "no",
        "LIVE_CASSO_INPUT_SCALE": "255",
        "LIVE_CASSO_WIDTH": "1280",
        "LIVE_CASSO_STYLE_CONVS": "1,3",
        "LIVE_CASSO_MODEL_PATH": "",
        "UNRELATED": "x",
    }
    cfg = LiveConfig.from_env(env)
    assert cfg.backend == "torchscript"
    assert cfg.max_side == 320
    assert cfg.channels_last is False
    assert cfg.input_scale == 255.0
    assert cfg.width == 1280
    assert cfg.style_convs == (1, 3)
    assert cfg.model_path is None


def test_from_env_bad_value() -> None:
    with pytest.raises(ValueError, match="LIVE_CASSO_MAX_SIDE"):
        LiveConfig.from_env({"LIVE_CASSO_MAX_SIDE": "big"})


def test_with_overrides_ignores_none_and_rejects_unknown() -> None:
    cfg = LiveConfig()
    assert cfg.with_overrides(backend=None) is cfg
    assert cfg.with_overrides(source="clip.mp4").source == "clip.mp4"
    with pytest.raises(TypeError):
        cfg.with_overrides(colour="red")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"backend": "nope"},
        {"max_side": 2},
        {"input_scale": 0},
        {"opt_steps": 0},
        {"content_conv": 6},
        {"style_convs": (0, 1)},
    ],
)
def test_validate_rejects(kwargs) -> None:
    with pytest.raises(ValueError):
        LiveConfig(**kwargs).validate()


def test_configure_logging_rejects_unknown_level() -> None:
    with pytest.raises(ValueError):
        configure_logging("chatty")
    configure_logging("debug")
