#!/usr/bin/env python3
from __future__ import annotations

import io
import sys
import time
from pathlib import Path
from typing import List, Optional

import numpy as np
import streamlit as st
from PIL import Image

REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from live_casso.camera import open_source
from live_casso.config import BACKEND_CHOICES, PRESETS, LiveConfig, configure_torch_threads
from live_casso.display import Display, UiDispatcher
from live_casso.imaging import frame_to_pil
from live_casso.loader import load_stylizer
from live_casso.pipeline import StylePipeline
from live_casso.stylizers import Stylizer

_TORCH_THREADS_STATE_KEY = "_live_casso_torch_threads"
_STYLIZER_STATE_KEY = "_live_casso_stylizer"
_UPLOAD_DIR = REPO_ROOT / ".streamlit_tmp"


class StreamlitDisplay(Display):
    """Paints into an ``st.empty()`` slot; only ever called from the script thread."""

    def __init__(self, placeholder) -> None:
        self.placeholder = placeholder
        self.last: Optional[np.ndarray] = None

    def show(self, frame: np.ndarray) -> None:
        self.last = frame
        self.placeholder.image(frame, channels="RGB", use_container_width=True)


def _configure_torch_threads(num_threads: int, interop_threads: int) -> None:
    """Configure torch threads once per Streamlit session.

    Streamlit re-runs the script, and PyTorch refuses inter-op changes once
    work has started, so later changes need a restart.
    """
    desired = (int(num_threads), int(interop_threads))
    previous = st.session_state.get(_TORCH_THREADS_STATE_KEY)
    if previous is None:
        configure_torch_threads(*desired)
        st.session_state[_TORCH_THREADS_STATE_KEY] = desired
    elif previous != desired:
        st.info("Torch thread settings can’t be changed after the app has started. Restart Streamlit to apply new values.")


def _list_style_presets() -> List[Path]:
    styles_dir = REPO_ROOT / "styles"
    if not styles_dir.exists():
        return []
    return sorted(p for p in styles_dir.iterdir() if p.is_file() and p.suffix.lower() in {".jpg", ".jpeg", ".png", ".webp"})


def _list_models() -> List[Path]:
    models_dir = REPO_ROOT / "models"
    if not models_dir.exists():
        return []
    return sorted(p for p in models_dir.iterdir() if p.is_file() and p.suffix.lower() in {".pth", ".pt", ".model"})


def _save_upload(upload) -> str:
    _UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    path = _UPLOAD_DIR / upload.name
    path.write_bytes(upload.getvalue())
    return str(path)


def _session_stylizer(cfg: LiveConfig) -> Stylizer:
    """One stylizer per browser session, rebuilt when the config changes.

    Backends such as the optimization one carry per-stream state, so they are
    never shared across sessions.
    """
    cached = st.session_state.get(_STYLIZER_STATE_KEY)
    if cached is not None and cached[0] == cfg:
        return cached[1]
    result = load_stylizer(cfg)
    if not result.ok:
        raise RuntimeError(result.error)
    st.session_state[_STYLIZER_STATE_KEY] = (cfg, result.stylizer)
    return result.stylizer


def _run_live(stylizer: Stylizer, cfg: LiveConfig, seconds: float, out_placeholder, metrics_placeholder) -> Optional[np.ndarray]:
    source = open_source(cfg.source, width=cfg.width, height=cfg.height)
    if not source.setup():
        st.error(f"Could not open source: {cfg.source}")
        return None

    stylizer.reset()
    display = StreamlitDisplay(out_placeholder)
    # The script thread is the UI thread for this run.
    pipeline = StylePipeline(stylizer, display, UiDispatcher())
    prog = st.progress(0.0, text="Streaming…")
    t0 = time.time()
    try:
        source.start(pipeline.on_frame)
        while source.running:
            elapsed = time.time() - t0
            if elapsed >= seconds:
                break
            if pipeline.dispatcher.run_pending():
                metrics_placeholder.json(pipeline.stats_dict())
            prog.progress(min(elapsed / seconds, 1.0), text=f"Streaming… {elapsed:.0f}/{seconds:.0f}s")
            time.sleep(0.01)
    finally:
        source.stop()
        pipeline.wait_idle()
        pipeline.dispatcher.run_pending()
        pipeline.close()
        source.close()
    prog.progress(1.0, text="Done")
    metrics_placeholder.json(pipeline.stats_dict())
    return display.last


def main() -> None:
    st.set_page_config(page_title="live-casso (Camera NST)", layout="wide")
    st.title("live-casso — real-time style transfer")
    st.caption("Camera frames go through a one-frame-at-a-time gate into a pluggable stylizer; busy frames are dropped.")

    styles = _list_style_presets()
    models = _list_models()

    with st.sidebar:
        st.header("Runtime")
        device_str = st.selectbox("Device", options=["cpu", "cuda"], index=0)
        preset = st.selectbox("Quality preset", options=list(PRESETS), index=1)
        backend = st.selectbox("Backend", options=list(BACKEND_CHOICES), index=0)
        max_side = st.slider("Frame size (longer side)", min_value=64, max_value=640, value=int(PRESETS[preset]["max_side"]), step=32)
        channels_last = st.checkbox("channels_last", value=True)
        num_threads = st.number_input("torch threads", min_value=1, max_value=8, value=4, step=1)
        interop_threads = st.number_input("interop threads", min_value=1, max_value=4, value=1, step=1)

        st.divider()
        st.header("Model")
        model_path: Optional[str] = None
        style_path: Optional[str] = None
        opt_steps = int(PRESETS[preset]["opt_steps"])
        input_scale = 1.0
        if backend in ("transformer", "torchscript"):
            if models:
                labels = [p.name for p in models]
                model_path = str(models[labels.index(st.selectbox("Model file", options=labels))])
            upload = st.file_uploader("…or upload a model", type=["pth", "pt", "model"])
            if upload is not None:
                model_path = _save_upload(upload)
            if backend == "torchscript":
                input_scale = float(st.selectbox("Input range", options=[1.0, 255.0], index=0))
        elif backend == "optimization":
            opt_steps = st.slider("Adam steps per frame", min_value=1, max_value=30, value=opt_steps)
            if styles:
                labels = [p.name for p in styles]
                style_path = str(styles[labels.index(st.selectbox("Style", options=labels))])
                st.image(style_path, use_container_width=True)
            else:
                st.warning("Add some style images to `styles/` (jpg/png).")
            st.caption("Create weights: `python3 -m live_casso.export_vgg_weights --out vgg19_conv1_to_conv5.pth`")

        st.divider()
        st.header("Source")
        source = st.text_input("Camera index, video file or URL", value="0")
        seconds = st.slider("Run for (seconds)", min_value=5, max_value=300, value=30, step=5)
        run_button = st.button("Run live", type="primary")

    _configure_torch_threads(int(num_threads), int(interop_threads))

    cfg = LiveConfig.from_preset(
        preset,
        backend=backend,
        model_path=model_path,
        style_path=style_path,
        source=source,
        device=device_str,
        max_side=int(max_side),
        channels_last=channels_last,
        input_scale=input_scale,
        opt_steps=int(opt_steps),
    )

    col1, col2 = st.columns([2, 1])
    with col1:
        st.subheader("Output")
        out_placeholder = st.empty()
        dl_placeholder = st.empty()
    with col2:
        st.subheader("Snapshot")
        cam = st.camera_input("Take a photo")
        metrics_placeholder = st.empty()

    try:
        with st.spinner("Loading model…"):
            stylizer = _session_stylizer(cfg)
    except RuntimeError as e:
        st.error(str(e))
        return

    last: Optional[np.ndarray] = None
    if run_button:
        last = _run_live(stylizer, cfg, float(seconds), out_placeholder, metrics_placeholder)
    elif cam is not None:
        frame = np.asarray(Image.open(io.BytesIO(cam.getvalue())).convert("RGB"), dtype=np.uint8)
        t0 = time.time()
        stylizer.reset()
        last = stylizer(frame)
        out_placeholder.image(last, caption="Stylized snapshot", use_container_width=True)
        metrics_placeholder.json({"seconds": round(time.time() - t0, 3), "backend": stylizer.describe()})

    if last is not None:
        buf = io.BytesIO()
        frame_to_pil(last).save(buf, format="JPEG")
        dl_placeholder.download_button("Download last frame", data=buf.getvalue(), file_name="stylized.jpg", mime="image/jpeg")


if __name__ == "__main__":
    main()
