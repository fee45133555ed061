from __future__ import annotations

import argparse
import logging
import time
from typing import List, Optional

from live_casso.camera import open_source
from live_casso.config import BACKEND_CHOICES, PRESETS, LiveConfig, configure_logging, configure_torch_threads
from live_casso.display import CV2WindowDisplay, Display, LatestFrameDisplay, UiDispatcher
from live_casso.imaging import load_image_rgb, save_frame
from live_casso.loader import load_stylizer
from live_casso.pipeline import StylePipeline

logger = logging.getLogger(__name__)

EXIT_MODEL_LOAD = 2
EXIT_SOURCE = 3


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=(
            "live-casso: real-time style transfer on a camera feed.\n"
            "Unset options fall back to LIVE_CASSO_* env vars, then the preset."
        )
    )
    p.add_argument("--backend", choices=BACKEND_CHOICES, default=None, help="Inference backend.")
    p.add_argument("--model", dest="model_path", default=None, help="TransformerNet .pth or TorchScript file.")
    p.add_argument("--style", dest="style_path", default=None, help="Style image (optimization backend).")
    p.add_argument("--vgg-weights", default=None, help="Truncated VGG19 weights (optimization backend).")
    p.add_argument("--preset", choices=sorted(PRESETS), default="balanced", help="Quality preset.")
    p.add_argument("--source", default=None, help="Camera index, video file/URL, or still image.")
    p.add_argument("--width", type=int, default=None, help="Requested capture width.")
    p.add_argument("--height", type=int, default=None, help="Requested capture height.")
    p.add_argument("--max-side", type=int, default=None, help="Longer side of the stylized frame.")
    p.add_argument("--device", default=None, help="torch device (default cpu).")
    p.add_argument("--input-scale", type=float, default=None, help="TorchScript input range (1 or 255).")
    p.add_argument("--steps", dest="opt_steps", type=int, default=None, help="Adam steps per frame (optimization).")
    p.add_argument("--max-frames", type=int, default=0, help="Stop after N stylized frames (0 = no limit).")
    p.add_argument("--headless", action="store_true", help="No window; report stats only.")
    p.add_argument("--image", default=None, help="Stylize this image once instead of running live.")
    p.add_argument("--out", default=None, help="Output path for --image.")
    p.add_argument("--log-level", default=None, help="Logging level (default INFO).")
    return p


def resolve_config(args: argparse.Namespace) -> LiveConfig:
    base = LiveConfig.from_env(base=LiveConfig.from_preset(args.preset))
    return base.with_overrides(
        backend=args.backend,
        model_path=args.model_path,
        style_path=args.style_path,
        vgg_weights=args.vgg_weights,
        source=args.source,
        width=args.width,
        height=args.height,
        max_side=args.max_side,
        device=args.device,
        input_scale=args.input_scale,
        opt_steps=args.opt_steps,
        log_level=args.log_level,
    )


def run_still(stylizer, image: str, out: str) -> None:
    t0 = time.time()
    result = stylizer(load_image_rgb(image))
    save_frame(result, out)
    print(f"Saved: {out}")
    print(f"Total time: {round(time.time() - t0, 2)}s")


def run_live(pipeline: StylePipeline, source, display: Display, max_frames: int = 0, idle_sleep: float = 0.002) -> None:
    """Drive the UI loop on the calling thread until quit, frame limit, or end of stream."""
    dispatcher = pipeline.dispatcher
    source.start(pipeline.on_frame)
    try:
        while True:
            dispatcher.run_pending()
            if isinstance(display, CV2WindowDisplay):
                if display.quit_requested():
                    break
            else:
                time.sleep(idle_sleep)
            if max_frames and pipeline.stats().displayed >= max_frames:
                break
            if not source.running:
                pipeline.wait_idle()
                dispatcher.run_pending()
                break
    finally:
        source.stop()
        pipeline.wait_idle()
        dispatcher.run_pending()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        cfg = resolve_config(args)
    except ValueError as e:
        raise SystemExit(f"Invalid configuration: {e}") from e
    configure_logging(cfg.log_level)
    configure_torch_threads(cfg.num_threads, cfg.interop_threads)

    loaded = load_stylizer(cfg)
    if not loaded.ok:
        print(f"Model load failed: {loaded.error}")
        return EXIT_MODEL_LOAD
    stylizer = loaded.stylizer

    if args.image:
        if not args.out:
            raise SystemExit("--out is required with --image")
        run_still(stylizer, args.image, args.out)
        return 0

    source = open_source(cfg.source, width=cfg.width, height=cfg.height)
    if not source.setup():
        print(f"Could not open source: {cfg.source}")
        return EXIT_SOURCE

    display: Display = LatestFrameDisplay() if args.headless else CV2WindowDisplay()
    pipeline = StylePipeline(stylizer, display, UiDispatcher())
    print(f"[live] backend={stylizer.describe()} source={source.describe()}  (q / Esc to quit)")
    total_t0 = time.time()
    try:
        run_live(pipeline, source, display, max_frames=int(args.max_frames))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        pipeline.close()
        source.close()
        display.close()

    s = pipeline.stats()
    print(
        f"frames accepted={s.accepted} dropped={s.dropped} completed={s.completed} "
        f"failed={s.failed} displayed={s.displayed} fps={s.fps}"
    )
    print(f"Total time: {round(time.time() - total_t0, 2)}s")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
