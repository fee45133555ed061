"""Frame sources.

A source owns a dedicated delivery thread and pushes RGB uint8 frames into a
handler at its own pace; the consumer never controls the rate.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Optional

import cv2
import numpy as np

from live_casso.imaging import bgr_to_rgb, load_image_rgb

logger = logging.getLogger(__name__)

FrameHandler = Callable[[np.ndarray], Any]

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".webp", ".bmp"}


class FrameSource(ABC):
    thread_name = "frame-delivery"

    def __init__(self) -> None:
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._ready = False
        self.frames_delivered = 0

    @abstractmethod
    def _open(self) -> bool:
        ...

    @abstractmethod
    def _read(self) -> Optional[np.ndarray]:
        """Next RGB frame, or None when the stream has ended."""

    def _close(self) -> None:
        pass

    def setup(self) -> bool:
        """Acquire the input. Returns False (and logs) when it is unavailable."""
        if self._ready:
            return True
        try:
            self._ready = bool(self._open())
        except (OSError, cv2.error) as e:
            logger.warning("%s: setup failed: %s", self.describe(), e)
            self._ready = False
        if not self._ready:
            logger.warning("%s: input unavailable, capture not started", self.describe())
        return self._ready

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, handler: FrameHandler) -> None:
        if self.running:
            raise RuntimeError("Source already started")
        if not self.setup():
            raise RuntimeError(f"{self.describe()} is not available")
        self._stop.clear()
        self._thread = threading.Thread(target=self._deliver, args=(handler,), name=self.thread_name, daemon=True)
        self._thread.start()

    def _deliver(self, handler: FrameHandler) -> None:
        while not self._stop.is_set():
            frame = self._read()
            if frame is None:
                logger.info("%s: end of stream after %d frames", self.describe(), self.frames_delivered)
                break
            self.frames_delivered += 1
            try:
                handler(frame)
            except Exception:
                logger.exception("%s: frame handler failed", self.describe())

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until delivery ends. Returns True if it has ended."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def stop(self, timeout: float = 2.0) -> bool:
        """Ask delivery to end. Returns False if the thread is still alive after ``timeout``."""
        self._stop.set()
        thread = self._thread
        if thread is None:
            return True
        if thread is threading.current_thread():
            return True
        thread.join(timeout)
        if thread.is_alive():
            logger.warning("%s: delivery thread still busy after %.1fs", self.describe(), timeout)
            return False
        self._thread = None
        return True

    def close(self, timeout: float = 2.0) -> None:
        if not self.stop(timeout):
            # Delivery may still be inside _read(); releasing now would pull the handle from under it.
            return
        if self._ready:
            self._close()
            self._ready = False

    def describe(self) -> str:
        return type(self).__name__

    def __enter__(self) -> "FrameSource":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class CV2Camera(FrameSource):
    """OpenCV capture: device index, video file, or stream URL."""

    def __init__(
        self,
        source: int | str = 0,
        width: Optional[int] = None,
        height: Optional[int] = None,
        capture_factory: Callable[[int | str], Any] = cv2.VideoCapture,
    ) -> None:
        super().__init__()
        self.source = source
        self.width = width
        self.height = height
        self._capture_factory = capture_factory
        self._cap: Any = None

    def _open(self) -> bool:
        self._cap = self._capture_factory(self.source)
        if self._cap is None or not self._cap.isOpened():
            self._cap = None
            return False
        if self.width:
            self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, int(self.width))
        if self.height:
            self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, int(self.height))
        return True

    def _read(self) -> Optional[np.ndarray]:
        cap = self._cap
        if cap is None:
            return None
        ok, frame = cap.read()
        if not ok or frame is None:
            return None
        return bgr_to_rgb(frame)

    def _close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None

    def describe(self) -> str:
        return f"cv2_camera({self.source})"


class StillImageSource(FrameSource):
    """Replays one image at a fixed rate, for running without a camera."""

    def __init__(self, path: str | Path, fps: float = 15.0, max_frames: Optional[int] = None) -> None:
        super().__init__()
        if fps <= 0:
            raise ValueError("fps must be > 0")
        self.path = Path(path)
        self.fps = float(fps)
        self.max_frames = max_frames
        self._frame: Optional[np.ndarray] = None
        self._next_at = 0.0

    def _open(self) -> bool:
        if not self.path.is_file():
            return False
        self._frame = load_image_rgb(self.path)
        self._next_at = time.monotonic()
        return True

    def _read(self) -> Optional[np.ndarray]:
        if self._frame is None:
            return None
        if self.max_frames is not None and self.frames_delivered >= self.max_frames:
            return None
        delay = self._next_at - time.monotonic()
        if delay > 0 and self._stop.wait(delay):
            return None
        self._next_at = max(self._next_at, time.monotonic()) + 1.0 / self.fps
        # Fresh copy per frame: the consumer owns what it receives.
        return self._frame.copy()

    def _close(self) -> None:
        self._frame = None

    def describe(self) -> str:
        return f"still_image({self.path.name})"


def open_source(source: str | int, width: Optional[int] = None, height: Optional[int] = None, fps: float = 15.0) -> FrameSource:
    """``0``/``"1"`` -> webcam, image path -> still replay, anything else -> OpenCV path/URL."""
    if isinstance(source, int):
        return CV2Camera(source, width=width, height=height)
    text = str(source).strip()
    if text.isdigit():
        return CV2Camera(int(text), width=width, height=height)
    if Path(text).suffix.lower() in IMAGE_SUFFIXES:
        return StillImageSource(text, fps=fps)
    return CV2Camera(text, width=width, height=height)
