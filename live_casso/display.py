from __future__ import annotations

import logging
import queue
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional

import cv2
import numpy as np

from live_casso.imaging import rgb_to_bgr

logger = logging.getLogger(__name__)


class UiDispatcher:
    """Hands work from worker threads to the UI thread.

    The thread that constructs the dispatcher is the UI thread; it must call
    ``run_pending`` regularly (the CLI main loop, or the Streamlit script run).
    """

    def __init__(self) -> None:
        self._queue: "queue.SimpleQueue[Callable[[], None]]" = queue.SimpleQueue()
        self._ui_thread = threading.get_ident()

    def on_ui_thread(self) -> bool:
        return threading.get_ident() == self._ui_thread

    def post(self, fn: Callable[[], None]) -> None:
        self._queue.put(fn)

    def pending(self) -> int:
        return self._queue.qsize()

    def run_pending(self, max_items: Optional[int] = None) -> int:
        if not self.on_ui_thread():
            raise RuntimeError("run_pending must be called on the UI thread")
        ran = 0
        while max_items is None or ran < max_items:
            try:
                fn = self._queue.get_nowait()
            except queue.Empty:
                break
            ran += 1
            try:
                fn()
            except Exception:
                logger.exception("UI callback failed")
        return ran


class Display(ABC):
    @abstractmethod
    def show(self, frame: np.ndarray) -> None:
        ...

    def close(self) -> None:
        pass


class LatestFrameDisplay(Display):
    """Keeps only the most recent frame; for headless runs and the Streamlit app."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._frame: Optional[np.ndarray] = None
        self.shown = 0

    def show(self, frame: np.ndarray) -> None:
        with self._lock:
            self._frame = frame
            self.shown += 1

    def latest(self) -> Optional[np.ndarray]:
        with self._lock:
            return self._frame

    def close(self) -> None:
        with self._lock:
            self._frame = None


class CV2WindowDisplay(Display):
    QUIT_KEYS = {ord("q"), 27}

    def __init__(self, window_name: str = "live-casso") -> None:
        self.window_name = window_name
        self._opened = False

    def show(self, frame: np.ndarray) -> None:
        if not self._opened:
            cv2.namedWindow(self.window_name, cv2.WINDOW_NORMAL)
            self._opened = True
        cv2.imshow(self.window_name, rgb_to_bgr(frame))

    def poll_key(self, delay_ms: int = 1) -> Optional[int]:
        """Pump the HighGUI event loop; returns the pressed key code or None."""
        key = cv2.waitKey(delay_ms)
        return None if key < 0 else key & 0xFF

    def quit_requested(self, delay_ms: int = 1) -> bool:
        return self.poll_key(delay_ms) in self.QUIT_KEYS

    def close(self) -> None:
        if self._opened:
            cv2.destroyWindow(self.window_name)
            self._opened = False
