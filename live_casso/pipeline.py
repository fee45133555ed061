from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any, Optional

import numpy as np

from live_casso.display import Display, UiDispatcher
from live_casso.gate import InFlightGate
from live_casso.stylizers import Stylizer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineStats:
    accepted: int
    dropped: int
    completed: int
    failed: int
    displayed: int
    last_latency_s: Optional[float]
    fps: float


class StylePipeline:
    """Camera frame -> gate -> stylizer -> UI-thread display.

    ``on_frame`` is the delivery-thread callback. At most one frame is in
    flight; frames that arrive meanwhile are dropped. The gate is released
    exactly once per accepted frame, on every exit path.
    """

    def __init__(
        self,
        stylizer: Stylizer,
        display: Display,
        dispatcher: UiDispatcher,
        gate: Optional[InFlightGate] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.stylizer = stylizer
        self.display = display
        self.dispatcher = dispatcher
        self.gate = gate if gate is not None else InFlightGate()
        self._owns_executor = executor is None
        self._executor = executor if executor is not None else ThreadPoolExecutor(max_workers=1, thread_name_prefix="inference")
        self._lock = threading.Lock()
        self._completed = 0
        self._failed = 0
        self._displayed = 0
        self._last_latency: Optional[float] = None
        self._first_done: Optional[float] = None
        self._last_done: Optional[float] = None

    def on_frame(self, frame: np.ndarray) -> bool:
        """Returns True if the frame was accepted, False if it was dropped."""
        if not self.gate.try_acquire():
            return False
        started = time.monotonic()
        try:
            request = self.stylizer.prepare(frame)
            future = self._executor.submit(self.stylizer.stylize, request)
        except Exception as e:
            # Any backend error here, and submit() after shutdown, drops the frame.
            logger.warning("Dropping frame, could not build inference request: %s", e)
            self._count_failure()
            self.gate.release()
            return True
        future.add_done_callback(lambda f: self._on_done(f, started))
        return True

    def _on_done(self, future: "Future[np.ndarray]", started: float) -> None:
        try:
            if future.cancelled():
                logger.warning("Dropping frame, inference was cancelled")
                self._count_failure()
                return
            exc = future.exception()
            if exc is not None:
                logger.warning("Dropping frame, inference failed: %s", exc)
                self._count_failure()
                return
            result = future.result()
            now = time.monotonic()
            with self._lock:
                self._completed += 1
                self._last_latency = now - started
                if self._first_done is None:
                    self._first_done = now
                self._last_done = now
            self.dispatcher.post(lambda: self._show(result))
        finally:
            self.gate.release()

    def _show(self, frame: np.ndarray) -> None:
        self.display.show(frame)
        with self._lock:
            self._displayed += 1

    def _count_failure(self) -> None:
        with self._lock:
            self._failed += 1

    def stats(self) -> PipelineStats:
        gate = self.gate.stats()
        with self._lock:
            fps = 0.0
            if self._completed > 1 and self._first_done is not None and self._last_done is not None:
                span = self._last_done - self._first_done
                if span > 0:
                    fps = (self._completed - 1) / span
            return PipelineStats(
                accepted=gate.accepted,
                dropped=gate.dropped,
                completed=self._completed,
                failed=self._failed,
                displayed=self._displayed,
                last_latency_s=self._last_latency,
                fps=round(fps, 2),
            )

    def stats_dict(self) -> dict[str, Any]:
        return asdict(self.stats())

    def wait_idle(self, timeout: float = 5.0, poll: float = 0.005) -> bool:
        deadline = time.monotonic() + timeout
        while self.gate.in_flight:
            if time.monotonic() >= deadline:
                return False
            time.sleep(poll)
        return True

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=True)
