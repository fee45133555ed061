from __future__ import annotations

import threading
from dataclasses import dataclass


@dataclass(frozen=True)
class GateStats:
    accepted: int
    dropped: int
    released: int


class InFlightGate:
    """Single-slot admission gate: at most one frame in flight, extra frames dropped.

    ``try_acquire`` never blocks. ``release`` may come from a different thread
    than the one that acquired (the inference completion callback), which
    ``threading.Lock`` allows.
    """

    def __init__(self) -> None:
        self._slot = threading.Lock()
        self._counts = threading.Lock()
        self._accepted = 0
        self._dropped = 0
        self._released = 0

    @property
    def in_flight(self) -> bool:
        return self._slot.locked()

    def try_acquire(self) -> bool:
        if self._slot.acquire(blocking=False):
            with self._counts:
                self._accepted += 1
            return True
        with self._counts:
            self._dropped += 1
        return False

    def release(self) -> None:
        try:
            self._slot.release()
        except RuntimeError as e:
            raise RuntimeError("InFlightGate released while idle") from e
        with self._counts:
            self._released += 1

    def stats(self) -> GateStats:
        with self._counts:
            return GateStats(accepted=self._accepted, dropped=self._dropped, released=self._released)
