from __future__ import annotations

import threading
from typing import List

import numpy as np
import pytest
import torch

from live_casso.imaging import tensor_to_frame
from live_casso.stylizers import StylizeError, Stylizer


class ControlledStylizer(Stylizer):
    """Stylizer whose completion the test controls, one Event per call."""

    name = "controlled"

    def __init__(self, fail_on: tuple = ()) -> None:
        super().__init__(max_side=None)
        self.fail_on = set(fail_on)
        self.started = threading.Semaphore(0)
        self.gates: List[threading.Event] = []
        self.threads: List[int] = []
        self.calls = 0
        self._lock = threading.Lock()

    def next_gate(self) -> threading.Event:
        with self._lock:
            ev = threading.Event()
            self.gates.append(ev)
            return ev

    def stylize(self, request: torch.Tensor) -> np.ndarray:
        with self._lock:
            self.calls += 1
            call = self.calls
            self.threads.append(threading.get_ident())
            ev = self.gates[call - 1] if len(self.gates) >= call else None
        self.started.release()
        if ev is not None:
            assert ev.wait(timeout=5.0)
        if call in self.fail_on:
            raise StylizeError(f"boom on call {call}")
        return 255 - tensor_to_frame(request)


@pytest.fixture
def frame() -> np.ndarray:
    rng = np.random.default_rng(0)
    return rng.integers(0, 256, size=(48, 64, 3), dtype=np.uint8)


@pytest.fixture
def controlled() -> ControlledStylizer:
    return ControlledStylizer()
