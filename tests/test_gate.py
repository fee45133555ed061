from __future__ import annotations

import threading

import pytest

from live_casso.gate import InFlightGate


def test_second_acquire_is_dropped_until_release() -> None:
    gate = InFlightGate()
    assert gate.try_acquire()
    assert gate.in_flight
    assert not gate.try_acquire()
    gate.release()
    assert not gate.in_flight
    assert gate.try_acquire()

    s = gate.stats()
    assert (s.accepted, s.dropped, s.released) == (2, 1, 1)


def test_release_while_idle_raises() -> None:
    gate = InFlightGate()
    with pytest.raises(RuntimeError):
        gate.release()
    assert gate.stats().released == 0


def test_release_from_another_thread() -> None:
    gate = InFlightGate()
    assert gate.try_acquire()
    t = threading.Thread(target=gate.release)
    t.start()
    t.join(timeout=2.0)
    assert not gate.in_flight
    assert gate.stats().released == 1


def test_concurrent_acquire_admits_exactly_one() -> None:
    gate = InFlightGate()
    barrier = threading.Barrier(8)
    results: list[bool] = []
    lock = threading.Lock()

    def contend() -> None:
        barrier.wait(timeout=2.0)
        ok = gate.try_acquire()
        with lock:
            results.append(ok)

    threads = [threading.Thread(target=contend) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=2.0)

    assert results.count(True) == 1
    assert gate.stats().dropped == 7
