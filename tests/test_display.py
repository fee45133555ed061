from __future__ import annotations

import threading

import numpy as np
import pytest

from live_casso.display import LatestFrameDisplay, UiDispatcher


def test_run_pending_executes_in_order_on_ui_thread() -> None:
    dispatcher = UiDispatcher()
    seen: list[tuple[int, int]] = []

    def post_from_worker() -> None:
        for i in range(3):
            dispatcher.post(lambda i=i: seen.append((i, threading.get_ident())))

    t = threading.Thread(target=post_from_worker)
    t.start()
    t.join(timeout=2.0)

    assert dispatcher.pending() == 3
    assert dispatcher.run_pending(max_items=2) == 2
    assert dispatcher.run_pending() == 1
    assert [i for i, _ in seen] == [0, 1, 2]
    assert {tid for _, tid in seen} == {threading.get_ident()}


def test_run_pending_refuses_other_threads() -> None:
    dispatcher = UiDispatcher()
    errors: list[BaseException] = []

    def drain() -> None:
        try:
            dispatcher.run_pending()
        except RuntimeError as e:
            errors.append(e)

    t = threading.Thread(target=drain)
    t.start()
    t.join(timeout=2.0)
    assert len(errors) == 1
    assert dispatcher.on_ui_thread()


def test_failing_callback_does_not_block_the_rest(caplog) -> None:
    dispatcher = UiDispatcher()
    ran: list[int] = []

    def boom() -> None:
        raise ValueError("paint failed")

    dispatcher.post(boom)
    dispatcher.post(lambda: ran.append(1))
    assert dispatcher.run_pending() == 2
    assert ran == [1]
    assert "UI callback failed" in caplog.text


def test_latest_frame_display_keeps_last() -> None:
    display = LatestFrameDisplay()
    assert display.latest() is None
    a = np.zeros((2, 2, 3), dtype=np.uint8)
    b = np.ones((2, 2, 3), dtype=np.uint8)
    display.show(a)
    display.show(b)
    assert display.latest() is b
    assert display.shown == 2
    display.close()
    assert display.latest() is None


@pytest.mark.parametrize("key,expected", [(-1, None), (ord("q") | 0x100, ord("q"))])
def test_cv2_window_poll_key(monkeypatch, key, expected) -> None:
    from live_casso import display as display_mod

    monkeypatch.setattr(display_mod.cv2, "waitKey", lambda delay: key)
    assert display_mod.CV2WindowDisplay().poll_key() == expected
