from __future__ import annotations

import threading
from typing import List, Optional

import numpy as np
import pytest

from live_casso.camera import CV2Camera, StillImageSource, open_source
from live_casso.imaging import save_frame


class FakeCapture:
    def __init__(self, frames: List[np.ndarray], opened: bool = True) -> None:
        self._frames = list(frames)
        self._opened = opened
        self.props: dict = {}
        self.released = False

    def isOpened(self) -> bool:
        return self._opened

    def set(self, prop, value) -> bool:
        self.props[prop] = value
        return True

    def read(self):
        if not self._frames:
            return False, None
        return True, self._frames.pop(0)

    def release(self) -> None:
        self.released = True


def test_setup_failure_is_reported_not_raised(caplog) -> None:
    cam = CV2Camera(0, capture_factory=lambda src: FakeCapture([], opened=False))
    assert cam.setup() is False
    assert "unavailable" in caplog.text
    with pytest.raises(RuntimeError):
        cam.start(lambda f: None)


def test_delivers_rgb_frames_on_own_thread_until_end_of_stream() -> None:
    bgr = np.zeros((4, 4, 3), dtype=np.uint8)
    bgr[..., 0] = 255  # blue in OpenCV order
    capture = FakeCapture([bgr, bgr, bgr])
    cam = CV2Camera("clip.mp4", width=320, height=240, capture_factory=lambda src: capture)

    got: List[np.ndarray] = []
    threads: List[int] = []

    def handler(frame: np.ndarray) -> None:
        got.append(frame)
        threads.append(threading.get_ident())

    with cam:
        cam.start(handler)
        assert cam.wait(timeout=2.0)
    assert len(got) == 3
    assert cam.frames_delivered == 3
    assert got[0][0, 0].tolist() == [0, 0, 255]
    assert threading.get_ident() not in threads
    assert capture.released
    assert len(capture.props) == 2


def test_handler_errors_do_not_stop_delivery() -> None:
    frames = [np.zeros((2, 2, 3), dtype=np.uint8)] * 3
    cam = CV2Camera(0, capture_factory=lambda src: FakeCapture(frames))
    calls: List[int] = []

    def handler(frame: np.ndarray) -> None:
        calls.append(1)
        raise ValueError("bad frame")

    cam.start(handler)
    assert cam.wait(timeout=2.0)
    cam.close()
    assert len(calls) == 3


def test_still_image_source_replays_copies(tmp_path) -> None:
    path = tmp_path / "still.png"
    save_frame(np.full((6, 8, 3), 42, dtype=np.uint8), path)
    src = StillImageSource(path, fps=200.0, max_frames=4)
    got: List[np.ndarray] = []
    src.start(got.append)
    assert src.wait(timeout=2.0)
    src.close()
    assert len(got) == 4
    assert got[0] is not got[1]
    assert got[0].shape == (6, 8, 3)


def test_still_image_missing_file(tmp_path) -> None:
    assert StillImageSource(tmp_path / "missing.png").setup() is False


def test_stop_interrupts_delivery(tmp_path) -> None:
    path = tmp_path / "still.png"
    save_frame(np.zeros((4, 4, 3), dtype=np.uint8), path)
    src = StillImageSource(path, fps=5.0)
    src.start(lambda f: None)
    assert src.running
    src.stop()
    assert not src.running
    src.close()


@pytest.mark.parametrize(
    "value,kind,source",
    [
        ("0", CV2Camera, 0),
        (2, CV2Camera, 2),
        ("rtsp://cam/stream", CV2Camera, "rtsp://cam/stream"),
        ("clip.mp4", CV2Camera, "clip.mp4"),
    ],
)
def test_open_source_dispatch(value, kind, source: Optional[object]) -> None:
    src = open_source(value)
    assert isinstance(src, kind)
    assert src.source == source


def test_open_source_image_is_still() -> None:
    assert isinstance(open_source("styles/photo.JPG"), StillImageSource)


class StalledCapture(FakeCapture):
    """read() blocks until the test lets it go, like a stalled stream URL."""

    def __init__(self) -> None:
        super().__init__([np.zeros((2, 2, 3), dtype=np.uint8)])
        self.entered = threading.Event()
        self.unblock = threading.Event()

    def read(self):
        self.entered.set()
        assert self.unblock.wait(timeout=5.0)
        return super().read()


def test_close_keeps_handle_while_delivery_is_blocked() -> None:
    capture = StalledCapture()
    cam = CV2Camera("rtsp://cam/stream", capture_factory=lambda src: capture)
    cam.start(lambda f: None)
    assert capture.entered.wait(timeout=2.0)

    assert cam.stop(timeout=0.05) is False
    assert cam.running
    cam.close(timeout=0.05)
    assert not capture.released

    capture.unblock.set()
    assert cam.wait(timeout=2.0)
    cam.close()
    assert capture.released
    assert not cam.running


def test_read_after_release_ends_stream() -> None:
    cam = CV2Camera(0, capture_factory=lambda src: FakeCapture([np.zeros((2, 2, 3), dtype=np.uint8)]))
    assert cam.setup()
    cam.close()
    assert cam._read() is None
