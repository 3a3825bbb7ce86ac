import threading
import time
from typing import Dict, List, Optional

import cv2
import numpy as np
import pytest

from crowdcount.errors import StreamConfigError, StreamOpenError
from crowdcount.io.frames import RawFrame
from crowdcount.io.stream import StreamEnded, StreamEndReason, StreamSource, StreamSourceConfig, parse_stream_host


class FakeCapture:
    def __init__(self, n_frames: Optional[int] = 3, opened: bool = True, frame_count: Optional[int] = None) -> None:
        self.n_frames = n_frames
        self.opened = opened
        self.frame_count = (n_frames or 0) if frame_count is None else frame_count
        self.pos = 0
        self.released = False
        self.props: Dict[int, float] = {}

    def isOpened(self) -> bool:
        return self.opened

    def set(self, prop: int, value: float) -> bool:
        self.props[prop] = value
        return True

    def get(self, prop: int) -> float:
        if prop == cv2.CAP_PROP_FRAME_COUNT:
            return float(self.frame_count)
        if prop == cv2.CAP_PROP_POS_FRAMES:
            return float(self.pos)
        return 0.0

    def read(self, image: Optional[np.ndarray] = None):
        if self.n_frames is not None and self.pos >= self.n_frames:
            return False, None
        if self.n_frames is None:
            time.sleep(0.005)
        self.pos += 1
        out = image if image is not None else np.zeros((8, 10, 3), dtype=np.uint8)
        out[:] = self.pos % 256
        return True, out

    def release(self) -> None:
        self.released = True


class Recorder:
    def __init__(self) -> None:
        self.frames: List[RawFrame] = []
        self.ended: List[StreamEnded] = []
        self.ended_event = threading.Event()

    def on_frame(self, frame: RawFrame) -> None:
        self.frames.append(frame.copy())

    def on_ended(self, ended: StreamEnded) -> None:
        self.ended.append(ended)
        self.ended_event.set()


def _source(cap: FakeCapture, rec: Recorder, url: str = "rtsp://cam.local/stream") -> StreamSource:
    return StreamSource(StreamSourceConfig(url=url), rec.on_frame, rec.on_ended, capture_factory=lambda cfg: cap)


def test_file_end_is_reported_once_after_all_frames() -> None:
    cap = FakeCapture(n_frames=3)
    rec = Recorder()
    src = _source(cap, rec)
    src.start()
    assert rec.ended_event.wait(2.0)
    src.stop()
    assert [int(f.to_bgr()[0, 0, 0]) for f in rec.frames] == [1, 2, 3]
    assert [e.reason for e in rec.ended] == [StreamEndReason.END_OF_FILE]
    assert cap.released


def test_read_failure_on_live_stream_is_error() -> None:
    cap = FakeCapture(n_frames=2, frame_count=0)
    rec = Recorder()
    src = _source(cap, rec)
    src.start()
    assert rec.ended_event.wait(2.0)
    assert rec.ended[0].reason == StreamEndReason.ERROR
    src.dispose()


def test_unopened_capture_raises_open_error() -> None:
    cap = FakeCapture(opened=False)
    rec = Recorder()
    src = _source(cap, rec)
    with pytest.raises(StreamOpenError):
        src.start()
    assert cap.released
    assert rec.ended == []


def test_factory_failure_raises_open_error() -> None:
    def _boom(cfg: StreamSourceConfig) -> FakeCapture:
        raise OSError("connection refused")

    rec = Recorder()
    src = StreamSource(StreamSourceConfig(url="rtsp://cam.local/x"), rec.on_frame, rec.on_ended, capture_factory=_boom)
    with pytest.raises(StreamOpenError):
        src.start()


def test_missing_url_is_config_error() -> None:
    rec = Recorder()
    with pytest.raises(StreamConfigError):
        StreamSource(StreamSourceConfig(url="  "), rec.on_frame, rec.on_ended)


def test_stop_fires_stopped_once() -> None:
    cap = FakeCapture(n_frames=None)
    rec = Recorder()
    src = _source(cap, rec)
    src.start()
    time.sleep(0.05)
    assert src.is_playing
    src.stop()
    src.stop()
    assert [e.reason for e in rec.ended] == [StreamEndReason.STOPPED]
    assert not src.is_playing
    assert cap.released
    assert len(rec.frames) > 0


def test_dispose_suppresses_ended_callback() -> None:
    cap = FakeCapture(n_frames=None)
    rec = Recorder()
    with _source(cap, rec) as src:
        src.start()
        time.sleep(0.02)
    assert rec.ended == []
    assert cap.released


def test_restart_after_end_fires_again() -> None:
    caps = [FakeCapture(n_frames=1), FakeCapture(n_frames=1)]
    rec = Recorder()
    src = StreamSource(StreamSourceConfig(url="rtsp://cam.local/x"), rec.on_frame, rec.on_ended, capture_factory=lambda cfg: caps.pop(0))
    src.start()
    assert rec.ended_event.wait(2.0)
    src.stop()
    rec.ended_event.clear()
    src.start()
    assert rec.ended_event.wait(2.0)
    src.stop()
    assert len(rec.ended) == 2


def test_parse_stream_host() -> None:
    assert parse_stream_host("rtsp://user:pw@10.0.0.5/stream") == ("10.0.0.5", 554)
    assert parse_stream_host("rtsp://cam.local:8554/live") == ("cam.local", 8554)
    assert parse_stream_host("") == (None, 0)
    assert parse_stream_host("not a url") == (None, 0)


class I420Capture(FakeCapture):
    """Hands out 4x4 mid-grey pictures as raw I420 planes (6 rows of 4 bytes)."""

    def read(self, image: Optional[np.ndarray] = None):
        if self.n_frames is not None and self.pos >= self.n_frames:
            return False, None
        self.pos += 1
        return True, np.full((6, 4), 128, dtype=np.uint8)


def test_raw_yuv_frames_are_converted_with_full_range() -> None:
    cap = I420Capture(n_frames=1)
    rec = Recorder()
    cfg = StreamSourceConfig.from_dict("rtsp://cam.local/x", {"pixel_format": "yuvj420p"})
    src = StreamSource(cfg, rec.on_frame, rec.on_ended, capture_factory=lambda c: cap)
    src.start()
    assert rec.ended_event.wait(2.0)
    src.stop()
    assert cap.props[cv2.CAP_PROP_CONVERT_RGB] == 0
    frame = rec.frames[0]
    assert (frame.width, frame.height, frame.pixel_format) == (4, 4, "yuvj420p")
    img = frame.to_bgr()
    assert img.shape == (4, 4, 3)
    assert np.all(np.abs(img.astype(int) - 128) <= 1)


def test_bgr_output_leaves_backend_conversion_on() -> None:
    cap = FakeCapture(n_frames=1)
    rec = Recorder()
    src = _source(cap, rec)
    src.start()
    assert rec.ended_event.wait(2.0)
    src.stop()
    assert cv2.CAP_PROP_CONVERT_RGB not in cap.props
    assert rec.frames[0].pixel_format == "bgr24"


def test_stream_config_from_dict() -> None:
    cfg = StreamSourceConfig.from_dict(
        "rtsp://cam.local/x",
        {"transport": "UDP", "open_timeout_ms": "2500", "read_timeout_ms": 1000, "pixel_format": "YUV420P"},
    )
    assert cfg.url == "rtsp://cam.local/x"
    assert cfg.transport == "udp"
    assert cfg.open_timeout_ms == 2500
    assert cfg.read_timeout_ms == 1000
    assert cfg.pixel_format == "yuv420p"
    assert cfg.raw_yuv
    assert StreamSourceConfig.from_dict("rtsp://cam.local/x", None) == StreamSourceConfig(url="rtsp://cam.local/x")


def test_stream_config_rejects_unknown_pixel_format() -> None:
    with pytest.raises(ValueError):
        StreamSourceConfig.from_dict("rtsp://cam.local/x", {"pixel_format": "nv12"})
