import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import pytest

from crowdcount.detection.mock import MockDetector
from crowdcount.errors import DetectorUnavailableError, RoiValidationError, StreamOpenError
from crowdcount.io.frames import RawFrame
from crowdcount.io.stream import StreamEnded, StreamEndReason
from crowdcount.output.encoding import JPEG_DATA_URI_PREFIX
from crowdcount.output.hub import CAMERA_STATUS, StatusHub
from crowdcount.pipeline.camera_pipeline import CameraPipeline, CameraPipelineConfig
from crowdcount.utils.types import Camera, CameraStatus, Detection, Polygon, ProcessingSettings


def _wait_for(pred: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.01)
    return pred()


class EventLog:
    def __init__(self, hub: StatusHub) -> None:
        self._lock = threading.Lock()
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        hub.subscribe(self._on_event)

    def _on_event(self, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.events.append((event, dict(payload)))

    def camera(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [p for e, p in self.events if e == CAMERA_STATUS]

    def statuses(self) -> List[str]:
        return [p["status"] for p in self.camera()]


class FakeSource:
    def __init__(self, on_frame, on_ended, n_frames: int, fail_open: bool) -> None:
        self._on_frame = on_frame
        self._on_ended = on_ended
        self._n_frames = n_frames
        self._fail_open = fail_open
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._fail_open:
            raise StreamOpenError("Failed to open stream rtsp://cam.local/x")
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        img = np.zeros((48, 64, 3), dtype=np.uint8)
        for _ in range(self._n_frames):
            if self._stop.is_set():
                return
            self._on_frame(RawFrame.from_bgr(img))
            time.sleep(0.01)
        self._on_ended(StreamEnded(StreamEndReason.END_OF_FILE, "End of stream"))

    def stop(self) -> None:
        self._stop.set()

    def dispose(self) -> None:
        self.stop()
        if self._thread is not None:
            self._thread.join(timeout=1.0)


class FakeSourceFactory:
    def __init__(self, n_frames: int = 2, fail_open: bool = False) -> None:
        self.n_frames = n_frames
        self.fail_open = fail_open
        self.urls: List[str] = []
        self.started_at: List[float] = []

    def __call__(self, url: str, on_frame, on_ended) -> FakeSource:
        self.urls.append(url)
        self.started_at.append(time.monotonic())
        return FakeSource(on_frame, on_ended, self.n_frames, self.fail_open)


class FakeRoiStore:
    def __init__(self) -> None:
        self.saved: Dict[int, Polygon] = {}

    def save_roi(self, camera_id: int, polygon: Polygon) -> None:
        self.saved[camera_id] = list(polygon)


class CountingDetector:
    def __init__(self, detections: Optional[List[Detection]] = None) -> None:
        self.detections = detections or []
        self.images: List[np.ndarray] = []

    def detect(self, image_bgr, confidence_threshold, nms_threshold, target_classes) -> List[Detection]:
        self.images.append(image_bgr.copy())
        return list(self.detections)


def _person(x: float = 5.0) -> Detection:
    return Detection(bbox_xywh=(x, 5.0, 10.0, 20.0), class_name="person", confidence=0.9, class_id=0)


def _pipeline(
    hub: StatusHub,
    url: str = "rtsp://cam.local/x",
    settings: Optional[ProcessingSettings] = None,
    **kwargs: Any,
) -> CameraPipeline:
    kwargs.setdefault("detector", MockDetector())
    kwargs.setdefault("retry_delay_s", 0.05)
    return CameraPipeline(
        CameraPipelineConfig(
            camera=Camera(camera_id=7, name="Lobby", url=url),
            settings=settings or ProcessingSettings(idle_scan_mode_enabled=False, active_mode_process_nth_frame=1),
            hub=hub,
            **kwargs,
        )
    )


def _frame(value: int = 0) -> RawFrame:
    return RawFrame.from_bgr(np.full((48, 64, 3), value, dtype=np.uint8))


def test_end_of_file_keeps_retrying_without_error() -> None:
    hub = StatusHub()
    log = EventLog(hub)
    sources = FakeSourceFactory(n_frames=2)
    p = _pipeline(hub, source_factory=sources, retry_delay_s=0.2)
    p.start()
    assert _wait_for(lambda: len(sources.urls) >= 3)
    p.close()

    starts = sources.started_at
    assert all(later - earlier >= 0.2 for earlier, later in zip(starts, starts[1:]))

    statuses = log.statuses()
    assert CameraStatus.ERROR.value not in statuses
    assert CameraStatus.RETRYING.value in statuses
    assert CameraStatus.CONNECTING.value in statuses
    assert CameraStatus.NORMAL.value in statuses
    assert p.status == CameraStatus.INACTIVE
    last = log.camera()[-1]
    assert last["status"] == "Inactive"
    assert last["message"] == "Processing stopped."
    assert not p.is_running


def test_open_failure_is_retried() -> None:
    hub = StatusHub()
    log = EventLog(hub)
    sources = FakeSourceFactory(fail_open=True)
    p = _pipeline(hub, source_factory=sources)
    p.start()
    assert _wait_for(lambda: len(sources.urls) >= 2)
    p.close()
    assert "Error" not in log.statuses()
    assert "Retrying" in log.statuses()


def test_detector_unavailable_is_terminal_error() -> None:
    hub = StatusHub()
    log = EventLog(hub)
    sources = FakeSourceFactory()

    def _no_model(settings: ProcessingSettings):
        raise DetectorUnavailableError("YOLO model not found at /nope.pt")

    p = _pipeline(hub, source_factory=sources, detector=None, detector_factory=_no_model)
    p.start()
    assert _wait_for(lambda: not p.is_running)
    assert p.status == CameraStatus.ERROR
    assert sources.urls == []
    assert log.camera()[-1]["message"].startswith("Detector failed to initialize")
    p.close()


def test_missing_url_is_terminal_error() -> None:
    hub = StatusHub()
    log = EventLog(hub)
    sources = FakeSourceFactory()
    p = _pipeline(hub, url="", source_factory=sources)
    p.start()
    assert _wait_for(lambda: not p.is_running)
    p.close()
    assert p.status == CameraStatus.ERROR
    assert sources.urls == []
    assert "Retrying" not in log.statuses()
    assert any(m["message"].startswith("Failed to start") for m in log.camera())
    last = log.camera()[-1]
    assert last["status"] == "Error"
    assert last["message"].startswith("Failed to start")


def test_processed_frame_is_counted_rendered_and_broadcast() -> None:
    hub = StatusHub()
    log = EventLog(hub)
    car = Detection(bbox_xywh=(1.0, 1.0, 4.0, 4.0), class_name="car", confidence=0.9, class_id=2)
    p = _pipeline(hub, detector=MockDetector([_person(), car]))
    counts: List[Tuple[int, int]] = []
    p.add_count_listener(lambda cid, n: counts.append((cid, n)))

    p.process_frame(_frame())

    assert p.total_tracked_count == 1
    assert counts == [(7, 1)]
    payload = log.camera()[-1]
    assert payload["cameraId"] == 7
    assert payload["name"] == "Lobby"
    assert payload["totalTrackedCount"] == 1
    assert payload["frameDataUri"].startswith(JPEG_DATA_URI_PREFIX)
    assert payload["roi"] == []


def test_detections_are_retained_between_detector_runs() -> None:
    hub = StatusHub()
    det = CountingDetector([_person()])
    p = _pipeline(hub, detector=det, settings=ProcessingSettings(idle_scan_mode_enabled=False, active_mode_process_nth_frame=5))
    for _ in range(4):
        p.process_frame(_frame())
    assert len(det.images) == 0
    assert p.total_tracked_count == 0
    p.process_frame(_frame())
    assert len(det.images) == 1
    assert p.total_tracked_count == 1
    p.process_frame(_frame())
    assert len(det.images) == 1
    assert p.total_tracked_count == 1


def test_roi_masks_detector_input_only() -> None:
    hub = StatusHub()
    det = CountingDetector()
    p = _pipeline(hub, detector=det, initial_roi=[(0.0, 0.0), (0.5, 0.0), (0.5, 1.0), (0.0, 1.0)])
    p.process_frame(_frame(255))
    seen = det.images[-1]
    assert seen[24, 10].tolist() == [255, 255, 255]
    assert seen[24, 60].tolist() == [0, 0, 0]


def test_two_point_roi_uses_full_frame() -> None:
    hub = StatusHub()
    det = CountingDetector()
    p = _pipeline(hub, detector=det, initial_roi=[(0.0, 0.0), (0.5, 0.5)])
    p.process_frame(_frame(255))
    assert int(det.images[-1].min()) == 255


def test_set_roi_persists_and_validates() -> None:
    hub = StatusHub()
    store = FakeRoiStore()
    p = _pipeline(hub, roi_store=store)
    roi = p.set_roi([[0.1, 0.1], [0.9, 0.1], [0.5, 0.9]])
    assert p.roi == roi
    assert store.saved[7] == roi

    with pytest.raises(RoiValidationError):
        p.set_roi([[0.1, 0.1], [1.9, 0.1], [0.5, 0.9]])
    assert p.roi == roi


def test_reload_settings_applies_before_next_frame() -> None:
    hub = StatusHub()
    det = CountingDetector()
    p = _pipeline(hub, detector=det, settings=ProcessingSettings(idle_scan_mode_enabled=False, active_mode_process_nth_frame=50))
    p.process_frame(_frame())
    assert det.images == []
    p.reload_settings(ProcessingSettings(idle_scan_mode_enabled=False, active_mode_process_nth_frame=1))
    p.process_frame(_frame())
    assert len(det.images) == 1


def test_encoding_failure_still_broadcasts(monkeypatch: pytest.MonkeyPatch) -> None:
    import crowdcount.pipeline.camera_pipeline as cp

    def _fail(frame, quality):
        raise RuntimeError("encoder broke")

    monkeypatch.setattr(cp, "encode_jpeg_data_uri", _fail)
    hub = StatusHub()
    log = EventLog(hub)
    p = _pipeline(hub, detector=MockDetector([_person()]))
    p.process_frame(_frame())
    payload = log.camera()[-1]
    assert payload["frameDataUri"] == ""
    assert payload["totalTrackedCount"] == 1
    assert p.last_frame_data_uri is None


def test_detector_fault_skips_frame_and_keeps_running() -> None:
    hub = StatusHub()
    log = EventLog(hub)

    class FlakyDetector:
        def __init__(self) -> None:
            self.calls = 0

        def detect(self, image_bgr, confidence_threshold, nms_threshold, target_classes):
            self.calls += 1
            if self.calls == 1:
                raise RuntimeError("inference failed")
            return [_person()]

    det = FlakyDetector()
    sources = FakeSourceFactory(n_frames=200)
    p = _pipeline(hub, detector=det, source_factory=sources)
    p.start()
    assert _wait_for(lambda: det.calls >= 2 and p.total_tracked_count == 1)
    p.close()
    assert "Error" not in log.statuses()


def test_result_from_closed_connection_is_discarded() -> None:
    hub = StatusHub()
    log = EventLog(hub)

    class SlowDetector:
        def detect(self, image_bgr, confidence_threshold, nms_threshold, target_classes):
            time.sleep(0.3)
            return [_person()]

    sources = FakeSourceFactory(n_frames=1)
    p = _pipeline(hub, detector=SlowDetector(), source_factory=sources, retry_delay_s=2.0)
    p.start()
    try:
        time.sleep(0.8)
        assert p.status == CameraStatus.RETRYING
        assert p.total_tracked_count == 0
        retrying = [m for m in log.camera() if m["status"] == "Retrying"]
        assert retrying
        assert all(m["totalTrackedCount"] == 0 for m in retrying)
    finally:
        p.close()


def test_frame_from_previous_connection_is_ignored() -> None:
    hub = StatusHub()
    log = EventLog(hub)
    det = CountingDetector([_person()])
    p = _pipeline(hub, detector=det)
    p.process_frame(_frame(), generation=0)
    assert p.total_tracked_count == 1

    p._reset_state()
    before = len(log.camera())
    p.process_frame(_frame(), generation=0)
    assert len(det.images) == 1
    assert p.total_tracked_count == 0
    assert len(log.camera()) == before


def test_invalid_stream_pixel_format_is_terminal_error() -> None:
    hub = StatusHub()
    log = EventLog(hub)
    p = _pipeline(hub, stream={"pixel_format": "nv12"})
    p.start()
    assert _wait_for(lambda: not p.is_running)
    p.close()
    assert p.status == CameraStatus.ERROR
    last = log.camera()[-1]
    assert last["status"] == "Error"
    assert "nv12" in last["message"]
