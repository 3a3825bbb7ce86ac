from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import numpy as np

from crowdcount.detection.base import Detector
from crowdcount.detection.registry import create_detector
from crowdcount.errors import StreamConfigError, StreamOpenError
from crowdcount.geometry.roi import apply_roi_mask, parse_roi, roi_to_payload
from crowdcount.io.frames import RawFrame
from crowdcount.io.stream import EndedCallback, FrameCallback, StreamEnded, StreamSource, StreamSourceConfig
from crowdcount.output.encoding import encode_jpeg_data_uri
from crowdcount.output.hub import CAMERA_STATUS, StatusHub
from crowdcount.output.overlay import OverlayRenderer
from crowdcount.pipeline.frame_queue import LatestFrameQueue
from crowdcount.pipeline.motion import MotionGate
from crowdcount.pipeline.scheduler import TierSchedule, TierScheduler
from crowdcount.utils.types import Camera, CameraStatus, Detection, Polygon, ProcessingSettings, ProcessingTier


logger = logging.getLogger("crowdcount.pipeline.camera")

RETRY_DELAY_S = 5.0


class RoiStore(Protocol):
    def save_roi(self, camera_id: int, polygon: Polygon) -> None:
        ...


class FrameSource(Protocol):
    def start(self) -> None:
        ...

    def stop(self) -> None:
        ...

    def dispose(self) -> None:
        ...


SourceFactory = Callable[[str, FrameCallback, EndedCallback], FrameSource]
DetectorFactory = Callable[[ProcessingSettings], Detector]
CountListener = Callable[[int, int], None]


@dataclass(frozen=True)
class CameraPipelineConfig:
    camera: Camera
    settings: ProcessingSettings
    hub: StatusHub
    roi_store: Optional[RoiStore] = None
    initial_roi: Optional[Polygon] = None
    detector: Optional[Detector] = None
    detector_factory: Optional[DetectorFactory] = None
    source_factory: Optional[SourceFactory] = None
    stream: Dict[str, Any] = field(default_factory=dict)
    retry_delay_s: float = RETRY_DELAY_S
    clock: Callable[[], float] = time.monotonic
    base_dir: Optional[str] = None


class CameraPipeline:
    """Decode, schedule, detect, render and broadcast for one camera.

    Threads: the stream source's decode thread feeds a single-slot queue; a
    worker thread processes frames sequentially; a supervisor thread owns the
    connect / retry loop. Status, ROI, last frame and detections each sit
    behind their own lock so readers never wait on processing.
    """

    def __init__(self, cfg: CameraPipelineConfig) -> None:
        self._cfg = cfg
        self._camera = cfg.camera
        self._hub = cfg.hub
        self._clock = cfg.clock

        self._settings = cfg.settings
        self._pending_settings: Optional[ProcessingSettings] = None
        self._settings_lock = threading.Lock()

        self._detector: Optional[Detector] = cfg.detector
        self._owns_detector = cfg.detector is None

        self._queue: LatestFrameQueue[Tuple[int, RawFrame]] = LatestFrameQueue()
        self._motion = MotionGate(
            pixel_difference_threshold=cfg.settings.motion_pixel_difference_threshold,
            area_threshold=cfg.settings.motion_detection_threshold,
        )
        self._scheduler = TierScheduler(TierSchedule.from_settings(cfg.settings), self._clock(), camera_id=self.camera_id)
        self._renderer = OverlayRenderer()

        self._status = CameraStatus.INACTIVE
        self._message = ""
        self._status_lock = threading.Lock()
        self._last_frame_uri: Optional[str] = None
        self._frame_lock = threading.Lock()
        self._roi: Polygon = list(cfg.initial_roi or [])
        self._roi_lock = threading.Lock()
        self._detections: List[Detection] = []
        self._generation = 0
        self._detections_lock = threading.Lock()

        self._listeners: List[CountListener] = []
        self._stop = threading.Event()
        self._stream_ended = threading.Event()
        self._last_end: Optional[StreamEnded] = None
        self._source: Optional[FrameSource] = None
        self._source_lock = threading.Lock()
        self._supervisor: Optional[threading.Thread] = None
        self._worker: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()

    @property
    def camera_id(self) -> int:
        return self._camera.camera_id

    @property
    def name(self) -> str:
        return self._camera.name

    @property
    def camera(self) -> Camera:
        return self._camera

    @property
    def status(self) -> CameraStatus:
        with self._status_lock:
            return self._status

    @property
    def last_message(self) -> str:
        with self._status_lock:
            return self._message

    @property
    def last_frame_data_uri(self) -> Optional[str]:
        with self._frame_lock:
            return self._last_frame_uri

    @property
    def roi(self) -> Polygon:
        with self._roi_lock:
            return list(self._roi)

    @property
    def detections(self) -> List[Detection]:
        with self._detections_lock:
            return list(self._detections)

    @property
    def total_tracked_count(self) -> int:
        with self._detections_lock:
            return len(self._detections)

    @property
    def settings(self) -> ProcessingSettings:
        with self._settings_lock:
            return self._pending_settings or self._settings

    @property
    def tier(self) -> ProcessingTier:
        return self._scheduler.tier

    @property
    def dropped_frames(self) -> int:
        return self._queue.dropped

    @property
    def is_running(self) -> bool:
        t = self._supervisor
        return t is not None and t.is_alive()

    def add_count_listener(self, listener: CountListener) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        with self._start_lock:
            if self._supervisor is not None:
                return
            self._stop.clear()
            self._supervisor = threading.Thread(
                target=self._supervise, name=f"camera-{self.camera_id}-supervisor", daemon=True
            )
            self._supervisor.start()

    def stop(self) -> None:
        self._stop.set()
        self._stream_ended.set()
        self._queue.close()

    def join(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        for t in (self._supervisor, self._worker):
            if t is None or t is threading.current_thread():
                continue
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            t.join(timeout=remaining)
            if t.is_alive():
                return False
        return True

    def close(self, timeout: Optional[float] = 5.0) -> None:
        self.stop()
        if not self.join(timeout):
            logger.warning("Cam %s: threads still running after %.1fs", self.camera_id, timeout or 0.0)
        if self._owns_detector:
            close = getattr(self._detector, "close", None)
            if callable(close):
                close()
            self._detector = None

    def __enter__(self) -> "CameraPipeline":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def reload_settings(self, settings: ProcessingSettings) -> None:
        # Applied by the worker before its next frame.
        with self._settings_lock:
            self._pending_settings = settings
        logger.info("Cam %s: settings reload queued", self.camera_id)

    def set_roi(self, polygon: Any) -> Polygon:
        roi = parse_roi(polygon)
        if self._cfg.roi_store is not None:
            self._cfg.roi_store.save_roi(self.camera_id, roi)
        with self._roi_lock:
            self._roi = roi
        logger.info("Cam %s: ROI updated (%d points)", self.camera_id, len(roi))
        return list(roi)

    def status_payload(self, message: Optional[str] = None) -> Dict[str, Any]:
        return {
            "cameraId": self.camera_id,
            "name": self.name,
            "status": self.status.value,
            "frameDataUri": self.last_frame_data_uri or "",
            "totalTrackedCount": self.total_tracked_count,
            "roi": roi_to_payload(self.roi),
            "message": self.last_message if message is None else message,
        }

    def process_frame(self, frame: RawFrame, generation: Optional[int] = None) -> None:
        """Run one frame through motion, detection, overlay and broadcast.

        ``generation`` is the connection the frame was decoded on. Frames from
        a connection that has since been torn down are discarded, including
        any detections they produced.
        """
        if generation is None:
            generation = self._current_generation()
        if self._stop.is_set() or not self._is_current(generation):
            return
        self._apply_pending_settings()
        if self._stop.is_set():
            return
        image = frame.to_bgr()
        self._mark_streaming()

        settings = self.settings
        now = self._clock()
        motion = self._motion.update(image)
        if self._scheduler.should_run(now, motion) and self._detector is not None:
            if not self._run_detector(image, settings, generation):
                logger.debug("Cam %s: dropping result from a closed connection", self.camera_id)
                return
        if not self._is_current(generation):
            return

        self._notify_count()
        self._renderer.draw(image, self.roi, self.detections, self._scheduler.tier, settings.idle_scan_mode_enabled)
        self._encode_and_emit(image, settings.jpeg_quality)

    def _run_detector(self, image: np.ndarray, settings: ProcessingSettings, generation: int) -> bool:
        assert self._detector is not None
        masked = apply_roi_mask(image, self.roi)
        dets = self._detector.detect(
            masked,
            settings.confidence_threshold,
            settings.nms_threshold,
            settings.target_classes,
        )
        with self._detections_lock:
            if generation != self._generation:
                return False
            self._detections = list(dets)
        logger.debug("Cam %s: detector ran in %s mode, %d objects", self.camera_id, self._scheduler.tier.value, len(dets))
        return True

    def _current_generation(self) -> int:
        with self._detections_lock:
            return self._generation

    def _is_current(self, generation: int) -> bool:
        return generation == self._current_generation()

    def _supervise(self) -> None:
        try:
            if not self._init_detector():
                return
            self._worker = threading.Thread(target=self._work_loop, name=f"camera-{self.camera_id}-worker", daemon=True)
            self._worker.start()
            self._connection_loop()
        except Exception:
            logger.exception("Cam %s: supervisor failed", self.camera_id)
            self._set_status(CameraStatus.ERROR)
            self._emit_status("Internal error, processing stopped.")
            self._queue.close()

    def _init_detector(self) -> bool:
        if self._detector is not None:
            return True
        try:
            self._detector = self._create_detector(self.settings)
        except Exception as e:
            logger.error("Cam %s: cannot start, detector unavailable: %s", self.camera_id, e)
            self._set_status(CameraStatus.ERROR)
            self._emit_status(f"Detector failed to initialize: {e}")
            self._queue.close()
            return False
        return True

    def _create_detector(self, settings: ProcessingSettings) -> Detector:
        factory = self._cfg.detector_factory
        if factory is not None:
            return factory(settings)
        return create_detector(settings, self._cfg.base_dir)

    def _connection_loop(self) -> None:
        while not self._stop.is_set():
            self._stream_ended.clear()
            if self._stop.is_set():
                break
            message = "Stream disconnected. Retrying..."
            try:
                self._start_source()
                self._stream_ended.wait()
            except StreamConfigError as e:
                logger.error("Cam %s: %s", self.camera_id, e)
                self._set_status(CameraStatus.ERROR)
                self._emit_status(f"Failed to start: {e}")
                break
            except StreamOpenError as e:
                logger.warning("Cam %s: %s", self.camera_id, e)
                message = f"Failed to connect. Retrying... ({e})"
            except Exception as e:
                logger.exception("Cam %s: unexpected error while streaming", self.camera_id)
                message = f"Stream error. Retrying... ({e})"
            finally:
                self._cleanup_source()

            if self._stop.is_set():
                break
            self._set_status(CameraStatus.RETRYING)
            self._reset_state()
            self._emit_status(message)
            if self._stop.wait(max(0.0, float(self._cfg.retry_delay_s))):
                break

        self._reset_state()
        if self.status == CameraStatus.ERROR:
            # Keep the reason that put the camera into Error.
            self._emit_status()
        else:
            self._set_status(CameraStatus.INACTIVE)
            self._emit_status("Processing stopped.")

    def _start_source(self) -> None:
        self._set_status(CameraStatus.CONNECTING)
        self._emit_status("")
        if not self._camera.url:
            raise StreamConfigError(f"Camera {self.camera_id} has no stream URL configured")
        factory = self._cfg.source_factory
        if factory is not None:
            source = factory(self._camera.url, self._on_frame, self._on_stream_ended)
        else:
            try:
                stream_cfg = StreamSourceConfig.from_dict(self._camera.url, self._cfg.stream)
            except ValueError as e:
                raise StreamConfigError(str(e)) from e
            source = StreamSource(stream_cfg, self._on_frame, self._on_stream_ended)
        with self._source_lock:
            self._source = source
        source.start()

    def _cleanup_source(self) -> None:
        with self._source_lock:
            source = self._source
            self._source = None
        if source is not None:
            source.dispose()

    def _on_stream_ended(self, ended: StreamEnded) -> None:
        logger.warning("Cam %s: stream ended (%s) %s", self.camera_id, ended.reason.value, ended.message or "")
        self._last_end = ended
        self._stream_ended.set()

    def _on_frame(self, frame: RawFrame) -> None:
        if self._stop.is_set():
            return
        generation = self._current_generation()
        self._queue.offer_lazy(lambda: self._copy_frame(frame, generation))

    def _copy_frame(self, frame: RawFrame, generation: int) -> Optional[Tuple[int, RawFrame]]:
        try:
            return generation, frame.copy()
        except Exception:
            logger.exception("Cam %s: failed to copy frame", self.camera_id)
            return None

    def _work_loop(self) -> None:
        logger.info("Cam %s: frame processing worker started", self.camera_id)
        while True:
            item = self._queue.get()
            if item is None:
                break
            generation, frame = item
            try:
                self.process_frame(frame, generation)
            except Exception:
                logger.exception("Cam %s: failed to process frame, skipping", self.camera_id)
        logger.info("Cam %s: frame processing worker stopped", self.camera_id)

    def _apply_pending_settings(self) -> None:
        with self._settings_lock:
            pending = self._pending_settings
            self._pending_settings = None
            previous = self._settings
            if pending is not None:
                self._settings = pending
        if pending is None:
            return

        self._scheduler.set_schedule(TierSchedule.from_settings(pending))
        self._motion.configure(pending.motion_pixel_difference_threshold, pending.motion_detection_threshold)
        model_changed = (pending.model_type, pending.model_path) != (previous.model_type, previous.model_path)
        if self._owns_detector and model_changed:
            try:
                self._detector = self._create_detector(pending)
            except Exception as e:
                logger.error("Cam %s: detector reload failed: %s", self.camera_id, e)
                self._detector = None
                self._set_status(CameraStatus.ERROR)
                self._emit_status(f"Detector failed to initialize: {e}")
                self.stop()
                return
        logger.info("Cam %s: settings applied", self.camera_id)

    def _mark_streaming(self) -> None:
        with self._status_lock:
            if self._status not in (CameraStatus.CONNECTING, CameraStatus.NORMAL):
                return
        self._set_status(CameraStatus.NORMAL)

    def _reset_state(self) -> None:
        with self._detections_lock:
            self._generation += 1
            self._detections = []
        self._queue.clear()
        self._motion.reset()
        self._notify_count()

    def _notify_count(self) -> None:
        count = self.total_tracked_count
        for listener in list(self._listeners):
            try:
                listener(self.camera_id, count)
            except Exception:
                logger.exception("Cam %s: count listener failed", self.camera_id)

    def _encode_and_emit(self, image: np.ndarray, quality: int) -> None:
        uri: Optional[str]
        try:
            uri = encode_jpeg_data_uri(image, quality)
        except Exception:
            logger.exception("Cam %s: error encoding frame", self.camera_id)
            uri = None
        with self._frame_lock:
            self._last_frame_uri = uri
        self._emit_status()

    def _set_status(self, status: CameraStatus) -> None:
        with self._status_lock:
            if self._status == status:
                return
            self._status = status
        logger.info("Cam %s status: %s", self.camera_id, status.value)

    def _emit_status(self, message: Optional[str] = None) -> None:
        if message is not None:
            with self._status_lock:
                self._message = message
        self._hub.publish(CAMERA_STATUS, self.status_payload())
