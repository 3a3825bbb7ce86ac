from __future__ import annotations

import logging
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from crowdcount.detection.base import Detector, LockedDetector
from crowdcount.detection.registry import create_detector
from crowdcount.errors import DetectorUnavailableError
from crowdcount.geometry.roi import roi_to_payload
from crowdcount.io.stream import parse_stream_host
from crowdcount.output.hub import CAMERA_STATUS, LOCATION_STATUS, ZONE_STATUS, StatusHub
from crowdcount.pipeline.camera_pipeline import RETRY_DELAY_S, CameraPipeline, CameraPipelineConfig
from crowdcount.storage.base import ConfigStore
from crowdcount.utils.config import redact_url
from crowdcount.utils.types import Camera, CameraStatus, Location, ProcessingSettings, Zone


logger = logging.getLogger("crowdcount.pipeline.orchestrator")

DEFAULT_RTSP_PORT = 554
UNREACHABLE_ON_STARTUP = "Host unreachable on startup"
ROI_SAVED = "ROI update received and saved"


def probe_host(host: str, port: int, timeout_s: float) -> bool:
    try:
        with socket.create_connection((host, int(port)), timeout=float(timeout_s)):
            return True
    except OSError as e:
        logger.debug("Probe %s:%s failed: %s", host, port, e)
        return False


@dataclass(frozen=True)
class OrchestratorConfig:
    probe_timeout_s: float = 2.0
    max_workers: int = 8
    retry_delay_s: float = RETRY_DELAY_S
    stop_timeout_s: float = 5.0
    base_dir: Optional[str] = None
    stream: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_dict(d: Dict[str, Any], base_dir: Optional[str] = None) -> "OrchestratorConfig":
        return OrchestratorConfig(
            probe_timeout_s=float(d.get("probe_timeout_s", 2.0)),
            max_workers=max(1, int(d.get("max_workers", 8))),
            retry_delay_s=float(d.get("retry_delay_s", RETRY_DELAY_S)),
            stop_timeout_s=float(d.get("stop_timeout_s", 5.0)),
            base_dir=base_dir,
            stream=dict(d.get("stream") or {}),
        )


PipelineFactory = Callable[[CameraPipelineConfig], CameraPipeline]
ProbeFn = Callable[[str, int, float], bool]


class Orchestrator:
    """Owns the camera pipelines and the zone/location aggregates.

    Cameras are probed and started concurrently; ``wait_initialized`` blocks
    until every start attempt has finished. Zone and location totals are
    recomputed from the live pipelines on each count event.
    """

    def __init__(
        self,
        store: ConfigStore,
        hub: StatusHub,
        cfg: Optional[OrchestratorConfig] = None,
        pipeline_factory: PipelineFactory = CameraPipeline,
        probe: ProbeFn = probe_host,
    ) -> None:
        self._store = store
        self._hub = hub
        self._cfg = cfg or OrchestratorConfig()
        self._pipeline_factory = pipeline_factory
        self._probe = probe

        self._lifecycle_lock = threading.RLock()
        self._pipelines_lock = threading.Lock()
        self._agg_lock = threading.Lock()
        self._initialized = threading.Event()
        self._running = False

        self._pipelines: Dict[int, CameraPipeline] = {}
        self._cameras: Dict[int, Camera] = {}
        self._zones: Dict[int, Zone] = {}
        self._locations: Dict[int, Location] = {}
        self._camera_zones: Dict[int, List[int]] = {}
        self._zone_locations: Dict[int, List[int]] = {}
        self._shared_detector: Optional[Detector] = None

    @property
    def is_initialized(self) -> bool:
        return self._initialized.is_set()

    @property
    def is_running(self) -> bool:
        return self._running

    def wait_initialized(self, timeout: Optional[float] = None) -> bool:
        return self._initialized.wait(timeout)

    def start(self) -> None:
        with self._lifecycle_lock:
            if self._running:
                return
            self._initialized.clear()
            self._running = True
            try:
                self._load_topology()
                settings = self._store.settings()
                self._shared_detector = self._make_shared_detector(settings)
                cameras = [self._cameras[cid] for cid in sorted(self._cameras)]
                logger.info("Starting %d camera(s)", len(cameras))
                self._start_cameras(cameras, settings)
            except Exception:
                self._running = False
                raise
            finally:
                self._initialized.set()
            with self._pipelines_lock:
                active = len(self._pipelines)
            logger.info("Initialization finished: %d/%d camera(s) active", active, len(self._cameras))

    def stop(self) -> None:
        with self._lifecycle_lock:
            self._running = False
            with self._pipelines_lock:
                pipelines = list(self._pipelines.values())
                self._pipelines.clear()
            for p in pipelines:
                p.stop()
            deadline = time.monotonic() + max(0.0, self._cfg.stop_timeout_s)
            for p in pipelines:
                p.close(timeout=max(0.0, deadline - time.monotonic()))
            self._shared_detector = None
            with self._agg_lock:
                for z in self._zones.values():
                    z.total_tracked_count = 0
                for loc in self._locations.values():
                    loc.total_tracked_count = 0
            self._initialized.clear()
            logger.info("Stopped %d camera pipeline(s)", len(pipelines))

    def reload(self) -> None:
        with self._lifecycle_lock:
            self.stop()
            self._store.reload()
            self.start()

    def reload_settings(self) -> ProcessingSettings:
        self._store.reload()
        settings = self._store.settings()
        pipelines = self.active_pipelines()
        for p in pipelines:
            p.reload_settings(settings)
        logger.info("Processing settings reloaded for %d camera(s)", len(pipelines))
        return settings

    def get_pipeline(self, camera_id: int) -> Optional[CameraPipeline]:
        with self._pipelines_lock:
            return self._pipelines.get(int(camera_id))

    def active_pipelines(self) -> List[CameraPipeline]:
        with self._pipelines_lock:
            return [self._pipelines[k] for k in sorted(self._pipelines)]

    def camera_statuses(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for cid in sorted(self._cameras):
            p = self.get_pipeline(cid)
            if p is not None:
                out.append(p.status_payload())
            else:
                out.append(self._error_payload(self._cameras[cid], UNREACHABLE_ON_STARTUP))
        return out

    def zone_statuses(self) -> List[Dict[str, Any]]:
        with self._agg_lock:
            return [self._zones[k].to_payload() for k in sorted(self._zones)]

    def location_statuses(self) -> List[Dict[str, Any]]:
        with self._agg_lock:
            return [self._locations[k].to_payload() for k in sorted(self._locations)]

    def location_counts(self) -> List[Dict[str, Any]]:
        with self._agg_lock:
            out = []
            for lid in sorted(self._locations):
                loc = self._locations[lid]
                zones = [self._zones[z] for z in loc.zone_ids if z in self._zones]
                out.append(
                    {
                        "locationName": loc.name,
                        "total": loc.total_tracked_count,
                        "zones": [{"zoneName": z.name, "total": z.total_tracked_count} for z in zones],
                    }
                )
            return out

    def initial_state(self) -> Dict[str, Any]:
        return {
            "cameras": self.camera_statuses(),
            "zones": self.zone_statuses(),
            "locations": self.location_statuses(),
        }

    def set_roi(self, camera_id: int, polygon: Any) -> Dict[str, Any]:
        """Apply and persist a ROI; raises RoiValidationError for bad polygons."""
        p = self.get_pipeline(camera_id)
        if p is None:
            logger.warning("ROI update for unavailable camera %s", camera_id)
            return {"cameraId": int(camera_id), "error": f"Camera {camera_id} not active/available for ROI."}
        p.set_roi(polygon)
        return {"cameraId": int(camera_id), "message": ROI_SAVED}

    def handle_roi_command(self, command: Dict[str, Any]) -> Dict[str, Any]:
        if "cameraId" not in command:
            raise ValueError("ROI command requires 'cameraId'")
        return self.set_roi(int(command["cameraId"]), command.get("polygon"))

    def _load_topology(self) -> None:
        cameras = {c.camera_id: c for c in self._store.enabled_cameras()}
        zones = {z.zone_id: z for z in self._store.zones()}
        locations = {loc.location_id: loc for loc in self._store.locations()}

        camera_zones: Dict[int, List[int]] = {}
        for z in zones.values():
            for cid in z.camera_ids:
                camera_zones.setdefault(cid, []).append(z.zone_id)
        zone_locations: Dict[int, List[int]] = {}
        for loc in locations.values():
            for zid in loc.zone_ids:
                if zid not in zones:
                    logger.warning("Location %s references unknown zone %s", loc.location_id, zid)
                    continue
                zone_locations.setdefault(zid, []).append(loc.location_id)

        self._cameras = cameras
        with self._agg_lock:
            self._zones = zones
            self._locations = locations
            self._camera_zones = camera_zones
            self._zone_locations = zone_locations

    def _make_shared_detector(self, settings: ProcessingSettings) -> Optional[Detector]:
        if not settings.shared_detector:
            return None
        try:
            return LockedDetector(create_detector(settings, self._cfg.base_dir))
        except DetectorUnavailableError as e:
            # Each pipeline then reports its own detector failure.
            logger.error("Shared detector unavailable: %s", e)
            return None

    def _start_cameras(self, cameras: List[Camera], settings: ProcessingSettings) -> None:
        if not cameras:
            return
        workers = max(1, min(self._cfg.max_workers, len(cameras)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="camera-start") as pool:
            futures = {pool.submit(self._start_camera, cam, settings): cam for cam in cameras}
            for fut in as_completed(futures):
                cam = futures[fut]
                try:
                    fut.result()
                except Exception as e:
                    logger.exception("Failed to start pipeline for camera %s", cam.camera_id)
                    self._mark_failed(cam, f"Failed to start: {e}")

    def _start_camera(self, cam: Camera, settings: ProcessingSettings) -> None:
        if self.get_pipeline(cam.camera_id) is not None:
            return
        host, port = parse_stream_host(cam.url, DEFAULT_RTSP_PORT)
        if host is None:
            self._mark_failed(cam, "Stream URL is missing or invalid")
            return
        if not self._probe(host, port, self._cfg.probe_timeout_s):
            self._mark_failed(cam, f"Host unreachable at {host}:{port}")
            return

        pipeline = self._pipeline_factory(
            CameraPipelineConfig(
                camera=cam,
                settings=settings,
                hub=self._hub,
                roi_store=self._store,
                initial_roi=self._store.get_roi(cam.camera_id),
                detector=self._shared_detector,
                retry_delay_s=self._cfg.retry_delay_s,
                stream=self._cfg.stream,
                base_dir=self._cfg.base_dir,
            )
        )
        pipeline.add_count_listener(self._on_count_changed)
        with self._pipelines_lock:
            if cam.camera_id in self._pipelines:
                return
            self._pipelines[cam.camera_id] = pipeline
        logger.info("Starting camera %s (%s) at %s", cam.camera_id, cam.name, redact_url(cam.url))
        pipeline.start()

    def _mark_failed(self, cam: Camera, message: str) -> None:
        logger.error("Camera %s (%s): %s", cam.camera_id, cam.name, message)
        self._hub.publish(CAMERA_STATUS, self._error_payload(cam, message))

    def _error_payload(self, cam: Camera, message: str) -> Dict[str, Any]:
        return {
            "cameraId": cam.camera_id,
            "name": cam.name,
            "status": CameraStatus.ERROR.value,
            "frameDataUri": "",
            "totalTrackedCount": 0,
            "roi": roi_to_payload(self._store.get_roi(cam.camera_id)),
            "message": message,
        }

    def _camera_count(self, camera_id: int) -> int:
        p = self.get_pipeline(camera_id)
        return p.total_tracked_count if p is not None else 0

    def _on_count_changed(self, camera_id: int, count: int) -> None:
        with self._agg_lock:
            zone_ids = self._camera_zones.get(camera_id, [])
            if not zone_ids:
                return
            zone_payloads = []
            location_ids: List[int] = []
            for zid in zone_ids:
                zone = self._zones[zid]
                zone.total_tracked_count = sum(self._camera_count(c) for c in zone.camera_ids)
                zone_payloads.append(zone.to_payload())
                for lid in self._zone_locations.get(zid, []):
                    if lid not in location_ids:
                        location_ids.append(lid)
            location_payloads = []
            for lid in location_ids:
                loc = self._locations[lid]
                loc.total_tracked_count = sum(
                    self._zones[z].total_tracked_count for z in loc.zone_ids if z in self._zones
                )
                location_payloads.append(loc.to_payload())

        for payload in zone_payloads:
            self._hub.publish(ZONE_STATUS, payload)
        for payload in location_payloads:
            self._hub.publish(LOCATION_STATUS, payload)
