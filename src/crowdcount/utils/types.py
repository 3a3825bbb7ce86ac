from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from crowdcount.utils.config import as_bool

BBoxXYWH = Tuple[float, float, float, float]
Polygon = List[Tuple[float, float]]


class CameraStatus(str, Enum):
    INACTIVE = "Inactive"
    CONNECTING = "Connecting"
    NORMAL = "Normal"
    RETRYING = "Retrying"
    ERROR = "Error"


class ProcessingTier(str, Enum):
    ACTIVE = "Active"
    IDLE_SCAN = "IdleScan"


@dataclass(frozen=True)
class Detection:
    bbox_xywh: BBoxXYWH
    class_name: str
    confidence: float
    class_id: int

    @property
    def bbox_xyxy(self) -> Tuple[float, float, float, float]:
        x, y, w, h = self.bbox_xywh
        return (x, y, x + w, y + h)


@dataclass(frozen=True)
class Camera:
    camera_id: int
    name: str
    url: str
    enabled: bool = True
    last_updated: Optional[str] = None

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Camera":
        last = d.get("last_updated")
        return Camera(
            camera_id=int(d["id"]),
            name=str(d.get("name", f"camera-{d['id']}")),
            url=str(d.get("url") or "").strip(),
            enabled=as_bool(d.get("enabled"), True),
            last_updated=str(last) if last is not None else None,
        )


@dataclass
class Zone:
    zone_id: int
    name: str
    camera_ids: List[int] = field(default_factory=list)
    total_tracked_count: int = 0

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Zone":
        return Zone(
            zone_id=int(d["id"]),
            name=str(d.get("name", f"zone-{d['id']}")),
            camera_ids=[int(x) for x in (d.get("cameras") or [])],
        )

    def to_payload(self) -> Dict[str, Any]:
        return {"id": self.zone_id, "name": self.name, "totalTrackedCount": self.total_tracked_count}


@dataclass
class Location:
    location_id: int
    name: str
    zone_ids: List[int] = field(default_factory=list)
    total_tracked_count: int = 0

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "Location":
        return Location(
            location_id=int(d["id"]),
            name=str(d.get("name", f"location-{d['id']}")),
            zone_ids=[int(x) for x in (d.get("zones") or [])],
        )

    def to_payload(self) -> Dict[str, Any]:
        return {"id": self.location_id, "name": self.name, "totalTrackedCount": self.total_tracked_count}


@dataclass(frozen=True)
class ProcessingSettings:
    model_type: str = "yolo"
    model_path: str = ""
    confidence_threshold: float = 0.3
    nms_threshold: float = 0.45
    target_classes: Optional[str] = "person"
    idle_scan_mode_enabled: bool = True
    active_mode_process_nth_frame: int = 5
    active_state_timeout_seconds: float = 15.0
    idle_scan_mode_interval_seconds: float = 10.0
    motion_detection_threshold: float = 0.005
    motion_pixel_difference_threshold: int = 25
    shared_detector: bool = False
    jpeg_quality: int = 75

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "ProcessingSettings":
        nth = int(d.get("active_mode_process_nth_frame", 5))
        target = d.get("target_classes", "person")
        if isinstance(target, (list, tuple)):
            target = ",".join(str(x) for x in target)
        return ProcessingSettings(
            model_type=str(d.get("model_type", "yolo")).lower(),
            model_path=str(d.get("model_path") or ""),
            confidence_threshold=float(d.get("confidence_threshold", 0.3)),
            nms_threshold=float(d.get("nms_threshold", 0.45)),
            target_classes=str(target) if target is not None else None,
            idle_scan_mode_enabled=as_bool(d.get("idle_scan_mode_enabled"), True),
            active_mode_process_nth_frame=nth if nth > 0 else 1,
            active_state_timeout_seconds=float(d.get("active_state_timeout_seconds", 15.0)),
            idle_scan_mode_interval_seconds=float(d.get("idle_scan_mode_interval_seconds", 10.0)),
            motion_detection_threshold=float(d.get("motion_detection_threshold", 0.005)),
            motion_pixel_difference_threshold=int(d.get("motion_pixel_difference_threshold", 25)),
            shared_detector=as_bool(d.get("shared_detector"), False),
            jpeg_quality=max(1, min(100, int(d.get("jpeg_quality", 75)))),
        )


Transport = Literal["tcp", "udp"]


@dataclass(frozen=True)
class NotificationRule:
    rule_id: int
    name: str
    host: str
    port: int
    interval_ms: int
    protocol: Transport = "tcp"
    enabled: bool = True

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "NotificationRule":
        protocol = str(d.get("protocol", "tcp")).lower()
        if protocol not in {"tcp", "udp"}:
            raise ValueError(f"Unknown notification protocol: {protocol}")
        interval_ms = int(d.get("interval_ms", 1000))
        if interval_ms <= 0:
            raise ValueError("notification interval_ms must be positive")
        return NotificationRule(
            rule_id=int(d["id"]),
            name=str(d.get("name", f"rule-{d['id']}")),
            host=str(d["host"]),
            port=int(d["port"]),
            interval_ms=interval_ms,
            protocol=protocol,  # type: ignore[arg-type]
            enabled=as_bool(d.get("enabled"), True),
        )
