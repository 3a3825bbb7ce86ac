from .config import as_bool, dump_yaml_atomic, load_yaml, redact_url, resolve_path
from .logging import setup_logging
from .types import (
    BBoxXYWH,
    Camera,
    CameraStatus,
    Detection,
    Location,
    NotificationRule,
    Polygon,
    ProcessingSettings,
    ProcessingTier,
    Zone,
)

__all__ = [
    "BBoxXYWH",
    "Camera",
    "CameraStatus",
    "Detection",
    "Location",
    "NotificationRule",
    "Polygon",
    "ProcessingSettings",
    "ProcessingTier",
    "Zone",
    "as_bool",
    "dump_yaml_atomic",
    "load_yaml",
    "redact_url",
    "resolve_path",
    "setup_logging",
]
