from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from crowdcount.detection.base import Detector
from crowdcount.detection.mock import MockDetector
from crowdcount.errors import DetectorUnavailableError
from crowdcount.utils.config import resolve_path
from crowdcount.utils.types import ProcessingSettings


logger = logging.getLogger("crowdcount.detection.registry")


def create_detector(settings: ProcessingSettings, base_dir: Optional[str] = None) -> Detector:
    backend = settings.model_type.lower()
    if backend == "mock":
        return MockDetector()

    if backend in {"yolo", "ultralytics_yolo"}:
        if not settings.model_path:
            raise DetectorUnavailableError("YOLO model path is not configured in settings")
        model_path = resolve_path(settings.model_path, base_dir)
        if not Path(model_path).is_file():
            raise DetectorUnavailableError(f"YOLO model not found at {model_path}")
        try:
            from crowdcount.detection.yolo_ultralytics import UltralyticsYoloDetector

            return UltralyticsYoloDetector(model_path=model_path)
        except Exception as e:
            logger.exception("Failed to load YOLO model: %s", model_path)
            raise DetectorUnavailableError(f"Failed to load YOLO model {model_path}: {e}") from e

    raise DetectorUnavailableError(f"Unknown detector backend: {settings.model_type}")
