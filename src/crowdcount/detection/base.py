from __future__ import annotations

import threading
from typing import List, Optional, Protocol

import numpy as np

from crowdcount.utils.types import Detection


class Detector(Protocol):
    def detect(
        self,
        image_bgr: np.ndarray,
        confidence_threshold: float,
        nms_threshold: float,
        target_classes: Optional[str],
    ) -> List[Detection]:
        ...


def parse_target_classes(target_classes: Optional[str]) -> Optional[List[str]]:
    if target_classes is None:
        return None
    names = [c.strip().lower() for c in str(target_classes).split(",")]
    names = [c for c in names if c]
    return names or None


class LockedDetector(Detector):
    """Serializes calls into a detector shared by several pipelines."""

    def __init__(self, detector: Detector) -> None:
        self.detector = detector
        self._lock = threading.Lock()

    def detect(
        self,
        image_bgr: np.ndarray,
        confidence_threshold: float,
        nms_threshold: float,
        target_classes: Optional[str],
    ) -> List[Detection]:
        with self._lock:
            return self.detector.detect(image_bgr, confidence_threshold, nms_threshold, target_classes)
