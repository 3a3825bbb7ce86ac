from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from crowdcount.detection.base import Detector, parse_target_classes
from crowdcount.utils.types import Detection


@dataclass
class MockDetector(Detector):
    detections: List[Detection] = field(default_factory=list)

    def detect(
        self,
        image_bgr: np.ndarray,
        confidence_threshold: float,
        nms_threshold: float,
        target_classes: Optional[str],
    ) -> List[Detection]:
        _ = (image_bgr, nms_threshold)
        wanted = parse_target_classes(target_classes)
        return [
            d
            for d in self.detections
            if d.confidence >= confidence_threshold and (wanted is None or d.class_name.lower() in wanted)
        ]
