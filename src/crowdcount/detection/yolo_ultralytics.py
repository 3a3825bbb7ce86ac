from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from crowdcount.detection.base import Detector, parse_target_classes
from crowdcount.utils.types import Detection


logger = logging.getLogger("crowdcount.detection.yolo")


@dataclass
class UltralyticsYoloDetector(Detector):
    model_path: str
    device: Optional[str] = None

    def __post_init__(self) -> None:
        from ultralytics import YOLO

        self._model = YOLO(self.model_path)
        logger.info("YOLO model loaded: %s", self.model_path)

    def detect(
        self,
        image_bgr: np.ndarray,
        confidence_threshold: float,
        nms_threshold: float,
        target_classes: Optional[str],
    ) -> List[Detection]:
        results = self._model.predict(
            source=image_bgr,
            conf=float(confidence_threshold),
            iou=float(nms_threshold),
            device=self.device,
            verbose=False,
        )
        if not results:
            return []
        r0 = results[0]
        names = r0.names if hasattr(r0, "names") else {}
        boxes = getattr(r0, "boxes", None)
        if boxes is None:
            return []
        wanted = parse_target_classes(target_classes)
        xyxy = boxes.xyxy.cpu().numpy()
        conf = boxes.conf.cpu().numpy()
        cls = boxes.cls.cpu().numpy().astype(int)
        dets: List[Detection] = []
        for (x1, y1, x2, y2), s, c in zip(xyxy, conf, cls):
            class_name = str(names.get(int(c), str(int(c))))
            if wanted is not None and class_name.lower() not in wanted:
                continue
            dets.append(
                Detection(
                    bbox_xywh=(float(x1), float(y1), float(x2 - x1), float(y2 - y1)),
                    class_name=class_name,
                    confidence=float(s),
                    class_id=int(c),
                )
            )
        return dets
