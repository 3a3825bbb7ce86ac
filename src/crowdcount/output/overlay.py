from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from crowdcount.geometry.roi import draw_roi_outline
from crowdcount.utils.types import Detection, Polygon, ProcessingTier

Color = Tuple[int, int, int]


@dataclass
class OverlayRenderer:
    roi_color_bgr: Color = (0, 255, 0)
    box_color_bgr: Color = (255, 255, 0)
    active_color_bgr: Color = (50, 205, 50)
    scanning_color_bgr: Color = (0, 165, 255)
    standby_color_bgr: Color = (128, 128, 128)
    thickness: int = 2

    def draw(
        self,
        frame_bgr: np.ndarray,
        roi: Optional[Polygon],
        detections: List[Detection],
        tier: ProcessingTier,
        idle_scan_enabled: bool,
    ) -> np.ndarray:
        img = frame_bgr
        draw_roi_outline(img, roi, self.roi_color_bgr, self.thickness)

        for d in detections:
            x1, y1, x2, y2 = d.bbox_xyxy
            p1 = (int(x1), int(y1))
            p2 = (int(x2), int(y2))
            cv2.rectangle(img, p1, p2, self.box_color_bgr, self.thickness)
            cv2.putText(img, d.class_name, (p1[0], max(0, p1[1] - 5)), cv2.FONT_HERSHEY_SIMPLEX, 0.45, self.box_color_bgr, 1)

        text, color = self.mode_label(tier, idle_scan_enabled)
        cv2.putText(img, text, (10, 20), cv2.FONT_HERSHEY_SIMPLEX, 0.55, color, 2)
        return img

    def mode_label(self, tier: ProcessingTier, idle_scan_enabled: bool) -> Tuple[str, Color]:
        if tier == ProcessingTier.ACTIVE:
            return "MODE: ACTIVE", self.active_color_bgr
        if idle_scan_enabled:
            return "MODE: SCANNING", self.scanning_color_bgr
        return "MODE: STANDBY", self.standby_color_bgr
