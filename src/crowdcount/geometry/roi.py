from __future__ import annotations

from typing import Any, Iterable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from crowdcount.errors import RoiValidationError
from crowdcount.utils.types import Polygon

MIN_ROI_POINTS = 3
_COORD_TOLERANCE = 1e-6


def is_valid_roi(polygon: Optional[Sequence[Tuple[float, float]]]) -> bool:
    return polygon is not None and len(polygon) >= MIN_ROI_POINTS


def parse_roi(raw: Optional[Iterable[Any]]) -> Polygon:
    """Validate ``[[x, y], ...]`` in normalized coordinates.

    Fewer than three points is accepted and means "no ROI".
    """
    if raw is None:
        return []
    out: Polygon = []
    for i, p in enumerate(raw):
        try:
            if len(p) != 2:
                raise RoiValidationError(f"ROI point {i} must have exactly 2 coordinates")
            x, y = float(p[0]), float(p[1])
        except (TypeError, ValueError) as e:
            raise RoiValidationError(f"ROI point {i} is not a coordinate pair: {p!r}") from e
        if not (-_COORD_TOLERANCE <= x <= 1.0 + _COORD_TOLERANCE and -_COORD_TOLERANCE <= y <= 1.0 + _COORD_TOLERANCE):
            raise RoiValidationError(f"ROI point {i} is outside the normalized range 0..1: {p!r}")
        out.append((min(1.0, max(0.0, x)), min(1.0, max(0.0, y))))
    return out


def roi_to_payload(polygon: Polygon) -> List[List[float]]:
    return [[float(x), float(y)] for x, y in polygon]


def denormalize_polygon(polygon: Polygon, width: int, height: int) -> np.ndarray:
    pts = np.asarray(polygon, dtype=np.float64).reshape(-1, 2)
    return pts * np.array([float(width), float(height)], dtype=np.float64)


def normalize_polygon(points_xy: Sequence[Tuple[float, float]], width: int, height: int) -> Polygon:
    w = max(1.0, float(width))
    h = max(1.0, float(height))
    return [(float(x) / w, float(y) / h) for x, y in points_xy]


def _pixel_polygon(polygon: Polygon, width: int, height: int) -> np.ndarray:
    return np.round(denormalize_polygon(polygon, width, height)).astype(np.int32).reshape(-1, 1, 2)


def apply_roi_mask(frame_bgr: np.ndarray, polygon: Optional[Polygon]) -> np.ndarray:
    """Return a copy of the frame with everything outside the polygon blacked out."""
    if not is_valid_roi(polygon):
        return frame_bgr.copy()
    h, w = frame_bgr.shape[:2]
    mask = np.zeros((h, w), dtype=np.uint8)
    cv2.fillPoly(mask, [_pixel_polygon(polygon, w, h)], 255)  # type: ignore[arg-type]
    return cv2.bitwise_and(frame_bgr, frame_bgr, mask=mask)


def draw_roi_outline(frame_bgr: np.ndarray, polygon: Optional[Polygon], color_bgr: Tuple[int, int, int], thickness: int = 2) -> None:
    if not is_valid_roi(polygon):
        return
    h, w = frame_bgr.shape[:2]
    cv2.polylines(frame_bgr, [_pixel_polygon(polygon, w, h)], isClosed=True, color=color_bgr, thickness=int(thickness))  # type: ignore[arg-type]
