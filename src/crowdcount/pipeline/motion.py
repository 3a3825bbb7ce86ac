from __future__ import annotations

import threading
from typing import Optional, Tuple

import cv2
import numpy as np

MOTION_GRID = (64, 48)


class MotionGate:
    """Cheap frame-difference motion check on a fixed low-resolution grid."""

    def __init__(
        self,
        pixel_difference_threshold: int = 25,
        area_threshold: float = 0.005,
        grid_size: Tuple[int, int] = MOTION_GRID,
    ) -> None:
        self.pixel_difference_threshold = int(pixel_difference_threshold)
        self.area_threshold = float(area_threshold)
        self._grid_size = (int(grid_size[0]), int(grid_size[1]))
        self._previous: Optional[np.ndarray] = None
        self._lock = threading.Lock()

    def configure(self, pixel_difference_threshold: int, area_threshold: float) -> None:
        with self._lock:
            self.pixel_difference_threshold = int(pixel_difference_threshold)
            self.area_threshold = float(area_threshold)

    def reset(self) -> None:
        with self._lock:
            self._previous = None

    def update(self, frame_bgr: np.ndarray) -> bool:
        grid = self._luminance_grid(frame_bgr)
        with self._lock:
            previous = self._previous
            self._previous = grid
            if previous is None:
                return False
            diff = np.abs(grid.astype(np.int16) - previous.astype(np.int16))
            changed = int(np.count_nonzero(diff > self.pixel_difference_threshold))
            return changed / float(grid.size) > self.area_threshold

    def _luminance_grid(self, frame_bgr: np.ndarray) -> np.ndarray:
        small = cv2.resize(frame_bgr, self._grid_size, interpolation=cv2.INTER_AREA)
        if small.ndim == 2:
            return small
        return cv2.cvtColor(small, cv2.COLOR_BGR2GRAY)
