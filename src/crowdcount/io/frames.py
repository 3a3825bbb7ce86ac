from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

import cv2
import numpy as np


# Deprecated JPEG-range aliases and the format they stand for (always full range).
_FULL_RANGE_ALIASES: Dict[str, str] = {"yuvj420p": "yuv420p"}

YUV_FORMATS = ("yuv420p", "yuvj420p")


def normalize_pixel_format(pixel_format: str) -> Tuple[str, bool]:
    """Map a pixel format name to ``(canonical_format, full_range)``."""
    fmt = str(pixel_format).lower()
    if fmt in _FULL_RANGE_ALIASES:
        return _FULL_RANGE_ALIASES[fmt], True
    return fmt, False


@dataclass(frozen=True)
class RawFrame:
    """A decoded picture as a flat byte buffer (``bgr24`` or planar I420).

    Frames handed out by a stream source may alias the decoder's reusable
    buffer. Call :meth:`copy` before keeping one past the callback.
    """

    data: np.ndarray
    width: int
    height: int
    stride: int
    pixel_format: str = "bgr24"

    @staticmethod
    def wrap(buffer: np.ndarray, width: int, height: int, stride: int, pixel_format: str = "bgr24") -> "RawFrame":
        flat = np.asarray(buffer, dtype=np.uint8).reshape(-1)
        return RawFrame(data=flat, width=int(width), height=int(height), stride=int(stride), pixel_format=str(pixel_format))

    @staticmethod
    def from_bgr(image_bgr: np.ndarray) -> "RawFrame":
        h, w = image_bgr.shape[:2]
        return RawFrame.wrap(np.ascontiguousarray(image_bgr), w, h, w * 3, "bgr24")

    def copy(self) -> "RawFrame":
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Invalid frame size {self.width}x{self.height}")
        needed = self._required_bytes()
        if self.data.size < needed:
            raise ValueError(f"Frame buffer too small: {self.data.size} < {needed}")
        return RawFrame(
            data=np.array(self.data[:needed], dtype=np.uint8, copy=True),
            width=self.width,
            height=self.height,
            stride=self.stride,
            pixel_format=self.pixel_format,
        )

    def to_bgr(self) -> np.ndarray:
        fmt, full_range = normalize_pixel_format(self.pixel_format)
        if fmt == "bgr24":
            rows = self.data[: self.stride * self.height].reshape(self.height, self.stride)
            return np.ascontiguousarray(rows[:, : self.width * 3].reshape(self.height, self.width, 3))
        if fmt == "yuv420p":
            return self._i420_to_bgr(full_range)
        raise ValueError(f"Unsupported pixel format: {self.pixel_format}")

    def _required_bytes(self) -> int:
        fmt, _ = normalize_pixel_format(self.pixel_format)
        if fmt == "yuv420p":
            return self.stride * self.height + 2 * (self.stride // 2) * ((self.height + 1) // 2)
        return self.stride * self.height

    def _i420_to_bgr(self, full_range: bool) -> np.ndarray:
        w, h = self.width, self.height
        if w % 2 or h % 2:
            raise ValueError(f"I420 frames need even dimensions, got {w}x{h}")
        c_stride = self.stride // 2
        y_size = self.stride * h
        c_size = c_stride * (h // 2)
        y = self.data[:y_size].reshape(h, self.stride)[:, :w]
        u = self.data[y_size : y_size + c_size].reshape(h // 2, c_stride)[:, : w // 2]
        v = self.data[y_size + c_size : y_size + 2 * c_size].reshape(h // 2, c_stride)[:, : w // 2]
        if full_range:
            # cv2's I420 conversion expects studio swing (Y 16..235, C 16..240).
            y = (y.astype(np.float32) * (219.0 / 255.0) + 16.0).round().astype(np.uint8)
            u = ((u.astype(np.float32) - 128.0) * (224.0 / 255.0) + 128.0).round().astype(np.uint8)
            v = ((v.astype(np.float32) - 128.0) * (224.0 / 255.0) + 128.0).round().astype(np.uint8)
        planes = np.concatenate([y.reshape(-1), u.reshape(-1), v.reshape(-1)]).reshape(h * 3 // 2, w)
        return cv2.cvtColor(planes, cv2.COLOR_YUV2BGR_I420)
