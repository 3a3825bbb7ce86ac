from __future__ import annotations

import base64

import cv2
import numpy as np

from crowdcount.errors import FrameEncodeError

JPEG_DATA_URI_PREFIX = "data:image/jpeg;base64,"


def encode_jpeg(frame_bgr: np.ndarray, quality: int = 75) -> bytes:
    ok, buf = cv2.imencode(".jpg", frame_bgr, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise FrameEncodeError("JPEG encoding failed")
    return buf.tobytes()


def encode_jpeg_data_uri(frame_bgr: np.ndarray, quality: int = 75) -> str:
    return JPEG_DATA_URI_PREFIX + base64.b64encode(encode_jpeg(frame_bgr, quality)).decode("ascii")
