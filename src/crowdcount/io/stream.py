from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlsplit

import cv2
import numpy as np

from crowdcount.errors import StreamConfigError, StreamOpenError
from crowdcount.io.frames import YUV_FORMATS, RawFrame
from crowdcount.utils.config import redact_url


logger = logging.getLogger("crowdcount.io.stream")

_FFMPEG_OPTIONS_ENV = "OPENCV_FFMPEG_CAPTURE_OPTIONS"
_ffmpeg_env_lock = threading.Lock()


class StreamEndReason(str, Enum):
    STOPPED = "Stopped"
    END_OF_FILE = "EndOfFile"
    ERROR = "Error"


@dataclass(frozen=True)
class StreamEnded:
    reason: StreamEndReason
    message: Optional[str] = None


@dataclass(frozen=True)
class StreamSourceConfig:
    url: str
    transport: str = "tcp"
    open_timeout_ms: int = 5000
    read_timeout_ms: int = 5000
    join_timeout_s: float = 2.0
    pixel_format: str = "bgr24"

    @property
    def raw_yuv(self) -> bool:
        return self.pixel_format in YUV_FORMATS

    @staticmethod
    def from_dict(url: str, d: Optional[Dict[str, Any]] = None) -> "StreamSourceConfig":
        d = d or {}
        fmt = str(d.get("pixel_format", "bgr24")).lower()
        if fmt != "bgr24" and fmt not in YUV_FORMATS:
            raise ValueError(f"Unsupported stream pixel_format: {fmt}")
        return StreamSourceConfig(
            url=str(url),
            transport=str(d.get("transport", "tcp")).lower(),
            open_timeout_ms=int(d.get("open_timeout_ms", 5000)),
            read_timeout_ms=int(d.get("read_timeout_ms", 5000)),
            join_timeout_s=float(d.get("join_timeout_s", 2.0)),
            pixel_format=fmt,
        )


FrameCallback = Callable[[RawFrame], None]
EndedCallback = Callable[[StreamEnded], None]
CaptureFactory = Callable[[StreamSourceConfig], Any]


def _ensure_ffmpeg_transport(transport: str) -> None:
    # The FFmpeg backend reads its demuxer options from the environment at open time.
    with _ffmpeg_env_lock:
        if _FFMPEG_OPTIONS_ENV not in os.environ:
            os.environ[_FFMPEG_OPTIONS_ENV] = f"rtsp_transport;{transport}"


def open_capture(cfg: StreamSourceConfig) -> cv2.VideoCapture:
    _ensure_ffmpeg_transport(cfg.transport)
    params = [
        cv2.CAP_PROP_OPEN_TIMEOUT_MSEC,
        int(cfg.open_timeout_ms),
        cv2.CAP_PROP_READ_TIMEOUT_MSEC,
        int(cfg.read_timeout_ms),
    ]
    return cv2.VideoCapture(cfg.url, cv2.CAP_FFMPEG, params)


class StreamSource:
    """Decodes one video stream on a dedicated thread.

    ``on_frame`` receives frames that alias a buffer reused for the next read,
    so consumers must copy what they keep. ``on_ended`` fires exactly once per
    successful :meth:`start`, after the last frame callback has returned.
    """

    def __init__(
        self,
        cfg: StreamSourceConfig,
        on_frame: FrameCallback,
        on_ended: EndedCallback,
        capture_factory: CaptureFactory = open_capture,
    ) -> None:
        if not cfg.url.strip():
            raise StreamConfigError("Stream URL is not configured")
        self._cfg = cfg
        self._on_frame: Optional[FrameCallback] = on_frame
        self._on_ended: Optional[EndedCallback] = on_ended
        self._capture_factory = capture_factory
        self._cap: Any = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._ended_fired = True
        self._disposed = False

    @property
    def url(self) -> str:
        return self._cfg.url

    @property
    def is_playing(self) -> bool:
        t = self._thread
        return t is not None and t.is_alive() and not self._stop.is_set()

    def start(self) -> None:
        if self._disposed:
            logger.warning("start() called on disposed stream source: %s", redact_url(self._cfg.url))
            return
        if self._thread is not None and self._thread.is_alive():
            logger.warning("start() called on running stream source: %s", redact_url(self._cfg.url))
            return

        logger.info("Opening stream: %s", redact_url(self._cfg.url))
        try:
            cap = self._capture_factory(self._cfg)
        except Exception as e:
            raise StreamOpenError(f"Failed to open stream {redact_url(self._cfg.url)}: {e}") from e
        if cap is None or not cap.isOpened():
            if cap is not None:
                cap.release()
            raise StreamOpenError(f"Failed to open stream {redact_url(self._cfg.url)}")
        try:
            cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        except Exception:
            pass
        if self._cfg.raw_yuv:
            # Ask the backend for planar I420 instead of converted BGR.
            cap.set(cv2.CAP_PROP_CONVERT_RGB, 0)

        with self._lock:
            self._cap = cap
            self._ended_fired = False
        self._stop.clear()
        self._thread = threading.Thread(target=self._decode_loop, name=f"decode-{self._thread_tag()}", daemon=True)
        self._thread.start()
        logger.info("Decoding thread started for %s", redact_url(self._cfg.url))

    def stop(self) -> None:
        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=max(0.0, float(self._cfg.join_timeout_s)))
            if t.is_alive():
                logger.warning("Decoding thread did not exit within %.1fs: %s", self._cfg.join_timeout_s, redact_url(self._cfg.url))
        if t is None or not t.is_alive():
            self._release_capture()
        self._fire_ended(StreamEnded(StreamEndReason.STOPPED))

    def dispose(self) -> None:
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
        self.stop()
        self._on_frame = None
        self._on_ended = None

    def __enter__(self) -> "StreamSource":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.dispose()

    def _decode_loop(self) -> None:
        ended = StreamEnded(StreamEndReason.ERROR, "Decoding loop exited unexpectedly.")
        buf: Optional[np.ndarray] = None
        try:
            while not self._stop.is_set():
                cap = self._cap
                if cap is None:
                    break
                ok, frame = cap.read(buf) if buf is not None else cap.read()
                if not ok or frame is None:
                    ended = self._classify_read_failure(cap)
                    logger.warning("Stream read ended (%s): %s", ended.reason.value, redact_url(self._cfg.url))
                    break
                buf = frame
                cb = self._on_frame
                if cb is not None and not self._stop.is_set():
                    cb(self._wrap_decoded(frame))
            else:
                ended = StreamEnded(StreamEndReason.STOPPED)
        except Exception as e:
            logger.exception("Unexpected exception in decoding loop for %s", redact_url(self._cfg.url))
            ended = StreamEnded(StreamEndReason.ERROR, str(e))
        finally:
            self._release_capture()
            self._fire_ended(ended)

    def _wrap_decoded(self, frame: np.ndarray) -> RawFrame:
        if frame.ndim == 2 and self._cfg.raw_yuv:
            w = frame.shape[1]
            h = frame.shape[0] * 2 // 3
            return RawFrame.wrap(frame, w, h, w, self._cfg.pixel_format)
        h, w = frame.shape[:2]
        return RawFrame.wrap(frame, w, h, w * 3, "bgr24")

    def _classify_read_failure(self, cap: Any) -> StreamEnded:
        try:
            total = float(cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0.0)
            pos = float(cap.get(cv2.CAP_PROP_POS_FRAMES) or 0.0)
        except Exception:
            total, pos = 0.0, 0.0
        if total > 0 and pos >= total:
            return StreamEnded(StreamEndReason.END_OF_FILE, "End of stream")
        return StreamEnded(StreamEndReason.ERROR, "Failed to read frame from stream")

    def _release_capture(self) -> None:
        with self._lock:
            cap = self._cap
            self._cap = None
        if cap is not None:
            cap.release()

    def _fire_ended(self, ended: StreamEnded) -> None:
        with self._lock:
            if self._ended_fired or self._disposed:
                self._ended_fired = True
                return
            self._ended_fired = True
            cb = self._on_ended
        if cb is not None:
            cb(ended)

    def _thread_tag(self) -> str:
        host, port = parse_stream_host(self._cfg.url)
        return f"{host}:{port}" if host else "stream"


def parse_stream_host(url: str, default_port: int = 554) -> Tuple[Optional[str], int]:
    try:
        parts = urlsplit(url)
        host = parts.hostname
        port = parts.port or default_port
    except ValueError:
        return None, 0
    if not host:
        return None, 0
    return host, int(port)
