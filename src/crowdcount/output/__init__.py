from .encoding import JPEG_DATA_URI_PREFIX, encode_jpeg, encode_jpeg_data_uri
from .hub import CAMERA_STATUS, LOCATION_STATUS, ZONE_STATUS, StatusHub
from .notifier import NotificationDispatcher, build_notification_payload, send_notification, send_tcp, send_udp
from .overlay import OverlayRenderer

__all__ = [
    "CAMERA_STATUS",
    "JPEG_DATA_URI_PREFIX",
    "LOCATION_STATUS",
    "NotificationDispatcher",
    "OverlayRenderer",
    "StatusHub",
    "ZONE_STATUS",
    "build_notification_payload",
    "encode_jpeg",
    "encode_jpeg_data_uri",
    "send_notification",
    "send_tcp",
    "send_udp",
]
