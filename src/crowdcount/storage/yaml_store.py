from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from crowdcount.geometry.roi import parse_roi, roi_to_payload
from crowdcount.utils.config import dump_yaml_atomic, load_yaml, resolve_path
from crowdcount.utils.types import Camera, Location, NotificationRule, Polygon, ProcessingSettings, Zone


logger = logging.getLogger("crowdcount.storage.yaml")

DEFAULT_ROIS_FILE = "rois.yaml"


def _as_list(cfg: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
    items = cfg.get(key) or []
    if not isinstance(items, list):
        raise ValueError(f"'{key}' must be a list")
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValueError(f"'{key}[{i}]' must be a mapping")
    return items


class YamlConfigStore:
    """Monitor configuration backed by a YAML file plus a separate ROI file.

    Reads are served from the last loaded snapshot; ``reload()`` re-reads the
    files. ROI writes replace the ROI file atomically.
    """

    def __init__(self, path: str, rois_path: Optional[str] = None) -> None:
        self._path = resolve_path(path)
        self._rois_override = rois_path
        self._lock = threading.Lock()
        self._roi_lock = threading.Lock()
        self._cfg: Dict[str, Any] = {}
        self._rois: Dict[int, Polygon] = {}
        self._rois_path = ""
        self.reload()

    @property
    def path(self) -> str:
        return self._path

    @property
    def base_dir(self) -> str:
        return str(Path(self._path).parent)

    @property
    def rois_path(self) -> str:
        return self._rois_path

    def reload(self) -> None:
        cfg = load_yaml(self._path)
        rois_path = self._rois_override or str(cfg.get("rois_path") or DEFAULT_ROIS_FILE)
        rois_path = resolve_path(rois_path, self.base_dir)
        rois = self._load_rois(rois_path)
        with self._lock:
            self._cfg = cfg
        with self._roi_lock:
            self._rois_path = rois_path
            self._rois = rois
        logger.info("Loaded monitor config: %s (rois: %s)", self._path, rois_path)

    def enabled_cameras(self) -> List[Camera]:
        with self._lock:
            items = _as_list(self._cfg, "cameras")
        cams = [Camera.from_dict(d) for d in items]
        return [c for c in cams if c.enabled]

    def zones(self) -> List[Zone]:
        with self._lock:
            items = _as_list(self._cfg, "zones")
        return [Zone.from_dict(d) for d in items]

    def locations(self) -> List[Location]:
        with self._lock:
            items = _as_list(self._cfg, "locations")
        return [Location.from_dict(d) for d in items]

    def settings(self) -> ProcessingSettings:
        with self._lock:
            raw = self._cfg.get("settings") or {}
        if not isinstance(raw, dict):
            raise ValueError("'settings' must be a mapping")
        return ProcessingSettings.from_dict(raw)

    def notification_rules(self) -> List[NotificationRule]:
        with self._lock:
            items = _as_list(self._cfg, "notifications")
        rules = [NotificationRule.from_dict(d) for d in items]
        return [r for r in rules if r.enabled]

    def rois(self) -> Dict[int, Polygon]:
        with self._roi_lock:
            return {k: list(v) for k, v in self._rois.items()}

    def get_roi(self, camera_id: int) -> Polygon:
        with self._roi_lock:
            return list(self._rois.get(int(camera_id), []))

    def save_roi(self, camera_id: int, polygon: Polygon) -> None:
        with self._roi_lock:
            rois = dict(self._rois)
            rois[int(camera_id)] = list(polygon)
            data = {"rois": {int(k): roi_to_payload(v) for k, v in sorted(rois.items())}}
            dump_yaml_atomic(self._rois_path, data)
            self._rois = rois
        logger.info("Saved ROI for camera %s to %s", camera_id, self._rois_path)

    @staticmethod
    def _load_rois(path: str) -> Dict[int, Polygon]:
        if not os.path.exists(path):
            return {}
        raw = load_yaml(path).get("rois") or {}
        if not isinstance(raw, dict):
            raise ValueError(f"'rois' must be a mapping of camera id to polygon: {path}")
        return {int(k): parse_roi(v) for k, v in raw.items()}
