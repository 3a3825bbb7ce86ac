from __future__ import annotations

from typing import Dict, List, Protocol

from crowdcount.utils.types import Camera, Location, NotificationRule, Polygon, ProcessingSettings, Zone


class ConfigStore(Protocol):
    def enabled_cameras(self) -> List[Camera]:
        ...

    def zones(self) -> List[Zone]:
        ...

    def locations(self) -> List[Location]:
        ...

    def settings(self) -> ProcessingSettings:
        ...

    def notification_rules(self) -> List[NotificationRule]:
        ...

    def rois(self) -> Dict[int, Polygon]:
        ...

    def get_roi(self, camera_id: int) -> Polygon:
        ...

    def save_roi(self, camera_id: int, polygon: Polygon) -> None:
        ...

    def reload(self) -> None:
        ...
