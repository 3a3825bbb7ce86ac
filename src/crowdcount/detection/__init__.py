from .base import Detector, LockedDetector, parse_target_classes
from .mock import MockDetector
from .registry import create_detector

__all__ = ["Detector", "LockedDetector", "MockDetector", "create_detector", "parse_target_classes"]
