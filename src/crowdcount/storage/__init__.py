from .base import ConfigStore
from .yaml_store import DEFAULT_ROIS_FILE, YamlConfigStore

__all__ = ["ConfigStore", "DEFAULT_ROIS_FILE", "YamlConfigStore"]
