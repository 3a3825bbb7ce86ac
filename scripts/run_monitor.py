from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from crowdcount.output.hub import CAMERA_STATUS, StatusHub
from crowdcount.output.notifier import NotificationDispatcher
from crowdcount.pipeline.orchestrator import Orchestrator, OrchestratorConfig
from crowdcount.storage.yaml_store import YamlConfigStore
from crowdcount.utils.config import load_yaml, resolve_path
from crowdcount.utils.logging import setup_logging


logger = logging.getLogger("crowdcount.monitor")


def _log_event(event: str, payload: Dict[str, Any]) -> None:
    if event == CAMERA_STATUS:
        # Frames arrive at stream rate; only log the status line.
        logger.debug(
            "camera=%s status=%s count=%s %s",
            payload.get("cameraId"),
            payload.get("status"),
            payload.get("totalTrackedCount"),
            payload.get("message") or "",
        )
    else:
        logger.info("%s id=%s name=%s total=%s", event, payload.get("id"), payload.get("name"), payload.get("totalTrackedCount"))


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", default="configs/monitor.example.yaml", help="Monitor YAML")
    ap.add_argument("--rois", default=None, help="ROI YAML (overrides rois_path in the config)")
    ap.add_argument("--log-level", default="INFO")
    ap.add_argument("--log-file", default=None)
    args = ap.parse_args()

    base_dir = os.getcwd()
    setup_logging(level=args.log_level, log_file=args.log_file)

    config_path = resolve_path(args.config, base_dir)
    store = YamlConfigStore(config_path, rois_path=resolve_path(args.rois, base_dir) if args.rois else None)
    runtime = dict(load_yaml(config_path).get("runtime", {}) or {})

    hub = StatusHub()
    hub.subscribe(_log_event)
    orchestrator = Orchestrator(store, hub, OrchestratorConfig.from_dict(runtime, base_dir=store.base_dir))
    dispatcher = NotificationDispatcher(store, orchestrator)

    stop = threading.Event()

    def _on_signal(signum: int, _frame: Any) -> None:
        logger.info("Received signal %s, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    orchestrator.start()
    dispatcher.start()
    try:
        while not stop.wait(1.0):
            pass
    finally:
        dispatcher.stop()
        orchestrator.stop()


if __name__ == "__main__":
    main()
