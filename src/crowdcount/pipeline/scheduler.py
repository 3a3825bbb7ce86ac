from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

from crowdcount.utils.types import ProcessingSettings, ProcessingTier


logger = logging.getLogger("crowdcount.pipeline.scheduler")


@dataclass(frozen=True)
class TierSchedule:
    idle_scan_mode_enabled: bool = True
    active_mode_process_nth_frame: int = 5
    active_state_timeout_s: float = 15.0
    idle_scan_mode_interval_s: float = 10.0

    @staticmethod
    def from_settings(s: ProcessingSettings) -> "TierSchedule":
        return TierSchedule(
            idle_scan_mode_enabled=bool(s.idle_scan_mode_enabled),
            active_mode_process_nth_frame=max(1, int(s.active_mode_process_nth_frame)),
            active_state_timeout_s=float(s.active_state_timeout_seconds),
            idle_scan_mode_interval_s=float(s.idle_scan_mode_interval_seconds),
        )


class TierScheduler:
    """Decides, frame by frame, whether the detector should run.

    Not thread-safe: owned by a single processing worker.
    """

    def __init__(self, schedule: TierSchedule, start_time_s: float, camera_id: Any = None) -> None:
        self._schedule = schedule
        self._camera_id = camera_id
        self._tier = ProcessingTier.IDLE_SCAN
        self._frames_since_run = 0
        self._last_motion_s = float(start_time_s)
        self._last_run_s = -math.inf

    @property
    def tier(self) -> ProcessingTier:
        return self._tier

    @property
    def schedule(self) -> TierSchedule:
        return self._schedule

    @property
    def last_run_s(self) -> float:
        return self._last_run_s

    def set_schedule(self, schedule: TierSchedule) -> None:
        self._schedule = schedule

    def should_run(self, now_s: float, motion: bool) -> bool:
        if motion:
            self._last_motion_s = now_s
        sched = self._schedule
        active = (not sched.idle_scan_mode_enabled) or (now_s - self._last_motion_s) < sched.active_state_timeout_s

        run = False
        if active:
            if self._tier != ProcessingTier.ACTIVE:
                logger.debug("Cam %s: entering ACTIVE mode", self._camera_id)
                self._tier = ProcessingTier.ACTIVE
                self._frames_since_run = 0
            self._frames_since_run += 1
            if self._frames_since_run >= sched.active_mode_process_nth_frame:
                run = True
                self._frames_since_run = 0
        else:
            if self._tier != ProcessingTier.IDLE_SCAN:
                logger.debug("Cam %s: entering IDLE SCAN mode", self._camera_id)
                self._tier = ProcessingTier.IDLE_SCAN
            if (now_s - self._last_run_s) >= sched.idle_scan_mode_interval_s:
                run = True

        if run:
            self._last_run_s = now_s
        return run
