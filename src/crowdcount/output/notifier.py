from __future__ import annotations

import json
import logging
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Protocol

from crowdcount.utils.types import NotificationRule


logger = logging.getLogger("crowdcount.output.notifier")


class CountsProvider(Protocol):
    def location_counts(self) -> List[Dict[str, Any]]:
        ...


class RuleSource(Protocol):
    def notification_rules(self) -> List[NotificationRule]:
        ...


Sender = Callable[[NotificationRule, bytes], None]


def build_notification_payload(location_counts: List[Dict[str, Any]]) -> bytes:
    payload = [
        {
            "locationName": str(loc.get("locationName", "")),
            "total": int(loc.get("total", 0)),
            "zones": [
                {"zoneName": str(z.get("zoneName", "")), "total": int(z.get("total", 0))}
                for z in (loc.get("zones") or [])
            ],
        }
        for loc in location_counts
    ]
    return json.dumps(payload, ensure_ascii=False).encode("utf-8")


def send_tcp(host: str, port: int, data: bytes, timeout_s: float = 2.0) -> None:
    with socket.create_connection((host, int(port)), timeout=float(timeout_s)) as sock:
        sock.sendall(data)


def send_udp(host: str, port: int, data: bytes) -> None:
    family, type_, proto, _, addr = socket.getaddrinfo(host, int(port), type=socket.SOCK_DGRAM)[0]
    with socket.socket(family, type_, proto) as sock:
        sock.sendto(data, addr)


def send_notification(rule: NotificationRule, data: bytes, timeout_s: float = 2.0) -> None:
    if rule.protocol == "tcp":
        send_tcp(rule.host, rule.port, data, timeout_s)
    elif rule.protocol == "udp":
        send_udp(rule.host, rule.port, data)
    else:
        raise ValueError(f"Unknown notification protocol: {rule.protocol}")


class _RuleTimer:
    """Calls ``fire`` immediately, then every ``interval_ms`` until stopped."""

    def __init__(self, rule: NotificationRule, fire: Callable[[NotificationRule], None]) -> None:
        self.rule = rule
        self._fire = fire
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"notify-{rule.rule_id}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def cancel(self) -> None:
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def _run(self) -> None:
        interval_s = self.rule.interval_ms / 1000.0
        while True:
            self._fire(self.rule)
            if self._stop.wait(interval_s):
                break


class NotificationDispatcher:
    """Periodically pushes location/zone counts to the configured endpoints."""

    def __init__(
        self,
        rules: RuleSource,
        counts: CountsProvider,
        max_workers: int = 4,
        send_timeout_s: float = 2.0,
        sender: Optional[Sender] = None,
    ) -> None:
        self._rules = rules
        self._counts = counts
        self._max_workers = max(1, int(max_workers))
        self._send_timeout_s = float(send_timeout_s)
        self._sender: Sender = sender or (lambda rule, data: send_notification(rule, data, self._send_timeout_s))
        self._lock = threading.Lock()
        self._timers: List[_RuleTimer] = []
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def active_rules(self) -> List[NotificationRule]:
        with self._lock:
            return [t.rule for t in self._timers]

    def start(self) -> None:
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="notify-send")
            if self._timers:
                return
            self._timers = self._build_timers()
            timers = list(self._timers)
        for t in timers:
            t.start()
        logger.info("Notification dispatcher started with %d rule(s)", len(timers))

    def reload(self) -> None:
        new = self._build_timers()
        with self._lock:
            old = self._timers
            self._timers = new
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="notify-send")
        self._cancel(old)
        for t in new:
            t.start()
        logger.info("Notification rules reloaded: %d active", len(new))

    def stop(self) -> None:
        with self._lock:
            old = self._timers
            self._timers = []
            executor = self._executor
            self._executor = None
        self._cancel(old)
        if executor is not None:
            executor.shutdown(wait=False)
        logger.info("Notification dispatcher stopped")

    def __enter__(self) -> "NotificationDispatcher":
        self.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.stop()

    def _build_timers(self) -> List[_RuleTimer]:
        rules = [r for r in self._rules.notification_rules() if r.enabled]
        return [_RuleTimer(r, self._fire) for r in rules]

    @staticmethod
    def _cancel(timers: List[_RuleTimer]) -> None:
        for t in timers:
            t.cancel()
        for t in timers:
            t.join(timeout=2.0)

    def _fire(self, rule: NotificationRule) -> None:
        try:
            data = build_notification_payload(self._counts.location_counts())
            with self._lock:
                executor = self._executor
            if executor is None:
                return
            executor.submit(self._send, rule, data)
        except Exception:
            logger.exception("Failed to schedule notification '%s'", rule.name)

    def _send(self, rule: NotificationRule, data: bytes) -> None:
        try:
            self._sender(rule, data)
            logger.debug("Sent notification '%s' to %s:%s (%s, %d bytes)", rule.name, rule.host, rule.port, rule.protocol, len(data))
        except Exception:
            logger.exception("Failed to send notification '%s' to %s:%s via %s", rule.name, rule.host, rule.port, rule.protocol)
