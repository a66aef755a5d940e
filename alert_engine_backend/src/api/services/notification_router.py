from __future__ import annotations

import asyncio
import logging
import random
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from src.api.errors import DeliveryError
from src.api.schemas.common import ms_to_iso, now_ms
from src.api.services.alert_state import AlertSnapshot, AlertState, Transition
from src.api.services.receivers import Receiver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteConfig:
    group_by: Tuple[str, ...] = ("alertname",)
    repeat_interval_ms: int = 4 * 3600 * 1000


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: base * factor**(attempt-1), capped at max_delay, optionally jittered."""

    max_attempts: int = 5
    base_delay_ms: int = 500
    max_delay_ms: int = 30_000
    backoff_factor: float = 2.0
    jitter: bool = True

    def delay_sec(self, attempt: int) -> float:
        delay = min(self.base_delay_ms * (self.backoff_factor ** (attempt - 1)), self.max_delay_ms) / 1000.0
        if self.jitter:
            delay = random.uniform(0, delay)
        return delay


@dataclass(frozen=True)
class NotificationAlert:
    status: str  # firing|resolved
    fingerprint: str
    labels: Dict[str, str]
    annotations: Dict[str, str]
    starts_at: Optional[int]
    ends_at: Optional[int]

    @classmethod
    def from_snapshot(cls, alert: AlertSnapshot, status: str, ends_at: Optional[int] = None) -> "NotificationAlert":
        return cls(
            status=status,
            fingerprint=alert.fingerprint,
            labels=dict(alert.labels),
            annotations=dict(alert.annotations),
            starts_at=alert.starts_at,
            ends_at=ends_at,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "startsAt": ms_to_iso(self.starts_at),
            "endsAt": ms_to_iso(self.ends_at),
            "fingerprint": self.fingerprint,
        }


def _common(maps: Sequence[Dict[str, str]]) -> Dict[str, str]:
    if not maps:
        return {}
    out = dict(maps[0])
    for m in maps[1:]:
        out = {k: v for k, v in out.items() if m.get(k) == v}
    return out


@dataclass(frozen=True)
class NotificationGroup:
    """One batch of alerts sharing the group_by labels, addressed to one receiver."""

    receiver: str
    group_key: str
    group_labels: Dict[str, str]
    alerts: Tuple[NotificationAlert, ...]

    @property
    def status(self) -> str:
        return "firing" if any(a.status == "firing" for a in self.alerts) else "resolved"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "receiver": self.receiver,
            "status": self.status,
            "groupKey": self.group_key,
            "groupLabels": dict(self.group_labels),
            "commonLabels": _common([a.labels for a in self.alerts]),
            "commonAnnotations": _common([a.annotations for a in self.alerts]),
            "alerts": [a.to_payload() for a in self.alerts],
        }


@dataclass
class _NotifyLogEntry:
    last_firing_sent: int
    firing: bool
    resolved_at: Optional[int] = None
    suppressed_refire: bool = False


@dataclass(frozen=True)
class UndeliveredNotification:
    receiver: str
    group_key: str
    status: str
    alerts: int
    attempts: int
    error: str
    at: int


class DeliveryStatus:
    """Counters surfaced by the health endpoint; undelivered groups are kept, not dropped silently."""

    def __init__(self, keep: int = 100):
        self._lock = threading.Lock()
        self.delivered = 0
        self.retries = 0
        self.undelivered = 0
        self.suppressed = 0
        self.recent_undelivered: Deque[UndeliveredNotification] = deque(maxlen=keep)

    def record_delivered(self) -> None:
        with self._lock:
            self.delivered += 1

    def record_retry(self) -> None:
        with self._lock:
            self.retries += 1

    def record_suppressed(self, n: int = 1) -> None:
        with self._lock:
            self.suppressed += n

    def record_undelivered(self, item: UndeliveredNotification) -> None:
        with self._lock:
            self.undelivered += 1
            self.recent_undelivered.append(item)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "delivered": self.delivered,
                "retries": self.retries,
                "undelivered": self.undelivered,
                "suppressed": self.suppressed,
                "recent_undelivered": list(self.recent_undelivered),
            }


class NotificationRouter:
    """
    Turns alert transitions into grouped, deduplicated notifications and delivers them.

    - Only `-> firing` and `firing -> inactive` transitions are notified.
    - A firing notification for an alert is not repeated within `repeat_interval_ms`,
      also when the alert resolved and fired again in between. Alerts that stay firing
      are re-sent once the interval has elapsed.
    - Each (receiver, group) delivery is independent and retried with backoff.
    """

    def __init__(
        self,
        receivers: Sequence[Receiver],
        route: Optional[RouteConfig] = None,
        retry: Optional[RetryPolicy] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._receivers: Dict[str, Receiver] = {r.name: r for r in receivers}
        self._route = route or RouteConfig()
        self._retry = retry or RetryPolicy()
        self._sleep = sleep
        self._log: Dict[str, _NotifyLogEntry] = {}
        self._inflight: Set["asyncio.Task[Any]"] = set()
        self.status = DeliveryStatus()

    @property
    def route_config(self) -> RouteConfig:
        return self._route

    @property
    def receivers(self) -> List[Receiver]:
        return list(self._receivers.values())

    # PUBLIC_INTERFACE
    def route(
        self, transitions: Iterable[Transition], firing: Iterable[AlertSnapshot], now_ms: int
    ) -> List[NotificationGroup]:
        """Select what to notify for this tick and batch it into groups per receiver."""
        repeat = self._route.repeat_interval_ms
        pending: Dict[str, NotificationAlert] = {}
        transitioned: Set[str] = set()
        suppressed = 0

        for t in transitions:
            fp = t.alert.fingerprint
            transitioned.add(fp)
            entry = self._log.get(fp)
            if t.to_state is AlertState.FIRING:
                if entry is not None and now_ms - entry.last_firing_sent < repeat:
                    entry.firing = True
                    entry.resolved_at = None
                    entry.suppressed_refire = True
                    suppressed += 1
                    logger.info("Suppressed repeat firing notification for %s (%s)", t.alert.key.rule, fp)
                    continue
                self._log[fp] = _NotifyLogEntry(last_firing_sent=now_ms, firing=True)
                pending[fp] = NotificationAlert.from_snapshot(t.alert, "firing")
            elif t.to_state is AlertState.INACTIVE and t.from_state is AlertState.FIRING:
                if entry is None or not entry.firing:
                    continue
                entry.firing = False
                entry.resolved_at = now_ms
                if entry.suppressed_refire:
                    # The refire was never announced; the last resolved still stands.
                    entry.suppressed_refire = False
                    continue
                pending[fp] = NotificationAlert.from_snapshot(t.alert, "resolved", ends_at=now_ms)

        for alert in firing:
            fp = alert.fingerprint
            if fp in transitioned:
                continue
            entry = self._log.get(fp)
            if entry is None or (entry.firing and now_ms - entry.last_firing_sent >= repeat):
                self._log[fp] = _NotifyLogEntry(last_firing_sent=now_ms, firing=True)
                pending[fp] = NotificationAlert.from_snapshot(alert, "firing")

        self._gc(now_ms)
        if suppressed:
            self.status.record_suppressed(suppressed)
        if not pending:
            return []
        return self._group(pending.values())

    def _gc(self, now_ms: int) -> None:
        repeat = self._route.repeat_interval_ms
        stale = [
            fp
            for fp, e in self._log.items()
            if not e.firing and e.resolved_at is not None and now_ms - e.last_firing_sent >= repeat
        ]
        for fp in stale:
            del self._log[fp]

    def _group(self, alerts: Iterable[NotificationAlert]) -> List[NotificationGroup]:
        alerts = sorted(alerts, key=lambda a: a.fingerprint)
        groups: List[NotificationGroup] = []
        for receiver in self._receivers.values():
            buckets: Dict[Tuple[Tuple[str, str], ...], List[NotificationAlert]] = {}
            for a in alerts:
                if a.status == "resolved" and not receiver.send_resolved:
                    continue
                if not receiver.accepts(a.labels):
                    continue
                gl = tuple((name, a.labels.get(name, "")) for name in self._route.group_by)
                buckets.setdefault(gl, []).append(a)
            for gl, items in sorted(buckets.items()):
                group_labels = {k: v for k, v in gl if v}
                key = "{" + ",".join(f'{k}="{v}"' for k, v in sorted(group_labels.items())) + "}"
                groups.append(
                    NotificationGroup(
                        receiver=receiver.name,
                        group_key=f"{receiver.name}:{key}",
                        group_labels=group_labels,
                        alerts=tuple(items),
                    )
                )
        if not self._receivers:
            logger.warning("No receivers configured; %s alert notification(s) dropped", len(alerts))
        return groups

    # PUBLIC_INTERFACE
    async def deliver(self, groups: Sequence[NotificationGroup]) -> List[bool]:
        """Deliver all groups concurrently; returns per-group success."""
        if not groups:
            return []
        return list(await asyncio.gather(*(self._deliver_one(g) for g in groups)))

    async def _deliver_one(self, group: NotificationGroup) -> bool:
        receiver = self._receivers.get(group.receiver)
        if receiver is None:
            logger.error("Receiver %s disappeared before delivery of %s", group.receiver, group.group_key)
            return False
        payload = group.to_payload()
        attempt = 0
        while True:
            attempt += 1
            try:
                await receiver.send(payload)
            except DeliveryError as exc:
                if attempt >= self._retry.max_attempts:
                    logger.error(
                        "Undelivered notification receiver=%s group=%s after %s attempts: %s",
                        receiver.name,
                        group.group_key,
                        attempt,
                        exc,
                    )
                    self.status.record_undelivered(
                        UndeliveredNotification(
                            receiver=receiver.name,
                            group_key=group.group_key,
                            status=group.status,
                            alerts=len(group.alerts),
                            attempts=attempt,
                            error=exc.message,
                            at=now_ms(),
                        )
                    )
                    return False
                delay = self._retry.delay_sec(attempt)
                self.status.record_retry()
                logger.warning(
                    "Delivery to %s failed (attempt %s/%s), retrying in %.2fs: %s",
                    receiver.name,
                    attempt,
                    self._retry.max_attempts,
                    delay,
                    exc,
                )
                await self._sleep(delay)
                continue
            if attempt > 1:
                logger.info("Delivery to %s succeeded after %s attempts", receiver.name, attempt)
            self.status.record_delivered()
            return True

    # PUBLIC_INTERFACE
    def dispatch(self, groups: Sequence[NotificationGroup]) -> Optional["asyncio.Task[List[bool]]"]:
        """Deliver in the background so a slow receiver never delays the evaluation tick."""
        if not groups:
            return None
        task = asyncio.create_task(self.deliver(groups))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for background deliveries (used on shutdown)."""
        if not self._inflight:
            return
        _, pending = await asyncio.wait(list(self._inflight), timeout=timeout)
        if pending:
            logger.warning("%s notification deliveries still in flight at shutdown", len(pending))
