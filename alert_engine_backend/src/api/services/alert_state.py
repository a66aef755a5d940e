from __future__ import annotations

import hashlib
import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Set

from src.api.services.rule_evaluator import RuleResult, SeriesVerdict, Verdict
from src.api.services.rules import Rule
from src.api.services.series_index import LabelPairs

logger = logging.getLogger(__name__)

_TEMPLATE_RE = re.compile(r"\{\{\s*\$(labels\.([a-zA-Z_][a-zA-Z0-9_]*)|value)\s*\}\}")


class AlertState(str, Enum):
    INACTIVE = "inactive"
    PENDING = "pending"
    FIRING = "firing"


@dataclass(frozen=True)
class AlertKey:
    """Stable arena key: rule name plus the identifying label set of the series."""

    rule: str
    series: LabelPairs

    def fingerprint(self) -> str:
        h = hashlib.sha1(self.rule.encode("utf-8"))
        for k, v in self.series:
            h.update(b"\xff" + k.encode("utf-8") + b"\xfe" + v.encode("utf-8"))
        return h.hexdigest()[:16]


@dataclass(frozen=True)
class AlertSnapshot:
    """Read-only copy of an AlertInstance handed to the router and the query API."""

    key: AlertKey
    fingerprint: str
    labels: Dict[str, str]
    annotations: Dict[str, str]
    state: AlertState
    active_since: Optional[int]
    last_evaluated: Optional[int]
    value: Optional[float]
    fired_at: Optional[int] = None
    resolved_at: Optional[int] = None

    @property
    def starts_at(self) -> Optional[int]:
        return self.fired_at if self.fired_at is not None else self.active_since


@dataclass(frozen=True)
class Transition:
    alert: AlertSnapshot
    from_state: AlertState
    to_state: AlertState
    at: int


@dataclass
class AlertInstance:
    key: AlertKey
    fingerprint: str
    labels: Dict[str, str]
    annotations: Dict[str, str]
    state: AlertState
    active_since: Optional[int]
    last_evaluated: Optional[int]
    value: Optional[float] = None
    fired_at: Optional[int] = None

    def snapshot(self, *, resolved_at: Optional[int] = None) -> AlertSnapshot:
        return AlertSnapshot(
            key=self.key,
            fingerprint=self.fingerprint,
            labels=dict(self.labels),
            annotations=dict(self.annotations),
            state=self.state,
            active_since=self.active_since,
            last_evaluated=self.last_evaluated,
            value=self.value,
            fired_at=self.fired_at,
            resolved_at=resolved_at,
        )


def render_annotations(templates: Dict[str, str], labels: Dict[str, str], value: Optional[float]) -> Dict[str, str]:
    """Expand `{{ $labels.name }}` and `{{ $value }}` placeholders."""

    def sub(m: "re.Match[str]") -> str:
        if m.group(2) is not None:
            return labels.get(m.group(2), "")
        return "" if value is None else f"{value:g}"

    return {k: _TEMPLATE_RE.sub(sub, v) for k, v in templates.items()}


class AlertStateMachine:
    """
    Arena of AlertInstances keyed by AlertKey; the only writer of alert state.

    Inactive instances are not stored: an instance is created when it leaves Inactive
    and dropped when it returns there (the emitted Transition carries its snapshot).
    """

    def __init__(self) -> None:
        self._arena: Dict[AlertKey, AlertInstance] = {}
        self._by_rule: Dict[str, Set[AlertKey]] = {}
        self._lock = threading.Lock()

    # PUBLIC_INTERFACE
    def apply(self, result: RuleResult, now_ms: int) -> List[Transition]:
        """Apply the verdicts of one fully evaluated rule; returns the state transitions."""
        return self.apply_verdicts(result.rule, result.verdicts, now_ms)

    def apply_verdicts(self, rule: Rule, verdicts: Sequence[SeriesVerdict], now_ms: int) -> List[Transition]:
        transitions: List[Transition] = []
        with self._lock:
            keys = self._by_rule.setdefault(rule.name, set())
            seen: Set[AlertKey] = set()
            for v in verdicts:
                key = AlertKey(rule.name, v.key)
                seen.add(key)
                if v.verdict is Verdict.UNKNOWN:
                    continue
                if v.verdict is Verdict.BREACHING:
                    t = self._breaching(rule, key, v, now_ms)
                else:
                    t = self._resolve(key, now_ms)
                if t is not None:
                    transitions.append(t)

            # Existing instances whose series produced no verdict this tick are resolved.
            for key in list(keys - seen):
                t = self._resolve(key, now_ms)
                if t is not None:
                    transitions.append(t)
            if not keys:
                self._by_rule.pop(rule.name, None)

        for t in transitions:
            logger.debug("Alert %s %s: %s -> %s", t.alert.key.rule, t.alert.fingerprint, t.from_state.value, t.to_state.value)
        return transitions

    def _breaching(self, rule: Rule, key: AlertKey, v: SeriesVerdict, now_ms: int) -> Optional[Transition]:
        annotations = render_annotations(rule.annotation_map(), v.labels, v.value)
        inst = self._arena.get(key)
        if inst is None:
            inst = AlertInstance(
                key=key,
                fingerprint=key.fingerprint(),
                labels=dict(v.labels),
                annotations=annotations,
                state=AlertState.PENDING,
                active_since=now_ms,
                last_evaluated=now_ms,
                value=v.value,
            )
            self._arena[key] = inst
            self._by_rule.setdefault(rule.name, set()).add(key)
            if rule.for_ms <= 0:
                inst.state = AlertState.FIRING
                inst.fired_at = now_ms
                return Transition(inst.snapshot(), AlertState.INACTIVE, AlertState.FIRING, now_ms)
            return Transition(inst.snapshot(), AlertState.INACTIVE, AlertState.PENDING, now_ms)

        inst.last_evaluated = now_ms
        inst.value = v.value
        inst.labels = dict(v.labels)
        inst.annotations = annotations
        if inst.state is AlertState.PENDING:
            assert inst.active_since is not None
            if now_ms - inst.active_since >= rule.for_ms:
                inst.state = AlertState.FIRING
                inst.fired_at = now_ms
                return Transition(inst.snapshot(), AlertState.PENDING, AlertState.FIRING, now_ms)
        return None

    def _resolve(self, key: AlertKey, now_ms: int) -> Optional[Transition]:
        inst = self._arena.pop(key, None)
        if inst is None:
            return None
        keys = self._by_rule.get(key.rule)
        if keys is not None:
            keys.discard(key)
        resolved = AlertSnapshot(
            key=inst.key,
            fingerprint=inst.fingerprint,
            labels=dict(inst.labels),
            annotations=dict(inst.annotations),
            state=AlertState.INACTIVE,
            active_since=None,
            last_evaluated=now_ms,
            value=inst.value,
            fired_at=inst.fired_at,
            resolved_at=now_ms,
        )
        return Transition(resolved, inst.state, AlertState.INACTIVE, now_ms)

    # PUBLIC_INTERFACE
    def retain_rules(self, names: Iterable[str], now_ms: int) -> List[Transition]:
        """Resolve every instance of rules not in `names` (after a rule-set reload)."""
        keep = set(names)
        transitions: List[Transition] = []
        with self._lock:
            for rule_name in [r for r in self._by_rule if r not in keep]:
                for key in list(self._by_rule.get(rule_name, ())):
                    t = self._resolve(key, now_ms)
                    if t is not None:
                        transitions.append(t)
                self._by_rule.pop(rule_name, None)
        if transitions:
            logger.info("Resolved %s alert(s) of removed rules", len(transitions))
        return transitions

    # PUBLIC_INTERFACE
    def snapshot(self, state: Optional[AlertState] = None, rule: Optional[str] = None) -> List[AlertSnapshot]:
        """Point-in-time copies of the live instances, optionally filtered."""
        with self._lock:
            items = [
                inst.snapshot()
                for inst in self._arena.values()
                if (state is None or inst.state is state) and (rule is None or inst.key.rule == rule)
            ]
        items.sort(key=lambda s: (s.key.rule, s.key.series))
        return items

    def firing(self) -> List[AlertSnapshot]:
        return self.snapshot(state=AlertState.FIRING)

    def get(self, key: AlertKey) -> Optional[AlertSnapshot]:
        with self._lock:
            inst = self._arena.get(key)
            return inst.snapshot() if inst is not None else None

    def __len__(self) -> int:
        return len(self._arena)
