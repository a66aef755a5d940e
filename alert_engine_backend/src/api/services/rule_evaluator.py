from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

from src.api.errors import EvaluationError, StoreUnavailable
from src.api.services.expressions import EvalContext
from src.api.services.rules import AbsenceRule, Rule, ThresholdRule
from src.api.services.sample_store import SampleStore
from src.api.services.series_index import NAME_LABEL, IndexSnapshot, LabelPairs, canonical_labels

logger = logging.getLogger(__name__)


class Verdict(str, Enum):
    """Per-tick evaluation result of a rule against one series."""

    BREACHING = "breaching"
    NORMAL = "normal"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SeriesVerdict:
    key: LabelPairs
    labels: Dict[str, str]
    verdict: Verdict
    value: Optional[float] = None
    error: Optional[str] = None


@dataclass
class RuleResult:
    """All verdicts of one fully evaluated rule for one tick."""

    rule: Rule
    verdicts: List[SeriesVerdict]
    duration_ms: float = 0.0

    @property
    def unknown(self) -> int:
        return sum(1 for v in self.verdicts if v.verdict is Verdict.UNKNOWN)


@dataclass
class RuleHealth:
    last_evaluated_ms: Optional[int] = None
    last_duration_ms: float = 0.0
    series: int = 0
    breaching: int = 0
    unknown: int = 0
    last_error: Optional[str] = None


def alert_labels(rule: Rule, series_labels: Dict[str, str]) -> Dict[str, str]:
    """Labels of an alert: series labels overridden by rule labels, plus alertname."""
    labels = {k: v for k, v in series_labels.items() if k != NAME_LABEL}
    labels.update(rule.label_map())
    labels["alertname"] = rule.name
    return labels


class RuleEvaluator:
    """
    Turns (rule, index snapshot, store) into verdicts.

    evaluate_rule() is synchronous and thread-safe; evaluate_all() fans rules out over
    a bounded pool of worker threads so one slow rule never holds up the others.
    """

    def __init__(self, store: SampleStore, *, lookback_ms: int = 300_000, workers: int = 4):
        self._store = store
        self._lookback_ms = max(1, int(lookback_ms))
        self._workers = max(1, int(workers))
        self.rule_health: Dict[str, RuleHealth] = {}

    @property
    def lookback_ms(self) -> int:
        return self._lookback_ms

    # PUBLIC_INTERFACE
    def evaluate_rule(self, rule: Rule, snapshot: IndexSnapshot, now_ms: int) -> RuleResult:
        """
        Evaluate one rule at `now_ms`.

        Per-series errors become Verdict.UNKNOWN; StoreUnavailable propagates because the
        whole tick has to be skipped.
        """
        started = time.perf_counter()
        ctx = EvalContext(snapshot=snapshot, store=self._store, now_ms=now_ms, lookback_ms=self._lookback_ms)
        if isinstance(rule, AbsenceRule):
            verdicts = [self._evaluate_absence(rule, ctx)]
        elif isinstance(rule, ThresholdRule):
            verdicts = self._evaluate_threshold(rule, ctx)
        else:
            raise EvaluationError(f"unsupported rule type {type(rule).__name__}")
        result = RuleResult(rule=rule, verdicts=verdicts, duration_ms=(time.perf_counter() - started) * 1000.0)
        self._record_health(result, now_ms)
        return result

    def _evaluate_threshold(self, rule: ThresholdRule, ctx: EvalContext) -> List[SeriesVerdict]:
        expr = rule.expression
        window_ms = expr.window_ms(ctx.lookback_ms)
        out: List[SeriesVerdict] = []
        for series in ctx.snapshot.select(rule.selector):
            labels = alert_labels(rule, series.label_map())
            try:
                samples = ctx.window(series.id, window_ms)
                value = expr.value(series, samples, ctx)
                if value is None:
                    # No data in the window: a breach cannot be asserted.
                    out.append(SeriesVerdict(series.key, labels, Verdict.NORMAL))
                    continue
                verdict = Verdict.BREACHING if expr.breached(value) else Verdict.NORMAL
                out.append(SeriesVerdict(series.key, labels, verdict, value=value))
            except StoreUnavailable:
                raise
            except EvaluationError as exc:
                logger.warning("Evaluation error rule=%s series=%s: %s", rule.name, series.id, exc)
                out.append(SeriesVerdict(series.key, labels, Verdict.UNKNOWN, error=exc.message))
            except Exception as exc:
                logger.exception("Unexpected evaluation failure rule=%s series=%s", rule.name, series.id)
                out.append(SeriesVerdict(series.key, labels, Verdict.UNKNOWN, error=str(exc)))
        return out

    def _evaluate_absence(self, rule: AbsenceRule, ctx: EvalContext) -> SeriesVerdict:
        pinned = rule.selector.equality_labels()
        key = canonical_labels({**pinned, NAME_LABEL: rule.selector.metric})
        labels = alert_labels(rule, pinned)
        window_ms = rule.window_ms or ctx.lookback_ms
        try:
            for series in ctx.snapshot.select(rule.selector):
                if ctx.window(series.id, window_ms):
                    return SeriesVerdict(key, labels, Verdict.NORMAL, value=1.0)
        except StoreUnavailable:
            raise
        except Exception as exc:
            logger.exception("Unexpected evaluation failure rule=%s", rule.name)
            return SeriesVerdict(key, labels, Verdict.UNKNOWN, error=str(exc))
        return SeriesVerdict(key, labels, Verdict.BREACHING, value=0.0)

    def _record_health(self, result: RuleResult, now_ms: int) -> None:
        health = self.rule_health.setdefault(result.rule.name, RuleHealth())
        health.last_evaluated_ms = now_ms
        health.last_duration_ms = result.duration_ms
        health.series = len(result.verdicts)
        health.breaching = sum(1 for v in result.verdicts if v.verdict is Verdict.BREACHING)
        health.unknown = result.unknown
        errors = [v.error for v in result.verdicts if v.error]
        health.last_error = errors[0] if errors else None

    def forget(self, keep: Sequence[str]) -> None:
        """Drop health entries of rules that are no longer configured."""
        keep_set = set(keep)
        for name in list(self.rule_health.keys()):
            if name not in keep_set:
                self.rule_health.pop(name, None)

    # PUBLIC_INTERFACE
    async def evaluate_all(
        self,
        rules: Sequence[Rule],
        snapshot: IndexSnapshot,
        now_ms: int,
        stop_event: Optional[asyncio.Event] = None,
    ) -> List[RuleResult]:
        """
        Evaluate `rules` concurrently on the worker pool.

        Once `stop_event` is set no further rule is started; rules already running finish.
        Only rules evaluated to completion are returned. A rule that fails as a whole is
        logged and left out. StoreUnavailable from any rule is re-raised.
        """
        sem = asyncio.Semaphore(self._workers)

        async def run(rule: Rule) -> Optional[RuleResult]:
            async with sem:
                if stop_event is not None and stop_event.is_set():
                    return None
                return await asyncio.to_thread(self.evaluate_rule, rule, snapshot, now_ms)

        outcomes = await asyncio.gather(*(run(r) for r in rules), return_exceptions=True)

        results: List[RuleResult] = []
        store_error: Optional[StoreUnavailable] = None
        for rule, outcome in zip(rules, outcomes):
            if isinstance(outcome, StoreUnavailable):
                store_error = outcome
            elif isinstance(outcome, BaseException):
                logger.error("Rule evaluation failed rule=%s: %r", rule.name, outcome)
                self.rule_health.setdefault(rule.name, RuleHealth()).last_error = str(outcome)
            elif outcome is not None:
                results.append(outcome)
        if store_error is not None:
            raise store_error
        return results
