from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from src.api.errors import StoreUnavailable
from src.api.schemas.common import now_ms
from src.api.services.alert_state import Transition
from src.api.services.notification_router import NotificationGroup
from src.api.state import AppState

logger = logging.getLogger(__name__)


@dataclass
class TickOutcome:
    rules_evaluated: int = 0
    transitions: List[Transition] = field(default_factory=list)
    groups: List[NotificationGroup] = field(default_factory=list)
    delivery: Optional["asyncio.Task[List[bool]]"] = None


# PUBLIC_INTERFACE
async def evaluation_tick(
    state: AppState, tick_ms: int, stop_event: Optional[asyncio.Event] = None
) -> TickOutcome:
    """
    Run one evaluation tick at `tick_ms`.

    Order: rule-file hot reload, index snapshot, evaluation of every rule on the worker
    pool, state-machine update for the rules that completed, routing, background
    delivery, journaling. StoreUnavailable propagates and nothing is applied.
    """
    status = state.evaluator_status
    await asyncio.to_thread(state.registry.maybe_reload_file)
    rule_set = state.registry.current()
    snapshot = state.index.snapshot()

    results = await state.evaluator.evaluate_all(rule_set.rules, snapshot, tick_ms, stop_event)

    sm = state.state_machine
    transitions: List[Transition] = []
    if rule_set.version != status.rules_version:
        transitions.extend(sm.retain_rules(rule_set.names(), tick_ms))
        state.evaluator.forget(rule_set.names())
        status.rules_version = rule_set.version
    for result in results:
        transitions.extend(sm.apply(result, tick_ms))

    groups = state.router.route(transitions, sm.firing(), tick_ms)
    delivery = state.router.dispatch(groups)

    if state.journal is not None and transitions:
        await state.journal.record(transitions)

    if len(results) < len(rule_set.rules):
        logger.info("Tick %s evaluated %s of %s rule(s)", tick_ms, len(results), len(rule_set.rules))
    return TickOutcome(
        rules_evaluated=len(results), transitions=transitions, groups=groups, delivery=delivery
    )


def _overrun(elapsed: float, interval: float) -> Tuple[int, float]:
    """Ticks skipped and seconds until the next tick boundary."""
    skipped = int(elapsed // interval)
    return skipped, interval - (elapsed % interval)


# PUBLIC_INTERFACE
async def alerts_evaluator_loop(state: AppState, shutdown_event: asyncio.Event) -> None:
    """
    Background loop that evaluates every rule once per EVAL_INTERVAL_SEC.

    Ticks never queue: a tick that overruns the interval is logged, the boundaries it
    crossed are counted as skipped, and the next tick starts at the following boundary.
    Once shutdown is signalled no new rule evaluation starts; the current tick applies
    the rules that completed and the loop exits.
    """
    interval = float(max(1, int(state.config.eval_interval_sec)))
    status = state.evaluator_status
    logger.info(
        "Alerts evaluator started (interval=%ss, workers=%s, lookback=%ss)",
        int(interval),
        state.config.eval_workers,
        state.config.eval_lookback_sec,
    )

    while not shutdown_event.is_set():
        started = time.monotonic()
        tick_ms = now_ms()
        try:
            outcome = await evaluation_tick(state, tick_ms, shutdown_event)
            status.ticks += 1
            status.last_rules_evaluated = outcome.rules_evaluated
            status.last_transitions = len(outcome.transitions)
            status.last_error = None
        except StoreUnavailable as exc:
            status.failed_ticks += 1
            status.last_error = exc.message
            logger.error("Sample store unavailable, tick %s skipped: %s", tick_ms, exc)
        except Exception as exc:
            status.failed_ticks += 1
            status.last_error = repr(exc)
            logger.exception("Alerts evaluator tick failed")
        elapsed = time.monotonic() - started
        status.last_tick_ms = tick_ms
        status.last_duration_ms = elapsed * 1000.0

        skipped, sleep_for = _overrun(elapsed, interval)
        if skipped:
            status.skipped_ticks += skipped
            logger.warning(
                "Evaluation tick took %.2fs (interval %ss); skipping %s tick(s)", elapsed, int(interval), skipped
            )
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=sleep_for)
        except asyncio.TimeoutError:
            pass

    logger.info("Alerts evaluator stopped")


# PUBLIC_INTERFACE
async def retention_pass(state: AppState, at_ms: int) -> Tuple[int, int]:
    """
    Evict samples older than the retention window and drop series left without samples.

    Returns (evicted_samples, removed_series).
    """
    cutoff = at_ms - int(state.config.retention_sec) * 1000
    evicted, emptied = await asyncio.to_thread(state.store.evict_before, cutoff)
    # A series may have been written again since eviction emptied it.
    removable = [sid for sid in emptied if state.store.latest(sid) is None]
    removed = state.index.remove(removable) if removable else 0
    if evicted or removed:
        logger.info("Retention evicted %s sample(s) and %s series (cutoff=%s)", evicted, removed, cutoff)
    return evicted, removed


# PUBLIC_INTERFACE
async def retention_loop(state: AppState, shutdown_event: asyncio.Event) -> None:
    """Background loop applying sample retention every RETENTION_INTERVAL_SEC."""
    interval = max(1, int(state.config.retention_interval_sec))
    logger.info("Retention started (interval=%ss, retention=%ss)", interval, state.config.retention_sec)

    while not shutdown_event.is_set():
        try:
            await retention_pass(state, now_ms())
        except StoreUnavailable as exc:
            logger.error("Retention skipped: %s", exc)
        except Exception:
            logger.exception("Retention pass failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass

    logger.info("Retention stopped")
