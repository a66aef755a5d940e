from __future__ import annotations

import asyncio
import os

import pytest

from conftest import T0, RecordingReceiver, push
from src.api.errors import StoreUnavailable
from src.api.services.alert_state import AlertState
from src.api.services.alerts_evaluator import _overrun, alerts_evaluator_loop, evaluation_tick, retention_pass
from src.api.services.notification_router import NotificationRouter, RetryPolicy, RouteConfig

LATENCY = {"alert": "HighLatency", "selector": "latency_seconds", "expr": "value > 1", "for": "1m"}
API_DOWN = {"alert": "ApiDown", "absent": 'up{job="api"}', "window": "1m", "severity": "critical"}


@pytest.fixture
def receiver(state) -> RecordingReceiver:
    rec = RecordingReceiver()
    state.router = NotificationRouter([rec], RouteConfig(), RetryPolicy(base_delay_ms=0, jitter=False))
    return rec


def _moves(outcome):
    return [(t.alert.key.rule, t.from_state, t.to_state) for t in outcome.transitions]


@pytest.mark.anyio
async def test_threshold_rule_pending_firing_resolved(state, receiver):
    state.registry.reload([LATENCY])

    push(state, "latency_seconds", {"instance": "a"}, T0 - 1000, 2.0)
    first = await evaluation_tick(state, T0)
    assert _moves(first) == [("HighLatency", AlertState.INACTIVE, AlertState.PENDING)]
    assert first.groups == [] and first.delivery is None

    push(state, "latency_seconds", {"instance": "a"}, T0 + 59_000, 2.5)
    fired = await evaluation_tick(state, T0 + 60_000)
    assert _moves(fired) == [("HighLatency", AlertState.PENDING, AlertState.FIRING)]
    assert await fired.delivery == [True]
    payload = receiver.payloads[0]
    assert payload["status"] == "firing"
    assert payload["alerts"][0]["labels"] == {"instance": "a", "alertname": "HighLatency"}

    push(state, "latency_seconds", {"instance": "a"}, T0 + 89_000, 0.5)
    resolved = await evaluation_tick(state, T0 + 90_000)
    assert _moves(resolved) == [("HighLatency", AlertState.FIRING, AlertState.INACTIVE)]
    await resolved.delivery
    assert receiver.payloads[-1]["status"] == "resolved"
    assert state.state_machine.snapshot() == []


@pytest.mark.anyio
async def test_absence_rule_fires_without_data_and_resolves_when_data_arrives(state, receiver):
    state.registry.reload([API_DOWN])

    outcome = await evaluation_tick(state, T0)
    assert _moves(outcome) == [("ApiDown", AlertState.INACTIVE, AlertState.FIRING)]
    (alert,) = state.state_machine.firing()
    assert alert.labels == {"job": "api", "severity": "critical", "alertname": "ApiDown"}

    push(state, "up", {"job": "api", "instance": "x:80"}, T0 + 10_000, 1.0)
    outcome = await evaluation_tick(state, T0 + 15_000)
    assert _moves(outcome) == [("ApiDown", AlertState.FIRING, AlertState.INACTIVE)]


@pytest.mark.anyio
async def test_removed_rule_resolves_its_alerts(state, receiver):
    state.registry.reload([API_DOWN])
    await evaluation_tick(state, T0)
    assert len(state.state_machine.firing()) == 1

    state.registry.reload([])
    outcome = await evaluation_tick(state, T0 + 15_000)
    assert _moves(outcome) == [("ApiDown", AlertState.FIRING, AlertState.INACTIVE)]
    assert state.evaluator_status.rules_version == state.registry.current().version
    await outcome.delivery
    assert receiver.payloads[-1]["status"] == "resolved"


@pytest.mark.anyio
async def test_store_unavailable_fails_the_whole_tick(state, receiver):
    state.registry.reload([LATENCY])
    push(state, "latency_seconds", {"instance": "a"}, T0 - 1000, 2.0)
    state.store.close()

    with pytest.raises(StoreUnavailable):
        await evaluation_tick(state, T0)
    assert len(state.state_machine) == 0
    assert receiver.calls == 0


@pytest.mark.anyio
async def test_rules_file_changes_are_picked_up_by_the_tick(state, receiver, tmp_path):
    path = tmp_path / "rules.yml"
    path.write_text(
        "rules:\n  - alert: ApiDown\n    absent: up{job=\"api\"}\n",
        encoding="utf-8",
    )
    st = os.stat(path)
    os.utime(path, (st.st_atime, st.st_mtime + 10))
    outcome = await evaluation_tick(state, T0)
    assert state.registry.current().names() == ["ApiDown"]
    assert _moves(outcome) == [("ApiDown", AlertState.INACTIVE, AlertState.FIRING)]


@pytest.mark.anyio
async def test_retention_pass_evicts_samples_and_series(state):
    retention_ms = state.config.retention_sec * 1000
    push(state, "old_metric", {}, T0, 1.0)
    push(state, "kept_metric", {}, T0, 1.0)
    push(state, "kept_metric", {}, T0 + retention_ms, 2.0)

    evicted, removed = await retention_pass(state, T0 + retention_ms + 1)
    assert (evicted, removed) == (2, 1)
    assert state.index.lookup("old_metric", {}) is None
    assert state.index.lookup("kept_metric", {}) is not None
    assert state.store.stats().samples == 1


def test_overrun_skips_to_next_boundary():
    assert _overrun(0.25, 1.0) == (0, 0.75)
    skipped, sleep_for = _overrun(2.5, 1.0)
    assert skipped == 2
    assert sleep_for == pytest.approx(0.5)


@pytest.mark.anyio
async def test_evaluator_loop_stops_on_shutdown(state, receiver):
    state.registry.reload([API_DOWN])
    shutdown = asyncio.Event()
    task = asyncio.create_task(alerts_evaluator_loop(state, shutdown))
    for _ in range(100):
        if state.evaluator_status.ticks:
            break
        await asyncio.sleep(0.01)
    shutdown.set()
    await asyncio.wait_for(task, timeout=2.0)

    status = state.evaluator_status
    assert status.ticks == 1
    assert status.failed_ticks == 0
    assert status.last_rules_evaluated == 1
    assert len(state.state_machine.firing()) == 1


@pytest.mark.anyio
async def test_evaluator_loop_counts_failed_ticks(state):
    state.registry.reload([LATENCY])
    push(state, "latency_seconds", {"instance": "a"}, T0, 2.0)
    state.store.close()
    shutdown = asyncio.Event()
    task = asyncio.create_task(alerts_evaluator_loop(state, shutdown))
    for _ in range(100):
        if state.evaluator_status.failed_ticks:
            break
        await asyncio.sleep(0.01)
    shutdown.set()
    await asyncio.wait_for(task, timeout=2.0)

    assert state.evaluator_status.failed_ticks == 1
    assert state.evaluator_status.ticks == 0
    assert state.evaluator_status.last_error


@pytest.mark.anyio
async def test_absence_with_for_duration_goes_pending_then_firing(state, receiver):
    state.registry.reload([{**API_DOWN, "for": "1m"}])

    moves = [_moves(await evaluation_tick(state, T0 + i * 30_000)) for i in range(3)]
    assert moves[0] == [("ApiDown", AlertState.INACTIVE, AlertState.PENDING)]
    assert moves[1] == []
    assert moves[2] == [("ApiDown", AlertState.PENDING, AlertState.FIRING)]


@pytest.mark.anyio
async def test_single_breaching_tick_never_notifies(state, receiver):
    state.registry.reload([LATENCY])
    push(state, "latency_seconds", {"instance": "a"}, T0 - 1000, 5.0)
    first = await evaluation_tick(state, T0)
    push(state, "latency_seconds", {"instance": "a"}, T0 + 29_000, 0.1)
    second = await evaluation_tick(state, T0 + 30_000)

    assert _moves(first) == [("HighLatency", AlertState.INACTIVE, AlertState.PENDING)]
    assert _moves(second) == [("HighLatency", AlertState.PENDING, AlertState.INACTIVE)]
    assert first.groups == second.groups == []
    assert receiver.calls == 0
