from __future__ import annotations

import asyncio

import pytest

from src.api.errors import StoreUnavailable
from src.api.services.rule_evaluator import RuleEvaluator, Verdict
from src.api.services.rules import build_rules
from src.api.services.sample_store import SampleStore
from src.api.services.series_index import SeriesIndex

NOW = 10_000_000


def _engine():
    store = SampleStore()
    index = SeriesIndex()
    return store, index, RuleEvaluator(store, lookback_ms=300_000, workers=2)


def _rule(**kw):
    return build_rules([kw])[0]


def test_one_verdict_per_matching_series():
    store, index, evaluator = _engine()
    hot = index.get_or_create("cpu", {"host": "a"})
    cold = index.get_or_create("cpu", {"host": "b"})
    idle = index.get_or_create("cpu", {"host": "c"})
    store.append(hot.id, NOW - 1000, 0.95)
    store.append(cold.id, NOW - 1000, 0.10)
    store.append(idle.id, NOW - 600_000, 0.99)  # outside the lookback

    rule = _rule(alert="HighCpu", selector="cpu", expr="value > 0.9", labels={"team": "infra"})
    result = evaluator.evaluate_rule(rule, index.snapshot(), NOW)

    by_host = {v.labels["host"]: v for v in result.verdicts}
    assert by_host["a"].verdict is Verdict.BREACHING
    assert by_host["a"].value == 0.95
    assert by_host["b"].verdict is Verdict.NORMAL
    # No data in the window: breach cannot be asserted.
    assert by_host["c"].verdict is Verdict.NORMAL
    assert by_host["a"].labels == {"host": "a", "team": "infra", "alertname": "HighCpu"}
    assert evaluator.rule_health["HighCpu"].breaching == 1


def test_series_error_becomes_unknown_and_is_isolated():
    store, index, evaluator = _engine()
    num = index.get_or_create("errors_total", {"job": "a"})
    den = index.get_or_create("requests_total", {"job": "a"})
    for sid in (num.id, den.id):
        store.append(sid, NOW - 60_000, 1.0)
        store.append(sid, NOW, 1.0)

    rule = _rule(alert="ErrRatio", selector="errors_total", expr="ratio(requests_total, 5m) > 0.1")
    result = evaluator.evaluate_rule(rule, index.snapshot(), NOW)
    assert [v.verdict for v in result.verdicts] == [Verdict.UNKNOWN]
    assert "did not increase" in result.verdicts[0].error
    assert evaluator.rule_health["ErrRatio"].unknown == 1


def test_absence_rule_single_verdict_keyed_on_equality_labels():
    store, index, evaluator = _engine()
    rule = _rule(alert="ApiDown", absent='up{job="api", instance=~".*"}', window="1m")

    result = evaluator.evaluate_rule(rule, index.snapshot(), NOW)
    assert len(result.verdicts) == 1
    v = result.verdicts[0]
    assert v.verdict is Verdict.BREACHING
    assert v.labels == {"job": "api", "alertname": "ApiDown"}
    assert dict(v.key) == {"__name__": "up", "job": "api"}

    s = index.get_or_create("up", {"job": "api", "instance": "x:80"})
    store.append(s.id, NOW - 30_000, 1.0)
    assert evaluator.evaluate_rule(rule, index.snapshot(), NOW).verdicts[0].verdict is Verdict.NORMAL
    # Older than the absence window counts as absent again.
    assert evaluator.evaluate_rule(rule, index.snapshot(), NOW + 60_000).verdicts[0].verdict is Verdict.BREACHING


@pytest.mark.anyio
async def test_evaluate_all_runs_every_rule():
    store, index, evaluator = _engine()
    s = index.get_or_create("cpu", {})
    store.append(s.id, NOW, 1.0)
    rules = build_rules(
        [{"alert": f"r{i}", "selector": "cpu", "expr": f"value > {i}"} for i in range(5)]
    )
    results = await evaluator.evaluate_all(rules, index.snapshot(), NOW)
    assert sorted(r.rule.name for r in results) == [f"r{i}" for i in range(5)]
    breaching = {r.rule.name for r in results if r.verdicts[0].verdict is Verdict.BREACHING}
    assert breaching == {"r0"}


@pytest.mark.anyio
async def test_no_rule_starts_after_shutdown_signal():
    _, index, evaluator = _engine()
    rules = build_rules([{"alert": "r", "selector": "cpu", "expr": "value > 1"}])
    stop = asyncio.Event()
    stop.set()
    assert await evaluator.evaluate_all(rules, index.snapshot(), NOW, stop) == []


@pytest.mark.anyio
async def test_store_unavailable_propagates():
    store, index, evaluator = _engine()
    index.get_or_create("cpu", {})
    store.close()
    rules = build_rules([{"alert": "r", "selector": "cpu", "expr": "value > 1"}])
    with pytest.raises(StoreUnavailable):
        await evaluator.evaluate_all(rules, index.snapshot(), NOW)
