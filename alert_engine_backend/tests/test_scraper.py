from __future__ import annotations

import httpx
import pytest

from conftest import T0
from src.api.schemas.alerting import AlertingConfigFile, ScrapeTarget
from src.api.services.scraper import scrape_once, scrape_target, target_labels

METRICS = """\
# TYPE node_load1 gauge
node_load1 0.42
node_filesystem_free_bytes{mountpoint="/"} 1.2e10
"""


def _handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "node-a":
        return httpx.Response(200, text=METRICS)
    if request.url.host == "node-b":
        return httpx.Response(503, text="unavailable")
    raise httpx.ConnectError("connection refused", request=request)


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(_handler))


def _latest(state, metric, labels):
    series = state.index.lookup(metric, labels)
    assert series is not None, (metric, labels)
    return state.store.latest(series.id)


def test_target_labels():
    target = ScrapeTarget(job="node", url="http://node-a:9100/metrics", labels={"env": "prod"})
    assert target_labels(target) == {"env": "prod", "job": "node", "instance": "node-a:9100"}
    assert target_labels(ScrapeTarget(job="node", url="https://node-a/metrics"))["instance"] == "node-a"


@pytest.mark.anyio
async def test_successful_scrape_ingests_with_target_labels(state):
    target = ScrapeTarget(job="node", url="http://node-a:9100/metrics")
    async with _client() as client:
        health = await scrape_target(state, client, target, T0)

    assert health.up is True
    assert health.samples == 2
    assert health.last_error is None
    labels = {"job": "node", "instance": "node-a:9100"}
    assert _latest(state, "node_load1", labels).value == 0.42
    assert _latest(state, "node_filesystem_free_bytes", {**labels, "mountpoint": "/"}).timestamp == T0
    assert _latest(state, "up", labels).value == 1.0
    assert _latest(state, "scrape_duration_seconds", labels) is not None


@pytest.mark.anyio
async def test_failing_targets_record_up_zero(state):
    state.alerting = AlertingConfigFile(
        scrape_targets=[
            ScrapeTarget(job="node", url="http://node-a:9100/metrics"),
            ScrapeTarget(job="node", url="http://node-b:9100/metrics"),
            ScrapeTarget(job="node", url="http://node-c:9100/metrics"),
        ]
    )
    async with _client() as client:
        results = await scrape_once(state, client, T0)

    assert [h.up for h in results] == [True, False, False]
    assert results[1].last_error == "HTTP 503"
    assert "ConnectError" in results[2].last_error
    assert _latest(state, "up", {"job": "node", "instance": "node-b:9100"}).value == 0.0
    assert _latest(state, "up", {"job": "node", "instance": "node-c:9100"}).value == 0.0
    assert set(state.scrape_health) == {
        "node|http://node-a:9100/metrics",
        "node|http://node-b:9100/metrics",
        "node|http://node-c:9100/metrics",
    }


@pytest.mark.anyio
async def test_scrape_once_without_targets_is_a_noop(state):
    async with _client() as client:
        assert await scrape_once(state, client, T0) == []
