from __future__ import annotations

import httpx
import pytest

from conftest import T0

SAMPLES = [
    {"metric": "http_requests_total", "labels": {"job": "api", "instance": "a"}, "timestamp": T0, "value": 10},
    {"metric": "http_requests_total", "labels": {"job": "api", "instance": "a"}, "timestamp": T0 + 15_000, "value": 25},
    {"metric": "http_requests_total", "labels": {"job": "web", "instance": "b"}, "timestamp": T0, "value": 3},
]


@pytest.mark.anyio
async def test_push_json_samples(async_client: httpx.AsyncClient):
    res = await async_client.post("/api/v1/samples", json=SAMPLES)
    assert res.status_code == 200
    assert res.json() == {"accepted": 3, "duplicates": 0, "rejected": 0, "errors": []}

    # Replaying the batch is idempotent; a conflicting value is rejected on its own.
    replay = SAMPLES + [{**SAMPLES[0], "value": 11}, {"metric": "bad name", "value": 1}]
    res = await async_client.post("/api/v1/samples", json=replay)
    body = res.json()
    assert body["accepted"] == 0
    assert body["duplicates"] == 3
    assert body["rejected"] == 2
    assert len(body["errors"]) == 2


@pytest.mark.anyio
async def test_push_json_without_timestamp_uses_receipt_time(async_client: httpx.AsyncClient, state):
    res = await async_client.post("/api/v1/samples", json=[{"metric": "queue_depth", "value": 4}])
    assert res.json()["accepted"] == 1
    series = state.index.lookup("queue_depth", {})
    assert state.store.latest(series.id).timestamp > T0


@pytest.mark.anyio
async def test_push_json_validation_error(async_client: httpx.AsyncClient):
    res = await async_client.post("/api/v1/samples", json=[{"metric": "x"}])
    assert res.status_code == 422


@pytest.mark.anyio
async def test_import_exposition_text(async_client: httpx.AsyncClient, state):
    body = f'disk_used_ratio{{mount="/"}} 0.93 {T0}\nnot a sample line\n'
    res = await async_client.post("/api/v1/import/text", content=body, headers={"content-type": "text/plain"})
    assert res.status_code == 200
    out = res.json()
    assert out["accepted"] == 1 and out["rejected"] == 1
    assert state.index.lookup("disk_used_ratio", {"mount": "/"}) is not None


@pytest.mark.anyio
async def test_push_gateway_style_job_and_grouping(async_client: httpx.AsyncClient, state):
    res = await async_client.post("/metrics/job/backup", content=f"backup_last_success {T0}\n")
    assert res.status_code == 200
    assert state.index.lookup("backup_last_success", {"job": "backup"}) is not None

    res = await async_client.post("/metrics/job/backup/instance/db-1", content='backup_bytes{job="other"} 42\n')
    assert res.status_code == 200
    assert res.json()["accepted"] == 1
    assert state.index.lookup("backup_bytes", {"job": "backup", "instance": "db-1"}) is not None

    res = await async_client.post("/metrics/job/backup/instance", content="backup_bytes 1\n")
    assert res.status_code == 400


@pytest.mark.anyio
async def test_ingest_when_store_unavailable_is_503(async_client: httpx.AsyncClient, state):
    state.store.close()
    res = await async_client.post("/api/v1/samples", json=SAMPLES[:1])
    assert res.status_code == 503
    res = await async_client.post("/metrics/job/x", content="m 1\n")
    assert res.status_code == 503


@pytest.mark.anyio
async def test_series_listing_and_samples(async_client: httpx.AsyncClient):
    await async_client.post("/api/v1/samples", json=SAMPLES)

    res = await async_client.get("/api/series")
    assert res.json()["total"] == 2

    res = await async_client.get("/api/series", params={"match": 'http_requests_total{job="api"}'})
    body = res.json()
    assert body["total"] == 1
    series = body["items"][0]
    assert series["metric"] == "http_requests_total"
    assert series["labels"] == {"job": "api", "instance": "a"}

    res = await async_client.get(
        f"/api/series/{series['id']}/samples", params={"start": T0, "end": T0 + 60_000}
    )
    assert res.status_code == 200
    assert res.json()["samples"] == [
        {"timestamp": T0, "value": 10.0},
        {"timestamp": T0 + 15_000, "value": 25.0},
    ]

    res = await async_client.get("/api/series/9999/samples")
    assert res.status_code == 404


@pytest.mark.anyio
async def test_query_range_and_label_values(async_client: httpx.AsyncClient):
    await async_client.post("/api/v1/samples", json=SAMPLES)

    res = await async_client.get(
        "/api/query_range",
        params={"query": 'http_requests_total{job=~"api|web"}', "start": T0, "end": T0 + 1000},
    )
    assert res.status_code == 200
    body = res.json()
    assert len(body["items"]) == 2
    assert [len(item["samples"]) for item in body["items"]] == [1, 1]

    res = await async_client.get("/api/labels/job/values")
    assert res.json() == {"label": "job", "values": ["api", "web"]}
    res = await async_client.get("/api/labels/__name__/values")
    assert res.json()["values"] == ["http_requests_total"]


@pytest.mark.anyio
async def test_series_query_errors(async_client: httpx.AsyncClient):
    res = await async_client.get("/api/query_range", params={"query": "bad{"})
    assert res.status_code == 422
    res = await async_client.get("/api/series", params={"match": "{job=}"})
    assert res.status_code == 422
    res = await async_client.get("/api/query_range", params={"query": "up", "start": T0 + 1, "end": T0})
    assert res.status_code == 400
