from __future__ import annotations

import dataclasses
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest
import yaml

from src.api.config import BackendConfig
from src.api.errors import DeliveryError
from src.api.main import create_app
from src.api.services.ingestion import RawSample
from src.api.state import AppState, get_state

# Fixed "now" for deterministic evaluation tests (2024-01-01T00:00:00Z).
T0 = 1_704_067_200_000


def make_config(**overrides: Any) -> BackendConfig:
    """BackendConfig with test-friendly defaults; no files, no Mongo."""
    base = BackendConfig(
        eval_interval_sec=1,
        eval_workers=2,
        eval_lookback_sec=300,
        out_of_order_tolerance_ms=5000,
        retention_sec=3600,
        retention_interval_sec=60,
        scrape_interval_sec=15,
        scrape_timeout_sec=5,
        delivery_max_attempts=3,
        delivery_base_delay_ms=0,
        delivery_max_delay_ms=0,
        delivery_timeout_sec=5,
        rules_file=None,
        alerting_config_file=None,
        mongo_uri=None,
        journal_ttl_sec=0,
    )
    return dataclasses.replace(base, **overrides)


def write_rules(path: Path, rules: List[Dict[str, Any]]) -> str:
    path.write_text(yaml.safe_dump({"rules": rules}), encoding="utf-8")
    return str(path)


class RecordingReceiver:
    """In-memory receiver capturing payloads; can be told to fail the first N sends."""

    def __init__(self, name: str = "rec", *, fail_times: int = 0, send_resolved: bool = True, match=None):
        self.name = name
        self.send_resolved = send_resolved
        self.match = dict(match or {})
        self.fail_times = fail_times
        self.calls = 0
        self.payloads: List[Dict[str, Any]] = []

    def accepts(self, labels) -> bool:
        return all(labels.get(k) == v for k, v in self.match.items())

    async def send(self, payload: Dict[str, Any]) -> None:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise DeliveryError(f"{self.name} failed attempt {self.calls}")
        self.payloads.append(payload)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def config(tmp_path: Path) -> BackendConfig:
    """Config with an (initially empty) rules file so reload-from-file is exercisable."""
    return make_config(rules_file=write_rules(tmp_path / "rules.yml", []))


@pytest.fixture
def app(config: BackendConfig):
    """
    FastAPI app built from the test config.

    httpx ASGITransport does not run startup/shutdown hooks, so no background loop runs;
    tests drive evaluation ticks explicitly.
    """
    return create_app(config)


@pytest.fixture
def state(app) -> AppState:
    return get_state(app)


@pytest.fixture
async def async_client(app) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client bound to the FastAPI ASGI app."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def push(state: AppState, metric: str, labels: Optional[Dict[str, str]], ts: int, value: float) -> None:
    """Ingest one sample directly through the ingestor."""
    result = state.ingestor.ingest([RawSample(metric, labels or {}, ts, value)])
    assert result.rejected == 0, result.errors
