from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from src.api.errors import StoreUnavailable
from src.api.schemas.common import ErrorResponse, HealthResponse, ms_to_iso, utc_now
from src.api.services.alert_state import AlertState
from src.api.state import get_state

router = APIRouter(tags=["Health"])


def _sanitize_mongo_uri_for_response(uri: str) -> str:
    """Mask credentials in mongo URIs to avoid returning secrets to clients."""
    return re.sub(r"(mongodb(?:\+srv)?://)([^:@/]+):([^@/]+)@", r"\1\2:***@", uri)


class MongoConnectivityResponse(BaseModel):
    """Response model for backend↔Mongo connectivity diagnostics."""

    ok: bool = Field(..., description="Whether the backend can successfully ping MongoDB.")
    mongo_uri_sanitized: str = Field(..., description="MongoDB URI with credentials masked.")
    timestamp: str = Field(..., description="UTC timestamp when the check was performed (ISO string).")


class EvaluatorStatusOut(BaseModel):
    interval_sec: int
    ticks: int
    skipped_ticks: int = Field(..., description="Tick boundaries skipped because a tick overran the interval.")
    failed_ticks: int
    last_tick: Optional[str] = None
    last_duration_ms: float
    last_rules_evaluated: int
    last_transitions: int
    last_error: Optional[str] = None


class StoreStatusOut(BaseModel):
    available: bool
    series: int = 0
    samples: int = 0
    oldest: Optional[str] = None
    newest: Optional[str] = None
    indexed_series: int = 0


class NotificationStatusOut(BaseModel):
    receivers: List[str]
    delivered: int
    retries: int
    undelivered: int
    suppressed: int
    recent_undelivered: List[Dict[str, Any]] = Field(default_factory=list)


class ScrapeTargetStatusOut(BaseModel):
    job: str
    url: str
    up: bool
    last_scrape: Optional[str] = None
    last_duration_ms: float = 0.0
    samples: int = 0
    last_error: Optional[str] = None


class EngineStatusResponse(BaseModel):
    """Engine-wide health: evaluation ticks, store, rules, alerts, notifications, scraping."""

    status: str = Field(..., description="ok | degraded")
    evaluator: EvaluatorStatusOut
    store: StoreStatusOut
    rules_version: int
    rules: int
    rules_last_error: Optional[str] = None
    alerts: Dict[str, int] = Field(default_factory=dict, description="Live alert counts per state.")
    notifications: NotificationStatusOut
    scrape_targets: List[ScrapeTargetStatusOut] = Field(default_factory=list)
    journal_enabled: bool
    timestamp: str


@router.get(
    "/",
    response_model=HealthResponse,
    summary="Health check",
    description="Basic service liveness check used by deployment tooling.",
    operation_id="health_check",
)
def health_check() -> HealthResponse:
    """Return service liveness status."""
    return HealthResponse(status="ok", message="Healthy", timestamp=utc_now())


@router.get(
    "/api/health/status",
    response_model=EngineStatusResponse,
    summary="Engine status",
    description=(
        "Evaluation tick counters (including skipped ticks), sample store size, rule-set version, "
        "live alert counts, notification delivery counters with recent undelivered groups, and scrape health."
    ),
    operation_id="engine_status",
)
def engine_status(request: Request) -> EngineStatusResponse:
    """Report engine health."""
    state = get_state(request.app)
    ev = state.evaluator_status

    try:
        stats = state.store.stats()
        store = StoreStatusOut(
            available=True,
            series=stats.series,
            samples=stats.samples,
            oldest=ms_to_iso(stats.oldest_ts),
            newest=ms_to_iso(stats.newest_ts),
            indexed_series=len(state.index),
        )
    except StoreUnavailable:
        store = StoreStatusOut(available=False, indexed_series=len(state.index))

    delivery = state.router.status.snapshot()
    notifications = NotificationStatusOut(
        receivers=[r.name for r in state.router.receivers],
        delivered=delivery["delivered"],
        retries=delivery["retries"],
        undelivered=delivery["undelivered"],
        suppressed=delivery["suppressed"],
        recent_undelivered=[
            {
                "receiver": u.receiver,
                "groupKey": u.group_key,
                "status": u.status,
                "alerts": u.alerts,
                "attempts": u.attempts,
                "error": u.error,
                "at": ms_to_iso(u.at),
            }
            for u in delivery["recent_undelivered"]
        ],
    )

    alerts = {s.value: 0 for s in (AlertState.PENDING, AlertState.FIRING)}
    for a in state.state_machine.snapshot():
        alerts[a.state.value] = alerts.get(a.state.value, 0) + 1

    rule_set = state.registry.current()
    degraded = not store.available or ev.last_error is not None or state.registry.last_error is not None
    return EngineStatusResponse(
        status="degraded" if degraded else "ok",
        evaluator=EvaluatorStatusOut(
            interval_sec=state.config.eval_interval_sec,
            ticks=ev.ticks,
            skipped_ticks=ev.skipped_ticks,
            failed_ticks=ev.failed_ticks,
            last_tick=ms_to_iso(ev.last_tick_ms),
            last_duration_ms=ev.last_duration_ms,
            last_rules_evaluated=ev.last_rules_evaluated,
            last_transitions=ev.last_transitions,
            last_error=ev.last_error,
        ),
        store=store,
        rules_version=rule_set.version,
        rules=len(rule_set.rules),
        rules_last_error=state.registry.last_error,
        alerts=alerts,
        notifications=notifications,
        scrape_targets=[
            ScrapeTargetStatusOut(
                job=h.job,
                url=h.url,
                up=h.up,
                last_scrape=ms_to_iso(h.last_scrape_ms),
                last_duration_ms=h.last_duration_ms,
                samples=h.samples,
                last_error=h.last_error,
            )
            for h in state.scrape_health.values()
        ],
        journal_enabled=state.journal is not None,
        timestamp=utc_now().isoformat(),
    )


@router.get(
    "/api/health/mongo",
    response_model=MongoConnectivityResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Mongo connectivity check",
    description="Pings the MongoDB used by the alert event journal. Credentials are masked.",
    operation_id="mongo_connectivity_check",
)
def mongo_connectivity_check(request: Request) -> MongoConnectivityResponse:
    """Connectivity check for the alert event journal's MongoDB."""
    state = get_state(request.app)
    if state.mongo is None or not state.config.mongo_uri:
        raise HTTPException(status_code=404, detail="alert event journal is not configured (set BACKEND_MONGO_URI)")
    ok = state.mongo.ping()
    return MongoConnectivityResponse(
        ok=ok,
        mongo_uri_sanitized=_sanitize_mongo_uri_for_response(state.config.mongo_uri),
        timestamp=utc_now().isoformat(),
    )
