from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import ValidationError
from pymongo.errors import PyMongoError

from src.api.schemas.alerts import (
    AlertEventListResponse,
    AlertEventsQuery,
    AlertListResponse,
    AlertOut,
    AlertStateName,
)
from src.api.schemas.common import ErrorResponse, ms_to_datetime
from src.api.services.alert_state import AlertSnapshot, AlertState
from src.api.state import get_state

router = APIRouter(prefix="/api/alerts", tags=["Alerts"])


def _dt(ts_ms: Optional[int]) -> Optional[datetime]:
    return ms_to_datetime(ts_ms) if ts_ms is not None else None


def _alert_out(a: AlertSnapshot) -> AlertOut:
    return AlertOut(
        rule=a.key.rule,
        fingerprint=a.fingerprint,
        state=a.state.value,
        labels=dict(a.labels),
        annotations=dict(a.annotations),
        value=a.value,
        activeSince=_dt(a.active_since),
        firedAt=_dt(a.fired_at),
        lastEvaluated=_dt(a.last_evaluated),
    )


@router.get(
    "",
    response_model=AlertListResponse,
    summary="List live alerts",
    description="Pending and firing alert instances, optionally filtered by state and rule name.",
    operation_id="list_alerts",
)
def list_alerts(
    request: Request,
    state_filter: Optional[AlertStateName] = Query(default=None, alias="state", description="pending|firing"),
    rule: Optional[str] = Query(default=None, description="Rule name filter."),
) -> AlertListResponse:
    """List the alert instances currently held by the state machine."""
    sm = get_state(request.app).state_machine
    wanted = AlertState(state_filter) if state_filter else None
    items = [_alert_out(a) for a in sm.snapshot(state=wanted, rule=rule)]
    return AlertListResponse(items=items, total=len(items))


@router.get(
    "/events",
    response_model=AlertEventListResponse,
    responses={503: {"model": ErrorResponse}},
    summary="List alert events feed",
    description=(
        "Journaled alert transitions (pending/firing/resolved) with filters: rule, fingerprint, eventType, "
        "time range. Results sorted by createdAt desc. Requires BACKEND_MONGO_URI."
    ),
    operation_id="list_alert_events",
)
def list_events(
    request: Request,
    rule: Optional[str] = Query(default=None),
    fingerprint: Optional[str] = Query(default=None),
    event_type: Optional[str] = Query(default=None, alias="eventType", description="pending|firing|resolved"),
    start: Optional[str] = Query(default=None, description="ISO datetime start (inclusive)"),
    end: Optional[str] = Query(default=None, description="ISO datetime end (inclusive)"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0, le=100000),
) -> AlertEventListResponse:
    """List alert events with filters and pagination."""
    journal = get_state(request.app).journal
    if journal is None:
        raise HTTPException(status_code=503, detail="alert event journal is not configured (set BACKEND_MONGO_URI)")
    # Let Pydantic parse datetimes and the event type via the model.
    try:
        filters = AlertEventsQuery(
            rule=rule,
            fingerprint=fingerprint,
            event_type=event_type,
            start=start,
            end=end,
            limit=limit,
            offset=offset,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc.errors()[0].get("msg"))) from None
    try:
        items, total = journal.list_events(filters)
    except PyMongoError as exc:
        raise HTTPException(status_code=503, detail=f"alert event journal unavailable: {exc}") from None
    return AlertEventListResponse(items=items, total=total)
