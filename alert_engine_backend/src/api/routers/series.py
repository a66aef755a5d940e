from __future__ import annotations

from typing import List, Optional, Tuple

from fastapi import APIRouter, HTTPException, Path, Query, Request

from src.api.errors import ConfigError, StoreUnavailable
from src.api.schemas.common import ErrorResponse, now_ms
from src.api.schemas.samples import (
    LabelValuesResponse,
    QueryRangeResponse,
    SampleOut,
    SeriesListResponse,
    SeriesOut,
    SeriesSamplesResponse,
)
from src.api.services.series_index import Selector, Series, parse_selector
from src.api.state import AppState, get_state

router = APIRouter(prefix="/api", tags=["Series"])


def _series_out(s: Series) -> SeriesOut:
    return SeriesOut(id=s.id, metric=s.name, labels=dict(s.labels))


def _selector(raw: str) -> Selector:
    try:
        return parse_selector(raw)
    except ConfigError as exc:
        raise HTTPException(status_code=422, detail=exc.message) from None


def _time_range(state: AppState, start: Optional[int], end: Optional[int]) -> Tuple[int, int]:
    end_ms = end if end is not None else now_ms()
    start_ms = start if start is not None else end_ms - state.config.eval_lookback_sec * 1000
    if start_ms > end_ms:
        raise HTTPException(status_code=400, detail="start must not be after end")
    return start_ms, end_ms


def _samples(state: AppState, s: Series, start_ms: int, end_ms: int) -> SeriesSamplesResponse:
    try:
        window = state.store.query(s.id, start_ms, end_ms)
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=exc.message) from None
    return SeriesSamplesResponse(
        series=_series_out(s),
        start=start_ms,
        end=end_ms,
        samples=[SampleOut(timestamp=ts, value=v) for ts, v in window],
    )


@router.get(
    "/series",
    response_model=SeriesListResponse,
    responses={422: {"model": ErrorResponse}},
    summary="List series",
    description="List known series, optionally filtered by a selector such as `http_requests_total{job=\"api\"}`.",
    operation_id="list_series",
)
def list_series(
    request: Request,
    match: Optional[str] = Query(default=None, description="Series selector."),
    limit: int = Query(500, ge=1, le=10000),
) -> SeriesListResponse:
    """List series from the current index snapshot."""
    snap = get_state(request.app).index.snapshot()
    if match:
        found = snap.select(_selector(match))
    else:
        found = [snap.series[sid] for sid in sorted(snap.series)]
    return SeriesListResponse(items=[_series_out(s) for s in found[:limit]], total=len(found))


@router.get(
    "/series/{series_id}/samples",
    response_model=SeriesSamplesResponse,
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Series samples",
    description="Raw samples of one series in [start, end] (ms epoch); defaults to the evaluation lookback.",
    operation_id="get_series_samples",
)
def get_series_samples(
    request: Request,
    series_id: int = Path(..., ge=1),
    start: Optional[int] = Query(default=None, description="Start (ms epoch, inclusive)."),
    end: Optional[int] = Query(default=None, description="End (ms epoch, inclusive)."),
) -> SeriesSamplesResponse:
    """Return the samples of one series."""
    state = get_state(request.app)
    s = state.index.snapshot().get(series_id)
    if s is None:
        raise HTTPException(status_code=404, detail="series not found")
    start_ms, end_ms = _time_range(state, start, end)
    return _samples(state, s, start_ms, end_ms)


@router.get(
    "/query_range",
    response_model=QueryRangeResponse,
    responses={422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Range query",
    description="Raw samples of every series matched by the selector in [start, end] (ms epoch).",
    operation_id="query_range",
)
def query_range(
    request: Request,
    query: str = Query(..., description="Series selector."),
    start: Optional[int] = Query(default=None),
    end: Optional[int] = Query(default=None),
    limit: int = Query(100, ge=1, le=1000, description="Max number of series returned."),
) -> QueryRangeResponse:
    """Return samples for all matching series."""
    state = get_state(request.app)
    selector = _selector(query)
    start_ms, end_ms = _time_range(state, start, end)
    matched: List[Series] = state.index.snapshot().select(selector)[:limit]
    return QueryRangeResponse(
        selector=str(selector),
        start=start_ms,
        end=end_ms,
        items=[_samples(state, s, start_ms, end_ms) for s in matched],
    )


@router.get(
    "/labels/{label}/values",
    response_model=LabelValuesResponse,
    summary="Label values",
    description="All values of a label across known series (`__name__` lists metric names).",
    operation_id="label_values",
)
def label_values(request: Request, label: str = Path(..., min_length=1)) -> LabelValuesResponse:
    """List values of one label."""
    snap = get_state(request.app).index.snapshot()
    return LabelValuesResponse(label=label, values=sorted(snap.label_values.get(label, frozenset())))
