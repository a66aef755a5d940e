from __future__ import annotations

import asyncio
from typing import Dict, List

from fastapi import APIRouter, HTTPException, Path, Request

from src.api.errors import StoreUnavailable
from src.api.schemas.common import ErrorResponse, now_ms
from src.api.schemas.samples import IngestResponse, SampleIn
from src.api.services.ingestion import IngestResult, RawSample
from src.api.state import get_state

router = APIRouter(tags=["Ingestion"])


def _to_response(result: IngestResult) -> IngestResponse:
    return IngestResponse(
        accepted=result.accepted,
        duplicates=result.duplicates,
        rejected=result.rejected,
        errors=result.errors,
    )


def _grouping_labels(job: str, grouping: str) -> Dict[str, str]:
    labels = {"job": job}
    parts = [p for p in grouping.split("/") if p]
    if len(parts) % 2:
        raise HTTPException(status_code=400, detail="grouping key must be label/value pairs")
    for name, value in zip(parts[0::2], parts[1::2]):
        labels[name] = value
    return labels


async def _ingest_text(request: Request, labels: Dict[str, str]) -> IngestResponse:
    state = get_state(request.app)
    raw = await request.body()
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="body must be UTF-8 text") from None
    try:
        result = await asyncio.to_thread(state.ingestor.ingest_text, text, now_ms(), labels)
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=exc.message) from None
    return _to_response(result)


@router.post(
    "/api/v1/samples",
    response_model=IngestResponse,
    responses={503: {"model": ErrorResponse}},
    summary="Push samples (JSON)",
    description=(
        "Ingest a JSON list of {metric, labels, timestamp, value} samples. Bad samples are dropped "
        "individually and reported; the rest are stored."
    ),
    operation_id="push_samples",
)
def push_samples(request: Request, payload: List[SampleIn]) -> IngestResponse:
    """Ingest JSON samples."""
    state = get_state(request.app)
    received = now_ms()
    samples = [
        RawSample(s.metric, s.labels, s.timestamp if s.timestamp is not None else received, s.value)
        for s in payload
    ]
    try:
        result = state.ingestor.ingest(samples)
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=exc.message) from None
    return _to_response(result)


@router.post(
    "/api/v1/import/text",
    response_model=IngestResponse,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Import exposition text",
    description="Ingest exposition-format text (`name{label=\"v\"} value [timestamp_ms]`, one sample per line).",
    operation_id="import_text",
)
async def import_text(request: Request) -> IngestResponse:
    """Ingest exposition text as-is."""
    return await _ingest_text(request, {})


@router.post(
    "/metrics/job/{job}",
    response_model=IngestResponse,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Push exposition text for a job",
    description="Push-gateway style ingestion; every sample gets the `job` label.",
    operation_id="push_job_metrics",
)
async def push_job_metrics(request: Request, job: str = Path(..., min_length=1)) -> IngestResponse:
    """Ingest exposition text labelled with the job."""
    return await _ingest_text(request, {"job": job})


@router.post(
    "/metrics/job/{job}/{grouping:path}",
    response_model=IngestResponse,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Push exposition text for a job and grouping key",
    description="Like /metrics/job/{job}; the trailing label/value path pairs are added as labels.",
    operation_id="push_grouped_job_metrics",
)
async def push_grouped_job_metrics(
    request: Request,
    job: str = Path(..., min_length=1),
    grouping: str = Path(..., description="label/value pairs, e.g. instance/web-1"),
) -> IngestResponse:
    """Ingest exposition text labelled with the job and grouping key."""
    return await _ingest_text(request, _grouping_labels(job, grouping))
