from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class SampleIn(BaseModel):
    """One pushed sample."""

    metric: str = Field(..., description="Metric name, e.g. http_requests_total.")
    labels: Dict[str, str] = Field(default_factory=dict, description="Label set identifying the series.")
    timestamp: Optional[int] = Field(
        default=None, description="Millisecond epoch timestamp; defaults to the time of receipt."
    )
    value: float = Field(..., description="Sample value.")


class IngestResponse(BaseModel):
    """Outcome of an ingestion request; rejected samples are dropped, the rest are stored."""

    accepted: int = Field(..., ge=0, description="Samples stored.")
    duplicates: int = Field(0, ge=0, description="Exact duplicates ignored.")
    rejected: int = Field(0, ge=0, description="Samples dropped as malformed, out of order or conflicting.")
    errors: List[str] = Field(default_factory=list, description="First rejection reasons.")


class SeriesOut(BaseModel):
    id: int = Field(..., description="Series id.")
    metric: str = Field(..., description="Metric name.")
    labels: Dict[str, str] = Field(default_factory=dict, description="Series labels (without the metric name).")


class SeriesListResponse(BaseModel):
    items: List[SeriesOut] = Field(..., description="Matching series.")
    total: int = Field(..., ge=0, description="Total matching series (before limit).")


class SampleOut(BaseModel):
    timestamp: int = Field(..., description="Millisecond epoch timestamp.")
    value: float


class SeriesSamplesResponse(BaseModel):
    series: SeriesOut
    start: int
    end: int
    samples: List[SampleOut] = Field(default_factory=list)


class QueryRangeResponse(BaseModel):
    """Raw samples of every series matched by a selector in [start, end]."""

    selector: str
    start: int
    end: int
    items: List[SeriesSamplesResponse] = Field(default_factory=list)


class LabelValuesResponse(BaseModel):
    label: str
    values: List[str] = Field(default_factory=list)
