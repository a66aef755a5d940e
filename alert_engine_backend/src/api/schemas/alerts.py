from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

AlertStateName = Literal["inactive", "pending", "firing"]
AlertEventType = Literal["pending", "firing", "resolved"]


class AlertOut(BaseModel):
    """One live (pending or firing) alert instance."""

    rule: str = Field(..., description="Name of the rule that produced the alert.")
    fingerprint: str = Field(..., description="Stable id of the (rule, series labels) pair.")
    state: AlertStateName = Field(..., description="Current alert state.")
    labels: Dict[str, str] = Field(default_factory=dict, description="Alert labels (series labels + rule labels).")
    annotations: Dict[str, str] = Field(default_factory=dict, description="Rendered annotations.")
    value: Optional[float] = Field(default=None, description="Value observed on the last breaching evaluation.")
    active_since: Optional[datetime] = Field(default=None, alias="activeSince")
    fired_at: Optional[datetime] = Field(default=None, alias="firedAt")
    last_evaluated: Optional[datetime] = Field(default=None, alias="lastEvaluated")


class AlertListResponse(BaseModel):
    """Envelope for listing live alerts."""

    items: List[AlertOut] = Field(..., description="Live alert instances.")
    total: int = Field(..., ge=0, description="Number of alerts returned.")


class RuleHealthOut(BaseModel):
    last_evaluated: Optional[datetime] = Field(default=None, alias="lastEvaluated")
    last_duration_ms: float = Field(0.0, alias="lastDurationMs")
    series: int = Field(0, description="Series matched on the last evaluation.")
    breaching: int = Field(0, description="Series breaching on the last evaluation.")
    unknown: int = Field(0, description="Series that could not be evaluated on the last tick.")
    last_error: Optional[str] = Field(default=None, alias="lastError")


class RuleOut(BaseModel):
    """A rule of the active rule set."""

    name: str = Field(..., description="Rule (alert) name.")
    kind: Literal["threshold", "absence"] = Field(..., description="Rule variant.")
    selector: str = Field(..., description="Series selector the rule applies to.")
    expr: Optional[str] = Field(default=None, description="Threshold expression (threshold rules only).")
    window: Optional[str] = Field(default=None, description="Absence window (absence rules only).")
    for_: str = Field(..., alias="for", description="Pending duration before firing.")
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    health: RuleHealthOut = Field(default_factory=RuleHealthOut)


class RuleListResponse(BaseModel):
    """Envelope for the active rule set."""

    version: int = Field(..., ge=0, description="Rule-set version; increments on every successful reload.")
    source: str = Field(..., description="Where the active rules were loaded from.")
    checksum: str = Field(..., description="Checksum of the loaded definitions.")
    loaded_at: Optional[datetime] = Field(default=None, alias="loadedAt")
    last_error: Optional[str] = Field(default=None, alias="lastError", description="Last rejected reload, if any.")
    items: List[RuleOut] = Field(..., description="Active rules.")
    total: int = Field(..., ge=0)


class RuleReloadRequest(BaseModel):
    """Inline rule definitions; when omitted, the configured rules file is re-read."""

    rules: Optional[List[Dict[str, Any]]] = Field(default=None, description="Rule definitions (YAML file schema).")


class RuleReloadResponse(BaseModel):
    version: int = Field(..., ge=0)
    rules: int = Field(..., ge=0, description="Number of active rules after the reload.")
    source: str
    checksum: str


class AlertEventOut(BaseModel):
    """A journaled alert state transition."""

    id: str = Field(..., description="Event id (Mongo ObjectId string).")
    rule: str = Field(..., description="Rule name.")
    fingerprint: str = Field(..., description="Alert fingerprint.")
    event_type: AlertEventType = Field(..., alias="eventType")
    from_state: AlertStateName = Field(..., alias="fromState")
    to_state: AlertStateName = Field(..., alias="toState")
    severity: Optional[str] = Field(default=None, description="Value of the alert's severity label.")
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    value: Optional[float] = Field(default=None)
    created_at: datetime = Field(..., alias="createdAt", description="UTC time of the transition.")


class AlertEventListResponse(BaseModel):
    """Envelope for listing alert events."""

    items: List[AlertEventOut] = Field(..., description="List of alert events.")
    total: int = Field(..., ge=0, description="Total count of matching events.")


class AlertEventsQuery(BaseModel):
    """Filter/pagination model for listing alert events (used by router query params)."""

    rule: Optional[str] = Field(default=None, description="Filter by rule name.")
    fingerprint: Optional[str] = Field(default=None, description="Filter by alert fingerprint.")
    event_type: Optional[AlertEventType] = Field(default=None, description="Filter by event type.")
    start: Optional[datetime] = Field(default=None, description="Start time (inclusive) filter.")
    end: Optional[datetime] = Field(default=None, description="End time (inclusive) filter.")
    limit: int = Field(100, ge=1, le=500, description="Max number of events to return.")
    offset: int = Field(0, ge=0, le=100000, description="Offset for pagination (simple skip).")
