from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, HTTPException, Request

from src.api.errors import ConfigError
from src.api.schemas.alerts import RuleHealthOut, RuleListResponse, RuleOut, RuleReloadRequest, RuleReloadResponse
from src.api.schemas.common import ErrorResponse, ms_to_datetime
from src.api.services.expressions import format_duration
from src.api.services.rule_evaluator import RuleHealth
from src.api.services.rules import AbsenceRule, Rule, ThresholdRule
from src.api.state import get_state

router = APIRouter(prefix="/api/rules", tags=["Rules"])


def _health_out(h: Optional[RuleHealth]) -> RuleHealthOut:
    if h is None:
        return RuleHealthOut()
    return RuleHealthOut(
        lastEvaluated=ms_to_datetime(h.last_evaluated_ms) if h.last_evaluated_ms is not None else None,
        lastDurationMs=h.last_duration_ms,
        series=h.series,
        breaching=h.breaching,
        unknown=h.unknown,
        lastError=h.last_error,
    )


def _rule_out(rule: Rule, health: Optional[RuleHealth]) -> RuleOut:
    data = {
        "name": rule.name,
        "kind": rule.kind,
        "selector": str(rule.selector),
        "for": format_duration(rule.for_ms),
        "labels": rule.label_map(),
        "annotations": rule.annotation_map(),
        "health": _health_out(health),
    }
    if isinstance(rule, ThresholdRule):
        data["expr"] = str(rule.expression)
    elif isinstance(rule, AbsenceRule) and rule.window_ms:
        data["window"] = format_duration(rule.window_ms)
    return RuleOut.model_validate(data)


@router.get(
    "",
    response_model=RuleListResponse,
    summary="List active rules",
    description="The active rule-set snapshot with per-rule evaluation health.",
    operation_id="list_rules",
)
def list_rules(request: Request) -> RuleListResponse:
    """List the active rules."""
    state = get_state(request.app)
    rule_set = state.registry.current()
    health = state.evaluator.rule_health
    items = [_rule_out(r, health.get(r.name)) for r in rule_set.rules]
    return RuleListResponse(
        version=rule_set.version,
        source=rule_set.source,
        checksum=rule_set.checksum,
        loadedAt=ms_to_datetime(rule_set.loaded_at_ms) if rule_set.loaded_at_ms else None,
        lastError=state.registry.last_error,
        items=items,
        total=len(items),
    )


@router.post(
    "/reload",
    response_model=RuleReloadResponse,
    responses={422: {"model": ErrorResponse}},
    summary="Reload rules",
    description=(
        "Atomically replace the active rules, either with the posted definitions or by re-reading RULES_FILE. "
        "On any invalid definition nothing changes and the errors are returned."
    ),
    operation_id="reload_rules",
)
def reload_rules(request: Request, payload: Optional[RuleReloadRequest] = Body(default=None)) -> RuleReloadResponse:
    """Reload the rule set."""
    registry = get_state(request.app).registry
    try:
        if payload is not None and payload.rules is not None:
            rule_set = registry.reload(payload.rules, source="api")
        else:
            rule_set = registry.reload_file()
    except ConfigError as exc:
        raise HTTPException(status_code=422, detail=exc.message) from None
    return RuleReloadResponse(
        version=rule_set.version,
        rules=len(rule_set.rules),
        source=rule_set.source,
        checksum=rule_set.checksum,
    )
