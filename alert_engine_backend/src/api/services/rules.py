from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from src.api.errors import ConfigError
from src.api.schemas.common import Severity, now_ms
from src.api.services.expressions import Comparison, parse_duration, parse_expression
from src.api.services.series_index import Selector, parse_selector

logger = logging.getLogger(__name__)

_RULE_NAME_MAX = 200


class RuleDefinition(BaseModel):
    """One rule as written in the rules file (or posted to the reload endpoint)."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    alert: str = Field(..., min_length=1, max_length=_RULE_NAME_MAX, description="Rule (alert) name; unique.")
    selector: Optional[str] = Field(default=None, description="Series selector for threshold rules.")
    expr: Optional[str] = Field(default=None, description="Threshold expression, e.g. 'value > 0.9'.")
    absent: Optional[str] = Field(default=None, description="Selector whose absence is the breach condition.")
    for_: Union[str, int, float] = Field(default="0s", alias="for", description="Sustained-breach duration.")
    window: Optional[Union[str, int, float]] = Field(
        default=None, description="Absence lookback window (defaults to the engine lookback)."
    )
    severity: Optional[Severity] = Field(default=None, description="Shortcut for labels.severity.")
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)

    @field_validator("alert")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("alert name must not be empty")
        return v

    @field_validator("labels", "annotations", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Any:
        if isinstance(v, Mapping):
            return {str(k): "" if val is None else str(val) for k, val in v.items()}
        return v

    @model_validator(mode="after")
    def _one_kind(self) -> "RuleDefinition":
        if self.absent is not None:
            if self.selector is not None or self.expr is not None:
                raise ValueError("an absence rule takes 'absent' only, not 'selector'/'expr'")
        else:
            if not self.selector or not self.expr:
                raise ValueError("a threshold rule needs both 'selector' and 'expr' (or use 'absent')")
            if self.window is not None:
                raise ValueError("'window' only applies to absence rules")
        return self


@dataclass(frozen=True)
class Rule:
    name: str
    selector: Selector
    for_ms: int
    labels: Tuple[Tuple[str, str], ...]
    annotations: Tuple[Tuple[str, str], ...]

    kind = "rule"

    def label_map(self) -> Dict[str, str]:
        return dict(self.labels)

    def annotation_map(self) -> Dict[str, str]:
        return dict(self.annotations)


@dataclass(frozen=True)
class ThresholdRule(Rule):
    """Breaching while `expression` holds for a matched series."""

    expression: Comparison = field(default=None)  # type: ignore[assignment]

    kind = "threshold"


@dataclass(frozen=True)
class AbsenceRule(Rule):
    """Breaching while no series matched by `selector` has a sample in the window."""

    window_ms: Optional[int] = None

    kind = "absence"


def _to_rule(d: RuleDefinition) -> Rule:
    for_ms = parse_duration(d.for_)
    labels = dict(d.labels)
    if d.severity is not None:
        labels.setdefault("severity", d.severity.value)
    if "alertname" in labels:
        raise ConfigError(f"rule {d.alert!r}: label 'alertname' is reserved")
    common = dict(
        name=d.alert,
        for_ms=for_ms,
        labels=tuple(sorted(labels.items())),
        annotations=tuple(sorted(d.annotations.items())),
    )
    if d.absent is not None:
        window_ms = parse_duration(d.window) if d.window is not None else None
        if window_ms is not None and window_ms <= 0:
            raise ConfigError(f"rule {d.alert!r}: window must be positive")
        return AbsenceRule(selector=parse_selector(d.absent), window_ms=window_ms, **common)
    assert d.selector is not None and d.expr is not None
    return ThresholdRule(selector=parse_selector(d.selector), expression=parse_expression(d.expr), **common)


@dataclass(frozen=True)
class RuleSet:
    """Immutable snapshot of the active rules; replaced as a whole on reload."""

    version: int
    rules: Tuple[Rule, ...]
    source: str
    checksum: str
    loaded_at_ms: int

    def by_name(self, name: str) -> Optional[Rule]:
        for r in self.rules:
            if r.name == name:
                return r
        return None

    def names(self) -> List[str]:
        return [r.name for r in self.rules]


EMPTY_RULE_SET = RuleSet(version=0, rules=(), source="empty", checksum="", loaded_at_ms=0)


def _checksum(definitions: List[Any]) -> str:
    raw = json.dumps(definitions, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:16]


# PUBLIC_INTERFACE
def build_rules(definitions: List[Any]) -> Tuple[Rule, ...]:
    """
    Validate and compile rule definitions.

    Every definition is checked; if any fails, ConfigError lists all problems and
    nothing is returned.
    """
    if not isinstance(definitions, list):
        raise ConfigError("rules must be a list")
    rules: List[Rule] = []
    errors: List[str] = []
    seen: Dict[str, int] = {}
    for i, raw in enumerate(definitions):
        try:
            d = raw if isinstance(raw, RuleDefinition) else RuleDefinition.model_validate(raw)
            if d.alert in seen:
                raise ConfigError(f"duplicate rule name {d.alert!r} (also at index {seen[d.alert]})")
            seen[d.alert] = i
            rules.append(_to_rule(d))
        except ValidationError as exc:
            first = exc.errors()[0]
            loc = ".".join(str(p) for p in first.get("loc", ()))
            errors.append(f"rules[{i}]{'.' + loc if loc else ''}: {first.get('msg')}")
        except ConfigError as exc:
            errors.append(f"rules[{i}]: {exc.message}")
    if errors:
        raise ConfigError(f"{len(errors)} invalid rule definition(s): " + "; ".join(errors), meta={"errors": errors})
    return tuple(rules)


# PUBLIC_INTERFACE
def read_rules_file(path: str) -> List[Any]:
    """
    Read rule definitions from YAML.

    Accepts either a top-level `rules:` list or Prometheus-style `groups: [{name, rules}]`.
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read rules file {path}: {exc}") from None
    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"rules file {path} is not valid YAML: {exc}") from None

    if doc is None:
        return []
    if not isinstance(doc, dict):
        raise ConfigError(f"rules file {path} must contain a mapping with 'rules' or 'groups'")
    if "groups" in doc:
        out: List[Any] = []
        for group in doc.get("groups") or []:
            if not isinstance(group, dict) or not isinstance(group.get("rules", []), list):
                raise ConfigError(f"rules file {path}: each group needs a 'rules' list")
            out.extend(group.get("rules") or [])
        return out
    rules = doc.get("rules")
    if rules is None:
        return []
    if not isinstance(rules, list):
        raise ConfigError(f"rules file {path}: 'rules' must be a list")
    return rules


class RuleRegistry:
    """
    Holds the active RuleSet.

    Reloads are all-or-nothing: the new set is fully built before a single reference
    swap, and on ConfigError the previous set stays active.
    """

    def __init__(self, rules_file: Optional[str] = None):
        self._rules_file = rules_file
        self._current: RuleSet = EMPTY_RULE_SET
        self._lock = threading.Lock()
        self._file_mtime: Optional[float] = None
        self.last_error: Optional[str] = None
        self.last_reload_ms: Optional[int] = None

    @property
    def rules_file(self) -> Optional[str]:
        return self._rules_file

    # PUBLIC_INTERFACE
    def current(self) -> RuleSet:
        """Active rule-set snapshot (never mutated in place)."""
        return self._current

    # PUBLIC_INTERFACE
    def reload(self, definitions: List[Any], source: str = "api") -> RuleSet:
        """Atomically replace the active rules; raises ConfigError and keeps the old set on failure."""
        with self._lock:
            try:
                rules = build_rules(definitions)
            except ConfigError as exc:
                self.last_error = exc.message
                logger.error("Rule reload from %s rejected; keeping version %s: %s", source, self._current.version, exc)
                raise
            checksum = _checksum(
                [d.model_dump(by_alias=True) if isinstance(d, RuleDefinition) else d for d in definitions]
            )
            new = RuleSet(
                version=self._current.version + 1,
                rules=rules,
                source=source,
                checksum=checksum,
                loaded_at_ms=now_ms(),
            )
            self._current = new
            self.last_error = None
            self.last_reload_ms = new.loaded_at_ms
            logger.info("Loaded %s rule(s) from %s (version=%s checksum=%s)", len(rules), source, new.version, checksum)
            return new

    # PUBLIC_INTERFACE
    def reload_file(self) -> RuleSet:
        """Reload from the configured rules file."""
        if not self._rules_file:
            raise ConfigError("no rules file configured (set RULES_FILE)")
        path = self._rules_file
        try:
            mtime = os.stat(path).st_mtime
        except OSError:
            mtime = None
        try:
            definitions = read_rules_file(path)
        except ConfigError as exc:
            self.last_error = exc.message
            self._file_mtime = mtime
            logger.error("Rule reload from %s rejected; keeping version %s: %s", path, self._current.version, exc)
            raise
        self._file_mtime = mtime
        return self.reload(definitions, source=path)

    def maybe_reload_file(self) -> Optional[RuleSet]:
        """Reload when the rules file changed since the last attempt; errors are logged, not raised."""
        if not self._rules_file:
            return None
        try:
            mtime = os.stat(self._rules_file).st_mtime
        except OSError:
            return None
        if self._file_mtime is not None and mtime == self._file_mtime:
            return None
        try:
            return self.reload_file()
        except ConfigError:
            return None
