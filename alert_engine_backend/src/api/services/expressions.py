"""
Threshold expressions for alert rules.

Rules carry an expression string such as `value > 0.9`, `rate(5m) > 10` or
`ratio(http_requests_total{job="api"}, 5m, on(instance)) > 5%`. It is parsed once,
when the rule set is loaded, into a small typed tree; anything unparseable raises
ConfigError there rather than failing at evaluation time.
"""

from __future__ import annotations

import math
import operator
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from src.api.errors import ConfigError, EvaluationError
from src.api.services.sample_store import SampleRange, SampleStore
from src.api.services.series_index import IndexSnapshot, Selector, Series, parse_selector_prefix

_DURATION_PART_RE = re.compile(r"(\d+)(ms|s|m|h|d|w)")
_DURATION_UNITS_MS = {"ms": 1, "s": 1000, "m": 60_000, "h": 3_600_000, "d": 86_400_000, "w": 604_800_000}


# PUBLIC_INTERFACE
def parse_duration(raw: object) -> int:
    """
    Parse a duration into milliseconds.

    Accepts Prometheus-style strings ("30s", "2m", "1h30m", "500ms") and plain
    numbers, which are read as seconds. Raises ConfigError otherwise.
    """
    if isinstance(raw, bool):
        raise ConfigError(f"invalid duration {raw!r}")
    if isinstance(raw, (int, float)):
        if raw < 0 or not math.isfinite(raw):
            raise ConfigError(f"duration must be a non-negative number of seconds, got {raw!r}")
        return int(round(float(raw) * 1000))
    if not isinstance(raw, str) or not raw.strip():
        raise ConfigError(f"invalid duration {raw!r}")
    text = raw.strip()
    if text.isdigit():
        return int(text) * 1000
    total = 0
    pos = 0
    for m in _DURATION_PART_RE.finditer(text):
        if m.start() != pos:
            break
        total += int(m.group(1)) * _DURATION_UNITS_MS[m.group(2)]
        pos = m.end()
    if pos != len(text):
        raise ConfigError(f"invalid duration {raw!r} (expected e.g. 30s, 2m, 1h30m)")
    return total


def format_duration(ms: int) -> str:
    if ms == 0:
        return "0s"
    out: List[str] = []
    for unit in ("w", "d", "h", "m", "s", "ms"):
        size = _DURATION_UNITS_MS[unit]
        if ms >= size:
            out.append(f"{ms // size}{unit}")
            ms %= size
    return "".join(out)


# ---- Evaluation context ----


@dataclass
class EvalContext:
    """Per-rule evaluation inputs: the tick's index snapshot, the store and the tick time."""

    snapshot: IndexSnapshot
    store: SampleStore
    now_ms: int
    lookback_ms: int
    _increase_cache: Dict[Tuple[str, int], Dict[int, Optional[float]]] = field(default_factory=dict)

    def window(self, series_id: int, window_ms: int) -> SampleRange:
        return self.store.query(series_id, self.now_ms - window_ms, self.now_ms)

    def increases(self, selector: Selector, window_ms: int) -> Dict[int, Optional[float]]:
        """Counter increase per series matched by `selector`, memoized for the rule evaluation."""
        key = (str(selector), window_ms)
        cached = self._increase_cache.get(key)
        if cached is None:
            cached = {}
            for series in self.snapshot.select(selector):
                cached[series.id] = counter_increase(self.window(series.id, window_ms))
            self._increase_cache[key] = cached
        return cached


def counter_increase(samples: SampleRange) -> Optional[float]:
    """Increase of a counter across the samples, compensating for counter resets."""
    if len(samples) < 2:
        return None
    total = 0.0
    prev: Optional[float] = None
    for sample in samples:
        if prev is not None:
            if sample.value >= prev:
                total += sample.value - prev
            else:
                # Counter reset: the new value counts from zero.
                total += sample.value
        prev = sample.value
    return total


# ---- Expression tree ----


class Operand(Protocol):
    def window_ms(self, lookback_ms: int) -> int:
        ...

    def evaluate(self, series: Series, samples: SampleRange, ctx: EvalContext) -> Optional[float]:
        """Numeric value for one series; None when the window holds too little data."""
        ...


@dataclass(frozen=True)
class InstantValue:
    """`value`: the most recent sample within the lookback window."""

    def window_ms(self, lookback_ms: int) -> int:
        return lookback_ms

    def evaluate(self, series: Series, samples: SampleRange, ctx: EvalContext) -> Optional[float]:
        last = samples.last()
        return last.value if last is not None else None

    def __str__(self) -> str:
        return "value"


@dataclass(frozen=True)
class Rate:
    """`rate(d)`: per-second increase of a counter over the window."""

    window: int

    def window_ms(self, lookback_ms: int) -> int:
        return self.window

    def evaluate(self, series: Series, samples: SampleRange, ctx: EvalContext) -> Optional[float]:
        inc = counter_increase(samples)
        if inc is None:
            return None
        first, last = samples.first(), samples.last()
        assert first is not None and last is not None
        elapsed_s = (last.timestamp - first.timestamp) / 1000.0
        if elapsed_s <= 0:
            return None
        return inc / elapsed_s

    def __str__(self) -> str:
        return f"rate({format_duration(self.window)})"


@dataclass(frozen=True)
class Increase:
    """`increase(d)`: counter increase over the window."""

    window: int

    def window_ms(self, lookback_ms: int) -> int:
        return self.window

    def evaluate(self, series: Series, samples: SampleRange, ctx: EvalContext) -> Optional[float]:
        return counter_increase(samples)

    def __str__(self) -> str:
        return f"increase({format_duration(self.window)})"


@dataclass(frozen=True)
class Delta:
    """`delta(d)`: last minus first value of a gauge over the window."""

    window: int

    def window_ms(self, lookback_ms: int) -> int:
        return self.window

    def evaluate(self, series: Series, samples: SampleRange, ctx: EvalContext) -> Optional[float]:
        if len(samples) < 2:
            return None
        first, last = samples.first(), samples.last()
        assert first is not None and last is not None
        return last.value - first.value

    def __str__(self) -> str:
        return f"delta({format_duration(self.window)})"


_OVER_TIME: Dict[str, Callable[[List[float]], float]] = {
    "avg_over_time": lambda vals: sum(vals) / len(vals),
    "max_over_time": max,
    "min_over_time": min,
}


@dataclass(frozen=True)
class OverTime:
    """`avg_over_time(d)`, `max_over_time(d)`, `min_over_time(d)`."""

    func: str
    window: int

    def window_ms(self, lookback_ms: int) -> int:
        return self.window

    def evaluate(self, series: Series, samples: SampleRange, ctx: EvalContext) -> Optional[float]:
        vals = samples.values()
        if not vals:
            return None
        return float(_OVER_TIME[self.func](vals))

    def __str__(self) -> str:
        return f"{self.func}({format_duration(self.window)})"


@dataclass(frozen=True)
class Ratio:
    """
    `ratio(denominator_selector, d[, on(l1, l2)])`.

    Increase of the rule's series over the window divided by the summed increase of
    the denominator series that share the `on` labels with it (all of them when `on`
    is omitted).
    """

    denominator: Selector
    window: int
    on: Tuple[str, ...] = ()

    def window_ms(self, lookback_ms: int) -> int:
        return self.window

    def evaluate(self, series: Series, samples: SampleRange, ctx: EvalContext) -> Optional[float]:
        numerator = counter_increase(samples)
        if numerator is None:
            return None

        labels = series.label_map()
        denominator = 0.0
        seen = 0
        for sid, inc in ctx.increases(self.denominator, self.window).items():
            if inc is None:
                continue
            if self.on:
                other = ctx.snapshot.get(sid)
                if other is None:
                    continue
                other_labels = other.label_map()
                if any(other_labels.get(l) != labels.get(l) for l in self.on):
                    continue
            denominator += inc
            seen += 1

        if seen == 0:
            raise EvaluationError(f"ratio denominator {self.denominator} has no data in window")
        if denominator == 0:
            raise EvaluationError(f"ratio denominator {self.denominator} did not increase in window")
        return numerator / denominator

    def __str__(self) -> str:
        on = f", on({', '.join(self.on)})" if self.on else ""
        return f"ratio({self.denominator}, {format_duration(self.window)}{on})"


_COMPARATORS: Dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}


@dataclass(frozen=True)
class Comparison:
    """Root of every threshold expression: `<operand> <op> <number>`."""

    operand: Operand
    op: str
    threshold: float

    def window_ms(self, lookback_ms: int) -> int:
        return self.operand.window_ms(lookback_ms)

    def value(self, series: Series, samples: SampleRange, ctx: EvalContext) -> Optional[float]:
        return self.operand.evaluate(series, samples, ctx)

    def breached(self, value: float) -> bool:
        if math.isnan(value):
            raise EvaluationError("expression evaluated to NaN")
        return _COMPARATORS[self.op](value, self.threshold)

    def __str__(self) -> str:
        return f"{self.operand} {self.op} {self.threshold:g}"


# ---- Parser ----

_IDENT_RE = re.compile(r"[a-z_]+")
_NUMBER_RE = re.compile(r"[+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|[Ii]nf)(%?)")
_OP_RE = re.compile(r">=|<=|==|!=|>|<")
_DURATION_RE = re.compile(r"(?:\d+(?:ms|s|m|h|d|w))+")
_LABEL_RE = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")

_WINDOWED = {"rate": Rate, "increase": Increase, "delta": Delta}


class _ExpressionParser:
    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def error(self, message: str) -> ConfigError:
        return ConfigError(f"invalid expression {self.text!r} at position {self.pos}: {message}")

    def skip_ws(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def expect(self, ch: str) -> None:
        self.skip_ws()
        if not self.text.startswith(ch, self.pos):
            raise self.error(f"expected {ch!r}")
        self.pos += len(ch)

    def accept(self, ch: str) -> bool:
        self.skip_ws()
        if self.text.startswith(ch, self.pos):
            self.pos += len(ch)
            return True
        return False

    def match(self, regex: "re.Pattern[str]", what: str) -> "re.Match[str]":
        self.skip_ws()
        m = regex.match(self.text, self.pos)
        if not m:
            raise self.error(f"expected {what}")
        self.pos = m.end()
        return m

    def duration(self) -> int:
        window = parse_duration(self.match(_DURATION_RE, "duration such as 5m").group(0))
        if window <= 0:
            raise self.error("window must be positive")
        return window

    def operand(self) -> Operand:
        name = self.match(_IDENT_RE, "operand (value, rate, increase, delta, *_over_time, ratio)").group(0)
        if name == "value":
            return InstantValue()
        if name in _WINDOWED:
            self.expect("(")
            window = self.duration()
            self.expect(")")
            return _WINDOWED[name](window)
        if name in _OVER_TIME:
            self.expect("(")
            window = self.duration()
            self.expect(")")
            return OverTime(name, window)
        if name == "ratio":
            self.expect("(")
            self.skip_ws()
            denominator, self.pos = parse_selector_prefix(self.text, self.pos)
            self.expect(",")
            window = self.duration()
            on: List[str] = []
            if self.accept(","):
                self.expect("on")
                self.expect("(")
                while True:
                    on.append(self.match(_LABEL_RE, "label name").group(0))
                    if not self.accept(","):
                        break
                self.expect(")")
            self.expect(")")
            return Ratio(denominator=denominator, window=window, on=tuple(on))
        raise self.error(f"unknown operand {name!r}")

    def number(self) -> float:
        m = self.match(_NUMBER_RE, "numeric threshold")
        raw = m.group(0)
        pct = raw.endswith("%")
        value = float(raw.rstrip("%"))
        return value / 100.0 if pct else value

    def parse(self) -> Comparison:
        operand = self.operand()
        op = self.match(_OP_RE, "comparison operator").group(0)
        threshold = self.number()
        self.skip_ws()
        if self.pos != len(self.text):
            raise self.error("unexpected trailing characters")
        return Comparison(operand=operand, op=op, threshold=threshold)


# PUBLIC_INTERFACE
def parse_expression(text: str) -> Comparison:
    """Parse a threshold expression string; raises ConfigError when it is not valid."""
    if not isinstance(text, str) or not text.strip():
        raise ConfigError("expression must be a non-empty string")
    return _ExpressionParser(text.strip()).parse()
