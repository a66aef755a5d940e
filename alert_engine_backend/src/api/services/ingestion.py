from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Mapping, NamedTuple, Optional, Union

from src.api.errors import IngestionError, MalformedSample
from src.api.services.sample_store import SampleStore
from src.api.services.series_index import SeriesIndex, validate_series

logger = logging.getLogger(__name__)

_MAX_REPORTED_ERRORS = 50

_LINE_RE = re.compile(
    r"^(?P<name>[a-zA-Z_:][a-zA-Z0-9_:]*)\s*(?:\{(?P<labels>.*)\})?\s+(?P<value>\S+)(?:\s+(?P<ts>-?\d+))?\s*$"
)
_LABEL_PAIR_RE = re.compile(r'\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*=\s*"((?:[^"\\]|\\.)*)"\s*(?:,|$)')
_UNESCAPE_RE = re.compile(r"\\(.)")


class RawSample(NamedTuple):
    """One incoming sample: (metric_name, label_set, timestamp_ms, value)."""

    metric: str
    labels: Mapping[str, str]
    timestamp: int
    value: float


@dataclass
class IngestResult:
    accepted: int = 0
    duplicates: int = 0
    rejected: int = 0
    errors: List[str] = field(default_factory=list)

    def reject(self, message: str) -> None:
        self.rejected += 1
        if len(self.errors) < _MAX_REPORTED_ERRORS:
            self.errors.append(message)


def _parse_value(raw: str) -> float:
    lowered = raw.lower()
    if lowered in ("nan",):
        return math.nan
    if lowered in ("+inf", "inf"):
        return math.inf
    if lowered == "-inf":
        return -math.inf
    try:
        return float(raw)
    except ValueError:
        raise MalformedSample(f"invalid sample value {raw!r}") from None


def _parse_labels(raw: str) -> Dict[str, str]:
    labels: Dict[str, str] = {}
    pos = 0
    raw = raw.strip()
    while pos < len(raw):
        m = _LABEL_PAIR_RE.match(raw, pos)
        if not m:
            raise MalformedSample(f"invalid label set {{{raw}}}")
        value = _UNESCAPE_RE.sub(lambda e: "\n" if e.group(1) == "n" else e.group(1), m.group(2))
        if m.group(1) in labels:
            raise MalformedSample(f"duplicate label {m.group(1)!r}")
        labels[m.group(1)] = value
        pos = m.end()
    return labels


# PUBLIC_INTERFACE
def parse_exposition(
    text: str, default_timestamp: int, extra_labels: Optional[Mapping[str, str]] = None
) -> Iterator[Union[RawSample, MalformedSample]]:
    """
    Parse exposition-format text (`name{l="v"} value [timestamp_ms]`).

    Yields a RawSample per valid line and a MalformedSample error per bad line so the
    caller can count it and carry on. Comment and blank lines are skipped.
    """
    extra = dict(extra_labels or {})
    for lineno, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        m = _LINE_RE.match(line)
        if not m:
            yield MalformedSample(f"line {lineno}: cannot parse {line[:120]!r}")
            continue
        try:
            labels = _parse_labels(m.group("labels") or "")
            value = _parse_value(m.group("value"))
        except MalformedSample as exc:
            yield MalformedSample(f"line {lineno}: {exc.message}")
            continue
        ts = int(m.group("ts")) if m.group("ts") is not None else default_timestamp
        # Target labels win over exposed labels, like honor_labels: false.
        labels.update(extra)
        yield RawSample(m.group("name"), labels, ts, value)


class Ingestor:
    """Registers series and appends samples; every bad sample is dropped on its own."""

    def __init__(self, index: SeriesIndex, store: SampleStore):
        self._index = index
        self._store = store

    # PUBLIC_INTERFACE
    def ingest(self, samples: Iterable[RawSample]) -> IngestResult:
        """Ingest a batch; StoreUnavailable propagates, IngestionErrors are counted per sample."""
        result = IngestResult()
        valid: List[RawSample] = []
        for s in samples:
            try:
                validate_series(s.metric, s.labels)
                if isinstance(s.timestamp, bool) or not isinstance(s.timestamp, int):
                    raise MalformedSample(f"timestamp must be an integer (ms epoch), got {s.timestamp!r}")
                valid.append(s)
            except IngestionError as exc:
                result.reject(f"{s.metric}: {exc.message}")

        if not valid:
            return result

        series = self._index.get_or_create_many((s.metric, s.labels) for s in valid)
        for s, ser in zip(valid, series):
            try:
                if self._store.append(ser.id, s.timestamp, s.value):
                    result.accepted += 1
                else:
                    result.duplicates += 1
            except IngestionError as exc:
                result.reject(f"{s.metric}{dict(s.labels)}: {exc.message}")

        if result.rejected:
            logger.warning(
                "Ingestion dropped %s sample(s) (accepted=%s); first error: %s",
                result.rejected,
                result.accepted,
                result.errors[0] if result.errors else "",
            )
        return result

    # PUBLIC_INTERFACE
    def ingest_text(
        self, text: str, default_timestamp: int, extra_labels: Optional[Mapping[str, str]] = None
    ) -> IngestResult:
        """Parse and ingest exposition text; malformed lines are counted as rejected."""
        parsed: List[RawSample] = []
        bad: List[MalformedSample] = []
        for item in parse_exposition(text, default_timestamp, extra_labels):
            if isinstance(item, MalformedSample):
                bad.append(item)
            else:
                parsed.append(item)
        result = self.ingest(parsed)
        for err in bad:
            result.reject(err.message)
        if bad:
            logger.warning("Exposition text had %s malformed line(s); first: %s", len(bad), bad[0].message)
        return result
