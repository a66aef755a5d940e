from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple

from src.api.errors import ConfigError, MalformedSample

logger = logging.getLogger(__name__)

NAME_LABEL = "__name__"

_METRIC_NAME_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME_RE = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")

LabelPairs = Tuple[Tuple[str, str], ...]


def canonical_labels(labels: Mapping[str, str]) -> LabelPairs:
    """Sorted (name, value) pairs; the identity of an unordered label set. Empty values are dropped."""
    return tuple(sorted((str(k), str(v)) for k, v in labels.items() if v != ""))


@dataclass(frozen=True)
class Series:
    """A uniquely labeled stream of samples. `labels` excludes the metric name."""

    id: int
    name: str
    labels: LabelPairs

    @property
    def key(self) -> LabelPairs:
        return canonical_labels({**dict(self.labels), NAME_LABEL: self.name})

    def label_map(self) -> Dict[str, str]:
        return dict(self.labels)


_REGEX_META_RE = re.compile(r"[\\.^$*+?{}\[\]()]")


def _literal_alternatives(op: str, value: str) -> Optional[FrozenSet[str]]:
    if op not in ("=~", "!~") or _REGEX_META_RE.search(value):
        return None
    return frozenset(value.split("|"))


@dataclass(frozen=True)
class LabelMatcher:
    """One label predicate of a selector: =, !=, =~ or !~ (regexes are fully anchored)."""

    name: str
    op: str
    value: str
    _regex: Optional["re.Pattern[str]"] = field(default=None, compare=False, repr=False)
    _literals: Optional[FrozenSet[str]] = field(default=None, compare=False, repr=False)

    @classmethod
    def create(cls, name: str, op: str, value: str) -> "LabelMatcher":
        if op not in ("=", "!=", "=~", "!~"):
            raise ConfigError(f"unsupported label match operator {op!r}")
        regex = None
        if op in ("=~", "!~"):
            try:
                regex = re.compile(value)
            except re.error as exc:
                raise ConfigError(f"invalid regex for label {name!r}: {exc}") from None
        return cls(name=name, op=op, value=value, _regex=regex, _literals=_literal_alternatives(op, value))

    def exact_values(self) -> Optional[FrozenSet[str]]:
        """Values this matcher compares against literally (`!=` or a plain `a|b` regex); None otherwise."""
        if self.op == "!=":
            return frozenset((self.value,))
        return self._literals

    def matches(self, actual: Optional[str]) -> bool:
        # A missing label behaves like the empty string.
        actual = actual or ""
        if self.op == "=":
            return actual == self.value
        if self.op == "!=":
            return actual != self.value
        assert self._regex is not None
        hit = self._regex.fullmatch(actual) is not None
        return hit if self.op == "=~" else not hit

    def __str__(self) -> str:
        escaped = self.value.replace("\\", "\\\\").replace('"', '\\"')
        return f'{self.name}{self.op}"{escaped}"'


@dataclass(frozen=True)
class Selector:
    """Metric name plus a conjunction of label matchers."""

    metric: str
    matchers: Tuple[LabelMatcher, ...] = ()

    def equality_labels(self) -> Dict[str, str]:
        """Labels pinned by `=` matchers; used to label absence alerts."""
        return {m.name: m.value for m in self.matchers if m.op == "=" and m.value}

    def matches(self, name: str, labels: Mapping[str, str]) -> bool:
        if name != self.metric:
            return False
        return all(m.matches(labels.get(m.name)) for m in self.matchers)

    def __str__(self) -> str:
        if not self.matchers:
            return self.metric
        return self.metric + "{" + ", ".join(str(m) for m in self.matchers) + "}"


class _SelectorParser:
    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def error(self, message: str) -> ConfigError:
        return ConfigError(f"invalid selector {self.text!r} at position {self.pos}: {message}")

    def skip_ws(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def peek(self) -> str:
        self.skip_ws()
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def take(self, regex: "re.Pattern[str]", what: str) -> str:
        self.skip_ws()
        m = regex.match(self.text, self.pos)
        if not m:
            raise self.error(f"expected {what}")
        self.pos = m.end()
        return m.group(0)

    def take_op(self) -> str:
        self.skip_ws()
        for op in ("=~", "!~", "!=", "="):
            if self.text.startswith(op, self.pos):
                self.pos += len(op)
                return op
        raise self.error("expected one of =, !=, =~, !~")

    def take_string(self) -> str:
        self.skip_ws()
        if self.pos >= len(self.text) or self.text[self.pos] not in ("'", '"'):
            raise self.error("expected quoted label value")
        quote = self.text[self.pos]
        self.pos += 1
        out: List[str] = []
        while self.pos < len(self.text):
            ch = self.text[self.pos]
            if ch == "\\" and self.pos + 1 < len(self.text):
                out.append(self.text[self.pos + 1])
                self.pos += 2
                continue
            if ch == quote:
                self.pos += 1
                return "".join(out)
            out.append(ch)
            self.pos += 1
        raise self.error("unterminated string")

    def parse(self, *, allow_trailing: bool = False) -> Selector:
        metric = self.take(_METRIC_NAME_RE, "metric name")
        matchers: List[LabelMatcher] = []
        if self.peek() == "{":
            self.pos += 1
            while self.peek() != "}":
                name = self.take(_LABEL_NAME_RE, "label name")
                op = self.take_op()
                value = self.take_string()
                if name == NAME_LABEL:
                    raise self.error("use the metric name instead of a __name__ matcher")
                matchers.append(LabelMatcher.create(name, op, value))
                if self.peek() == ",":
                    self.pos += 1
                elif self.peek() != "}":
                    raise self.error("expected ',' or '}'")
            self.pos += 1
        if not allow_trailing and self.peek():
            raise self.error("unexpected trailing characters")
        return Selector(metric=metric, matchers=tuple(matchers))


# PUBLIC_INTERFACE
def parse_selector(text: str) -> Selector:
    """Parse `metric{label="v", other=~"re.*"}` into a Selector; raises ConfigError when invalid."""
    if not isinstance(text, str) or not text.strip():
        raise ConfigError("selector must be a non-empty string")
    return _SelectorParser(text.strip()).parse()


def parse_selector_prefix(text: str, pos: int) -> Tuple[Selector, int]:
    """Parse a selector embedded in a larger expression, returning it and the end position."""
    parser = _SelectorParser(text)
    parser.pos = pos
    selector = parser.parse(allow_trailing=True)
    return selector, parser.pos


@dataclass(frozen=True)
class IndexSnapshot:
    """
    Immutable point-in-time view of the series index.

    `postings` maps (label, value) -> series ids, including (__name__, metric).
    """

    version: int
    series: Mapping[int, Series]
    postings: Mapping[Tuple[str, str], FrozenSet[int]]
    label_values: Mapping[str, FrozenSet[str]]

    def get(self, series_id: int) -> Optional[Series]:
        return self.series.get(series_id)

    # PUBLIC_INTERFACE
    def resolve(self, selector: Selector) -> Set[int]:
        """
        Return ids of the series matching `selector`.

        Starts from the metric-name postings and intersects equality postings. Other
        matchers are tested against the distinct values of their label and applied
        through the postings of those values, so the cost tracks the matching series
        rather than every series of the metric.
        """
        candidates = self.postings.get((NAME_LABEL, selector.metric))
        if not candidates:
            return set()

        result: FrozenSet[int] = candidates
        rest: List[LabelMatcher] = []
        for m in selector.matchers:
            if m.op == "=" and m.value:
                hits = self.postings.get((m.name, m.value))
                if not hits:
                    return set()
                result = result & hits
            else:
                rest.append(m)
            if not result:
                return set()

        for m in rest:
            result = self._apply_matcher(result, m)
            if not result:
                return set()
        return set(result)

    def _apply_matcher(self, result: FrozenSet[int], m: LabelMatcher) -> FrozenSet[int]:
        values = self.label_values.get(m.name, frozenset())
        # Series without the label match when the matcher accepts the empty string;
        # then drop the series whose value is rejected, otherwise keep the accepted ones.
        keep_missing = m.matches(None)
        exact = m.exact_values()
        if exact is not None and "" not in exact:
            picked = [v for v in exact if v in values]
        else:
            picked = [v for v in values if m.matches(v) != keep_missing]
        postings = [self.postings.get((m.name, v), frozenset()) for v in picked]
        if sum(len(p) for p in postings) > len(result):
            return frozenset(sid for sid in result if m.matches(self.series[sid].label_map().get(m.name)))
        touched: Set[int] = set()
        for p in postings:
            touched.update(p)
        return result - touched if keep_missing else result & touched

    def select(self, selector: Selector) -> List[Series]:
        return [self.series[sid] for sid in sorted(self.resolve(selector))]


_EMPTY_SNAPSHOT = IndexSnapshot(version=0, series={}, postings={}, label_values={})


class SeriesIndex:
    """
    Maps label sets to series ids and answers selector lookups.

    Writers rebuild the affected parts of the index under a lock and publish a new
    IndexSnapshot by swapping one reference; readers take `snapshot()` once per
    evaluation tick and never see a half-applied update.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot: IndexSnapshot = _EMPTY_SNAPSHOT
        self._by_key: Dict[LabelPairs, int] = {}
        self._next_id = 1

    # PUBLIC_INTERFACE
    def snapshot(self) -> IndexSnapshot:
        """Current point-in-time view; safe to use from any thread."""
        return self._snapshot

    def lookup(self, name: str, labels: Mapping[str, str]) -> Optional[Series]:
        key = canonical_labels({**labels, NAME_LABEL: name})
        sid = self._by_key.get(key)
        return self._snapshot.get(sid) if sid is not None else None

    # PUBLIC_INTERFACE
    def get_or_create(self, name: str, labels: Mapping[str, str]) -> Series:
        """Return the series for (name, labels), registering it on first sight."""
        return self.get_or_create_many([(name, labels)])[0]

    def get_or_create_many(self, items: Iterable[Tuple[str, Mapping[str, str]]]) -> List[Series]:
        """Batch variant of get_or_create; publishes at most one new snapshot."""
        items = list(items)
        out: List[Optional[Series]] = [None] * len(items)
        missing: List[int] = []

        snap = self._snapshot
        for i, (name, labels) in enumerate(items):
            validate_series(name, labels)
            sid = self._by_key.get(canonical_labels({**labels, NAME_LABEL: name}))
            series = snap.get(sid) if sid is not None else None
            if series is not None:
                out[i] = series
            else:
                missing.append(i)

        if missing:
            with self._lock:
                snap = self._snapshot
                new_series: List[Series] = []
                for i in missing:
                    name, labels = items[i]
                    key = canonical_labels({**labels, NAME_LABEL: name})
                    sid = self._by_key.get(key)
                    if sid is None:
                        sid = self._next_id
                        self._next_id += 1
                        series = Series(id=sid, name=name, labels=canonical_labels(labels))
                        self._by_key[key] = sid
                        new_series.append(series)
                        out[i] = series
                    else:
                        out[i] = snap.get(sid) or next(s for s in new_series if s.id == sid)
                if new_series:
                    self._publish_added(snap, new_series)
                    logger.debug("Series index registered %s new series", len(new_series))

        return [s for s in out if s is not None]

    def _publish_added(self, snap: IndexSnapshot, new_series: List[Series]) -> None:
        series = dict(snap.series)
        added: Dict[Tuple[str, str], Set[int]] = {}
        new_values: Dict[str, Set[str]] = {}
        for s in new_series:
            series[s.id] = s
            for pair in s.key:
                added.setdefault(pair, set()).add(s.id)
                new_values.setdefault(pair[0], set()).add(pair[1])
        postings = dict(snap.postings)
        for pair, ids in added.items():
            postings[pair] = snap.postings.get(pair, frozenset()).union(ids)
        label_values = dict(snap.label_values)
        for label, values in new_values.items():
            label_values[label] = snap.label_values.get(label, frozenset()).union(values)
        self._snapshot = IndexSnapshot(
            version=snap.version + 1, series=series, postings=postings, label_values=label_values
        )

    # PUBLIC_INTERFACE
    def remove(self, series_ids: Iterable[int]) -> int:
        """Drop series (used by retention once a series has no samples left)."""
        with self._lock:
            snap = self._snapshot
            doomed = [snap.series[sid] for sid in series_ids if sid in snap.series]
            if not doomed:
                return 0
            series = dict(snap.series)
            dropped: Dict[Tuple[str, str], Set[int]] = {}
            for s in doomed:
                series.pop(s.id, None)
                self._by_key.pop(s.key, None)
                for pair in s.key:
                    dropped.setdefault(pair, set()).add(s.id)
            postings = dict(snap.postings)
            label_values = dict(snap.label_values)
            for pair, ids in dropped.items():
                remaining = snap.postings.get(pair, frozenset()).difference(ids)
                if remaining:
                    postings[pair] = remaining
                    continue
                postings.pop(pair, None)
                values = label_values.get(pair[0], frozenset()) - {pair[1]}
                if values:
                    label_values[pair[0]] = values
                else:
                    label_values.pop(pair[0], None)
            self._snapshot = IndexSnapshot(
                version=snap.version + 1, series=series, postings=postings, label_values=label_values
            )
            return len(doomed)

    def __len__(self) -> int:
        return len(self._snapshot.series)


def validate_series(name: str, labels: Mapping[str, str]) -> None:
    """Raise MalformedSample unless the metric name and label names/values are valid."""
    if not isinstance(name, str) or not _METRIC_NAME_RE.fullmatch(name):
        raise MalformedSample(f"invalid metric name {name!r}")
    for k, v in labels.items():
        if not isinstance(k, str) or not _LABEL_NAME_RE.fullmatch(k) or k == NAME_LABEL:
            raise MalformedSample(f"invalid label name {k!r}")
        if not isinstance(v, str):
            raise MalformedSample(f"label {k!r} value must be a string")
