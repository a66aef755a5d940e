from __future__ import annotations

import logging
import math
import threading
from bisect import bisect_left, bisect_right
from dataclasses import dataclass
from typing import Dict, Iterator, List, NamedTuple, Optional, Tuple

from src.api.errors import DuplicateSampleConflict, MalformedSample, OutOfOrderSample, StoreUnavailable

logger = logging.getLogger(__name__)


class Sample(NamedTuple):
    """One stored point of a series."""

    timestamp: int
    value: float


class SampleRange:
    """
    Samples of one series within [start, end] (both inclusive), ordered by timestamp.

    The window is copied out of the series when the range is created, so iterating it
    never races with ingestion or retention. Iteration is lazy and can be restarted.
    """

    __slots__ = ("series_id", "start", "end", "_ts", "_vals")

    def __init__(self, series_id: int, start: int, end: int, ts: List[int], vals: List[float]):
        self.series_id = series_id
        self.start = start
        self.end = end
        self._ts = ts
        self._vals = vals

    def __iter__(self) -> Iterator[Sample]:
        for i in range(len(self._ts)):
            yield Sample(self._ts[i], self._vals[i])

    def __len__(self) -> int:
        return len(self._ts)

    def __bool__(self) -> bool:
        return bool(self._ts)

    def first(self) -> Optional[Sample]:
        return Sample(self._ts[0], self._vals[0]) if self._ts else None

    def last(self) -> Optional[Sample]:
        return Sample(self._ts[-1], self._vals[-1]) if self._ts else None

    def values(self) -> List[float]:
        return list(self._vals)


class _SeriesData:
    """Timestamp-ordered parallel arrays for one series, guarded by its own lock."""

    __slots__ = ("lock", "ts", "vals")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.ts: List[int] = []
        self.vals: List[float] = []


@dataclass(frozen=True)
class StoreStats:
    series: int
    samples: int
    oldest_ts: Optional[int]
    newest_ts: Optional[int]


def _same_value(a: float, b: float) -> bool:
    # NaN == NaN for duplicate detection.
    return a == b or (math.isnan(a) and math.isnan(b))


class SampleStore:
    """
    Append-only, time-indexed in-memory storage of (series_id, timestamp, value).

    - append() rejects samples older than the series' last timestamp by more than
      `out_of_order_tolerance_ms`; samples inside the tolerance are inserted in order.
    - Exact duplicate samples are accepted as no-ops.
    - evict_before() drops samples older than the retention cutoff, one series at a time.
    """

    def __init__(self, out_of_order_tolerance_ms: int = 5000):
        self._tolerance_ms = max(0, int(out_of_order_tolerance_ms))
        self._series: Dict[int, _SeriesData] = {}
        self._lock = threading.Lock()
        self._closed = False

    @property
    def out_of_order_tolerance_ms(self) -> int:
        return self._tolerance_ms

    def _check_open(self) -> None:
        if self._closed:
            raise StoreUnavailable("sample store is closed")

    def _data(self, series_id: int, create: bool) -> Optional[_SeriesData]:
        data = self._series.get(series_id)
        if data is not None or not create:
            return data
        with self._lock:
            data = self._series.get(series_id)
            if data is None:
                data = _SeriesData()
                self._series[series_id] = data
            return data

    # PUBLIC_INTERFACE
    def append(self, series_id: int, timestamp: int, value: float) -> bool:
        """
        Append one sample.

        Returns True when the sample was stored and False for an exact duplicate.
        Raises OutOfOrderSample / DuplicateSampleConflict / MalformedSample for rejected samples.
        """
        self._check_open()
        if isinstance(timestamp, bool) or not isinstance(timestamp, int):
            raise MalformedSample(f"timestamp must be an integer (ms epoch), got {timestamp!r}")
        try:
            value = float(value)
        except (TypeError, ValueError):
            raise MalformedSample(f"value must be numeric, got {value!r}") from None

        while True:
            data = self._data(series_id, create=True)
            assert data is not None
            with data.lock:
                # Retention may have dropped this (empty) series since the lookup.
                if self._series.get(series_id) is data:
                    return self._append_locked(data, series_id, timestamp, value)

    def _append_locked(self, data: _SeriesData, series_id: int, timestamp: int, value: float) -> bool:
        if not data.ts or timestamp > data.ts[-1]:
            data.ts.append(timestamp)
            data.vals.append(value)
            return True

        last_ts = data.ts[-1]
        pos = bisect_left(data.ts, timestamp)
        if pos < len(data.ts) and data.ts[pos] == timestamp:
            if _same_value(data.vals[pos], value):
                return False
            raise DuplicateSampleConflict(
                f"series {series_id} already has a different value at {timestamp}",
                meta={"series_id": series_id, "timestamp": timestamp},
            )

        if last_ts - timestamp > self._tolerance_ms:
            raise OutOfOrderSample(
                f"sample at {timestamp} is {last_ts - timestamp}ms older than last sample of series {series_id}",
                meta={"series_id": series_id, "timestamp": timestamp, "last_timestamp": last_ts},
            )
        data.ts.insert(pos, timestamp)
        data.vals.insert(pos, value)
        return True

    # PUBLIC_INTERFACE
    def query(self, series_id: int, start: int, end: int) -> SampleRange:
        """Return the samples of a series within [start, end] inclusive."""
        self._check_open()
        data = self._data(series_id, create=False)
        if data is None or end < start:
            return SampleRange(series_id, start, end, [], [])
        with data.lock:
            lo = bisect_left(data.ts, start)
            hi = bisect_right(data.ts, end)
            return SampleRange(series_id, start, end, data.ts[lo:hi], data.vals[lo:hi])

    def latest(self, series_id: int) -> Optional[Sample]:
        self._check_open()
        data = self._data(series_id, create=False)
        if data is None:
            return None
        with data.lock:
            if not data.ts:
                return None
            return Sample(data.ts[-1], data.vals[-1])

    def series_ids(self) -> List[int]:
        self._check_open()
        return list(self._series.keys())

    # PUBLIC_INTERFACE
    def evict_before(self, cutoff: int) -> Tuple[int, List[int]]:
        """
        Drop samples with timestamp < cutoff.

        Returns (evicted_sample_count, series_ids_left_empty). Empty series are removed
        from the store; callers also drop them from the series index.
        """
        self._check_open()
        evicted = 0
        emptied: List[int] = []
        for series_id in list(self._series.keys()):
            data = self._series.get(series_id)
            if data is None:
                continue
            with data.lock:
                n = bisect_left(data.ts, cutoff)
                if n:
                    del data.ts[:n]
                    del data.vals[:n]
                    evicted += n
                empty = not data.ts
            if empty:
                with self._lock:
                    # Re-check under the store lock: an append may have landed meanwhile.
                    with data.lock:
                        if not data.ts and self._series.get(series_id) is data:
                            del self._series[series_id]
                            emptied.append(series_id)
        if evicted:
            logger.debug("Retention evicted %s samples, removed %s empty series", evicted, len(emptied))
        return evicted, emptied

    def stats(self) -> StoreStats:
        self._check_open()
        samples = 0
        oldest: Optional[int] = None
        newest: Optional[int] = None
        for data in list(self._series.values()):
            with data.lock:
                if not data.ts:
                    continue
                samples += len(data.ts)
                oldest = data.ts[0] if oldest is None else min(oldest, data.ts[0])
                newest = data.ts[-1] if newest is None else max(newest, data.ts[-1])
        return StoreStats(series=len(self._series), samples=samples, oldest_ts=oldest, newest_ts=newest)

    def close(self) -> None:
        """Mark the store unavailable; every later call raises StoreUnavailable."""
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed
