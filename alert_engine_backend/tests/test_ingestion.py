from __future__ import annotations

import math

import pytest

from src.api.errors import MalformedSample, StoreUnavailable
from src.api.services.ingestion import Ingestor, RawSample, parse_exposition
from src.api.services.sample_store import SampleStore
from src.api.services.series_index import SeriesIndex

NOW = 1_000_000

EXPOSITION = """\
# HELP http_requests_total Total requests.
# TYPE http_requests_total counter
http_requests_total{method="GET",path="/a\\"b"} 1027 999000
http_requests_total{method="POST"} 3
temperature_celsius -Inf

go_goroutines NaN
this is not a sample
bad_labels{method=GET} 1
"""


def _ingestor():
    store = SampleStore(out_of_order_tolerance_ms=1000)
    index = SeriesIndex()
    return store, index, Ingestor(index, store)


def test_parse_exposition_lines():
    out = list(parse_exposition(EXPOSITION, NOW, {"job": "web"}))
    samples = [s for s in out if isinstance(s, RawSample)]
    errors = [e for e in out if isinstance(e, MalformedSample)]

    assert [s.metric for s in samples] == [
        "http_requests_total",
        "http_requests_total",
        "temperature_celsius",
        "go_goroutines",
    ]
    first = samples[0]
    assert first.labels == {"method": "GET", "path": '/a"b', "job": "web"}
    assert first.timestamp == 999_000 and first.value == 1027.0
    assert samples[1].timestamp == NOW
    assert samples[2].value == -math.inf
    assert math.isnan(samples[3].value)
    assert len(errors) == 2
    assert errors[0].message.startswith("line 8")


def test_extra_labels_override_exposed_labels():
    (sample,) = parse_exposition('up{job="spoofed"} 1', NOW, {"job": "real"})
    assert sample.labels == {"job": "real"}


def test_ingest_counts_each_outcome_independently():
    store, index, ingestor = _ingestor()
    result = ingestor.ingest(
        [
            RawSample("cpu", {"host": "a"}, NOW, 1.0),
            RawSample("cpu", {"host": "a"}, NOW, 1.0),  # exact duplicate
            RawSample("cpu", {"host": "a"}, NOW, 2.0),  # conflicting duplicate
            RawSample("cpu", {"host": "a"}, NOW - 5000, 0.5),  # beyond tolerance
            RawSample("cpu", {"host": "a"}, NOW - 500, 0.7),  # within tolerance
            RawSample("9bad", {}, NOW, 1.0),
            RawSample("cpu", {"__name__": "x"}, NOW, 1.0),
            RawSample("cpu", {"host": "b"}, 1.5, 1.0),  # type: ignore[arg-type]
        ]
    )
    assert result.accepted == 2
    assert result.duplicates == 1
    assert result.rejected == 5
    assert len(result.errors) == 5

    assert index.lookup("cpu", {"host": "b"}) is None
    series = index.lookup("cpu", {"host": "a"})
    assert [s.timestamp for s in store.query(series.id, 0, NOW)] == [NOW - 500, NOW]


def test_rejected_samples_do_not_register_series():
    _, index, ingestor = _ingestor()
    ingestor.ingest([RawSample("9bad", {}, NOW, 1.0)])
    assert len(index) == 0


def test_ingest_text_counts_malformed_lines():
    _, index, ingestor = _ingestor()
    result = ingestor.ingest_text(EXPOSITION, NOW, {"job": "web"})
    assert result.accepted == 4
    assert result.rejected == 2
    assert len(index) == 4


def test_error_list_is_capped():
    _, _, ingestor = _ingestor()
    result = ingestor.ingest(RawSample("9bad", {}, NOW, 1.0) for _ in range(200))
    assert result.rejected == 200
    assert len(result.errors) == 50


def test_store_unavailable_aborts_the_batch():
    store, _, ingestor = _ingestor()
    store.close()
    with pytest.raises(StoreUnavailable):
        ingestor.ingest([RawSample("cpu", {}, NOW, 1.0)])
