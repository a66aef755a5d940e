from __future__ import annotations

import dataclasses

import pytest

from src.api.errors import ConfigError, MalformedSample
from src.api.services.series_index import SeriesIndex, canonical_labels, parse_selector


def _ids(index: SeriesIndex, selector: str):
    return index.snapshot().resolve(parse_selector(selector))


def _resolve(snap, selector: str):
    return snap.resolve(parse_selector(selector))


def test_get_or_create_is_stable_for_unordered_labels():
    index = SeriesIndex()
    a = index.get_or_create("http_requests_total", {"job": "api", "code": "500"})
    b = index.get_or_create("http_requests_total", {"code": "500", "job": "api"})
    assert a.id == b.id
    assert len(index) == 1


def test_empty_label_values_do_not_identify_series():
    assert canonical_labels({"a": "1", "b": ""}) == (("a", "1"),)


def test_resolve_with_all_matcher_kinds():
    index = SeriesIndex()
    s1 = index.get_or_create("req", {"job": "api", "code": "200"})
    s2 = index.get_or_create("req", {"job": "api", "code": "500"})
    s3 = index.get_or_create("req", {"job": "web", "code": "503"})
    index.get_or_create("other", {"job": "api"})

    assert _ids(index, "req") == {s1.id, s2.id, s3.id}
    assert _ids(index, 'req{job="api"}') == {s1.id, s2.id}
    assert _ids(index, 'req{code!="200"}') == {s2.id, s3.id}
    assert _ids(index, 'req{code=~"5.."}') == {s2.id, s3.id}
    assert _ids(index, 'req{code!~"5.."}') == {s1.id}
    assert _ids(index, 'req{job="nope"}') == set()
    assert _ids(index, "missing") == set()


def test_regex_is_anchored_and_missing_label_is_empty():
    index = SeriesIndex()
    s1 = index.get_or_create("up", {"job": "api"})
    s2 = index.get_or_create("up", {})
    assert _ids(index, 'up{job=~"ap"}') == set()
    assert _ids(index, 'up{job=""}') == {s2.id}
    assert _ids(index, 'up{job!=""}') == {s1.id}


def test_snapshot_is_isolated_from_later_writes():
    index = SeriesIndex()
    index.get_or_create("up", {"job": "a"})
    snap = index.snapshot()
    index.get_or_create("up", {"job": "b"})
    assert len(snap.resolve(parse_selector("up"))) == 1
    assert len(index.snapshot().resolve(parse_selector("up"))) == 2


def test_remove_drops_postings_and_label_values():
    index = SeriesIndex()
    s1 = index.get_or_create("up", {"job": "a"})
    index.get_or_create("up", {"job": "b"})
    assert index.remove([s1.id]) == 1
    snap = index.snapshot()
    assert snap.get(s1.id) is None
    assert snap.label_values["job"] == frozenset({"b"})
    # A removed label set is registered afresh with a new id.
    assert index.get_or_create("up", {"job": "a"}).id != s1.id


@pytest.mark.parametrize(
    "text",
    ["", "9bad", 'up{job="a"', 'up{job=="a"}', 'up{job="a"} extra', 'up{__name__="x"}', 'up{job=~"("}'],
)
def test_invalid_selectors(text):
    with pytest.raises(ConfigError):
        parse_selector(text)


def test_invalid_series_rejected():
    index = SeriesIndex()
    with pytest.raises(MalformedSample):
        index.get_or_create("bad-name", {})
    with pytest.raises(MalformedSample):
        index.get_or_create("ok", {"bad-label": "x"})


def test_resolve_uses_postings_of_matching_values():
    index = SeriesIndex()
    pods = index.get_or_create_many(("m", {"pod": f"p{i}"}) for i in range(2000))
    index.get_or_create("other", {"pod": "p1"})
    snap = index.snapshot()
    by_pod = {s.label_map()["pod"]: s.id for s in pods}

    # Only the matching series are reachable: resolution must not look at the rest.
    wanted = {by_pod[p] for p in ("p1", "p2", "p10", "p11")}
    narrow = dataclasses.replace(snap, series={sid: snap.series[sid] for sid in wanted})
    assert _resolve(narrow, 'm{pod=~"p1"}') == {by_pod["p1"]}
    assert _resolve(narrow, 'm{pod=~"p1|p2"}') == {by_pod["p1"], by_pod["p2"]}
    assert _resolve(narrow, 'm{pod=~"p1[01]"}') == {by_pod["p10"], by_pod["p11"]}

    assert len(_resolve(snap, 'm{pod!="p1"}')) == 1999
    assert len(_resolve(snap, 'm{pod!~"p1|p2"}')) == 1998
    assert _resolve(snap, 'm{pod=~"nope"}') == set()


def test_literal_alternation_with_empty_branch_matches_missing_label():
    index = SeriesIndex()
    s1 = index.get_or_create("up", {"job": "api"})
    s2 = index.get_or_create("up", {})
    index.get_or_create("up", {"job": "web"})
    assert _ids(index, 'up{job=~"api|"}') == {s1.id, s2.id}
    assert _ids(index, 'up{job!~"api|"}') == {index.lookup("up", {"job": "web"}).id}


def test_batch_registration_builds_complete_postings():
    index = SeriesIndex()
    created = index.get_or_create_many(("m", {"pod": f"p{i}", "zone": f"z{i % 3}"}) for i in range(3000))
    snap = index.snapshot()
    assert snap.version == 1
    assert len(snap.postings[("__name__", "m")]) == 3000
    assert len(snap.postings[("zone", "z0")]) == 1000
    assert len(snap.label_values["pod"]) == 3000

    assert index.remove(s.id for s in created if s.label_map()["zone"] == "z0") == 1000
    snap = index.snapshot()
    assert ("zone", "z0") not in snap.postings
    assert snap.label_values["zone"] == frozenset({"z1", "z2"})
    assert len(snap.postings[("__name__", "m")]) == 2000
