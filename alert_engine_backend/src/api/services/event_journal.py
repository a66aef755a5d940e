from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Sequence, Tuple

from pymongo.errors import PyMongoError

from src.api.db.mongo import MongoManager
from src.api.schemas.alerts import AlertEventOut, AlertEventsQuery
from src.api.schemas.common import ms_to_datetime
from src.api.services.alert_state import AlertState, Transition

logger = logging.getLogger(__name__)


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking pymongo calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


def _event_type(t: Transition) -> str:
    if t.to_state is AlertState.INACTIVE:
        return "resolved"
    return t.to_state.value


# PUBLIC_INTERFACE
def transition_to_doc(t: Transition) -> Dict[str, Any]:
    """Mongo document for one alert transition."""
    alert = t.alert
    return {
        "rule": alert.key.rule,
        "fingerprint": alert.fingerprint,
        "eventType": _event_type(t),
        "fromState": t.from_state.value,
        "toState": t.to_state.value,
        "severity": alert.labels.get("severity"),
        "labels": dict(alert.labels),
        "annotations": dict(alert.annotations),
        "value": alert.value,
        "createdAt": ms_to_datetime(t.at),
    }


def events_query_from_filters(q: AlertEventsQuery) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if q.rule:
        query["rule"] = q.rule
    if q.fingerprint:
        query["fingerprint"] = q.fingerprint
    if q.event_type:
        query["eventType"] = q.event_type

    if q.start or q.end:
        created: Dict[str, Any] = {}
        if q.start:
            created["$gte"] = q.start
        if q.end:
            created["$lte"] = q.end
        query["createdAt"] = created

    return query


def _doc_to_event_out(doc: dict) -> AlertEventOut:
    return AlertEventOut(
        id=str(doc.get("_id", "")),
        rule=doc["rule"],
        fingerprint=doc["fingerprint"],
        eventType=doc["eventType"],
        fromState=doc["fromState"],
        toState=doc["toState"],
        severity=doc.get("severity"),
        labels=doc.get("labels") or {},
        annotations=doc.get("annotations") or {},
        value=doc.get("value"),
        createdAt=doc["createdAt"],
    )


class EventJournal:
    """Append-only history of alert transitions in MongoDB; write failures never stop evaluation."""

    def __init__(self, mongo: MongoManager):
        self.mongo = mongo
        self.write_errors = 0

    # PUBLIC_INTERFACE
    async def record(self, transitions: Sequence[Transition]) -> int:
        """Insert one event per transition; returns the number written."""
        if not transitions:
            return 0
        docs = [transition_to_doc(t) for t in transitions]
        cols = self.mongo.collections()
        try:
            await _run_in_thread(cols.alert_events.insert_many, docs, ordered=False)
        except PyMongoError:
            self.write_errors += 1
            logger.exception("Failed to journal %s alert transition(s)", len(docs))
            return 0
        return len(docs)

    # PUBLIC_INTERFACE
    def list_events(self, filters: AlertEventsQuery) -> Tuple[List[AlertEventOut], int]:
        """
        List journaled events, newest first.

        Returns (items, total_matching).
        """
        cols = self.mongo.collections()
        q = events_query_from_filters(filters)

        total = int(cols.alert_events.count_documents(q))
        docs = list(
            cols.alert_events.find(q)
            .sort("createdAt", -1)
            .skip(int(filters.offset))
            .limit(int(filters.limit))
        )
        return ([_doc_to_event_out(d) for d in docs], total)
