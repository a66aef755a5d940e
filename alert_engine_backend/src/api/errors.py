from __future__ import annotations

from typing import Any, Dict, Optional


class AlertingError(Exception):
    """Base class for all alerting engine errors."""

    code = "alerting_error"

    def __init__(self, message: str, *, meta: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.meta: Dict[str, Any] = dict(meta or {})


class IngestionError(AlertingError):
    """A sample could not be ingested; the sample is dropped and ingestion continues."""

    code = "ingestion_error"


class MalformedSample(IngestionError):
    code = "malformed_sample"


class OutOfOrderSample(IngestionError):
    """Sample timestamp precedes the series' last timestamp beyond the tolerance window."""

    code = "out_of_order_sample"


class DuplicateSampleConflict(IngestionError):
    """Same series and timestamp as a stored sample, but a different value."""

    code = "duplicate_sample_conflict"


class EvaluationError(AlertingError):
    """Expression could not be evaluated for one rule/series; the verdict becomes Unknown."""

    code = "evaluation_error"


class ConfigError(AlertingError):
    """Invalid rule or routing definition; the previous valid configuration stays active."""

    code = "config_error"


class DeliveryError(AlertingError):
    """A notification receiver could not be reached or rejected the payload."""

    code = "delivery_error"


class StoreUnavailable(AlertingError):
    """The sample store cannot be read or written at all (fatal to the current tick)."""

    code = "store_unavailable"
