from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

import httpx
from fastapi import FastAPI

from src.api.config import BackendConfig, load_alerting_config
from src.api.db.mongo import MongoManager
from src.api.errors import ConfigError
from src.api.schemas.alerting import AlertingConfigFile, ReceiverConfig
from src.api.services.alert_state import AlertStateMachine
from src.api.services.event_journal import EventJournal
from src.api.services.expressions import parse_duration
from src.api.services.ingestion import Ingestor
from src.api.services.notification_router import NotificationRouter, RetryPolicy, RouteConfig
from src.api.services.receivers import build_receivers
from src.api.services.rule_evaluator import RuleEvaluator
from src.api.services.rules import RuleRegistry
from src.api.services.sample_store import SampleStore
from src.api.services.series_index import SeriesIndex

logger = logging.getLogger(__name__)


@dataclass
class EvaluatorStatus:
    """Tick bookkeeping surfaced by /api/health/status."""

    ticks: int = 0
    skipped_ticks: int = 0
    failed_ticks: int = 0
    last_tick_ms: Optional[int] = None
    last_duration_ms: float = 0.0
    last_rules_evaluated: int = 0
    last_transitions: int = 0
    rules_version: int = 0
    last_error: Optional[str] = None


@dataclass
class ScrapeHealth:
    job: str
    url: str
    up: bool = False
    last_scrape_ms: Optional[int] = None
    last_duration_ms: float = 0.0
    samples: int = 0
    last_error: Optional[str] = None


@dataclass
class AppState:
    """Typed app.state container for shared singletons."""

    config: BackendConfig
    alerting: AlertingConfigFile
    store: SampleStore
    index: SeriesIndex
    ingestor: Ingestor
    registry: RuleRegistry
    evaluator: RuleEvaluator
    state_machine: AlertStateMachine
    router: NotificationRouter
    http: httpx.AsyncClient
    mongo: Optional[MongoManager] = None
    journal: Optional[EventJournal] = None
    evaluator_status: EvaluatorStatus = field(default_factory=EvaluatorStatus)
    scrape_health: Dict[str, ScrapeHealth] = field(default_factory=dict)
    evaluator_task: Optional[object] = None  # asyncio.Task, but kept loose to avoid import cycles
    retention_task: Optional[object] = None
    scraper_task: Optional[object] = None


def _build_router(
    config: BackendConfig, alerting: AlertingConfigFile, http: httpx.AsyncClient
) -> NotificationRouter:
    receiver_configs = list(alerting.receivers)
    if not receiver_configs:
        # Without receivers, notifications still show up in the application log.
        receiver_configs = [ReceiverConfig(name="log", type="log")]
    receivers = build_receivers(receiver_configs, http, timeout_sec=float(config.delivery_timeout_sec))
    route = RouteConfig(
        group_by=tuple(alerting.route.group_by),
        repeat_interval_ms=parse_duration(alerting.route.repeat_interval),
    )
    retry = RetryPolicy(
        max_attempts=config.delivery_max_attempts,
        base_delay_ms=config.delivery_base_delay_ms,
        max_delay_ms=config.delivery_max_delay_ms,
    )
    return NotificationRouter(receivers, route, retry)


# PUBLIC_INTERFACE
def build_state(config: BackendConfig) -> AppState:
    """
    Wire the engine components from configuration.

    The rules file is loaded once here; a broken rules file leaves the engine running
    with an empty rule set (reported by /api/rules). A broken alerting config is fatal.
    """
    alerting = load_alerting_config(config.alerting_config_file)
    store = SampleStore(out_of_order_tolerance_ms=config.out_of_order_tolerance_ms)
    index = SeriesIndex()
    registry = RuleRegistry(config.rules_file)
    if config.rules_file:
        try:
            registry.reload_file()
        except ConfigError:
            logger.exception("Initial rules load failed; starting with no rules")

    mongo: Optional[MongoManager] = None
    journal: Optional[EventJournal] = None
    if config.mongo_uri:
        mongo = MongoManager(config.mongo_uri)
        journal = EventJournal(mongo)

    # One connection pool for every webhook delivery; closed by the shutdown hook.
    http = httpx.AsyncClient(timeout=float(config.delivery_timeout_sec))

    return AppState(
        config=config,
        alerting=alerting,
        store=store,
        index=index,
        ingestor=Ingestor(index, store),
        registry=registry,
        evaluator=RuleEvaluator(
            store, lookback_ms=config.eval_lookback_sec * 1000, workers=config.eval_workers
        ),
        state_machine=AlertStateMachine(),
        router=_build_router(config, alerting, http),
        http=http,
        mongo=mongo,
        journal=journal,
        scrape_health={t.job + "|" + t.url: ScrapeHealth(job=t.job, url=t.url) for t in alerting.scrape_targets},
    )


# PUBLIC_INTERFACE
def init_state(app: FastAPI, config: BackendConfig) -> None:
    """Initialize app.state with the engine components and config."""
    app.state.state = build_state(config)


# PUBLIC_INTERFACE
def get_state(app: FastAPI) -> AppState:
    """Fetch typed AppState from a FastAPI app."""
    return app.state.state  # type: ignore[attr-defined]
