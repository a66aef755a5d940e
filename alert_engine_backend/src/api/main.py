from __future__ import annotations

import asyncio
import logging
import os
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.config import BackendConfig, load_config
from src.api.routers import alerts, health, ingest, rules, series
from src.api.services.alerts_evaluator import alerts_evaluator_loop, retention_loop
from src.api.services.scraper import scraper_loop
from src.api.state import get_state, init_state

openapi_tags = [
    {"name": "Health", "description": "Service liveness and engine status."},
    {"name": "Ingestion", "description": "Push samples as JSON or exposition text."},
    {"name": "Series", "description": "Series lookup and raw sample queries."},
    {"name": "Alerts", "description": "Live alert instances and the alert event journal."},
    {"name": "Rules", "description": "Active rule set and atomic reload."},
]

logger = logging.getLogger(__name__)


def _env_cors_origins() -> List[str]:
    # Comma-separated list of extra origins, e.g. for a dashboard deployment.
    raw = os.getenv("CORS_ALLOW_ORIGINS") or ""
    origins = ["http://localhost:3000", "http://127.0.0.1:3000"]
    origins.extend(p.strip() for p in raw.split(",") if p.strip())
    # De-dupe while preserving order
    seen = set()
    return [o for o in origins if not (o in seen or seen.add(o))]


async def _stop(task: Optional[object], event: Optional[asyncio.Event], name: str, timeout: float = 5.0) -> None:
    if event is not None:
        event.set()
    if task is None:
        return
    try:
        await asyncio.wait_for(task, timeout=timeout)  # type: ignore[arg-type]
    except Exception:
        logger.exception("Error stopping %s task", name)


# PUBLIC_INTERFACE
def create_app(config: Optional[BackendConfig] = None) -> FastAPI:
    """Build the FastAPI app with engine state initialized and background loops wired to startup."""
    config = config or load_config()

    app = FastAPI(
        title="Alert Evaluation Engine API",
        description=(
            "Ingests time-series samples, evaluates alert rules on a fixed interval, tracks alert state "
            "(pending/firing) and delivers grouped, deduplicated notifications to webhook receivers."
        ),
        version="1.0.0",
        openapi_tags=openapi_tags,
    )

    # Initialize typed app state (config + engine components)
    init_state(app, config)

    @app.on_event("startup")
    async def _on_startup() -> None:
        """Startup hook: prepare the optional journal and start evaluation, retention and scraping loops."""
        state = get_state(app)

        if state.mongo is not None:
            if state.mongo.ping():
                await asyncio.to_thread(state.mongo.init_indexes, events_ttl_seconds=state.config.journal_ttl_sec)
            else:
                logger.error("Mongo ping failed; alert events will not be journaled until it is reachable")

        app.state._evaluator_shutdown = asyncio.Event()
        state.evaluator_task = asyncio.create_task(alerts_evaluator_loop(state, app.state._evaluator_shutdown))

        app.state._retention_shutdown = asyncio.Event()
        state.retention_task = asyncio.create_task(retention_loop(state, app.state._retention_shutdown))

        app.state._scraper_shutdown = asyncio.Event()
        state.scraper_task = asyncio.create_task(scraper_loop(state, app.state._scraper_shutdown))

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        """Shutdown hook: stop ingestion-side loops, finish the current tick, flush deliveries, close Mongo."""
        state = get_state(app)

        await _stop(state.scraper_task, getattr(app.state, "_scraper_shutdown", None), "scraper")
        # The evaluator starts no new rule once signalled; rules already running complete.
        await _stop(
            state.evaluator_task,
            getattr(app.state, "_evaluator_shutdown", None),
            "alerts evaluator",
            timeout=float(state.config.eval_interval_sec) + 5.0,
        )
        await _stop(state.retention_task, getattr(app.state, "_retention_shutdown", None), "retention")

        await state.router.drain(timeout=float(state.config.delivery_timeout_sec))
        await state.http.aclose()
        state.store.close()
        if state.mongo is not None:
            state.mongo.close()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_env_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(ingest.router)
    app.include_router(series.router)
    app.include_router(alerts.router)
    app.include_router(rules.router)
    return app


_config = load_config()
logging.basicConfig(
    level=getattr(logging, _config.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
app = create_app(_config)
