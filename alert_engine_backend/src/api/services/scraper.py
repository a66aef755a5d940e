from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, List, Optional

import httpx

from src.api.errors import StoreUnavailable
from src.api.schemas.alerting import ScrapeTarget
from src.api.schemas.common import now_ms
from src.api.services.ingestion import RawSample
from src.api.state import AppState, ScrapeHealth

logger = logging.getLogger(__name__)


def target_labels(target: ScrapeTarget) -> Dict[str, str]:
    """Labels attached to every sample of a target: its own labels plus job and instance."""
    url = httpx.URL(target.url)
    instance = url.host if url.port is None else f"{url.host}:{url.port}"
    return {**target.labels, "job": target.job, "instance": instance}


def _health(state: AppState, target: ScrapeTarget) -> ScrapeHealth:
    key = target.job + "|" + target.url
    health = state.scrape_health.get(key)
    if health is None:
        health = ScrapeHealth(job=target.job, url=target.url)
        state.scrape_health[key] = health
    return health


# PUBLIC_INTERFACE
async def scrape_target(
    state: AppState, client: httpx.AsyncClient, target: ScrapeTarget, at_ms: int
) -> ScrapeHealth:
    """
    Fetch one target and ingest its exposition text.

    Always records `up` (1 on success, 0 otherwise) and `scrape_duration_seconds`, so
    rules can alert on unreachable targets.
    """
    health = _health(state, target)
    labels = target_labels(target)
    started = time.perf_counter()
    up = 0.0
    error: Optional[str] = None
    accepted = 0
    try:
        res = await client.get(target.url, timeout=float(state.config.scrape_timeout_sec))
        if res.status_code // 100 != 2:
            error = f"HTTP {res.status_code}"
        else:
            result = await asyncio.to_thread(state.ingestor.ingest_text, res.text, at_ms, labels)
            accepted = result.accepted
            up = 1.0
            if result.rejected:
                error = f"{result.rejected} sample(s) rejected; first: {result.errors[0] if result.errors else ''}"
    except httpx.HTTPError as exc:
        error = repr(exc)
    duration = time.perf_counter() - started

    if up == 0.0:
        logger.warning("Scrape failed job=%s url=%s: %s", target.job, target.url, error)
    await asyncio.to_thread(
        state.ingestor.ingest,
        [
            RawSample("up", labels, at_ms, up),
            RawSample("scrape_duration_seconds", labels, at_ms, duration),
        ],
    )

    health.up = up == 1.0
    health.last_scrape_ms = at_ms
    health.last_duration_ms = duration * 1000.0
    health.samples = accepted
    health.last_error = error
    return health


# PUBLIC_INTERFACE
async def scrape_once(state: AppState, client: httpx.AsyncClient, at_ms: int) -> List[ScrapeHealth]:
    """Scrape every configured target concurrently."""
    targets = list(state.alerting.scrape_targets)
    if not targets:
        return []
    outcomes = await asyncio.gather(
        *(scrape_target(state, client, t, at_ms) for t in targets), return_exceptions=True
    )
    out: List[ScrapeHealth] = []
    for target, outcome in zip(targets, outcomes):
        if isinstance(outcome, StoreUnavailable):
            raise outcome
        if isinstance(outcome, BaseException):
            logger.error("Scrape of job=%s url=%s crashed: %r", target.job, target.url, outcome)
            continue
        out.append(outcome)
    return out


# PUBLIC_INTERFACE
async def scraper_loop(state: AppState, shutdown_event: asyncio.Event) -> None:
    """
    Background loop that scrapes the configured targets every SCRAPE_INTERVAL_SEC.

    Errors are logged and non-fatal; failing targets show up as up == 0.
    """
    interval = max(1, int(state.config.scrape_interval_sec))
    targets = state.alerting.scrape_targets
    if not targets:
        logger.info("No scrape targets configured; scraper idle")
        return

    logger.info("Scraper started (interval=%ss, targets=%s)", interval, len(targets))
    async with httpx.AsyncClient(follow_redirects=True) as client:
        while not shutdown_event.is_set():
            started = time.monotonic()
            try:
                await scrape_once(state, client, now_ms())
            except StoreUnavailable as exc:
                logger.error("Sample store unavailable, scrape skipped: %s", exc)
            except Exception:
                logger.exception("Scraper tick failed")

            elapsed = time.monotonic() - started
            sleep_for = max(0.1, interval - elapsed)
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                pass

    logger.info("Scraper stopped")
