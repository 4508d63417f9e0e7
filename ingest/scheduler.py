from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from urllib.parse import urlsplit

import httpx

from app.settings import Settings
from health.health import consecutive_failures, recent_metrics
from health.quality import evaluate_feed_quality, record_feed_quality
from ingest.errors import FetchError, ParseError
from ingest.fetch import fetch, request_headers
from ingest.sources import (
    AlertSource,
    is_due,
    list_active_sources,
    record_poll_outcome,
)
from normalize.normalize import NormalizedAlert, NormalizerRegistry
from processing.correlation import run_correlation_analysis
from processing.processor import process_queue
from processing.queue import enqueue_alerts
from store.db import Database, utc_now, utc_now_iso


logger = logging.getLogger(__name__)


@dataclass
class SourceResult:
    source_id: str
    source_name: str
    success: bool
    records_processed: int = 0
    response_time_ms: int = 0
    error: str | None = None

    def to_dict(self) -> dict:
        out: dict = {
            "source_id": self.source_id,
            "source_name": self.source_name,
            "success": self.success,
            "records_processed": self.records_processed,
            "response_time_ms": self.response_time_ms,
        }
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass
class IngestionCycleResult:
    results: list[SourceResult] = field(default_factory=list)
    skipped_not_due: int = 0

    @property
    def processed_sources(self) -> int:
        return len(self.results)

    def to_dict(self) -> dict:
        return {
            "processed_sources": self.processed_sources,
            "results": [r.to_dict() for r in self.results],
        }


def _poll_failures(db: Database, source_id: str, window: int) -> int:
    samples = [s for s in recent_metrics(db, source_id, window) if s.stage == "poll"]
    return consecutive_failures(samples)


def _store_alerts(
    db: Database,
    source: AlertSource,
    alerts: list[NormalizedAlert],
    raw_count: int,
) -> None:
    enqueue_alerts(db, source.source_id, [a.to_payload() for a in alerts])
    if raw_count:
        record_feed_quality(db, evaluate_feed_quality(source, raw_count, alerts))


async def _poll_source(
    client: httpx.AsyncClient,
    settings: Settings,
    db: Database,
    registry: NormalizerRegistry,
    source: AlertSource,
    global_sem: asyncio.Semaphore,
    host_sem: asyncio.Semaphore,
) -> SourceResult:
    async with global_sem, host_sem:
        started = time.monotonic()
        fetched_at = utc_now_iso()
        status_code: int | None = None
        try:
            normalizer = registry.get(source.source_type)
            headers = request_headers(
                user_agent=settings.user_agent,
                source_type=source.source_type,
                configuration=source.configuration,
            )
            try:
                status_code, content, content_type, _ = await asyncio.wait_for(
                    fetch(
                        client,
                        url=source.api_endpoint,
                        headers=headers,
                        timeout_seconds=settings.fetch_timeout_seconds,
                    ),
                    timeout=settings.fetch_timeout_seconds,
                )
            except TimeoutError as e:
                raise FetchError(
                    f"timeout after {settings.fetch_timeout_seconds:.0f}s"
                ) from e

            records = normalizer.parse_document(content, content_type)
            alerts = normalizer.normalize_records(records, source, fetched_at)
            _store_alerts(db, source, alerts, len(records))
        except FetchError as e:
            return _record_failure(
                db, settings, source, started, str(e), e.status_code
            )
        except (ParseError, KeyError) as e:
            error = str(e.args[0]) if isinstance(e, KeyError) else str(e)
            return _record_failure(db, settings, source, started, error, status_code)
        except Exception as e:
            logger.exception("unexpected error polling %s", source.source_id)
            return _record_failure(
                db, settings, source, started, f"{e.__class__.__name__}: {e}", None
            )

        elapsed_ms = int((time.monotonic() - started) * 1000)
        record_poll_outcome(
            db,
            source.source_id,
            success=True,
            latency_ms=elapsed_ms,
            http_status_code=status_code,
            records_processed=len(alerts),
            window=settings.health_window,
        )
        logger.info(
            "polled %s: %d alerts from %d records in %dms",
            source.source_id,
            len(alerts),
            len(records),
            elapsed_ms,
        )
        return SourceResult(
            source_id=source.source_id,
            source_name=source.name,
            success=True,
            records_processed=len(alerts),
            response_time_ms=elapsed_ms,
        )


def _record_failure(
    db: Database,
    settings: Settings,
    source: AlertSource,
    started: float,
    error: str,
    status_code: int | None,
) -> SourceResult:
    elapsed_ms = int((time.monotonic() - started) * 1000)
    status = record_poll_outcome(
        db,
        source.source_id,
        success=False,
        latency_ms=elapsed_ms,
        error=error,
        http_status_code=status_code,
        window=settings.health_window,
    )
    logger.warning("poll failed for %s (%s): %s", source.source_id, status, error)
    return SourceResult(
        source_id=source.source_id,
        source_name=source.name,
        success=False,
        response_time_ms=elapsed_ms,
        error=error,
    )


async def run_ingestion_cycle(
    settings: Settings,
    db: Database,
    registry: NormalizerRegistry,
    client: httpx.AsyncClient | None = None,
    *,
    now: datetime | None = None,
) -> IngestionCycleResult:
    """Poll every active, due, pull-based source once."""
    now = now or utc_now()
    cycle = IngestionCycleResult()

    due: list[AlertSource] = []
    for source in list_active_sources(db):
        # Webhook sources are push-only.
        if source.source_type == "webhook" or not source.api_endpoint:
            continue
        failures = _poll_failures(db, source.source_id, settings.health_window)
        if not is_due(
            source,
            now,
            min_interval_seconds=settings.min_poll_interval_seconds,
            failures=failures,
        ):
            cycle.skipped_not_due += 1
            continue
        due.append(source)

    if not due:
        logger.info("ingestion cycle: no sources due")
        return cycle

    global_sem = asyncio.Semaphore(max(1, settings.fetch_concurrency))
    host_sems: dict[str, asyncio.Semaphore] = {}

    async def _run(http: httpx.AsyncClient) -> list[SourceResult]:
        tasks = []
        for source in due:
            host = urlsplit(source.api_endpoint).netloc
            host_sem = host_sems.setdefault(host, asyncio.Semaphore(1))
            tasks.append(
                asyncio.create_task(
                    _poll_source(
                        http, settings, db, registry, source, global_sem, host_sem
                    )
                )
            )
        return list(await asyncio.gather(*tasks))

    if client is None:
        async with httpx.AsyncClient(follow_redirects=True) as http:
            cycle.results = await _run(http)
    else:
        cycle.results = await _run(client)

    ok = sum(1 for r in cycle.results if r.success)
    logger.info(
        "ingestion cycle: %d sources polled, %d ok, %d failed, %d not due",
        cycle.processed_sources,
        ok,
        cycle.processed_sources - ok,
        cycle.skipped_not_due,
    )
    return cycle


def ingest_webhook(
    db: Database,
    registry: NormalizerRegistry,
    source: AlertSource,
    body: bytes,
    content_type: str,
    *,
    settings: Settings,
) -> SourceResult:
    """Normalize and enqueue a pushed document. Raises ParseError on bad bodies."""
    started = time.monotonic()
    normalizer = registry.get(source.source_type)
    try:
        records = normalizer.parse_document(body, content_type)
    except ParseError as e:
        _record_failure(db, settings, source, started, str(e), None)
        raise

    alerts = normalizer.normalize_records(records, source, utc_now_iso())
    _store_alerts(db, source, alerts, len(records))
    elapsed_ms = int((time.monotonic() - started) * 1000)
    record_poll_outcome(
        db,
        source.source_id,
        success=True,
        latency_ms=elapsed_ms,
        records_processed=len(alerts),
        window=settings.health_window,
    )
    return SourceResult(
        source_id=source.source_id,
        source_name=source.name,
        success=True,
        records_processed=len(alerts),
        response_time_ms=elapsed_ms,
    )


async def run_scheduler(
    settings: Settings, db: Database, registry: NormalizerRegistry
) -> None:
    """Periodic trigger: one ingestion cycle and one queue batch per tick."""
    async with httpx.AsyncClient(follow_redirects=True) as client:
        while True:
            try:
                await run_ingestion_cycle(settings, db, registry, client)
                process_queue(db, settings)
                run_correlation_analysis(db, threshold=settings.correlation_threshold)
            except Exception:
                logger.exception("scheduler tick failed")
            await asyncio.sleep(settings.scheduler_tick_seconds)
