from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.logging_config import configure_logging
from app.settings import Settings
from health.health import source_health_summary
from health.quality import latest_feed_quality
from ingest.errors import ParseError
from ingest.feed_packs import pack_sources
from ingest.scheduler import ingest_webhook, run_ingestion_cycle, run_scheduler
from ingest.sources import (
    create_source,
    ensure_sources,
    get_source,
    list_sources,
    set_active,
)
from normalize.normalize import NormalizerRegistry, default_registry
from processing.correlation import run_correlation_analysis
from processing.processor import process_queue
from processing.queue import list_failed, queue_counts, requeue_failed
from store.db import Database, close_database, open_database


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests preload app.state.settings to point at a scratch database.
    settings: Settings = getattr(app.state, "settings", None) or Settings()
    configure_logging(settings.log_level)
    db = open_database(settings.db_path)
    registry = default_registry()
    ensure_sources(db, pack_sources(settings.sources_dir, known_types=registry.tags()))
    app.state.settings = settings
    app.state.db = db
    app.state.registry = registry

    scheduler_task = None
    if settings.scheduler_enabled:
        scheduler_task = asyncio.create_task(
            run_scheduler(settings=settings, db=db, registry=registry)
        )
    try:
        yield
    finally:
        if scheduler_task is not None:
            scheduler_task.cancel()
            with suppress(asyncio.CancelledError):
                await scheduler_task
        close_database(db)


app = FastAPI(lifespan=lifespan)


async def _json_body(request: Request) -> dict | None:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


@app.get("/health")
def health() -> JSONResponse:
    return JSONResponse({"status": "ok"})


@app.post("/ingest")
async def ingest(request: Request) -> JSONResponse:
    settings: Settings = request.app.state.settings
    db: Database = request.app.state.db
    registry: NormalizerRegistry = request.app.state.registry
    cycle = await run_ingestion_cycle(settings, db, registry)
    run_correlation_analysis(db, threshold=settings.correlation_threshold)
    return JSONResponse(cycle.to_dict())


@app.post("/queue/process")
def queue_process(request: Request) -> JSONResponse:
    settings: Settings = request.app.state.settings
    db: Database = request.app.state.db
    batch = process_queue(db, settings)
    return JSONResponse(batch.to_dict())


@app.get("/queue/stats")
def queue_stats(request: Request) -> JSONResponse:
    db: Database = request.app.state.db
    return JSONResponse(queue_counts(db))


@app.get("/queue/failed")
def queue_failed(request: Request, limit: int = 100) -> JSONResponse:
    db: Database = request.app.state.db
    return JSONResponse(list_failed(db, limit=limit))


@app.post("/queue/{item_id}/requeue")
def queue_requeue(request: Request, item_id: str) -> JSONResponse:
    db: Database = request.app.state.db
    if not requeue_failed(db, item_id):
        return JSONResponse({"error": "not_found"}, status_code=404)
    return JSONResponse({"queue_item_id": item_id, "processing_status": "pending"})


@app.get("/sources")
def sources(request: Request) -> JSONResponse:
    settings: Settings = request.app.state.settings
    db: Database = request.app.state.db
    out = []
    for source in list_sources(db):
        summary = source_health_summary(db, source.source_id, settings.health_window)
        row = source.to_dict()
        if summary is not None:
            row["health_status"] = summary["health_status"]
            row["uptime"] = summary["uptime"]
            row["consecutive_failures"] = summary["consecutive_failures"]
        out.append(row)
    return JSONResponse(out)


@app.post("/sources")
async def sources_create(request: Request) -> JSONResponse:
    db: Database = request.app.state.db
    registry: NormalizerRegistry = request.app.state.registry
    body = await _json_body(request)
    if body is None:
        return JSONResponse({"error": "invalid_body"}, status_code=400)
    try:
        source = create_source(db, body, known_types=registry.tags())
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse(source.to_dict(), status_code=201)


@app.post("/sources/{source_id}/active")
async def sources_active(request: Request, source_id: str) -> JSONResponse:
    db: Database = request.app.state.db
    body = await _json_body(request)
    if body is None or not isinstance(body.get("is_active"), bool):
        return JSONResponse({"error": "is_active must be a boolean"}, status_code=400)
    if not set_active(db, source_id, body["is_active"]):
        return JSONResponse({"error": "not_found"}, status_code=404)
    return JSONResponse({"source_id": source_id, "is_active": body["is_active"]})


@app.get("/sources/{source_id}/health")
def sources_health(request: Request, source_id: str) -> JSONResponse:
    settings: Settings = request.app.state.settings
    db: Database = request.app.state.db
    summary = source_health_summary(db, source_id, settings.health_window)
    if summary is None:
        return JSONResponse({"error": "not_found"}, status_code=404)
    summary["feed_quality"] = latest_feed_quality(db, source_id)
    return JSONResponse(summary)


@app.post("/webhooks/{source_id}")
async def webhook(request: Request, source_id: str) -> JSONResponse:
    settings: Settings = request.app.state.settings
    db: Database = request.app.state.db
    registry: NormalizerRegistry = request.app.state.registry
    source = get_source(db, source_id)
    if source is None:
        return JSONResponse({"error": "not_found"}, status_code=404)
    if source.source_type != "webhook":
        return JSONResponse({"error": "not a webhook source"}, status_code=400)
    if not source.is_active:
        return JSONResponse({"error": "source is inactive"}, status_code=409)

    body = await request.body()
    content_type = request.headers.get("content-type", "application/json")
    try:
        result = ingest_webhook(
            db, registry, source, body, content_type, settings=settings
        )
    except ParseError as e:
        logger.warning("rejected webhook body for %s: %s", source_id, e)
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse(result.to_dict(), status_code=202)
