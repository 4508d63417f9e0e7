from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from app.settings import Settings
from geo.impact import (
    estimate_affected_radius_km,
    estimate_population_impact,
    geohash_bucket,
)
from geo.provinces import resolve_province_id
from health.health import record_health_metric, refresh_health_status
from ingest.errors import ProcessingError
from normalize.rules import AREA_NOT_SPECIFIED
from processing.queue import (
    claim,
    complete,
    record_failure,
    select_pending,
    sweep_stale,
)
from store.db import Database, to_iso, utc_now


logger = logging.getLogger(__name__)

ACTION_CREATED = "created_incident"
ACTION_DUPLICATE = "skipped_duplicate"
ACTION_FAILED = "failed"
ACTION_RETRY = "retry"

_SEVERE_TERMS = ("severe", "critical", "extreme")
_WARNING_TERMS = ("warning", "moderate")


def map_severity(severity: object) -> tuple[str, int]:
    """Free-text severity to (alert_level, severity_numeric); defined for any input."""
    text = str(severity or "").casefold()
    if any(term in text for term in _SEVERE_TERMS):
        return ("severe", 3)
    if any(term in text for term in _WARNING_TERMS):
        return ("warning", 2)
    return ("normal", 1)


@dataclass
class ItemResult:
    queue_item_id: str
    source_id: str
    success: bool
    action: str
    incident_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        out: dict = {
            "queue_item_id": self.queue_item_id,
            "source_id": self.source_id,
            "success": self.success,
            "action": self.action,
        }
        if self.incident_id is not None:
            out["incident_id"] = self.incident_id
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass
class BatchResult:
    total_items: int = 0
    stale_reset: int = 0
    results: list[ItemResult] = field(default_factory=list)

    @property
    def processed_count(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def skipped_duplicates(self) -> int:
        return sum(1 for r in self.results if r.action == ACTION_DUPLICATE)

    def to_dict(self) -> dict:
        return {
            "success": True,
            "processed_count": self.processed_count,
            "total_items": self.total_items,
            "successful": self.successful,
            "failed": self.failed,
            "skipped_duplicates": self.skipped_duplicates,
            "stale_reset": self.stale_reset,
            "results": [r.to_dict() for r in self.results],
        }


def _load_payload(raw_payload: str) -> dict:
    try:
        payload = json.loads(raw_payload)
    except json.JSONDecodeError as e:
        raise ProcessingError(f"payload is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ProcessingError("payload is not an object")
    if not str(payload.get("title") or "").strip():
        raise ProcessingError("payload has no title")
    return payload


def _clamp_confidence(value: object) -> float:
    if value is None or isinstance(value, bool):
        return 0.5
    try:
        score = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.5
    return min(1.0, max(0.0, score))


def _coords(payload: dict) -> tuple[float, float] | None:
    lat = payload.get("latitude")
    lon = payload.get("longitude")
    if lat is None or lon is None:
        return None
    try:
        return (float(lat), float(lon))
    except (TypeError, ValueError):
        return None


def find_duplicate(
    db: Database, title: str, *, since: datetime, prefix_len: int
) -> str | None:
    prefix = title[:prefix_len]
    with db.lock:
        row = db.conn.execute(
            """
            SELECT incident_id
            FROM incidents
            WHERE created_at >= ?
              AND instr(lower(title), lower(?)) > 0
            ORDER BY created_at ASC
            LIMIT 1;
            """,
            (to_iso(since), prefix),
        ).fetchone()
    return str(row["incident_id"]) if row is not None else None


def incident_for_queue_item(db: Database, queue_item_id: str) -> str | None:
    with db.lock:
        row = db.conn.execute(
            "SELECT incident_id FROM incidents WHERE queue_item_id = ?;",
            (queue_item_id,),
        ).fetchone()
    return str(row["incident_id"]) if row is not None else None


def materialize_incident(
    db: Database,
    item: dict,
    payload: dict,
    *,
    now: datetime,
    dedup_window: timedelta,
    title_prefix_len: int,
) -> tuple[str, str | None]:
    """Write the Incident (and Geospatial row) for one claimed queue item.

    Returns (action, incident_id). Raises ProcessingError on datastore failures.
    """
    existing = incident_for_queue_item(db, str(item["queue_item_id"]))
    if existing is not None:
        # A previous attempt wrote the incident but never completed the item.
        return (ACTION_CREATED, existing)

    title = str(payload["title"]).strip()
    duplicate_of = find_duplicate(
        db, title, since=now - dedup_window, prefix_len=title_prefix_len
    )
    if duplicate_of is not None:
        return (ACTION_DUPLICATE, duplicate_of)

    alert_level, severity_numeric = map_severity(payload.get("severity"))
    province_id = resolve_province_id(db, payload.get("province_code"))
    area = str(payload.get("area") or "").strip()
    if area == AREA_NOT_SPECIFIED:
        area = ""

    incident_id = str(uuid.uuid4())
    now_iso = to_iso(now)
    coords = _coords(payload)

    with db.lock:
        try:
            db.conn.execute(
                """
                INSERT INTO incidents(
                  incident_id, title, description, alert_level, severity_numeric,
                  province_id, geographic_scope, source, verification_status,
                  confidence_score, recommended_action, raw_payload, data_source_id,
                  queue_item_id, event_timestamp, created_at, updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, 'unverified', ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    incident_id,
                    title,
                    str(payload.get("description") or ""),
                    alert_level,
                    severity_numeric,
                    province_id,
                    area or None,
                    str(payload.get("source") or item["source_id"]),
                    _clamp_confidence(payload.get("confidence_score")),
                    payload.get("instructions"),
                    item["raw_payload"],
                    item["source_id"],
                    item["queue_item_id"],
                    str(payload.get("published") or now_iso),
                    now_iso,
                    now_iso,
                ),
            )
            if coords is not None:
                lat, lon = coords
                db.conn.execute(
                    """
                    INSERT INTO geospatial_data(
                      incident_id, latitude, longitude, administrative_area, geohash,
                      affected_radius_km, population_impact, created_at
                    )
                    VALUES(?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        incident_id,
                        lat,
                        lon,
                        area or None,
                        geohash_bucket(lat, lon),
                        estimate_affected_radius_km(alert_level),
                        estimate_population_impact(area),
                        now_iso,
                    ),
                )
            db.conn.commit()
        except sqlite3.IntegrityError as e:
            db.conn.rollback()
            existing = db.conn.execute(
                "SELECT incident_id FROM incidents WHERE queue_item_id = ?;",
                (item["queue_item_id"],),
            ).fetchone()
            if existing is not None:
                return (ACTION_CREATED, str(existing["incident_id"]))
            raise ProcessingError(f"datastore constraint failed: {e}") from e
        except sqlite3.Error as e:
            db.conn.rollback()
            raise ProcessingError(f"datastore error: {e}") from e

    return (ACTION_CREATED, incident_id)


def _process_item(
    db: Database, settings: Settings, item: dict, now: datetime
) -> ItemResult | None:
    item_id = str(item["queue_item_id"])
    source_id = str(item["source_id"])
    if not claim(db, item_id):
        logger.debug("queue item %s claimed elsewhere, skipping", item_id)
        return None
    attempts = int(item["processing_attempts"]) + 1

    try:
        payload = _load_payload(str(item["raw_payload"]))
        action, incident_id = materialize_incident(
            db,
            item,
            payload,
            now=now,
            dedup_window=timedelta(hours=settings.dedup_window_hours),
            title_prefix_len=settings.dedup_title_prefix,
        )
        complete(db, item_id, action=action, incident_id=incident_id)
    except (ProcessingError, sqlite3.Error) as e:
        try:
            status = record_failure(
                db,
                item_id,
                attempts=attempts,
                error=str(e),
                max_attempts=settings.queue_max_attempts,
            )
        except sqlite3.Error:
            # Left in processing; the stale sweep hands it back.
            logger.exception("could not record failure for queue item %s", item_id)
            status = "processing"
        logger.warning(
            "queue item %s from %s failed (attempt %d, now %s): %s",
            item_id,
            source_id,
            attempts,
            status,
            e,
        )
        return ItemResult(
            queue_item_id=item_id,
            source_id=source_id,
            success=False,
            action=ACTION_FAILED if status == "failed" else ACTION_RETRY,
            error=str(e),
        )

    if action == ACTION_DUPLICATE:
        logger.info("queue item %s duplicates incident %s", item_id, incident_id)
    return ItemResult(
        queue_item_id=item_id,
        source_id=source_id,
        success=True,
        action=action,
        incident_id=incident_id,
    )


def _record_batch_health(
    db: Database, settings: Settings, results: list[ItemResult], elapsed_ms: int
) -> None:
    by_source: dict[str, list[ItemResult]] = {}
    for result in results:
        by_source.setdefault(result.source_id, []).append(result)

    for source_id, source_results in by_source.items():
        errors = [r.error for r in source_results if r.error]
        record_health_metric(
            db,
            source_id=source_id,
            success=not errors,
            response_time_ms=elapsed_ms,
            records_processed=sum(1 for r in source_results if r.success),
            error_message=errors[-1] if errors else None,
            stage="process",
        )
        refresh_health_status(db, source_id, settings.health_window)


def process_queue(
    db: Database, settings: Settings, *, now: datetime | None = None
) -> BatchResult:
    """Run one bounded batch: stale sweep, pull, claim, dedup, materialize."""
    now = now or utc_now()
    started = time.monotonic()

    batch = BatchResult()
    batch.stale_reset = sweep_stale(
        db, now - timedelta(minutes=settings.queue_stale_minutes)
    )

    items = select_pending(db, settings.queue_batch_size)
    batch.total_items = len(items)
    for item in items:
        result = _process_item(db, settings, item, now)
        if result is not None:
            batch.results.append(result)

    elapsed_ms = int((time.monotonic() - started) * 1000)
    _record_batch_health(db, settings, batch.results, elapsed_ms)
    logger.info(
        "processed %d/%d queue items: %d ok, %d failed, %d duplicates",
        batch.processed_count,
        batch.total_items,
        batch.successful,
        batch.failed,
        batch.skipped_duplicates,
    )
    return batch
