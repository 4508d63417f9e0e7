from __future__ import annotations

import json
import logging
import re
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from health.health import (
    HEALTH_WINDOW,
    compute_backoff_seconds,
    record_health_metric,
    refresh_health_status,
)
from store.db import Database, parse_iso, utc_now_iso


logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class AlertSource:
    source_id: str
    name: str
    source_type: str
    api_endpoint: str
    is_active: bool = True
    polling_interval: int = 300
    health_status: str = "unknown"
    last_poll_at: str | None = None
    configuration: dict = field(default_factory=dict)
    description: str | None = None

    def to_dict(self) -> dict:
        return {
            "source_id": self.source_id,
            "name": self.name,
            "source_type": self.source_type,
            "api_endpoint": self.api_endpoint,
            "is_active": self.is_active,
            "polling_interval": self.polling_interval,
            "health_status": self.health_status,
            "last_poll_at": self.last_poll_at,
            "configuration": self.configuration,
            "description": self.description,
        }


def slugify(name: str) -> str:
    return _SLUG_RE.sub("_", name.casefold()).strip("_") or "source"


def _row_to_source(row: sqlite3.Row) -> AlertSource:
    try:
        configuration = json.loads(row["configuration"] or "{}")
    except json.JSONDecodeError:
        logger.warning("source %s has unreadable configuration", row["source_id"])
        configuration = {}
    return AlertSource(
        source_id=str(row["source_id"]),
        name=str(row["name"]),
        source_type=str(row["source_type"]),
        api_endpoint=str(row["api_endpoint"]),
        is_active=bool(row["is_active"]),
        polling_interval=int(row["polling_interval"]),
        health_status=str(row["health_status"]),
        last_poll_at=row["last_poll_at"],
        configuration=configuration if isinstance(configuration, dict) else {},
        description=row["description"],
    )


def source_from_config(
    config: dict, *, known_types: Iterable[str] | None = None
) -> AlertSource:
    """Validate the external source-configuration shape into an AlertSource."""
    name = str(config.get("name") or "").strip()
    if not name:
        raise ValueError("source name is required")
    source_type = str(config.get("source_type") or "").strip()
    if not source_type:
        raise ValueError("source_type is required")
    if known_types is not None and source_type not in set(known_types):
        raise ValueError(f"unknown source_type: {source_type}")

    api_endpoint = str(config.get("api_endpoint") or "").strip()
    if not api_endpoint and source_type != "webhook":
        raise ValueError("api_endpoint is required")

    polling_interval = int(config.get("polling_interval") or 300)
    if polling_interval <= 0:
        raise ValueError("polling_interval must be positive")

    configuration = config.get("configuration") or {}
    if not isinstance(configuration, dict):
        raise ValueError("configuration must be an object")

    return AlertSource(
        source_id=str(config.get("source_id") or slugify(name)),
        name=name,
        source_type=source_type,
        api_endpoint=api_endpoint,
        is_active=bool(config.get("is_active", True)),
        polling_interval=polling_interval,
        configuration=configuration,
        description=config.get("description"),
    )


def create_source(
    db: Database, config: dict, *, known_types: Iterable[str] | None = None
) -> AlertSource:
    source = source_from_config(config, known_types=known_types)
    now_iso = utc_now_iso()
    with db.lock:
        try:
            db.conn.execute(
                """
                INSERT INTO alert_sources(
                  source_id, name, source_type, api_endpoint, description, is_active,
                  polling_interval, health_status, configuration, created_at, updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, 'unknown', ?, ?, ?);
                """,
                (
                    source.source_id,
                    source.name,
                    source.source_type,
                    source.api_endpoint,
                    source.description,
                    1 if source.is_active else 0,
                    source.polling_interval,
                    json.dumps(source.configuration, ensure_ascii=False),
                    now_iso,
                    now_iso,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise ValueError(f"source already exists: {source.source_id}") from e
        db.conn.commit()
    logger.info("registered source %s (%s)", source.source_id, source.source_type)
    return source


def ensure_sources(db: Database, sources: list[AlertSource]) -> None:
    """Insert new sources and refresh the definition of existing ones.

    Operational state (health, last poll, activity) is left untouched for
    sources that already exist.
    """
    now_iso = utc_now_iso()
    with db.lock:
        for source in sources:
            db.conn.execute(
                """
                INSERT OR IGNORE INTO alert_sources(
                  source_id, name, source_type, api_endpoint, description, is_active,
                  polling_interval, health_status, configuration, created_at, updated_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, 'unknown', ?, ?, ?);
                """,
                (
                    source.source_id,
                    source.name,
                    source.source_type,
                    source.api_endpoint,
                    source.description,
                    1 if source.is_active else 0,
                    source.polling_interval,
                    json.dumps(source.configuration, ensure_ascii=False),
                    now_iso,
                    now_iso,
                ),
            )
            db.conn.execute(
                """
                UPDATE alert_sources
                SET name = ?,
                    source_type = ?,
                    api_endpoint = ?,
                    description = ?,
                    polling_interval = ?,
                    configuration = ?,
                    updated_at = ?
                WHERE source_id = ?;
                """,
                (
                    source.name,
                    source.source_type,
                    source.api_endpoint,
                    source.description,
                    source.polling_interval,
                    json.dumps(source.configuration, ensure_ascii=False),
                    now_iso,
                    source.source_id,
                ),
            )
        db.conn.commit()


def get_source(db: Database, source_id: str) -> AlertSource | None:
    with db.lock:
        row = db.conn.execute(
            "SELECT * FROM alert_sources WHERE source_id = ?;", (source_id,)
        ).fetchone()
    return _row_to_source(row) if row is not None else None


def list_sources(db: Database) -> list[AlertSource]:
    with db.lock:
        rows = db.conn.execute(
            "SELECT * FROM alert_sources ORDER BY name ASC;"
        ).fetchall()
    return [_row_to_source(r) for r in rows]


def list_active_sources(db: Database) -> list[AlertSource]:
    with db.lock:
        rows = db.conn.execute(
            """
            SELECT *
            FROM alert_sources
            WHERE is_active = 1
            ORDER BY COALESCE(last_poll_at, '') ASC, name ASC;
            """
        ).fetchall()
    return [_row_to_source(r) for r in rows]


def set_active(db: Database, source_id: str, active: bool) -> bool:
    with db.lock:
        cur = db.conn.execute(
            "UPDATE alert_sources SET is_active = ?, updated_at = ? WHERE source_id = ?;",
            (1 if active else 0, utc_now_iso(), source_id),
        )
        db.conn.commit()
    if cur.rowcount:
        logger.info("source %s is_active=%s", source_id, active)
    return cur.rowcount > 0


def record_poll_outcome(
    db: Database,
    source_id: str,
    *,
    success: bool,
    latency_ms: int,
    error: str | None = None,
    http_status_code: int | None = None,
    records_processed: int = 0,
    window: int = HEALTH_WINDOW,
) -> str:
    record_health_metric(
        db,
        source_id=source_id,
        success=success,
        response_time_ms=latency_ms,
        records_processed=records_processed,
        error_message=error,
        http_status_code=http_status_code,
        stage="poll",
    )
    with db.lock:
        db.conn.execute(
            "UPDATE alert_sources SET last_poll_at = ? WHERE source_id = ?;",
            (utc_now_iso(), source_id),
        )
        db.conn.commit()
    return refresh_health_status(db, source_id, window)


def is_due(
    source: AlertSource,
    now: datetime,
    *,
    min_interval_seconds: int = 0,
    failures: int = 0,
) -> bool:
    if source.last_poll_at is None:
        return True
    interval = max(source.polling_interval, min_interval_seconds)
    wait_seconds = max(interval, compute_backoff_seconds(interval, failures))
    return now - parse_iso(source.last_poll_at) >= timedelta(seconds=wait_seconds)
