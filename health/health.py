from __future__ import annotations

import logging
from dataclasses import dataclass

from store.db import Database, utc_now_iso


logger = logging.getLogger(__name__)

HEALTH_WINDOW = 10

HEALTHY_RATIO = 0.9
DEGRADED_RATIO = 0.5


@dataclass(frozen=True)
class HealthSample:
    timestamp: str
    success: bool
    stage: str
    response_time_ms: int
    error_message: str | None


def compute_backoff_seconds(
    poll_interval_seconds: int, consecutive_failures: int
) -> int:
    if consecutive_failures <= 0:
        return poll_interval_seconds
    return min(60 * 60, poll_interval_seconds * (2**consecutive_failures))


def compute_uptime(samples: list[HealthSample]) -> float:
    if not samples:
        return 0.0
    return sum(1 for s in samples if s.success) / len(samples)


def derive_health_status(samples: list[HealthSample]) -> str:
    if not samples:
        return "unknown"
    ratio = compute_uptime(samples)
    if ratio >= HEALTHY_RATIO:
        return "healthy"
    if ratio >= DEGRADED_RATIO:
        return "degraded"
    return "error"


def consecutive_failures(samples: list[HealthSample]) -> int:
    """Count failures at the head of a newest-first sample list."""
    count = 0
    for sample in samples:
        if sample.success:
            break
        count += 1
    return count


def record_health_metric(
    db: Database,
    *,
    source_id: str,
    success: bool,
    response_time_ms: int,
    records_processed: int = 0,
    error_message: str | None = None,
    http_status_code: int | None = None,
    stage: str = "poll",
) -> None:
    with db.lock:
        db.conn.execute(
            """
            INSERT INTO source_health_metrics(
              source_id, timestamp, stage, success, response_time_ms,
              http_status_code, error_message, records_processed
            )
            VALUES(?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                source_id,
                utc_now_iso(),
                stage,
                1 if success else 0,
                max(0, int(response_time_ms)),
                http_status_code,
                error_message,
                records_processed,
            ),
        )
        db.conn.commit()
    if not success:
        logger.warning(
            "source %s %s failed after %sms: %s",
            source_id,
            stage,
            response_time_ms,
            error_message,
        )


def recent_metrics(
    db: Database, source_id: str, limit: int = HEALTH_WINDOW
) -> list[HealthSample]:
    with db.lock:
        rows = db.conn.execute(
            """
            SELECT timestamp, success, stage, response_time_ms, error_message
            FROM source_health_metrics
            WHERE source_id = ?
            ORDER BY timestamp DESC, metric_id DESC
            LIMIT ?;
            """,
            (source_id, limit),
        ).fetchall()
    return [
        HealthSample(
            timestamp=str(r["timestamp"]),
            success=bool(r["success"]),
            stage=str(r["stage"]),
            response_time_ms=int(r["response_time_ms"]),
            error_message=r["error_message"],
        )
        for r in rows
    ]


def refresh_health_status(
    db: Database, source_id: str, window: int = HEALTH_WINDOW
) -> str:
    status = derive_health_status(recent_metrics(db, source_id, window))
    with db.lock:
        db.conn.execute(
            "UPDATE alert_sources SET health_status = ?, updated_at = ? WHERE source_id = ?;",
            (status, utc_now_iso(), source_id),
        )
        db.conn.commit()
    return status


def source_health_summary(
    db: Database, source_id: str, window: int = HEALTH_WINDOW
) -> dict | None:
    with db.lock:
        row = db.conn.execute(
            "SELECT health_status, last_poll_at FROM alert_sources WHERE source_id = ?;",
            (source_id,),
        ).fetchone()
    if row is None:
        return None
    samples = recent_metrics(db, source_id, window)
    last_error = next(
        (s.error_message for s in samples if not s.success and s.error_message), None
    )
    return {
        "source_id": source_id,
        "health_status": str(row["health_status"]),
        "uptime": compute_uptime(samples),
        "sample_count": len(samples),
        "consecutive_failures": consecutive_failures(samples),
        "last_poll_at": row["last_poll_at"],
        "last_error": last_error,
    }
