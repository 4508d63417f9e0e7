"""Durable ingestion queue backed by the alert_ingestion_queue table.

Items move pending -> processing -> completed|failed, and processing -> pending
when a claim goes stale or a retry is scheduled. Rows are never deleted here.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Iterable
from datetime import datetime

from store.db import Database, to_iso, utc_now_iso


logger = logging.getLogger(__name__)

STATUSES = ("pending", "processing", "completed", "failed")

STALE_MESSAGE = "reset after stale processing claim"


def enqueue_alerts(db: Database, source_id: str, payloads: Iterable[dict]) -> list[str]:
    item_ids: list[str] = []
    with db.lock:
        for payload in payloads:
            item_id = str(uuid.uuid4())
            db.conn.execute(
                """
                INSERT INTO alert_ingestion_queue(
                  queue_item_id, source_id, raw_payload, processing_status,
                  processing_attempts, created_at
                )
                VALUES(?, ?, ?, 'pending', 0, ?);
                """,
                (
                    item_id,
                    source_id,
                    json.dumps(payload, ensure_ascii=False, default=str),
                    utc_now_iso(),
                ),
            )
            item_ids.append(item_id)
        db.conn.commit()
    if item_ids:
        logger.info("queued %d alerts from %s", len(item_ids), source_id)
    return item_ids


def sweep_stale(db: Database, cutoff: datetime) -> int:
    """Return processing items claimed before ``cutoff`` to pending.

    Attempt counts are left as they are.
    """
    with db.lock:
        cur = db.conn.execute(
            """
            UPDATE alert_ingestion_queue
            SET processing_status = 'pending',
                error_message = ?,
                claimed_at = NULL
            WHERE processing_status = 'processing'
              AND COALESCE(claimed_at, created_at) < ?;
            """,
            (STALE_MESSAGE, to_iso(cutoff)),
        )
        db.conn.commit()
    if cur.rowcount:
        logger.warning("reset %d stale queue items to pending", cur.rowcount)
    return int(cur.rowcount)


def select_pending(db: Database, limit: int) -> list[dict]:
    with db.lock:
        rows = db.conn.execute(
            """
            SELECT *
            FROM alert_ingestion_queue
            WHERE processing_status = 'pending'
            ORDER BY created_at ASC, rowid ASC
            LIMIT ?;
            """,
            (limit,),
        ).fetchall()
    return [dict(r) for r in rows]


def claim(db: Database, item_id: str) -> bool:
    """Atomically move one pending item to processing.

    Returns False when the item is no longer pending (another worker won).
    """
    with db.lock:
        cur = db.conn.execute(
            """
            UPDATE alert_ingestion_queue
            SET processing_status = 'processing',
                processing_attempts = processing_attempts + 1,
                claimed_at = ?
            WHERE queue_item_id = ? AND processing_status = 'pending';
            """,
            (utc_now_iso(), item_id),
        )
        db.conn.commit()
    return cur.rowcount == 1


def complete(
    db: Database, item_id: str, *, action: str, incident_id: str | None = None
) -> None:
    with db.lock:
        db.conn.execute(
            """
            UPDATE alert_ingestion_queue
            SET processing_status = 'completed',
                processed_at = ?,
                result_action = ?,
                incident_id = ?,
                error_message = NULL
            WHERE queue_item_id = ?;
            """,
            (utc_now_iso(), action, incident_id, item_id),
        )
        db.conn.commit()


def record_failure(
    db: Database, item_id: str, *, attempts: int, error: str, max_attempts: int
) -> str:
    """Mark a failed attempt; returns the resulting status."""
    status = "failed" if attempts >= max_attempts else "pending"
    with db.lock:
        db.conn.execute(
            """
            UPDATE alert_ingestion_queue
            SET processing_status = ?,
                error_message = ?,
                processed_at = CASE WHEN ? = 'failed' THEN ? ELSE processed_at END,
                claimed_at = NULL
            WHERE queue_item_id = ?;
            """,
            (status, error, status, utc_now_iso(), item_id),
        )
        db.conn.commit()
    return status


def get_item(db: Database, item_id: str) -> dict | None:
    with db.lock:
        row = db.conn.execute(
            "SELECT * FROM alert_ingestion_queue WHERE queue_item_id = ?;", (item_id,)
        ).fetchone()
    return dict(row) if row is not None else None


def queue_counts(db: Database) -> dict[str, int]:
    counts = {status: 0 for status in STATUSES}
    with db.lock:
        rows = db.conn.execute(
            """
            SELECT processing_status, COUNT(*) AS n
            FROM alert_ingestion_queue
            GROUP BY processing_status;
            """
        ).fetchall()
    for row in rows:
        counts[str(row["processing_status"])] = int(row["n"])
    counts["total"] = sum(counts[s] for s in STATUSES)
    return counts


def list_failed(db: Database, *, limit: int = 100) -> list[dict]:
    with db.lock:
        rows = db.conn.execute(
            """
            SELECT queue_item_id, source_id, processing_attempts, error_message,
                   created_at, processed_at
            FROM alert_ingestion_queue
            WHERE processing_status = 'failed'
            ORDER BY created_at DESC
            LIMIT ?;
            """,
            (limit,),
        ).fetchall()
    return [dict(r) for r in rows]


def requeue_failed(db: Database, item_id: str) -> bool:
    """Put a permanently failed item back in line with a fresh attempt budget."""
    with db.lock:
        cur = db.conn.execute(
            """
            UPDATE alert_ingestion_queue
            SET processing_status = 'pending',
                processing_attempts = 0,
                processed_at = NULL,
                claimed_at = NULL
            WHERE queue_item_id = ? AND processing_status = 'failed';
            """,
            (item_id,),
        )
        db.conn.commit()
    if cur.rowcount:
        logger.info("requeued failed item %s", item_id)
    return cur.rowcount == 1
