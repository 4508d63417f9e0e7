from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta

from store.db import Database, to_iso, utc_now


logger = logging.getLogger(__name__)

CORRELATION_WINDOW = timedelta(hours=24)
DEFAULT_THRESHOLD = 0.7

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def _tokens(text: str) -> set[str]:
    return set(_TOKEN_RE.findall(text.casefold()))


def jaccard(a_tokens: set[str], b_tokens: set[str]) -> float:
    if not a_tokens or not b_tokens:
        return 0.0
    return len(a_tokens & b_tokens) / len(a_tokens | b_tokens)


def run_correlation_analysis(
    db: Database,
    now: datetime | None = None,
    *,
    threshold: float = DEFAULT_THRESHOLD,
) -> int:
    """Link recent incidents whose title+description word sets overlap.

    Pairs above ``threshold`` are upserted into incident_correlations with
    the newer incident as primary. Returns the number of pairs written.
    """
    now = now or utc_now()
    with db.lock:
        rows = db.conn.execute(
            """
            SELECT incident_id, title, description
            FROM incidents
            WHERE created_at >= ?
            ORDER BY created_at DESC, incident_id ASC;
            """,
            (to_iso(now - CORRELATION_WINDOW),),
        ).fetchall()

    docs = [
        (str(r["incident_id"]), _tokens(f"{r['title']} {r['description'] or ''}"))
        for r in rows
    ]
    pairs: list[tuple[str, str, float]] = []
    for i, (primary_id, primary_tokens) in enumerate(docs):
        for related_id, related_tokens in docs[i + 1 :]:
            score = jaccard(primary_tokens, related_tokens)
            if score > threshold:
                pairs.append((primary_id, related_id, round(score, 4)))

    if not pairs:
        return 0

    now_iso = to_iso(now)
    with db.lock:
        db.conn.executemany(
            """
            INSERT INTO incident_correlations(
              primary_incident_id, related_incident_id, correlation_type,
              confidence_score, created_at
            )
            VALUES(?, ?, 'semantic', ?, ?)
            ON CONFLICT(primary_incident_id, related_incident_id) DO UPDATE SET
              confidence_score = excluded.confidence_score;
            """,
            [(p, r, score, now_iso) for p, r, score in pairs],
        )
        db.conn.commit()
    logger.info("linked %d correlated incident pairs", len(pairs))
    return len(pairs)


def list_correlations(db: Database, incident_id: str) -> list[dict]:
    with db.lock:
        rows = db.conn.execute(
            """
            SELECT primary_incident_id, related_incident_id, correlation_type,
                   confidence_score, created_at
            FROM incident_correlations
            WHERE primary_incident_id = ? OR related_incident_id = ?
            ORDER BY confidence_score DESC;
            """,
            (incident_id, incident_id),
        ).fetchall()
    return [dict(r) for r in rows]
