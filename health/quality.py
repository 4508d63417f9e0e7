from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field

from store.db import Database, utc_now_iso


logger = logging.getLogger(__name__)

MIN_TITLE_LENGTH = 10
MIN_DESCRIPTION_LENGTH = 20
MIN_SUCCESS_RATE = 0.8
MAX_UNKNOWN_SEVERITY = 0.5
MAX_GENERIC_CATEGORY = 0.7

_WEIGHTS = {
    "success_rate": 0.3,
    "title": 0.2,
    "description": 0.2,
    "severity": 0.15,
    "category": 0.15,
}

_GENERIC_CATEGORIES = frozenset({"Other", "General", "general"})


@dataclass
class FeedQuality:
    source_id: str
    source_name: str
    normalization_success_rate: float
    avg_title_length: float
    avg_description_length: float
    severity_distribution: dict[str, float] = field(default_factory=dict)
    category_distribution: dict[str, float] = field(default_factory=dict)
    data_quality_score: float = 0.0
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


def _distribution(values: list[str]) -> dict[str, float]:
    if not values:
        return {}
    counts = Counter(values)
    total = len(values)
    return {key: count / total for key, count in counts.items()}


def evaluate_feed_quality(source, raw_count: int, alerts: list) -> FeedQuality:
    """Score one normalized batch from ``source`` (AlertSource-like)."""
    success_rate = len(alerts) / raw_count if raw_count > 0 else 0.0
    titles = [len(a.title or "") for a in alerts]
    descriptions = [len(a.description or "") for a in alerts]
    avg_title = sum(titles) / len(titles) if titles else 0.0
    avg_description = sum(descriptions) / len(descriptions) if descriptions else 0.0

    severity_dist = _distribution([a.severity or "Unknown" for a in alerts])
    category_dist = _distribution([a.category or "Other" for a in alerts])
    unknown_severity = severity_dist.get("Unknown", 0.0)
    generic_category = sum(
        share for key, share in category_dist.items() if key in _GENERIC_CATEGORIES
    )

    issues: list[str] = []
    recommendations: list[str] = []
    if success_rate < MIN_SUCCESS_RATE:
        issues.append(f"Low normalization success rate: {round(success_rate * 100)}%")
        recommendations.append("Review field mapping configuration")
    if avg_title < MIN_TITLE_LENGTH:
        issues.append(f"Average title length too short: {round(avg_title)} chars")
        recommendations.append("Check title field mapping")
    if avg_description < MIN_DESCRIPTION_LENGTH:
        issues.append(
            f"Average description length too short: {round(avg_description)} chars"
        )
        recommendations.append("Verify description field extraction")
    if unknown_severity > MAX_UNKNOWN_SEVERITY:
        issues.append(
            f"High proportion of unknown severity: {round(unknown_severity * 100)}%"
        )
        recommendations.append("Improve severity detection rules")
    if generic_category > MAX_GENERIC_CATEGORY:
        issues.append(
            f"High proportion of generic category: {round(generic_category * 100)}%"
        )
        recommendations.append("Add category classification rules")

    score = (
        success_rate * _WEIGHTS["success_rate"]
        + min(avg_title / MIN_TITLE_LENGTH, 1.0) * _WEIGHTS["title"]
        + min(avg_description / MIN_DESCRIPTION_LENGTH, 1.0) * _WEIGHTS["description"]
        + (1.0 - unknown_severity) * _WEIGHTS["severity"]
        + (1.0 - generic_category) * _WEIGHTS["category"]
    )

    return FeedQuality(
        source_id=source.source_id,
        source_name=source.name,
        normalization_success_rate=round(success_rate, 4),
        avg_title_length=round(avg_title, 2),
        avg_description_length=round(avg_description, 2),
        severity_distribution=severity_dist,
        category_distribution=category_dist,
        data_quality_score=round(score, 4),
        issues=issues,
        recommendations=recommendations,
    )


def record_feed_quality(db: Database, quality: FeedQuality) -> None:
    with db.lock:
        db.conn.execute(
            """
            INSERT INTO feed_quality_metrics(
              source_id, evaluated_at, normalization_success_rate, avg_title_length,
              avg_description_length, severity_distribution, category_distribution,
              data_quality_score, issues, recommendations
            )
            VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                quality.source_id,
                utc_now_iso(),
                quality.normalization_success_rate,
                quality.avg_title_length,
                quality.avg_description_length,
                json.dumps(quality.severity_distribution, ensure_ascii=False),
                json.dumps(quality.category_distribution, ensure_ascii=False),
                quality.data_quality_score,
                json.dumps(quality.issues, ensure_ascii=False),
                json.dumps(quality.recommendations, ensure_ascii=False),
            ),
        )
        db.conn.commit()

    logger.info(
        "feed quality %s: success=%d%% score=%d%%",
        quality.source_id,
        round(quality.normalization_success_rate * 100),
        round(quality.data_quality_score * 100),
    )
    if quality.issues:
        logger.warning(
            "feed quality issues for %s: %s",
            quality.source_id,
            "; ".join(quality.issues),
        )


def latest_feed_quality(db: Database, source_id: str) -> dict | None:
    with db.lock:
        row = db.conn.execute(
            """
            SELECT *
            FROM feed_quality_metrics
            WHERE source_id = ?
            ORDER BY evaluated_at DESC, metric_id DESC
            LIMIT 1;
            """,
            (source_id,),
        ).fetchone()
    if row is None:
        return None
    out = dict(row)
    for key in (
        "severity_distribution",
        "category_distribution",
        "issues",
        "recommendations",
    ):
        out[key] = json.loads(out[key])
    return out
