import sqlite3
from datetime import timedelta
from pathlib import Path

import pytest

from geo.impact import (
    estimate_affected_radius_km,
    estimate_population_impact,
    geohash_bucket,
)
from geo.provinces import resolve_province_id
from health.health import recent_metrics
from normalize.normalize import default_registry
from processing import processor
from processing.processor import map_severity, process_queue
from processing.queue import (
    claim,
    enqueue_alerts,
    get_item,
    list_failed,
    queue_counts,
    requeue_failed,
    select_pending,
    sweep_stale,
)
from store.db import utc_now


FIXTURES = Path(__file__).resolve().parent / "fixtures"


def _incidents(db) -> list[dict]:
    with db.lock:
        rows = db.conn.execute(
            "SELECT * FROM incidents ORDER BY created_at;"
        ).fetchall()
    return [dict(r) for r in rows]


def _geo(db, incident_id: str) -> dict | None:
    with db.lock:
        row = db.conn.execute(
            "SELECT * FROM geospatial_data WHERE incident_id = ?;", (incident_id,)
        ).fetchone()
    return dict(row) if row is not None else None


@pytest.mark.parametrize(
    ("severity", "expected"),
    [
        ("Severe", ("severe", 3)),
        ("EXTREME", ("severe", 3)),
        ("critical", ("severe", 3)),
        ("Moderate", ("warning", 2)),
        ("Warning", ("warning", 2)),
        ("Minor", ("normal", 1)),
        ("Unknown", ("normal", 1)),
        ("", ("normal", 1)),
        (None, ("normal", 1)),
        (42, ("normal", 1)),
        (["severe"], ("severe", 3)),
    ],
)
def test_map_severity_is_total(severity, expected) -> None:
    assert map_severity(severity) == expected


def test_geo_estimates() -> None:
    assert geohash_bucket(43.7, -79.4) == "43700_-79400"
    assert estimate_affected_radius_km("severe") == 50
    assert estimate_affected_radius_km("warning") == 25
    assert estimate_affected_radius_km("normal") == 10
    assert estimate_affected_radius_km("bogus") == 10
    assert estimate_population_impact("Toronto") == 100_000
    assert estimate_population_impact("City of Ottawa") == 50_000
    assert estimate_population_impact("Quebec City") == 25_000
    assert estimate_population_impact("") == 1_000
    assert estimate_population_impact("Rural Manitoba") == 5_000


def test_resolve_province(db) -> None:
    ontario = resolve_province_id(db, "ON")
    assert ontario is not None
    assert resolve_province_id(db, "on") == ontario
    assert resolve_province_id(db, "Ontario") == ontario
    assert resolve_province_id(db, "Québec") == resolve_province_id(db, "QC")
    assert resolve_province_id(db, "XX") is None
    assert resolve_province_id(db, None) is None


def test_severe_toronto_alert_end_to_end(db, settings, add_source) -> None:
    source = add_source("eccc")
    payload = {
        "title": "Severe thunderstorm warning",
        "description": "Large hail and damaging winds.",
        "severity": "Severe",
        "area": "Toronto",
        "latitude": 43.7,
        "longitude": -79.4,
        "province_code": "ON",
        "confidence_score": 0.9,
        "published": "2024-05-01T18:00:00Z",
    }
    [item_id] = enqueue_alerts(db, source.source_id, [payload])

    batch = process_queue(db, settings)

    assert batch.to_dict()["success"] is True
    assert batch.total_items == 1
    assert batch.processed_count == 1
    assert batch.successful == 1
    assert batch.failed == 0

    [incident] = _incidents(db)
    assert incident["alert_level"] == "severe"
    assert incident["severity_numeric"] == 3
    assert incident["verification_status"] == "unverified"
    assert incident["confidence_score"] == 0.9
    assert incident["geographic_scope"] == "Toronto"
    assert incident["province_id"] == resolve_province_id(db, "ON")
    assert incident["queue_item_id"] == item_id
    assert incident["event_timestamp"] == "2024-05-01T18:00:00Z"

    geo = _geo(db, incident["incident_id"])
    assert geo["affected_radius_km"] == 50
    assert geo["population_impact"] == 100_000
    assert geo["geohash"] == "43700_-79400"

    item = get_item(db, item_id)
    assert item["processing_status"] == "completed"
    assert item["result_action"] == "created_incident"
    assert item["incident_id"] == incident["incident_id"]
    assert item["processing_attempts"] == 1
    assert item["processed_at"] is not None


def test_normalized_weather_alert_materializes(db, settings, add_source) -> None:
    source = add_source("eccc")
    alerts = default_registry().get("weather").normalize(
        (FIXTURES / "eccc_alerts.json").read_bytes(),
        "application/json",
        source,
        "2024-05-01T20:00:00.000000Z",
    )
    enqueue_alerts(db, source.source_id, [a.to_payload() for a in alerts])

    process_queue(db, settings)

    [incident] = _incidents(db)
    assert incident["alert_level"] == "severe"
    assert incident["geographic_scope"] == "City of Toronto"
    assert incident["data_source_id"] == "eccc"
    geo = _geo(db, incident["incident_id"])
    assert geo["population_impact"] == 100_000


def test_alert_without_coordinates_has_no_geospatial_row(
    db, settings, add_source
) -> None:
    add_source("cccs", source_type="security")
    enqueue_alerts(
        db, "cccs", [{"title": "Patch now", "severity": "Moderate", "area": "Canada"}]
    )
    process_queue(db, settings)
    [incident] = _incidents(db)
    assert incident["alert_level"] == "warning"
    assert incident["severity_numeric"] == 2
    assert incident["confidence_score"] == 0.5
    assert incident["province_id"] is None
    assert _geo(db, incident["incident_id"]) is None


def test_same_payload_twice_yields_one_incident(db, settings, add_source) -> None:
    add_source("eccc")
    payload = {"title": "Heat warning for Ottawa", "severity": "Moderate"}
    first_id, second_id = enqueue_alerts(db, "eccc", [payload, payload])

    batch = process_queue(db, settings)

    assert len(_incidents(db)) == 1
    assert [r.action for r in batch.results] == [
        "created_incident",
        "skipped_duplicate",
    ]
    assert batch.successful == 2
    assert batch.skipped_duplicates == 1
    assert get_item(db, second_id)["result_action"] == "skipped_duplicate"
    assert get_item(db, second_id)["incident_id"] == get_item(db, first_id)[
        "incident_id"
    ]


def test_duplicate_window_is_24_hours(db, settings, add_source) -> None:
    add_source("eccc")
    payload = {"title": "Heat warning for Ottawa"}
    enqueue_alerts(db, "eccc", [payload])
    process_queue(db, settings, now=utc_now() - timedelta(hours=25))

    enqueue_alerts(db, "eccc", [payload])
    batch = process_queue(db, settings)
    assert [r.action for r in batch.results] == ["created_incident"]
    assert len(_incidents(db)) == 2


def test_duplicate_matches_title_prefix_case_insensitively(
    db, settings, add_source
) -> None:
    add_source("eccc")
    enqueue_alerts(
        db, "eccc", [{"title": "Special weather statement for Eastern Ontario"}]
    )
    process_queue(db, settings)
    shouted = "SPECIAL WEATHER STATEMENT FOR EASTERN ONTARIO UPDATED"
    enqueue_alerts(db, "eccc", [{"title": shouted}])
    batch = process_queue(db, settings)
    assert batch.skipped_duplicates == 1


def test_stale_processing_items_return_to_pending(db, settings, add_source) -> None:
    add_source("eccc")
    [item_id] = enqueue_alerts(db, "eccc", [{"title": "Fog advisory"}])
    assert claim(db, item_id)

    assert sweep_stale(db, utc_now() - timedelta(minutes=10)) == 0
    assert sweep_stale(db, utc_now() + timedelta(minutes=1)) == 1

    item = get_item(db, item_id)
    assert item["processing_status"] == "pending"
    assert item["processing_attempts"] == 1
    assert item["claimed_at"] is None
    assert item["error_message"]


def test_process_queue_sweeps_before_pulling(db, settings, add_source) -> None:
    add_source("eccc")
    [item_id] = enqueue_alerts(db, "eccc", [{"title": "Fog advisory"}])
    assert claim(db, item_id)

    batch = process_queue(db, settings, now=utc_now() + timedelta(minutes=11))

    assert batch.stale_reset == 1
    assert batch.successful == 1
    item = get_item(db, item_id)
    assert item["processing_status"] == "completed"
    assert item["processing_attempts"] == 2


def test_retry_exhaustion_marks_item_failed(db, settings, add_source) -> None:
    add_source("eccc")
    [item_id] = enqueue_alerts(db, "eccc", [{"title": "   "}])

    actions = []
    for _ in range(3):
        batch = process_queue(db, settings)
        actions.extend(r.action for r in batch.results)
    assert actions == ["retry", "retry", "failed"]

    item = get_item(db, item_id)
    assert item["processing_status"] == "failed"
    assert item["processing_attempts"] == 3
    assert "no title" in item["error_message"]

    batch = process_queue(db, settings)
    assert batch.total_items == 0
    assert get_item(db, item_id)["processing_attempts"] == 3
    assert [f["queue_item_id"] for f in list_failed(db)] == [item_id]
    assert _incidents(db) == []


def test_failed_item_can_be_requeued(db, settings, add_source) -> None:
    add_source("eccc")
    [item_id] = enqueue_alerts(db, "eccc", [{"title": ""}])
    for _ in range(3):
        process_queue(db, settings)
    assert not requeue_failed(db, "missing")

    assert requeue_failed(db, item_id)
    item = get_item(db, item_id)
    assert item["processing_status"] == "pending"
    assert item["processing_attempts"] == 0
    assert not requeue_failed(db, item_id)


def test_lost_claim_is_not_processed_twice(
    db, settings, add_source, monkeypatch
) -> None:
    add_source("eccc")
    [item_id] = enqueue_alerts(db, "eccc", [{"title": "Wind warning"}])
    snapshot = select_pending(db, 10)

    # Another worker claims the item between the pull and our claim.
    assert claim(db, item_id)
    assert not claim(db, item_id)
    monkeypatch.setattr(processor, "select_pending", lambda db, limit: snapshot)

    batch = process_queue(db, settings)

    assert batch.total_items == 1
    assert batch.processed_count == 0
    assert batch.failed == 0
    assert _incidents(db) == []
    assert get_item(db, item_id)["processing_attempts"] == 1


def test_failures_do_not_abort_the_batch(db, settings, add_source) -> None:
    add_source("eccc")
    enqueue_alerts(db, "eccc", [{"title": ""}, {"title": "Snowfall warning"}])
    batch = process_queue(db, settings)
    assert batch.processed_count == 2
    assert batch.failed == 1
    assert batch.successful == 1
    assert len(_incidents(db)) == 1


def test_datastore_errors_stay_with_the_failing_item(
    db, settings, add_source, monkeypatch
) -> None:
    add_source("eccc")
    first_id, second_id = enqueue_alerts(
        db, "eccc", [{"title": "Flood watch"}, {"title": "Frost advisory"}]
    )
    real_find_duplicate = processor.find_duplicate
    calls = []

    def flaky_find_duplicate(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise sqlite3.OperationalError("database is locked")
        return real_find_duplicate(*args, **kwargs)

    monkeypatch.setattr(processor, "find_duplicate", flaky_find_duplicate)

    batch = process_queue(db, settings)

    assert batch.processed_count == 2
    assert batch.failed == 1
    assert batch.successful == 1
    first = get_item(db, first_id)
    assert first["processing_status"] == "pending"
    assert "database is locked" in first["error_message"]
    assert get_item(db, second_id)["processing_status"] == "completed"
    [metric] = [m for m in recent_metrics(db, "eccc", 10) if m.stage == "process"]
    assert metric.success is False


def test_retry_after_lost_completion_adopts_existing_incident(
    db, settings, add_source, monkeypatch
) -> None:
    add_source("eccc")
    [item_id] = enqueue_alerts(db, "eccc", [{"title": "Air quality statement"}])

    def failing_complete(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    with monkeypatch.context() as patched:
        patched.setattr(processor, "complete", failing_complete)
        batch = process_queue(db, settings)
    assert batch.failed == 1
    assert get_item(db, item_id)["processing_status"] == "pending"
    [incident] = _incidents(db)

    batch = process_queue(db, settings)

    assert [r.action for r in batch.results] == ["created_incident"]
    item = get_item(db, item_id)
    assert item["processing_status"] == "completed"
    assert item["result_action"] == "created_incident"
    assert item["incident_id"] == incident["incident_id"]
    assert len(_incidents(db)) == 1


def test_batch_size_and_order(db, settings, add_source) -> None:
    add_source("eccc")
    titles = [f"Distinct alert number {i:03d} for testing" for i in range(60)]
    enqueue_alerts(db, "eccc", [{"title": t} for t in titles])

    batch = process_queue(db, settings)

    assert batch.total_items == 50
    assert queue_counts(db) == {
        "pending": 10,
        "processing": 0,
        "completed": 50,
        "failed": 0,
        "total": 60,
    }
    created = [r["title"] for r in _incidents(db)]
    assert sorted(created) == titles[:50]


def test_batch_records_process_health(db, settings, add_source) -> None:
    add_source("eccc")
    enqueue_alerts(db, "eccc", [{"title": "Frost advisory"}])
    process_queue(db, settings)
    [sample] = recent_metrics(db, "eccc")
    assert sample.stage == "process"
    assert sample.success is True
