from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import pytest

from health.health import (
    HealthSample,
    compute_backoff_seconds,
    compute_uptime,
    consecutive_failures,
    derive_health_status,
    source_health_summary,
)
from ingest.feed_packs import load_source_packs, pack_sources
from ingest.sources import (
    create_source,
    ensure_sources,
    get_source,
    is_due,
    list_active_sources,
    record_poll_outcome,
    set_active,
    source_from_config,
)
from normalize.normalize import default_registry
from store.db import parse_iso, to_iso, utc_now


SOURCES_DIR = Path(__file__).resolve().parents[1] / "sources"


def _samples(*outcomes: bool) -> list[HealthSample]:
    return [
        HealthSample(
            timestamp="2024-05-01T00:00:00Z",
            success=ok,
            stage="poll",
            response_time_ms=10,
            error_message=None if ok else "boom",
        )
        for ok in outcomes
    ]


def test_uptime_uses_available_samples() -> None:
    assert compute_uptime([]) == 0.0
    assert compute_uptime(_samples(True, True, True, False)) == 0.75
    assert compute_uptime(_samples(*([True] * 7 + [False] * 3))) == 0.7


def test_health_status_thresholds() -> None:
    assert derive_health_status([]) == "unknown"
    assert derive_health_status(_samples(*([True] * 9 + [False]))) == "healthy"
    assert derive_health_status(_samples(*([True] * 5 + [False] * 5))) == "degraded"
    assert derive_health_status(_samples(*([True] * 4 + [False] * 6))) == "error"


def test_consecutive_failures_counts_newest_first() -> None:
    assert consecutive_failures(_samples(False, False, True, False)) == 2
    assert consecutive_failures(_samples(True, False)) == 0


def test_backoff_is_capped() -> None:
    assert compute_backoff_seconds(300, 0) == 300
    assert compute_backoff_seconds(300, 2) == 1200
    assert compute_backoff_seconds(300, 10) == 3600


def test_poll_outcomes_drive_health_over_last_ten(db, add_source) -> None:
    add_source("eccc")
    for _ in range(2):
        record_poll_outcome(db, "eccc", success=False, latency_ms=5, error="http_503")
    assert get_source(db, "eccc").health_status == "error"

    for _ in range(10):
        status = record_poll_outcome(
            db, "eccc", success=True, latency_ms=5, records_processed=3
        )
    assert status == "healthy"

    summary = source_health_summary(db, "eccc")
    assert summary["uptime"] == 1.0
    assert summary["sample_count"] == 10
    assert summary["consecutive_failures"] == 0
    assert summary["last_poll_at"] is not None
    assert source_health_summary(db, "missing") is None


def test_summary_reports_last_error(db, add_source) -> None:
    add_source("cccs", source_type="security")
    record_poll_outcome(db, "cccs", success=True, latency_ms=5)
    record_poll_outcome(db, "cccs", success=False, latency_ms=5, error="timeout")
    summary = source_health_summary(db, "cccs")
    assert summary["uptime"] == 0.5
    assert summary["health_status"] == "degraded"
    assert summary["last_error"] == "timeout"
    assert summary["consecutive_failures"] == 1


def test_is_due() -> None:
    now = utc_now()
    source = source_from_config(
        {
            "name": "ECCC",
            "source_type": "weather",
            "api_endpoint": "https://example.test",
            "polling_interval": 300,
        }
    )
    assert is_due(source, now)

    recent = replace(source, last_poll_at=to_iso(now - timedelta(seconds=100)))
    older = replace(source, last_poll_at=to_iso(now - timedelta(seconds=400)))
    assert not is_due(recent, now)
    assert is_due(older, now)
    assert not is_due(older, now, failures=2)
    assert not is_due(older, now, min_interval_seconds=600)


def test_source_validation() -> None:
    known = default_registry().tags()
    with pytest.raises(ValueError, match="unknown source_type"):
        source_from_config(
            {"name": "x", "source_type": "carrier-pigeon", "api_endpoint": "u"},
            known_types=known,
        )
    with pytest.raises(ValueError, match="api_endpoint"):
        source_from_config({"name": "x", "source_type": "weather"}, known_types=known)
    with pytest.raises(ValueError, match="name"):
        source_from_config({"source_type": "weather", "api_endpoint": "u"})

    webhook = source_from_config(
        {"name": "Partner Push", "source_type": "webhook"}, known_types=known
    )
    assert webhook.source_id == "partner_push"
    assert webhook.api_endpoint == ""


def test_create_and_toggle_sources(db) -> None:
    config = {
        "name": "Alert Ready",
        "source_type": "emergency",
        "api_endpoint": "https://example.test/naad",
        "configuration": {"province_code": "ON"},
    }
    source = create_source(db, config)
    assert source.source_id == "alert_ready"
    assert get_source(db, "alert_ready").configuration == {"province_code": "ON"}
    with pytest.raises(ValueError, match="already exists"):
        create_source(db, config)

    assert set_active(db, "alert_ready", False)
    assert list_active_sources(db) == []
    assert not set_active(db, "missing", True)


def test_ensure_sources_keeps_operational_state(db) -> None:
    config = {
        "source_id": "eccc",
        "name": "ECCC",
        "source_type": "weather",
        "api_endpoint": "https://example.test/v1",
    }
    ensure_sources(db, [source_from_config(config)])
    set_active(db, "eccc", False)
    record_poll_outcome(db, "eccc", success=True, latency_ms=1)

    moved = {**config, "api_endpoint": "https://example.test/v2"}
    ensure_sources(db, [source_from_config(moved)])
    stored = get_source(db, "eccc")
    assert stored.api_endpoint == "https://example.test/v2"
    assert stored.is_active is False
    assert stored.health_status == "healthy"
    assert parse_iso(stored.last_poll_at) <= utc_now()


def test_bundled_source_pack_loads() -> None:
    sources = pack_sources(SOURCES_DIR, known_types=default_registry().tags())
    by_id = {s.source_id: s for s in sources}
    assert "cccs_alerts" in by_id
    assert by_id["eccc_ontario_warnings"].configuration["province_code"] == "ON"
    assert by_id["operator_webhook"].source_type == "webhook"
    assert by_id["operator_webhook"].configuration["field_map"]["title"] == (
        "alert.headline"
    )


def test_source_pack_rejects_unknown_types(tmp_path) -> None:
    (tmp_path / "bad.yaml").write_text(
        "- id: x\n  name: X\n  type: carrier-pigeon\n  url: https://example.test\n",
        encoding="utf-8",
    )
    with pytest.raises(ValueError, match="bad.yaml"):
        load_source_packs(tmp_path, known_types=default_registry().tags())
    assert load_source_packs(tmp_path / "missing") == {}
