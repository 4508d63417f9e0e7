from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path


@dataclass(frozen=True)
class Database:
    conn: sqlite3.Connection
    lock: threading.Lock


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def to_iso(dt: datetime) -> str:
    # Fixed width so stored timestamps compare correctly as text.
    return (
        dt.astimezone(tz=UTC)
        .isoformat(timespec="microseconds")
        .replace("+00:00", "Z")
    )


def utc_now_iso() -> str:
    return to_iso(utc_now())


def parse_iso(ts: str) -> datetime:
    if ts.endswith("Z"):
        ts = ts.removesuffix("Z") + "+00:00"
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


_MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
          version INTEGER NOT NULL PRIMARY KEY
        );

        CREATE TABLE IF NOT EXISTS alert_sources (
          source_id TEXT NOT NULL PRIMARY KEY,
          name TEXT NOT NULL,
          source_type TEXT NOT NULL,
          api_endpoint TEXT NOT NULL,
          description TEXT NULL,
          is_active INTEGER NOT NULL DEFAULT 1,
          polling_interval INTEGER NOT NULL DEFAULT 300,
          health_status TEXT NOT NULL DEFAULT 'unknown',
          last_poll_at TEXT NULL,
          configuration TEXT NOT NULL DEFAULT '{}',
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS alert_sources_active_idx ON alert_sources(is_active);

        CREATE TABLE IF NOT EXISTS alert_ingestion_queue (
          queue_item_id TEXT NOT NULL PRIMARY KEY,
          source_id TEXT NOT NULL,
          raw_payload TEXT NOT NULL,
          processing_status TEXT NOT NULL DEFAULT 'pending',
          processing_attempts INTEGER NOT NULL DEFAULT 0,
          error_message TEXT NULL,
          result_action TEXT NULL,
          incident_id TEXT NULL,
          created_at TEXT NOT NULL,
          claimed_at TEXT NULL,
          processed_at TEXT NULL,

          FOREIGN KEY (source_id) REFERENCES alert_sources(source_id) ON DELETE RESTRICT
        );

        CREATE INDEX IF NOT EXISTS queue_status_created_idx
          ON alert_ingestion_queue(processing_status, created_at);
        CREATE INDEX IF NOT EXISTS queue_source_idx ON alert_ingestion_queue(source_id);

        CREATE TABLE IF NOT EXISTS provinces (
          province_id INTEGER NOT NULL PRIMARY KEY,
          code TEXT NOT NULL,
          name TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS provinces_code_uq ON provinces(code);

        INSERT OR IGNORE INTO provinces(code, name) VALUES
          ('AB', 'Alberta'),
          ('BC', 'British Columbia'),
          ('MB', 'Manitoba'),
          ('NB', 'New Brunswick'),
          ('NL', 'Newfoundland and Labrador'),
          ('NS', 'Nova Scotia'),
          ('ON', 'Ontario'),
          ('PE', 'Prince Edward Island'),
          ('QC', 'Quebec'),
          ('SK', 'Saskatchewan'),
          ('NT', 'Northwest Territories'),
          ('NU', 'Nunavut'),
          ('YT', 'Yukon');

        CREATE TABLE IF NOT EXISTS incidents (
          incident_id TEXT NOT NULL PRIMARY KEY,
          title TEXT NOT NULL,
          description TEXT NOT NULL DEFAULT '',
          alert_level TEXT NOT NULL,
          severity_numeric INTEGER NOT NULL,
          province_id INTEGER NULL,
          geographic_scope TEXT NULL,
          source TEXT NOT NULL,
          verification_status TEXT NOT NULL DEFAULT 'unverified',
          confidence_score REAL NOT NULL,
          recommended_action TEXT NULL,
          raw_payload TEXT NULL,
          data_source_id TEXT NULL,
          queue_item_id TEXT NULL,
          event_timestamp TEXT NOT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,

          FOREIGN KEY (province_id) REFERENCES provinces(province_id),
          FOREIGN KEY (data_source_id) REFERENCES alert_sources(source_id) ON DELETE RESTRICT
        );

        CREATE INDEX IF NOT EXISTS incidents_created_at_idx ON incidents(created_at);
        CREATE UNIQUE INDEX IF NOT EXISTS incidents_queue_item_uq ON incidents(queue_item_id);

        CREATE TABLE IF NOT EXISTS geospatial_data (
          incident_id TEXT NOT NULL PRIMARY KEY,
          latitude REAL NOT NULL,
          longitude REAL NOT NULL,
          administrative_area TEXT NULL,
          geohash TEXT NOT NULL,
          affected_radius_km INTEGER NOT NULL,
          population_impact INTEGER NOT NULL,
          created_at TEXT NOT NULL,

          FOREIGN KEY (incident_id) REFERENCES incidents(incident_id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS geospatial_geohash_idx ON geospatial_data(geohash);

        CREATE TABLE IF NOT EXISTS source_health_metrics (
          metric_id INTEGER NOT NULL PRIMARY KEY,
          source_id TEXT NOT NULL,
          timestamp TEXT NOT NULL,
          stage TEXT NOT NULL DEFAULT 'poll',
          success INTEGER NOT NULL,
          response_time_ms INTEGER NOT NULL DEFAULT 0,
          http_status_code INTEGER NULL,
          error_message TEXT NULL,
          records_processed INTEGER NOT NULL DEFAULT 0,

          FOREIGN KEY (source_id) REFERENCES alert_sources(source_id) ON DELETE RESTRICT
        );

        CREATE INDEX IF NOT EXISTS health_source_ts_idx
          ON source_health_metrics(source_id, timestamp);
        """,
    ),
    (
        2,
        """
        CREATE TABLE IF NOT EXISTS incident_correlations (
          primary_incident_id TEXT NOT NULL,
          related_incident_id TEXT NOT NULL,
          correlation_type TEXT NOT NULL,
          confidence_score REAL NOT NULL,
          created_at TEXT NOT NULL,
          PRIMARY KEY (primary_incident_id, related_incident_id),
          FOREIGN KEY (primary_incident_id) REFERENCES incidents(incident_id) ON DELETE CASCADE,
          FOREIGN KEY (related_incident_id) REFERENCES incidents(incident_id) ON DELETE CASCADE
        );
        """,
    ),
    (
        3,
        """
        CREATE TABLE IF NOT EXISTS feed_quality_metrics (
          metric_id INTEGER NOT NULL PRIMARY KEY,
          source_id TEXT NOT NULL,
          evaluated_at TEXT NOT NULL,
          normalization_success_rate REAL NOT NULL,
          avg_title_length REAL NOT NULL,
          avg_description_length REAL NOT NULL,
          severity_distribution TEXT NOT NULL,
          category_distribution TEXT NOT NULL,
          data_quality_score REAL NOT NULL,
          issues TEXT NOT NULL DEFAULT '[]',
          recommendations TEXT NOT NULL DEFAULT '[]',

          FOREIGN KEY (source_id) REFERENCES alert_sources(source_id) ON DELETE RESTRICT
        );
        """,
    ),
]


def open_database(path: Path) -> Database:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA busy_timeout=5000;")
    _apply_migrations(conn)
    return Database(conn=conn, lock=threading.Lock())


def close_database(db: Database) -> None:
    with db.lock:
        db.conn.close()


def _apply_migrations(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER NOT NULL PRIMARY KEY);"
    )
    row = conn.execute(
        "SELECT COALESCE(MAX(version), 0) AS v FROM schema_migrations;"
    ).fetchone()
    current_version = int(row["v"])

    for version, sql in _MIGRATIONS:
        if version <= current_version:
            continue
        conn.executescript(sql)
        conn.execute("INSERT INTO schema_migrations(version) VALUES (?);", (version,))
        conn.commit()
