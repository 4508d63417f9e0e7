from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path

from app.logging_config import configure_logging
from app.settings import Settings
from ingest.feed_packs import pack_sources
from ingest.scheduler import run_ingestion_cycle
from ingest.sources import ensure_sources
from normalize.normalize import default_registry
from processing.correlation import run_correlation_analysis
from store.db import close_database, open_database


def main() -> None:
    parser = argparse.ArgumentParser(description="Poll every due alert source once.")
    parser.add_argument("--db", type=Path, default=None)
    parser.add_argument("--sources-dir", type=Path, default=None)
    parser.add_argument("--skip-correlation", action="store_true")
    args = parser.parse_args()

    settings = Settings()
    configure_logging(settings.log_level)
    db = open_database(args.db or settings.db_path)
    registry = default_registry()
    try:
        sources_dir = args.sources_dir or settings.sources_dir
        ensure_sources(db, pack_sources(sources_dir, known_types=registry.tags()))
        cycle = asyncio.run(run_ingestion_cycle(settings, db, registry))
        if not args.skip_correlation:
            run_correlation_analysis(db, threshold=settings.correlation_threshold)
    finally:
        close_database(db)

    print(json.dumps(cycle.to_dict(), indent=2))


if __name__ == "__main__":
    main()
