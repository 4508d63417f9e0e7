from __future__ import annotations

import argparse
from pathlib import Path

from app.logging_config import configure_logging
from app.settings import Settings
from ingest.feed_packs import load_source_packs
from ingest.sources import ensure_sources
from normalize.normalize import default_registry
from store.db import close_database, open_database


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Register the sources declared in YAML packs."
    )
    parser.add_argument("--db", type=Path, default=None)
    parser.add_argument("--sources-dir", type=Path, default=None)
    args = parser.parse_args()

    settings = Settings()
    configure_logging(settings.log_level)
    packs = load_source_packs(
        args.sources_dir or settings.sources_dir,
        known_types=default_registry().tags(),
    )

    db = open_database(args.db or settings.db_path)
    try:
        for pack_id, entries in packs.items():
            ensure_sources(db, entries)
            print(f"{pack_id}: {len(entries)} sources")
    finally:
        close_database(db)


if __name__ == "__main__":
    main()
