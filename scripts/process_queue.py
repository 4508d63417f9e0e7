from __future__ import annotations

import argparse
import json
from pathlib import Path

from app.logging_config import configure_logging
from app.settings import Settings
from processing.processor import process_queue
from store.db import close_database, open_database


def main() -> None:
    parser = argparse.ArgumentParser(description="Process one batch of queued alerts.")
    parser.add_argument("--db", type=Path, default=None)
    parser.add_argument("--batch-size", type=int, default=None)
    args = parser.parse_args()

    settings = Settings()
    if args.batch_size is not None:
        settings = settings.model_copy(update={"queue_batch_size": args.batch_size})
    configure_logging(settings.log_level)
    db = open_database(args.db or settings.db_path)
    try:
        batch = process_queue(db, settings)
    finally:
        close_database(db)

    print(json.dumps(batch.to_dict(), indent=2))


if __name__ == "__main__":
    main()
