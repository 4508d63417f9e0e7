import pytest

from app.settings import Settings
from ingest.sources import AlertSource, create_source
from store.db import close_database, open_database


@pytest.fixture
def db(tmp_path):
    database = open_database(tmp_path / "test.db")
    try:
        yield database
    finally:
        close_database(database)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(db_path=tmp_path / "test.db", sources_dir=tmp_path / "sources")


@pytest.fixture
def add_source(db):
    def _add(
        source_id: str,
        source_type: str = "weather",
        api_endpoint: str = "https://example.test/alerts.json",
        **extra,
    ) -> AlertSource:
        config = {
            "source_id": source_id,
            "name": extra.pop("name", source_id.replace("_", " ").title()),
            "source_type": source_type,
            "api_endpoint": api_endpoint,
            **extra,
        }
        return create_source(db, config)

    return _add
