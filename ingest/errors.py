from __future__ import annotations


class IngestError(Exception):
    """Base class for failures inside the ingestion pipeline."""


class FetchError(IngestError):
    """Network failure, timeout or non-2xx response while polling a source."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ParseError(IngestError):
    """A fetched document did not have the shape its source type expects."""


class ProcessingError(IngestError):
    """A queued payload could not be materialized into an incident."""
