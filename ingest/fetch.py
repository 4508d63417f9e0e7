from __future__ import annotations

import time

import httpx

from ingest.errors import FetchError


_ACCEPT_BY_TYPE = {
    "weather": "application/json, application/geo+json, application/xml, text/xml",
    "security": "application/rss+xml, application/atom+xml, application/xml, text/xml",
    "travel": (
        "application/json, application/atom+xml, application/rss+xml, "
        "application/xml, text/xml"
    ),
}
_DEFAULT_ACCEPT = "application/json, application/xml, */*"


def accept_header_for(source_type: str) -> str:
    return _ACCEPT_BY_TYPE.get(source_type, _DEFAULT_ACCEPT)


def request_headers(
    *, user_agent: str, source_type: str, configuration: dict
) -> dict[str, str]:
    headers = {
        "User-Agent": user_agent,
        "Accept": accept_header_for(source_type),
    }
    extra = configuration.get("headers")
    if isinstance(extra, dict):
        headers.update({str(k): str(v) for k, v in extra.items()})
    api_key = configuration.get("api_key")
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


async def fetch(
    client: httpx.AsyncClient,
    *,
    url: str,
    headers: dict[str, str],
    timeout_seconds: float,
) -> tuple[int, bytes, str, int]:
    """GET a source document.

    Returns (status_code, body, content_type, elapsed_ms). Raises FetchError
    on timeouts, transport errors and any non-2xx status.
    """
    timeout = httpx.Timeout(timeout_seconds, connect=min(5.0, timeout_seconds))
    started = time.monotonic()
    try:
        response = await client.get(url, headers=headers, timeout=timeout)
    except httpx.TimeoutException as e:
        raise FetchError(f"timeout after {timeout_seconds:.0f}s") from e
    except httpx.RequestError as e:
        raise FetchError(f"request_error:{e.__class__.__name__}") from e
    elapsed_ms = int((time.monotonic() - started) * 1000)

    if not 200 <= response.status_code < 300:
        raise FetchError(
            f"http_{response.status_code}", status_code=response.status_code
        )
    return (
        response.status_code,
        response.content,
        response.headers.get("Content-Type", ""),
        elapsed_ms,
    )
