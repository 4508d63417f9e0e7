import json
from pathlib import Path

import httpx
import pytest

from ingest.errors import FetchError
from ingest.fetch import fetch, request_headers
from ingest.parsers.cap import is_cap_document, parse_cap_alerts
from ingest.parsers.json import parse_json_records
from ingest.parsers.rss import parse_rss


FIXTURES = Path(__file__).resolve().parent / "fixtures"

BILINGUAL_CAP = b"""<?xml version="1.0" encoding="UTF-8"?>
<alert xmlns="urn:oasis:names:tc:emergency:cap:1.2">
  <identifier>multi-1</identifier>
  <sent>2024-05-01T12:00:00Z</sent>
  <status>Actual</status>
  <info>
    <language>fr-CA</language>
    <event>orage</event>
    <headline>avertissement d'orages violents</headline>
  </info>
  <info>
    <language>en-CA</language>
    <event>thunderstorm</event>
    <headline>severe thunderstorm warning</headline>
    <area>
      <areaDesc>Kingston</areaDesc>
      <polygon>44.1,-76.6 44.3,-76.6 44.3,-76.4 44.1,-76.4</polygon>
    </area>
    <area>
      <areaDesc>Belleville</areaDesc>
      <polygon>44.1,-77.5 44.2,-77.5 44.2,-77.3 44.1,-77.5</polygon>
    </area>
    <area>
      <areaDesc>Kingston</areaDesc>
      <polygon>not,a polygon</polygon>
    </area>
  </info>
</alert>
"""


def test_parse_cap_fixture() -> None:
    data = (FIXTURES / "naad_tornado.cap.xml").read_bytes()
    assert is_cap_document(data)
    [record] = parse_cap_alerts(data)
    assert record["severity"] == "Extreme"
    assert record["sent"] == "2024-05-01T18:00:00.000000Z"
    assert record["area_desc"] == "Ottawa North - Kanata - Orléans"
    assert record["geom"] == {"type": "Point", "coordinates": [-75.69, 45.42]}


def test_parse_cap_prefers_english_and_merges_areas() -> None:
    [record] = parse_cap_alerts(BILINGUAL_CAP)
    assert record["headline"] == "severe thunderstorm warning"
    assert record["area_desc"] == "Kingston; Belleville"
    assert record["geom"]["type"] == "MultiPolygon"
    assert len(record["geom"]["coordinates"]) == 2
    ring = record["geom"]["coordinates"][0][0]
    assert ring[0] == ring[-1] == [-76.6, 44.1]


def test_parse_rss_fixture() -> None:
    [entry] = parse_rss((FIXTURES / "cccs_alerts.rss.xml").read_bytes())
    assert entry["id"] == "AL24-001"
    assert entry["published"] == "2024-05-01T10:00:00Z"
    assert "Severity: Severe" in entry["summary"]


def test_parse_json_records_shapes() -> None:
    assert parse_json_records(b'[{"a": 1}, 2]') == [{"a": 1}]
    assert parse_json_records(b'{"features": [{"type": "Feature"}]}') == [
        {"type": "Feature"}
    ]
    assert parse_json_records(b'{"a": 1}', single_object_ok=True) == [{"a": 1}]
    with pytest.raises(ValueError):
        parse_json_records(b'{"a": 1}')
    with pytest.raises(ValueError):
        parse_json_records(b'"text"')


def test_request_headers() -> None:
    headers = request_headers(
        user_agent="alert-intake/test",
        source_type="security",
        configuration={"api_key": "secret", "headers": {"X-Region": "ON"}},
    )
    assert headers["User-Agent"] == "alert-intake/test"
    assert "application/rss+xml" in headers["Accept"]
    assert headers["Authorization"] == "Bearer secret"
    assert headers["X-Region"] == "ON"


@pytest.mark.asyncio
async def test_fetch_raises_on_non_2xx_and_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/down":
            return httpx.Response(404)
        if request.url.path == "/boom":
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"alerts": []})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        status, body, content_type, _ = await fetch(
            client, url="https://example.test/ok", headers={}, timeout_seconds=5
        )
        assert status == 200
        assert json.loads(body) == {"alerts": []}
        assert content_type == "application/json"

        with pytest.raises(FetchError) as excinfo:
            await fetch(
                client, url="https://example.test/down", headers={}, timeout_seconds=5
            )
        assert excinfo.value.status_code == 404

        with pytest.raises(FetchError, match="ConnectError"):
            await fetch(
                client, url="https://example.test/boom", headers={}, timeout_seconds=5
            )
