from __future__ import annotations

import calendar
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

import feedparser


_CAP_KEYS = (
    "severity",
    "urgency",
    "category",
    "status",
    "areadesc",
    "event",
    "effective",
    "expires",
)


def _entry_time(entry: dict, key: str) -> str | None:
    parsed = entry.get(f"{key}_parsed")
    if parsed:
        return (
            datetime.fromtimestamp(calendar.timegm(parsed), tz=UTC)
            .isoformat()
            .replace("+00:00", "Z")
        )
    value = entry.get(key)
    if not value:
        return None
    try:
        return (
            parsedate_to_datetime(value)
            .astimezone(tz=UTC)
            .isoformat()
            .replace("+00:00", "Z")
        )
    except (TypeError, ValueError):
        return None


def _georss(entry: dict) -> dict | None:
    georss = None
    georss_point = entry.get("georss_point")
    if georss_point:
        lat_str, lon_str = str(georss_point).split()
        georss = {
            "type": "Point",
            "coordinates": [float(lon_str), float(lat_str)],
        }
    georss_polygon = entry.get("georss_polygon")
    if georss_polygon:
        nums = [float(x) for x in str(georss_polygon).split()]
        coords = [[nums[i + 1], nums[i]] for i in range(0, len(nums) - 1, 2)]
        if coords and coords[0] != coords[-1]:
            coords.append(coords[0])
        georss = {"type": "Polygon", "coordinates": [coords]}

    if georss is None and entry.get("geo_lat") and entry.get("geo_long"):
        georss = {
            "type": "Point",
            "coordinates": [float(entry["geo_long"]), float(entry["geo_lat"])],
        }
    return georss


def parse_rss(data: bytes) -> list[dict]:
    """Parse an RSS or Atom document into flat entry dicts.

    Raises ValueError when the payload is not a feed at all.
    """
    parsed = feedparser.parse(data)
    if not parsed.entries and not parsed.get("version"):
        if parsed.get("bozo"):
            raise ValueError(f"malformed feed: {parsed.get('bozo_exception')}")
        raise ValueError("document is not an RSS or Atom feed")

    records: list[dict] = []
    for entry in parsed.entries:
        content = None
        if "content" in entry and entry["content"]:
            content = entry["content"][0].get("value")

        category = None
        tags = entry.get("tags") or []
        if tags:
            category = tags[0].get("term")

        try:
            georss = _georss(entry)
        except ValueError:
            georss = None

        cap = {
            key: str(entry[f"cap_{key}"])
            for key in _CAP_KEYS
            if entry.get(f"cap_{key}")
        }

        records.append(
            {
                "id": entry.get("id") or entry.get("guid") or entry.get("link"),
                "link": entry.get("link"),
                "title": entry.get("title", ""),
                "summary": entry.get("summary", ""),
                "content": content,
                "published": _entry_time(entry, "published"),
                "updated": _entry_time(entry, "updated"),
                "author": entry.get("author"),
                "category": category,
                "georss": georss,
                "cap": cap,
            }
        )
    return records
