from __future__ import annotations

import dataclasses
import hashlib
import json
import logging
import xml.etree.ElementTree as ET
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime

from ingest.errors import ParseError
from ingest.parsers.cap import is_cap_document, parse_cap_alerts
from ingest.parsers.json import parse_json_records
from ingest.parsers.rss import parse_rss
from ingest.sources import AlertSource
from normalize.rules import (
    AREA_NOT_SPECIFIED,
    CAP_DEFAULTS,
    classify_announcement,
    clean_summary,
    clean_title,
    compute_confidence,
    extract_area,
    extract_instructions,
    extract_times,
    parse_timestamp,
    scan_cap_fields,
    strip_markup,
)


logger = logging.getLogger(__name__)


@dataclass
class NormalizedAlert:
    id: str
    title: str
    description: str
    severity: str
    urgency: str
    category: str
    status: str
    area: str
    published: str
    source: str
    source_type: str
    effective: str | None = None
    expires: str | None = None
    link: str | None = None
    instructions: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    province_code: str | None = None
    confidence_score: float = 0.5
    raw_data: dict = field(default_factory=dict)

    def to_payload(self) -> dict:
        return dataclasses.asdict(self)

    @classmethod
    def from_payload(cls, payload: dict) -> NormalizedAlert:
        names = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in payload.items() if k in names})


def _sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _alert_id(source_id: str, external_id: object, title: str, published: str) -> str:
    key = str(external_id) if external_id else f"{title}\n{published}"
    return _sha256_hex(f"{source_id}\n{key}")[:32]


def _first(record: dict, *keys: str) -> object | None:
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return value
    return None


def _float_or_none(value: object) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _iter_positions(coords: object) -> Iterator[tuple[float, float]]:
    if not isinstance(coords, (list, tuple)):
        return
    if (
        len(coords) >= 2
        and all(isinstance(c, (int, float)) for c in coords[:2])
        and not any(isinstance(c, bool) for c in coords[:2])
    ):
        yield (float(coords[0]), float(coords[1]))
        return
    for part in coords:
        yield from _iter_positions(part)


def _centroid(coords: object) -> tuple[float, float] | None:
    """Bounding-box centre of GeoJSON-ordered ([lon, lat]) coordinates."""
    if isinstance(coords, str):
        try:
            coords = json.loads(coords)
        except ValueError:
            return None
    points = list(_iter_positions(coords))
    if not points:
        return None
    min_lon = min(p[0] for p in points)
    min_lat = min(p[1] for p in points)
    max_lon = max(p[0] for p in points)
    max_lat = max(p[1] for p in points)
    return ((min_lat + max_lat) / 2.0, (min_lon + max_lon) / 2.0)


def _valid_coords(
    lat: float | None, lon: float | None
) -> tuple[float | None, float | None]:
    if lat is None or lon is None:
        return (None, None)
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return (None, None)
    return (lat, lon)


def _record_coords(record: dict) -> tuple[float | None, float | None]:
    lat = _float_or_none(_first(record, "latitude", "lat"))
    lon = _float_or_none(_first(record, "longitude", "lon", "lng"))
    if lat is not None and lon is not None:
        return _valid_coords(lat, lon)

    geometry = record.get("geometry") or record.get("geom") or record.get("georss")
    if isinstance(geometry, dict):
        centre = _centroid(geometry.get("coordinates"))
    else:
        centre = _centroid(_first(record, "geometry_coordinates", "coordinates"))
    if centre is None:
        return (None, None)
    return _valid_coords(*centre)


def _looks_like_xml(data: bytes, content_type: str) -> bool:
    if "xml" in content_type.casefold():
        return True
    return data.lstrip()[:1] == b"<"


def _timestamp_or_none(value: object) -> str | None:
    return parse_timestamp(value) if value is not None else None


def _province_code(record: dict, source: AlertSource) -> str | None:
    value = _first(record, "province_code", "province", "region_code")
    if value is None:
        value = source.configuration.get("province_code")
    if value is None:
        return None
    return str(value).strip() or None


def build_alert(
    *,
    source: AlertSource,
    fetched_at: str,
    external_id: object,
    title: object,
    body: object,
    link: object = None,
    published: object = None,
    effective: object = None,
    expires: object = None,
    area_desc: object = None,
    cap: dict | None = None,
    category: object = None,
    instructions: object = None,
    latitude: float | None = None,
    longitude: float | None = None,
    province_code: str | None = None,
    raw: dict | None = None,
    now: datetime | None = None,
) -> NormalizedAlert | None:
    """Assemble a NormalizedAlert from loosely-typed source fields.

    Structured values win; anything missing is recovered from the free text
    through the extraction rules. Returns None when the record carries neither
    a title nor a body.
    """
    raw_title = str(title or "").strip()
    raw_body = str(body or "").strip()
    if not raw_title and not raw_body:
        return None

    plain_body = strip_markup(raw_body)
    text = f"{strip_markup(raw_title)}\n{plain_body}"

    fields = scan_cap_fields(plain_body)
    for key, value in (cap or {}).items():
        if key in CAP_DEFAULTS and value:
            fields[key] = str(value)
    if category and fields["category"] == CAP_DEFAULTS["category"]:
        fields["category"] = str(category)

    times = extract_times(plain_body)
    published_iso = _timestamp_or_none(published) or fetched_at
    effective_iso = _timestamp_or_none(effective) or _timestamp_or_none(
        times["effective"]
    )
    expires_iso = _timestamp_or_none(expires) or _timestamp_or_none(times["expires"])

    lat, lon = _valid_coords(latitude, longitude)
    area = extract_area(text, str(area_desc) if area_desc else None)
    has_location = (
        lat is not None or province_code is not None or area != AREA_NOT_SPECIFIED
    )

    clean = clean_title(raw_title)
    return NormalizedAlert(
        id=_alert_id(source.source_id, external_id, clean, published_iso),
        title=clean,
        description=clean_summary(raw_body),
        severity=fields["severity"],
        urgency=fields["urgency"],
        category=fields["category"],
        status=fields["status"],
        area=area,
        published=published_iso,
        effective=effective_iso,
        expires=expires_iso,
        source=source.name,
        source_type=source.source_type,
        link=str(link) if link else None,
        instructions=(
            strip_markup(str(instructions))
            if instructions
            else extract_instructions(plain_body)
        ),
        latitude=lat,
        longitude=lon,
        province_code=province_code,
        confidence_score=compute_confidence(
            source_type=source.source_type,
            has_location=has_location,
            published=published_iso,
            now=now,
        ),
        raw_data=raw or {},
    )


class Normalizer:
    """Converts one source type's raw documents into NormalizedAlert values."""

    source_type: str = ""

    def parse(self, data: bytes, content_type: str) -> list[dict]:
        raise NotImplementedError

    def normalize_record(
        self, record: dict, source: AlertSource, fetched_at: str
    ) -> NormalizedAlert | None:
        raise NotImplementedError

    def parse_document(self, data: bytes, content_type: str) -> list[dict]:
        try:
            return self.parse(data, content_type)
        except (ValueError, ET.ParseError) as e:
            raise ParseError(f"{self.source_type}: {e}") from e

    def normalize_records(
        self, records: list[dict], source: AlertSource, fetched_at: str
    ) -> list[NormalizedAlert]:
        # A configured field_map replaces the type's own field lookups.
        field_map = _field_map(source)
        alerts: list[NormalizedAlert] = []
        for record in records:
            try:
                if field_map:
                    alert = mapped_alert(record, source, fetched_at, field_map)
                else:
                    alert = self.normalize_record(record, source, fetched_at)
            except (KeyError, TypeError, ValueError, OverflowError) as e:
                logger.warning(
                    "source %s: dropping unreadable record: %s", source.source_id, e
                )
                continue
            if alert is not None:
                alerts.append(apply_severity_map(alert, source))
        return alerts

    def normalize(
        self, data: bytes, content_type: str, source: AlertSource, fetched_at: str
    ) -> list[NormalizedAlert]:
        """Raises ParseError when the document itself cannot be read."""
        records = self.parse_document(data, content_type)
        return self.normalize_records(records, source, fetched_at)


def _from_feed_entry(
    record: dict, source: AlertSource, fetched_at: str
) -> NormalizedAlert | None:
    cap = record.get("cap") or {}
    lat, lon = _record_coords(record)
    return build_alert(
        source=source,
        fetched_at=fetched_at,
        external_id=record.get("id"),
        title=record.get("title"),
        body=record.get("content") or record.get("summary"),
        link=record.get("link"),
        published=record.get("published") or record.get("updated"),
        effective=cap.get("effective"),
        expires=cap.get("expires"),
        area_desc=cap.get("areadesc"),
        cap=cap,
        category=record.get("category"),
        latitude=lat,
        longitude=lon,
        province_code=_province_code(record, source),
        raw=record,
    )


class SecurityFeedNormalizer(Normalizer):
    """RSS/Atom bulletins whose bodies carry CAP-style key:value lines."""

    source_type = "security"

    def parse(self, data: bytes, content_type: str) -> list[dict]:
        return parse_rss(data)

    def normalize_record(
        self, record: dict, source: AlertSource, fetched_at: str
    ) -> NormalizedAlert | None:
        return _from_feed_entry(record, source, fetched_at)


class WeatherFeedNormalizer(Normalizer):
    """Weather warnings as JSON records, GeoJSON features or CAP XML."""

    source_type = "weather"

    def parse(self, data: bytes, content_type: str) -> list[dict]:
        if is_cap_document(data):
            return [{"format": "cap", **r} for r in parse_cap_alerts(data)]
        if _looks_like_xml(data, content_type):
            return [{"format": "rss", **r} for r in parse_rss(data)]
        return parse_json_records(data)

    def normalize_record(
        self, record: dict, source: AlertSource, fetched_at: str
    ) -> NormalizedAlert | None:
        kind = record.get("format")
        if kind == "cap":
            return self._from_cap(record, source, fetched_at)
        if kind == "rss":
            return _from_feed_entry(record, source, fetched_at)

        props = record.get("properties") if record.get("type") == "Feature" else None
        fields = props if isinstance(props, dict) else record
        lat, lon = _record_coords(record)
        if lat is None:
            lat, lon = _record_coords(fields)

        event = _first(fields, "event_type", "event", "type")
        return build_alert(
            source=source,
            fetched_at=fetched_at,
            external_id=_first(fields, "id", "identifier") or record.get("id"),
            title=_first(fields, "title", "headline") or event,
            body=_first(fields, "description", "summary", "content"),
            link=_first(fields, "link", "url", "web"),
            published=_first(fields, "published", "sent", "updated", "onset"),
            effective=_first(fields, "effective", "onset"),
            expires=_first(fields, "expires", "ends"),
            area_desc=_first(fields, "areaDesc", "area_desc", "area", "location"),
            cap={
                "severity": fields.get("severity"),
                "urgency": fields.get("urgency"),
                "status": fields.get("status"),
            },
            category=_first(fields, "category", "event_type", "event"),
            instructions=_first(fields, "instruction", "instructions"),
            latitude=lat,
            longitude=lon,
            province_code=_province_code(fields, source),
            raw=record,
        )

    def _from_cap(
        self, record: dict, source: AlertSource, fetched_at: str
    ) -> NormalizedAlert | None:
        lat, lon = _record_coords(record)
        return build_alert(
            source=source,
            fetched_at=fetched_at,
            external_id=record.get("identifier"),
            title=record.get("headline") or record.get("event"),
            body=record.get("description"),
            link=record.get("web"),
            published=record.get("sent"),
            effective=record.get("effective") or record.get("onset"),
            expires=record.get("expires"),
            area_desc=record.get("area_desc"),
            cap={
                "severity": record.get("severity"),
                "urgency": record.get("urgency"),
                "category": record.get("category"),
                "status": record.get("status"),
            },
            instructions=record.get("instruction"),
            latitude=lat,
            longitude=lon,
            province_code=_province_code(record, source),
            raw=record,
        )


class TravelFeedNormalizer(Normalizer):
    """Government immigration and travel announcements (JSON or RSS/Atom)."""

    source_type = "travel"

    def parse(self, data: bytes, content_type: str) -> list[dict]:
        if _looks_like_xml(data, content_type):
            return parse_rss(data)
        return parse_json_records(data)

    def normalize_record(
        self, record: dict, source: AlertSource, fetched_at: str
    ) -> NormalizedAlert | None:
        title = record.get("title")
        body = _first(record, "content", "summary", "description")
        category = record.get("category") or classify_announcement(
            str(title or ""), strip_markup(str(body or ""))
        )
        lat, lon = _record_coords(record)
        return build_alert(
            source=source,
            fetched_at=fetched_at,
            external_id=record.get("id"),
            title=title,
            body=body,
            link=_first(record, "link", "url"),
            published=_first(record, "pub_date", "published", "date", "updated"),
            effective=record.get("effective"),
            expires=record.get("expires"),
            area_desc=_first(record, "area", "country", "location"),
            cap={"severity": record.get("severity")},
            category=category,
            latitude=lat,
            longitude=lon,
            province_code=_province_code(record, source),
            raw=record,
        )


def resolve_path(doc: object, path: str) -> object | None:
    """Follow a dotted path ("data.alerts.0.title") through dicts and lists."""
    current = doc
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


_MAPPED_DEFAULT_KEYS: dict[str, tuple[str, ...]] = {
    "id": ("id", "alert_id", "identifier"),
    "title": ("title", "headline", "name", "subject"),
    "description": ("description", "message", "body", "content", "summary"),
    "severity": ("severity", "level", "priority"),
    "urgency": ("urgency",),
    "category": ("category", "type"),
    "status": ("status",),
    "area": ("area", "areaDesc", "location"),
    "published": ("published", "timestamp", "created_at", "sent"),
    "effective": ("effective", "onset"),
    "expires": ("expires",),
    "link": ("link", "url"),
    "instructions": ("instructions", "instruction"),
    "latitude": ("latitude", "lat"),
    "longitude": ("longitude", "lon", "lng"),
    "province_code": ("province_code", "province", "region_code"),
}


def _field_map(source: AlertSource) -> dict:
    field_map = source.configuration.get("field_map") or {}
    return field_map if isinstance(field_map, dict) else {}


def _mapped_field(record: dict, field_map: dict, name: str) -> object | None:
    path = field_map.get(name)
    if path:
        return resolve_path(record, str(path))
    return _first(record, *_MAPPED_DEFAULT_KEYS[name])


def mapped_alert(
    record: dict, source: AlertSource, fetched_at: str, field_map: dict
) -> NormalizedAlert | None:
    """Build an alert by reading each field from its configured dotted path.

    Fields without a path fall back to the usual key names.
    """
    values = {
        name: _mapped_field(record, field_map, name) for name in _MAPPED_DEFAULT_KEYS
    }

    lat = _float_or_none(values["latitude"])
    lon = _float_or_none(values["longitude"])
    if lat is None or lon is None:
        lat, lon = _record_coords(record)

    province = values["province_code"] or source.configuration.get("province_code")
    return build_alert(
        source=source,
        fetched_at=fetched_at,
        external_id=values["id"],
        title=values["title"],
        body=values["description"],
        link=values["link"],
        published=values["published"],
        effective=values["effective"],
        expires=values["expires"],
        area_desc=values["area"],
        cap={
            "severity": values["severity"],
            "urgency": values["urgency"],
            "category": values["category"],
            "status": values["status"],
        },
        instructions=values["instructions"],
        latitude=lat,
        longitude=lon,
        province_code=str(province).strip() if province else None,
        raw=record,
    )


def apply_severity_map(alert: NormalizedAlert, source: AlertSource) -> NormalizedAlert:
    """Rewrite a source's own severity vocabulary ("red", "P1") to CAP terms."""
    severity_map = source.configuration.get("severity_map")
    if not isinstance(severity_map, dict) or not severity_map:
        return alert
    lookup = {str(k).strip().casefold(): str(v) for k, v in severity_map.items()}
    mapped = lookup.get(alert.severity.strip().casefold())
    if mapped is None:
        return alert
    return dataclasses.replace(alert, severity=mapped)


class WebhookNormalizer(Normalizer):
    """Generic JSON pushed by third parties."""

    source_type = "webhook"

    def parse(self, data: bytes, content_type: str) -> list[dict]:
        return parse_json_records(data, single_object_ok=True)

    def normalize_record(
        self, record: dict, source: AlertSource, fetched_at: str
    ) -> NormalizedAlert | None:
        return mapped_alert(record, source, fetched_at, _field_map(source))


class NormalizerRegistry:
    def __init__(self) -> None:
        self._by_tag: dict[str, Normalizer] = {}

    def register(self, normalizer: Normalizer, aliases: Iterable[str] = ()) -> None:
        for tag in (normalizer.source_type, *aliases):
            if tag in self._by_tag:
                raise ValueError(f"source type already registered: {tag}")
            self._by_tag[tag] = normalizer

    def get(self, tag: str) -> Normalizer:
        try:
            return self._by_tag[tag]
        except KeyError:
            raise KeyError(f"no normalizer for source type: {tag}") from None

    def tags(self) -> list[str]:
        return sorted(self._by_tag)

    def __contains__(self, tag: object) -> bool:
        return tag in self._by_tag


def default_registry() -> NormalizerRegistry:
    registry = NormalizerRegistry()
    registry.register(SecurityFeedNormalizer(), aliases=("security-rss", "rss"))
    registry.register(WeatherFeedNormalizer(), aliases=("weather-geocmet", "emergency"))
    registry.register(TravelFeedNormalizer(), aliases=("immigration-travel", "policy"))
    registry.register(WebhookNormalizer())
    return registry
