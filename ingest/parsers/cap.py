from __future__ import annotations

import xml.etree.ElementTree as ET

from store.db import parse_iso, to_iso


CAP_NAMESPACE = b"urn:oasis:names:tc:emergency:cap"


def _cap_time(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return to_iso(parse_iso(value.strip()))
    except ValueError:
        return None


def _polygon_ring(text: str) -> list[list[float]]:
    # CAP polygons are whitespace-separated "lat,lon" pairs.
    ring: list[list[float]] = []
    for pair in text.split():
        lat_str, lon_str = pair.split(",", maxsplit=1)
        ring.append([float(lon_str), float(lat_str)])
    if ring and ring[0] != ring[-1]:
        ring.append(ring[0])
    return ring


def _circle_center(text: str) -> list[float]:
    # CAP circle: "lat,lon radius_km"
    lat_str, lon_str = text.split()[0].split(",", maxsplit=1)
    return [float(lon_str), float(lat_str)]


def _area_geometry(info: ET.Element) -> dict | None:
    rings: list[list[list[float]]] = []
    centers: list[list[float]] = []
    for area in info.findall("{*}area"):
        for polygon_el in area.findall("{*}polygon"):
            try:
                ring = _polygon_ring(polygon_el.text or "")
            except ValueError:
                continue
            if ring:
                rings.append(ring)
        for circle_el in area.findall("{*}circle"):
            if not (circle_el.text or "").strip():
                continue
            try:
                centers.append(_circle_center(circle_el.text))
            except ValueError:
                continue

    if len(rings) == 1:
        return {"type": "Polygon", "coordinates": [rings[0]]}
    if rings:
        return {"type": "MultiPolygon", "coordinates": [[r] for r in rings]}
    if len(centers) == 1:
        return {"type": "Point", "coordinates": centers[0]}
    if centers:
        return {"type": "MultiPoint", "coordinates": centers}
    return None


def _area_desc(info: ET.Element) -> str | None:
    names: list[str] = []
    for area in info.findall("{*}area"):
        name = (area.findtext("{*}areaDesc") or "").strip()
        if name and name not in names:
            names.append(name)
    return "; ".join(names) or None


def _english_info(alert: ET.Element) -> ET.Element | None:
    infos = alert.findall("{*}info")
    for info in infos:
        if (info.findtext("{*}language") or "").casefold().startswith("en"):
            return info
    return infos[0] if infos else None


def is_cap_document(data: bytes) -> bool:
    head = data[:2048].lstrip()
    return CAP_NAMESPACE in head or head.startswith(b"<alert")


def parse_cap_alerts(data: bytes) -> list[dict]:
    """Flatten a CAP alert (or a feed of them) into one record per alert.

    Bilingual alerts carry one <info> block per language; the English block
    is used when present.
    """
    root = ET.fromstring(data)
    if root.tag.endswith("alert"):
        alert_els = [root]
    else:
        alert_els = root.findall(".//{*}alert")

    records: list[dict] = []
    for alert in alert_els:
        info = _english_info(alert)
        if info is None:
            continue
        records.append(
            {
                "identifier": alert.findtext("{*}identifier") or "",
                "sender": alert.findtext("{*}sender"),
                "sent": _cap_time(alert.findtext("{*}sent")),
                "status": alert.findtext("{*}status"),
                "msg_type": alert.findtext("{*}msgType"),
                "event": info.findtext("{*}event"),
                "category": info.findtext("{*}category"),
                "severity": info.findtext("{*}severity"),
                "urgency": info.findtext("{*}urgency"),
                "certainty": info.findtext("{*}certainty"),
                "effective": _cap_time(info.findtext("{*}effective")),
                "onset": _cap_time(info.findtext("{*}onset")),
                "expires": _cap_time(info.findtext("{*}expires")),
                "headline": info.findtext("{*}headline"),
                "description": info.findtext("{*}description") or "",
                "instruction": info.findtext("{*}instruction"),
                "web": info.findtext("{*}web"),
                "area_desc": _area_desc(info),
                "geom": _area_geometry(info),
            }
        )
    return records
