from __future__ import annotations

import json


_RECORD_KEYS = (
    "alerts",
    "features",
    "items",
    "announcements",
    "events",
    "results",
    "data",
)


def parse_json_records(data: bytes, *, single_object_ok: bool = False) -> list[dict]:
    """Pull the list of alert records out of a JSON document.

    Accepts a bare list, a GeoJSON FeatureCollection or an object holding the
    records under one of the usual keys. A lone object counts as one record
    only when ``single_object_ok`` is set (webhook bodies).
    """
    doc = json.loads(data)
    if isinstance(doc, list):
        return [r for r in doc if isinstance(r, dict)]
    if isinstance(doc, dict):
        for key in _RECORD_KEYS:
            value = doc.get(key)
            if isinstance(value, list):
                return [r for r in value if isinstance(r, dict)]
        if single_object_ok:
            return [doc]
        raise ValueError("no alert records found in JSON document")
    raise ValueError(f"unexpected JSON document type: {type(doc).__name__}")
