from __future__ import annotations

import re
import unicodedata

from store.db import Database


_NAME_CLEAN_RE = re.compile(r"[^\w\s]+", flags=re.UNICODE)
_WS_RE = re.compile(r"\s+")


def normalize_place_name(name: str) -> str:
    folded = unicodedata.normalize("NFKD", name.strip().casefold())
    folded = "".join(ch for ch in folded if not unicodedata.combining(ch))
    cleaned = _NAME_CLEAN_RE.sub(" ", folded)
    return _WS_RE.sub(" ", cleaned).strip()


def resolve_province_id(db: Database, value: str | None) -> int | None:
    """Match a two-letter code or a province name; None when nothing matches."""
    if not value:
        return None
    text = str(value).strip()
    if not text:
        return None

    with db.lock:
        row = db.conn.execute(
            "SELECT province_id FROM provinces WHERE code = ?;", (text.upper(),)
        ).fetchone()
        if row is not None:
            return int(row["province_id"])
        rows = db.conn.execute("SELECT province_id, name FROM provinces;").fetchall()

    wanted = normalize_place_name(text)
    for row in rows:
        if normalize_place_name(str(row["name"])) == wanted:
            return int(row["province_id"])
    return None
