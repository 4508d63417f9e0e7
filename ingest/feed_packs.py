from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

import yaml

from ingest.sources import AlertSource, source_from_config


def _entry_config(entry: dict) -> dict:
    configuration = dict(entry.get("configuration") or {})
    if entry.get("province"):
        configuration.setdefault("province_code", str(entry["province"]))
    if entry.get("tags"):
        configuration.setdefault("tags", [str(t) for t in entry["tags"]])
    return {
        "source_id": entry.get("id"),
        "name": entry.get("name"),
        "source_type": entry.get("type"),
        "api_endpoint": entry.get("url"),
        "description": entry.get("description"),
        "is_active": entry.get("enabled", True),
        "polling_interval": entry.get("poll_seconds") or 300,
        "configuration": configuration,
    }


def load_source_packs(
    sources_dir: Path, *, known_types: Iterable[str] | None = None
) -> dict[str, list[AlertSource]]:
    """Read every ``*.yaml`` pack in ``sources_dir``, keyed by file stem."""
    packs: dict[str, list[AlertSource]] = {}
    if not sources_dir.exists():
        return packs

    types = set(known_types) if known_types is not None else None
    for path in sorted(sources_dir.glob("*.yaml")):
        pack_id = path.stem
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        if raw is None:
            packs[pack_id] = []
            continue
        if not isinstance(raw, list):
            raise ValueError(f"invalid source pack: {path}")

        entries: list[AlertSource] = []
        for entry in raw:
            if not isinstance(entry, dict):
                raise ValueError(f"invalid source entry in: {path}")
            try:
                source = source_from_config(_entry_config(entry), known_types=types)
            except ValueError as e:
                raise ValueError(f"{path}: {e}") from e
            entries.append(source)

        packs[pack_id] = entries

    return packs


def pack_sources(
    sources_dir: Path, *, known_types: Iterable[str] | None = None
) -> list[AlertSource]:
    packs = load_source_packs(sources_dir, known_types=known_types)
    return [source for entries in packs.values() for source in entries]
