from __future__ import annotations

import math


AFFECTED_RADIUS_KM = {"severe": 50, "warning": 25, "normal": 10}

# Rough population figures keyed on the free-text area.
_NAMED_POPULATIONS = (("toronto", 100_000), ("ottawa", 50_000))
_CITY_POPULATION = 25_000
_UNSPECIFIED_POPULATION = 1_000
_DEFAULT_POPULATION = 5_000


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def geohash_bucket(lat: float, lon: float) -> str:
    """Coarse ~100 m grid key, not a base32 geohash."""
    return f"{_round_half_up(lat * 1000)}_{_round_half_up(lon * 1000)}"


def estimate_affected_radius_km(alert_level: str) -> int:
    return AFFECTED_RADIUS_KM.get(alert_level, AFFECTED_RADIUS_KM["normal"])


def estimate_population_impact(area: str | None) -> int:
    text = (area or "").strip().casefold()
    if not text:
        return _UNSPECIFIED_POPULATION
    for name, population in _NAMED_POPULATIONS:
        if name in text:
            return population
    if "city" in text:
        return _CITY_POPULATION
    return _DEFAULT_POPULATION
