"""Best-effort field extraction for alerts that embed structure in free text.

Every extractor here is total: it returns a value or a documented default and
never raises. Multi-pattern extractors are ordered rule lists evaluated
first-match-wins so each pattern can be tested on its own.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from email.utils import parsedate_to_datetime


AREA_NOT_SPECIFIED = "Area not specified"
UNTITLED = "Untitled Alert"
NO_SUMMARY = "No summary available"

CAP_DEFAULTS = {
    "severity": "Unknown",
    "urgency": "Unknown",
    "category": "Other",
    "status": "Actual",
}

OFFICIAL_SOURCE_TYPES = frozenset({"weather", "weather-geocmet", "emergency"})

_WS_RE = re.compile(r"\s+", flags=re.UNICODE)
_HTML_TAG_RE = re.compile(r"<[^>]+>", flags=re.UNICODE)
_CDATA_RE = re.compile(r"<!\[CDATA\[(.*?)\]\]>", flags=re.DOTALL)
_BREAK_TAG_RE = re.compile(r"<\s*(?:br|/p|/div|/li|/h\d)\s*/?>", flags=re.IGNORECASE)
_HSPACE_RE = re.compile(r"[^\S\n]+")
_LINE_BREAKS_RE = re.compile(r"\s*\n\s*")


@dataclass(frozen=True)
class ExtractionRule:
    name: str
    pattern: re.Pattern[str]

    def apply(self, text: str) -> str | None:
        match = self.pattern.search(text)
        if match is None:
            return None
        value = _WS_RE.sub(" ", match.group(1)).strip(" ,;:")
        return value or None


def first_match(rules: tuple[ExtractionRule, ...], text: str | None) -> str | None:
    if not text:
        return None
    for rule in rules:
        value = rule.apply(text)
        if value is not None:
            return value
    return None


# Clause ends at punctuation, a line break or a verb that starts the predicate.
_CLAUSE_END = r"(?=\s+(?:was|were|is|are|has|have|will|until|from)\b|[.;\n]|$)"
_PROPER_NOUNS = r"[A-Z][\w'\-]*(?:\s+[A-Z][\w'\-]*)*"

AREA_RULES: tuple[ExtractionRule, ...] = (
    ExtractionRule(
        "area_desc", re.compile(r"\bareaDesc\s*:\s*([^\n]+)", flags=re.IGNORECASE)
    ),
    ExtractionRule(
        "affecting",
        re.compile(r"\baffecting\s+([^.\n;]+?)" + _CLAUSE_END, flags=re.IGNORECASE),
    ),
    ExtractionRule(
        "area_label",
        re.compile(r"\b(?:area|region|zone)s?\s*:\s*([^.\n]+)", flags=re.IGNORECASE),
    ),
    ExtractionRule(
        "in_proper_noun",
        re.compile(
            r"\bin\s+(?:the\s+)?(" + _PROPER_NOUNS + r"(?:,\s*" + _PROPER_NOUNS + r")*)"
        ),
    ),
)

INSTRUCTION_RULES: tuple[ExtractionRule, ...] = (
    ExtractionRule(
        "labelled",
        re.compile(
            r"\b(?:recommended\s+actions?|what\s+to\s+do|instructions?)\s*:\s*([^\n]+)",
            flags=re.IGNORECASE,
        ),
    ),
    ExtractionRule(
        "action_required",
        re.compile(r"\baction\s+required\s*:\s*([^.\n]+)", flags=re.IGNORECASE),
    ),
    ExtractionRule(
        "imperative",
        re.compile(
            r"\b((?:please|residents\s+should|people\s+should)\s+[^.\n]+)",
            flags=re.IGNORECASE,
        ),
    ),
)

EFFECTIVE_RULES: tuple[ExtractionRule, ...] = (
    ExtractionRule(
        "effective",
        re.compile(
            r"\beffective\s+(?:from\s+|as\s+of\s+)?([^.\n]+?)(?=\s+until\b|[.\n]|$)",
            flags=re.IGNORECASE,
        ),
    ),
    ExtractionRule(
        "in_effect",
        re.compile(
            r"\bin\s+effect\s+(?:from\s+)([^.\n]+?)(?=\s+until\b|[.\n]|$)",
            flags=re.IGNORECASE,
        ),
    ),
)

EXPIRY_RULES: tuple[ExtractionRule, ...] = (
    ExtractionRule(
        "valid_until",
        re.compile(r"\bvalid\s+until\s+([^.\n]+)", flags=re.IGNORECASE),
    ),
    ExtractionRule(
        "expires",
        re.compile(r"\b(?:expires?|until|ends?)\s*:?\s+([^.\n]+)", flags=re.IGNORECASE),
    ),
)

CAP_FIELD_RULES: dict[str, ExtractionRule] = {
    key: ExtractionRule(
        key, re.compile(rf"\b{key}\s*:\s*([A-Za-z]+)", flags=re.IGNORECASE)
    )
    for key in CAP_DEFAULTS
}

_TITLE_PREFIX_RE = re.compile(
    r"^(?:alert|warning|advisory|notice)\s*:\s*", flags=re.IGNORECASE
)
_TITLE_SUFFIX_RE = re.compile(
    r"\s*-\s*(?:alert ready|emergency alert)\s*$", flags=re.IGNORECASE
)
_TITLE_TAG_RE = re.compile(r"^\s*\[[^\]]*\]\s*")

_SUMMARY_LEADINS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"emergency\s+alert\s+issued\s+by", flags=re.I), "Issued by"),
    (re.compile(r"^this\s+is\s+an?\s+alert\s+issued\s+by", flags=re.I), "Issued by"),
    (re.compile(r"^this\s+is\s+an?\s+", flags=re.I), ""),
    (re.compile(r"^\s*alert\s*:\s*", flags=re.I), ""),
)


def strip_markup(text: str) -> str:
    """Drop tags and entities; keeps line breaks for the line-based rules."""
    text = _CDATA_RE.sub(r"\1", text)
    text = _BREAK_TAG_RE.sub("\n", text)
    text = html.unescape(_HTML_TAG_RE.sub(" ", text))
    text = _HSPACE_RE.sub(" ", text)
    return _LINE_BREAKS_RE.sub("\n", text).strip()


def _capitalize_first(text: str) -> str:
    return text[:1].upper() + text[1:]


def clean_title(title: str | None) -> str:
    if not title:
        return UNTITLED
    cleaned = _WS_RE.sub(" ", strip_markup(title))
    # Tags and prefixes can be stacked: "[CCCS] Alert: ..."
    previous = None
    while previous != cleaned:
        previous = cleaned
        cleaned = _TITLE_TAG_RE.sub("", cleaned)
        cleaned = _TITLE_PREFIX_RE.sub("", cleaned)
    cleaned = _TITLE_SUFFIX_RE.sub("", cleaned).strip()
    if not cleaned:
        return UNTITLED
    return _capitalize_first(cleaned)


def clean_summary(summary: str | None) -> str:
    if not summary:
        return NO_SUMMARY
    cleaned = _WS_RE.sub(" ", strip_markup(summary))
    for pattern, replacement in _SUMMARY_LEADINS:
        cleaned = pattern.sub(replacement, cleaned, count=1).strip()
    if not cleaned:
        return NO_SUMMARY
    cleaned = _capitalize_first(cleaned)
    if cleaned[-1] not in ".!?":
        cleaned += "."
    return cleaned


def normalize_area(area: str | None) -> str:
    if not area:
        return AREA_NOT_SPECIFIED
    value = _WS_RE.sub(" ", str(area)).strip()
    if not value or value.casefold() in {"unknown", "n/a", "na", "none"}:
        return AREA_NOT_SPECIFIED
    return value


def extract_area(text: str | None, area_desc: str | None = None) -> str:
    structured = normalize_area(area_desc)
    if structured != AREA_NOT_SPECIFIED:
        return structured
    return normalize_area(first_match(AREA_RULES, strip_markup(text or "")))


def extract_instructions(text: str | None) -> str | None:
    return first_match(INSTRUCTION_RULES, strip_markup(text or ""))


def extract_times(text: str | None) -> dict[str, str | None]:
    plain = strip_markup(text or "")
    return {
        "effective": first_match(EFFECTIVE_RULES, plain),
        "expires": first_match(EXPIRY_RULES, plain),
    }


def scan_cap_fields(text: str | None) -> dict[str, str]:
    plain = strip_markup(text or "")
    fields = dict(CAP_DEFAULTS)
    for key, rule in CAP_FIELD_RULES.items():
        value = rule.apply(plain) if plain else None
        if value:
            fields[key] = _capitalize_first(value.lower())
    return fields


def parse_timestamp(value: object) -> str | None:
    """Best-effort conversion of ISO-8601, RFC 822 or epoch values to UTC ISO."""
    if value is None or value == "":
        return None
    dt: datetime | None = None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000.0 if value > 10**11 else float(value)
        try:
            dt = datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        text = str(value).strip()
        iso_text = text.removesuffix("Z") + "+00:00" if text.endswith("Z") else text
        try:
            dt = datetime.fromisoformat(iso_text)
        except ValueError:
            try:
                dt = parsedate_to_datetime(text)
            except (TypeError, ValueError, IndexError):
                return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    try:
        dt = dt.astimezone(tz=UTC)
    except OverflowError:
        # Offsets can push year 1 or year 9999 outside the datetime range.
        return None
    return dt.isoformat().replace("+00:00", "Z")


def compute_confidence(
    *,
    source_type: str,
    has_location: bool,
    published: str | None,
    now: datetime | None = None,
) -> float:
    score = 0.5
    if source_type in OFFICIAL_SOURCE_TYPES:
        score += 0.3
    if has_location:
        score += 0.1
    if published:
        now = now or datetime.now(tz=UTC)
        iso = parse_timestamp(published)
        if iso is not None:
            age = now - datetime.fromisoformat(iso.removesuffix("Z") + "+00:00")
            if age < timedelta(hours=24):
                score += 0.1
    return round(min(1.0, score), 4)


_ANNOUNCEMENT_TYPES = ("citizenship", "immigration", "refugee", "travel")


def classify_announcement(title: str, summary: str) -> str:
    text = f"{title} {summary}".casefold()
    for kind in _ANNOUNCEMENT_TYPES:
        if kind in text:
            return kind
    return "general"
