"""Best-effort extraction of recommendation candidates from free-form completion text.

The completion service gives no structural guarantee, so ``repair`` degrades
through stages and never raises:

1. strip code fences and surrounding whitespace
2. slice from the first ``[``/``{`` to the last matching closer
3. strict decode (array, single object, or an envelope object); when the span
   does not decode as a whole, harvest every complete object inside it
4. line-oriented key/value scan over the text
5. give up with ``[]``
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from .metrics import repair_stage_total
from .schemas import DEFAULT_CONFIDENCE, AIRecommendation

logger = logging.getLogger(__name__)

_CODE_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_FENCE_MARKER_RE = re.compile(r"```[a-zA-Z]*")

_ENVELOPE_KEYS = ("recommendations", "places", "results", "items", "data")

_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "placeName": ("placename", "place_name", "name", "place", "title"),
    "category": ("category", "type", "placetype"),
    "personalizedReason": (
        "personalizedreason",
        "personalized_reason",
        "reason",
        "reasoning",
        "why",
    ),
    "confidenceScore": ("confidencescore", "confidence_score", "confidence", "score"),
    "matchingPreferences": (
        "matchingpreferences",
        "matching_preferences",
        "preferences",
        "tags",
    ),
}

_SCAN_KEYS = "placeName|category|personalizedReason|confidenceScore|confidence|reasoning|matchingPreferences"
_SCAN_KEY_TO_FIELD = {
    "placename": "placeName",
    "category": "category",
    "personalizedreason": "personalizedReason",
    "reasoning": "personalizedReason",
    "confidencescore": "confidenceScore",
    "confidence": "confidenceScore",
    "matchingpreferences": "matchingPreferences",
}
_LINE_PAIR_RE = re.compile(
    rf"""(?<![A-Za-z0-9_])["']?(?P<key>{_SCAN_KEYS})["']?\s*[:=]\s*
        (?:
            "(?P<quoted>(?:[^"\\]|\\.)*)"
          | \[(?P<array>[^\]]*)\]?
          | (?P<bare>[^,}}\]\n]*?)(?=\s*[,}}\]]|\s*$|\s+["']?(?:{_SCAN_KEYS})["']?\s*[:=])
        )""",
    re.IGNORECASE | re.VERBOSE,
)
_NUMBER_RE = re.compile(r"[-+]?\d*\.?\d+")

_MIN_FIELDS_PER_RECORD = 4
_TRAILING_FIELDS = frozenset({"confidenceScore", "matchingPreferences"})


def strip_code_fences(text: str) -> str:
    fence_match = _CODE_FENCE_RE.search(text)
    if fence_match:
        return fence_match.group(1).strip()
    return _FENCE_MARKER_RE.sub("", text).strip()


def slice_structured_span(text: str) -> str | None:
    """Return the text between the first opener and the last matching closer."""
    starts = [index for index in (text.find("["), text.find("{")) if index >= 0]
    if not starts:
        return None
    start = min(starts)
    closer = "]" if text[start] == "[" else "}"
    end = text.rfind(closer)
    if end < start:
        return text[start:]
    return text[start : end + 1]


def parse_confidence(value: Any) -> float:
    """Coerce a model-supplied confidence into [0, 1]; unparseable values become 0.7."""
    if isinstance(value, bool):
        return DEFAULT_CONFIDENCE
    if isinstance(value, int | float):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        match = _NUMBER_RE.search(text)
        if not match:
            return DEFAULT_CONFIDENCE
        number = float(match.group(0))
        if text.endswith("%"):
            number /= 100.0
    else:
        return DEFAULT_CONFIDENCE
    if number != number:  # NaN
        return DEFAULT_CONFIDENCE
    if 1.0 < number <= 100.0:
        number /= 100.0
    return min(1.0, max(0.0, number))


def _normalize_tags(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, list | tuple):
        items = value
    else:
        return ()
    tags = []
    for item in items:
        if not isinstance(item, str | int | float) or isinstance(item, bool):
            continue
        tag = str(item).strip().strip("\"'").strip()
        if tag:
            tags.append(tag)
    return tuple(tags)


def _lookup(record: Mapping[str, Any], field: str) -> Any:
    lowered = {str(key).lower(): value for key, value in record.items()}
    for alias in _FIELD_ALIASES[field]:
        if alias in lowered and lowered[alias] is not None:
            return lowered[alias]
    return None


def build_recommendation(record: Mapping[str, Any]) -> AIRecommendation | None:
    name = _lookup(record, "placeName")
    if not isinstance(name, str) or not name.strip():
        return None
    category = _lookup(record, "category")
    reason = _lookup(record, "personalizedReason")
    fields: dict[str, Any] = {
        "placeName": name.strip(),
        "confidenceScore": parse_confidence(_lookup(record, "confidenceScore")),
        "matchingPreferences": _normalize_tags(_lookup(record, "matchingPreferences")),
    }
    if isinstance(category, str) and category.strip():
        fields["category"] = category.strip()
    if isinstance(reason, str) and reason.strip():
        fields["personalizedReason"] = reason.strip()
    try:
        return AIRecommendation.model_validate(fields)
    except ValidationError as exc:
        logger.debug("Dropping candidate %r: %s", name, exc)
        return None


def _records_from_value(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        for key in _ENVELOPE_KEYS:
            inner = value.get(key)
            if isinstance(inner, list):
                return inner
            if isinstance(inner, dict):
                return [inner]
        return [value]
    return []


def _build_all(records: Iterable[Any]) -> list[AIRecommendation]:
    candidates = []
    for record in records:
        if isinstance(record, Mapping):
            candidate = build_recommendation(record)
            if candidate is not None:
                candidates.append(candidate)
    return candidates


def _harvest_objects(span: str) -> list[Any]:
    decoder = json.JSONDecoder()
    harvested: list[Any] = []
    index = 0
    while index < len(span):
        if span[index] != "{":
            index += 1
            continue
        try:
            obj, end = decoder.raw_decode(span, index)
        except json.JSONDecodeError:
            index += 1
            continue
        harvested.extend(_records_from_value(obj))
        index = end
    return harvested


def decode_strict(span: str) -> list[AIRecommendation]:
    try:
        value = json.loads(span)
    except json.JSONDecodeError:
        return _build_all(_harvest_objects(span))
    return _build_all(_records_from_value(value))


def _clean_scalar(raw: str) -> str:
    text = raw.strip().rstrip(",").strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        text = text[1:-1]
    text = text.lstrip("\"'")
    return text.replace('\\"', '"').strip()


def scan_lines(text: str) -> list[AIRecommendation]:
    """Accumulate recognizable key/value pairs line by line into records."""
    records: list[dict[str, Any]] = []
    current: dict[str, Any] = {}

    def _emit() -> None:
        if "placeName" in current:
            records.append(dict(current))
        current.clear()

    for line in text.splitlines():
        for match in _LINE_PAIR_RE.finditer(line):
            field = _SCAN_KEY_TO_FIELD[match.group("key").lower()]
            if match.group("array") is not None:
                value: Any = _normalize_tags(match.group("array"))
            elif match.group("quoted") is not None:
                value = match.group("quoted").replace('\\"', '"').strip()
            else:
                value = _clean_scalar(match.group("bare") or "")
            if value in ("", ()):
                continue

            if field == "matchingPreferences" and not isinstance(value, tuple):
                value = _normalize_tags(value)
            if not current and field in _TRAILING_FIELDS:
                if records and field not in records[-1]:
                    # late field of the record emitted just before
                    records[-1][field] = value
                    continue
                if field == "matchingPreferences":
                    continue

            if field in current:
                # repeated key before the record completed: start over
                current.clear()
            current[field] = value
            if len(current) >= _MIN_FIELDS_PER_RECORD:
                _emit()

    return _build_all(records)


def repair(raw_text: Any) -> list[AIRecommendation]:
    """Extract candidates from arbitrary completion text. Never raises."""
    if not isinstance(raw_text, str):
        return []
    text = strip_code_fences(raw_text)
    if not text:
        repair_stage_total.labels(stage="empty").inc()
        return []

    span = slice_structured_span(text)
    if span is not None:
        candidates = decode_strict(span) or _build_all(_harvest_objects(text))
        if candidates:
            repair_stage_total.labels(stage="strict").inc()
            return candidates

    candidates = scan_lines(text)
    if candidates:
        repair_stage_total.labels(stage="line_scan").inc()
        logger.info("Recovered %d candidates by line scan", len(candidates))
        return candidates

    repair_stage_total.labels(stage="none").inc()
    return []


__all__ = [
    "build_recommendation",
    "decode_strict",
    "parse_confidence",
    "repair",
    "scan_lines",
    "slice_structured_span",
    "strip_code_fences",
]
