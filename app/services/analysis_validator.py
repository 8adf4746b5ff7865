"""Parse and sanitize untrusted analysis-provider output.

``parse_analysis_response`` turns raw text into a JSON object or raises
MalformedResponse. ``sanitize_analysis`` forces any decoded value into the
bounded AnalysisPayload schema and never raises; every coercion it applies is
reported as a warning string.
"""

import json
import math
import re
from typing import Any, Optional

from app.schemas.analysis import (
    AnalysisPayload,
    IssueClassification,
    Keyword,
    SentimentAnalysis,
)
from app.services.errors import MalformedResponse
from app.services.prompt_service import CATEGORIES, SENTIMENTS, SEVERITIES

MAX_SECONDARY_CATEGORIES = 3
MAX_KEYWORDS = 50
MAX_KEYWORD_LENGTH = 100
MAX_KEY_PHRASES = 20
MAX_KEY_PHRASE_LENGTH = 100
MAX_EMOTIONAL_INDICATORS = 20
MAX_EMOTIONAL_INDICATOR_LENGTH = 50
MAX_SUMMARY_LENGTH = 1000
MAX_ACTIONS = 5
MAX_ACTION_LENGTH = 200

DEFAULT_SENTIMENT = "neutral"
DEFAULT_CATEGORY = "other"
DEFAULT_SEVERITY = "medium"
DEFAULT_SUMMARY = "No summary provided"

FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*(.*?)\s*```$", re.DOTALL)


def strip_markup(text: Optional[str]) -> str:
    cleaned = (text or "").strip()
    match = FENCE_RE.match(cleaned)
    if match:
        cleaned = match.group(1).strip()
    return cleaned


def parse_analysis_response(text: Optional[str]) -> dict:
    cleaned = strip_markup(text)
    if not cleaned:
        raise MalformedResponse("Empty analysis response", raw_text=text)

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise MalformedResponse("Analysis response is not JSON", raw_text=text)
        try:
            data = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError as exc:
            raise MalformedResponse(f"Analysis response is not JSON: {exc}", raw_text=text) from exc

    if not isinstance(data, dict):
        raise MalformedResponse(f"Analysis response is a {type(data).__name__}, expected object", raw_text=text)
    return data


def _section(raw: Any, key: str) -> dict:
    value = raw.get(key) if isinstance(raw, dict) else None
    return value if isinstance(value, dict) else {}


def _to_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _number(value: Any, field: str, default: float, low: float, high: float, warnings: list[str]) -> float:
    number = _to_float(value)
    if number is None:
        warnings.append(f"{field}: {'missing' if value is None else 'not a number'}, defaulted to {default}")
        return default
    if number < low or number > high:
        warnings.append(f"{field}: {number} clamped to [{low}, {high}]")
        return min(high, max(low, number))
    return number


def _enum(value: Any, field: str, allowed: tuple, default: str, warnings: list[str]) -> str:
    if isinstance(value, str):
        candidate = value.strip().lower().replace(" ", "_").replace("-", "_")
        if candidate in allowed:
            return candidate
    warnings.append(f"{field}: {value!r} not allowed, defaulted to {default}")
    return default


def _text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def _truncate(text: str, max_length: int, field: str, warnings: list[str]) -> str:
    if len(text) > max_length:
        warnings.append(f"{field}: truncated to {max_length} characters")
        return text[:max_length]
    return text


def _as_list(value: Any, field: str, warnings: list[str]) -> list:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return value
    warnings.append(f"{field}: expected a list, got {type(value).__name__}")
    return []


def _string_list(value: Any, field: str, max_items: int, max_length: int, warnings: list[str]) -> list[str]:
    items = []
    for item in _as_list(value, field, warnings):
        text = _text(item)
        if text:
            items.append(_truncate(text, max_length, field, warnings))
    if len(items) > max_items:
        warnings.append(f"{field}: {len(items)} items truncated to {max_items}")
        items = items[:max_items]
    return items


def _sanitize_sentiment(raw: Any, warnings: list[str]) -> SentimentAnalysis:
    section = _section(raw, "sentiment_analysis")
    return SentimentAnalysis(
        label=_enum(section.get("overall_sentiment"), "sentiment", SENTIMENTS, DEFAULT_SENTIMENT, warnings),
        score=_number(section.get("sentiment_score"), "sentiment_score", 0.0, -1.0, 1.0, warnings),
        confidence=_number(section.get("confidence_level"), "confidence_level", 0.5, 0.0, 1.0, warnings),
    )


def _sanitize_classification(raw: Any, warnings: list[str]) -> IssueClassification:
    section = _section(raw, "issue_classification")
    primary = _enum(section.get("primary_category"), "primary_category", CATEGORIES, DEFAULT_CATEGORY, warnings)

    secondary: list[str] = []
    for item in _as_list(section.get("secondary_categories"), "secondary_categories", warnings):
        candidate = _text(item).lower().replace(" ", "_").replace("-", "_")
        if candidate not in CATEGORIES:
            warnings.append(f"secondary_categories: dropped {item!r}")
            continue
        if candidate == primary or candidate in secondary:
            continue
        secondary.append(candidate)
    if len(secondary) > MAX_SECONDARY_CATEGORIES:
        warnings.append(f"secondary_categories: truncated to {MAX_SECONDARY_CATEGORIES}")
        secondary = secondary[:MAX_SECONDARY_CATEGORIES]

    urgency = _number(section.get("urgency_score"), "urgency_score", 5, 1, 10, warnings)
    return IssueClassification(
        primary_category=primary,
        secondary_categories=secondary,
        severity=_enum(section.get("severity_level"), "severity_level", SEVERITIES, DEFAULT_SEVERITY, warnings),
        urgency=int(min(10, max(1, round(urgency)))),
    )


def _sanitize_keywords(raw: Any, warnings: list[str]) -> list[Keyword]:
    section = _section(raw, "key_phrases")
    keywords = []
    for item in _as_list(section.get("keywords"), "keywords", warnings):
        if isinstance(item, dict):
            word = _text(item.get("word"))
            frequency = _to_float(item.get("frequency"))
            relevance = _to_float(item.get("relevance_score"))
        else:
            word, frequency, relevance = _text(item), None, None
        if not word:
            continue
        keywords.append(
            Keyword(
                word=_truncate(word, MAX_KEYWORD_LENGTH, "keywords.word", warnings),
                frequency=max(1, int(frequency)) if frequency is not None else 1,
                relevance=min(1.0, max(0.0, relevance)) if relevance is not None else 0.5,
            )
        )
    if len(keywords) > MAX_KEYWORDS:
        warnings.append(f"keywords: {len(keywords)} items truncated to {MAX_KEYWORDS}")
        keywords = keywords[:MAX_KEYWORDS]
    return keywords


def sanitize_analysis(raw: Any) -> tuple[AnalysisPayload, list[str]]:
    """Coerce ``raw`` into AnalysisPayload. Returns (payload, warnings)."""
    warnings: list[str] = []
    if not isinstance(raw, dict):
        warnings.append(f"response: expected an object, got {type(raw).__name__}")

    phrases = _section(raw, "key_phrases")
    summary = _text(raw.get("ai_summary")) if isinstance(raw, dict) else ""
    if not summary:
        warnings.append("ai_summary: missing, defaulted")
        summary = DEFAULT_SUMMARY

    payload = AnalysisPayload(
        sentiment=_sanitize_sentiment(raw, warnings),
        classification=_sanitize_classification(raw, warnings),
        keywords=_sanitize_keywords(raw, warnings),
        key_phrases=_string_list(
            phrases.get("key_phrases"), "key_phrases", MAX_KEY_PHRASES, MAX_KEY_PHRASE_LENGTH, warnings
        ),
        emotional_indicators=_string_list(
            phrases.get("emotional_indicators"),
            "emotional_indicators",
            MAX_EMOTIONAL_INDICATORS,
            MAX_EMOTIONAL_INDICATOR_LENGTH,
            warnings,
        ),
        summary=_truncate(summary, MAX_SUMMARY_LENGTH, "ai_summary", warnings),
        recommended_actions=_string_list(
            raw.get("recommended_actions") if isinstance(raw, dict) else None,
            "recommended_actions",
            MAX_ACTIONS,
            MAX_ACTION_LENGTH,
            warnings,
        ),
    )
    return payload, warnings
