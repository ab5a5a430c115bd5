"""
Parse the LLM's style-analysis answer.

The model is asked for a camelCase JSON document. Parsing is tolerant:
1. Prefer a fenced ```json block, else the first {...} object in the text
2. Missing fields become None or empty containers
3. Unknown enum values become None
4. Confidence scores are clamped to [0, 1]
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from style.models import (
    CONFIDENCE_FEATURES,
    AnalysisResult,
    FormalityLevel,
    ParagraphStructure,
    PhrasePattern,
    SectionOrderPattern,
    SectionType,
    StyleCategory,
    TerminologyLevel,
    VerbosityLevel,
    clamp_unit,
    coerce_enum,
)

logger = logging.getLogger(__name__)

_FENCED_JSON_RE = re.compile(r"```json\s*(.*?)```", re.DOTALL | re.IGNORECASE)

_SECTION_VALUES = {s.value for s in SectionType}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


# camelCase wire key -> snake_case confidence feature
_CONFIDENCE_KEYS = {_camel(f): f for f in CONFIDENCE_FEATURES}


def extract_json_object(text: str) -> dict[str, Any]:
    """Find and decode the JSON object in an LLM answer. Raises ValueError if none."""
    if not text:
        raise ValueError("Empty LLM response")

    fenced = _FENCED_JSON_RE.search(text)
    if fenced:
        try:
            data = json.loads(fenced.group(1).strip())
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            logger.warning("Fenced JSON block did not parse; trying raw object")

    start = text.find("{")
    if start < 0:
        raise ValueError("No JSON object found in LLM response")
    decoder = json.JSONDecoder()
    while start >= 0:
        try:
            data, _ = decoder.raw_decode(text, start)
            if isinstance(data, dict):
                return data
        except json.JSONDecodeError:
            pass
        start = text.find("{", start + 1)
    raise ValueError("No JSON object found in LLM response")


def _get(data: dict[str, Any], key: str) -> Any:
    """Look up a camelCase key, accepting the snake_case spelling too."""
    if key in data:
        return data[key]
    snake = re.sub(r"(?<!^)([A-Z])", r"_\1", key).lower()
    return data.get(snake)


def _section_key(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    key = value.strip().lower().replace(" ", "_").replace("-", "_")
    return key if key in _SECTION_VALUES else None


def _section_list(value: Any) -> Optional[list[str]]:
    if not isinstance(value, list):
        return None
    sections = [s for s in (_section_key(v) for v in value) if s]
    return sections or None


def _probability_map(value: Any) -> dict[str, float]:
    if not isinstance(value, dict):
        return {}
    out: dict[str, float] = {}
    for k, v in value.items():
        section = _section_key(k)
        if section and isinstance(v, (int, float)):
            out[section] = clamp_unit(v)
    return out


def _verbosity_map(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    out: dict[str, str] = {}
    for k, v in value.items():
        section = _section_key(k)
        level = coerce_enum(VerbosityLevel, v)
        if section and level:
            out[section] = level
    return out


def _phrase_map(value: Any) -> dict[str, list[str]]:
    if not isinstance(value, dict):
        return {}
    out: dict[str, list[str]] = {}
    for k, v in value.items():
        section = _section_key(k)
        if not section or not isinstance(v, list):
            continue
        phrases = [p.strip() for p in v if isinstance(p, str) and p.strip()]
        if phrases:
            out[section] = phrases
    return out


def _string_map(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {
        k.strip(): v.strip()
        for k, v in value.items()
        if isinstance(k, str) and isinstance(v, str) and k.strip() and v.strip()
    }


def _optional_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _confidence_map(value: Any) -> dict[str, float]:
    if not isinstance(value, dict):
        return {}
    out: dict[str, float] = {}
    for k, v in value.items():
        feature = _CONFIDENCE_KEYS.get(k) or (k if k in CONFIDENCE_FEATURES else None)
        if feature and isinstance(v, (int, float)):
            out[feature] = clamp_unit(v)
    return out


def _phrase_patterns(value: Any) -> list[PhrasePattern]:
    if not isinstance(value, list):
        return []
    patterns = []
    for item in value:
        if not isinstance(item, dict) or not _optional_str(item.get("phrase")):
            continue
        try:
            frequency = int(item.get("frequency") or 0)
        except (TypeError, ValueError):
            frequency = 0
        patterns.append(PhrasePattern(
            phrase=item["phrase"].strip(),
            section_type=_section_key(_get(item, "sectionType")),
            frequency=frequency,
            action=_optional_str(item.get("action")) or "preferred",
        ))
    return patterns


def _order_patterns(value: Any) -> list[SectionOrderPattern]:
    if not isinstance(value, list):
        return []
    patterns = []
    for item in value:
        if not isinstance(item, dict):
            continue
        order = _section_list(item.get("order"))
        if not order:
            continue
        try:
            frequency = int(item.get("frequency") or 0)
        except (TypeError, ValueError):
            frequency = 0
        patterns.append(SectionOrderPattern(order=order, frequency=frequency))
    return patterns


def parse_style_analysis(
    text: str,
    user_id: str,
    subspecialty: str,
    edits_analyzed: int,
    model_used: Optional[str] = None,
) -> AnalysisResult:
    """Build an AnalysisResult from the raw LLM answer. Raises ValueError if no JSON."""
    data = extract_json_object(text)

    insights = _get(data, "insights")
    return AnalysisResult(
        user_id=user_id,
        subspecialty=subspecialty,
        detected_section_order=_section_list(_get(data, "detectedSectionOrder")),
        detected_section_inclusion=_probability_map(_get(data, "detectedSectionInclusion")),
        detected_section_verbosity=_verbosity_map(_get(data, "detectedSectionVerbosity")),
        detected_phrasing=_phrase_map(_get(data, "detectedPhrasing")),
        detected_avoided_phrases=_phrase_map(_get(data, "detectedAvoidedPhrases")),
        detected_vocabulary=_string_map(_get(data, "detectedVocabulary")),
        detected_terminology_level=coerce_enum(TerminologyLevel, _get(data, "detectedTerminologyLevel")),
        detected_greeting_style=coerce_enum(StyleCategory, _get(data, "detectedGreetingStyle")),
        detected_closing_style=coerce_enum(StyleCategory, _get(data, "detectedClosingStyle")),
        detected_signoff=_optional_str(_get(data, "detectedSignoff")),
        detected_formality_level=coerce_enum(FormalityLevel, _get(data, "detectedFormalityLevel")),
        detected_paragraph_structure=coerce_enum(
            ParagraphStructure, _get(data, "detectedParagraphStructure"),
        ),
        confidence=_confidence_map(_get(data, "confidence")),
        phrase_patterns=_phrase_patterns(_get(data, "phrasePatterns")),
        section_order_patterns=_order_patterns(_get(data, "sectionOrderPatterns")),
        insights=[i for i in insights if isinstance(i, str)] if isinstance(insights, list) else [],
        edits_analyzed=edits_analyzed,
        model_used=model_used,
    )
