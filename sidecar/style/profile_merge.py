"""Pure reducers that fold analysis results into style profiles.

Nothing here touches storage or the cache.
"""

from __future__ import annotations

import copy
import math
from typing import Any, Optional, TypeVar

from style.config import MAX_PHRASES_PER_SECTION
from style.models import CONFIDENCE_FEATURES, AnalysisResult, StyleProfile, clamp_unit

T = TypeVar("T")


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (list, dict, str)) and len(value) == 0)


def merge_weighted(
    existing: Optional[float],
    incoming: Optional[float],
    existing_weight: float,
    incoming_weight: float,
) -> Optional[float]:
    """Weighted average of two scores; a missing side leaves the other unchanged."""
    if existing is None:
        return incoming
    if incoming is None:
        return existing
    total = existing_weight + incoming_weight
    if total <= 0:
        return (existing + incoming) / 2
    return (existing * existing_weight + incoming * incoming_weight) / total


def merge_categorical(
    existing: Optional[T],
    incoming: Optional[T],
    existing_confidence: float,
    incoming_confidence: float,
) -> tuple[Optional[T], float]:
    """Keep whichever value is backed by more confidence.

    Equal confidence favors *incoming*. An absent incoming value keeps the
    existing one.
    """
    if _is_empty(incoming):
        return existing, existing_confidence
    if _is_empty(existing):
        return incoming, incoming_confidence
    if incoming_confidence >= existing_confidence:
        return incoming, incoming_confidence
    return existing, existing_confidence


def _union_phrases(
    existing: dict[str, list[str]], incoming: dict[str, list[str]],
) -> dict[str, list[str]]:
    merged: dict[str, list[str]] = {}
    for section in list(incoming) + [s for s in existing if s not in incoming]:
        seen: set[str] = set()
        phrases: list[str] = []
        for phrase in incoming.get(section, []) + existing.get(section, []):
            key = phrase.strip().lower()
            if not key or key in seen:
                continue
            seen.add(key)
            phrases.append(phrase.strip())
        if phrases:
            merged[section] = phrases[:MAX_PHRASES_PER_SECTION]
    return merged


def profile_from_analysis(analysis: AnalysisResult) -> StyleProfile:
    """A brand-new profile holding exactly what the analysis detected."""
    return StyleProfile(
        user_id=analysis.user_id,
        subspecialty=analysis.subspecialty,
        section_order=list(analysis.detected_section_order or []),
        section_inclusion={k: clamp_unit(v) for k, v in analysis.detected_section_inclusion.items()},
        section_verbosity=dict(analysis.detected_section_verbosity),
        phrasing_preferences=_union_phrases({}, analysis.detected_phrasing),
        avoided_phrases=_union_phrases({}, analysis.detected_avoided_phrases),
        vocabulary_map=dict(analysis.detected_vocabulary),
        terminology_level=analysis.detected_terminology_level,
        greeting_style=analysis.detected_greeting_style,
        closing_style=analysis.detected_closing_style,
        signoff_template=analysis.detected_signoff,
        formality_level=analysis.detected_formality_level,
        paragraph_structure=analysis.detected_paragraph_structure,
        confidence={k: clamp_unit(v) for k, v in analysis.confidence.items()},
        learning_strength=1.0,
        total_edits_analyzed=analysis.edits_analyzed,
    )


def merge_profile_analysis(
    existing: Optional[StyleProfile], analysis: AnalysisResult,
) -> StyleProfile:
    """Fold *analysis* into *existing*, weighting each side by its edit count."""
    if existing is None:
        return profile_from_analysis(analysis)

    ew = float(existing.total_edits_analyzed)
    nw = float(analysis.edits_analyzed)
    old_conf = existing.confidence
    new_conf = analysis.confidence

    def pick(feature: str, old_value: Any, new_value: Any) -> Any:
        value, _ = merge_categorical(
            old_value, new_value, old_conf.get(feature, 0.0), new_conf.get(feature, 0.0),
        )
        return value

    confidence: dict[str, float] = {}
    for feature in CONFIDENCE_FEATURES:
        merged = merge_weighted(old_conf.get(feature), new_conf.get(feature), ew, nw)
        if merged is not None:
            confidence[feature] = clamp_unit(merged)

    inclusion = dict(existing.section_inclusion)
    for section, prob in analysis.detected_section_inclusion.items():
        inclusion[section] = clamp_unit(
            merge_weighted(inclusion.get(section), clamp_unit(prob), ew, nw)
        )

    vocabulary = dict(existing.vocabulary_map)
    vocabulary.update(analysis.detected_vocabulary)

    return StyleProfile(
        id=existing.id,
        user_id=existing.user_id,
        subspecialty=existing.subspecialty,
        section_order=list(pick("section_order", existing.section_order, analysis.detected_section_order) or []),
        section_inclusion=inclusion,
        section_verbosity=dict(pick(
            "section_verbosity", existing.section_verbosity, analysis.detected_section_verbosity,
        ) or {}),
        phrasing_preferences=_union_phrases(existing.phrasing_preferences, analysis.detected_phrasing),
        avoided_phrases=_union_phrases(existing.avoided_phrases, analysis.detected_avoided_phrases),
        vocabulary_map=vocabulary,
        terminology_level=pick("terminology_level", existing.terminology_level, analysis.detected_terminology_level),
        greeting_style=pick("greeting_style", existing.greeting_style, analysis.detected_greeting_style),
        closing_style=pick("closing_style", existing.closing_style, analysis.detected_closing_style),
        signoff_template=pick("signoff_template", existing.signoff_template, analysis.detected_signoff),
        formality_level=pick("formality_level", existing.formality_level, analysis.detected_formality_level),
        paragraph_structure=pick(
            "paragraph_structure", existing.paragraph_structure, analysis.detected_paragraph_structure,
        ),
        confidence=confidence,
        learning_strength=existing.learning_strength,
        total_edits_analyzed=existing.total_edits_analyzed + analysis.edits_analyzed,
        last_analyzed_at=existing.last_analyzed_at,
        created_at=existing.created_at,
        updated_at=existing.updated_at,
    )


def _scaled_len(length: int, strength: float) -> int:
    return max(0, int(math.floor(length * strength + 0.5)))


def _truncate_phrases(phrases: dict[str, list[str]], strength: float) -> dict[str, list[str]]:
    truncated = {k: v[:_scaled_len(len(v), strength)] for k, v in phrases.items()}
    return {k: v for k, v in truncated.items() if v}


def apply_learning_strength(profile: StyleProfile) -> StyleProfile:
    """Damped copy of *profile* for prompt building. The stored profile is untouched.

    Confidences scale by the strength, inclusion probabilities move toward
    0.5, and phrase lists and the vocabulary map are truncated. At zero
    strength every list and map is empty and every confidence is 0.
    """
    strength = clamp_unit(profile.learning_strength)
    damped = copy.deepcopy(profile)
    if strength >= 1.0:
        return damped

    damped.confidence = {k: clamp_unit(v * strength) for k, v in profile.confidence.items()}
    if strength <= 0.0:
        damped.section_order = []
        damped.section_inclusion = {}
        damped.section_verbosity = {}
        damped.phrasing_preferences = {}
        damped.avoided_phrases = {}
        damped.vocabulary_map = {}
        return damped

    damped.section_inclusion = {
        k: clamp_unit(0.5 + (v - 0.5) * strength) for k, v in profile.section_inclusion.items()
    }
    damped.phrasing_preferences = _truncate_phrases(profile.phrasing_preferences, strength)
    damped.avoided_phrases = _truncate_phrases(profile.avoided_phrases, strength)
    vocab_items = list(profile.vocabulary_map.items())
    damped.vocabulary_map = dict(vocab_items[:_scaled_len(len(vocab_items), strength)])
    return damped
