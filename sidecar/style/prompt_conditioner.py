"""
Turn a learned style profile into guidance text for letter generation.

Resolution order for the profile is subspecialty -> global -> default (none).
A preference is only rendered when its confidence clears
MIN_CONFIDENCE_THRESHOLD and the clinician's learning strength is above zero.
The guidance describes wording and layout only; it never carries patient data.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from style.config import (
    INCLUDE_THRESHOLD,
    MAX_PHRASES_IN_PROMPT,
    MAX_VOCABULARY_IN_PROMPT,
    MIN_CONFIDENCE_THRESHOLD,
    OMIT_THRESHOLD,
    WELL_ESTABLISHED_CONFIDENCE,
)
from style.models import ProfileSource, StyleProfile
from style.profile_merge import apply_learning_strength

logger = logging.getLogger(__name__)

STYLE_GUIDANCE_HEADER = "# PHYSICIAN STYLE PREFERENCES"

SAFETY_NOTE = (
    "Note: Apply these style preferences while maintaining clinical accuracy and safety. "
    "Never compromise factual correctness for style."
)

# apply_* flag -> (profile attribute holding the data, confidence feature)
_FEATURE_FLAGS: dict[str, tuple[str, str]] = {
    "apply_section_order": ("section_order", "section_order"),
    "apply_section_inclusion": ("section_inclusion", "section_inclusion"),
    "apply_section_verbosity": ("section_verbosity", "section_verbosity"),
    "apply_phrasing_preferences": ("phrasing_preferences", "phrasing_preferences"),
    "apply_avoided_phrases": ("avoided_phrases", "avoided_phrases"),
    "apply_vocabulary": ("vocabulary_map", "vocabulary_map"),
    "apply_signoff": ("signoff_template", "signoff_template"),
    "apply_formality": ("formality_level", "formality_level"),
    "apply_greeting": ("greeting_style", "greeting_style"),
    "apply_terminology": ("terminology_level", "terminology_level"),
}


@dataclass
class StyleConditioningConfig:
    source: ProfileSource = ProfileSource.DEFAULT
    effective_learning_strength: float = 0.0
    apply_section_order: bool = False
    apply_section_inclusion: bool = False
    apply_section_verbosity: bool = False
    apply_phrasing_preferences: bool = False
    apply_avoided_phrases: bool = False
    apply_vocabulary: bool = False
    apply_signoff: bool = False
    apply_formality: bool = False
    apply_greeting: bool = False
    apply_terminology: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["source"] = self.source.value
        return data


@dataclass
class StyleHints:
    """Rendered guidance fragments. Unset fragments stay None."""

    source_subspecialty: Optional[str] = None
    profile_confidence: Optional[float] = None
    section_order: Optional[str] = None
    section_verbosity: Optional[str] = None
    include_sections: Optional[str] = None
    exclude_sections: Optional[str] = None
    preferred_phrases: Optional[str] = None
    avoided_phrases: Optional[str] = None
    vocabulary_guidance: Optional[str] = None
    greeting: Optional[str] = None
    closing: Optional[str] = None
    formality: Optional[str] = None
    terminology: Optional[str] = None
    general_guidance: Optional[str] = None

    def has_active_hints(self) -> bool:
        return any((
            self.section_order, self.section_verbosity, self.include_sections,
            self.exclude_sections, self.preferred_phrases, self.avoided_phrases,
            self.vocabulary_guidance, self.greeting, self.closing, self.formality,
            self.terminology,
        ))

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class ConditionedPrompt:
    prompt: str
    hints: StyleHints = field(default_factory=StyleHints)
    config: StyleConditioningConfig = field(default_factory=StyleConditioningConfig)


# --- Formatting helpers ---

def format_section_name(section: str) -> str:
    """``past_medical_history`` -> ``Past Medical History``."""
    spaced = re.sub(r"([a-z])([A-Z])", r"\1 \2", section.replace("_", " "))
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), spaced)


def format_subspecialty_name(subspecialty: str) -> str:
    return " ".join(word.capitalize() for word in subspecialty.replace("_", " ").split())


def compute_overall_confidence(profile: StyleProfile) -> float:
    values = [v for v in profile.confidence.values() if isinstance(v, (int, float))]
    if not values:
        return 0.0
    return sum(values) / len(values)


# --- Config ---

def build_conditioning_config(
    profile: Optional[StyleProfile],
    source: ProfileSource | str,
    overrides: Optional[dict[str, Any]] = None,
) -> StyleConditioningConfig:
    """Decide which preferences of *profile* to render.

    *overrides* set flags (or the source/strength) explicitly and win over
    the computed values.
    """
    overrides = overrides or {}
    if profile is None:
        config = StyleConditioningConfig()
    else:
        strength = profile.learning_strength
        flags = {}
        for flag, (attr, feature) in _FEATURE_FLAGS.items():
            flags[flag] = (
                strength > 0
                and bool(getattr(profile, attr))
                and profile.confidence.get(feature, 0.0) >= MIN_CONFIDENCE_THRESHOLD
            )
        config = StyleConditioningConfig(
            source=ProfileSource(source),
            effective_learning_strength=strength,
            **flags,
        )

    for key, value in overrides.items():
        if not hasattr(config, key):
            raise ValueError(f"Unknown conditioning option: {key}")
        setattr(config, key, ProfileSource(value) if key == "source" else value)
    return config


# --- Fragment builders ---

def build_section_order_instruction(section_order: list[str]) -> str:
    if not section_order:
        return ""
    formatted = " → ".join(format_section_name(s) for s in section_order)
    return f"Arrange the letter sections in this order: {formatted}"


def build_verbosity_instruction(section_verbosity: dict[str, str]) -> str:
    if not section_verbosity:
        return ""
    lines = []
    for section, level in section_verbosity.items():
        name = format_section_name(section)
        if level == "brief":
            lines.append(f"- {name}: Keep concise (2-3 sentences)")
        elif level == "detailed":
            lines.append(f"- {name}: Include comprehensive details")
        else:
            lines.append(f"- {name}: Standard detail level")
    return "Detail level by section:\n" + "\n".join(lines)


def build_inclusion_instructions(
    section_inclusion: dict[str, float],
) -> tuple[Optional[str], Optional[str]]:
    """Return (include line, omit line); middling probabilities produce neither."""
    include, exclude = [], []
    for section, probability in section_inclusion.items():
        if probability is None:
            continue
        if probability >= INCLUDE_THRESHOLD:
            include.append(format_section_name(section))
        elif probability <= OMIT_THRESHOLD:
            exclude.append(format_section_name(section))

    include_line = f"Always include these sections: {', '.join(include)}" if include else None
    exclude_line = (
        f"Omit these sections unless specifically relevant: {', '.join(exclude)}"
        if exclude else None
    )
    return include_line, exclude_line


def _phrase_lines(phrases_by_section: dict[str, list[str]], verb: str) -> list[str]:
    lines = []
    for section, phrases in phrases_by_section.items():
        if not phrases:
            continue
        quoted = ", ".join(f'"{p}"' for p in phrases[:MAX_PHRASES_IN_PROMPT])
        lines.append(f"- In {format_section_name(section)}: {verb} {quoted}")
    return lines


def build_phrasing_instruction(phrasing_preferences: dict[str, list[str]]) -> str:
    lines = _phrase_lines(phrasing_preferences, "prefer phrases like")
    return "Preferred phrases:\n" + "\n".join(lines) if lines else ""


def build_avoided_phrases_instruction(avoided_phrases: dict[str, list[str]]) -> str:
    lines = _phrase_lines(avoided_phrases, "avoid")
    return "Phrases to avoid:\n" + "\n".join(lines) if lines else ""


def build_vocabulary_instruction(vocabulary_map: dict[str, str]) -> str:
    if not vocabulary_map:
        return ""
    entries = list(vocabulary_map.items())[:MAX_VOCABULARY_IN_PROMPT]
    substitutions = ", ".join(f'"{to}" instead of "{frm}"' for frm, to in entries)
    return f"Vocabulary preferences: use {substitutions}"


def build_greeting_instruction(greeting_style: str) -> str:
    if greeting_style == "formal":
        return 'Use a formal greeting (e.g., "Dear Dr. Smith," or "Dear Colleague,")'
    if greeting_style == "casual":
        return 'Use a casual greeting (e.g., "Hi," or first name)'
    if greeting_style == "mixed":
        return "Match greeting formality to the recipient"
    return ""


def build_signoff_instruction(signoff_template: str, closing_style: Optional[str] = None) -> str:
    style_note = f" ({closing_style} style)" if closing_style else ""
    return f'Use this closing{style_note}: "{signoff_template}"'


def build_formality_instruction(formality_level: str) -> str:
    return f"Maintain a {formality_level.replace('-', ' ')} tone throughout the letter"


def build_terminology_instruction(terminology_level: str) -> str:
    if terminology_level == "specialist":
        return "Use specialist medical terminology appropriate for healthcare professionals"
    if terminology_level == "lay":
        return "Use lay terms accessible to patients and non-specialists"
    if terminology_level == "mixed":
        return "Balance specialist and lay terminology based on the letter recipient"
    return ""


def build_general_guidance(profile: StyleProfile, config: StyleConditioningConfig) -> str:
    parts = []

    overall = compute_overall_confidence(profile)
    if overall >= WELL_ESTABLISHED_CONFIDENCE:
        parts.append(
            "This physician has a well-established writing style "
            f"({profile.total_edits_analyzed} edits analyzed)."
        )
    elif overall >= MIN_CONFIDENCE_THRESHOLD:
        parts.append(
            "Writing style preferences are emerging "
            f"({profile.total_edits_analyzed} edits analyzed)."
        )

    strength = config.effective_learning_strength
    if 0 < strength < 1.0:
        percentage = int(strength * 100 + 0.5)
        parts.append(f"Apply these preferences at {percentage}% strength (clinician preference).")

    if (
        profile.paragraph_structure
        and profile.confidence.get("paragraph_structure", 0.0) >= MIN_CONFIDENCE_THRESHOLD
    ):
        if profile.paragraph_structure == "short":
            parts.append("Keep paragraphs concise (2-3 sentences each).")
        elif profile.paragraph_structure == "long":
            parts.append("Use longer, more detailed paragraphs.")

    return " ".join(parts)


def build_style_hints(profile: StyleProfile, config: StyleConditioningConfig) -> StyleHints:
    hints = StyleHints(
        source_subspecialty=profile.subspecialty,
        profile_confidence=compute_overall_confidence(profile),
    )

    if config.apply_section_order:
        hints.section_order = build_section_order_instruction(profile.section_order) or None
    if config.apply_section_verbosity:
        hints.section_verbosity = build_verbosity_instruction(profile.section_verbosity) or None
    if config.apply_section_inclusion:
        hints.include_sections, hints.exclude_sections = build_inclusion_instructions(
            profile.section_inclusion,
        )
    if config.apply_phrasing_preferences:
        hints.preferred_phrases = build_phrasing_instruction(profile.phrasing_preferences) or None
    if config.apply_avoided_phrases:
        hints.avoided_phrases = build_avoided_phrases_instruction(profile.avoided_phrases) or None
    if config.apply_vocabulary:
        hints.vocabulary_guidance = build_vocabulary_instruction(profile.vocabulary_map) or None
    if config.apply_greeting and profile.greeting_style:
        hints.greeting = build_greeting_instruction(profile.greeting_style) or None
    if config.apply_signoff and profile.signoff_template:
        hints.closing = build_signoff_instruction(profile.signoff_template, profile.closing_style)
    if config.apply_formality and profile.formality_level:
        hints.formality = build_formality_instruction(profile.formality_level)
    if config.apply_terminology and profile.terminology_level:
        hints.terminology = build_terminology_instruction(profile.terminology_level) or None

    hints.general_guidance = build_general_guidance(profile, config) or None
    return hints


# --- Prompt assembly ---

def format_style_guidance(
    hints: StyleHints, profile: StyleProfile, letter_type: Optional[str] = None,
) -> str:
    blocks = [f"{STYLE_GUIDANCE_HEADER} ({format_subspecialty_name(profile.subspecialty)})"]
    if letter_type:
        blocks.append(f"Letter type: {letter_type}")

    if hints.section_order:
        blocks.append(f"## Section Order\n{hints.section_order}")
    if hints.section_verbosity:
        blocks.append(f"## {hints.section_verbosity}")
    inclusion = [line for line in (hints.include_sections, hints.exclude_sections) if line]
    if inclusion:
        blocks.append("## Section Inclusion\n" + "\n".join(inclusion))

    if hints.preferred_phrases:
        blocks.append(f"## {hints.preferred_phrases}")
    if hints.avoided_phrases:
        blocks.append(f"## {hints.avoided_phrases}")
    if hints.vocabulary_guidance:
        blocks.append(f"## Vocabulary\n{hints.vocabulary_guidance}")

    tone = [
        f"• {item}"
        for item in (hints.greeting, hints.closing, hints.formality, hints.terminology)
        if item
    ]
    if tone:
        blocks.append("## Tone & Style\n" + "\n".join(tone))

    if hints.general_guidance:
        blocks.append(f"\n{hints.general_guidance}")

    blocks.append(f"\n{SAFETY_NOTE}")
    return "\n\n".join(blocks)


def append_style_guidance(base_prompt: str, guidance: str) -> str:
    """Append *guidance*, replacing an earlier style block instead of duplicating it."""
    start = base_prompt.find(STYLE_GUIDANCE_HEADER)
    if start < 0:
        return f"{base_prompt}\n\n{guidance}"

    rest = base_prompt[start:]
    next_heading = rest.find("\n# ", 1)
    if next_heading > 0:
        return base_prompt[:start] + guidance + "\n\n" + rest[next_heading + 1:]
    return base_prompt[:start] + guidance


async def build_style_conditioned_prompt(
    base_prompt: str,
    user_id: str,
    subspecialty: Any,
    profile_service: Any,
    letter_type: Optional[str] = None,
) -> ConditionedPrompt:
    """Resolve the effective profile and append its guidance to *base_prompt*.

    With no profile, or a learning strength of zero, the base prompt comes
    back unchanged with empty hints.
    """
    effective = await profile_service.get_effective_profile(user_id, subspecialty)
    if effective.profile is None:
        return ConditionedPrompt(
            prompt=base_prompt, config=build_conditioning_config(None, ProfileSource.DEFAULT),
        )

    damped = apply_learning_strength(effective.profile)
    config = build_conditioning_config(damped, effective.source)
    if config.effective_learning_strength == 0:
        return ConditionedPrompt(prompt=base_prompt, config=config)

    hints = build_style_hints(damped, config)
    guidance = format_style_guidance(hints, damped, letter_type)
    logger.debug(
        "Style guidance for %s/%s from %s profile (strength=%.2f)",
        user_id, damped.subspecialty, config.source.value, config.effective_learning_strength,
    )
    return ConditionedPrompt(
        prompt=append_style_guidance(base_prompt, guidance), hints=hints, config=config,
    )
