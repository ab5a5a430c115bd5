"""Domain types for per-clinician letter style learning."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


class Subspecialty(str, Enum):
    GENERAL_CARDIOLOGY = "GENERAL_CARDIOLOGY"
    INTERVENTIONAL = "INTERVENTIONAL"
    STRUCTURAL = "STRUCTURAL"
    ELECTROPHYSIOLOGY = "ELECTROPHYSIOLOGY"
    IMAGING = "IMAGING"
    HEART_FAILURE = "HEART_FAILURE"
    CARDIAC_SURGERY = "CARDIAC_SURGERY"


class SectionType(str, Enum):
    GREETING = "greeting"
    INTRODUCTION = "introduction"
    HISTORY = "history"
    PRESENTING_COMPLAINT = "presenting_complaint"
    PAST_MEDICAL_HISTORY = "past_medical_history"
    MEDICATIONS = "medications"
    FAMILY_HISTORY = "family_history"
    SOCIAL_HISTORY = "social_history"
    EXAMINATION = "examination"
    INVESTIGATIONS = "investigations"
    IMPRESSION = "impression"
    PLAN = "plan"
    FOLLOW_UP = "follow_up"
    CLOSING = "closing"
    SIGNOFF = "signoff"


class SectionStatus(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


class ChangeType(str, Enum):
    ADDITION = "addition"
    DELETION = "deletion"
    MODIFICATION = "modification"


class EditType(str, Enum):
    ADDITION = "addition"
    MODIFICATION = "modification"


class VerbosityLevel(str, Enum):
    BRIEF = "brief"
    NORMAL = "normal"
    DETAILED = "detailed"


class FormalityLevel(str, Enum):
    VERY_FORMAL = "very-formal"
    FORMAL = "formal"
    NEUTRAL = "neutral"
    CASUAL = "casual"


class StyleCategory(str, Enum):
    FORMAL = "formal"
    CASUAL = "casual"
    MIXED = "mixed"


class ParagraphStructure(str, Enum):
    LONG = "long"
    SHORT = "short"
    MIXED = "mixed"


class TerminologyLevel(str, Enum):
    SPECIALIST = "specialist"
    LAY = "lay"
    MIXED = "mixed"


class ProfileSource(str, Enum):
    SUBSPECIALTY = "subspecialty"
    GLOBAL = "global"
    DEFAULT = "default"


# One confidence score per feature family, in this order everywhere.
CONFIDENCE_FEATURES: tuple[str, ...] = (
    "section_order",
    "section_inclusion",
    "section_verbosity",
    "phrasing_preferences",
    "avoided_phrases",
    "vocabulary_map",
    "terminology_level",
    "greeting_style",
    "closing_style",
    "signoff_template",
    "formality_level",
    "paragraph_structure",
)


def clamp_unit(value: Any) -> float:
    """Coerce *value* to a float in [0, 1]; non-numeric values become 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:  # NaN
        return 0.0
    return max(0.0, min(1.0, number))


def coerce_enum(enum_cls: type[Enum], value: Any) -> Optional[str]:
    """Return the enum's string value if *value* is a member, else None."""
    if value is None:
        return None
    try:
        return enum_cls(value).value
    except ValueError:
        return None


# --- Parsing and diffing ---

@dataclass
class ParsedSection:
    type: Optional[SectionType]
    header: Optional[str]
    content: str
    start_index: int
    end_index: int


@dataclass
class Change:
    type: ChangeType
    original: Optional[str]
    modified: Optional[str]
    char_delta: int
    word_delta: int
    position: int


@dataclass
class SectionDiff:
    section_type: Optional[SectionType]
    draft_content: Optional[str]
    final_content: Optional[str]
    status: SectionStatus
    changes: list[Change] = field(default_factory=list)
    total_char_delta: int = 0
    total_word_delta: int = 0


@dataclass
class DiffStats:
    total_char_added: int = 0
    total_char_removed: int = 0
    total_word_added: int = 0
    total_word_removed: int = 0
    sections_added: int = 0
    sections_removed: int = 0
    sections_modified: int = 0
    section_order_changed: bool = False


@dataclass
class LetterDiff:
    letter_id: Optional[str]
    subspecialty: Optional[str]
    draft_sections: list[ParsedSection]
    final_sections: list[ParsedSection]
    section_diffs: list[SectionDiff]
    stats: DiffStats

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# --- Persistent records ---

@dataclass
class StyleEdit:
    user_id: str
    letter_id: str
    subspecialty: str
    section_type: Optional[str]
    edit_type: str
    before_text: str
    after_text: str
    character_changes: int
    word_changes: int
    id: Optional[int | str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "StyleEdit":
        return cls(
            id=row.get("id"),
            user_id=row["user_id"],
            letter_id=row["letter_id"],
            subspecialty=row["subspecialty"],
            section_type=row.get("section_type"),
            edit_type=row["edit_type"],
            before_text=row.get("before_text") or "",
            after_text=row.get("after_text") or "",
            character_changes=int(row.get("character_changes") or 0),
            word_changes=int(row.get("word_changes") or 0),
            created_at=row.get("created_at"),
        )


@dataclass
class StyleProfile:
    """Learned preferences for one clinician in one subspecialty."""

    user_id: str
    subspecialty: str
    section_order: list[str] = field(default_factory=list)
    section_inclusion: dict[str, float] = field(default_factory=dict)
    section_verbosity: dict[str, str] = field(default_factory=dict)
    phrasing_preferences: dict[str, list[str]] = field(default_factory=dict)
    avoided_phrases: dict[str, list[str]] = field(default_factory=dict)
    vocabulary_map: dict[str, str] = field(default_factory=dict)
    terminology_level: Optional[str] = None
    greeting_style: Optional[str] = None
    closing_style: Optional[str] = None
    signoff_template: Optional[str] = None
    formality_level: Optional[str] = None
    paragraph_structure: Optional[str] = None
    confidence: dict[str, float] = field(default_factory=dict)
    learning_strength: float = 1.0
    total_edits_analyzed: int = 0
    last_analyzed_at: Optional[str] = None
    id: Optional[int | str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def preferences(self) -> dict[str, Any]:
        """Return the JSON-serialisable preference fields (stored as one document)."""
        return {
            "section_order": list(self.section_order),
            "section_inclusion": dict(self.section_inclusion),
            "section_verbosity": dict(self.section_verbosity),
            "phrasing_preferences": {k: list(v) for k, v in self.phrasing_preferences.items()},
            "avoided_phrases": {k: list(v) for k, v in self.avoided_phrases.items()},
            "vocabulary_map": dict(self.vocabulary_map),
            "terminology_level": self.terminology_level,
            "greeting_style": self.greeting_style,
            "closing_style": self.closing_style,
            "signoff_template": self.signoff_template,
            "formality_level": self.formality_level,
            "paragraph_structure": self.paragraph_structure,
        }

    def to_dict(self) -> dict[str, Any]:
        data = self.preferences()
        data.update(
            id=self.id,
            user_id=self.user_id,
            subspecialty=self.subspecialty,
            confidence=dict(self.confidence),
            learning_strength=self.learning_strength,
            total_edits_analyzed=self.total_edits_analyzed,
            last_analyzed_at=self.last_analyzed_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
        return data

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "StyleProfile":
        """Build a profile from a storage row whose preferences are already decoded."""
        prefs = row.get("preferences") or {}
        return cls(
            id=row.get("id"),
            user_id=row["user_id"],
            subspecialty=row["subspecialty"],
            section_order=list(prefs.get("section_order") or []),
            section_inclusion={k: clamp_unit(v) for k, v in (prefs.get("section_inclusion") or {}).items()},
            section_verbosity=dict(prefs.get("section_verbosity") or {}),
            phrasing_preferences={k: list(v) for k, v in (prefs.get("phrasing_preferences") or {}).items()},
            avoided_phrases={k: list(v) for k, v in (prefs.get("avoided_phrases") or {}).items()},
            vocabulary_map=dict(prefs.get("vocabulary_map") or {}),
            terminology_level=prefs.get("terminology_level"),
            greeting_style=prefs.get("greeting_style"),
            closing_style=prefs.get("closing_style"),
            signoff_template=prefs.get("signoff_template"),
            formality_level=prefs.get("formality_level"),
            paragraph_structure=prefs.get("paragraph_structure"),
            confidence={k: clamp_unit(v) for k, v in (row.get("confidence") or {}).items()},
            learning_strength=clamp_unit(row.get("learning_strength", 1.0)),
            total_edits_analyzed=int(row.get("total_edits_analyzed") or 0),
            last_analyzed_at=row.get("last_analyzed_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


@dataclass
class PhrasePattern:
    phrase: str
    section_type: Optional[str]
    frequency: int
    action: str


@dataclass
class SectionOrderPattern:
    order: list[str]
    frequency: int


@dataclass
class AnalysisResult:
    """Output of one analysis run. Every detected field may be absent."""

    user_id: str
    subspecialty: str
    detected_section_order: Optional[list[str]] = None
    detected_section_inclusion: dict[str, float] = field(default_factory=dict)
    detected_section_verbosity: dict[str, str] = field(default_factory=dict)
    detected_phrasing: dict[str, list[str]] = field(default_factory=dict)
    detected_avoided_phrases: dict[str, list[str]] = field(default_factory=dict)
    detected_vocabulary: dict[str, str] = field(default_factory=dict)
    detected_terminology_level: Optional[str] = None
    detected_greeting_style: Optional[str] = None
    detected_closing_style: Optional[str] = None
    detected_signoff: Optional[str] = None
    detected_formality_level: Optional[str] = None
    detected_paragraph_structure: Optional[str] = None
    confidence: dict[str, float] = field(default_factory=dict)
    phrase_patterns: list[PhrasePattern] = field(default_factory=list)
    section_order_patterns: list[SectionOrderPattern] = field(default_factory=list)
    insights: list[str] = field(default_factory=list)
    edits_analyzed: int = 0
    model_used: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SeedLetter:
    id: int | str
    user_id: str
    subspecialty: str
    letter_text: str
    analyzed_at: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SeedLetter":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            subspecialty=row["subspecialty"],
            letter_text=row["letter_text"],
            analyzed_at=row.get("analyzed_at"),
            created_at=row.get("created_at"),
        )


@dataclass
class ProfileOperationResult:
    success: bool
    message: str
    profile: Optional[StyleProfile] = None


@dataclass
class EffectiveProfile:
    profile: Optional[StyleProfile]
    source: ProfileSource


# --- Population aggregates ---

@dataclass
class AggregatedPattern:
    pattern: str
    section_type: Optional[str]
    frequency: int
    clinician_count: int
    percentage_of_clinicians: int = 0


@dataclass
class AggregatedPhrasePattern:
    phrase: str
    section_type: Optional[str]
    action: str
    frequency: int
    clinician_count: int
    percentage_of_clinicians: int = 0


@dataclass
class StyleAggregate:
    subspecialty: str
    period: str
    common_additions: list[dict[str, Any]]
    common_deletions: list[dict[str, Any]]
    section_order_patterns: list[dict[str, Any]]
    phrasing_patterns: list[dict[str, Any]]
    sample_size: int
    id: Optional[int | str] = None
    created_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "StyleAggregate":
        return cls(
            id=row.get("id"),
            subspecialty=row["subspecialty"],
            period=row["period"],
            common_additions=row.get("common_additions") or [],
            common_deletions=row.get("common_deletions") or [],
            section_order_patterns=row.get("section_order_patterns") or [],
            phrasing_patterns=row.get("phrasing_patterns") or [],
            sample_size=int(row.get("sample_size") or 0),
            created_at=row.get("created_at"),
        )
