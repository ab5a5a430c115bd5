"""Pydantic models for the /style and /admin/style-analytics endpoints."""

from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from style.models import (
    FormalityLevel,
    ParagraphStructure,
    ProfileSource,
    SectionType,
    StyleCategory,
    Subspecialty,
    TerminologyLevel,
    VerbosityLevel,
)

MAX_LETTER_LENGTH = 50000


class DiffRequest(BaseModel):
    """Request body for POST /style/diff."""

    draft: str = Field(..., max_length=MAX_LETTER_LENGTH)
    final: str = Field(..., max_length=MAX_LETTER_LENGTH)
    letter_id: Optional[str] = None
    subspecialty: Optional[Subspecialty] = None


class RecordEditsRequest(BaseModel):
    """Request body for POST /style/edits: the AI draft and the approved letter."""

    letter_id: str = Field(..., min_length=1, max_length=200)
    subspecialty: Subspecialty
    draft: str = Field(..., max_length=MAX_LETTER_LENGTH)
    final: str = Field(..., max_length=MAX_LETTER_LENGTH)


class RecordEditsResponse(BaseModel):
    edit_count: int
    analysis_scheduled: bool
    reason: str
    stats: dict[str, Any]


class StyleProfileResponse(BaseModel):
    """Single style profile."""

    id: Optional[Union[int, str]] = None
    user_id: str
    subspecialty: str
    section_order: list[str] = []
    section_inclusion: dict[str, float] = {}
    section_verbosity: dict[str, str] = {}
    phrasing_preferences: dict[str, list[str]] = {}
    avoided_phrases: dict[str, list[str]] = {}
    vocabulary_map: dict[str, str] = {}
    terminology_level: Optional[str] = None
    greeting_style: Optional[str] = None
    closing_style: Optional[str] = None
    signoff_template: Optional[str] = None
    formality_level: Optional[str] = None
    paragraph_structure: Optional[str] = None
    confidence: dict[str, float] = {}
    learning_strength: float = 1.0
    total_edits_analyzed: int = 0
    last_analyzed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class StyleProfileListResponse(BaseModel):
    items: list[StyleProfileResponse]
    total: int


class StyleProfileUpdateRequest(BaseModel):
    """Request body for PUT /style/profiles/{subspecialty}. Omitted fields are left alone."""

    section_order: Optional[list[SectionType]] = None
    section_inclusion: Optional[dict[SectionType, float]] = None
    section_verbosity: Optional[dict[SectionType, VerbosityLevel]] = None
    phrasing_preferences: Optional[dict[SectionType, list[str]]] = None
    avoided_phrases: Optional[dict[SectionType, list[str]]] = None
    vocabulary_map: Optional[dict[str, str]] = None
    terminology_level: Optional[TerminologyLevel] = None
    greeting_style: Optional[StyleCategory] = None
    closing_style: Optional[StyleCategory] = None
    signoff_template: Optional[str] = Field(default=None, max_length=500)
    formality_level: Optional[FormalityLevel] = None
    paragraph_structure: Optional[ParagraphStructure] = None
    learning_strength: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    def to_updates(self) -> dict[str, Any]:
        """Plain-string field values for the fields the caller actually sent."""
        return self.model_dump(exclude_unset=True, mode="json")


class LearningStrengthRequest(BaseModel):
    learning_strength: float


class ProfileOperationResponse(BaseModel):
    success: bool
    message: str
    profile: Optional[StyleProfileResponse] = None


class EditStatistics(BaseModel):
    total_edits: int = 0
    edits_last_7_days: int = 0
    edits_last_30_days: int = 0
    last_edit_at: Optional[str] = None


class ProfileStatusResponse(BaseModel):
    """Trigger decision plus edit statistics for one subspecialty."""

    has_profile: bool
    should_analyze: bool
    edit_count: int
    reason: str
    statistics: EditStatistics


class AnalyzeRequest(BaseModel):
    force: bool = False


class AnalysisResponse(BaseModel):
    analyzed: bool
    reason: str
    edits_analyzed: int = 0
    insights: list[str] = []
    model_used: Optional[str] = None
    profile: Optional[StyleProfileResponse] = None


class GlobalProfileResponse(BaseModel):
    """The clinician's user-level profile document, or None before any global analysis."""

    profile: Optional[dict[str, Any]] = None


class GlobalAnalysisResponse(AnalysisResponse):
    profile: Optional[dict[str, Any]] = None


class EffectiveProfileResponse(BaseModel):
    source: ProfileSource
    profile: Optional[StyleProfileResponse] = None


class ConditionedPromptRequest(BaseModel):
    """Request body for POST /style/prompt."""

    base_prompt: str = Field(..., min_length=1, max_length=MAX_LETTER_LENGTH)
    subspecialty: Optional[Subspecialty] = None
    letter_type: Optional[str] = Field(default=None, max_length=100)


class ConditionedPromptResponse(BaseModel):
    prompt: str
    applied: bool
    source: ProfileSource
    hints: dict[str, Any]
    config: dict[str, Any]


class SeedLetterCreateRequest(BaseModel):
    """Request body for POST /style/seed."""

    subspecialty: Subspecialty
    letter_text: str = Field(..., min_length=1, max_length=MAX_LETTER_LENGTH)


class SeedLetterResponse(BaseModel):
    id: Union[int, str]
    subspecialty: str
    letter_text: str
    analyzed_at: Optional[str] = None
    created_at: Optional[str] = None


class SeedLetterListResponse(BaseModel):
    items: list[SeedLetterResponse]
    total: int


class SeedLetterDeleteResponse(BaseModel):
    deleted: bool
    id: Union[int, str]


class StyleAggregateResponse(BaseModel):
    id: Optional[Union[int, str]] = None
    subspecialty: str
    period: str
    common_additions: list[dict[str, Any]]
    common_deletions: list[dict[str, Any]]
    section_order_patterns: list[dict[str, Any]]
    phrasing_patterns: list[dict[str, Any]]
    sample_size: int
    created_at: Optional[str] = None


class AggregationRunResponse(BaseModel):
    processed: list[str]
    skipped: list[str]
