"""Per-clinician, per-subspecialty style profile storage with caching and fallback."""

from __future__ import annotations

import copy
import logging
from typing import Any, Optional

from storage import call_db, get_active_db
from style.audit import record_audit
from style.cache import TTLCache, profile_cache_key
from style.config import MIN_EDITS_FOR_ANALYSIS
from style.models import (
    EffectiveProfile,
    ProfileOperationResult,
    ProfileSource,
    SeedLetter,
    StyleProfile,
    Subspecialty,
    clamp_unit,
)

logger = logging.getLogger(__name__)

# Fields a caller may set directly; counters and timestamps are managed here.
_EDITABLE_FIELDS = {
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
    "learning_strength",
}
_UPDATABLE_FIELDS = _EDITABLE_FIELDS | {"confidence", "total_edits_analyzed", "last_analyzed_at"}


def _subspecialty_value(subspecialty: Any) -> str:
    return subspecialty.value if isinstance(subspecialty, Subspecialty) else str(subspecialty)


def convert_global_profile(
    user_id: str, doc: dict[str, Any], subspecialty: Optional[str] = None,
) -> Optional[StyleProfile]:
    """Express a user-level profile document as a subspecialty profile.

    Returns None when the document lacks a confidence map or an edit count.
    """
    confidence = doc.get("confidence")
    total = doc.get("total_edits_analyzed")
    if not isinstance(confidence, dict) or not isinstance(total, int) or isinstance(total, bool):
        return None

    closing_examples = doc.get("closing_examples") or []
    # Older documents carry no section-order confidence; paragraph structure stands in
    order_confidence = confidence.get("section_order", confidence.get("paragraph_structure", 0))
    return StyleProfile(
        id="global",
        user_id=user_id,
        subspecialty=subspecialty or Subspecialty.GENERAL_CARDIOLOGY.value,
        section_order=list(doc.get("section_order") or []),
        vocabulary_map=dict(doc.get("vocabulary_preferences") or {}),
        greeting_style=doc.get("greeting_style"),
        closing_style=doc.get("closing_style"),
        signoff_template=closing_examples[0] if closing_examples else None,
        formality_level=doc.get("formality_level"),
        paragraph_structure=doc.get("paragraph_structure"),
        confidence={
            "section_order": clamp_unit(order_confidence),
            "section_inclusion": 0.0,
            "section_verbosity": 0.0,
            "phrasing_preferences": 0.0,
            "avoided_phrases": 0.0,
            "vocabulary_map": clamp_unit(confidence.get("vocabulary_map", 0.5)),
            "terminology_level": 0.0,
            "greeting_style": clamp_unit(confidence.get("greeting_style", 0)),
            "closing_style": clamp_unit(confidence.get("closing_style", 0)),
            "signoff_template": clamp_unit(confidence.get("closing_style", 0)),
            "formality_level": clamp_unit(confidence.get("formality_level", 0)),
            "paragraph_structure": clamp_unit(confidence.get("paragraph_structure", 0)),
        },
        learning_strength=1.0,
        total_edits_analyzed=total,
        last_analyzed_at=doc.get("last_analyzed_at"),
    )


_GLOBAL_CONFIDENCE_KEYS = (
    "section_order",
    "vocabulary_map",
    "greeting_style",
    "closing_style",
    "formality_level",
    "paragraph_structure",
)


def global_profile_document(profile: StyleProfile) -> dict[str, Any]:
    """The user-level document for *profile*; the inverse of convert_global_profile."""
    return {
        "section_order": list(profile.section_order),
        "vocabulary_preferences": dict(profile.vocabulary_map),
        "greeting_style": profile.greeting_style,
        "closing_style": profile.closing_style,
        "closing_examples": [profile.signoff_template] if profile.signoff_template else [],
        "formality_level": profile.formality_level,
        "paragraph_structure": profile.paragraph_structure,
        "confidence": {
            k: profile.confidence[k] for k in _GLOBAL_CONFIDENCE_KEYS if k in profile.confidence
        },
        "total_edits_analyzed": profile.total_edits_analyzed,
        "last_analyzed_at": profile.last_analyzed_at,
    }


class StyleProfileService:
    """CRUD, seed letters, statistics and effective-profile resolution."""

    def __init__(self, db: Any, cache: Optional[TTLCache] = None) -> None:
        self._db = db
        self._cache = cache if cache is not None else TTLCache()

    @property
    def db(self) -> Any:
        return self._db

    @property
    def cache(self) -> TTLCache:
        return self._cache

    # --- Internal helpers ---

    async def _persist(self, profile: StyleProfile) -> StyleProfile:
        row = await call_db(
            self._db, "upsert_style_profile",
            profile.user_id, profile.subspecialty,
            preferences=profile.preferences(),
            confidence={k: clamp_unit(v) for k, v in profile.confidence.items()},
            learning_strength=clamp_unit(profile.learning_strength),
            total_edits_analyzed=max(0, int(profile.total_edits_analyzed)),
            last_analyzed_at=profile.last_analyzed_at,
        )
        saved = StyleProfile.from_row(row)
        key = profile_cache_key(saved.user_id, saved.subspecialty)
        self._cache.invalidate(key)
        self._cache.set(key, saved)
        return saved

    # --- Profiles ---

    async def get_profile(self, user_id: str, subspecialty: Any) -> Optional[StyleProfile]:
        sub = _subspecialty_value(subspecialty)
        key = profile_cache_key(user_id, sub)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        row = await call_db(self._db, "get_style_profile", user_id, sub)
        if row is None:
            return None
        profile = StyleProfile.from_row(row)
        self._cache.set(key, profile)
        return profile

    async def list_profiles(self, user_id: str) -> list[StyleProfile]:
        rows = await call_db(self._db, "list_style_profiles", user_id)
        return [StyleProfile.from_row(r) for r in rows]

    async def create_profile(self, user_id: str, subspecialty: Any, **fields: Any) -> StyleProfile:
        """Create an empty (or partially specified) profile; updates it if it already exists."""
        sub = _subspecialty_value(subspecialty)
        if await self.get_profile(user_id, sub) is not None:
            logger.info("Profile %s/%s exists, updating instead", user_id, sub)
            return await self.update_profile(user_id, sub, fields)

        profile = StyleProfile(user_id=user_id, subspecialty=sub)
        for name, value in fields.items():
            if name in _EDITABLE_FIELDS and value is not None:
                setattr(profile, name, value)
        saved = await self._persist(profile)
        await record_audit(
            self._db, user_id, "style.subspecialty_profile_created", "style_profile",
            str(saved.id), {"subspecialty": sub},
        )
        logger.info("Style profile created for %s/%s", user_id, sub)
        return saved

    async def get_or_create_profile(self, user_id: str, subspecialty: Any) -> StyleProfile:
        existing = await self.get_profile(user_id, subspecialty)
        if existing is not None:
            return existing
        return await self.create_profile(user_id, subspecialty)

    async def update_profile(
        self, user_id: str, subspecialty: Any, updates: StyleProfile | dict[str, Any],
    ) -> StyleProfile:
        """Apply field updates (or replace with a full profile) and refresh the cache."""
        sub = _subspecialty_value(subspecialty)
        if isinstance(updates, StyleProfile):
            profile = updates
            profile.user_id, profile.subspecialty = user_id, sub
        else:
            current = await self.get_profile(user_id, sub)
            if current is None:
                profile = StyleProfile(user_id=user_id, subspecialty=sub)
            else:
                profile = copy.deepcopy(current)
            for name, value in updates.items():
                if name in _UPDATABLE_FIELDS:
                    setattr(profile, name, value)
        saved = await self._persist(profile)
        await record_audit(
            self._db, user_id, "style.subspecialty_profile_updated", "style_profile",
            str(saved.id), {"subspecialty": sub},
        )
        return saved

    async def save_profile(self, profile: StyleProfile) -> StyleProfile:
        """Persist a complete profile produced by the learning pipeline."""
        return await self._persist(profile)

    async def delete_profile(self, user_id: str, subspecialty: Any) -> ProfileOperationResult:
        sub = _subspecialty_value(subspecialty)
        existing = await call_db(self._db, "get_style_profile", user_id, sub)
        if existing is None:
            return ProfileOperationResult(
                success=False,
                message=f"No style profile found for subspecialty {sub}",
            )

        await call_db(self._db, "delete_style_profile", user_id, sub)
        self._cache.invalidate(profile_cache_key(user_id, sub))
        await record_audit(
            self._db, user_id, "style.subspecialty_profile_deleted", "style_profile",
            str(existing.get("id")),
            {"subspecialty": sub, "total_edits_analyzed": existing.get("total_edits_analyzed", 0)},
        )
        logger.info("Style profile %s/%s reset to defaults", user_id, sub)
        return ProfileOperationResult(
            success=True,
            message=f"Style profile for {sub} has been reset to defaults",
        )

    async def adjust_learning_strength(
        self, user_id: str, subspecialty: Any, value: float,
    ) -> ProfileOperationResult:
        sub = _subspecialty_value(subspecialty)
        if value is None or not 0.0 <= value <= 1.0:
            return ProfileOperationResult(
                success=False, message="Learning strength must be between 0.0 and 1.0",
            )

        existing = await self.get_profile(user_id, sub)
        if existing is None:
            return ProfileOperationResult(
                success=False, message=f"No style profile found for subspecialty {sub}",
            )

        previous = existing.learning_strength
        updated = copy.deepcopy(existing)
        updated.learning_strength = float(value)
        saved = await self._persist(updated)
        await record_audit(
            self._db, user_id, "style.learning_strength_adjusted", "style_profile",
            str(saved.id),
            {"subspecialty": sub, "previous_strength": previous, "new_strength": value},
        )
        return ProfileOperationResult(
            success=True,
            message=f"Learning strength updated to {value}",
            profile=saved,
        )

    # --- Global profile ---

    async def get_global_profile(self, user_id: str) -> Optional[dict[str, Any]]:
        return await call_db(self._db, "get_global_style_profile", user_id)

    async def set_global_profile(self, user_id: str, doc: dict[str, Any]) -> None:
        await call_db(self._db, "set_global_style_profile", user_id, doc)
        await record_audit(self._db, user_id, "style.global_profile_updated", "style_profile", user_id)

    async def get_effective_profile(
        self, user_id: str, subspecialty: Any = None,
    ) -> EffectiveProfile:
        """Subspecialty profile, else the global profile, else the default (None)."""
        sub = _subspecialty_value(subspecialty) if subspecialty else None
        if sub:
            profile = await self.get_profile(user_id, sub)
            if profile is not None and profile.total_edits_analyzed > 0:
                return EffectiveProfile(profile=profile, source=ProfileSource.SUBSPECIALTY)

        doc = await self.get_global_profile(user_id)
        if doc and doc.get("total_edits_analyzed") and doc.get("confidence"):
            converted = convert_global_profile(user_id, doc, sub)
            if converted is not None:
                return EffectiveProfile(profile=converted, source=ProfileSource.GLOBAL)

        return EffectiveProfile(profile=None, source=ProfileSource.DEFAULT)

    # --- Seed letters ---

    async def create_seed_letter(self, user_id: str, subspecialty: Any, letter_text: str) -> SeedLetter:
        sub = _subspecialty_value(subspecialty)
        row = await call_db(self._db, "create_seed_letter", user_id, sub, letter_text)
        seed = SeedLetter.from_row(row)
        await record_audit(
            self._db, user_id, "style.seed_letter_created", "style_seed_letter",
            str(seed.id), {"subspecialty": sub, "length": len(letter_text)},
        )
        return seed

    async def list_seed_letters(
        self, user_id: str, subspecialty: Any = None, unanalyzed_only: bool = False,
        limit: Optional[int] = None,
    ) -> list[SeedLetter]:
        sub = _subspecialty_value(subspecialty) if subspecialty else None
        rows = await call_db(
            self._db, "list_seed_letters", user_id, sub,
            unanalyzed_only=unanalyzed_only, limit=limit,
        )
        return [SeedLetter.from_row(r) for r in rows]

    async def get_seed_letter(self, user_id: str, seed_id: int | str) -> Optional[SeedLetter]:
        row = await call_db(self._db, "get_seed_letter", seed_id, user_id)
        return SeedLetter.from_row(row) if row else None

    async def delete_seed_letter(self, user_id: str, seed_id: int | str) -> bool:
        seed = await self.get_seed_letter(user_id, seed_id)
        if seed is None:
            return False
        deleted = await call_db(self._db, "delete_seed_letter", seed_id, user_id)
        if deleted:
            await record_audit(
                self._db, user_id, "style.seed_letter_deleted", "style_seed_letter", str(seed_id),
                {"subspecialty": seed.subspecialty, "analyzed": seed.analyzed_at is not None},
            )
        return deleted

    async def mark_seed_letters_analyzed(self, seed_ids: list[int | str]) -> int:
        return await call_db(self._db, "mark_seed_letters_analyzed", seed_ids)

    # --- Edit statistics ---

    async def get_edit_statistics(self, user_id: str, subspecialty: Any) -> dict[str, Any]:
        return await call_db(
            self._db, "get_edit_statistics", user_id, _subspecialty_value(subspecialty),
        )

    async def has_enough_edits_for_analysis(
        self, user_id: str, subspecialty: Any, min_edits: int = MIN_EDITS_FOR_ANALYSIS,
    ) -> bool:
        count = await call_db(
            self._db, "count_style_edits", user_id, _subspecialty_value(subspecialty),
        )
        return count >= min_edits

    # --- Cache management ---

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> dict[str, Any]:
        return self._cache.stats()


_service_instance: StyleProfileService | None = None


def get_profile_service() -> StyleProfileService:
    """Return the module-level StyleProfileService singleton."""
    global _service_instance
    if _service_instance is None:
        _service_instance = StyleProfileService(get_active_db())
    return _service_instance
