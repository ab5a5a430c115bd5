"""Threshold-triggered style analysis: edits in, merged profile out.

State per (clinician, subspecialty): no profile, pending first analysis,
analyzed, and re-analysis pending once enough new edits accumulate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from llm.client import LLMClient, get_llm_client
from llm.prompt_engine import (
    ANALYSIS_SYSTEM_PROMPT,
    SEED_LETTER_SYSTEM_PROMPT,
    build_seed_letter_prompt,
    build_style_analysis_prompt,
)
from llm.response_parser import parse_style_analysis
from storage import call_db
from style.audit import record_audit
from style.config import (
    ANALYSIS_INTERVAL,
    ANALYSIS_MAX_TOKENS,
    ANALYSIS_TEMPERATURE,
    MAX_EDITS_PER_ANALYSIS,
    MAX_SEED_LETTERS_PER_ANALYSIS,
    MIN_EDITS_FOR_ANALYSIS,
)
from style.errors import InsufficientEditsError, StyleAnalysisError
from style.models import AnalysisResult, StyleEdit, StyleProfile, Subspecialty
from style.profile_merge import merge_profile_analysis
from style.profile_service import (
    StyleProfileService,
    convert_global_profile,
    get_profile_service,
    global_profile_document,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


@dataclass
class TriggerDecision:
    should_analyze: bool
    edit_count: int
    reason: str


@dataclass
class QueueResult:
    queued: bool
    reason: str
    result: Optional[AnalysisResult] = None


class LearningPipeline:
    """Decides when to analyze, runs the analysis and folds it into the profile.

    *client_factory* builds the LLM client lazily so a missing API key only
    fails the analysis, not the recording of edits.
    """

    def __init__(
        self,
        profile_service: StyleProfileService,
        client_factory: Callable[[], LLMClient] = get_llm_client,
    ) -> None:
        self._profiles = profile_service
        self._client_factory = client_factory

    @property
    def profile_service(self) -> StyleProfileService:
        return self._profiles

    @property
    def _db(self) -> Any:
        return self._profiles.db

    # --- Triggering ---

    async def get_edit_count_since_last_analysis(self, user_id: str, subspecialty: str) -> int:
        profile = await self._profiles.get_profile(user_id, subspecialty)
        since = profile.last_analyzed_at if profile else None
        return await call_db(self._db, "count_style_edits", user_id, subspecialty, since=since)

    async def should_trigger_analysis(self, user_id: str, subspecialty: str) -> TriggerDecision:
        profile = await self._profiles.get_profile(user_id, subspecialty)

        if profile is None:
            total = await call_db(self._db, "count_style_edits", user_id, subspecialty)
            if total >= MIN_EDITS_FOR_ANALYSIS:
                return TriggerDecision(True, total, f"Initial analysis: {total} edits recorded")
            return TriggerDecision(
                False, total,
                f"Need {MIN_EDITS_FOR_ANALYSIS} edits for initial analysis, have {total}",
            )

        new_edits = await call_db(
            self._db, "count_style_edits", user_id, subspecialty, since=profile.last_analyzed_at,
        )
        if new_edits >= ANALYSIS_INTERVAL:
            return TriggerDecision(
                True, new_edits, f"Re-analysis: {new_edits} new edits since last analysis",
            )
        return TriggerDecision(
            False, new_edits,
            f"Need {ANALYSIS_INTERVAL} new edits for re-analysis, have {new_edits}",
        )

    async def queue_style_analysis(
        self, user_id: str, subspecialty: str, force: bool = False,
    ) -> QueueResult:
        """Run the analysis if it is due (or forced). Failures come back as ``queued=False``."""
        if not force:
            decision = await self.should_trigger_analysis(user_id, subspecialty)
            if not decision.should_analyze:
                return QueueResult(queued=False, reason=decision.reason)

        try:
            result = await self.run_style_analysis(user_id, subspecialty, force=force)
        except InsufficientEditsError as exc:
            return QueueResult(queued=False, reason=str(exc))
        except StyleAnalysisError as exc:
            logger.warning("Style analysis failed for %s/%s: %s", user_id, subspecialty, exc)
            return QueueResult(queued=False, reason=f"Analysis failed: {exc}")

        if result is None:
            return QueueResult(queued=True, reason="No new edits to analyze")
        return QueueResult(
            queued=True, reason=f"Analyzed {result.edits_analyzed} edits", result=result,
        )

    # --- Analysis ---

    async def _complete(self, system_prompt: str, prompt: str) -> tuple[str, str]:
        client = self._client_factory()
        response = await client.call(
            system_prompt=system_prompt,
            user_prompt=prompt,
            max_tokens=ANALYSIS_MAX_TOKENS,
            temperature=ANALYSIS_TEMPERATURE,
        )
        logger.info(
            "Style analysis LLM call complete (model=%s, in=%s, out=%s)",
            response.model, response.input_tokens, response.output_tokens,
        )
        return response.text_content, response.model

    async def run_style_analysis(
        self, user_id: str, subspecialty: str, force: bool = False,
    ) -> Optional[AnalysisResult]:
        """Analyze edits made since the last analysis and merge them into the profile.

        Returns None when forced with nothing to analyze. Raises
        InsufficientEditsError when unforced and below the minimum, and
        StyleAnalysisError when the LLM call or its parsing fails (nothing is
        merged in that case).
        """
        profile = await self._profiles.get_profile(user_id, subspecialty)
        since = profile.last_analyzed_at if profile else None
        rows = await call_db(
            self._db, "list_style_edits", user_id, subspecialty,
            since=since, limit=MAX_EDITS_PER_ANALYSIS,
        )
        edits = [StyleEdit.from_row(r) for r in rows]

        if len(edits) < MIN_EDITS_FOR_ANALYSIS and not force:
            raise InsufficientEditsError(len(edits), MIN_EDITS_FOR_ANALYSIS)
        if not edits:
            logger.info("Forced analysis for %s/%s found no new edits", user_id, subspecialty)
            return None

        prompt = build_style_analysis_prompt(edits, subspecialty)
        try:
            text, model = await self._complete(ANALYSIS_SYSTEM_PROMPT, prompt)
            analysis = parse_style_analysis(text, user_id, subspecialty, len(edits), model)
        except Exception as exc:
            logger.exception("Style analysis failed for %s/%s", user_id, subspecialty)
            raise StyleAnalysisError(str(exc)) from exc

        saved = await self._merge_and_store(profile, analysis)
        await record_audit(
            self._db, user_id, "style.analysis_completed", "style_profile", str(saved.id),
            {
                "subspecialty": subspecialty,
                "edits_analyzed": len(edits),
                "total_edits_analyzed": saved.total_edits_analyzed,
                "model_used": analysis.model_used,
            },
        )
        logger.info(
            "Style profile %s/%s updated from %d edits", user_id, subspecialty, len(edits),
        )
        return analysis

    async def analyze_seed_letters(
        self, user_id: str, subspecialty: str,
    ) -> Optional[AnalysisResult]:
        """Bootstrap the profile from unanalyzed sample letters. None when there are none."""
        seeds = await self._profiles.list_seed_letters(
            user_id, subspecialty, unanalyzed_only=True, limit=MAX_SEED_LETTERS_PER_ANALYSIS,
        )
        if not seeds:
            logger.info("No seed letters to analyze for %s/%s", user_id, subspecialty)
            return None

        prompt = build_seed_letter_prompt([s.letter_text for s in seeds], subspecialty)
        try:
            text, model = await self._complete(SEED_LETTER_SYSTEM_PROMPT, prompt)
            analysis = parse_style_analysis(text, user_id, subspecialty, len(seeds), model)
        except Exception as exc:
            logger.exception("Seed letter analysis failed for %s/%s", user_id, subspecialty)
            raise StyleAnalysisError(str(exc)) from exc

        await self._profiles.mark_seed_letters_analyzed([s.id for s in seeds])
        profile = await self._profiles.get_profile(user_id, subspecialty)
        saved = await self._merge_and_store(profile, analysis)
        await record_audit(
            self._db, user_id, "style.seed_letters_analyzed", "style_profile", str(saved.id),
            {
                "subspecialty": subspecialty,
                "seed_letters_analyzed": len(seeds),
                "model_used": analysis.model_used,
            },
        )
        return analysis

    # --- User-level (global) profile ---

    async def run_global_analysis(
        self, user_id: str, force: bool = False,
    ) -> Optional[AnalysisResult]:
        """Analyze a clinician's edits across every subspecialty into the global profile.

        The global profile is what get_effective_profile falls back to for
        subspecialties with nothing learned yet. Thresholds and failure
        handling match run_style_analysis.
        """
        doc = await self._profiles.get_global_profile(user_id)
        existing = convert_global_profile(user_id, doc) if doc else None
        since = existing.last_analyzed_at if existing else None
        rows = await call_db(
            self._db, "list_style_edits", user_id, None,
            since=since, limit=MAX_EDITS_PER_ANALYSIS,
        )
        edits = [StyleEdit.from_row(r) for r in rows]

        if len(edits) < MIN_EDITS_FOR_ANALYSIS and not force:
            raise InsufficientEditsError(len(edits), MIN_EDITS_FOR_ANALYSIS)
        if not edits:
            logger.info("Forced global analysis for %s found no new edits", user_id)
            return None

        prompt = build_style_analysis_prompt(edits, None)
        sub = existing.subspecialty if existing else Subspecialty.GENERAL_CARDIOLOGY.value
        try:
            text, model = await self._complete(ANALYSIS_SYSTEM_PROMPT, prompt)
            analysis = parse_style_analysis(text, user_id, sub, len(edits), model)
        except Exception as exc:
            logger.exception("Global style analysis failed for %s", user_id)
            raise StyleAnalysisError(str(exc)) from exc

        merged = merge_profile_analysis(existing, analysis)
        merged.last_analyzed_at = _now()
        await self._profiles.set_global_profile(user_id, global_profile_document(merged))
        await record_audit(
            self._db, user_id, "style.global_analysis_completed", "style_profile", user_id,
            {
                "edits_analyzed": len(edits),
                "total_edits_analyzed": merged.total_edits_analyzed,
                "model_used": analysis.model_used,
            },
        )
        logger.info("Global style profile for %s updated from %d edits", user_id, len(edits))
        return analysis

    async def _merge_and_store(
        self, profile: Optional[StyleProfile], analysis: AnalysisResult,
    ) -> StyleProfile:
        merged = merge_profile_analysis(profile, analysis)
        merged.last_analyzed_at = _now()
        return await self._profiles.save_profile(merged)


_pipeline_instance: LearningPipeline | None = None


def get_learning_pipeline() -> LearningPipeline:
    """Return the module-level LearningPipeline singleton."""
    global _pipeline_instance
    if _pipeline_instance is None:
        _pipeline_instance = LearningPipeline(get_profile_service())
    return _pipeline_instance
