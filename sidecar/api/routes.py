import logging
from dataclasses import asdict
from typing import Any, Awaitable, Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Query, Request

from api.rate_limit import STYLE_ANALYSIS_RATE_LIMIT, limiter
from api.style_models import (
    AnalysisResponse,
    AnalyzeRequest,
    ConditionedPromptRequest,
    ConditionedPromptResponse,
    DiffRequest,
    EditStatistics,
    EffectiveProfileResponse,
    GlobalAnalysisResponse,
    GlobalProfileResponse,
    LearningStrengthRequest,
    ProfileOperationResponse,
    ProfileStatusResponse,
    RecordEditsRequest,
    RecordEditsResponse,
    SeedLetterCreateRequest,
    SeedLetterDeleteResponse,
    SeedLetterListResponse,
    SeedLetterResponse,
    StyleProfileListResponse,
    StyleProfileResponse,
    StyleProfileUpdateRequest,
)
from storage import get_active_db
from style.diff_analyzer import (
    analyze_diff,
    extract_added_phrases,
    extract_removed_phrases,
    extract_vocabulary_substitutions,
)
from style.edit_recorder import record_letter_edits
from style.errors import InsufficientEditsError, StyleAnalysisError, StyleError
from style.learning_pipeline import LearningPipeline, get_learning_pipeline
from style.models import AnalysisResult, SeedLetter, StyleProfile, Subspecialty
from style.profile_service import StyleProfileService, get_profile_service
from style.prompt_conditioner import build_style_conditioned_prompt

_logger = logging.getLogger(__name__)
_db_logger = logging.getLogger("db_call")

router = APIRouter()


def _get_user_id(request: Request) -> str:
    """Extract user_id from request state (set by AuthMiddleware)."""
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="Authentication required.")
    return user_id


async def _db_call(action: str, awaitable: Awaitable[Any]) -> Any:
    """Await a storage-backed service call, mapping storage failures to HTTP 500."""
    try:
        return await awaitable
    except (HTTPException, StyleError):
        raise
    except Exception as exc:
        _db_logger.exception("Database error in %s: %s", action, exc)
        raise HTTPException(
            status_code=500,
            detail="A database error occurred. Please try again.",
        )


def _profile_response(profile: Optional[StyleProfile]) -> Optional[StyleProfileResponse]:
    if profile is None:
        return None
    return StyleProfileResponse(**profile.to_dict())


def _seed_response(seed: SeedLetter) -> SeedLetterResponse:
    return SeedLetterResponse(
        id=seed.id,
        subspecialty=seed.subspecialty,
        letter_text=seed.letter_text,
        analyzed_at=seed.analyzed_at,
        created_at=seed.created_at,
    )


def _analysis_response(
    result: Optional[AnalysisResult], profile: Optional[StyleProfile], empty_reason: str,
) -> AnalysisResponse:
    if result is None:
        return AnalysisResponse(analyzed=False, reason=empty_reason)
    return AnalysisResponse(
        analyzed=True,
        reason=f"Analyzed {result.edits_analyzed} items",
        edits_analyzed=result.edits_analyzed,
        insights=result.insights,
        model_used=result.model_used,
        profile=_profile_response(profile),
    )


@router.get("/health")
async def health_check():
    try:
        get_active_db()
        return {"status": "ok"}
    except Exception:
        return {"status": "starting"}


# --- Diffing and edit capture ---

@router.post("/style/diff")
async def preview_diff(body: DiffRequest = Body(...)):
    """Structural diff of two letter versions, with the phrases and word swaps
    it implies. Nothing is stored."""
    diff = analyze_diff(
        body.draft,
        body.final,
        letter_id=body.letter_id,
        subspecialty=body.subspecialty.value if body.subspecialty else None,
    )
    data = diff.to_dict()
    data["added_phrases"] = extract_added_phrases(diff)
    data["removed_phrases"] = extract_removed_phrases(diff)
    data["vocabulary_substitutions"] = extract_vocabulary_substitutions(diff)
    return data


async def _run_queued_analysis(
    pipeline: LearningPipeline, user_id: str, subspecialty: str,
) -> None:
    """Background follow-up to an edit capture. Never raises."""
    try:
        result = await pipeline.queue_style_analysis(user_id, subspecialty)
        _logger.info(
            "Background style analysis for %s/%s: queued=%s (%s)",
            user_id, subspecialty, result.queued, result.reason,
        )
    except Exception:
        _logger.exception("Background style analysis crashed for %s/%s", user_id, subspecialty)


@router.post("/style/edits", response_model=RecordEditsResponse)
async def record_edits(
    request: Request,
    background_tasks: BackgroundTasks,
    body: RecordEditsRequest = Body(...),
    pipeline: LearningPipeline = Depends(get_learning_pipeline),
):
    """Record the clinician's edits to an approved letter.

    When enough edits have accumulated, an analysis is scheduled to run
    after the response is sent.
    """
    user_id = _get_user_id(request)
    sub = body.subspecialty.value
    service = pipeline.profile_service

    result = await _db_call(
        "record_letter_edits",
        record_letter_edits(service.db, user_id, body.letter_id, sub, body.draft, body.final),
    )
    decision = await _db_call(
        "should_trigger_analysis", pipeline.should_trigger_analysis(user_id, sub),
    )
    if decision.should_analyze:
        background_tasks.add_task(_run_queued_analysis, pipeline, user_id, sub)

    return RecordEditsResponse(
        edit_count=result.edit_count,
        analysis_scheduled=decision.should_analyze,
        reason=decision.reason,
        stats=asdict(result.diff.stats),
    )


# --- Profiles ---

@router.get("/style/profiles", response_model=StyleProfileListResponse)
async def list_profiles(
    request: Request,
    service: StyleProfileService = Depends(get_profile_service),
):
    user_id = _get_user_id(request)
    profiles = await _db_call("list_profiles", service.list_profiles(user_id))
    items = [_profile_response(p) for p in profiles]
    return StyleProfileListResponse(items=items, total=len(items))


@router.get("/style/profiles/{subspecialty}", response_model=StyleProfileResponse)
async def get_profile(
    request: Request,
    subspecialty: Subspecialty,
    service: StyleProfileService = Depends(get_profile_service),
):
    user_id = _get_user_id(request)
    profile = await _db_call("get_profile", service.get_profile(user_id, subspecialty))
    if profile is None:
        raise HTTPException(
            status_code=404, detail=f"No style profile found for subspecialty {subspecialty.value}",
        )
    return _profile_response(profile)


@router.put("/style/profiles/{subspecialty}", response_model=StyleProfileResponse)
async def update_profile(
    request: Request,
    subspecialty: Subspecialty,
    body: StyleProfileUpdateRequest = Body(...),
    service: StyleProfileService = Depends(get_profile_service),
):
    """Manually set preferences; unspecified fields keep their learned values."""
    user_id = _get_user_id(request)
    profile = await _db_call(
        "update_profile", service.update_profile(user_id, subspecialty, body.to_updates()),
    )
    return _profile_response(profile)


@router.delete("/style/profiles/{subspecialty}", response_model=ProfileOperationResponse)
async def reset_profile(
    request: Request,
    subspecialty: Subspecialty,
    service: StyleProfileService = Depends(get_profile_service),
):
    """Hard-delete the profile so the clinician starts again from defaults."""
    user_id = _get_user_id(request)
    result = await _db_call("delete_profile", service.delete_profile(user_id, subspecialty))
    if not result.success:
        raise HTTPException(status_code=404, detail=result.message)
    return ProfileOperationResponse(success=True, message=result.message)


@router.patch("/style/profiles/{subspecialty}/strength", response_model=ProfileOperationResponse)
async def adjust_learning_strength(
    request: Request,
    subspecialty: Subspecialty,
    body: LearningStrengthRequest = Body(...),
    service: StyleProfileService = Depends(get_profile_service),
):
    user_id = _get_user_id(request)
    result = await _db_call(
        "adjust_learning_strength",
        service.adjust_learning_strength(user_id, subspecialty, body.learning_strength),
    )
    if not result.success:
        in_range = 0.0 <= body.learning_strength <= 1.0
        raise HTTPException(status_code=404 if in_range else 400, detail=result.message)
    return ProfileOperationResponse(
        success=True, message=result.message, profile=_profile_response(result.profile),
    )


@router.get("/style/profiles/{subspecialty}/status", response_model=ProfileStatusResponse)
async def profile_status(
    request: Request,
    subspecialty: Subspecialty,
    pipeline: LearningPipeline = Depends(get_learning_pipeline),
):
    """Whether an analysis is due, and the clinician's edit activity."""
    user_id = _get_user_id(request)
    service = pipeline.profile_service
    profile = await _db_call("get_profile", service.get_profile(user_id, subspecialty))
    decision = await _db_call(
        "should_trigger_analysis", pipeline.should_trigger_analysis(user_id, subspecialty.value),
    )
    stats = await _db_call(
        "get_edit_statistics", service.get_edit_statistics(user_id, subspecialty),
    )
    return ProfileStatusResponse(
        has_profile=profile is not None,
        should_analyze=decision.should_analyze,
        edit_count=decision.edit_count,
        reason=decision.reason,
        statistics=EditStatistics(**stats),
    )


@router.post("/style/profiles/{subspecialty}/analyze", response_model=AnalysisResponse)
@limiter.limit(STYLE_ANALYSIS_RATE_LIMIT)
async def analyze_profile(
    request: Request,
    subspecialty: Subspecialty,
    body: Optional[AnalyzeRequest] = Body(default=None),
    pipeline: LearningPipeline = Depends(get_learning_pipeline),
):
    """Run an analysis now. ``force`` skips the minimum-edit threshold."""
    user_id = _get_user_id(request)
    force = body.force if body else False
    try:
        result = await _db_call(
            "run_style_analysis",
            pipeline.run_style_analysis(user_id, subspecialty.value, force=force),
        )
    except InsufficientEditsError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except StyleAnalysisError as exc:
        raise HTTPException(status_code=502, detail=f"Style analysis failed: {exc}")

    profile = None
    if result is not None:
        profile = await _db_call(
            "get_profile", pipeline.profile_service.get_profile(user_id, subspecialty),
        )
    return _analysis_response(result, profile, "No new edits to analyze")


# --- User-level (global) profile ---

@router.get("/style/global", response_model=GlobalProfileResponse)
async def get_global_profile(
    request: Request,
    service: StyleProfileService = Depends(get_profile_service),
):
    user_id = _get_user_id(request)
    doc = await _db_call("get_global_profile", service.get_global_profile(user_id))
    return GlobalProfileResponse(profile=doc)


@router.post("/style/global/analyze", response_model=GlobalAnalysisResponse)
@limiter.limit(STYLE_ANALYSIS_RATE_LIMIT)
async def analyze_global_profile(
    request: Request,
    body: Optional[AnalyzeRequest] = Body(default=None),
    pipeline: LearningPipeline = Depends(get_learning_pipeline),
):
    """Learn the user-level profile from edits across every subspecialty."""
    user_id = _get_user_id(request)
    force = body.force if body else False
    try:
        result = await _db_call(
            "run_global_analysis", pipeline.run_global_analysis(user_id, force=force),
        )
    except InsufficientEditsError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except StyleAnalysisError as exc:
        raise HTTPException(status_code=502, detail=f"Style analysis failed: {exc}")

    if result is None:
        return GlobalAnalysisResponse(analyzed=False, reason="No new edits to analyze")
    doc = await _db_call(
        "get_global_profile", pipeline.profile_service.get_global_profile(user_id),
    )
    return GlobalAnalysisResponse(
        analyzed=True,
        reason=f"Analyzed {result.edits_analyzed} items",
        edits_analyzed=result.edits_analyzed,
        insights=result.insights,
        model_used=result.model_used,
        profile=doc,
    )


# --- Generation-time conditioning ---

@router.get("/style/effective", response_model=EffectiveProfileResponse)
async def effective_profile(
    request: Request,
    subspecialty: Optional[Subspecialty] = Query(default=None),
    service: StyleProfileService = Depends(get_profile_service),
):
    """The profile generation would use: subspecialty, then global, then default."""
    user_id = _get_user_id(request)
    effective = await _db_call(
        "get_effective_profile", service.get_effective_profile(user_id, subspecialty),
    )
    return EffectiveProfileResponse(
        source=effective.source, profile=_profile_response(effective.profile),
    )


@router.post("/style/prompt", response_model=ConditionedPromptResponse)
async def conditioned_prompt(
    request: Request,
    body: ConditionedPromptRequest = Body(...),
    service: StyleProfileService = Depends(get_profile_service),
):
    user_id = _get_user_id(request)
    conditioned = await _db_call(
        "build_style_conditioned_prompt",
        build_style_conditioned_prompt(
            body.base_prompt, user_id, body.subspecialty, service, letter_type=body.letter_type,
        ),
    )
    return ConditionedPromptResponse(
        prompt=conditioned.prompt,
        applied=conditioned.prompt != body.base_prompt,
        source=conditioned.config.source,
        hints=conditioned.hints.to_dict(),
        config=conditioned.config.to_dict(),
    )


# --- Seed letters ---

@router.post("/style/seed", response_model=SeedLetterResponse, status_code=201)
async def create_seed_letter(
    request: Request,
    body: SeedLetterCreateRequest = Body(...),
    service: StyleProfileService = Depends(get_profile_service),
):
    """Upload a previously written letter to bootstrap the profile."""
    user_id = _get_user_id(request)
    seed = await _db_call(
        "create_seed_letter",
        service.create_seed_letter(user_id, body.subspecialty, body.letter_text),
    )
    return _seed_response(seed)


@router.get("/style/seed", response_model=SeedLetterListResponse)
async def list_seed_letters(
    request: Request,
    subspecialty: Optional[Subspecialty] = Query(default=None),
    unanalyzed_only: bool = Query(default=False),
    service: StyleProfileService = Depends(get_profile_service),
):
    user_id = _get_user_id(request)
    seeds = await _db_call(
        "list_seed_letters",
        service.list_seed_letters(user_id, subspecialty, unanalyzed_only=unanalyzed_only),
    )
    items = [_seed_response(s) for s in seeds]
    return SeedLetterListResponse(items=items, total=len(items))


@router.get("/style/seed/{seed_id}", response_model=SeedLetterResponse)
async def get_seed_letter(
    request: Request,
    seed_id: str,
    service: StyleProfileService = Depends(get_profile_service),
):
    user_id = _get_user_id(request)
    seed = await _db_call("get_seed_letter", service.get_seed_letter(user_id, seed_id))
    if seed is None:
        raise HTTPException(status_code=404, detail="Seed letter not found.")
    return _seed_response(seed)


@router.delete("/style/seed/{seed_id}", response_model=SeedLetterDeleteResponse)
async def delete_seed_letter(
    request: Request,
    seed_id: str,
    service: StyleProfileService = Depends(get_profile_service),
):
    user_id = _get_user_id(request)
    deleted = await _db_call("delete_seed_letter", service.delete_seed_letter(user_id, seed_id))
    if not deleted:
        raise HTTPException(status_code=404, detail="Seed letter not found.")
    return SeedLetterDeleteResponse(deleted=True, id=seed_id)


@router.post("/style/seed/{subspecialty}/analyze", response_model=AnalysisResponse)
@limiter.limit(STYLE_ANALYSIS_RATE_LIMIT)
async def analyze_seed_letters(
    request: Request,
    subspecialty: Subspecialty,
    pipeline: LearningPipeline = Depends(get_learning_pipeline),
):
    user_id = _get_user_id(request)
    try:
        result = await _db_call(
            "analyze_seed_letters",
            pipeline.analyze_seed_letters(user_id, subspecialty.value),
        )
    except StyleAnalysisError as exc:
        raise HTTPException(status_code=502, detail=f"Seed letter analysis failed: {exc}")

    profile = None
    if result is not None:
        profile = await _db_call(
            "get_profile", pipeline.profile_service.get_profile(user_id, subspecialty),
        )
    return _analysis_response(result, profile, "No unanalyzed seed letters")
