"""Tests for threshold-triggered style analysis with a mocked LLM client."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from llm.client import LLMProvider, LLMResponse
from storage.database import Database
from style.errors import InsufficientEditsError, StyleAnalysisError
from style.learning_pipeline import LearningPipeline
from style.models import ProfileSource
from style.profile_service import StyleProfileService

SUB = "GENERAL_CARDIOLOGY"

ANALYSIS = {
    "detectedSectionOrder": ["greeting", "history", "examination", "plan", "signoff"],
    "detectedSectionInclusion": {"examination": 0.9, "social_history": 0.1},
    "detectedSectionVerbosity": {"history": "brief"},
    "detectedPhrasing": {"plan": ["We will arrange", "Please continue"]},
    "detectedAvoidedPhrases": {"history": ["It is worth noting"]},
    "detectedVocabulary": {"commence": "start"},
    "detectedTerminologyLevel": "specialist",
    "detectedGreetingStyle": "formal",
    "detectedClosingStyle": "formal",
    "detectedSignoff": "Kind regards,",
    "detectedFormalityLevel": "formal",
    "detectedParagraphStructure": "short",
    "confidence": {
        "sectionOrder": 0.8,
        "sectionInclusion": 0.7,
        "phrasingPreferences": 0.6,
        "formalityLevel": 0.9,
    },
    "insights": ["Prefers brief histories"],
}


def _response(text: str) -> LLMResponse:
    return LLMResponse(
        provider=LLMProvider.CLAUDE,
        raw_content=text,
        model="claude-test",
        input_tokens=100,
        output_tokens=50,
    )


def _mock_client(text: str = None) -> MagicMock:
    client = MagicMock()
    client.call = AsyncMock(return_value=_response(
        text if text is not None else f"```json\n{json.dumps(ANALYSIS)}\n```"
    ))
    return client


def _insert_edits(db: Database, count: int, user_id: str = "u1") -> None:
    for i in range(count):
        db.insert_style_edit(
            user_id, f"L{i}", SUB, "plan", "modification",
            "Commence aspirin.", "Start aspirin 100mg daily.", 12, 2,
        )


@pytest.fixture
def service(db: Database) -> StyleProfileService:
    return StyleProfileService(db)


@pytest.fixture
def client() -> MagicMock:
    return _mock_client()


@pytest.fixture
def pipeline(service: StyleProfileService, client: MagicMock) -> LearningPipeline:
    return LearningPipeline(service, client_factory=lambda: client)


class TestShouldTriggerAnalysis:
    async def test_below_initial_threshold(self, pipeline: LearningPipeline, db: Database):
        _insert_edits(db, 4)
        decision = await pipeline.should_trigger_analysis("u1", SUB)
        assert decision.should_analyze is False
        assert decision.edit_count == 4
        assert decision.reason == "Need 5 edits for initial analysis, have 4"

    async def test_initial_threshold(self, pipeline: LearningPipeline, db: Database):
        _insert_edits(db, 5)
        decision = await pipeline.should_trigger_analysis("u1", SUB)
        assert decision.should_analyze is True
        assert decision.reason == "Initial analysis: 5 edits recorded"

    async def test_reanalysis_interval(self, pipeline: LearningPipeline, db: Database):
        _insert_edits(db, 6)
        await pipeline.run_style_analysis("u1", SUB)

        decision = await pipeline.should_trigger_analysis("u1", SUB)
        assert decision.should_analyze is False
        assert decision.edit_count == 0

        _insert_edits(db, 9)
        assert (await pipeline.should_trigger_analysis("u1", SUB)).should_analyze is False
        _insert_edits(db, 1)
        decision = await pipeline.should_trigger_analysis("u1", SUB)
        assert decision.should_analyze is True
        assert decision.reason == "Re-analysis: 10 new edits since last analysis"

    async def test_other_clinicians_do_not_count(self, pipeline: LearningPipeline, db: Database):
        _insert_edits(db, 5, user_id="u2")
        assert (await pipeline.should_trigger_analysis("u1", SUB)).should_analyze is False


class TestRunStyleAnalysis:
    async def test_creates_profile(self, pipeline: LearningPipeline, service: StyleProfileService, db: Database):
        _insert_edits(db, 6)
        result = await pipeline.run_style_analysis("u1", SUB)

        assert result.edits_analyzed == 6
        assert result.model_used == "claude-test"
        assert result.insights == ["Prefers brief histories"]

        profile = await service.get_profile("u1", SUB)
        assert profile.total_edits_analyzed == 6
        assert profile.formality_level == "formal"
        assert profile.vocabulary_map == {"commence": "start"}
        assert profile.confidence["formality_level"] == 0.9
        assert profile.last_analyzed_at is not None

    async def test_prompt_contains_edits(self, pipeline: LearningPipeline, client: MagicMock, db: Database):
        _insert_edits(db, 5)
        await pipeline.run_style_analysis("u1", SUB)
        kwargs = client.call.call_args.kwargs
        assert "## PLAN SECTION" in kwargs["user_prompt"]
        assert "Commence aspirin." in kwargs["user_prompt"]

    async def test_second_run_merges(self, pipeline: LearningPipeline, service: StyleProfileService, db: Database):
        _insert_edits(db, 6)
        await pipeline.run_style_analysis("u1", SUB)
        _insert_edits(db, 10)
        result = await pipeline.run_style_analysis("u1", SUB)
        assert result.edits_analyzed == 10
        assert (await service.get_profile("u1", SUB)).total_edits_analyzed == 16

    async def test_insufficient_edits(self, pipeline: LearningPipeline, client: MagicMock, db: Database):
        _insert_edits(db, 3)
        with pytest.raises(InsufficientEditsError) as exc_info:
            await pipeline.run_style_analysis("u1", SUB)
        assert exc_info.value.edit_count == 3
        assert exc_info.value.required == 5
        client.call.assert_not_called()

    async def test_forced_below_threshold(self, pipeline: LearningPipeline, db: Database):
        _insert_edits(db, 2)
        result = await pipeline.run_style_analysis("u1", SUB, force=True)
        assert result.edits_analyzed == 2

    async def test_forced_with_nothing_new(self, pipeline: LearningPipeline, client: MagicMock):
        assert await pipeline.run_style_analysis("u1", SUB, force=True) is None
        client.call.assert_not_called()

    async def test_llm_failure_merges_nothing(self, service: StyleProfileService, db: Database):
        client = _mock_client()
        client.call.side_effect = RuntimeError("upstream timeout")
        pipeline = LearningPipeline(service, client_factory=lambda: client)
        _insert_edits(db, 5)
        with pytest.raises(StyleAnalysisError):
            await pipeline.run_style_analysis("u1", SUB)
        assert await service.get_profile("u1", SUB) is None

    async def test_unparseable_answer(self, service: StyleProfileService, db: Database):
        pipeline = LearningPipeline(service, client_factory=lambda: _mock_client("I cannot help"))
        _insert_edits(db, 5)
        with pytest.raises(StyleAnalysisError):
            await pipeline.run_style_analysis("u1", SUB)

    async def test_missing_credentials(self, service: StyleProfileService, db: Database):
        def _no_client():
            raise ValueError("ANTHROPIC_API_KEY is not set")

        pipeline = LearningPipeline(service, client_factory=_no_client)
        _insert_edits(db, 5)
        with pytest.raises(StyleAnalysisError, match="ANTHROPIC_API_KEY"):
            await pipeline.run_style_analysis("u1", SUB)

    async def test_audited(self, pipeline: LearningPipeline, db: Database):
        _insert_edits(db, 5)
        await pipeline.run_style_analysis("u1", SUB)
        entry = db.list_audit_log("u1")[0]
        assert entry["action"] == "style.analysis_completed"
        assert entry["metadata"]["edits_analyzed"] == 5


class TestQueueStyleAnalysis:
    async def test_not_due(self, pipeline: LearningPipeline, client: MagicMock, db: Database):
        _insert_edits(db, 2)
        result = await pipeline.queue_style_analysis("u1", SUB)
        assert result.queued is False
        assert "Need 5 edits" in result.reason
        client.call.assert_not_called()

    async def test_due(self, pipeline: LearningPipeline, db: Database):
        _insert_edits(db, 5)
        result = await pipeline.queue_style_analysis("u1", SUB)
        assert result.queued is True
        assert result.reason == "Analyzed 5 edits"
        assert result.result.edits_analyzed == 5

    async def test_failure_reported_not_raised(self, service: StyleProfileService, db: Database):
        client = _mock_client()
        client.call.side_effect = RuntimeError("boom")
        pipeline = LearningPipeline(service, client_factory=lambda: client)
        _insert_edits(db, 5)
        result = await pipeline.queue_style_analysis("u1", SUB)
        assert result.queued is False
        assert result.reason.startswith("Analysis failed")

    async def test_edit_count_since_last_analysis(self, pipeline: LearningPipeline, db: Database):
        _insert_edits(db, 5)
        assert await pipeline.get_edit_count_since_last_analysis("u1", SUB) == 5
        await pipeline.queue_style_analysis("u1", SUB)
        _insert_edits(db, 2)
        assert await pipeline.get_edit_count_since_last_analysis("u1", SUB) == 2


class TestSeedLetterAnalysis:
    async def test_analyzes_and_marks_seeds(self, pipeline: LearningPipeline, service: StyleProfileService, client: MagicMock):
        await service.create_seed_letter("u1", SUB, "Dear Dr. Smith,\n\nHistory:\nChest pain.")
        await service.create_seed_letter("u1", SUB, "Dear Dr. Jones,\n\nPlan:\nReview in clinic.")

        result = await pipeline.analyze_seed_letters("u1", SUB)

        assert result.edits_analyzed == 2
        assert "## Letter 2" in client.call.call_args.kwargs["user_prompt"]
        assert await service.list_seed_letters("u1", SUB, unanalyzed_only=True) == []
        profile = await service.get_profile("u1", SUB)
        assert profile.formality_level == "formal"
        assert profile.total_edits_analyzed == 2

    async def test_no_seeds(self, pipeline: LearningPipeline, client: MagicMock):
        assert await pipeline.analyze_seed_letters("u1", SUB) is None
        client.call.assert_not_called()

    async def test_failure_leaves_seeds_unanalyzed(self, service: StyleProfileService):
        client = _mock_client("no json here")
        pipeline = LearningPipeline(service, client_factory=lambda: client)
        await service.create_seed_letter("u1", SUB, "Dear Dr. Smith, ...")
        with pytest.raises(StyleAnalysisError):
            await pipeline.analyze_seed_letters("u1", SUB)
        assert len(await service.list_seed_letters("u1", SUB, unanalyzed_only=True)) == 1


class TestGlobalAnalysis:
    def _insert_mixed(self, db: Database, count_each: int) -> None:
        for sub in (SUB, "IMAGING"):
            for i in range(count_each):
                db.insert_style_edit(
                    "u1", f"{sub}-{i}", sub, "plan", "modification",
                    "Commence aspirin.", "Start aspirin 100mg daily.", 12, 2,
                )

    async def test_learns_across_subspecialties(
        self, pipeline: LearningPipeline, service: StyleProfileService, client: MagicMock, db: Database,
    ):
        self._insert_mixed(db, 3)
        result = await pipeline.run_global_analysis("u1")
        assert result.edits_analyzed == 6

        doc = await service.get_global_profile("u1")
        assert doc["total_edits_analyzed"] == 6
        assert doc["formality_level"] == "formal"
        assert doc["closing_examples"] == ["Kind regards,"]
        assert doc["section_order"][0] == "greeting"
        assert doc["confidence"]["formality_level"] == 0.9
        assert doc["last_analyzed_at"] is not None
        assert "edits to clinic letters" in client.call.call_args.kwargs["user_prompt"]

    async def test_becomes_the_fallback_profile(
        self, pipeline: LearningPipeline, service: StyleProfileService, db: Database,
    ):
        self._insert_mixed(db, 3)
        await pipeline.run_global_analysis("u1")
        effective = await service.get_effective_profile("u1", "HEART_FAILURE")
        assert effective.source == ProfileSource.GLOBAL
        assert effective.profile.subspecialty == "HEART_FAILURE"
        assert effective.profile.formality_level == "formal"
        assert effective.profile.confidence["section_order"] == 0.8

    async def test_rerun_merges_only_new_edits(
        self, pipeline: LearningPipeline, service: StyleProfileService, client: MagicMock, db: Database,
    ):
        _insert_edits(db, 5)
        await pipeline.run_global_analysis("u1")
        with pytest.raises(InsufficientEditsError):
            await pipeline.run_global_analysis("u1")
        _insert_edits(db, 5)
        result = await pipeline.run_global_analysis("u1")
        assert result.edits_analyzed == 5
        assert client.call.await_count == 2
        assert (await service.get_global_profile("u1"))["total_edits_analyzed"] == 10

    async def test_forced_with_nothing_new(self, pipeline: LearningPipeline, client: MagicMock):
        assert await pipeline.run_global_analysis("u1", force=True) is None
        client.call.assert_not_called()

    async def test_failure_writes_nothing(self, service: StyleProfileService, db: Database):
        pipeline = LearningPipeline(service, client_factory=lambda: _mock_client("no json here"))
        _insert_edits(db, 5)
        with pytest.raises(StyleAnalysisError):
            await pipeline.run_global_analysis("u1")
        assert await service.get_global_profile("u1") is None

    async def test_audited(self, pipeline: LearningPipeline, db: Database):
        _insert_edits(db, 5)
        await pipeline.run_global_analysis("u1")
        entry = db.list_audit_log("u1")[0]
        assert entry["action"] == "style.global_analysis_completed"
        assert entry["metadata"]["total_edits_analyzed"] == 5
