"""Tests for the HTTP surface, with services bound to a temp database."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

import storage.database
from llm.client import LLMProvider, LLMResponse
from main import create_app
from storage.database import Database
from style.analytics_aggregator import StyleAnalyticsAggregator, get_analytics_aggregator
from style.learning_pipeline import LearningPipeline, get_learning_pipeline
from style.profile_service import StyleProfileService, get_profile_service

SUB = "GENERAL_CARDIOLOGY"

DRAFT = """Dear Dr. Smith,

History:
Patient has chest pain.

Plan:
Start aspirin."""

FINAL = """Dear Dr. Smith,

History:
Patient has exertional chest pain for three months.

Examination:
Blood pressure 130/80.

Plan:
Start aspirin 100mg daily. Review in six weeks."""

ANALYSIS = {
    "detectedFormalityLevel": "formal",
    "detectedGreetingStyle": "formal",
    "detectedSignoff": "Kind regards,",
    "confidence": {"formalityLevel": 0.9, "greetingStyle": 0.8, "signoffTemplate": 0.7},
    "insights": ["Prefers formal greetings"],
}


def _llm_client(text: str = json.dumps(ANALYSIS)) -> MagicMock:
    client = MagicMock()
    client.call = AsyncMock(return_value=LLMResponse(
        provider=LLMProvider.CLAUDE,
        raw_content=text,
        model="claude-test",
        input_tokens=100,
        output_tokens=50,
    ))
    return client


@pytest.fixture
def llm_client() -> MagicMock:
    return _llm_client()


@pytest.fixture
def service(db: Database) -> StyleProfileService:
    return StyleProfileService(db)


@pytest.fixture
def client(db: Database, service: StyleProfileService, llm_client: MagicMock, monkeypatch):
    monkeypatch.setattr(storage.database, "_db_instance", db)
    pipeline = LearningPipeline(service, client_factory=lambda: llm_client)
    app = create_app()
    app.dependency_overrides[get_profile_service] = lambda: service
    app.dependency_overrides[get_learning_pipeline] = lambda: pipeline
    app.dependency_overrides[get_analytics_aggregator] = lambda: StyleAnalyticsAggregator(db)
    return TestClient(app)


def _record(client: TestClient, letter_id: str = "L1"):
    return client.post("/style/edits", json={
        "letter_id": letter_id,
        "subspecialty": SUB,
        "draft": DRAFT,
        "final": FINAL,
    })


def _insert_edits(db: Database, count: int) -> None:
    for i in range(count):
        db.insert_style_edit("local", f"L{i}", SUB, "plan", "modification", "a", "b", 1, 1)


class TestHealth:
    def test_health(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestDiffAndEdits:
    def test_diff_preview_stores_nothing(self, client: TestClient, db: Database):
        response = client.post("/style/diff", json={"draft": DRAFT, "final": FINAL})
        assert response.status_code == 200
        data = response.json()
        assert data["stats"]["sections_added"] == 1
        assert data["stats"]["sections_modified"] == 2
        statuses = {d["section_type"]: d["status"] for d in data["section_diffs"]}
        assert statuses["examination"] == "added"
        assert db.count_style_edits("local", SUB) == 0

    def test_diff_preview_phrases(self, client: TestClient):
        data = client.post("/style/diff", json={
            "draft": "Plan:\nCommence aspirin today. Arrange an echocardiogram.",
            "final": "Plan:\nStart aspirin today.",
        }).json()
        assert data["vocabulary_substitutions"] == [
            {"from": "commence", "to": "start", "section_type": "plan"}
        ]
        assert data["removed_phrases"] == [
            {"section_type": "plan", "phrase": "Arrange an echocardiogram."}
        ]
        assert data["added_phrases"] == []

    def test_record_edits(self, client: TestClient, db: Database):
        response = _record(client)
        assert response.status_code == 200
        data = response.json()
        assert data["edit_count"] == 3
        assert data["analysis_scheduled"] is False
        assert data["reason"] == "Need 5 edits for initial analysis, have 3"
        assert data["stats"]["sections_added"] == 1
        assert db.count_style_edits("local", SUB) == 3

    def test_threshold_schedules_analysis(self, client: TestClient, llm_client: MagicMock):
        _record(client, "L1")
        response = _record(client, "L2")
        assert response.json()["analysis_scheduled"] is True
        llm_client.call.assert_awaited_once()

        profile = client.get(f"/style/profiles/{SUB}").json()
        assert profile["total_edits_analyzed"] == 6
        assert profile["formality_level"] == "formal"

    def test_background_failure_does_not_fail_request(self, client: TestClient, llm_client: MagicMock):
        llm_client.call.side_effect = RuntimeError("upstream down")
        _record(client, "L1")
        response = _record(client, "L2")
        assert response.status_code == 200
        assert client.get(f"/style/profiles/{SUB}").status_code == 404

    def test_unknown_subspecialty(self, client: TestClient):
        response = client.post("/style/edits", json={
            "letter_id": "L1", "subspecialty": "DERMATOLOGY", "draft": DRAFT, "final": FINAL,
        })
        assert response.status_code == 422


class TestProfiles:
    def test_missing_profile(self, client: TestClient):
        response = client.get(f"/style/profiles/{SUB}")
        assert response.status_code == 404
        assert response.json()["detail"] == f"No style profile found for subspecialty {SUB}"

    def test_update_and_list(self, client: TestClient):
        response = client.put(f"/style/profiles/{SUB}", json={
            "formality_level": "formal",
            "section_order": ["greeting", "history", "plan"],
        })
        assert response.status_code == 200
        assert response.json()["formality_level"] == "formal"

        listing = client.get("/style/profiles").json()
        assert listing["total"] == 1
        assert listing["items"][0]["section_order"] == ["greeting", "history", "plan"]

    def test_update_rejects_invalid_values(self, client: TestClient):
        assert client.put(f"/style/profiles/{SUB}", json={"formality_level": "shouty"}).status_code == 422
        assert client.put(f"/style/profiles/{SUB}", json={"learning_strength": 2}).status_code == 422

    def test_delete(self, client: TestClient):
        assert client.delete(f"/style/profiles/{SUB}").status_code == 404
        client.put(f"/style/profiles/{SUB}", json={"formality_level": "formal"})
        response = client.delete(f"/style/profiles/{SUB}")
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert client.get(f"/style/profiles/{SUB}").status_code == 404

    def test_learning_strength(self, client: TestClient):
        assert client.patch(
            f"/style/profiles/{SUB}/strength", json={"learning_strength": 0.5},
        ).status_code == 404
        client.put(f"/style/profiles/{SUB}", json={"formality_level": "formal"})
        assert client.patch(
            f"/style/profiles/{SUB}/strength", json={"learning_strength": 1.5},
        ).status_code == 400
        response = client.patch(f"/style/profiles/{SUB}/strength", json={"learning_strength": 0.5})
        assert response.status_code == 200
        assert response.json()["profile"]["learning_strength"] == 0.5

    def test_status(self, client: TestClient):
        _record(client)
        data = client.get(f"/style/profiles/{SUB}/status").json()
        assert data["has_profile"] is False
        assert data["should_analyze"] is False
        assert data["edit_count"] == 3
        assert data["statistics"]["total_edits"] == 3

    def test_storage_failure_maps_to_500(self, client: TestClient):
        broken = MagicMock()
        broken.list_profiles = AsyncMock(side_effect=RuntimeError("disk I/O error"))
        client.app.dependency_overrides[get_profile_service] = lambda: broken
        response = client.get("/style/profiles")
        assert response.status_code == 500
        assert response.json()["detail"] == "A database error occurred. Please try again."


class TestAnalyze:
    def test_insufficient_edits(self, client: TestClient):
        response = client.post(f"/style/profiles/{SUB}/analyze")
        assert response.status_code == 409

    def test_forced_with_nothing_new(self, client: TestClient):
        response = client.post(f"/style/profiles/{SUB}/analyze", json={"force": True})
        assert response.status_code == 200
        assert response.json() == {
            "analyzed": False,
            "reason": "No new edits to analyze",
            "edits_analyzed": 0,
            "insights": [],
            "model_used": None,
            "profile": None,
        }

    def test_analyze(self, client: TestClient, db: Database):
        _insert_edits(db, 5)
        response = client.post(f"/style/profiles/{SUB}/analyze")
        assert response.status_code == 200
        data = response.json()
        assert data["analyzed"] is True
        assert data["edits_analyzed"] == 5
        assert data["insights"] == ["Prefers formal greetings"]
        assert data["profile"]["greeting_style"] == "formal"

    def test_llm_failure(self, client: TestClient, db: Database, llm_client: MagicMock):
        llm_client.call.side_effect = RuntimeError("upstream down")
        _insert_edits(db, 5)
        response = client.post(f"/style/profiles/{SUB}/analyze")
        assert response.status_code == 502
        assert response.json()["detail"].startswith("Style analysis failed")


class TestGlobalProfile:
    def test_empty(self, client: TestClient):
        assert client.get("/style/global").json() == {"profile": None}

    def test_insufficient_edits(self, client: TestClient):
        assert client.post("/style/global/analyze").status_code == 409

    def test_analyze(self, client: TestClient, db: Database):
        _insert_edits(db, 3)
        db.insert_style_edit("local", "H1", "HEART_FAILURE", "plan", "modification", "a", "b", 1, 1)
        db.insert_style_edit("local", "H2", "HEART_FAILURE", "plan", "modification", "a", "b", 1, 1)
        response = client.post("/style/global/analyze")
        assert response.status_code == 200
        data = response.json()
        assert data["analyzed"] is True
        assert data["edits_analyzed"] == 5
        assert data["profile"]["greeting_style"] == "formal"
        assert data["profile"]["total_edits_analyzed"] == 5

        stored = client.get("/style/global").json()["profile"]
        assert stored["closing_examples"] == ["Kind regards,"]
        effective = client.get("/style/effective", params={"subspecialty": "ELECTROPHYSIOLOGY"}).json()
        assert effective["source"] == "global"


class TestConditioning:
    def test_effective_default(self, client: TestClient):
        data = client.get("/style/effective", params={"subspecialty": SUB}).json()
        assert data == {"source": "default", "profile": None}

    def test_prompt_without_profile(self, client: TestClient):
        data = client.post("/style/prompt", json={
            "base_prompt": "Draft the letter.", "subspecialty": SUB,
        }).json()
        assert data["prompt"] == "Draft the letter."
        assert data["applied"] is False
        assert data["source"] == "default"

    def test_prompt_with_learned_profile(self, client: TestClient, db: Database):
        _insert_edits(db, 5)
        client.post(f"/style/profiles/{SUB}/analyze")
        data = client.post("/style/prompt", json={
            "base_prompt": "Draft the letter.", "subspecialty": SUB, "letter_type": "follow-up",
        }).json()
        assert data["applied"] is True
        assert data["source"] == "subspecialty"
        assert "# PHYSICIAN STYLE PREFERENCES (General Cardiology)" in data["prompt"]
        assert data["config"]["apply_formality"] is True
        assert "formality" in data["hints"]

        effective = client.get("/style/effective", params={"subspecialty": SUB}).json()
        assert effective["source"] == "subspecialty"


class TestSeedLetters:
    def test_lifecycle(self, client: TestClient):
        created = client.post("/style/seed", json={
            "subspecialty": SUB, "letter_text": "Dear Dr. Smith,\n\nPlan:\nReview in clinic.",
        })
        assert created.status_code == 201
        seed_id = created.json()["id"]

        listing = client.get("/style/seed", params={"subspecialty": SUB}).json()
        assert listing["total"] == 1

        fetched = client.get(f"/style/seed/{seed_id}")
        assert fetched.status_code == 200
        assert fetched.json()["letter_text"].startswith("Dear Dr. Smith")

        assert client.delete(f"/style/seed/{seed_id}").json()["deleted"] is True
        assert client.delete(f"/style/seed/{seed_id}").status_code == 404
        assert client.get(f"/style/seed/{seed_id}").status_code == 404

    def test_analyze_seeds(self, client: TestClient):
        assert client.post(f"/style/seed/{SUB}/analyze").json()["reason"] == "No unanalyzed seed letters"
        client.post("/style/seed", json={"subspecialty": SUB, "letter_text": "Dear Dr. Smith, ..."})
        data = client.post(f"/style/seed/{SUB}/analyze").json()
        assert data["analyzed"] is True
        assert data["edits_analyzed"] == 1
        unanalyzed = client.get("/style/seed", params={"unanalyzed_only": True}).json()
        assert unanalyzed["total"] == 0


class TestAdmin:
    def test_summary_empty(self, client: TestClient):
        assert client.get("/admin/style-analytics/summary").json() == {
            "subspecialties": [], "last_updated": None,
        }

    def test_list_empty(self, client: TestClient):
        response = client.get("/admin/style-analytics", params={"subspecialty": "IMAGING"})
        assert response.status_code == 200
        assert response.json() == []

    def test_aggregate_rejects_inverted_window(self, client: TestClient):
        response = client.post("/admin/style-analytics/aggregate", json={
            "subspecialty": SUB,
            "period_start": "2024-01-15T00:00:00Z",
            "period_end": "2024-01-08T00:00:00Z",
        })
        assert response.status_code == 422

    def test_aggregate_below_privacy_threshold(self, client: TestClient):
        response = client.post("/admin/style-analytics/aggregate", json={
            "subspecialty": SUB,
            "period_start": "2024-01-08T00:00:00Z",
            "period_end": "2024-01-15T00:00:00Z",
        })
        assert response.status_code == 200
        assert response.json() == {"aggregated": False, "aggregate": None}

    def test_weekly_run(self, client: TestClient):
        data = client.post("/admin/style-analytics/run").json()
        assert data["processed"] == []
        assert len(data["skipped"]) == 7
