"""Tests for de-identified population style analytics."""

from datetime import datetime, timedelta, timezone

import pytest

from storage.database import Database
from style.analytics_aggregator import (
    StyleAnalyticsAggregator,
    _edit_phrases,
    aggregate_patterns,
    aggregate_section_order_patterns,
    extract_key_phrases,
    format_period,
)
from style.models import StyleEdit

SUB = "GENERAL_CARDIOLOGY"


def _edit(user_id: str, before: str, after: str, section_type: str = "plan") -> StyleEdit:
    return StyleEdit(
        user_id=user_id,
        letter_id="L1",
        subspecialty=SUB,
        section_type=section_type,
        edit_type="modification" if before else "addition",
        before_text=before,
        after_text=after,
        character_changes=abs(len(after) - len(before)),
        word_changes=0,
    )


def _populate(db: Database, clinicians: int, edits_each: int) -> None:
    for c in range(clinicians):
        for i in range(edits_each):
            db.insert_style_edit(
                f"clinician-{c}", f"L{c}-{i}", SUB, "plan", "modification",
                "Start aspirin.", "Start aspirin. We will review in the cardiology clinic.", 40, 7,
            )


def _window() -> tuple[datetime, datetime]:
    now = datetime.now(timezone.utc)
    return now - timedelta(days=1), now + timedelta(days=1)


@pytest.fixture
def aggregator(db: Database) -> StyleAnalyticsAggregator:
    return StyleAnalyticsAggregator(db)


class TestHelpers:
    def test_format_period(self):
        assert format_period(datetime(2024, 1, 17)) == "2024-W03"
        # ISO week-numbering year differs from the calendar year here
        assert format_period(datetime(2021, 1, 1)) == "2020-W53"

    def test_key_phrases(self):
        phrases = extract_key_phrases("Patient is stable. Continue current medications")
        assert "Patient is stable" in phrases
        assert "Continue current medications" in phrases

    def test_key_phrases_long_clause_windows(self):
        phrases = extract_key_phrases(
            "Continue the current dose of bisoprolol and review renal function in two weeks"
        )
        assert "Continue the current dose" in phrases
        assert all(len(p.split()) <= 8 for p in phrases)

    def test_edit_phrases(self):
        added, removed = _edit_phrases(_edit("u1", "the patient is well", "the patient is feeling much better"))
        assert added == ["feeling much better"]
        assert removed == []

    def test_identical_edit_has_no_phrases(self):
        assert _edit_phrases(_edit("u1", "Same text.", "Same text.")) == ([], [])

    def test_added_section_uses_key_phrases(self):
        added, removed = _edit_phrases(_edit("u1", "", "Review in six weeks."))
        assert added == ["Review in six weeks"]
        assert removed == []


class TestAggregatePatterns:
    def test_counts_frequency_and_clinicians(self):
        edits = [
            _edit(f"u{i % 3}", "Start aspirin.", "Start aspirin. We will review in the cardiology clinic.")
            for i in range(6)
        ]
        additions, deletions, phrasing = aggregate_patterns(edits, total_clinicians=3)
        by_pattern = {p["pattern"]: p for p in additions}
        assert by_pattern["will review"]["frequency"] == 6
        assert by_pattern["will review"]["clinician_count"] == 3
        assert by_pattern["will review"]["section_type"] == "plan"
        assert deletions == []
        phrases = {p["phrase"]: p for p in phrasing}
        assert phrases["will review"]["action"] == "added"
        assert phrases["will review"]["percentage_of_clinicians"] == 100

    def test_single_occurrence_dropped(self):
        additions, _, _ = aggregate_patterns(
            [_edit("u1", "Start aspirin.", "Start aspirin. We will review in the cardiology clinic.")],
            total_clinicians=1,
        )
        assert additions == []

    def test_phi_phrases_dropped(self):
        edits = [_edit(f"u{i}", "", "Please call 0412 345 678 for results") for i in range(3)]
        additions, _, phrasing = aggregate_patterns(edits, total_clinicians=3)
        assert all("0412 345 678" not in p["pattern"] for p in additions)
        assert all("0412 345 678" not in p["phrase"] for p in phrasing)

    def test_section_order_patterns(self):
        edits = [
            _edit("u1", "", "History:\nChest pain.\n\nPlan:\nReview."),
            _edit("u2", "", "History:\nBreathless.\n\nPlan:\nEcho."),
            _edit("u3", "", "Plan:\nReview.\n\nHistory:\nChest pain."),
        ]
        assert aggregate_section_order_patterns(edits) == [
            {"order": ["history", "plan"], "frequency": 2}
        ]


class TestAggregateStyleAnalytics:
    async def test_too_few_clinicians(self, aggregator: StyleAnalyticsAggregator, db: Database):
        _populate(db, clinicians=2, edits_each=10)
        start, end = _window()
        assert await aggregator.aggregate_style_analytics(SUB, start, end) is None
        assert db.list_style_aggregates(SUB) == []

    async def test_too_few_edits(self, aggregator: StyleAnalyticsAggregator, db: Database):
        _populate(db, clinicians=6, edits_each=1)
        start, end = _window()
        assert await aggregator.aggregate_style_analytics(SUB, start, end) is None
        result = await aggregator.aggregate_style_analytics(SUB, start, end, min_sample_size=5)
        assert result is not None

    async def test_aggregates(self, aggregator: StyleAnalyticsAggregator, db: Database):
        _populate(db, clinicians=6, edits_each=2)
        start, end = _window()
        aggregate = await aggregator.aggregate_style_analytics(SUB, start, end)

        assert aggregate.subspecialty == SUB
        assert aggregate.period == format_period(start)
        assert aggregate.sample_size == 12
        top = {p["pattern"]: p for p in aggregate.common_additions}
        assert top["will review"]["frequency"] == 12
        assert top["will review"]["clinician_count"] == 6

    async def test_rerun_replaces_period(self, aggregator: StyleAnalyticsAggregator, db: Database):
        _populate(db, clinicians=6, edits_each=2)
        start, end = _window()
        await aggregator.aggregate_style_analytics(SUB, start, end)
        _populate(db, clinicians=6, edits_each=1)
        aggregate = await aggregator.aggregate_style_analytics(SUB, start, end)
        assert aggregate.sample_size == 18
        assert len(await aggregator.get_style_analytics(SUB)) == 1

    async def test_window_excludes_other_periods(self, aggregator: StyleAnalyticsAggregator, db: Database):
        _populate(db, clinicians=6, edits_each=2)
        now = datetime.now(timezone.utc)
        assert await aggregator.aggregate_style_analytics(
            SUB, now - timedelta(days=14), now - timedelta(days=7),
        ) is None

    async def test_audited_without_user(self, aggregator: StyleAnalyticsAggregator, db: Database):
        _populate(db, clinicians=6, edits_each=2)
        start, end = _window()
        await aggregator.aggregate_style_analytics(SUB, start, end)
        entry = db.list_audit_log()[0]
        assert entry["action"] == "analytics.style_aggregated"
        assert entry["user_id"] is None
        assert entry["metadata"]["unique_clinicians"] == 6


class TestSummaryAndWeeklyRun:
    async def test_empty_summary(self, aggregator: StyleAnalyticsAggregator):
        assert await aggregator.get_analytics_summary() == {"subspecialties": [], "last_updated": None}

    async def test_summary(self, aggregator: StyleAnalyticsAggregator, db: Database):
        _populate(db, clinicians=6, edits_each=2)
        start, end = _window()
        await aggregator.aggregate_style_analytics(SUB, start, end)
        summary = await aggregator.get_analytics_summary()
        entry = summary["subspecialties"][0]
        assert entry["subspecialty"] == SUB
        assert entry["total_samples"] == 12
        assert "will review" in entry["top_additions"]
        assert summary["last_updated"] is not None

    async def test_weekly_run(self, aggregator: StyleAnalyticsAggregator, db: Database):
        _populate(db, clinicians=6, edits_each=2)
        result = await aggregator.run_weekly_aggregation(now=datetime.now(timezone.utc) + timedelta(minutes=1))
        assert result["processed"] == [SUB]
        assert SUB not in result["skipped"]
        assert len(result["skipped"]) == 6

    async def test_weekly_run_isolates_failures(self, db: Database):
        class FlakyAggregator(StyleAnalyticsAggregator):
            async def aggregate_style_analytics(self, subspecialty, *args, **kwargs):
                if subspecialty.value == "IMAGING":
                    raise RuntimeError("storage unavailable")
                return await super().aggregate_style_analytics(subspecialty, *args, **kwargs)

        _populate(db, clinicians=6, edits_each=2)
        result = await FlakyAggregator(db).run_weekly_aggregation(
            now=datetime.now(timezone.utc) + timedelta(minutes=1),
        )
        assert result["processed"] == [SUB]
        assert "IMAGING" in result["skipped"]
