"""Tests for turning letter pairs into stored style edits."""

import sqlite3
from unittest.mock import patch

from storage.database import Database
from style.diff_analyzer import analyze_diff
from style.edit_recorder import edits_from_diff, record_letter_edits


DRAFT = """Dear Dr. Smith,

History:
Patient has chest pain.

Medications:
Aspirin 100mg daily.

Plan:
Start aspirin."""

FINAL = """Dear Dr. Smith,

History:
Patient has exertional chest pain for three months.

Examination:
Blood pressure 130/80.

Plan:
Start aspirin."""


class TestEditsFromDiff:
    def test_one_edit_per_added_or_modified_section(self):
        diff = analyze_diff(DRAFT, FINAL)
        edits = edits_from_diff(diff, "u1", "L1", "GENERAL_CARDIOLOGY")
        by_section = {e.section_type: e for e in edits}
        assert set(by_section) == {"history", "examination"}

    def test_edit_types(self):
        edits = edits_from_diff(analyze_diff(DRAFT, FINAL), "u1", "L1", "GENERAL_CARDIOLOGY")
        by_section = {e.section_type: e for e in edits}
        assert by_section["history"].edit_type == "modification"
        assert by_section["examination"].edit_type == "addition"
        assert by_section["examination"].before_text == ""
        assert by_section["examination"].after_text == "Blood pressure 130/80."

    def test_change_counts_are_magnitudes(self):
        edits = edits_from_diff(analyze_diff(DRAFT, FINAL), "u1", "L1", "GENERAL_CARDIOLOGY")
        history = next(e for e in edits if e.section_type == "history")
        assert history.word_changes == 4
        assert history.character_changes == len(
            "Patient has exertional chest pain for three months."
        ) - len("Patient has chest pain.")


class TestRecordLetterEdits:
    async def test_stores_edits(self, db: Database):
        result = await record_letter_edits(db, "u1", "L1", "GENERAL_CARDIOLOGY", DRAFT, FINAL)
        assert result.edit_count == 2
        assert all(e.id is not None for e in result.edits)
        assert db.count_style_edits("u1", "GENERAL_CARDIOLOGY") == 2

    async def test_removed_sections_not_stored(self, db: Database):
        await record_letter_edits(db, "u1", "L1", "GENERAL_CARDIOLOGY", DRAFT, FINAL)
        rows = db.list_style_edits("u1", "GENERAL_CARDIOLOGY")
        assert "medications" not in {r["section_type"] for r in rows}

    async def test_identical_letters_store_nothing(self, db: Database):
        result = await record_letter_edits(db, "u1", "L1", "GENERAL_CARDIOLOGY", DRAFT, DRAFT)
        assert result.edit_count == 0
        assert db.count_style_edits("u1", "GENERAL_CARDIOLOGY") == 0

    async def test_audited(self, db: Database):
        await record_letter_edits(db, "u1", "L1", "GENERAL_CARDIOLOGY", DRAFT, FINAL)
        entries = db.list_audit_log("u1")
        assert entries[0]["action"] == "style.edits_recorded"
        assert entries[0]["resource_id"] == "L1"
        assert entries[0]["metadata"]["edit_count"] == 2
        assert entries[0]["metadata"]["sections_removed"] == 1

    async def test_audit_failure_keeps_edits(self, db: Database, caplog):
        with patch.object(db, "insert_audit_log", side_effect=sqlite3.OperationalError("database is locked")):
            result = await record_letter_edits(db, "u1", "L1", "GENERAL_CARDIOLOGY", DRAFT, FINAL)
        assert result.edit_count == 2
        assert db.count_style_edits("u1", "GENERAL_CARDIOLOGY") == 2
        assert db.list_audit_log("u1") == []
        assert "Failed to write audit log entry style.edits_recorded" in caplog.text
