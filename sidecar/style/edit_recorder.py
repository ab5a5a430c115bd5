"""Turn a draft/final letter pair into stored per-section style edits."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from storage import call_db
from style.audit import record_audit
from style.diff_analyzer import analyze_diff
from style.models import EditType, LetterDiff, SectionDiff, SectionStatus, StyleEdit

logger = logging.getLogger(__name__)

_RECORDED_STATUSES = (SectionStatus.MODIFIED, SectionStatus.ADDED)


@dataclass
class RecordEditsResult:
    edit_count: int
    diff: LetterDiff
    edits: list[StyleEdit] = field(default_factory=list)


def edits_from_diff(
    diff: LetterDiff, user_id: str, letter_id: str, subspecialty: str,
) -> list[StyleEdit]:
    """One edit per added or modified section. Unchanged and removed sections are skipped."""
    edits: list[StyleEdit] = []
    for sd in diff.section_diffs:
        if sd.status not in _RECORDED_STATUSES:
            continue
        edits.append(_edit_for_section(sd, user_id, letter_id, subspecialty))
    return edits


def _edit_for_section(
    sd: SectionDiff, user_id: str, letter_id: str, subspecialty: str,
) -> StyleEdit:
    before = sd.draft_content or ""
    after = sd.final_content or ""
    edit_type = EditType.ADDITION if not before.strip() else EditType.MODIFICATION
    return StyleEdit(
        user_id=user_id,
        letter_id=letter_id,
        subspecialty=subspecialty,
        section_type=sd.section_type.value if sd.section_type else None,
        edit_type=edit_type.value,
        before_text=before,
        after_text=after,
        character_changes=abs(sd.total_char_delta),
        word_changes=abs(sd.total_word_delta),
    )


async def record_letter_edits(
    db: Any,
    user_id: str,
    letter_id: str,
    subspecialty: str,
    draft: str,
    final: str,
) -> RecordEditsResult:
    """Diff the two versions, store the edits and audit the recording."""
    diff = analyze_diff(draft, final, letter_id=letter_id, subspecialty=subspecialty)
    edits = edits_from_diff(diff, user_id, letter_id, subspecialty)

    stored: list[StyleEdit] = []
    for edit in edits:
        row = await call_db(
            db, "insert_style_edit",
            edit.user_id, edit.letter_id, edit.subspecialty, edit.section_type,
            edit.edit_type, edit.before_text, edit.after_text,
            edit.character_changes, edit.word_changes,
        )
        stored.append(StyleEdit.from_row(row))

    logger.info(
        "Recorded %d style edits for letter %s (%s)", len(stored), letter_id, subspecialty,
    )
    await record_audit(
        db, user_id, "style.edits_recorded", "letter", letter_id,
        {
            "subspecialty": subspecialty,
            "edit_count": len(stored),
            "sections_added": diff.stats.sections_added,
            "sections_modified": diff.stats.sections_modified,
            "sections_removed": diff.stats.sections_removed,
        },
    )
    return RecordEditsResult(edit_count=len(stored), diff=diff, edits=stored)
