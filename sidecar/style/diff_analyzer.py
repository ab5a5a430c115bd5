"""Section-aware diff between an AI draft and the clinician's final letter."""

from __future__ import annotations

import re
from difflib import SequenceMatcher
from typing import Optional

from style.models import (
    Change,
    ChangeType,
    DiffStats,
    LetterDiff,
    ParsedSection,
    SectionDiff,
    SectionStatus,
)
from style.section_parser import parse_letter_sections

_TOKEN_RE = re.compile(r"[\w']+|[^\w\s]")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_SIMILAR_SENTENCE_THRESHOLD = 0.5


def _tokenize(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def _normalize(text: str) -> str:
    return " ".join(text.lower().split())


def _word_count(text: Optional[str]) -> int:
    return len(text.split()) if text else 0


def text_similarity(a: str, b: str) -> float:
    """Token-overlap ratio in [0, 1].

    Only case and whitespace differences score 1.0; every other character,
    symbols included, counts as a token. Texts sharing no tokens score 0.0.
    """
    if _normalize(a or "") == _normalize(b or ""):
        return 1.0
    tokens_a, tokens_b = _tokenize(a or ""), _tokenize(b or "")
    if not tokens_a or not tokens_b:
        return 0.0
    return SequenceMatcher(None, tokens_a, tokens_b, autojunk=False).ratio()


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in _SENTENCE_SPLIT_RE.split(text or "") if s.strip()]


def find_detailed_changes(original: str, modified: str) -> list[Change]:
    """Sentence-level changes between two versions of one section."""
    orig_sentences = split_sentences(original)
    mod_sentences = split_sentences(modified)

    # Character offset of each sentence within its text
    orig_pos = _sentence_positions(original, orig_sentences)
    mod_pos = _sentence_positions(modified, mod_sentences)

    matched_orig: set[int] = set()
    matched_mod: set[int] = set()

    for i, sentence in enumerate(orig_sentences):
        key = _normalize(sentence)
        for j, candidate in enumerate(mod_sentences):
            if j not in matched_mod and _normalize(candidate) == key:
                matched_orig.add(i)
                matched_mod.add(j)
                break

    changes: list[Change] = []
    for i, sentence in enumerate(orig_sentences):
        if i in matched_orig:
            continue
        best_j, best_score = -1, _SIMILAR_SENTENCE_THRESHOLD
        for j, candidate in enumerate(mod_sentences):
            if j in matched_mod:
                continue
            score = text_similarity(sentence, candidate)
            if score > best_score:
                best_j, best_score = j, score
        if best_j >= 0:
            matched_orig.add(i)
            matched_mod.add(best_j)
            candidate = mod_sentences[best_j]
            changes.append(Change(
                type=ChangeType.MODIFICATION,
                original=sentence,
                modified=candidate,
                char_delta=len(candidate) - len(sentence),
                word_delta=_word_count(candidate) - _word_count(sentence),
                position=mod_pos[best_j],
            ))

    for i, sentence in enumerate(orig_sentences):
        if i not in matched_orig:
            changes.append(Change(
                type=ChangeType.DELETION,
                original=sentence,
                modified=None,
                char_delta=-len(sentence),
                word_delta=-_word_count(sentence),
                position=orig_pos[i],
            ))

    for j, sentence in enumerate(mod_sentences):
        if j not in matched_mod:
            changes.append(Change(
                type=ChangeType.ADDITION,
                original=None,
                modified=sentence,
                char_delta=len(sentence),
                word_delta=_word_count(sentence),
                position=mod_pos[j],
            ))

    changes.sort(key=lambda c: c.position)
    return changes


def _sentence_positions(text: str, sentences: list[str]) -> list[int]:
    positions = []
    cursor = 0
    for sentence in sentences:
        idx = text.find(sentence, cursor)
        if idx < 0:
            idx = cursor
        positions.append(idx)
        cursor = idx + len(sentence)
    return positions


def align_sections(
    draft: list[ParsedSection], final: list[ParsedSection]
) -> list[tuple[Optional[ParsedSection], Optional[ParsedSection]]]:
    """Pair draft and final sections by type.

    Each draft section takes the first unconsumed final section of the same
    type. Untyped sections pair only with untyped sections. Unpaired draft
    sections come back as ``(section, None)`` and unpaired final sections as
    ``(None, section)`` after all draft entries.
    """
    consumed: set[int] = set()
    pairs: list[tuple[Optional[ParsedSection], Optional[ParsedSection]]] = []
    for d in draft:
        match_idx = None
        for idx, f in enumerate(final):
            if idx not in consumed and f.type == d.type:
                match_idx = idx
                break
        if match_idx is None:
            pairs.append((d, None))
        else:
            consumed.add(match_idx)
            pairs.append((d, final[match_idx]))
    for idx, f in enumerate(final):
        if idx not in consumed:
            pairs.append((None, f))
    return pairs


def compare_sections(
    draft: Optional[ParsedSection], final: Optional[ParsedSection]
) -> SectionDiff:
    if draft is None and final is None:
        raise ValueError("compare_sections needs at least one section")

    if draft is None:
        return SectionDiff(
            section_type=final.type,
            draft_content=None,
            final_content=final.content,
            status=SectionStatus.ADDED,
            changes=[Change(
                type=ChangeType.ADDITION,
                original=None,
                modified=final.content,
                char_delta=len(final.content),
                word_delta=_word_count(final.content),
                position=0,
            )] if final.content else [],
            total_char_delta=len(final.content),
            total_word_delta=_word_count(final.content),
        )

    if final is None:
        return SectionDiff(
            section_type=draft.type,
            draft_content=draft.content,
            final_content=None,
            status=SectionStatus.REMOVED,
            changes=[Change(
                type=ChangeType.DELETION,
                original=draft.content,
                modified=None,
                char_delta=-len(draft.content),
                word_delta=-_word_count(draft.content),
                position=0,
            )] if draft.content else [],
            total_char_delta=-len(draft.content),
            total_word_delta=-_word_count(draft.content),
        )

    if text_similarity(draft.content, final.content) == 1.0:
        return SectionDiff(
            section_type=draft.type,
            draft_content=draft.content,
            final_content=final.content,
            status=SectionStatus.UNCHANGED,
        )

    return SectionDiff(
        section_type=draft.type,
        draft_content=draft.content,
        final_content=final.content,
        status=SectionStatus.MODIFIED,
        changes=find_detailed_changes(draft.content, final.content),
        total_char_delta=len(final.content) - len(draft.content),
        total_word_delta=_word_count(final.content) - _word_count(draft.content),
    )


def section_order_changed(draft: list[ParsedSection], final: list[ParsedSection]) -> bool:
    """True if the section types present in both letters appear in a different order."""
    draft_types = [s.type for s in draft if s.type is not None]
    final_types = [s.type for s in final if s.type is not None]
    shared = set(draft_types) & set(final_types)
    return [t for t in draft_types if t in shared] != [t for t in final_types if t in shared]


def _compute_stats(
    section_diffs: list[SectionDiff],
    draft: list[ParsedSection],
    final: list[ParsedSection],
) -> DiffStats:
    stats = DiffStats(section_order_changed=section_order_changed(draft, final))
    for sd in section_diffs:
        if sd.status == SectionStatus.ADDED:
            stats.sections_added += 1
        elif sd.status == SectionStatus.REMOVED:
            stats.sections_removed += 1
        elif sd.status == SectionStatus.MODIFIED:
            stats.sections_modified += 1

        for change in sd.changes:
            if change.type == ChangeType.ADDITION:
                stats.total_char_added += change.char_delta
                stats.total_word_added += change.word_delta
            elif change.type == ChangeType.DELETION:
                stats.total_char_removed += -change.char_delta
                stats.total_word_removed += -change.word_delta
            elif change.char_delta > 0:
                stats.total_char_added += change.char_delta
                stats.total_word_added += max(change.word_delta, 0)
            else:
                stats.total_char_removed += -change.char_delta
                stats.total_word_removed += max(-change.word_delta, 0)
    return stats


def analyze_diff(
    draft: str,
    final: str,
    letter_id: Optional[str] = None,
    subspecialty: Optional[str] = None,
) -> LetterDiff:
    """Diff two versions of a letter section by section."""
    draft_sections = parse_letter_sections(draft)
    final_sections = parse_letter_sections(final)

    section_diffs = [
        compare_sections(d, f) for d, f in align_sections(draft_sections, final_sections)
    ]

    return LetterDiff(
        letter_id=letter_id,
        subspecialty=subspecialty,
        draft_sections=draft_sections,
        final_sections=final_sections,
        section_diffs=section_diffs,
        stats=_compute_stats(section_diffs, draft_sections, final_sections),
    )


# --- Phrase extraction helpers ---

_MIN_PHRASE_WORDS = 2


def new_word_runs(original: str, modified: str) -> list[str]:
    """Runs of words present in *modified* but not *original* (2+ words, 3+ chars each)."""
    original_words = {w.lower() for w in original.split()}
    phrases: list[str] = []
    run: list[str] = []
    for word in modified.split():
        if word.lower() not in original_words and len(word) > 2:
            run.append(word)
            continue
        if len(run) >= _MIN_PHRASE_WORDS:
            phrases.append(" ".join(run))
        run = []
    if len(run) >= _MIN_PHRASE_WORDS:
        phrases.append(" ".join(run))
    return phrases


def extract_added_phrases(diff: LetterDiff) -> list[dict]:
    """Phrases the clinician added, as ``{"section_type", "phrase"}`` dicts."""
    found: list[dict] = []
    for sd in diff.section_diffs:
        section = sd.section_type.value if sd.section_type else None
        for change in sd.changes:
            if change.type == ChangeType.ADDITION and change.modified:
                found.append({"section_type": section, "phrase": change.modified})
            elif change.type == ChangeType.MODIFICATION and change.original and change.modified:
                for phrase in new_word_runs(change.original, change.modified):
                    found.append({"section_type": section, "phrase": phrase})
    return found


def extract_removed_phrases(diff: LetterDiff) -> list[dict]:
    """Phrases the clinician removed, as ``{"section_type", "phrase"}`` dicts."""
    found: list[dict] = []
    for sd in diff.section_diffs:
        section = sd.section_type.value if sd.section_type else None
        for change in sd.changes:
            if change.type == ChangeType.DELETION and change.original:
                found.append({"section_type": section, "phrase": change.original})
            elif change.type == ChangeType.MODIFICATION and change.original and change.modified:
                for phrase in new_word_runs(change.modified, change.original):
                    found.append({"section_type": section, "phrase": phrase})
    return found


def extract_vocabulary_substitutions(diff: LetterDiff) -> list[dict]:
    """Single-word swaps inside modified sentences of equal length.

    Returns ``{"from", "to", "section_type"}`` dicts, e.g. ``commence`` → ``start``.
    """
    subs: list[dict] = []
    seen: set[tuple[str, str]] = set()
    for sd in diff.section_diffs:
        section = sd.section_type.value if sd.section_type else None
        for change in sd.changes:
            if change.type != ChangeType.MODIFICATION or not change.original or not change.modified:
                continue
            before = _TOKEN_RE.findall(change.original)
            after = _TOKEN_RE.findall(change.modified)
            if len(before) != len(after):
                continue
            diffs = [(b, a) for b, a in zip(before, after) if b.lower() != a.lower()]
            if len(diffs) != 1:
                continue
            b, a = diffs[0]
            key = (b.lower(), a.lower())
            if key in seen or not b.isalpha() or not a.isalpha():
                continue
            seen.add(key)
            subs.append({"from": b.lower(), "to": a.lower(), "section_type": section})
    return subs
