"""
Population-level style analytics across clinicians of one subspecialty.

Aggregates are de-identified: a period is only aggregated when enough
distinct clinicians and edits contribute, and every phrase passes through
phi.scrubber.sanitize_phrase before it is counted. Phrases that needed any
redaction are dropped entirely.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional

from phi.scrubber import sanitize_phrase
from storage import call_db, get_active_db
from style.audit import record_audit
from style.config import (
    MAX_PATTERNS_PER_CATEGORY,
    MAX_SECTION_ORDER_PATTERNS,
    MIN_CLINICIANS_FOR_AGGREGATION,
    MIN_LETTERS_FOR_AGGREGATION,
    MIN_PATTERN_FREQUENCY,
)
from style.diff_analyzer import new_word_runs
from style.models import (
    AggregatedPattern,
    AggregatedPhrasePattern,
    StyleAggregate,
    StyleEdit,
    Subspecialty,
)
from style.section_parser import parse_letter_sections

logger = logging.getLogger(__name__)

MIN_PHRASING_PATTERN_LENGTH = 10
SUMMARY_TOP_PATTERNS = 5

_CLAUSE_SPLIT_RE = re.compile(r"[.!?;]")


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def format_period(value: datetime) -> str:
    """ISO week identifier, e.g. ``2024-W03``."""
    year, week, _ = value.isocalendar()
    return f"{year}-W{week:02d}"


def extract_key_phrases(text: str) -> list[str]:
    """Whole short clauses (3-8 words) plus 4-word windows of 15+ characters."""
    phrases: list[str] = []
    seen: set[str] = set()

    def add(phrase: str) -> None:
        if phrase not in seen:
            seen.add(phrase)
            phrases.append(phrase)

    for clause in _CLAUSE_SPLIT_RE.split(text or ""):
        words = clause.split()
        if not words:
            continue
        if 3 <= len(words) <= 8:
            add(" ".join(words))
        for i in range(len(words) - 2):
            window = " ".join(words[i:i + 4])
            if len(window) >= 15:
                add(window)
    return phrases


def _edit_phrases(edit: StyleEdit) -> tuple[list[str], list[str]]:
    """Return (added, removed) phrases for one recorded edit."""
    before, after = edit.before_text or "", edit.after_text or ""
    if before == after:
        return [], []
    if not before.strip():
        return extract_key_phrases(after), []
    if not after.strip():
        return [], extract_key_phrases(before)
    return new_word_runs(before, after), new_word_runs(after, before)


class _PatternCounter:
    """Frequency and distinct-clinician counts keyed by a tuple."""

    def __init__(self) -> None:
        self._counts: dict[tuple, int] = {}
        self._clinicians: dict[tuple, set[str]] = {}

    def add(self, key: tuple, user_id: str) -> None:
        self._counts[key] = self._counts.get(key, 0) + 1
        self._clinicians.setdefault(key, set()).add(user_id)

    def frequent(self) -> list[tuple[tuple, int, int]]:
        """(key, frequency, clinician_count) at or above MIN_PATTERN_FREQUENCY, most frequent first."""
        rows = [
            (key, count, len(self._clinicians[key]))
            for key, count in self._counts.items()
            if count >= MIN_PATTERN_FREQUENCY
        ]
        rows.sort(key=lambda row: row[1], reverse=True)
        return rows[:MAX_PATTERNS_PER_CATEGORY]


def _percentage(part: int, whole: int) -> int:
    if whole <= 0:
        return 0
    return int(part * 100 / whole + 0.5)


def aggregate_patterns(
    edits: Iterable[StyleEdit], total_clinicians: int,
) -> tuple[list[dict], list[dict], list[dict]]:
    """Build (common additions, common deletions, phrasing patterns) from edits."""
    additions = _PatternCounter()
    deletions = _PatternCounter()
    phrasing = _PatternCounter()

    for edit in edits:
        added, removed = _edit_phrases(edit)
        for action, phrases, counter in (
            ("added", added, additions),
            ("removed", removed, deletions),
        ):
            for phrase in phrases:
                clean = sanitize_phrase(phrase)
                if not clean:
                    continue
                counter.add((edit.section_type, clean.lower()), edit.user_id)
                if len(clean) >= MIN_PHRASING_PATTERN_LENGTH:
                    phrasing.add((action, edit.section_type, clean.lower()), edit.user_id)

    def patterns(counter: _PatternCounter) -> list[dict]:
        return [
            asdict(AggregatedPattern(
                pattern=phrase,
                section_type=section,
                frequency=frequency,
                clinician_count=clinicians,
            ))
            for (section, phrase), frequency, clinicians in counter.frequent()
        ]

    phrase_patterns = [
        asdict(AggregatedPhrasePattern(
            phrase=phrase,
            section_type=section,
            action=action,
            frequency=frequency,
            clinician_count=clinicians,
            percentage_of_clinicians=_percentage(clinicians, total_clinicians),
        ))
        for (action, section, phrase), frequency, clinicians in phrasing.frequent()
    ]
    return patterns(additions), patterns(deletions), phrase_patterns


def aggregate_section_order_patterns(edits: Iterable[StyleEdit]) -> list[dict]:
    """Section orders (two or more typed sections) seen in the approved text."""
    counts: dict[tuple[str, ...], int] = {}
    for edit in edits:
        if not edit.after_text:
            continue
        order = tuple(s.type.value for s in parse_letter_sections(edit.after_text) if s.type)
        if len(order) >= 2:
            counts[order] = counts.get(order, 0) + 1

    ranked = sorted(
        ((order, n) for order, n in counts.items() if n >= MIN_PATTERN_FREQUENCY),
        key=lambda item: item[1],
        reverse=True,
    )
    return [
        {"order": list(order), "frequency": n}
        for order, n in ranked[:MAX_SECTION_ORDER_PATTERNS]
    ]


class StyleAnalyticsAggregator:
    def __init__(self, db: Any) -> None:
        self._db = db

    async def aggregate_style_analytics(
        self,
        subspecialty: Any,
        period_start: datetime,
        period_end: datetime,
        min_sample_size: Optional[int] = None,
    ) -> Optional[StyleAggregate]:
        """Aggregate one subspecialty over [period_start, period_end).

        Returns None, writing nothing, when fewer than
        MIN_CLINICIANS_FOR_AGGREGATION clinicians or fewer than
        *min_sample_size* edits fall in the window.
        """
        sub = subspecialty.value if isinstance(subspecialty, Subspecialty) else str(subspecialty)
        required = MIN_LETTERS_FOR_AGGREGATION if min_sample_size is None else min_sample_size

        rows = await call_db(
            self._db, "list_style_edits_for_period", sub, _iso(period_start), _iso(period_end),
        )
        edits = [StyleEdit.from_row(r) for r in rows]
        clinicians = {e.user_id for e in edits}
        logger.info(
            "Aggregation data for %s: %d edits from %d clinicians", sub, len(edits), len(clinicians),
        )

        if len(clinicians) < MIN_CLINICIANS_FOR_AGGREGATION:
            logger.info(
                "Skipping %s: %d clinicians, %d required",
                sub, len(clinicians), MIN_CLINICIANS_FOR_AGGREGATION,
            )
            return None
        if len(edits) < required:
            logger.info("Skipping %s: %d edits, %d required", sub, len(edits), required)
            return None

        additions, deletions, phrasing = aggregate_patterns(edits, len(clinicians))
        orders = aggregate_section_order_patterns(edits)
        period = format_period(period_start)

        row = await call_db(
            self._db, "upsert_style_aggregate", sub, period,
            common_additions=additions,
            common_deletions=deletions,
            section_order_patterns=orders,
            phrasing_patterns=phrasing,
            sample_size=len(edits),
        )
        aggregate = StyleAggregate.from_row(row)

        await record_audit(
            self._db, None, "analytics.style_aggregated", "style_analytics", str(aggregate.id),
            {
                "subspecialty": sub,
                "period": period,
                "sample_size": len(edits),
                "unique_clinicians": len(clinicians),
                "patterns_found": {
                    "additions": len(additions),
                    "deletions": len(deletions),
                    "section_order": len(orders),
                    "phrasing": len(phrasing),
                },
            },
        )
        logger.info("Style analytics aggregated for %s %s (%d edits)", sub, period, len(edits))
        return aggregate

    async def get_style_analytics(self, subspecialty: Any, limit: int = 10) -> list[StyleAggregate]:
        sub = subspecialty.value if isinstance(subspecialty, Subspecialty) else str(subspecialty)
        rows = await call_db(self._db, "list_style_aggregates", sub, limit)
        return [StyleAggregate.from_row(r) for r in rows]

    async def get_analytics_summary(self) -> dict[str, Any]:
        """Latest aggregate per subspecialty with its top additions and deletions."""
        aggregates = [
            StyleAggregate.from_row(r)
            for r in await call_db(self._db, "latest_style_aggregates")
        ]
        subspecialties = [
            {
                "subspecialty": a.subspecialty,
                "latest_period": a.period,
                "total_samples": a.sample_size,
                "top_additions": [p["pattern"] for p in a.common_additions[:SUMMARY_TOP_PATTERNS]],
                "top_deletions": [p["pattern"] for p in a.common_deletions[:SUMMARY_TOP_PATTERNS]],
            }
            for a in aggregates
        ]
        timestamps = [str(a.created_at) for a in aggregates if a.created_at]
        return {
            "subspecialties": subspecialties,
            "last_updated": max(timestamps) if timestamps else None,
        }

    async def run_weekly_aggregation(self, now: Optional[datetime] = None) -> dict[str, list[str]]:
        """Aggregate the past seven days for every subspecialty."""
        end = now or datetime.now(timezone.utc)
        start = end - timedelta(days=7)
        processed: list[str] = []
        skipped: list[str] = []

        for subspecialty in Subspecialty:
            try:
                result = await self.aggregate_style_analytics(subspecialty, start, end)
            except Exception:
                logger.exception("Aggregation failed for %s", subspecialty.value)
                skipped.append(subspecialty.value)
                continue
            if result is None:
                skipped.append(subspecialty.value)
            else:
                processed.append(subspecialty.value)

        logger.info("Weekly aggregation: %d processed, %d skipped", len(processed), len(skipped))
        return {"processed": processed, "skipped": skipped}


_aggregator_instance: StyleAnalyticsAggregator | None = None


def get_analytics_aggregator() -> StyleAnalyticsAggregator:
    """Return the module-level StyleAnalyticsAggregator singleton."""
    global _aggregator_instance
    if _aggregator_instance is None:
        _aggregator_instance = StyleAnalyticsAggregator(get_active_db())
    return _aggregator_instance
