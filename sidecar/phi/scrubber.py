"""
Regex-based PHI scrubber.

Replaces identifying details in letter text with a single ``[REDACTED]``
token before the text is aggregated across clinicians or sent to error
reporting. Only the copy is modified; stored edits keep their original text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

REDACTED = "[REDACTED]"

MIN_PHRASE_LENGTH = 5

_MONTHS = (
    r"(?:January|February|March|April|May|June|July|August|September|October|November|December)"
)


@dataclass
class ScrubResult:
    scrubbed_text: str
    phi_found: list[str]
    redaction_count: int


_PHI_PATTERNS: list[tuple[str, re.Pattern]] = [
    # Labeled fields swallow the rest of the line: "Patient: John Doe", "DOB: 01/02/1950"
    (
        "patient_name",
        re.compile(r"(?i)\b(?:patient\s+name|pt\.?\s*name|patient)\s*[:=][^\n]+"),
    ),
    (
        "dob",
        re.compile(r"(?i)\b(?:DOB|D\.O\.B\.|date\s+of\s+birth|birth\s*date)\s*[:=][^\n]+"),
    ),
    # Titled names: "Mr. John Smith", "Dr Jones"
    (
        "name",
        re.compile(r"\b(?:Mr|Mrs|Ms|Miss|Dr|Prof)\b\.?\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*"),
    ),
    # Numeric and long-form dates
    ("date", re.compile(r"\b\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}\b")),
    (
        "date",
        re.compile(rf"(?i)\b\d{{1,2}}(?:st|nd|rd|th)?\s+{_MONTHS}\s+\d{{2,4}}\b"),
    ),
    (
        "date",
        re.compile(rf"(?i)\b{_MONTHS}\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s+\d{{4}}\b"),
    ),
    # Emails before phone numbers so digits inside addresses stay whole
    ("email", re.compile(r"\b[A-Za-z0-9._%+\-]+@[A-Za-z0-9.\-]+\.[A-Za-z]{2,}\b")),
    # Medicare / IHI style identifiers
    ("identifier", re.compile(r"\b\d{10,11}\b")),
    # AU mobile, AU landline, +61, then US/general
    ("phone", re.compile(r"\b04\d{2}[\-.\s]?\d{3}[\-.\s]?\d{3}\b")),
    ("phone", re.compile(r"(?<!\w)\(?0[2-9]\)?\s?\d{4}[\-.\s]?\d{4}\b")),
    ("phone", re.compile(r"\+61\s?\d{1,3}[\-.\s]?\d{3}[\-.\s]?\d{3}(?:[\-.\s]?\d{1,3})?\b")),
    (
        "phone",
        re.compile(r"(?<!\w)(?:\+?\d{1,3}[\-.\s]?)?\(?\d{3}\)?[\-.\s]?\d{3}[\-.\s]?\d{4}\b"),
    ),
    # Street addresses: "12 Smith Street"
    (
        "address",
        re.compile(
            r"\b\d+\s+[A-Z][a-z]+\s+"
            r"(?i:Street|St|Avenue|Ave|Road|Rd|Drive|Dr|Court|Ct|Lane|Ln|Boulevard|Blvd)\b"
        ),
    ),
    # Facility names: "Hospital Royal North Shore"
    (
        "facility",
        re.compile(
            r"\b(?i:Hospital|Clinic|Medical\s+Centre|Medical\s+Center|Surgery)"
            r"\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*"
        ),
    ),
    ("record_number", re.compile(r"(?i)\b(?:URN|MRN|ID)\s*[:#]?\s*\d+\b")),
]

_REPEATED_TOKEN = re.compile(re.escape(REDACTED) + r"(?:\s*" + re.escape(REDACTED) + r")+")
_WHITESPACE = re.compile(r"\s+")


def scrub_phi(text: str) -> ScrubResult:
    """Redact PHI from *text*, reporting which categories were found."""
    if not text:
        return ScrubResult(scrubbed_text="", phi_found=[], redaction_count=0)

    scrubbed = text
    categories: set[str] = set()
    total = 0
    for category, pattern in _PHI_PATTERNS:
        scrubbed, count = pattern.subn(REDACTED, scrubbed)
        if count:
            categories.add(category)
            total += count

    scrubbed = _REPEATED_TOKEN.sub(REDACTED, scrubbed)
    return ScrubResult(
        scrubbed_text=scrubbed.strip(),
        phi_found=sorted(categories),
        redaction_count=total,
    )


def redact_phi(text: str) -> str:
    return scrub_phi(text).scrubbed_text


def contains_phi(text: str) -> bool:
    if not text:
        return False
    return any(pattern.search(text) for _, pattern in _PHI_PATTERNS)


def sanitize_phrase(phrase: str) -> Optional[str]:
    """Return a phrase safe for aggregation, or None if it should be dropped.

    Phrases shorter than five characters, or that needed any redaction,
    are dropped outright rather than kept in redacted form.
    """
    if not phrase:
        return None
    trimmed = phrase.strip()
    if len(trimmed) < MIN_PHRASE_LENGTH:
        return None

    redacted = redact_phi(trimmed)
    if REDACTED in redacted or contains_phi(redacted):
        return None

    normalized = _WHITESPACE.sub(" ", redacted).strip()
    if len(normalized) < MIN_PHRASE_LENGTH:
        return None
    return normalized
