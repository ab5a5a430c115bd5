"""Split clinic letters into typed sections.

Section headings are classified by a prioritized rule table: greeting
salutations first, then valedictions, then clinical headings. Headings are
matched case-insensitively and may carry a trailing colon or full stop and a
markdown ``#``/``##`` prefix.
"""

from __future__ import annotations

import re
from typing import Optional

from style.models import ParsedSection, SectionType


def _heading(names: str) -> re.Pattern:
    """Heading that may stand alone on its line."""
    return re.compile(rf"^(?:#{{1,3}}\s*)?(?:{names})\s*[:.]?$", re.IGNORECASE)


def _short_heading(names: str) -> re.Pattern:
    """Short or ambiguous heading: needs a colon or a markdown prefix.

    Stops a plan line such as ``ECG.`` being read as an investigations header.
    """
    return re.compile(
        rf"^(?:#{{1,3}}\s*(?:{names})\s*:?|(?:{names})\s*:)$", re.IGNORECASE
    )


_VALEDICTION = re.compile(
    r"^(?:yours\s+(?:sincerely|faithfully|truly)|kind\s+regards|best\s+(?:wishes|regards)"
    r"|with\s+(?:kind\s+)?regards|warm\s+regards|sincerely|regards)\b[,.]?",
    re.IGNORECASE,
)

# (section type, pattern, line is also content)
_SECTION_RULES: list[tuple[SectionType, re.Pattern, bool]] = [
    (SectionType.GREETING, re.compile(
        r"^dear\s+(?:dr\.?|doctor|professor|prof\.?|mr\.?|mrs\.?|ms\.?|miss)\s+[\w\s.'-]+,?",
        re.IGNORECASE), True),
    (SectionType.GREETING, re.compile(r"^to whom it may concern", re.IGNORECASE), True),
    (SectionType.GREETING, re.compile(r"^dear\s+colleagues?\b", re.IGNORECASE), True),
    (SectionType.SIGNOFF, _VALEDICTION, True),
    (SectionType.PRESENTING_COMPLAINT, _heading(
        r"presenting\s+complaints?|chief\s+complaint|reason\s+for\s+(?:referral|visit|consultation)"), False),
    (SectionType.PRESENTING_COMPLAINT, _short_heading(r"pc|cc"), False),
    (SectionType.PAST_MEDICAL_HISTORY, _heading(
        r"past\s+medical\s+history|pmhx?|medical\s+history|past\s+history"), False),
    (SectionType.FAMILY_HISTORY, _heading(r"family\s+history|fhx"), False),
    (SectionType.FAMILY_HISTORY, _short_heading(r"fh"), False),
    (SectionType.SOCIAL_HISTORY, _heading(r"social\s+history|shx"), False),
    (SectionType.SOCIAL_HISTORY, _short_heading(r"sh"), False),
    (SectionType.HISTORY, _heading(
        r"history\s+of\s+present(?:ing)?\s+illness|hpi|clinical\s+history|history"), False),
    (SectionType.HISTORY, _short_heading(r"background"), False),
    (SectionType.MEDICATIONS, _heading(
        r"(?:current\s+)?medications?|drug\s+list|medication\s+list"), False),
    (SectionType.MEDICATIONS, _short_heading(r"meds"), False),
    (SectionType.EXAMINATION, _heading(
        r"(?:physical\s+)?examination|on\s+examination|o/e|examination\s+findings"), False),
    (SectionType.EXAMINATION, _short_heading(r"exam"), False),
    (SectionType.INVESTIGATIONS, _heading(r"investigations?"), False),
    (SectionType.INVESTIGATIONS, _short_heading(
        r"results?|labs?|imaging|ecg|echo(?:cardiogram)?|angiography"), False),
    (SectionType.IMPRESSION, _heading(r"impression|diagnos[ie]s|assessment"), False),
    (SectionType.IMPRESSION, _short_heading(r"summary"), False),
    (SectionType.PLAN, _heading(r"(?:management\s+)?plan|treatment\s+plan|recommendations?"), False),
    (SectionType.PLAN, _short_heading(r"management"), False),
    (SectionType.FOLLOW_UP, _heading(r"follow[\s-]?up|f/u|next\s+appointment|ongoing\s+care"), False),
    (SectionType.FOLLOW_UP, _short_heading(r"fu|review"), False),
    (SectionType.INTRODUCTION, _heading(r"introduction"), False),
    (SectionType.INTRODUCTION, re.compile(r"^(?:re|regarding)\s*:", re.IGNORECASE), True),
    (SectionType.INTRODUCTION, re.compile(r"^thank\s+you\s+for\s+referring\b", re.IGNORECASE), True),
    (SectionType.CLOSING, _heading(r"closing|conclusion|in\s+summary"), False),
    (SectionType.CLOSING, re.compile(
        r"^(?:please\s+do\s+not\s+hesitate|if\s+you\s+have\s+any\s+(?:further\s+)?questions)\b",
        re.IGNORECASE), True),
]

_MARKDOWN_HEADER = re.compile(r"^#{1,3}\s+\w+")
_CAPS_HEADER = re.compile(r"^[A-Z][A-Z0-9 /&()'-]{1,60}:$")
_TITLE_HEADER = re.compile(r"^(?:[A-Z][a-z]+)(?:\s+(?:[A-Z][a-z]+|of|and|&))*:$")
_OPENER = re.compile(
    r"^(?:thank\s+you\s+for\s+(?:referring|seeing)|re\s*:|regarding\s*:)", re.IGNORECASE
)


def _match_rule(line: str) -> Optional[tuple[SectionType, bool]]:
    stripped = line.strip()
    if not stripped:
        return None
    for section_type, pattern, inline in _SECTION_RULES:
        if pattern.match(stripped):
            return section_type, inline
    return None


def detect_section_type(line: str) -> Optional[SectionType]:
    """Return the section a heading line opens, or None for ordinary text."""
    matched = _match_rule(line)
    return matched[0] if matched else None


def is_section_header(line: str) -> bool:
    stripped = line.strip()
    if not stripped:
        return False
    if detect_section_type(stripped) is not None:
        return True
    return bool(
        _MARKDOWN_HEADER.match(stripped)
        or _CAPS_HEADER.match(stripped)
        or _TITLE_HEADER.match(stripped)
    )


def _infer_leading_type(line: str) -> Optional[SectionType]:
    stripped = line.strip()
    if re.match(r"^(?:dear|to whom)\b", stripped, re.IGNORECASE):
        return SectionType.GREETING
    if _OPENER.match(stripped):
        return SectionType.INTRODUCTION
    return None


def parse_letter_sections(text: str) -> list[ParsedSection]:
    """Split *text* into ordered sections. Empty input gives an empty list."""
    if not text or not text.strip():
        return []

    sections: list[ParsedSection] = []
    current: Optional[dict] = None
    offset = 0

    def close(end: int) -> None:
        content = "\n".join(current["lines"]).strip()
        if content or current["header"]:
            sections.append(ParsedSection(
                type=current["type"],
                header=current["header"],
                content=content,
                start_index=current["start"],
                end_index=end,
            ))

    for line in text.split("\n"):
        line_end = offset + len(line)
        matched = _match_rule(line)

        if matched is not None:
            section_type, inline = matched
            if current is not None:
                close(max(current["start"], offset - 1))
            current = {
                "type": section_type,
                "header": line.strip(),
                "lines": [line] if inline else [],
                "start": offset,
            }
        elif current is None:
            if not line.strip():
                offset = line_end + 1
                continue
            header = line.strip() if is_section_header(line) else None
            current = {
                "type": _infer_leading_type(line),
                "header": header,
                "lines": [] if header else [line],
                "start": offset,
            }
        else:
            current["lines"].append(line)

        offset = line_end + 1

    if current is not None:
        close(len(text))

    if sections:
        last = sections[-1]
        if last.type is None and any(
            _VALEDICTION.match(ln.strip()) for ln in last.content.split("\n")
        ):
            last.type = SectionType.SIGNOFF

    return sections
