"""
Prompt construction for clinician style analysis.

Builds a system prompt (analyst role, conservatism about confidence) and a
user prompt (the clinician's edits or sample letters plus the JSON response
contract). The JSON keys use camelCase; llm.response_parser maps them back.
"""

from __future__ import annotations

from typing import Iterable, Optional

from style.config import (
    EDIT_TEXT_PROMPT_LIMIT,
    MAX_EDITS_PER_SECTION_IN_PROMPT,
    SEED_LETTER_PROMPT_LIMIT,
)
from style.models import StyleEdit


def truncate_text(text: str, limit: int) -> str:
    """Cut *text* to *limit* characters, marking the cut with ``...``."""
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 3)] + "..."


def _subspecialty_label(subspecialty: str) -> str:
    return subspecialty.replace("_", " ").title()


ANALYSIS_SYSTEM_PROMPT = """\
You are a medical writing analyst. You study how an individual specialist \
edits AI-drafted clinic letters and describe the stable preferences behind \
those edits.

Focus on:
- Concrete, observable patterns rather than impressions
- Patterns that recur across several edits
- Conventions of the specialist's subspecialty and local practice
- Section-level preferences (ordering, inclusion, verbosity)
- Phrase-level preferences (preferred and avoided wording)
- Word-level substitutions

Be conservative with confidence. Assign high confidence only when a pattern \
holds across many examples. Never copy patient names, dates, identifiers or \
other patient details into your answer.\
"""

SEED_LETTER_SYSTEM_PROMPT = """\
You are a medical writing analyst. You study complete letters written by one \
specialist and describe the stable writing preferences they show.

Focus on:
- Concrete, observable patterns rather than impressions
- Consistency across the letters
- Section structure and ordering
- Recurring phrases and vocabulary
- Greeting, sign-off and formality conventions

You are inferring from finished letters rather than explicit edits, so keep \
confidence lower than you would for edit evidence. Never copy patient names, \
dates, identifiers or other patient details into your answer.\
"""

_RESPONSE_CONTRACT = """\
# YOUR ANALYSIS

Respond with a single JSON object inside a ```json fenced block:

```json
{
  "detectedSectionOrder": ["greeting", "history", "examination", "impression", "plan", "signoff"],
  "detectedSectionInclusion": {"history": 0.95, "family_history": 0.3},
  "detectedSectionVerbosity": {"history": "detailed", "plan": "brief"},
  "detectedPhrasing": {"plan": ["will arrange", "recommend proceeding with"]},
  "detectedAvoidedPhrases": {"impression": ["It is felt that"]},
  "detectedVocabulary": {"utilise": "use", "commence": "start"},
  "detectedTerminologyLevel": "specialist" | "lay" | "mixed" | null,
  "detectedGreetingStyle": "formal" | "casual" | "mixed" | null,
  "detectedClosingStyle": "formal" | "casual" | "mixed" | null,
  "detectedSignoff": "Yours sincerely," | null,
  "detectedFormalityLevel": "very-formal" | "formal" | "neutral" | "casual" | null,
  "detectedParagraphStructure": "long" | "short" | "mixed" | null,
  "confidence": {
    "sectionOrder": 0.0, "sectionInclusion": 0.0, "sectionVerbosity": 0.0,
    "phrasingPreferences": 0.0, "avoidedPhrases": 0.0, "vocabularyMap": 0.0,
    "terminologyLevel": 0.0, "greetingStyle": 0.0, "closingStyle": 0.0,
    "signoffTemplate": 0.0, "formalityLevel": 0.0, "paragraphStructure": 0.0
  },
  "phrasePatterns": [
    {"phrase": "recommend proceeding with", "sectionType": "plan", "frequency": 5, "action": "preferred"}
  ],
  "sectionOrderPatterns": [
    {"order": ["history", "examination", "impression", "plan"], "frequency": 8}
  ],
  "insights": ["Prefers brief plan sections written as numbered lists."]
}
```

Confidence scale:
- 0.9-1.0: consistent across all examples
- 0.7-0.9: consistent with minor variation
- 0.5-0.7: moderate pattern
- 0.3-0.5: weak pattern
- 0.0-0.3: no clear pattern

Use null for scalar fields without a clear preference and {} or [] for empty \
maps and lists. Section names must be one of: greeting, introduction, history, \
presenting_complaint, past_medical_history, medications, family_history, \
social_history, examination, investigations, impression, plan, follow_up, \
closing, signoff.
"""


def build_style_analysis_prompt(edits: Iterable[StyleEdit], subspecialty: Optional[str]) -> str:
    """User prompt listing the edits grouped by section.

    With no *subspecialty* the edits span all of the clinician's letters.
    """
    edits = list(edits)
    label = _subspecialty_label(subspecialty) if subspecialty else "clinic"

    by_section: dict[str, list[StyleEdit]] = {}
    for edit in edits:
        by_section.setdefault(edit.section_type or "other", []).append(edit)

    parts = [
        f"Analyze these edits to {label} letters and describe the physician's "
        f"writing style preferences.\n\n"
        f"Below are {len(edits)} edits the physician made to AI-drafted letters. "
        f"Each shows the BEFORE (draft) and AFTER (physician) text.\n\n"
        "Identify consistent patterns in:\n"
        "1. Section ordering\n"
        "2. Section inclusion and omission\n"
        "3. Verbosity per section\n"
        "4. Preferred phrasing per section\n"
        "5. Phrases that are deleted or avoided\n"
        "6. Vocabulary substitutions\n"
        "7. Terminology level\n"
        "8. Greeting and closing style\n"
        "9. Sign-off\n"
        "10. Overall formality\n"
        "11. Paragraph structure\n\n"
        "# EDIT EXAMPLES\n"
    ]

    for section, section_edits in by_section.items():
        parts.append(f"## {section.upper()} SECTION\n")
        for i, edit in enumerate(section_edits[:MAX_EDITS_PER_SECTION_IN_PROMPT], start=1):
            parts.append(
                f"### Edit {i} ({edit.edit_type})\n"
                f"BEFORE:\n{truncate_text(edit.before_text, EDIT_TEXT_PROMPT_LIMIT)}\n\n"
                f"AFTER:\n{truncate_text(edit.after_text, EDIT_TEXT_PROMPT_LIMIT)}\n\n"
                "---\n"
            )

    parts.append(_RESPONSE_CONTRACT)
    return "\n".join(parts)


def build_seed_letter_prompt(letters: Iterable[str], subspecialty: str) -> str:
    """User prompt for bootstrapping a profile from complete sample letters."""
    letters = [letter for letter in letters if letter and letter.strip()]
    label = _subspecialty_label(subspecialty)

    parts = [
        f"Analyze these {label} letters written by one physician and describe "
        f"their writing style.\n\n"
        f"Below are {len(letters)} complete letters. Look for consistent structure, "
        "recurring phrases and terminology, section ordering and inclusion, "
        "sign-off conventions and overall tone.\n\n"
        "# SAMPLE LETTERS\n"
    ]
    for i, letter in enumerate(letters, start=1):
        parts.append(f"## Letter {i}\n\n{truncate_text(letter, SEED_LETTER_PROMPT_LIMIT)}\n\n---\n")

    parts.append(_RESPONSE_CONTRACT)
    return "\n".join(parts)
