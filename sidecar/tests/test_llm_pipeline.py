"""Tests for the LLM pipeline: prompt engine, response parser and client helpers."""

import json

import pytest

from llm.client import LLMClient, LLMProvider, _to_bedrock_model_id
from llm.prompt_engine import (
    ANALYSIS_SYSTEM_PROMPT,
    build_seed_letter_prompt,
    build_style_analysis_prompt,
    truncate_text,
)
from llm.response_parser import extract_json_object, parse_style_analysis
from style.models import StyleEdit


def _make_edit(section_type: str = "plan", **overrides) -> StyleEdit:
    """Create a minimal stored edit for prompt tests."""
    defaults = dict(
        user_id="u1",
        letter_id="L1",
        subspecialty="HEART_FAILURE",
        section_type=section_type,
        edit_type="modification",
        before_text="Commence furosemide.",
        after_text="Start furosemide 40mg mane.",
        character_changes=8,
        word_changes=2,
    )
    defaults.update(overrides)
    return StyleEdit(**defaults)


class TestPromptEngine:
    def test_system_prompt_guards_patient_details(self):
        assert "Never copy patient names" in ANALYSIS_SYSTEM_PROMPT

    def test_edits_grouped_by_section(self):
        prompt = build_style_analysis_prompt(
            [_make_edit("plan"), _make_edit("history"), _make_edit("plan")], "HEART_FAILURE",
        )
        assert "Heart Failure letters" in prompt
        assert "Below are 3 edits" in prompt
        assert prompt.index("## PLAN SECTION") < prompt.index("## HISTORY SECTION")
        assert "BEFORE:\nCommence furosemide." in prompt
        assert "AFTER:\nStart furosemide 40mg mane." in prompt

    def test_untyped_edits_grouped_as_other(self):
        prompt = build_style_analysis_prompt([_make_edit(None)], "IMAGING")
        assert "## OTHER SECTION" in prompt

    def test_long_edit_text_truncated(self):
        prompt = build_style_analysis_prompt([_make_edit(after_text="x" * 2000)], "IMAGING")
        assert "x" * 2000 not in prompt
        assert "x" * 497 + "..." in prompt

    def test_response_contract_included(self):
        prompt = build_style_analysis_prompt([_make_edit()], "IMAGING")
        assert "detectedSectionOrder" in prompt
        assert "confidence" in prompt

    def test_seed_letter_prompt(self):
        prompt = build_seed_letter_prompt(["Dear Dr. Smith, ...", "   ", "Dear Dr. Jones, ..."], "IMAGING")
        assert "Below are 2 complete letters" in prompt
        assert "## Letter 1" in prompt
        assert "## Letter 2" in prompt
        assert "## Letter 3" not in prompt

    def test_truncate_text(self):
        assert truncate_text("short", 10) == "short"
        assert truncate_text("abcdefghij", 6) == "abc..."


class TestResponseParser:
    def test_fenced_json(self):
        text = 'Here is my analysis:\n```json\n{"detectedFormalityLevel": "formal"}\n```'
        assert extract_json_object(text) == {"detectedFormalityLevel": "formal"}

    def test_raw_object_with_surrounding_text(self):
        text = 'Sure. {"insights": ["a"]} Hope this helps.'
        assert extract_json_object(text) == {"insights": ["a"]}

    def test_no_json_raises(self):
        with pytest.raises(ValueError):
            extract_json_object("I could not analyze these edits.")
        with pytest.raises(ValueError):
            extract_json_object("")

    def test_full_answer(self):
        text = json.dumps({
            "detectedSectionOrder": ["Greeting", "history", "Follow Up", "nonsense"],
            "detectedSectionVerbosity": {"history": "brief", "plan": "enormous"},
            "detectedVocabulary": {"commence": "start"},
            "detectedGreetingStyle": "formal",
            "detectedFormalityLevel": "very-formal",
            "confidence": {"sectionOrder": 1.7, "greetingStyle": -0.2, "formalityLevel": 0.8},
            "phrasePatterns": [{"phrase": "We will arrange", "sectionType": "plan", "frequency": 4}],
            "insights": ["Prefers short histories", 42],
        })
        result = parse_style_analysis(text, "u1", "IMAGING", 7, "claude-test")
        assert result.detected_section_order == ["greeting", "history", "follow_up"]
        assert result.detected_section_verbosity == {"history": "brief"}
        assert result.detected_vocabulary == {"commence": "start"}
        assert result.detected_formality_level == "very-formal"
        assert result.confidence == {
            "section_order": 1.0,
            "greeting_style": 0.0,
            "formality_level": 0.8,
        }
        assert result.phrase_patterns[0].section_type == "plan"
        assert result.phrase_patterns[0].action == "preferred"
        assert result.insights == ["Prefers short histories"]
        assert result.edits_analyzed == 7
        assert result.model_used == "claude-test"

    def test_unknown_enum_values_dropped(self):
        result = parse_style_analysis(
            '{"detectedGreetingStyle": "flamboyant", "detectedTerminologyLevel": "lay"}',
            "u1", "IMAGING", 1,
        )
        assert result.detected_greeting_style is None
        assert result.detected_terminology_level == "lay"

    def test_snake_case_keys_accepted(self):
        result = parse_style_analysis('{"detected_signoff": "Kind regards,"}', "u1", "IMAGING", 1)
        assert result.detected_signoff == "Kind regards,"

    def test_missing_fields_are_empty(self):
        result = parse_style_analysis("{}", "u1", "IMAGING", 1)
        assert result.detected_section_order is None
        assert result.detected_phrasing == {}
        assert result.confidence == {}
        assert result.insights == []


class TestClientHelpers:
    def test_bedrock_model_ids(self):
        assert _to_bedrock_model_id("claude-sonnet-4-6") == "us.anthropic.claude-sonnet-4-6"
        assert _to_bedrock_model_id("claude-sonnet-4-6", "eu-west-1") == "eu.anthropic.claude-sonnet-4-6"
        assert _to_bedrock_model_id("us.anthropic.custom-v1:0") == "us.anthropic.custom-v1:0"

    def test_default_models(self):
        assert LLMClient(LLMProvider.CLAUDE, "key").model == "claude-sonnet-4-6"
        assert LLMClient(LLMProvider.OPENAI, "key").model == "gpt-4.1-mini"
        assert LLMClient(LLMProvider.CLAUDE, "key", model="claude-haiku-4-5-20251001").model == (
            "claude-haiku-4-5-20251001"
        )
