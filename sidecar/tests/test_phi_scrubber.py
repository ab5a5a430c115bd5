"""Tests for PHI redaction and phrase sanitisation."""

import pytest

from main import scrub_sentry_event
from phi.scrubber import REDACTED, contains_phi, redact_phi, sanitize_phrase, scrub_phi


class TestScrubPhi:
    def test_titled_name(self):
        result = scrub_phi("Thank you for referring Mr. John Smith for evaluation.")
        assert result.scrubbed_text == "Thank you for referring [REDACTED] for evaluation."
        assert result.phi_found == ["name"]
        assert result.redaction_count == 1

    def test_clinical_text_untouched(self):
        result = scrub_phi("LVEF was 55%.")
        assert result.scrubbed_text == "LVEF was 55%."
        assert result.phi_found == []
        assert result.redaction_count == 0

    def test_empty(self):
        assert scrub_phi("").scrubbed_text == ""

    @pytest.mark.parametrize("text, category", [
        ("DOB: 12/03/1950", "dob"),
        ("Seen on 12/03/2024 in clinic", "date"),
        ("Seen on 12th March 2024 in clinic", "date"),
        ("Seen on March 12, 2024 in clinic", "date"),
        ("Contact j.smith@example.com today", "email"),
        ("Medicare 2123456701 on file", "identifier"),
        ("Call 0412 345 678 to book", "phone"),
        ("Call (02) 9876 5432 to book", "phone"),
        ("Lives at 12 Smith Street alone", "address"),
        ("Seen at Hospital Royal North Shore today", "facility"),
        ("URN: 445566 on the request", "record_number"),
    ])
    def test_categories(self, text, category):
        result = scrub_phi(text)
        assert category in result.phi_found
        assert REDACTED in result.scrubbed_text

    def test_adjacent_redactions_collapse(self):
        result = scrub_phi("Mr. John Smith DOB: 01/02/1950")
        assert result.scrubbed_text == REDACTED
        assert result.redaction_count == 2

    def test_ordinary_words_after_facility_keyword(self):
        text = "The patient was admitted to hospital overnight."
        assert redact_phi(text) == text

    def test_blood_pressure_is_not_a_date(self):
        assert redact_phi("BP 130/80 today.") == "BP 130/80 today."


class TestContainsPhi:
    def test_detects(self):
        assert contains_phi("Discussed with Dr Jones")
        assert not contains_phi("Continue current medications")
        assert not contains_phi("")


class TestSanitizePhrase:
    def test_keeps_clean_phrase(self):
        assert sanitize_phrase("Review in six weeks") == "Review in six weeks"

    def test_normalises_whitespace(self):
        assert sanitize_phrase("  Review   in six\nweeks ") == "Review in six weeks"

    def test_drops_short_phrases(self):
        assert sanitize_phrase("ok") is None
        assert sanitize_phrase("") is None

    def test_drops_phrases_needing_redaction(self):
        assert sanitize_phrase("Refer back to Dr Jones") is None
        assert sanitize_phrase("call 0412 345 678 if worse") is None


class TestSentryScrubbing:
    def test_exception_and_breadcrumbs_redacted(self):
        event = {
            "exception": {"values": [{"value": "Failed for Mrs. Jane Doe"}]},
            "breadcrumbs": {"values": [{"message": "email j.doe@example.com"}, {"category": "http"}]},
        }
        scrubbed = scrub_sentry_event(event, {})
        assert scrubbed["exception"]["values"][0]["value"] == "Failed for [REDACTED]"
        assert scrubbed["breadcrumbs"]["values"][0]["message"] == "email [REDACTED]"

    def test_event_without_payload(self):
        assert scrub_sentry_event({}, {}) == {}
