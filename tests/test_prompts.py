"""Tests for abo.prompts: template loading and rendering."""

import pytest

from abo.prompts import render_message, render_prompt
from abo.schemas.agents import BrandSettings
from abo.schemas.situation import ActionDetails


def _variables(**overrides):
    variables = {
        "details": ActionDetails(),
        "brand": BrandSettings(company_name="Acme"),
        "company_name": "Acme",
        "signature": "The Acme team",
        "subscriber_name": "Ann",
        "subscriber_email": "ann@example.com",
        "plan": "Pro",
        "trigger_label": "trial ending",
        "context": {},
    }
    variables.update(overrides)
    return variables


class TestRenderPrompt:
    def test_system_prompt_uses_brand(self):
        brand = BrandSettings(company_name="Acme", never_say=["cheap"], values=["honesty"])
        result = render_prompt("system", **_variables(brand=brand))
        assert "on behalf of Acme" in result
        assert '- "cheap"' in result
        assert "- honesty" in result
        assert "The Acme team" in result

    def test_optional_sections_omitted(self):
        result = render_prompt("system", **_variables())
        assert "Never say" not in result
        assert "Always mention" not in result

    def test_recovery_prompt_lists_amount(self):
        result = render_prompt("recovery", **_variables(amount="29.00 EUR"))
        assert "Amount due: 29.00 EUR" in result
        assert "What we know" not in result

    def test_memory_digest_rendered_when_provided(self):
        result = render_prompt(
            "recovery", **_variables(memory_digest="Opened the last two emails.")
        )
        assert "## What we know about this customer" in result
        assert "Opened the last two emails." in result

    def test_conversion_prompt_trial_days(self):
        result = render_prompt("conversion", **_variables(context={"days_remaining": 0}))
        assert "(trial ending)" in result
        assert "Trial days remaining: 0" in result

    def test_nonexistent_template_raises(self):
        with pytest.raises(FileNotFoundError, match="Prompt template not found"):
            render_prompt("nonexistent")


class TestRenderMessage:
    def test_first_line_is_subject(self):
        subject, body = render_message(
            "email", **_variables(agent_type="recovery", amount="29.00 EUR")
        )
        assert subject == "A problem with your Pro payment"
        assert body.startswith("<p>Hello Ann,</p>")
        assert "of 29.00 EUR for Pro" in body

    def test_note_is_appended(self):
        details = ActionDetails(note="We are here to help.")
        _, body = render_message(
            "email", **_variables(agent_type="recovery", details=details, note=details.note)
        )
        assert "<p>We are here to help.</p>" in body

    def test_expired_notice_pluralizes(self):
        subject, _ = render_message("owner_expired", count=1, actions=[], max_age_hours=48.0)
        assert subject == "1 action expired without review"
