"""Unit tests for compass.prompts."""

from compass.decision_engine import Action
from compass.prompts import ANALYSIS_PROMPT, BASE_PERSONA, OVERLAYS, compose_system_prompt, lookup_overlay


class TestOverlays:
    def test_every_action_has_an_overlay(self):
        ids = {a.value for a in Action if a != Action.LOW_EFFORT_PUSHBACK}
        ids |= {f"low_effort_pushback_{level}" for level in (1, 2, 3)}
        assert ids <= set(OVERLAYS)

    def test_lookup_combines_phase_note_and_overlay(self):
        text = lookup_overlay("blocker_check", "check_blockers")
        assert text.startswith("The constraint is confirmed.")
        assert text.endswith("next two weeks.")

    def test_unknown_overlay_keeps_phase_note(self):
        assert lookup_overlay("diagnostic", "no_such_overlay") == "You are narrowing down which constraint is at play."


class TestComposeSystemPrompt:
    def test_persona_first(self):
        prompt = compose_system_prompt("intake", "gather_context")
        assert prompt.startswith(BASE_PERSONA)
        assert "## This Turn" in prompt

    def test_redirect_target_is_named(self):
        prompt = compose_system_prompt("diagnostic", "cross_map_redirect", redirect_to="strategy")
        assert "Suspected root constraint: strategy." in prompt


def test_analysis_prompt_formats():
    prompt = ANALYSIS_PROMPT.format(
        phase="intake",
        turn=1,
        hypothesis="none",
        hypothesis_confidence="0.00",
        constraint_category="none",
        module0_context="{}",
        recent_messages="USER: hi",
        user_message="hi",
        schema_version="2",
    )
    assert '"schema_version": "2"' in prompt
    assert "{{" not in prompt
