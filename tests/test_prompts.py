"""Tests for system prompt composition."""

from __future__ import annotations

from src.models import ConversationState, Stage
from src.prompts import DEFAULT_PERSONA, DOCUMENT_RULES, compose, render_state
from src.retrieval import NO_CONTEXT_MARKER


class TestCompose:
    def test_section_order(self):
        prompt = compose("You are Arena's assistant.", ConversationState(), "Monday", "VR 20% off")
        positions = [
            prompt.index("You are Arena's assistant."),
            prompt.index("You must ONLY answer"),
            prompt.index("TODAY IS: Monday"),
            prompt.index("## Booking Progress"),
            prompt.index("CONTEXT:\nVR 20% off"),
        ]
        assert positions == sorted(positions)

    def test_missing_context_uses_marker(self):
        prompt = compose("persona", ConversationState(), "Friday", None)
        assert prompt.endswith(f"CONTEXT:\n{NO_CONTEXT_MARKER}")

    def test_blank_context_uses_marker(self):
        prompt = compose("persona", ConversationState(), "Friday", "  \n ")
        assert f"CONTEXT:\n{NO_CONTEXT_MARKER}" in prompt

    def test_empty_tenant_prompt_uses_default_persona(self):
        prompt = compose("", ConversationState(), "Friday", "x")
        assert prompt.startswith(DEFAULT_PERSONA)

    def test_day_is_stated_and_never_asked(self):
        prompt = compose(None, ConversationState(), "Sunday", "x")
        assert "TODAY IS: Sunday" in prompt
        assert "NEVER ask the user what day it is" in prompt

    def test_rules_included_verbatim(self):
        assert DOCUMENT_RULES in compose("p", ConversationState(), "Monday", "x")

    def test_pure(self):
        state = ConversationState(activity="Bowling", stage=Stage.ACTIVITY_SELECTED, pending_slots=["date"])
        assert compose("p", state, "Monday", "c") == compose("p", state, "Monday", "c")


class TestRenderState:
    def test_no_activity(self):
        text = render_state(ConversationState())
        assert "Stage: INIT" in text
        assert "No activity chosen yet" in text

    def test_filled_and_missing_slots(self):
        state = ConversationState(
            stage=Stage.ACTIVITY_SELECTED,
            activity="VR Games",
            slots={"group_size": 3, "time": "5pm"},
            pending_slots=["date"],
        )
        text = render_state(state)
        assert "Activity: VR Games" in text
        assert "- number of people: 3" in text
        assert "- time: 5pm" in text
        missing = text.split("Still missing")[1]
        assert "- date" in missing
        assert "number of people" not in missing

    def test_confirm_asks_for_confirmation(self):
        state = ConversationState(
            stage=Stage.CONFIRM,
            activity="Bowling",
            sub_activity="Kids Lane",
            slots={"group_size": 4, "date": "today", "time": "6pm"},
        )
        text = render_state(state)
        assert "Activity: Bowling (Kids Lane)" in text
        assert "ask the user to confirm" in text
        assert "Still missing" not in text
