"""Tests for the message-to-reply orchestration pipeline.

Collaborators are either ``MagicMock`` objects or the in-memory store, so
every test runs the real LangGraph pipeline without touching the network.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from src.errors import ErrorCode
from src.fallbacks import FallbackKind, Language, fallback_message
from src.models import (
    Channel,
    ConversationState,
    DispatchCredentials,
    DispatchResult,
    Role,
    Stage,
    TenantConfig,
    Turn,
    TurnStage,
)
from src.orchestrator import ResponseOrchestrator, make_record_id
from src.retrieval import NO_CONTEXT_MARKER, RetrievalAggregator
from src.services.memory_store import InMemoryStore
from src.services.whatsapp import InlineDispatcher

WEB_TENANT = "arena-web"
WA_TENANT = "919800000000"
CUSTOMER = "919811111111"
OTHER_WA_TENANT = "919822222222"


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture
def store():
    store = InMemoryStore()
    store.add_tenant(
        TenantConfig(
            destination_id=WEB_TENANT,
            file_ids=["offers.pdf"],
            system_prompt="You are Arena's assistant.",
            channel=Channel.WEB,
        )
    )
    store.add_tenant(
        TenantConfig(
            destination_id=WA_TENANT,
            file_ids=["offers.pdf"],
            credentials=DispatchCredentials(auth_token="tok", origin=WA_TENANT),
        )
    )
    store.add_chunk("offers.pdf", "Monday: 20% off on VR Games", [1.0, 0.0])
    store.add_chunk("other.pdf", "Secret pricing of another tenant", [1.0, 0.0])
    return store


@pytest.fixture
def embedder():
    embedder = MagicMock()
    embedder.embed.return_value = [1.0, 0.0]
    return embedder


@pytest.fixture
def generator():
    generator = MagicMock()
    generator.complete.return_value = "VR Games are 20% off today 😊"
    generator.stream.side_effect = lambda request: iter(["VR Games ", "are 20% off ", "today 😊"])
    return generator


@pytest.fixture
def whatsapp():
    dispatcher = MagicMock()
    dispatcher.send.return_value = DispatchResult(success=True)
    return dispatcher


@pytest.fixture
def make_orchestrator(store, embedder, generator, whatsapp, fixed_clock):
    def _make(**overrides):
        kwargs = {
            "config_store": store,
            "history_store": store,
            "aggregator": RetrievalAggregator(embedder, store),
            "generator": generator,
            "dispatchers": {Channel.WEB: InlineDispatcher(), Channel.WHATSAPP: whatsapp},
            "clock": fixed_clock,
        }
        kwargs.update(overrides)
        return ResponseOrchestrator(**kwargs)

    return _make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


# ── Happy path ───────────────────────────────────────────────────────


class TestHandleTurn:
    def test_successful_web_turn(self, orchestrator, store):
        result = orchestrator.handle_turn("s1", WEB_TENANT, "what are the offers?", "m1")

        assert result.success
        assert result.sent
        assert result.stage is TurnStage.DONE
        assert result.reply_text == "VR Games are 20% off today 😊"
        assert result.error is None
        assert result.warnings == []

        history = store.load_recent_turns(WEB_TENANT, "s1", 10)
        assert [t.role for t in history] == [Role.USER, Role.ASSISTANT]
        assert history[0].content == "what are the offers?"
        assert history[1].content == result.reply_text
        assert store.is_responded("m1")

    def test_prompt_carries_day_state_and_scoped_context(self, orchestrator, generator):
        orchestrator.handle_turn("s1", WEB_TENANT, "any VR offers?", "m1")

        request = generator.complete.call_args[0][0]
        assert request.user_message == "any VR offers?"
        assert request.system_prompt.startswith("You are Arena's assistant.")
        assert "TODAY IS: Monday" in request.system_prompt
        assert "Activity: VR Games" in request.system_prompt
        assert "Monday: 20% off on VR Games" in request.system_prompt
        assert "Secret pricing" not in request.system_prompt

    def test_explicit_day_in_message(self, orchestrator, generator):
        orchestrator.handle_turn("s1", WEB_TENANT, "offers on saturday?", "m1")
        assert "TODAY IS: Saturday" in generator.complete.call_args[0][0].system_prompt

    def test_record_id_format(self, orchestrator, fixed_clock):
        result = orchestrator.handle_turn("s1", WEB_TENANT, "offers?", "wamid.42")
        assert re.fullmatch(r"auto_wamid\.42_\d+", result.record_id)
        assert result.record_id == make_record_id("wamid.42", fixed_clock())

    def test_assistant_turn_carries_record_id(self, orchestrator, store):
        result = orchestrator.handle_turn("s1", WEB_TENANT, "offers?", "m1")
        assistant = store.load_recent_turns(WEB_TENANT, "s1", 10)[-1]
        assert assistant.record_id == result.record_id

    def test_whatsapp_reply_dispatched_to_customer(self, orchestrator, whatsapp):
        result = orchestrator.handle_turn(CUSTOMER, WA_TENANT, "bowling price?", "m1")

        assert result.success
        destination, text, credentials = whatsapp.send.call_args[0]
        assert destination == CUSTOMER
        assert text == result.reply_text
        assert credentials.origin == WA_TENANT


# ── Conversation state ───────────────────────────────────────────────


class TestStateAcrossTurns:
    def test_slots_accumulate_to_confirm(self, orchestrator, store):
        orchestrator.handle_turn("s1", WEB_TENANT, "I want VR", "m1")
        orchestrator.handle_turn("s1", WEB_TENANT, "3 players at 5pm", "m2")
        middle = store.load_state(WEB_TENANT, "s1")
        assert middle.stage is Stage.ACTIVITY_SELECTED
        assert middle.pending_slots == ["date"]

        result = orchestrator.handle_turn("s1", WEB_TENANT, "today", "m3")
        assert result.state.stage is Stage.CONFIRM
        assert store.load_state(WEB_TENANT, "s1") == result.state

    def test_reset(self, orchestrator, store):
        orchestrator.handle_turn("s1", WEB_TENANT, "bowling for 4", "m1")
        result = orchestrator.handle_turn("s1", WEB_TENANT, "start over", "m2")
        assert result.state == ConversationState()

    def test_conversations_are_independent(self, orchestrator, store):
        orchestrator.handle_turn("s1", WEB_TENANT, "bowling for 4", "m1")
        orchestrator.handle_turn("s2", WEB_TENANT, "laser tag", "m2")
        assert store.load_state(WEB_TENANT, "s1").activity == "Bowling"
        assert store.load_state(WEB_TENANT, "s2").activity == "Laser Tag"

    def test_same_customer_two_tenants_are_isolated(self, orchestrator, store, generator):
        store.add_tenant(
            TenantConfig(
                destination_id=OTHER_WA_TENANT,
                file_ids=["offers.pdf"],
                credentials=DispatchCredentials(auth_token="tok-b", origin=OTHER_WA_TENANT),
            )
        )
        orchestrator.handle_turn(CUSTOMER, WA_TENANT, "vr games for 4 people at 5pm", "m1")

        result = orchestrator.handle_turn(CUSTOMER, OTHER_WA_TENANT, "hello there, what do you offer", "m2")

        assert result.state.activity is None
        assert result.state.slots == {}
        assert generator.complete.call_args[0][0].history == []
        assert store.load_state(WA_TENANT, CUSTOMER).slots == {"group_size": 4, "time": "5pm"}
        assert [t.content for t in store.load_recent_turns(OTHER_WA_TENANT, CUSTOMER, 10)] == [
            "hello there, what do you offer",
            result.reply_text,
        ]

    def test_history_window(self, make_orchestrator, store, generator):
        start = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
        for i in range(12):
            role = Role.USER if i % 2 == 0 else Role.ASSISTANT
            turn = Turn(role=role, content=f"t{i}", timestamp=start + timedelta(minutes=i))
            store.append_turn(WEB_TENANT, "s1", turn)

        make_orchestrator(history_window=4).handle_turn("s1", WEB_TENANT, "offers?", "m1")

        history = generator.complete.call_args[0][0].history
        assert [t.content for t in history] == ["t8", "t9", "t10", "t11"]


# ── Degradation ──────────────────────────────────────────────────────


class TestDegradation:
    def test_empty_generation_uses_fallback(self, orchestrator, generator, store):
        generator.complete.return_value = ""

        result = orchestrator.handle_turn("s1", WEB_TENANT, "what are the offers?", "m1")

        fallback = fallback_message(FallbackKind.EMPTY_GENERATION, Language.ENGLISH)
        assert result.success
        assert result.reply_text == fallback
        assert ErrorCode.EMPTY_GENERATION in result.warnings
        assert store.load_recent_turns(WEB_TENANT, "s1", 10)[-1].content == fallback

    def test_fallback_matches_language(self, orchestrator, generator):
        generator.complete.return_value = "   "
        result = orchestrator.handle_turn("s1", WEB_TENANT, "aaj ka offer kya hai", "m1")
        assert result.reply_text == "Abhi ispe exact info available nahi hai 😊"

    def test_fallback_follows_conversation_language(self, orchestrator, generator, store):
        earlier = Turn(role=Role.USER, content="vr ka slot hai kya", timestamp=datetime(2026, 3, 2, 11, 0, tzinfo=UTC))
        store.append_turn(WEB_TENANT, "s1", earlier)
        generator.complete.return_value = ""

        result = orchestrator.handle_turn("s1", WEB_TENANT, "5pm", "m1")

        assert result.reply_text == fallback_message(FallbackKind.EMPTY_GENERATION, Language.HINGLISH)

    def test_generation_exception_uses_fallback(self, orchestrator, generator):
        generator.complete.side_effect = RuntimeError("overloaded")
        result = orchestrator.handle_turn("s1", WEB_TENANT, "offers?", "m1")
        assert result.success
        assert result.reply_text == fallback_message(FallbackKind.EMPTY_GENERATION)
        assert ErrorCode.EMPTY_GENERATION in result.warnings

    def test_retrieval_failure_still_answers(self, orchestrator, embedder, generator):
        embedder.embed.side_effect = RuntimeError("model not loaded")

        result = orchestrator.handle_turn("s1", WEB_TENANT, "offers?", "m1")

        assert result.success
        assert ErrorCode.RETRIEVAL_DEGRADED in result.warnings
        prompt = generator.complete.call_args[0][0].system_prompt
        assert prompt.endswith(f"CONTEXT:\n{NO_CONTEXT_MARKER}")

    def test_small_talk_skips_retrieval(self, orchestrator, embedder, generator):
        result = orchestrator.handle_turn("s1", WEB_TENANT, "Hi!", "m1")

        assert result.success
        assert result.warnings == []
        embedder.embed.assert_not_called()
        generator.complete.assert_called_once()

    def test_state_save_failure_is_a_warning(self, make_orchestrator, store):
        config_store = MagicMock(wraps=store)
        config_store.save_state.side_effect = ConnectionError("db down")

        result = make_orchestrator(config_store=config_store).handle_turn("s1", WEB_TENANT, "vr", "m1")

        assert result.success
        assert ErrorCode.PERSISTENCE_FAILED in result.warnings
        assert result.state.activity == "VR Games"

    def test_history_write_failures_are_warnings(self, make_orchestrator):
        history_store = MagicMock()
        history_store.load_recent_turns.return_value = []
        history_store.append_turn.side_effect = ConnectionError("db down")

        result = make_orchestrator(history_store=history_store).handle_turn(
            "s1", WEB_TENANT, "offers?", "m1",
        )

        assert result.success
        assert result.stage is TurnStage.DONE
        assert result.warnings == [ErrorCode.PERSISTENCE_FAILED]
        assert history_store.append_turn.call_count == 2
        history_store.mark_responded.assert_called_once_with("m1")


# ── Terminal failures ────────────────────────────────────────────────


class TestFailures:
    @pytest.mark.parametrize(
        "conversation_id, message",
        [("s1", ""), ("s1", "   "), ("", "hello"), (None, "hello")],
    )
    def test_invalid_input(self, orchestrator, generator, conversation_id, message):
        result = orchestrator.handle_turn(conversation_id, WEB_TENANT, message, "m1")

        assert not result.success
        assert result.error is ErrorCode.INVALID_INPUT
        assert result.stage is TurnStage.ERROR
        generator.complete.assert_not_called()

    def test_unknown_tenant(self, orchestrator, generator, store):
        result = orchestrator.handle_turn("s1", "nobody", "offers?", "m1")

        assert not result.success
        assert result.error is ErrorCode.CONFIG_MISSING
        assert result.reply_text is None
        generator.complete.assert_not_called()
        assert store.load_state(WEB_TENANT, "s1") is None

    def test_whatsapp_tenant_without_credentials(self, orchestrator, store, whatsapp):
        store.add_tenant(TenantConfig(destination_id="910000000000", file_ids=["offers.pdf"]))

        result = orchestrator.handle_turn(CUSTOMER, "910000000000", "offers?", "m1")

        assert result.error is ErrorCode.CONFIG_MISSING
        whatsapp.send.assert_not_called()

    def test_channel_mismatch_is_config_missing(self, orchestrator, store, whatsapp, generator):
        result = orchestrator.handle_turn(
            CUSTOMER, WA_TENANT, "what are the offers", "web-1", channel=Channel.WEB,
        )

        assert result.error is ErrorCode.CONFIG_MISSING
        assert result.reply_text is None
        whatsapp.send.assert_not_called()
        generator.complete.assert_not_called()
        assert store.load_state(WA_TENANT, CUSTOMER) is None

    def test_matching_channel_is_served(self, orchestrator):
        result = orchestrator.handle_turn("s1", WEB_TENANT, "offers?", "m1", channel=Channel.WEB)
        assert result.success

    def test_dispatch_failure_keeps_state(self, orchestrator, store, whatsapp):
        whatsapp.send.return_value = DispatchResult(success=False, error="HTTP 500")

        result = orchestrator.handle_turn(CUSTOMER, WA_TENANT, "VR for 3 people", "m1")

        assert not result.success
        assert not result.sent
        assert result.error is ErrorCode.DISPATCH_FAILED
        assert result.stage is TurnStage.ERROR
        assert result.reply_text
        saved = store.load_state(WA_TENANT, CUSTOMER)
        assert saved.activity == "VR Games"
        assert saved.slots["group_size"] == 3
        assert store.load_recent_turns(WA_TENANT, CUSTOMER, 10) == []
        assert not store.is_responded("m1")

    def test_dispatcher_exception(self, orchestrator, whatsapp):
        whatsapp.send.side_effect = TimeoutError("gateway")
        result = orchestrator.handle_turn(CUSTOMER, WA_TENANT, "offers?", "m1")
        assert result.error is ErrorCode.DISPATCH_FAILED

    def test_no_dispatcher_for_channel(self, make_orchestrator):
        result = make_orchestrator(dispatchers={}).handle_turn("s1", WEB_TENANT, "offers?", "m1")
        assert result.error is ErrorCode.DISPATCH_FAILED


# ── Streaming ────────────────────────────────────────────────────────


class TestStreamTurn:
    def test_tokens_then_result(self, orchestrator, store):
        events = list(orchestrator.stream_turn("s1", WEB_TENANT, "offers?", "m1"))

        tokens = [payload for kind, payload in events if kind == "token"]
        assert tokens == ["VR Games ", "are 20% off ", "today 😊"]
        kind, result = events[-1]
        assert kind == "result"
        assert result.success
        assert result.reply_text == "".join(tokens)
        assert store.load_recent_turns(WEB_TENANT, "s1", 10)[-1].content == result.reply_text

    def test_empty_stream_emits_fallback(self, orchestrator, generator):
        generator.stream.side_effect = lambda request: iter([])

        events = list(orchestrator.stream_turn("s1", WEB_TENANT, "offers?", "m1"))

        fallback = fallback_message(FallbackKind.EMPTY_GENERATION)
        assert events[0] == ("token", fallback)
        assert events[-1][1].reply_text == fallback

    def test_stream_interrupted_keeps_partial_reply(self, orchestrator, generator, store):
        def _broken(request):
            yield "Half an "
            raise RuntimeError("connection reset")

        generator.stream.side_effect = _broken

        events = list(orchestrator.stream_turn("s1", WEB_TENANT, "offers?", "m1"))

        assert events[0] == ("token", "Half an ")
        result = events[-1][1]
        assert result.success
        assert result.reply_text == "Half an "
        assert ErrorCode.GENERATION_INTERRUPTED in result.warnings
        assert ErrorCode.EMPTY_GENERATION not in result.warnings
        assert store.load_recent_turns(WEB_TENANT, "s1", 10)[-1].content == "Half an "

    def test_streamed_reply_is_not_trimmed(self, orchestrator, generator, store):
        generator.stream.side_effect = lambda request: iter(["  Bowling is ", "open till 11pm\n"])

        events = list(orchestrator.stream_turn("s1", WEB_TENANT, "bowling timings?", "m1"))

        tokens = "".join(payload for kind, payload in events if kind == "token")
        assert events[-1][1].reply_text == tokens
        assert store.load_recent_turns(WEB_TENANT, "s1", 10)[-1].content == tokens

    def test_invalid_input_yields_only_result(self, orchestrator):
        events = list(orchestrator.stream_turn("s1", WEB_TENANT, "", "m1"))
        assert len(events) == 1
        assert events[0][1].error is ErrorCode.INVALID_INPUT

    def test_config_missing(self, orchestrator):
        events = list(orchestrator.stream_turn("s1", "nobody", "offers?", "m1"))
        assert [kind for kind, _ in events] == ["result"]
        assert events[0][1].error is ErrorCode.CONFIG_MISSING
