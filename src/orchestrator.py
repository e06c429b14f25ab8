"""Message-to-reply orchestration pipeline.

Architecture:
  One inbound message is one turn, run through a LangGraph ``StateGraph``:

    load_config → update_state → fetch_context → build_prompt
                → generate → dispatch → persist → END

  ``load_config`` and ``dispatch`` have conditional edges straight to
  ``END`` for the ERROR terminal.  Every other node degrades instead of
  failing: retrieval falls back to "no context", an empty generation is
  replaced by a fixed fallback reply, and persistence errors are logged and
  reported as warnings on the ``TurnResult``.

  Side-effect ordering: the updated ``ConversationState`` is saved in
  ``update_state``, before anything user-visible happens.  A crash after
  dispatch therefore never loses slot progress; a crash before dispatch
  costs one regenerated reply on retry.

  Turns for the same conversation must be serialised by the caller.  The
  core does not retry collaborator calls and does not de-duplicate replies
  regenerated for a redelivered message; the outbound ``record_id`` lets
  the history store detect such redeliveries.
"""

from __future__ import annotations

import logging
import operator
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from typing import Annotated, Any

from langgraph.config import get_stream_writer
from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from src import day_resolver
from src.config import HISTORY_WINDOW, RETRIEVAL_TOP_K, TENANT_TIMEZONE
from src.errors import ConfigMissingError, ErrorCode, InvalidInputError, PipelineError
from src.fallbacks import (
    FallbackKind,
    Language,
    detect_conversation_language,
    detect_language,
    fallback_message,
    is_small_talk,
)
from src.interfaces import (
    ConfigStore,
    Dispatcher,
    Embedder,
    Generator,
    HistoryStore,
    Retriever,
)
from src.models import (
    Channel,
    ConversationState,
    DispatchResult,
    GenerationRequest,
    Role,
    TenantConfig,
    Turn,
    TurnResult,
    TurnStage,
)
from src.prompts import compose
from src.retrieval import RetrievalAggregator, RetrievalResult
from src.services.metrics import metrics
from src.state_engine import StateEngine

logger = logging.getLogger(__name__)


# ── State schema ─────────────────────────────────────────────────────


class TurnState(TypedDict, total=False):
    """Everything one turn accumulates as it moves through the graph.

    ``warnings`` uses an ``operator.add`` reducer so each node can append
    the degradations it absorbed without overwriting earlier ones.
    """

    conversation_id: str
    destination_id: str
    message: str
    message_id: str
    stream: bool
    channel: Channel | None
    received_at: datetime
    language: Language

    tenant: TenantConfig
    state: ConversationState
    day_name: str
    retrieval: RetrievalResult
    system_prompt: str
    history: list[Turn]
    reply: str
    sent: bool
    record_id: str

    stage: TurnStage
    error: ErrorCode | None
    warnings: Annotated[list[ErrorCode], operator.add]


def make_record_id(message_id: str, generated_at: datetime) -> str:
    """Outbound record key: ``auto_<inbound message id>_<epoch ms>``."""
    return f"auto_{message_id}_{int(generated_at.timestamp() * 1000)}"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ResponseOrchestrator:
    """Sequences one turn: state → context → prompt → generate → dispatch → persist."""

    def __init__(
        self,
        config_store: ConfigStore,
        history_store: HistoryStore,
        aggregator: RetrievalAggregator,
        generator: Generator,
        dispatchers: dict[Channel, Dispatcher],
        *,
        engine: StateEngine | None = None,
        history_window: int = HISTORY_WINDOW,
        top_k: int = RETRIEVAL_TOP_K,
        tz_name: str = TENANT_TIMEZONE,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._config_store = config_store
        self._history_store = history_store
        self._aggregator = aggregator
        self._generator = generator
        self._dispatchers = dispatchers
        self._engine = engine or StateEngine()
        self._history_window = history_window
        self._top_k = top_k
        self._tz_name = tz_name
        self._clock = clock
        self._graph = self._build_graph()

    # ── Public API ───────────────────────────────────────────────────

    def handle_turn(
        self,
        conversation_id: str,
        destination_id: str,
        raw_message: str,
        message_id: str,
        *,
        channel: Channel | None = None,
    ) -> TurnResult:
        """Process one inbound message end to end and report the outcome.

        With *channel* set, a destination configured for another channel is
        treated as unconfigured, so one entry point cannot reply through
        another channel's credentials.
        """
        try:
            inputs = self._initial_state(
                conversation_id, destination_id, raw_message, message_id,
                stream=False, channel=channel,
            )
        except PipelineError as exc:
            return self._rejected(exc)

        final = self._graph.invoke(inputs)
        return self._to_result(final)

    def stream_turn(
        self,
        conversation_id: str,
        destination_id: str,
        raw_message: str,
        message_id: str,
        *,
        channel: Channel | None = None,
    ) -> Iterator[tuple[str, Any]]:
        """Like ``handle_turn`` but forwards reply fragments as they arrive.

        Yields ``("token", str)`` for every generated fragment, then exactly
        one ``("result", TurnResult)``.  The fragments concatenated are the
        text that gets dispatched and persisted.
        """
        try:
            inputs = self._initial_state(
                conversation_id, destination_id, raw_message, message_id,
                stream=True, channel=channel,
            )
        except PipelineError as exc:
            yield ("result", self._rejected(exc))
            return

        final: dict[str, Any] = dict(inputs)
        for mode, chunk in self._graph.stream(inputs, stream_mode=["custom", "values"]):
            if mode == "custom":
                yield ("token", chunk)
            else:
                final = chunk
        yield ("result", self._to_result(final))

    # ── Input handling ───────────────────────────────────────────────

    def _initial_state(
        self,
        conversation_id: str,
        destination_id: str,
        raw_message: str,
        message_id: str,
        *,
        stream: bool,
        channel: Channel | None,
    ) -> TurnState:
        conversation_id = (conversation_id or "").strip()
        message = (raw_message or "").strip()
        if not conversation_id:
            raise InvalidInputError("conversation_id is required")
        if not message:
            raise InvalidInputError("message text is required")

        return {
            "conversation_id": conversation_id,
            "destination_id": (destination_id or "").strip(),
            "message": message,
            "message_id": (message_id or "").strip(),
            "stream": stream,
            "channel": channel,
            "received_at": self._clock(),
            "language": detect_language(message),
            "stage": TurnStage.RECEIVED,
            "error": None,
            "warnings": [],
        }

    @staticmethod
    def _rejected(exc: PipelineError) -> TurnResult:
        logger.warning("Turn rejected (%s): %s", exc.code.value, exc)
        return TurnResult(success=False, error=exc.code, stage=TurnStage.ERROR)

    @staticmethod
    def _to_result(final: dict[str, Any]) -> TurnResult:
        error = final.get("error")
        warnings = list(dict.fromkeys(final.get("warnings") or []))
        return TurnResult(
            success=error is None,
            reply_text=final.get("reply"),
            error=error,
            sent=final.get("sent", False),
            stage=final.get("stage", TurnStage.RECEIVED),
            warnings=warnings,
            record_id=final.get("record_id"),
            state=final.get("state"),
        )

    # ── Nodes ────────────────────────────────────────────────────────

    def _load_config(self, turn: TurnState) -> dict:
        """Fetch and validate the tenant config; ConfigMissing ends the turn."""
        destination_id = turn["destination_id"]
        tenant = self._config_store.load_tenant_config(destination_id)
        expected = turn.get("channel")
        try:
            if tenant is None:
                raise ConfigMissingError(f"No tenant configured for destination {destination_id}")
            if expected is not None and tenant.channel is not expected:
                raise ConfigMissingError(
                    f"Destination {destination_id} is a {tenant.channel.value} tenant, "
                    f"not reachable over {expected.value}"
                )
            tenant.validate_for_dispatch()
        except ConfigMissingError as exc:
            logger.error("Config missing: %s", exc)
            return {"error": exc.code, "stage": TurnStage.ERROR}
        return {"tenant": tenant}

    def _update_state(self, turn: TurnState) -> dict:
        """Resolve the day, apply the message to the state, save it immediately."""
        destination_id = turn["destination_id"]
        conversation_id = turn["conversation_id"]
        warnings: list[ErrorCode] = []

        try:
            previous = self._config_store.load_state(destination_id, conversation_id) or ConversationState()
        except Exception:
            logger.exception("Could not load state for %s; starting fresh", conversation_id)
            previous = ConversationState()
            warnings.append(ErrorCode.PERSISTENCE_FAILED)

        day_name = day_resolver.resolve(turn["message"], turn["received_at"], self._tz_name)
        state = self._engine.transition(previous, turn["message"])

        try:
            self._config_store.save_state(destination_id, conversation_id, state)
        except Exception:
            logger.exception("Could not save state for %s; continuing in memory", conversation_id)
            warnings.append(ErrorCode.PERSISTENCE_FAILED)

        logger.info("[%s] %s day=%s", conversation_id, state.summary(), day_name)
        return {
            "state": state,
            "day_name": day_name,
            "stage": TurnStage.STATE_UPDATED,
            "warnings": warnings,
        }

    def _fetch_context(self, turn: TurnState) -> dict:
        """Best-effort retrieval; small talk skips the embedding call entirely."""
        if is_small_talk(turn["message"]):
            retrieval = RetrievalResult.skipped()
        else:
            retrieval = self._aggregator.fetch_context(
                turn["message"], turn["tenant"].file_ids, self._top_k,
            )
        warnings = [ErrorCode.RETRIEVAL_DEGRADED] if retrieval.degraded else []
        return {"retrieval": retrieval, "stage": TurnStage.CONTEXT_FETCHED, "warnings": warnings}

    def _build_prompt(self, turn: TurnState) -> dict:
        system_prompt = compose(
            turn["tenant"].system_prompt,
            turn["state"],
            turn["day_name"],
            turn["retrieval"].context_text,
        )
        warnings: list[ErrorCode] = []
        try:
            history = self._history_store.load_recent_turns(
                turn["destination_id"], turn["conversation_id"], self._history_window,
            )
        except Exception:
            logger.exception("Could not load history for %s", turn["conversation_id"])
            history = []
            warnings.append(ErrorCode.PERSISTENCE_FAILED)

        history = sorted(history, key=lambda t: t.timestamp)[-self._history_window:]
        language = detect_conversation_language(
            turn["message"], [t.content for t in history if t.role is Role.USER],
        )
        return {
            "system_prompt": system_prompt,
            "history": history,
            "language": language,
            "stage": TurnStage.PROMPT_BUILT,
            "warnings": warnings,
        }

    def _generate(self, turn: TurnState) -> dict:
        """Call the generation backend; never leave the user without a reply.

        When streaming, the reply is exactly the concatenation of the
        fragments forwarded to the caller.
        """
        request = GenerationRequest(
            system_prompt=turn["system_prompt"],
            history=turn["history"],
            user_message=turn["message"],
        )
        writer = get_stream_writer() if turn.get("stream") else None
        warnings: list[ErrorCode] = []

        reply = ""
        failed = False
        try:
            if writer is not None:
                parts: list[str] = []
                try:
                    for fragment in self._generator.stream(request):
                        if fragment:
                            parts.append(fragment)
                            writer(fragment)
                finally:
                    reply = "".join(parts)
            else:
                reply = (self._generator.complete(request) or "").strip()
        except Exception as exc:
            failed = True
            logger.warning(
                "[%s] Generation failed (%s: %s)",
                turn["conversation_id"], type(exc).__name__, exc,
            )

        if not reply.strip():
            reply = fallback_message(FallbackKind.EMPTY_GENERATION, turn["language"])
            warnings.append(ErrorCode.EMPTY_GENERATION)
            metrics.record_degradation("generation", "empty_reply")
            if writer is not None:
                writer(reply)
        elif failed:
            warnings.append(ErrorCode.GENERATION_INTERRUPTED)
            metrics.record_degradation("generation", "stream_interrupted")

        return {"reply": reply, "stage": TurnStage.GENERATED, "warnings": warnings}

    def _dispatch(self, turn: TurnState) -> dict:
        tenant = turn["tenant"]
        dispatcher = self._dispatchers.get(tenant.channel)
        if dispatcher is None:
            result = DispatchResult(success=False, error=f"No dispatcher for channel {tenant.channel.value}")
        else:
            try:
                result = dispatcher.send(turn["conversation_id"], turn["reply"], tenant.credentials)
            except Exception as exc:
                result = DispatchResult(success=False, error=f"{type(exc).__name__}: {exc}")

        if not result.success:
            logger.error("[%s] Dispatch failed: %s", turn["conversation_id"], result.error)
            return {"sent": False, "error": ErrorCode.DISPATCH_FAILED, "stage": TurnStage.ERROR}
        return {"sent": True, "stage": TurnStage.DISPATCHED}

    def _persist(self, turn: TurnState) -> dict:
        """Append the exchange to history and mark the inbound message responded."""
        destination_id = turn["destination_id"]
        conversation_id = turn["conversation_id"]
        message_id = turn["message_id"]
        generated_at = self._clock()
        record_id = make_record_id(message_id, generated_at)
        warnings: list[ErrorCode] = []

        writes = [
            (
                "append user turn",
                lambda: self._history_store.append_turn(
                    destination_id,
                    conversation_id,
                    Turn(
                        role=Role.USER,
                        content=turn["message"],
                        timestamp=turn["received_at"],
                        record_id=message_id or None,
                    ),
                ),
            ),
            (
                "append assistant turn",
                lambda: self._history_store.append_turn(
                    destination_id,
                    conversation_id,
                    Turn(
                        role=Role.ASSISTANT,
                        content=turn["reply"],
                        timestamp=generated_at,
                        record_id=record_id,
                    ),
                ),
            ),
        ]
        if message_id:
            writes.append(("mark responded", lambda: self._history_store.mark_responded(message_id)))

        for label, write in writes:
            try:
                write()
            except Exception:
                logger.exception("[%s] Persistence step failed: %s", conversation_id, label)
                warnings.append(ErrorCode.PERSISTENCE_FAILED)

        logger.info("[%s] Turn complete (record %s)", conversation_id, record_id)
        return {"record_id": record_id, "stage": TurnStage.DONE, "warnings": warnings}

    # ── Conditional edges ────────────────────────────────────────────

    @staticmethod
    def _continue_or_end(next_node: str) -> Callable[[TurnState], str]:
        def route(turn: TurnState) -> str:
            return END if turn.get("error") else next_node

        return route

    # ── Graph assembly ───────────────────────────────────────────────

    def _build_graph(self):
        graph = StateGraph(TurnState)

        graph.add_node("load_config", self._load_config)
        graph.add_node("update_state", self._update_state)
        graph.add_node("fetch_context", self._fetch_context)
        graph.add_node("build_prompt", self._build_prompt)
        graph.add_node("generate", self._generate)
        graph.add_node("dispatch", self._dispatch)
        graph.add_node("persist", self._persist)

        graph.set_entry_point("load_config")
        graph.add_conditional_edges(
            "load_config",
            self._continue_or_end("update_state"),
            {"update_state": "update_state", END: END},
        )
        graph.add_edge("update_state", "fetch_context")
        graph.add_edge("fetch_context", "build_prompt")
        graph.add_edge("build_prompt", "generate")
        graph.add_edge("generate", "dispatch")
        graph.add_conditional_edges(
            "dispatch",
            self._continue_or_end("persist"),
            {"persist": "persist", END: END},
        )
        graph.add_edge("persist", END)

        return graph.compile()


def create_orchestrator(
    config_store: ConfigStore | None = None,
    history_store: HistoryStore | None = None,
    retriever: Retriever | None = None,
    embedder: Embedder | None = None,
) -> ResponseOrchestrator:
    """Wire the production collaborators into a ``ResponseOrchestrator``.

    Uses Supabase for config, history and chunk search when it is
    configured, otherwise the in-memory store.  Any collaborator passed in
    explicitly takes precedence.
    """
    from src.config import SUPABASE_SERVICE_KEY, SUPABASE_URL  # noqa: PLC0415
    from src.services.embeddings import FastEmbedder  # noqa: PLC0415
    from src.services.generation import AnthropicGenerator  # noqa: PLC0415
    from src.services.memory_store import InMemoryStore  # noqa: PLC0415
    from src.services.supabase_client import SupabaseClient, SupabaseStore  # noqa: PLC0415
    from src.services.whatsapp import InlineDispatcher, WhatsAppDispatcher  # noqa: PLC0415

    if SUPABASE_URL and SUPABASE_SERVICE_KEY:
        store: Any = SupabaseStore(SupabaseClient())
    else:
        logger.warning("Supabase not configured; using in-memory stores")
        store = InMemoryStore()

    orchestrator = ResponseOrchestrator(
        config_store=config_store or store,
        history_store=history_store or store,
        aggregator=RetrievalAggregator(embedder or FastEmbedder(), retriever or store),
        generator=AnthropicGenerator(),
        dispatchers={
            Channel.WHATSAPP: WhatsAppDispatcher(),
            Channel.WEB: InlineDispatcher(),
        },
    )
    logger.debug("Orchestrator ready — store: %s", type(store).__name__)
    return orchestrator
