"""Collaborator contracts consumed by the pipeline.

The orchestrator only depends on these protocols.  Production adapters live
in ``src/services/``; tests plug in ``MagicMock`` objects or the in-memory
store.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Protocol

from src.models import (
    ConversationState,
    DispatchCredentials,
    DispatchResult,
    GenerationRequest,
    RetrievedChunk,
    TenantConfig,
    Turn,
)


class Embedder(Protocol):
    def embed(self, text: str) -> list[float]: ...


class Retriever(Protocol):
    def search(
        self, vector: list[float], scope_ids: list[str], top_k: int,
    ) -> list[RetrievedChunk]: ...


class Generator(Protocol):
    def complete(self, request: GenerationRequest) -> str: ...

    def stream(self, request: GenerationRequest) -> Iterator[str]:
        """Yield an ordered, finite sequence of text fragments (not restartable)."""
        ...


class Dispatcher(Protocol):
    def send(
        self, destination_id: str, text: str, credentials: DispatchCredentials | None,
    ) -> DispatchResult: ...


class HistoryStore(Protocol):
    def append_turn(self, destination_id: str, conversation_id: str, turn: Turn) -> None: ...

    def load_recent_turns(
        self, destination_id: str, conversation_id: str, limit: int,
    ) -> list[Turn]:
        """Return at most *limit* most recent turns, oldest first.

        History is scoped to the tenant: the same customer talking to two
        destinations has two unrelated histories.
        """
        ...

    def mark_responded(self, message_id: str) -> None: ...


class ConfigStore(Protocol):
    def load_tenant_config(self, destination_id: str) -> TenantConfig | None: ...

    def load_state(self, destination_id: str, conversation_id: str) -> ConversationState | None: ...

    def save_state(
        self, destination_id: str, conversation_id: str, state: ConversationState,
    ) -> None: ...
