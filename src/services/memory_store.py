"""In-memory implementation of the config, history and retrieval stores.

Used by the CLI, by the server when Supabase is not configured, and by the
test suite.  Everything is lost on restart.  Retrieval ranks chunks by
cosine similarity against vectors registered with ``add_chunk``.
"""

from __future__ import annotations

import math
import threading
from collections import defaultdict

from src.models import ConversationState, RetrievedChunk, TenantConfig, Turn


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class InMemoryStore:
    """Thread-safe ``ConfigStore`` + ``HistoryStore`` + ``Retriever``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tenants: dict[str, TenantConfig] = {}
        # keyed by (destination_id, conversation_id)
        self._states: dict[tuple[str, str], ConversationState] = {}
        self._history: dict[tuple[str, str], list[Turn]] = defaultdict(list)
        self._responded: set[str] = set()
        # (file_id, text, vector)
        self._chunks: list[tuple[str, str, list[float]]] = []

    # ── Seeding ──────────────────────────────────────────────────────

    def add_tenant(self, config: TenantConfig) -> None:
        with self._lock:
            self._tenants[config.destination_id] = config

    def add_chunk(self, file_id: str, text: str, vector: list[float]) -> None:
        with self._lock:
            self._chunks.append((file_id, text, list(vector)))

    # ── ConfigStore ──────────────────────────────────────────────────

    def load_tenant_config(self, destination_id: str) -> TenantConfig | None:
        with self._lock:
            return self._tenants.get(destination_id)

    def load_state(self, destination_id: str, conversation_id: str) -> ConversationState | None:
        with self._lock:
            return self._states.get((destination_id, conversation_id))

    def save_state(self, destination_id: str, conversation_id: str, state: ConversationState) -> None:
        with self._lock:
            self._states[(destination_id, conversation_id)] = state

    # ── HistoryStore ─────────────────────────────────────────────────

    def append_turn(self, destination_id: str, conversation_id: str, turn: Turn) -> None:
        with self._lock:
            self._history[(destination_id, conversation_id)].append(turn)

    def load_recent_turns(self, destination_id: str, conversation_id: str, limit: int) -> list[Turn]:
        with self._lock:
            turns = sorted(
                self._history.get((destination_id, conversation_id), []),
                key=lambda t: t.timestamp,
            )
        return turns[-limit:] if limit > 0 else []

    def mark_responded(self, message_id: str) -> None:
        with self._lock:
            self._responded.add(message_id)

    def is_responded(self, message_id: str) -> bool:
        with self._lock:
            return message_id in self._responded

    # ── Retriever ────────────────────────────────────────────────────

    def search(self, vector: list[float], scope_ids: list[str], top_k: int) -> list[RetrievedChunk]:
        scope = set(scope_ids)
        with self._lock:
            candidates = [c for c in self._chunks if c[0] in scope]
        ranked = sorted(
            (
                RetrievedChunk(text=text, source_file_id=file_id, relevance_score=_cosine(vector, vec))
                for file_id, text, vec in candidates
            ),
            key=lambda chunk: chunk.relevance_score,
            reverse=True,
        )
        return ranked[:top_k]
