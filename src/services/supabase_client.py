"""Supabase (PostgREST) access for tenant config, conversation state,
message history and document-chunk search.

All requests use the service-role key passed both as ``apikey`` and as a
Bearer token.  Tables used:

  * ``phone_document_mapping`` — one row per (phone_number, file_id) with
    the tenant's ``system_prompt``, ``channel``, ``auth_token``, ``origin``
  * ``conversation_state``     — (``destination_id``, ``conversation_id``) → ``state`` (jsonb)
  * ``messages``               — append-only history log, per (destination, conversation)
  * ``rpc/match_document_chunks`` — vector similarity search within a
    set of file ids
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from typing import Any

import httpx

from src.config import SUPABASE_SERVICE_KEY, SUPABASE_URL
from src.models import (
    Channel,
    ConversationState,
    DispatchCredentials,
    RetrievedChunk,
    Role,
    TenantConfig,
    Turn,
)
from src.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 0.5
REQUEST_TIMEOUT_SECONDS = 10.0


class SupabaseAPIError(Exception):
    """Raised when a Supabase call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class SupabaseClient:
    """Thin PostgREST wrapper with exponential-backoff retries.

    Timeouts, connection errors and 5xx responses are retried; 4xx
    responses are raised immediately.
    """

    def __init__(self, url: str | None = None, service_key: str | None = None):
        self._url = (url or SUPABASE_URL).rstrip("/")
        key = service_key or SUPABASE_SERVICE_KEY
        self._client = httpx.Client(
            base_url=f"{self._url}/rest/v1",
            headers={
                "apikey": key,
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        prefer: str | None = None,
    ) -> Any:
        """Execute a request and return the decoded JSON body (or ``None``)."""
        headers = {"Prefer": prefer} if prefer else None
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                with metrics.track("supabase", f"{method} {path}"):
                    response = self._client.request(
                        method, path, params=params, json=json_body, headers=headers,
                    )
                    if response.status_code >= 400:
                        raise SupabaseAPIError(
                            f"{method} {path} failed with {response.status_code}: {response.text}",
                            status_code=response.status_code,
                        )
                if not response.content:
                    return None
                return response.json()

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                logger.warning(
                    "Supabase attempt %d/%d failed (%s). Retrying in %.1fs…",
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except SupabaseAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Supabase server error on attempt %d/%d. Retrying…",
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise

            if attempt < MAX_RETRIES:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise SupabaseAPIError(
            f"Supabase request failed after {MAX_RETRIES} attempts: {last_error}"
        )


class SupabaseStore:
    """``ConfigStore``, ``HistoryStore`` and ``Retriever`` over Supabase."""

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    # ── ConfigStore ──────────────────────────────────────────────────

    def load_tenant_config(self, destination_id: str) -> TenantConfig | None:
        rows = self._client.request(
            "GET",
            "/phone_document_mapping",
            params={
                "phone_number": f"eq.{destination_id}",
                "select": "file_id,system_prompt,channel,auth_token,origin",
            },
        ) or []
        if not rows:
            return None

        first = rows[0]
        file_ids = list(dict.fromkeys(str(r["file_id"]) for r in rows if r.get("file_id")))
        credentials = None
        if first.get("auth_token") or first.get("origin"):
            credentials = DispatchCredentials(
                auth_token=first.get("auth_token") or "",
                origin=first.get("origin") or "",
            )
        return TenantConfig(
            destination_id=destination_id,
            file_ids=file_ids,
            system_prompt=first.get("system_prompt") or "",
            channel=Channel(first.get("channel") or Channel.WHATSAPP.value),
            credentials=credentials,
        )

    def load_state(self, destination_id: str, conversation_id: str) -> ConversationState | None:
        rows = self._client.request(
            "GET",
            "/conversation_state",
            params={
                "destination_id": f"eq.{destination_id}",
                "conversation_id": f"eq.{conversation_id}",
                "select": "state",
                "limit": 1,
            },
        ) or []
        if not rows:
            return None
        return ConversationState.from_blob(rows[0].get("state"))

    def save_state(self, destination_id: str, conversation_id: str, state: ConversationState) -> None:
        self._client.request(
            "POST",
            "/conversation_state",
            params={"on_conflict": "destination_id,conversation_id"},
            json_body={
                "destination_id": destination_id,
                "conversation_id": conversation_id,
                "state": state.to_blob(),
                "updated_at": datetime.now(UTC).isoformat(),
            },
            prefer="resolution=merge-duplicates,return=minimal",
        )

    # ── HistoryStore ─────────────────────────────────────────────────

    def append_turn(self, destination_id: str, conversation_id: str, turn: Turn) -> None:
        self._client.request(
            "POST",
            "/messages",
            json_body={
                "message_id": turn.record_id,
                "destination_id": destination_id,
                "conversation_id": conversation_id,
                "role": turn.role.value,
                "content": turn.content,
                "created_at": turn.timestamp.isoformat(),
            },
            prefer="return=minimal",
        )

    def load_recent_turns(self, destination_id: str, conversation_id: str, limit: int) -> list[Turn]:
        rows = self._client.request(
            "GET",
            "/messages",
            params={
                "destination_id": f"eq.{destination_id}",
                "conversation_id": f"eq.{conversation_id}",
                "select": "message_id,role,content,created_at",
                "order": "created_at.desc",
                "limit": limit,
            },
        ) or []
        turns = [
            Turn(
                role=Role(row["role"]),
                content=row["content"],
                timestamp=datetime.fromisoformat(row["created_at"].replace("Z", "+00:00")),
                record_id=row.get("message_id"),
            )
            for row in rows
            if isinstance(row.get("content"), str) and row.get("role") in {r.value for r in Role}
        ]
        turns.reverse()
        return turns

    def mark_responded(self, message_id: str) -> None:
        self._client.request(
            "PATCH",
            "/messages",
            params={"message_id": f"eq.{message_id}"},
            json_body={
                "is_responded": True,
                "response_sent_at": datetime.now(UTC).isoformat(),
            },
            prefer="return=minimal",
        )

    # ── Retriever ────────────────────────────────────────────────────

    def search(self, vector: list[float], scope_ids: list[str], top_k: int) -> list[RetrievedChunk]:
        rows = self._client.request(
            "POST",
            "/rpc/match_document_chunks",
            json_body={
                "query_embedding": vector,
                "file_ids": scope_ids,
                "match_count": top_k,
            },
        ) or []
        return [
            RetrievedChunk(
                text=row.get("chunk") or "",
                source_file_id=str(row.get("file_id", "")),
                relevance_score=float(row.get("similarity") or 0.0),
            )
            for row in rows
        ]
