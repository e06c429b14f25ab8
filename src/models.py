"""Typed data model shared by the pipeline, the adapters and the API layer.

``ConversationState`` is stored as a JSON blob per conversation; ``stage`` is
an explicit enum and the required slots are fixed when an activity is
selected (see ``src/state_engine.py``).
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.errors import ConfigMissingError, ErrorCode

logger = logging.getLogger(__name__)


# ── Conversation state ──────────────────────────────────────────────


class Stage(str, Enum):
    """Coarse phase of a booking conversation."""

    INIT = "INIT"
    ACTIVITY_SELECTED = "ACTIVITY_SELECTED"
    DETAILS = "DETAILS"
    CONFIRM = "CONFIRM"


SlotValue = str | int | None


class ConversationState(BaseModel):
    """Booking progress for one (tenant, conversation) pair.

    Only ``src.state_engine`` produces new instances during a turn; everyone
    else treats the model as read-only.
    """

    stage: Stage = Stage.INIT
    activity: str | None = None
    sub_activity: str | None = None
    slots: dict[str, SlotValue] = Field(default_factory=dict)
    pending_slots: list[str] = Field(default_factory=list)

    def filled_slots(self) -> dict[str, str | int]:
        """Return only the slots that hold a value, in insertion order."""
        return {k: v for k, v in self.slots.items() if v is not None}

    def summary(self) -> str:
        """One-line description used in logs and the CLI."""
        filled = ", ".join(f"{k}={v}" for k, v in self.filled_slots().items()) or "none"
        pending = ", ".join(self.pending_slots) or "none"
        activity = self.activity or "none"
        if self.sub_activity:
            activity = f"{activity} / {self.sub_activity}"
        return (
            f"stage={self.stage.value} activity={activity} "
            f"filled=[{filled}] pending=[{pending}]"
        )

    # ── Blob (de)serialisation ───────────────────────────────────────

    def to_blob(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_blob(cls, blob: dict[str, Any] | str | None) -> ConversationState:
        """Rebuild a state from its persisted form.

        A missing or corrupt blob yields the default INIT state so that a
        bad row never blocks a conversation.
        """
        if not blob:
            return cls()
        try:
            if isinstance(blob, str):
                blob = json.loads(blob)
            return cls.model_validate(blob)
        except (ValueError, ValidationError) as exc:
            logger.warning("Discarding unreadable conversation state: %s", exc)
            return cls()


# ── Retrieval ───────────────────────────────────────────────────────


class RetrievedChunk(BaseModel):
    """A ranked document chunk; produced per turn and never persisted."""

    model_config = ConfigDict(frozen=True)

    text: str
    source_file_id: str
    relevance_score: float = 0.0


# ── History ─────────────────────────────────────────────────────────


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Turn(BaseModel):
    """One message in a conversation's append-only history log."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    record_id: str | None = None


# ── Tenant configuration ────────────────────────────────────────────


class Channel(str, Enum):
    WHATSAPP = "whatsapp"
    WEB = "web"


class DispatchCredentials(BaseModel):
    """Outbound channel credentials for one destination number."""

    auth_token: str = ""
    origin: str = ""

    def is_complete(self) -> bool:
        return bool(self.auth_token.strip() and self.origin.strip())


class TenantConfig(BaseModel):
    """Per destination-number (or web session) configuration.

    Owned by the tenant administrator; the pipeline only reads it.
    """

    destination_id: str
    file_ids: list[str] = Field(default_factory=list)
    system_prompt: str = ""
    channel: Channel = Channel.WHATSAPP
    credentials: DispatchCredentials | None = None

    def validate_for_dispatch(self) -> None:
        """Raise ``ConfigMissingError`` if this tenant cannot be served.

        A tenant needs a non-empty retrieval scope, and WhatsApp tenants
        also need complete dispatch credentials.  The web widget replies
        inline and carries no credentials.
        """
        if not [f for f in self.file_ids if f]:
            raise ConfigMissingError(
                f"No documents mapped to destination {self.destination_id}"
            )
        if self.channel is Channel.WHATSAPP and (
            self.credentials is None or not self.credentials.is_complete()
        ):
            raise ConfigMissingError(
                f"WhatsApp API credentials missing for destination {self.destination_id}"
            )


# ── Generation / dispatch ───────────────────────────────────────────


class GenerationRequest(BaseModel):
    """Input for one generation call; built fresh every turn."""

    system_prompt: str
    history: list[Turn] = Field(default_factory=list)
    user_message: str


class DispatchResult(BaseModel):
    success: bool
    error: str | None = None


# ── Turn outcome ────────────────────────────────────────────────────


class TurnStage(str, Enum):
    """Progress markers for one turn through the orchestrator."""

    RECEIVED = "RECEIVED"
    STATE_UPDATED = "STATE_UPDATED"
    CONTEXT_FETCHED = "CONTEXT_FETCHED"
    PROMPT_BUILT = "PROMPT_BUILT"
    GENERATED = "GENERATED"
    DISPATCHED = "DISPATCHED"
    PERSISTED = "PERSISTED"
    DONE = "DONE"
    ERROR = "ERROR"


class TurnResult(BaseModel):
    """Structured outcome reported to the HTTP / webhook caller.

    ``error`` holds the failure that decided ``success``; ``warnings`` lists
    the degradations the turn absorbed along the way.
    """

    success: bool
    reply_text: str | None = None
    error: ErrorCode | None = None
    sent: bool = False
    stage: TurnStage = TurnStage.RECEIVED
    warnings: list[ErrorCode] = Field(default_factory=list)
    record_id: str | None = None
    state: ConversationState | None = None
