"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, Field

from src.errors import ErrorCode


class ChatRequest(BaseModel):
    """Incoming message from the web widget."""

    message: str = Field(..., min_length=1, max_length=2000, description="The user's message")
    session_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Unique session identifier for conversation continuity",
    )
    tenant_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Widget / tenant identifier used to look up documents and persona",
    )
    message_id: str | None = Field(
        None, max_length=100, description="Client-side message id (generated if absent)",
    )
    stream: bool = Field(False, description="Stream the reply as plain-text fragments")


class ChatResponse(BaseModel):
    """Reply for the web widget."""

    reply: str = Field(..., description="The assistant's reply")
    session_id: str = Field(..., description="The session ID for this conversation")


class WhatsAppInbound(BaseModel):
    """Inbound WhatsApp message (MoMessage) as forwarded by the gateway."""

    message_id: str = Field(..., min_length=1, max_length=200)
    from_number: str = Field(..., min_length=1, max_length=32, description="Customer number")
    to_number: str = Field(..., min_length=1, max_length=32, description="Business number")
    text: str = Field("", max_length=4096)


class WebhookAck(BaseModel):
    """Result of processing one inbound WhatsApp message."""

    success: bool
    sent: bool = False
    error: ErrorCode | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "booking-autoresponder"
