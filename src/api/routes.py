"""FastAPI route definitions for the auto-responder API."""

from __future__ import annotations

import asyncio
import logging
import re
import uuid

from fastapi import APIRouter, HTTPException, Request
from fastapi.concurrency import iterate_in_threadpool
from fastapi.responses import StreamingResponse

from src.api.schemas import (
    ChatRequest,
    ChatResponse,
    HealthResponse,
    WebhookAck,
    WhatsAppInbound,
)
from src.errors import ErrorCode
from src.fallbacks import FallbackKind, detect_language, fallback_message
from src.models import Channel

logger = logging.getLogger(__name__)

router = APIRouter()


def normalize_phone(number: str) -> str:
    """Keep digits only, so ``+91 98765-43210`` and ``919876543210`` match."""
    return re.sub(r"\D", "", number or "")


def _get_orchestrator(request: Request):
    """Retrieve the orchestrator built during the FastAPI lifespan."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return orchestrator


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Answer a web-widget message.

    ``handle_turn`` makes blocking calls (Supabase, embeddings, Anthropic),
    so it runs in the default thread pool via ``asyncio.to_thread``.  With
    ``stream=true`` the reply is sent as ``text/plain`` fragments.  Only
    web-widget tenants are served here; any other destination is reported
    as not configured.

    Failures never surface as technical errors: the user gets a friendly
    fallback in their language.
    """
    orchestrator = _get_orchestrator(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    message_id = request.message_id or str(uuid.uuid4())
    language = detect_language(request.message)

    if request.stream:
        events = orchestrator.stream_turn(
            request.session_id, request.tenant_id, request.message, message_id,
            channel=Channel.WEB,
        )

        async def body():
            sent_any = False
            try:
                async for kind, payload in iterate_in_threadpool(events):
                    if kind == "token":
                        sent_any = True
                        yield payload
                    elif not payload.success and payload.reply_text is None:
                        logger.warning("[%s] Stream ended with %s", request_id, payload.error)
                        yield fallback_message(FallbackKind.INTERNAL_ERROR, language)
            except Exception:
                logger.exception("[%s] Error while streaming chat reply", request_id)
                if not sent_any:
                    yield fallback_message(FallbackKind.INTERNAL_ERROR, language)

        return StreamingResponse(body(), media_type="text/plain; charset=utf-8")

    try:
        result = await asyncio.to_thread(
            orchestrator.handle_turn,
            request.session_id,
            request.tenant_id,
            request.message,
            message_id,
            channel=Channel.WEB,
        )
    except Exception:
        logger.exception("[%s] Error processing chat request", request_id)
        return ChatResponse(
            reply=fallback_message(FallbackKind.INTERNAL_ERROR, language),
            session_id=request.session_id,
        )

    if result.reply_text is None:
        logger.warning("[%s] Turn produced no reply (%s)", request_id, result.error)
        if result.error is ErrorCode.CONFIG_MISSING:
            raise HTTPException(status_code=404, detail="This assistant is not configured yet.")
        return ChatResponse(
            reply=fallback_message(FallbackKind.INTERNAL_ERROR, language),
            session_id=request.session_id,
        )

    return ChatResponse(reply=result.reply_text, session_id=request.session_id)


@router.post("/webhooks/whatsapp", response_model=WebhookAck)
async def whatsapp_webhook(inbound: WhatsAppInbound, http_request: Request):
    """Process an inbound WhatsApp message and reply through the gateway.

    Always acknowledges with 200 once the payload is valid so the gateway
    does not redeliver; the outcome is reported in the body.
    """
    orchestrator = _get_orchestrator(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    customer = normalize_phone(inbound.from_number)
    business = normalize_phone(inbound.to_number)
    logger.info("[%s] WhatsApp message %s from %s to %s", request_id, inbound.message_id, customer, business)

    try:
        result = await asyncio.to_thread(
            orchestrator.handle_turn, customer, business, inbound.text, inbound.message_id,
            channel=Channel.WHATSAPP,
        )
    except Exception:
        logger.exception("[%s] Error processing WhatsApp message %s", request_id, inbound.message_id)
        return WebhookAck(success=False)

    return WebhookAck(success=result.success, sent=result.sent, error=result.error)
