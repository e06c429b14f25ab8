"""Outbound reply delivery.

``WhatsAppDispatcher`` posts a text message through the tenant's WhatsApp
Business gateway account: the tenant's ``auth_token`` authenticates the
call and its ``origin`` is the sending business number.  Transport errors
are reported as a failed ``DispatchResult`` rather than raised, since the
orchestrator needs to tell "generated but not delivered" apart from other
failures.

``InlineDispatcher`` serves the web widget, where the reply travels back in
the HTTP response and there is nothing further to deliver.
"""

from __future__ import annotations

import logging

import httpx

from src.config import WHATSAPP_API_URL
from src.models import DispatchCredentials, DispatchResult
from src.services.metrics import metrics

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 15.0


class WhatsAppDispatcher:
    """``Dispatcher`` for WhatsApp conversations."""

    def __init__(self, api_url: str | None = None, *, client: httpx.Client | None = None):
        self._api_url = api_url or WHATSAPP_API_URL
        self._client = client or httpx.Client(timeout=REQUEST_TIMEOUT_SECONDS)

    def send(
        self,
        destination_id: str,
        text: str,
        credentials: DispatchCredentials | None,
    ) -> DispatchResult:
        if not self._api_url:
            return DispatchResult(success=False, error="WHATSAPP_API_URL is not configured")
        if credentials is None or not credentials.is_complete():
            return DispatchResult(success=False, error="WhatsApp credentials missing")

        payload = {
            "from": credentials.origin,
            "to": destination_id,
            "type": "text",
            "text": {"body": text},
        }
        try:
            with metrics.track("whatsapp", "send"):
                response = self._client.post(
                    self._api_url,
                    json=payload,
                    headers={"Authorization": f"Bearer {credentials.auth_token}"},
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "WhatsApp send to %s rejected: %s %s",
                destination_id, exc.response.status_code, exc.response.text[:200],
            )
            return DispatchResult(success=False, error=f"HTTP {exc.response.status_code}")
        except httpx.HTTPError as exc:
            logger.error("WhatsApp send to %s failed: %s", destination_id, exc)
            return DispatchResult(success=False, error=type(exc).__name__)

        logger.info("WhatsApp reply delivered to %s (%d chars)", destination_id, len(text))
        return DispatchResult(success=True)


class InlineDispatcher:
    """``Dispatcher`` for the web widget: the HTTP response is the delivery."""

    def send(
        self,
        destination_id: str,
        text: str,
        credentials: DispatchCredentials | None = None,
    ) -> DispatchResult:
        return DispatchResult(success=True)
