"""Generation backend: Anthropic chat model via LangChain.

Turns a ``GenerationRequest`` into LangChain messages (system prompt,
history, latest user message) and either returns the full reply or yields
it fragment by fragment.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import AIMessage, AnyMessage, HumanMessage, SystemMessage

from src.config import (
    ANTHROPIC_API_KEY,
    GENERATION_MAX_TOKENS,
    GENERATION_TEMPERATURE,
    MODEL_NAME,
)
from src.models import GenerationRequest, Role
from src.services.metrics import metrics

logger = logging.getLogger(__name__)


def _build_llm() -> ChatAnthropic:
    """Build the chat model used for replies (no tools)."""
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=GENERATION_TEMPERATURE,  # Low temperature keeps answers close to the documents
        max_tokens=GENERATION_MAX_TOKENS,
    )


def to_messages(request: GenerationRequest) -> list[AnyMessage]:
    """Convert a request into the message list the chat model expects."""
    messages: list[AnyMessage] = [SystemMessage(content=request.system_prompt)]
    for turn in request.history:
        if turn.role is Role.USER:
            messages.append(HumanMessage(content=turn.content))
        else:
            messages.append(AIMessage(content=turn.content))
    messages.append(HumanMessage(content=request.user_message))
    return messages


def _text_of(content) -> str:
    """Extract plain text from a message/chunk ``content`` (str or block list)."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


class AnthropicGenerator:
    """``Generator`` implementation; one client shared across turns."""

    def __init__(self, llm: ChatAnthropic | None = None) -> None:
        self._llm = llm or _build_llm()

    def complete(self, request: GenerationRequest) -> str:
        with metrics.track("anthropic", "generate"):
            response = self._llm.invoke(to_messages(request))
        reply = _text_of(response.content).strip()
        logger.debug("Generated %d chars with %s", len(reply), MODEL_NAME)
        return reply

    def stream(self, request: GenerationRequest) -> Iterator[str]:
        with metrics.track("anthropic", "generate_stream"):
            for chunk in self._llm.stream(to_messages(request)):
                text = _text_of(chunk.content)
                if text:
                    yield text
