"""Failure taxonomy for the message-to-reply pipeline.

Only ``InvalidInputError`` and ``ConfigMissingError`` stop a turn before
generation.  The remaining codes describe degradations that the
orchestrator absorbs and reports on ``TurnResult.warnings``.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Failure taxonomy for a single turn."""

    INVALID_INPUT = "InvalidInput"
    CONFIG_MISSING = "ConfigMissing"
    RETRIEVAL_DEGRADED = "RetrievalDegraded"
    EMPTY_GENERATION = "EmptyGeneration"
    # the reply stream broke after some fragments; the partial text was sent
    GENERATION_INTERRUPTED = "GenerationInterrupted"
    DISPATCH_FAILED = "DispatchFailed"
    PERSISTENCE_FAILED = "PersistenceFailed"


class PipelineError(Exception):
    """Base class for errors that end a turn early."""

    code: ErrorCode

    def __init__(self, message: str):
        super().__init__(message)


class InvalidInputError(PipelineError):
    """A required field (conversation id, message text) was missing."""

    code = ErrorCode.INVALID_INPUT


class ConfigMissingError(PipelineError):
    """The tenant is not onboarded or its dispatch credentials are absent."""

    code = ErrorCode.CONFIG_MISSING
