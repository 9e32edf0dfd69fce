"""Exceptions raised by the conversation engine and its backend adapters."""
from __future__ import annotations


class ConversationEngineError(Exception):
    """Base class for engine contract violations."""


class TurnInProgressError(ConversationEngineError):
    """A turn was started while another one still occupies the engine."""


class EngineBusyError(ConversationEngineError):
    """``run()`` was called while the engine is already running a session."""


class ProviderError(Exception):
    """A transcription, generation or synthesis backend failed."""

    def __init__(self, provider: str, message: str, status_code: int = 0):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status_code = status_code
