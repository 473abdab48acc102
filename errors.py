"""Error taxonomy for the chat core.

Each error carries the HTTP status it maps to, so the API layer can render
``{"error": ..., "details": ...}`` without knowing where it was raised.
"""
from __future__ import annotations


class ChatError(Exception):
    """Base class for all chat-core failures."""

    status_code: int = 500
    public_message: str = "An error occurred while processing your request"

    def __init__(self, message: str = "", *, session_id: str | None = None,
                 stage: str | None = None):
        super().__init__(message or self.public_message)
        self.session_id = session_id
        self.stage = stage


class InputError(ChatError):
    """Request is missing the user text or a required identifier."""

    status_code = 400
    public_message = "Invalid request"


class SessionNotFoundError(ChatError):
    status_code = 404
    public_message = "Session not found"


class TurnTimeoutError(ChatError):
    """The turn exceeded its wall-clock ceiling before producing output."""

    status_code = 504
    public_message = "The request timed out"


class StoreError(ChatError):
    """The message log or session store failed."""


class CompletionError(ChatError):
    """The completion service failed or returned nothing usable."""


class SummarizationError(ChatError):
    """A condensation call failed or timed out."""
