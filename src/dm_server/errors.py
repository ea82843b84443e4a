"""Error taxonomy shared by the directory, log store, presence table and router.

Every error carries a short machine-readable ``code`` so the router can report
it to the originating session as ``{"type": "error", "code": ..., "detail": ...}``.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ChatError(Exception):
    """Base class for errors that are reported back to a single session."""

    code: str = "error"

    def __init__(self, detail: Optional[str] = None) -> None:
        self.detail = detail or self.__class__.__doc__ or self.code
        super().__init__(self.detail)

    def to_event(self) -> Dict[str, Any]:
        return {"type": "error", "code": self.code, "detail": self.detail}


class InvalidToken(ChatError):
    """Authentication token was rejected."""

    code = "invalid_token"


class UnknownRecipient(ChatError):
    """No identity is registered under that id."""

    code = "unknown_recipient"


class DuplicateIdentity(ChatError):
    """An identity with that id already exists."""

    code = "duplicate_identity"


class InvalidIdentity(ChatError):
    """Identity ids must be non-empty strings."""

    code = "invalid_identity"


class EmptyMessage(ChatError):
    """Message text is empty."""

    code = "empty_message"


class MessageTooLong(ChatError):
    """Message text exceeds the configured limit."""

    code = "message_too_long"


class PersistenceFailure(ChatError):
    """Message could not be stored."""

    code = "persistence_failure"


class UnknownSession(ChatError):
    """Session is not registered in the presence table."""

    code = "unknown_session"


class SessionStateError(ChatError):
    """Operation is not allowed in the session's current state."""

    code = "invalid_state"


class BadRequest(ChatError):
    """Frame could not be parsed."""

    code = "bad_request"
