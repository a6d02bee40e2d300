"""
Error handling for chat exchanges.

Every failure raised while an exchange is running terminates that exchange
only; the chat service converts it into a visible assistant message:
- Credential precondition failures (before any network call)
- Transport failures (network errors, non-success HTTP status, missing body)
- Per-frame parse failures (always swallowed by the decoder)
- Storage quota exhaustion (degraded by the persistence adapter)
"""

from __future__ import annotations


class ChatError(Exception):
    """Base chat error with optional transport context."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_data = response_data or {}


class CredentialMissingError(ChatError):
    """No API key from user settings or the process environment."""
    pass


class TransportError(ChatError):
    """Network failure, non-success HTTP status or unusable response body."""
    pass


class FrameParseError(ChatError):
    """A single stream frame could not be decoded."""

    def __init__(self, message: str, raw_frame: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.raw_frame = raw_frame


class StorageQuotaExceededError(ChatError):
    """The storage medium refused a write for lack of space."""

    def __init__(self, message: str, key: str = "", size: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.key = key
        self.size = size
