"""
Chat completion transport and streaming ingestion.

This package provides:
- An httpx transport for OpenAI-compatible endpoints
- Wire-format request models
- Frame decoding, accumulation and throttled publishing
- The error taxonomy shared by exchanges
"""

from __future__ import annotations

from .client import LLMClient
from .exceptions import (
    ChatError,
    CredentialMissingError,
    FrameParseError,
    StorageQuotaExceededError,
    TransportError,
)
from .models import ChatRequest, WireMessage

__all__ = [
    "ChatError",
    "ChatRequest",
    "CredentialMissingError",
    "FrameParseError",
    "LLMClient",
    "StorageQuotaExceededError",
    "TransportError",
    "WireMessage",
]
