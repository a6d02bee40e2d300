"""
HTTP transport for chat completions.

Supplies the raw byte stream of a streamed completion; decoding is left to
the frame decoder. Failures surface as TransportError carrying a message.
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator
from typing import Any

import httpx
import structlog

from .exceptions import TransportError
from .models import ChatRequest

logger = structlog.get_logger(__name__)

COMPLETIONS_PATH = "/chat/completions"


class LLMClient:
    """HTTP client for an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        config: dict[str, Any],
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not config.get("base_url"):
            raise ValueError(
                "Required LLM configuration parameter 'base_url' not found."
            )

        self.config: dict[str, Any] = config
        headers = {"Content-Type": "application/json"}
        if config.get("app_url"):
            headers["HTTP-Referer"] = config["app_url"]
        if config.get("app_name"):
            headers["X-Title"] = config["app_name"]

        self.client: httpx.AsyncClient = httpx.AsyncClient(
            base_url=config["base_url"],
            headers=headers,
            timeout=config.get("timeout", 60.0),
            transport=transport,
        )

    @staticmethod
    def _auth_headers(api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}

    @staticmethod
    def error_message(response: httpx.Response, body: bytes) -> str:
        """Build ``API Error (<status>): <message>`` from a failed response."""
        message = response.reason_phrase
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            data = None
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and error.get("message"):
                message = error["message"]
            elif data.get("message"):
                message = data["message"]
        return f"API Error ({response.status_code}): {message}"

    async def stream_chat(
        self, request: ChatRequest, api_key: str
    ) -> AsyncGenerator[bytes]:
        """
        POST a streaming request and yield raw body chunks as they arrive.

        Raises:
            TransportError: On network failure, non-success status or an
                empty response body.
        """
        payload = request.to_payload()
        payload["stream"] = True
        received = 0

        try:
            async with self.client.stream(
                "POST",
                COMPLETIONS_PATH,
                json=payload,
                headers=self._auth_headers(api_key),
            ) as response:
                if not response.is_success:
                    body = await response.aread()
                    raise TransportError(
                        self.error_message(response, body),
                        status_code=response.status_code,
                    )

                async for chunk in response.aiter_bytes():
                    if chunk:
                        received += len(chunk)
                        yield chunk

        except httpx.HTTPError as e:
            logger.error("HTTP error during streaming", error=str(e))
            raise TransportError(f"Network error: {e!s}") from e

        if received == 0:
            raise TransportError("No response body")

    async def complete_chat(self, request: ChatRequest, api_key: str) -> str:
        """Non-streaming completion; returns the reply text."""
        payload = request.to_payload()
        payload.pop("stream", None)

        try:
            response = await self.client.post(
                COMPLETIONS_PATH, json=payload, headers=self._auth_headers(api_key)
            )
        except httpx.HTTPError as e:
            logger.error("HTTP error", error=str(e))
            raise TransportError(f"Network error: {e!s}") from e

        if not response.is_success:
            raise TransportError(
                self.error_message(response, response.content),
                status_code=response.status_code,
            )

        try:
            result = response.json()
            content = result["choices"][0]["message"]["content"]
        except (json.JSONDecodeError, KeyError, IndexError, TypeError) as e:
            logger.error("Unexpected response format", error=str(e))
            raise TransportError(f"Unexpected response format: {e!s}") from e
        return content or "No response generated."

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> LLMClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
