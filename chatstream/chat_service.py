"""
Chat Service

This module runs exchanges end to end:
- Appends the user message and the in-flight assistant placeholder
- Resolves the API credential before any network call
- Feeds transport bytes through the frame decoder and delta accumulator
- Publishes snapshots into the store through a throttled publisher
- Persists the store after every merge that lands
- Converts every failure into a visible assistant error message

Each exchange carries its own token. A newer exchange on the same session
cancels the older publisher and rotates the token in the store, so late
deltas from a superseded stream are never observable.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

from chatstream.config import ChatSettings, Configuration
from chatstream.history.chat_store import ConversationStore
from chatstream.history.models import Attachment
from chatstream.history.persistence import SessionPersister
from chatstream.llm.client import LLMClient
from chatstream.llm.models import ChatRequest
from chatstream.llm.streaming.parser import DeltaAccumulator, FrameDecoder
from chatstream.llm.streaming.publisher import (
    DEFAULT_PUBLISH_INTERVAL,
    ThrottledPublisher,
)
from chatstream.logging_utils import ContextualLogger, ErrorHandler

# Called with (session_id, text, final) whenever a merge lands in the store.
UpdateListener = Callable[[str, str, bool], None]

ExchangeStatus = Literal["completed", "failed", "superseded"]


@dataclass(frozen=True)
class ExchangeResult:
    """Outcome of one user-message-to-reply round trip."""
    session_id: str
    exchange_id: str
    status: ExchangeStatus
    content: str
    error: str | None = None


class _ExchangeSink:
    """Routes one session's publishes into the store and persistence."""

    def __init__(self, service: ChatService, session_id: str):
        self.service = service
        self.session_id = session_id

    async def publish(self, exchange_id: str, text: str, *, final: bool) -> bool:
        store = self.service.store
        if final:
            merged = store.finalize_exchange(self.session_id, exchange_id, text)
        else:
            merged = store.merge_assistant_delta(self.session_id, exchange_id, text)
        if merged:
            await self.service._after_merge(self.session_id, text, final)
        return merged

    async def publish_error(
        self, exchange_id: str, error_text: str, partial_text: str
    ) -> bool:
        merged = self.service.store.fail_exchange(
            self.session_id, exchange_id, error_text, partial_text
        )
        if merged:
            session = self.service.store.get_session(self.session_id)
            last = session.last_message.content if session and session.last_message else ""
            await self.service._after_merge(self.session_id, last, True)
        return merged


class ChatService:
    """
    Exchange orchestrator.

    1. Records the user's message and an empty reply placeholder
    2. Streams the reply from the endpoint
    3. Merges growing snapshots into the store at a bounded rate
    4. Freezes the placeholder with the full reply or an error
    """

    class ChatServiceConfig(BaseModel):
        model_config = ConfigDict(arbitrary_types_allowed=True)

        store: ConversationStore
        llm_client: Any  # LLMClient
        configuration: Configuration
        persister: SessionPersister | None = None
        settings: ChatSettings | None = None
        clock: Callable[[], float] = time.monotonic

    def __init__(self, service_config: ChatService.ChatServiceConfig):
        self.store = service_config.store
        self.llm_client: LLMClient = service_config.llm_client
        self.configuration = service_config.configuration
        self.persister = service_config.persister
        self.settings = service_config.settings or self.configuration.default_settings()
        self.clock = service_config.clock

        streaming_config = self.configuration.get_streaming_config()
        self.publish_interval: float = streaming_config.get(
            "publish_interval", DEFAULT_PUBLISH_INTERVAL
        )

        # One live publisher per session; replaced when a new exchange starts.
        self._publishers: dict[str, ThrottledPublisher] = {}
        self._listeners: list[UpdateListener] = []

    def add_listener(self, listener: UpdateListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: UpdateListener) -> None:
        self._listeners.remove(listener)

    def active_publisher(self, session_id: str) -> ThrottledPublisher | None:
        return self._publishers.get(session_id)

    async def send_message(
        self,
        session_id: str,
        content: str,
        attachments: Iterable[Attachment] = (),
    ) -> ExchangeResult:
        """
        Run one exchange on ``session_id`` and return its outcome.

        Never raises for exchange failures; they end up as an assistant
        message starting with ``Error:``.
        """
        attachments = tuple(attachments)
        if not content.strip() and not attachments:
            raise ValueError("message must have text or attachments")

        exchange_id = self.store.start_exchange(session_id, content, attachments)
        previous = self._publishers.pop(session_id, None)
        if previous is not None:
            previous.cancel()

        publisher = ThrottledPublisher(
            exchange_id,
            _ExchangeSink(self, session_id),
            interval=self.publish_interval,
            clock=self.clock,
        )
        self._publishers[session_id] = publisher
        log = ContextualLogger({"session_id": session_id, "exchange_id": exchange_id})
        await self._persist()

        accumulator = DeltaAccumulator()
        try:
            return await self._run_exchange(
                session_id, exchange_id, publisher, accumulator, log
            )
        except asyncio.CancelledError:
            publisher.cancel()
            if self.store.is_active(session_id, exchange_id):
                self.store.cancel_exchange(session_id)
            raise
        finally:
            if self._publishers.get(session_id) is publisher:
                del self._publishers[session_id]

    async def _run_exchange(
        self,
        session_id: str,
        exchange_id: str,
        publisher: ThrottledPublisher,
        accumulator: DeltaAccumulator,
        log: ContextualLogger,
    ) -> ExchangeResult:
        try:
            api_key = self.configuration.resolve_api_key(self.settings.api_key)
            request = ChatRequest.build(
                self.store.request_history(session_id),
                model=self.configuration.resolve_model(self.settings.model),
                system_prompt=self.settings.system_prompt,
            )

            decoder = FrameDecoder()
            async with (
                aclosing(self.llm_client.stream_chat(request, api_key)) as byte_source,
                aclosing(decoder.iter_deltas(byte_source)) as deltas,
            ):
                async for delta in deltas:
                    if publisher.cancelled:
                        log.debug("Stopped reading superseded stream")
                        break
                    accumulator.append(delta)
                    await publisher.on_delta(accumulator.snapshot)

            if publisher.cancelled:
                return ExchangeResult(
                    session_id, exchange_id, "superseded", accumulator.snapshot()
                )

            final_text = accumulator.snapshot()
            merged = await publisher.finish(final_text)
            log.info(
                "Exchange completed",
                deltas=accumulator.delta_count,
                publishes=publisher.publish_count,
                skipped_frames=decoder.stats.skipped_frames,
            )
            status: ExchangeStatus = "completed" if merged else "superseded"
            return ExchangeResult(session_id, exchange_id, status, final_text)

        except Exception as e:
            description = ErrorHandler.log_error(
                e,
                "stream_chat",
                {"session_id": session_id, "exchange_id": exchange_id},
            )
            partial_text = accumulator.snapshot()
            merged = await publisher.fail(description, partial_text)
            status = "failed" if merged else "superseded"
            return ExchangeResult(
                session_id, exchange_id, status, partial_text, description
            )

    def cancel(self, session_id: str) -> bool:
        """Abandon the in-flight exchange of a session, keeping streamed text."""
        publisher = self._publishers.pop(session_id, None)
        if publisher is not None:
            publisher.cancel()
        return self.store.cancel_exchange(session_id)

    async def _after_merge(self, session_id: str, text: str, final: bool) -> None:
        for listener in list(self._listeners):
            listener(session_id, text, final)
        await self._persist()

    async def _persist(self) -> None:
        if self.persister is None:
            return
        try:
            await self.persister.save(self.store)
        except (OSError, TimeoutError) as e:
            ErrorHandler.log_error(e, "persist_sessions")
