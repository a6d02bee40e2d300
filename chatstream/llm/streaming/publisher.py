"""
Throttled publishing of reply snapshots into the conversation store.

Bounds the rate of store merges and persistence writes while streaming,
and always delivers the final value once the stream ends.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Protocol

import structlog

from .models import PublisherState

logger = structlog.get_logger(__name__)

DEFAULT_PUBLISH_INTERVAL = 0.1


class PublishSink(Protocol):
    """Receiver of published snapshots, keyed by exchange token."""

    async def publish(self, exchange_id: str, text: str, *, final: bool) -> bool:
        """Merge a full snapshot; returns False when the exchange is stale."""
        ...

    async def publish_error(
        self, exchange_id: str, error_text: str, partial_text: str
    ) -> bool:
        """Freeze ``partial_text`` and finalize the exchange with error content."""
        ...


class ThrottledPublisher:
    """
    Publisher for a single exchange.

    States move Idle -> Streaming on the first delta, and through Finalizing
    back to Idle when the stream ends. While streaming, a snapshot is
    published only if ``interval`` seconds have passed since the previous
    publish; the end of the stream is always published.
    """

    def __init__(
        self,
        exchange_id: str,
        sink: PublishSink,
        interval: float = DEFAULT_PUBLISH_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval < 0:
            raise ValueError("publish interval must not be negative")
        self.exchange_id = exchange_id
        self.sink = sink
        self.interval = interval
        self.clock = clock
        self.state = PublisherState.IDLE
        self.cancelled = False
        self.completed = False
        self.publish_count = 0
        self.deferred_count = 0
        self._last_publish: float | None = None
        self._published_length = 0

    async def on_delta(self, snapshot: Callable[[], str]) -> bool:
        """
        Offer the latest snapshot after a delta arrived.

        ``snapshot`` is only called when a publish is due. Returns True if
        the snapshot was published now, False if deferred or dropped.
        """
        if self.cancelled or self.completed:
            return False
        if self.state == PublisherState.IDLE:
            self.state = PublisherState.STREAMING

        now = self.clock()
        if self._last_publish is not None and now - self._last_publish < self.interval:
            self.deferred_count += 1
            return False

        text = snapshot()
        if len(text) < self._published_length:
            return False

        self._last_publish = now
        return await self._publish(text, final=False)

    async def finish(self, final_text: str) -> bool:
        """Publish the complete reply regardless of the throttle window."""
        if self.cancelled or self.completed:
            return False
        self.state = PublisherState.FINALIZING
        try:
            return await self._publish(final_text, final=True)
        finally:
            self._complete()

    async def fail(self, error_text: str, partial_text: str = "") -> bool:
        """
        Publish error content as the final value of the exchange.

        ``partial_text`` is the full reply accumulated before the failure; it
        is delivered regardless of the throttle window.
        """
        if self.cancelled or self.completed:
            return False
        self.state = PublisherState.FINALIZING
        try:
            merged = await self.sink.publish_error(
                self.exchange_id, error_text, partial_text
            )
            self.publish_count += 1
            return merged
        finally:
            self._complete()

    def cancel(self) -> None:
        """Discard this publisher; later deltas are never merged."""
        if not self.cancelled:
            logger.debug("Publisher superseded", exchange_id=self.exchange_id)
        self.cancelled = True
        self.state = PublisherState.IDLE

    async def _publish(self, text: str, *, final: bool) -> bool:
        merged = await self.sink.publish(self.exchange_id, text, final=final)
        self.publish_count += 1
        self._published_length = len(text)
        if not merged:
            logger.debug(
                "Stale publish ignored by store", exchange_id=self.exchange_id
            )
        return merged

    def _complete(self) -> None:
        self.completed = True
        self.state = PublisherState.IDLE
