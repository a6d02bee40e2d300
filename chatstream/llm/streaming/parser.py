"""
Incremental frame decoder and delta accumulator for streamed chat replies.

The decoder turns raw byte chunks into text deltas: it reassembles UTF-8
across chunk boundaries, splits on newlines, recognizes ``data: `` frames and
the ``[DONE]`` sentinel, and skips malformed frames without aborting the stream.
"""

from __future__ import annotations

import codecs
import io
import json
from collections.abc import AsyncGenerator, AsyncIterable

import structlog

from ..exceptions import FrameParseError
from .models import DecoderStats, FrameType, StreamFrame

logger = structlog.get_logger(__name__)

FRAME_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


class FrameDecoder:
    """Stateful decoder for one byte stream of ``data:`` frames."""

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False
        self.stats = DecoderStats()

    def feed(self, chunk: bytes) -> list[str]:
        """
        Consume one chunk of bytes and return the deltas it completes.

        Incomplete multi-byte sequences and the trailing partial line stay
        buffered for the next call. Once the sentinel is seen nothing more
        is emitted, whatever bytes follow.
        """
        if self.done:
            return []

        self.stats.bytes_received += len(chunk)
        self._buffer += self._utf8.decode(chunk)

        if "\n" not in self._buffer:
            return []

        lines = self._buffer.split("\n")
        self._buffer = lines.pop()

        deltas: list[str] = []
        for line in lines:
            frame = self._decode_line(line)
            if frame is None:
                continue

            self.stats.total_frames += 1
            if frame.frame_type == FrameType.COMPLETION:
                self.done = True
                self._buffer = ""
                break
            if frame.frame_type == FrameType.DELTA and frame.delta:
                self.stats.delta_frames += 1
                deltas.append(frame.delta)
            else:
                self.stats.skipped_frames += 1

        return deltas

    def close(self) -> None:
        """Signal that the transport has ended. An unterminated line is dropped."""
        tail = self._buffer + self._utf8.decode(b"", final=True)
        if tail.strip() and not self.done:
            logger.debug("Discarding unterminated trailing frame", raw_frame=tail)
        self._buffer = ""

    async def iter_deltas(
        self, byte_source: AsyncIterable[bytes]
    ) -> AsyncGenerator[str]:
        """Drive the decoder from an async byte source, yielding deltas in order."""
        async for chunk in byte_source:
            for delta in self.feed(chunk):
                yield delta
            if self.done:
                break
        self.close()

    def _decode_line(self, line: str) -> StreamFrame | None:
        """Classify one line; returns None for blank lines."""
        stripped = line.strip()
        if not stripped:
            return None

        if not stripped.startswith(FRAME_PREFIX):
            logger.debug("Ignoring non-data line", raw_frame=stripped)
            return StreamFrame(frame_type=FrameType.SKIPPED, raw_data=stripped)

        payload = stripped[len(FRAME_PREFIX):]
        if payload == DONE_SENTINEL:
            return StreamFrame(frame_type=FrameType.COMPLETION, raw_data=payload)

        try:
            delta = extract_delta(payload)
        except FrameParseError as e:
            logger.warning(
                "Skipping malformed stream frame",
                error=e.message,
                raw_frame=e.raw_frame,
            )
            return StreamFrame(
                frame_type=FrameType.SKIPPED, raw_data=payload, error=e.message
            )

        if not delta:
            return StreamFrame(frame_type=FrameType.SKIPPED, raw_data=payload)
        return StreamFrame(frame_type=FrameType.DELTA, raw_data=payload, delta=delta)


def extract_delta(payload: str) -> str | None:
    """
    Read ``choices[0].delta.content`` from a JSON frame payload.

    Returns None when the event parses but carries no text (empty choices,
    role-only deltas, finish markers).

    Raises:
        FrameParseError: If the payload is not valid JSON.
    """
    try:
        event = json.loads(payload)
    except json.JSONDecodeError as e:
        raise FrameParseError(f"JSON decode error: {e}", raw_frame=payload) from e

    if not isinstance(event, dict):
        return None
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    choice = choices[0]
    if not isinstance(choice, dict):
        return None
    delta = choice.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) else None


class DeltaAccumulator:
    """
    Owns the growing reply text of exactly one exchange.

    Deltas are written into a StringIO; the joined snapshot is cached and
    only rebuilt after new text has arrived.
    """

    def __init__(self) -> None:
        self._buffer = io.StringIO()
        self._snapshot = ""
        self._dirty = False
        self.delta_count = 0

    def append(self, delta: str) -> None:
        """Append a delta in arrival order."""
        if not delta:
            return
        self._buffer.write(delta)
        self._dirty = True
        self.delta_count += 1

    def snapshot(self) -> str:
        """Current full text of the reply."""
        if self._dirty:
            self._snapshot = self._buffer.getvalue()
            self._dirty = False
        return self._snapshot

    def __len__(self) -> int:
        return self._buffer.tell()
