"""
Streaming-specific dataclasses for frame decoding and publishing.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FrameType(Enum):
    """Kinds of newline-delimited frames on the wire."""
    DELTA = "delta"
    COMPLETION = "completion"
    SKIPPED = "skipped"


class PublisherState(Enum):
    """Lifecycle of a throttled publisher."""
    IDLE = "idle"
    STREAMING = "streaming"
    FINALIZING = "finalizing"


@dataclass(frozen=True)
class StreamFrame:
    """One decoded frame and the delta it carries, if any."""
    frame_type: FrameType
    raw_data: str
    delta: str | None = None
    error: str | None = None


@dataclass
class DecoderStats:
    """Counters for a single decoder instance."""
    total_frames: int = 0
    delta_frames: int = 0
    skipped_frames: int = 0
    bytes_received: int = 0
