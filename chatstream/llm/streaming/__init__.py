"""
Streaming ingestion for chat replies.

This package contains:
- Frame decoding of ``data:`` lines
- Delta accumulation
- Throttled snapshot publishing
"""

from .models import DecoderStats, FrameType, PublisherState, StreamFrame
from .parser import DeltaAccumulator, FrameDecoder, extract_delta
from .publisher import DEFAULT_PUBLISH_INTERVAL, PublishSink, ThrottledPublisher

__all__ = [
    "DEFAULT_PUBLISH_INTERVAL",
    "DecoderStats",
    "DeltaAccumulator",
    "FrameDecoder",
    "FrameType",
    "PublishSink",
    "PublisherState",
    "StreamFrame",
    "ThrottledPublisher",
    "extract_delta",
]
