"""Streaming chat client: incremental reply ingestion into persisted sessions."""

__version__ = "0.1.0"
