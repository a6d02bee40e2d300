"""
Persistence Adapter

Durable storage for the conversation store using one fixed on-disk layout:
a directory holding one JSON document per key, written with aiofiles under a
cross-process FileLock.

Backends implement a small write contract that reports quota exhaustion as
a result instead of raising. The SessionPersister degrades on quota
exhaustion by writing only the current session, and never lets a storage
failure escape into the running exchange.
"""
from __future__ import annotations

import asyncio
import errno
import json
import os
from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager, suppress
from enum import Enum
from typing import Protocol

import aiofiles
import structlog
from filelock import FileLock, Timeout
from pydantic import TypeAdapter, ValidationError

from chatstream.history.chat_store import ConversationStore
from chatstream.history.models import ChatSession, Project
from chatstream.llm.exceptions import StorageQuotaExceededError
from chatstream.logging_utils import log_operation

logger = structlog.get_logger(__name__)

SESSIONS_KEY = "chatSessions"
PROJECTS_KEY = "chatProjects"

_sessions_adapter = TypeAdapter(list[ChatSession])
_projects_adapter = TypeAdapter(list[Project])


class WriteResult(Enum):
    """Outcome of a storage write."""
    OK = "ok"
    QUOTA_EXCEEDED = "quota_exceeded"


@asynccontextmanager
async def async_file_lock(
    file_path: str, timeout: float = 30.0
) -> AsyncGenerator[None]:
    """
    Hold a cross-process lock on ``file_path`` without blocking the loop.

    Raises:
        TimeoutError: If the lock cannot be acquired within ``timeout`` seconds
    """
    file_lock = FileLock(f"{file_path}.lock", timeout=timeout)
    loop = asyncio.get_running_loop()

    try:
        await loop.run_in_executor(None, file_lock.acquire)
    except Timeout as e:
        raise TimeoutError(f"Failed to acquire file lock within {timeout}s") from e

    try:
        yield
    finally:
        with suppress(OSError):
            await loop.run_in_executor(None, file_lock.release)


class StorageBackend(Protocol):
    """Key/value storage contract used by the persister."""

    async def write(self, key: str, value: str) -> WriteResult:
        ...

    async def read(self, key: str) -> str | None:
        ...

    async def remove(self, key: str) -> None:
        ...


class JsonFileStorage:
    """
    One JSON file per key inside ``directory``.

    ``max_bytes`` caps the total size of all stored values; a write that would
    exceed it, or that hits ENOSPC on disk, reports QUOTA_EXCEEDED.
    """

    def __init__(
        self,
        directory: str,
        max_bytes: int | None = None,
        fsync_enabled: bool = True,
    ):
        if max_bytes is not None and max_bytes <= 0:
            raise ValueError("storage max_bytes must be positive")
        self.directory = directory
        self.max_bytes = max_bytes
        self.fsync_enabled = fsync_enabled

    def path_for(self, key: str) -> str:
        if not key or os.sep in key or key.startswith("."):
            raise ValueError(f"Invalid storage key: {key!r}")
        return os.path.join(self.directory, f"{key}.json")

    async def write(self, key: str, value: str) -> WriteResult:
        try:
            await self._write_file(key, value)
        except StorageQuotaExceededError as e:
            logger.warning(
                "Storage quota exceeded", key=e.key, size=e.size, error=e.message
            )
            return WriteResult.QUOTA_EXCEEDED
        return WriteResult.OK

    async def read(self, key: str) -> str | None:
        path = self.path_for(key)
        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                return await f.read()
        except FileNotFoundError:
            return None

    async def remove(self, key: str) -> None:
        path = self.path_for(key)
        async with async_file_lock(path):
            with suppress(FileNotFoundError):
                os.remove(path)

    def _used_bytes(self, exclude: str) -> int:
        total = 0
        with os.scandir(self.directory) as entries:
            for entry in entries:
                if (entry.is_file() and entry.name.endswith(".json")
                        and entry.path != exclude):
                    total += entry.stat().st_size
        return total

    async def _write_file(self, key: str, value: str) -> None:
        path = self.path_for(key)
        data = value.encode("utf-8")
        os.makedirs(self.directory, exist_ok=True)

        if self.max_bytes is not None:
            used = self._used_bytes(exclude=path)
            if used + len(data) > self.max_bytes:
                raise StorageQuotaExceededError(
                    f"Writing {len(data)} bytes would exceed quota of "
                    f"{self.max_bytes} bytes ({used} in use)",
                    key=key,
                    size=len(data),
                )

        tmp_path = f"{path}.tmp"
        async with async_file_lock(path):
            try:
                async with aiofiles.open(tmp_path, "wb") as f:
                    await f.write(data)
                    await f.flush()
                    if self.fsync_enabled:
                        loop = asyncio.get_running_loop()
                        await loop.run_in_executor(None, os.fsync, f.fileno())
                os.replace(tmp_path, path)
            except OSError as e:
                with suppress(FileNotFoundError):
                    os.remove(tmp_path)
                if e.errno in (errno.ENOSPC, errno.EDQUOT):
                    raise StorageQuotaExceededError(
                        f"No space left for {key}: {e}", key=key, size=len(data)
                    ) from e
                raise


def serialize_sessions(sessions: Iterable[ChatSession]) -> str:
    """Deterministic storage form; image attachments are never included."""
    payload = [s.storage_form().model_dump(mode="json") for s in sessions]
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def deserialize_sessions(raw: str) -> list[ChatSession]:
    return _sessions_adapter.validate_json(raw)


def serialize_projects(projects: Iterable[Project]) -> str:
    payload = [p.model_dump(mode="json") for p in projects]
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def deserialize_projects(raw: str) -> list[Project]:
    return _projects_adapter.validate_json(raw)


class SessionPersister:
    """Saves and restores a ConversationStore through a StorageBackend."""

    def __init__(self, storage: StorageBackend):
        self.storage = storage
        self._lock = asyncio.Lock()
        self._last_written: dict[str, str] = {}

    async def save(self, store: ConversationStore) -> WriteResult:
        """Persist sessions and projects. Never raises for quota exhaustion."""
        sessions_result = await self.save_sessions(store)
        await self.save_projects(store)
        return sessions_result

    async def save_sessions(self, store: ConversationStore) -> WriteResult:
        async with self._lock:
            serialized = serialize_sessions(store.list_sessions())
            result = await self._write(SESSIONS_KEY, serialized)
            if result == WriteResult.OK:
                return result

            current = store.current_session
            if current is None:
                logger.error("Session storage full and no current session to keep")
                return result

            logger.warning(
                "Saving only the current session after quota error",
                session_id=current.id,
            )
            result = await self._write(SESSIONS_KEY, serialize_sessions([current]))
            if result != WriteResult.OK:
                logger.error(
                    "Failed to save even minimal session data", session_id=current.id
                )
            return result

    async def save_projects(self, store: ConversationStore) -> WriteResult:
        async with self._lock:
            result = await self._write(
                PROJECTS_KEY, serialize_projects(store.list_projects())
            )
            if result != WriteResult.OK:
                logger.error("Failed to save projects")
            return result

    @log_operation("load_conversation_history")
    async def load(self, store: ConversationStore) -> None:
        """
        Restore stored sessions and projects into ``store``.

        A corrupt stored value is logged and removed; the store then starts
        with a fresh session.
        """
        sessions: list[ChatSession] = []
        projects: list[Project] = []

        try:
            raw_sessions = await self.storage.read(SESSIONS_KEY)
            if raw_sessions is not None:
                sessions = deserialize_sessions(raw_sessions)
        except (UnicodeDecodeError, ValidationError) as e:
            logger.error("Failed to load sessions", error=str(e))
            await self.storage.remove(SESSIONS_KEY)

        try:
            raw_projects = await self.storage.read(PROJECTS_KEY)
            if raw_projects is not None:
                projects = deserialize_projects(raw_projects)
        except (UnicodeDecodeError, ValidationError) as e:
            logger.error("Failed to load projects", error=str(e))
            await self.storage.remove(PROJECTS_KEY)

        store.load(sessions, projects)
        logger.info(
            "Loaded conversation history",
            sessions=len(sessions),
            projects=len(projects),
        )

    async def _write(self, key: str, serialized: str) -> WriteResult:
        if self._last_written.get(key) == serialized:
            return WriteResult.OK
        result = await self.storage.write(key, serialized)
        if result == WriteResult.OK:
            self._last_written[key] = serialized
        else:
            self._last_written.pop(key, None)
        return result
