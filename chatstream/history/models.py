# chatstream/history/models.py
from __future__ import annotations

import time
import uuid
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant"]
AttachmentKind = Literal["image", "document"]
MessageState = Literal["pending", "final"]

DEFAULT_TITLE = "New Chat"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_id() -> str:
    return str(uuid.uuid4())


class Attachment(BaseModel):
    """A file attached to a message. Images carry data URLs, documents plain text."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    name: str
    kind: AttachmentKind
    content: str
    media_type: str | None = None


class Message(BaseModel):
    """
    One chat message.

    Only an assistant message in the ``pending`` state is a streaming target;
    it is replaced by position in its session, never mutated in place.
    """
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str = ""
    attachments: tuple[Attachment, ...] = ()
    state: MessageState = "final"

    @property
    def is_pending(self) -> bool:
        return self.state == "pending"

    @classmethod
    def placeholder(cls) -> Message:
        """Empty in-flight assistant message."""
        return cls(role="assistant", content="", state="pending")

    def with_content(self, text: str) -> Message:
        return self.model_copy(update={"content": text})

    def finalized(self, text: str | None = None) -> Message:
        update: dict = {"state": "final"}
        if text is not None:
            update["content"] = text
        return self.model_copy(update=update)

    def without_images(self) -> Message:
        kept = tuple(a for a in self.attachments if a.kind != "image")
        if len(kept) == len(self.attachments):
            return self
        return self.model_copy(update={"attachments": kept})


class Project(BaseModel):
    """Grouping label; sessions point at projects, never the reverse."""
    id: str = Field(default_factory=_new_id)
    name: str
    created_at: int = Field(default_factory=_now_ms)


class ChatSession(BaseModel):
    """A conversation: ordered messages plus the token of its in-flight exchange."""
    id: str = Field(default_factory=_new_id)
    project_id: str | None = None
    title: str = DEFAULT_TITLE
    messages: tuple[Message, ...] = ()
    timestamp: int = Field(default_factory=_now_ms)

    # Runtime only; a reloaded session never has a live stream.
    active_exchange_id: str | None = Field(default=None, exclude=True)

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def append_message(self, message: Message) -> None:
        self.messages = (*self.messages, message)
        self.timestamp = _now_ms()

    def replace_message_at(self, index: int, message: Message) -> None:
        """Swap the message at ``index``; the rest of the sequence is untouched."""
        if not -len(self.messages) <= index < len(self.messages):
            raise IndexError(f"message index {index} out of range")
        if index < 0:
            index += len(self.messages)
        self.messages = (
            *self.messages[:index], message, *self.messages[index + 1:]
        )

    def storage_form(self) -> ChatSession:
        """Copy suitable for persistence: images removed, placeholders frozen."""
        return self.model_copy(
            update={
                "messages": tuple(
                    m.without_images().finalized() if m.is_pending else m.without_images()
                    for m in self.messages
                ),
                "active_exchange_id": None,
            }
        )
