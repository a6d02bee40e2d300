"""
Wire-format dataclasses for chat completion requests.

Converts stored messages into the OpenAI-compatible request body:
- Plain messages keep string content
- Messages with attachments become multi-part content
- An optional system prompt is prepended
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from chatstream.history.models import Message

@dataclass(frozen=True)
class WireMessage:
    """OpenAI-compatible message structure."""
    role: str
    content: str | list[dict[str, Any]]

    @classmethod
    def from_message(cls, message: Message) -> WireMessage:
        if not message.attachments:
            return cls(role=message.role, content=message.content)

        parts: list[dict[str, Any]] = []
        if message.content:
            parts.append({"type": "text", "text": message.content})
        for attachment in message.attachments:
            if attachment.kind == "image":
                parts.append({
                    "type": "image_url",
                    "image_url": {"url": attachment.content},
                })
            else:
                parts.append({
                    "type": "text",
                    "text": f"\n\n[Attachment: {attachment.name}]\n{attachment.content}\n",
                })
        return cls(role=message.role, content=parts)

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass
class ChatRequest:
    """Complete chat completion request."""
    model: str
    messages: list[WireMessage] = field(default_factory=list)
    stream: bool = True

    @classmethod
    def build(
        cls,
        history: list[Message],
        model: str,
        system_prompt: str = "",
        stream: bool = True,
    ) -> ChatRequest:
        messages = [WireMessage.from_message(m) for m in history if not m.is_pending]
        if system_prompt:
            messages.insert(0, WireMessage(role="system", content=system_prompt))
        return cls(model=model, messages=messages, stream=stream)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_dict() for m in self.messages],
        }
        if self.stream:
            payload["stream"] = True
        return payload
