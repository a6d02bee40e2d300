#!/usr/bin/env python3
"""
End-to-end exchange tests: transport bytes through decoder, accumulator and
publisher into the store and onto disk.
"""

import asyncio
import json

import httpx
import pytest

from chatstream.chat_service import ChatService
from chatstream.config import ChatSettings, Configuration
from chatstream.history.chat_store import ConversationStore
from chatstream.history.models import Attachment
from chatstream.history.persistence import (
    SESSIONS_KEY,
    JsonFileStorage,
    SessionPersister,
    deserialize_sessions,
)
from chatstream.llm.client import LLMClient

CONFIG = {
    "llm": {
        "base_url": "https://llm.test/api/v1",
        "model": "test/model",
        "api_key_env": "CHATSTREAM_TEST_KEY",
    },
    "streaming": {"publish_interval_ms": 100},
}


def frame(content: str) -> bytes:
    return ("data: " + json.dumps({"choices": [{"delta": {"content": content}}]}) + "\n").encode()


def streaming_transport(chunks: list[bytes], status: int = 200, seen: list | None = None):
    async def body():
        for chunk in chunks:
            yield chunk

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(
            status, headers={"content-type": "text/event-stream"}, content=body()
        )

    return httpx.MockTransport(handler)


class FrozenClock:
    """A clock that never advances: only the first delta passes the throttle."""

    def __call__(self) -> float:
        return 42.0


class QueueClient:
    """Fake transport whose byte streams are fed by the test."""

    def __init__(self):
        self.queues: list[asyncio.Queue] = []

    async def stream_chat(self, request, api_key):
        queue: asyncio.Queue = asyncio.Queue()
        self.queues.append(queue)
        while True:
            chunk = await queue.get()
            if chunk is None:
                return
            yield chunk


async def wait_until(predicate, attempts: int = 200):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def make_service(llm_client, persister=None, api_key="test-key", clock=None):
    store = ConversationStore()
    store.new_session()
    extra = {"clock": clock} if clock is not None else {}
    config = ChatService.ChatServiceConfig(
        store=store,
        llm_client=llm_client,
        configuration=Configuration.from_dict(CONFIG),
        persister=persister,
        settings=ChatSettings(api_key=api_key, model="test/model"),
        **extra,
    )
    return ChatService(config)


class TestStreamingExchange:

    @pytest.mark.asyncio
    async def test_scenario_hello(self):
        chunks = [
            b'data: {"choices":[{"delta":{"content":"Hel"}}]}\nda',
            b'ta: {"choices":[{"delta":{"content":"lo"}}]}\ndata: [DONE]\n',
        ]
        seen: list[httpx.Request] = []
        client = LLMClient(CONFIG["llm"], transport=streaming_transport(chunks, seen=seen))
        service = make_service(client)
        sid = service.store.current_session_id

        result = await service.send_message(sid, "Say hello")

        assert result.status == "completed"
        assert result.content == "Hello"
        session = service.store.get_session(sid)
        assert [(m.role, m.content) for m in session.messages] == [
            ("user", "Say hello"),
            ("assistant", "Hello"),
        ]
        assert not session.last_message.is_pending
        assert session.title == "Say hello"

        body = json.loads(seen[0].content)
        assert body == {
            "model": "test/model",
            "messages": [{"role": "user", "content": "Say hello"}],
            "stream": True,
        }
        assert seen[0].headers["Authorization"] == "Bearer test-key"
        await client.close()

    @pytest.mark.asyncio
    async def test_final_flush_with_throttled_deltas(self, tmp_path):
        chunks = [frame(part) for part in ["a", "b", "c", "d"]] + [b"data: [DONE]\n"]
        client = LLMClient(CONFIG["llm"], transport=streaming_transport(chunks))
        persister = SessionPersister(JsonFileStorage(str(tmp_path), fsync_enabled=False))
        service = make_service(client, persister=persister, clock=FrozenClock())
        updates = []
        service.add_listener(lambda sid, text, final: updates.append((text, final)))
        sid = service.store.current_session_id

        await service.send_message(sid, "letters")

        assert updates == [("a", False), ("abcd", True)]
        stored = deserialize_sessions((tmp_path / f"{SESSIONS_KEY}.json").read_text())
        assert stored[0].messages[-1].content == "abcd"
        await client.close()

    @pytest.mark.asyncio
    async def test_corrupt_frame_does_not_abort(self):
        chunks = [frame("ok "), b"data: {not json\n", frame("fine"), b"data: [DONE]\n"]
        client = LLMClient(CONFIG["llm"], transport=streaming_transport(chunks))
        service = make_service(client)
        sid = service.store.current_session_id

        result = await service.send_message(sid, "go")
        assert result.status == "completed"
        assert service.store.get_session(sid).last_message.content == "ok fine"
        await client.close()

    @pytest.mark.asyncio
    async def test_stream_without_sentinel_completes_on_close(self):
        client = LLMClient(CONFIG["llm"], transport=streaming_transport([frame("tail")]))
        service = make_service(client)
        sid = service.store.current_session_id

        result = await service.send_message(sid, "go")
        assert result.status == "completed"
        assert result.content == "tail"
        await client.close()

    @pytest.mark.asyncio
    async def test_attachments_sent_as_parts(self):
        seen: list[httpx.Request] = []
        client = LLMClient(
            CONFIG["llm"],
            transport=streaming_transport([frame("ok"), b"data: [DONE]\n"], seen=seen),
        )
        service = make_service(client)
        service.settings.system_prompt = "Be brief."
        sid = service.store.current_session_id
        attachments = [
            Attachment(name="a.png", kind="image", content="data:image/png;base64,AAA"),
            Attachment(name="doc.txt", kind="document", content="body"),
        ]

        await service.send_message(sid, "see", attachments)

        messages = json.loads(seen[0].content)["messages"]
        assert messages[0] == {"role": "system", "content": "Be brief."}
        assert messages[1]["content"] == [
            {"type": "text", "text": "see"},
            {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAA"}},
            {"type": "text", "text": "\n\n[Attachment: doc.txt]\nbody\n"},
        ]
        await client.close()


class TestExchangeFailures:

    @pytest.mark.asyncio
    async def test_missing_credential_fails_before_network(self, monkeypatch):
        monkeypatch.delenv("CHATSTREAM_TEST_KEY", raising=False)
        seen: list[httpx.Request] = []
        client = LLMClient(CONFIG["llm"], transport=streaming_transport([], seen=seen))
        service = make_service(client, api_key="")
        sid = service.store.current_session_id

        result = await service.send_message(sid, "hello?")

        assert result.status == "failed"
        assert seen == []
        last = service.store.get_session(sid).last_message
        assert last.role == "assistant"
        assert last.content.startswith("Error:")
        assert "API key is required" in last.content
        assert not last.is_pending
        await client.close()

    @pytest.mark.asyncio
    async def test_environment_key_used_as_default(self, monkeypatch):
        monkeypatch.setenv("CHATSTREAM_TEST_KEY", "env-key")
        seen: list[httpx.Request] = []
        client = LLMClient(
            CONFIG["llm"],
            transport=streaming_transport([frame("x"), b"data: [DONE]\n"], seen=seen),
        )
        service = make_service(client, api_key="")
        await service.send_message(service.store.current_session_id, "hi")
        assert seen[0].headers["Authorization"] == "Bearer env-key"
        await client.close()

    @pytest.mark.asyncio
    async def test_configured_model_used_when_settings_leave_it_empty(self):
        seen: list[httpx.Request] = []
        client = LLMClient(
            CONFIG["llm"],
            transport=streaming_transport([frame("x"), b"data: [DONE]\n"], seen=seen),
        )
        service = make_service(client)
        service.settings.model = ""
        await service.send_message(service.store.current_session_id, "hi")
        assert json.loads(seen[0].content)["model"] == "test/model"
        await client.close()

    @pytest.mark.asyncio
    async def test_http_error_status_surfaces_message(self):
        def handler(request):
            return httpx.Response(401, json={"error": {"message": "Invalid key"}})

        client = LLMClient(CONFIG["llm"], transport=httpx.MockTransport(handler))
        service = make_service(client)
        sid = service.store.current_session_id

        result = await service.send_message(sid, "hi")

        assert result.status == "failed"
        assert service.store.get_session(sid).last_message.content == (
            "Error: API Error (401): Invalid key"
        )
        await client.close()

    @pytest.mark.asyncio
    async def test_network_failure_mid_stream_keeps_partial_text(self):
        async def body():
            yield frame("partial")
            raise httpx.ReadError("connection reset")

        def handler(request):
            return httpx.Response(200, content=body())

        client = LLMClient(CONFIG["llm"], transport=httpx.MockTransport(handler))
        service = make_service(client)
        sid = service.store.current_session_id

        result = await service.send_message(sid, "hi")

        assert result.status == "failed"
        contents = [m.content for m in service.store.get_session(sid).messages]
        assert contents[0] == "hi"
        assert contents[1] == "partial"
        assert contents[2].startswith("Error: Network error")
        await client.close()

    @pytest.mark.asyncio
    async def test_failure_keeps_text_held_back_by_throttle(self, tmp_path):
        async def body():
            yield frame("par")
            yield frame("tial")
            raise httpx.ReadError("connection reset")

        def handler(request):
            return httpx.Response(200, content=body())

        client = LLMClient(CONFIG["llm"], transport=httpx.MockTransport(handler))
        persister = SessionPersister(JsonFileStorage(str(tmp_path), fsync_enabled=False))
        service = make_service(client, persister=persister, clock=FrozenClock())
        sid = service.store.current_session_id

        result = await service.send_message(sid, "hi")

        assert result.status == "failed"
        assert result.content == "partial"
        contents = [m.content for m in service.store.get_session(sid).messages]
        assert contents[1] == "partial"
        assert contents[2].startswith("Error: Network error")
        stored = deserialize_sessions((tmp_path / f"{SESSIONS_KEY}.json").read_text())
        assert [m.content for m in stored[0].messages][1] == "partial"
        await client.close()

    @pytest.mark.asyncio
    async def test_empty_body_is_transport_error(self):
        client = LLMClient(CONFIG["llm"], transport=streaming_transport([]))
        service = make_service(client)
        sid = service.store.current_session_id

        await service.send_message(sid, "hi")
        assert service.store.get_session(sid).last_message.content == "Error: No response body"
        await client.close()

    @pytest.mark.asyncio
    async def test_empty_message_rejected(self):
        service = make_service(QueueClient())
        with pytest.raises(ValueError):
            await service.send_message(service.store.current_session_id, "   ")


class TestSupersession:

    @pytest.mark.asyncio
    async def test_late_deltas_of_superseded_exchange_never_land(self):
        client = QueueClient()
        service = make_service(client)
        store = service.store
        sid = store.current_session_id

        task_a = asyncio.create_task(service.send_message(sid, "first"))
        await wait_until(lambda: len(client.queues) == 1)
        client.queues[0].put_nowait(frame("A1"))
        await wait_until(lambda: store.get_session(sid).last_message.content == "A1")

        task_b = asyncio.create_task(service.send_message(sid, "second"))
        await wait_until(lambda: len(client.queues) == 2)

        client.queues[0].put_nowait(frame(" A2"))
        client.queues[0].put_nowait(b"data: [DONE]\n")
        client.queues[1].put_nowait(frame("B reply"))
        client.queues[1].put_nowait(b"data: [DONE]\n")

        result_a, result_b = await asyncio.gather(task_a, task_b)

        assert result_a.status == "superseded"
        assert result_b.status == "completed"
        contents = [(m.role, m.content) for m in store.get_session(sid).messages]
        assert contents == [
            ("user", "first"),
            ("assistant", "A1"),
            ("user", "second"),
            ("assistant", "B reply"),
        ]
        assert all("A2" not in text for _, text in contents)
        assert service.active_publisher(sid) is None

    @pytest.mark.asyncio
    async def test_cancel_freezes_placeholder(self):
        client = QueueClient()
        service = make_service(client)
        store = service.store
        sid = store.current_session_id

        task = asyncio.create_task(service.send_message(sid, "question"))
        await wait_until(lambda: len(client.queues) == 1)
        client.queues[0].put_nowait(frame("so far"))
        await wait_until(lambda: store.get_session(sid).last_message.content == "so far")

        assert service.cancel(sid)
        client.queues[0].put_nowait(frame(" more"))
        client.queues[0].put_nowait(None)
        result = await task

        assert result.status == "superseded"
        last = store.get_session(sid).last_message
        assert last.content == "so far"
        assert not last.is_pending

    @pytest.mark.asyncio
    async def test_task_cancellation_releases_exchange(self):
        client = QueueClient()
        service = make_service(client)
        store = service.store
        sid = store.current_session_id

        task = asyncio.create_task(service.send_message(sid, "question"))
        await wait_until(lambda: len(client.queues) == 1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        session = store.get_session(sid)
        assert session.active_exchange_id is None
        assert not session.last_message.is_pending
