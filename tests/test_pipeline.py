"""Tests for ChatPipeline against a mocked server."""

import asyncio

import httpx
import pytest

from outbox import (
    ChatMessage,
    ChatPipeline,
    ChatState,
    Conversation,
    MemoryStore,
    NoModelSelectedError,
    OpenWebUIClient,
    TaskQueue,
    TaskStatus,
    TaskWorker,
)

from .fakes import FakeServer, wait_until

COMPLETIONS = "/api/chat/completions"


@pytest.fixture()
def server():
    server = FakeServer()
    server.route("POST", COMPLETIONS, {"choices": [{"message": {"content": "Hello!"}}]})
    return server


@pytest.fixture()
async def client(server):
    c = OpenWebUIClient("https://chat.test", transport=httpx.MockTransport(server))
    yield c
    await c.close()


@pytest.fixture()
def pipeline(client, state):
    return ChatPipeline(client, state)


class TestSendMessage:
    """Tests for the send path."""

    async def test_existing_conversation(self, server, state, pipeline):
        earlier = ChatMessage(id="m0", role="user", content="earlier")
        state.set_active_conversation(Conversation(id="c1", title="Chat", messages=[earlier]))
        server.route("POST", "/api/v1/chats/c1", httpx.Response(200))

        await pipeline.send_message("c1", "hi", ["f1"], ["calc"])

        user, reply = state.messages[1:]
        assert user.content == "hi"
        assert user.attachment_ids == ["f1"]
        assert reply.content == "Hello!"
        assert reply.model == "test-model"
        assert reply.is_streaming is False

        (completion,) = server.sent("POST", COMPLETIONS)
        assert completion["chat_id"] == "c1"
        assert completion["model"] == "test-model"
        assert completion["files"] == [{"type": "file", "id": "f1"}]
        assert completion["tool_ids"] == ["calc"]
        assert [m["content"] for m in completion["messages"]] == ["earlier", "hi"]

        (pushed,) = server.sent("POST", "/api/v1/chats/c1")
        assert pushed["chat"]["title"] == "Chat"
        assert len(pushed["chat"]["messages"]) == 3
        assert state.conversations_revision == 1

    async def test_creates_conversation_when_none_active(self, server, state, pipeline):
        server.route("POST", "/api/v1/chats/new", {"id": "c9", "title": "New Chat"})
        server.route("POST", "/api/v1/chats/c9", httpx.Response(200))

        await pipeline.send_message(None, "hello there")

        assert state.active_conversation.id == "c9"
        assert [m.role for m in state.messages] == ["user", "assistant"]
        (created,) = server.sent("POST", "/api/v1/chats/new")
        assert [m["content"] for m in created["chat"]["messages"]] == ["hello there"]
        assert server.sent("POST", COMPLETIONS)[0]["chat_id"] == "c9"

    async def test_image_generation_flag_is_forwarded(self, server, state, pipeline):
        state.set_active_conversation(Conversation(id="c1"))
        state.image_generation_enabled = True

        await pipeline.send_message("c1", "draw a cat")

        assert server.sent("POST", COMPLETIONS)[0]["features"] == {"image_generation": True}

    async def test_completion_failure_stops_streaming(self, server, state, pipeline):
        state.set_active_conversation(Conversation(id="c1"))
        server.route("POST", COMPLETIONS, httpx.Response(500))

        with pytest.raises(httpx.HTTPStatusError):
            await pipeline.send_message("c1", "hi")

        assert state.messages[-1].role == "assistant"
        assert state.messages[-1].is_streaming is False

    async def test_push_failure_is_tolerated(self, server, state, pipeline):
        state.set_active_conversation(Conversation(id="c1"))

        await pipeline.send_message("c1", "hi")

        assert state.messages[-1].content == "Hello!"
        assert state.conversations_revision == 0

    async def test_requires_model(self, client):
        state = ChatState()
        pipeline = ChatPipeline(client, state)

        with pytest.raises(NoModelSelectedError):
            await pipeline.send_message("c1", "hi")
        assert state.messages == []


def chat_response(chat_id: str) -> dict:
    return {
        "id": chat_id,
        "title": chat_id.upper(),
        "chat": {"messages": [{"id": f"{chat_id}-m0", "role": "user", "content": f"earlier in {chat_id}"}]},
    }


def pushed_contents(server: FakeServer, chat_id: str) -> list[list[str]]:
    return [
        [m["content"] for m in body["chat"]["messages"]]
        for body in server.sent("POST", f"/api/v1/chats/{chat_id}")
    ]


class TestSeparateConversations:
    """Sends whose conversation is not the one the state shows."""

    async def test_background_send_leaves_state_alone(self, server, state, pipeline):
        shown = ChatMessage(id="m9", role="user", content="on screen")
        state.set_active_conversation(Conversation(id="c2", messages=[shown]))
        server.route("GET", "/api/v1/chats/c1", chat_response("c1"))
        server.route("POST", "/api/v1/chats/c1", httpx.Response(200))

        await pipeline.send_message("c1", "for c1")

        assert state.active_conversation.id == "c2"
        assert [m.content for m in state.messages] == ["on screen"]
        assert pushed_contents(server, "c1") == [["earlier in c1", "for c1", "Hello!"]]
        (completion,) = server.sent("POST", COMPLETIONS)
        assert completion["chat_id"] == "c1"
        assert [m["content"] for m in completion["messages"]] == ["earlier in c1", "for c1"]

    async def test_parallel_sends_through_queue(self, server, state, config):
        for chat_id in ("c1", "c2"):
            server.route("GET", f"/api/v1/chats/{chat_id}", chat_response(chat_id))
            server.route("POST", f"/api/v1/chats/{chat_id}", httpx.Response(200))

        async def slow_server(request):
            # c2 becomes active while c1's completion is still in flight
            if request.method == "GET":
                await asyncio.sleep(0.01 if request.url.path.endswith("/c1") else 0.03)
            elif request.url.path == COMPLETIONS:
                await asyncio.sleep(0.03)
            return server(request)

        client = OpenWebUIClient("https://chat.test", transport=httpx.MockTransport(slow_server))
        worker = TaskWorker(state, api=client, sender=ChatPipeline(client, state), config=config)
        queue = TaskQueue(MemoryStore(), worker, config=config)
        try:
            await queue.enqueue_send_text("c1", "for c1")
            await queue.enqueue_send_text("c2", "for c2")
            await wait_until(
                lambda: [t.status for t in queue.tasks] == [TaskStatus.SUCCEEDED] * 2
            )
        finally:
            await queue.stop(timeout=1.0)
            await client.close()

        assert pushed_contents(server, "c1") == [["earlier in c1", "for c1", "Hello!"]]
        assert pushed_contents(server, "c2") == [["earlier in c2", "for c2", "Hello!"]]
        assert state.active_conversation.id == "c2"
        assert [m.content for m in state.messages] == ["earlier in c2", "for c2", "Hello!"]
