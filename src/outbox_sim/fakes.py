"""Simulated chat collaborators with injectable latency and errors."""

from __future__ import annotations

import asyncio
import random
import time
import uuid
from typing import TYPE_CHECKING, Any

from outbox.state import ChatMessage, ChatState, Conversation

if TYPE_CHECKING:
    from outbox_sim.runner import SimConfig


class SimulatedError(RuntimeError):
    """Raised by simulated collaborators to model a server failure."""


async def simulate_call(config: SimConfig) -> bool:
    """
    Sleep for one simulated request and maybe fail.

    Returns:
        True if this request was a latency outlier.

    Raises:
        SimulatedError: With probability ``config.error_rate``.
    """
    base_latency = config.latency_ms / 1000.0
    is_outlier = False

    if base_latency > 0:
        if config.outlier_chance > 0 and random.random() < config.outlier_chance:
            latency = base_latency * config.outlier_multiplier
            latency *= random.uniform(0.8, 1.5)
            is_outlier = True
        else:
            jitter = config.latency_jitter
            latency = base_latency * random.uniform(1 - jitter, 1 + jitter)
        await asyncio.sleep(latency)

    if random.random() < config.error_rate:
        raise SimulatedError("Simulated error")
    return is_outlier


class SimulatedChatApi:
    """In-process stand-in for the chat server."""

    def __init__(self, config: SimConfig) -> None:
        self.config = config
        self.conversations: dict[str, Conversation] = {}
        self.uploads: dict[str, str] = {}  # file id -> file name
        self.tools = [
            {"id": "web_search", "name": "Web Search"},
            {"id": "calculator", "name": "Calculator"},
        ]

    async def get_conversation(self, conversation_id: str) -> Conversation:
        await simulate_call(self.config)
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            conversation = Conversation(id=conversation_id)
            self.conversations[conversation_id] = conversation
        return conversation

    async def upload_file(self, file_path: str, file_name: str) -> str:
        await simulate_call(self.config)
        file_id = uuid.uuid4().hex[:12]
        self.uploads[file_id] = file_name
        return file_id

    async def get_available_tools(self) -> list[dict[str, Any]]:
        await simulate_call(self.config)
        return list(self.tools)

    async def generate_image(self, prompt: str, model: str | None = None) -> Any:
        await simulate_call(self.config)
        return {"data": [{"url": f"https://images.invalid/{uuid.uuid4().hex[:8]}.png"}]}

    async def generate_title(
        self,
        conversation_id: str,
        messages: list[dict[str, Any]],
        model: str,
    ) -> str | None:
        await simulate_call(self.config)
        first = next((m["content"] for m in messages if m["role"] == "user"), "")
        return f"About {first[:24]}" if first else None

    async def update_conversation_with_messages(
        self,
        conversation_id: str,
        messages: list[ChatMessage],
        *,
        title: str | None = None,
        model: str | None = None,
    ) -> None:
        await simulate_call(self.config)
        existing = self.conversations.get(conversation_id) or Conversation(id=conversation_id)
        self.conversations[conversation_id] = Conversation(
            id=conversation_id,
            title=title or existing.title,
            messages=list(messages),
            model=model,
            created_at=existing.created_at,
            updated_at=time.time(),
        )


class SimulatedSender:
    """Message pipeline that answers every message with a canned reply."""

    def __init__(self, config: SimConfig, state: ChatState) -> None:
        self.config = config
        self.state = state
        self.sent = 0

    async def send_message(
        self,
        conversation_id: str | None,
        text: str,
        attachment_ids: list[str] | None = None,
        tool_ids: list[str] | None = None,
        *,
        image_generation: bool | None = None,
    ) -> None:
        if image_generation is None:
            image_generation = self.state.image_generation_enabled
        self.state.add_message(ChatMessage.create("user", text, attachment_ids=attachment_ids))
        await simulate_call(self.config)
        reply = "Here is an image." if image_generation else f"Echo: {text}"
        self.state.add_message(ChatMessage.create("assistant", reply, model="sim-model"))
        self.sent += 1
