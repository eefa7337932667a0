"""Collaborator interfaces the worker depends on.

The worker talks to Protocols rather than concrete clients, so the HTTP
client, the message pipeline and test fakes are interchangeable.
"""

from __future__ import annotations

from typing import Any, Protocol

from outbox.state import ChatMessage, Conversation


class ChatApi(Protocol):
    """Server-side capabilities consumed by the worker."""

    async def get_conversation(self, conversation_id: str) -> Conversation: ...

    async def upload_file(self, file_path: str, file_name: str) -> str:
        """Upload a local file and return the server-assigned file id."""
        ...

    async def get_available_tools(self) -> list[dict[str, Any]]: ...

    async def generate_image(self, prompt: str, model: str | None = None) -> Any:
        """Return the raw (loosely shaped) image-generation response."""
        ...

    async def generate_title(
        self,
        conversation_id: str,
        messages: list[dict[str, Any]],
        model: str,
    ) -> str | None: ...

    async def update_conversation_with_messages(
        self,
        conversation_id: str,
        messages: list[ChatMessage],
        *,
        title: str | None = None,
        model: str | None = None,
    ) -> None: ...


class MessageSender(Protocol):
    """The unified send-message pipeline."""

    async def send_message(
        self,
        conversation_id: str | None,
        text: str,
        attachment_ids: list[str] | None = None,
        tool_ids: list[str] | None = None,
        *,
        image_generation: bool | None = None,
    ) -> None:
        """Send one user message. ``image_generation=None`` follows the state's toggle."""
        ...
