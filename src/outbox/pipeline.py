"""Send-message pipeline backed by the HTTP client."""

from __future__ import annotations

import logging
from dataclasses import replace

from outbox.client import OpenWebUIClient
from outbox.errors import NoModelSelectedError
from outbox.state import ChatMessage, ChatState, Conversation

logger = logging.getLogger(__name__)


class ChatPipeline:
    """
    Sends a user message and fills in the assistant reply.

    Each send works on its own copy of the target conversation's messages,
    so sends for different conversations can run at the same time. The
    shared ``ChatState`` is only written while the target conversation is
    the active one; observers then see the user message and a streaming
    placeholder straight away. A ``None`` conversation id creates a new
    conversation on the server.
    """

    def __init__(self, api: OpenWebUIClient, state: ChatState) -> None:
        self.api = api
        self.state = state

    def _is_visible(self, conversation_id: str | None) -> bool:
        """Whether ``conversation_id`` is what the state currently shows."""
        active = self.state.active_conversation
        if conversation_id is None:
            return active is None
        return active is not None and active.id == conversation_id

    async def send_message(
        self,
        conversation_id: str | None,
        text: str,
        attachment_ids: list[str] | None = None,
        tool_ids: list[str] | None = None,
        *,
        image_generation: bool | None = None,
    ) -> None:
        model = self.state.selected_model
        if not model:
            raise NoModelSelectedError()
        if image_generation is None:
            image_generation = self.state.image_generation_enabled

        user = ChatMessage.create("user", text, attachment_ids=attachment_ids or None)
        reply = ChatMessage.create("assistant", "", model=model, is_streaming=True)

        # Everything up to the first await reads the shared state once
        conversation: Conversation | None = None
        history: list[ChatMessage] = []
        if self._is_visible(conversation_id):
            conversation = self.state.active_conversation
            history = list(self.state.messages)
            self.state.add_message(user)
            self.state.add_message(reply)
        messages = history + [user, reply]

        if conversation_id is not None and conversation is None:
            conversation = await self.api.get_conversation(conversation_id)
            messages = list(conversation.messages) + [user, reply]
        elif conversation is None:
            conversation = await self.api.create_conversation(messages=messages[:-1], model=model)
            logger.info("Created conversation %s", conversation.id)
            if self.state.active_conversation is None:
                # Keep local messages; the server copy has no placeholder yet
                self.state.set_active_conversation(replace(conversation, messages=list(messages)))

        files = [{"type": "file", "id": file_id} for file_id in attachment_ids or []]
        try:
            content = await self.api.chat_completion(
                model,
                messages[:-1],
                chat_id=conversation.id,
                tool_ids=tool_ids,
                files=files or None,
                image_generation=image_generation,
            )
        except Exception:
            self._show(conversation.id, replace(reply, is_streaming=False))
            raise

        reply = replace(reply, content=content, is_streaming=False)
        messages[-1] = reply
        self._show(conversation.id, reply)

        try:
            await self.api.update_conversation_with_messages(
                conversation.id,
                messages,
                title=conversation.title,
                model=model,
            )
            self.state.invalidate_conversations()
        except Exception as e:
            logger.debug("Could not push conversation %s: %s", conversation.id, e)

    def _show(self, conversation_id: str, message: ChatMessage) -> None:
        if self._is_visible(conversation_id):
            self.state.replace_message(message)
