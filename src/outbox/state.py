"""Observable chat state the worker writes into.

These stores stand in for whatever the host application renders from:
the active conversation, its message list, the composer's attachment
list, and a revision counter for the cached conversation list.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)

Listener = Callable[[str], None]


@dataclass
class ChatMessage:
    """One message in a conversation."""

    id: str
    role: str  # 'user', 'assistant', 'system'
    content: str
    timestamp: float = field(default_factory=time.time)
    model: str | None = None
    is_streaming: bool = False
    attachment_ids: list[str] | None = None
    files: list[dict[str, Any]] | None = None

    @classmethod
    def create(cls, role: str, content: str, **kwargs: Any) -> ChatMessage:
        return cls(id=str(uuid.uuid4()), role=role, content=content, **kwargs)

    @property
    def is_empty_placeholder(self) -> bool:
        """An assistant message with no content, files or attachments yet."""
        return (
            self.role == "assistant"
            and not self.content.strip()
            and not self.files
            and not self.attachment_ids
        )


@dataclass
class Conversation:
    id: str
    title: str = "New Chat"
    messages: list[ChatMessage] = field(default_factory=list)
    model: str | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)


class FileUploadStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class FileUploadState:
    """UI-visible state of one attached file, keyed by its local path."""

    file_path: str
    file_name: str
    file_size: int = 0
    progress: float = 0.0
    status: FileUploadStatus = FileUploadStatus.PENDING
    file_id: str | None = None
    error: str | None = None


class _Observable:
    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, topic: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(topic)
            except Exception:
                # Observers must not break the writer
                logger.debug("State listener failed for %s", topic, exc_info=True)


class AttachmentStore(_Observable):
    """Attachment list keyed by local file path."""

    def __init__(self) -> None:
        super().__init__()
        self._files: dict[str, FileUploadState] = {}

    @property
    def items(self) -> list[FileUploadState]:
        return list(self._files.values())

    def get(self, file_path: str) -> FileUploadState | None:
        return self._files.get(file_path)

    def add(self, file_path: str, file_name: str, file_size: int = 0) -> FileUploadState:
        entry = FileUploadState(file_path=file_path, file_name=file_name, file_size=file_size)
        self._files[file_path] = entry
        self._notify("attachments")
        return entry

    def update(self, file_path: str, state: FileUploadState) -> None:
        self._files[file_path] = state
        self._notify("attachments")

    def remove(self, file_path: str) -> None:
        if self._files.pop(file_path, None) is not None:
            self._notify("attachments")

    def clear(self) -> None:
        self._files.clear()
        self._notify("attachments")


class ChatState(_Observable):
    """
    Shared chat state for the active session.

    Listeners receive a topic: "conversation", "messages" or
    "conversations". Attachment changes are published by
    ``state.attachments`` under the "attachments" topic.
    """

    def __init__(
        self,
        *,
        selected_model: str | None = None,
        reviewer_mode: bool = False,
    ) -> None:
        super().__init__()
        self.active_conversation: Conversation | None = None
        self.messages: list[ChatMessage] = []
        self.selected_model = selected_model
        self.reviewer_mode = reviewer_mode
        self.image_generation_enabled = False
        self.attachments = AttachmentStore()
        self.conversations_revision = 0

    def set_active_conversation(self, conversation: Conversation | None) -> None:
        self.active_conversation = conversation
        self.messages = list(conversation.messages) if conversation else []
        self._notify("conversation")
        self._notify("messages")

    def update_active_conversation(self, **changes: Any) -> Conversation | None:
        """Apply changes to the active conversation without touching messages."""
        if self.active_conversation is None:
            return None
        self.active_conversation = replace(self.active_conversation, **changes)
        self._notify("conversation")
        return self.active_conversation

    def add_message(self, message: ChatMessage) -> None:
        self.messages.append(message)
        self._notify("messages")

    def update_last_message(self, fn: Callable[[ChatMessage], ChatMessage]) -> None:
        if not self.messages:
            return
        self.messages[-1] = fn(self.messages[-1])
        self._notify("messages")

    def replace_message(self, message: ChatMessage) -> bool:
        """Swap in ``message`` for the entry with the same id, if present."""
        for i, existing in enumerate(self.messages):
            if existing.id == message.id:
                self.messages[i] = message
                self._notify("messages")
                return True
        return False

    def finish_streaming(self) -> None:
        """Mark the trailing assistant message as no longer streaming."""
        if self.messages and self.messages[-1].is_streaming:
            self.update_last_message(lambda m: replace(m, is_streaming=False))

    def invalidate_conversations(self) -> None:
        """Signal that any cached conversation list should be refetched."""
        self.conversations_revision += 1
        self._notify("conversations")
