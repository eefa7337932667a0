"""Task execution against chat collaborators."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
from dataclasses import replace
from pathlib import Path
from typing import Any, Awaitable, Callable

from outbox.config import OutboxConfig
from outbox.errors import (
    ApiUnavailableError,
    NoModelSelectedError,
    UploadFailedError,
    UploadTimeoutError,
)
from outbox.images import extract_generated_files
from outbox.models import (
    ExecuteToolCall,
    GenerateImage,
    GenerateTitle,
    ImageToDataUrl,
    SaveConversation,
    SendTextMessage,
    Task,
    TaskKind,
    UploadMedia,
)
from outbox.ports import ChatApi, MessageSender
from outbox.state import ChatMessage, ChatState, FileUploadState, FileUploadStatus
from outbox.uploads import (
    AttachmentUploadQueue,
    QueuedAttachment,
    QueuedAttachmentStatus,
    UploadCallback,
)

logger = logging.getLogger(__name__)

UploaderFactory = Callable[[UploadCallback], AttachmentUploadQueue]
Handler = Callable[[Any, asyncio.Event], Awaitable[None]]

_UPLOAD_STATUS = {
    QueuedAttachmentStatus.PENDING: FileUploadStatus.UPLOADING,
    QueuedAttachmentStatus.UPLOADING: FileUploadStatus.UPLOADING,
    QueuedAttachmentStatus.COMPLETED: FileUploadStatus.COMPLETED,
    QueuedAttachmentStatus.FAILED: FileUploadStatus.FAILED,
    QueuedAttachmentStatus.CANCELLED: FileUploadStatus.FAILED,
}

_IMAGE_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


def image_mime_type(file_name: str) -> str:
    """Guess an image MIME type from the file extension, defaulting to PNG."""
    ext = os.path.splitext(file_name)[1].lower()
    return _IMAGE_MIME_TYPES.get(ext, "image/png")


def tool_prompt(tool_name: str, arguments: dict[str, Any]) -> str:
    """Instruction asking the model to run a tool with the given arguments."""
    args = json.dumps(arguments, indent=2)
    return f"Please run the tool '{tool_name}' with the following arguments:\n```json\n{args}\n```"


class TaskWorker:
    """
    Performs one task by delegating to the API and the message pipeline.

    Handlers raise on failure; the queue records the error. Best-effort
    side effects (conversation refresh, auto-title) are logged and dropped.

    Args:
        state: Chat state the handlers read from and write to.
        api: Server capabilities. Most handlers require it.
        sender: The send-message pipeline.
        config: Shared tunables.
        uploader_factory: Builds the upload sub-queue for UploadMedia.
            Defaults to an AttachmentUploadQueue using the config's
            retry settings.

    Example:
        worker = TaskWorker(state, api=client, sender=ChatPipeline(client, state))
        await worker.perform(task)
    """

    def __init__(
        self,
        state: ChatState,
        *,
        api: ChatApi | None = None,
        sender: MessageSender | None = None,
        config: OutboxConfig | None = None,
        uploader_factory: UploaderFactory | None = None,
    ) -> None:
        self.state = state
        self.api = api
        self.sender = sender
        self.config = config or OutboxConfig()
        self._uploader_factory = uploader_factory or self._default_uploader

        self._handlers: dict[TaskKind, Handler] = {
            TaskKind.SEND_TEXT_MESSAGE: self._send_text,
            TaskKind.UPLOAD_MEDIA: self._upload_media,
            TaskKind.EXECUTE_TOOL_CALL: self._execute_tool_call,
            TaskKind.GENERATE_IMAGE: self._generate_image,
            TaskKind.IMAGE_TO_DATA_URL: self._image_to_data_url,
            TaskKind.SAVE_CONVERSATION: self._save_conversation,
            TaskKind.GENERATE_TITLE: self._generate_title,
        }

    def _default_uploader(self, on_upload: UploadCallback) -> AttachmentUploadQueue:
        return AttachmentUploadQueue(
            on_upload,
            max_retries=self.config.upload_max_retries,
            base_retry_delay=self.config.upload_base_retry_delay,
            max_retry_delay=self.config.upload_max_retry_delay,
            retry_jitter=self.config.upload_retry_jitter,
        )

    async def perform(self, task: Task, cancel_event: asyncio.Event | None = None) -> None:
        """
        Run the handler for the task's kind.

        Args:
            task: The task to perform.
            cancel_event: Set by the queue when the task is cancelled.
                Handlers check it before writing results into state.

        Raises:
            ValueError: If no handler exists for the task's kind.
        """
        handler = self._handlers.get(task.kind)
        if handler is None:
            raise ValueError(f"No handler for task kind: {task.kind}")
        await handler(task, cancel_event or asyncio.Event())

    def _require_api(self) -> ChatApi:
        if self.api is None:
            raise ApiUnavailableError()
        return self.api

    def _require_sender(self) -> MessageSender:
        if self.sender is None:
            raise ApiUnavailableError("Message pipeline not available")
        return self.sender

    # --- Messages ---

    async def _send_text(self, task: SendTextMessage, cancelled: asyncio.Event) -> None:
        if not self.state.reviewer_mode:
            self._require_api()

        await self._activate_conversation(task.conversation_id)
        await self._require_sender().send_message(
            task.conversation_id,
            task.text,
            list(task.attachments) or None,
            list(task.tool_ids) or None,
        )

    async def _activate_conversation(self, conversation_id: str | None) -> None:
        """Make the target conversation active if it is not already."""
        if not conversation_id or self.api is None:
            return
        active = self.state.active_conversation
        if active is not None and active.id == conversation_id:
            return
        try:
            conversation = await self.api.get_conversation(conversation_id)
        except Exception as e:
            # Sending without it starts a new conversation
            logger.debug("Could not load conversation %s: %s", conversation_id, e)
            return
        self.state.set_active_conversation(conversation)

    async def _execute_tool_call(self, task: ExecuteToolCall, cancelled: asyncio.Event) -> None:
        api = self._require_api()

        tool_id = None
        wanted = task.tool_name.lower()
        for tool in await api.get_available_tools():
            name = str(tool.get("name", "")).lower()
            ident = str(tool.get("id", "")).lower()
            if wanted in (name, ident):
                tool_id = str(tool.get("id"))
                break
        if tool_id is None:
            logger.debug("Tool %r not in catalog, sending unconstrained", task.tool_name)

        await self._activate_conversation(task.conversation_id)
        await self._require_sender().send_message(
            task.conversation_id,
            tool_prompt(task.tool_name, task.arguments),
            None,
            [tool_id] if tool_id else None,
        )

    # --- Attachments ---

    async def _upload_media(self, task: UploadMedia, cancelled: asyncio.Event) -> None:
        api = self._require_api()
        uploader = self._uploader_factory(api.upload_file)
        events = uploader.subscribe()
        processing: asyncio.Task | None = None
        try:
            item_id = await uploader.enqueue(
                file_path=task.file_path,
                file_name=task.file_name,
                file_size=task.file_size or 0,
                mime_type=task.mime_type,
                checksum=task.checksum,
            )
            processing = asyncio.create_task(uploader.process_queue())
            try:
                item = await asyncio.wait_for(
                    self._watch_upload(task, item_id, events, cancelled),
                    timeout=self.config.upload_timeout,
                )
            except asyncio.TimeoutError:
                if self.config.fail_on_upload_timeout:
                    raise UploadTimeoutError(task.file_name, self.config.upload_timeout) from None
                logger.warning(
                    "Upload of %s still unfinished after %.0fs, no longer waiting",
                    task.file_name,
                    self.config.upload_timeout,
                )
                return
        finally:
            if processing is not None and not processing.done():
                processing.cancel()
            await uploader.close()

        if item.status == QueuedAttachmentStatus.FAILED:
            raise UploadFailedError(task.file_name, item.last_error)
        if item.status == QueuedAttachmentStatus.CANCELLED:
            logger.info("Upload of %s was cancelled", task.file_name)

    async def _watch_upload(
        self,
        task: UploadMedia,
        item_id: str,
        events: asyncio.Queue[list[QueuedAttachment]],
        cancelled: asyncio.Event,
    ) -> QueuedAttachment:
        """Mirror the item's progress into state until it is terminal."""
        while True:
            snapshot = await events.get()
            item = next((i for i in snapshot if i.id == item_id), None)
            if item is None:
                continue
            if not cancelled.is_set():
                self._set_attachment(
                    task.file_path,
                    task.file_name,
                    status=_UPLOAD_STATUS[item.status],
                    file_size=task.file_size,
                    file_id=item.file_id,
                    error=item.last_error,
                )
            if item.status.is_terminal:
                return item

    async def _image_to_data_url(self, task: ImageToDataUrl, cancelled: asyncio.Event) -> None:
        self._set_attachment(task.file_path, task.file_name, status=FileUploadStatus.UPLOADING)
        try:
            data = await asyncio.to_thread(Path(task.file_path).read_bytes)
        except Exception as e:
            self._set_attachment(
                task.file_path, task.file_name, status=FileUploadStatus.FAILED, error=str(e)
            )
            raise

        encoded = base64.b64encode(data).decode("ascii")
        data_url = f"data:{image_mime_type(task.file_name)};base64,{encoded}"
        if cancelled.is_set():
            return
        self._set_attachment(
            task.file_path,
            task.file_name,
            status=FileUploadStatus.COMPLETED,
            file_id=data_url,
        )

    def _set_attachment(
        self,
        file_path: str,
        file_name: str,
        *,
        status: FileUploadStatus,
        file_size: int | None = None,
        file_id: str | None = None,
        error: str | None = None,
    ) -> None:
        """Upsert the attachment entry for a file path."""
        existing = self.state.attachments.get(file_path)
        if status == FileUploadStatus.COMPLETED:
            progress = 1.0
        elif status == FileUploadStatus.UPLOADING:
            progress = max(existing.progress if existing else 0.0, 0.5)
        else:
            progress = existing.progress if existing else 0.0

        self.state.attachments.update(
            file_path,
            FileUploadState(
                file_path=file_path,
                file_name=file_name,
                file_size=file_size or (existing.file_size if existing else 0),
                progress=progress,
                status=status,
                file_id=file_id or (existing.file_id if existing else None),
                error=error,
            ),
        )

    # --- Images ---

    async def _generate_image(self, task: GenerateImage, cancelled: asyncio.Event) -> None:
        if self.config.image_generation_mode == "direct":
            await self._generate_image_direct(task, cancelled)
            return

        sender = self._require_sender()
        await self._activate_conversation(task.conversation_id)
        # Per-send flag; the shared toggle belongs to the user
        await sender.send_message(
            task.conversation_id, task.prompt, None, None, image_generation=True
        )

    async def _generate_image_direct(self, task: GenerateImage, cancelled: asyncio.Event) -> None:
        api = self._require_api()
        await self._activate_conversation(task.conversation_id)

        self.state.add_message(
            ChatMessage.create(
                "assistant", "", model=self.state.selected_model, is_streaming=True
            )
        )
        try:
            response = await api.generate_image(task.prompt, self.state.selected_model)
        except Exception:
            self.state.finish_streaming()
            raise

        files = extract_generated_files(response)
        if cancelled.is_set():
            self.state.finish_streaming()
            return
        if not files:
            logger.info("Image generation returned no images for task %s", task.id)
            self.state.finish_streaming()
            return

        self.state.update_last_message(
            lambda m: replace(m, files=(m.files or []) + files, is_streaming=False)
        )

        conversation = self.state.active_conversation
        if conversation is None:
            return
        try:
            await api.update_conversation_with_messages(
                conversation.id,
                list(self.state.messages),
                model=self.state.selected_model,
            )
            self.state.invalidate_conversations()
        except Exception as e:
            logger.debug("Could not push generated images for %s: %s", conversation.id, e)

        try:
            await self._generate_title(
                GenerateTitle(id=f"{task.id}-title", conversation_id=conversation.id),
                cancelled,
            )
        except Exception as e:
            logger.debug("Auto-title after image generation failed: %s", e)

    # --- Conversation state ---

    async def _save_conversation(self, task: SaveConversation, cancelled: asyncio.Event) -> None:
        if not self.config.push_conversation_state:
            logger.debug("Conversation push disabled, skipping task %s", task.id)
            return
        api = self._require_api()

        conversation = self.state.active_conversation
        messages = list(self.state.messages)
        if conversation is None or not messages:
            return
        if messages[-1].is_empty_placeholder:
            logger.debug("Last message is an empty placeholder, not saving %s", conversation.id)
            return

        await api.update_conversation_with_messages(
            conversation.id,
            messages,
            title=conversation.title,
            model=self.state.selected_model,
        )
        if cancelled.is_set():
            return
        try:
            refreshed = await api.get_conversation(conversation.id)
            if self.state.active_conversation is not None and (
                self.state.active_conversation.id == refreshed.id
            ):
                self.state.update_active_conversation(
                    title=refreshed.title, updated_at=refreshed.updated_at
                )
            self.state.invalidate_conversations()
        except Exception as e:
            logger.debug("Could not refresh conversation %s: %s", conversation.id, e)

    async def _generate_title(self, task: GenerateTitle, cancelled: asyncio.Event) -> None:
        api = self._require_api()
        model = self.state.selected_model
        if not model:
            raise NoModelSelectedError()

        conversation_id = task.conversation_id
        formatted = [
            {
                "id": m.id,
                "role": m.role,
                "content": m.content,
                "timestamp": int(m.timestamp),
            }
            for m in self.state.messages
        ]
        title = await api.generate_title(conversation_id, formatted, model)

        active = self.state.active_conversation
        if cancelled.is_set() or active is None or active.id != conversation_id:
            return
        title = (title or "").strip()
        if not title or title == self.config.default_title:
            return

        limit = self.config.title_max_length
        if len(title) > limit:
            title = title[:limit] + "..."
        self.state.update_active_conversation(title=title)
        logger.info("Titled conversation %s: %s", conversation_id, title)

        try:
            await api.update_conversation_with_messages(
                conversation_id,
                list(self.state.messages),
                title=title,
                model=model,
            )
        except Exception as e:
            logger.debug("Could not push title for %s: %s", conversation_id, e)
        self.state.invalidate_conversations()
