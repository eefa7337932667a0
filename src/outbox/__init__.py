"""outbox - A persistent, per-conversation ordered task queue for chat clients."""

from outbox.client import OpenWebUIClient
from outbox.config import OutboxConfig
from outbox.errors import (
    ApiResponseError,
    ApiUnavailableError,
    NoModelSelectedError,
    OutboxError,
    UploadFailedError,
    UploadTimeoutError,
)
from outbox.models import (
    ExecuteToolCall,
    GenerateImage,
    GenerateTitle,
    ImageToDataUrl,
    SaveConversation,
    SendTextMessage,
    Task,
    TaskKind,
    TaskStatus,
    UploadMedia,
)
from outbox.pipeline import ChatPipeline
from outbox.queue import TaskQueue
from outbox.state import ChatMessage, ChatState, Conversation, FileUploadState, FileUploadStatus
from outbox.store import KeyValueStore, MemoryStore, SqliteStore
from outbox.uploads import AttachmentUploadQueue, QueuedAttachment, QueuedAttachmentStatus
from outbox.worker import TaskWorker

__version__ = "0.1.0"
__all__ = [
    "TaskQueue",
    "TaskWorker",
    "OutboxConfig",
    "Task",
    "TaskKind",
    "TaskStatus",
    "SendTextMessage",
    "UploadMedia",
    "ExecuteToolCall",
    "GenerateImage",
    "ImageToDataUrl",
    "SaveConversation",
    "GenerateTitle",
    "KeyValueStore",
    "MemoryStore",
    "SqliteStore",
    "ChatState",
    "ChatMessage",
    "Conversation",
    "FileUploadState",
    "FileUploadStatus",
    "AttachmentUploadQueue",
    "QueuedAttachment",
    "QueuedAttachmentStatus",
    "OpenWebUIClient",
    "ChatPipeline",
    "OutboxError",
    "ApiUnavailableError",
    "NoModelSelectedError",
    "UploadFailedError",
    "UploadTimeoutError",
    "ApiResponseError",
]
