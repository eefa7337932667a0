"""Core data models for outbox."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any, ClassVar

logger = logging.getLogger(__name__)

# Thread key shared by tasks that have no conversation yet
NEW_THREAD_KEY = "new"


class TaskStatus(str, Enum):
    """Possible states for a task."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.CANCELLED)

    @classmethod
    def parse(cls, raw: str | None) -> TaskStatus:
        """A missing status reads as queued; an unrecognised one is an error."""
        if not raw:
            return cls.QUEUED
        try:
            return cls(raw)
        except ValueError:
            raise ValueError(f"Unknown task status: {raw!r}") from None


class TaskKind(str, Enum):
    """The closed set of outbound task variants."""

    SEND_TEXT_MESSAGE = "send_text_message"
    UPLOAD_MEDIA = "upload_media"
    EXECUTE_TOOL_CALL = "execute_tool_call"
    GENERATE_IMAGE = "generate_image"
    IMAGE_TO_DATA_URL = "image_to_data_url"
    SAVE_CONVERSATION = "save_conversation"
    GENERATE_TITLE = "generate_title"


def thread_key_for(conversation_id: str | None) -> str:
    """Affinity group used to serialize tasks of one conversation."""
    return conversation_id if conversation_id else NEW_THREAD_KEY


@dataclass(frozen=True, kw_only=True)
class Task:
    """A durable unit of deferred work.

    Payload fields live on the subclasses and never change. The queue
    moves a task through its lifecycle by swapping in copies made with
    ``dataclasses.replace``.
    """

    kind: ClassVar[TaskKind]

    id: str
    conversation_id: str | None = None
    status: TaskStatus = TaskStatus.QUEUED
    attempt: int = 0
    idempotency_key: str | None = None
    enqueued_at: float | None = None
    started_at: float | None = None
    completed_at: float | None = None
    error: str | None = None

    @property
    def thread_key(self) -> str:
        return thread_key_for(self.conversation_id)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["status"] = self.status.value
        return data


@dataclass(frozen=True, kw_only=True)
class SendTextMessage(Task):
    kind: ClassVar[TaskKind] = TaskKind.SEND_TEXT_MESSAGE

    text: str
    attachments: tuple[str, ...] = ()
    tool_ids: tuple[str, ...] = ()


@dataclass(frozen=True, kw_only=True)
class UploadMedia(Task):
    kind: ClassVar[TaskKind] = TaskKind.UPLOAD_MEDIA

    file_path: str
    file_name: str
    file_size: int | None = None
    mime_type: str | None = None
    checksum: str | None = None


@dataclass(frozen=True, kw_only=True)
class ExecuteToolCall(Task):
    kind: ClassVar[TaskKind] = TaskKind.EXECUTE_TOOL_CALL

    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, kw_only=True)
class GenerateImage(Task):
    kind: ClassVar[TaskKind] = TaskKind.GENERATE_IMAGE

    prompt: str


@dataclass(frozen=True, kw_only=True)
class ImageToDataUrl(Task):
    kind: ClassVar[TaskKind] = TaskKind.IMAGE_TO_DATA_URL

    file_path: str
    file_name: str


@dataclass(frozen=True, kw_only=True)
class SaveConversation(Task):
    kind: ClassVar[TaskKind] = TaskKind.SAVE_CONVERSATION


@dataclass(frozen=True, kw_only=True)
class GenerateTitle(Task):
    kind: ClassVar[TaskKind] = TaskKind.GENERATE_TITLE

    def __post_init__(self) -> None:
        if not self.conversation_id:
            raise ValueError("GenerateTitle requires a conversation_id")


TASK_TYPES: dict[TaskKind, type[Task]] = {
    cls.kind: cls
    for cls in (
        SendTextMessage,
        UploadMedia,
        ExecuteToolCall,
        GenerateImage,
        ImageToDataUrl,
        SaveConversation,
        GenerateTitle,
    )
}

_TUPLE_FIELDS = {"attachments", "tool_ids"}


def task_from_dict(data: dict[str, Any]) -> Task:
    """
    Rebuild a task from its serialized form.

    Unknown keys are ignored and missing optional keys fall back to their
    defaults, so snapshots written by other versions still load.

    Raises:
        ValueError: If the kind tag is missing or unknown.
        TypeError: If a required payload field is missing.
    """
    raw_kind = data.get("kind")
    try:
        cls = TASK_TYPES[TaskKind(raw_kind)]
    except ValueError:
        raise ValueError(f"Unknown task kind: {raw_kind!r}") from None

    known = {f.name for f in fields(cls)}
    kwargs = {k: v for k, v in data.items() if k in known}
    kwargs["status"] = TaskStatus.parse(data.get("status"))
    for name in _TUPLE_FIELDS & kwargs.keys():
        kwargs[name] = tuple(kwargs[name] or ())
    if "arguments" in kwargs and not isinstance(kwargs["arguments"], dict):
        kwargs["arguments"] = {}
    return cls(**kwargs)


def restore_tasks(raw: list[Any]) -> list[Task]:
    """
    Filter a loaded snapshot down to resumable work.

    Only queued and running tasks survive. Running tasks are demoted to
    queued since no execution outlives the process that started it.
    """
    restored: list[Task] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            task = task_from_dict(item)
        except (ValueError, TypeError) as e:
            logger.warning("Dropping unreadable task from snapshot: %s", e)
            continue
        if task.status not in (TaskStatus.QUEUED, TaskStatus.RUNNING):
            continue
        restored.append(
            replace(task, status=TaskStatus.QUEUED, started_at=None, completed_at=None)
        )
    return restored
