"""Attachment upload sub-queue.

A small retrying pipeline that uploads local files through an injected
callback and broadcasts a snapshot of its items on every change. The
UploadMedia handler runs one of these per task and listens for its item
to reach a terminal state.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
import uuid
from dataclasses import asdict, dataclass, fields, replace
from enum import Enum
from typing import Any, Awaitable, Callable

from outbox.store import KeyValueStore

logger = logging.getLogger(__name__)

UploadCallback = Callable[[str, str], Awaitable[str]]


class QueuedAttachmentStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            QueuedAttachmentStatus.COMPLETED,
            QueuedAttachmentStatus.FAILED,
            QueuedAttachmentStatus.CANCELLED,
        )


@dataclass(frozen=True)
class QueuedAttachment:
    """One file waiting for (or done with) upload."""

    id: str
    file_path: str
    file_name: str
    file_size: int = 0
    mime_type: str | None = None
    checksum: str | None = None
    enqueued_at: float = 0.0
    retry_count: int = 0
    next_retry_at: float | None = None
    status: QueuedAttachmentStatus = QueuedAttachmentStatus.PENDING
    last_error: str | None = None
    file_id: str | None = None  # Server-side id once uploaded

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueuedAttachment:
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        try:
            kwargs["status"] = QueuedAttachmentStatus(data.get("status"))
        except ValueError:
            kwargs["status"] = QueuedAttachmentStatus.PENDING
        return cls(**kwargs)


class AttachmentUploadQueue:
    """
    Background uploader with exponential backoff.

    Example:
        uploads = AttachmentUploadQueue(api.upload_file)
        events = uploads.subscribe()
        item_id = await uploads.enqueue(file_path="/tmp/a.png", file_name="a.png")
        await uploads.process_queue()
        snapshot = await events.get()
    """

    def __init__(
        self,
        on_upload: UploadCallback,
        *,
        max_retries: int = 4,
        base_retry_delay: float = 5.0,
        max_retry_delay: float = 300.0,
        retry_jitter: float = 1.0,
        store: KeyValueStore | None = None,
        storage_key: str = "attachment_upload_queue",
    ) -> None:
        self._on_upload = on_upload
        self._max_retries = max_retries
        self._base_retry_delay = base_retry_delay
        self._max_retry_delay = max_retry_delay
        self._retry_jitter = retry_jitter
        self._store = store
        self._storage_key = storage_key

        self._queue: list[QueuedAttachment] = []
        self._subscribers: list[asyncio.Queue[list[QueuedAttachment]]] = []
        self._processing = False
        self._closed = False
        self._retry_handle: asyncio.TimerHandle | None = None
        self._process_tasks: set[asyncio.Task] = set()

    @property
    def items(self) -> list[QueuedAttachment]:
        return list(self._queue)

    def get(self, item_id: str) -> QueuedAttachment | None:
        for item in self._queue:
            if item.id == item_id:
                return item
        return None

    # --- Subscriptions ---

    def subscribe(self) -> asyncio.Queue[list[QueuedAttachment]]:
        """Receive a snapshot of all items after every change."""
        events: asyncio.Queue[list[QueuedAttachment]] = asyncio.Queue()
        self._subscribers.append(events)
        return events

    def unsubscribe(self, events: asyncio.Queue[list[QueuedAttachment]]) -> None:
        if events in self._subscribers:
            self._subscribers.remove(events)

    def _notify(self) -> None:
        snapshot = self.items
        for events in self._subscribers:
            events.put_nowait(snapshot)

    # --- Queue operations ---

    async def enqueue(
        self,
        *,
        file_path: str,
        file_name: str,
        file_size: int = 0,
        mime_type: str | None = None,
        checksum: str | None = None,
    ) -> str:
        item = QueuedAttachment(
            id=uuid.uuid4().hex,
            file_path=file_path,
            file_name=file_name,
            file_size=file_size,
            mime_type=mime_type,
            checksum=checksum,
            enqueued_at=time.time(),
        )
        self._queue.append(item)
        await self._save()
        self._notify()
        return item.id

    async def process_queue(self) -> None:
        """Upload every pending item whose retry time has come."""
        if self._processing or self._closed:
            return

        self._processing = True
        try:
            now = time.time()
            ready = [
                item
                for item in self._queue
                if item.status == QueuedAttachmentStatus.PENDING
                and (item.next_retry_at is None or item.next_retry_at <= now)
            ]
            for item in ready:
                await self._process_single(item)
        finally:
            self._processing = False
        self._schedule_next_retry()

    async def _process_single(self, item: QueuedAttachment) -> None:
        self._update(replace(item, status=QueuedAttachmentStatus.UPLOADING))
        self._notify()

        try:
            file_id = await self._on_upload(item.file_path, item.file_name)
        except Exception as e:
            if self._was_cancelled(item.id):
                return
            retries = item.retry_count + 1
            if retries >= self._max_retries:
                self._update(
                    replace(
                        item,
                        status=QueuedAttachmentStatus.FAILED,
                        retry_count=retries,
                        next_retry_at=None,
                        last_error=str(e),
                    )
                )
                logger.warning(
                    "Attachment %s failed after %d attempts: %s", item.id, retries, e
                )
            else:
                delay = self.retry_delay(retries)
                self._update(
                    replace(
                        item,
                        status=QueuedAttachmentStatus.PENDING,
                        retry_count=retries,
                        next_retry_at=time.time() + delay,
                        last_error=str(e),
                    )
                )
                logger.debug("Scheduled retry for attachment %s in %.1fs", item.id, delay)
        else:
            if self._was_cancelled(item.id):
                return
            self._update(
                replace(
                    item,
                    status=QueuedAttachmentStatus.COMPLETED,
                    file_id=file_id,
                    retry_count=0,
                    next_retry_at=None,
                    last_error=None,
                )
            )
            logger.debug("Attachment %s uploaded (file_id=%s)", item.id, file_id)

        await self._save()
        self._notify()

    def _was_cancelled(self, item_id: str) -> bool:
        """True if a cancel landed while the upload was in flight."""
        current = self.get(item_id)
        return current is not None and current.status == QueuedAttachmentStatus.CANCELLED

    def retry_delay(self, retry_count: int) -> float:
        """Exponential backoff capped at max_retry_delay, plus up to retry_jitter seconds."""
        exp = min(self._base_retry_delay * 2 ** (retry_count - 1), self._max_retry_delay)
        return exp + random.uniform(0.0, self._retry_jitter)

    def _schedule_next_retry(self) -> None:
        if self._closed:
            return
        due = [
            item.next_retry_at
            for item in self._queue
            if item.status == QueuedAttachmentStatus.PENDING and item.next_retry_at is not None
        ]
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        if not due:
            return
        delay = max(0.0, min(due) - time.time())
        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(delay, self._kick)

    def _kick(self) -> None:
        self._retry_handle = None
        task = asyncio.get_running_loop().create_task(self.process_queue())
        self._process_tasks.add(task)
        task.add_done_callback(self._process_tasks.discard)

    async def retry(self, item_id: str) -> bool:
        item = self.get(item_id)
        if item is None:
            return False
        self._update(
            replace(
                item,
                status=QueuedAttachmentStatus.PENDING,
                retry_count=0,
                next_retry_at=None,
                last_error=None,
            )
        )
        await self._save()
        self._notify()
        await self.process_queue()
        return True

    async def cancel(self, item_id: str) -> bool:
        item = self.get(item_id)
        if item is None or item.status.is_terminal:
            return False
        self._update(replace(item, status=QueuedAttachmentStatus.CANCELLED, next_retry_at=None))
        await self._save()
        self._notify()
        return True

    async def remove(self, item_id: str) -> None:
        self._queue = [item for item in self._queue if item.id != item_id]
        await self._save()
        self._notify()

    async def clear_failed(self) -> None:
        self._queue = [
            item for item in self._queue if item.status != QueuedAttachmentStatus.FAILED
        ]
        await self._save()
        self._notify()

    async def close(self) -> None:
        """Stop retry timers and drop subscribers."""
        self._closed = True
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        for task in list(self._process_tasks):
            task.cancel()
        self._process_tasks.clear()
        self._subscribers.clear()

    # --- Persistence ---

    async def load(self) -> None:
        if self._store is None:
            return
        raw = await self._store.get(self._storage_key)
        if not raw:
            return
        try:
            items = json.loads(raw)
            if not isinstance(items, list):
                raise TypeError(f"expected a list, got {type(items).__name__}")
            self._queue = [
                QueuedAttachment.from_dict(item) for item in items if isinstance(item, dict)
            ]
        except (ValueError, TypeError) as e:
            logger.warning("Ignoring unreadable upload queue: %s", e)

    async def _save(self) -> None:
        if self._store is None:
            return
        payload = json.dumps([item.to_dict() for item in self._queue])
        try:
            await self._store.set(self._storage_key, payload)
        except Exception:
            logger.exception("Failed to persist upload queue")

    def _update(self, updated: QueuedAttachment) -> None:
        for i, item in enumerate(self._queue):
            if item.id == updated.id:
                self._queue[i] = updated
                return
