"""Persistent outbound task queue."""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import replace
from typing import Any, Callable

from outbox.config import OutboxConfig
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
    restore_tasks,
    thread_key_for,
)
from outbox.store import KeyValueStore
from outbox.worker import TaskWorker

logger = logging.getLogger(__name__)


class TaskQueue:
    """
    Durable queue of outbound chat actions.

    Tasks run at most ``max_parallel`` at a time and never more than one
    per conversation, so actions in one conversation happen in the order
    they were enqueued. Every mutation is written to the store; queued and
    interrupted work resumes the next time a queue starts on that store.

    Example:
        queue = TaskQueue(SqliteStore("outbox.db"), worker)

        @queue.on_failure
        def on_failure(task, error):
            print(f"{task.kind.value} failed: {error}")

        await queue.start()
        task_id = await queue.enqueue_send_text("conv-1", "hello")
        ...
        await queue.stop()
    """

    def __init__(
        self,
        store: KeyValueStore,
        worker: TaskWorker,
        *,
        config: OutboxConfig | None = None,
    ) -> None:
        self.store = store
        self.worker = worker
        self.config = config or OutboxConfig()

        # Callbacks
        self._on_start_callback: Callable | None = None
        self._on_complete_callback: Callable | None = None
        self._on_failure_callback: Callable | None = None
        self._on_change_callback: Callable | None = None

        # All known tasks in enqueue order, terminal ones included
        self._tasks: list[Task] = []

        # Scheduler state
        self._active_threads: set[str] = set()
        self._workers: dict[str, asyncio.Task] = {}  # thread key -> worker
        self._cancel_events: dict[str, asyncio.Event] = {}  # task id -> event
        self._processing = False
        self._running = False
        self._started = False
        self._start_lock = asyncio.Lock()

    # --- Event Callbacks ---

    def on_start(self, func):
        """
        Decorator for when a task is handed to the worker.

        Example:
            @queue.on_start
            def on_start(task):
                print(f"Running {task.kind.value}")
        """
        self._on_start_callback = func
        return func

    def on_complete(self, func):
        """
        Decorator for when a task succeeds.

        Example:
            @queue.on_complete
            def on_complete(task, duration):
                print(f"{task.id} done in {duration:.2f}s")
        """
        self._on_complete_callback = func
        return func

    def on_failure(self, func):
        """
        Decorator for when a task fails.

        Example:
            @queue.on_failure
            def on_failure(task, error):
                print(f"{task.id} failed: {error}")
        """
        self._on_failure_callback = func
        return func

    def on_change(self, func):
        """
        Decorator for any change to the task list.

        Receives a snapshot of all tasks. Suited to driving a task list UI.
        """
        self._on_change_callback = func
        return func

    def _emit(self, callback: Callable | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            # Don't let callback errors affect flow
            logger.debug("Queue callback %r failed", callback, exc_info=True)

    # --- Lifecycle ---

    async def start(self) -> None:
        """
        Load the persisted snapshot and begin scheduling.

        Safe to call more than once. Enqueue operations call it implicitly.
        """
        async with self._start_lock:
            if self._started:
                self._running = True
                await self._process()
                return
            self._started = True
            self._running = True
            await self._load()
        await self._process()

    async def stop(self, timeout: float | None = None) -> None:
        """
        Stop admitting tasks.

        Args:
            timeout: Max seconds to wait for running tasks. None = wait forever.

        Tasks still running after the timeout are cancelled and go back to
        ``queued``, so the next start runs them again.
        """
        self._running = False

        if self._workers:
            handles = list(self._workers.values())
            if timeout is not None:
                done, pending = await asyncio.wait(handles, timeout=timeout)
                for handle in pending:
                    handle.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
            else:
                await asyncio.gather(*handles, return_exceptions=True)

        self._workers.clear()
        await self._requeue_interrupted()

    async def _requeue_interrupted(self) -> None:
        interrupted = [t for t in self._tasks if t.status == TaskStatus.RUNNING]
        if not interrupted:
            return
        for task in interrupted:
            self._replace(replace(task, status=TaskStatus.QUEUED, started_at=None))
        logger.info("Returned %d interrupted task(s) to the queue", len(interrupted))
        await self._save()
        self._notify()

    async def _load(self) -> None:
        try:
            raw = await self.store.get(self.config.storage_key)
        except Exception:
            logger.exception("Failed to read task queue snapshot")
            return
        if not raw:
            return
        try:
            items = json.loads(raw)
        except ValueError as e:
            logger.warning("Ignoring unreadable task queue snapshot: %s", e)
            return
        if not isinstance(items, list):
            logger.warning("Ignoring task queue snapshot of type %s", type(items).__name__)
            return

        restored = restore_tasks(items)
        self._tasks = restored + self._tasks
        if restored:
            logger.info("Restored %d task(s) from snapshot", len(restored))
            await self._save()
            self._notify()

    async def _save(self) -> None:
        payload = json.dumps([t.to_dict() for t in self._tasks])
        try:
            await self.store.set(self.config.storage_key, payload)
        except Exception:
            logger.exception("Failed to persist task queue")

    def _notify(self) -> None:
        self._emit(self._on_change_callback, self.tasks)

    # --- Enqueue Operations ---

    async def enqueue_send_text(
        self,
        conversation_id: str | None,
        text: str,
        *,
        attachments: list[str] | None = None,
        tool_ids: list[str] | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        """
        Queue a chat message.

        Args:
            conversation_id: Target conversation, or None for a new one.
            text: Message text.
            attachments: Server file ids (or data URLs) to attach.
            tool_ids: Tools the model may use for this message.
            idempotency_key: Caller token passed through for de-duplication.

        Returns:
            Task ID.
        """
        return await self._add(
            SendTextMessage(
                id=self._new_id(),
                conversation_id=conversation_id,
                idempotency_key=idempotency_key,
                enqueued_at=time.time(),
                text=text,
                attachments=tuple(attachments or ()),
                tool_ids=tuple(tool_ids or ()),
            )
        )

    async def enqueue_upload_media(
        self,
        conversation_id: str | None,
        file_path: str,
        file_name: str,
        *,
        file_size: int | None = None,
        mime_type: str | None = None,
        checksum: str | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        """Queue an attachment upload. Returns the task ID."""
        return await self._add(
            UploadMedia(
                id=self._new_id(),
                conversation_id=conversation_id,
                idempotency_key=idempotency_key,
                enqueued_at=time.time(),
                file_path=file_path,
                file_name=file_name,
                file_size=file_size,
                mime_type=mime_type,
                checksum=checksum,
            )
        )

    async def enqueue_execute_tool_call(
        self,
        conversation_id: str | None,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        *,
        idempotency_key: str | None = None,
    ) -> str:
        """Queue a request for the model to run a tool. Returns the task ID."""
        return await self._add(
            ExecuteToolCall(
                id=self._new_id(),
                conversation_id=conversation_id,
                idempotency_key=idempotency_key,
                enqueued_at=time.time(),
                tool_name=tool_name,
                arguments=dict(arguments or {}),
            )
        )

    async def enqueue_generate_image(
        self,
        conversation_id: str | None,
        prompt: str,
        *,
        idempotency_key: str | None = None,
    ) -> str:
        return await self._add(
            GenerateImage(
                id=self._new_id(),
                conversation_id=conversation_id,
                idempotency_key=idempotency_key,
                enqueued_at=time.time(),
                prompt=prompt,
            )
        )

    async def enqueue_generate_title(
        self,
        conversation_id: str,
        *,
        idempotency_key: str | None = None,
    ) -> str:
        """
        Queue title generation for a conversation.

        Raises:
            ValueError: If conversation_id is empty.
        """
        return await self._add(
            GenerateTitle(
                id=self._new_id(),
                conversation_id=conversation_id,
                idempotency_key=idempotency_key,
                enqueued_at=time.time(),
            )
        )

    async def enqueue_image_to_data_url(
        self,
        conversation_id: str | None,
        file_path: str,
        file_name: str,
        *,
        idempotency_key: str | None = None,
    ) -> str:
        return await self._add(
            ImageToDataUrl(
                id=self._new_id(),
                conversation_id=conversation_id,
                idempotency_key=idempotency_key,
                enqueued_at=time.time(),
                file_path=file_path,
                file_name=file_name,
            )
        )

    async def enqueue_save_conversation(
        self,
        conversation_id: str | None,
        *,
        idempotency_key: str | None = None,
    ) -> str:
        return await self._add(
            SaveConversation(
                id=self._new_id(),
                conversation_id=conversation_id,
                idempotency_key=idempotency_key,
                enqueued_at=time.time(),
            )
        )

    def _new_id(self) -> str:
        return str(uuid.uuid4())

    async def _add(self, task: Task) -> str:
        if not self._started:
            await self.start()
        self._tasks.append(task)
        logger.debug("Enqueued %s %s (thread %s)", task.kind.value, task.id, task.thread_key)
        await self._save()
        self._notify()
        await self._process()
        return task.id

    # --- Scheduling ---

    async def _process(self) -> None:
        """Admit queued tasks while capacity remains."""
        if self._processing or not self._running:
            return

        self._processing = True
        try:
            while self._running and len(self._active_threads) < self.config.max_parallel:
                task = self._next_admissible()
                if task is None:
                    break
                await self._admit(task)
        finally:
            self._processing = False

    def _next_admissible(self) -> Task | None:
        for task in self._tasks:
            if task.status == TaskStatus.QUEUED and task.thread_key not in self._active_threads:
                return task
        return None

    async def _admit(self, task: Task) -> None:
        thread_key = task.thread_key
        running = replace(task, status=TaskStatus.RUNNING, started_at=time.time())
        self._replace(running)
        self._active_threads.add(thread_key)
        self._cancel_events[task.id] = asyncio.Event()
        self._workers[thread_key] = asyncio.create_task(
            self._run_and_release(running, thread_key)
        )
        logger.info("Admitted %s %s on thread %s", task.kind.value, task.id, thread_key)
        await self._save()
        self._notify()

    async def _run_and_release(self, task: Task, thread_key: str) -> None:
        """Run one task on the worker, record the outcome, free its thread."""
        cancel_event = self._cancel_events[task.id]
        try:
            if cancel_event.is_set():
                logger.debug("Task %s cancelled before start", task.id)
            else:
                await self._execute(task, cancel_event)
        finally:
            self._active_threads.discard(thread_key)
            self._cancel_events.pop(task.id, None)
            if self._workers.get(thread_key) is asyncio.current_task():
                del self._workers[thread_key]

        if self._running:
            await self._process()

    async def _execute(self, task: Task, cancel_event: asyncio.Event) -> None:
        self._emit(self._on_start_callback, task)
        start_time = time.time()
        try:
            await self.worker.perform(task, cancel_event)
        except Exception as e:
            logger.warning("Task %s (%s) failed: %s", task.id, task.kind.value, e)
            finished = await self._finish(task.id, TaskStatus.FAILED, error=str(e))
            if finished is not None:
                self._emit(self._on_failure_callback, finished, e)
        else:
            duration = time.time() - start_time
            finished = await self._finish(task.id, TaskStatus.SUCCEEDED)
            if finished is not None:
                logger.info("Task %s (%s) succeeded in %.2fs", task.id, task.kind.value, duration)
                self._emit(self._on_complete_callback, finished, duration)

    async def _finish(
        self, task_id: str, status: TaskStatus, *, error: str | None = None
    ) -> Task | None:
        """Record a worker outcome unless the task was cancelled meanwhile."""
        current = self._find(task_id)
        if current is None or current.status != TaskStatus.RUNNING:
            logger.debug("Discarding %s result for task %s", status.value, task_id)
            return None
        finished = replace(current, status=status, completed_at=time.time(), error=error)
        self._replace(finished)
        await self._save()
        self._notify()
        return finished

    # --- Control Operations ---

    async def cancel(self, task_id: str) -> bool:
        """
        Cancel a queued or running task.

        A running task's worker is not interrupted; it is told through its
        cancel event and whatever it produces afterwards is discarded.

        Returns:
            True if the task was cancelled, False if unknown or already terminal.
        """
        task = self._find(task_id)
        if task is None or task.status.is_terminal:
            return False
        self._mark_cancelled(task)
        await self._save()
        self._notify()
        return True

    async def cancel_by_conversation(self, conversation_id: str | None) -> int:
        """
        Cancel every queued or running task of a conversation.

        Returns:
            Number of tasks cancelled.
        """
        thread_key = thread_key_for(conversation_id)
        targets = [
            t for t in self._tasks if t.thread_key == thread_key and not t.status.is_terminal
        ]
        for task in targets:
            self._mark_cancelled(task)
        if targets:
            await self._save()
            self._notify()
        return len(targets)

    def _mark_cancelled(self, task: Task) -> None:
        self._replace(replace(task, status=TaskStatus.CANCELLED, completed_at=time.time()))
        event = self._cancel_events.get(task.id)
        if event is not None:
            event.set()
        logger.info("Cancelled %s %s", task.kind.value, task.id)

    async def retry(self, task_id: str) -> bool:
        """
        Requeue a failed task.

        Returns:
            True if the task was requeued, False if unknown or not failed.
        """
        task = self._find(task_id)
        if task is None or task.status != TaskStatus.FAILED:
            return False
        self._replace(
            replace(
                task,
                status=TaskStatus.QUEUED,
                attempt=task.attempt + 1,
                error=None,
                started_at=None,
                completed_at=None,
            )
        )
        await self._save()
        self._notify()
        await self._process()
        return True

    # --- Queries ---

    @property
    def tasks(self) -> list[Task]:
        """All known tasks in enqueue order."""
        return list(self._tasks)

    @property
    def active_threads(self) -> frozenset[str]:
        return frozenset(self._active_threads)

    def get(self, task_id: str) -> Task | None:
        return self._find(task_id)

    def list(
        self,
        *,
        status: TaskStatus | None = None,
        kind: TaskKind | None = None,
        limit: int = 100,
    ) -> list[Task]:
        """
        List tasks with optional filters.

        Args:
            status: Filter by task status.
            kind: Filter by task kind.
            limit: Maximum number of results.
        """
        result = []
        for task in self._tasks:
            if status is not None and task.status != status:
                continue
            if kind is not None and task.kind != kind:
                continue
            result.append(task)
            if len(result) >= limit:
                break
        return result

    def debug_blocked(self) -> list[dict[str, Any]]:
        """
        Explain why queued tasks are not running.

        Returns a list of dicts with:
        - task: The Task
        - reason: 'thread_busy' or 'at_capacity'
        - details: Additional context

        Example:
            for item in queue.debug_blocked():
                print(f"{item['task'].kind.value}: {item['reason']} - {item['details']}")
        """
        blocked = []
        for task in self._tasks:
            if task.status != TaskStatus.QUEUED:
                continue
            if task.thread_key in self._active_threads:
                reason = "thread_busy"
                details = f"Thread '{task.thread_key}' already has a running task"
            else:
                reason = "at_capacity"
                details = (
                    f"{len(self._active_threads)}/{self.config.max_parallel} threads active"
                )
            blocked.append({"task": task, "reason": reason, "details": details})
        return blocked

    def _find(self, task_id: str) -> Task | None:
        for task in self._tasks:
            if task.id == task_id:
                return task
        return None

    def _replace(self, updated: Task) -> None:
        for i, task in enumerate(self._tasks):
            if task.id == updated.id:
                self._tasks[i] = updated
                return
