"""Tests for control operations: cancel, cancel_by_conversation, retry."""

import asyncio
import json

from outbox import TaskStatus

from .fakes import wait_until


class TestCancel:
    """Tests for cancelling single tasks."""

    async def test_cancel_queued_task_never_runs(self, queue, scripted):
        first = await queue.enqueue_send_text("c1", "one")
        second = await queue.enqueue_send_text("c1", "two")

        assert await queue.cancel(second) is True
        task = queue.get(second)
        assert task.status == TaskStatus.CANCELLED
        assert task.completed_at is not None

        scripted.release(first)
        await wait_until(lambda: queue.get(first).status == TaskStatus.SUCCEEDED)
        await asyncio.sleep(0.02)
        assert second not in scripted.started

    async def test_cancel_before_worker_starts(self, queue, scripted):
        """An admitted task cancelled before its worker runs is skipped."""
        task_id = await queue.enqueue_send_text("c1", "hi")
        assert queue.get(task_id).status == TaskStatus.RUNNING

        assert await queue.cancel(task_id) is True
        follow_up = await queue.enqueue_send_text("c1", "next")

        await wait_until(lambda: follow_up in scripted.started)
        assert task_id not in scripted.started
        assert queue.get(task_id).status == TaskStatus.CANCELLED

    async def test_cancel_running_signals_and_discards_result(self, queue, scripted):
        completed = []
        queue.on_complete(lambda task, duration: completed.append(task.id))

        task_id = await queue.enqueue_send_text("c1", "hi")
        follow_up = await queue.enqueue_send_text("c1", "next")
        await wait_until(lambda: scripted.started == [task_id])

        assert await queue.cancel(task_id) is True
        assert scripted.cancel_events[task_id].is_set()

        # The worker finishes anyway; its outcome must not overwrite the cancel
        scripted.release(task_id)
        await wait_until(lambda: follow_up in scripted.started)
        assert queue.get(task_id).status == TaskStatus.CANCELLED
        assert task_id not in completed

    async def test_cancel_running_discards_failure(self, queue, scripted):
        failures = []
        queue.on_failure(lambda task, error: failures.append(task.id))

        task_id = await queue.enqueue_send_text("c1", "hi")
        await wait_until(lambda: scripted.started == [task_id])
        await queue.cancel(task_id)

        scripted.fail(task_id, RuntimeError("late"))
        scripted.release(task_id)
        await wait_until(lambda: task_id in scripted.finished)
        await asyncio.sleep(0.01)

        task = queue.get(task_id)
        assert task.status == TaskStatus.CANCELLED
        assert task.error is None
        assert failures == []

    async def test_cancel_terminal_is_noop(self, queue, scripted):
        ok = await queue.enqueue_send_text("c1", "ok")
        bad = await queue.enqueue_send_text("c2", "bad")
        scripted.fail(bad, RuntimeError("boom"))
        scripted.release_all()
        await wait_until(lambda: queue.get(ok).status == TaskStatus.SUCCEEDED)
        await wait_until(lambda: queue.get(bad).status == TaskStatus.FAILED)
        before = {t.id: t for t in queue.tasks}

        assert await queue.cancel(ok) is False
        assert await queue.cancel(bad) is False
        assert queue.get(ok) == before[ok]
        assert queue.get(bad) == before[bad]

    async def test_cancel_twice(self, queue):
        await queue.enqueue_send_text("c1", "one")
        second = await queue.enqueue_send_text("c1", "two")

        assert await queue.cancel(second) is True
        cancelled = queue.get(second)
        assert await queue.cancel(second) is False
        assert queue.get(second) == cancelled

    async def test_cancel_unknown(self, queue):
        assert await queue.cancel("missing") is False

    async def test_cancel_is_persisted(self, queue, store, config):
        await queue.enqueue_send_text("c1", "one")
        second = await queue.enqueue_send_text("c1", "two")
        await queue.cancel(second)

        saved = json.loads(await store.get(config.storage_key))
        assert {item["id"]: item["status"] for item in saved}[second] == "cancelled"


class TestCancelByConversation:
    """Tests for bulk cancellation."""

    async def test_cancels_running_and_queued_of_one_conversation(self, queue, scripted):
        c1 = [await queue.enqueue_send_text("c1", f"m{i}") for i in range(3)]
        other = await queue.enqueue_send_text("c2", "keep")
        await wait_until(lambda: c1[0] in scripted.started)

        assert await queue.cancel_by_conversation("c1") == 3
        assert all(queue.get(i).status == TaskStatus.CANCELLED for i in c1)
        assert queue.get(other).status == TaskStatus.RUNNING

    async def test_skips_terminal_tasks(self, queue, scripted):
        done = await queue.enqueue_send_text("c1", "done")
        scripted.release(done)
        await wait_until(lambda: queue.get(done).status == TaskStatus.SUCCEEDED)
        pending = await queue.enqueue_send_text("c1", "pending")

        assert await queue.cancel_by_conversation("c1") == 1
        assert queue.get(done).status == TaskStatus.SUCCEEDED
        assert queue.get(pending).status == TaskStatus.CANCELLED

    async def test_missing_conversation_targets_new_thread(self, queue):
        fresh = await queue.enqueue_send_text(None, "new chat")
        await queue.enqueue_send_text("c1", "existing")

        assert await queue.cancel_by_conversation(None) == 1
        assert queue.get(fresh).status == TaskStatus.CANCELLED

    async def test_nothing_to_cancel(self, queue):
        assert await queue.cancel_by_conversation("ghost") == 0


class TestRetry:
    """Tests for retrying failed tasks."""

    async def test_retry_resets_failed_task(self, queue, scripted):
        failing = await queue.enqueue_send_text("c1", "flaky")
        blocker = await queue.enqueue_send_text("c1", "blocker")
        scripted.fail(failing, RuntimeError("boom"))
        scripted.release(failing)
        await wait_until(lambda: blocker in scripted.started)

        assert await queue.retry(failing) is True
        task = queue.get(failing)
        assert task.status == TaskStatus.QUEUED
        assert task.attempt == 1
        assert task.error is None
        assert task.started_at is None
        assert task.completed_at is None

        # Eligible again once its thread frees up
        del scripted.errors[failing]
        scripted.release(blocker)
        await wait_until(lambda: queue.get(failing).status == TaskStatus.SUCCEEDED)
        assert scripted.started.count(failing) == 2

    async def test_retry_increments_each_time(self, queue, scripted):
        task_id = await queue.enqueue_send_text("c1", "flaky")
        scripted.fail(task_id, RuntimeError("boom"))
        scripted.release_all()

        for attempt in (1, 2):
            await wait_until(lambda: queue.get(task_id).status == TaskStatus.FAILED)
            assert await queue.retry(task_id) is True
            assert queue.get(task_id).attempt == attempt

    async def test_retry_only_failed(self, queue, scripted):
        running_id = await queue.enqueue_send_text("c1", "running")
        queued_id = await queue.enqueue_send_text("c1", "queued")

        assert await queue.retry(running_id) is False
        assert await queue.retry(queued_id) is False
        assert await queue.retry("missing") is False

        await queue.cancel(queued_id)
        assert await queue.retry(queued_id) is False
