"""Snapshot persistence and restart recovery."""

import json

import pytest

from outbox import MemoryStore, SqliteStore, TaskQueue, TaskStatus

from .fakes import ScriptedWorker, wait_until


class FailingStore(MemoryStore):
    """Store whose writes always fail."""

    async def set(self, key, value):
        raise OSError("disk full")


class TestStores:
    """Tests for the key/value stores."""

    async def test_memory_store(self):
        store = MemoryStore()
        assert await store.get("k") is None

        await store.set("k", "v1")
        await store.set("k", "v2")
        assert await store.get("k") == "v2"

        await store.delete("k")
        await store.delete("k")
        assert await store.get("k") is None

    async def test_sqlite_store_roundtrip(self):
        store = SqliteStore(":memory:")
        assert await store.get("k") is None

        await store.set("b", "1")
        await store.set("a", "2")
        await store.set("b", "3")
        assert await store.get("b") == "3"
        assert await store.keys() == ["a", "b"]

        await store.delete("a")
        assert await store.keys() == ["b"]
        await store.close()

    async def test_sqlite_store_survives_reopen(self, tmp_path):
        path = str(tmp_path / "outbox.db")
        store = SqliteStore(path)
        await store.set("k", "persisted")
        await store.close()

        reopened = SqliteStore(path)
        assert await reopened.get("k") == "persisted"
        await reopened.close()

    async def test_close_is_idempotent(self):
        store = SqliteStore(":memory:")
        await store.close()
        await store.set("k", "v")
        await store.close()
        await store.close()


class TestSnapshot:
    """Tests for what the queue writes."""

    async def test_enqueue_writes_snapshot(self, queue, store, config):
        task_id = await queue.enqueue_send_text("c1", "hello", attachments=["f1"])

        saved = json.loads(await store.get(config.storage_key))
        assert len(saved) == 1
        assert saved[0]["id"] == task_id
        assert saved[0]["kind"] == "send_text_message"
        assert saved[0]["text"] == "hello"
        assert saved[0]["attachments"] == ["f1"]

    async def test_snapshot_tracks_status(self, queue, store, scripted, config):
        task_id = await queue.enqueue_send_text("c1", "hello")

        saved = json.loads(await store.get(config.storage_key))
        assert saved[0]["status"] == "running"
        assert saved[0]["started_at"] is not None

        scripted.release(task_id)
        await wait_until(lambda: queue.get(task_id).status == TaskStatus.SUCCEEDED)
        saved = json.loads(await store.get(config.storage_key))
        assert saved[0]["status"] == "succeeded"
        assert saved[0]["completed_at"] is not None

    async def test_write_failure_does_not_stop_queue(self):
        scripted = ScriptedWorker(auto_complete=True)
        q = TaskQueue(FailingStore(), scripted)

        task_id = await q.enqueue_send_text("c1", "hello")
        await wait_until(lambda: q.get(task_id).status == TaskStatus.SUCCEEDED)
        await q.stop()


class TestRestore:
    """Tests for resuming work from a snapshot."""

    async def test_interrupted_work_resumes_in_order(self, tmp_path):
        path = str(tmp_path / "outbox.db")

        store = SqliteStore(path)
        first_run = ScriptedWorker()
        q = TaskQueue(store, first_run)
        a = await q.enqueue_send_text("x", "A")
        b = await q.enqueue_send_text("x", "B")
        await wait_until(lambda: first_run.started == [a])

        # Simulate the process going away mid-task
        await q.stop(timeout=0.05)
        await store.close()

        store = SqliteStore(path)
        second_run = ScriptedWorker(auto_complete=True)
        q = TaskQueue(store, second_run)
        await q.start()

        await wait_until(lambda: second_run.started == [a, b])
        await wait_until(lambda: q.get(b).status == TaskStatus.SUCCEEDED)
        assert second_run.thread_overlaps == 0
        assert q.get(a).attempt == 0
        await q.stop()
        await store.close()

    async def test_restore_on_memory_store(self, store):
        first = TaskQueue(store, ScriptedWorker())
        task_id = await first.enqueue_generate_image("c1", "a cat")
        await first.stop(timeout=0.01)

        restored = TaskQueue(store, ScriptedWorker(auto_complete=True))
        await restored.start()

        task = restored.get(task_id)
        assert task.prompt == "a cat"
        await wait_until(lambda: restored.get(task_id).status == TaskStatus.SUCCEEDED)
        await restored.stop()

    async def test_running_tasks_are_demoted(self, store, config):
        await store.set(
            config.storage_key,
            json.dumps([
                {"kind": "save_conversation", "id": "t1", "conversation_id": "c1",
                 "status": "running", "started_at": 100.0},
            ]),
        )
        worker = ScriptedWorker()
        q = TaskQueue(store, worker)
        snapshots = []
        q.on_change(lambda tasks: snapshots.append(tasks))
        await q.start()

        # First notification is the restored list, before anything is admitted
        restored = snapshots[0][0]
        assert restored.id == "t1"
        assert restored.status == TaskStatus.QUEUED
        assert restored.started_at is None

        await wait_until(lambda: worker.started == ["t1"])
        worker.release_all()
        await q.stop()

    async def test_terminal_tasks_are_dropped(self, store, config):
        await store.set(
            config.storage_key,
            json.dumps([
                {"kind": "send_text_message", "id": "done", "text": "a", "status": "succeeded"},
                {"kind": "send_text_message", "id": "bad", "text": "b", "status": "failed"},
                {"kind": "send_text_message", "id": "gone", "text": "c", "status": "cancelled"},
                {"kind": "send_text_message", "id": "todo", "text": "d", "status": "queued"},
            ]),
        )
        worker = ScriptedWorker()
        q = TaskQueue(store, worker)
        await q.start()

        assert [t.id for t in q.tasks] == ["todo"]
        saved = json.loads(await store.get(config.storage_key))
        assert [item["id"] for item in saved] == ["todo"]
        worker.release_all()
        await q.stop()

    async def test_unreadable_entries_are_skipped(self, store, config):
        await store.set(
            config.storage_key,
            json.dumps([
                {"kind": "teleport", "id": "x"},
                {"kind": "upload_media", "id": "no-path"},
                "garbage",
                {"kind": "generate_title", "id": "no-conv"},
                {"kind": "send_text_message", "id": "odd-status", "text": "hi",
                 "status": "bogus"},
                {"kind": "execute_tool_call", "id": "ok", "tool_name": "search",
                 "status": "queued", "future_field": 1},
            ]),
        )
        worker = ScriptedWorker()
        q = TaskQueue(store, worker)
        await q.start()

        assert [t.id for t in q.tasks] == ["ok"]
        assert q.get("ok").tool_name == "search"
        assert q.get("ok").status in (TaskStatus.QUEUED, TaskStatus.RUNNING)
        worker.release_all()
        await q.stop()

    @pytest.mark.parametrize("raw", ["not json", '{"a": 1}', "42"])
    async def test_bad_snapshot_starts_empty(self, store, config, raw):
        await store.set(config.storage_key, raw)
        worker = ScriptedWorker(auto_complete=True)
        q = TaskQueue(store, worker)

        task_id = await q.enqueue_send_text("c1", "fresh")
        assert [t.id for t in q.tasks] == [task_id]
        saved = json.loads(await store.get(config.storage_key))
        assert [item["id"] for item in saved] == [task_id]
        await q.stop()
