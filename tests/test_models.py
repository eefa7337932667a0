"""Task model tests: thread keys, serialization, restore filtering."""

import dataclasses

import pytest

from outbox.models import (
    NEW_THREAD_KEY,
    ExecuteToolCall,
    GenerateTitle,
    SendTextMessage,
    TaskKind,
    TaskStatus,
    UploadMedia,
    restore_tasks,
    task_from_dict,
    thread_key_for,
)


class TestThreadKey:
    """Tests for conversation affinity."""

    def test_conversation_id_is_thread_key(self):
        assert thread_key_for("abc") == "abc"

    @pytest.mark.parametrize("conversation_id", [None, ""])
    def test_missing_conversation_shares_new_thread(self, conversation_id):
        assert thread_key_for(conversation_id) == NEW_THREAD_KEY

    def test_task_property(self):
        task = SendTextMessage(id="t1", text="hi")
        assert task.thread_key == NEW_THREAD_KEY
        assert dataclasses.replace(task, conversation_id="c9").thread_key == "c9"


class TestTaskStatus:
    def test_terminal_states(self):
        assert not TaskStatus.QUEUED.is_terminal
        assert not TaskStatus.RUNNING.is_terminal
        assert TaskStatus.SUCCEEDED.is_terminal
        assert TaskStatus.FAILED.is_terminal
        assert TaskStatus.CANCELLED.is_terminal

    @pytest.mark.parametrize("raw", [None, ""])
    def test_missing_status_parses_as_queued(self, raw):
        assert TaskStatus.parse(raw) == TaskStatus.QUEUED

    @pytest.mark.parametrize("raw", ["paused", "QUEUED", "done"])
    def test_unknown_status_is_rejected(self, raw):
        with pytest.raises(ValueError, match="Unknown task status"):
            TaskStatus.parse(raw)


class TestTaskSerialization:
    """Tests for the tagged dict form written to snapshots."""

    def test_to_dict_carries_kind_tag(self):
        task = UploadMedia(id="u1", conversation_id="c1", file_path="/tmp/a.png", file_name="a.png")
        data = task.to_dict()

        assert data["kind"] == "upload_media"
        assert data["status"] == "queued"
        assert data["file_name"] == "a.png"
        assert task_from_dict(data) == task

    def test_tuples_are_restored_from_lists(self):
        task = task_from_dict(
            {"kind": "send_text_message", "id": "t1", "text": "hi", "attachments": ["a", "b"], "tool_ids": None}
        )
        assert task.attachments == ("a", "b")
        assert task.tool_ids == ()

    def test_missing_optional_fields_use_defaults(self):
        task = task_from_dict({"kind": "execute_tool_call", "id": "t1", "tool_name": "search"})

        assert isinstance(task, ExecuteToolCall)
        assert task.arguments == {}
        assert task.attempt == 0
        assert task.status == TaskStatus.QUEUED

    def test_unknown_keys_are_ignored(self):
        task = task_from_dict({"kind": "save_conversation", "id": "t1", "priority": 3})
        assert task.kind == TaskKind.SAVE_CONVERSATION

    @pytest.mark.parametrize("kind", [None, "teleport"])
    def test_unknown_kind(self, kind):
        with pytest.raises(ValueError, match="Unknown task kind"):
            task_from_dict({"kind": kind, "id": "t1"})

    def test_missing_payload_field(self):
        with pytest.raises(TypeError):
            task_from_dict({"kind": "generate_image", "id": "t1"})


class TestTaskInvariants:
    def test_tasks_are_immutable(self):
        task = SendTextMessage(id="t1", text="hi")
        with pytest.raises(dataclasses.FrozenInstanceError):
            task.status = TaskStatus.RUNNING

    def test_generate_title_requires_conversation(self):
        with pytest.raises(ValueError):
            GenerateTitle(id="t1")
        assert GenerateTitle(id="t1", conversation_id="c1").thread_key == "c1"


class TestRestoreTasks:
    """Tests for filtering a snapshot on load."""

    def test_keeps_only_resumable_work_in_order(self):
        raw = [
            {"kind": "send_text_message", "id": "1", "text": "a", "status": "queued"},
            {"kind": "send_text_message", "id": "2", "text": "b", "status": "succeeded"},
            {"kind": "send_text_message", "id": "3", "text": "c", "status": "running", "started_at": 5.0},
            {"kind": "send_text_message", "id": "4", "text": "d", "status": "failed", "error": "x"},
            {"kind": "send_text_message", "id": "5", "text": "e", "status": "cancelled"},
        ]
        restored = restore_tasks(raw)

        assert [t.id for t in restored] == ["1", "3"]
        assert all(t.status == TaskStatus.QUEUED for t in restored)
        assert restored[1].started_at is None

    def test_preserves_attempt_and_payload(self):
        raw = [{"kind": "generate_image", "id": "1", "prompt": "cat", "attempt": 2, "status": "running"}]
        (task,) = restore_tasks(raw)
        assert task.attempt == 2
        assert task.prompt == "cat"

    def test_drops_unreadable_entries(self):
        raw = [None, 7, {"kind": "nope"}, {"kind": "send_text_message", "id": "ok", "text": "hi"}]
        assert [t.id for t in restore_tasks(raw)] == ["ok"]

    def test_drops_entries_with_unknown_status(self):
        raw = [
            {"kind": "send_text_message", "id": "1", "text": "a", "status": "paused"},
            {"kind": "send_text_message", "id": "2", "text": "b"},
        ]
        restored = restore_tasks(raw)

        assert [t.id for t in restored] == ["2"]
        assert restored[0].status == TaskStatus.QUEUED
