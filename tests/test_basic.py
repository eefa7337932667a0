"""Basic import and instantiation tests."""

import pytest

import outbox
from outbox import OutboxConfig


def test_import():
    """Verify outbox can be imported and exposes the queue."""
    assert hasattr(outbox, "TaskQueue")
    assert hasattr(outbox, "TaskWorker")
    assert outbox.__version__


def test_queue_instantiation(worker):
    """Verify a queue can be built on an in-memory store."""
    queue = outbox.TaskQueue(outbox.MemoryStore(), worker)
    assert queue.tasks == []
    assert queue.active_threads == frozenset()
    assert queue.config.max_parallel == 2


def test_config_defaults():
    config = OutboxConfig()
    assert config.storage_key == "outbound_task_queue_v1"
    assert config.image_generation_mode == "pipeline"
    assert config.fail_on_upload_timeout is False
    assert config.push_conversation_state is True


def test_config_rejects_zero_parallelism():
    with pytest.raises(ValueError, match="max_parallel"):
        OutboxConfig(max_parallel=0)


def test_config_rejects_unknown_image_mode():
    with pytest.raises(ValueError, match="image_generation_mode"):
        OutboxConfig(image_generation_mode="magic")


def test_config_rejects_nonpositive_upload_timeout():
    with pytest.raises(ValueError, match="upload_timeout"):
        OutboxConfig(upload_timeout=0)
