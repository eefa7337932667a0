"""Shared fixtures."""

from __future__ import annotations

import pytest

from outbox import ChatState, MemoryStore, OutboxConfig, TaskQueue, TaskWorker

from .fakes import FakeChatApi, FakeSender, ScriptedWorker


@pytest.fixture()
def config() -> OutboxConfig:
    """Default settings with upload retries shrunk to test time scales."""
    return OutboxConfig(
        upload_base_retry_delay=0.01,
        upload_max_retry_delay=0.05,
        upload_retry_jitter=0.0,
        upload_timeout=2.0,
    )


@pytest.fixture()
def state() -> ChatState:
    return ChatState(selected_model="test-model")


@pytest.fixture()
def api() -> FakeChatApi:
    return FakeChatApi()


@pytest.fixture()
def sender(state: ChatState) -> FakeSender:
    return FakeSender(state)


@pytest.fixture()
def worker(state, api, sender, config) -> TaskWorker:
    return TaskWorker(state, api=api, sender=sender, config=config)


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def scripted() -> ScriptedWorker:
    return ScriptedWorker()


@pytest.fixture()
async def queue(store, scripted, config):
    """A queue driven by a ScriptedWorker. Stopped after the test."""
    q = TaskQueue(store, scripted, config=config)
    yield q
    scripted.release_all()
    await q.stop(timeout=1.0)
