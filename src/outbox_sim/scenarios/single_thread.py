"""Single thread scenario - one conversation, strict ordering.

All tasks target the same conversation, so at most one runs at a time
and they start in the order they were enqueued. Any deviation is
recorded as a violation.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from outbox.models import TaskStatus
from outbox_sim.scenarios.base import Scenario, ScenarioInfo

if TYPE_CHECKING:
    from outbox import TaskQueue
    from outbox_sim.display import SimulationState
    from outbox_sim.runner import SimConfig

CONVERSATION_ID = "chat-solo"


class SingleThreadScenario(Scenario):
    """One conversation, checked for FIFO exclusivity."""

    def __init__(self) -> None:
        self.enqueued: list[str] = []
        self.started: list[str] = []
        self._in_flight: str | None = None

    info = ScenarioInfo("single_thread", "One conversation, verifies tasks run one at a time in order")

    def setup(self, queue: TaskQueue, config: SimConfig, state: SimulationState) -> None:
        @queue.on_start
        def on_start(task):
            if self._in_flight is not None:
                self._violation(state, task.id, f"started while {self._in_flight[:8]} running")
            expected = self._next_expected(queue)
            if expected is not None and expected != task.id:
                self._violation(state, task.id, f"started before {expected[:8]}")
            self._in_flight = task.id
            self.started.append(task.id)
            state.add_event("started", task.id, task.kind.value, task.thread_key)

        @queue.on_complete
        def on_done(task, duration):
            self._in_flight = None
            state.add_event("succeeded", task.id, task.kind.value, f"{int(duration * 1000)}ms")

        @queue.on_failure
        def on_failed(task, error):
            self._in_flight = None
            state.add_event("failed", task.id, task.kind.value, str(error))

    def _next_expected(self, queue: TaskQueue) -> str | None:
        """First enqueued task that has neither started nor been cancelled."""
        for task_id in self.enqueued:
            if task_id in self.started:
                continue
            task = queue.get(task_id)
            if task is not None and task.status == TaskStatus.CANCELLED:
                continue
            return task_id
        return None

    def _violation(self, state: SimulationState, task_id: str, detail: str) -> None:
        state.violations.append(f"{task_id}: {detail}")
        state.add_event("violation", task_id, None, detail)

    async def submit_workload(self, queue: TaskQueue, config: SimConfig, state: SimulationState) -> None:
        for i in range(config.count):
            task_id = await queue.enqueue_send_text(CONVERSATION_ID, f"step {i}")
            self.enqueued.append(task_id)
            state.submitted += 1
            state.add_event("queued", task_id, "send_text_message", f"step {i}")

            if config.submit_rate:
                await asyncio.sleep(1.0 / config.submit_rate)
