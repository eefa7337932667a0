"""Scenario base class and shared queue observers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from outbox import TaskQueue
    from outbox_sim.display import SimulationState
    from outbox_sim.runner import SimConfig


@dataclass(frozen=True)
class ScenarioInfo:
    name: str
    description: str


def track_queue(queue: TaskQueue, state: SimulationState) -> None:
    """Mirror queue lifecycle callbacks into the display event log."""

    @queue.on_start
    def on_start(task):
        state.add_event("started", task.id, task.kind.value, task.thread_key)

    @queue.on_complete
    def on_complete(task, duration):
        state.add_event("succeeded", task.id, task.kind.value, f"{int(duration * 1000)}ms")

    @queue.on_failure
    def on_failure(task, error):
        state.add_event("failed", task.id, task.kind.value, str(error))


class Scenario(ABC):
    """
    A workload pattern for the simulator.

    Subclasses set ``info`` and implement ``submit_workload``, which
    decides which conversations receive which tasks. ``setup`` runs once
    before submission; the default only forwards lifecycle events to the
    display, and scenarios that check ordering override it.
    """

    info: ClassVar[ScenarioInfo]

    def setup(self, queue: TaskQueue, config: SimConfig, state: SimulationState) -> None:
        track_queue(queue, state)

    @abstractmethod
    async def submit_workload(self, queue: TaskQueue, config: SimConfig, state: SimulationState) -> None:
        """Enqueue ``config.count`` tasks, bumping ``state.submitted`` for each."""
