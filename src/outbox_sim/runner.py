"""Drives a TaskQueue against simulated collaborators and publishes counters.

Nothing here draws: progress is written into a SimulationState that the
CLI renders however it likes.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from outbox import ChatState, OutboxConfig, SqliteStore, TaskQueue, TaskStatus, TaskWorker
from outbox_sim.display import ThreadStatus
from outbox_sim.fakes import SimulatedChatApi, SimulatedSender
from outbox_sim.scenarios import get_scenario

if TYPE_CHECKING:
    from outbox_sim.display import SimulationState

logger = logging.getLogger(__name__)


@dataclass
class SimConfig:
    """Knobs for one simulated run, filled from the command line."""

    count: int = 100
    conversations: int = 5
    latency_ms: int = 100
    latency_jitter: float = 0.2  # ±20% variance
    outlier_chance: float = 0.0  # Probability of outlier (0.0-1.0)
    outlier_multiplier: float = 5.0  # Outliers take this much longer
    error_rate: float = 0.0
    cancel_rate: float = 0.0  # Fraction of tasks cancelled right after enqueue
    duration: float | None = None
    db_path: str = ":memory:"
    max_parallel: int = 2
    submit_rate: float | None = None  # tasks/second, None = batch
    image_generation_mode: str = "pipeline"
    scenario: str = "mixed"
    stall_timeout: float | None = None  # Auto-stop if stalled for N seconds
    scratch_dir: str | None = None  # Set by the runner for sample files


class SimulationRunner:
    """
    One simulation: builds the queue, submits the scenario workload and
    polls the queue into ``state`` until everything settles.

    ``run()`` returns once every submitted task is terminal, the duration
    elapses, or ``stop()`` is called.
    """

    def __init__(self, config: SimConfig, state: SimulationState):
        self.config = config
        self.state = state
        self.scenario = get_scenario(config.scenario)

        self.queue: TaskQueue | None = None
        self.api: SimulatedChatApi | None = None
        self._store: SqliteStore | None = None
        self._scratch_dir: str | None = None
        self._running = False

    async def run(self) -> None:
        self._running = True
        self._publish_settings()

        if self.config.scratch_dir is None:
            self._scratch_dir = tempfile.mkdtemp(prefix="outbox-sim-")
            self.config.scratch_dir = self._scratch_dir

        outbox_config = OutboxConfig(
            max_parallel=self.config.max_parallel,
            image_generation_mode=self.config.image_generation_mode,
            # Keep upload retries within a simulation's time scale
            upload_base_retry_delay=0.1,
            upload_max_retry_delay=1.0,
            upload_retry_jitter=0.1,
            upload_timeout=30.0,
        )
        chat_state = ChatState(selected_model="sim-model")
        self.api = SimulatedChatApi(self.config)
        worker = TaskWorker(
            chat_state,
            api=self.api,
            sender=SimulatedSender(self.config, chat_state),
            config=outbox_config,
        )
        self._store = SqliteStore(self.config.db_path)
        self.queue = TaskQueue(self._store, worker, config=outbox_config)

        self.scenario.setup(self.queue, self.config, self.state)
        await self.queue.start()

        monitor = asyncio.create_task(self._monitor())
        try:
            await self.scenario.submit_workload(self.queue, self.config, self.state)
            await monitor
        finally:
            if not monitor.done():
                monitor.cancel()

        await self.cleanup()

    def _publish_settings(self) -> None:
        s, c = self.state, self.config
        s.start_time = time.time()
        s.target_count = c.count
        s.latency_ms = c.latency_ms
        s.latency_jitter = c.latency_jitter
        s.outlier_chance = c.outlier_chance
        s.error_rate = c.error_rate
        s.max_parallel = c.max_parallel
        s.scenario_name = self.scenario.info.name

    def _settled(self) -> bool:
        s = self.state
        return s.submitted >= self.config.count and s.queued == 0 and s.running == 0

    async def _monitor(self) -> None:
        while self._running:
            self._update_state()
            if self._settled():
                break
            if self.config.duration and self._elapsed >= self.config.duration:
                break
            await asyncio.sleep(0.05)
        self._update_state()

    def _update_state(self) -> None:
        """Recount statuses and per-thread rows from the queue's task list."""
        if self.queue is None:
            return

        self.state.elapsed = self._elapsed

        counts = {status: 0 for status in TaskStatus}
        threads: dict[str, ThreadStatus] = {}
        for task in self.queue.tasks:
            counts[task.status] += 1
            thread = threads.setdefault(task.thread_key, ThreadStatus(name=task.thread_key))
            if task.status == TaskStatus.RUNNING:
                thread.running_kind = task.kind.value
            elif task.status == TaskStatus.QUEUED:
                thread.queued += 1
            elif task.status == TaskStatus.SUCCEEDED:
                thread.succeeded += 1
            elif task.status == TaskStatus.FAILED:
                thread.failed += 1
            else:
                thread.cancelled += 1

        self.state.queued = counts[TaskStatus.QUEUED]
        self.state.running = counts[TaskStatus.RUNNING]
        self.state.succeeded = counts[TaskStatus.SUCCEEDED]
        self.state.failed = counts[TaskStatus.FAILED]
        self.state.cancelled = counts[TaskStatus.CANCELLED]
        self.state.threads = threads

    def debug_blocked(self) -> list[dict[str, Any]]:
        """Why queued tasks are waiting, for stall diagnostics."""
        if self.queue is None:
            return []
        return self.queue.debug_blocked()

    @property
    def _elapsed(self) -> float:
        return time.time() - self.state.start_time

    def stop(self) -> None:
        """Ask the monitor loop to exit; the queue is stopped by cleanup()."""
        self._running = False

    async def cleanup(self) -> None:
        """Stop the queue, close the store and remove scratch files. Safe to call twice."""
        self._running = False
        if self.queue is not None:
            try:
                await self.queue.stop(timeout=1.0)
            except Exception:
                logger.debug("Error stopping queue", exc_info=True)
            self._update_state()
            self.queue = None
        if self._store is not None:
            await self._store.close()
            self._store = None
        if self._scratch_dir is not None:
            shutil.rmtree(self._scratch_dir, ignore_errors=True)
            self.config.scratch_dir = None
            self._scratch_dir = None
