"""Mixed scenario - the default workload pattern.

Many conversations receive a blend of every task kind. Shows the queue
filling its parallel slots across conversations while keeping each
conversation's tasks in order.
"""

from __future__ import annotations

import asyncio
import os
import random
from typing import TYPE_CHECKING

from outbox_sim.scenarios.base import Scenario, ScenarioInfo

if TYPE_CHECKING:
    from outbox import TaskQueue
    from outbox_sim.display import SimulationState
    from outbox_sim.runner import SimConfig

# Relative weights of each task kind in the workload
KIND_WEIGHTS = {
    "send_text_message": 10,
    "upload_media": 3,
    "image_to_data_url": 2,
    "execute_tool_call": 2,
    "generate_image": 2,
    "generate_title": 2,
    "save_conversation": 1,
}


def write_sample_file(config: SimConfig, name: str, size: int = 64) -> str:
    """Create a small file in the scratch directory and return its path."""
    path = os.path.join(config.scratch_dir, name)
    with open(path, "wb") as fh:
        fh.write(os.urandom(size))
    return path


class MixedScenario(Scenario):
    """Every task kind, spread across conversations."""

    info = ScenarioInfo("mixed", "All task kinds across many conversations (default)")

    async def submit_workload(self, queue: TaskQueue, config: SimConfig, state: SimulationState) -> None:
        kinds = list(KIND_WEIGHTS)
        weights = list(KIND_WEIGHTS.values())

        for i in range(config.count):
            conversation_id = f"chat-{random.randrange(config.conversations):02d}"
            kind = random.choices(kinds, weights=weights)[0]
            task_id = await self._enqueue(queue, config, kind, conversation_id, i)

            state.submitted += 1
            state.add_event("queued", task_id, kind, conversation_id)

            if config.cancel_rate and random.random() < config.cancel_rate:
                if await queue.cancel(task_id):
                    state.add_event("cancelled", task_id, kind, conversation_id)

            # Rate-limited submission
            if config.submit_rate:
                await asyncio.sleep(1.0 / config.submit_rate)

    async def _enqueue(
        self, queue: TaskQueue, config: SimConfig, kind: str, conversation_id: str, i: int
    ) -> str:
        if kind == "upload_media":
            name = f"upload_{i:04d}.bin"
            path = write_sample_file(config, name)
            return await queue.enqueue_upload_media(
                conversation_id, path, name, file_size=os.path.getsize(path)
            )
        if kind == "image_to_data_url":
            name = f"photo_{i:04d}.jpg"
            path = write_sample_file(config, name)
            return await queue.enqueue_image_to_data_url(conversation_id, path, name)
        if kind == "execute_tool_call":
            return await queue.enqueue_execute_tool_call(
                conversation_id, random.choice(["web_search", "Calculator"]), {"query": f"q{i}"}
            )
        if kind == "generate_image":
            return await queue.enqueue_generate_image(conversation_id, f"a lighthouse, take {i}")
        if kind == "generate_title":
            return await queue.enqueue_generate_title(conversation_id)
        if kind == "save_conversation":
            return await queue.enqueue_save_conversation(conversation_id)
        return await queue.enqueue_send_text(conversation_id, f"message {i}")
