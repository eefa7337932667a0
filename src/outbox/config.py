"""Configuration for the outbox queue and worker."""

from __future__ import annotations

from dataclasses import dataclass

IMAGE_GENERATION_MODES = ("pipeline", "direct")


@dataclass
class OutboxConfig:
    """Tunables shared by TaskQueue and TaskWorker."""

    max_parallel: int = 2  # Bounded parallelism across conversations
    storage_key: str = "outbound_task_queue_v1"

    # Upload bridge
    upload_timeout: float = 120.0
    fail_on_upload_timeout: bool = False
    upload_max_retries: int = 4
    upload_base_retry_delay: float = 5.0
    upload_max_retry_delay: float = 300.0
    upload_retry_jitter: float = 1.0  # Max random seconds added to each delay

    # Whether SaveConversation pushes local state to the server
    push_conversation_state: bool = True

    # "pipeline" flips the image flag and sends through the message pipeline,
    # "direct" calls the image endpoint and attaches results itself
    image_generation_mode: str = "pipeline"

    default_title: str = "New Chat"
    title_max_length: int = 100

    def __post_init__(self) -> None:
        if self.max_parallel < 1:
            raise ValueError(f"max_parallel must be at least 1, got {self.max_parallel}")
        if self.upload_timeout <= 0:
            raise ValueError(f"upload_timeout must be positive, got {self.upload_timeout}")
        if self.image_generation_mode not in IMAGE_GENERATION_MODES:
            modes = ", ".join(IMAGE_GENERATION_MODES)
            raise ValueError(
                f"Unknown image_generation_mode: {self.image_generation_mode}. Use one of: {modes}"
            )
