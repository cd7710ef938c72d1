"""Background workers."""

from .backoff import backoff_delay
from .embedding_worker import EmbeddingGenerationWorker, WorkerSettings, WorkerStatus
from .pausable import RESPONSIVENESS_INTERVAL, PausableTask, TaskState

__all__ = [
    "EmbeddingGenerationWorker",
    "PausableTask",
    "RESPONSIVENESS_INTERVAL",
    "TaskState",
    "WorkerSettings",
    "WorkerStatus",
    "backoff_delay",
]
