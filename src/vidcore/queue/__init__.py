"""Job queue and worker pool for background processing."""

from .backends import QueueBackend
from .models import (
    EmailPayload,
    Job,
    JobResult,
    JobStatus,
    QueueCounts,
    QueueStatus,
    StateTransition,
    Topic,
    VideoProcessingPayload,
)
from .sqlite_backend import SQLiteQueue
from .worker import JobWorkerPool, execute_job

__all__ = [
    "QueueBackend",
    "EmailPayload",
    "Job",
    "JobResult",
    "JobStatus",
    "QueueCounts",
    "QueueStatus",
    "StateTransition",
    "Topic",
    "VideoProcessingPayload",
    "SQLiteQueue",
    "JobWorkerPool",
    "execute_job",
]
