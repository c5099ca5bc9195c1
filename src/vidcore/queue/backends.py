"""Abstract base class for queue backends.

The worker pool and the service handle only talk to this interface. The
SQLite implementation is the local-first default; a broker-backed backend
(Redis, SQS) can replace it without touching the handlers.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from .models import Job, JobStatus, QueueCounts, Topic

logger = logging.getLogger(__name__)

ExhaustedCallback = Callable[["Job"], None]


class QueueBackend(ABC):
    """Abstract queue interface with at-least-once delivery.

    Implementations must provide:
    - Atomic dequeue (a job is active under exactly one worker_id)
    - FIFO order per topic among eligible waiting jobs
    - Bounded redelivery (attempt ceiling + stall ceiling)
    - A hook fired once when a job fails for good
    """

    def __init__(self) -> None:
        self._exhausted_callbacks: Dict[str, ExhaustedCallback] = {}

    def on_exhausted(self, topic: "Topic", callback: ExhaustedCallback) -> None:
        """Register the callback run when a job of `topic` fails terminally."""
        self._exhausted_callbacks[_topic_value(topic)] = callback

    def _fire_exhausted(self, job: "Job") -> None:
        callback = self._exhausted_callbacks.get(_topic_value(job.topic))
        if callback is None:
            return
        try:
            callback(job)
        except Exception:
            logger.exception("Exhausted-failure callback raised for job %s", job.job_id)

    @abstractmethod
    def enqueue(
        self, topic: "Topic", payload: Dict[str, Any], max_attempts: Optional[int] = None
    ) -> str:
        """Append a job in `waiting` state and return its id.

        No deduplication. Raises QueueError if the job cannot be persisted.
        """

    @abstractmethod
    def dequeue(self, topic: "Topic", worker_id: str) -> Optional["Job"]:
        """Atomically claim the oldest eligible waiting job of `topic`.

        Returns None if the topic has nothing eligible right now.
        """

    @abstractmethod
    def ack(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> None:
        """Mark an active job completed."""

    @abstractmethod
    def nack(self, job_id: str, reason: str, retry: bool = True) -> "JobStatus":
        """Record a failed attempt.

        Returns the status the job landed in: `waiting` when it will be
        redelivered, `failed` when it will not.
        """

    @abstractmethod
    def heartbeat(self, job_id: str) -> None:
        """Refresh the lease of an active job."""

    @abstractmethod
    def recover_stalled(
        self, topic: "Topic", stall_interval_s: float, max_stall_retries: int
    ) -> Tuple[int, int]:
        """Requeue or fail active jobs whose lease expired.

        Returns (requeued, failed).
        """

    @abstractmethod
    def counts(self, topic: "Topic") -> "QueueCounts":
        """Number of jobs per status for `topic`."""

    @abstractmethod
    def recent(self, topic: "Topic", n: int = 10) -> List["Job"]:
        """Most recently finished jobs of `topic`, newest first."""

    @abstractmethod
    def get_job(self, job_id: str) -> Optional["Job"]:
        """Look up a single job."""

    @abstractmethod
    def list_jobs(
        self, topic: Optional["Topic"] = None, status: Optional["JobStatus"] = None
    ) -> List["Job"]:
        """All jobs matching the filters, in enqueue order."""

    def release_thread_connection(self) -> None:
        """Drop resources the calling thread holds. Called before a helper thread exits."""

    @abstractmethod
    def retry_failed(self, topic: "Topic") -> int:
        """Reset failed jobs of `topic` to waiting. Returns the count."""

    @abstractmethod
    def clear(self, topic: Optional["Topic"] = None) -> int:
        """Delete jobs (of one topic, or all). Returns the count."""

    def wait_for_job(
        self,
        topic: "Topic",
        worker_id: str,
        timeout: Optional[float] = None,
        poll_interval: float = 1.0,
        stop_event: Optional[threading.Event] = None,
    ) -> Optional["Job"]:
        """Blocking dequeue.

        Polls until a job is claimed, `timeout` elapses, or `stop_event` is
        set. Returns None in the last two cases.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            job = self.dequeue(topic, worker_id)
            if job is not None:
                return job

            if stop_event is not None and stop_event.is_set():
                return None

            wait = poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                wait = min(wait, remaining)

            if stop_event is not None:
                if stop_event.wait(wait):
                    return None
            else:
                time.sleep(wait)


def _topic_value(topic: Any) -> str:
    return topic.value if hasattr(topic, "value") else str(topic)
