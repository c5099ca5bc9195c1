"""Worker pool implementation using threads.

This module provides per-topic job execution with:
- A fixed number of pull-execute-ack loops per topic
- Heartbeat threads for long-running jobs
- A stall sweeper that redelivers jobs whose worker died
- Error classification (permanent vs transient)
- Per-job isolation: no handler error ever stops a loop
- Graceful shutdown handling
"""

import logging
import os
import socket
import threading
import time
import traceback
from typing import Any, Callable, Dict, List, Optional

from tqdm import tqdm

from ..errors import PermanentJobError, QueueError
from .backends import QueueBackend
from .models import Job, JobResult, JobStatus, Topic

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]


def execute_job(
    queue: QueueBackend,
    job: Job,
    handler: Handler,
    heartbeat_interval_s: Optional[float] = None,
) -> JobResult:
    """Run one claimed job and report its outcome to the queue.

    Args:
        queue: Backend the job was dequeued from
        job: Active job owned by the caller
        handler: Topic handler, called with the job payload
        heartbeat_interval_s: Refresh the lease this often while running
                              (None = no heartbeat thread)

    Returns:
        JobResult describing what happened. Never raises for handler errors.

    Error handling:
    - PermanentJobError: nack without retry
    - Any other exception: nack with retry (queue applies ceiling + backoff)
    - Failure to report the outcome is logged; the stall sweeper will
      eventually redeliver the job
    """
    start_time = time.time()
    heartbeat = None
    if heartbeat_interval_s:
        heartbeat = _start_heartbeat(queue, job.job_id, heartbeat_interval_s)

    try:
        try:
            result = handler(job.payload) or {}

        except PermanentJobError as e:
            error_msg = f"{type(e).__name__}: {e}"
            logger.error("Job %s (%s) failed permanently: %s", job.job_id, job.topic.value, error_msg)
            status = _report_failure(queue, job, error_msg, retry=False)
            return JobResult(
                job_id=job.job_id,
                status=status,
                error_message=error_msg,
                retryable=False,
                duration_s=time.time() - start_time,
            )

        except Exception as e:
            error_msg = f"{type(e).__name__}: {e}\n{traceback.format_exc()}"
            logger.warning(
                "Job %s (%s) attempt %d failed: %s: %s",
                job.job_id, job.topic.value, job.attempt_count + 1, type(e).__name__, e,
            )
            status = _report_failure(queue, job, error_msg, retry=True)
            return JobResult(
                job_id=job.job_id,
                status=status,
                error_message=error_msg,
                retryable=True,
                duration_s=time.time() - start_time,
            )

        try:
            queue.ack(job.job_id, result)
        except QueueError:
            logger.exception("Could not ack job %s; it will be redelivered", job.job_id)
        logger.info("Job %s (%s) completed", job.job_id, job.topic.value)
        return JobResult(
            job_id=job.job_id,
            status=JobStatus.COMPLETED,
            result=result,
            duration_s=time.time() - start_time,
        )

    finally:
        if heartbeat is not None:
            _stop_heartbeat(heartbeat)


def _report_failure(queue: QueueBackend, job: Job, error_msg: str, retry: bool) -> JobStatus:
    try:
        status = queue.nack(job.job_id, error_msg, retry=retry)
    except QueueError:
        logger.exception("Could not nack job %s; it will be redelivered", job.job_id)
        return JobStatus.ACTIVE

    if status == JobStatus.FAILED:
        logger.error("Job %s (%s) failed for good", job.job_id, job.topic.value)
    return status


def _start_heartbeat(queue: QueueBackend, job_id: str, interval_s: float):
    """Start background thread that refreshes the job lease.

    Returns:
        Tuple of (thread, stop_event) for cleanup

    Thread is daemon so it won't block process exit.
    """
    stop_event = threading.Event()

    def heartbeat_loop():
        try:
            while not stop_event.wait(interval_s):
                try:
                    queue.heartbeat(job_id)
                except Exception as e:
                    logger.warning("Heartbeat failed for %s: %s", job_id, e)
        finally:
            queue.release_thread_connection()

    thread = threading.Thread(target=heartbeat_loop, name=f"heartbeat-{job_id[:8]}", daemon=True)
    thread.start()
    return (thread, stop_event)


def _stop_heartbeat(heartbeat_data) -> None:
    thread, stop_event = heartbeat_data
    stop_event.set()
    thread.join(timeout=5)


class JobWorkerPool:
    """Thread-based worker pool for one topic.

    Each of the `concurrency` threads runs a blocking loop: wait for a job,
    execute it, report the outcome. A separate sweeper thread requeues or
    fails stalled jobs every `stall_interval_s`.

    Example:
        >>> with JobWorkerPool(queue, Topic.EMAIL_NOTIFICATIONS, handler, concurrency=4):
        ...     stop_event.wait()
    """

    def __init__(
        self,
        queue: QueueBackend,
        topic: Topic,
        handler: Handler,
        concurrency: int = 1,
        poll_interval_s: float = 1.0,
        heartbeat_interval_s: Optional[float] = 10.0,
        stall_interval_s: float = 30.0,
        max_stall_retries: int = 3,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        self.queue = queue
        self.topic = Topic(topic)
        self.handler = handler
        self.concurrency = concurrency
        self.poll_interval_s = poll_interval_s
        self.heartbeat_interval_s = heartbeat_interval_s
        self.stall_interval_s = stall_interval_s
        self.max_stall_retries = max_stall_retries

        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._worker_prefix = f"{self.topic.value}-{socket.gethostname()}-{os.getpid()}"

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.stop(wait=True)

    @property
    def is_running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        """Recover stalled jobs, then start the worker and sweeper threads."""
        if self.is_running:
            raise RuntimeError(f"Worker pool for {self.topic.value} already running")

        self._stop_event.clear()
        self._sweep_once()

        self._threads = []
        for index in range(self.concurrency):
            thread = threading.Thread(
                target=self._run_loop,
                args=(f"{self._worker_prefix}-{index}",),
                name=f"{self.topic.value}-worker-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

        sweeper = threading.Thread(
            target=self._sweep_loop, name=f"{self.topic.value}-sweeper", daemon=True
        )
        sweeper.start()
        self._threads.append(sweeper)

        logger.info(
            "Started %d worker(s) for %s", self.concurrency, self.topic.value
        )

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Graceful shutdown: finish the current jobs, claim no new ones."""
        self._stop_event.set()
        if wait:
            for thread in self._threads:
                thread.join(timeout=timeout)
        logger.info("Stopped workers for %s", self.topic.value)

    def drain(self, max_jobs: Optional[int] = None, show_progress: bool = False) -> Dict[str, Any]:
        """Run eligible jobs on the calling thread until the topic is empty.

        Args:
            max_jobs: Stop after this many jobs
            show_progress: Display a tqdm progress bar

        Returns:
            Dictionary with processing statistics:
                - completed, failed, requeued: job counts by outcome
                - total_duration: summed handler time in seconds
        """
        stats = {"completed": 0, "failed": 0, "requeued": 0, "total_duration": 0.0}
        worker_id = f"{self._worker_prefix}-drain"
        waiting = self.queue.counts(self.topic).waiting
        total = min(waiting, max_jobs) if max_jobs else waiting

        with tqdm(
            total=total, desc=f"Processing {self.topic.value}", unit="job", disable=not show_progress
        ) as progress:
            processed = 0
            while not max_jobs or processed < max_jobs:
                job = self.queue.dequeue(self.topic, worker_id)
                if job is None:
                    break

                result = execute_job(self.queue, job, self.handler, self.heartbeat_interval_s)
                if result.status == JobStatus.COMPLETED:
                    stats["completed"] += 1
                elif result.status == JobStatus.FAILED:
                    stats["failed"] += 1
                else:
                    stats["requeued"] += 1
                stats["total_duration"] += result.duration_s
                processed += 1
                progress.update(1)

        return stats

    def _run_loop(self, worker_id: str) -> None:
        try:
            self._claim_jobs(worker_id)
        finally:
            self.queue.release_thread_connection()

    def _claim_jobs(self, worker_id: str) -> None:
        while not self._stop_event.is_set():
            try:
                job = self.queue.wait_for_job(
                    self.topic,
                    worker_id,
                    poll_interval=self.poll_interval_s,
                    stop_event=self._stop_event,
                )
            except QueueError:
                logger.exception("Dequeue failed on %s; backing off", worker_id)
                self._stop_event.wait(self.poll_interval_s)
                continue

            if job is None:
                continue

            logger.info(
                "%s picked up job %s (attempt %d/%d)",
                worker_id, job.job_id, job.attempt_count + 1, job.max_attempts,
            )
            try:
                execute_job(self.queue, job, self.handler, self.heartbeat_interval_s)
            except Exception:
                # execute_job reports handler errors itself; this guards the loop
                logger.exception("Unexpected error running job %s", job.job_id)

    def _sweep_loop(self) -> None:
        try:
            while not self._stop_event.wait(self.stall_interval_s):
                self._sweep_once()
        finally:
            self.queue.release_thread_connection()

    def _sweep_once(self) -> None:
        try:
            self.queue.recover_stalled(
                self.topic, self.stall_interval_s, self.max_stall_retries
            )
        except QueueError:
            logger.exception("Stall recovery failed for %s", self.topic.value)
