"""SQLite implementation of QueueBackend.

This module provides the local-first, crash-safe queue implementation using:
- sqlite-utils for schema management and reads
- WAL mode for better concurrent performance
- BEGIN IMMEDIATE transactions for atomic claims and outcome writes
- Exponential backoff retry for database lock handling
- One connection per thread, so worker threads share a single queue object
"""

import json
import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlite_utils import Database

from ..errors import QueueError
from ..sqlite_db import ThreadLocalDatabase
from .backends import QueueBackend
from .models import Job, JobStatus, QueueCounts, StateTransition, Topic

logger = logging.getLogger(__name__)

STALLED_REASON = "job stalled more than allowable limit"


def _now() -> str:
    return datetime.now().isoformat(timespec="microseconds")


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


class SQLiteQueue(QueueBackend):
    """SQLite-based queue with atomic dequeue operations.

    Features:
    - FIFO per topic by insertion order (rowid)
    - Retry backoff gate (`available_at`) on transient failures
    - Heartbeat leases and stall recovery
    - Automatic state transition logging
    - Bounded history of finished jobs

    Concurrency safety:
    - BEGIN IMMEDIATE takes the write lock from transaction start
    - Prevents the race where two workers claim the same job
    - Exponential backoff handles transient lock contention
    """

    def __init__(
        self,
        db_path: str,
        max_attempts: int = 4,
        retry_backoff_s: float = 0.0,
        history_limit: int = 100,
    ):
        """Initialize queue backend.

        Args:
            db_path: Path to SQLite database file
            max_attempts: Default delivery ceiling for new jobs
            retry_backoff_s: Base delay before a failed job is eligible again
            history_limit: Finished jobs kept per topic and terminal status
        """
        super().__init__()
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self.db_path = str(db_path)
        self.max_attempts = max_attempts
        self.retry_backoff_s = retry_backoff_s
        self.history_limit = history_limit
        self._databases = ThreadLocalDatabase(self.db_path)

        try:
            self._create_schema()
        except sqlite3.Error as e:
            raise QueueError(f"Cannot initialize queue database {self.db_path}: {e}") from e

    @classmethod
    def from_config(cls, queue_config) -> "SQLiteQueue":
        """Build a queue from a QueueConfig section."""
        return cls(
            db_path=queue_config.db_path,
            max_attempts=queue_config.max_attempts,
            retry_backoff_s=queue_config.retry_backoff_s,
            history_limit=queue_config.history_limit,
        )

    @property
    def db(self) -> Database:
        """The calling thread's connection."""
        return self._databases.get()

    def release_thread_connection(self) -> None:
        self._databases.release()

    def close(self) -> None:
        self._databases.close()

    def _create_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        self.db["jobs"].create(
            {
                "job_id": str,
                "topic": str,
                "payload": str,
                "status": str,
                "attempt_count": int,
                "max_attempts": int,
                "stalled_count": int,
                "enqueued_at": str,
                "available_at": str,
                "started_at": str,
                "finished_at": str,
                "last_heartbeat": str,
                "worker_id": str,
                "result": str,
                "failure_reason": str,
                "permanent": int,
            },
            pk="job_id",
            not_null={"topic", "payload", "status", "enqueued_at"},
            defaults={"attempt_count": 0, "stalled_count": 0, "permanent": 0},
            if_not_exists=True,
        )
        self.db["jobs"].create_index(["topic", "status"], if_not_exists=True)
        self.db["jobs"].create_index(["topic", "finished_at"], if_not_exists=True)

        # State transition log (audit trail)
        self.db["job_transitions"].create(
            {
                "id": int,
                "job_id": str,
                "from_state": str,
                "to_state": str,
                "timestamp": str,
                "worker_id": str,
                "error_snippet": str,
            },
            pk="id",
            not_null={"job_id", "to_state", "timestamp"},
            if_not_exists=True,
        )
        self.db["job_transitions"].create_index(["job_id", "timestamp"], if_not_exists=True)

    @contextmanager
    def _transaction(self, max_retries: int = 3) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE with exponential backoff on SQLITE_BUSY.

        Backoff: 100ms, 200ms, 400ms. The body runs once; only taking the
        lock is retried.
        """
        conn = self.db.conn
        for attempt in range(max_retries):
            try:
                conn.execute("BEGIN IMMEDIATE")
                break
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise QueueError(f"Queue database busy: {e}") from e

        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
        else:
            conn.commit()

    def enqueue(
        self, topic: Topic, payload: Dict[str, Any], max_attempts: Optional[int] = None
    ) -> str:
        """Append a job in `waiting` state.

        Args:
            topic: Queue lane
            payload: JSON-serializable handler input
            max_attempts: Delivery ceiling (defaults to the queue's)

        Returns:
            The new job id

        Raises:
            ValueError: Unknown topic or unserializable payload
            QueueError: The job could not be persisted
        """
        topic = Topic(topic)
        job_id = str(uuid.uuid4())
        now = _now()
        try:
            encoded = json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Job payload is not JSON-serializable: {e}") from e

        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO jobs (
                        job_id, topic, payload, status, attempt_count, max_attempts,
                        stalled_count, enqueued_at, permanent
                    ) VALUES (?, ?, ?, ?, 0, ?, 0, ?, 0)
                    """,
                    (
                        job_id,
                        topic.value,
                        encoded,
                        JobStatus.WAITING.value,
                        max_attempts or self.max_attempts,
                        now,
                    ),
                )
                self._log_transition(conn, job_id, None, JobStatus.WAITING.value)
        except sqlite3.Error as e:
            raise QueueError(f"Failed to enqueue {topic.value} job: {e}") from e

        logger.debug("Enqueued %s job %s", topic.value, job_id)
        return job_id

    def dequeue(self, topic: Topic, worker_id: str) -> Optional[Job]:
        """Atomically claim the oldest eligible waiting job and mark it active.

        Atomicity: BEGIN IMMEDIATE + UPDATE...RETURNING
        """
        topic = Topic(topic)
        now = _now()
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?,
                        worker_id = ?,
                        started_at = ?,
                        last_heartbeat = ?
                    WHERE job_id = (
                        SELECT job_id FROM jobs
                        WHERE topic = ?
                          AND status = ?
                          AND (available_at IS NULL OR available_at <= ?)
                        ORDER BY rowid ASC
                        LIMIT 1
                    )
                    RETURNING rowid AS seq, *
                    """,
                    (
                        JobStatus.ACTIVE.value,
                        worker_id,
                        now,
                        now,
                        topic.value,
                        JobStatus.WAITING.value,
                        now,
                    ),
                )
                row = cursor.fetchone()
                if row is None:
                    return None

                columns = [d[0] for d in cursor.description]
                job = self._row_to_job(dict(zip(columns, row)))
                self._log_transition(
                    conn, job.job_id, JobStatus.WAITING.value, JobStatus.ACTIVE.value, worker_id
                )
                return job
        except sqlite3.Error as e:
            raise QueueError(f"Failed to dequeue from {topic.value}: {e}") from e

    def ack(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> None:
        """Mark job as completed with its result.

        A job that was requeued by stall recovery while its original worker
        was still running is completed as well; the work is done either way.
        """
        try:
            with self._transaction() as conn:
                row = self._fetch_row(conn, job_id)
                if row is None:
                    raise QueueError(f"Unknown job: {job_id}")
                if row["status"] not in (JobStatus.ACTIVE.value, JobStatus.WAITING.value):
                    logger.warning(
                        "Ignoring ack for job %s in state %s", job_id, row["status"]
                    )
                    return

                conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?,
                        finished_at = ?,
                        result = ?,
                        failure_reason = NULL,
                        attempt_count = attempt_count + 1
                    WHERE job_id = ?
                    """,
                    (JobStatus.COMPLETED.value, _now(), json.dumps(result or {}), job_id),
                )
                self._log_transition(
                    conn, job_id, row["status"], JobStatus.COMPLETED.value, row["worker_id"]
                )
                self._prune_history(conn, row["topic"], JobStatus.COMPLETED.value)
        except sqlite3.Error as e:
            raise QueueError(f"Failed to ack job {job_id}: {e}") from e

    def nack(self, job_id: str, reason: str, retry: bool = True) -> JobStatus:
        """Record a failed attempt, with optional retry.

        Args:
            job_id: Job identifier
            reason: Error message (truncated to 500 chars)
            retry: If True, requeue while attempts remain

        Retry logic:
        - retry and attempt_count < max_attempts: back to 'waiting', gated by
          exponential backoff (retry_backoff_s * 2 ** (attempt - 1))
        - otherwise: 'failed' (terminal), exhausted callback fires
        """
        reason = reason[:500] if reason else None
        failed_job = None

        try:
            with self._transaction() as conn:
                row = self._fetch_row(conn, job_id)
                if row is None:
                    raise QueueError(f"Unknown job: {job_id}")
                if row["status"] != JobStatus.ACTIVE.value:
                    logger.warning(
                        "Ignoring nack for job %s in state %s", job_id, row["status"]
                    )
                    return JobStatus(row["status"])

                new_attempt = row["attempt_count"] + 1

                if retry and new_attempt < row["max_attempts"]:
                    delay = self.retry_backoff_s * (2 ** (new_attempt - 1))
                    available_at = _ts(datetime.now() + timedelta(seconds=delay))
                    conn.execute(
                        """
                        UPDATE jobs
                        SET status = ?,
                            attempt_count = ?,
                            failure_reason = ?,
                            available_at = ?,
                            worker_id = NULL
                        WHERE job_id = ?
                        """,
                        (JobStatus.WAITING.value, new_attempt, reason, available_at, job_id),
                    )
                    self._log_transition(
                        conn, job_id, JobStatus.ACTIVE.value, JobStatus.WAITING.value,
                        row["worker_id"], reason,
                    )
                    return JobStatus.WAITING

                conn.execute(
                    """
                    UPDATE jobs
                    SET status = ?,
                        finished_at = ?,
                        attempt_count = ?,
                        failure_reason = ?,
                        permanent = ?
                    WHERE job_id = ?
                    """,
                    (
                        JobStatus.FAILED.value,
                        _now(),
                        new_attempt,
                        reason,
                        0 if retry else 1,
                        job_id,
                    ),
                )
                self._log_transition(
                    conn, job_id, JobStatus.ACTIVE.value, JobStatus.FAILED.value,
                    row["worker_id"], reason,
                )
                failed_job = self._row_to_job(self._fetch_row(conn, job_id))
                self._prune_history(conn, row["topic"], JobStatus.FAILED.value)
        except sqlite3.Error as e:
            raise QueueError(f"Failed to nack job {job_id}: {e}") from e

        self._fire_exhausted(failed_job)
        return JobStatus.FAILED

    def heartbeat(self, job_id: str) -> None:
        """Update heartbeat timestamp for a running job.

        Only updates if job is in 'active' state.
        """
        try:
            with self._transaction() as conn:
                conn.execute(
                    "UPDATE jobs SET last_heartbeat = ? WHERE job_id = ? AND status = ?",
                    (_now(), job_id, JobStatus.ACTIVE.value),
                )
        except sqlite3.Error as e:
            raise QueueError(f"Failed to heartbeat job {job_id}: {e}") from e

    def recover_stalled(
        self, topic: Topic, stall_interval_s: float, max_stall_retries: int
    ) -> Tuple[int, int]:
        """Crash recovery: requeue or fail active jobs whose lease expired.

        A job is stalled when its last heartbeat (or its start time, if it
        never heartbeat) is older than `stall_interval_s`. Each stall counts
        as an attempt. Past `max_stall_retries` stalls, or once attempts are
        exhausted, the job is failed and the exhausted callback fires.

        Returns:
            (requeued, failed) counts
        """
        topic = Topic(topic)
        cutoff = _ts(datetime.now() - timedelta(seconds=stall_interval_s))
        requeued = 0
        failed_jobs: List[Job] = []

        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    SELECT rowid AS seq, * FROM jobs
                    WHERE topic = ?
                      AND status = ?
                      AND COALESCE(last_heartbeat, started_at) < ?
                    ORDER BY rowid ASC
                    """,
                    (topic.value, JobStatus.ACTIVE.value, cutoff),
                )
                columns = [d[0] for d in cursor.description]
                stalled = [dict(zip(columns, r)) for r in cursor.fetchall()]

                for row in stalled:
                    stalled_count = row["stalled_count"] + 1
                    attempts = row["attempt_count"] + 1
                    exhausted = (
                        stalled_count > max_stall_retries or attempts >= row["max_attempts"]
                    )

                    if exhausted:
                        conn.execute(
                            """
                            UPDATE jobs
                            SET status = ?, stalled_count = ?, attempt_count = ?,
                                failure_reason = ?, finished_at = ?
                            WHERE job_id = ?
                            """,
                            (
                                JobStatus.FAILED.value, stalled_count, attempts,
                                STALLED_REASON, _now(), row["job_id"],
                            ),
                        )
                        self._log_transition(
                            conn, row["job_id"], JobStatus.ACTIVE.value,
                            JobStatus.FAILED.value, row["worker_id"], STALLED_REASON,
                        )
                        failed_jobs.append(self._row_to_job(self._fetch_row(conn, row["job_id"])))
                    else:
                        conn.execute(
                            """
                            UPDATE jobs
                            SET status = ?, stalled_count = ?, attempt_count = ?,
                                worker_id = NULL, available_at = NULL
                            WHERE job_id = ?
                            """,
                            (JobStatus.WAITING.value, stalled_count, attempts, row["job_id"]),
                        )
                        self._log_transition(
                            conn, row["job_id"], JobStatus.ACTIVE.value,
                            JobStatus.WAITING.value, row["worker_id"], "Lease expired (stalled)",
                        )
                        requeued += 1

                if failed_jobs:
                    self._prune_history(conn, topic.value, JobStatus.FAILED.value)
        except sqlite3.Error as e:
            raise QueueError(f"Failed to recover stalled {topic.value} jobs: {e}") from e

        for job in failed_jobs:
            logger.error("Job %s %s", job.job_id, STALLED_REASON)
            self._fire_exhausted(job)

        if requeued:
            logger.warning("Requeued %d stalled %s job(s)", requeued, topic.value)
        return requeued, len(failed_jobs)

    def counts(self, topic: Topic) -> QueueCounts:
        topic = Topic(topic)
        rows = self.db.execute(
            "SELECT status, COUNT(*) FROM jobs WHERE topic = ? GROUP BY status",
            [topic.value],
        ).fetchall()
        return QueueCounts(**{status: count for status, count in rows})

    def recent(self, topic: Topic, n: int = 10) -> List[Job]:
        topic = Topic(topic)
        rows = self.db["jobs"].rows_where(
            "topic = ? AND status IN (?, ?)",
            [topic.value, JobStatus.COMPLETED.value, JobStatus.FAILED.value],
            select="rowid AS seq, *",
            order_by="finished_at DESC, rowid DESC",
            limit=n,
        )
        return [self._row_to_job(row) for row in rows]

    def get_job(self, job_id: str) -> Optional[Job]:
        rows = list(
            self.db["jobs"].rows_where("job_id = ?", [job_id], select="rowid AS seq, *")
        )
        if not rows:
            return None
        return self._row_to_job(rows[0])

    def list_jobs(
        self, topic: Optional[Topic] = None, status: Optional[JobStatus] = None
    ) -> List[Job]:
        """Query jobs by topic and status.

        Complexity: O(n) scan (acceptable for status commands)
        """
        clauses, params = [], []
        if topic is not None:
            clauses.append("topic = ?")
            params.append(Topic(topic).value)
        if status is not None:
            clauses.append("status = ?")
            params.append(JobStatus(status).value)

        rows = self.db["jobs"].rows_where(
            " AND ".join(clauses) or None,
            params,
            select="rowid AS seq, *",
            order_by="rowid ASC",
        )
        return [self._row_to_job(row) for row in rows]

    def transitions(self, job_id: str) -> List[StateTransition]:
        """Audit trail of one job, oldest first."""
        rows = self.db["job_transitions"].rows_where(
            "job_id = ?", [job_id], order_by="id ASC"
        )
        return [StateTransition(**row) for row in rows]

    def retry_failed(self, topic: Topic) -> int:
        """Reset every failed job of `topic` to waiting with a fresh budget."""
        topic = Topic(topic)
        try:
            with self._transaction() as conn:
                ids = [
                    r[0]
                    for r in conn.execute(
                        "SELECT job_id FROM jobs WHERE topic = ? AND status = ?",
                        (topic.value, JobStatus.FAILED.value),
                    ).fetchall()
                ]
                for job_id in ids:
                    conn.execute(
                        """
                        UPDATE jobs
                        SET status = ?, attempt_count = 0, stalled_count = 0,
                            failure_reason = NULL, permanent = 0, worker_id = NULL,
                            available_at = NULL, finished_at = NULL
                        WHERE job_id = ?
                        """,
                        (JobStatus.WAITING.value, job_id),
                    )
                    self._log_transition(
                        conn, job_id, JobStatus.FAILED.value, JobStatus.WAITING.value,
                        None, "Manual retry",
                    )
        except sqlite3.Error as e:
            raise QueueError(f"Failed to retry {topic.value} jobs: {e}") from e
        return len(ids)

    def clear(self, topic: Optional[Topic] = None) -> int:
        try:
            with self._transaction() as conn:
                if topic is None:
                    count = conn.execute("DELETE FROM jobs").rowcount
                    conn.execute("DELETE FROM job_transitions")
                else:
                    count = conn.execute(
                        "DELETE FROM jobs WHERE topic = ?", (Topic(topic).value,)
                    ).rowcount
                    conn.execute(
                        "DELETE FROM job_transitions WHERE job_id NOT IN (SELECT job_id FROM jobs)"
                    )
        except sqlite3.Error as e:
            raise QueueError(f"Failed to clear queue: {e}") from e
        return count

    def _fetch_row(self, conn: sqlite3.Connection, job_id: str) -> Optional[Dict[str, Any]]:
        cursor = conn.execute("SELECT rowid AS seq, * FROM jobs WHERE job_id = ?", (job_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return dict(zip([d[0] for d in cursor.description], row))

    def _prune_history(self, conn: sqlite3.Connection, topic: str, status: str) -> None:
        """Drop finished jobs beyond `history_limit` for one topic and status."""
        conn.execute(
            """
            DELETE FROM jobs
            WHERE topic = ? AND status = ?
              AND job_id NOT IN (
                  SELECT job_id FROM jobs
                  WHERE topic = ? AND status = ?
                  ORDER BY finished_at DESC, rowid DESC
                  LIMIT ?
              )
            """,
            (topic, status, topic, status, self.history_limit),
        )
        conn.execute(
            "DELETE FROM job_transitions WHERE job_id NOT IN (SELECT job_id FROM jobs)"
        )

    def _row_to_job(self, row: Dict[str, Any]) -> Job:
        """Convert SQLite row to Job model."""

        def parse(value):
            return datetime.fromisoformat(value) if value else None

        return Job(
            job_id=row["job_id"],
            topic=Topic(row["topic"]),
            payload=json.loads(row["payload"]) if row["payload"] else {},
            status=JobStatus(row["status"]),
            attempt_count=row["attempt_count"] or 0,
            max_attempts=row["max_attempts"] or self.max_attempts,
            stalled_count=row["stalled_count"] or 0,
            seq=row.get("seq"),
            enqueued_at=parse(row["enqueued_at"]),
            available_at=parse(row["available_at"]),
            started_at=parse(row["started_at"]),
            finished_at=parse(row["finished_at"]),
            last_heartbeat=parse(row["last_heartbeat"]),
            worker_id=row["worker_id"],
            result=json.loads(row["result"]) if row["result"] else None,
            failure_reason=row["failure_reason"],
            permanent=bool(row["permanent"]),
        )

    def _log_transition(
        self,
        conn: sqlite3.Connection,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        """Append to the audit trail inside the caller's transaction."""
        conn.execute(
            """
            INSERT INTO job_transitions
                (job_id, from_state, to_state, timestamp, worker_id, error_snippet)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (job_id, from_state, to_state, _now(), worker_id, error[:200] if error else None),
        )
