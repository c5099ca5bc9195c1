"""Pydantic models for job queue data structures.

This module defines the type-safe models used throughout the queue system:
the job record itself, the per-topic payload shapes, and the read models
returned by the observability calls.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class Topic(str, Enum):
    """Named lanes of the queue. Each has its own ordering and concurrency."""

    VIDEO_PROCESSING = "video-processing"
    EMAIL_NOTIFICATIONS = "email-notifications"


class JobStatus(str, Enum):
    """Job processing states with explicit semantics.

    State transitions:
        waiting → active      (worker dequeues)
        active → completed    (handler returned)
        active → waiting      (transient failure or stall, attempts left)
        active → failed       (permanent failure or attempts exhausted)
        failed → waiting      (operator retry)
    """

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class Job(BaseModel):
    """A job record as stored by the queue."""

    job_id: str = Field(..., description="Unique job identifier (UUID)")
    topic: Topic = Field(..., description="Queue lane")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Handler input")
    status: JobStatus = Field(default=JobStatus.WAITING, description="Current job state")
    attempt_count: int = Field(default=0, ge=0, description="Finished deliveries so far")
    max_attempts: int = Field(default=4, ge=1, description="Delivery ceiling")
    stalled_count: int = Field(default=0, ge=0, description="Times the lease expired")
    seq: Optional[int] = Field(default=None, description="Enqueue order within the store")
    enqueued_at: datetime = Field(default_factory=datetime.now, description="Queue time")
    available_at: Optional[datetime] = Field(
        default=None, description="Not eligible for dequeue before this time (retry backoff)"
    )
    started_at: Optional[datetime] = Field(default=None, description="Last claim time")
    finished_at: Optional[datetime] = Field(default=None, description="Completion time")
    last_heartbeat: Optional[datetime] = Field(default=None, description="Lease refresh time")
    worker_id: Optional[str] = Field(default=None, description="Worker holding the lease")
    result: Optional[Dict[str, Any]] = Field(default=None, description="Handler return value")
    failure_reason: Optional[str] = Field(default=None, description="Last error (truncated)")
    permanent: bool = Field(default=False, description="Failed without retry eligibility")


class JobResult(BaseModel):
    """Outcome of one job execution, as reported by the worker."""

    job_id: str = Field(..., description="Job identifier")
    status: JobStatus = Field(..., description="completed, failed, or waiting (requeued)")
    result: Dict[str, Any] = Field(default_factory=dict, description="Handler return value")
    error_message: Optional[str] = Field(default=None, description="Error details if failed")
    retryable: bool = Field(default=False, description="Failure was eligible for redelivery")
    duration_s: float = Field(default=0.0, ge=0.0, description="Processing time in seconds")


class QueueCounts(BaseModel):
    """Number of jobs per status for one topic."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed


class QueueStatus(BaseModel):
    """Observability snapshot of one topic."""

    topic: Topic
    counts: QueueCounts = Field(default_factory=QueueCounts)
    recent: List[Job] = Field(default_factory=list)


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    job_id: str = Field(..., description="Job identifier")
    from_state: Optional[str] = Field(default=None, description="Previous state")
    to_state: str = Field(..., description="New state")
    timestamp: datetime = Field(default_factory=datetime.now, description="Transition time")
    worker_id: Optional[str] = Field(default=None, description="Worker that caused transition")
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")


class VideoProcessingPayload(BaseModel):
    """Wire shape of a `video-processing` job."""

    video_id: str
    storage_key: str
    user_id: str

    @field_validator("video_id", "storage_key", "user_id")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must be a non-empty string")
        return v


class EmailPayload(BaseModel):
    """Wire shape of an `email-notifications` job."""

    to: str
    subject: str
    html_body: str

    @field_validator("to", "subject", "html_body")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must be a non-empty string")
        return v
