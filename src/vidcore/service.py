"""Job service: the one object the API layer and the worker process hold.

Built once at process start from the config and the external adapters. If
any part of that fails (no bucket configured, queue database unreachable)
the result is still a JobService, just an unavailable one: every operation
raises ServiceUnavailable with the original reason, so callers check for one
error type instead of a missing queue.

Example:
    >>> service = JobService.from_config(resolve_config())
    >>> job_id = service.confirm_upload(video_id, user_id)
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from .errors import ServiceUnavailable, VidcoreError
from .extractor import FrameExtractor
from .handlers import (
    EmailNotificationHandler,
    VideoProcessingHandler,
    mark_video_failed_on_exhaustion,
    parse_payload,
)
from .lifecycle import VideoLifecycle
from .mailer import EmailSender, SESEmailSender
from .models import VideoRecord, VidcoreConfig
from .queue import (
    EmailPayload,
    JobWorkerPool,
    QueueBackend,
    QueueStatus,
    SQLiteQueue,
    Topic,
    VideoProcessingPayload,
)
from .records import RecordStore, SQLiteRecordStore
from .storage import ObjectStore, S3ObjectStore
from .thumbnails import ThumbnailPipeline

logger = logging.getLogger(__name__)

RECENT_JOBS = 10


class JobService:
    """Capability-checked handle over the queue, handlers and lifecycle."""

    def __init__(
        self,
        config: Optional[VidcoreConfig] = None,
        queue: Optional[QueueBackend] = None,
        lifecycle: Optional[VideoLifecycle] = None,
        handlers: Optional[Dict[Topic, Callable]] = None,
        unavailable_reason: Optional[str] = None,
    ):
        self.config = config or VidcoreConfig()
        self._queue = queue
        self._lifecycle = lifecycle
        self._handlers = handlers or {}
        self.unavailable_reason = unavailable_reason
        if queue is None and unavailable_reason is None:
            self.unavailable_reason = "no queue backend"

    @classmethod
    def create(
        cls,
        config: VidcoreConfig,
        object_store: ObjectStore,
        record_store: RecordStore,
        email_sender: EmailSender,
        extractor: Optional[FrameExtractor] = None,
        queue: Optional[QueueBackend] = None,
    ) -> "JobService":
        """Wire the service from injected adapters. Never raises."""
        try:
            queue = queue or SQLiteQueue.from_config(config.queue)
            extractor = extractor or FrameExtractor.from_config(config.extractor)
            lifecycle = VideoLifecycle(record_store)
            pipeline = ThumbnailPipeline(object_store, record_store, extractor, lifecycle)
            handlers = {
                Topic.VIDEO_PROCESSING: VideoProcessingHandler(pipeline),
                Topic.EMAIL_NOTIFICATIONS: EmailNotificationHandler(email_sender),
            }
            queue.on_exhausted(Topic.VIDEO_PROCESSING, mark_video_failed_on_exhaustion(lifecycle))
        except Exception as e:
            logger.error("Job service failed to start: %s: %s", type(e).__name__, e)
            return cls.unavailable(f"{type(e).__name__}: {e}", config)

        return cls(config=config, queue=queue, lifecycle=lifecycle, handlers=handlers)

    @classmethod
    def from_config(cls, config: VidcoreConfig) -> "JobService":
        """Build the production adapters (S3, SES, SQLite records) and the service."""
        try:
            object_store = S3ObjectStore.from_config(config.storage)
            record_store = SQLiteRecordStore.from_config(config.records)
            email_sender = SESEmailSender.from_config(config.email)
        except Exception as e:
            logger.error("Adapter setup failed: %s: %s", type(e).__name__, e)
            return cls.unavailable(f"{type(e).__name__}: {e}", config)
        return cls.create(config, object_store, record_store, email_sender)

    @classmethod
    def unavailable(cls, reason: str, config: Optional[VidcoreConfig] = None) -> "JobService":
        return cls(config=config, unavailable_reason=reason)

    @property
    def available(self) -> bool:
        return self.unavailable_reason is None

    @property
    def queue(self) -> QueueBackend:
        self._require()
        return self._queue

    @property
    def lifecycle(self) -> VideoLifecycle:
        self._require()
        return self._lifecycle

    def handler(self, topic: Topic) -> Callable[[Dict[str, Any]], Dict[str, Any]]:
        self._require()
        return self._handlers[Topic(topic)]

    def _require(self) -> None:
        if not self.available:
            raise ServiceUnavailable(self.unavailable_reason)

    # Enqueue

    def enqueue_video_processing(self, video_id: str, storage_key: str, user_id: str) -> str:
        """Queue thumbnail extraction for a video.

        Raises:
            ServiceUnavailable: The service failed to start
            InvalidPayload: A field is empty
            QueueError: The job could not be persisted
        """
        self._require()
        payload = parse_payload(
            VideoProcessingPayload,
            {"video_id": video_id, "storage_key": storage_key, "user_id": user_id},
        )
        job_id = self._queue.enqueue(
            Topic.VIDEO_PROCESSING, payload.model_dump(), max_attempts=self.config.queue.max_attempts
        )
        logger.info("Queued video processing job %s for video %s", job_id, video_id)
        return job_id

    def enqueue_email(self, to: str, subject: str, html_body: str) -> str:
        self._require()
        payload = parse_payload(EmailPayload, {"to": to, "subject": subject, "html_body": html_body})
        job_id = self._queue.enqueue(
            Topic.EMAIL_NOTIFICATIONS, payload.model_dump(), max_attempts=self.config.queue.max_attempts
        )
        logger.info("Queued email job %s to %s", job_id, to)
        return job_id

    def try_enqueue_email(self, to: str, subject: str, html_body: str) -> Optional[str]:
        """Degraded-mode enqueue: a notification is never worth failing the caller."""
        try:
            return self.enqueue_email(to, subject, html_body)
        except VidcoreError as e:
            logger.warning("Email to %s not queued: %s", to, e)
            return None

    # Observability

    def get_queue_status(self, topic: Topic, n: int = RECENT_JOBS) -> QueueStatus:
        self._require()
        topic = Topic(topic)
        return QueueStatus(
            topic=topic,
            counts=self._queue.counts(topic),
            recent=self._queue.recent(topic, n),
        )

    # Upload lifecycle

    def start_upload(self, video_id: str, user_id: str) -> VideoRecord:
        self._require()
        return self._lifecycle.start_upload(video_id, user_id)

    def confirm_upload(self, video_id: str, user_id: str) -> str:
        """Move an uploaded video to PROCESSING and queue its processing job.

        The status write comes first so a second confirm is rejected by the
        lifecycle instead of queueing a duplicate. If the enqueue then fails
        the video is marked FAILED and the error propagates.

        Raises:
            VideoNotFound: No such video owned by `user_id`
            InvalidTransition: The video is already processing or finished
            QueueError: The job could not be persisted
        """
        self._require()
        video = self._lifecycle.begin_processing(video_id, user_id)
        try:
            return self.enqueue_video_processing(video.id, video.storage_key, video.user_id)
        except Exception:
            logger.exception("Could not queue processing for video %s", video_id)
            self._lifecycle.mark_failed(video_id)
            raise

    # Workers

    def worker_pool(self, topic: Topic) -> JobWorkerPool:
        """Pool for `topic` sized from config (not started)."""
        self._require()
        topic = Topic(topic)
        queue_config = self.config.queue
        if topic == Topic.VIDEO_PROCESSING:
            concurrency = self.config.workers.video_concurrency
        else:
            concurrency = self.config.workers.email_concurrency
        return JobWorkerPool(
            self._queue,
            topic,
            self._handlers[topic],
            concurrency=concurrency,
            poll_interval_s=queue_config.poll_interval_s,
            heartbeat_interval_s=queue_config.heartbeat_interval_s,
            stall_interval_s=queue_config.stall_interval_s,
            max_stall_retries=queue_config.max_stall_retries,
        )

    def start_workers(self, topics: Optional[List[Topic]] = None) -> List[JobWorkerPool]:
        """Start one pool per topic (both topics by default) and return them."""
        self._require()
        pools = []
        for topic in topics or list(Topic):
            pool = self.worker_pool(topic)
            pool.start()
            pools.append(pool)
        return pools
