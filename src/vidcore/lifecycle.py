"""Video lifecycle state machine.

    PENDING_UPLOAD ──start_upload──▶ UPLOADING
          │                              │
          └────────confirm_upload────────┴──▶ PROCESSING ──▶ READY
                                                   │
                                                   └──────▶ FAILED ──(redelivery ok)──▶ READY

The status column on the video record is the only state. API actions move a
video up to PROCESSING; the thumbnail pipeline and the queue's exhausted
callback move it to READY or FAILED. READY never changes again. FAILED only
changes if a redelivered job for the same video succeeds. Nothing moves back
to an upload state or to PROCESSING once processing has started. Every write
is conditional on the status it was checked against, so of two concurrent
confirms only one reaches PROCESSING and enqueues a job.
"""

import logging
from enum import Enum
from typing import Dict, FrozenSet, Optional

from .errors import InvalidTransition, VideoNotFound
from .models import VideoRecord
from .records import RecordStore, utc_now

logger = logging.getLogger(__name__)

VIDEOS = "videos"


class VideoStatus(str, Enum):
    PENDING_UPLOAD = "PENDING_UPLOAD"
    UPLOADING = "UPLOADING"
    PROCESSING = "PROCESSING"
    READY = "READY"
    FAILED = "FAILED"


INITIAL_STATUSES: FrozenSet[VideoStatus] = frozenset(
    {VideoStatus.PENDING_UPLOAD, VideoStatus.UPLOADING}
)

ALLOWED_TRANSITIONS: Dict[VideoStatus, FrozenSet[VideoStatus]] = {
    # Jobs enqueued without a confirm step may finish straight from an upload state
    VideoStatus.PENDING_UPLOAD: frozenset(
        {VideoStatus.UPLOADING, VideoStatus.PROCESSING, VideoStatus.READY, VideoStatus.FAILED}
    ),
    VideoStatus.UPLOADING: frozenset(
        {VideoStatus.UPLOADING, VideoStatus.PROCESSING, VideoStatus.READY, VideoStatus.FAILED}
    ),
    VideoStatus.PROCESSING: frozenset({VideoStatus.READY, VideoStatus.FAILED}),
    VideoStatus.FAILED: frozenset({VideoStatus.READY, VideoStatus.FAILED}),
    VideoStatus.READY: frozenset({VideoStatus.READY}),
}


def can_transition(from_status: VideoStatus, to_status: VideoStatus) -> bool:
    return VideoStatus(to_status) in ALLOWED_TRANSITIONS[VideoStatus(from_status)]


def is_terminal(status: VideoStatus) -> bool:
    """No automatic transition leaves this status."""
    return VideoStatus(status) in (VideoStatus.READY, VideoStatus.FAILED)


class VideoLifecycle:
    """Reads and writes the status field of video records."""

    def __init__(self, record_store: RecordStore):
        self.records = record_store

    def get(self, video_id: str, user_id: Optional[str] = None) -> VideoRecord:
        """Load a video, optionally requiring ownership by `user_id`."""
        filter = {"id": video_id}
        if user_id is not None:
            filter["user_id"] = user_id
        rows = self.records.select(VIDEOS, filter)
        if not rows:
            raise VideoNotFound(video_id)
        return VideoRecord(**rows[0])

    def transition(
        self, video_id: str, to_status: VideoStatus, user_id: Optional[str] = None
    ) -> VideoRecord:
        """Move a video to `to_status`, enforcing the transition table.

        Raises:
            VideoNotFound: No such video (or not owned by `user_id`)
            InvalidTransition: The move is not allowed from the current status,
                or another writer changed the status first
        """
        to_status = VideoStatus(to_status)
        video = self.get(video_id, user_id)
        current = VideoStatus(video.status)

        if not can_transition(current, to_status):
            raise InvalidTransition(video_id, current.value, to_status.value)

        now = utc_now()
        changed = self.records.update(
            VIDEOS,
            video_id,
            {"status": to_status.value, "updated_at": now},
            expected={"status": current.value},
        )
        if not changed:
            # Another writer moved the video after it was read
            latest = self.get(video_id)
            raise InvalidTransition(video_id, latest.status, to_status.value)
        logger.info("Video %s: %s -> %s", video_id, current.value, to_status.value)
        return video.model_copy(update={"status": to_status.value, "updated_at": now})

    def start_upload(self, video_id: str, user_id: str) -> VideoRecord:
        return self.transition(video_id, VideoStatus.UPLOADING, user_id)

    def begin_processing(self, video_id: str, user_id: str) -> VideoRecord:
        return self.transition(video_id, VideoStatus.PROCESSING, user_id)

    def mark_ready(self, video_id: str) -> bool:
        """Best-effort READY write. Returns False (and logs) on failure."""
        return self._mark_best_effort(video_id, VideoStatus.READY)

    def mark_failed(self, video_id: str) -> bool:
        """Best-effort FAILED write. Returns False (and logs) on failure."""
        return self._mark_best_effort(video_id, VideoStatus.FAILED)

    def _mark_best_effort(self, video_id: str, status: VideoStatus) -> bool:
        try:
            self.transition(video_id, status)
        except InvalidTransition as e:
            logger.warning("Not marking video %s %s: %s", video_id, status.value, e)
            return False
        except Exception:
            logger.exception("Failed to write status %s for video %s", status.value, video_id)
            return False
        return True
