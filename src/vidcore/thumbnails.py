"""Thumbnail extraction pipeline: the video-processing job's work.

Steps, in order:
1. Open the source video from the object store
2. Pipe it through the frame extractor
3. Write the JPEG under a key derived from user and video
4. Index it with a thumbnail record
5. Mark the video READY

The object is always written before its record, so a record never points at
a missing object. A failure before READY marks the video FAILED and
re-raises; an object written before a failed record insert is left behind.
"""

import logging
import time
from dataclasses import dataclass

from .errors import ObjectNotFound, SourceObjectMissing
from .extractor import FrameExtractor
from .lifecycle import VideoLifecycle
from .models import ThumbnailRecord
from .records import RecordStore
from .storage import ObjectStore

logger = logging.getLogger(__name__)

THUMBNAILS = "thumbnails"
THUMBNAIL_CONTENT_TYPE = "image/jpeg"
THUMBNAIL_POSITION = 1


def thumbnail_key(user_id: str, video_id: str) -> str:
    """Deterministic per video, so a rerun overwrites instead of adding."""
    return f"thumbnails/{user_id}/{video_id}/thumbnail.jpg"


@dataclass
class ThumbnailResult:
    video_id: str
    storage_key: str
    thumbnail_id: str
    size_bytes: int
    duration_s: float
    ready: bool

    def to_dict(self) -> dict:
        return {
            "video_id": self.video_id,
            "thumbnail_key": self.storage_key,
            "thumbnail_id": self.thumbnail_id,
            "size_bytes": self.size_bytes,
            "duration_s": round(self.duration_s, 3),
            "ready": self.ready,
        }


class ThumbnailPipeline:
    """Produces and persists exactly one still frame per video."""

    def __init__(
        self,
        object_store: ObjectStore,
        record_store: RecordStore,
        extractor: FrameExtractor,
        lifecycle: VideoLifecycle,
    ):
        self.objects = object_store
        self.records = record_store
        self.extractor = extractor
        self.lifecycle = lifecycle

    def run(self, video_id: str, storage_key: str, user_id: str) -> ThumbnailResult:
        """Extract, store and index the thumbnail, then mark the video READY.

        Raises:
            SourceObjectMissing: No object under `storage_key` (permanent)
            ExtractorFailed: Extractor exited nonzero or timed out (transient)
            Exception: Store errors propagate unchanged (transient)
        """
        start_time = time.time()
        logger.info("Extracting thumbnail for video %s from %s", video_id, storage_key)

        try:
            image = self._extract(storage_key)

            key = thumbnail_key(user_id, video_id)
            self.objects.put(key, image, THUMBNAIL_CONTENT_TYPE)

            record = self._index(video_id, key)
        except Exception as e:
            logger.error("Thumbnail for video %s failed: %s: %s", video_id, type(e).__name__, e)
            self.lifecycle.mark_failed(video_id)
            raise

        ready = self.lifecycle.mark_ready(video_id)
        duration = time.time() - start_time
        logger.info(
            "Thumbnail for video %s stored at %s (%d bytes, %.2fs)",
            video_id, key, len(image), duration,
        )
        return ThumbnailResult(
            video_id=video_id,
            storage_key=key,
            thumbnail_id=record["id"],
            size_bytes=len(image),
            duration_s=duration,
            ready=ready,
        )

    def _extract(self, storage_key: str) -> bytes:
        try:
            stream = self.objects.get(storage_key)
        except ObjectNotFound as e:
            raise SourceObjectMissing(storage_key) from e

        try:
            return self.extractor.extract(stream)
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

    def _index(self, video_id: str, key: str) -> dict:
        """One record per video and position; a rerun refreshes the existing one."""
        fields = ThumbnailRecord(
            video_id=video_id,
            storage_key=key,
            timestamp_offset_seconds=self.extractor.seek_offset_s,
            position=THUMBNAIL_POSITION,
        ).model_dump(exclude_none=True)
        existing = self.records.select(
            THUMBNAILS, {"video_id": video_id, "position": THUMBNAIL_POSITION}
        )
        if existing:
            self.records.update(THUMBNAILS, existing[0]["id"], fields)
            return {**existing[0], **fields}
        return self.records.insert(THUMBNAILS, fields)
