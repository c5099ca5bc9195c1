"""Tests for the topic handlers and the exhausted-job callback."""

import time

import pytest
from conftest import RecordingEmailSender, rejecting_sender, video_status

from vidcore.errors import InvalidPayload
from vidcore.handlers import (
    EmailNotificationHandler,
    VideoProcessingHandler,
    mark_video_failed_on_exhaustion,
)
from vidcore.queue import Job, JobStatus, Topic, execute_job


class TestVideoProcessingHandler:
    def test_runs_pipeline(self, pipeline, records, make_video):
        storage_key = make_video(status="PROCESSING")
        handler = VideoProcessingHandler(pipeline)

        result = handler({"video_id": "v1", "storage_key": storage_key, "user_id": "u1"})

        assert result["thumbnail_key"] == "thumbnails/u1/v1/thumbnail.jpg"
        assert result["ready"] is True
        assert video_status(records, "v1") == "READY"

    @pytest.mark.parametrize(
        "payload",
        [
            {"storage_key": "videos/u1/v1/clip.mp4", "user_id": "u1"},
            {"video_id": "", "storage_key": "videos/u1/v1/clip.mp4", "user_id": "u1"},
            {"video_id": "v1", "storage_key": "   ", "user_id": "u1"},
            {"video_id": "v1", "storage_key": "videos/u1/v1/clip.mp4", "user_id": None},
            ["v1", "videos/u1/v1/clip.mp4", "u1"],
        ],
    )
    def test_invalid_payload_is_permanent(self, pipeline, extractor, payload):
        with pytest.raises(InvalidPayload) as exc_info:
            VideoProcessingHandler(pipeline)(payload)
        assert exc_info.value.retryable is False
        assert extractor.calls == 0

    def test_invalid_payload_job_fails_without_redelivery(self, queue, pipeline):
        job_id = queue.enqueue(Topic.VIDEO_PROCESSING, {"video_id": "v1"})
        job = queue.dequeue(Topic.VIDEO_PROCESSING, "w1")

        result = execute_job(queue, job, VideoProcessingHandler(pipeline))

        assert result.status == JobStatus.FAILED
        assert queue.get_job(job_id).permanent is True
        assert queue.dequeue(Topic.VIDEO_PROCESSING, "w1") is None


class TestEmailNotificationHandler:
    def test_sends(self):
        sender = RecordingEmailSender()
        result = EmailNotificationHandler(sender)({"to": "a@b.com", "subject": "s", "html_body": "<p>x</p>"})

        assert sender.sent == [("a@b.com", "s", "<p>x</p>")]
        assert result == {"to": "a@b.com", "delivered": True}

    def test_rejection_still_completes(self, queue, caplog):
        job_id = queue.enqueue(
            Topic.EMAIL_NOTIFICATIONS, {"to": "a@b.com", "subject": "s", "html_body": "<p>x</p>"}
        )
        job = queue.dequeue(Topic.EMAIL_NOTIFICATIONS, "w1")

        result = execute_job(queue, job, EmailNotificationHandler(rejecting_sender()))

        assert result.status == JobStatus.COMPLETED
        assert result.result["delivered"] is False
        assert "MessageRejected" in result.result["error"]
        assert queue.get_job(job_id).status == JobStatus.COMPLETED
        assert "completed with errors" in caplog.text

    def test_unverified_address_hint(self, caplog):
        handler = EmailNotificationHandler(rejecting_sender("Email address is not verified"))
        handler({"to": "a@b.com", "subject": "s", "html_body": "x"})
        assert "not verified in SES" in caplog.text

    def test_unexpected_sender_error_is_swallowed(self):
        handler = EmailNotificationHandler(RecordingEmailSender(error=TimeoutError("read timeout")))
        result = handler({"to": "a@b.com", "subject": "s", "html_body": "x"})
        assert result["delivered"] is False

    def test_missing_field_is_permanent(self):
        with pytest.raises(InvalidPayload):
            EmailNotificationHandler(RecordingEmailSender())({"to": "a@b.com", "subject": "s"})


class TestExhaustedCallback:
    def test_marks_video_failed(self, lifecycle, records, make_video):
        make_video(status="PROCESSING")
        callback = mark_video_failed_on_exhaustion(lifecycle)

        callback(Job(job_id="j1", topic=Topic.VIDEO_PROCESSING, payload={"video_id": "v1"},
                     status=JobStatus.FAILED, attempt_count=4))

        assert video_status(records, "v1") == "FAILED"

    def test_leaves_ready_video_alone(self, lifecycle, records, make_video):
        make_video(status="READY")
        callback = mark_video_failed_on_exhaustion(lifecycle)

        callback(Job(job_id="j1", topic=Topic.VIDEO_PROCESSING, payload={"video_id": "v1"}))

        assert video_status(records, "v1") == "READY"

    def test_payload_without_video_id(self, lifecycle):
        callback = mark_video_failed_on_exhaustion(lifecycle)
        callback(Job(job_id="j1", topic=Topic.VIDEO_PROCESSING, payload={}))

    def test_stall_exhaustion_marks_video_failed(self, queue, lifecycle, records, make_video):
        storage_key = make_video(status="PROCESSING")
        queue.on_exhausted(Topic.VIDEO_PROCESSING, mark_video_failed_on_exhaustion(lifecycle))
        queue.enqueue(Topic.VIDEO_PROCESSING, {"video_id": "v1", "storage_key": storage_key, "user_id": "u1"},
                      max_attempts=1)
        queue.dequeue(Topic.VIDEO_PROCESSING, "crashed-worker")
        time.sleep(0.02)

        assert queue.recover_stalled(Topic.VIDEO_PROCESSING, 0.01, 3) == (0, 1)
        assert video_status(records, "v1") == "FAILED"
