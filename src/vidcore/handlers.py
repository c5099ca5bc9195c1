"""Topic handlers run by the worker pools.

Each handler takes the raw job payload, validates it against the topic's
wire shape and returns a JSON-able result dict for the queue. Validation
failures are permanent: redelivering a malformed payload cannot help.
"""

import logging
from typing import Any, Dict

from pydantic import BaseModel, ValidationError

from .errors import InvalidPayload
from .lifecycle import VideoLifecycle
from .mailer import EmailSender
from .queue.models import EmailPayload, Job, VideoProcessingPayload
from .thumbnails import ThumbnailPipeline

logger = logging.getLogger(__name__)


def parse_payload(model: type, payload: Dict[str, Any]) -> BaseModel:
    """Validate `payload` against `model`, raising InvalidPayload on mismatch."""
    if not isinstance(payload, dict):
        raise InvalidPayload(f"Payload must be an object, got {type(payload).__name__}")
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "payload" for err in e.errors())
        raise InvalidPayload(f"Invalid {model.__name__} ({fields}): {e.error_count()} error(s)") from e


class VideoProcessingHandler:
    """Handler for `video-processing`: payload -> ThumbnailPipeline.run."""

    def __init__(self, pipeline: ThumbnailPipeline):
        self.pipeline = pipeline

    def __call__(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        job = parse_payload(VideoProcessingPayload, payload)
        result = self.pipeline.run(job.video_id, job.storage_key, job.user_id)
        return result.to_dict()


class EmailNotificationHandler:
    """Handler for `email-notifications`.

    Delivery is best effort: a rejected or failed send is logged and the job
    still completes, with `delivered: False` in its result.
    """

    def __init__(self, sender: EmailSender):
        self.sender = sender

    def __call__(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        message = parse_payload(EmailPayload, payload)
        try:
            self.sender.send(message.to, message.subject, message.html_body)
        except Exception as e:
            logger.error("Error sending email to %s: %s", message.to, e)
            text = str(e)
            if "not verified" in text:
                logger.error(
                    "Email address %s is not verified in SES; verify it in the SES console", message.to
                )
            elif "MessageRejected" in text:
                logger.error(
                    "Email to %s rejected; the SES account may be in sandbox mode", message.to
                )
            logger.warning("Email job completed with errors for %s", message.to)
            return {"to": message.to, "delivered": False, "error": f"{type(e).__name__}: {e}"}

        logger.info("Email sent to %s", message.to)
        return {"to": message.to, "delivered": True}


def mark_video_failed_on_exhaustion(lifecycle: VideoLifecycle):
    """Build the queue callback that fails the video once its job is given up on."""

    def callback(job: Job) -> None:
        video_id = job.payload.get("video_id") if isinstance(job.payload, dict) else None
        if not video_id:
            logger.warning("Exhausted job %s has no video_id; nothing to mark", job.job_id)
            return
        logger.error(
            "Job %s for video %s exhausted after %d attempt(s): %s",
            job.job_id, video_id, job.attempt_count, job.failure_reason,
        )
        lifecycle.mark_failed(video_id)

    return callback
