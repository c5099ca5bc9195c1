"""Exception taxonomy for the job core.

Handlers raise these; the worker pool turns them into queue outcomes:

    PermanentJobError   -> job failed, never redelivered
    TransientJobError   -> job retried until the attempt ceiling
    anything else       -> treated as transient

Email delivery errors never reach the worker (the email handler swallows
them after logging), and status-write failures are logged by the lifecycle
helpers without replacing the job outcome.
"""

from typing import Optional


class VidcoreError(Exception):
    """Base class for all vidcore errors."""


class ServiceUnavailable(VidcoreError):
    """Raised by every operation on a service handle that failed to start."""

    def __init__(self, reason: str):
        super().__init__(f"Job service unavailable: {reason}")
        self.reason = reason


class QueueError(VidcoreError):
    """Persisting or reading job state failed."""


class JobError(VidcoreError):
    """Base class for failures raised from a job handler."""

    retryable = True


class PermanentJobError(JobError):
    """Failure that will not go away on redelivery."""

    retryable = False


class TransientJobError(JobError):
    """Failure that may succeed on a later attempt."""

    retryable = True


class InvalidPayload(PermanentJobError):
    """Job payload is missing required fields or has the wrong shape."""


class SourceObjectMissing(PermanentJobError):
    """The video object referenced by a job is absent from the store."""

    def __init__(self, storage_key: str):
        super().__init__(f"Video object not found in store: {storage_key}")
        self.storage_key = storage_key


class ExtractorFailed(TransientJobError):
    """The frame extractor exited nonzero or produced no image."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class ExtractorTimeout(ExtractorFailed):
    """The frame extractor ran past its global timeout and was killed."""


class ExpectedEarlyClose(VidcoreError):
    """The extractor closed its stdin before consuming the whole stream.

    ffmpeg stops reading once it has the requested frame, so writes after
    that point fail with a broken pipe. Not an error for the pipeline.
    """


class ObjectNotFound(VidcoreError):
    """Object store has no object under the requested key."""

    def __init__(self, key: str):
        super().__init__(f"No such object: {key}")
        self.key = key


class EmailDeliveryError(VidcoreError):
    """The email provider rejected or failed to send a message."""


class VideoNotFound(VidcoreError):
    """No video record with the given id (and owner, when checked)."""

    def __init__(self, video_id: str):
        super().__init__(f"Video not found: {video_id}")
        self.video_id = video_id


class InvalidTransition(VidcoreError):
    """Requested video status change is not allowed by the lifecycle."""

    def __init__(self, video_id: str, from_status: Optional[str], to_status: str):
        super().__init__(
            f"Video {video_id}: cannot move from {from_status} to {to_status}"
        )
        self.video_id = video_id
        self.from_status = from_status
        self.to_status = to_status
