"""Pydantic models for configuration and record validation."""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class QueueConfig(BaseModel):
    """Job queue persistence and retry policy."""

    db_path: str = Field(default="vidcore_queue.db", description="SQLite file holding job state")
    max_stall_retries: int = Field(
        default=3, ge=0, description="Stall-triggered redeliveries before a job is failed"
    )
    stall_interval_s: float = Field(
        default=30.0, gt=0.0, description="Heartbeat age after which an active job is stalled"
    )
    heartbeat_interval_s: float = Field(
        default=10.0, gt=0.0, description="How often a running job refreshes its lease"
    )
    retry_backoff_s: float = Field(
        default=5.0, ge=0.0, description="Base delay for exponential retry backoff"
    )
    history_limit: int = Field(
        default=100, ge=1, description="Completed/failed jobs kept per topic for inspection"
    )
    poll_interval_s: float = Field(
        default=1.0, gt=0.0, description="Sleep between dequeue polls when a topic is empty"
    )

    @property
    def max_attempts(self) -> int:
        """First delivery plus one per allowed stall retry."""
        return 1 + self.max_stall_retries

    @field_validator("heartbeat_interval_s")
    @classmethod
    def heartbeat_faster_than_stall(cls, v: float, info) -> float:
        """A lease must be refreshed before it can be declared stalled."""
        stall = info.data.get("stall_interval_s")
        if stall is not None and v >= stall:
            raise ValueError(
                f"heartbeat_interval_s ({v}) must be < stall_interval_s ({stall})"
            )
        return v


class WorkersConfig(BaseModel):
    """Per-topic concurrency."""

    video_concurrency: Literal[1] = Field(
        default=1, description="Frame extraction runs strictly serially"
    )
    email_concurrency: int = Field(default=4, ge=1, description="Parallel email senders")


class ExtractorConfig(BaseModel):
    """ffmpeg invocation for thumbnail extraction."""

    ffmpeg_path: Optional[str] = Field(
        default=None, description="ffmpeg executable (None = bundled imageio-ffmpeg binary)"
    )
    seek_offset_s: int = Field(default=5, ge=0, description="Offset of the extracted frame")
    timeout_s: float = Field(
        default=300.0, gt=0.0, description="Kill the extractor after this many seconds"
    )
    kill_grace_period_s: float = Field(
        default=5.0, gt=0.0, description="Grace period between SIGTERM and SIGKILL"
    )
    chunk_size: int = Field(
        default=64 * 1024, gt=0, description="Bytes per write into the extractor's stdin"
    )
    loglevel: str = Field(default="error", description="ffmpeg -loglevel value")


class StorageConfig(BaseModel):
    """Object store (S3) settings."""

    bucket: Optional[str] = Field(default=None, description="Bucket holding videos and thumbnails")
    region: str = Field(default="us-east-1", description="AWS region")
    presign_ttl_s: int = Field(default=3600, gt=0, description="Default presigned URL lifetime")


class EmailConfig(BaseModel):
    """Outbound email (SES) settings."""

    from_address: Optional[str] = Field(default=None, description="Verified SES sender")
    region: str = Field(default="us-east-1", description="AWS region")


class RecordsConfig(BaseModel):
    """Record store settings for the local SQLite implementation."""

    db_path: str = Field(default="vidcore_records.db", description="SQLite file holding records")


class VidcoreConfig(BaseModel):
    """Complete application configuration with validation."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    workers: WorkersConfig = Field(default_factory=WorkersConfig)
    extractor: ExtractorConfig = Field(default_factory=ExtractorConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    email: EmailConfig = Field(default_factory=EmailConfig)
    records: RecordsConfig = Field(default_factory=RecordsConfig)

    @classmethod
    def from_dict(cls, data: dict) -> "VidcoreConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "VidcoreConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if cli_args.get("db") is not None:
            config_dict["queue"]["db_path"] = cli_args["db"]
        if cli_args.get("records_db") is not None:
            config_dict["records"]["db_path"] = cli_args["records_db"]
        if cli_args.get("email_concurrency") is not None:
            config_dict["workers"]["email_concurrency"] = cli_args["email_concurrency"]
        if cli_args.get("ffmpeg") is not None:
            config_dict["extractor"]["ffmpeg_path"] = cli_args["ffmpeg"]
        if cli_args.get("bucket") is not None:
            config_dict["storage"]["bucket"] = cli_args["bucket"]

        return VidcoreConfig.from_dict(config_dict)


class VideoRecord(BaseModel):
    """Row of the `videos` collection, as read by the core."""

    id: str
    user_id: str
    title: Optional[str] = None
    filename: Optional[str] = None
    storage_key: str
    size: Optional[int] = Field(default=None, ge=0)
    duration: Optional[float] = None
    status: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ThumbnailRecord(BaseModel):
    """Row of the `thumbnails` collection."""

    id: Optional[str] = None
    video_id: str
    storage_key: str
    timestamp_offset_seconds: int = Field(ge=0)
    position: int = Field(default=1, ge=1)
    created_at: Optional[str] = None
