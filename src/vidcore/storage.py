"""Object store interface and its S3 implementation."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import BinaryIO, Optional

import boto3
from botocore.exceptions import ClientError

from .errors import ObjectNotFound

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


class ObjectStore(ABC):
    """Blob storage keyed by string."""

    @abstractmethod
    def get(self, key: str) -> BinaryIO:
        """Open a read stream. Raises ObjectNotFound if the key is absent."""

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> None:
        """Write (or overwrite) an object."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove an object. Absent keys are not an error."""

    @abstractmethod
    def presign_upload(self, key: str, content_type: str, ttl: Optional[int] = None) -> str:
        """Time-limited URL a client can PUT the object to."""

    @abstractmethod
    def presign_download(self, key: str, ttl: Optional[int] = None) -> str:
        """Time-limited URL a client can GET the object from."""


class S3ObjectStore(ObjectStore):
    """Object store backed by one S3 bucket."""

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        presign_ttl_s: int = 3600,
        client=None,
    ):
        if not bucket:
            raise ValueError("S3 bucket name is not configured (AWS_S3_BUCKET)")
        self.bucket = bucket
        self.region = region
        self.presign_ttl_s = presign_ttl_s
        self.s3_client = client or boto3.client("s3", region_name=region)

    @classmethod
    def from_config(cls, storage_config) -> "S3ObjectStore":
        return cls(
            bucket=storage_config.bucket,
            region=storage_config.region,
            presign_ttl_s=storage_config.presign_ttl_s,
        )

    def get(self, key: str) -> BinaryIO:
        try:
            response = self.s3_client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response["Error"]["Code"] in NOT_FOUND_CODES:
                raise ObjectNotFound(key) from e
            raise
        return response["Body"]

    def put(self, key: str, data: bytes, content_type: str) -> None:
        response = self.s3_client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
            ServerSideEncryption="AES256",
            Metadata={"uploaded-at": datetime.now(timezone.utc).isoformat()},
        )
        logger.debug("Stored s3://%s/%s (%d bytes, ETag %s)", self.bucket, key, len(data), response.get("ETag"))

    def delete(self, key: str) -> None:
        self.s3_client.delete_object(Bucket=self.bucket, Key=key)

    def presign_upload(self, key: str, content_type: str, ttl: Optional[int] = None) -> str:
        return self.s3_client.generate_presigned_url(
            "put_object",
            Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=ttl or self.presign_ttl_s,
        )

    def presign_download(self, key: str, ttl: Optional[int] = None) -> str:
        return self.s3_client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=ttl or self.presign_ttl_s,
        )
