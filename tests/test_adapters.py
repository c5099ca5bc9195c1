"""Tests for the S3 object store and SES sender, using botocore's Stubber."""

import io

import boto3
import pytest
from botocore.response import StreamingBody
from botocore.stub import ANY, Stubber

from vidcore.errors import EmailDeliveryError, ObjectNotFound
from vidcore.mailer import SESEmailSender
from vidcore.models import EmailConfig, StorageConfig
from vidcore.storage import S3ObjectStore

CREDENTIALS = {"aws_access_key_id": "testing", "aws_secret_access_key": "testing"}


@pytest.fixture
def s3_client():
    return boto3.client("s3", region_name="us-east-1", **CREDENTIALS)


@pytest.fixture
def ses_client():
    return boto3.client("ses", region_name="us-east-1", **CREDENTIALS)


class TestS3ObjectStore:
    def test_requires_bucket(self):
        with pytest.raises(ValueError, match="AWS_S3_BUCKET"):
            S3ObjectStore.from_config(StorageConfig(bucket=None))

    def test_get_returns_stream(self, s3_client):
        store = S3ObjectStore("videos-bucket", client=s3_client)
        body = StreamingBody(io.BytesIO(b"mp4 bytes"), len(b"mp4 bytes"))

        with Stubber(s3_client) as stubber:
            stubber.add_response(
                "get_object", {"Body": body}, {"Bucket": "videos-bucket", "Key": "videos/u1/v1/clip.mp4"}
            )
            stream = store.get("videos/u1/v1/clip.mp4")

        assert stream.read() == b"mp4 bytes"

    def test_get_missing_key(self, s3_client):
        store = S3ObjectStore("videos-bucket", client=s3_client)

        with Stubber(s3_client) as stubber:
            stubber.add_client_error("get_object", service_error_code="NoSuchKey", http_status_code=404)
            with pytest.raises(ObjectNotFound) as exc_info:
                store.get("videos/u1/v1/clip.mp4")

        assert exc_info.value.key == "videos/u1/v1/clip.mp4"

    def test_get_other_errors_propagate(self, s3_client):
        from botocore.exceptions import ClientError

        store = S3ObjectStore("videos-bucket", client=s3_client)

        with Stubber(s3_client) as stubber:
            stubber.add_client_error("get_object", service_error_code="SlowDown", http_status_code=503)
            with pytest.raises(ClientError):
                store.get("videos/u1/v1/clip.mp4")

    def test_put_encrypts_and_stamps(self, s3_client):
        store = S3ObjectStore("videos-bucket", client=s3_client)

        with Stubber(s3_client) as stubber:
            stubber.add_response(
                "put_object",
                {"ETag": '"abc"'},
                {
                    "Bucket": "videos-bucket",
                    "Key": "thumbnails/u1/v1/thumbnail.jpg",
                    "Body": b"jpeg",
                    "ContentType": "image/jpeg",
                    "ServerSideEncryption": "AES256",
                    "Metadata": {"uploaded-at": ANY},
                },
            )
            store.put("thumbnails/u1/v1/thumbnail.jpg", b"jpeg", "image/jpeg")
            stubber.assert_no_pending_responses()

    def test_delete(self, s3_client):
        store = S3ObjectStore("videos-bucket", client=s3_client)

        with Stubber(s3_client) as stubber:
            stubber.add_response("delete_object", {}, {"Bucket": "videos-bucket", "Key": "videos/u1/v1/clip.mp4"})
            store.delete("videos/u1/v1/clip.mp4")
            stubber.assert_no_pending_responses()

    def test_presigned_urls(self, s3_client):
        store = S3ObjectStore("videos-bucket", presign_ttl_s=900, client=s3_client)

        upload = store.presign_upload("videos/u1/v1/clip.mp4", "video/mp4")
        download = store.presign_download("videos/u1/v1/clip.mp4", ttl=60)

        assert "videos/u1/v1/clip.mp4" in upload
        assert "Expires" in upload
        assert "videos/u1/v1/clip.mp4" in download


class TestSESEmailSender:
    def test_requires_sender(self):
        with pytest.raises(ValueError, match="AWS_SES_FROM_EMAIL"):
            SESEmailSender.from_config(EmailConfig(from_address=None))

    def test_send(self, ses_client):
        sender = SESEmailSender("noreply@example.com", client=ses_client)

        with Stubber(ses_client) as stubber:
            stubber.add_response(
                "send_email",
                {"MessageId": "m-1"},
                {
                    "Source": "noreply@example.com",
                    "Destination": {"ToAddresses": ["a@b.com"]},
                    "Message": {"Subject": {"Data": "s"}, "Body": {"Html": {"Data": "<p>x</p>"}}},
                },
            )
            sender.send("a@b.com", "s", "<p>x</p>")
            stubber.assert_no_pending_responses()

    def test_rejection_raises_delivery_error(self, ses_client):
        sender = SESEmailSender("noreply@example.com", client=ses_client)

        with Stubber(ses_client) as stubber:
            stubber.add_client_error(
                "send_email",
                service_error_code="MessageRejected",
                service_message="Email address is not verified.",
            )
            with pytest.raises(EmailDeliveryError, match="MessageRejected: Email address is not verified"):
                sender.send("a@b.com", "s", "<p>x</p>")
