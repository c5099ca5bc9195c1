"""Email sender interface and its SES implementation."""

from abc import ABC, abstractmethod

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import EmailDeliveryError


class EmailSender(ABC):
    @abstractmethod
    def send(self, to: str, subject: str, html_body: str) -> None:
        """Deliver one HTML message. Raises EmailDeliveryError on rejection."""


class SESEmailSender(EmailSender):
    """Sends through Amazon SES from a verified address."""

    def __init__(self, from_address: str, region: str = "us-east-1", client=None):
        if not from_address:
            raise ValueError("SES sender address is not configured (AWS_SES_FROM_EMAIL)")
        self.from_address = from_address
        self.ses_client = client or boto3.client("ses", region_name=region)

    @classmethod
    def from_config(cls, email_config) -> "SESEmailSender":
        return cls(from_address=email_config.from_address, region=email_config.region)

    def send(self, to: str, subject: str, html_body: str) -> None:
        try:
            self.ses_client.send_email(
                Source=self.from_address,
                Destination={"ToAddresses": [to]},
                Message={
                    "Subject": {"Data": subject},
                    "Body": {"Html": {"Data": html_body}},
                },
            )
        except ClientError as e:
            error = e.response.get("Error", {})
            raise EmailDeliveryError(
                f"{error.get('Code', 'ClientError')}: {error.get('Message', str(e))}"
            ) from e
        except BotoCoreError as e:
            raise EmailDeliveryError(str(e)) from e
