"""
media/storage.py -- S3 presigned upload URLs.

The browser uploads the video straight to the bucket with a short-lived
presigned PUT URL; the API never proxies the bytes. Upload constraints
(name, content type, size) are checked by validate_upload() before signing.

.env:
  AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY   -- optional, boto3's default
                                               credential chain otherwise
  AWS_REGION=ap-south-1
  BUCKET_NAME=captionme-uploads
  PRESIGN_EXPIRE_SECONDS=60
"""

from __future__ import annotations

import logging
import re

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from core.config import Settings
from core.errors import UpstreamError, ValidationError

logger = logging.getLogger("captionme.media.storage")

# Bounded timeouts for every AWS call made by this service.
BOTO_CONFIG = Config(connect_timeout=5, read_timeout=10, retries={"max_attempts": 2})


def make_boto_client(service: str, settings: Settings):
    """Create a boto3 client for service using explicit keys when configured."""
    kwargs: dict = {"region_name": settings.aws_region, "config": BOTO_CONFIG}
    if settings.aws_access_key_id and settings.aws_secret_access_key:
        kwargs["aws_access_key_id"] = settings.aws_access_key_id
        kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
    return boto3.client(service, **kwargs)


# The object key doubles as the Transcribe job name, which allows only these
# characters and at most 200 of them; the "u<id>-" owner prefix takes the rest.
FILE_NAME_PATTERN = re.compile(r"^[0-9A-Za-z_-][0-9A-Za-z._-]{0,179}\Z")


def validate_file_name(file_name: str) -> None:
    if not FILE_NAME_PATTERN.match(file_name or ""):
        raise ValidationError(
            "Invalid file name. Use letters, digits, dots, dashes and underscores only.",
            code="invalid_file_name",
        )


def object_key(user_id: int, file_name: str) -> str:
    """Bucket key for one user's upload. Keeps users out of each other's files."""
    return f"u{user_id}-{file_name}"


def validate_upload(file_name: str, file_size: int, file_type: str, settings: Settings) -> None:
    """Reject uploads the pipeline cannot process.

    Raises ValidationError (400) with a client-readable reason.
    """
    validate_file_name(file_name)
    if file_type not in settings.upload_types:
        raise ValidationError("Invalid file format.", code="invalid_file_type")
    if file_size <= 0 or file_size > settings.max_upload_bytes:
        limit_mb = settings.max_upload_bytes // (1024 * 1024)
        raise ValidationError(
            f"Invalid file size. Upload files smaller than {limit_mb} MB.",
            code="invalid_file_size",
        )


class UploadSigner:
    """Signs PUT URLs for one bucket."""

    def __init__(self, client, bucket: str, expires_in: int) -> None:
        self._client = client
        self._bucket = bucket
        self._expires_in = expires_in

    def presign_put(self, key: str, content_type: str) -> str:
        try:
            return self._client.generate_presigned_url(
                "put_object",
                Params={"Bucket": self._bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=self._expires_in,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("Presigning %s failed: %s", key, exc)
            raise UpstreamError() from exc
