"""
Media Storage Service - durable storage of WhatsApp attachments in S3
"""
import asyncio
import uuid
from dataclasses import dataclass

from botocore.exceptions import BotoCoreError, ClientError

from grievance_bot.core.config import settings
from grievance_bot.core.exceptions import (
    MediaTooLargeError,
    StorageException,
    StorageNotConfiguredError,
    UnsupportedMediaTypeError,
)
from grievance_bot.core.logging import get_logger, log_async_operation

logger = get_logger(__name__)

ALLOWED_IMAGE_TYPES = frozenset({
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
})

ALLOWED_DOCUMENT_TYPES = frozenset({
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/plain",
})

_MIME_ALIASES = {"image/jpg": "image/jpeg"}


def normalize_mime_type(mime_type: str) -> str:
    mime_type = (mime_type or "").split(";")[0].strip().lower()
    return _MIME_ALIASES.get(mime_type, mime_type)


@dataclass(frozen=True)
class StoredFile:
    url: str
    file_name: str
    key: str


class StorageService:
    """Validates attachments and uploads them to S3.

    boto3 is synchronous, so uploads run in a worker thread.
    """

    def __init__(
        self,
        bucket: str | None = None,
        region: str | None = None,
        folder: str | None = None,
        client=None,
    ):
        self.bucket = bucket if bucket is not None else settings.S3_BUCKET_NAME
        self.region = region if region is not None else settings.AWS_REGION
        self.folder = folder or settings.S3_FOLDER
        self.max_image_size = settings.MAX_IMAGE_SIZE
        self.max_document_size = settings.MAX_DOCUMENT_SIZE
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.bucket and self.region)

    def _get_client(self):
        if not self._client:
            import boto3
            kwargs = {"region_name": self.region}
            if settings.AWS_ACCESS_KEY_ID and settings.AWS_SECRET_ACCESS_KEY:
                kwargs["aws_access_key_id"] = settings.AWS_ACCESS_KEY_ID
                kwargs["aws_secret_access_key"] = settings.AWS_SECRET_ACCESS_KEY
            self._client = boto3.client("s3", **kwargs)
        return self._client

    def check(self, mime_type: str, size: int) -> str:
        """Validate type and size before any upload. Returns the normalized mime type."""
        normalized = normalize_mime_type(mime_type)
        is_image = normalized in ALLOWED_IMAGE_TYPES
        if not is_image and normalized not in ALLOWED_DOCUMENT_TYPES:
            raise UnsupportedMediaTypeError(mime_type)
        max_size = self.max_image_size if is_image else self.max_document_size
        if size > max_size:
            raise MediaTooLargeError(size, max_size)
        return normalized

    @log_async_operation("media_upload")
    async def persist(self, content: bytes, file_name: str, mime_type: str) -> StoredFile:
        """Store one attachment and return its public URL"""
        normalized = self.check(mime_type, len(content))
        if not self.configured:
            raise StorageNotConfiguredError()

        extension = file_name.rsplit(".", 1)[-1] if "." in file_name else "bin"
        key = f"{self.folder}/{uuid.uuid4()}.{extension}"

        try:
            client = self._get_client()
            await asyncio.to_thread(
                client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=content,
                ContentType=normalized,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageException(
                "S3 upload failed",
                details={"key": key, "error": str(e)},
            ) from e

        url = f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"
        logger.info(
            "File uploaded to S3",
            extra_data={"key": key, "mime_type": normalized, "size": len(content)},
        )
        return StoredFile(url=url, file_name=file_name, key=key)
