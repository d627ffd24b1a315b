"""
S3-compatible object storage adapter.

Works against AWS S3 and against endpoint-overridden services (MinIO, R2),
which are addressed path-style.
"""

import logging
from typing import Any, List, Optional, Protocol, Sequence
from urllib.parse import quote, unquote, urlparse

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from invite_media.config import Settings
from invite_media.domain.models import DeleteResult, ObjectSummary, StoredObject
from invite_media.security.uploads import StorageError

logger = logging.getLogger(__name__)

# DeleteObjects accepts at most this many keys per request.
DELETE_BATCH_LIMIT = 1000

REGION_ERROR_CODES = frozenset(
    {"PermanentRedirect", "AuthorizationHeaderMalformed", "IllegalLocationConstraintException"}
)


class ObjectStore(Protocol):
    """Operations the upload and cleanup services need from storage."""

    def put(self, data: bytes, key: str, content_type: str) -> StoredObject: ...

    def delete(self, key: str) -> bool: ...

    def delete_many(self, keys: Sequence[str]) -> DeleteResult: ...

    def signed_url(self, key: str, expires_in: int = 3600) -> str: ...

    def list_objects(self) -> List[ObjectSummary]: ...

    def key_from_url(self, url: str) -> Optional[str]: ...


def describe_storage_error(exc: Exception) -> tuple[str, Optional[str]]:
    """Human readable message plus the provider's error code, when there is one."""
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        code = error.get("Code")
        message = error.get("Message") or str(exc)
        detail = f"{code}: {message}" if code else message
        if code in REGION_ERROR_CODES:
            detail += " (check AWS_REGION; the bucket may live in a different region)"
        return detail, code
    return f"{type(exc).__name__}: {exc}", type(exc).__name__


class S3ObjectStore:
    """boto3 implementation of :class:`ObjectStore`."""

    def __init__(self, settings: Settings, client: Any = None):
        self.bucket = settings.s3_bucket_name
        self.region = settings.aws_region
        self.endpoint = settings.s3_endpoint.rstrip("/") if settings.s3_endpoint else None
        self.public_domain = (
            settings.s3_public_domain.rstrip("/") if settings.s3_public_domain else None
        )
        self._client = client or self._build_client(settings)

    @staticmethod
    def _build_client(settings: Settings):
        kwargs = {"region_name": settings.aws_region}
        if settings.s3_access_key_id and settings.s3_secret_access_key:
            kwargs["aws_access_key_id"] = settings.s3_access_key_id
            kwargs["aws_secret_access_key"] = settings.s3_secret_access_key
        if settings.s3_endpoint:
            kwargs["endpoint_url"] = settings.s3_endpoint
            kwargs["config"] = Config(s3={"addressing_style": "path"})
        return boto3.client("s3", **kwargs)

    def public_url(self, key: str) -> str:
        quoted = quote(key)
        if self.public_domain:
            return f"{self.public_domain}/{quoted}"
        if self.endpoint:
            return f"{self.endpoint}/{self.bucket}/{quoted}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{quoted}"

    def key_from_url(self, url: str) -> Optional[str]:
        """Invert :meth:`public_url`; returns None for values that are not URLs."""
        if not url:
            return None
        if self.public_domain and url.startswith(self.public_domain + "/"):
            key = unquote(url[len(self.public_domain) + 1:].split("?", 1)[0])
            return key or None
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.netloc:
            return None
        key = unquote(parsed.path.lstrip("/"))
        if self.endpoint and key.startswith(self.bucket + "/"):
            key = key[len(self.bucket) + 1:]
        return key or None

    def put(self, data: bytes, key: str, content_type: str) -> StoredObject:
        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                ACL="private",
            )
        except (ClientError, BotoCoreError) as exc:
            detail, code = describe_storage_error(exc)
            logger.error("Error uploading %s to bucket %s: %s", key, self.bucket, detail)
            raise StorageError(f"Failed to upload file to storage ({detail})", code) from exc

        return StoredObject(
            key=key, url=self.public_url(key), content_type=content_type, size=len(data)
        )

    def delete(self, key: str) -> bool:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            logger.error("Error deleting %s: %s", key, describe_storage_error(exc)[0])
            return False
        logger.info("File deleted successfully: %s", key)
        return True

    def signed_url(self, key: str, expires_in: int = 3600) -> str:
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as exc:
            detail, code = describe_storage_error(exc)
            logger.error("Error generating signed URL for %s: %s", key, detail)
            raise StorageError("Failed to generate signed URL", code) from exc

    def delete_many(self, keys: Sequence[str]) -> DeleteResult:
        """Delete ``keys`` in chunks; a failing chunk is counted and skipped."""
        result = DeleteResult()
        unique_keys = list(dict.fromkeys(keys))
        for start in range(0, len(unique_keys), DELETE_BATCH_LIMIT):
            chunk = unique_keys[start:start + DELETE_BATCH_LIMIT]
            try:
                response = self._client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": key} for key in chunk], "Quiet": True},
                )
            except (ClientError, BotoCoreError) as exc:
                logger.error(
                    "Batch delete of %s keys failed: %s", len(chunk), describe_storage_error(exc)[0]
                )
                result.failed += len(chunk)
                result.failed_keys.extend(chunk)
                continue

            errors = response.get("Errors", [])
            for error in errors:
                logger.warning(
                    "Could not delete %s: %s", error.get("Key"), error.get("Code") or error.get("Message")
                )
                result.failed_keys.append(error.get("Key", ""))
            result.failed += len(errors)
            result.success += len(chunk) - len(errors)
        return result

    def list_objects(self) -> List[ObjectSummary]:
        """One ListObjectsV2 page; listings beyond the first page are not followed."""
        try:
            response = self._client.list_objects_v2(Bucket=self.bucket)
        except (ClientError, BotoCoreError) as exc:
            detail, code = describe_storage_error(exc)
            logger.error("Error listing bucket %s: %s", self.bucket, detail)
            raise StorageError(f"Failed to list storage objects ({detail})", code) from exc

        if response.get("IsTruncated"):
            logger.warning("Bucket listing for %s was truncated; only the first page is used", self.bucket)
        return [
            ObjectSummary(key=item["Key"], last_modified=item["LastModified"], size=item.get("Size", 0))
            for item in response.get("Contents", [])
        ]
