"""Object store access for attachments (Cloudflare R2 through the S3 API).

Clients never stream file bodies through this service: uploads and downloads
go straight to the bucket with short-lived pre-signed URLs.
"""

import logging
import re
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from src.config.settings import Settings, get_settings
from src.errors import InvalidFileKey, ObjectNotFound

logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_EXTENSION_RE = re.compile(r"^[a-z0-9]{1,10}$")


@dataclass(frozen=True)
class StoredObject:
    key: str
    last_modified: datetime
    size: int = 0


@dataclass(frozen=True)
class UploadAuthorization:
    url: str
    file_key: str
    expires_in: int


class ObjectStore(ABC):
    @abstractmethod
    def presign_put(self, key: str, content_type: str, expires_in: int) -> str:
        ...

    @abstractmethod
    def presign_get(self, key: str, expires_in: int) -> str:
        ...

    @abstractmethod
    def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete ``key``; a missing key is not an error."""
        ...

    @abstractmethod
    def list(self, prefix: str) -> Iterator[StoredObject]:
        ...


class R2ObjectStore(ObjectStore):
    def __init__(self, settings: Settings):
        self._bucket = settings.R2_BUCKET_NAME
        self._client = boto3.client(
            "s3",
            endpoint_url=settings.r2_endpoint_url,
            aws_access_key_id=settings.R2_ACCESS_KEY_ID,
            aws_secret_access_key=settings.R2_SECRET_ACCESS_KEY,
            region_name="auto",
            config=Config(
                signature_version="s3v4",
                connect_timeout=5,
                read_timeout=30,
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        )

    def presign_put(self, key: str, content_type: str, expires_in: int) -> str:
        return self._client.generate_presigned_url(
            "put_object",
            Params={"Bucket": self._bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=expires_in,
            HttpMethod="PUT",
        )

    def presign_get(self, key: str, expires_in: int) -> str:
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self._bucket, "Key": key},
            ExpiresIn=expires_in,
            HttpMethod="GET",
        )

    def exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self._bucket, Key=key)
            return True
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return False
            raise

    def delete(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") not in _MISSING_CODES:
                raise

    def list(self, prefix: str) -> Iterator[StoredObject]:
        paginator = self._client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                yield StoredObject(key=obj["Key"], last_modified=obj["LastModified"], size=obj.get("Size", 0))


def generate_file_key(file_name: str, prefix: str = "") -> str:
    """Build a server-side object key: ``<prefix><epoch_ms>-<uuid>[.<ext>]``.

    Only the extension of the user's file name survives, and only when it is
    short and alphanumeric, so the name cannot steer the key.
    """
    _, dot, ext = file_name.rpartition(".")
    ext = ext.lower() if dot else ""
    suffix = f".{ext}" if _EXTENSION_RE.match(ext) else ""
    return f"{prefix}{int(time.time() * 1000)}-{uuid.uuid4().hex}{suffix}"


class AttachmentStorage:
    """Time-boxed upload/download authorizations and deletes for attachment keys."""

    def __init__(self, store: ObjectStore, prefix: str = "", url_ttl_seconds: int = 3600):
        self._store = store
        self.prefix = prefix
        self.url_ttl_seconds = url_ttl_seconds

    def validate_key(self, file_key: str) -> None:
        """Raise :class:`InvalidFileKey` unless ``file_key`` lies in the attachment namespace."""
        if (
            not file_key
            or not file_key.startswith(self.prefix)
            or ".." in file_key
            or file_key.startswith("/")
        ):
            raise InvalidFileKey(file_key)

    def issue_upload_authorization(self, file_name: str, content_type: str) -> UploadAuthorization:
        file_key = generate_file_key(file_name, self.prefix)
        url = self._store.presign_put(file_key, content_type, self.url_ttl_seconds)
        return UploadAuthorization(url=url, file_key=file_key, expires_in=self.url_ttl_seconds)

    def issue_download_authorization(self, file_key: str) -> str:
        self.validate_key(file_key)
        if not self._store.exists(file_key):
            raise ObjectNotFound(file_key)
        return self._store.presign_get(file_key, self.url_ttl_seconds)

    def object_exists(self, file_key: str) -> bool:
        self.validate_key(file_key)
        return self._store.exists(file_key)

    def delete_object(self, file_key: str) -> None:
        self.validate_key(file_key)
        self._store.delete(file_key)
        logger.info("Deleted attachment object %s", file_key)

    def list_objects(self) -> Iterator[StoredObject]:
        return self._store.list(self.prefix)


@lru_cache()
def get_attachment_storage() -> AttachmentStorage:
    settings = get_settings()
    return AttachmentStorage(
        R2ObjectStore(settings),
        prefix=settings.ATTACHMENT_PREFIX,
        url_ttl_seconds=settings.ATTACHMENT_URL_TTL_SECONDS,
    )
