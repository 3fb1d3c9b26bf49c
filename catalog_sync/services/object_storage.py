"""
Object Storage Module
=====================

Provides abstract and concrete implementations for storing binary assets.
Provider responses are validated: a non-2xx status or a response without
the expected metadata is a failure, never an assumed success.
"""

from __future__ import annotations

import logging
import os
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from catalog_sync.core.errors import TransientError

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass
class UploadResult:
    """Result of an upload call."""

    success: bool
    ref: str | None = None
    error: str | None = None


@dataclass
class ExistsResult:
    """Result of an existence check."""

    exists: bool
    ref: str | None = None


class ObjectStorage(ABC):
    """
    Abstract base class for object storage.

    Keys are deterministic file names, so existence of a key means the
    asset is already stored.
    """

    @abstractmethod
    def upload(self, body: bytes | IO[bytes], key: str, content_type: str) -> UploadResult:
        """
        Store an object.

        Args:
            body: Object bytes or a readable binary file object
            key: Object key
            content_type: MIME type stored with the object

        Returns:
            UploadResult with the public reference on success
        """
        pass

    @abstractmethod
    def exists(self, key: str) -> ExistsResult:
        """
        Check whether an object is already stored.

        Args:
            key: Object key

        Returns:
            ExistsResult with the reference when found
        """
        pass

    @abstractmethod
    def ref_for(self, key: str) -> str:
        """Public reference of a key."""
        pass


def _status_ok(response: dict[str, Any]) -> bool:
    status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return isinstance(status, int) and 200 <= status < 300


class S3ObjectStorage(ObjectStorage):
    """S3-compatible storage (AWS S3, Cloudflare R2, MinIO) via boto3."""

    def __init__(
        self,
        bucket: str,
        public_url: str | None = None,
        endpoint_url: str | None = None,
        region_name: str | None = None,
        client: Any = None,
    ) -> None:
        self.bucket = bucket
        self.public_url = public_url.rstrip("/") if public_url else None
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=region_name,
        )

    def ref_for(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{key}"
        return f"s3://{self.bucket}/{key}"

    def upload(self, body: bytes | IO[bytes], key: str, content_type: str) -> UploadResult:
        try:
            response = self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Upload of {key} failed: {e}")
            return UploadResult(success=False, error=str(e))

        if not _status_ok(response):
            status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            return UploadResult(success=False, error=f"Unexpected status {status} for {key}")
        if not response.get("ETag"):
            return UploadResult(success=False, error=f"Missing ETag in upload response for {key}")

        return UploadResult(success=True, ref=self.ref_for(key))

    def exists(self, key: str) -> ExistsResult:
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in NOT_FOUND_CODES:
                return ExistsResult(exists=False)
            raise TransientError(f"Existence check for {key} failed: {e}", {"key": key}) from e
        except BotoCoreError as e:
            raise TransientError(f"Existence check for {key} failed: {e}", {"key": key}) from e

        if not _status_ok(response):
            raise TransientError(f"Unexpected head_object response for {key}", {"key": key})
        return ExistsResult(exists=True, ref=self.ref_for(key))


class LocalObjectStorage(ObjectStorage):
    """
    Local filesystem storage.

    Objects are stored as plain files under base_path; references are
    file:// URIs.
    """

    def __init__(self, base_path: Path | str) -> None:
        self.base_path = Path(base_path).expanduser().resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path not in path.parents:
            raise ValueError(f"Key escapes storage root: {key}")
        return path

    def ref_for(self, key: str) -> str:
        return self._path(key).as_uri()

    def upload(self, body: bytes | IO[bytes], key: str, content_type: str) -> UploadResult:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(path, "wb") as f:
                if isinstance(body, bytes):
                    f.write(body)
                else:
                    shutil.copyfileobj(body, f)
        except OSError as e:
            return UploadResult(success=False, error=str(e))
        return UploadResult(success=True, ref=self.ref_for(key))

    def exists(self, key: str) -> ExistsResult:
        path = self._path(key)
        if path.is_file():
            return ExistsResult(exists=True, ref=self.ref_for(key))
        return ExistsResult(exists=False)


def get_default_storage() -> ObjectStorage:
    """
    Get the default object storage.

    Uses S3 when S3_BUCKET is set (with optional S3_ENDPOINT_URL,
    S3_PUBLIC_URL and AWS_REGION), otherwise a local directory from
    OBJECT_STORAGE_PATH or ~/.catalog_sync/assets.
    """
    bucket = os.environ.get("S3_BUCKET")
    if bucket:
        return S3ObjectStorage(
            bucket=bucket,
            public_url=os.environ.get("S3_PUBLIC_URL"),
            endpoint_url=os.environ.get("S3_ENDPOINT_URL"),
            region_name=os.environ.get("AWS_REGION"),
        )
    return LocalObjectStorage(os.environ.get("OBJECT_STORAGE_PATH", "~/.catalog_sync/assets"))
