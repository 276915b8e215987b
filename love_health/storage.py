"""
Storage abstraction for S3-compatible object stores (MinIO) and in-memory testing.
"""

from __future__ import annotations

import json
import logging
import mimetypes
import os
import secrets
import time
from dataclasses import dataclass, field
from typing import Optional, Protocol
from urllib.parse import quote, unquote

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
_MISSING_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}
FILENAME_METADATA_KEY = "original-filename"


@dataclass
class StoredObject:
    url: str
    bucket: str
    object_name: str
    original_filename: str
    size: int
    content_type: str


def generate_object_name(original_filename: str) -> str:
    """``<name>-<epoch ms>-<16 hex chars><ext>``, unique per upload."""
    stem, ext = os.path.splitext(os.path.basename(original_filename))
    return f"{stem}-{int(time.time() * 1000)}-{secrets.token_hex(8)}{ext}"


def guess_content_type(filename: str) -> str:
    return mimetypes.guess_type(filename)[0] or DEFAULT_CONTENT_TYPE


def public_read_policy(bucket: str) -> str:
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"AWS": ["*"]},
                    "Action": ["s3:GetObject"],
                    "Resource": [f"arn:aws:s3:::{bucket}/*"],
                }
            ],
        }
    )


class StorageClient(Protocol):
    """Defines the operations the API needs from object storage."""

    public_bucket: str
    private_bucket: str

    def ensure_buckets(self) -> None:
        ...

    def upload(
        self,
        data: bytes,
        original_filename: str,
        content_type: Optional[str] = None,
        public: bool = True,
    ) -> StoredObject:
        ...

    def presign_get(self, object_name: str, expires_in: int = 3600) -> str:
        ...

    def delete(self, bucket: str, object_name: str) -> None:
        ...

    def exists(self, bucket: str, object_name: str) -> bool:
        ...

    def stat(self, bucket: str, object_name: str) -> dict:
        ...

    def copy(
        self, source_bucket: str, source_name: str, dest_bucket: str, dest_name: str
    ) -> None:
        ...

    def list_objects(self, bucket: str, prefix: str = "") -> list[dict]:
        ...


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    base_url: str = "https://example.test/storage"
    public_bucket: str = "lovehealth-public"
    private_bucket: str = "lovehealth-private"
    buckets: dict = field(default_factory=dict)

    def ensure_buckets(self) -> None:
        for bucket in (self.public_bucket, self.private_bucket):
            self.buckets.setdefault(bucket, {})

    def _bucket(self, bucket: str) -> dict:
        if bucket not in self.buckets:
            raise FileNotFoundError(bucket)
        return self.buckets[bucket]

    def upload(
        self,
        data: bytes,
        original_filename: str,
        content_type: Optional[str] = None,
        public: bool = True,
    ) -> StoredObject:
        self.ensure_buckets()
        bucket = self.public_bucket if public else self.private_bucket
        object_name = generate_object_name(original_filename)
        content_type = content_type or guess_content_type(original_filename)
        self.buckets[bucket][object_name] = {
            "body": bytes(data),
            "content_type": content_type,
            "original_filename": original_filename,
        }
        url = (
            f"{self.base_url}/{bucket}/{object_name}"
            if public
            else self.presign_get(object_name)
        )
        return StoredObject(
            url=url,
            bucket=bucket,
            object_name=object_name,
            original_filename=original_filename,
            size=len(data),
            content_type=content_type,
        )

    def presign_get(self, object_name: str, expires_in: int = 3600) -> str:
        return (
            f"{self.base_url}/{self.private_bucket}/{object_name}"
            f"?op=get&expires={expires_in}"
        )

    def get_bytes(self, bucket: str, object_name: str) -> bytes:
        stored = self._bucket(bucket).get(object_name)
        if stored is None:
            raise FileNotFoundError(object_name)
        return stored["body"]

    def delete(self, bucket: str, object_name: str) -> None:
        self._bucket(bucket).pop(object_name, None)

    def exists(self, bucket: str, object_name: str) -> bool:
        return object_name in self.buckets.get(bucket, {})

    def stat(self, bucket: str, object_name: str) -> dict:
        stored = self._bucket(bucket).get(object_name)
        if stored is None:
            raise FileNotFoundError(object_name)
        return {
            "size": len(stored["body"]),
            "content_type": stored["content_type"],
            "metadata": {FILENAME_METADATA_KEY: stored["original_filename"]},
        }

    def copy(
        self, source_bucket: str, source_name: str, dest_bucket: str, dest_name: str
    ) -> None:
        stored = self._bucket(source_bucket).get(source_name)
        if stored is None:
            raise FileNotFoundError(source_name)
        self.buckets.setdefault(dest_bucket, {})[dest_name] = dict(stored)

    def list_objects(self, bucket: str, prefix: str = "") -> list[dict]:
        return [
            {"name": name, "size": len(stored["body"])}
            for name, stored in sorted(self._bucket(bucket).items())
            if name.startswith(prefix)
        ]


@dataclass
class S3StorageClient:
    """
    S3-compatible storage client (MinIO in development and production).
    """

    endpoint: str
    region: str
    access_key_id: str
    secret_access_key: str
    public_bucket: str
    private_bucket: str
    public_base_url: Optional[str] = None

    def __post_init__(self):
        # MinIO serves buckets under the endpoint path, not as subdomains.
        config = Config(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint,
            region_name=self.region,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def _public_url(self, bucket: str, object_name: str) -> str:
        base = (self.public_base_url or self.endpoint).rstrip("/")
        return f"{base}/{bucket}/{object_name}"

    def ensure_buckets(self) -> None:
        for bucket, public in ((self.public_bucket, True), (self.private_bucket, False)):
            try:
                self._client.head_bucket(Bucket=bucket)
                continue
            except ClientError as exc:
                if exc.response.get("Error", {}).get("Code") not in _MISSING_CODES:
                    logger.error("Failed to check bucket %s: %s", bucket, exc)
                    raise
            self._client.create_bucket(Bucket=bucket)
            if public:
                self._client.put_bucket_policy(
                    Bucket=bucket, Policy=public_read_policy(bucket)
                )
            logger.info("Created bucket %s", bucket)

    def upload(
        self,
        data: bytes,
        original_filename: str,
        content_type: Optional[str] = None,
        public: bool = True,
    ) -> StoredObject:
        bucket = self.public_bucket if public else self.private_bucket
        object_name = generate_object_name(original_filename)
        content_type = content_type or guess_content_type(original_filename)
        try:
            self._client.put_object(
                Bucket=bucket,
                Key=object_name,
                Body=data,
                ContentType=content_type,
                # S3 user metadata must be ASCII.
                Metadata={FILENAME_METADATA_KEY: quote(original_filename)},
            )
        except ClientError as exc:
            logger.error("Upload of %s to %s failed: %s", original_filename, bucket, exc)
            raise
        url = (
            self._public_url(bucket, object_name)
            if public
            else self.presign_get(object_name)
        )
        return StoredObject(
            url=url,
            bucket=bucket,
            object_name=object_name,
            original_filename=original_filename,
            size=len(data),
            content_type=content_type,
        )

    def presign_get(self, object_name: str, expires_in: int = 3600) -> str:
        return self._client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self.private_bucket, "Key": object_name},
            ExpiresIn=expires_in,
        )

    def delete(self, bucket: str, object_name: str) -> None:
        self._client.delete_object(Bucket=bucket, Key=object_name)
        logger.info("Deleted %s/%s", bucket, object_name)

    def exists(self, bucket: str, object_name: str) -> bool:
        try:
            self._client.head_object(Bucket=bucket, Key=object_name)
            return True
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return False
            raise

    def stat(self, bucket: str, object_name: str) -> dict:
        response = self._client.head_object(Bucket=bucket, Key=object_name)
        metadata = dict(response.get("Metadata", {}))
        if FILENAME_METADATA_KEY in metadata:
            metadata[FILENAME_METADATA_KEY] = unquote(metadata[FILENAME_METADATA_KEY])
        return {
            "size": response.get("ContentLength", 0),
            "content_type": response.get("ContentType", DEFAULT_CONTENT_TYPE),
            "metadata": metadata,
        }

    def copy(
        self, source_bucket: str, source_name: str, dest_bucket: str, dest_name: str
    ) -> None:
        self._client.copy_object(
            Bucket=dest_bucket,
            Key=dest_name,
            CopySource={"Bucket": source_bucket, "Key": source_name},
        )

    def list_objects(self, bucket: str, prefix: str = "") -> list[dict]:
        paginator = self._client.get_paginator("list_objects_v2")
        objects: list[dict] = []
        for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
            for item in page.get("Contents", []):
                objects.append({"name": item["Key"], "size": item.get("Size", 0)})
        return objects
