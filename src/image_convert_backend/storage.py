"""
Storage backends for finished documents.

This module provides functionality for:
- Uploading rendered documents to S3 and building their download URLs
- A local-directory mode used for development and tests
- Choosing the backend from configuration

The S3 bucket name comes from the S3_BUCKET_NAME environment variable via
config.yaml. When it is unset or set to "local", documents are written to the
outputs directory and served by the API's /outputs static mount.
"""

from __future__ import annotations

import logging
import secrets
import time
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from omegaconf import DictConfig

from .errors import UpstreamError
from .interfaces import StorageGateway, StoredObject
from .utils import ensure_directory, sanitize_filename, split_extension

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def unique_object_name(suggested_name: str) -> str:
    """
    Build a collision-resistant object name from a suggested filename.

    Example:
        >>> unique_object_name("converted_1718000000000.pdf")  # doctest: +SKIP
        "converted_1718000000000-1718000000123-482913305.pdf"
    """
    stem, suffix = split_extension(sanitize_filename(suggested_name, fallback="converted"))
    unique_suffix = f"{int(time.time() * 1000)}-{secrets.randbelow(10**9)}"
    return f"{stem}-{unique_suffix}{suffix}"


class S3Storage:
    """
    Uploads documents to an S3 bucket.

    Args:
        bucket: Target bucket name
        prefix: Key prefix for every object (e.g. "converted/")
        public_base_url: If set, URLs are built as <public_base_url>/<key>
            (for public buckets or a CDN); otherwise presigned GET URLs are used
        presign_expiration: Presigned URL lifetime in seconds
        client: Pre-built boto3 S3 client (created lazily if omitted)
    """

    mode = "s3"

    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        public_base_url: Optional[str] = None,
        presign_expiration: int = 3600,
        client=None,
    ) -> None:
        self.bucket = bucket
        self.prefix = prefix
        self.public_base_url = public_base_url
        self.presign_expiration = presign_expiration
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client("s3", config=Config(signature_version="s3v4"))
        return self._client

    def put(self, data: bytes, suggested_name: str, content_type: Optional[str] = None) -> StoredObject:
        """
        Upload bytes under a unique key.

        Raises:
            UpstreamError: With the botocore message if the upload or URL
                generation fails
        """
        name = unique_object_name(suggested_name)
        key = f"{self.prefix}{name}"
        try:
            logger.info(f"Uploading {len(data)} bytes to s3://{self.bucket}/{key}")
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type or DEFAULT_CONTENT_TYPE,
            )
            url = self._object_url(key)
        except (BotoCoreError, ClientError) as exc:
            logger.error(f"S3 upload failed: {exc}")
            raise UpstreamError(str(exc)) from exc

        logger.info(f"Upload successful: s3://{self.bucket}/{key}")
        return StoredObject(name=name, url=url, storage_id=key)

    def _object_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{quote(key)}"
        return self.generate_presigned_url(key)

    def generate_presigned_url(self, key: str, expiration: Optional[int] = None) -> str:
        """
        Generate a presigned URL for downloading an object.

        Note:
            The presigned URL allows anyone with the URL to download the file
            until the expiration time is reached.
        """
        expires_in = expiration or self.presign_expiration
        url = self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )
        logger.info(f"Generated presigned URL for {key} (expires in {expires_in}s)")
        return url


class LocalStorage:
    """Writes documents to a local directory served under public_base_url."""

    mode = "local"

    def __init__(self, root: Path, public_base_url: str) -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url

    def put(self, data: bytes, suggested_name: str, content_type: Optional[str] = None) -> StoredObject:
        name = unique_object_name(suggested_name)
        try:
            path = ensure_directory(self.root) / name
            path.write_bytes(data)
        except OSError as exc:
            logger.error(f"Local storage write failed: {exc}")
            raise UpstreamError(str(exc)) from exc

        logger.info(f"Stored {len(data)} bytes at {path}")
        return StoredObject(name=name, url=f"{self.public_base_url.rstrip('/')}/{quote(name)}", storage_id=name)


def build_storage(config: DictConfig) -> StorageGateway:
    """Pick S3 when a real bucket is configured, local storage otherwise."""
    storage = config.storage
    bucket = (storage.bucket or "").strip()
    if not bucket or bucket.lower() == "local":
        logger.warning("S3_BUCKET_NAME not configured, storing documents locally")
        return LocalStorage(Path(config.paths.outputs_dir), storage.public_base_url)
    return S3Storage(
        bucket=bucket,
        prefix=storage.prefix or "",
        public_base_url=storage.s3_public_base_url,
        presign_expiration=int(storage.presign_expiration),
    )
