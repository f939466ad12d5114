"""Object storage for processed images and order archives."""

import asyncio
import logging
import re
import secrets
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from sku_studio.config import settings
from sku_studio.errors import StorageError

logger = logging.getLogger(__name__)

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_key_part(value: str) -> str:
    """Make a store name or identifier usable inside an object key."""
    cleaned = _UNSAFE_KEY_CHARS.sub("_", value.strip()).strip("_")
    return cleaned or "unknown"


def image_key(identifier: str, store_name: str, index: int, extension: str) -> str:
    token = secrets.token_hex(4)
    return (
        f"scrapes/{safe_key_part(identifier)}/"
        f"{safe_key_part(store_name)}_{index}_{token}.{extension}"
    )


def archive_key(order_id: int) -> str:
    return f"orders/{order_id}/studio_images_{secrets.token_hex(4)}.zip"


class ObjectStorage(ABC):
    """Blob store returning a retrievable URL for every object written."""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store ``data`` under ``key``.

        Returns:
            Public (or file) URL of the stored object

        Raises:
            StorageError: on any backend failure
        """

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Read back an object written with put().

        Raises:
            StorageError: missing object or backend failure
        """


class LocalObjectStorage(ObjectStorage):
    """Filesystem-backed storage for development and tests."""

    def __init__(self, root: str | Path, public_base_url: str = ""):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        path = self.root / key
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as e:
            raise StorageError(f"Failed to write {key}: {e}") from e

        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return path.resolve().as_uri()

    async def get(self, key: str) -> bytes:
        try:
            return await asyncio.to_thread((self.root / key).read_bytes)
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)


class S3ObjectStorage(ObjectStorage):
    """S3-compatible storage (AWS S3, Cloudflare R2, MinIO).

    boto3 is synchronous, so uploads and reads run in a worker thread.
    """

    def __init__(
        self,
        bucket: str,
        public_base_url: str = "",
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        client=None,
    ):
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url or None,
            region_name=region or None,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
            config=Config(signature_version="s3v4", retries={"max_attempts": 3}),
        )

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 upload failed for {key}: {e}") from e

        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"s3://{self.bucket}/{key}"

    async def get(self, key: str) -> bytes:
        def _read() -> bytes:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()

        try:
            return await asyncio.to_thread(_read)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 download failed for {key}: {e}") from e


def get_storage() -> ObjectStorage:
    """Build the configured storage backend."""
    if settings.storage_backend == "s3":
        if not settings.s3_bucket:
            raise StorageError("storage_backend is 's3' but s3_bucket is not set")
        logger.info(f"Using S3 object storage (bucket {settings.s3_bucket})")
        return S3ObjectStorage(
            bucket=settings.s3_bucket,
            public_base_url=settings.storage_public_base_url,
            endpoint_url=settings.s3_endpoint_url,
            region=settings.s3_region,
            access_key_id=settings.s3_access_key_id,
            secret_access_key=settings.s3_secret_access_key,
        )

    logger.info(f"Using local object storage at {settings.storage_local_path}")
    return LocalObjectStorage(settings.storage_local_path, settings.storage_public_base_url)
