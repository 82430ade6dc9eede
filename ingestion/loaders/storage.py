"""
Staging storage for batch files: local disk or S3.

A storage backend holds staged files between upload and warehouse load,
and, when the connector runs storage-only, is itself the destination and
keeps the sync point in a sentinel object next to the data.
"""

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from core.exceptions import CheckpointError, StorageError

logger = logging.getLogger(__name__)

SYNC_FILE = ".sync.hs"


def format_sync_point(t: datetime) -> str:
    return t.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_sync_point(text: str) -> datetime:
    text = text.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    t = datetime.fromisoformat(text)
    if t.tzinfo is None:
        t = t.replace(tzinfo=timezone.utc)
    return t.astimezone(timezone.utc)


class Storage(ABC):
    """
    Abstract staging area.

    Responsibilities:
    - Hold staged files (save, read back, delete)
    - Keep the sync point for storage-only runs
    """

    def __init__(self, file_prefix: str = ""):
        self.file_prefix = file_prefix or ""

    def object_name(self, local_path: Path) -> str:
        return f"{self.file_prefix}{Path(local_path).name}"

    @abstractmethod
    async def save_file(self, local_path: Path) -> str:
        """Copy a local file into storage and return its reference"""
        pass

    @abstractmethod
    async def read_file(self, ref: str) -> bytes:
        pass

    @abstractmethod
    async def delete_file(self, ref: str) -> None:
        pass

    @abstractmethod
    async def _read_sentinel(self) -> Optional[str]:
        """Contents of the sync sentinel, None when it does not exist"""
        pass

    @abstractmethod
    async def _write_sentinel(self, text: str) -> None:
        pass

    async def last_sync_point(self) -> Optional[datetime]:
        """Sync point recorded in storage, None when nothing was saved yet"""
        text = await self._read_sentinel()
        if not text or not text.strip():
            return None
        try:
            return parse_sync_point(text)
        except ValueError as e:
            raise CheckpointError(
                "Malformed sync sentinel",
                context={"operation": "read", "contents": text[:100]},
                original_exception=e
            )

    async def save_sync_point(self, stop: datetime) -> None:
        await self._write_sentinel(format_sync_point(stop))
        logger.info(f"Saved sync point {format_sync_point(stop)} to storage")


class LocalDiskStorage(Storage):
    """
    Files are copied into `save_dir`; the sync point is a single line in
    `save_dir/.sync.hs`.
    """

    def __init__(self, save_dir: str, file_prefix: str = "", use_start_time: bool = False):
        super().__init__(file_prefix)
        self.save_dir = Path(save_dir)
        self.save_dir.mkdir(parents=True, exist_ok=True)
        self.sync_file = self.save_dir / SYNC_FILE

        if use_start_time and self.sync_file.exists():
            # Start over from the configured start time
            logger.info(f"Discarding sync file {self.sync_file}")
            self.sync_file.unlink()

    async def save_file(self, local_path: Path) -> str:
        target = self.save_dir / self.object_name(local_path)
        try:
            await asyncio.to_thread(shutil.copyfile, local_path, target)
        except OSError as e:
            raise StorageError(
                f"Failed to copy file {local_path} to local dir {self.save_dir}",
                context={"operation": "save", "ref": str(target)},
                original_exception=e
            )
        return str(target)

    async def read_file(self, ref: str) -> bytes:
        try:
            return await asyncio.to_thread(Path(ref).read_bytes)
        except OSError as e:
            raise StorageError(
                f"Failed to read {ref}",
                context={"operation": "read", "ref": ref},
                original_exception=e
            )

    async def delete_file(self, ref: str) -> None:
        try:
            Path(ref).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(
                f"Failed to delete {ref}",
                context={"operation": "delete", "ref": ref},
                original_exception=e
            )

    async def _read_sentinel(self) -> Optional[str]:
        if not self.sync_file.exists():
            return None
        return self.sync_file.read_text()

    async def _write_sentinel(self, text: str) -> None:
        self.sync_file.write_text(text + "\n")


class S3Storage(Storage):
    """
    Files are uploaded to an S3 bucket.

    `bucket` may carry a key prefix ("my-bucket/exports/hourly"). Objects are
    referenced as s3://bucket/key.
    """

    def __init__(
        self,
        bucket: str,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        file_prefix: str = "",
        client=None
    ):
        super().__init__(file_prefix)
        if not bucket:
            raise ValueError("Bucket name is required")
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self._client = client

    @property
    def client(self):
        if self._client is None:
            client_kwargs = {"service_name": "s3"}
            if self.region:
                client_kwargs["region_name"] = self.region
            if self.endpoint_url:
                client_kwargs["endpoint_url"] = self.endpoint_url
            self._client = boto3.client(**client_kwargs)
        return self._client

    def bucket_and_key(self, name: str) -> Tuple[str, str]:
        parts = self.bucket.split("/")
        key_path = "/".join(parts[1:]).strip("/")
        return parts[0], f"{key_path}/{name}".strip("/")

    def reference(self, name: str) -> str:
        bucket, key = self.bucket_and_key(name)
        return f"s3://{bucket}/{key}"

    @staticmethod
    def split_reference(ref: str) -> Tuple[str, str]:
        if not ref.startswith("s3://"):
            raise StorageError(f"Not an S3 reference: {ref}", context={"ref": ref})
        bucket, _, key = ref[len("s3://"):].partition("/")
        return bucket, key

    async def save_file(self, local_path: Path) -> str:
        name = self.object_name(local_path)
        bucket, key = self.bucket_and_key(name)
        try:
            await asyncio.to_thread(self.client.upload_file, str(local_path), bucket, key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(
                f"Failed to upload file {local_path} to s3",
                context={"operation": "save", "ref": self.reference(name)},
                original_exception=e
            )
        return self.reference(name)

    async def read_file(self, ref: str) -> bytes:
        bucket, key = self.split_reference(ref)
        try:
            out = await asyncio.to_thread(self.client.get_object, Bucket=bucket, Key=key)
            return await asyncio.to_thread(out["Body"].read)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(
                f"Failed to read s3 file {ref}",
                context={"operation": "read", "ref": ref},
                original_exception=e
            )

    async def delete_file(self, ref: str) -> None:
        bucket, key = self.split_reference(ref)
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(
                f"Failed to delete S3 object {ref}",
                context={"operation": "delete", "ref": ref},
                original_exception=e
            )

    async def _read_sentinel(self) -> Optional[str]:
        bucket, key = self.bucket_and_key(SYNC_FILE)
        try:
            out = await asyncio.to_thread(self.client.get_object, Bucket=bucket, Key=key)
            data = await asyncio.to_thread(out["Body"].read)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            raise CheckpointError(
                "Failed to read sync sentinel from s3",
                context={"operation": "read", "ref": self.reference(SYNC_FILE)},
                original_exception=e
            )
        return data.decode("utf-8")

    async def _write_sentinel(self, text: str) -> None:
        bucket, key = self.bucket_and_key(SYNC_FILE)
        try:
            await asyncio.to_thread(
                self.client.put_object, Bucket=bucket, Key=key, Body=(text + "\n").encode("utf-8")
            )
        except (BotoCoreError, ClientError) as e:
            raise CheckpointError(
                "Failed to write sync sentinel to s3",
                context={"operation": "write", "ref": self.reference(SYNC_FILE)},
                original_exception=e
            )
