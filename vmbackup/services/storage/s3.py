"""
S3 remote: backup chains stored as objects under a key prefix of one bucket.

Directories are emulated with `/` delimited keys; a directory exists while it
holds at least one object.
"""
import asyncio
import tempfile
from typing import Dict, Any, List, AsyncIterator
from concurrent.futures import ThreadPoolExecutor
import boto3
from botocore.exceptions import ClientError

from vmbackup.core.config import settings
from vmbackup.services.storage.base import (
    RawWriter,
    StorageBackend,
    StorageUploadError,
    StorageDownloadError,
    StorageNotFoundError
)

# Spool in memory up to this size before falling back to a temp file
SPOOL_MAX_SIZE = 64 * 1024 * 1024


def _is_not_found(error: ClientError) -> bool:
    code = error.response.get('Error', {}).get('Code', '')
    return code in ('404', 'NoSuchKey', 'NotFound')


class _S3Writer(RawWriter):
    """Buffers an object locally and uploads it on close."""

    def __init__(self, storage: "S3Storage", object_key: str):
        self.storage = storage
        self.object_key = object_key
        self.buffer = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE)

    async def write(self, chunk: bytes) -> None:
        # Spills to disk past SPOOL_MAX_SIZE
        await self.storage._run_in_executor(self.buffer.write, chunk)

    async def close(self) -> None:
        self.buffer.seek(0)
        extra_args = {"StorageClass": self.storage.storage_class}
        if self.storage.server_side_encryption:
            extra_args["ServerSideEncryption"] = self.storage.server_side_encryption

        try:
            await self.storage._run_in_executor(
                lambda: self.storage.client.upload_fileobj(
                    self.buffer,
                    self.storage.bucket_name,
                    self.object_key,
                    ExtraArgs=extra_args
                )
            )
        except ClientError as e:
            self.storage.logger.error(f"Failed to upload {self.object_key} to S3: {e}")
            raise StorageUploadError(f"Upload failed: {e}")
        finally:
            self.buffer.close()

    async def abort(self) -> None:
        self.buffer.close()


class S3Storage(StorageBackend):
    """
    Remote on an S3 compatible object store (AWS, MinIO, Backblaze B2).

    Config keys: `bucket_name` (required), `prefix` (remote root inside the
    bucket), `endpoint_url`, `region`, `aws_access_key_id`,
    `aws_secret_access_key`, `storage_class` and `server_side_encryption`.
    Without explicit keys, boto3 resolves credentials itself.
    """

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.bucket_name = config["bucket_name"]
        prefix = config.get("prefix", "").strip("/")
        self.prefix = f"{prefix}/" if prefix else ""
        self.storage_class = config.get("storage_class", "STANDARD")
        self.server_side_encryption = config.get("server_side_encryption")

        client_options = {
            option: config[key]
            for option, key in (
                ("endpoint_url", "endpoint_url"),
                ("region_name", "region"),
                ("aws_access_key_id", "aws_access_key_id"),
                ("aws_secret_access_key", "aws_secret_access_key"),
            )
            if config.get(key)
        }

        self.client = boto3.session.Session().client("s3", **client_options)
        self.executor = ThreadPoolExecutor(max_workers=settings.STORAGE_EXECUTOR_WORKERS)

    def _get_object_key(self, path: str) -> str:
        return f"{self.prefix}{path.lstrip('/')}"

    async def _run_in_executor(self, func, *args):
        """boto3 is blocking: run its calls on the storage executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, func, *args)

    async def _list(self, path: str) -> List[str]:
        object_prefix = self._get_object_key(path)
        if object_prefix and not object_prefix.endswith("/"):
            object_prefix += "/"

        paginator = self.client.get_paginator('list_objects_v2')
        try:
            pages = await self._run_in_executor(
                lambda: list(paginator.paginate(
                    Bucket=self.bucket_name,
                    Prefix=object_prefix,
                    Delimiter="/"
                ))
            )
        except ClientError as e:
            self.logger.error(f"Failed to list {path} in S3: {e}")
            raise StorageDownloadError(f"List failed: {e}")

        names = []
        for page in pages:
            for common in page.get('CommonPrefixes', []):
                names.append(common['Prefix'][len(object_prefix):].rstrip("/"))
            for obj in page.get('Contents', []):
                names.append(obj['Key'][len(object_prefix):])

        # S3 has no real directories: an empty prefix is a missing directory
        if not names and path:
            raise StorageNotFoundError(f"Directory not found: {path}")

        return names

    async def _open_read(self, path: str) -> AsyncIterator[bytes]:
        object_key = self._get_object_key(path)
        try:
            response = await self._run_in_executor(
                lambda: self.client.get_object(Bucket=self.bucket_name, Key=object_key)
            )
        except ClientError as e:
            if _is_not_found(e):
                raise StorageNotFoundError(f"File not found: {path}")
            self.logger.error(f"Failed to open {path} from S3: {e}")
            raise StorageDownloadError(f"Download failed: {e}")

        body = response['Body']

        async def _chunks():
            try:
                while chunk := await self._run_in_executor(body.read, self.chunk_size):
                    yield chunk
            finally:
                body.close()

        return _chunks()

    async def _open_write(self, path: str) -> RawWriter:
        return _S3Writer(self, self._get_object_key(path))

    async def _remove(self, path: str) -> None:
        if not await self.exists(path):
            raise StorageNotFoundError(f"File not found: {path}")

        object_key = self._get_object_key(path)
        await self._run_in_executor(
            lambda: self.client.delete_object(Bucket=self.bucket_name, Key=object_key)
        )
        self.logger.debug(f"Deleted object from S3: {object_key}")

    async def _rename(self, source_path: str, destination_path: str) -> None:
        source_key = self._get_object_key(source_path)
        destination_key = self._get_object_key(destination_path)
        try:
            await self._run_in_executor(
                lambda: self.client.copy_object(
                    Bucket=self.bucket_name,
                    Key=destination_key,
                    CopySource={"Bucket": self.bucket_name, "Key": source_key}
                )
            )
        except ClientError as e:
            if _is_not_found(e):
                raise StorageNotFoundError(f"File not found: {source_path}")
            raise StorageUploadError(f"Rename failed: {e}")

        await self._run_in_executor(
            lambda: self.client.delete_object(Bucket=self.bucket_name, Key=source_key)
        )

    async def exists(self, path: str) -> bool:
        object_key = self._get_object_key(path)
        try:
            await self._run_in_executor(
                lambda: self.client.head_object(Bucket=self.bucket_name, Key=object_key)
            )
            return True
        except ClientError as e:
            if _is_not_found(e):
                return False
            self.logger.error(f"Error checking S3 object existence: {e}")
            raise StorageDownloadError(f"Existence check failed: {e}")
