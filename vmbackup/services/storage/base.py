"""
Base storage backend interface.

Backends implement a handful of raw primitives; checksummed streams,
sidecar management and whole-file helpers are shared here.
"""
import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List, AsyncIterator, Union

from vmbackup.core.config import settings

logger = logging.getLogger(__name__)

CHECKSUM_SUFFIX = ".checksum"


def get_checksum_path(path: str) -> str:
    """Path of the sidecar file holding the checksum of `path`."""
    return f"{path}{CHECKSUM_SUFFIX}"


def join_path(*segments: str) -> str:
    """Join storage path segments with '/', ignoring empty ones."""
    return "/".join(s.strip("/") for s in segments if s and s.strip("/"))


class RawWriter(ABC):
    """Backend-specific sink used by OutputStream."""

    @abstractmethod
    async def write(self, chunk: bytes) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        """Commit the written data."""
        pass

    @abstractmethod
    async def abort(self) -> None:
        """Release resources after a failed write. Partial data may remain."""
        pass


class ReadStream:
    """
    Async chunk iterator over a stored file.

    When an expected checksum is set, the digest is verified once the
    underlying data is exhausted and StorageChecksumError is raised on
    mismatch.
    """

    def __init__(
        self,
        path: str,
        chunks: AsyncIterator[bytes],
        expected_checksum: Optional[str] = None,
        algorithm: str = "sha256"
    ):
        self.path = path
        self._chunks = chunks
        self.expected_checksum = expected_checksum
        self.algorithm = algorithm
        self.bytes_read = 0

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        hasher = hashlib.new(self.algorithm) if self.expected_checksum else None

        async for chunk in self._chunks:
            if hasher:
                hasher.update(chunk)
            self.bytes_read += len(chunk)
            yield chunk

        if hasher and hasher.hexdigest() != self.expected_checksum:
            raise StorageChecksumError(
                f"Checksum mismatch for {self.path}: "
                f"expected {self.expected_checksum}, got {hasher.hexdigest()}"
            )

    async def read(self) -> bytes:
        """Consume the whole stream and return its content."""
        return b"".join([chunk async for chunk in self])

    async def drain(self) -> int:
        """Consume the whole stream, discarding data. Returns bytes read."""
        async for _ in self:
            pass
        return self.bytes_read


class OutputStream:
    """
    Async context manager writing a file to storage.

    The checksum sidecar (if requested) is only written after the data has
    been committed; a failed write never leaves a sidecar behind.
    """

    def __init__(self, storage: "StorageBackend", path: str, checksum: bool = False):
        self.storage = storage
        self.path = path
        self.checksum = checksum
        self.bytes_written = 0
        self._writer: Optional[RawWriter] = None
        self._hasher = hashlib.new(storage.checksum_algorithm) if checksum else None

    async def __aenter__(self) -> "OutputStream":
        self._writer = await self.storage._open_write(self.path)
        return self

    async def write(self, chunk: bytes) -> None:
        await self._writer.write(chunk)
        if self._hasher:
            self._hasher.update(chunk)
        self.bytes_written += len(chunk)

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            await self._writer.abort()
            return False

        await self._writer.close()

        if self._hasher:
            await self.storage.output_file(
                get_checksum_path(self.path),
                f"{self.storage.checksum_algorithm}:{self._hasher.hexdigest()}"
            )

        return False


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize storage backend.

        Args:
            config: Storage-specific configuration dictionary
        """
        self.config = config
        self.logger = logger
        self.chunk_size = config.get("chunk_size", settings.STREAM_CHUNK_SIZE)
        self.checksum_algorithm = config.get("checksum_algorithm", settings.CHECKSUM_ALGORITHM)

    # ------------------------------------------------------------------
    # Backend primitives

    @abstractmethod
    async def _list(self, path: str) -> List[str]:
        """
        List entry names (files and directories) directly under `path`.

        Raises:
            StorageNotFoundError: If the directory does not exist
        """
        pass

    @abstractmethod
    async def _open_read(self, path: str) -> AsyncIterator[bytes]:
        """
        Open a file for reading and return an async iterator of chunks.

        Raises:
            StorageNotFoundError: If the file does not exist
        """
        pass

    @abstractmethod
    async def _open_write(self, path: str) -> RawWriter:
        """Open a file for writing, creating parent directories as needed."""
        pass

    @abstractmethod
    async def _remove(self, path: str) -> None:
        """
        Remove a file.

        Raises:
            StorageNotFoundError: If the file does not exist
        """
        pass

    @abstractmethod
    async def _rename(self, source_path: str, destination_path: str) -> None:
        """
        Rename a file, replacing the destination if present.

        Raises:
            StorageNotFoundError: If the source does not exist
        """
        pass

    @abstractmethod
    async def exists(self, path: str) -> bool:
        """Check if a file exists in storage."""
        pass

    # ------------------------------------------------------------------
    # Handler API

    async def list(self, path: str = "") -> List[str]:
        """List entry names in a directory (relative to the storage root)."""
        return await self._list(path)

    async def create_read_stream(
        self,
        path: str,
        checksum: bool = False,
        ignore_missing_checksum: bool = False
    ) -> ReadStream:
        """
        Open a stored file as a ReadStream.

        Args:
            path: Path in storage
            checksum: Verify the content against its checksum sidecar
            ignore_missing_checksum: Read without verification if the sidecar is absent

        Raises:
            StorageNotFoundError: If the file (or a required sidecar) is missing
        """
        expected = None
        algorithm = self.checksum_algorithm

        if checksum:
            try:
                raw = (await self.read_file(get_checksum_path(path))).decode().strip()
            except StorageNotFoundError:
                if not ignore_missing_checksum:
                    raise
                raw = None

            if raw:
                algorithm, _, expected = raw.partition(":")
                if not expected:
                    algorithm, expected = self.checksum_algorithm, raw

        chunks = await self._open_read(path)
        return ReadStream(path, chunks, expected_checksum=expected, algorithm=algorithm)

    def create_output_stream(self, path: str, checksum: bool = False) -> OutputStream:
        """
        Create a writer for `path`, to be used as an async context manager.

        Args:
            path: Path in storage
            checksum: Write a checksum sidecar once the data is committed
        """
        return OutputStream(self, path, checksum=checksum)

    async def unlink(self, path: str, checksum: bool = False) -> None:
        """
        Delete a file, and its checksum sidecar when `checksum` is set.

        Raises:
            StorageNotFoundError: If the file does not exist
        """
        await self._remove(path)

        if checksum:
            try:
                await self._remove(get_checksum_path(path))
            except StorageNotFoundError:
                pass

    async def rename(self, source_path: str, destination_path: str, checksum: bool = False) -> None:
        """Rename a file, and its checksum sidecar when `checksum` is set."""
        await self._rename(source_path, destination_path)

        if checksum:
            try:
                await self._rename(
                    get_checksum_path(source_path),
                    get_checksum_path(destination_path)
                )
            except StorageNotFoundError:
                pass

    async def output_file(self, path: str, data: Union[bytes, str]) -> None:
        """Write a whole file."""
        if isinstance(data, str):
            data = data.encode("utf-8")

        async with self.create_output_stream(path) as output:
            await output.write(data)

    async def read_file(self, path: str) -> bytes:
        """Read a whole file."""
        stream = await self.create_read_stream(path)
        return await stream.read()


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageConnectionError(StorageError):
    """Exception raised when connection to storage fails."""
    pass


class StorageUploadError(StorageError):
    """Exception raised when upload fails."""
    pass


class StorageDownloadError(StorageError):
    """Exception raised when download fails."""
    pass


class StorageNotFoundError(StorageError):
    """Exception raised when file is not found."""
    pass


class StorageChecksumError(StorageError):
    """Exception raised when stored content does not match its checksum."""
    pass
