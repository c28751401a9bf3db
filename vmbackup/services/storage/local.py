"""
Local (or mounted NFS/SMB) directory remote.
"""
from pathlib import Path
from typing import Dict, Any, List, AsyncIterator
import aiofiles
import aiofiles.os

from vmbackup.services.storage.base import (
    RawWriter,
    StorageBackend,
    StorageError,
    StorageUploadError,
    StorageNotFoundError
)


class _LocalWriter(RawWriter):

    def __init__(self, file):
        self.file = file

    async def write(self, chunk: bytes) -> None:
        await self.file.write(chunk)

    async def close(self) -> None:
        await self.file.flush()
        await self.file.close()

    async def abort(self) -> None:
        await self.file.close()


class LocalStorage(StorageBackend):
    """
    Remote rooted at `config["base_path"]`, created on first use.

    Storage paths map one to one onto files below the root.
    """

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.base_path = Path(config["base_path"])
        self.base_path.mkdir(parents=True, exist_ok=True)

    def get_full_path(self, path: str) -> Path:
        """Filesystem path of a storage path; paths escaping the root are refused."""
        full_path = self.base_path / path
        if not full_path.resolve().is_relative_to(self.base_path.resolve()):
            raise StorageError(f"Path {path} is outside base path")
        return full_path

    async def _list(self, path: str) -> List[str]:
        dir_path = self.get_full_path(path) if path else self.base_path

        if not await aiofiles.os.path.isdir(dir_path):
            raise StorageNotFoundError(f"Directory not found: {path}")

        return await aiofiles.os.listdir(dir_path)

    async def _open_read(self, path: str) -> AsyncIterator[bytes]:
        file_path = self.get_full_path(path)

        if not await aiofiles.os.path.isfile(file_path):
            raise StorageNotFoundError(f"File not found: {path}")

        async def _chunks():
            async with aiofiles.open(file_path, 'rb') as src:
                while chunk := await src.read(self.chunk_size):
                    yield chunk

        return _chunks()

    async def _open_write(self, path: str) -> RawWriter:
        file_path = self.get_full_path(path)
        try:
            await aiofiles.os.makedirs(file_path.parent, exist_ok=True)
            return _LocalWriter(await aiofiles.open(file_path, 'wb'))
        except OSError as e:
            self.logger.error(f"Failed to open {path} for writing: {e}")
            raise StorageUploadError(f"Cannot write {path}: {e}")

    async def _remove(self, path: str) -> None:
        file_path = self.get_full_path(path)
        try:
            await aiofiles.os.remove(file_path)
        except FileNotFoundError:
            raise StorageNotFoundError(f"File not found: {path}")

    async def _rename(self, source_path: str, destination_path: str) -> None:
        src = self.get_full_path(source_path)
        dst = self.get_full_path(destination_path)
        try:
            await aiofiles.os.makedirs(dst.parent, exist_ok=True)
            await aiofiles.os.replace(src, dst)
        except FileNotFoundError:
            raise StorageNotFoundError(f"File not found: {source_path}")

    async def exists(self, path: str) -> bool:
        try:
            return await aiofiles.os.path.exists(self.get_full_path(path))
        except StorageError:
            return False

