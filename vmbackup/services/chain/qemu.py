"""
Merge primitive backed by qemu-img.

Folding a delta into its parent is delegated to an external tool; the chain
merger only needs a callable with the MergePrimitive signature.
"""
import asyncio
import logging
from typing import Awaitable, Optional, Protocol

from vmbackup.core.config import settings
from vmbackup.services.errors import ChainMergeError
from vmbackup.services.storage.base import StorageBackend
from vmbackup.services.storage.local import LocalStorage

logger = logging.getLogger(__name__)


class MergePrimitive(Protocol):
    """Fold `child_path` into `parent_path`, rewriting the parent in place."""

    def __call__(
        self,
        parent_storage: StorageBackend,
        parent_path: str,
        child_storage: StorageBackend,
        child_path: str
    ) -> Awaitable[None]:
        ...


class QemuImgMerge:
    """
    Merge a delta image into its parent with `qemu-img rebase` + `qemu-img commit`.

    Only works on local storage since qemu-img needs filesystem paths.
    """

    def __init__(
        self,
        qemu_img: Optional[str] = None,
        image_format: Optional[str] = None,
        timeout: Optional[int] = None
    ):
        self.qemu_img = qemu_img or settings.QEMU_IMG_PATH
        self.image_format = image_format or settings.DISK_IMAGE_EXT
        self.timeout = timeout or settings.QEMU_IMG_TIMEOUT

    async def __call__(
        self,
        parent_storage: StorageBackend,
        parent_path: str,
        child_storage: StorageBackend,
        child_path: str
    ) -> None:
        if not isinstance(parent_storage, LocalStorage) or not isinstance(child_storage, LocalStorage):
            raise ChainMergeError(
                "qemu-img merge requires local storage",
                parent=parent_path,
                child=child_path
            )

        parent = str(parent_storage.get_full_path(parent_path))
        child = str(child_storage.get_full_path(child_path))

        # Point the delta at the parent without touching data, then commit
        # its clusters down into the parent
        await self._run(
            ["rebase", "-u", "-f", self.image_format, "-b", parent, "-F", self.image_format, child],
            parent_path,
            child_path
        )
        await self._run(["commit", "-f", self.image_format, child], parent_path, child_path)

        logger.debug(f"Committed {child_path} into {parent_path}")

    async def _run(self, args, parent_path: str, child_path: str) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                self.qemu_img,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise ChainMergeError(
                f"Cannot run {self.qemu_img}: {e}",
                parent=parent_path,
                child=child_path
            )

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ChainMergeError(
                f"qemu-img {args[0]} timed out after {self.timeout}s",
                parent=parent_path,
                child=child_path
            )

        if process.returncode != 0:
            raise ChainMergeError(
                f"qemu-img {args[0]} failed: {stderr.decode(errors='replace').strip()}",
                parent=parent_path,
                child=child_path
            )
