"""
Disk backup chain catalog.

A chain is the sorted list of `<timestamp>_<full|delta>.<ext>` files in one
disk's backup directory. A stabilized chain always starts with a full backup.
"""
import logging
import posixpath
from typing import List, Optional

from vmbackup.core.config import settings
from vmbackup.models.backup import BackupEntry
from vmbackup.services.errors import BackupNotFoundError, CorruptChainError
from vmbackup.services.retention.policy import RetentionPruner
from vmbackup.services.storage.base import StorageBackend, StorageNotFoundError, join_path

logger = logging.getLogger(__name__)


class ChainCatalog:
    """Lists, classifies and resolves per-disk backup chains on a remote."""

    def __init__(self, ext: Optional[str] = None, pruner: Optional[RetentionPruner] = None):
        self.ext = ext or settings.DISK_IMAGE_EXT
        self.pruner = pruner or RetentionPruner()

    def parse(self, filename: str) -> Optional[BackupEntry]:
        return BackupEntry.parse(filename, self.ext)

    async def list_backups(self, storage: StorageBackend, backup_dir: str) -> List[BackupEntry]:
        """
        List the chain stored in `backup_dir`, oldest first.

        A missing directory is an empty chain. Leading deltas with no full
        backup before them cannot be restored; they are deleted (best effort)
        and left out of the result.

        Args:
            storage: Storage handler of the remote
            backup_dir: Disk backup directory

        Returns:
            Chain entries, starting with a full backup (or empty)
        """
        try:
            files = await storage.list(backup_dir)
        except StorageNotFoundError:
            files = []

        backups = sorted(
            (entry for entry in map(self.parse, files) if entry is not None),
            key=lambda entry: entry.filename
        )

        i = 0
        while i < len(backups) and backups[i].is_delta:
            i += 1

        if i:
            logger.warning(f"Removing {i} orphaned delta backup(s) in {backup_dir}")
            await self.pruner.prune(
                backups,
                len(backups) - i,
                lambda entry: storage.unlink(join_path(backup_dir, entry.filename), checksum=True),
                best_effort=True
            )

        return backups[i:]

    async def has_full_backup(self, storage: StorageBackend, backup_dir: str) -> bool:
        return any(entry.is_full for entry in await self.list_backups(storage, backup_dir))

    async def list_dependencies(self, storage: StorageBackend, file_path: str) -> List[str]:
        """
        Resolve the files needed to restore `file_path`.

        Args:
            storage: Storage handler of the remote
            file_path: Path of a full or delta backup file

        Returns:
            Filenames (relative to the file's directory) from the nearest
            preceding full backup up to and including the target

        Raises:
            BackupNotFoundError: If the target is not in its chain
            CorruptChainError: If no full backup precedes the target
        """
        backup_dir = posixpath.dirname(file_path)
        target = self.parse(posixpath.basename(file_path))
        backups = await self.list_backups(storage, backup_dir)

        i = next(
            (index for index, entry in enumerate(backups)
             if target is not None and entry.timestamp == target.timestamp),
            -1
        )
        if i == -1:
            raise BackupNotFoundError(f"Disk backup to import not found on this remote: {file_path}")

        j = i
        while j >= 0 and backups[j].is_delta:
            j -= 1

        if j == -1:
            raise CorruptChainError(f"Unable to find full disk backup of: {file_path}")

        return [entry.filename for entry in backups[j:i + 1]]
