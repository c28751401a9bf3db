"""
Chain consolidation: fold the oldest deltas of a chain into its full backup
so that the chain does not grow beyond the retention depth.
"""
import logging
from typing import Optional

from vmbackup.services.chain.catalog import ChainCatalog
from vmbackup.services.chain.qemu import MergePrimitive
from vmbackup.services.storage.base import (
    StorageBackend,
    StorageNotFoundError,
    get_checksum_path,
    join_path
)

logger = logging.getLogger(__name__)


async def check_file_integrity(storage: StorageBackend, path: str) -> None:
    """
    Read a file through its checksum, raising StorageChecksumError on mismatch.

    A missing file (or checksum sidecar) is not an error here.
    """
    try:
        stream = await storage.create_read_stream(path, checksum=True)
    except StorageNotFoundError:
        return

    await stream.drain()


class ChainMerger:
    """Consolidates a disk backup chain down to a retention depth."""

    def __init__(self, merge: MergePrimitive, catalog: Optional[ChainCatalog] = None):
        """
        Args:
            merge: Primitive folding a delta file into its parent in place
            catalog: Chain catalog (defaults to one using the configured extension)
        """
        self.merge = merge
        self.catalog = catalog or ChainCatalog()

    async def merge_if_needed(self, storage: StorageBackend, backup_dir: str, depth: int) -> Optional[str]:
        """
        Merge the chain in `backup_dir` so that exactly `depth` entries remain.

        The entry at `len - depth` becomes the new full backup: every delta
        from the nearest preceding full up to it is verified, folded into that
        full and deleted, then the full is renamed after the new head's
        timestamp. Older entries before that full are deleted.

        Args:
            storage: Storage handler of the remote
            backup_dir: Disk backup directory
            depth: Chain length to keep

        Returns:
            Path of the new full backup, or None if no merge was needed

        Raises:
            StorageChecksumError: If a file to merge is corrupted
            ChainMergeError: If the merge primitive fails
        """
        backups = await self.catalog.list_backups(storage, backup_dir)
        i = len(backups) - depth

        if i <= 0:
            return None

        target = backups[i]
        new_full_backup = join_path(backup_dir, f"{target.timestamp}_full.{self.catalog.ext}")

        await check_file_integrity(storage, join_path(backup_dir, target.filename))

        j = i
        while j > 0 and backups[j].is_delta:
            j -= 1
        full_backup_index = j

        for obsolete in backups[:full_backup_index]:
            path = join_path(backup_dir, obsolete.filename)
            try:
                await storage.unlink(path, checksum=True)
            except Exception as e:
                logger.warning(f"Failed to remove obsolete backup {path}: {e}")

        parent = join_path(backup_dir, backups[full_backup_index].filename)

        # The parent is rewritten in place: its checksum sidecar goes stale
        if full_backup_index < i:
            try:
                await storage.unlink(get_checksum_path(parent))
            except StorageNotFoundError:
                pass

        logger.info(
            f"Merging {i - full_backup_index} delta(s) into {parent} "
            f"(chain of {len(backups)}, depth {depth})"
        )

        for entry in backups[full_backup_index + 1:i + 1]:
            backup = join_path(backup_dir, entry.filename)

            try:
                await check_file_integrity(storage, backup)
                await self.merge(storage, parent, storage, backup)
            except Exception as e:
                logger.error(f"Unable to merge {backup} into {parent}: {e}")
                raise

            await storage.unlink(backup, checksum=True)

        if parent != new_full_backup:
            await storage.rename(parent, new_full_backup)

        logger.info(f"Chain {backup_dir} consolidated, new full backup {new_full_backup}")
        return new_full_backup
