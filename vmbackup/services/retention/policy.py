"""
Rolling retention: keep the newest `depth` items, delete the rest oldest first.

The same law is applied to per-disk chains, delta backup metadata, plain VM
images, snapshots and disaster-recovery copies; only the delete action
differs.
"""
import logging
from typing import Any, Awaitable, Callable, List, Sequence, TypeVar

from vmbackup.services.concurrency import settle_all

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetentionPruner:
    """Oldest-first pruning of an ordered (old to new) collection."""

    @staticmethod
    def select(entries: Sequence[T], depth: int) -> List[T]:
        """
        Return the entries beyond the newest `depth`.

        `excess = len(entries) - depth`; nothing is selected when excess <= 0.
        depth == 0 is not special-cased.
        """
        excess = len(entries) - depth
        if excess <= 0:
            return []
        return list(entries[:excess])

    async def prune(
        self,
        entries: Sequence[T],
        depth: int,
        delete: Callable[[T], Awaitable[Any]],
        best_effort: bool = False
    ) -> List[T]:
        """
        Delete the oldest entries so that at most `depth` remain.

        Deletions run concurrently and all of them are attempted.

        Args:
            entries: Collection ordered from oldest to newest
            depth: Number of newest entries to keep
            delete: Coroutine function deleting one entry
            best_effort: Log deletion failures instead of raising

        Returns:
            The entries that were deleted successfully

        Raises:
            Exception: The first deletion failure, unless best_effort is set
        """
        candidates = self.select(entries, depth)
        if not candidates:
            return []

        outcomes = await settle_all(delete(entry) for entry in candidates)

        deleted = []
        first_error = None
        for entry, outcome in zip(candidates, outcomes):
            if outcome.ok:
                deleted.append(entry)
                continue
            logger.warning(f"Failed to prune {entry}: {outcome.error}")
            if first_error is None:
                first_error = outcome.error

        logger.info(f"Pruned {len(deleted)}/{len(candidates)} item(s), keeping newest {depth}")

        if first_error is not None and not best_effort:
            raise first_error

        return deleted
