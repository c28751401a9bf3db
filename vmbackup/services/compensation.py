"""
Rollback-on-failure transactions.

A CompensationStack collects undo actions while a multistep operation runs.
If the operation fails, the actions run once each, newest first, and the
original error is re-raised. If it succeeds they are discarded.

    async with CompensationStack("rolling delta backup") as compensations:
        snapshot = await create_snapshot()
        compensations.register(lambda: delete_snapshot(snapshot))
        ...
"""
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")
Rollback = Callable[[], Union[Awaitable[Any], Any]]


class CompensationStack:
    """Ordered rollback actions scoped to one logical transaction."""

    def __init__(self, name: str = "operation"):
        self.name = name
        self._rollbacks: List[Rollback] = []

    def register(self, rollback: Rollback) -> None:
        """Register a zero-argument callable (sync or async) to undo a step."""
        self._rollbacks.append(rollback)

    def __len__(self) -> int:
        return len(self._rollbacks)

    async def rollback(self, error: Optional[BaseException] = None) -> None:
        """Run every registered rollback in reverse order, isolating failures."""
        rollbacks, self._rollbacks = self._rollbacks, []

        if rollbacks:
            logger.info(f"Rolling back {self.name}: {len(rollbacks)} action(s) after error: {error}")

        for rollback in reversed(rollbacks):
            try:
                result = rollback()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Rollback action failed during {self.name}: {e}", exc_info=True)

    def discard(self) -> None:
        self._rollbacks.clear()

    async def __aenter__(self) -> "CompensationStack":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self.discard()
        else:
            await self.rollback(exc)
        return False

    async def run(self, body: Callable[["CompensationStack"], Awaitable[T]]) -> T:
        """Run `body(self)` as a transaction and return its result."""
        async with self:
            return await body(self)
