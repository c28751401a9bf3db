"""
Fan-out helpers: settle-all joins and fire-and-forget background work.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Iterable, List, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class Settled:
    """Outcome of one branch of a settle-all join."""
    ok: bool
    value: Any = None
    error: Optional[BaseException] = None


async def settle_all(awaitables: Iterable[Awaitable[Any]]) -> List[Settled]:
    """
    Run all awaitables concurrently and wait for every one of them.

    A failing branch never cancels its siblings; outcomes are returned in
    input order.
    """
    results = await asyncio.gather(*awaitables, return_exceptions=True)
    return [
        Settled(ok=False, error=result) if isinstance(result, BaseException)
        else Settled(ok=True, value=result)
        for result in results
    ]


class BackgroundTasks:
    """
    Dispatcher for best-effort work whose outcome the caller does not wait for.

    Failures are logged and discarded.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, coro: Awaitable[Any], description: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_done(t, description))
        return task

    def _on_done(self, task: asyncio.Task, description: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug(f"Background task cancelled: {description}")
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Background task failed ({description}): {error}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until every dispatched task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
