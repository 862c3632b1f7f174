"""Per-debate exclusive critical sections."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from poliscope_backend.errors import ConcurrencyConflict


class DebateLockRegistry:
    """
    One asyncio.Lock per debate id.

    hold() takes several locks in lexicographic id order, so two merges over
    the same pair can never deadlock. A lock that cannot be taken within the
    timeout raises ConcurrencyConflict after releasing everything acquired so far.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock_for(self, debate_id: str) -> asyncio.Lock:
        lock = self._locks.get(debate_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[debate_id] = lock
        return lock

    def is_locked(self, debate_id: str) -> bool:
        lock = self._locks.get(debate_id)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, *debate_ids: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        ordered = sorted(set(debate_ids))
        acquired = []
        try:
            for debate_id in ordered:
                lock = self.lock_for(debate_id)
                if timeout is None:
                    await lock.acquire()
                else:
                    try:
                        await asyncio.wait_for(lock.acquire(), timeout)
                    except asyncio.TimeoutError:
                        raise ConcurrencyConflict(
                            f"timed out after {timeout}s waiting for debate {debate_id}",
                            debate_ids=ordered,
                        ) from None
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
