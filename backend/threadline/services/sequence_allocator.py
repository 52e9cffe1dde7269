from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import IntegrityError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SequenceAllocator:
    """Serializes writers that allocate per-thread sequence numbers.

    Writers in this process queue on a per-thread lock. Writers in other
    processes are caught by the ``(thread_id, sequence_number)`` unique
    constraint: the whole write is re-run with a freshly read max.
    """

    def __init__(self, retry_attempts: int = 5) -> None:
        self._retry_attempts = max(1, retry_attempts)
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def lock_for(self, thread_id: str) -> asyncio.Lock:
        lock = self._locks.get(thread_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[thread_id] = lock
        return lock

    async def run(self, thread_id: str, write: Callable[[], Awaitable[T]]) -> T:
        """Run ``write`` under the thread's lock, retrying on sequence conflicts.

        ``write`` must open and commit its own transaction so a retry starts clean.
        """

        lock = self.lock_for(thread_id)
        async with lock:
            for attempt in range(1, self._retry_attempts + 1):
                try:
                    return await write()
                except IntegrityError:
                    if attempt == self._retry_attempts:
                        raise
                    logger.warning(
                        "Sequence conflict on thread %s; retrying (%s/%s)",
                        thread_id,
                        attempt,
                        self._retry_attempts,
                    )
        raise RuntimeError("Sequence allocation retries exhausted")
