"""Off-loop execution of blocking classification calls.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> classify()

Worker threads share the loaded model and label table without locking, since
both are read-only after startup. A request waits at most ``queue_timeout``
seconds for a free worker; the route turns that timeout into a 503.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from snaplabel.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time load of the pool."""

    active: int
    queued: int


class InferencePool:
    """Runs at most ``max_concurrent`` classifications at once, queueing the rest."""

    def __init__(self, settings: Settings) -> None:
        self._queue_timeout = settings.queue_timeout
        self._slots = asyncio.Semaphore(settings.max_concurrent)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent,
            thread_name_prefix="snaplabel-classify",
        )
        self._counts = {"active": 0, "queued": 0}
        self._counts_lock = threading.Lock()
        self._closed = False

    @contextmanager
    def _counted(self, key: str) -> Iterator[None]:
        with self._counts_lock:
            self._counts[key] += 1
        try:
            yield
        finally:
            with self._counts_lock:
                self._counts[key] -= 1

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run ``func(*args)`` on a worker thread once a slot frees up.

        Raises:
            TimeoutError: If no slot frees up within the queue timeout.
            RuntimeError: If the pool has been shut down.
        """
        if self._closed:
            raise RuntimeError("Inference pool is shut down")

        with self._counted("queued"):
            try:
                async with asyncio.timeout(self._queue_timeout):
                    await self._slots.acquire()
            except TimeoutError:
                logger.warning("No free inference slot after %.1fs", self._queue_timeout)
                raise

        try:
            with self._counted("active"):
                loop = asyncio.get_running_loop()
                return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._slots.release()

    def stats(self) -> PoolStats:
        """Return the number of running and waiting requests."""
        with self._counts_lock:
            return PoolStats(active=self._counts["active"], queued=self._counts["queued"])

    def shutdown(self) -> None:
        """Refuse new work and wait for running classifications to finish."""
        self._closed = True
        self._executor.shutdown(wait=True)
