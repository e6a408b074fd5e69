"""
Remote sync queue.

Local state is committed first; calls to the remote session store are then
queued here and run in order by a single worker. A task that keeps failing is
logged and dropped, it never touches local state.
"""
import asyncio
import logging
from typing import Any, Optional
from collections.abc import Awaitable, Callable

logger = logging.getLogger("navigator.hds.remote")

RemoteTask = Callable[[], Awaitable[Any]]


class RemoteSync:
    """In-process FIFO of remote calls with retries.

    Args:
        retries: attempts per task (at least 1).
        backoff: seconds to wait before retry ``n`` is ``backoff * n``.
    """

    def __init__(self, retries: int = 3, backoff: float = 0.5):
        self._retries = max(1, retries)
        self._backoff = backoff
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self.failed: list[str] = []
        self.completed = 0

    def __repr__(self) -> str:
        return f'<RemoteSync pending={self.pending} failed={len(self.failed)}>'

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def _ensure_worker(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name="navigator-hds-remote-sync"
            )
        return self._queue

    def submit(self, name: str, task: RemoteTask) -> None:
        """Queue a remote call. Must be called with a running event loop."""
        queue = self._ensure_worker()
        queue.put_nowait((name, task))
        logger.debug("Remote task queued: %s", name)

    async def _execute(self, name: str, task: RemoteTask) -> None:
        for attempt in range(1, self._retries + 1):
            try:
                await task()
                self.completed += 1
                return
            except asyncio.CancelledError:
                raise
            except Exception as err:
                logger.warning(
                    "Remote task %s failed (attempt %d/%d): %s",
                    name, attempt, self._retries, err,
                )
                if attempt < self._retries and self._backoff:
                    await asyncio.sleep(self._backoff * attempt)
        logger.error("Remote task %s dropped after %d attempt(s)", name, self._retries)
        self.failed.append(name)

    async def _run(self) -> None:
        queue = self._queue
        while True:
            name, task = await queue.get()
            try:
                await self._execute(name, task)
            finally:
                queue.task_done()

    async def join(self) -> None:
        """Wait until every queued task ran (or was dropped)."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        """Drain the queue and stop the worker."""
        await self.join()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
