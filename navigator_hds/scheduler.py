"""
One-shot timer scheduling for compartment eviction.

The compartment store never talks to the event loop directly; it asks a
scheduler for a cancellable handle. ``LoopScheduler`` uses the running asyncio
loop. Without a running loop no timer is created and eviction falls back to
the periodic sweep and to read-time expiry checks.
"""
import asyncio
import logging
from typing import Optional, Protocol
from collections.abc import Callable

logger = logging.getLogger("navigator.hds.scheduler")


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    def call_later(
        self, delay: float, callback: Callable[[], None]
    ) -> Optional[TimerHandle]:
        ...


class LoopScheduler:
    """Schedule callbacks on the running asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def _get_loop(self) -> Optional[asyncio.AbstractEventLoop]:
        if self._loop is not None and not self._loop.is_closed():
            return self._loop
        try:
            return asyncio.get_running_loop()
        except RuntimeError:
            return None

    def call_later(
        self, delay: float, callback: Callable[[], None]
    ) -> Optional[asyncio.TimerHandle]:
        loop = self._get_loop()
        if loop is None:
            logger.warning(
                "No running event loop, timer of %.0fs not scheduled", delay
            )
            return None
        return loop.call_later(delay, callback)
