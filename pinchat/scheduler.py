"""
Keyed, cancelable deferred callbacks on the asyncio event loop.

Scheduling a key that already has a pending callback cancels the old one first
(last scheduling wins). Callbacks are plain synchronous functions; they run on
the loop like any other event handler and must re-check state when they fire.
"""
import asyncio
import logging
from typing import Callable, Hashable, Optional

logger = logging.getLogger(__name__)


class Scheduler:
    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._handles: dict[Hashable, asyncio.TimerHandle] = {}

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def schedule(self, key: Hashable, delay: float, callback: Callable[[], None]) -> None:
        self.cancel(key)
        self._handles[key] = self._get_loop().call_later(delay, self._fire, key, callback)

    def cancel(self, key: Hashable) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def pending(self, key: Hashable) -> bool:
        return key in self._handles

    def cancel_all(self) -> None:
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    def _fire(self, key: Hashable, callback: Callable[[], None]) -> None:
        self._handles.pop(key, None)
        try:
            callback()
        except Exception:
            logger.exception(f"Scheduled callback failed: {key!r}")
