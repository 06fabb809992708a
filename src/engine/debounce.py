"""Per-key debounce scheduling on the running event loop."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

LOGGER = logging.getLogger("billing_sync.debounce")


class DebounceScheduler:
    """
    Coalesce bursts of calls into one delayed execution per key.

    A later ``schedule`` for the same key replaces an earlier one that has not fired
    yet, so the action runs once with the arguments of the last call. An action that
    already started is left alone.
    """

    def __init__(self, sleep: Callable[[float], Awaitable[Any]] | None = None) -> None:
        self._sleep = sleep or asyncio.sleep
        self._timers: dict[str, asyncio.Task[None]] = {}

    def schedule(
        self,
        key: str,
        action: Callable[..., Any],
        delay: float,
        *args: Any,
        **kwargs: Any,
    ) -> asyncio.Task[None]:
        self.cancel(key)
        task = asyncio.ensure_future(self._fire(key, action, delay, args, kwargs))
        self._timers[key] = task
        return task

    def cancel(self, key: str) -> bool:
        task = self._timers.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def cancel_all(self) -> None:
        for key in list(self._timers):
            self.cancel(key)

    def pending(self, key: str) -> bool:
        task = self._timers.get(key)
        return task is not None and not task.done()

    async def _fire(
        self,
        key: str,
        action: Callable[..., Any],
        delay: float,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> None:
        await self._sleep(delay)
        if self._timers.get(key) is asyncio.current_task():
            del self._timers[key]
        try:
            result = action(*args, **kwargs)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.exception("Debounced action %s failed: %s", key, exc)
