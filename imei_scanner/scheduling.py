# imei_scanner/scheduling.py
"""
Single-owner timers on the asyncio event loop.

A ScheduledTask wraps one pending `loop.call_later` handle. Re-scheduling
replaces the pending call; cancel() is idempotent and sets a flag that a
callback already past its deadline checks before doing anything.
"""

from __future__ import annotations
import asyncio
import inspect
import logging
from typing import Any, Callable, Optional, Set

logger = logging.getLogger(__name__)


class ScheduledTask:
    """
    One named timer.

    The callback may be a plain function or a coroutine function; a
    coroutine is started as an asyncio task and kept referenced until done;
    a slow run may still be going when the next one starts.

    Example:
        >>> timer = ScheduledTask("scan_timeout", on_timeout)
        >>> timer.schedule(30.0)
        >>> timer.cancel()
    """

    def __init__(self, name: str, callback: Callable[[], Any]) -> None:
        self.name = name
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        self._cancelled = True

    @property
    def pending(self) -> bool:
        """A call is scheduled and not yet fired or cancelled."""
        return self._handle is not None and not self._cancelled

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def schedule(self, delay: float) -> None:
        """Arm (or re-arm) the timer; must be called from the event loop."""
        loop = asyncio.get_running_loop()
        if self._handle is not None:
            self._handle.cancel()
        self._cancelled = False
        self._handle = loop.call_later(max(0.0, delay), self._fire)
        logger.debug(f"Timer {self.name} armed for {delay:.2f}s")

    def cancel(self) -> None:
        """Stop any pending call. Safe to call repeatedly."""
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        if self._cancelled:
            return

        result = self._callback()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Timer {self.name} callback failed: {exc}", exc_info=exc)
