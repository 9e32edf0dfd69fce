"""
Cancellation Scope — revocable token threaded through every stage.

A scope is handed to each stage of a turn. Stages pull their upstream
through ``scope.iterate(...)``, which checks the scope before every unit
and abandons the stream as soon as the scope is cancelled. Cancellation
is a normal terminal path: iteration simply stops, nothing is raised.

Waits on a slow upstream are raced against the scope, so a cancelled
wait resolves on the next wake-up (or at the latest after one poll
interval) instead of hanging until the collaborator gives up.

    scope = CancellationScope.create()
    async for unit in scope.iterate(tts.synthesize(text)):
        ...
    scope.cancel()      # from anywhere, never blocks
"""
from __future__ import annotations

import asyncio
import itertools
import weakref
import structlog
from typing import Any, AsyncIterator, Optional, TypeVar

from utils.streams import AsyncIterableLike, close_async_iterator, is_async_iterable, to_async_iterable

logger = structlog.get_logger()

T = TypeVar("T")

DEFAULT_POLL_INTERVAL_S = 0.05

_scope_ids = itertools.count(1)
_CANCELLED = object()


class CancellationScope:
    """A cooperative cancellation token, optionally linked to a parent."""

    def __init__(
        self,
        poll_interval: float = DEFAULT_POLL_INTERVAL_S,
        parent: Optional["CancellationScope"] = None,
    ):
        self.scope_id = next(_scope_ids)
        self.poll_interval = poll_interval
        self.parent = parent
        self.reason = ""
        self._cancelled = False
        self._event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._children: "weakref.WeakSet[CancellationScope]" = weakref.WeakSet()

    @classmethod
    def create(cls, poll_interval: float = DEFAULT_POLL_INTERVAL_S) -> "CancellationScope":
        return cls(poll_interval=poll_interval)

    def child(self) -> "CancellationScope":
        """A scope that is cancelled together with this one, but not vice versa."""
        scope = CancellationScope(poll_interval=self.poll_interval, parent=self)
        scope._loop = self._loop
        self._children.add(scope)
        if self._cancelled:
            scope.cancel(self.reason)
        return scope

    # ── State ─────────────────────────────────────────────────

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        """Mark the scope cancelled. Idempotent; only sets flags and wakes waiters."""
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        self._wake()
        for child in list(self._children):
            child.cancel(reason)

    def _wake(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._event.set()
        else:
            # Called from another thread; the poll interval covers the race
            loop.call_soon_threadsafe(self._event.set)

    # ── Iteration ─────────────────────────────────────────────

    async def iterate(self, source: AsyncIterableLike[T]) -> AsyncIterator[T]:
        """
        Yield items from ``source`` until it ends or the scope is cancelled.
        The source is closed on exit either way.
        """
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        iterator = source.__aiter__() if is_async_iterable(source) else to_async_iterable(source)
        try:
            while not self._cancelled:
                step = asyncio.ensure_future(iterator.__anext__())
                try:
                    item = await self._race(step)
                except StopAsyncIteration:
                    return
                if item is _CANCELLED or self._cancelled:
                    return
                yield item
        finally:
            await close_async_iterator(iterator)

    async def _race(self, step: "asyncio.Future[Any]") -> Any:
        waker = asyncio.ensure_future(self._event.wait())
        try:
            while True:
                done, _ = await asyncio.wait(
                    {step, waker},
                    timeout=self.poll_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if step in done:
                    return step.result()
                if self._cancelled:
                    logger.debug("stage_wait_cancelled", scope=self.scope_id, reason=self.reason)
                    return _CANCELLED
        finally:
            waker.cancel()
            if not step.done():
                step.cancel()
                await asyncio.wait({step})
            if not step.cancelled():
                # Mark any late failure as retrieved; it belongs to a cancelled wait
                step.exception()

    def __repr__(self) -> str:
        state = f"cancelled:{self.reason}" if self._cancelled else "active"
        return f"<CancellationScope #{self.scope_id} {state}>"
