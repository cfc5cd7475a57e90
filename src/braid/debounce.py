"""Coalescing of bursty local change notifications.

``ChangeDebouncer`` collects issue IDs and hands them to a callback once no
new notification has arrived for ``delay`` seconds. IDs are merged, never
dropped: notifications that arrive while the callback is running are
delivered in the next batch, and a batch whose callback fails is queued
again.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Iterable

logger = logging.getLogger(__name__)


class ChangeDebouncer:
    def __init__(self, callback: Callable[[set[str]], Awaitable[object]], *, delay: float = 0.5) -> None:
        self._callback = callback
        self._delay = delay
        self._pending: set[str] = set()
        self._timer: asyncio.Task[None] | None = None
        self._firing: set[asyncio.Task[None]] = set()
        self._lock = asyncio.Lock()

    @property
    def pending(self) -> frozenset[str]:
        return frozenset(self._pending)

    def notify(self, issue_ids: Iterable[str]) -> None:
        """Queue *issue_ids* and restart the quiet-period timer."""
        self._pending.update(issue_ids)
        if not self._pending:
            return
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().create_task(self._fire_later())

    async def _fire_later(self) -> None:
        await asyncio.sleep(self._delay)
        # Past the quiet period: a new notify must not cancel this delivery.
        task = asyncio.current_task()
        if task is self._timer:
            self._timer = None
        if task is not None:
            self._firing.add(task)
            task.add_done_callback(self._firing.discard)
        await self.flush()

    async def flush(self) -> None:
        """Deliver everything pending now."""
        async with self._lock:
            if not self._pending:
                return
            batch, self._pending = self._pending, set()
            try:
                await self._callback(batch)
            except Exception:
                self._pending |= batch
                logger.exception("Change callback failed; %d issue(s) requeued", len(batch))

    async def close(self) -> None:
        """Cancel the timer and deliver whatever is still pending."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._timer
        self._timer = None
        if self._firing:
            await asyncio.gather(*self._firing)
        await self.flush()
