"""Polling watcher that feeds local edits into reconciliation.

Each tick:

1. If any ``*.md`` file in the mirror directory changed (name, size or
   mtime), or the tracker has new changes, ``sync_mirror`` runs so file
   edits land in the tracker and tracker edits land in the files.
2. Issues whose ``updated_at`` moved past the last tick are handed to every
   installation's engine through ``notify_local_change``. The engine's
   debouncer coalesces bursts before ``reconcile_local`` runs.

The first tick starts from the oldest ``last_sync_at`` across
installations, so anything ``braid status`` reports as pending is pushed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from braid.mirror import sync_mirror

if TYPE_CHECKING:
    from braid.core import BraidDB, Installation
    from braid.engine import SyncEngine

logger = logging.getLogger(__name__)

Fingerprint = tuple[tuple[str, int, int], ...]


class LocalWatcher:
    def __init__(
        self,
        db: BraidDB,
        engine_for: Callable[[Installation], SyncEngine],
        *,
        todo_dir: Path | None = None,
        strategy: str = "newest-wins",
        interval: float = 1.0,
    ) -> None:
        self.db = db
        self.engine_for = engine_for
        self.todo_dir = todo_dir
        self.strategy = strategy
        self.interval = interval
        self.notified = 0
        self._files: Fingerprint | None = None
        self._since = self._initial_cursor()

    def _initial_cursor(self) -> str:
        stamps = [self.db.get_sync_state(inst.id).last_sync_at for inst in self.db.list_installations()]
        if not stamps or any(s is None for s in stamps):
            return ""
        return min(s for s in stamps if s is not None)

    def _fingerprint(self) -> Fingerprint:
        if self.todo_dir is None or not self.todo_dir.is_dir():
            return ()
        entries = []
        for path in sorted(self.todo_dir.glob("*.md")):
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            entries.append((path.name, stat.st_mtime_ns, stat.st_size))
        return tuple(entries)

    def _sync_files(self, todo_dir: Path) -> None:
        result = sync_mirror(self.db, todo_dir, strategy=self.strategy)
        for err in result.errors:
            logger.warning("Mirror file %s skipped: %s", err["id"], err["error"])
        self._files = self._fingerprint()

    async def tick(self) -> list[str]:
        """Run one poll. Returns the IDs handed to the engines."""
        if self.todo_dir is not None and (self._fingerprint() != self._files or self.db.changed_since(self._since)):
            self._sync_files(self.todo_dir)

        changed = self.db.changed_since(self._since)
        if not changed:
            return []
        self._since = self.db.get_issue(changed[-1]).updated_at
        for installation in self.db.list_installations():
            self.engine_for(installation).notify_local_change(installation, changed)
        self.notified += len(changed)
        logger.info("Local changes queued: %s", ", ".join(changed))
        return changed

    async def run(self, stop: asyncio.Event | None = None, *, once: bool = False) -> None:
        """Poll until *stop* is set (or after a single tick when *once*)."""
        stop = stop or asyncio.Event()
        while True:
            await self.tick()
            if once or stop.is_set():
                return
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except TimeoutError:
                continue
            return
