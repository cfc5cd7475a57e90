"""Conflict resolution between the local and remote copies of one issue.

``resolve`` is pure: it returns the merged issue and which side(s) need a
write, and leaves applying them (and advancing the mapping) to the engine.

Rules:

- A side has *changed* when its ``updated_at`` is later than the snapshot
  stored on the mapping at the last successful sync. Without a mapping both
  sides count as changed.
- One side changed: that side wins. Both changed: the strategy decides.
  ``newest-wins`` compares ``updated_at`` for the whole record; equal
  timestamps go to the remote side. Neither changed: the local copy stands
  and only missing relations are exchanged.
- ``depends_on`` and ``blocks`` are always the union of both sides (local
  entries first). A parent is never cleared by the losing side's value.
- A remote ``closed`` always propagates. A local ``closed`` is kept when
  the remote wins, but only reaches the remote if it is written anyway.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from braid.db_base import _parse_ts

if TYPE_CHECKING:
    from braid.core import Issue, IssueMapping

logger = logging.getLogger(__name__)

Side = Literal["local", "remote"]
STRATEGIES = ("local-wins", "remote-wins", "newest-wins")


@dataclass
class Resolution:
    merged: Issue
    local_write: bool
    remote_write: bool
    winner: Side | None
    conflict: bool = False
    local_changed: bool = False
    remote_changed: bool = False


def _changed(current: str, snapshot: str | None) -> bool:
    now = _parse_ts(current)
    then = _parse_ts(snapshot)
    if then is None:
        return True
    if now is None:
        return False
    return now > then


def _union(first: list[str], second: list[str]) -> list[str]:
    return list(dict.fromkeys([*first, *second]))


def _newest(local: Issue, remote: Issue) -> Side:
    local_ts = _parse_ts(local.updated_at)
    remote_ts = _parse_ts(remote.updated_at)
    if local_ts is None:
        return "remote"
    if remote_ts is None:
        return "local"
    return "local" if local_ts > remote_ts else "remote"


def resolve(
    local: Issue,
    remote: Issue,
    mapping: IssueMapping | None,
    strategy: str = "newest-wins",
) -> Resolution:
    """Merge *local* and *remote* (already converted to local IDs)."""
    if strategy not in STRATEGIES:
        msg = f"Unknown conflict strategy '{strategy}'. Valid: {', '.join(STRATEGIES)}"
        raise ValueError(msg)

    if mapping is None:
        local_changed = remote_changed = True
    else:
        local_changed = _changed(local.updated_at, mapping.local_updated_at)
        remote_changed = _changed(remote.updated_at, mapping.remote_updated_at)

    conflict = local_changed and remote_changed
    winner: Side | None
    if not local_changed and not remote_changed:
        winner = None
    elif conflict and not local.differing_fields(remote):
        # Both touched, same content: only timestamps moved.
        winner = _newest(local, remote)
        conflict = False
    elif conflict:
        if strategy == "local-wins":
            winner = "local"
        elif strategy == "remote-wins":
            winner = "remote"
        else:
            winner = _newest(local, remote)
    else:
        winner = "local" if local_changed else "remote"

    source = remote if winner == "remote" else local
    other = local if winner == "remote" else remote
    merged = source.copy(
        id=local.id,
        created_at=local.created_at or remote.created_at,
        depends_on=_union(local.depends_on, remote.depends_on),
        blocks=_union(local.blocks, remote.blocks),
        parent_id=source.parent_id or other.parent_id,
        external_ref=remote.external_ref or local.external_ref,
    )

    if remote.status == "closed":
        merged.status = "closed"
        merged.closed_at = merged.closed_at or remote.closed_at or remote.updated_at
    elif local.status == "closed" and winner != "local":
        merged.status = "closed"
        merged.closed_at = local.closed_at

    local_write = bool(merged.differing_fields(local))
    missing_on_remote = (
        set(merged.depends_on) - set(remote.depends_on)
        or set(merged.blocks) - set(remote.blocks)
        or (merged.parent_id is not None and remote.parent_id is None)
    )
    remote_write = bool(merged.differing_fields(remote)) and (winner == "local" or bool(missing_on_remote))

    if conflict:
        logger.info(
            "Conflict on %s resolved by %s: %s wins",
            local.id,
            strategy,
            winner,
            extra={"issue_id": local.id},
        )
    return Resolution(
        merged=merged,
        local_write=local_write,
        remote_write=remote_write,
        winner=winner,
        conflict=conflict,
        local_changed=local_changed,
        remote_changed=remote_changed,
    )
