"""SyncMixin: installations, per-installation sync state, and webhook delivery dedup."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from typing import TYPE_CHECKING, Any

from braid.db_base import DBMixinProtocol, _now_iso

if TYPE_CHECKING:
    from braid.core import Installation, SyncState

logger = logging.getLogger(__name__)

_INSTALLATION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")
_VALID_STRATEGIES = ("local-wins", "remote-wins", "newest-wins")


def _row_to_installation(row: sqlite3.Row) -> Installation:
    from braid.core import Installation

    return Installation(
        id=row["id"],
        owner=row["owner"],
        repo=row["repo"],
        webhook_secret=row["webhook_secret"],
        api_token=row["api_token"],
        conventions=json.loads(row["conventions"]) if row["conventions"] else {},
        conflict_strategy=row["conflict_strategy"],
        create_remote=bool(row["create_remote"]),
        create_local=bool(row["create_local"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_state(row: sqlite3.Row) -> SyncState:
    from braid.core import SyncState

    return SyncState(
        installation_id=row["installation_id"],
        last_sync_at=row["last_sync_at"],
        sync_status=row["sync_status"],
        error_message=row["error_message"],
        error_count=row["error_count"],
        last_github_event_id=row["last_github_event_id"],
        last_local_revision=row["last_local_revision"],
    )


class SyncMixin(DBMixinProtocol):
    """Installation registry, SyncState cursor, and processed-delivery claims."""

    # -- Installations -------------------------------------------------------

    def add_installation(
        self,
        installation_id: str,
        owner: str,
        repo: str,
        *,
        webhook_secret: str = "",
        api_token: str = "",
        conventions: dict[str, Any] | None = None,
        conflict_strategy: str = "newest-wins",
        create_remote: bool = True,
        create_local: bool = True,
    ) -> Installation:
        """Register an installation and create its SyncState row."""
        from braid.conventions import merge_conventions

        if not _INSTALLATION_ID_RE.match(installation_id):
            msg = f"Invalid installation id '{installation_id}'"
            raise ValueError(msg)
        if not owner.strip() or not repo.strip():
            msg = "owner and repo must not be empty"
            raise ValueError(msg)
        if conflict_strategy not in _VALID_STRATEGIES:
            msg = f"Unknown conflict strategy '{conflict_strategy}'. Valid: {', '.join(_VALID_STRATEGIES)}"
            raise ValueError(msg)
        # Fail on bad overrides now rather than on the first webhook.
        merge_conventions(conventions or {})

        now = _now_iso()
        try:
            self.conn.execute(
                "INSERT INTO installations (id, owner, repo, webhook_secret, api_token, conventions, "
                "conflict_strategy, create_remote, create_local, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    installation_id,
                    owner,
                    repo,
                    webhook_secret,
                    api_token,
                    json.dumps(conventions or {}),
                    conflict_strategy,
                    int(create_remote),
                    int(create_local),
                    now,
                    now,
                ),
            )
            self.conn.execute(
                "INSERT INTO sync_states (installation_id, sync_status, error_count) VALUES (?, 'idle', 0)",
                (installation_id,),
            )
            self.conn.commit()
        except sqlite3.IntegrityError as exc:
            self.conn.rollback()
            msg = f"Installation already exists: {installation_id} ({owner}/{repo})"
            raise ValueError(msg) from exc
        logger.info("Added installation %s for %s/%s", installation_id, owner, repo, extra={"installation": installation_id})
        return self.get_installation(installation_id)

    def get_installation(self, installation_id: str) -> Installation:
        row = self.conn.execute("SELECT * FROM installations WHERE id = ?", (installation_id,)).fetchone()
        if row is None:
            msg = f"Installation not found: {installation_id}"
            raise KeyError(msg)
        return _row_to_installation(row)

    def list_installations(self) -> list[Installation]:
        rows = self.conn.execute("SELECT * FROM installations ORDER BY id").fetchall()
        return [_row_to_installation(r) for r in rows]

    def update_installation_conventions(self, installation_id: str, conventions: dict[str, Any]) -> Installation:
        """Replace an installation's convention overrides (validated before writing)."""
        from braid.conventions import merge_conventions

        self.get_installation(installation_id)
        merge_conventions(conventions)
        self.conn.execute(
            "UPDATE installations SET conventions = ?, updated_at = ? WHERE id = ?",
            (json.dumps(conventions), _now_iso(), installation_id),
        )
        self.conn.commit()
        return self.get_installation(installation_id)

    def remove_installation(self, installation_id: str) -> None:
        self.get_installation(installation_id)
        self.conn.execute("DELETE FROM installations WHERE id = ?", (installation_id,))
        self.conn.commit()

    # -- Sync state ----------------------------------------------------------

    def get_sync_state(self, installation_id: str) -> SyncState:
        row = self.conn.execute("SELECT * FROM sync_states WHERE installation_id = ?", (installation_id,)).fetchone()
        if row is None:
            msg = f"Sync state not found for installation: {installation_id}"
            raise KeyError(msg)
        return _row_to_state(row)

    def mark_syncing(self, installation_id: str) -> SyncState:
        self.conn.execute("UPDATE sync_states SET sync_status = 'syncing' WHERE installation_id = ?", (installation_id,))
        self.conn.commit()
        return self.get_sync_state(installation_id)

    def mark_sync_success(
        self,
        installation_id: str,
        *,
        full_pass: bool = False,
        local_revision: str | None = None,
    ) -> SyncState:
        """Return to ``idle``. A completed full pass also stamps ``last_sync_at`` and clears the error streak."""
        if full_pass:
            self.conn.execute(
                "UPDATE sync_states SET sync_status = 'idle', error_message = NULL, error_count = 0, "
                "last_sync_at = ?, last_local_revision = COALESCE(?, last_local_revision) WHERE installation_id = ?",
                (_now_iso(), local_revision, installation_id),
            )
        else:
            self.conn.execute(
                "UPDATE sync_states SET sync_status = CASE WHEN sync_status = 'syncing' THEN 'idle' ELSE sync_status END "
                "WHERE installation_id = ?",
                (installation_id,),
            )
        self.conn.commit()
        return self.get_sync_state(installation_id)

    def mark_sync_error(self, installation_id: str, message: str) -> SyncState:
        self.conn.execute(
            "UPDATE sync_states SET sync_status = 'error', error_message = ?, error_count = error_count + 1 WHERE installation_id = ?",
            (message, installation_id),
        )
        self.conn.commit()
        logger.warning("Sync error recorded: %s", message, extra={"installation": installation_id, "error": message})
        return self.get_sync_state(installation_id)

    # -- Webhook delivery dedup ----------------------------------------------

    def claim_delivery(self, installation_id: str, delivery_id: str) -> bool:
        """Record *delivery_id* as being processed. Returns False if it was already claimed."""
        cursor = self.conn.execute(
            "INSERT OR IGNORE INTO processed_deliveries (installation_id, delivery_id, processed_at) VALUES (?, ?, ?)",
            (installation_id, delivery_id, _now_iso()),
        )
        self.conn.commit()
        return cursor.rowcount == 1

    def release_delivery(self, installation_id: str, delivery_id: str) -> None:
        """Forget a claim so a redelivery of the same event is processed again."""
        self.conn.execute(
            "DELETE FROM processed_deliveries WHERE installation_id = ? AND delivery_id = ?",
            (installation_id, delivery_id),
        )
        self.conn.commit()

    def is_delivery_processed(self, installation_id: str, delivery_id: str) -> bool:
        return (
            self.conn.execute(
                "SELECT 1 FROM processed_deliveries WHERE installation_id = ? AND delivery_id = ?",
                (installation_id, delivery_id),
            ).fetchone()
            is not None
        )

    def record_delivery_processed(self, installation_id: str, delivery_id: str) -> None:
        self.conn.execute(
            "UPDATE sync_states SET last_github_event_id = ? WHERE installation_id = ?",
            (delivery_id, installation_id),
        )
        self.conn.commit()

    def prune_deliveries(self, installation_id: str, older_than: str) -> int:
        """Drop delivery claims made before *older_than*. Returns how many went."""
        cursor = self.conn.execute(
            "DELETE FROM processed_deliveries WHERE installation_id = ? AND processed_at < ?",
            (installation_id, older_than),
        )
        self.conn.commit()
        if cursor.rowcount:
            logger.info("Pruned %d delivery claims", cursor.rowcount, extra={"installation": installation_id})
        return cursor.rowcount
