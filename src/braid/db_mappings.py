"""MappingsMixin: the durable local-issue <-> remote-issue correlation table.

For a given installation, ``local_id`` and ``remote_number`` are each unique
(enforced by the schema). Rows carry an optimistic-concurrency ``version``:
``update_mapping`` only writes when the version read by the caller is still
current, and raises ``StaleMappingError`` otherwise.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import TYPE_CHECKING

from braid.db_base import DBMixinProtocol, _now_iso
from braid.errors import MappingError, StaleMappingError

if TYPE_CHECKING:
    from braid.core import IssueMapping

logger = logging.getLogger(__name__)


def _row_to_mapping(row: sqlite3.Row) -> IssueMapping:
    from braid.core import IssueMapping

    return IssueMapping(
        installation_id=row["installation_id"],
        local_id=row["local_id"],
        remote_number=row["remote_number"],
        remote_url=row["remote_url"],
        last_synced_at=row["last_synced_at"],
        local_updated_at=row["local_updated_at"],
        remote_updated_at=row["remote_updated_at"],
        version=row["version"],
    )


class MappingsMixin(DBMixinProtocol):
    """IssueMapping CRUD with per-installation uniqueness and row versioning."""

    def get_mapping(self, installation_id: str, local_id: str) -> IssueMapping | None:
        row = self.conn.execute(
            "SELECT * FROM issue_mappings WHERE installation_id = ? AND local_id = ?",
            (installation_id, local_id),
        ).fetchone()
        return _row_to_mapping(row) if row else None

    def get_mapping_by_remote(self, installation_id: str, remote_number: int) -> IssueMapping | None:
        row = self.conn.execute(
            "SELECT * FROM issue_mappings WHERE installation_id = ? AND remote_number = ?",
            (installation_id, remote_number),
        ).fetchone()
        return _row_to_mapping(row) if row else None

    def list_mappings(self, installation_id: str) -> list[IssueMapping]:
        rows = self.conn.execute(
            "SELECT * FROM issue_mappings WHERE installation_id = ? ORDER BY remote_number",
            (installation_id,),
        ).fetchall()
        return [_row_to_mapping(r) for r in rows]

    def create_mapping(
        self,
        installation_id: str,
        local_id: str,
        remote_number: int,
        *,
        remote_url: str = "",
        local_updated_at: str | None = None,
        remote_updated_at: str | None = None,
        commit: bool = True,
    ) -> IssueMapping:
        """Insert a new correlation. Raises ``MappingError`` if either side is already mapped."""
        now = _now_iso()
        try:
            self.conn.execute(
                "INSERT INTO issue_mappings (installation_id, local_id, remote_number, remote_url, last_synced_at, "
                "local_updated_at, remote_updated_at, version) VALUES (?, ?, ?, ?, ?, ?, ?, 1)",
                (installation_id, local_id, remote_number, remote_url, now, local_updated_at, remote_updated_at),
            )
            if commit:
                self.conn.commit()
        except sqlite3.IntegrityError as exc:
            self.conn.rollback()
            existing_local = self.get_mapping(installation_id, local_id)
            existing_remote = self.get_mapping_by_remote(installation_id, remote_number)
            if existing_local is not None:
                msg = f"Local issue {local_id} is already mapped to #{existing_local.remote_number}"
            elif existing_remote is not None:
                msg = f"Remote issue #{remote_number} is already mapped to {existing_remote.local_id}"
            else:
                msg = f"Cannot map {local_id} <-> #{remote_number}: {exc}"
            raise MappingError(msg) from exc
        logger.info(
            "Mapped %s <-> #%d",
            local_id,
            remote_number,
            extra={"installation": installation_id, "issue_id": local_id},
        )
        mapping = self.get_mapping(installation_id, local_id)
        assert mapping is not None
        return mapping

    def update_mapping(
        self,
        mapping: IssueMapping,
        *,
        local_updated_at: str | None = None,
        remote_updated_at: str | None = None,
        remote_url: str | None = None,
        commit: bool = True,
    ) -> IssueMapping:
        """Record a successful reconciliation of *mapping*.

        Writes only if the row still has ``mapping.version``; otherwise raises
        ``StaleMappingError`` so the caller can re-read and retry.
        """
        now = _now_iso()
        cursor = self.conn.execute(
            "UPDATE issue_mappings SET last_synced_at = ?, "
            "local_updated_at = COALESCE(?, local_updated_at), "
            "remote_updated_at = COALESCE(?, remote_updated_at), "
            "remote_url = COALESCE(?, remote_url), "
            "version = version + 1 "
            "WHERE installation_id = ? AND local_id = ? AND version = ?",
            (
                now,
                local_updated_at,
                remote_updated_at,
                remote_url,
                mapping.installation_id,
                mapping.local_id,
                mapping.version,
            ),
        )
        if cursor.rowcount == 0:
            self.conn.rollback()
            msg = f"Mapping for {mapping.local_id} changed since version {mapping.version}"
            raise StaleMappingError(msg)
        if commit:
            self.conn.commit()
        updated = self.get_mapping(mapping.installation_id, mapping.local_id)
        assert updated is not None
        return updated
