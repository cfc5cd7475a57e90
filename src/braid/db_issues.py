"""IssuesMixin: local graph tracker, issue CRUD, dependencies, ready/blocked queries.

All methods access ``self.conn``, ``self.get_issue()``, etc. via
Python's MRO when composed into ``BraidDB``.

Dependencies live in a single edge table (``issue_id`` depends on
``depends_on_id``). ``Issue.depends_on`` and ``Issue.blocks`` are both read
from it, so the two directions can never disagree.
"""

from __future__ import annotations

import hashlib
import logging
import sqlite3
import uuid
from collections import deque
from typing import TYPE_CHECKING, Any, cast

from braid.db_base import DBMixinProtocol, _now_iso
from braid.types.core import EventRecord

if TYPE_CHECKING:
    from braid.core import ExternalRef, Issue

logger = logging.getLogger(__name__)

_VALID_STATUSES = ("open", "in_progress", "closed")
_VALID_TYPES = ("bug", "feature", "task", "epic", "chore")


def _validate_string_list(value: object, name: str) -> None:
    """Raise TypeError if *value* is not a list of strings."""
    if not isinstance(value, list) or not all(isinstance(i, str) for i in value):
        msg = f"{name} must be a list of strings"
        raise TypeError(msg)


def _dedupe(values: list[str]) -> list[str]:
    """Strip, drop empties, and deduplicate preserving first occurrence."""
    seen: dict[str, None] = {}
    for v in values:
        cleaned = v.strip()
        if cleaned:
            seen.setdefault(cleaned, None)
    return list(seen)


class IssuesMixin(DBMixinProtocol):
    """Issue CRUD, dependency graph and DAG queries (ready/blocked).

    Inherits ``DBMixinProtocol`` for type-safe access to shared attributes.
    Actual implementations provided by ``BraidDB`` at composition time via MRO.
    """

    # -- Validation ----------------------------------------------------------

    @staticmethod
    def _validate_fields(*, status: str | None = None, type: str | None = None, priority: int | None = None) -> None:
        if status is not None and status not in _VALID_STATUSES:
            msg = f"Unknown status '{status}'. Valid statuses: {', '.join(_VALID_STATUSES)}"
            raise ValueError(msg)
        if type is not None and type not in _VALID_TYPES:
            msg = f"Unknown type '{type}'. Valid types: {', '.join(_VALID_TYPES)}"
            raise ValueError(msg)
        if priority is not None and not (0 <= priority <= 4):
            msg = f"Priority must be between 0 and 4, got {priority}"
            raise ValueError(msg)

    def _validate_parent_id(self, issue_id: str | None, parent_id: str | None) -> None:
        if parent_id is None:
            return
        if parent_id == issue_id:
            msg = f"Issue {issue_id} cannot be its own parent"
            raise ValueError(msg)
        if self.conn.execute("SELECT 1 FROM issues WHERE id = ?", (parent_id,)).fetchone() is None:
            msg = f"Parent issue not found: {parent_id}"
            raise ValueError(msg)
        ancestor: str | None = parent_id
        while ancestor is not None:
            row = self.conn.execute("SELECT parent_id FROM issues WHERE id = ?", (ancestor,)).fetchone()
            if row is None:
                break
            ancestor = row["parent_id"]
            if ancestor == issue_id:
                msg = f"Setting parent_id to '{parent_id}' would create a circular parent chain"
                raise ValueError(msg)

    # -- Events --------------------------------------------------------------

    def _record_event(
        self,
        issue_id: str,
        event_type: str,
        *,
        actor: str = "",
        old_value: str | None = None,
        new_value: str | None = None,
        comment: str = "",
    ) -> None:
        self.conn.execute(
            "INSERT INTO events (issue_id, event_type, actor, old_value, new_value, comment, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (issue_id, event_type, actor, old_value, new_value, comment, _now_iso()),
        )

    def get_events(self, issue_id: str, *, limit: int = 100) -> list[EventRecord]:
        rows = self.conn.execute(
            "SELECT * FROM events WHERE issue_id = ? ORDER BY id DESC LIMIT ?",
            (issue_id, limit),
        ).fetchall()
        return cast(list[EventRecord], [dict(r) for r in rows])

    # -- ID generation -------------------------------------------------------

    def _generate_unique_id(self) -> str:
        """Generate a unique issue ID using O(1) EXISTS checks against the PK index."""
        for _ in range(10):
            candidate = f"{self.prefix}-{uuid.uuid4().hex[:10]}"
            if self.conn.execute("SELECT 1 FROM issues WHERE id = ?", (candidate,)).fetchone() is None:
                return candidate
        return f"{self.prefix}-{uuid.uuid4().hex[:16]}"

    # -- Issue CRUD ----------------------------------------------------------

    def create_issue(
        self,
        title: str,
        *,
        issue_id: str | None = None,
        body: str = "",
        status: str = "open",
        type: str = "task",
        priority: int = 2,
        parent_id: str | None = None,
        labels: list[str] | None = None,
        assignees: list[str] | None = None,
        deps: list[str] | None = None,
        external_ref: ExternalRef | None = None,
        created_at: str | None = None,
        updated_at: str | None = None,
        actor: str = "",
        commit: bool = True,
    ) -> Issue:
        if not title or not title.strip():
            msg = "Title cannot be empty"
            raise ValueError(msg)
        self._validate_fields(status=status, type=type, priority=priority)
        if labels is not None:
            _validate_string_list(labels, "labels")
        if assignees is not None:
            _validate_string_list(assignees, "assignees")
        if issue_id is not None and self.conn.execute("SELECT 1 FROM issues WHERE id = ?", (issue_id,)).fetchone():
            msg = f"Issue already exists: {issue_id}"
            raise ValueError(msg)
        self._validate_parent_id(issue_id, parent_id)

        # Reject unknown dependency IDs before the first write.
        if deps:
            dep_ph = ",".join("?" * len(deps))
            found = {r["id"] for r in self.conn.execute(f"SELECT id FROM issues WHERE id IN ({dep_ph})", deps).fetchall()}
            missing = [d for d in deps if d not in found]
            if missing:
                msg = f"Invalid dependency IDs (not found): {', '.join(missing)}"
                raise ValueError(msg)

        new_id = issue_id or self._generate_unique_id()
        now = _now_iso()
        created = created_at or now
        updated = updated_at or created
        closed_at = updated if status == "closed" else None

        try:
            self.conn.execute(
                "INSERT INTO issues (id, title, body, status, priority, type, parent_id, created_at, updated_at, "
                "closed_at, external_number, external_url) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    new_id,
                    title,
                    body,
                    status,
                    priority,
                    type,
                    parent_id,
                    created,
                    updated,
                    closed_at,
                    external_ref.number if external_ref else None,
                    external_ref.url if external_ref else None,
                ),
            )
            self._record_event(new_id, "created", actor=actor, new_value=title)
            for label in _dedupe(labels or []):
                self.conn.execute("INSERT OR IGNORE INTO labels (issue_id, label) VALUES (?, ?)", (new_id, label))
            for login in _dedupe(assignees or []):
                self.conn.execute("INSERT OR IGNORE INTO assignees (issue_id, login) VALUES (?, ?)", (new_id, login))
            for dep_id in deps or []:
                self.conn.execute(
                    "INSERT OR IGNORE INTO dependencies (issue_id, depends_on_id, created_at) VALUES (?, ?, ?)",
                    (new_id, dep_id, now),
                )
            if commit:
                self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

        logger.debug("Created issue %s", new_id, extra={"issue_id": new_id})
        return self.get_issue(new_id)

    def get_issue(self, issue_id: str) -> Issue:
        issues = self._build_issues_batch([issue_id])
        if not issues:
            msg = f"Issue not found: {issue_id}"
            raise KeyError(msg)
        return issues[0]

    def has_issue(self, issue_id: str) -> bool:
        return self.conn.execute("SELECT 1 FROM issues WHERE id = ?", (issue_id,)).fetchone() is not None

    def _build_issues_batch(self, issue_ids: list[str]) -> list[Issue]:
        """Build multiple Issues efficiently with batched queries (eliminates N+1)."""
        from braid.core import ExternalRef, Issue

        if not issue_ids:
            return []

        placeholders = ",".join("?" * len(issue_ids))

        rows_by_id: dict[str, sqlite3.Row] = {}
        for r in self.conn.execute(f"SELECT * FROM issues WHERE id IN ({placeholders})", issue_ids).fetchall():
            rows_by_id[r["id"]] = r

        labels_by_id: dict[str, list[str]] = {iid: [] for iid in issue_ids}
        for r in self.conn.execute(
            f"SELECT issue_id, label FROM labels WHERE issue_id IN ({placeholders}) ORDER BY label", issue_ids
        ).fetchall():
            labels_by_id[r["issue_id"]].append(r["label"])

        assignees_by_id: dict[str, list[str]] = {iid: [] for iid in issue_ids}
        for r in self.conn.execute(
            f"SELECT issue_id, login FROM assignees WHERE issue_id IN ({placeholders}) ORDER BY login", issue_ids
        ).fetchall():
            assignees_by_id[r["issue_id"]].append(r["login"])

        # Both directions come from the same edge rows, in creation order.
        depends_by_id: dict[str, list[str]] = {iid: [] for iid in issue_ids}
        for r in self.conn.execute(
            f"SELECT issue_id, depends_on_id FROM dependencies WHERE issue_id IN ({placeholders}) ORDER BY created_at, rowid",
            issue_ids,
        ).fetchall():
            depends_by_id[r["issue_id"]].append(r["depends_on_id"])

        blocks_by_id: dict[str, list[str]] = {iid: [] for iid in issue_ids}
        for r in self.conn.execute(
            f"SELECT depends_on_id, issue_id FROM dependencies WHERE depends_on_id IN ({placeholders}) ORDER BY created_at, rowid",
            issue_ids,
        ).fetchall():
            blocks_by_id[r["depends_on_id"]].append(r["issue_id"])

        open_blockers_by_id: dict[str, int] = dict.fromkeys(issue_ids, 0)
        for r in self.conn.execute(
            f"SELECT d.issue_id, COUNT(*) as cnt FROM dependencies d "
            f"JOIN issues i ON d.depends_on_id = i.id "
            f"WHERE d.issue_id IN ({placeholders}) AND i.status != 'closed' "
            f"GROUP BY d.issue_id",
            issue_ids,
        ).fetchall():
            open_blockers_by_id[r["issue_id"]] = r["cnt"]

        result: list[Issue] = []
        for iid in issue_ids:
            row = rows_by_id.get(iid)
            if row is None:
                continue
            ext = ExternalRef(number=row["external_number"], url=row["external_url"] or "") if row["external_number"] is not None else None
            result.append(
                Issue(
                    id=row["id"],
                    title=row["title"],
                    body=row["body"] or "",
                    status=row["status"],
                    type=row["type"],
                    priority=row["priority"],
                    labels=labels_by_id.get(iid, []),
                    assignees=assignees_by_id.get(iid, []),
                    depends_on=depends_by_id.get(iid, []),
                    blocks=blocks_by_id.get(iid, []),
                    parent_id=row["parent_id"],
                    created_at=row["created_at"],
                    updated_at=row["updated_at"],
                    closed_at=row["closed_at"],
                    external_ref=ext,
                    is_ready=(row["status"] != "closed" and open_blockers_by_id.get(iid, 0) == 0),
                )
            )
        return result

    def list_issues(
        self,
        *,
        status: str | None = None,
        type: str | None = None,
        label: str | None = None,
        assignee: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Issue]:
        conditions: list[str] = []
        params: list[Any] = []
        if status is not None:
            conditions.append("i.status = ?")
            params.append(status)
        if type is not None:
            conditions.append("i.type = ?")
            params.append(type)
        if label is not None:
            conditions.append("EXISTS (SELECT 1 FROM labels l WHERE l.issue_id = i.id AND l.label = ?)")
            params.append(label)
        if assignee is not None:
            conditions.append("EXISTS (SELECT 1 FROM assignees a WHERE a.issue_id = i.id AND a.login = ?)")
            params.append(assignee)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        rows = self.conn.execute(
            f"SELECT i.id FROM issues i {where} ORDER BY i.priority, i.created_at, i.id LIMIT ? OFFSET ?",
            [*params, limit, offset],
        ).fetchall()
        return self._build_issues_batch([r["id"] for r in rows])

    def list_all_issues(self) -> list[Issue]:
        rows = self.conn.execute("SELECT id FROM issues ORDER BY created_at, id").fetchall()
        return self._build_issues_batch([r["id"] for r in rows])

    def get_ready(self) -> list[Issue]:
        """Non-closed issues with no non-closed blockers, highest priority first."""
        rows = self.conn.execute(
            "SELECT i.id FROM issues i WHERE i.status != 'closed' AND NOT EXISTS ("
            "  SELECT 1 FROM dependencies d JOIN issues b ON d.depends_on_id = b.id"
            "  WHERE d.issue_id = i.id AND b.status != 'closed'"
            ") ORDER BY i.priority, i.created_at"
        ).fetchall()
        return self._build_issues_batch([r["id"] for r in rows])

    def get_blocked(self) -> list[Issue]:
        """Non-closed issues waiting on at least one non-closed blocker."""
        rows = self.conn.execute(
            "SELECT i.id FROM issues i WHERE i.status != 'closed' AND EXISTS ("
            "  SELECT 1 FROM dependencies d JOIN issues b ON d.depends_on_id = b.id"
            "  WHERE d.issue_id = i.id AND b.status != 'closed'"
            ") ORDER BY i.priority, i.created_at"
        ).fetchall()
        return self._build_issues_batch([r["id"] for r in rows])

    def update_issue(
        self,
        issue_id: str,
        *,
        title: str | None = None,
        body: str | None = None,
        status: str | None = None,
        type: str | None = None,
        priority: int | None = None,
        parent_id: str | None = None,
        labels: list[str] | None = None,
        assignees: list[str] | None = None,
        external_ref: ExternalRef | None = None,
        updated_at: str | None = None,
        closed_at: str | None = None,
        actor: str = "",
        commit: bool = True,
    ) -> Issue:
        """Update fields on an issue. ``parent_id=""`` clears the parent.

        ``updated_at`` overrides the bump-to-now, used by sync to mirror the
        winning side's timestamp.
        """
        current = self.get_issue(issue_id)

        # All validation happens before the first write.
        if title is not None and not title.strip():
            msg = "Title cannot be empty"
            raise ValueError(msg)
        self._validate_fields(status=status, type=type, priority=priority)
        if parent_id:
            self._validate_parent_id(issue_id, parent_id)
        if labels is not None:
            _validate_string_list(labels, "labels")
        if assignees is not None:
            _validate_string_list(assignees, "assignees")

        now = _now_iso()
        updates: list[str] = []
        params: list[Any] = []

        try:
            if title is not None and title != current.title:
                self._record_event(issue_id, "title_changed", actor=actor, old_value=current.title, new_value=title)
                updates.append("title = ?")
                params.append(title)

            if body is not None and body != current.body:
                self._record_event(issue_id, "body_changed", actor=actor)
                updates.append("body = ?")
                params.append(body)

            if status is not None and status != current.status:
                self._record_event(issue_id, "status_changed", actor=actor, old_value=current.status, new_value=status)
                updates.append("status = ?")
                params.append(status)
                if status == "closed":
                    updates.append("closed_at = ?")
                    params.append(closed_at or updated_at or now)
                elif current.status == "closed":
                    updates.append("closed_at = NULL")

            if type is not None and type != current.type:
                self._record_event(issue_id, "type_changed", actor=actor, old_value=current.type, new_value=type)
                updates.append("type = ?")
                params.append(type)

            if priority is not None and priority != current.priority:
                self._record_event(
                    issue_id, "priority_changed", actor=actor, old_value=str(current.priority), new_value=str(priority)
                )
                updates.append("priority = ?")
                params.append(priority)

            if parent_id is not None:
                new_parent = parent_id or None
                if new_parent != current.parent_id:
                    self._record_event(issue_id, "parent_changed", actor=actor, old_value=current.parent_id, new_value=new_parent)
                    updates.append("parent_id = ?")
                    params.append(new_parent)

            if external_ref is not None and external_ref != current.external_ref:
                updates.append("external_number = ?")
                params.append(external_ref.number)
                updates.append("external_url = ?")
                params.append(external_ref.url)

            changed = bool(updates)
            if labels is not None:
                changed |= self._replace_set(issue_id, "labels", "label", labels, current.labels, actor=actor)
            if assignees is not None:
                changed |= self._replace_set(issue_id, "assignees", "login", assignees, current.assignees, actor=actor)

            if changed or (updated_at is not None and updated_at != current.updated_at):
                updates.append("updated_at = ?")
                params.append(updated_at or now)
                params.append(issue_id)
                self.conn.execute(f"UPDATE issues SET {', '.join(updates)} WHERE id = ?", params)
            if commit:
                self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise

        return self.get_issue(issue_id)

    def _replace_set(
        self, issue_id: str, table: str, column: str, wanted: list[str], current: list[str], *, actor: str
    ) -> bool:
        """Make the rows in *table* for *issue_id* equal *wanted*. Returns True if anything changed.

        *table* and *column* are always hardcoded literals at the call site.
        """
        target = set(_dedupe(wanted))
        existing = set(current)
        for value in sorted(existing - target):
            self.conn.execute(f"DELETE FROM {table} WHERE issue_id = ? AND {column} = ?", (issue_id, value))
            self._record_event(issue_id, f"{column}_removed", actor=actor, old_value=value)
        for value in sorted(target - existing):
            self.conn.execute(f"INSERT OR IGNORE INTO {table} (issue_id, {column}) VALUES (?, ?)", (issue_id, value))
            self._record_event(issue_id, f"{column}_added", actor=actor, new_value=value)
        return target != existing

    def close_issue(self, issue_id: str, *, reason: str = "", actor: str = "") -> Issue:
        current = self.get_issue(issue_id)
        if current.status == "closed":
            msg = f"Issue {issue_id} is already closed"
            raise ValueError(msg)
        issue = self.update_issue(issue_id, status="closed", actor=actor, commit=False)
        if reason:
            self._record_event(issue_id, "close_reason", actor=actor, comment=reason)
        self.conn.commit()
        return issue

    def reopen_issue(self, issue_id: str, *, actor: str = "") -> Issue:
        current = self.get_issue(issue_id)
        if current.status != "closed":
            msg = f"Issue {issue_id} is not closed"
            raise ValueError(msg)
        return self.update_issue(issue_id, status="open", actor=actor)

    # -- Dependencies --------------------------------------------------------

    def add_dependency(self, issue_id: str, depends_on_id: str, *, actor: str = "") -> bool:
        self.get_issue(issue_id)  # raises KeyError if not found
        self.get_issue(depends_on_id)  # raises KeyError if not found

        if issue_id == depends_on_id:
            msg = f"Cannot add self-dependency: {issue_id}"
            raise ValueError(msg)
        if self._would_create_cycle(issue_id, depends_on_id):
            msg = f"Dependency {issue_id} -> {depends_on_id} would create a cycle"
            raise ValueError(msg)

        try:
            added = self._insert_edge(issue_id, depends_on_id, actor=actor)
            if added:
                now = _now_iso()
                self.conn.execute("UPDATE issues SET updated_at = ? WHERE id IN (?, ?)", (now, issue_id, depends_on_id))
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return added

    def remove_dependency(self, issue_id: str, depends_on_id: str, *, actor: str = "") -> bool:
        try:
            removed = self._delete_edge(issue_id, depends_on_id, actor=actor)
            if removed:
                now = _now_iso()
                self.conn.execute("UPDATE issues SET updated_at = ? WHERE id IN (?, ?)", (now, issue_id, depends_on_id))
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return removed

    def _insert_edge(self, issue_id: str, depends_on_id: str, *, actor: str) -> bool:
        cursor = self.conn.execute(
            "INSERT OR IGNORE INTO dependencies (issue_id, depends_on_id, created_at) VALUES (?, ?, ?)",
            (issue_id, depends_on_id, _now_iso()),
        )
        if cursor.rowcount == 0:
            return False
        self._record_event(issue_id, "dependency_added", actor=actor, new_value=depends_on_id)
        self._record_event(depends_on_id, "blocks_added", actor=actor, new_value=issue_id)
        return True

    def _delete_edge(self, issue_id: str, depends_on_id: str, *, actor: str) -> bool:
        cursor = self.conn.execute(
            "DELETE FROM dependencies WHERE issue_id = ? AND depends_on_id = ?",
            (issue_id, depends_on_id),
        )
        if cursor.rowcount == 0:
            return False
        self._record_event(issue_id, "dependency_removed", actor=actor, old_value=depends_on_id)
        self._record_event(depends_on_id, "blocks_removed", actor=actor, old_value=issue_id)
        return True

    def _would_create_cycle(self, issue_id: str, depends_on_id: str) -> bool:
        """Check if adding issue_id -> depends_on_id would create a cycle.

        Uses BFS from depends_on_id following existing dependency edges.
        If issue_id is reachable, adding the new edge would close a cycle.
        """
        visited: set[str] = set()
        queue = deque([depends_on_id])
        while queue:
            current = queue.popleft()
            if current == issue_id:
                return True
            if current in visited:
                continue
            visited.add(current)
            for r in self.conn.execute("SELECT depends_on_id FROM dependencies WHERE issue_id = ?", (current,)).fetchall():
                queue.append(r["depends_on_id"])
        return False

    def set_relations(
        self,
        issue_id: str,
        *,
        depends_on: list[str] | None = None,
        blocks: list[str] | None = None,
        actor: str = "",
        commit: bool = True,
    ) -> list[str]:
        """Replace the dependency edges touching *issue_id*.

        Used by sync. References to unknown issues, self references and edges
        that would close a cycle are skipped with a warning rather than failing
        the whole write. Issues on the far end of a changed edge get their
        ``updated_at`` bumped so their remote copy is refreshed on the next pass.
        Returns the skipped references.
        """
        current = self.get_issue(issue_id)
        skipped: list[str] = []
        touched: set[str] = set()

        def _usable(other: str) -> bool:
            if other == issue_id or not self.has_issue(other):
                skipped.append(other)
                logger.warning("Skipping dependency reference %s on %s: unknown issue", other, issue_id, extra={"issue_id": issue_id})
                return False
            return True

        try:
            if depends_on is not None:
                wanted = [d for d in _dedupe(depends_on) if _usable(d)]
                for old in current.depends_on:
                    if old not in wanted and self._delete_edge(issue_id, old, actor=actor):
                        touched.add(old)
                for dep in wanted:
                    if dep in current.depends_on:
                        continue
                    if self._would_create_cycle(issue_id, dep):
                        skipped.append(dep)
                        logger.warning("Skipping dependency %s -> %s: would create a cycle", issue_id, dep, extra={"issue_id": issue_id})
                        continue
                    if self._insert_edge(issue_id, dep, actor=actor):
                        touched.add(dep)

            if blocks is not None:
                wanted = [b for b in _dedupe(blocks) if _usable(b)]
                for old in current.blocks:
                    if old not in wanted and self._delete_edge(old, issue_id, actor=actor):
                        touched.add(old)
                for blocked in wanted:
                    if blocked in current.blocks:
                        continue
                    if self._would_create_cycle(blocked, issue_id):
                        skipped.append(blocked)
                        logger.warning("Skipping dependency %s -> %s: would create a cycle", blocked, issue_id, extra={"issue_id": issue_id})
                        continue
                    if self._insert_edge(blocked, issue_id, actor=actor):
                        touched.add(blocked)

            if touched:
                now = _now_iso()
                ph = ",".join("?" * len(touched))
                self.conn.execute(f"UPDATE issues SET updated_at = ? WHERE id IN ({ph})", [now, *sorted(touched)])
            if commit:
                self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return skipped

    # -- Change detection ----------------------------------------------------

    def local_revision(self) -> str:
        """Fingerprint of every issue's ``(id, updated_at)``. Changes whenever any issue changes."""
        digest = hashlib.sha256()
        for r in self.conn.execute("SELECT id, updated_at FROM issues ORDER BY id").fetchall():
            digest.update(f"{r['id']}\x00{r['updated_at']}\n".encode())
        return digest.hexdigest()[:16]

    def changed_since(self, revision_ts: str) -> list[str]:
        """IDs of issues whose ``updated_at`` is later than *revision_ts* (ISO string order)."""
        rows = self.conn.execute("SELECT id FROM issues WHERE updated_at > ? ORDER BY updated_at", (revision_ts,)).fetchall()
        return [r["id"] for r in rows]

    def find_by_external_url(self, url: str) -> Issue | None:
        """The local issue already pointing at remote *url*, if any."""
        if not url:
            return None
        row = self.conn.execute("SELECT id FROM issues WHERE external_url = ? ORDER BY created_at LIMIT 1", (url,)).fetchone()
        return self.get_issue(row["id"]) if row else None

    # -- Sync writes ---------------------------------------------------------

    def apply_merged(self, merged: Issue, *, updated_at: str | None, actor: str = "sync") -> Issue:
        """Overwrite the stored copy of ``merged.id`` with *merged*.

        Relations are merged through ``set_relations`` (unknown references
        are skipped). ``updated_at`` is stamped as given instead of now.
        """
        self.update_issue(
            merged.id,
            title=merged.title,
            body=merged.body,
            status=merged.status,
            type=merged.type,
            priority=merged.priority,
            parent_id=merged.parent_id or "",
            labels=merged.labels,
            assignees=merged.assignees,
            external_ref=merged.external_ref,
            updated_at=updated_at,
            closed_at=merged.closed_at,
            actor=actor,
            commit=False,
        )
        self.set_relations(merged.id, depends_on=merged.depends_on, blocks=merged.blocks, actor=actor)
        return self.get_issue(merged.id)
