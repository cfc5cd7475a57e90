"""Markdown mirror: one YAML-frontmatter file per issue under ``.todo/``.

File layout::

    ---
    id: braid-1a2b3c4d5e
    title: Fix login
    state: in_progress
    type: bug
    priority: 1
    assignee: alice
    labels: [frontend]
    dependsOn: [braid-0f9e8d7c6b]
    blocks: []
    createdAt: '2024-05-01T10:00:00+00:00'
    updatedAt: '2024-05-02T09:30:00+00:00'
    ---
    Description in Markdown.

``sync_mirror`` reconciles these files with the local tracker using the
same resolver as the remote sync. There is no mapping snapshot for files,
so any difference between the two copies is treated as a conflict and the
configured strategy decides (``local-wins`` meaning the database).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import frontmatter
import yaml

from braid.core import STATUS_ALIASES, VALID_TYPES, Issue, write_atomic
from braid.db_base import _parse_ts
from braid.resolver import resolve

if TYPE_CHECKING:
    from braid.core import BraidDB

logger = logging.getLogger(__name__)

DIRECTIONS = ("bidirectional", "db-to-files", "files-to-db")


@dataclass
class MirrorSyncResult:
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    files_written: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "files_written": self.files_written,
            "conflicts": self.conflicts,
            "errors": self.errors,
            "dry_run": self.dry_run,
        }


def slugify(text: str) -> str:
    slug = re.sub(r"[^\w\s-]", "", text.lower().strip())
    slug = re.sub(r"[\s_]+", "-", slug)
    return slug.strip("-")[:60] or "untitled"


def issue_filename(issue: Issue) -> str:
    safe_id = re.sub(r"[^A-Za-z0-9_.-]", "-", issue.id)
    return f"{safe_id}-{slugify(issue.title)}.md"


def _timestamp(value: object) -> str:
    """YAML may hand back datetimes for unquoted timestamps."""
    if isinstance(value, datetime):
        return (value if value.tzinfo else value.replace(tzinfo=UTC)).isoformat()
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC).isoformat()
    return str(value) if value else ""


def _checked_timestamp(meta: dict[str, Any], key: str) -> str:
    value = _timestamp(meta.get(key))
    try:
        _parse_ts(value)
    except ValueError as exc:
        msg = f"Invalid {key} '{value}': expected an ISO-8601 timestamp"
        raise ValueError(msg) from exc
    return value


def _string_list(value: object) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [str(v) for v in value if v is not None and str(v).strip()]
    return []


def _priority(value: object) -> int:
    if isinstance(value, bool):
        return 2
    if isinstance(value, int):
        return value if 0 <= value <= 4 else 2
    if isinstance(value, str):
        digits = value.strip().upper().removeprefix("P")
        if digits.isdigit() and 0 <= int(digits) <= 4:
            return int(digits)
    return 2


def issue_to_markdown(issue: Issue) -> str:
    metadata: dict[str, Any] = {
        "id": issue.id,
        "title": issue.title,
        "state": issue.status,
        "type": issue.type,
        "priority": issue.priority,
    }
    if len(issue.assignees) == 1:
        metadata["assignee"] = issue.assignees[0]
    elif issue.assignees:
        metadata["assignee"] = list(issue.assignees)
    metadata["labels"] = list(issue.labels)
    metadata["dependsOn"] = list(issue.depends_on)
    metadata["blocks"] = list(issue.blocks)
    if issue.parent_id:
        metadata["parent"] = issue.parent_id
    metadata["createdAt"] = issue.created_at
    metadata["updatedAt"] = issue.updated_at
    if issue.closed_at:
        metadata["closedAt"] = issue.closed_at
    post = frontmatter.Post(issue.body, **metadata)
    return frontmatter.dumps(post, sort_keys=False) + "\n"


def parse_issue_markdown(content: str) -> Issue:
    """Parse one mirror file. Raises ``ValueError`` for unusable frontmatter."""
    try:
        post = frontmatter.loads(content)
    except yaml.YAMLError as exc:
        msg = f"Invalid YAML frontmatter: {exc}"
        raise ValueError(msg) from exc
    meta = post.metadata
    if not isinstance(meta, dict) or not meta.get("id"):
        msg = "Frontmatter must be a mapping with an 'id'"
        raise ValueError(msg)

    state = str(meta.get("state") or meta.get("status") or "open").strip().lower()
    status = STATUS_ALIASES.get(state)
    if status is None:
        logger.warning("Unknown state '%s' in %s, reading as open", state, meta["id"])
        status = "open"
    issue_type = str(meta.get("type") or "task").strip().lower()
    if issue_type not in VALID_TYPES:
        issue_type = "task"

    return Issue(
        id=str(meta["id"]),
        title=str(meta.get("title") or "Untitled"),
        body=post.content.strip(),
        status=status,
        type=issue_type,
        priority=_priority(meta.get("priority", 2)),
        labels=sorted(set(_string_list(meta.get("labels")))),
        assignees=sorted(set(_string_list(meta.get("assignee")) + _string_list(meta.get("assignees")))),
        depends_on=list(dict.fromkeys(_string_list(meta.get("dependsOn")))),
        blocks=list(dict.fromkeys(_string_list(meta.get("blocks")))),
        parent_id=str(meta["parent"]) if meta.get("parent") else None,
        created_at=_checked_timestamp(meta, "createdAt"),
        updated_at=_checked_timestamp(meta, "updatedAt"),
        closed_at=_checked_timestamp(meta, "closedAt") or None,
    )


def load_mirror(todo_dir: Path, result: MirrorSyncResult | None = None) -> dict[str, tuple[Path, Issue]]:
    """Read every ``*.md`` file in *todo_dir*, keyed by issue ID."""
    found: dict[str, tuple[Path, Issue]] = {}
    if not todo_dir.is_dir():
        return found
    for path in sorted(todo_dir.glob("*.md")):
        try:
            issue = parse_issue_markdown(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Skipping %s: %s", path.name, exc)
            if result is not None:
                result.errors.append({"id": path.name, "error": str(exc)})
            continue
        if issue.id in found:
            logger.warning("Duplicate id %s in %s and %s", issue.id, found[issue.id][0].name, path.name)
            if result is not None:
                result.errors.append({"id": path.name, "error": f"duplicate id {issue.id}"})
            continue
        found[issue.id] = (path, issue)
    return found


def write_issue_file(todo_dir: Path, issue: Issue, existing: Path | None = None) -> Path:
    """Write *issue* to its mirror file, keeping an existing file's name."""
    todo_dir.mkdir(parents=True, exist_ok=True)
    path = existing or todo_dir / issue_filename(issue)
    write_atomic(path, issue_to_markdown(issue))
    return path


def _winning_stamp(local: Issue, file_issue: Issue, winner: str | None) -> str | None:
    """``updated_at`` for the tracker copy; None means now.

    A file edited by hand usually keeps its old ``updatedAt``. When such a
    file wins, the tracker copy is stamped now so the edit counts as a local
    change for the remote sync.
    """
    if winner != "remote":
        return local.updated_at or None
    file_ts, local_ts = _parse_ts(file_issue.updated_at), _parse_ts(local.updated_at)
    if file_ts is not None and (local_ts is None or file_ts > local_ts):
        return file_issue.updated_at
    return None


def sync_mirror(
    db: BraidDB,
    todo_dir: Path,
    *,
    strategy: str = "newest-wins",
    direction: str = "bidirectional",
    dry_run: bool = False,
) -> MirrorSyncResult:
    """Reconcile the local tracker with the markdown mirror in *todo_dir*."""
    if direction not in DIRECTIONS:
        msg = f"Unknown direction '{direction}'. Valid: {', '.join(DIRECTIONS)}"
        raise ValueError(msg)
    to_db = direction in ("bidirectional", "files-to-db")
    to_files = direction in ("bidirectional", "db-to-files")

    result = MirrorSyncResult(dry_run=dry_run)
    files = load_mirror(todo_dir, result)
    local = {issue.id: issue for issue in db.list_all_issues()}
    pending_relations: list[Issue] = []

    for issue_id, (path, file_issue) in files.items():
        if issue_id not in local:
            if not to_db:
                continue
            result.created.append(issue_id)
            if dry_run:
                continue
            try:
                db.create_issue(
                    file_issue.title,
                    issue_id=issue_id,
                    body=file_issue.body,
                    status=file_issue.status,
                    type=file_issue.type,
                    priority=file_issue.priority,
                    labels=file_issue.labels,
                    assignees=file_issue.assignees,
                    created_at=file_issue.created_at or None,
                    updated_at=file_issue.updated_at or None,
                    actor="mirror",
                )
            except ValueError as exc:
                result.created.remove(issue_id)
                result.errors.append({"id": issue_id, "error": str(exc)})
                continue
            pending_relations.append(file_issue)
            continue

        resolution = resolve(local[issue_id], file_issue, None, strategy)
        if resolution.conflict:
            result.conflicts.append(issue_id)
        if resolution.local_write and to_db:
            result.updated.append(issue_id)
            if not dry_run:
                stamp = _winning_stamp(local[issue_id], file_issue, resolution.winner)
                try:
                    local[issue_id] = db.apply_merged(resolution.merged, updated_at=stamp or None, actor="mirror")
                except ValueError as exc:
                    result.updated.remove(issue_id)
                    result.errors.append({"id": issue_id, "error": str(exc)})
                    continue
        if (resolution.remote_write or resolution.local_write) and to_files:
            result.files_written.append(path.name)
            if not dry_run:
                write_issue_file(todo_dir, db.get_issue(issue_id), existing=path)

    # Relations last, once every new issue exists.
    for file_issue in pending_relations:
        # Edges added by an earlier file in this pass must survive.
        current = db.get_issue(file_issue.id)
        db.set_relations(
            file_issue.id,
            depends_on=list(dict.fromkeys([*current.depends_on, *file_issue.depends_on])),
            blocks=list(dict.fromkeys([*current.blocks, *file_issue.blocks])),
            actor="mirror",
        )
        if file_issue.parent_id and db.has_issue(file_issue.parent_id):
            try:
                db.update_issue(file_issue.id, parent_id=file_issue.parent_id, updated_at=file_issue.updated_at or None)
            except ValueError as exc:
                result.errors.append({"id": file_issue.id, "error": str(exc)})

    if to_files:
        for issue_id, issue in local.items():
            if issue_id in files:
                continue
            filename = issue_filename(issue)
            result.files_written.append(filename)
            if not dry_run:
                write_issue_file(todo_dir, db.get_issue(issue_id))

    logger.info(
        "Mirror sync (%s%s): %d created, %d updated, %d files written, %d conflicts",
        direction,
        ", dry run" if dry_run else "",
        len(result.created),
        len(result.updated),
        len(result.files_written),
        len(result.conflicts),
    )
    return result
