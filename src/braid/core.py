"""Core data model and database entry point for braid.

Single source of truth for all SQLite operations. The CLI, the webhook
server and the sync engine all import ``BraidDB`` from this module.

Convention-based discovery: each project has a ``.braid/`` directory
containing ``braid.db`` (SQLite), ``config.json`` and ``braid.log``.
"""

from __future__ import annotations

import contextlib
import copy
import json
import logging
import os
import sqlite3
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

from braid.db_issues import IssuesMixin
from braid.db_mappings import MappingsMixin
from braid.db_schema import CURRENT_SCHEMA_VERSION, SCHEMA_SQL
from braid.db_sync import SyncMixin
from braid.types.core import ExternalRefDict, IssueDict, ProjectConfig
from braid.types.sync import InstallationDict, IssueMappingDict, SyncStateDict

if TYPE_CHECKING:
    from braid.conventions import ConventionConfig

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constrained-string Literal types
# ---------------------------------------------------------------------------

IssueStatus = Literal["open", "in_progress", "closed"]
IssueType = Literal["bug", "feature", "task", "epic", "chore"]
ConflictStrategy = Literal["local-wins", "remote-wins", "newest-wins"]
SyncStatus = Literal["idle", "syncing", "error"]

VALID_STATUSES: frozenset[str] = frozenset({"open", "in_progress", "closed"})
VALID_TYPES: frozenset[str] = frozenset({"bug", "feature", "task", "epic", "chore"})
VALID_STRATEGIES: frozenset[str] = frozenset({"local-wins", "remote-wins", "newest-wins"})

# Spellings accepted when reading external representations (markdown mirror).
STATUS_ALIASES: dict[str, str] = {
    "open": "open",
    "in_progress": "in_progress",
    "in-progress": "in_progress",
    "closed": "closed",
    "done": "closed",
    "completed": "closed",
}


def normalize_status(value: str) -> str:
    """Map a status spelling to one of the three canonical statuses. Raises ``ValueError``."""
    key = value.strip().lower()
    if key not in STATUS_ALIASES:
        msg = f"Unknown status '{value}'. Valid: {', '.join(sorted(STATUS_ALIASES))}"
        raise ValueError(msg)
    return STATUS_ALIASES[key]


# ---------------------------------------------------------------------------
# Convention-based discovery
# ---------------------------------------------------------------------------

BRAID_DIR_NAME = ".braid"
DB_FILENAME = "braid.db"
CONFIG_FILENAME = "config.json"
DEFAULT_PORT = 8378

DEFAULT_CONFIG = ProjectConfig(
    prefix="braid",
    version=1,
    todo_dir=".todo",
    conflict_strategy="newest-wins",
    retry={"max_attempts": 3, "base_delay": 0.5, "max_delay": 8.0},
    error_budget=5,
    debounce_seconds=0.5,
    delivery_retention_days=30,
    port=DEFAULT_PORT,
)


def find_braid_root(start: Path | None = None) -> Path:
    """Return the nearest ``.braid/`` directory at or above *start* (default: cwd)."""
    origin = (start or Path.cwd()).resolve()
    for directory in (origin, *origin.parents):
        if (directory / BRAID_DIR_NAME).is_dir():
            return directory / BRAID_DIR_NAME
    msg = f"No {BRAID_DIR_NAME}/ directory found in {origin} or any parent"
    raise FileNotFoundError(msg)


def read_config(braid_dir: Path) -> ProjectConfig:
    """Read .braid/config.json merged over defaults. Returns defaults if missing or corrupt."""
    defaults = copy.deepcopy(DEFAULT_CONFIG)
    config_path = braid_dir / CONFIG_FILENAME
    if not config_path.exists():
        return defaults
    try:
        loaded = json.loads(config_path.read_text())
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("Failed to read %s, using defaults: %s", config_path, exc)
        return defaults
    if not isinstance(loaded, dict):
        logger.warning("Config %s is not a JSON object, using defaults", config_path)
        return defaults
    merged: ProjectConfig = {**defaults, **loaded}  # type: ignore[typeddict-item]
    if isinstance(loaded.get("retry"), dict):
        merged["retry"] = {**defaults["retry"], **loaded["retry"]}  # type: ignore[typeddict-item]
    return merged


def write_config(braid_dir: Path, config: dict[str, Any] | ProjectConfig) -> None:
    """Write .braid/config.json atomically."""
    write_atomic(braid_dir / CONFIG_FILENAME, json.dumps(config, indent=2) + "\n")


def write_atomic(path: Path, content: str) -> None:
    """Replace *path* with *content* in one step; readers never see a partial file."""
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(OSError):
            tmp.unlink()
        raise


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExternalRef:
    number: int
    url: str

    def to_dict(self) -> ExternalRefDict:
        return {"number": self.number, "url": self.url}


# Fields compared when deciding whether two copies of an issue diverge.
# Timestamps and computed fields are not compared.
CONTENT_FIELDS = ("title", "body", "status", "type", "priority", "labels", "assignees", "depends_on", "blocks", "parent_id")
_SET_FIELDS = frozenset({"labels", "assignees", "depends_on", "blocks"})


@dataclass
class Issue:
    id: str
    title: str
    body: str = ""
    status: str = "open"
    type: str = "task"
    priority: int = 2
    labels: list[str] = field(default_factory=list)
    assignees: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)
    parent_id: str | None = None
    created_at: str = ""
    updated_at: str = ""
    closed_at: str | None = None
    external_ref: ExternalRef | None = None
    # Computed (not stored directly)
    is_ready: bool = False

    def differing_fields(self, other: Issue) -> list[str]:
        """Names of content fields whose values differ. Set-valued fields ignore order."""
        diffs: list[str] = []
        for name in CONTENT_FIELDS:
            mine, theirs = getattr(self, name), getattr(other, name)
            if name in _SET_FIELDS:
                if set(mine) != set(theirs):
                    diffs.append(name)
            elif mine != theirs:
                diffs.append(name)
        return diffs

    def copy(self, **changes: Any) -> Issue:
        """Return a copy with list fields duplicated and *changes* applied."""
        base = replace(
            self,
            labels=list(self.labels),
            assignees=list(self.assignees),
            depends_on=list(self.depends_on),
            blocks=list(self.blocks),
        )
        return replace(base, **changes) if changes else base

    def to_dict(self) -> IssueDict:
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "status": self.status,
            "type": self.type,
            "priority": self.priority,
            "labels": self.labels,
            "assignees": self.assignees,
            "depends_on": self.depends_on,
            "blocks": self.blocks,
            "parent_id": self.parent_id,
            "created_at": self.created_at,  # type: ignore[typeddict-item]
            "updated_at": self.updated_at,  # type: ignore[typeddict-item]
            "closed_at": self.closed_at,  # type: ignore[typeddict-item]
            "external_ref": self.external_ref.to_dict() if self.external_ref else None,
            "is_ready": self.is_ready,
        }


@dataclass
class IssueMapping:
    installation_id: str
    local_id: str
    remote_number: int
    remote_url: str = ""
    last_synced_at: str = ""
    local_updated_at: str | None = None
    remote_updated_at: str | None = None
    version: int = 1

    def to_dict(self) -> IssueMappingDict:
        return {
            "installation_id": self.installation_id,
            "local_id": self.local_id,
            "remote_number": self.remote_number,
            "remote_url": self.remote_url,
            "last_synced_at": self.last_synced_at,  # type: ignore[typeddict-item]
            "local_updated_at": self.local_updated_at,  # type: ignore[typeddict-item]
            "remote_updated_at": self.remote_updated_at,  # type: ignore[typeddict-item]
            "version": self.version,
        }


@dataclass
class SyncState:
    installation_id: str
    last_sync_at: str | None = None
    sync_status: str = "idle"
    error_message: str | None = None
    error_count: int = 0
    last_github_event_id: str | None = None
    last_local_revision: str | None = None

    def to_dict(self) -> SyncStateDict:
        return {
            "installation_id": self.installation_id,
            "last_sync_at": self.last_sync_at,  # type: ignore[typeddict-item]
            "sync_status": self.sync_status,
            "error_message": self.error_message,
            "error_count": self.error_count,
            "last_github_event_id": self.last_github_event_id,
            "last_local_revision": self.last_local_revision,
        }


@dataclass
class Installation:
    id: str
    owner: str
    repo: str
    webhook_secret: str = field(default="", repr=False)
    api_token: str = field(default="", repr=False)
    conventions: dict[str, Any] = field(default_factory=dict)
    conflict_strategy: str = "newest-wins"
    create_remote: bool = True
    create_local: bool = True
    created_at: str = ""
    updated_at: str = ""

    def convention_config(self) -> ConventionConfig:
        """Merge this installation's overrides over the default conventions."""
        from braid.conventions import merge_conventions

        return merge_conventions(self.conventions)

    def to_dict(self) -> InstallationDict:
        return {
            "id": self.id,
            "owner": self.owner,
            "repo": self.repo,
            "conflict_strategy": self.conflict_strategy,
            "conventions": self.conventions,
            "create_remote": self.create_remote,
            "create_local": self.create_local,
            "created_at": self.created_at,  # type: ignore[typeddict-item]
            "updated_at": self.updated_at,  # type: ignore[typeddict-item]
        }


# ---------------------------------------------------------------------------
# BraidDB
# ---------------------------------------------------------------------------


class BraidDB(IssuesMixin, MappingsMixin, SyncMixin):
    """Direct SQLite operations for the local tracker and sync bookkeeping."""

    def __init__(
        self,
        db_path: str | Path,
        *,
        prefix: str = "braid",
        check_same_thread: bool = True,
    ) -> None:
        self.db_path = Path(db_path)
        self.prefix = prefix
        self._conn: sqlite3.Connection | None = None
        self._check_same_thread = check_same_thread

    @classmethod
    def from_project(cls, project_path: Path | None = None, *, check_same_thread: bool = True) -> BraidDB:
        """Create a BraidDB by discovering .braid/ from project_path (or cwd)."""
        braid_dir = find_braid_root(project_path)
        config = read_config(braid_dir)
        db = cls(
            braid_dir / DB_FILENAME,
            prefix=config.get("prefix", "braid"),
            check_same_thread=check_same_thread,
        )
        db.initialize()
        return db

    def __enter__(self) -> BraidDB:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path),
                isolation_level="DEFERRED",
                check_same_thread=self._check_same_thread,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    def initialize(self) -> None:
        """Create tables for a fresh database and stamp the schema version."""
        current_version = self.get_schema_version()
        if current_version == 0:
            self.conn.executescript(SCHEMA_SQL)
            self.conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION}")
        elif current_version > CURRENT_SCHEMA_VERSION:
            msg = f"Database schema v{current_version} is newer than supported v{CURRENT_SCHEMA_VERSION}"
            raise ValueError(msg)
        self.conn.commit()

    def get_schema_version(self) -> int:
        """Return the current schema version from PRAGMA user_version."""
        result: int = self.conn.execute("PRAGMA user_version").fetchone()[0]
        return result

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
