"""Database schema definitions for the braid tracker.

Contains the canonical SQL schema and the current schema version constant.
"""

from __future__ import annotations

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS issues (
    id          TEXT PRIMARY KEY,
    title       TEXT NOT NULL,
    body        TEXT DEFAULT '',
    status      TEXT NOT NULL DEFAULT 'open',
    priority    INTEGER NOT NULL DEFAULT 2,
    type        TEXT NOT NULL DEFAULT 'task',
    parent_id   TEXT REFERENCES issues(id) ON DELETE SET NULL,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL,
    closed_at   TEXT,
    external_number INTEGER,
    external_url    TEXT,

    CHECK (priority BETWEEN 0 AND 4),
    CHECK (status IN ('open', 'in_progress', 'closed')),
    CHECK (type IN ('bug', 'feature', 'task', 'epic', 'chore'))
);

CREATE INDEX IF NOT EXISTS idx_issues_status ON issues(status);
CREATE INDEX IF NOT EXISTS idx_issues_type ON issues(type);
CREATE INDEX IF NOT EXISTS idx_issues_parent ON issues(parent_id);
CREATE INDEX IF NOT EXISTS idx_issues_status_priority ON issues(status, priority, created_at);

-- One row per edge: issue_id depends on depends_on_id (equivalently,
-- depends_on_id blocks issue_id). Both directions are read from this table.
CREATE TABLE IF NOT EXISTS dependencies (
    issue_id       TEXT NOT NULL REFERENCES issues(id) ON DELETE CASCADE,
    depends_on_id  TEXT NOT NULL REFERENCES issues(id) ON DELETE CASCADE,
    created_at     TEXT NOT NULL,
    PRIMARY KEY (issue_id, depends_on_id)
);

CREATE INDEX IF NOT EXISTS idx_deps_depends_on ON dependencies(depends_on_id);

CREATE TABLE IF NOT EXISTS labels (
    issue_id TEXT NOT NULL REFERENCES issues(id) ON DELETE CASCADE,
    label    TEXT NOT NULL,
    PRIMARY KEY (issue_id, label)
);

CREATE TABLE IF NOT EXISTS assignees (
    issue_id TEXT NOT NULL REFERENCES issues(id) ON DELETE CASCADE,
    login    TEXT NOT NULL,
    PRIMARY KEY (issue_id, login)
);

CREATE TABLE IF NOT EXISTS events (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    issue_id   TEXT NOT NULL REFERENCES issues(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    actor      TEXT DEFAULT '',
    old_value  TEXT,
    new_value  TEXT,
    comment    TEXT DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_issue_time ON events(issue_id, created_at DESC);

-- ---- Sync bookkeeping ------------------------------------------------------

CREATE TABLE IF NOT EXISTS installations (
    id                TEXT PRIMARY KEY,
    owner             TEXT NOT NULL,
    repo              TEXT NOT NULL,
    webhook_secret    TEXT NOT NULL DEFAULT '',
    api_token         TEXT NOT NULL DEFAULT '',
    conventions       TEXT NOT NULL DEFAULT '{}',
    conflict_strategy TEXT NOT NULL DEFAULT 'newest-wins',
    create_remote     BOOLEAN NOT NULL DEFAULT 1,
    create_local      BOOLEAN NOT NULL DEFAULT 1,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL,
    UNIQUE (owner, repo),
    CHECK (conflict_strategy IN ('local-wins', 'remote-wins', 'newest-wins'))
);

CREATE TABLE IF NOT EXISTS issue_mappings (
    installation_id   TEXT NOT NULL REFERENCES installations(id) ON DELETE CASCADE,
    local_id          TEXT NOT NULL,
    remote_number     INTEGER NOT NULL,
    remote_url        TEXT NOT NULL DEFAULT '',
    last_synced_at    TEXT NOT NULL,
    local_updated_at  TEXT,
    remote_updated_at TEXT,
    version           INTEGER NOT NULL DEFAULT 1,
    PRIMARY KEY (installation_id, local_id),
    UNIQUE (installation_id, remote_number)
);

CREATE TABLE IF NOT EXISTS sync_states (
    installation_id      TEXT PRIMARY KEY REFERENCES installations(id) ON DELETE CASCADE,
    last_sync_at         TEXT,
    sync_status          TEXT NOT NULL DEFAULT 'idle',
    error_message        TEXT,
    error_count          INTEGER NOT NULL DEFAULT 0,
    last_github_event_id TEXT,
    last_local_revision  TEXT,
    CHECK (sync_status IN ('idle', 'syncing', 'error'))
);

CREATE TABLE IF NOT EXISTS processed_deliveries (
    installation_id TEXT NOT NULL REFERENCES installations(id) ON DELETE CASCADE,
    delivery_id     TEXT NOT NULL,
    processed_at    TEXT NOT NULL,
    PRIMARY KEY (installation_id, delivery_id)
);
"""

CURRENT_SCHEMA_VERSION = 1
