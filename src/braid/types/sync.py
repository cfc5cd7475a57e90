"""TypedDicts for installation, mapping, sync-state and sync-result payloads."""

from __future__ import annotations

from typing import Any, TypedDict

from braid.types.core import ISOTimestamp


class InstallationDict(TypedDict):
    """Public view of an installation. The webhook secret and API token are never included."""

    id: str
    owner: str
    repo: str
    conflict_strategy: str
    conventions: dict[str, Any]
    create_remote: bool
    create_local: bool
    created_at: ISOTimestamp
    updated_at: ISOTimestamp


class IssueMappingDict(TypedDict):
    installation_id: str
    local_id: str
    remote_number: int
    remote_url: str
    last_synced_at: ISOTimestamp
    local_updated_at: ISOTimestamp | None
    remote_updated_at: ISOTimestamp | None
    version: int


class SyncStateDict(TypedDict):
    installation_id: str
    last_sync_at: ISOTimestamp | None
    sync_status: str
    error_message: str | None
    error_count: int
    last_github_event_id: str | None
    last_local_revision: str | None


class SyncErrorRecord(TypedDict):
    id: str
    error: str


class SyncResultDict(TypedDict):
    installation_id: str
    created: list[str]
    updated: list[str]
    conflicts: list[str]
    errors: list[SyncErrorRecord]
    skipped: list[str]
    cancelled: bool
