"""Foundational TypedDicts for dataclass to_dict() returns."""

from __future__ import annotations

from typing import NewType, TypedDict

ISOTimestamp = NewType("ISOTimestamp", str)


class RetryConfig(TypedDict, total=False):
    max_attempts: int
    base_delay: float
    max_delay: float


class ProjectConfig(TypedDict, total=False):
    """Shape of .braid/config.json."""

    prefix: str
    version: int
    todo_dir: str
    conflict_strategy: str
    retry: RetryConfig
    error_budget: int
    debounce_seconds: float
    delivery_retention_days: int
    port: int


class ExternalRefDict(TypedDict):
    number: int
    url: str


class IssueDict(TypedDict):
    id: str
    title: str
    body: str
    status: str
    type: str
    priority: int
    labels: list[str]
    assignees: list[str]
    depends_on: list[str]
    blocks: list[str]
    parent_id: str | None
    created_at: ISOTimestamp
    updated_at: ISOTimestamp
    closed_at: ISOTimestamp | None
    external_ref: ExternalRefDict | None
    is_ready: bool


class EventRecord(TypedDict):
    """Row from the events table returned by ``get_events()``."""

    id: int
    issue_id: str
    event_type: str
    actor: str
    old_value: str | None
    new_value: str | None
    comment: str
    created_at: str
