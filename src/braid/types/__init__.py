# IMPORT CONSTRAINT: types/ modules must only import from typing, stdlib, and each other.
# NEVER import from core.py, db_base.py, or any mixin (circular imports).
"""Typed return-value contracts for braid core, sync and API layers."""

from __future__ import annotations

from braid.types.core import (
    EventRecord,
    ExternalRefDict,
    ISOTimestamp,
    IssueDict,
    ProjectConfig,
    RetryConfig,
)
from braid.types.sync import (
    InstallationDict,
    IssueMappingDict,
    SyncErrorRecord,
    SyncResultDict,
    SyncStateDict,
)

__all__ = [
    "EventRecord",
    "ExternalRefDict",
    "ISOTimestamp",
    "InstallationDict",
    "IssueDict",
    "IssueMappingDict",
    "ProjectConfig",
    "RetryConfig",
    "SyncErrorRecord",
    "SyncResultDict",
    "SyncStateDict",
]
