"""Label and body-text conventions for trackers without native dependency fields.

GitHub has no native priority, in-progress status, dependency or epic
fields, so they are expressed through labels (``P1``, ``bug``,
``status:in-progress``) and body lines (``Depends on: #12, #34``).

A ``ConventionConfig`` is immutable. Installations store only their
overrides; ``merge_conventions`` builds the effective config from the
defaults each time, deterministically.

Override shape (all keys optional)::

    {
        "labels": {
            "type": {"defect": "bug"},
            "priority": {"urgent": 0},
            "in_progress": "doing",
        },
        "dependencies": {"pattern": "Requires:\\s*(.+)", "separator": " | ", "blocks_pattern": None},
        "epics": {"body_pattern": "Epic:\\s*#(\\d+)"},
    }
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from braid.errors import ConventionError

_VALID_TYPES = frozenset({"bug", "feature", "task", "epic", "chore"})

_ALLOWED_KEYS: dict[str, frozenset[str]] = {
    "labels": frozenset({"type", "priority", "in_progress"}),
    "dependencies": frozenset({"pattern", "separator", "blocks_pattern"}),
    "epics": frozenset({"body_pattern"}),
}


def _compile(pattern: str | None, flags: int, name: str) -> re.Pattern[str] | None:
    if not pattern:
        return None
    try:
        return re.compile(pattern, flags)
    except re.error as exc:
        msg = f"Invalid {name} pattern {pattern!r}: {exc}"
        raise ConventionError(msg) from exc


@dataclass(frozen=True)
class ConventionConfig:
    type_labels: Mapping[str, str]
    priority_labels: Mapping[str, int]
    in_progress_label: str | None
    depends_on_pattern: str | None
    blocks_pattern: str | None
    separator: str
    parent_pattern: str | None

    depends_on_re: re.Pattern[str] | None = field(init=False, repr=False, compare=False)
    blocks_re: re.Pattern[str] | None = field(init=False, repr=False, compare=False)
    parent_re: re.Pattern[str] | None = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        for label, issue_type in self.type_labels.items():
            if issue_type not in _VALID_TYPES:
                msg = f"Label {label!r} maps to unknown type {issue_type!r}"
                raise ConventionError(msg)
        for label, priority in self.priority_labels.items():
            if isinstance(priority, bool) or not isinstance(priority, int) or not (0 <= priority <= 4):
                msg = f"Label {label!r} maps to invalid priority {priority!r} (expected 0-4)"
                raise ConventionError(msg)
        if not self.separator:
            msg = "Dependency separator must not be empty"
            raise ConventionError(msg)
        # Freeze the label tables so a shared config cannot be mutated by a caller.
        object.__setattr__(self, "type_labels", MappingProxyType(dict(self.type_labels)))
        object.__setattr__(self, "priority_labels", MappingProxyType(dict(self.priority_labels)))
        object.__setattr__(self, "depends_on_re", _compile(self.depends_on_pattern, re.MULTILINE | re.IGNORECASE, "dependencies"))
        object.__setattr__(self, "blocks_re", _compile(self.blocks_pattern, re.MULTILINE | re.IGNORECASE, "blocks"))
        object.__setattr__(self, "parent_re", _compile(self.parent_pattern, re.MULTILINE, "parent"))

    def to_dict(self) -> dict[str, Any]:
        """Render in the override shape accepted by ``merge_conventions``."""
        return {
            "labels": {
                "type": dict(self.type_labels),
                "priority": dict(self.priority_labels),
                "in_progress": self.in_progress_label,
            },
            "dependencies": {
                "pattern": self.depends_on_pattern,
                "separator": self.separator,
                "blocks_pattern": self.blocks_pattern,
            },
            "epics": {"body_pattern": self.parent_pattern},
        }


DEFAULT_CONVENTIONS = ConventionConfig(
    type_labels={
        "bug": "bug",
        "enhancement": "feature",
        "task": "task",
        "epic": "epic",
        "chore": "chore",
    },
    priority_labels={"P0": 0, "P1": 1, "P2": 2, "P3": 3, "P4": 4},
    in_progress_label="status:in-progress",
    depends_on_pattern=r"Depends on:\s*(.+)",
    blocks_pattern=r"Blocks:\s*(.+)",
    separator=", ",
    parent_pattern=r"Parent:\s*#(\d+)",
)


def _section(overrides: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = overrides.get(name) or {}
    if not isinstance(section, Mapping):
        msg = f"Convention section '{name}' must be an object"
        raise ConventionError(msg)
    unknown = set(section) - _ALLOWED_KEYS[name]
    if unknown:
        msg = f"Unknown keys in convention section '{name}': {', '.join(sorted(unknown))}"
        raise ConventionError(msg)
    return section


def _table(section: Mapping[str, Any], key: str) -> dict[str, Any]:
    value = section.get(key) or {}
    if not isinstance(value, Mapping):
        msg = f"Convention table '{key}' must be an object"
        raise ConventionError(msg)
    return dict(value)


def merge_conventions(
    overrides: Mapping[str, Any] | None,
    defaults: ConventionConfig = DEFAULT_CONVENTIONS,
) -> ConventionConfig:
    """Build the effective config: label tables are merged key-by-key, scalars replace.

    A scalar override of ``None`` (or an empty pattern) disables that
    convention; an absent key keeps the default. Raises ``ConventionError``.
    """
    if not overrides:
        return defaults
    if not isinstance(overrides, Mapping):
        msg = "Convention overrides must be an object"
        raise ConventionError(msg)
    unknown = set(overrides) - set(_ALLOWED_KEYS)
    if unknown:
        msg = f"Unknown convention sections: {', '.join(sorted(unknown))}"
        raise ConventionError(msg)

    labels = _section(overrides, "labels")
    deps = _section(overrides, "dependencies")
    epics = _section(overrides, "epics")

    def pick(section: Mapping[str, Any], key: str, default: Any) -> Any:
        return section[key] if key in section else default

    separator = pick(deps, "separator", defaults.separator)
    if not isinstance(separator, str):
        msg = "Dependency separator must be a string"
        raise ConventionError(msg)

    return ConventionConfig(
        type_labels={**defaults.type_labels, **_table(labels, "type")},
        priority_labels={**defaults.priority_labels, **_table(labels, "priority")},
        in_progress_label=pick(labels, "in_progress", defaults.in_progress_label) or None,
        depends_on_pattern=pick(deps, "pattern", defaults.depends_on_pattern) or None,
        blocks_pattern=pick(deps, "blocks_pattern", defaults.blocks_pattern) or None,
        separator=separator,
        parent_pattern=pick(epics, "body_pattern", defaults.parent_pattern) or None,
    )
