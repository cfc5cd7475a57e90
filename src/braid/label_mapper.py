"""Map remote labels to the local ``(type, priority, status)`` triple and back."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from braid.conventions import ConventionConfig

DEFAULT_TYPE = "task"
DEFAULT_PRIORITY = 2


@dataclass(frozen=True)
class MappedFields:
    type: str = DEFAULT_TYPE
    priority: int = DEFAULT_PRIORITY
    status: str = "open"
    remaining_labels: list[str] = field(default_factory=list)


def map_labels(labels: list[str], remote_state: str, config: ConventionConfig) -> MappedFields:
    """Derive local fields from remote labels.

    - type: the first label (input order) with a type mapping; else ``task``.
    - priority: lowest value among labels with a priority mapping; else 2.
    - status: ``closed`` whenever the remote is closed, else ``in_progress``
      if the in-progress label is present, else ``open``.
    - remaining_labels: everything not consumed above, blanks dropped.
    """
    consumed: set[str] = set()

    issue_type = DEFAULT_TYPE
    for label in labels:
        if label in config.type_labels:
            issue_type = config.type_labels[label]
            consumed.add(label)
            break

    priority: int | None = None
    for label in labels:
        if label in config.priority_labels:
            value = config.priority_labels[label]
            if priority is None or value < priority:
                priority = value
            consumed.add(label)

    if remote_state == "closed":
        status = "closed"
    elif config.in_progress_label and config.in_progress_label in labels:
        status = "in_progress"
        consumed.add(config.in_progress_label)
    else:
        status = "open"

    remaining = [label for label in labels if label and label not in consumed]
    return MappedFields(
        type=issue_type,
        priority=DEFAULT_PRIORITY if priority is None else priority,
        status=status,
        remaining_labels=remaining,
    )


def label_for_type(issue_type: str, config: ConventionConfig) -> str | None:
    """First label (in config order) that maps to *issue_type*."""
    for label, mapped in config.type_labels.items():
        if mapped == issue_type:
            return label
    return None


def label_for_priority(priority: int, config: ConventionConfig) -> str | None:
    for label, mapped in config.priority_labels.items():
        if mapped == priority:
            return label
    return None


def labels_for_fields(
    issue_type: str,
    priority: int,
    status: str,
    extra_labels: list[str],
    config: ConventionConfig,
) -> list[str]:
    """Reverse of ``map_labels``: the remote label list for local fields, deduplicated in order."""
    labels: list[str] = []
    type_label = label_for_type(issue_type, config)
    if type_label:
        labels.append(type_label)
    priority_label = label_for_priority(priority, config)
    if priority_label:
        labels.append(priority_label)
    if status == "in_progress" and config.in_progress_label:
        labels.append(config.in_progress_label)
    labels.extend(extra_labels)
    return list(dict.fromkeys(label for label in labels if label))
