"""Conversion between remote issues and local ``Issue`` objects.

Remote bodies reference other issues by number (``#12``). Callers pass a
lookup from remote number to local ID; references with no local
counterpart yet are returned separately as ``#<n>`` strings so they can be
written back unchanged instead of being dropped from the remote body.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from braid.body_parser import parse_issue_body, render_metadata_section, strip_convention_sections
from braid.core import ExternalRef, Issue
from braid.label_mapper import labels_for_fields, map_labels
from braid.remote import RemoteIssue, RemotePayload

if TYPE_CHECKING:
    from braid.conventions import ConventionConfig


@dataclass
class UnresolvedRefs:
    depends_on: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)
    parent: str | None = None

    def __bool__(self) -> bool:
        return bool(self.depends_on or self.blocks or self.parent)


@dataclass
class RemoteConversion:
    issue: Issue
    unresolved: UnresolvedRefs


def remote_to_issue(
    remote: RemoteIssue,
    config: ConventionConfig,
    *,
    issue_id: str = "",
    local_id_for: Callable[[int], str | None] | None = None,
    owner: str = "",
    repo: str = "",
) -> RemoteConversion:
    """Map labels, parse the body, and strip convention lines from the description."""
    mapped = map_labels(remote.labels, remote.state, config)
    parsed = parse_issue_body(remote.body, config)
    unresolved = UnresolvedRefs()

    def resolve(number: str, bucket: list[str] | None) -> str | None:
        local = local_id_for(int(number)) if local_id_for and number.isdigit() else None
        if local is None:
            if bucket is not None:
                bucket.append(f"#{number}")
            return None
        return local

    depends_on = [d for d in (resolve(n, unresolved.depends_on) for n in parsed.depends_on) if d]
    blocks = [b for b in (resolve(n, unresolved.blocks) for n in parsed.blocks) if b]
    parent_id: str | None = None
    if parsed.parent:
        parent_id = resolve(parsed.parent, None)
        if parent_id is None:
            unresolved.parent = f"#{parsed.parent}"

    url = remote.html_url or (f"https://github.com/{owner}/{repo}/issues/{remote.number}" if owner and repo else "")
    issue = Issue(
        id=issue_id,
        title=remote.title,
        body=strip_convention_sections(remote.body, config),
        status=mapped.status,
        type=mapped.type,
        priority=mapped.priority,
        labels=sorted(set(mapped.remaining_labels)),
        assignees=sorted(set(remote.assignees)),
        depends_on=depends_on,
        blocks=blocks,
        parent_id=parent_id,
        created_at=remote.created_at,
        updated_at=remote.updated_at,
        closed_at=remote.closed_at,
        external_ref=ExternalRef(number=remote.number, url=url),
    )
    return RemoteConversion(issue=issue, unresolved=unresolved)


def issue_to_remote(
    issue: Issue,
    config: ConventionConfig,
    *,
    remote_number_for: Callable[[str], int | None] | None = None,
    unresolved: UnresolvedRefs | None = None,
) -> RemotePayload:
    """Render a local issue as a remote payload.

    Mapped references become ``#<n>``; unmapped local IDs are written
    verbatim. *unresolved* references carried over from the remote body are
    appended so they survive the round trip.
    """

    def ref(local_id: str) -> str:
        number = remote_number_for(local_id) if remote_number_for else None
        return f"#{number}" if number is not None else local_id

    depends_on = [ref(d) for d in issue.depends_on]
    blocks = [ref(b) for b in issue.blocks]
    parent = ref(issue.parent_id) if issue.parent_id else None
    if unresolved:
        depends_on.extend(unresolved.depends_on)
        blocks.extend(unresolved.blocks)
        parent = parent or unresolved.parent

    metadata = render_metadata_section(
        list(dict.fromkeys(depends_on)), list(dict.fromkeys(blocks)), parent, config.separator
    )
    body = f"{issue.body}\n\n{metadata}" if metadata else issue.body
    return RemotePayload(
        title=issue.title,
        body=body.strip(),
        state="closed" if issue.status == "closed" else "open",
        labels=labels_for_fields(issue.type, issue.priority, issue.status, issue.labels, config),
        assignees=list(issue.assignees),
    )
