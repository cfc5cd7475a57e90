"""Tests for the conflict resolver."""

from __future__ import annotations

import pytest

from braid.core import ExternalRef, Issue, IssueMapping
from braid.resolver import resolve

T0 = "2024-05-01T10:00:00+00:00"
T1 = "2024-05-01T11:00:00+00:00"
T2 = "2024-05-01T12:00:00+00:00"


def _issue(**overrides: object) -> Issue:
    fields: dict[str, object] = {"id": "test-1", "title": "Title", "updated_at": T0, "created_at": T0}
    fields.update(overrides)
    return Issue(**fields)  # type: ignore[arg-type]


def _mapping(local_at: str = T0, remote_at: str = T0) -> IssueMapping:
    return IssueMapping("acme", "test-1", 42, local_updated_at=local_at, remote_updated_at=remote_at)


class TestChangeDetection:
    def test_only_remote_changed(self) -> None:
        local = _issue()
        remote = _issue(title="Remote title", updated_at=T1)
        res = resolve(local, remote, _mapping())
        assert res.winner == "remote"
        assert not res.conflict
        assert res.merged.title == "Remote title"
        assert res.local_write
        assert not res.remote_write

    def test_only_local_changed(self) -> None:
        local = _issue(title="Local title", updated_at=T1)
        remote = _issue()
        res = resolve(local, remote, _mapping())
        assert res.winner == "local"
        assert res.merged.title == "Local title"
        assert not res.local_write
        assert res.remote_write

    def test_neither_changed(self) -> None:
        res = resolve(_issue(), _issue(), _mapping())
        assert res.winner is None
        assert not res.local_write
        assert not res.remote_write

    def test_no_mapping_means_both_changed(self) -> None:
        res = resolve(_issue(title="A", updated_at=T1), _issue(title="B", updated_at=T2), None)
        assert res.conflict
        assert res.winner == "remote"

    def test_stale_remote_payload_is_unchanged(self) -> None:
        # An out-of-order webhook carries an older snapshot than the mapping.
        res = resolve(_issue(), _issue(title="Old", updated_at=T0), _mapping(remote_at=T1))
        assert res.winner is None
        assert res.merged.title == "Title"


class TestStrategies:
    def test_newest_wins_remote_newer(self) -> None:
        local = _issue(title="Local", updated_at=T1)
        remote = _issue(title="Remote", updated_at=T2)
        res = resolve(local, remote, _mapping(), "newest-wins")
        assert res.conflict
        assert res.merged.title == "Remote"

    def test_newest_wins_local_newer(self) -> None:
        local = _issue(title="Local", updated_at=T2)
        remote = _issue(title="Remote", updated_at=T1)
        res = resolve(local, remote, _mapping(), "newest-wins")
        assert res.merged.title == "Local"
        assert res.remote_write

    def test_newest_wins_tie_goes_to_remote(self) -> None:
        res = resolve(_issue(title="Local", updated_at=T1), _issue(title="Remote", updated_at=T1), _mapping())
        assert res.winner == "remote"

    def test_local_wins(self) -> None:
        res = resolve(_issue(title="Local", updated_at=T1), _issue(title="Remote", updated_at=T2), _mapping(), "local-wins")
        assert res.winner == "local"
        assert res.merged.title == "Local"

    def test_remote_wins(self) -> None:
        res = resolve(_issue(title="Local", updated_at=T2), _issue(title="Remote", updated_at=T1), _mapping(), "remote-wins")
        assert res.winner == "remote"
        assert res.merged.title == "Remote"

    def test_whole_record(self) -> None:
        local = _issue(title="Local title", priority=0, updated_at=T1)
        remote = _issue(title="Title", priority=2, body="Remote body", updated_at=T2)
        res = resolve(local, remote, _mapping())
        assert (res.merged.title, res.merged.priority, res.merged.body) == ("Title", 2, "Remote body")

    def test_same_content_is_not_a_conflict(self) -> None:
        res = resolve(_issue(updated_at=T1), _issue(updated_at=T2), _mapping())
        assert not res.conflict
        assert not res.local_write
        assert not res.remote_write

    def test_unknown_strategy(self) -> None:
        with pytest.raises(ValueError, match="Unknown conflict strategy"):
            resolve(_issue(), _issue(), None, "coin-flip")


class TestRelations:
    def test_union_local_first(self) -> None:
        local = _issue(depends_on=["test-a"], blocks=["test-x"], updated_at=T1)
        remote = _issue(depends_on=["test-b", "test-a"], updated_at=T2)
        res = resolve(local, remote, _mapping())
        assert res.merged.depends_on == ["test-a", "test-b"]
        assert res.merged.blocks == ["test-x"]

    def test_union_even_when_nothing_changed(self) -> None:
        res = resolve(_issue(depends_on=["test-a"]), _issue(depends_on=["test-b"]), _mapping())
        assert res.winner is None
        assert res.merged.depends_on == ["test-a", "test-b"]
        assert res.local_write
        assert res.remote_write

    def test_remote_write_when_remote_lacks_relations(self) -> None:
        local = _issue(depends_on=["test-a"])
        remote = _issue(title="Remote", updated_at=T1)
        res = resolve(local, remote, _mapping())
        assert res.winner == "remote"
        assert res.remote_write

    def test_parent_not_cleared_by_winner(self) -> None:
        local = _issue(parent_id="test-epic")
        remote = _issue(title="Remote", updated_at=T1)
        res = resolve(local, remote, _mapping())
        assert res.merged.parent_id == "test-epic"

    def test_external_ref_from_remote(self) -> None:
        ref = ExternalRef(number=42, url="https://github.com/acme/widgets/issues/42")
        res = resolve(_issue(title="Local", updated_at=T1), _issue(external_ref=ref), _mapping())
        assert res.merged.external_ref == ref


class TestStatusRatchet:
    def test_remote_closed_always_propagates(self) -> None:
        local = _issue(status="in_progress", title="Local", updated_at=T2)
        remote = _issue(status="closed", closed_at=T1, updated_at=T1)
        res = resolve(local, remote, _mapping(), "local-wins")
        assert res.merged.status == "closed"
        assert res.merged.title == "Local"
        assert res.merged.closed_at == T1

    def test_local_closed_kept_when_remote_wins(self) -> None:
        local = _issue(status="closed", closed_at=T1, updated_at=T1)
        remote = _issue(title="Remote", updated_at=T2)
        res = resolve(local, remote, _mapping())
        assert res.winner == "remote"
        assert res.merged.status == "closed"
        assert res.merged.title == "Remote"

    def test_local_close_alone_reaches_remote_when_local_wins(self) -> None:
        local = _issue(status="closed", closed_at=T1, updated_at=T1)
        res = resolve(local, _issue(), _mapping())
        assert res.winner == "local"
        assert res.merged.status == "closed"
        assert res.remote_write

    def test_local_reopen_loses_to_remote_closed(self) -> None:
        local = _issue(status="open", updated_at=T2)
        remote = _issue(status="closed", closed_at=T0, updated_at=T0)
        res = resolve(local, remote, _mapping(remote_at=T0))
        assert res.merged.status == "closed"
