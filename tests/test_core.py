"""Tests for the local graph tracker (BraidDB issue operations)."""

from __future__ import annotations

import pytest

from braid.core import BraidDB, ExternalRef, Issue, normalize_status
from braid.db_schema import CURRENT_SCHEMA_VERSION


class TestSchema:
    def test_initialize_stamps_version(self, db: BraidDB) -> None:
        assert db.get_schema_version() == CURRENT_SCHEMA_VERSION

    def test_initialize_is_idempotent(self, db: BraidDB) -> None:
        db.create_issue("Keep me")
        db.initialize()
        assert len(db.list_all_issues()) == 1

    def test_refuses_newer_schema(self, db: BraidDB) -> None:
        db.conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION + 1}")
        with pytest.raises(ValueError, match="newer than supported"):
            db.initialize()


class TestCreateAndGet:
    def test_generated_id_uses_prefix(self, db: BraidDB) -> None:
        issue = db.create_issue("First")
        assert issue.id.startswith("test-")
        assert issue.status == "open"
        assert issue.priority == 2
        assert issue.is_ready

    def test_explicit_id(self, db: BraidDB) -> None:
        issue = db.create_issue("Seven", issue_id="todo-7")
        assert db.get_issue("todo-7").title == issue.title

    def test_duplicate_explicit_id(self, db: BraidDB) -> None:
        db.create_issue("Seven", issue_id="todo-7")
        with pytest.raises(ValueError, match="already exists"):
            db.create_issue("Again", issue_id="todo-7")

    def test_unknown_id(self, db: BraidDB) -> None:
        with pytest.raises(KeyError):
            db.get_issue("test-missing")

    @pytest.mark.parametrize(
        ("field", "value"),
        [("status", "done"), ("type", "story"), ("priority", 7)],
    )
    def test_invalid_fields(self, db: BraidDB, field: str, value: object) -> None:
        with pytest.raises(ValueError):
            db.create_issue("Bad", **{field: value})  # type: ignore[arg-type]

    def test_empty_title(self, db: BraidDB) -> None:
        with pytest.raises(ValueError, match="Title"):
            db.create_issue("   ")

    def test_labels_and_assignees_deduplicated(self, db: BraidDB) -> None:
        issue = db.create_issue("T", labels=["ux", "ux", " "], assignees=["bob", "alice"])
        assert issue.labels == ["ux"]
        assert issue.assignees == ["alice", "bob"]

    def test_external_ref(self, db: BraidDB) -> None:
        ref = ExternalRef(number=42, url="https://github.com/acme/widgets/issues/42")
        issue = db.create_issue("T", external_ref=ref)
        assert issue.external_ref == ref
        assert db.find_by_external_url(ref.url) == issue
        assert db.find_by_external_url("https://github.com/acme/widgets/issues/1") is None

    def test_created_closed_stamps_closed_at(self, db: BraidDB) -> None:
        issue = db.create_issue("Done", status="closed", updated_at="2024-05-01T10:00:00+00:00")
        assert issue.closed_at == "2024-05-01T10:00:00+00:00"


class TestUpdate:
    def test_update_bumps_updated_at(self, db: BraidDB) -> None:
        issue = db.create_issue("T", updated_at="2024-01-01T00:00:00+00:00")
        updated = db.update_issue(issue.id, title="New")
        assert updated.title == "New"
        assert updated.updated_at > issue.updated_at

    def test_explicit_updated_at(self, db: BraidDB) -> None:
        issue = db.create_issue("T")
        updated = db.update_issue(issue.id, priority=0, updated_at="2030-01-01T00:00:00+00:00")
        assert updated.updated_at == "2030-01-01T00:00:00+00:00"

    def test_noop_update_keeps_timestamp(self, db: BraidDB) -> None:
        issue = db.create_issue("T")
        assert db.update_issue(issue.id, title="T").updated_at == issue.updated_at

    def test_close_and_reopen(self, db: BraidDB) -> None:
        issue = db.create_issue("T")
        closed = db.close_issue(issue.id, reason="done")
        assert closed.status == "closed"
        assert closed.closed_at is not None
        with pytest.raises(ValueError, match="already closed"):
            db.close_issue(issue.id)
        reopened = db.reopen_issue(issue.id)
        assert reopened.status == "open"
        assert reopened.closed_at is None

    def test_parent_validation(self, db: BraidDB) -> None:
        epic = db.create_issue("Epic", type="epic")
        child = db.create_issue("Child", parent_id=epic.id)
        with pytest.raises(ValueError, match="circular"):
            db.update_issue(epic.id, parent_id=child.id)
        with pytest.raises(ValueError, match="own parent"):
            db.update_issue(child.id, parent_id=child.id)
        assert db.update_issue(child.id, parent_id="").parent_id is None

    def test_events_recorded(self, db: BraidDB) -> None:
        issue = db.create_issue("T")
        db.update_issue(issue.id, status="in_progress", actor="alice")
        events = db.get_events(issue.id)
        assert events[0]["event_type"] == "status_changed"
        assert events[0]["actor"] == "alice"


class TestGraph:
    def test_ready_and_blocked(self, db: BraidDB) -> None:
        a = db.create_issue("A")
        b = db.create_issue("B")
        db.add_dependency(a.id, b.id)
        assert [i.id for i in db.get_ready()] == [b.id]
        assert [i.id for i in db.get_blocked()] == [a.id]
        db.close_issue(b.id)
        assert [i.id for i in db.get_ready()] == [a.id]
        assert db.get_blocked() == []

    def test_symmetric_relations(self, db: BraidDB) -> None:
        a = db.create_issue("A")
        b = db.create_issue("B")
        db.add_dependency(a.id, b.id)
        assert db.get_issue(a.id).depends_on == [b.id]
        assert db.get_issue(b.id).blocks == [a.id]

    def test_cycle_rejected(self, db: BraidDB) -> None:
        a = db.create_issue("A")
        b = db.create_issue("B")
        db.add_dependency(a.id, b.id)
        with pytest.raises(ValueError, match="cycle"):
            db.add_dependency(b.id, a.id)

    def test_self_dependency_rejected(self, db: BraidDB) -> None:
        a = db.create_issue("A")
        with pytest.raises(ValueError, match="self-dependency"):
            db.add_dependency(a.id, a.id)

    def test_set_relations_skips_unknown_and_cycles(self, db: BraidDB) -> None:
        a = db.create_issue("A")
        b = db.create_issue("B")
        c = db.create_issue("C")
        db.add_dependency(b.id, a.id)
        skipped = db.set_relations(a.id, depends_on=[b.id, c.id, "test-ghost"])
        assert set(skipped) == {b.id, "test-ghost"}
        refreshed = db.get_issue(a.id)
        assert refreshed.depends_on == [c.id]
        assert refreshed.blocks == [b.id]

    def test_remove_dependency(self, db: BraidDB) -> None:
        a = db.create_issue("A")
        b = db.create_issue("B")
        db.add_dependency(a.id, b.id)

        assert db.remove_dependency(a.id, b.id, actor="alice")

        refreshed = db.get_issue(a.id)
        assert refreshed.depends_on == []
        assert db.get_issue(b.id).blocks == []
        event = db.get_events(a.id)[0]
        assert (event["event_type"], event["old_value"], event["actor"]) == ("dependency_removed", b.id, "alice")
        assert db.get_events(b.id)[0]["event_type"] == "blocks_removed"
        assert {i.id for i in db.get_ready()} == {a.id, b.id}

    def test_remove_missing_dependency(self, db: BraidDB) -> None:
        a = db.create_issue("A")
        b = db.create_issue("B")
        before = db.get_issue(a.id).updated_at
        assert not db.remove_dependency(a.id, b.id)
        assert db.get_issue(a.id).updated_at == before
        assert db.get_events(a.id)[0]["event_type"] != "dependency_removed"

    def test_set_relations_reciprocal(self, db: BraidDB) -> None:
        a = db.create_issue("A")
        b = db.create_issue("B")
        c = db.create_issue("C")
        db.set_relations(a.id, depends_on=[b.id], blocks=[c.id])
        assert db.get_issue(b.id).blocks == [a.id]
        assert db.get_issue(c.id).depends_on == [a.id]

    def test_set_relations_bumps_far_end(self, db: BraidDB) -> None:
        a = db.create_issue("A")
        b = db.create_issue("B", updated_at="2024-01-01T00:00:00+00:00")
        db.set_relations(a.id, depends_on=[b.id])
        assert db.get_issue(b.id).updated_at > "2024-01-01T00:00:00+00:00"


class TestSyncHelpers:
    def test_apply_merged(self, db: BraidDB) -> None:
        a = db.create_issue("A")
        dep = db.create_issue("Dep")
        merged = a.copy(title="Merged", status="closed", priority=0, labels=["x"], depends_on=[dep.id])
        result = db.apply_merged(merged, updated_at="2030-01-01T00:00:00+00:00")
        assert result.title == "Merged"
        assert result.status == "closed"
        assert result.priority == 0
        assert result.labels == ["x"]
        assert result.depends_on == [dep.id]
        assert result.updated_at == "2030-01-01T00:00:00+00:00"

    def test_local_revision_changes(self, db: BraidDB) -> None:
        a = db.create_issue("A")
        before = db.local_revision()
        db.update_issue(a.id, title="B")
        assert db.local_revision() != before

    def test_changed_since(self, db: BraidDB) -> None:
        old = db.create_issue("Old", updated_at="2024-01-01T00:00:00+00:00")
        new = db.create_issue("New")
        assert db.changed_since("2025-01-01T00:00:00+00:00") == [new.id]
        assert old.id not in db.changed_since("2025-01-01T00:00:00+00:00")


class TestIssueModel:
    def test_differing_fields_ignores_list_order(self) -> None:
        a = Issue(id="x", title="T", labels=["a", "b"])
        b = Issue(id="x", title="T", labels=["b", "a"])
        assert a.differing_fields(b) == []
        assert a.differing_fields(b.copy(title="U")) == ["title"]

    def test_copy_duplicates_lists(self) -> None:
        a = Issue(id="x", title="T", labels=["a"])
        b = a.copy()
        b.labels.append("b")
        assert a.labels == ["a"]

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("open", "open"), ("in-progress", "in_progress"), ("Done", "closed"), ("completed", "closed")],
    )
    def test_normalize_status(self, raw: str, expected: str) -> None:
        assert normalize_status(raw) == expected

    def test_normalize_status_unknown(self) -> None:
        with pytest.raises(ValueError):
            normalize_status("blocked")
