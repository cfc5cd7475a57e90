"""Tests for the markdown (.todo/) mirror."""

from __future__ import annotations

from pathlib import Path

import pytest

from braid.core import BraidDB, Issue
from braid.mirror import (
    issue_filename,
    issue_to_markdown,
    load_mirror,
    parse_issue_markdown,
    sync_mirror,
    write_issue_file,
)

T0 = "2024-05-01T10:00:00+00:00"
T1 = "2024-06-01T00:00:00+00:00"


@pytest.fixture
def todo(tmp_path: Path) -> Path:
    return tmp_path / ".todo"


class TestFormat:
    def test_render_and_parse(self) -> None:
        issue = Issue(
            id="test-1",
            title="Fix login",
            body="Steps to reproduce.",
            status="in_progress",
            type="bug",
            priority=1,
            labels=["frontend"],
            assignees=["alice"],
            depends_on=["test-0"],
            created_at=T0,
            updated_at=T0,
        )
        text = issue_to_markdown(issue)
        assert text.startswith("---\nid: test-1\n")
        assert "assignee: alice" in text
        parsed = parse_issue_markdown(text)
        assert parsed.differing_fields(issue) == []
        assert parsed.updated_at == T0

    def test_lenient_fields(self) -> None:
        parsed = parse_issue_markdown(
            "---\nid: x-1\nstate: done\ntype: story\npriority: P0\nassignee: [bob, alice]\n"
            "updatedAt: 2024-06-01T00:00:00Z\n---\nBody\n"
        )
        assert parsed.status == "closed"
        assert parsed.type == "task"
        assert parsed.priority == 0
        assert parsed.assignees == ["alice", "bob"]
        assert parsed.updated_at == T1
        assert parsed.title == "Untitled"

    @pytest.mark.parametrize(
        "content",
        [
            "no frontmatter here",
            "---\nid: [unclosed\n---\n",
            "---\ntitle: no id\n---\n",
            "---\nid: x-1\ncreatedAt: yesterday\n---\n",
            "---\nid: x-1\nclosedAt: '2024-13-45'\n---\n",
        ],
    )
    def test_unusable_files(self, content: str) -> None:
        with pytest.raises(ValueError):
            parse_issue_markdown(content)

    def test_filename(self) -> None:
        assert issue_filename(Issue(id="test-1", title="Fix: the *login* page!")) == "test-1-fix-the-login-page.md"


class TestSyncMirror:
    def test_db_to_files(self, db: BraidDB, todo: Path) -> None:
        a = db.create_issue("First")
        b = db.create_issue("Second", deps=[a.id])
        result = sync_mirror(db, todo, direction="db-to-files")
        assert sorted(result.files_written) == sorted([issue_filename(a), issue_filename(b)])
        files = load_mirror(todo)
        assert files[b.id][1].depends_on == [a.id]
        assert files[a.id][1].blocks == [b.id]

    def test_files_to_db(self, db: BraidDB, todo: Path) -> None:
        write_issue_file(todo, Issue(id="test-a", title="Frontend", depends_on=["test-b"], created_at=T0, updated_at=T0))
        write_issue_file(todo, Issue(id="test-b", title="Backend", type="chore", created_at=T0, updated_at=T0))

        result = sync_mirror(db, todo, direction="files-to-db")

        assert sorted(result.created) == ["test-a", "test-b"]
        assert result.files_written == []
        assert db.get_issue("test-a").depends_on == ["test-b"]
        assert db.get_issue("test-b").blocks == ["test-a"]
        assert db.get_issue("test-b").type == "chore"

    def test_newest_file_edit_wins(self, db: BraidDB, todo: Path) -> None:
        issue = db.create_issue("Original", updated_at=T0)
        write_issue_file(todo, issue.copy(title="Edited in file", updated_at=T1))

        result = sync_mirror(db, todo)

        assert result.conflicts == [issue.id]
        assert result.updated == [issue.id]
        assert db.get_issue(issue.id).title == "Edited in file"
        assert db.get_issue(issue.id).updated_at == T1

    def test_hand_edit_keeping_old_stamp_is_stamped_now(self, db: BraidDB, todo: Path) -> None:
        issue = db.create_issue("Original", updated_at=T0)
        path = write_issue_file(todo, issue.copy(title="Edited by hand"))

        result = sync_mirror(db, todo)

        refreshed = db.get_issue(issue.id)
        assert result.updated == [issue.id]
        assert refreshed.title == "Edited by hand"
        assert refreshed.updated_at > T1
        assert db.changed_since(T1) == [issue.id]
        assert parse_issue_markdown(path.read_text()).updated_at == refreshed.updated_at

    def test_local_wins_rewrites_file(self, db: BraidDB, todo: Path) -> None:
        issue = db.create_issue("Original", updated_at=T0)
        path = write_issue_file(todo, issue.copy(title="Edited in file", updated_at=T1))

        result = sync_mirror(db, todo, strategy="local-wins")

        assert result.updated == []
        assert result.files_written == [path.name]
        assert parse_issue_markdown(path.read_text()).title == "Original"
        assert db.get_issue(issue.id).title == "Original"

    def test_unchanged_is_quiet(self, db: BraidDB, todo: Path) -> None:
        db.create_issue("Same")
        sync_mirror(db, todo)
        result = sync_mirror(db, todo)
        assert (result.created, result.updated, result.files_written, result.conflicts) == ([], [], [], [])

    def test_dry_run_writes_nothing(self, db: BraidDB, todo: Path) -> None:
        db.create_issue("Pending")
        result = sync_mirror(db, todo, dry_run=True)
        assert len(result.files_written) == 1
        assert not todo.exists()

    def test_bad_file_reported_not_fatal(self, db: BraidDB, todo: Path) -> None:
        todo.mkdir()
        (todo / "broken.md").write_text("---\nid: [unclosed\n---\n")
        write_issue_file(todo, Issue(id="test-ok", title="Fine", created_at=T0, updated_at=T0))

        result = sync_mirror(db, todo)

        assert result.created == ["test-ok"]
        assert [e["id"] for e in result.errors] == ["broken.md"]

    def test_bad_timestamp_skips_only_that_file(self, db: BraidDB, todo: Path) -> None:
        db.create_issue("Existing", issue_id="test-1", updated_at=T0)
        todo.mkdir()
        (todo / "test-1.md").write_text("---\nid: test-1\ntitle: Edited\nupdatedAt: last tuesday\n---\n")
        write_issue_file(todo, Issue(id="test-2", title="Fine", created_at=T0, updated_at=T0))

        result = sync_mirror(db, todo, direction="files-to-db")

        assert result.created == ["test-2"]
        assert [e["id"] for e in result.errors] == ["test-1.md"]
        assert "updatedAt" in result.errors[0]["error"]
        assert db.get_issue("test-1").title == "Existing"

    def test_unknown_direction(self, db: BraidDB, todo: Path) -> None:
        with pytest.raises(ValueError, match="Unknown direction"):
            sync_mirror(db, todo, direction="sideways")
