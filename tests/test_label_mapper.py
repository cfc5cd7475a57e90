"""Tests for label -> (type, priority, status) mapping."""

from __future__ import annotations

from braid.conventions import DEFAULT_CONVENTIONS, merge_conventions
from braid.label_mapper import label_for_priority, label_for_type, labels_for_fields, map_labels


class TestMapLabels:
    def test_defaults_without_labels(self) -> None:
        mapped = map_labels([], "open", DEFAULT_CONVENTIONS)
        assert (mapped.type, mapped.priority, mapped.status) == ("task", 2, "open")
        assert mapped.remaining_labels == []

    def test_lowest_priority_wins(self) -> None:
        mapped = map_labels(["P3", "P1"], "open", DEFAULT_CONVENTIONS)
        assert mapped.priority == 1
        assert mapped.remaining_labels == []

    def test_first_type_label_wins(self) -> None:
        mapped = map_labels(["bug", "enhancement"], "open", DEFAULT_CONVENTIONS)
        assert mapped.type == "bug"
        assert mapped.remaining_labels == ["enhancement"]

    def test_closed_overrides_in_progress(self) -> None:
        mapped = map_labels(["status:in-progress"], "closed", DEFAULT_CONVENTIONS)
        assert mapped.status == "closed"
        assert mapped.remaining_labels == ["status:in-progress"]

    def test_in_progress_label(self) -> None:
        mapped = map_labels(["status:in-progress", "frontend"], "open", DEFAULT_CONVENTIONS)
        assert mapped.status == "in_progress"
        assert mapped.remaining_labels == ["frontend"]

    def test_unmapped_labels_kept_in_order(self) -> None:
        mapped = map_labels(["ux", "P0", "bug", "backend"], "open", DEFAULT_CONVENTIONS)
        assert mapped.type == "bug"
        assert mapped.priority == 0
        assert mapped.remaining_labels == ["ux", "backend"]

    def test_blank_labels_dropped(self) -> None:
        mapped = map_labels(["", "docs"], "open", DEFAULT_CONVENTIONS)
        assert mapped.remaining_labels == ["docs"]

    def test_custom_conventions(self) -> None:
        config = merge_conventions({"labels": {"type": {"defect": "bug"}, "in_progress": "doing"}})
        mapped = map_labels(["defect", "doing"], "open", config)
        assert mapped.type == "bug"
        assert mapped.status == "in_progress"

    def test_disabled_in_progress(self) -> None:
        config = merge_conventions({"labels": {"in_progress": None}})
        mapped = map_labels(["status:in-progress"], "open", config)
        assert mapped.status == "open"
        assert mapped.remaining_labels == ["status:in-progress"]


class TestReverse:
    def test_label_for_type(self) -> None:
        assert label_for_type("feature", DEFAULT_CONVENTIONS) == "enhancement"
        assert label_for_type("story", DEFAULT_CONVENTIONS) is None

    def test_label_for_priority(self) -> None:
        assert label_for_priority(0, DEFAULT_CONVENTIONS) == "P0"

    def test_labels_for_fields(self) -> None:
        labels = labels_for_fields("bug", 1, "in_progress", ["frontend", "P1"], DEFAULT_CONVENTIONS)
        assert labels == ["bug", "P1", "status:in-progress", "frontend"]

    def test_reverse_then_forward(self) -> None:
        labels = labels_for_fields("feature", 3, "open", ["ux"], DEFAULT_CONVENTIONS)
        mapped = map_labels(labels, "open", DEFAULT_CONVENTIONS)
        assert (mapped.type, mapped.priority, mapped.status) == ("feature", 3, "open")
        assert mapped.remaining_labels == ["ux"]
