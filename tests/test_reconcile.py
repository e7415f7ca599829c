"""Tests for three-way reconciliation."""

from catalyst.workflow.reconcile import (
    CONFLICTS,
    MERGED,
    ConflictRegion,
    MergeResult,
    has_conflict_markers,
    merge_file,
    merge_trees,
)

BASE = "one\ntwo\nthree\nfour\nfive\n"


class TestMergeFile:
    """Line-level merge of one file."""

    def test_one_sided_change_takes_that_side(self):
        ours = BASE.replace("two", "TWO")
        assert merge_file("a.txt", BASE, ours, BASE).text == ours
        assert merge_file("a.txt", BASE, BASE, ours).text == ours

    def test_identical_edits_taken_once(self):
        edited = BASE.replace("three", "3")
        result = merge_file("a.txt", BASE, edited, edited)
        assert result.text == edited
        assert result.conflicts == []

    def test_disjoint_hunks_combine(self):
        ours = BASE.replace("one", "ONE")
        theirs = BASE.replace("five", "FIVE")
        result = merge_file("a.txt", BASE, ours, theirs)
        assert result.text == "ONE\ntwo\nthree\nfour\nFIVE\n"
        assert result.conflicts == []

    def test_insertions_at_different_points_combine(self):
        ours = BASE.replace("two\n", "two\nafter-two\n")
        theirs = BASE.replace("four\n", "four\nafter-four\n")
        result = merge_file("a.txt", BASE, ours, theirs)
        assert result.text == "one\ntwo\nafter-two\nthree\nfour\nafter-four\nfive\n"

    def test_overlapping_edit_is_one_conflict_region(self):
        ours = BASE.replace("three", "ours")
        theirs = BASE.replace("three", "theirs")
        result = merge_file("a.txt", BASE, ours, theirs)
        assert result.text is None
        assert len(result.conflicts) == 1
        region = result.conflicts[0]
        assert (region.start_line, region.end_line) == (3, 3)
        assert region.base_text == "three\n"
        assert region.ours_text == "ours\n"
        assert region.theirs_text == "theirs\n"
        assert region.kind == "content"

    def test_conflict_keeps_clean_hunks_in_marked_text(self):
        ours = BASE.replace("one", "ONE").replace("three", "ours")
        theirs = BASE.replace("three", "theirs")
        result = merge_file("a.txt", BASE, ours, theirs)
        assert result.marked.startswith("ONE\ntwo\n<<<<<<< workspace\nours\n")
        assert "=======\ntheirs\n>>>>>>> mainline\nfour\nfive\n" in result.marked
        assert has_conflict_markers(result.marked)

    def test_same_point_insertions_conflict(self):
        ours = BASE.replace("two\n", "two\nx\n")
        theirs = BASE.replace("two\n", "two\ny\n")
        result = merge_file("a.txt", BASE, ours, theirs)
        assert len(result.conflicts) == 1
        assert result.conflicts[0].end_line == result.conflicts[0].start_line - 1

    def test_delete_versus_modify_conflicts(self):
        result = merge_file("a.txt", BASE, None, BASE.replace("one", "uno"))
        assert [c.kind for c in result.conflicts] == ["delete_modify"]

    def test_both_deleted_is_deleted(self):
        result = merge_file("a.txt", BASE, None, None)
        assert result.text is None
        assert result.conflicts == []

    def test_add_add_with_different_content_conflicts(self):
        result = merge_file("new.txt", None, "a\n", "b\n")
        assert [c.kind for c in result.conflicts] == ["add_add"]

    def test_one_side_deletes_unchanged_file(self):
        result = merge_file("a.txt", BASE, None, BASE)
        assert result.text is None
        assert result.conflicts == []


class TestMergeTrees:
    """Per-path merge across a whole change set."""

    def test_disjoint_files_merge(self):
        result = merge_trees(
            {"a.txt": "a\n", "b.txt": "b\n"},
            {"a.txt": "A\n", "b.txt": "b\n"},
            {"a.txt": "a\n", "b.txt": "B\n", "c.txt": "c\n"},
        )
        assert result.status == MERGED
        assert result.is_merged
        assert result.files == {"a.txt": "A\n", "b.txt": "B\n", "c.txt": "c\n"}

    def test_conflicts_listed_separately_from_clean_files(self):
        result = merge_trees(
            {"a.txt": "x\n", "b.txt": "b\n"},
            {"a.txt": "ours\n", "b.txt": "B\n"},
            {"a.txt": "theirs\n", "b.txt": "b\n"},
        )
        assert result.status == CONFLICTS
        assert result.files == {"b.txt": "B\n"}
        assert result.conflicted_paths == ["a.txt"]
        assert set(result.marked) == {"a.txt"}

    def test_to_dict_round_trips_regions(self):
        result = merge_trees({"a.txt": "x\n"}, {"a.txt": "o\n"}, {"a.txt": "t\n"})
        data = result.to_dict()
        assert data["status"] == "conflicts"
        assert [ConflictRegion.from_dict(c) for c in data["conflicts"]] == result.conflicts

    def test_merge_result_defaults(self):
        result = MergeResult(status=MERGED)
        assert result.commit_sha is None
        assert result.conflicted_paths == []


class TestConflictMarkers:
    """Detecting leftover markers."""

    def test_clean_text_has_no_markers(self):
        assert not has_conflict_markers("a\n=====\nb\n")

    def test_separator_alone_counts(self):
        assert has_conflict_markers("a\n=======\nb\n")
