"""Context copy and merge tests."""

from procflow.context import copy_context, merge_branches, written_keys


def test_copy_is_deep():
    original = {"nested": {"x": [1, 2]}}
    copied = copy_context(original)
    copied["nested"]["x"].append(3)
    assert original == {"nested": {"x": [1, 2]}}


def test_written_keys_reports_changes_and_removals():
    base = {"keep": 1, "change": 1, "drop": 1}
    result = {"keep": 1, "change": 2, "new": 3}
    writes = written_keys(base, result)
    assert writes["change"] == 2
    assert writes["new"] == 3
    assert "keep" not in writes
    assert "drop" in writes


def test_later_branch_wins_conflicting_key():
    merged = merge_branches({}, [{"a": 1}, {"a": 2, "b": 1}])
    assert merged == {"a": 2, "b": 1}


def test_keys_written_by_one_branch_are_kept():
    base = {"shared": "orig"}
    merged = merge_branches(
        base,
        [{"shared": "orig", "x": 1}, {"shared": "orig", "y": 2}],
    )
    assert merged == {"shared": "orig", "x": 1, "y": 2}


def test_unchanged_key_does_not_override_earlier_write():
    base = {"status": "new"}
    merged = merge_branches(base, [{"status": "approved"}, {"status": "new"}])
    assert merged == {"status": "approved"}


def test_nested_mappings_merge_per_key():
    base = {"review": {"legal": None, "finance": None}}
    merged = merge_branches(
        base,
        [
            {"review": {"legal": "ok", "finance": None}},
            {"review": {"legal": None, "finance": "ok"}},
        ],
    )
    assert merged == {"review": {"legal": "ok", "finance": "ok"}}


def test_removal_applied():
    merged = merge_branches({"tmp": 1, "keep": 2}, [{"keep": 2}, {"tmp": 1, "keep": 2}])
    assert merged == {"keep": 2}


def test_merge_follows_declared_order():
    base = {"n": 0}
    results = [{"n": 1, "x": "a"}, {"n": 2}, {"n": 0, "x": "c"}]
    assert merge_branches(base, results) == {"n": 2, "x": "c"}
    assert merge_branches(base, list(reversed(results))) == {"n": 1, "x": "a"}


def test_base_not_modified():
    base = {"a": {"b": 1}}
    merge_branches(base, [{"a": {"b": 2}}])
    assert base == {"a": {"b": 1}}
