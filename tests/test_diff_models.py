"""Tests for ChangeSet and file collection helpers."""

import pytest
from pydantic import ValidationError

from package_forge.models import ChangeSet, FileRecord, copy_files, files_from_mapping


def test_change_set_defaults_empty():
    change_set = ChangeSet()
    assert change_set.is_empty
    assert change_set.line_diffs == {}


def test_change_set_with_only_deletions_is_not_empty():
    assert not ChangeSet(deleted_paths=frozenset({"old.txt"})).is_empty


def test_change_set_is_frozen():
    change_set = ChangeSet(changed_paths=frozenset({"a"}))
    with pytest.raises(ValidationError):
        change_set.changed_paths = frozenset()


def test_files_from_mapping_keeps_order():
    files = files_from_mapping({"b": "2", "a": "1"})
    assert files == [FileRecord(path="b", content="2"), FileRecord(path="a", content="1")]


def test_copy_files_is_independent():
    original = [FileRecord(path="a", content="1")]
    copied = copy_files(original)
    copied.append(FileRecord(path="b", content="2"))
    assert copied[0] == original[0]
    assert len(original) == 1
