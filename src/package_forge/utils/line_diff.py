"""Line-level change detection for editor highlighting."""

import logging
from collections.abc import Iterable

from package_forge.models import ChangeSet, FileRecord, index_files
from package_forge.utils.lcs import build_lcs_table

logger = logging.getLogger(__name__)

# Upper bound on old_lines x new_lines for a per-file LCS diff in a change set.
MAX_DIFF_CELLS = 25_000_000


def split_lines(text: str) -> list[str]:
    """Split text on "\\n" boundaries, exactly as the editor numbers lines."""
    return text.split("\n")


def is_diff_tractable(old_text: str, new_text: str) -> bool:
    """Return True when an LCS diff of the two texts fits MAX_DIFF_CELLS."""
    return (old_text.count("\n") + 1) * (new_text.count("\n") + 1) <= MAX_DIFF_CELLS


def changed_line_numbers(old_text: str, new_text: str) -> set[int]:
    """Return 1-indexed line numbers in new_text that are added or modified.

    Lines that belong to the longest common subsequence of the two versions
    are never marked; every other line of new_text is. When the deletion
    and insertion paths tie, the walk steps through the old text first.

    Args:
        old_text: Previous file content.
        new_text: Current file content.

    Returns:
        Set of changed line numbers in new_text. Empty when texts are equal.
    """
    if old_text == new_text:
        return set()

    old_lines = split_lines(old_text)
    new_lines = split_lines(new_text)
    table = build_lcs_table(old_lines, new_lines)

    changed: set[int] = set()
    i = len(old_lines)
    j = len(new_lines)

    while j > 0:
        if i > 0 and old_lines[i - 1] == new_lines[j - 1]:
            i -= 1
            j -= 1
            continue

        # Ties step through the old text first
        if i > 0 and table[i - 1][j] >= table[i][j - 1]:
            i -= 1
        else:
            changed.add(j)
            j -= 1

    return changed


def all_line_numbers(text: str) -> set[int]:
    """Return every 1-indexed line number of text."""
    return set(range(1, len(split_lines(text)) + 1))


def compute_change_set(
    old_files: Iterable[FileRecord],
    new_files: Iterable[FileRecord],
) -> ChangeSet:
    """Compute changed paths and line diffs between two snapshots.

    A path is changed when it is new or its content differs. Every line of a
    new file is marked; modified files are diffed line by line. Deleted
    paths are reported separately since they have no lines to highlight.
    Files whose diff would exceed MAX_DIFF_CELLS are marked in full.

    Args:
        old_files: Snapshot before the mutation.
        new_files: Snapshot after the mutation.

    Returns:
        ChangeSet describing the difference.
    """
    old_map = index_files(old_files)
    new_map = index_files(new_files)

    changed_paths: set[str] = set()
    line_diffs: dict[str, frozenset[int]] = {}

    for path, new_content in new_map.items():
        old_content = old_map.get(path)
        if old_content is None:
            changed_paths.add(path)
            line_diffs[path] = frozenset(all_line_numbers(new_content))
        elif old_content != new_content:
            changed_paths.add(path)
            if is_diff_tractable(old_content, new_content):
                lines = changed_line_numbers(old_content, new_content)
            else:
                logger.warning("File %s too large for line diff; marking all lines", path)
                lines = all_line_numbers(new_content)
            line_diffs[path] = frozenset(lines)

    deleted_paths = {path for path in old_map if path not in new_map}

    return ChangeSet(
        changed_paths=frozenset(changed_paths),
        deleted_paths=frozenset(deleted_paths),
        line_diffs=line_diffs,
    )
