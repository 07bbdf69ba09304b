"""Utilities for generating multi-file patch documents."""

from collections.abc import Iterable
from enum import Enum
from typing import NamedTuple

from package_forge.models import FileRecord, index_files
from package_forge.utils.lcs import build_lcs_table
from package_forge.utils.line_diff import split_lines

DEV_NULL = "/dev/null"


class LineKind(str, Enum):
    """Classification of one line in a reconstructed diff."""

    SAME = "same"
    ADDED = "added"
    REMOVED = "removed"


class DiffLine(NamedTuple):
    kind: LineKind
    text: str


_PREFIXES = {
    LineKind.SAME: "  ",
    LineKind.ADDED: "+",
    LineKind.REMOVED: "-",
}


def diff_lines(old_text: str, new_text: str) -> list[DiffLine]:
    """Reconstruct an interleaved line diff of two texts.

    Walks the LCS table backward from the end of both texts and classifies
    every line, then returns the entries front-to-back. Within a changed
    region, removed lines come before the lines that replace them.

    Args:
        old_text: Previous file content.
        new_text: Current file content.

    Returns:
        Ordered list of DiffLine entries covering every line of both texts.
    """
    old_lines = split_lines(old_text)
    new_lines = split_lines(new_text)
    table = build_lcs_table(old_lines, new_lines)

    entries: list[DiffLine] = []
    i = len(old_lines)
    j = len(new_lines)

    while i > 0 or j > 0:
        if i > 0 and j > 0 and old_lines[i - 1] == new_lines[j - 1]:
            entries.append(DiffLine(LineKind.SAME, old_lines[i - 1]))
            i -= 1
            j -= 1
        elif j > 0 and (i == 0 or table[i][j - 1] >= table[i - 1][j]):
            entries.append(DiffLine(LineKind.ADDED, new_lines[j - 1]))
            j -= 1
        else:
            entries.append(DiffLine(LineKind.REMOVED, old_lines[i - 1]))
            i -= 1

    entries.reverse()
    return entries


def _render_lines(entries: Iterable[DiffLine]) -> list[str]:
    return [f"{_PREFIXES[entry.kind]}{entry.text}" for entry in entries]


def render_file_block(
    path: str,
    old_content: str | None,
    new_content: str | None,
) -> str:
    """Render the patch block for one path.

    Args:
        path: Relative file path.
        old_content: Content before the change, or None if the file is new.
        new_content: Content after the change, or None if it was deleted.

    Returns:
        The block text, or an empty string when nothing changed.
    """
    if old_content is None and new_content is None:
        return ""

    if old_content is None:
        header = [f"--- {DEV_NULL}", f"+++ b/{path}"]
        body = [f"+{line}" for line in split_lines(new_content or "")]
    elif new_content is None:
        header = [f"--- a/{path}", f"+++ {DEV_NULL}"]
        body = [f"-{line}" for line in split_lines(old_content)]
    elif old_content == new_content:
        return ""
    else:
        header = [f"--- a/{path}", f"+++ b/{path}"]
        body = _render_lines(diff_lines(old_content, new_content))

    return "\n".join(header + body)


def summarize_changes(
    old_files: Iterable[FileRecord],
    new_files: Iterable[FileRecord],
) -> str:
    """Generate a unified-diff-like document across two file collections.

    Paths are processed in lexicographic order, so identical inputs always
    produce identical output regardless of collection order. Unchanged
    files are omitted and file blocks are separated by a blank line.

    Args:
        old_files: Snapshot before the change.
        new_files: Snapshot after the change.

    Returns:
        Patch document text. Empty string if the snapshots are identical.
    """
    old_map = index_files(old_files)
    new_map = index_files(new_files)

    blocks: list[str] = []
    for path in sorted(set(old_map) | set(new_map)):
        block = render_file_block(path, old_map.get(path), new_map.get(path))
        if block:
            blocks.append(block)

    if not blocks:
        return ""
    return "\n\n".join(blocks) + "\n"
