"""Diff utilities for package_forge."""

from package_forge.utils.diff_generator import (
    DiffLine,
    LineKind,
    diff_lines,
    render_file_block,
    summarize_changes,
)
from package_forge.utils.lcs import build_lcs_table, lcs_length
from package_forge.utils.line_diff import (
    changed_line_numbers,
    compute_change_set,
    split_lines,
)

__all__ = [
    "DiffLine",
    "LineKind",
    "build_lcs_table",
    "changed_line_numbers",
    "compute_change_set",
    "diff_lines",
    "lcs_length",
    "render_file_block",
    "split_lines",
    "summarize_changes",
]
