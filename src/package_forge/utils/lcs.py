"""Longest common subsequence table over ordered sequences."""

from collections.abc import Sequence
from typing import Hashable, TypeVar

T = TypeVar("T", bound=Hashable)


def build_lcs_table(a: Sequence[T], b: Sequence[T]) -> list[list[int]]:
    """Compute the LCS dynamic-programming length table.

    ``table[i][j]`` is the length of the longest common subsequence of
    ``a[:i]`` and ``b[:j]``. Callers reconstruct alignments by walking the
    table backward from ``(len(a), len(b))``.

    Time and space are O(len(a) * len(b)).

    Args:
        a: First sequence (for diffs, the old lines).
        b: Second sequence (for diffs, the new lines).

    Returns:
        A (len(a) + 1) x (len(b) + 1) table of ints.
    """
    m = len(a)
    n = len(b)
    table = [[0] * (n + 1) for _ in range(m + 1)]

    for i in range(1, m + 1):
        row = table[i]
        prev_row = table[i - 1]
        a_item = a[i - 1]
        for j in range(1, n + 1):
            if a_item == b[j - 1]:
                row[j] = prev_row[j - 1] + 1
            else:
                row[j] = max(prev_row[j], row[j - 1])

    return table


def lcs_length(a: Sequence[T], b: Sequence[T]) -> int:
    """Return the length of the longest common subsequence of a and b."""
    return build_lcs_table(a, b)[len(a)][len(b)]
