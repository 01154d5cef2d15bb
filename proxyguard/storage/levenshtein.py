"""Weighted edit-script alignment of two sequences.

The comparator pairs old and new storage items by computing the cheapest
sequence of substitutions, insertions and deletions that turns one list into
the other. Identical sequences align index by index at cost zero. Insertions
past the end of the original sequence are *appends* and cost nothing.

The walk returns every aligned position, including equal pairs, so callers can
inspect contiguous runs of operations around a deletion.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")

EQUAL = "equal"

SUBSTITUTION_COST = 3
INSERTION_COST = 2
DELETION_COST = 2


@dataclass
class Operation(Generic[T, R]):
    """One step of the edit script.

    ``kind`` is one of ``equal``, ``substitute``, ``insert``, ``append`` or
    ``delete``. ``result`` carries the match result of a substitution.
    """

    kind: str
    original: Optional[T] = None
    updated: Optional[T] = None
    result: Optional[R] = None


def _default_substitution_cost(result: object) -> int:
    return 0 if result == EQUAL else SUBSTITUTION_COST


def levenshtein(
    a: Sequence[T],
    b: Sequence[T],
    match: Callable[[T, T], R],
    *,
    substitution_cost: Callable[[R], int] = _default_substitution_cost,
    insertion_cost: Callable[[int, int], int] | None = None,
    deletion_cost: Callable[[int], int] | None = None,
) -> list[Operation[T, R]]:
    """Align ``a`` (original) with ``b`` (updated).

    ``match(x, y)`` returns ``EQUAL`` or any other result describing how ``y``
    differs from ``x``. ``insertion_cost(i, j)`` prices inserting ``b[j-1]``
    while positioned after ``a[i-1]``; ``deletion_cost(i)`` prices deleting
    ``a[i-1]``.
    """
    n, m = len(a), len(b)
    results: dict[tuple[int, int], R] = {}

    def result_at(i: int, j: int) -> R:
        key = (i, j)
        if key not in results:
            results[key] = match(a[i - 1], b[j - 1])
        return results[key]

    def ins(i: int, j: int) -> int:
        if j > n:
            return 0
        return insertion_cost(i, j) if insertion_cost else INSERTION_COST

    def dele(i: int) -> int:
        return deletion_cost(i) if deletion_cost else DELETION_COST

    def sub(i: int, j: int) -> int:
        return substitution_cost(result_at(i, j))

    matrix = [[0] * (m + 1) for _ in range(n + 1)]
    for i in range(1, n + 1):
        matrix[i][0] = matrix[i - 1][0] + dele(i)
    for j in range(1, m + 1):
        matrix[0][j] = matrix[0][j - 1] + ins(0, j)
    for i in range(1, n + 1):
        for j in range(1, m + 1):
            matrix[i][j] = min(
                matrix[i - 1][j - 1] + sub(i, j),
                matrix[i][j - 1] + ins(i, j),
                matrix[i - 1][j] + dele(i),
            )

    ops: list[Operation[T, R]] = []
    i, j = n, m
    while i > 0 or j > 0:
        cost = matrix[i][j]
        if i > 0 and j > 0 and cost == matrix[i - 1][j - 1] + sub(i, j):
            result = result_at(i, j)
            kind = EQUAL if result == EQUAL else "substitute"
            ops.append(Operation(kind, a[i - 1], b[j - 1], result))
            i -= 1
            j -= 1
        elif j > 0 and cost == matrix[i][j - 1] + ins(i, j):
            ops.append(Operation("append" if j > n else "insert", updated=b[j - 1]))
            j -= 1
        elif i > 0 and cost == matrix[i - 1][j] + dele(i):
            ops.append(Operation("delete", original=a[i - 1]))
            i -= 1
        else:
            raise RuntimeError(f"Could not walk matrix at position {i},{j}")

    ops.reverse()
    return ops
