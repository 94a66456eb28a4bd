# src/mopaPy/folds.py
# SPDX-License-Identifier: MIT
"""
k-fold partitioning for presence/absence tables.

- :func:`partition` assigns every row to exactly one fold id in ``1..k``.
- :func:`leave_one_out` turns an assignment into ``(train, test)`` position
  pairs, one per fold, where the test set is the fold and the train set its
  complement.

Fold sizes differ by at most one row. When labels are supplied, rows are
shuffled within each class and dealt round-robin across folds, so presences
and absences are spread as evenly as the counts allow.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Tuple, Union

import numpy as np

from .errors import InvalidFoldCount

RandomState = Union[None, int, np.random.Generator, np.random.SeedSequence]


def as_generator(random_state: RandomState = None) -> np.random.Generator:
    """Return a :class:`numpy.random.Generator` for *random_state*."""
    if isinstance(random_state, np.random.Generator):
        return random_state
    return np.random.default_rng(random_state)


def partition(
    n_rows: int,
    k: int,
    *,
    labels: Optional[Iterable[float]] = None,
    random_state: RandomState = None,
) -> np.ndarray:
    """
    Randomly assign ``n_rows`` rows to ``k`` folds.

    Parameters
    ----------
    n_rows : int
        Number of rows to split.
    k : int
        Number of folds, ``2 <= k <= n_rows``.
    labels : iterable, optional
        Class label per row. When given, the split is stratified.
    random_state : int, Generator, SeedSequence or None
        Source of randomness. A fixed value makes the split reproducible.

    Returns
    -------
    np.ndarray
        Integer array of length ``n_rows`` with fold ids in ``1..k``.

    Raises
    ------
    InvalidFoldCount
        If ``k`` is outside ``[2, n_rows]``.
    """
    n_rows = int(n_rows)
    if k < 2 or k > n_rows:
        raise InvalidFoldCount(k, n_rows)

    rng = as_generator(random_state)

    if labels is None:
        groups = [np.arange(n_rows)]
    else:
        lab = np.asarray(labels)
        if lab.shape[0] != n_rows:
            raise ValueError(
                f"labels has {lab.shape[0]} entries but n_rows={n_rows}."
            )
        groups = [np.flatnonzero(lab == c) for c in np.unique(lab)]

    order = np.concatenate([rng.permutation(g) for g in groups])
    offset = int(rng.integers(k))

    assignment = np.empty(n_rows, dtype=int)
    assignment[order] = (offset + np.arange(n_rows)) % k + 1
    return assignment


def leave_one_out(assignment: Iterable[int]) -> List[Tuple[np.ndarray, np.ndarray]]:
    """
    Build train/test row positions for each fold of *assignment*.

    Folds are returned in ascending fold-id order.
    """
    a = np.asarray(assignment)
    splits = []
    for fold in np.unique(a):
        test = np.flatnonzero(a == fold)
        train = np.flatnonzero(a != fold)
        splits.append((train, test))
    return splits


def fold_names(k: int) -> List[str]:
    """``["fold01", "fold02", ...]`` for *k* folds."""
    return [f"fold{i:02d}" for i in range(1, k + 1)]


__all__ = ["partition", "leave_one_out", "fold_names", "as_generator"]
