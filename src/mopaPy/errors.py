# src/mopaPy/errors.py
# SPDX-License-Identifier: MIT
"""
Exception types raised by mopaPy.

All of them derive from :class:`MopaError` and from the closest builtin
(``ValueError`` or ``RuntimeError``), so code that already catches the
builtins keeps working. Exceptions carrying extra attributes define
``__reduce__`` so they survive the trip back from joblib worker processes.
"""

from __future__ import annotations


class MopaError(Exception):
    """Base class for every error raised on purpose by mopaPy."""


class InvalidFoldCount(MopaError, ValueError):
    """The number of folds is outside ``[2, n_rows]``."""

    def __init__(self, k: int, n_rows: int):
        self.k = k
        self.n_rows = n_rows
        super().__init__(
            f"Number of folds must be between 2 and the number of rows "
            f"({n_rows}); got k={k}."
        )

    def __reduce__(self):
        return (type(self), (self.k, self.n_rows))


class NoPositiveObservations(MopaError, ValueError):
    """The observed label column only contains zeros."""

    def __init__(self, message: str = "The observed data only contains 0."):
        super().__init__(message)


class ModelFittingFailure(MopaError, RuntimeError):
    """An external estimator rejected the training data.

    Attributes
    ----------
    algorithm :
        Algorithm tag being fitted.
    fold :
        Fold name (``"fold03"``) or ``"all"`` for the all-data model.
    reason :
        ``"<ExceptionType>: <message>"`` of the underlying error.
    """

    def __init__(self, algorithm: str, fold: str, reason: str):
        self.algorithm = algorithm
        self.fold = fold
        self.reason = reason
        super().__init__(f"Fitting '{algorithm}' failed on {fold}: {reason}")

    @classmethod
    def wrap(cls, algorithm: str, fold: str, cause: BaseException) -> "ModelFittingFailure":
        return cls(algorithm, fold, f"{type(cause).__name__}: {cause}")

    def __reduce__(self):
        return (type(self), (self.algorithm, self.fold, self.reason))


class CurveFittingFailure(MopaError, RuntimeError):
    """None of the AUC-vs-extent growth curves converged."""


__all__ = [
    "MopaError",
    "InvalidFoldCount",
    "NoPositiveObservations",
    "ModelFittingFailure",
    "CurveFittingFailure",
]
