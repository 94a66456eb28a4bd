# src/mopaPy/metrics.py
# SPDX-License-Identifier: MIT
"""
Presence/absence accuracy metrics for mopaPy.

This module provides the threshold-dependent and threshold-free scores used
to assess species distribution models in cross validation:

- :func:`auc`: area under the ROC curve (rank based).
- :func:`confusion_matrix`: TP/TN/FP/FN counts at a cut-off.
- :func:`sensitivity`, :func:`specificity`, :func:`kappa`, :func:`tss`:
  scores derived from a confusion matrix.
- :func:`cut_tss` / :func:`find_optimal_threshold`: cut-off maximising the
  true skill statistic over a grid of 101 candidate values.
- :func:`classification_metrics`: AUC, Kappa and TSS in a single dict.

Key design choices
------------------
* Inputs are accepted as any iterable (lists, NumPy arrays, pandas Series).
* Observed values are binary: ``1`` is a presence, anything else an absence.
* A confusion-matrix ratio whose denominator is zero (e.g. a fold without
  presences) is reported as ``0.0`` rather than raising.
* An observed vector without any presence makes TSS and AUC undefined and
  raises :class:`~mopaPy.errors.NoPositiveObservations`.
"""

from __future__ import annotations

from typing import Dict, Iterable, Optional, Tuple

import numpy as np
from sklearn.metrics import roc_auc_score

from .errors import NoPositiveObservations

#: Number of evenly spaced cut-offs scanned by :func:`cut_tss`.
N_CUTOFFS = 101


# ---------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------


def _as_arrays(
    obs: Iterable[float],
    pred: Iterable[float],
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Convert *obs* and *pred* to NumPy arrays of ``dtype=float`` and verify
    that they share the same shape.

    Raises
    ------
    ValueError
        If the shapes of *obs* and *pred* do not match.
    """
    yt = np.asarray(obs, dtype=float)
    yp = np.asarray(pred, dtype=float)

    if yt.shape != yp.shape:
        raise ValueError(
            f"Shapes of obs {yt.shape} and pred {yp.shape} do not match."
        )
    return yt, yp


def _require_presences(yt: np.ndarray) -> None:
    if not np.any(yt == 1):
        raise NoPositiveObservations()


def _ratio(num: float, den: float) -> float:
    return float(num) / float(den) if den else 0.0


# ---------------------------------------------------------------------
# Confusion matrix and derived scores
# ---------------------------------------------------------------------


def confusion_matrix(
    obs: Iterable[float],
    pred: Iterable[float],
    threshold: float,
) -> Dict[str, int]:
    """
    Count true/false positives and negatives at *threshold*.

    A prediction is positive iff ``pred >= threshold``.

    Returns
    -------
    dict
        ``{"tp": ..., "tn": ..., "fp": ..., "fn": ...}`` as plain ints.
    """
    yt, yp = _as_arrays(obs, pred)
    present = yt == 1
    positive = yp >= threshold
    return {
        "tp": int(np.sum(positive & present)),
        "tn": int(np.sum(~positive & ~present)),
        "fp": int(np.sum(positive & ~present)),
        "fn": int(np.sum(~positive & present)),
    }


def sensitivity(cm: Dict[str, int]) -> float:
    """True positive rate ``TP / (TP + FN)``; 0 when there are no presences."""
    return _ratio(cm["tp"], cm["tp"] + cm["fn"])


def specificity(cm: Dict[str, int]) -> float:
    """True negative rate ``TN / (TN + FP)``; 0 when there are no absences."""
    return _ratio(cm["tn"], cm["tn"] + cm["fp"])


def tss(cm: Dict[str, int]) -> float:
    """True skill statistic, ``sensitivity + specificity - 1``."""
    return sensitivity(cm) + specificity(cm) - 1.0


def kappa(cm: Dict[str, int]) -> float:
    """
    Cohen's kappa between observed and thresholded predicted classes.

    .. math::

        \\kappa = \\frac{p_o - p_e}{1 - p_e}

    where :math:`p_o` is the observed agreement and :math:`p_e` the
    agreement expected by chance from the marginals. Returns ``0.0`` for an
    empty matrix or when :math:`p_e = 1`.
    """
    tp, tn, fp, fn = cm["tp"], cm["tn"], cm["fp"], cm["fn"]
    n = float(tp + tn + fp + fn)
    if n == 0.0:
        return 0.0
    po = (tp + tn) / n
    pe = ((tp + fp) * (tp + fn) + (fn + tn) * (fp + tn)) / (n * n)
    if pe == 1.0:
        return 0.0
    return float((po - pe) / (1.0 - pe))


# ---------------------------------------------------------------------
# Threshold-free score
# ---------------------------------------------------------------------


def auc(obs: Iterable[float], pred: Iterable[float]) -> float:
    """
    Area under the ROC curve.

    Rank based (Mann-Whitney): the probability that a random presence scores
    higher than a random absence, ties counting one half. The value is
    therefore invariant to any strictly increasing transform of *pred*.

    Returns
    -------
    float
        AUC in ``[0, 1]``; ``np.nan`` when *obs* contains no absence.

    Raises
    ------
    NoPositiveObservations
        If *obs* contains no presence.
    """
    yt, yp = _as_arrays(obs, pred)
    _require_presences(yt)
    present = yt == 1
    if present.all():
        return np.nan
    return float(roc_auc_score(present.astype(int), yp))


# ---------------------------------------------------------------------
# Optimal cut-off
# ---------------------------------------------------------------------


def cut_tss(obs: Iterable[float], pred: Iterable[float]) -> Dict[str, float]:
    """
    Find the cut-off that maximises the true skill statistic.

    ``N_CUTOFFS`` (101) evenly spaced values between ``min(pred)`` and
    ``max(pred)`` (both included) are scanned; the first one reaching the
    maximum TSS is kept.

    Degenerate case
    ---------------
    When all predictions are identical, the only achievable cut-off is that
    constant; it is returned directly and, by convention, ``TSS = 0``.

    Parameters
    ----------
    obs, pred
        Observed presence/absence and predicted scores.

    Returns
    -------
    dict
        ``TSS``, ``CutOff``, ``TP``, ``TN``, ``sensitivity`` and
        ``specificity`` at the selected cut-off.

    Raises
    ------
    NoPositiveObservations
        If *obs* contains only zeros.
    """
    yt, yp = _as_arrays(obs, pred)
    _require_presences(yt)

    lo, hi = float(np.min(yp)), float(np.max(yp))
    if lo == hi:
        cm = confusion_matrix(yt, yp, lo)
        return {
            "TSS": 0.0,
            "CutOff": lo,
            "TP": cm["tp"],
            "TN": cm["tn"],
            "sensitivity": sensitivity(cm),
            "specificity": specificity(cm),
        }

    cuts = np.linspace(lo, hi, N_CUTOFFS)
    present = yt == 1
    positive = yp[None, :] >= cuts[:, None]

    tp = np.sum(positive & present, axis=1)
    fn = np.sum(~positive & present, axis=1)
    tn = np.sum(~positive & ~present, axis=1)
    fp = np.sum(positive & ~present, axis=1)

    # zero denominators give 0, as in sensitivity()/specificity()
    sens = tp / np.maximum(tp + fn, 1)
    spec = tn / np.maximum(tn + fp, 1)
    scores = sens + spec - 1.0

    best = int(np.argmax(scores))
    return {
        "TSS": float(scores[best]),
        "CutOff": float(cuts[best]),
        "TP": int(tp[best]),
        "TN": int(tn[best]),
        "sensitivity": float(sens[best]),
        "specificity": float(spec[best]),
    }


def find_optimal_threshold(obs: Iterable[float], pred: Iterable[float]) -> float:
    """Cut-off in ``[min(pred), max(pred)]`` maximising TSS (see :func:`cut_tss`)."""
    return cut_tss(obs, pred)["CutOff"]


# ---------------------------------------------------------------------
# Combined classification metrics
# ---------------------------------------------------------------------


def classification_metrics(
    obs: Iterable[float],
    pred: Iterable[float],
    threshold: Optional[float] = None,
) -> Dict[str, float]:
    """
    Compute AUC, Kappa and TSS for a pool of predictions.

    If *threshold* is ``None`` it is chosen with
    :func:`find_optimal_threshold`; otherwise the supplied value is used
    as is.

    Returns
    -------
    dict
        ``AUC``, ``Kappa``, ``TSS``, ``threshold`` and the four confusion
        counts ``tp``, ``tn``, ``fp``, ``fn``.
    """
    yt, yp = _as_arrays(obs, pred)
    if threshold is None:
        threshold = find_optimal_threshold(yt, yp)
    cm = confusion_matrix(yt, yp, threshold)
    return {
        "AUC": auc(yt, yp),
        "Kappa": kappa(cm),
        "TSS": tss(cm),
        "threshold": float(threshold),
        **cm,
    }


__all__ = [
    "N_CUTOFFS",
    "confusion_matrix",
    "sensitivity",
    "specificity",
    "tss",
    "kappa",
    "auc",
    "cut_tss",
    "find_optimal_threshold",
    "classification_metrics",
]
