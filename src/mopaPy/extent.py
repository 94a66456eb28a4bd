# src/mopaPy/extent.py
# SPDX-License-Identifier: MIT
"""
Background-extent selection from AUC-vs-extent curves.

When pseudo-absences are sampled inside several background radii, model
discrimination (AUC) usually grows with the radius and then saturates. For
each realization the observed (extent, AUC) pairs are fitted with three
saturating curves:

- Michaelis-Menten      ``Vm * x / (K + x)``
- exponential, 2 params ``Vm * (1 - exp(-K * x))``
- exponential, 3 params ``Vm - (Vm - V0) * exp(-K * x)``

The curve with the lowest residual sum of squares gives the saturation
value ``Vm``; the selected extent is the smallest tried extent whose AUC
reaches ``Vm`` (Iturbide et al., 2015, Ecological Modelling, Fig. 3).

Fallbacks
---------
* A single tried extent is selected directly, without fitting.
* If no curve converges, or no observed AUC reaches ``Vm``, the extent
  with the highest observed AUC is selected.
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Optional, Sequence, Tuple

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from scipy.optimize import OptimizeWarning, curve_fit
from tqdm.auto import tqdm

from .errors import CurveFittingFailure


# ---------------------------------------------------------------------
# Growth curves
# ---------------------------------------------------------------------


def michaelis_menten(x, vm, k):
    return vm * x / (k + x)


def exponential2(x, vm, k):
    return vm * (1.0 - np.exp(-k * x))


def exponential3(x, vm, v0, k):
    return vm - (vm - v0) * np.exp(-k * x)


def _scale(x: np.ndarray) -> float:
    m = float(np.median(x))
    return m if m > 0 else 1.0


#: name -> (function, parameter names, initial guess from (x, auc))
CURVES: Dict[str, Tuple[Callable, Tuple[str, ...], Callable]] = {
    "michaelis-menten": (
        michaelis_menten,
        ("vm", "k"),
        lambda x, a: [float(np.max(a)), _scale(x)],
    ),
    "exponential2": (
        exponential2,
        ("vm", "k"),
        lambda x, a: [float(np.max(a)), 1.0 / _scale(x)],
    ),
    "exponential3": (
        exponential3,
        ("vm", "v0", "k"),
        lambda x, a: [float(np.max(a)), float(np.min(a)), 1.0 / _scale(x)],
    ),
}


@dataclass(frozen=True)
class ExtentFit:
    """Best-fitting growth curve for one realization.

    Attributes
    ----------
    curve :
        Key in :data:`CURVES`.
    params :
        Fitted parameters by name (``vm``, ``k`` and, for exponential3, ``v0``).
    rss :
        Residual sum of squares on the observed pairs.
    """

    curve: str
    params: Dict[str, float] = field(default_factory=dict)
    rss: float = np.nan

    @property
    def vm(self) -> float:
        """Saturation (asymptotic maximum) AUC."""
        return self.params["vm"]

    def predict(self, x) -> np.ndarray:
        fn = CURVES[self.curve][0]
        return fn(np.asarray(x, dtype=float), **self.params)


def parse_extent(label) -> float:
    """
    Extent radius from a label: ``"300km"`` -> 300.0, ``250`` -> 250.0.

    Labels that do not encode a number (e.g. ``"maximum extent"``) give NaN.
    """
    if isinstance(label, (int, float, np.integer, np.floating)):
        return float(label)
    m = re.match(r"^\s*(\d+(?:\.\d+)?)\s*(?:km)?\s*$", str(label))
    return float(m.group(1)) if m else np.nan


# ---------------------------------------------------------------------
# Fitting and selection
# ---------------------------------------------------------------------


def fit_extent_curves(extents: Iterable[float], aucs: Iterable[float]) -> ExtentFit:
    """
    Fit every curve in :data:`CURVES` and return the one with lowest RSS.

    Curves with more parameters than observed points are skipped.

    Raises
    ------
    CurveFittingFailure
        If none of the curves converges to finite parameters.
    """
    x = np.asarray(extents, dtype=float)
    a = np.asarray(aucs, dtype=float)
    ok = np.isfinite(x) & np.isfinite(a)
    x, a = x[ok], a[ok]

    fits = []
    for name, (fn, pnames, guess) in CURVES.items():
        if x.size < len(pnames):
            continue
        with warnings.catch_warnings(), np.errstate(over="ignore", invalid="ignore"):
            warnings.simplefilter("ignore", OptimizeWarning)
            try:
                popt, _ = curve_fit(fn, x, a, p0=guess(x, a), maxfev=10000)
            except (RuntimeError, ValueError, TypeError):
                continue
            resid = a - fn(x, *popt)
        rss = float(np.sum(resid ** 2))
        if not (np.all(np.isfinite(popt)) and np.isfinite(rss)):
            continue
        fits.append(
            ExtentFit(curve=name, params=dict(zip(pnames, map(float, popt))), rss=rss)
        )

    if not fits:
        raise CurveFittingFailure(
            f"No growth curve converged for {x.size} (extent, AUC) pairs."
        )
    return min(fits, key=lambda f: f.rss)


def select_extent(
    extents: Sequence[float],
    aucs: Sequence[float],
) -> Tuple[int, Optional[ExtentFit]]:
    """
    Position of the selected extent among the tried ones.

    Parameters
    ----------
    extents, aucs :
        Aligned extent radii and AUCs for one realization; NaN marks
        padding.

    Returns
    -------
    (index, fit)
        0-based position in *extents*, and the winning curve (``None`` when
        no fitting took place or every curve failed).
    """
    x = np.asarray(extents, dtype=float)
    a = np.asarray(aucs, dtype=float)
    tried = np.flatnonzero(np.isfinite(a))
    if tried.size == 0:
        raise ValueError("No AUC value to select an extent from.")
    if tried.size == 1:
        return int(tried[0]), None

    best_auc = int(tried[np.argmax(a[tried])])
    pos = tried[np.isfinite(x[tried])]
    if pos.size < 2:
        return best_auc, None
    try:
        fit = fit_extent_curves(x[pos], a[pos])
    except CurveFittingFailure:
        return best_auc, None

    reached = pos[a[pos] >= fit.vm]
    if reached.size == 0:
        return best_auc, fit
    return int(reached[np.argmin(x[reached])]), fit


def select_extents(
    auc_matrix: pd.DataFrame,
    extents: pd.DataFrame,
    *,
    diagrams: bool = False,
    diagrams_dir: Optional[str] = None,
    show_progress: bool = False,
) -> pd.Series:
    """
    Select one extent per row of an AUC matrix.

    Parameters
    ----------
    auc_matrix :
        One row per realization, one column per tried extent, NaN padded.
    extents :
        Extent radii aligned with *auc_matrix*.
    diagrams :
        Plot AUC vs extent with the fitted curve for each row
        (see :func:`plot_extent_fit`).
    diagrams_dir :
        Directory for the diagrams (``<row name>.png``). If ``None`` the
        figures are shown instead.
    show_progress :
        Report fallbacks with :func:`tqdm.write`.

    Returns
    -------
    pandas.Series
        0-based extent positions indexed like *auc_matrix*.
    """
    if auc_matrix.shape != extents.shape:
        raise ValueError(
            f"auc_matrix {auc_matrix.shape} and extents {extents.shape} differ in shape."
        )

    out = {}
    for (name, a_row), (_, x_row) in zip(auc_matrix.iterrows(), extents.iterrows()):
        x = x_row.to_numpy(dtype=float)
        a = a_row.to_numpy(dtype=float)
        idx, fit = select_extent(x, a)
        n_valid = int(np.sum(np.isfinite(a)))
        if show_progress and n_valid > 1 and fit is None:
            tqdm.write(
                f"[WARN] {name}: extent curves did not converge, "
                f"using the extent with maximum AUC"
            )
        if diagrams and n_valid > 1:
            save_to = None
            if diagrams_dir:
                save_to = os.path.join(diagrams_dir, f"{name}.png")
            plot_extent_fit(x, a, fit, idx, title=str(name), save_to=save_to)
        out[name] = idx

    return pd.Series(out, name="extent_index", dtype=int)


# ---------------------------------------------------------------------
# Diagrams
# ---------------------------------------------------------------------


def plot_extent_fit(
    extents: Sequence[float],
    aucs: Sequence[float],
    fit: Optional[ExtentFit] = None,
    selected: Optional[int] = None,
    *,
    title: Optional[str] = None,
    save_to: Optional[str] = None,
):
    """
    Plot observed AUC against extent, the fitted curve and the selection.

    Returns
    -------
    (fig, ax)
        The figure is closed after saving when *save_to* is given, and
        shown then closed when it is not.
    """
    x = np.asarray(extents, dtype=float)
    a = np.asarray(aucs, dtype=float)
    ok = np.isfinite(x) & np.isfinite(a)

    fig, ax = plt.subplots(figsize=(6, 4))
    ax.plot(x[ok], a[ok], marker="o", ls="", color="#37474F", label="AUC")

    if fit is not None:
        xs = np.linspace(0.0, float(np.max(x[ok])), 200)
        ax.plot(xs, fit.predict(xs), lw=2.0, color="#1E88E5", label=fit.curve)
        ax.axhline(fit.vm, ls="--", lw=1.0, color="#B71C1C", label="Vm")
    if selected is not None and np.isfinite(x[selected]):
        ax.axvline(x[selected], ls=":", lw=1.5, color="#43A047", label="selected extent")

    ax.set_xlabel("Background extent")
    ax.set_ylabel("AUC")
    if title:
        ax.set_title(title)
    ax.grid(True, alpha=0.3)
    ax.legend(loc="best")
    fig.tight_layout()

    if save_to:
        d = os.path.dirname(str(save_to)) or "."
        os.makedirs(d, exist_ok=True)
        fig.savefig(save_to, dpi=150)
    else:
        plt.show()
    plt.close(fig)
    return fig, ax


__all__ = [
    "CURVES",
    "ExtentFit",
    "michaelis_menten",
    "exponential2",
    "exponential3",
    "parse_extent",
    "fit_extent_curves",
    "select_extent",
    "select_extents",
    "plot_extent_fit",
]
