"""
mopaPy
======

Species distribution modelling with cross validation and background-extent
selection.

Given presence/pseudo-absence points and environmental covariates, mopaPy
fits one of several classifiers (GLM, SVM, MaxEnt, MARS-like splines,
Random Forest, CART), evaluates it with k-fold cross validation and, when
pseudo-absences were sampled inside several background radii, selects the
extent at which model discrimination saturates.

1. Cross validation of one table
   -----------------------------
   - :func:`build_observation_table`
   - :func:`cross_validate`
   - :class:`SpeciesModelBundle`

2. Background-extent selection
   ---------------------------
   - :func:`select_extents`
   - :func:`fit_extent_curves`
   - :func:`plot_extent_fit`

3. Batch training
   --------------
   - :func:`train_species`
   - :func:`train`
   - :func:`summarize_training`
   - :func:`extract_from_model`
   - :func:`save_models` / :func:`load_models`

Accuracy metrics (AUC, Kappa, TSS and the TSS-optimal cut-off) live in
:mod:`mopaPy.metrics`; fold partitioning in :mod:`mopaPy.folds`; the
algorithm registry in :mod:`mopaPy.algorithms`.

Example
-------
    >>> from mopaPy import train, summarize_training
    >>> results = train(
    ...     y={"Oak": {"PA01": {"100km": pa100, "200km": pa200, "300km": pa300}}},
    ...     x=covariates,
    ...     k=10,
    ...     algorithm=["glm", "rf"],
    ...     random_state=42,
    ... )
    >>> results["Oak"]["PA01"]["rf"]["baseClim01"].auc
    >>> summary = summarize_training(results, save_table_path="outputs/summary.csv")
"""

from __future__ import annotations

# Public version (update in sync with pyproject.toml)
__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Errors, metrics and algorithms
# ---------------------------------------------------------------------------

from .errors import (
    MopaError,
    InvalidFoldCount,
    NoPositiveObservations,
    ModelFittingFailure,
    CurveFittingFailure,
)
from .metrics import (
    auc,
    confusion_matrix,
    kappa,
    tss,
    cut_tss,
    find_optimal_threshold,
    classification_metrics,
)
from .algorithms import ALGORITHMS, FittedModel, fit_model, predict_scores

# ---------------------------------------------------------------------------
# Cross validation and extent selection
# ---------------------------------------------------------------------------

from .crossval import (
    SpeciesModelBundle,
    build_observation_table,
    compute_weights,
    cross_validate,
)
from .extent import (
    ExtentFit,
    fit_extent_curves,
    select_extents,
    plot_extent_fit,
)

# ---------------------------------------------------------------------------
# Batch training
# ---------------------------------------------------------------------------

from .training import (
    UnitFailure,
    set_warning_policy,
    train_species,
    train,
    summarize_training,
    extract_from_model,
    save_models,
    load_models,
)

__all__ = [
    "__version__",
    # errors
    "MopaError",
    "InvalidFoldCount",
    "NoPositiveObservations",
    "ModelFittingFailure",
    "CurveFittingFailure",
    # metrics
    "auc",
    "confusion_matrix",
    "kappa",
    "tss",
    "cut_tss",
    "find_optimal_threshold",
    "classification_metrics",
    # algorithms
    "ALGORITHMS",
    "FittedModel",
    "fit_model",
    "predict_scores",
    # cross validation
    "SpeciesModelBundle",
    "build_observation_table",
    "compute_weights",
    "cross_validate",
    # extent selection
    "ExtentFit",
    "fit_extent_curves",
    "select_extents",
    "plot_extent_fit",
    # batch training
    "UnitFailure",
    "set_warning_policy",
    "train_species",
    "train",
    "summarize_training",
    "extract_from_model",
    "save_models",
    "load_models",
]
