# src/mopaPy/crossval.py
# SPDX-License-Identifier: MIT
"""
k-fold cross validation of one algorithm on one presence/absence table.

:func:`cross_validate` is the workhorse behind every trained model:

1. rows with missing values are dropped;
2. the clean table is split into ``k`` stratified folds;
3. for each fold a model is fitted on the other folds (with weights
   recomputed on that training subset) and used to score the held-out rows;
4. the held-out scores of all folds are pooled;
5. one more model is fitted on all rows (this is the model returned);
6. AUC, Kappa and TSS are computed on the pool, at the TSS-optimal cut-off
   unless a fixed ``threshold`` is given.

:func:`build_observation_table` prepares the input table by attaching
covariate values to the presence/absence points.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from tqdm.auto import tqdm

from .algorithms import FittedModel, fit_model, get_family, predict_scores
from .errors import ModelFittingFailure, MopaError, NoPositiveObservations
from .folds import RandomState, as_generator, fold_names, leave_one_out, partition
from .metrics import classification_metrics

#: Weight given to absences (and to every row when weighting is off).
BASE_WEIGHT = 10.0

Covariates = Union[pd.DataFrame, Callable[[pd.DataFrame], pd.DataFrame]]


# ---------------------------------------------------------------------
# Result container
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class SpeciesModelBundle:
    """Outcome of one cross-validation run.

    Attributes
    ----------
    model :
        Model fitted on all rows; the one to use for projections.
    auc, kappa, tss :
        Cross-validated scores computed on ``obs_pred``.
    fold_models :
        ``{"fold01": FittedModel, ...}``; ``None`` for skipped folds.
    obs_pred :
        Pooled held-out predictions with columns ``id``, ``obs``, ``pred``.
    threshold :
        Cut-off used for Kappa and TSS.
    confusion :
        ``{"tp", "tn", "fp", "fn"}`` counts at ``threshold`` on ``obs_pred``.
    algorithm :
        Algorithm tag.
    extent :
        Background extent the table was sampled from, when known.
    failed_folds :
        Names of folds skipped with ``on_fold_error="skip"``.
    """

    model: FittedModel
    auc: float
    kappa: float
    tss: float
    fold_models: Dict[str, Optional[FittedModel]]
    obs_pred: pd.DataFrame
    threshold: float
    confusion: Dict[str, int]
    algorithm: str
    extent: Optional[float] = None
    failed_folds: Tuple[str, ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------
# Input preparation
# ---------------------------------------------------------------------


def build_observation_table(
    points: pd.DataFrame,
    covariates: Covariates,
    *,
    x_col: str = "x",
    y_col: str = "y",
    label_col: str = "v",
) -> pd.DataFrame:
    """
    Attach covariate values to presence/absence points.

    Parameters
    ----------
    points :
        Table with coordinates ``[x_col, y_col]`` and the label ``label_col``.
    covariates :
        Either a table holding ``[x_col, y_col]`` plus one column per
        covariate (e.g. the cells of a raster stack), merged on the
        coordinates; or a callable receiving the coordinate table and
        returning one row of covariates per point, in the same order.

    Returns
    -------
    pandas.DataFrame
        ``label_col`` followed by the covariate columns, indexed like
        *points*. Points without covariate values keep NaNs; they are
        dropped later by :func:`cross_validate`.
    """
    missing = [c for c in (x_col, y_col, label_col) if c not in points.columns]
    if missing:
        raise ValueError(f"Points are missing columns: {missing}")

    coords = points[[x_col, y_col]]

    if callable(covariates):
        values = pd.DataFrame(covariates(coords.reset_index(drop=True)))
        if len(values) != len(points):
            raise ValueError(
                f"Covariate extractor returned {len(values)} rows for "
                f"{len(points)} points."
            )
        values = values.drop(columns=[x_col, y_col], errors="ignore")
        values.index = points.index
    elif isinstance(covariates, pd.DataFrame):
        miss = [c for c in (x_col, y_col) if c not in covariates.columns]
        if miss:
            raise ValueError(f"Covariate table is missing coordinate columns: {miss}")
        if covariates.duplicated(subset=[x_col, y_col]).any():
            raise ValueError("Covariate table contains duplicated coordinates.")
        merged = coords.merge(covariates, on=[x_col, y_col], how="left")
        values = merged.drop(columns=[x_col, y_col])
        values.index = points.index
    else:
        raise TypeError(
            "Unsupported type for `covariates`. Use a DataFrame or a callable."
        )

    values = values.drop(columns=[label_col], errors="ignore")
    return pd.concat([points[[label_col]], values], axis=1)


def compute_weights(labels: Iterable[float], weighting: bool) -> np.ndarray:
    """
    Per-row fitting weights.

    Absences always get ``BASE_WEIGHT`` (10). With *weighting* on,
    presences get ``round(10 * n_absences / n_presences)`` so both classes
    carry comparable total weight; otherwise every row gets 10.
    """
    lab = np.asarray(labels, dtype=float)
    w = np.full(lab.shape, BASE_WEIGHT)
    if weighting:
        n_pres = int(np.sum(lab == 1))
        n_abs = int(np.sum(lab == 0))
        if n_pres > 0:
            w[lab == 1] = np.round(n_abs / n_pres * BASE_WEIGHT)
    return w


# ---------------------------------------------------------------------
# Fold execution
# ---------------------------------------------------------------------


def _fit_or_fail(
    algorithm: str,
    X: pd.DataFrame,
    y: np.ndarray,
    weights: np.ndarray,
    algorithm_args: Optional[Dict],
    tune_args: Optional[Dict],
    seed: int,
    fold: str,
) -> FittedModel:
    try:
        return fit_model(
            algorithm,
            X,
            y,
            weights,
            algorithm_args,
            tune_args=tune_args,
            random_state=seed,
        )
    except MopaError:
        raise
    except Exception as e:
        raise ModelFittingFailure.wrap(algorithm, fold, e) from e


def _run_fold(
    name: str,
    X: pd.DataFrame,
    y: np.ndarray,
    train: np.ndarray,
    test: np.ndarray,
    *,
    algorithm: str,
    algorithm_args: Optional[Dict],
    weighting: bool,
    tune_args: Optional[Dict],
    seed: int,
) -> Tuple[FittedModel, pd.DataFrame]:
    """Fit one fold model and score its held-out rows."""
    y_train = y[train]
    weights = compute_weights(y_train, weighting)
    model = _fit_or_fail(
        algorithm,
        X.iloc[train],
        y_train,
        weights,
        algorithm_args,
        tune_args,
        seed,
        name,
    )
    X_test = X.iloc[test]
    try:
        pred = predict_scores(model, X_test)
    except Exception as e:
        raise ModelFittingFailure.wrap(algorithm, name, e) from e

    pool = pd.DataFrame({"id": X_test.index.to_numpy(), "obs": y[test], "pred": pred})
    return model, pool


def _run_fold_tolerant(name: str, *args, on_fold_error: str = "raise", **kwargs):
    try:
        model, pool = _run_fold(name, *args, **kwargs)
    except ModelFittingFailure as e:
        if on_fold_error == "raise":
            raise
        return name, None, None, e
    return name, model, pool, None


# ---------------------------------------------------------------------
# Cross validation
# ---------------------------------------------------------------------


def cross_validate(
    table: pd.DataFrame,
    k: int = 10,
    algorithm: str = "glm",
    algorithm_args: Optional[Dict] = None,
    weighting: bool = False,
    threshold: Optional[float] = None,
    *,
    label_col: str = "v",
    tune_args: Optional[Dict] = None,
    random_state: RandomState = None,
    n_jobs: Optional[int] = 1,
    on_fold_error: str = "raise",
    verbose: bool = False,
) -> SpeciesModelBundle:
    """
    Cross-validate *algorithm* on *table* and fit the all-data model.

    Parameters
    ----------
    table :
        Label column ``label_col`` plus numeric covariates (see
        :func:`build_observation_table`).
    k :
        Number of folds, ``2 <= k <= number of complete rows``.
    algorithm, algorithm_args :
        Algorithm tag and extra estimator arguments (see
        :mod:`mopaPy.algorithms`).
    weighting :
        Balance presences against absences with :func:`compute_weights`.
    threshold :
        Fixed cut-off for Kappa/TSS. ``None`` selects the TSS-optimal one.
    tune_args :
        Random forest ``max_features`` search settings.
    random_state :
        Seed (or Generator) for the fold split and the estimators.
    n_jobs :
        Folds fitted in parallel with joblib (``1`` runs sequentially).
    on_fold_error : {"raise", "skip"}
        ``"raise"`` makes any fold failure fatal for the run. ``"skip"``
        leaves the failed fold out of the pool and records it in
        ``failed_folds``.
    verbose :
        Report skipped folds with :func:`tqdm.write`.

    Returns
    -------
    SpeciesModelBundle

    Raises
    ------
    InvalidFoldCount
        If ``k`` does not fit the number of complete rows.
    NoPositiveObservations
        If the clean table has no presence.
    ModelFittingFailure
        If the estimator fails on a fold (policy ``"raise"``), on every fold,
        or on the all-data fit.
    """
    if on_fold_error not in {"raise", "skip"}:
        raise ValueError("on_fold_error must be 'raise' or 'skip'.")
    get_family(algorithm)
    if label_col not in table.columns:
        raise ValueError(f"Table has no label column {label_col!r}.")

    clean = table.dropna()
    features = [c for c in clean.columns if c != label_col]
    if not features:
        raise ValueError("Table has no covariate columns.")

    X = clean[features]
    y = clean[label_col].to_numpy(dtype=float)
    if not np.any(y == 1):
        raise NoPositiveObservations()

    rng = as_generator(random_state)
    assignment = partition(len(clean), k, labels=y, random_state=rng)
    splits = leave_one_out(assignment)
    names = fold_names(len(splits))
    seeds = rng.integers(0, 2**31 - 1, size=len(splits) + 1)

    results = Parallel(n_jobs=n_jobs)(
        delayed(_run_fold_tolerant)(
            name,
            X,
            y,
            train,
            test,
            algorithm=algorithm,
            algorithm_args=algorithm_args,
            weighting=weighting,
            tune_args=tune_args,
            seed=int(seed),
            on_fold_error=on_fold_error,
        )
        for name, (train, test), seed in zip(names, splits, seeds)
    )

    fold_models: Dict[str, Optional[FittedModel]] = {}
    pools: List[pd.DataFrame] = []
    errors: List[ModelFittingFailure] = []
    for name, model, pool, err in results:
        fold_models[name] = model
        if err is not None:
            errors.append(err)
            if verbose:
                tqdm.write(f"[WARN] {err} (fold skipped)")
            continue
        pools.append(pool)

    if not pools:
        raise errors[0]

    obs_pred = pd.concat(pools, ignore_index=True)

    all_model = _fit_or_fail(
        algorithm,
        X,
        y,
        compute_weights(y, weighting),
        algorithm_args,
        tune_args,
        int(seeds[-1]),
        "all",
    )

    m = classification_metrics(obs_pred["obs"], obs_pred["pred"], threshold)
    confusion = {key: m[key] for key in ("tp", "tn", "fp", "fn")}

    return SpeciesModelBundle(
        model=all_model,
        auc=m["AUC"],
        kappa=m["Kappa"],
        tss=m["TSS"],
        fold_models=fold_models,
        obs_pred=obs_pred,
        threshold=m["threshold"],
        confusion=confusion,
        algorithm=algorithm,
        failed_folds=tuple(e.fold for e in errors),
    )


__all__ = [
    "BASE_WEIGHT",
    "SpeciesModelBundle",
    "build_observation_table",
    "compute_weights",
    "cross_validate",
]
