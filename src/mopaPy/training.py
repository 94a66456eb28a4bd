# src/mopaPy/training.py
# SPDX-License-Identifier: MIT
"""
Species distribution model training over species, pseudo-absence
realizations, algorithms and baseline climates.

Two orchestration levels are provided:

- :func:`train_species` trains one algorithm on one realization of one
  species. When the realization holds pseudo-absences for several
  background extents, every extent is cross-validated, the extent is
  selected from the AUC-vs-extent curve (:mod:`mopaPy.extent`) and the
  winning extent is cross-validated again to produce the returned bundle.
- :func:`train` runs :func:`train_species` for every combination of
  species x realization x algorithm x baseline, in parallel with joblib,
  and assembles the results as a nested dict::

      results[species][realization][algorithm][baseline] -> SpeciesModelBundle

  A unit of work that fails is stored as a :class:`UnitFailure` and never
  stops its siblings.

Reporting helpers turn the nested results into a flat table
(:func:`summarize_training`), pull one component out of every bundle
(:func:`extract_from_model`) and persist results with joblib
(:func:`save_models` / :func:`load_models`).

Input layout
------------
``y`` (presence/absence points) is nested as
``species -> realization -> table`` or, with several background extents,
``species -> realization -> {"100km": table, "200km": table, ...}``. Tables
hold coordinates (``x_col``, ``y_col``) and the 0/1 label ``label_col``.
Lists are accepted instead of mappings and get default names
(``species01``, ``PA01``); a bare table is a single species and realization.

``x`` (covariates) is a table keyed by coordinates, a callable extracting
covariates for a coordinate table, or a mapping/list of those per baseline
climate (``baseClim01``, ...). See
:func:`mopaPy.crossval.build_observation_table`.
"""

from __future__ import annotations

import dataclasses
import os
import time
import warnings
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed, dump, load
from scipy.optimize import OptimizeWarning
from sklearn.exceptions import ConvergenceWarning, UndefinedMetricWarning
from tqdm.auto import tqdm

from .crossval import Covariates, SpeciesModelBundle, build_observation_table, cross_validate
from .extent import parse_extent, select_extents
from .folds import RandomState


# ---------------------------------------------------------------------
# Warning policy
# ---------------------------------------------------------------------


def set_warning_policy(silence: bool = True) -> None:
    """
    Control warning levels for model training.

    Parameters
    ----------
    silence : bool
        If True, silence FutureWarning, scikit-learn convergence and
        undefined-metric warnings, and SciPy curve-fit covariance warnings,
        which are expected with small folds and few extents.
    """
    if not silence:
        return
    warnings.filterwarnings("ignore", category=FutureWarning)
    warnings.filterwarnings("ignore", category=OptimizeWarning)
    warnings.filterwarnings("ignore", category=ConvergenceWarning)
    warnings.filterwarnings("ignore", category=UndefinedMetricWarning)


set_warning_policy(True)


# ---------------------------------------------------------------------
# Failure marker
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class UnitFailure:
    """Placeholder for a unit of work that raised.

    Attributes
    ----------
    error :
        Exception class name (e.g. ``"ModelFittingFailure"``).
    message :
        Exception message.
    """

    error: str
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> "UnitFailure":
        return cls(error=type(exc).__name__, message=str(exc))


# ---------------------------------------------------------------------
# Input normalization
# ---------------------------------------------------------------------


def _named(obj, prefix: str) -> Dict[str, object]:
    """Mapping as dict, list as ``{prefix01: ...}``, anything else as one entry."""
    if isinstance(obj, Mapping):
        return {str(k): v for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return {f"{prefix}{i:02d}": v for i, v in enumerate(obj, start=1)}
    return {f"{prefix}01": obj}


def _as_extent_mapping(data) -> Dict[str, pd.DataFrame]:
    if isinstance(data, pd.DataFrame):
        return {"maximum extent": data}
    if isinstance(data, Mapping):
        if not data:
            raise ValueError("Empty mapping of background extents.")
        return {str(k): v for k, v in data.items()}
    raise TypeError(
        "A realization must be a DataFrame or a mapping of extent label -> DataFrame."
    )


def _as_seed_sequence(random_state: RandomState) -> np.random.SeedSequence:
    if isinstance(random_state, np.random.SeedSequence):
        return random_state
    if isinstance(random_state, np.random.Generator):
        return np.random.SeedSequence(int(random_state.integers(2**32)))
    return np.random.SeedSequence(random_state)


# ---------------------------------------------------------------------
# Per-species training
# ---------------------------------------------------------------------


def train_species(
    data: Union[pd.DataFrame, Mapping[str, pd.DataFrame]],
    covariates: Covariates,
    k: int = 10,
    algorithm: str = "glm",
    algorithm_args: Optional[Dict] = None,
    weighting: bool = False,
    threshold: Optional[float] = None,
    diagrams: bool = False,
    tune_args: Optional[Dict] = None,
    *,
    name: str = "unnamed",
    x_col: str = "x",
    y_col: str = "y",
    label_col: str = "v",
    random_state: RandomState = None,
    n_jobs: Optional[int] = 1,
    on_fold_error: str = "raise",
    diagrams_dir: Optional[str] = None,
    show_progress: bool = False,
) -> SpeciesModelBundle:
    """
    Cross-validate one algorithm on one realization, selecting the
    background extent when several were sampled.

    Parameters
    ----------
    data :
        Point table, or mapping extent label (``"300km"``) -> point table.
    covariates :
        Covariate source for :func:`~mopaPy.crossval.build_observation_table`.
    k, algorithm, algorithm_args, weighting, threshold, tune_args :
        Passed to :func:`~mopaPy.crossval.cross_validate`.
    diagrams, diagrams_dir :
        Plot the AUC-vs-extent fit (only with several extents).
    name :
        Label used in diagrams and messages.
    random_state :
        Seed for this unit. Each extent gets its own child seed, so the
        final run on the selected extent repeats the first-pass folds.
    n_jobs :
        Folds fitted in parallel inside each cross validation.
    on_fold_error :
        ``"raise"`` or ``"skip"`` (see :func:`~mopaPy.crossval.cross_validate`).

    Returns
    -------
    SpeciesModelBundle
        Bundle of the selected extent, with ``extent`` set to its radius
        (``None`` when the label does not encode one).
    """
    extents_data = _as_extent_mapping(data)
    labels = list(extents_data)
    radii = [parse_extent(lbl) for lbl in labels]
    if len(labels) > 1 and any(np.isnan(r) for r in radii):
        raise ValueError(
            f"Extent labels must encode a radius (e.g. '300km'); got {labels}."
        )

    seeds = _as_seed_sequence(random_state).spawn(len(labels))

    def _cv(i: int) -> SpeciesModelBundle:
        table = build_observation_table(
            extents_data[labels[i]],
            covariates,
            x_col=x_col,
            y_col=y_col,
            label_col=label_col,
        )
        return cross_validate(
            table,
            k,
            algorithm,
            algorithm_args,
            weighting,
            threshold,
            label_col=label_col,
            tune_args=tune_args,
            random_state=np.random.default_rng(seeds[i]),
            n_jobs=n_jobs,
            on_fold_error=on_fold_error,
            verbose=show_progress,
        )

    if len(labels) == 1:
        bundle, idx = _cv(0), 0
    else:
        aucs = [_cv(i).auc for i in range(len(labels))]
        auc_matrix = pd.DataFrame([aucs], index=[name], columns=labels)
        extents = pd.DataFrame([radii], index=[name], columns=labels)
        idx = int(
            select_extents(
                auc_matrix,
                extents,
                diagrams=diagrams,
                diagrams_dir=diagrams_dir,
                show_progress=show_progress,
            ).iloc[0]
        )
        # recomputed rather than cached; same seed, same folds
        bundle = _cv(idx)

    extent = radii[idx]
    return dataclasses.replace(bundle, extent=None if np.isnan(extent) else extent)


# ---------------------------------------------------------------------
# Batch training
# ---------------------------------------------------------------------


def _run_unit(
    unit: Tuple[str, str, str, str],
    data,
    covariates,
    seed: np.random.SeedSequence,
    options: Dict,
) -> Union[SpeciesModelBundle, UnitFailure]:
    species, realization, algorithm, _ = unit
    try:
        return train_species(
            data,
            covariates,
            algorithm=algorithm,
            name=f"{species}_{realization}",
            random_state=seed,
            **options,
        )
    except Exception as e:
        return UnitFailure.from_exception(e)


def train(
    y,
    x,
    k: int = 10,
    algorithm: Union[str, Sequence[str]] = ("glm",),
    algorithm_args: Optional[Dict] = None,
    weighting: bool = False,
    threshold: Optional[float] = None,
    diagrams: bool = False,
    tune_args: Optional[Dict] = None,
    *,
    x_col: str = "x",
    y_col: str = "y",
    label_col: str = "v",
    n_jobs: Optional[int] = 1,
    fold_n_jobs: Optional[int] = 1,
    random_state: RandomState = None,
    on_fold_error: str = "raise",
    diagrams_dir: Optional[str] = None,
    show_progress: bool = True,
) -> Dict[str, Dict[str, Dict[str, Dict[str, Union[SpeciesModelBundle, UnitFailure]]]]]:
    """
    Train and cross-validate species distribution models in batch.

    Parameters
    ----------
    y :
        Presence/absence points (see the module docstring for the layout).
    x :
        Covariates, or a mapping/list of covariates per baseline climate.
    k :
        Number of cross-validation folds.
    algorithm :
        One tag or a sequence of tags among ``"glm"``, ``"svm"``,
        ``"maxent"``, ``"mars"``, ``"rf"``, ``"cart.rpart"``, ``"cart.tree"``.
    algorithm_args :
        Extra estimator arguments, passed verbatim.
    weighting :
        Weight presences against absences.
    threshold :
        Fixed cut-off for Kappa/TSS; ``None`` selects the TSS-optimal one.
    diagrams, diagrams_dir :
        Plot AUC-vs-extent fits.
    tune_args :
        Random forest ``max_features`` search settings.
    n_jobs :
        Units of work run in parallel (joblib semantics, ``-1`` = all cores).
    fold_n_jobs :
        Folds run in parallel inside each unit.
    random_state :
        Seed for the whole batch; every unit receives an independent child
        seed, so results do not depend on ``n_jobs``.
    on_fold_error :
        ``"raise"`` (a fold failure fails the unit) or ``"skip"``.
    show_progress :
        Progress bar over units and one status line per unit.

    Returns
    -------
    dict
        ``results[species][realization][algorithm][baseline]`` holding a
        :class:`~mopaPy.crossval.SpeciesModelBundle` or a :class:`UnitFailure`.
    """
    algorithms = [algorithm] if isinstance(algorithm, str) else list(algorithm)
    species = {sp: _named(v, "PA") for sp, v in _named(y, "species").items()}
    baselines = _named(x, "baseClim")

    units = [
        (sp, pa, alg, base)
        for sp, realizations in species.items()
        for pa in realizations
        for alg in algorithms
        for base in baselines
    ]
    seeds = _as_seed_sequence(random_state).spawn(len(units))

    options = dict(
        k=k,
        algorithm_args=algorithm_args,
        weighting=weighting,
        threshold=threshold,
        diagrams=diagrams,
        tune_args=tune_args,
        x_col=x_col,
        y_col=y_col,
        label_col=label_col,
        n_jobs=fold_n_jobs,
        on_fold_error=on_fold_error,
        diagrams_dir=diagrams_dir,
    )

    tasks = (
        delayed(_run_unit)(unit, species[unit[0]][unit[1]], baselines[unit[3]], seed, options)
        for unit, seed in zip(units, seeds)
    )
    outputs = Parallel(n_jobs=n_jobs, return_as="generator")(tasks)
    iterator = (
        tqdm(outputs, total=len(units), desc="Training units", unit="unit")
        if show_progress
        else outputs
    )

    results: Dict = {}
    t0 = time.time()
    for unit, res in zip(units, iterator):
        sp, pa, alg, base = unit
        results.setdefault(sp, {}).setdefault(pa, {}).setdefault(alg, {})[base] = res
        if not show_progress:
            continue
        stamp = time.strftime("%Y-%m-%d %H:%M:%S")
        if isinstance(res, UnitFailure):
            tqdm.write(f"[{stamp}] [WARN] {sp} / {pa} / {alg} / {base} failed: {res.message}")
        else:
            tqdm.write(
                f"[{stamp}] {sp} / {pa} / {alg} / {base}: "
                f"AUC={res.auc:.3f} TSS={res.tss:.3f} extent={res.extent}"
            )

    if show_progress:
        total_sec = time.time() - t0
        tqdm.write(f"Done. {len(units)} units in {total_sec:.1f}s.")
    return results


# ---------------------------------------------------------------------
# Reporting and persistence
# ---------------------------------------------------------------------


def _iter_units(results: Mapping):
    for sp, realizations in results.items():
        for pa, algorithms in realizations.items():
            for alg, baselines in algorithms.items():
                for base, res in baselines.items():
                    yield (sp, pa, alg, base), res


def _ensure_parent_dir(path: Optional[str]) -> None:
    if not path:
        return
    d = os.path.dirname(str(path)) or "."
    os.makedirs(d, exist_ok=True)


def _save_df(df: pd.DataFrame, path: Optional[str]) -> Optional[str]:
    if path is None:
        return None
    _ensure_parent_dir(path)
    ext = os.path.splitext(str(path))[1].lower()
    if ext == ".csv":
        df.to_csv(path, index=False)
    elif ext == ".parquet":
        df.to_parquet(path, index=False)
    elif ext == ".feather":
        df.to_feather(path)
    else:
        raise ValueError(f"Unsupported extension: {ext}")
    return path


def summarize_training(
    results: Mapping,
    *,
    save_table_path: Optional[str] = None,
) -> pd.DataFrame:
    """
    One row per unit of work with its cross-validated scores.

    Columns: ``species``, ``realization``, ``algorithm``, ``baseline``,
    ``status`` (``"ok"`` / ``"failed"``), ``extent``, ``auc``, ``kappa``,
    ``tss``, ``threshold``, ``n_obs``, ``failed_folds``, ``error``.
    Failed units carry NaN scores and the error message. The table is also
    written to ``save_table_path`` (``.csv``, ``.parquet`` or ``.feather``)
    when given.
    """
    rows: List[Dict] = []
    for (sp, pa, alg, base), res in _iter_units(results):
        row = {
            "species": sp,
            "realization": pa,
            "algorithm": alg,
            "baseline": base,
        }
        if isinstance(res, UnitFailure):
            row.update(
                status="failed",
                extent=np.nan,
                auc=np.nan,
                kappa=np.nan,
                tss=np.nan,
                threshold=np.nan,
                n_obs=0,
                failed_folds="",
                error=f"{res.error}: {res.message}",
            )
        else:
            row.update(
                status="ok",
                extent=np.nan if res.extent is None else res.extent,
                auc=res.auc,
                kappa=res.kappa,
                tss=res.tss,
                threshold=res.threshold,
                n_obs=int(len(res.obs_pred)),
                failed_folds=",".join(res.failed_folds),
                error="",
            )
        rows.append(row)

    df = pd.DataFrame(rows)
    _save_df(df, save_table_path)
    return df


_BUNDLE_FIELDS = {f.name for f in dataclasses.fields(SpeciesModelBundle)}


def extract_from_model(results: Mapping, value: str) -> Dict:
    """
    Pull one bundle component out of nested training results.

    Parameters
    ----------
    results :
        Output of :func:`train` (or any nesting of dicts ending in bundles).
    value :
        Bundle field name, e.g. ``"model"``, ``"auc"``, ``"obs_pred"``.

    Returns
    -------
    dict
        Same nesting as *results*; failed units map to ``None``.
    """
    if value not in _BUNDLE_FIELDS:
        raise ValueError(
            f"Unknown bundle component: {value!r}. Choose from {sorted(_BUNDLE_FIELDS)}"
        )

    def _pull(node):
        if isinstance(node, SpeciesModelBundle):
            return getattr(node, value)
        if isinstance(node, UnitFailure):
            return None
        if isinstance(node, Mapping):
            return {k: _pull(v) for k, v in node.items()}
        raise TypeError(f"Unexpected node of type {type(node).__name__} in results.")

    return _pull(results)


def save_models(results: Mapping, path: str) -> str:
    """Persist training results as a joblib artifact and return *path*."""
    _ensure_parent_dir(path)
    dump(results, path)
    return path


def load_models(path: str) -> Dict:
    """Load results saved with :func:`save_models`."""
    return load(path)


__all__ = [
    "set_warning_policy",
    "UnitFailure",
    "train_species",
    "train",
    "summarize_training",
    "extract_from_model",
    "save_models",
    "load_models",
]
