# src/mopaPy/algorithms.py
# SPDX-License-Identifier: MIT
"""
Algorithm families used to fit species distribution models.

Every supported algorithm tag (``"glm"``, ``"svm"``, ``"maxent"``,
``"mars"``, ``"rf"``, ``"cart.rpart"``, ``"cart.tree"``) maps to a
:class:`ModelFamily` record in :data:`ALGORITHMS`. A family knows how to
build its estimator from free-form ``algorithm_args``, whether it accepts
per-row weights and how to turn the fitted estimator into a score per row.
The estimators themselves come from scikit-learn (and elapid for MaxEnt);
nothing here reimplements a learning algorithm.

Main entry points
-----------------
- :func:`fit_model`: fit one family on a covariate table and labels.
- :func:`predict_scores`: scores for new rows from a :class:`FittedModel`.
- :func:`tune_max_features`: out-of-bag search of the random forest
  ``max_features`` (``mtry`` in R's ``tuneRF``).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.ensemble import RandomForestRegressor
from sklearn.linear_model import LinearRegression, LogisticRegression
from sklearn.pipeline import Pipeline, make_pipeline
from sklearn.preprocessing import SplineTransformer, StandardScaler
from sklearn.svm import SVC
from sklearn.tree import DecisionTreeRegressor


#: Defaults for :func:`tune_max_features` (overridable with ``tune_args``).
DEFAULT_TUNE_ARGS: Dict = dict(n_estimators=50, step_factor=2.0)


# ---------------------------------------------------------------------
# Estimator factories
# ---------------------------------------------------------------------


def _glm(**kwargs):
    """Binomial GLM with logit link; unpenalized by default, so a uniform
    rescaling of the weights leaves the coefficients unchanged."""
    return make_pipeline(StandardScaler(), LogisticRegression(**kwargs))


def _svm(**kwargs):
    """
    Support vector classifier with Platt-scaled probabilities.

    Fits ``SVC`` with its default ``C`` and ``gamma``, or those given in
    ``algorithm_args``. No hyperparameter search is run, unlike R's
    ``e1071::best.svm`` with tuning ranges.
    """
    return make_pipeline(StandardScaler(), SVC(**kwargs))


def _maxent(**kwargs):
    # optional dependency, installed with the "maxent" extra
    from elapid import MaxentModel

    return MaxentModel(**kwargs)


def _mars(**kwargs):
    """
    Additive regression splines standing in for MARS.

    Degree-1 B-splines on ``n_knots`` fixed, evenly spaced knots per
    covariate, fitted by least squares. This is NOT adaptive MARS: knots
    are not selected from the data, there is no forward/backward pass and
    no interaction terms.
    """
    return make_pipeline(SplineTransformer(**kwargs), LinearRegression())


# ---------------------------------------------------------------------
# Families
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class ModelFamily:
    """
    Uniform fit/predict contract for one algorithm tag.

    Attributes
    ----------
    name :
        Algorithm tag.
    factory :
        Callable building an unfitted estimator from keyword arguments.
    defaults :
        Constructor arguments applied before the caller's ``algorithm_args``.
    weighted :
        Whether per-row weights are passed to ``fit``.
    seeded :
        Whether the estimator takes a ``random_state`` that mopaPy fills in
        when the caller did not.
    proba :
        Score rows with ``predict_proba(...)[:, 1]`` instead of ``predict``.
    tuned :
        Whether ``max_features`` is searched by out-of-bag error when the
        caller did not fix it.
    """

    name: str
    factory: Callable[..., object]
    defaults: Dict = field(default_factory=dict)
    weighted: bool = True
    seeded: bool = False
    proba: bool = False
    tuned: bool = False

    def build(self, algorithm_args: Optional[Dict] = None, random_state: Optional[int] = None):
        """Return an unfitted estimator for this family."""
        params = {**self.defaults, **(algorithm_args or {})}
        if self.seeded and params.get("random_state") is None and random_state is not None:
            params["random_state"] = int(random_state)
        return self.factory(**params)


ALGORITHMS: Dict[str, ModelFamily] = {
    "glm": ModelFamily("glm", _glm, dict(penalty=None, max_iter=1000), proba=True),
    "svm": ModelFamily(
        "svm", _svm, dict(probability=True), weighted=False, seeded=True, proba=True
    ),
    "maxent": ModelFamily("maxent", _maxent, weighted=False),
    "mars": ModelFamily("mars", _mars, dict(n_knots=5, degree=1)),
    "rf": ModelFamily(
        "rf", RandomForestRegressor, dict(n_estimators=500), seeded=True, tuned=True
    ),
    "cart.rpart": ModelFamily(
        "cart.rpart",
        DecisionTreeRegressor,
        dict(min_samples_split=20, min_samples_leaf=7),
        seeded=True,
    ),
    "cart.tree": ModelFamily(
        "cart.tree",
        DecisionTreeRegressor,
        dict(min_samples_split=10, min_samples_leaf=5),
        seeded=True,
    ),
}


def get_family(algorithm: str) -> ModelFamily:
    """Look up the :class:`ModelFamily` for *algorithm*."""
    try:
        return ALGORITHMS[algorithm]
    except KeyError:
        raise ValueError(
            f"Unknown algorithm: {algorithm!r}. Choose from {list(ALGORITHMS)}"
        ) from None


# ---------------------------------------------------------------------
# Fitted model
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class FittedModel:
    """A fitted estimator together with the information needed to score rows.

    Attributes
    ----------
    algorithm :
        Algorithm tag the estimator was built from.
    estimator :
        The fitted third-party estimator.
    features :
        Ordered covariate names expected at prediction time.
    params :
        Resolved ``algorithm_args`` (including a tuned ``max_features``).
    """

    algorithm: str
    estimator: object
    features: Tuple[str, ...]
    params: Dict = field(default_factory=dict)

    def predict(self, rows) -> np.ndarray:
        """Scores for *rows* (see :func:`predict_scores`)."""
        return predict_scores(self, rows)


def _as_matrix(rows, features: Sequence[str]) -> np.ndarray:
    if isinstance(rows, pd.DataFrame):
        missing = [c for c in features if c not in rows.columns]
        if missing:
            raise ValueError(f"Rows are missing covariates: {missing}")
        rows = rows[list(features)]
    # plain float arrays avoid feature-name warnings from scikit-learn
    return np.asarray(rows, dtype=float)


def _fit_weighted(estimator, X: np.ndarray, y: np.ndarray, weights: np.ndarray):
    if isinstance(estimator, Pipeline):
        last = estimator.steps[-1][0]
        return estimator.fit(X, y, **{f"{last}__sample_weight": weights})
    return estimator.fit(X, y, sample_weight=weights)


# ---------------------------------------------------------------------
# Random forest max_features search
# ---------------------------------------------------------------------


def _candidate_max_features(n_features: int, start: int, step_factor: float) -> List[int]:
    cands = {start}
    m = start
    while m < n_features:
        m = min(n_features, int(np.ceil(m * step_factor)))
        cands.add(m)
    m = start
    while m > 1:
        m = max(1, int(m / step_factor))
        cands.add(m)
    return sorted(cands)


def tune_max_features(
    X,
    y: Iterable[float],
    *,
    n_estimators: int = 50,
    step_factor: float = 2.0,
    start: Optional[int] = None,
    random_state: Optional[int] = None,
) -> int:
    """
    Pick ``max_features`` for a random forest by out-of-bag error.

    Candidates start at ``max(n_features // 3, 1)`` and are multiplied and
    divided by *step_factor* until they hit ``n_features`` and ``1``. A small
    forest is grown for each candidate and the one with the lowest
    out-of-bag mean squared error wins; ties go to the smallest value.

    Returns
    -------
    int
        Selected ``max_features``.
    """
    Xa = np.asarray(X, dtype=float)
    ya = np.asarray(y, dtype=float)
    n_features = Xa.shape[1]
    if start is None:
        start = max(n_features // 3, 1)
    start = int(min(max(start, 1), n_features))

    cands = _candidate_max_features(n_features, start, step_factor)
    errors = []
    for m in cands:
        rf = RandomForestRegressor(
            n_estimators=n_estimators,
            max_features=m,
            bootstrap=True,
            oob_score=True,
            random_state=random_state,
        )
        rf.fit(Xa, ya)
        errors.append(float(np.nanmean((ya - rf.oob_prediction_) ** 2)))

    return int(cands[int(np.argmin(errors))])


# ---------------------------------------------------------------------
# Public fit / predict
# ---------------------------------------------------------------------


def fit_model(
    algorithm: str,
    X: pd.DataFrame,
    y: Iterable[float],
    weights: Optional[Iterable[float]] = None,
    algorithm_args: Optional[Dict] = None,
    *,
    tune_args: Optional[Dict] = None,
    random_state: Optional[int] = None,
) -> FittedModel:
    """
    Fit the estimator of *algorithm* on covariates *X* and labels *y*.

    Parameters
    ----------
    algorithm :
        One of the tags in :data:`ALGORITHMS`.
    X :
        Covariate table; its column order defines the model features.
    y :
        Presence (1) / absence (0) labels.
    weights :
        Per-row weights, ignored by families that do not accept them.
    algorithm_args :
        Extra constructor arguments passed verbatim to the estimator.
    tune_args :
        Overrides for :data:`DEFAULT_TUNE_ARGS` (random forest only).
    random_state :
        Seed for estimators that take one, used when ``algorithm_args``
        does not set ``random_state`` itself.

    Returns
    -------
    FittedModel
    """
    family = get_family(algorithm)
    features = tuple(str(c) for c in X.columns)
    Xa = _as_matrix(X, features)
    ya = np.asarray(y, dtype=float)

    args = dict(algorithm_args or {})
    if family.tuned and "max_features" not in args:
        targs = {**DEFAULT_TUNE_ARGS, **(tune_args or {})}
        args["max_features"] = tune_max_features(
            Xa, ya, random_state=random_state, **targs
        )

    estimator = family.build(args, random_state=random_state)
    if family.weighted and weights is not None:
        _fit_weighted(estimator, Xa, ya, np.asarray(weights, dtype=float))
    else:
        estimator.fit(Xa, ya)

    return FittedModel(
        algorithm=family.name,
        estimator=estimator,
        features=features,
        params=args,
    )


def predict_scores(model: FittedModel, rows) -> np.ndarray:
    """
    Score *rows* with a fitted model.

    Classifiers return the probability of presence; regression-style
    families (random forest, trees, splines) return their numeric response,
    the same as a regression fit on a numeric 0/1 response.
    """
    family = get_family(model.algorithm)
    Xa = _as_matrix(rows, model.features)
    est = model.estimator
    if family.proba:
        col = list(est.classes_).index(1)
        return np.asarray(est.predict_proba(Xa)[:, col], dtype=float)
    return np.asarray(est.predict(Xa), dtype=float).ravel()


__all__ = [
    "DEFAULT_TUNE_ARGS",
    "ModelFamily",
    "ALGORITHMS",
    "get_family",
    "FittedModel",
    "tune_max_features",
    "fit_model",
    "predict_scores",
]
