# tests/test_algorithms.py

import numpy as np
import pandas as pd
import pytest

from mopaPy.algorithms import (
    ALGORITHMS,
    FittedModel,
    fit_model,
    get_family,
    predict_scores,
    tune_max_features,
)
from mopaPy.metrics import auc


# ----------------------------------------------------------------------
# Synthetic dataset helpers
# ----------------------------------------------------------------------


def _make_separable(n: int = 80, seed: int = 0):
    """Two covariates; presence driven by ``bio1``."""
    rng = np.random.default_rng(seed)
    X = pd.DataFrame(
        {
            "bio1": rng.normal(size=n),
            "bio2": rng.normal(size=n),
            "bio3": rng.normal(size=n),
        }
    )
    y = (X["bio1"] + 0.3 * rng.normal(size=n) > 0.5).astype(float).to_numpy()
    return X, y


# ----------------------------------------------------------------------
# Registry
# ----------------------------------------------------------------------


def test_registry_has_all_algorithm_tags():
    assert set(ALGORITHMS) == {
        "glm",
        "svm",
        "maxent",
        "mars",
        "rf",
        "cart.rpart",
        "cart.tree",
    }


def test_unknown_algorithm_raises():
    with pytest.raises(ValueError, match="Unknown algorithm"):
        get_family("gbm")


# ----------------------------------------------------------------------
# Fit / predict
# ----------------------------------------------------------------------


@pytest.mark.parametrize("algorithm", ["glm", "svm", "mars", "cart.rpart", "cart.tree"])
def test_fit_and_predict_scores(algorithm):
    X, y = _make_separable()
    w = np.where(y == 1, 30.0, 10.0)
    model = fit_model(algorithm, X, y, w, random_state=0)

    assert isinstance(model, FittedModel)
    assert model.algorithm == algorithm
    assert model.features == ("bio1", "bio2", "bio3")

    scores = predict_scores(model, X)
    assert scores.shape == (len(X),)
    assert np.all(np.isfinite(scores))
    assert auc(y, scores) > 0.75


def test_rf_tunes_max_features_when_unset():
    X, y = _make_separable(seed=1)
    model = fit_model(
        "rf",
        X,
        y,
        algorithm_args={"n_estimators": 30},
        tune_args={"n_estimators": 15},
        random_state=0,
    )
    assert 1 <= model.params["max_features"] <= 3
    assert model.estimator.max_features == model.params["max_features"]
    assert model.predict(X).shape == (len(X),)


def test_rf_keeps_user_max_features():
    X, y = _make_separable(seed=2)
    model = fit_model(
        "rf", X, y, algorithm_args={"n_estimators": 20, "max_features": 2}, random_state=0
    )
    assert model.estimator.max_features == 2


def test_tune_max_features_is_reproducible():
    X, y = _make_separable(seed=4)
    m1 = tune_max_features(X, y, n_estimators=15, random_state=3)
    m2 = tune_max_features(X, y, n_estimators=15, random_state=3)
    assert m1 == m2
    assert 1 <= m1 <= X.shape[1]


def test_glm_coefficients_ignore_uniform_weight_scale():
    rng = np.random.default_rng(8)
    n = 200
    X = pd.DataFrame({"bio1": rng.normal(size=n), "bio2": rng.normal(size=n)})
    # noisy labels keep the classes overlapping so the unpenalized fit converges
    y = (X["bio1"] + 0.4 * X["bio2"] + rng.normal(size=n) > 0).astype(float).to_numpy()

    m1 = fit_model("glm", X, y, np.full(n, 1.0))
    m10 = fit_model("glm", X, y, np.full(n, 10.0))
    lr1 = m1.estimator[-1]
    lr10 = m10.estimator[-1]

    assert lr1.penalty is None
    np.testing.assert_allclose(lr1.coef_, lr10.coef_, rtol=1e-3, atol=1e-4)
    np.testing.assert_allclose(lr1.intercept_, lr10.intercept_, rtol=1e-3, atol=1e-4)


def test_mars_uses_fixed_knot_linear_splines():
    X, y = _make_separable(seed=9)
    model = fit_model("mars", X, y)
    splines = model.estimator[0]
    assert splines.degree == 1
    assert splines.n_knots == 5
    # knots are the same whatever the labels: no data-driven selection
    other = fit_model("mars", X, 1.0 - y)
    np.testing.assert_allclose(
        splines.bsplines_[0].t, other.estimator[0].bsplines_[0].t
    )


def test_svm_fits_given_hyperparameters_without_search():
    from sklearn.svm import SVC

    X, y = _make_separable(seed=10)
    default = fit_model("svm", X, y, random_state=0)
    svc = default.estimator[-1]
    assert type(svc) is SVC
    assert svc.C == 1.0

    tuned = fit_model("svm", X, y, algorithm_args={"C": 5.0, "gamma": 0.1}, random_state=0)
    assert tuned.estimator[-1].C == 5.0
    assert tuned.estimator[-1].gamma == 0.1


def test_algorithm_args_reach_the_estimator():
    X, y = _make_separable(seed=5)
    model = fit_model("cart.tree", X, y, algorithm_args={"max_depth": 2}, random_state=0)
    assert model.estimator.get_depth() <= 2


def test_predict_requires_model_features():
    X, y = _make_separable()
    model = fit_model("glm", X, y)
    with pytest.raises(ValueError, match="missing covariates"):
        predict_scores(model, X.drop(columns=["bio2"]))


def test_maxent_scores_in_unit_interval():
    pytest.importorskip("elapid")
    X, y = _make_separable(n=120, seed=6)
    model = fit_model("maxent", X, y)
    scores = predict_scores(model, X)
    assert scores.shape == (len(X),)
    assert np.all((scores >= 0) & (scores <= 1))
