# tests/test_crossval.py

import numpy as np
import pandas as pd
import pytest

import mopaPy.crossval as crossval
from mopaPy.crossval import (
    SpeciesModelBundle,
    build_observation_table,
    compute_weights,
    cross_validate,
)
from mopaPy.errors import InvalidFoldCount, ModelFittingFailure, NoPositiveObservations
from mopaPy.metrics import confusion_matrix


# ----------------------------------------------------------------------
# Synthetic dataset helpers
# ----------------------------------------------------------------------


def _make_table(n: int = 60, n_pres: int = 20, seed: int = 0) -> pd.DataFrame:
    """
    Presence/absence table with label ``v`` and two covariates.

    Presences sit at higher ``bio1`` values than absences, with overlap.
    """
    rng = np.random.default_rng(seed)
    v = np.r_[np.ones(n_pres), np.zeros(n - n_pres)]
    bio1 = 1.5 * v + rng.normal(size=n)
    bio2 = rng.normal(size=n)
    return pd.DataFrame({"v": v, "bio1": bio1, "bio2": bio2}, index=np.arange(100, 100 + n))


# ----------------------------------------------------------------------
# Weights
# ----------------------------------------------------------------------


def test_compute_weights_balances_presences():
    w = compute_weights([1, 0, 0, 0], weighting=True)
    np.testing.assert_allclose(w, [30.0, 10.0, 10.0, 10.0])


def test_compute_weights_rounds_ratio():
    w = compute_weights([1, 1, 1, 0, 0, 0, 0], weighting=True)
    # 4 / 3 * 10 = 13.33
    assert w[0] == 13.0
    assert w[-1] == 10.0


def test_compute_weights_without_weighting_is_uniform():
    w = compute_weights([1, 0, 0, 0], weighting=False)
    np.testing.assert_allclose(w, 10.0)


# ----------------------------------------------------------------------
# Cross validation
# ----------------------------------------------------------------------


def test_cross_validate_returns_complete_bundle():
    table = _make_table()
    bundle = cross_validate(table, k=5, algorithm="glm", random_state=0)

    assert isinstance(bundle, SpeciesModelBundle)
    assert bundle.algorithm == "glm"
    assert list(bundle.fold_models) == ["fold01", "fold02", "fold03", "fold04", "fold05"]
    assert bundle.failed_folds == ()
    assert bundle.extent is None

    pool = bundle.obs_pred
    assert list(pool.columns) == ["id", "obs", "pred"]
    # every row predicted exactly once, by the fold that held it out
    assert sorted(pool["id"].tolist()) == table.index.tolist()
    np.testing.assert_array_equal(
        pool.set_index("id").loc[table.index, "obs"].to_numpy(), table["v"].to_numpy()
    )

    assert 0.7 < bundle.auc <= 1.0
    assert -1.0 <= bundle.tss <= 1.0
    assert pool["pred"].min() <= bundle.threshold <= pool["pred"].max()


def test_cross_validate_confusion_matches_pool():
    bundle = cross_validate(_make_table(seed=1), k=4, algorithm="cart.tree", random_state=1)
    cm = confusion_matrix(bundle.obs_pred["obs"], bundle.obs_pred["pred"], bundle.threshold)
    assert cm == bundle.confusion


def test_cross_validate_uses_fixed_threshold():
    bundle = cross_validate(_make_table(), k=5, threshold=0.5, random_state=0)
    assert bundle.threshold == 0.5


def test_cross_validate_drops_incomplete_rows():
    table = _make_table()
    table.iloc[[3, 40], 1] = np.nan
    bundle = cross_validate(table, k=5, random_state=0)
    assert len(bundle.obs_pred) == len(table) - 2
    assert not set(bundle.obs_pred["id"]) & {table.index[3], table.index[40]}


def test_cross_validate_is_reproducible():
    table = _make_table(seed=2)
    b1 = cross_validate(table, k=5, algorithm="rf", algorithm_args={"n_estimators": 20},
                        tune_args={"n_estimators": 10}, random_state=7)
    b2 = cross_validate(table, k=5, algorithm="rf", algorithm_args={"n_estimators": 20},
                        tune_args={"n_estimators": 10}, random_state=7)
    pd.testing.assert_frame_equal(b1.obs_pred, b2.obs_pred)
    assert b1.auc == b2.auc


def test_cross_validate_parallel_matches_sequential():
    table = _make_table(seed=3)
    b1 = cross_validate(table, k=5, algorithm="cart.rpart", random_state=5, n_jobs=1)
    b2 = cross_validate(table, k=5, algorithm="cart.rpart", random_state=5, n_jobs=2)
    pd.testing.assert_frame_equal(b1.obs_pred, b2.obs_pred)


def test_all_data_model_predicts_new_rows():
    table = _make_table()
    bundle = cross_validate(table, k=5, random_state=0)
    scores = bundle.model.predict(table[["bio1", "bio2"]])
    assert scores.shape == (len(table),)


def test_weighting_is_recomputed_per_training_subset(monkeypatch):
    # 17 presences in 61 rows: the presence weight shifts between subsets
    table = _make_table(n=61, n_pres=17, seed=4)
    calls = []
    real_fit = crossval.fit_model

    def recording_fit(algorithm, X, y, weights, *args, **kwargs):
        calls.append((X.index.to_numpy(), np.asarray(weights, dtype=float)))
        return real_fit(algorithm, X, y, weights, *args, **kwargs)

    monkeypatch.setattr(crossval, "fit_model", recording_fit)
    cross_validate(table, k=5, weighting=True, random_state=0)

    # five folds, then the all-data model
    assert len(calls) == 6
    for idx, weights in calls[:-1]:
        assert len(idx) < len(table)
        expected = compute_weights(table.loc[idx, "v"], True)
        np.testing.assert_array_equal(weights, expected)

    idx_all, w_all = calls[-1]
    assert sorted(idx_all.tolist()) == table.index.tolist()
    np.testing.assert_array_equal(w_all, compute_weights(table.loc[idx_all, "v"], True))
    assert set(np.unique(w_all)) == {10.0, 26.0}


def test_cross_validate_without_presences_raises():
    table = _make_table()
    table["v"] = 0.0
    with pytest.raises(NoPositiveObservations):
        cross_validate(table, k=5)


def test_cross_validate_rejects_bad_k():
    with pytest.raises(InvalidFoldCount):
        cross_validate(_make_table(), k=1)


def test_cross_validate_rejects_unknown_algorithm():
    with pytest.raises(ValueError, match="Unknown algorithm"):
        cross_validate(_make_table(), algorithm="gbm")


# ----------------------------------------------------------------------
# Fold failures
# ----------------------------------------------------------------------


def test_estimator_error_is_wrapped():
    with pytest.raises(ModelFittingFailure) as exc:
        cross_validate(_make_table(), k=5, algorithm_args={"C": -1.0}, random_state=0)
    assert exc.value.algorithm == "glm"
    assert exc.value.fold.startswith("fold")


def test_skip_policy_raises_when_every_fold_fails():
    with pytest.raises(ModelFittingFailure):
        cross_validate(
            _make_table(), k=5, algorithm_args={"C": -1.0}, random_state=0, on_fold_error="skip"
        )


def _fail_on_training_size(monkeypatch, size):
    real_fit = crossval.fit_model

    def flaky_fit(algorithm, X, *args, **kwargs):
        if len(X) == size:
            raise RuntimeError("singular design")
        return real_fit(algorithm, X, *args, **kwargs)

    monkeypatch.setattr(crossval, "fit_model", flaky_fit)


def test_skip_policy_leaves_failed_fold_out(monkeypatch):
    # 61 rows in 5 folds: one fold of 13 rows, trained on 48
    table = _make_table(n=61)
    _fail_on_training_size(monkeypatch, 48)

    bundle = cross_validate(table, k=5, random_state=0, on_fold_error="skip")
    assert len(bundle.failed_folds) == 1
    failed = bundle.failed_folds[0]
    assert bundle.fold_models[failed] is None
    assert len(bundle.obs_pred) == 61 - 13
    assert np.isfinite(bundle.auc)


def test_raise_policy_propagates_fold_failure(monkeypatch):
    table = _make_table(n=61)
    _fail_on_training_size(monkeypatch, 48)
    with pytest.raises(ModelFittingFailure, match="singular design"):
        cross_validate(table, k=5, random_state=0)


# ----------------------------------------------------------------------
# Observation table
# ----------------------------------------------------------------------


def _make_points():
    return pd.DataFrame(
        {"x": [0.0, 1.0, 2.0, 3.0], "y": [0.0, 0.0, 1.0, 1.0], "v": [1, 0, 1, 0]},
        index=["a", "b", "c", "d"],
    )


def test_build_observation_table_from_covariate_table():
    points = _make_points()
    cov = pd.DataFrame(
        {
            "x": [3.0, 2.0, 1.0, 0.0],
            "y": [1.0, 1.0, 0.0, 0.0],
            "bio1": [30.0, 20.0, 10.0, 0.0],
            "bio2": [-3.0, -2.0, -1.0, 0.0],
        }
    )
    table = build_observation_table(points, cov)
    assert list(table.columns) == ["v", "bio1", "bio2"]
    assert table.index.tolist() == ["a", "b", "c", "d"]
    assert table["bio1"].tolist() == [0.0, 10.0, 20.0, 30.0]


def test_build_observation_table_missing_cells_are_nan():
    points = _make_points()
    cov = pd.DataFrame({"x": [0.0, 1.0], "y": [0.0, 0.0], "bio1": [5.0, 6.0]})
    table = build_observation_table(points, cov)
    assert table["bio1"].isna().tolist() == [False, False, True, True]


def test_build_observation_table_from_callable():
    points = _make_points()
    table = build_observation_table(points, lambda xy: pd.DataFrame({"bio1": xy["x"] * 2}))
    assert table["bio1"].tolist() == [0.0, 2.0, 4.0, 6.0]
    assert table.index.tolist() == ["a", "b", "c", "d"]


def test_build_observation_table_checks_callable_length():
    with pytest.raises(ValueError):
        build_observation_table(_make_points(), lambda xy: pd.DataFrame({"bio1": [1.0]}))


def test_build_observation_table_rejects_duplicated_cells():
    cov = pd.DataFrame({"x": [0.0, 0.0], "y": [0.0, 0.0], "bio1": [1.0, 2.0]})
    with pytest.raises(ValueError, match="duplicated"):
        build_observation_table(_make_points(), cov)


def test_build_observation_table_rejects_other_types():
    with pytest.raises(TypeError):
        build_observation_table(_make_points(), np.zeros((4, 2)))
