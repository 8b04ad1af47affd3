# tests/test_projection.py
import numpy as np
import pandas as pd
import pytest

from lpa_engine._errors import InputError
from lpa_engine.api import (
    Dataset,
    EstimationOptions,
    estimate,
    impute,
    project_many,
    project_results,
)

FAST = EstimationOptions(n_starts=2, seed=0)


@pytest.fixture
def frame():
    rng = np.random.default_rng(31)
    X = np.concatenate([rng.normal(0.0, 1.0, (20, 2)), rng.normal(7.0, 1.0, (20, 2))])
    return pd.DataFrame(X, columns=["a", "b"], index=[f"r{i}" for i in range(40)])


def test_wide_view_has_probabilities_and_one_based_class(frame):
    result = estimate(Dataset.from_frame(frame), model=1, n_profiles=2, options=FAST)
    wide = project_results(result, frame).wide

    assert list(wide.index) == list(frame.index)
    for col in ("a", "b", "model_number", "classes_number", "CPROB1", "CPROB2", "Class", "imputed"):
        assert col in wide.columns
    assert np.allclose(wide[["CPROB1", "CPROB2"]].sum(axis=1), 1.0)
    assert set(wide["Class"].dropna()) == {1, 2}
    assert (wide.loc["r0", "Class"], wide.loc["r39", "Class"]) == (1, 2)
    assert not wide["imputed"].any()


def test_rows_dropped_upstream_are_reinserted(frame):
    original = frame.copy()
    original.iloc[4, 0] = np.nan
    fitted = Dataset.from_frame(original.dropna())
    result = estimate(fitted, model=1, n_profiles=2, options=FAST)

    wide = project_results(result, original).wide
    assert len(wide) == len(original)
    assert wide.loc["r4", ["CPROB1", "CPROB2"]].isna().all()
    assert pd.isna(wide.loc["r4", "Class"])
    assert wide["Class"].notna().sum() == len(original) - 1


def test_imputed_rows_are_flagged(frame):
    original = frame.copy()
    original.iloc[7, 1] = np.nan
    dataset, log = impute(original)
    result = estimate(dataset, model=1, n_profiles=2, options=FAST)

    wide = project_results(result, original, imputation_log=log).wide
    assert wide["imputed"].sum() == 1
    assert bool(wide.loc["r7", "imputed"])


def test_long_view(frame):
    result = estimate(Dataset.from_frame(frame), model=1, n_profiles=2, options=FAST)
    long = project_results(result, frame).long

    assert len(long) == 2 * len(frame)
    assert list(long.columns) == ["row_id", "model_number", "classes_number", "Class", "Class_prob", "Probability"]
    assert np.allclose(long.groupby("row_id")["Probability"].sum(), 1.0)
    first = long[long["row_id"] == "r0"]
    assert list(first["Class_prob"]) == [1, 2]


def test_project_many_stacks_cells(frame):
    dataset = Dataset.from_frame(frame)
    results = [estimate(dataset, model=1, n_profiles=k, options=FAST) for k in (1, 2)]
    stacked = project_many(results, frame)

    assert len(stacked) == len(frame) * (1 + 2)
    assert sorted(stacked["classes_number"].unique()) == [1, 2]
    with pytest.raises(InputError):
        project_many([], frame)


def test_rows_missing_from_the_original_are_an_error(frame):
    result = estimate(Dataset.from_frame(frame), model=1, n_profiles=2, options=FAST)
    with pytest.raises(InputError):
        project_results(result, frame.iloc[:10])
