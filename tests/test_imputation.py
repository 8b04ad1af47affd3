# tests/test_imputation.py
import numpy as np
import pandas as pd
import pytest
import torch

from lpa_engine._data import Dataset, percentage_of_maximum, standardize
from lpa_engine._errors import ExcessiveMissingness, IncompleteDataError, InputError
from lpa_engine._imputation import impute


@pytest.fixture
def frame_with_gaps():
    rng = np.random.default_rng(8)
    frame = pd.DataFrame(rng.normal(size=(40, 3)), columns=["a", "b", "c"], index=range(100, 140))
    frame.iloc[2, 0] = np.nan
    frame.iloc[5, 1] = np.nan
    frame.iloc[5, 2] = np.nan
    frame.iloc[17, 2] = np.nan
    return frame


def test_median_fills_with_column_median(frame_with_gaps):
    dataset, log = impute(frame_with_gaps, strategy="median", max_missing_fraction=0.8)

    assert not dataset.has_missing()
    assert dataset.n_rows == len(frame_with_gaps)
    assert dataset.row_ids == tuple(frame_with_gaps.index)
    assert float(dataset.values[2, 0]) == pytest.approx(frame_with_gaps["a"].median())
    assert log.n_imputed == 4
    assert log.imputed_rows == (102, 105, 117)
    assert list(log.to_frame().columns) == ["row_id", "column"]


def test_observed_cells_are_untouched(frame_with_gaps):
    dataset, _ = impute(frame_with_gaps, strategy="iterative", max_missing_fraction=0.8, n_estimators=10, max_iter=3)
    observed = ~np.isnan(frame_with_gaps.to_numpy())
    assert np.array_equal(dataset.values.numpy()[observed], frame_with_gaps.to_numpy()[observed])


def test_iterative_is_deterministic_for_a_seed(frame_with_gaps):
    first, _ = impute(frame_with_gaps, strategy="iterative", seed=3, max_missing_fraction=0.8,
                      n_estimators=10, max_iter=3)
    second, _ = impute(frame_with_gaps, strategy="iterative", seed=3, max_missing_fraction=0.8,
                      n_estimators=10, max_iter=3)
    assert torch.equal(first.values, second.values)


def test_complete_input_passes_through():
    frame = pd.DataFrame({"a": [1.0, 2.0, 3.0], "b": [3.0, 2.0, 1.0]})
    dataset, log = impute(frame)
    assert log.n_imputed == 0
    assert torch.equal(dataset.values, torch.tensor(frame.to_numpy()))


def test_rows_over_the_threshold_are_reported(frame_with_gaps):
    with pytest.raises(ExcessiveMissingness) as excinfo:
        impute(frame_with_gaps, max_missing_fraction=0.5)
    assert excinfo.value.rows == (105,)


def test_column_without_observations_is_rejected():
    frame = pd.DataFrame({"a": [1.0, 2.0, 3.0], "b": [np.nan] * 3})
    with pytest.raises(InputError, match="no observed values"):
        impute(frame, max_missing_fraction=1.0)


def test_unknown_strategy_is_rejected(frame_with_gaps):
    with pytest.raises(InputError):
        impute(frame_with_gaps, strategy="mean")


def test_dataset_refuses_missing_cells(frame_with_gaps):
    dataset = Dataset.from_frame(frame_with_gaps)
    assert dataset.has_missing()
    with pytest.raises(IncompleteDataError):
        dataset.require_complete()


def test_dataset_refuses_non_numeric_columns():
    with pytest.raises(InputError):
        Dataset.from_frame(pd.DataFrame({"a": ["x", "y"]}))


def test_dataset_take_keeps_row_ids_with_rows():
    dataset = Dataset.from_array(np.arange(8.0).reshape(4, 2), row_ids=["w", "x", "y", "z"])
    taken = dataset.take([2, 0])
    assert taken.row_ids == ("y", "w")
    assert taken.values.tolist() == [[4.0, 5.0], [0.0, 1.0]]
    assert list(taken.to_frame().index) == ["y", "w"]


def test_rescaling_helpers():
    frame = pd.DataFrame({"a": [1.0, 2.0, 3.0], "b": [10.0, 10.0, 10.0]})
    poms = percentage_of_maximum(frame)
    assert poms["a"].tolist() == [0.0, 0.5, 1.0]
    assert poms["b"].tolist() == [0.0, 0.0, 0.0]

    z = standardize(frame)
    assert z["a"].tolist() == pytest.approx([-1.0, 0.0, 1.0])
    assert z["b"].tolist() == [0.0, 0.0, 0.0]


def test_exported_frame_does_not_alias_the_dataset():
    dataset = Dataset.from_array(np.arange(6.0).reshape(3, 2))
    frame = dataset.to_frame()
    frame.iloc[0, 0] = 99.0
    assert float(dataset.values[0, 0]) == 0.0
