# tests/test_catalog.py
import numpy as np
import pytest

from lpa_engine._catalog import (
    ModelSpecification,
    all_parameterizations,
    get_parameterization,
    n_free_parameters,
    parameterization_from_id,
    resolve_parameterization,
)
from lpa_engine._errors import InputError, UnsupportedParameterization


@pytest.mark.parametrize(
    "variance, covariance, model_id, kind",
    [
        ("equal", "zero", 1, "tied_diag"),
        ("varying", "zero", 2, "diag"),
        ("equal", "equal", 3, "tied"),
        ("varying", "equal", 4, "full"),
        ("equal", "varying", 5, "full"),
        ("varying", "varying", 6, "full"),
    ],
)
def test_catalog_maps_constraints_to_model_ids(variance, covariance, model_id, kind):
    param = get_parameterization(variance, covariance)
    assert param.model_id == model_id
    assert param.covariance_kind == kind
    assert parameterization_from_id(model_id) is param
    assert resolve_parameterization((variance, covariance)) is param


def test_all_parameterizations_in_id_order():
    assert [p.model_id for p in all_parameterizations()] == [1, 2, 3, 4, 5, 6]


@pytest.mark.parametrize("bad", [("equal", "none"), ("free", "zero")])
def test_unknown_constraints_are_rejected(bad):
    with pytest.raises(UnsupportedParameterization):
        get_parameterization(*bad)


@pytest.mark.parametrize("bad", [0, 7, "1", True, None])
def test_unknown_model_ids_are_rejected(bad):
    with pytest.raises(UnsupportedParameterization):
        resolve_parameterization(bad)


def test_unsupported_parameterization_is_an_input_error():
    with pytest.raises(InputError):
        parameterization_from_id(9)
    with pytest.raises(ValueError):
        parameterization_from_id(9)


@pytest.mark.parametrize(
    "model_id, expected",
    [
        # D=3, K=2: weights 1, means 6
        (1, 1 + 6 + 3),
        (2, 1 + 6 + 6),
        (3, 1 + 6 + 6),
        (4, 1 + 6 + 6 + 3),
        (5, 1 + 6 + 3 + 2 * 3),
        (6, 1 + 6 + 2 * 6),
    ],
)
def test_free_parameter_counts(model_id, expected):
    assert n_free_parameters(parameterization_from_id(model_id), n_features=3, n_profiles=2) == expected


def test_single_profile_has_no_weight_parameter():
    assert n_free_parameters(parameterization_from_id(1), n_features=4, n_profiles=1) == 4 + 4


def test_model_specification_validates_profile_count():
    with pytest.raises(InputError):
        ModelSpecification("equal", "zero", 0)
    with pytest.raises(InputError):
        ModelSpecification("equal", "zero", 2.5)
    with pytest.raises(UnsupportedParameterization):
        ModelSpecification("equal", "sometimes", 2)


def test_model_specification_accepts_numpy_integers():
    spec = ModelSpecification.from_model(3, np.int64(4))
    assert spec.model_id == 3
    assert spec.label() == "model_3_class_4"
    assert spec == ModelSpecification("equal", "equal", 4)
    assert resolve_parameterization(spec) is get_parameterization("equal", "equal")


def test_parameterization_string_names_constraints():
    assert str(parameterization_from_id(2)) == "model 2 (varying variances, zero covariances)"
