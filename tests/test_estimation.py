# tests/test_estimation.py
import numpy as np
import pytest
import torch

from conftest import make_spherical_clusters
from lpa_engine._errors import (
    AllStartsDegenerate,
    CapabilityMismatch,
    ConvergenceWarning,
    IncompleteDataError,
    InputError,
)
from lpa_engine._fit_statistics import fit_statistics
from lpa_engine.api import Dataset, EstimationOptions, ModelSpecification, estimate

FAST = EstimationOptions(n_starts=3, seed=1)


@pytest.mark.parametrize("model", [1, 2, 3, 6])
def test_weights_and_responsibilities_are_distributions(pisa_like, model):
    result = estimate(pisa_like, model=model, n_profiles=3, options=FAST)
    params = result.parameters

    assert params.weights.shape == (3,)
    assert float(params.weights.sum()) == pytest.approx(1.0, abs=1e-9)
    assert (params.weights > 0).all()
    assert result.responsibilities.shape == (pisa_like.n_rows, 3)
    assert torch.allclose(result.responsibilities.sum(dim=1), torch.ones(pisa_like.n_rows, dtype=torch.float64))
    assert result.converged
    assert result.row_ids == pisa_like.row_ids


@pytest.mark.parametrize("model", [1, 2, 3, 6])
def test_profiles_come_out_in_canonical_order(pisa_like, model):
    result = estimate(pisa_like, model=model, n_profiles=3, options=FAST)
    first = result.parameters.means[:, 0]
    assert torch.all(first[1:] >= first[:-1])


def test_recovers_well_separated_profiles():
    X, truth = make_spherical_clusters([[0.0, 0.0], [6.0, 6.0], [12.0, 0.0]], n_per_cluster=100, seed=3)
    result = estimate(Dataset.from_array(X), model=1, n_profiles=3, options=FAST)

    # truth is already ordered by the first indicator
    agreement = float((result.classes().numpy() == truth).mean())
    print(f"\n[recovery] agreement={agreement:.3f}")
    assert agreement >= 0.95


def test_estimation_is_reproducible(pisa_like):
    first = estimate(pisa_like, model=2, n_profiles=3, options=FAST)
    second = estimate(pisa_like, model=2, n_profiles=3, options=FAST)

    assert first.log_likelihood == second.log_likelihood
    assert torch.equal(first.parameters.means, second.parameters.means)
    assert torch.equal(first.parameters.covariances, second.parameters.covariances)
    assert torch.equal(first.responsibilities, second.responsibilities)
    assert first.best_start == second.best_start


def test_parallel_starts_match_serial_starts(pisa_like):
    serial = estimate(pisa_like, model=1, n_profiles=3, options=FAST)
    parallel = estimate(pisa_like, model=1, n_profiles=3, options=FAST.replace(n_jobs=3))

    assert parallel.best_start == serial.best_start
    assert parallel.log_likelihood == pytest.approx(serial.log_likelihood, rel=1e-12)
    assert torch.allclose(parallel.parameters.means, serial.parameters.means)


def test_row_order_does_not_change_the_solution(pisa_like):
    perm = np.random.default_rng(0).permutation(pisa_like.n_rows)
    shuffled = pisa_like.take(perm)
    # tight stopping rule so both fits land on the same iterate
    options = FAST.replace(tolerance=1e-10)

    base = estimate(pisa_like, model=1, n_profiles=3, options=options)
    moved = estimate(shuffled, model=1, n_profiles=3, options=options)

    assert moved.log_likelihood == pytest.approx(base.log_likelihood, rel=1e-8)
    assert torch.allclose(moved.parameters.means, base.parameters.means, atol=1e-4)
    assert torch.allclose(moved.parameters.weights, base.parameters.weights, atol=1e-4)
    # profile indices travel with their rows
    assert moved.row_ids == tuple(pisa_like.row_ids[i] for i in perm)
    assert torch.equal(moved.classes(), base.classes()[torch.from_numpy(perm)])
    assert torch.allclose(moved.responsibilities, base.responsibilities[torch.from_numpy(perm)], atol=1e-3)


@pytest.mark.parametrize("model", [4, 5])
def test_local_backend_declines_mixed_constraints(pisa_like, model):
    with pytest.raises(CapabilityMismatch):
        estimate(pisa_like, model=model, n_profiles=2, options=FAST)


def test_log_likelihood_does_not_decrease_with_more_profiles(pisa_like):
    lls = [
        estimate(pisa_like, model=1, n_profiles=k, options=FAST.replace(n_starts=5)).log_likelihood
        for k in range(1, 5)
    ]
    print(f"\n[loglik by k] {lls}")
    for smaller, larger in zip(lls, lls[1:]):
        assert larger >= smaller - 1e-6 * abs(smaller)


def test_two_profile_scenario(two_profile):
    result = estimate(two_profile, model=1, n_profiles=2, options=FAST)
    means = result.parameters.means
    weights = result.parameters.weights

    assert torch.allclose(means, torch.tensor([[65.0, 65.0], [85.0, 85.0]], dtype=torch.float64), atol=2.0)
    assert torch.allclose(weights, torch.tensor([0.5, 0.5], dtype=torch.float64), atol=0.05)
    assert fit_statistics(result).entropy > 0.8


def test_single_profile_is_the_sample_moments(pisa_like):
    result = estimate(pisa_like, model=2, n_profiles=1, options=FAST)
    X = pisa_like.values
    assert torch.allclose(result.parameters.means[0], X.mean(dim=0))
    assert torch.allclose(result.parameters.covariances[0], X.var(dim=0, unbiased=False), atol=1e-5)


def test_every_start_degenerate_is_reported():
    X = np.array([[0.0, 0.0], [10.0, 1.0], [20.0, 3.0], [30.0, 2.0], [40.0, 5.0], [50.0, 4.0]])
    with pytest.raises(AllStartsDegenerate):
        estimate(Dataset.from_array(X), model=2, n_profiles=5, options=FAST)


def test_iteration_cap_returns_a_flagged_result(pisa_like):
    options = FAST.replace(max_iterations=2, tolerance=1e-12)
    with pytest.warns(ConvergenceWarning):
        result = estimate(pisa_like, model=1, n_profiles=3, options=options)
    assert not result.converged
    assert result.n_iterations == 2
    assert not result.timed_out


def test_time_budget_returns_a_flagged_result(pisa_like):
    options = FAST.replace(max_seconds=1e-9)
    with pytest.warns(ConvergenceWarning):
        result = estimate(pisa_like, model=1, n_profiles=3, options=options)
    assert result.timed_out
    assert not result.converged
    assert result.best_start == 0
    assert result.start_log_likelihoods[1:] == (None, None)


def test_missing_cells_are_refused(pisa_like_frame):
    frame = pisa_like_frame.copy()
    frame.iloc[0, 0] = np.nan
    with pytest.raises(IncompleteDataError):
        estimate(Dataset.from_frame(frame), model=1, n_profiles=2, options=FAST)


def test_specification_can_be_passed_whole(pisa_like):
    spec = ModelSpecification("equal", "equal", 2)
    result = estimate(pisa_like, spec, options=FAST)
    assert result.specification == spec
    with pytest.raises(InputError):
        estimate(pisa_like, model=3)


def test_estimates_listing(pisa_like):
    result = estimate(pisa_like, model=3, n_profiles=2, options=FAST)
    rows = result.estimates()
    assert len(rows) == 2 * (1 + 2 * 3)
    assert {r["Category"] for r in rows} == {"Weight", "Means", "Variances"}
    assert rows[1]["Parameter"] == "broad_interest"
