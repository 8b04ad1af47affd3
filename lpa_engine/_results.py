# lpa_engine/_results.py
"""Immutable outputs of one estimated grid cell."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

import torch

from ._catalog import ModelSpecification
from ._torch_lpa_em import to_full_covariances


@dataclass(frozen=True, eq=False)
class MixtureParameters:
    weights: torch.Tensor       # (K,)
    means: torch.Tensor         # (K, D)
    covariances: torch.Tensor   # storage shape of covariance_kind
    covariance_kind: str

    @property
    def n_profiles(self) -> int:
        return int(self.means.shape[0])

    @property
    def n_features(self) -> int:
        return int(self.means.shape[1])

    def full_covariances(self) -> torch.Tensor:
        return to_full_covariances(self.covariances, self.covariance_kind, self.n_profiles)

    def variances(self) -> torch.Tensor:
        """(K, D) per-profile variances."""
        return torch.diagonal(self.full_covariances(), dim1=1, dim2=2)


@dataclass(frozen=True, eq=False)
class EstimationResult:
    specification: ModelSpecification
    parameters: MixtureParameters
    log_likelihood: float
    n_iterations: int
    converged: bool
    responsibilities: torch.Tensor  # (N, K), rows sum to one
    best_start: int
    start_log_likelihoods: Tuple[Optional[float], ...]
    n_degenerate_starts: int
    row_ids: Tuple
    columns: Tuple[str, ...] = ()
    backend: str = "local"
    timed_out: bool = False
    log_likelihood_history: Tuple[float, ...] = ()

    @property
    def n_rows(self) -> int:
        return int(self.responsibilities.shape[0])

    @property
    def n_features(self) -> int:
        return self.parameters.n_features

    @property
    def n_profiles(self) -> int:
        return self.specification.n_profiles

    def classes(self) -> torch.Tensor:
        """Hard (maximum responsibility) assignment, 0-based."""
        return torch.argmax(self.responsibilities, dim=1)

    def estimates(self) -> List[dict]:
        """Long listing of weights, means and variances per profile and indicator."""
        p = self.parameters
        variances = p.variances()
        names = self.columns or tuple(f"x{j + 1}" for j in range(p.n_features))
        rows = []
        for k in range(p.n_profiles):
            rows.append({"Category": "Weight", "Parameter": "weight", "Class": k + 1, "Estimate": float(p.weights[k])})
            for j in range(p.n_features):
                rows.append({"Category": "Means", "Parameter": names[j], "Class": k + 1, "Estimate": float(p.means[k, j])})
                rows.append({"Category": "Variances", "Parameter": names[j], "Class": k + 1, "Estimate": float(variances[k, j])})
        return rows
