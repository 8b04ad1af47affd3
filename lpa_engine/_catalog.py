# lpa_engine/_catalog.py
"""Variance/covariance parameterizations for latent profile models.

Six admissible combinations of the variance constraint (equal | varying across
profiles) and covariance constraint (zero | equal | varying):

  id  variance  covariance  storage     mclust
  1   equal     zero        tied_diag   EEI
  2   varying   zero        diag        VVI
  3   equal     equal       tied        EEE
  4   varying   equal       full        -
  5   equal     varying     full        -
  6   varying   varying     full        VVV

Covariance storage formats (K profiles, D indicators):
- tied_diag: cov shape (D,)        # one shared diagonal
- diag:      cov shape (K, D)      # per-profile diagonal
- tied:      cov shape (D, D)      # one shared full covariance
- full:      cov shape (K, D, D)   # full covariance per profile
"""

from __future__ import annotations

import numbers
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from ._errors import InputError, UnsupportedParameterization

VARIANCES = ("equal", "varying")
COVARIANCES = ("zero", "equal", "varying")
COVARIANCE_KINDS = ("tied_diag", "diag", "tied", "full")


@dataclass(frozen=True)
class Parameterization:
    model_id: int
    variance: str
    covariance: str
    covariance_kind: str
    name: Optional[str] = None

    @property
    def description(self) -> str:
        return f"{self.variance} variances, {self.covariance} covariances"

    def __str__(self) -> str:
        return f"model {self.model_id} ({self.description})"


_CATALOG: Dict[Tuple[str, str], Parameterization] = {
    ("equal", "zero"): Parameterization(1, "equal", "zero", "tied_diag", "EEI"),
    ("varying", "zero"): Parameterization(2, "varying", "zero", "diag", "VVI"),
    ("equal", "equal"): Parameterization(3, "equal", "equal", "tied", "EEE"),
    ("varying", "equal"): Parameterization(4, "varying", "equal", "full"),
    ("equal", "varying"): Parameterization(5, "equal", "varying", "full"),
    ("varying", "varying"): Parameterization(6, "varying", "varying", "full", "VVV"),
}
_BY_ID: Dict[int, Parameterization] = {p.model_id: p for p in _CATALOG.values()}


def get_parameterization(variance: str, covariance: str) -> Parameterization:
    if variance not in VARIANCES:
        raise UnsupportedParameterization(
            f"variance must be one of {VARIANCES}, got {variance!r}"
        )
    if covariance not in COVARIANCES:
        raise UnsupportedParameterization(
            f"covariance must be one of {COVARIANCES}, got {covariance!r}"
        )
    return _CATALOG[(variance, covariance)]


def parameterization_from_id(model_id: int) -> Parameterization:
    try:
        return _BY_ID[int(model_id)]
    except (KeyError, TypeError, ValueError):
        raise UnsupportedParameterization(
            f"model id must be one of {sorted(_BY_ID)}, got {model_id!r}"
        ) from None


def all_parameterizations() -> Tuple[Parameterization, ...]:
    return tuple(_BY_ID[i] for i in sorted(_BY_ID))


def resolve_parameterization(model) -> Parameterization:
    """Accept a model id, a (variance, covariance) pair, a Parameterization or a ModelSpecification."""
    if isinstance(model, Parameterization):
        return model
    if isinstance(model, ModelSpecification):
        return model.parameterization
    if isinstance(model, bool):
        raise UnsupportedParameterization(f"cannot interpret {model!r} as a parameterization")
    if isinstance(model, numbers.Integral):
        return parameterization_from_id(model)
    if isinstance(model, (tuple, list)) and len(model) == 2:
        return get_parameterization(*model)
    raise UnsupportedParameterization(f"cannot interpret {model!r} as a parameterization")


def n_free_parameters(param: Parameterization, n_features: int, n_profiles: int) -> int:
    """Free parameter count used by every information criterion."""
    K, D = int(n_profiles), int(n_features)
    # weights: K-1, means: K*D
    p = (K - 1) + K * D
    off_diag = D * (D - 1) // 2
    if param.model_id == 1:
        p += D
    elif param.model_id == 2:
        p += K * D
    elif param.model_id == 3:
        p += D + off_diag
    elif param.model_id == 4:
        p += K * D + off_diag
    elif param.model_id == 5:
        p += D + K * off_diag
    else:
        p += K * (D + off_diag)
    return int(p)


@dataclass(frozen=True)
class ModelSpecification:
    variance: str
    covariance: str
    n_profiles: int

    def __post_init__(self) -> None:
        # fail on the catalog first so a bad pair is reported as such
        get_parameterization(self.variance, self.covariance)
        if isinstance(self.n_profiles, bool) or not isinstance(self.n_profiles, numbers.Integral):
            raise InputError(f"n_profiles must be an integer, got {self.n_profiles!r}")
        if self.n_profiles < 1:
            raise InputError(f"n_profiles must be >= 1, got {self.n_profiles}")

    @classmethod
    def from_model(cls, model, n_profiles: int) -> "ModelSpecification":
        param = resolve_parameterization(model)
        return cls(param.variance, param.covariance, n_profiles)

    @property
    def parameterization(self) -> Parameterization:
        return get_parameterization(self.variance, self.covariance)

    @property
    def model_id(self) -> int:
        return self.parameterization.model_id

    def label(self) -> str:
        return f"model_{self.model_id}_class_{self.n_profiles}"
