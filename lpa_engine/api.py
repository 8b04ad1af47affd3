# lpa_engine/api.py
"""Library-call surface.

    from lpa_engine.api import Dataset, EstimationOptions, estimate, compare

    data = Dataset.from_frame(frame[["broad_interest", "enjoyment", "self_efficacy"]])
    result = estimate(data, model=1, n_profiles=3, options=EstimationOptions(seed=42))
    table = compare(data, parameterizations={1, 3}, profile_counts=range(1, 6))
    table.to_frame()
"""

from __future__ import annotations

from typing import Optional

from ._backends import EstimationBackend, ExternalBackend, LocalBackend, get_backend
from ._catalog import (
    ModelSpecification,
    Parameterization,
    all_parameterizations,
    get_parameterization,
    n_free_parameters,
    parameterization_from_id,
)
from ._comparison import ComparisonRow, ComparisonTable, compare, rank_rows
from ._data import Dataset, percentage_of_maximum, require_complete, standardize
from ._errors import (
    AllStartsDegenerate,
    BackendUnavailable,
    CapabilityMismatch,
    ConvergenceWarning,
    DegenerateStart,
    ExcessiveMissingness,
    IncompleteDataError,
    InputError,
    LPAError,
    UnsupportedParameterization,
)
from ._fit_statistics import BootstrapLRT, FitRecord, bootstrap_lrt, fit_statistics
from ._imputation import ImputationLog, impute
from ._logging_config import setup_logging
from ._options import EstimationOptions
from ._projection import ProjectedResults, project_many, project_results
from ._results import EstimationResult, MixtureParameters

__all__ = [
    "AllStartsDegenerate", "BackendUnavailable", "BootstrapLRT", "CapabilityMismatch",
    "ComparisonRow", "ComparisonTable", "ConvergenceWarning", "Dataset", "DegenerateStart",
    "EstimationBackend", "EstimationOptions", "EstimationResult", "ExcessiveMissingness",
    "ExternalBackend", "FitRecord", "ImputationLog", "IncompleteDataError", "InputError",
    "LPAError", "LocalBackend", "MixtureParameters", "ModelSpecification", "Parameterization",
    "ProjectedResults", "UnsupportedParameterization", "all_parameterizations", "bootstrap_lrt",
    "compare", "estimate", "fit_statistics", "get_backend", "get_parameterization", "impute",
    "n_free_parameters", "parameterization_from_id", "percentage_of_maximum", "project_many",
    "project_results", "rank_rows", "require_complete", "setup_logging", "standardize",
]


def estimate(
    dataset: Dataset,
    model,
    n_profiles: Optional[int] = None,
    options: Optional[EstimationOptions] = None,
    backend: Optional[EstimationBackend] = None,
) -> EstimationResult:
    """Fit a single (parameterization, profile count) cell.

    model is a catalog id (1-6), a (variance, covariance) pair, a
    Parameterization, or a ModelSpecification (then n_profiles may be omitted).
    """
    options = options or EstimationOptions()
    if isinstance(model, ModelSpecification) and n_profiles is None:
        spec = model
    else:
        if n_profiles is None:
            raise InputError("n_profiles is required unless a ModelSpecification is given")
        spec = ModelSpecification.from_model(model, n_profiles)
    backend = backend or get_backend(options.backend, options)
    return backend.fit(dataset, spec, options)
