# lpa_engine/_fit_statistics.py
"""Penalized-likelihood and classification statistics for fitted cells.

With LL the log-likelihood, p free parameters, n rows and EN = -sum r log r:

  AIC   = -2LL + 2p
  AWE   = -2LL + 2EN + 2p(3/2 + ln n)
  BIC   = -2LL + p ln n
  CAIC  = -2LL + p(ln n + 1)
  CLC   = -2LL + 2EN
  KIC   = -2LL + 3(p + 1)
  SABIC = -2LL + p ln((n + 2) / 24)
  ICL   = BIC + 2EN

All are "lower is better". Entropy = 1 - EN / (n ln k), in [0, 1], higher is
sharper separation. The bootstrapped likelihood-ratio test compares k against
k - 1 profiles by parametric bootstrap from the k - 1 fit.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Tuple

import torch

from ._backends import EstimationBackend, LocalBackend
from ._catalog import ModelSpecification, n_free_parameters
from ._data import Dataset
from ._errors import InputError, LPAError
from ._options import EstimationOptions
from ._results import EstimationResult
from ._torch_lpa_em import sample_mixture

logger = logging.getLogger(__name__)

CRITERIA = ("AIC", "AWE", "BIC", "CAIC", "CLC", "KIC", "SABIC", "ICL")
STATISTICS = (
    "log_likelihood", "n_parameters", "aic", "awe", "bic", "caic", "clc", "kic", "sabic", "icl",
    "classification_entropy", "entropy", "prob_min", "prob_max", "n_min", "n_max",
    "blrt_statistic", "blrt_p",
)
_ALIASES = {"loglik": "log_likelihood", "parameters": "n_parameters", "blrt_val": "blrt_statistic"}


@dataclass(frozen=True)
class BootstrapLRT:
    statistic: float
    p_value: float
    replicates: Tuple[float, ...]
    n_failed: int = 0


@dataclass(frozen=True, eq=False)
class FitRecord:
    result: EstimationResult
    n: int
    n_parameters: int
    log_likelihood: float
    aic: float
    awe: float
    bic: float
    caic: float
    clc: float
    kic: float
    sabic: float
    icl: float
    classification_entropy: float
    entropy: float
    prob_min: float
    prob_max: float
    n_min: float
    n_max: float
    blrt_statistic: Optional[float] = None
    blrt_p: Optional[float] = None

    @property
    def specification(self) -> ModelSpecification:
        return self.result.specification

    def statistic(self, name: str) -> float:
        key = _ALIASES.get(name.lower(), name.lower())
        if key not in STATISTICS:
            raise InputError(f"unknown statistic {name!r}")
        value = getattr(self, key)
        return float("nan") if value is None else float(value)

    def with_blrt(self, blrt: BootstrapLRT) -> "FitRecord":
        return dataclasses.replace(self, blrt_statistic=blrt.statistic, blrt_p=blrt.p_value)

    def as_dict(self) -> dict:
        spec = self.specification
        return {
            "Model": spec.model_id,
            "Classes": spec.n_profiles,
            "LogLik": self.log_likelihood,
            "parameters": self.n_parameters,
            "n": self.n,
            "AIC": self.aic,
            "AWE": self.awe,
            "BIC": self.bic,
            "CAIC": self.caic,
            "CLC": self.clc,
            "KIC": self.kic,
            "SABIC": self.sabic,
            "ICL": self.icl,
            "Entropy": self.entropy,
            "prob_min": self.prob_min,
            "prob_max": self.prob_max,
            "n_min": self.n_min,
            "n_max": self.n_max,
            "BLRT_val": self.blrt_statistic,
            "BLRT_p": self.blrt_p,
            "converged": self.result.converged,
        }


def classification_entropy(resp: torch.Tensor) -> float:
    """EN = -sum_i sum_j r_ij ln r_ij (0 ln 0 = 0)."""
    r = resp.clamp_min(0.0)
    terms = torch.where(r > 0, r * torch.log(r.clamp_min(torch.finfo(r.dtype).tiny)), torch.zeros_like(r))
    return float(-terms.sum())


def relative_entropy(resp: torch.Tensor) -> float:
    """1 - EN / (n ln k), clipped to [0, 1]; 1 for a single profile."""
    n, k = resp.shape
    if k < 2:
        return 1.0
    value = 1.0 - classification_entropy(resp) / (n * math.log(k))
    return min(1.0, max(0.0, value))


def _assignment_diagnostics(resp: torch.Tensor) -> Tuple[float, float, float, float]:
    n, k = resp.shape
    classes = torch.argmax(resp, dim=1)
    counts = torch.bincount(classes, minlength=k).to(resp.dtype)
    proportions = counts / n

    avg_probs = []
    for j in range(k):
        members = classes == j
        if members.any():
            avg_probs.append(float(resp[members, j].mean()))
    prob_min = min(avg_probs) if avg_probs else float("nan")
    prob_max = max(avg_probs) if avg_probs else float("nan")
    return prob_min, prob_max, float(proportions.min()), float(proportions.max())


def fit_statistics(result: EstimationResult, blrt: Optional[BootstrapLRT] = None) -> FitRecord:
    spec = result.specification
    n = result.n_rows
    p = n_free_parameters(spec.parameterization, result.n_features, spec.n_profiles)
    ll = float(result.log_likelihood)
    resp = result.responsibilities

    deviance = -2.0 * ll
    en = classification_entropy(resp)
    bic = deviance + p * math.log(n)
    prob_min, prob_max, n_min, n_max = _assignment_diagnostics(resp)

    return FitRecord(
        result=result,
        n=n,
        n_parameters=p,
        log_likelihood=ll,
        aic=deviance + 2 * p,
        awe=deviance + 2 * en + 2 * p * (1.5 + math.log(n)),
        bic=bic,
        caic=deviance + p * (math.log(n) + 1),
        clc=deviance + 2 * en,
        kic=deviance + 3 * (p + 1),
        sabic=deviance + p * math.log((n + 2) / 24),
        icl=bic + 2 * en,
        classification_entropy=en,
        entropy=relative_entropy(resp),
        prob_min=prob_min,
        prob_max=prob_max,
        n_min=n_min,
        n_max=n_max,
        blrt_statistic=None if blrt is None else blrt.statistic,
        blrt_p=None if blrt is None else blrt.p_value,
    )


def _smaller_spec(spec: ModelSpecification) -> ModelSpecification:
    return ModelSpecification(spec.variance, spec.covariance, spec.n_profiles - 1)


def bootstrap_lrt(
    dataset: Dataset,
    result: EstimationResult,
    result_smaller: Optional[EstimationResult] = None,
    n_bootstrap: int = 100,
    options: Optional[EstimationOptions] = None,
    backend: Optional[EstimationBackend] = None,
    n_jobs: int = 1,
) -> BootstrapLRT:
    """Parametric bootstrap LRT of k against k - 1 profiles.

    Replicate b samples n rows from the k - 1 fit with a generator seeded
    seed + b and refits both models with seed + b. The p-value is the
    fraction of valid replicate statistics at or above the observed one.
    """
    spec = result.specification
    if spec.n_profiles < 2:
        raise InputError("the bootstrap LRT needs at least 2 profiles")
    if n_bootstrap < 1:
        raise InputError("n_bootstrap must be positive")
    options = options or EstimationOptions()
    backend = backend or LocalBackend()
    smaller = _smaller_spec(spec)

    if result_smaller is None:
        result_smaller = backend.fit(dataset, smaller, options)
    elif result_smaller.specification != smaller:
        raise InputError(f"expected a fit of {smaller.label()}, got {result_smaller.specification.label()}")

    observed = 2.0 * (result.log_likelihood - result_smaller.log_likelihood)
    params = result_smaller.parameters
    n = dataset.n_rows

    def replicate(b: int) -> Optional[float]:
        seed = options.seed + b
        generator = torch.Generator(device=params.means.device)
        generator.manual_seed(int(seed))
        X_b, _ = sample_mixture(
            params.weights, params.means, params.covariances, params.covariance_kind, n, generator
        )
        synthetic = Dataset.from_array(X_b, columns=dataset.columns)
        replicate_options = options.replace(seed=seed)
        try:
            ll_small = backend.fit(synthetic, smaller, replicate_options).log_likelihood
            ll_big = backend.fit(synthetic, spec, replicate_options).log_likelihood
        except LPAError as exc:
            logger.debug("bootstrap replicate %d failed: %s", b, exc)
            return None
        return 2.0 * (ll_big - ll_small)

    if n_jobs > 1:
        with ThreadPoolExecutor(max_workers=n_jobs) as pool:
            stats = list(pool.map(replicate, range(n_bootstrap)))
    else:
        stats = [replicate(b) for b in range(n_bootstrap)]

    valid = tuple(s for s in stats if s is not None)
    n_failed = n_bootstrap - len(valid)
    if not valid:
        raise LPAError(f"every bootstrap replicate failed for {spec.label()}")
    if n_failed:
        logger.warning("%s: %d of %d bootstrap replicates failed", spec.label(), n_failed, n_bootstrap)

    p_value = sum(1 for s in valid if s >= observed) / len(valid)
    logger.info("%s: BLRT statistic %.3f, p=%.3f (%d replicates)", spec.label(), observed, p_value, len(valid))
    return BootstrapLRT(statistic=observed, p_value=p_value, replicates=valid, n_failed=n_failed)
