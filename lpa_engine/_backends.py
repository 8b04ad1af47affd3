# lpa_engine/_backends.py
"""Estimation backends.

Any object with `name`, `supported_models` and `fit(dataset, spec, options)`
returning an EstimationResult qualifies. Two implementations:

- LocalBackend: the PyTorch EM in _torch_lpa_em (models 1, 2, 3, 6).
- ExternalBackend: hands the cell to an external program through files in a
  temporary directory (models 1-6).

External program protocol (argv: <command...> <request.json>):
  request.json   {"data": "data.csv", "response": "response.json", "columns": [...],
                  "model_id", "variance", "covariance", "n_profiles",
                  "n_starts", "max_iterations", "tolerance", "seed"}
  data.csv       one column per indicator, header row, no index
  response.json  {"status": "ok" | "unsupported" | "degenerate", "message",
                  "weights": [K], "means": [K][D], "covariances": [K][D][D],
                  "log_likelihood", "n_iterations", "converged", "best_start" (logged only)}

Both backends return profiles in canonical order and identical parameter
accounting, so the comparison engine never needs to know which one ran.
"""

from __future__ import annotations

import json
import logging
import math
import shutil
import subprocess
import tempfile
import warnings
from abc import ABC, abstractmethod
from pathlib import Path
from typing import FrozenSet, Optional

import torch

from ._catalog import ModelSpecification
from ._data import Dataset
from ._errors import (
    AllStartsDegenerate,
    BackendUnavailable,
    CapabilityMismatch,
    ConvergenceWarning,
    InputError,
)
from ._options import EstimationOptions
from ._results import EstimationResult, MixtureParameters
from ._torch_lpa_em import (
    TorchProfileMixture,
    _compute_precisions_cholesky,
    _expectation_step_precchol,
    _permute_covariances,
    canonical_order,
    from_full_covariances,
)

logger = logging.getLogger(__name__)


def _warn_not_converged(spec: ModelSpecification, n_iter: int, timed_out: bool) -> None:
    reason = "time budget exhausted" if timed_out else f"max_iterations reached ({n_iter})"
    message = f"{spec.parameterization} with {spec.n_profiles} profiles did not converge: {reason}"
    logger.warning(message)
    warnings.warn(message, ConvergenceWarning, stacklevel=3)


class EstimationBackend(ABC):
    name: str = "abstract"
    supported_models: FrozenSet[int] = frozenset()

    def supports(self, spec: ModelSpecification) -> bool:
        return spec.model_id in self.supported_models

    def check_capability(self, spec: ModelSpecification) -> None:
        if not self.supports(spec):
            raise CapabilityMismatch(
                f"{spec.parameterization} cannot be estimated by the {self.name} backend "
                f"(supported models: {sorted(self.supported_models)})"
            )

    @abstractmethod
    def fit(self, dataset: Dataset, spec: ModelSpecification, options: EstimationOptions) -> EstimationResult:
        ...


class LocalBackend(EstimationBackend):
    name = "local"
    # mixed variance/covariance constraints (models 4, 5) have no closed-form M-step
    supported_models = frozenset({1, 2, 3, 6})

    def fit(self, dataset: Dataset, spec: ModelSpecification, options: EstimationOptions) -> EstimationResult:
        self.check_capability(spec)
        dataset.require_complete()

        model = TorchProfileMixture(
            n_profiles=spec.n_profiles,
            parameterization=spec.parameterization,
            tol=options.tolerance,
            reg_covar=options.reg_covar,
            max_iter=options.max_iterations,
            n_starts=options.n_starts,
            init_params=options.init_params,
            seed=options.seed,
            min_class_weight=options.min_class_weight,
            singular_tol=options.singular_tol,
            max_seconds=options.max_seconds,
            n_jobs=options.n_jobs,
            device=options.device,
            dtype=options.dtype,
        )
        model.fit(dataset.values)

        if model.n_degenerate_starts_:
            logger.info(
                "%s: %d of %d starts rejected as degenerate",
                spec.label(), model.n_degenerate_starts_, options.n_starts,
            )
        if not model.converged_:
            _warn_not_converged(spec, model.n_iter_, model.timed_out_)

        return EstimationResult(
            specification=spec,
            parameters=MixtureParameters(
                weights=model.weights_,
                means=model.means_,
                covariances=model.covariances_,
                covariance_kind=model.cov_kind,
            ),
            log_likelihood=float(model.log_likelihood_),
            n_iterations=model.n_iter_,
            converged=model.converged_,
            responsibilities=model.predict_proba(dataset.values),
            best_start=int(model.best_start_),
            start_log_likelihoods=model.start_log_likelihoods_,
            n_degenerate_starts=model.n_degenerate_starts_,
            row_ids=dataset.row_ids,
            columns=dataset.columns,
            backend=self.name,
            timed_out=model.timed_out_,
            log_likelihood_history=tuple(model.lower_bounds_),
        )


class ExternalBackend(EstimationBackend):
    name = "external"
    supported_models = frozenset({1, 2, 3, 4, 5, 6})

    def __init__(self, command=None, timeout: Optional[float] = None) -> None:
        self.command = tuple(command) if command else None
        self.timeout = timeout

    def _resolve_command(self, options: EstimationOptions):
        command = self.command or options.external_command
        if not command:
            raise BackendUnavailable("no external estimation command configured")
        if shutil.which(command[0]) is None:
            raise BackendUnavailable(f"external estimation program not found on PATH: {command[0]!r}")
        return tuple(command)

    def fit(self, dataset: Dataset, spec: ModelSpecification, options: EstimationOptions) -> EstimationResult:
        self.check_capability(spec)
        dataset.require_complete()
        command = self._resolve_command(options)
        timeout = self.timeout if self.timeout is not None else options.external_timeout

        with tempfile.TemporaryDirectory(prefix="lpa_engine_") as tmp:
            workdir = Path(tmp)
            dataset.to_frame().to_csv(workdir / "data.csv", index=False)
            request = {
                "data": "data.csv",
                "response": "response.json",
                "columns": list(dataset.columns),
                "model_id": spec.model_id,
                "variance": spec.variance,
                "covariance": spec.covariance,
                "n_profiles": spec.n_profiles,
                "n_starts": options.n_starts,
                "max_iterations": options.max_iterations,
                "tolerance": options.tolerance,
                "seed": options.seed,
            }
            request_path = workdir / "request.json"
            request_path.write_text(json.dumps(request, indent=2), encoding="utf-8")

            logger.debug("running external backend: %s", " ".join(command))
            try:
                proc = subprocess.run(
                    list(command) + [str(request_path)],
                    cwd=workdir,
                    capture_output=True,
                    text=True,
                    timeout=timeout,
                )
            except subprocess.TimeoutExpired as exc:
                raise BackendUnavailable(f"external backend timed out after {timeout}s") from exc
            except OSError as exc:
                raise BackendUnavailable(f"external backend could not be started: {exc}") from exc

            if proc.returncode != 0:
                raise BackendUnavailable(
                    f"external backend exited with status {proc.returncode}: {proc.stderr.strip()[:500]}"
                )
            response_path = workdir / "response.json"
            if not response_path.exists():
                raise BackendUnavailable("external backend produced no response.json")
            try:
                response = json.loads(response_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise BackendUnavailable(f"unreadable response from external backend: {exc}") from exc

        status = response.get("status", "ok")
        message = response.get("message", "")
        if status == "unsupported":
            raise CapabilityMismatch(f"external backend rejected {spec.parameterization}: {message}")
        if status == "degenerate":
            raise AllStartsDegenerate(f"external backend found no valid solution: {message}")
        if status != "ok":
            raise BackendUnavailable(f"unknown status from external backend: {status!r}")

        return self._result_from_response(dataset, spec, options, response)

    def _result_from_response(
        self,
        dataset: Dataset,
        spec: ModelSpecification,
        options: EstimationOptions,
        response: dict,
    ) -> EstimationResult:
        K, D = spec.n_profiles, dataset.n_features
        dtype = options.dtype
        try:
            weights = torch.tensor(response["weights"], dtype=dtype)
            means = torch.tensor(response["means"], dtype=dtype)
            cov_full = torch.tensor(response["covariances"], dtype=dtype)
        except (KeyError, TypeError, ValueError) as exc:
            raise BackendUnavailable(f"malformed response from external backend: {exc}") from exc
        if weights.shape != (K,) or means.shape != (K, D) or cov_full.shape != (K, D, D):
            raise BackendUnavailable(
                f"external backend returned shapes {tuple(weights.shape)}, {tuple(means.shape)}, "
                f"{tuple(cov_full.shape)} for K={K}, D={D}"
            )
        weights = weights / weights.sum()

        kind = spec.parameterization.covariance_kind
        cov = from_full_covariances(cov_full, kind, weights)
        try:
            prec_chol = _compute_precisions_cholesky(cov, kind)
        except torch.linalg.LinAlgError as exc:
            raise AllStartsDegenerate(f"external backend returned a singular covariance: {exc}") from exc

        order = canonical_order(means)
        weights, means = weights[order], means[order]
        cov = _permute_covariances(cov, kind, order)
        prec_chol = _permute_covariances(prec_chol, kind, order)

        X = dataset.values.to(dtype)
        mean_ll, log_resp = _expectation_step_precchol(X, means, prec_chol, weights, kind)
        log_likelihood = float(mean_ll) * dataset.n_rows

        reported = response.get("log_likelihood")
        if reported is not None and not math.isclose(float(reported), log_likelihood, rel_tol=1e-4, abs_tol=1e-3):
            logger.warning(
                "%s: external log-likelihood %.4f differs from recomputed %.4f; using recomputed value",
                spec.label(), float(reported), log_likelihood,
            )

        converged = bool(response.get("converged", True))
        n_iter = int(response.get("n_iterations", 0))
        logger.debug("%s: external backend kept its start %s", spec.label(), response.get("best_start"))
        if not converged:
            _warn_not_converged(spec, n_iter, timed_out=False)

        return EstimationResult(
            specification=spec,
            parameters=MixtureParameters(weights=weights, means=means, covariances=cov, covariance_kind=kind),
            log_likelihood=log_likelihood,
            n_iterations=n_iter,
            converged=converged,
            responsibilities=log_resp.exp(),
            best_start=0,
            start_log_likelihoods=(log_likelihood,),
            n_degenerate_starts=0,
            row_ids=dataset.row_ids,
            columns=dataset.columns,
            backend=self.name,
        )


def get_backend(name: str = "local", options: Optional[EstimationOptions] = None) -> EstimationBackend:
    if name == "local":
        return LocalBackend()
    if name == "external":
        command = options.external_command if options is not None else None
        return ExternalBackend(command=command)
    raise InputError(f"unknown backend {name!r}")
