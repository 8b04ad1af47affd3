# lpa_engine/_torch_lpa_em.py
"""Latent profile EM in PyTorch.

Gaussian finite mixtures with the variance/covariance constraints of the
parameterization catalog (see _catalog.py), fitted by EM from several starts.

Key choices:
- We store covariances_ but compute and USE precisions_cholesky_ for E-step log-probs
  (sklearn-style), which improves numerical stability on ill-conditioned covariances.
- reg_covar is ADDED (not clamped) to the diagonal in the M-step.
- nk smoothing uses: nk = resp.sum(0) + 10 * eps(dtype), like sklearn.
- "Equal" constraints are realised by pooling the responsibility-weighted second
  moments across profiles; "zero" covariances keep only the diagonal.
- Every stochastic step takes an explicit torch.Generator seeded from seed + start_index.
  No global RNG state is touched.

Initialization options (first start; later starts are random-centre partitions
unless init_params='kmeans'):
- 'hc':     ward hierarchical clustering cut (sklearn AgglomerativeClustering), deterministic
- 'random': nearest-centre partition around K rows drawn at random
- 'kmeans': PyTorch k-means++ followed by Lloyd iterations

A start is rejected (DegenerateStart) when a profile weight falls below
min_class_weight or a covariance becomes singular. The start with the highest
log-likelihood is kept and its profiles are sorted by the mean of the first
indicator (ties broken by the following indicators).

Exposed attributes after fit:
- weights_, means_, covariances_, precisions_cholesky_
- converged_, n_iter_, log_likelihood_, lower_bounds_ (mean log-lik history)
- best_start_, start_log_likelihoods_, n_degenerate_starts_, timed_out_
"""

from __future__ import annotations

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import torch
from sklearn.cluster import AgglomerativeClustering

from ._catalog import COVARIANCE_KINDS, Parameterization
from ._errors import AllStartsDegenerate, DegenerateStart, InputError

logger = logging.getLogger(__name__)

INIT_PARAMS = ("hc", "random", "kmeans")
HC_MAX_ROWS = 5000
# convergence is not declared before this many EM iterations
MIN_ITER = 5


# ---------------------------
# Utilities
# ---------------------------

def _check_cov_kind(cov_kind: str) -> None:
    if cov_kind not in COVARIANCE_KINDS:
        raise ValueError(f"Unknown covariance kind={cov_kind!r}")

def _nk_eps(dtype: torch.dtype) -> float:
    """Match sklearn's nk smoothing: 10 * machine epsilon for dtype."""
    return float(10.0 * torch.finfo(dtype).eps)

def _safe_log(x: torch.Tensor) -> torch.Tensor:
    tiny = torch.finfo(x.dtype).tiny
    return torch.log(x.clamp_min(tiny))


def to_full_covariances(cov: torch.Tensor, cov_kind: str, n_profiles: int) -> torch.Tensor:
    """Expand any covariance storage to (K, D, D)."""
    _check_cov_kind(cov_kind)
    K = n_profiles
    if cov_kind == "tied_diag":
        return torch.diag_embed(cov.unsqueeze(0).expand(K, -1))
    if cov_kind == "diag":
        return torch.diag_embed(cov)
    if cov_kind == "tied":
        return cov.unsqueeze(0).expand(K, -1, -1).clone()
    return cov.clone()


def from_full_covariances(
    cov_full: torch.Tensor,
    cov_kind: str,
    weights: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """Project (K, D, D) covariances onto a storage shape.

    Tied kinds pool the profiles as sum_k w_k Sigma_k (uniform weights when
    none are given); diagonal kinds keep only the variances.
    """
    _check_cov_kind(cov_kind)
    if cov_kind == "diag":
        return torch.diagonal(cov_full, dim1=1, dim2=2).clone()
    if cov_kind == "full":
        return cov_full.clone()

    K = cov_full.shape[0]
    if weights is None:
        weights = torch.full((K,), 1.0 / K, device=cov_full.device, dtype=cov_full.dtype)
    pooled = torch.einsum("k,kij->ij", weights.to(cov_full.dtype), cov_full)
    if cov_kind == "tied_diag":
        return torch.diagonal(pooled).clone()
    return pooled


# ---------------------------
# Precision-Cholesky helpers (sklearn-style)
# ---------------------------

@torch.no_grad()
def _compute_precisions_cholesky(cov: torch.Tensor, cov_kind: str) -> torch.Tensor:
    """Compute precisions_cholesky from covariances.

    Shapes returned:
    - tied_diag: (D,)      where entry is 1/sqrt(var)
    - diag:      (K, D)    where entry is 1/sqrt(var)
    - tied:      (D, D)    lower-triangular, such that precision = P^T P
    - full:      (K, D, D) lower-triangular per component

    For tied/full:
      cov = L L^T (L lower).  precision_chol = inv(L) (lower).
      precision = inv(cov) = inv(L^T) inv(L) = precision_chol^T precision_chol.
    """
    _check_cov_kind(cov_kind)

    if cov_kind in ("tied_diag", "diag"):
        return 1.0 / torch.sqrt(cov)

    if cov_kind == "tied":
        L = torch.linalg.cholesky(cov)
        I = torch.eye(L.shape[0], device=cov.device, dtype=cov.dtype)
        return torch.linalg.solve_triangular(L, I, upper=False)

    # full
    K, D, _ = cov.shape
    L = torch.linalg.cholesky(cov)  # (K, D, D) batched
    I = torch.eye(D, device=cov.device, dtype=cov.dtype).unsqueeze(0).expand(K, D, D)
    return torch.linalg.solve_triangular(L, I, upper=False)


# ---------------------------
# Log Gaussian probability via precisions_cholesky_
# ---------------------------

def _estimate_log_gaussian_prob_diag_precchol(
    X: torch.Tensor,
    means: torch.Tensor,
    precisions_chol: torch.Tensor,
) -> torch.Tensor:
    """Diag log N(X | means, cov) using precisions_cholesky (1/sqrt(var))."""
    N, D = X.shape
    K, D2 = means.shape
    assert D == D2
    assert precisions_chol.shape == (K, D)

    diff = X.unsqueeze(1) - means.unsqueeze(0)  # (N,K,D)
    y = diff * precisions_chol.unsqueeze(0)     # (N,K,D)
    mahal = torch.sum(y * y, dim=2)             # (N,K)

    # 0.5 * logdet(precision) = sum_d log(prec_chol_{k,d})
    log_det_term = torch.sum(torch.log(precisions_chol), dim=1)  # (K,)

    return -0.5 * (D * math.log(2 * math.pi) + mahal) + log_det_term.unsqueeze(0)


def _estimate_log_gaussian_prob_tied_diag_precchol(
    X: torch.Tensor,
    means: torch.Tensor,
    precisions_chol: torch.Tensor,
) -> torch.Tensor:
    """Shared-diagonal log N; the (D,) factor is broadcast to every profile."""
    K, D = means.shape
    assert precisions_chol.shape == (D,)
    return _estimate_log_gaussian_prob_diag_precchol(X, means, precisions_chol.unsqueeze(0).expand(K, D))


def _estimate_log_gaussian_prob_tied_precchol(
    X: torch.Tensor,
    means: torch.Tensor,
    precisions_chol: torch.Tensor,
) -> torch.Tensor:
    """Tied-cov log N using precision_cholesky (D,D lower)."""
    N, D = X.shape
    K, D2 = means.shape
    assert D == D2
    assert precisions_chol.shape == (D, D)

    log_det_term = torch.sum(torch.log(torch.diagonal(precisions_chol)))

    diff = X.unsqueeze(1) - means.unsqueeze(0)  # (N,K,D)
    # y[n,k,:] = diff[n,k,:] @ P^T
    y = torch.einsum('nkd,ed->nke', diff, precisions_chol)  # (N,K,D)
    mahal = torch.sum(y * y, dim=2)  # (N,K)

    return -0.5 * (D * math.log(2 * math.pi) + mahal) + log_det_term


def _estimate_log_gaussian_prob_full_precchol(
    X: torch.Tensor,
    means: torch.Tensor,
    precisions_chol: torch.Tensor,
) -> torch.Tensor:
    """Full-cov log N using precision_cholesky (K,D,D lower)."""
    N, D = X.shape
    K, D2 = means.shape
    assert D == D2
    assert precisions_chol.shape == (K, D, D)

    diff = X.unsqueeze(1) - means.unsqueeze(0)  # (N,K,D)

    log_det_term = torch.sum(torch.log(torch.diagonal(precisions_chol, dim1=1, dim2=2)), dim=1)  # (K,)

    # y[n,k,:] = diff[n,k,:] @ P[k]^T
    y = torch.einsum('nkd,kde->nke', diff, precisions_chol.transpose(-1, -2))  # (N,K,D)
    mahal = torch.sum(y * y, dim=2)  # (N,K)

    return -0.5 * (D * math.log(2 * math.pi) + mahal) + log_det_term.unsqueeze(0)


def _estimate_log_gaussian_prob_precchol(
    X: torch.Tensor,
    means: torch.Tensor,
    precisions_chol: torch.Tensor,
    cov_kind: str,
) -> torch.Tensor:
    _check_cov_kind(cov_kind)
    if cov_kind == "tied_diag":
        return _estimate_log_gaussian_prob_tied_diag_precchol(X, means, precisions_chol)
    if cov_kind == "diag":
        return _estimate_log_gaussian_prob_diag_precchol(X, means, precisions_chol)
    if cov_kind == "tied":
        return _estimate_log_gaussian_prob_tied_precchol(X, means, precisions_chol)
    return _estimate_log_gaussian_prob_full_precchol(X, means, precisions_chol)


# ---------------------------
# EM steps
# ---------------------------

def _expectation_step_precchol(
    X: torch.Tensor,
    means: torch.Tensor,
    precisions_chol: torch.Tensor,
    weights: torch.Tensor,
    cov_kind: str,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """E-step in log space. Returns (mean log-likelihood, log_resp (N,K))."""
    log_prob = _estimate_log_gaussian_prob_precchol(X, means, precisions_chol, cov_kind)  # (N,K)
    weighted_log_prob = log_prob + _safe_log(weights).unsqueeze(0)  # (N,K)

    log_prob_norm = torch.logsumexp(weighted_log_prob, dim=1)  # (N,)
    log_resp = weighted_log_prob - log_prob_norm.unsqueeze(1)  # (N,K)

    return log_prob_norm.mean(), log_resp


def _maximization_step(
    X: torch.Tensor,
    log_resp: torch.Tensor,
    cov_kind: str,
    reg_covar: float = 1e-6,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """M-step producing (means, cov, weights), cov projected onto cov_kind's shape."""
    _check_cov_kind(cov_kind)
    N, D = X.shape
    assert log_resp.shape[0] == N

    resp = log_resp.exp()  # (N,K)

    nk = resp.sum(dim=0) + _nk_eps(resp.dtype)  # (K,)

    new_weights = nk / nk.sum()
    new_means = (resp.T @ X) / nk.unsqueeze(1)  # (K,D)

    diff = X.unsqueeze(1) - new_means.unsqueeze(0)  # (N,K,D)

    if cov_kind == "tied_diag":
        # equal variances, zero covariances: pool the per-profile diagonals
        weighted_sq_diff = resp.unsqueeze(2) * (diff ** 2)  # (N,K,D)
        new_cov = weighted_sq_diff.sum(dim=(0, 1)) / nk.sum()  # (D,)
        new_cov = new_cov + reg_covar

    elif cov_kind == "diag":
        weighted_sq_diff = resp.unsqueeze(2) * (diff ** 2)  # (N,K,D)
        new_cov = weighted_sq_diff.sum(dim=0) / nk.unsqueeze(1)  # (K,D)
        new_cov = new_cov + reg_covar

    elif cov_kind == "tied":
        # sum_k sum_n resp[n,k] * diff[n,k,:] * diff[n,k,:]^T
        cov_sum = torch.einsum('nk,nkd,nke->de', resp, diff, diff)  # (D,D)
        new_cov = cov_sum / nk.sum()
        new_cov = new_cov + reg_covar * torch.eye(D, device=X.device, dtype=X.dtype)

    else:  # full
        cov_sum = torch.einsum('nk,nkd,nke->kde', resp, diff, diff)  # (K,D,D)
        new_cov = cov_sum / nk.unsqueeze(1).unsqueeze(2)  # (K,D,D)
        eye = torch.eye(D, device=X.device, dtype=X.dtype)
        new_cov = new_cov + reg_covar * eye.unsqueeze(0)

    return new_means, new_cov, new_weights


# ---------------------------
# Initialization helpers
# ---------------------------

@torch.no_grad()
def _kmeans_plus_plus_init_centroids(X: torch.Tensor, K: int, generator: torch.Generator) -> torch.Tensor:
    """k-means++ seeding. Returns centroids (K, D)."""
    N, D = X.shape

    centroids = torch.empty((K, D), device=X.device, dtype=X.dtype)

    i0 = int(torch.randint(0, N, (1,), device=X.device, generator=generator).item())
    centroids[0] = X[i0]

    # Closest squared dist to any chosen centroid so far
    closest_d2 = torch.sum((X - centroids[0]) ** 2, dim=1)  # (N,)

    for k in range(1, K):
        total = closest_d2.sum()
        if total <= 0:
            # every row coincides with a chosen centroid
            probs = torch.full_like(closest_d2, 1.0 / N)
        else:
            probs = closest_d2 / total
        idx = int(torch.multinomial(probs, 1, generator=generator).item())
        centroids[k] = X[idx]

        d2_new = torch.sum((X - centroids[k]) ** 2, dim=1)
        closest_d2 = torch.minimum(closest_d2, d2_new)

    return centroids


@torch.no_grad()
def _kmeans_lloyd_with_init(
    X: torch.Tensor,
    centroids: torch.Tensor,
    generator: torch.Generator,
    n_iter: int = 10,
) -> torch.Tensor:
    """Run Lloyd iterations starting from provided centroids. Returns labels (N,)."""
    N, D = X.shape
    K, D2 = centroids.shape
    assert D == D2
    centroids = centroids.clone()

    labels = torch.zeros((N,), device=X.device, dtype=torch.long)
    for _ in range(n_iter):
        d2 = torch.cdist(X, centroids).pow(2)  # (N,K)
        labels = torch.argmin(d2, dim=1)

        counts = torch.zeros((K,), device=X.device, dtype=X.dtype)
        sums = torch.zeros((K, D), device=X.device, dtype=X.dtype)

        counts.scatter_add_(0, labels, torch.ones((N,), device=X.device, dtype=X.dtype))
        sums.scatter_add_(0, labels.unsqueeze(1).expand(N, D), X)

        # Handle empty clusters
        empty_mask = counts == 0
        if empty_mask.any():
            random_idx = torch.randint(0, N, (int(empty_mask.sum().item()),), device=X.device, generator=generator)
            sums[empty_mask] = X[random_idx]
            counts[empty_mask] = 1.0

        centroids = sums / counts.unsqueeze(1)

    return labels


def _hierarchical_labels(X: torch.Tensor, K: int) -> torch.Tensor:
    """Deterministic ward hierarchical clustering cut at K clusters."""
    if K == 1:
        return torch.zeros((X.shape[0],), device=X.device, dtype=torch.long)
    labels = AgglomerativeClustering(n_clusters=K, linkage="ward").fit(X.cpu().numpy()).labels_
    return torch.from_numpy(np.asarray(labels, dtype=np.int64)).to(X.device)


@torch.no_grad()
def _random_centre_labels(X: torch.Tensor, K: int, generator: torch.Generator) -> torch.Tensor:
    """Nearest-centre partition around K distinct rows drawn at random."""
    N = X.shape[0]
    idx = torch.randperm(N, device=X.device, generator=generator)[:K]
    d2 = torch.cdist(X, X[idx]).pow(2)  # (N,K)
    return torch.argmin(d2, dim=1)


def _labels_to_log_resp(labels: torch.Tensor, K: int, dtype: torch.dtype) -> torch.Tensor:
    N = labels.shape[0]
    resp = torch.zeros((N, K), device=labels.device, dtype=dtype)
    resp[torch.arange(N, device=labels.device), labels] = 1.0
    return _safe_log(resp)


# ---------------------------
# Degeneracy and label ordering
# ---------------------------

def _check_degenerate(
    weights: torch.Tensor,
    cov: torch.Tensor,
    cov_kind: str,
    scale: torch.Tensor,
    min_class_weight: float,
    singular_tol: float,
) -> None:
    """Raise DegenerateStart on an empty class or a singular covariance.

    scale holds the per-indicator variance of the data; a variance (or
    eigenvalue) below singular_tol * scale counts as singular.
    """
    w_min = float(weights.min())
    if w_min < min_class_weight:
        raise DegenerateStart(f"empty class (min weight {w_min:.3g} < {min_class_weight:g})")
    if not torch.isfinite(cov).all():
        raise DegenerateStart("non-finite covariance estimate")

    if cov_kind in ("tied_diag", "diag"):
        floor = singular_tol * scale  # (D,)
        if (cov <= floor).any():
            raise DegenerateStart("singular covariance (variance collapsed)")
        return

    eig = torch.linalg.eigvalsh(cov)
    floor = singular_tol * float(scale.min())
    if (eig <= floor).any():
        raise DegenerateStart(f"singular covariance (min eigenvalue {float(eig.min()):.3g})")


def canonical_order(means: torch.Tensor) -> torch.Tensor:
    """Profile permutation sorting by the first indicator's mean, ties by the next ones."""
    m = means.detach().cpu().numpy()
    # np.lexsort treats the last key as primary
    order = np.lexsort(m.T[::-1])
    return torch.from_numpy(order.astype(np.int64))


def _permute_covariances(cov: torch.Tensor, cov_kind: str, order: torch.Tensor) -> torch.Tensor:
    if cov_kind in ("tied_diag", "tied"):
        return cov
    return cov[order.to(cov.device)]


# ---------------------------
# Model wrapper
# ---------------------------

@dataclass
class ProfileParams:
    weights: torch.Tensor
    means: torch.Tensor
    cov: torch.Tensor
    prec_chol: torch.Tensor
    cov_kind: str


@dataclass
class StartOutcome:
    index: int
    params: Optional[ProfileParams] = None
    mean_log_likelihood: float = float("-inf")
    n_iter: int = 0
    converged: bool = False
    timed_out: bool = False
    history: Optional[List[float]] = None
    failure: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.params is not None


class TorchProfileMixture:
    """Constrained Gaussian mixture for latent profile analysis in PyTorch."""

    def __init__(
        self,
        n_profiles: int,
        parameterization: Parameterization,
        tol: float = 1e-6,
        reg_covar: float = 1e-6,
        max_iter: int = 1000,
        n_starts: int = 10,
        init_params: str = "hc",
        seed: int = 0,
        min_class_weight: float = 1e-3,
        singular_tol: float = 1e-5,
        max_seconds: Optional[float] = None,
        n_jobs: int = 1,
        device=None,
        dtype=torch.float64,
        kmeans_iter: int = 10,
    ) -> None:
        if n_profiles <= 0:
            raise InputError("n_profiles must be positive")
        if reg_covar < 0:
            raise InputError("reg_covar must be non-negative")
        if max_iter <= 0:
            raise InputError("max_iter must be positive")
        if n_starts <= 0:
            raise InputError("n_starts must be positive")
        if init_params not in INIT_PARAMS:
            raise InputError(f"init_params must be one of {INIT_PARAMS}, got {init_params!r}")

        self.n_profiles = n_profiles
        self.parameterization = parameterization
        self.cov_kind = parameterization.covariance_kind
        self.tol = tol
        self.reg_covar = reg_covar
        self.max_iter = max_iter
        self.n_starts = n_starts
        self.init_params = init_params
        self.seed = seed
        self.min_class_weight = min_class_weight
        self.singular_tol = singular_tol
        self.max_seconds = max_seconds
        self.n_jobs = n_jobs
        self.device = device
        self.dtype = dtype
        self.kmeans_iter = kmeans_iter

        self.weights_: Optional[torch.Tensor] = None
        self.means_: Optional[torch.Tensor] = None
        self.covariances_: Optional[torch.Tensor] = None
        self.precisions_cholesky_: Optional[torch.Tensor] = None

        self.converged_: bool = False
        self.timed_out_: bool = False
        self.n_iter_: int = 0
        self.log_likelihood_: float = float("-inf")
        self.lower_bounds_: List[float] = []
        self.best_start_: Optional[int] = None
        self.start_log_likelihoods_: Tuple[Optional[float], ...] = ()
        self.n_degenerate_starts_: int = 0

        self._params: Optional[ProfileParams] = None

    def _to_device_dtype(self, X: torch.Tensor) -> torch.Tensor:
        if self.device is not None:
            X = X.to(self.device)
        if self.dtype is not None:
            X = X.to(self.dtype)
        return X

    @torch.no_grad()
    def _make_params(self, weights: torch.Tensor, means: torch.Tensor, cov: torch.Tensor, scale: torch.Tensor) -> ProfileParams:
        _check_degenerate(weights, cov, self.cov_kind, scale, self.min_class_weight, self.singular_tol)
        try:
            prec_chol = _compute_precisions_cholesky(cov, self.cov_kind)
        except torch.linalg.LinAlgError as exc:
            raise DegenerateStart(f"singular covariance ({exc})") from exc
        return ProfileParams(weights=weights, means=means, cov=cov, prec_chol=prec_chol, cov_kind=self.cov_kind)

    @torch.no_grad()
    def _initial_labels(self, X: torch.Tensor, start_index: int, generator: torch.Generator) -> torch.Tensor:
        N = X.shape[0]
        K = self.n_profiles

        if self.init_params == "kmeans":
            centroids = _kmeans_plus_plus_init_centroids(X, K, generator)
            return _kmeans_lloyd_with_init(X, centroids, generator, n_iter=self.kmeans_iter)

        if self.init_params == "hc" and start_index == 0:
            if N <= HC_MAX_ROWS:
                return _hierarchical_labels(X, K)
            logger.debug("%d rows exceed the hierarchical init limit; using k-means for start 0", N)
            centroids = _kmeans_plus_plus_init_centroids(X, K, generator)
            return _kmeans_lloyd_with_init(X, centroids, generator, n_iter=self.kmeans_iter)

        return _random_centre_labels(X, K, generator)

    @torch.no_grad()
    def _fit_start(self, X: torch.Tensor, scale: torch.Tensor, start_index: int, deadline: Optional[float]) -> StartOutcome:
        if start_index > 0 and deadline is not None and time.monotonic() > deadline:
            return StartOutcome(index=start_index, failure="skipped: time budget exhausted")

        generator = torch.Generator(device=X.device)
        generator.manual_seed(int(self.seed) + start_index)

        try:
            labels = self._initial_labels(X, start_index, generator)
            log_resp = _labels_to_log_resp(labels, self.n_profiles, X.dtype)
            p = self._make_params(*self._m_step(X, log_resp), scale)

            prev_lower = float("-inf")
            converged = False
            timed_out = False
            history: List[float] = []
            it = 0

            for it in range(1, self.max_iter + 1):
                lower, log_resp = _expectation_step_precchol(X, p.means, p.prec_chol, p.weights, p.cov_kind)
                lower = float(lower.item())
                if not math.isfinite(lower):
                    raise DegenerateStart("non-finite log-likelihood")
                history.append(lower)

                if it >= MIN_ITER and abs(lower - prev_lower) < self.tol:
                    converged = True
                    break
                prev_lower = lower

                if deadline is not None and time.monotonic() > deadline:
                    timed_out = True
                    break

                p = self._make_params(*self._m_step(X, log_resp), scale)

            if not converged and not timed_out:
                # loop ended on an M-step: evaluate the last iterate
                lower, _ = _expectation_step_precchol(X, p.means, p.prec_chol, p.weights, p.cov_kind)
                lower = float(lower.item())
                if not math.isfinite(lower):
                    raise DegenerateStart("non-finite log-likelihood")
                history.append(lower)

        except DegenerateStart as exc:
            logger.debug("start %d rejected: %s", start_index, exc)
            return StartOutcome(index=start_index, failure=str(exc))

        logger.debug(
            "start %d: mean loglik=%.6f after %d iterations (converged=%s)",
            start_index, history[-1], it, converged,
        )
        return StartOutcome(
            index=start_index,
            params=p,
            mean_log_likelihood=history[-1],
            n_iter=it,
            converged=converged,
            timed_out=timed_out,
            history=history,
        )

    def _m_step(self, X: torch.Tensor, log_resp: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        means, cov, weights = _maximization_step(X, log_resp, self.cov_kind, reg_covar=self.reg_covar)
        return weights, means, cov

    # -----------------------
    # Public API
    # -----------------------

    @torch.no_grad()
    def fit(self, X: torch.Tensor) -> "TorchProfileMixture":
        X = self._to_device_dtype(X)
        N, D = X.shape
        if N < self.n_profiles:
            raise InputError(f"cannot fit {self.n_profiles} profiles to {N} rows")

        scale = X.var(dim=0, unbiased=False)
        deadline = None if self.max_seconds is None else time.monotonic() + self.max_seconds

        starts = range(self.n_starts)
        if self.n_jobs > 1 and self.n_starts > 1:
            with ThreadPoolExecutor(max_workers=self.n_jobs) as pool:
                outcomes = list(pool.map(lambda s: self._fit_start(X, scale, s, deadline), starts))
        else:
            outcomes = [self._fit_start(X, scale, s, deadline) for s in starts]

        # reduction in start order: ties keep the lowest index
        best: Optional[StartOutcome] = None
        for outcome in outcomes:
            if outcome.ok and (best is None or outcome.mean_log_likelihood > best.mean_log_likelihood):
                best = outcome

        n_degenerate = sum(1 for o in outcomes if not o.ok and not (o.failure or "").startswith("skipped"))
        if best is None:
            reasons = sorted({o.failure for o in outcomes if o.failure})
            raise AllStartsDegenerate(
                f"all {self.n_starts} starts degenerate for {self.parameterization} "
                f"with {self.n_profiles} profiles: {'; '.join(reasons)}"
            )

        p = best.params
        order = canonical_order(p.means).to(X.device)
        cov = _permute_covariances(p.cov, p.cov_kind, order)
        self._params = ProfileParams(
            weights=p.weights[order],
            means=p.means[order],
            cov=cov,
            prec_chol=_permute_covariances(p.prec_chol, p.cov_kind, order),
            cov_kind=p.cov_kind,
        )

        self.weights_ = self._params.weights
        self.means_ = self._params.means
        self.covariances_ = self._params.cov
        self.precisions_cholesky_ = self._params.prec_chol

        self.log_likelihood_ = best.mean_log_likelihood * N
        self.lower_bounds_ = list(best.history or [])
        self.n_iter_ = best.n_iter
        self.converged_ = best.converged
        self.timed_out_ = best.timed_out
        self.best_start_ = best.index
        self.start_log_likelihoods_ = tuple(o.mean_log_likelihood * N if o.ok else None for o in outcomes)
        self.n_degenerate_starts_ = n_degenerate

        return self

    @torch.no_grad()
    def score_samples(self, X: torch.Tensor) -> torch.Tensor:
        """Per-sample log-likelihood (N,)."""
        if self._params is None:
            raise RuntimeError("Model is not fitted yet.")
        X = self._to_device_dtype(X)

        log_prob = _estimate_log_gaussian_prob_precchol(
            X, self._params.means, self._params.prec_chol, self._params.cov_kind
        )  # (N,K)
        weighted = log_prob + _safe_log(self._params.weights).unsqueeze(0)
        return torch.logsumexp(weighted, dim=1)

    @torch.no_grad()
    def predict_proba(self, X: torch.Tensor) -> torch.Tensor:
        """Posterior responsibilities (N,K)."""
        if self._params is None:
            raise RuntimeError("Model is not fitted yet.")
        X = self._to_device_dtype(X)
        _, log_resp = _expectation_step_precchol(
            X, self._params.means, self._params.prec_chol, self._params.weights, self._params.cov_kind
        )
        return log_resp.exp()

    @torch.no_grad()
    def predict(self, X: torch.Tensor) -> torch.Tensor:
        return torch.argmax(self.predict_proba(X), dim=1)

    def sample(self, n_samples: int, generator: torch.Generator) -> Tuple[torch.Tensor, torch.Tensor]:
        if self._params is None:
            raise RuntimeError("Model is not fitted yet.")
        p = self._params
        return sample_mixture(p.weights, p.means, p.cov, p.cov_kind, n_samples, generator)


@torch.no_grad()
def sample_mixture(
    weights: torch.Tensor,
    means: torch.Tensor,
    cov: torch.Tensor,
    cov_kind: str,
    n_samples: int,
    generator: torch.Generator,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Draw (X, labels) from a fitted mixture using an explicit generator."""
    if n_samples <= 0:
        raise ValueError("n_samples must be positive")
    K, D = means.shape

    labels = torch.multinomial(weights, n_samples, replacement=True, generator=generator)  # (n,)
    L = torch.linalg.cholesky(to_full_covariances(cov, cov_kind, K))  # (K,D,D)
    noise = torch.randn((n_samples, D), device=means.device, dtype=means.dtype, generator=generator)

    X_out = means[labels] + torch.einsum('nde,ne->nd', L[labels], noise)
    return X_out, labels
