# lpa_engine/_comparison.py
"""Grid orchestration and model comparison.

compare() expands parameterizations x profile counts into independent cells,
fits each one on a thread pool, computes fit statistics and ranks the cells.
Cell-level failures (capability mismatch, all starts degenerate, backend
unavailable) are recorded in the table instead of aborting the grid.

The ranking is advisory: it orders candidate solutions, it does not choose one.
"""

from __future__ import annotations

import logging
import math
import numbers
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from ._backends import EstimationBackend, get_backend
from ._catalog import ModelSpecification, resolve_parameterization
from ._data import Dataset
from ._errors import (
    AllStartsDegenerate,
    BackendUnavailable,
    CapabilityMismatch,
    InputError,
    LPAError,
    failure_kind,
)
from ._fit_statistics import CRITERIA, FitRecord, bootstrap_lrt, fit_statistics
from ._options import EstimationOptions

logger = logging.getLogger(__name__)

ENSEMBLE = "ensemble"
DEFAULT_AHP_WEIGHTS: Dict[str, float] = {"AIC": 1.0, "AWE": 1.0, "BIC": 1.0, "CLC": 1.0, "KIC": 1.0}

CELL_FAILURES = (CapabilityMismatch, AllStartsDegenerate, BackendUnavailable)


@dataclass(frozen=True, eq=False)
class ComparisonRow:
    specification: ModelSpecification
    record: Optional[FitRecord] = None
    failure_kind: Optional[str] = None
    failure_message: Optional[str] = None
    rank: Optional[int] = None
    composite: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.record is not None

    @property
    def status(self) -> str:
        return "ok" if self.ok else "failed"

    def statistic(self, name: str) -> float:
        if name.lower() == ENSEMBLE:
            return float("nan") if self.composite is None else self.composite
        if self.record is None:
            return float("nan")
        return self.record.statistic(name)

    def as_dict(self) -> dict:
        spec = self.specification
        if self.record is not None:
            out = self.record.as_dict()
        else:
            out = {"Model": spec.model_id, "Classes": spec.n_profiles}
        out.update(
            status=self.status,
            failure=self.failure_kind,
            message=self.failure_message,
            rank=self.rank,
        )
        if self.composite is not None:
            out["composite"] = self.composite
        return out


def _sort_key(row: ComparisonRow, name: str, ascending: bool):
    value = row.statistic(name)
    missing = value is None or math.isnan(value)
    ordered = 0.0 if missing else (value if ascending else -value)
    return (missing, ordered, row.specification.model_id, row.specification.n_profiles)


@dataclass(frozen=True, eq=False)
class ComparisonTable:
    rows: Tuple[ComparisonRow, ...]
    criterion: str = "BIC"

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[ComparisonRow]:
        return iter(self.rows)

    def __getitem__(self, index: int) -> ComparisonRow:
        return self.rows[index]

    def sort_by(self, name: str, ascending: bool = True) -> "ComparisonTable":
        """New table ordered by any statistic; failed or undefined rows go last."""
        ordered = sorted(self.rows, key=lambda r: _sort_key(r, name, ascending))
        return ComparisonTable(rows=tuple(ordered), criterion=self.criterion)

    def best(self) -> Optional[ComparisonRow]:
        """Top-ranked successful row under the table's criterion (advisory)."""
        ranked = [r for r in self.rows if r.rank is not None]
        return min(ranked, key=lambda r: r.rank) if ranked else None

    def get(self, model, n_profiles: int) -> ComparisonRow:
        model_id = resolve_parameterization(model).model_id
        for row in self.rows:
            if row.specification.model_id == model_id and row.specification.n_profiles == n_profiles:
                return row
        raise KeyError((model_id, n_profiles))

    def successful(self) -> List[ComparisonRow]:
        return [r for r in self.rows if r.ok]

    def failed(self) -> List[ComparisonRow]:
        return [r for r in self.rows if not r.ok]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([r.as_dict() for r in self.rows])


def _normalize_criterion(criterion: str) -> str:
    if criterion.lower() == ENSEMBLE:
        return ENSEMBLE
    upper = criterion.upper()
    if upper not in CRITERIA:
        raise InputError(f"criterion must be one of {CRITERIA + (ENSEMBLE,)}, got {criterion!r}")
    return upper


def _normalize_weights(weights: Optional[Mapping[str, float]]) -> Dict[str, float]:
    weights = dict(DEFAULT_AHP_WEIGHTS if weights is None else weights)
    out = {}
    for name, w in weights.items():
        key = name.upper()
        if key not in CRITERIA:
            raise InputError(f"ensemble weights must name criteria from {CRITERIA}, got {name!r}")
        if w < 0:
            raise InputError(f"ensemble weight for {name} must be non-negative")
        out[key] = float(w)
    if not out or sum(out.values()) <= 0:
        raise InputError("ensemble weights must have a positive sum")
    return out


def rank_rows(
    rows: Sequence[ComparisonRow],
    criterion: str = "BIC",
    ahp_weights: Optional[Mapping[str, float]] = None,
) -> ComparisonTable:
    """Rank successful rows ascending by the criterion (or the weighted composite rank)."""
    criterion = _normalize_criterion(criterion)
    rows = [replace(r, rank=None, composite=None) for r in rows]

    if criterion == ENSEMBLE:
        weights = _normalize_weights(ahp_weights)
        ok_idx = [i for i, r in enumerate(rows) if r.ok]
        if ok_idx:
            scores = pd.Series(0.0, index=ok_idx)
            for name, w in weights.items():
                values = pd.Series([rows[i].statistic(name) for i in ok_idx], index=ok_idx)
                scores += w * values.rank(method="min", ascending=True)
            scores /= sum(weights.values())
            for i in ok_idx:
                rows[i] = replace(rows[i], composite=float(scores[i]))

    ordered = sorted(rows, key=lambda r: _sort_key(r, criterion, True))
    ranked = []
    position = 0
    for row in ordered:
        value = row.statistic(criterion)
        if row.ok and not math.isnan(value):
            position += 1
            row = replace(row, rank=position)
        ranked.append(row)
    return ComparisonTable(rows=tuple(ranked), criterion=criterion)


def _expand_grid(parameterizations: Iterable, profile_counts: Iterable) -> List[ModelSpecification]:
    params = []
    for model in parameterizations:
        param = resolve_parameterization(model)
        if param not in params:
            params.append(param)
    if not params:
        raise InputError("at least one parameterization is required")

    counts = []
    for k in profile_counts:
        if isinstance(k, bool) or not isinstance(k, numbers.Integral) or k < 1:
            raise InputError(f"profile counts must be positive integers, got {k!r}")
        if int(k) not in counts:
            counts.append(int(k))
    if not counts:
        raise InputError("at least one profile count is required")

    params.sort(key=lambda p: p.model_id)
    return [ModelSpecification(p.variance, p.covariance, k) for p in params for k in sorted(counts)]


def _with_bootstrap(
    rows: List[ComparisonRow],
    dataset: Dataset,
    n_bootstrap: int,
    options: EstimationOptions,
    backend: EstimationBackend,
    n_jobs: int,
) -> List[ComparisonRow]:
    by_cell = {(r.specification.model_id, r.specification.n_profiles): r for r in rows}
    out = []
    for row in rows:
        spec = row.specification
        smaller = by_cell.get((spec.model_id, spec.n_profiles - 1))
        if row.ok and spec.n_profiles >= 2 and smaller is not None and smaller.ok:
            try:
                blrt = bootstrap_lrt(
                    dataset,
                    row.record.result,
                    smaller.record.result,
                    n_bootstrap=n_bootstrap,
                    options=options,
                    backend=backend,
                    n_jobs=n_jobs,
                )
            except LPAError as exc:
                logger.warning("%s: bootstrap LRT failed: %s", spec.label(), exc)
            else:
                row = replace(row, record=row.record.with_blrt(blrt))
        out.append(row)
    return out


def compare(
    dataset: Dataset,
    parameterizations: Iterable,
    profile_counts: Iterable[int],
    criterion: str = "BIC",
    options: Optional[EstimationOptions] = None,
    backend: Optional[EstimationBackend] = None,
    n_jobs: Optional[int] = None,
    n_bootstrap: int = 0,
    bootstrap_options: Optional[EstimationOptions] = None,
    ahp_weights: Optional[Mapping[str, float]] = None,
) -> ComparisonTable:
    """Fit every (parameterization, profile count) cell and rank them."""
    options = options or EstimationOptions()
    dataset.require_complete()
    _normalize_criterion(criterion)
    if n_bootstrap < 0:
        raise InputError("n_bootstrap must be non-negative")
    specs = _expand_grid(parameterizations, profile_counts)
    backend = backend or get_backend(options.backend, options)
    workers = max(1, n_jobs or os.cpu_count() or 1)

    logger.info(
        "Comparing %d cells on %d rows x %d indicators (backend=%s, workers=%d)",
        len(specs), dataset.n_rows, dataset.n_features, backend.name, workers,
    )

    def run_cell(spec: ModelSpecification) -> ComparisonRow:
        logger.info("Estimating %s (%s)", spec.label(), spec.parameterization.description)
        try:
            if spec.n_profiles > dataset.n_rows:
                raise AllStartsDegenerate(f"cannot fit {spec.n_profiles} profiles to {dataset.n_rows} rows")
            result = backend.fit(dataset, spec, options)
        except CELL_FAILURES as exc:
            logger.warning("%s failed: %s: %s", spec.label(), failure_kind(exc), exc)
            return ComparisonRow(spec, failure_kind=failure_kind(exc), failure_message=str(exc))
        return ComparisonRow(spec, record=fit_statistics(result))

    if workers > 1 and len(specs) > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            rows = list(pool.map(run_cell, specs))
    else:
        rows = [run_cell(spec) for spec in specs]

    if n_bootstrap:
        rows = _with_bootstrap(rows, dataset, n_bootstrap, bootstrap_options or options, backend, workers)

    table = rank_rows(rows, criterion, ahp_weights)
    best = table.best()
    if best is not None:
        logger.info(
            "Lowest %s: %s (advisory; inspect the full table)",
            table.criterion, best.specification.label(),
        )
    else:
        logger.warning("No cell in the comparison could be estimated")
    return table
