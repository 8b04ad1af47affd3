# lpa_engine/_imputation.py
"""Single imputation in front of the estimation engine.

Strategies:
- 'median':    column medians (sklearn SimpleImputer)
- 'iterative': random-forest chained equations trained on the observed cells
               of the same data (sklearn IterativeImputer), missForest-style

Both are deterministic for a fixed seed and never change row count or order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import torch
from sklearn.ensemble import RandomForestRegressor
from sklearn.experimental import enable_iterative_imputer  # noqa: F401
from sklearn.impute import IterativeImputer, SimpleImputer

from ._data import Dataset
from ._errors import ExcessiveMissingness, InputError

logger = logging.getLogger(__name__)

STRATEGIES = ("median", "iterative")


@dataclass(frozen=True)
class ImputationLog:
    strategy: str
    cells: Tuple[Tuple[object, str], ...] = ()

    @property
    def n_imputed(self) -> int:
        return len(self.cells)

    @property
    def imputed_rows(self) -> Tuple:
        seen = dict.fromkeys(row for row, _ in self.cells)
        return tuple(seen)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(list(self.cells), columns=["row_id", "column"])


def _make_imputer(strategy: str, seed: int, n_estimators: int, max_iter: int):
    if strategy == "median":
        return SimpleImputer(strategy="median")
    return IterativeImputer(
        estimator=RandomForestRegressor(n_estimators=n_estimators, random_state=seed),
        max_iter=max_iter,
        random_state=seed,
    )


def impute(
    frame: pd.DataFrame,
    strategy: str = "median",
    seed: int = 0,
    max_missing_fraction: float = 0.5,
    columns: Optional[Sequence[str]] = None,
    n_estimators: int = 100,
    max_iter: int = 10,
) -> Tuple[Dataset, ImputationLog]:
    """Return a complete Dataset plus a log of the imputed cells."""
    if strategy not in STRATEGIES:
        raise InputError(f"strategy must be one of {STRATEGIES}, got {strategy!r}")
    if not 0.0 <= max_missing_fraction <= 1.0:
        raise InputError("max_missing_fraction must be within [0, 1]")

    dataset = Dataset.from_frame(frame, columns=columns)
    values = dataset.values.numpy()
    mask = np.isnan(values)

    if not mask.any():
        return dataset, ImputationLog(strategy=strategy)

    empty = [c for c, col_missing in zip(dataset.columns, mask.all(axis=0)) if col_missing]
    if empty:
        raise InputError(f"columns with no observed values cannot be imputed: {empty}")

    row_fraction = mask.mean(axis=1)
    too_sparse = np.flatnonzero(row_fraction > max_missing_fraction)
    if too_sparse.size:
        rows = [dataset.row_ids[i] for i in too_sparse]
        raise ExcessiveMissingness(
            f"{len(rows)} rows exceed the missingness threshold of {max_missing_fraction:.2f}",
            rows=rows,
        )

    imputer = _make_imputer(strategy, seed, n_estimators, max_iter)
    filled = imputer.fit_transform(values)
    # observed cells are left untouched
    filled = np.where(mask, filled, values)

    rows_idx, cols_idx = np.nonzero(mask)
    cells = tuple((dataset.row_ids[i], dataset.columns[j]) for i, j in zip(rows_idx, cols_idx))
    logger.info("Imputed %d cells in %d rows (strategy=%s)", len(cells), len(set(rows_idx)), strategy)

    out = Dataset(
        values=torch.from_numpy(np.ascontiguousarray(filled, dtype=np.float64)),
        columns=dataset.columns,
        row_ids=dataset.row_ids,
    )
    return out, ImputationLog(strategy=strategy, cells=cells)
