# lpa_engine/_data.py
"""Dataset boundary type.

A Dataset is an immutable (N, D) float tensor plus column names and the
original row labels, so per-row outputs can be mapped back onto the caller's
table. Missing cells are NaN; the estimation engine refuses them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import torch

from ._errors import IncompleteDataError, InputError


@dataclass(frozen=True, eq=False)
class Dataset:
    values: torch.Tensor
    columns: Tuple[str, ...]
    row_ids: Tuple

    def __post_init__(self) -> None:
        if self.values.dim() != 2:
            raise InputError(f"dataset must be 2-dimensional, got shape {tuple(self.values.shape)}")
        N, D = self.values.shape
        if D < 1:
            raise InputError("dataset needs at least one indicator column")
        if len(self.columns) != D:
            raise InputError(f"expected {D} column names, got {len(self.columns)}")
        if len(self.row_ids) != N:
            raise InputError(f"expected {N} row ids, got {len(self.row_ids)}")

    @classmethod
    def from_frame(cls, frame: pd.DataFrame, columns: Optional[Sequence[str]] = None) -> "Dataset":
        if columns is not None:
            missing = [c for c in columns if c not in frame.columns]
            if missing:
                raise InputError(f"columns not found: {missing}")
            frame = frame[list(columns)]
        try:
            values = frame.to_numpy(dtype=np.float64, na_value=np.nan)
        except (TypeError, ValueError) as exc:
            raise InputError(f"indicators must be numeric: {exc}") from exc
        return cls(
            values=torch.from_numpy(values.copy()),
            columns=tuple(str(c) for c in frame.columns),
            row_ids=tuple(frame.index),
        )

    @classmethod
    def from_array(cls, X, columns: Optional[Sequence[str]] = None, row_ids: Optional[Sequence] = None) -> "Dataset":
        if isinstance(X, torch.Tensor):
            values = X.detach().to(device="cpu", dtype=torch.float64).clone()
        else:
            values = torch.as_tensor(np.asarray(X, dtype=np.float64)).clone()
        if values.dim() == 1:
            values = values.unsqueeze(1)
        N = values.shape[0]
        D = values.shape[1] if values.dim() == 2 else 0
        if columns is None:
            columns = [f"x{j + 1}" for j in range(D)]
        if row_ids is None:
            row_ids = range(N)
        return cls(values=values, columns=tuple(columns), row_ids=tuple(row_ids))

    @property
    def n_rows(self) -> int:
        return int(self.values.shape[0])

    @property
    def n_features(self) -> int:
        return int(self.values.shape[1])

    def has_missing(self) -> bool:
        return bool(torch.isnan(self.values).any())

    def require_complete(self) -> "Dataset":
        if self.has_missing():
            n_missing = int(torch.isnan(self.values).sum())
            raise IncompleteDataError(
                f"dataset contains {n_missing} missing cells; impute before estimation"
            )
        if not torch.isfinite(self.values).all():
            raise InputError("dataset contains infinite values")
        return self

    def take(self, order: Sequence[int]) -> "Dataset":
        """Rows in the given order (row ids travel with their rows)."""
        idx = torch.as_tensor(list(order), dtype=torch.long)
        return Dataset(
            values=self.values[idx].clone(),
            columns=self.columns,
            row_ids=tuple(self.row_ids[i] for i in idx.tolist()),
        )

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            self.values.clone().numpy(),
            columns=list(self.columns),
            index=pd.Index(self.row_ids),
        )


def require_complete(dataset: Dataset) -> Dataset:
    return dataset.require_complete()


def standardize(frame: pd.DataFrame) -> pd.DataFrame:
    """Center and scale each column (sample standard deviation)."""
    sd = frame.std(ddof=1).replace(0.0, 1.0)
    return (frame - frame.mean()) / sd


def percentage_of_maximum(frame: pd.DataFrame) -> pd.DataFrame:
    """POMS rescaling to [0, 1] using the observed minimum and maximum."""
    lo, hi = frame.min(), frame.max()
    span = (hi - lo).replace(0.0, 1.0)
    return (frame - lo) / span
