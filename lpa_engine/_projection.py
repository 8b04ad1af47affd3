# lpa_engine/_projection.py
"""Per-row outputs mapped back onto the caller's table.

wide: one row per original observation, CPROB1..CPROBk and Class (1-based)
long: one row per observation x profile
Rows that never reached the engine (dropped upstream) are reinserted in their
original position with missing probabilities.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Union

import numpy as np
import pandas as pd

from ._data import Dataset
from ._errors import InputError
from ._imputation import ImputationLog
from ._results import EstimationResult


@dataclass(frozen=True, eq=False)
class ProjectedResults:
    wide: pd.DataFrame
    long: pd.DataFrame


def _original_frame(original: Union[pd.DataFrame, Dataset]) -> pd.DataFrame:
    if isinstance(original, Dataset):
        return original.to_frame()
    return original


def project_results(
    result: EstimationResult,
    original: Union[pd.DataFrame, Dataset],
    imputation_log: Optional[ImputationLog] = None,
) -> ProjectedResults:
    frame = _original_frame(original)
    if not frame.index.is_unique:
        raise InputError("the original table needs a unique index to project results")

    K = result.n_profiles
    prob_cols = [f"CPROB{k + 1}" for k in range(K)]
    resp = result.responsibilities.detach().cpu().numpy()
    fitted_index = pd.Index(result.row_ids)
    unknown = fitted_index.difference(frame.index)
    if len(unknown):
        raise InputError(f"{len(unknown)} fitted rows are not in the original table")

    probs = pd.DataFrame(resp, index=fitted_index, columns=prob_cols).reindex(frame.index)
    classes = pd.Series(resp.argmax(axis=1) + 1, index=fitted_index).reindex(frame.index).astype("Int64")

    spec = result.specification
    wide = frame.copy()
    wide["model_number"] = spec.model_id
    wide["classes_number"] = K
    for col in prob_cols:
        wide[col] = probs[col]
    wide["Class"] = classes
    imputed_rows = set(imputation_log.imputed_rows) if imputation_log is not None else set()
    wide["imputed"] = [row in imputed_rows for row in frame.index]

    long = _long_view(probs, classes, spec.model_id, K)
    return ProjectedResults(wide=wide, long=long)


def _long_view(probs: pd.DataFrame, classes: pd.Series, model_id: int, K: int) -> pd.DataFrame:
    n = len(probs)
    return pd.DataFrame(
        {
            "row_id": np.repeat(probs.index.to_numpy(), K),
            "model_number": model_id,
            "classes_number": K,
            "Class": classes.repeat(K).reset_index(drop=True),
            "Class_prob": np.tile(np.arange(1, K + 1), n),
            "Probability": probs.to_numpy().reshape(-1),
        }
    )


def project_many(
    results: Iterable[EstimationResult],
    original: Union[pd.DataFrame, Dataset],
) -> pd.DataFrame:
    """Stacked long views of several fitted cells."""
    frames = [project_results(r, original).long for r in results]
    if not frames:
        raise InputError("no results to project")
    return pd.concat(frames, ignore_index=True)
