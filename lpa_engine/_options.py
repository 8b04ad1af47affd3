# lpa_engine/_options.py
"""Estimation options shared by every backend."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Optional, Tuple

import torch

from ._errors import InputError
from ._torch_lpa_em import INIT_PARAMS

BACKENDS = ("local", "external")


@dataclass(frozen=True)
class EstimationOptions:
    n_starts: int = 10
    max_iterations: int = 1000
    tolerance: float = 1e-6
    seed: int = 0
    backend: str = "local"
    init_params: str = "hc"
    reg_covar: float = 1e-6
    min_class_weight: float = 1e-3
    singular_tol: float = 1e-5
    # wall-clock budget per cell; the best iterate so far is returned when exceeded
    max_seconds: Optional[float] = None
    n_jobs: int = 1
    external_command: Optional[Tuple[str, ...]] = None
    external_timeout: float = 600.0
    device: Optional[str] = None
    dtype: torch.dtype = torch.float64

    def __post_init__(self) -> None:
        if self.n_starts < 1:
            raise InputError("n_starts must be positive")
        if self.max_iterations < 1:
            raise InputError("max_iterations must be positive")
        if self.tolerance <= 0:
            raise InputError("tolerance must be positive")
        if self.backend not in BACKENDS:
            raise InputError(f"backend must be one of {BACKENDS}, got {self.backend!r}")
        if self.init_params not in INIT_PARAMS:
            raise InputError(f"init_params must be one of {INIT_PARAMS}, got {self.init_params!r}")
        if self.reg_covar < 0:
            raise InputError("reg_covar must be non-negative")
        if not 0.0 <= self.min_class_weight < 1.0:
            raise InputError("min_class_weight must be within [0, 1)")
        if self.singular_tol < 0:
            raise InputError("singular_tol must be non-negative")
        if self.max_seconds is not None and self.max_seconds <= 0:
            raise InputError("max_seconds must be positive")
        if self.n_jobs < 1:
            raise InputError("n_jobs must be positive")
        if self.external_command is not None:
            object.__setattr__(self, "external_command", tuple(self.external_command))

    def replace(self, **changes) -> "EstimationOptions":
        return dataclasses.replace(self, **changes)
