# lpa_engine/_errors.py
"""Error taxonomy for latent profile estimation.

- InputError and its subclasses: fatal, raised before any fitting, never retried.
- DegenerateStart: one random start collapsed; handled inside the engine.
- AllStartsDegenerate / CapabilityMismatch / BackendUnavailable: fatal for a
  single grid cell, recorded in the comparison table.
- ConvergenceWarning: emitted with warnings.warn, the result is still returned.
"""

from __future__ import annotations


class LPAError(Exception):
    pass


class InputError(LPAError, ValueError):
    pass


class UnsupportedParameterization(InputError):
    pass


class IncompleteDataError(InputError):
    pass


class ExcessiveMissingness(InputError):
    def __init__(self, message: str, rows=()) -> None:
        super().__init__(message)
        self.rows = tuple(rows)


class CapabilityMismatch(LPAError):
    pass


class DegenerateStart(LPAError):
    pass


class AllStartsDegenerate(LPAError):
    pass


class BackendUnavailable(LPAError):
    pass


class ConvergenceWarning(UserWarning):
    pass


def failure_kind(exc: BaseException) -> str:
    """Stable name recorded for a failed cell."""
    return type(exc).__name__
