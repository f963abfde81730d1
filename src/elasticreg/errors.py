"""
Error taxonomy for elastic registration.

Structural and parameter errors are raised before any iteration runs.
Numeric failures inside an iteration abort the whole registration, since
every later iteration depends on the current one.
"""

from __future__ import annotations

from typing import Sequence


class RegistrationError(Exception):
    """Base class for all registration failures."""


class InvalidMeshTopology(RegistrationError, ValueError):
    """Mesh arrays are malformed or nothing usable survives cleanup."""


class ParameterLengthMismatch(RegistrationError, ValueError):
    """A per-iteration weight vector has a length other than 1 or `iterations`."""


class DegenerateGeometry(RegistrationError, ArithmeticError):
    """One or more per-face affine frames are singular."""

    def __init__(self, message: str, face_ids: Sequence[int] = ()):
        super().__init__(message)
        self.face_ids = [int(f) for f in face_ids]


class FactorizationFailure(RegistrationError, ArithmeticError):
    """The normal-equations Hessian is not positive definite."""


class CorrespondenceStarvation(RegistrationError, RuntimeError):
    """Not enough correspondences even after bounded distance relaxation."""

    def __init__(self, message: str, *, required: int, found: int, distance: float):
        super().__init__(message)
        self.required = int(required)
        self.found = int(found)
        self.distance = float(distance)


class ConvergenceNotReached(RuntimeWarning):
    """Iteration cap exhausted before the tolerance was met (warning only)."""
