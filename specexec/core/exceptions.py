"""Error taxonomy for specexec.
Errors fall into categories with different propagation policies:
- LOAD: malformed specification input. Fatal for the whole batch and
  reported before any check runs.
- MODELING: the target system contradicts its own declarations (a view
  method writing storage). Fatal for the affected item only.
- EVALUATION: a specification expression cannot be given meaning at
  runtime (unknown snapshot, call inside a snapshot-qualified expression).
- SOLVER: the solver query was cancelled.
Vacuity, timeouts and refutations are verdicts, not exceptions. See
``specexec.verification.verdicts``.
"""

from __future__ import annotations

from enum import Enum, auto
from typing import Any


class ErrorCategory(Enum):
    """Categories of engine errors."""

    LOAD = auto()
    MODELING = auto()
    EVALUATION = auto()
    GHOST = auto()
    LOCATION = auto()
    SOLVER = auto()


class SpecExecError(Exception):
    """Base class for all engine errors."""

    category: ErrorCategory = ErrorCategory.EVALUATION

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "category": self.category.name,
            "type": type(self).__name__,
            "message": self.message,
            "context": {k: str(v) for k, v in self.context.items()},
        }


class LoadError(SpecExecError):
    """Malformed specification detected before checking starts.
    Examples: a hook pattern whose key type disagrees with the storage
    layout, a filter that inspects anything but descriptor fields, an
    ``envfree`` method that reads its environment.
    """

    category = ErrorCategory.LOAD


class LocationError(LoadError):
    """A location path does not exist in the storage layout."""

    category = ErrorCategory.LOCATION

    def __init__(self, location: Any, reason: str):
        self.location = location
        super().__init__(f"invalid location {location}: {reason}", location=location)


class GhostError(LoadError):
    """A ghost was redeclared, is unknown, or was accessed with the wrong arity."""

    category = ErrorCategory.GHOST


class ModelingInconsistency(SpecExecError):
    """The transition system violated one of its declarations."""

    category = ErrorCategory.MODELING

    def __init__(self, method: str, reason: str):
        self.method = method
        self.reason = reason
        super().__init__(f"{method}: {reason}", method=method)


class EvaluationError(SpecExecError):
    """A specification expression could not be evaluated."""

    category = ErrorCategory.EVALUATION


class SolverCancelled(SpecExecError):
    """A solver query was interrupted through its cancel token."""

    category = ErrorCategory.SOLVER

    def __init__(self, reason: str = "cancelled"):
        super().__init__(f"solver query {reason}")


__all__ = [
    "ErrorCategory",
    "SpecExecError",
    "LoadError",
    "LocationError",
    "GhostError",
    "ModelingInconsistency",
    "EvaluationError",
    "SolverCancelled",
]
