"""specexec: a specification-execution engine.
specexec checks declarative specifications (rules and invariants over the
storage and methods of a target system) by symbolic execution with the Z3
theorem prover. Every item ends in one of:
- PROVED: every reachable execution satisfies it
- REFUTED: a concrete counterexample violates it
- VACUOUS: its assumptions are unsatisfiable, so it proves nothing
- UNKNOWN: the solver gave up or the batch timed out
- ERROR: the target system contradicts its own declarations
Example:
    >>> from specexec import verify
    >>> report = verify(spec, token_model)
    >>> print(report.format_summary())
"""

from specexec.config import SpecExecConfig, load_config
from specexec.core.exceptions import (
    EvaluationError,
    GhostError,
    LoadError,
    LocationError,
    ModelingInconsistency,
    SpecExecError,
)
from specexec.execution.system import ContractModel, Environment, TransitionSystem
from specexec.logging import LogLevel, configure_logging, get_logger
from specexec.spec.ast import Specification
from specexec.verification.batch import VerificationBatch, verify
from specexec.verification.verdicts import BatchReport, ItemReport, Verdict

__version__ = "0.1.0"

__all__ = [
    "SpecExecConfig",
    "load_config",
    "EvaluationError",
    "GhostError",
    "LoadError",
    "LocationError",
    "ModelingInconsistency",
    "SpecExecError",
    "ContractModel",
    "Environment",
    "TransitionSystem",
    "LogLevel",
    "configure_logging",
    "get_logger",
    "Specification",
    "VerificationBatch",
    "verify",
    "BatchReport",
    "ItemReport",
    "Verdict",
    "__version__",
]
