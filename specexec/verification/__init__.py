"""Verification module: unit runner, verdicts and batches."""

from specexec.verification.batch import VerificationBatch, verify
from specexec.verification.runner import RunnerPhase, UnitContext, UnitRunner
from specexec.verification.verdicts import (
    BatchReport,
    Counterexample,
    ItemReport,
    UnitResult,
    Verdict,
    aggregate,
)

__all__ = [
    "VerificationBatch",
    "verify",
    "RunnerPhase",
    "UnitContext",
    "UnitRunner",
    "BatchReport",
    "Counterexample",
    "ItemReport",
    "UnitResult",
    "Verdict",
    "aggregate",
]
