"""Specification module: AST, evaluation, snapshots and load-time checks."""

from specexec.spec.evaluator import Evaluator
from specexec.spec.loader import LoadedSpecification, SpecificationLoader, UnitPlan, load_specification
from specexec.spec.quantifiers import QuantifierEncoder
from specexec.spec.snapshots import SnapshotManager

__all__ = [
    "Evaluator",
    "LoadedSpecification",
    "SpecificationLoader",
    "UnitPlan",
    "load_specification",
    "QuantifierEncoder",
    "SnapshotManager",
]
