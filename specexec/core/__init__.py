"""Core module for specexec.
Provides:
- Value model (types, symbolic values, fresh symbols)
- Storage locations, layouts and the symbolic state model
- Ghost store
- Path condition (assumptions and proof obligations)
- Z3 solver bridge with cancellation and concurrency limits
- Error taxonomy
"""

from specexec.core.exceptions import (
    ErrorCategory,
    EvaluationError,
    GhostError,
    LoadError,
    LocationError,
    ModelingInconsistency,
    SolverCancelled,
    SpecExecError,
)
from specexec.core.ghosts import GhostDeclaration, GhostKind, GhostShape, GhostStore
from specexec.core.locations import (
    ArrayType,
    Family,
    Location,
    MappingType,
    StorageLayout,
    StorageVariable,
)
from specexec.core.path import Assumption, Obligation, ObligationKind, PathCondition
from specexec.core.solver import (
    CancelToken,
    SolverBridge,
    SolverPool,
    SolverResult,
    SolverStatus,
)
from specexec.core.state import StateModel, StorageSnapshot
from specexec.core.values import (
    ADDRESS,
    BOOL,
    INT256,
    MATHINT,
    UINT8,
    UINT32,
    UINT64,
    UINT128,
    UINT256,
    AddressType,
    BoolType,
    EnumType,
    IntType,
    OpaqueType,
    StructType,
    SymbolFactory,
    SymbolicValue,
    ValueType,
)

__all__ = [
    "ErrorCategory",
    "EvaluationError",
    "GhostError",
    "LoadError",
    "LocationError",
    "ModelingInconsistency",
    "SolverCancelled",
    "SpecExecError",
    "GhostDeclaration",
    "GhostKind",
    "GhostShape",
    "GhostStore",
    "ArrayType",
    "Family",
    "Location",
    "MappingType",
    "StorageLayout",
    "StorageVariable",
    "Assumption",
    "Obligation",
    "ObligationKind",
    "PathCondition",
    "CancelToken",
    "SolverBridge",
    "SolverPool",
    "SolverResult",
    "SolverStatus",
    "StateModel",
    "StorageSnapshot",
    "ADDRESS",
    "BOOL",
    "INT256",
    "MATHINT",
    "UINT8",
    "UINT32",
    "UINT64",
    "UINT128",
    "UINT256",
    "AddressType",
    "BoolType",
    "EnumType",
    "IntType",
    "OpaqueType",
    "StructType",
    "SymbolFactory",
    "SymbolicValue",
    "ValueType",
]
