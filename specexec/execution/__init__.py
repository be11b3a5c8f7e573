"""Execution module: hooks, methods and calls into target systems."""

from specexec.execution.dispatcher import (
    HookBinding,
    HookContext,
    HookDispatcher,
    HookMode,
    LocationPattern,
)
from specexec.execution.executor import CallExecutor, CallRecord, CallResult
from specexec.execution.methods import MethodDescriptor, MethodUniverse, default_selector
from specexec.execution.system import (
    CallFrame,
    ContractModel,
    Environment,
    TransitionResult,
    TransitionSystem,
)

__all__ = [
    "HookBinding",
    "HookContext",
    "HookDispatcher",
    "HookMode",
    "LocationPattern",
    "CallExecutor",
    "CallRecord",
    "CallResult",
    "MethodDescriptor",
    "MethodUniverse",
    "default_selector",
    "CallFrame",
    "ContractModel",
    "Environment",
    "TransitionResult",
    "TransitionSystem",
]
