"""Call executor.
Applies a transition system's method to the unit's state. Every storage
mutation the method performs flows through the state model, so hooks fire
synchronously during the call.
Two calling conventions:
    invoke              the call is assumed not to revert
    invoke_or_revert    the revert condition is returned; on the revert
                        path storage and non-persistent ghosts roll back
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import z3

from specexec.core.exceptions import EvaluationError, ModelingInconsistency
from specexec.core.ghosts import GhostStore
from specexec.core.path import PathCondition
from specexec.core.state import StateModel
from specexec.core.values import SymbolFactory, SymbolicValue, conjunction
from specexec.execution.methods import MethodDescriptor
from specexec.execution.system import CallFrame, Environment, TransitionSystem
from specexec.logging import get_logger

if TYPE_CHECKING:
    from specexec.resources import ResourceTracker


@dataclass
class CallRecord:
    """A performed call, kept for counterexamples."""

    method: MethodDescriptor
    env: Environment
    args: tuple[SymbolicValue, ...]
    reverted: z3.BoolRef
    guard: z3.BoolRef

    def describe(self, model: z3.ModelRef) -> dict[str, Any]:
        """Concrete rendering of the call under ``model``."""

        def show(value: SymbolicValue) -> str:
            if value.expr is None:
                return repr({n: show(v) for n, v in value.fields})
            return str(model.eval(value.expr, model_completion=True))

        return {
            "method": self.method.qualified_name,
            "sender": show(self.env.raw("sender")),
            "value": show(self.env.raw("value")),
            "args": {self.method.parameter_name(i): show(a) for i, a in enumerate(self.args)},
            "reverted": z3.is_true(model.eval(self.reverted, model_completion=True)),
        }


@dataclass
class CallResult:
    """Outcome of one call."""

    method: MethodDescriptor
    returns: tuple[SymbolicValue, ...] = ()
    reverted: z3.BoolRef | None = None
    writes: int = 0
    records: list[CallRecord] = field(default_factory=list)

    @property
    def value(self) -> SymbolicValue:
        """The single return value."""
        if len(self.returns) != 1:
            raise EvaluationError(f"{self.method} returns {len(self.returns)} values")
        return self.returns[0]


class CallExecutor:
    """Runs method calls of one unit."""

    def __init__(
        self,
        system: TransitionSystem,
        state: StateModel,
        ghosts: GhostStore,
        path: PathCondition,
        symbols: SymbolFactory,
        tracker: ResourceTracker | None = None,
    ):
        self.system = system
        self.state = state
        self.ghosts = ghosts
        self.path = path
        self.symbols = symbols
        self.tracker = tracker
        self.calls: list[CallRecord] = []
        self._logger = get_logger()

    def fresh_env(self, base: str = "e") -> Environment:
        env, constraint = Environment.fresh(self.symbols, base)
        self.path.assume(constraint, tag="domain", unconditional=True)
        return env

    def fresh_args(self, method: MethodDescriptor, base: str = "") -> tuple[SymbolicValue, ...]:
        """Fresh symbolic arguments for ``method`` within their domains."""
        args = []
        constraints = []
        prefix = base or method.name
        for position, ptype in enumerate(method.params):
            value, constraint = self.symbols.fresh(ptype, f"{prefix}.{method.parameter_name(position)}")
            args.append(value)
            constraints.append(constraint)
        self.path.assume(conjunction(constraints, self.symbols.ctx), tag="domain", unconditional=True)
        return tuple(args)

    def _apply(
        self, method: MethodDescriptor, env: Environment, args: Sequence[SymbolicValue]
    ) -> tuple[CallResult, z3.BoolRef]:
        if len(args) != method.arity:
            raise EvaluationError(f"{method} takes {method.arity} arguments, got {len(args)}")
        if self.tracker is not None:
            self.tracker.record_call()
        frame = CallFrame(method, env, args, self.state, self.path)
        if not method.payable:
            frame.revert_if(env.raw("value").expr != 0)
        writes_before = self.state.write_count
        self._logger.trace(f"call {method}", category="runner")
        outcome = self.system.apply(method, env, args, frame)
        writes = self.state.write_count - writes_before
        if method.read_only and writes:
            kind = "view" if method.view else "pure"
            raise ModelingInconsistency(method.qualified_name, f"declared {kind} but wrote storage")
        reverted = frame.reverted
        if outcome.reverted is not None:
            reported = outcome.reverted
            if self.path.guarded:
                reported = z3.And(self.path.guard, reported)
            reverted = z3.Or(reverted, reported)
        reverted = z3.simplify(reverted)
        record = CallRecord(method, env, tuple(args), reverted, self.path.guard)
        self.calls.append(record)
        return CallResult(method, tuple(outcome.returns), reverted, writes, [record]), reverted

    def invoke(
        self, method: MethodDescriptor, env: Environment, args: Sequence[SymbolicValue]
    ) -> CallResult:
        """Call ``method``, assuming it does not revert."""
        result, reverted = self._apply(method, env, args)
        self.path.assume(z3.Not(reverted), tag=f"call:{method.name}")
        result.reverted = z3.BoolVal(False, self.symbols.ctx)
        return result

    def invoke_or_revert(
        self, method: MethodDescriptor, env: Environment, args: Sequence[SymbolicValue]
    ) -> CallResult:
        """Call ``method`` and expose its revert condition.
        On the revert path storage is restored to its pre-call image and
        non-persistent ghosts to their pre-call values.
        """
        before = self.state.snapshot()
        ghosts_before = self.ghosts.checkpoint()
        result, reverted = self._apply(method, env, args)
        if not z3.is_false(reverted):
            after = self.state.snapshot()
            self.state.merge(reverted, before, after)
            self.ghosts.merge(reverted, ghosts_before, self.ghosts.checkpoint())
        return result

    def construct(self, env: Environment, args: Sequence[SymbolicValue] | None = None) -> CallResult | None:
        """Run the system's constructor, if any, assuming success."""
        constructor = getattr(self.system, "constructor", None)
        if constructor is None:
            return None
        if args is None:
            args = self.fresh_args(constructor, "constructor")
        return self.invoke(constructor, env, args)

    def __repr__(self) -> str:
        return f"CallExecutor(calls={len(self.calls)})"


__all__ = [
    "CallRecord",
    "CallResult",
    "CallExecutor",
]
