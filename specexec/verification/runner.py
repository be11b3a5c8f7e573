"""Rule and invariant runner.
One ``UnitRunner.run`` call checks one unit from scratch:
    INIT         fresh Z3 context, state, ghost store, dispatcher, snapshots
    BOUND        parameters bound, ghosts reset to their axioms, ``init`` snapshot
    CONSTRAINED  filters were applied at load time; method variables are fixed
    EXECUTED     statements (or invariant steps) have run, path condition built
    CHECKED      obligations decided by the solver
Verdict algorithm:
    1. Every assert (and asserting cast) is checked against the assumptions
       made before it: a model of ``assumptions, guard, not assert`` is a
       counterexample and the unit is REFUTED.
    2. Every satisfy needs a model of ``assumptions, guard, condition``.
    3. If all obligations hold and vacuity checking is enabled, the full
       assumption set must be satisfiable; otherwise the unit is VACUOUS.
       When removing havoc assumptions makes it satisfiable the reason
       names the havoc.
    4. An unknown solver answer anywhere makes the unit UNKNOWN, never
       PROVED. A refutation still wins over an unknown.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Any

import z3

from specexec.config import SpecExecConfig
from specexec.core.exceptions import ModelingInconsistency, SolverCancelled, SpecExecError
from specexec.core.ghosts import GhostShape, GhostStore
from specexec.core.path import ObligationKind, PathCondition
from specexec.core.solver import CancelToken, SolverBridge, SolverPool
from specexec.core.state import StateModel
from specexec.core.values import SymbolFactory, SymbolicValue
from specexec.execution.dispatcher import HookDispatcher
from specexec.execution.executor import CallExecutor
from specexec.execution.methods import MethodDescriptor
from specexec.execution.system import Environment
from specexec.logging import get_logger
from specexec.resources import LimitExceeded, ResourceLimits, ResourceTracker
from specexec.spec import ast
from specexec.spec.loader import LoadedSpecification, UnitPlan
from specexec.spec.snapshots import SnapshotManager
from specexec.verification.interpreter import Interpreter
from specexec.verification.verdicts import Counterexample, UnitResult, Verdict

INIT_SNAPSHOT = "init"
HAVOC_INFEASIBLE = "havoc assumption infeasible"
ASSUMPTIONS_INFEASIBLE = "assumptions are unsatisfiable"


class RunnerPhase(Enum):
    INIT = auto()
    BOUND = auto()
    CONSTRAINED = auto()
    EXECUTED = auto()
    CHECKED = auto()


@dataclass
class UnitContext:
    """Everything one unit owns. Nothing here is shared with other units."""

    symbols: SymbolFactory
    path: PathCondition
    state: StateModel
    ghosts: GhostStore
    dispatcher: HookDispatcher
    executor: CallExecutor
    snapshots: SnapshotManager
    tracker: ResourceTracker
    bridge: SolverBridge

    @classmethod
    def build(
        cls,
        loaded: LoadedSpecification,
        config: SpecExecConfig,
        pool: SolverPool | None = None,
        token: CancelToken | None = None,
        limits: ResourceLimits | None = None,
    ) -> UnitContext:
        symbols = SymbolFactory(z3.Context())
        path = PathCondition(symbols.ctx)
        tracker = ResourceTracker(limits)
        tracker.start()
        ghosts = GhostStore(symbols, path)
        dispatcher = HookDispatcher(loaded.system.layout, path, ghosts, tracker)
        state = StateModel(loaded.system.layout, symbols, path, dispatcher)
        executor = CallExecutor(loaded.system, state, ghosts, path, symbols, tracker)
        bridge = SolverBridge(symbols.ctx, config.solver.timeout_ms, pool, token, tracker)
        return cls(
            symbols=symbols,
            path=path,
            state=state,
            ghosts=ghosts,
            dispatcher=dispatcher,
            executor=executor,
            snapshots=SnapshotManager(state),
            tracker=tracker,
            bridge=bridge,
        )


def _shape(decl: ast.GhostDecl) -> GhostShape:
    if decl.form == ast.GhostForm.MAPPING:
        return GhostShape.mapping(decl.key_types, decl.value_type)
    if decl.form == ast.GhostForm.FUNCTION:
        return GhostShape.function(decl.key_types, decl.value_type)
    return GhostShape.scalar(decl.value_type)


class UnitRunner:
    """Checks units of a loaded specification."""

    def __init__(
        self,
        loaded: LoadedSpecification,
        config: SpecExecConfig | None = None,
        pool: SolverPool | None = None,
        limits: ResourceLimits | None = None,
    ):
        self.loaded = loaded
        self.config = config or SpecExecConfig()
        self.pool = pool
        self.limits = limits
        self.phase = RunnerPhase.INIT
        self._logger = get_logger()

    def _advance(self, phase: RunnerPhase) -> None:
        if phase.value != self.phase.value + 1:
            raise RuntimeError(f"runner cannot move from {self.phase.name} to {phase.name}")
        self.phase = phase

    def run(self, plan: UnitPlan, token: CancelToken | None = None) -> UnitResult:
        """Check one unit and return its verdict."""
        self.phase = RunnerPhase.INIT
        result = UnitResult(plan.item_name, Verdict.UNKNOWN, plan.method_label, plan.step)
        unit = None
        try:
            if token is not None:
                token.check()
            unit = UnitContext.build(self.loaded, self.config, self.pool, token, self.limits)
            interp = self._bind(unit, plan)
            self._advance(RunnerPhase.CONSTRAINED)
            self._execute(unit, interp, plan)
            self._advance(RunnerPhase.EXECUTED)
            self._check(unit, interp, result)
            self._advance(RunnerPhase.CHECKED)
        except ModelingInconsistency as e:
            result.verdict = Verdict.ERROR
            result.message = e.message
        except (SolverCancelled, LimitExceeded) as e:
            result.verdict = Verdict.UNKNOWN
            result.timed_out = True
            result.message = str(e)
        except SpecExecError as e:
            result.verdict = Verdict.ERROR
            result.message = f"{type(e).__name__}: {e.message}"
        if unit is not None:
            result.resources = unit.tracker.snapshot().to_dict()
        self._logger.debug(f"{result.label}: {result.verdict.value} {result.message}", category="runner")
        self._logger.count(f"verdict.{result.verdict.value}")
        return result

    # -- BOUND ---------------------------------------------------------------

    def _bind(self, unit: UnitContext, plan: UnitPlan) -> Interpreter:
        interp = Interpreter(unit, self.loaded)
        spec = self.loaded.spec
        for decl in spec.ghosts:
            init_axiom = None
            if decl.init_axiom is not None:
                init_axiom = self._axiom(interp, decl.init_axiom)
            unit.ghosts.declare(
                decl.name,
                _shape(decl),
                init_axiom=init_axiom,
                axioms=[self._axiom(interp, a) for a in decl.axioms],
                persistent=decl.persistent,
            )
        for hook in spec.hooks:
            unit.dispatcher.register(hook.pattern, hook, hook.mode, hook.name)
        unit.dispatcher.set_trigger_runner(interp.run_hook)
        if plan.step == "base":
            unit.state.zero_initialize()
        unit.ghosts.reset(initial=plan.step != "inductive")
        methods = dict(plan.methods)
        interp.bind_params(plan.item.params, methods)
        unit.snapshots.take(INIT_SNAPSHOT)
        self._advance(RunnerPhase.BOUND)
        return interp

    @staticmethod
    def _axiom(interp: Interpreter, expr: ast.Expr):
        def axiom(store: GhostStore) -> z3.BoolRef:
            return interp.evaluator.evaluate_bool(expr, {})

        return axiom

    # -- EXECUTED ------------------------------------------------------------

    def _execute(self, unit: UnitContext, interp: Interpreter, plan: UnitPlan) -> None:
        item = plan.item
        if isinstance(item, ast.Rule):
            interp.run(item.body)
        elif plan.step == "base":
            self._base_case(unit, interp, item)
        else:
            method = plan.methods[0][1]
            self._inductive_step(unit, interp, item, method)

    def _base_case(self, unit: UnitContext, interp: Interpreter, item: ast.Invariant) -> None:
        env = unit.executor.fresh_env("constructor.env")
        unit.executor.construct(env)
        self._assert_invariant(interp, item, "holds after construction")

    def _preserved_for(self, item: ast.Invariant, method: MethodDescriptor) -> ast.Preserved | None:
        generic = None
        for block in item.preserved:
            if block.method is None:
                generic = generic or block
            elif self.loaded.resolve_method(block.method) == method:
                return block
        return generic

    def _inductive_step(
        self, unit: UnitContext, interp: Interpreter, item: ast.Invariant, method: MethodDescriptor
    ) -> None:
        predicate = interp.evaluate_bool(item.predicate)
        unit.path.assume(predicate, tag=f"invariant:{item.name}")
        env: Environment | None = None
        args = unit.executor.fresh_args(method)
        block = self._preserved_for(item, method)
        if block is not None:
            if block.env is not None:
                env = unit.executor.fresh_env(block.env)
                interp.bind(block.env, env)
            if block.method is not None:
                for param, arg in zip(block.params, args):
                    interp.bind(param.name, arg)
            else:
                interp.bind_params(block.params, {})
            interp.run(block.body)
        if env is None:
            env = unit.executor.fresh_env(f"{method.name}.env")
        unit.executor.invoke(method, env, args)
        self._assert_invariant(interp, item, f"preserved by {method.qualified_name}")

    @staticmethod
    def _assert_invariant(interp: Interpreter, item: ast.Invariant, message: str) -> None:
        interp.path.obligate(ObligationKind.ASSERT, interp.evaluate_bool(item.predicate), f"{item.name} {message}")

    # -- CHECKED -------------------------------------------------------------

    def _check(self, unit: UnitContext, interp: Interpreter, result: UnitResult) -> None:
        path = unit.path
        bridge = unit.bridge
        unknown = ""
        asserts = [o for o in path.obligations if o.kind != ObligationKind.SATISFY]
        satisfies = [o for o in path.obligations if o.kind == ObligationKind.SATISFY]
        for obligation in asserts:
            answer = bridge.solve(obligation.query(path.constraints(upto=obligation.prefix)))
            if answer.is_sat:
                result.verdict = Verdict.REFUTED
                result.message = obligation.message
                result.counterexample = self._counterexample(unit, interp, answer.model)
                return
            if answer.is_unknown:
                unknown = unknown or f"{obligation.message}: {answer.reason}"
                if not self.config.runner.assert_each_separately:
                    break
        unwitnessed = None
        for obligation in satisfies:
            answer = bridge.solve(obligation.query(path.constraints(upto=obligation.prefix)))
            if answer.is_unknown:
                unknown = unknown or f"{obligation.message}: {answer.reason}"
            elif answer.is_unsat and unwitnessed is None:
                unwitnessed = obligation
        if unknown:
            result.verdict = Verdict.UNKNOWN
            result.message = unknown
            return
        reason = self._vacuity(unit)
        if reason is None:
            result.verdict = Verdict.UNKNOWN
            result.message = "vacuity check returned unknown"
            return
        if reason:
            result.verdict = Verdict.VACUOUS
            result.vacuity_reason = reason
            return
        if unwitnessed is not None:
            result.verdict = Verdict.REFUTED
            result.message = f"{unwitnessed.message}: no witness"
            return
        result.verdict = Verdict.PROVED

    def _vacuity(self, unit: UnitContext) -> str | None:
        """Empty string when the assumptions are satisfiable, the reason
        when they are not, None when the solver cannot tell."""
        answer = unit.bridge.solve(unit.path.constraints())
        if answer.is_sat:
            return ""
        if answer.is_unknown:
            return None
        if unit.path.has_havoc() and unit.bridge.is_sat(unit.path.constraints(exclude_havoc=True)):
            return HAVOC_INFEASIBLE
        return ASSUMPTIONS_INFEASIBLE

    def _counterexample(self, unit: UnitContext, interp: Interpreter, model: z3.ModelRef) -> Counterexample:
        variables: dict[str, Any] = {}
        for name, value in interp.variables.items():
            variables[name] = _render(value, model)
        calls = [
            record.describe(model)
            for record in unit.executor.calls
            if z3.is_true(model.eval(record.guard, model_completion=True))
        ]
        return Counterexample(
            variables=variables,
            storage=unit.state.describe(model),
            ghosts=unit.ghosts.describe(model),
            calls=calls,
        )


def _render(value: Any, model: z3.ModelRef) -> Any:
    if isinstance(value, MethodDescriptor):
        return value.qualified_name
    if isinstance(value, Environment):
        return {
            "sender": _render(value.raw("sender"), model),
            "value": _render(value.raw("value"), model),
        }
    if isinstance(value, SymbolicValue):
        if value.expr is None:
            return {name: _render(v, model) for name, v in value.fields}
        evaluated = model.eval(value.expr, model_completion=True)
        if z3.is_int_value(evaluated):
            return evaluated.as_long()
        if z3.is_true(evaluated) or z3.is_false(evaluated):
            return z3.is_true(evaluated)
        return str(evaluated)
    return str(value)


__all__ = [
    "INIT_SNAPSHOT",
    "HAVOC_INFEASIBLE",
    "ASSUMPTIONS_INFEASIBLE",
    "RunnerPhase",
    "UnitContext",
    "UnitRunner",
]
