"""Statement interpreter.
Executes rule bodies, preserved blocks and statement-list hook triggers
against one unit. Statements only ever add to the unit's path condition:
``require`` adds assumptions, ``assert``/``satisfy`` add obligations, and
the solver is consulted later by the runner.
``if`` executes both branches under the branch condition and its negation;
storage, ghost and local updates made inside a branch are merged with
``If(cond, then, else)``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import z3

from specexec.core.exceptions import EvaluationError, ModelingInconsistency
from specexec.core.path import ObligationKind
from specexec.core.values import MATHINT, SymbolicValue, fits, ite
from specexec.execution.dispatcher import HookBinding, HookContext
from specexec.execution.executor import CallResult
from specexec.execution.methods import MethodDescriptor
from specexec.execution.system import Environment
from specexec.logging import get_logger
from specexec.spec import ast
from specexec.spec.evaluator import Evaluator, Scope
from specexec.spec.loader import LoadedSpecification

if TYPE_CHECKING:
    from specexec.verification.runner import UnitContext


class Interpreter(ast.NodeVisitor):
    """Runs statements of one unit.
    Attributes:
        scope: Live bindings of the statement being executed.
        variables: Every value bound so far by name, reported in
            counterexamples.
    """

    def __init__(self, unit: UnitContext, loaded: LoadedSpecification):
        self.unit = unit
        self.loaded = loaded
        self.evaluator = Evaluator(
            unit.symbols,
            unit.path,
            unit.state,
            unit.ghosts,
            unit.snapshots,
            loaded.definitions,
            calls=self.call,
        )
        self.scope: dict[str, Any] = {}
        self.variables: dict[str, Any] = {}
        self._in_hook = False
        self._logger = get_logger()

    @property
    def path(self):
        return self.unit.path

    def bind(self, name: str, value: Any) -> None:
        self.scope[name] = value
        self.variables[name] = value

    def fresh(self, name: str, vtype) -> SymbolicValue:
        """Bind ``name`` to a fresh value of ``vtype`` within its domain."""
        value, constraint = self.unit.symbols.fresh(vtype, name)
        self.path.assume(constraint, tag="domain", unconditional=True)
        self.bind(name, value)
        return value

    def bind_params(self, params: tuple[ast.Param, ...], methods: dict[str, MethodDescriptor]) -> None:
        """Give every declared parameter a value.
        Value parameters become fresh symbols, environment parameters fresh
        environments, and method parameters the descriptor this unit is
        instantiated for.
        """
        for param in params:
            if param.kind == ast.ParamKind.METHOD:
                self.bind(param.name, methods[param.name])
            elif param.kind == ast.ParamKind.ENV:
                self.bind(param.name, self.unit.executor.fresh_env(param.name))
            else:
                self.fresh(param.name, param.type)

    def run(self, body: tuple[ast.Stmt, ...]) -> None:
        for stmt in body:
            self.visit(stmt)

    def evaluate(self, expr: ast.Expr) -> SymbolicValue:
        return self.evaluator.evaluate(expr, self.scope)

    def evaluate_bool(self, expr: ast.Expr) -> z3.BoolRef:
        return self.evaluator.evaluate_bool(expr, self.scope)

    # -- statements ----------------------------------------------------------

    def visit_Declare(self, stmt: ast.Declare) -> None:
        self.fresh(stmt.name, stmt.type)

    def visit_Assign(self, stmt: ast.Assign) -> None:
        if isinstance(stmt.expr, ast.CallExpr):
            values = self.call(stmt.expr, self.scope).returns
        else:
            values = (self.evaluate(stmt.expr),)
        if len(values) != len(stmt.targets):
            raise EvaluationError(f"cannot assign {len(values)} values to {len(stmt.targets)} targets")
        for target, value in zip(stmt.targets, values):
            self.bind(target, value)

    def visit_GhostAssign(self, stmt: ast.GhostAssign) -> None:
        keys = tuple(self.evaluate(k) for k in stmt.keys)
        self.unit.ghosts.set(stmt.name, keys, self.evaluate(stmt.expr))

    def visit_Require(self, stmt: ast.Require) -> None:
        self.path.assume(self.evaluate_bool(stmt.expr), tag="require")

    def visit_Assert(self, stmt: ast.Assert) -> None:
        self.path.obligate(ObligationKind.ASSERT, self.evaluate_bool(stmt.expr), stmt.message or "assert")

    def visit_Satisfy(self, stmt: ast.Satisfy) -> None:
        self.path.obligate(ObligationKind.SATISFY, self.evaluate_bool(stmt.expr), stmt.message or "satisfy")

    def visit_CallStmt(self, stmt: ast.CallStmt) -> None:
        self.call(stmt.call, self.scope)

    def visit_Havoc(self, stmt: ast.Havoc) -> None:
        assumption = None
        if stmt.assuming is not None:
            scope = dict(self.scope)

            def assumption(store):
                return self.evaluator.evaluate_bool(stmt.assuming, scope)

        self.unit.ghosts.havoc(stmt.ghost, assumption)

    def visit_TakeSnapshot(self, stmt: ast.TakeSnapshot) -> None:
        self.unit.snapshots.take(stmt.name)

    def visit_If(self, stmt: ast.If) -> None:
        cond = self.evaluate_bool(stmt.cond)
        before = dict(self.scope)
        with self.path.under(cond):
            self.run(stmt.then)
        after_then = self.scope
        self.scope = dict(before)
        with self.path.under(z3.Not(cond)):
            self.run(stmt.other)
        after_other = self.scope
        merged = dict(before)
        for name, old in before.items():
            a = after_then.get(name, old)
            b = after_other.get(name, old)
            if a is b:
                merged[name] = a
            elif isinstance(a, SymbolicValue) and isinstance(b, SymbolicValue):
                merged[name] = ite(cond, a, b)
        self.scope = merged
        for name, value in merged.items():
            self.variables[name] = value

    def visit_RequireInvariant(self, stmt: ast.RequireInvariant) -> None:
        invariant = self.loaded.spec.invariant(stmt.name)
        if invariant is None:
            raise EvaluationError(f"unknown invariant {stmt.name!r}")
        args = {p.name: self.evaluate(a) for p, a in zip(invariant.params, stmt.args)}
        predicate = self.evaluator.evaluate_bool(invariant.predicate, args)
        self.path.assume(predicate, tag=f"invariant:{invariant.name}")

    # -- calls ---------------------------------------------------------------

    def _resolve(self, call: ast.CallExpr, scope: Scope) -> MethodDescriptor:
        bound = scope.get(call.method)
        if isinstance(bound, MethodDescriptor):
            return bound
        return self.loaded.resolve_method(call.method)

    def _arguments(self, call: ast.CallExpr, method: MethodDescriptor, scope: Scope) -> tuple[SymbolicValue, ...]:
        if call.args is None:
            return self.unit.executor.fresh_args(method)
        if len(call.args) != method.arity:
            raise EvaluationError(f"{method} takes {method.arity} arguments, got {len(call.args)}")
        args = []
        for expr, ptype in zip(call.args, method.params):
            value = self.evaluator.evaluate(expr, scope)
            if value.type != ptype and value.type.is_integral and ptype.is_integral:
                self.path.obligate(
                    ObligationKind.CAST, fits(value, ptype), f"argument of {method.name} does not fit {ptype}"
                )
                value = value.with_type(ptype)
            args.append(value)
        return tuple(args)

    def call(self, call: ast.CallExpr, scope: Scope) -> CallResult:
        """Perform a call expression or statement."""
        if self._in_hook:
            raise EvaluationError(f"hooks cannot call methods ({call.method})")
        method = self._resolve(call, scope)
        reason = self.loaded.inconsistent.get(method.qualified_name)
        if reason is not None:
            raise ModelingInconsistency(method.qualified_name, reason)
        executor = self.unit.executor
        if call.env is not None:
            env = scope.get(call.env)
            if not isinstance(env, Environment):
                raise EvaluationError(f"{call.env!r} is not an environment")
        else:
            env = executor.fresh_env(f"{method.name}.env")
        args = self._arguments(call, method, scope)
        if call.at is not None:
            self.unit.snapshots.restore(call.at)
        if call.with_revert:
            result = executor.invoke_or_revert(method, env, args)
        else:
            result = executor.invoke(method, env, args)
        reverted = result.reverted
        if self.path.guarded:
            reverted = z3.If(self.path.guard, reverted, self.evaluator.last_reverted)
        self.evaluator.last_reverted = reverted
        return result

    # -- hooks ---------------------------------------------------------------

    def run_hook(self, binding: HookBinding, context: HookContext) -> None:
        """Trigger runner for statement-list hooks."""
        hook: ast.HookDecl = binding.trigger
        scope: dict[str, Any] = dict(context.keys)
        if hook.new_name is not None:
            scope[hook.new_name] = context.new
        if hook.old_name is not None:
            scope[hook.old_name] = context.old
        if hook.value_name is not None:
            scope[hook.value_name] = context.value
        if hook.address_name is not None:
            scope[hook.address_name] = SymbolicValue(MATHINT, context.address)
        saved, self.scope = self.scope, scope
        saved_variables = dict(self.variables)
        self._in_hook = True
        try:
            self.run(hook.body)
        finally:
            self._in_hook = False
            self.scope = saved
            self.variables = saved_variables


__all__ = ["Interpreter"]
