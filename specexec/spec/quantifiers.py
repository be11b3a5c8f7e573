"""Quantifier encoding.
``forall x: T. body`` and ``exists x: T. body`` are encoded with a fresh Z3
constant of T's sort that the quantifier binds; nothing is enumerated and
instantiation is left to the solver.
While the body is evaluated the path condition is in capture mode. The
captured side conditions (type domains of storage cells selected by ``x``,
assuming casts) are folded into the body:
    forall:  ForAll(x, Implies(And(domain(x), side), body))
    exists:  Exists(x, And(domain(x), side, body))
Captured obligations (asserting casts) must hold for every ``x`` and are
re-emitted universally closed on the enclosing path.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import z3

from specexec.core.exceptions import EvaluationError
from specexec.core.path import PathCondition
from specexec.core.values import (
    BOOL,
    StructType,
    SymbolFactory,
    SymbolicValue,
    ValueType,
    as_bool,
    conjunction,
    domain,
    sort_of,
)
from specexec.spec.ast import QuantifierKind


@dataclass(frozen=True)
class BoundVariable:
    """A variable bound by a quantifier."""

    name: str
    value: SymbolicValue
    domain: z3.BoolRef

    @property
    def const(self) -> z3.ExprRef:
        return self.value.expr


def bind(symbols: SymbolFactory, name: str, vtype: ValueType) -> BoundVariable:
    """Introduce a fresh bound variable of ``vtype``."""
    if isinstance(vtype, StructType):
        raise EvaluationError(f"cannot quantify over struct type {vtype}")
    const = symbols.fresh_const(sort_of(vtype, symbols.ctx), f"q.{name}")
    return BoundVariable(name, SymbolicValue(vtype, const), domain(vtype, const))


def close(
    kind: QuantifierKind, var: BoundVariable, side: list[z3.BoolRef], body: z3.BoolRef
) -> z3.BoolRef:
    """Build the quantified formula of ``body``."""
    ctx = var.const.ctx
    guard = conjunction([var.domain, *side], ctx)
    if kind == QuantifierKind.FORALL:
        return z3.ForAll([var.const], z3.Implies(guard, body))
    if kind == QuantifierKind.EXISTS:
        return z3.Exists([var.const], z3.And(guard, body))
    raise EvaluationError(f"unknown quantifier {kind}")


class QuantifierEncoder:
    """Evaluates quantified expressions for one unit."""

    def __init__(self, symbols: SymbolFactory, path: PathCondition):
        self.symbols = symbols
        self.path = path

    def encode(
        self,
        kind: QuantifierKind,
        name: str,
        vtype: ValueType,
        body: Callable[[SymbolicValue], SymbolicValue],
    ) -> SymbolicValue:
        """Evaluate ``body`` over a fresh bound variable and quantify it.
        Args:
            kind: FORALL or EXISTS.
            name: Name of the bound variable.
            vtype: Its declared domain.
            body: Evaluates the body given the bound value.
        """
        var = bind(self.symbols, name, vtype)
        with self.path.capture() as captured:
            result = as_bool(body(var.value))
        formula = close(kind, var, captured.assumptions, result)
        ctx = self.symbols.ctx
        for obligation_kind, condition, message in captured.obligations:
            closed = z3.ForAll(
                [var.const],
                z3.Implies(conjunction([var.domain, *captured.assumptions], ctx), condition),
            )
            self.path.obligate(obligation_kind, closed, message)
        return SymbolicValue(BOOL, formula)


__all__ = [
    "BoundVariable",
    "bind",
    "close",
    "QuantifierEncoder",
]
