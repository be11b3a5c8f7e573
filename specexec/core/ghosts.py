"""Ghost store: auxiliary specification state.
Ghosts are named cells that live beside real storage. A ghost is a scalar,
a mapping from a key tuple to a value, or an uninterpreted function; the
latter two share the nested-array representation used for storage.
Lifecycle per unit:
    declare(...)  at load time, once per ghost
    reset()       fresh values, then init-state and global axioms assumed
    get/set       from hook triggers and specification statements
    havoc(...)    fresh value constrained by an ``old``/``new`` assumption
A ghost store is owned by exactly one unit; nothing here is shared.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any

import z3

from specexec.core.exceptions import GhostError
from specexec.core.path import PathCondition
from specexec.core.values import (
    SymbolFactory,
    SymbolicValue,
    ValueType,
    domain,
    sort_of,
)

# An axiom or havoc assumption is evaluated against the store.
Axiom = Callable[["GhostStore"], z3.BoolRef]


class GhostKind(Enum):
    SCALAR = auto()
    MAPPING = auto()
    FUNCTION = auto()


@dataclass(frozen=True)
class GhostShape:
    """Shape of a ghost cell."""

    kind: GhostKind
    value_type: ValueType
    key_types: tuple[ValueType, ...] = ()

    @classmethod
    def scalar(cls, value_type: ValueType) -> GhostShape:
        return cls(GhostKind.SCALAR, value_type)

    @classmethod
    def mapping(cls, key_types: tuple[ValueType, ...], value_type: ValueType) -> GhostShape:
        return cls(GhostKind.MAPPING, value_type, tuple(key_types))

    @classmethod
    def function(cls, param_types: tuple[ValueType, ...], return_type: ValueType) -> GhostShape:
        return cls(GhostKind.FUNCTION, return_type, tuple(param_types))

    @property
    def arity(self) -> int:
        return len(self.key_types)


@dataclass
class GhostDeclaration:
    """A declared ghost and its axioms.
    Attributes:
        init_axioms: Assumed at every reset only.
        axioms: Assumed at every reset and after every havoc of this ghost.
        persistent: Survives call reverts.
    """

    name: str
    shape: GhostShape
    init_axioms: list[Axiom] = field(default_factory=list)
    axioms: list[Axiom] = field(default_factory=list)
    persistent: bool = False


class GhostStore:
    """Ghost cells of one verification unit."""

    def __init__(self, symbols: SymbolFactory, path: PathCondition):
        self.symbols = symbols
        self.path = path
        self.declarations: dict[str, GhostDeclaration] = {}
        self._cells: dict[str, z3.ExprRef] = {}
        self._fresh: dict[str, list[z3.ExprRef]] = {}
        self._old: dict[str, z3.ExprRef] | None = None
        self._domains_assumed: set[int] = set()

    @property
    def ctx(self) -> z3.Context:
        return self.symbols.ctx

    def declare(
        self,
        name: str,
        shape: GhostShape,
        init_axiom: Axiom | None = None,
        axioms: list[Axiom] | None = None,
        persistent: bool = False,
    ) -> GhostDeclaration:
        """Declare a ghost.
        Raises:
            GhostError: If the name is already declared.
        """
        if name in self.declarations:
            raise GhostError(f"ghost {name!r} declared twice", ghost=name)
        declaration = GhostDeclaration(
            name=name,
            shape=shape,
            init_axioms=[init_axiom] if init_axiom is not None else [],
            axioms=list(axioms or []),
            persistent=persistent,
        )
        self.declarations[name] = declaration
        return declaration

    def declaration(self, name: str) -> GhostDeclaration:
        try:
            return self.declarations[name]
        except KeyError:
            raise GhostError(f"unknown ghost {name!r}", ghost=name) from None

    def _sort(self, shape: GhostShape) -> z3.SortRef:
        sort = sort_of(shape.value_type, self.ctx)
        for key_type in reversed(shape.key_types):
            sort = z3.ArraySort(sort_of(key_type, self.ctx), sort)
        return sort

    def _fresh_term(self, declaration: GhostDeclaration) -> z3.ExprRef:
        term = self.symbols.fresh_const(self._sort(declaration.shape), f"ghost.{declaration.name}")
        self._fresh.setdefault(declaration.name, []).append(term)
        return term

    def reset(self, initial: bool = True) -> None:
        """Give every ghost a fresh value and assume its axioms.
        With ``initial`` False the ghosts describe an arbitrary reachable
        state: only the global axioms hold, not the init-state ones.
        """
        self._cells = {}
        self._fresh = {}
        for declaration in self.declarations.values():
            self._cells[declaration.name] = self._fresh_term(declaration)
        for declaration in self.declarations.values():
            if initial:
                for axiom in declaration.init_axioms:
                    self.path.assume(axiom(self), tag=f"init:{declaration.name}")
            for axiom in declaration.axioms:
                self.path.assume(axiom(self), tag=f"axiom:{declaration.name}")

    def _check_keys(self, declaration: GhostDeclaration, keys: tuple[SymbolicValue, ...]) -> None:
        if len(keys) != declaration.shape.arity:
            raise GhostError(
                f"ghost {declaration.name!r} takes {declaration.shape.arity} keys, got {len(keys)}",
                ghost=declaration.name,
            )
        for key, key_type in zip(keys, declaration.shape.key_types):
            if key.expr is None or key.expr.sort() != sort_of(key_type, self.ctx):
                raise GhostError(
                    f"key of type {key.type} for ghost {declaration.name!r} expecting {key_type}",
                    ghost=declaration.name,
                )

    @staticmethod
    def _select(term: z3.ExprRef, keys: tuple[SymbolicValue, ...]) -> z3.ExprRef:
        for key in keys:
            term = z3.Select(term, key.expr)
        return term

    @classmethod
    def _store(
        cls, term: z3.ExprRef, keys: tuple[SymbolicValue, ...], value: z3.ExprRef
    ) -> z3.ExprRef:
        if not keys:
            return value
        inner = cls._store(z3.Select(term, keys[0].expr), keys[1:], value)
        return z3.Store(term, keys[0].expr, inner)

    def _assume_domain(self, declaration: GhostDeclaration, keys: tuple[SymbolicValue, ...]) -> None:
        for term in self._fresh.get(declaration.name, []):
            selected = self._select(term, keys)
            constraint = domain(declaration.shape.value_type, selected)
            if z3.is_true(constraint):
                return
            if self.path.capturing:
                self.path.assume(constraint, tag="domain")
            elif selected.get_id() not in self._domains_assumed:
                self._domains_assumed.add(selected.get_id())
                self.path.assume(constraint, tag="domain", unconditional=True)

    def get(
        self, name: str, keys: tuple[SymbolicValue, ...] = (), version: str | None = None
    ) -> SymbolicValue:
        """Read a ghost cell.
        Args:
            name: Ghost name.
            keys: Key tuple (empty for scalars).
            version: ``"old"`` or ``"new"`` inside a havoc assumption.
        """
        declaration = self.declaration(name)
        self._check_keys(declaration, keys)
        if version == "old":
            if self._old is None or name not in self._old:
                raise GhostError(f"{name}@old is only meaningful inside a havoc assumption")
            term = self._old[name]
        else:
            term = self._cells[name]
        self._assume_domain(declaration, keys)
        return SymbolicValue(declaration.shape.value_type, self._select(term, keys))

    def set(self, name: str, keys: tuple[SymbolicValue, ...], value: SymbolicValue) -> None:
        """Write a ghost cell, guarded by the active path guard."""
        declaration = self.declaration(name)
        self._check_keys(declaration, keys)
        if value.expr is None or value.expr.sort() != sort_of(declaration.shape.value_type, self.ctx):
            raise GhostError(
                f"cannot assign {value.type} to ghost {name!r} of type {declaration.shape.value_type}",
                ghost=name,
            )
        new_expr = value.expr
        if self.path.guarded:
            old = self._select(self._cells[name], keys)
            new_expr = z3.If(self.path.guard, value.expr, old)
        self._cells[name] = self._store(self._cells[name], keys, new_expr)

    def havoc(self, name: str, assumption: Axiom | None = None) -> None:
        """Replace a ghost with a fresh value.
        The assumption is evaluated with ``get(..., version="old")`` bound to
        the pre-havoc value and tagged so that an infeasible assumption is
        diagnosed as vacuity.
        """
        declaration = self.declaration(name)
        old = self._cells[name]
        fresh = self._fresh_term(declaration)
        self._cells[name] = z3.If(self.path.guard, fresh, old) if self.path.guarded else fresh
        if assumption is not None:
            self._old = {name: old}
            try:
                self.path.assume(assumption(self), tag=f"havoc:{name}")
            finally:
                self._old = None
        for axiom in declaration.axioms:
            self.path.assume(axiom(self), tag=f"havoc:{name}:axiom")

    def checkpoint(self) -> dict[str, z3.ExprRef]:
        """Copy of the current ghost terms."""
        return dict(self._cells)

    def merge(self, cond: z3.BoolRef, then: dict[str, z3.ExprRef], other: dict[str, z3.ExprRef]) -> None:
        """Set non-persistent ghosts to ``If(cond, then, other)``.
        Persistent ghosts keep their current value.
        """
        for name, declaration in self.declarations.items():
            if declaration.persistent:
                continue
            a, b = then[name], other[name]
            self._cells[name] = a if a.eq(b) else z3.If(cond, a, b)

    def describe(self, model: z3.ModelRef) -> dict[str, Any]:
        """Concrete ghost values under ``model`` (scalars only are exact)."""
        result = {}
        for name, term in self._cells.items():
            result[name] = str(model.eval(term, model_completion=True))
        return result

    def __contains__(self, name: str) -> bool:
        return name in self.declarations

    def __repr__(self) -> str:
        return f"GhostStore(ghosts={sorted(self.declarations)})"


__all__ = [
    "Axiom",
    "GhostKind",
    "GhostShape",
    "GhostDeclaration",
    "GhostStore",
]
