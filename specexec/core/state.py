"""Symbolic storage state.
The state model maps every storage family (see ``specexec.core.locations``)
to one Z3 term. Key-less families are plain constants; keyed families are
nested arrays, one array level per key. Nothing is enumerated: a read of a
cell that was never written selects from the family's *initial* array and
is constrained only by the type's domain.
Writes go through ``write``, which fetches the pre-value hook-free, stores
the new value (guarded by the active path guard) and then hands the
mutation to the hook dispatcher before returning. ``restore`` and
``viewing`` swap whole images and never fire hooks.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

import z3

from specexec.core.exceptions import LocationError
from specexec.core.locations import Family, Location, StorageLayout
from specexec.core.path import PathCondition
from specexec.core.values import (
    BoolType,
    StructType,
    SymbolFactory,
    SymbolicValue,
    ValueKind,
    ValueType,
    domain,
    sort_of,
)

if TYPE_CHECKING:
    from specexec.execution.dispatcher import HookDispatcher


@dataclass(frozen=True)
class StorageSnapshot:
    """Immutable image of storage at one point of a unit.
    Z3 terms are immutable, so copying the family table is a deep copy.
    """

    image: Mapping[str, z3.ExprRef]
    name: str | None = None

    def get(self, family: str) -> z3.ExprRef | None:
        return self.image.get(family)

    def __len__(self) -> int:
        return len(self.image)


@dataclass(frozen=True, eq=False)
class AccessRecord:
    """One storage access, kept for counterexample reporting."""

    kind: str
    location: Location
    value: SymbolicValue
    guard: z3.BoolRef


def zero_of(vtype: ValueType, ctx: z3.Context) -> z3.ExprRef:
    """The all-zero value of a leaf type."""
    if isinstance(vtype, BoolType):
        return z3.BoolVal(False, ctx)
    if vtype.is_integral:
        return z3.IntVal(0, ctx)
    sort = sort_of(vtype, ctx)
    return z3.Const(f"{vtype}.zero", sort)


def _assignable(target: ValueType, value: ValueType) -> bool:
    if target.is_integral and value.is_integral:
        return True
    if target.kind != value.kind:
        return False
    return target.kind != ValueKind.OPAQUE or target == value


class StateModel:
    """Symbolic storage of one verification unit.
    Attributes:
        layout: The storage layout of the target system.
        symbols: Symbol factory of the unit (owns the Z3 context).
        path: Path condition receiving domain assumptions.
        dispatcher: Hook dispatcher notified of reads and writes.
        trace: Every read and write performed through ``read``/``write``.
        write_count: Number of leaf writes performed so far.
    """

    def __init__(
        self,
        layout: StorageLayout,
        symbols: SymbolFactory,
        path: PathCondition,
        dispatcher: HookDispatcher | None = None,
    ):
        self.layout = layout
        self.symbols = symbols
        self.path = path
        self.dispatcher = dispatcher
        if dispatcher is not None:
            dispatcher.state = self
        self.trace: list[AccessRecord] = []
        self.write_count = 0
        self._image: dict[str, z3.ExprRef] = {}
        self._initial: dict[str, z3.ExprRef] = {}
        self._zeroed = False
        self._domains_assumed: set[int] = set()

    @property
    def ctx(self) -> z3.Context:
        return self.symbols.ctx

    def _family_sort(self, family: Family) -> z3.SortRef:
        sort = sort_of(family.value_type, self.ctx)
        for key_type in reversed(family.key_types):
            sort = z3.ArraySort(sort_of(key_type, self.ctx), sort)
        return sort

    def _zero_family(self, family: Family) -> z3.ExprRef:
        term = zero_of(family.value_type, self.ctx)
        for key_type in reversed(family.key_types):
            term = z3.K(sort_of(key_type, self.ctx), term)
        return term

    def initial(self, family: Family) -> z3.ExprRef:
        """The term of a family before the unit touched it."""
        term = self._initial.get(family.name)
        if term is None:
            if self._zeroed:
                term = self._zero_family(family)
            else:
                term = self.symbols.fresh_const(self._family_sort(family), f"storage.{family.name}")
            self._initial[family.name] = term
        return term

    def current(self, family: Family) -> z3.ExprRef:
        """The live term of a family."""
        term = self._image.get(family.name)
        return term if term is not None else self.initial(family)

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
        head, rest = keys[0], keys[1:]
        inner = cls._store(z3.Select(term, head.expr), rest, value)
        return z3.Store(term, head.expr, inner)

    def _assume_domain(self, family: Family, keys: tuple[SymbolicValue, ...]) -> None:
        if self._zeroed:
            return
        initial = self._select(self.initial(family), keys)
        constraint = domain(family.value_type, initial)
        if z3.is_true(constraint):
            return
        if self.path.capturing:
            self.path.assume(constraint, tag="domain")
            return
        key = initial.get_id()
        if key not in self._domains_assumed:
            self._domains_assumed.add(key)
            self.path.assume(constraint, tag="domain", unconditional=True)

    def load(self, location: Location) -> SymbolicValue:
        """Read a location without firing hooks.
        Struct locations read as struct values built from their value-typed
        fields.
        Raises:
            LocationError: If the location does not exist or is a mapping or
                array as a whole.
        """
        resolved = self.layout.resolve(location)
        if isinstance(resolved.type, StructType):
            fields = []
            for name, ftype in resolved.type.fields:
                if isinstance(ftype, ValueType):
                    fields.append((name, self.load(location.field(name))))
            return SymbolicValue(resolved.type, None, tuple(fields))
        family = resolved.family
        if family is None:
            raise LocationError(location, f"{resolved.type} cannot be read as a value")
        keys = location.keys
        self._assume_domain(family, keys)
        return SymbolicValue(family.value_type, self._select(self.current(family), keys))

    def read(self, location: Location) -> SymbolicValue:
        """Read a location and fire matching read hooks."""
        value = self.load(location)
        self.trace.append(AccessRecord("read", location, value, self.path.guard))
        if self.dispatcher is not None and value.expr is not None:
            self.dispatcher.dispatch_read(location, value)
        return value

    def write(self, location: Location, value: SymbolicValue) -> None:
        """Write a location and fire matching write hooks.
        Writing a struct value writes each value-typed field separately, so
        every leaf write dispatches its own hooks.
        """
        resolved = self.layout.resolve(location)
        if isinstance(resolved.type, StructType):
            for name, ftype in resolved.type.fields:
                if isinstance(ftype, ValueType):
                    self.write(location.field(name), value.field(name))
            return
        family = resolved.family
        if family is None:
            raise LocationError(location, f"{resolved.type} cannot be assigned as a whole")
        if value.expr is None or not _assignable(family.value_type, value.type):
            raise LocationError(location, f"cannot store {value.type} into {family.value_type}")
        old = self.load(location)
        new_expr = value.expr
        if self.path.guarded:
            new_expr = z3.If(self.path.guard, value.expr, old.expr)
        self._image[family.name] = self._store(self.current(family), location.keys, new_expr)
        self.write_count += 1
        new = SymbolicValue(family.value_type, value.expr)
        self.trace.append(AccessRecord("write", location, new, self.path.guard))
        if self.dispatcher is not None:
            self.dispatcher.dispatch_write(location, old, new)

    def raw_address(self, location: Location) -> z3.ArithRef:
        """Integer address of a leaf cell, as bound by wildcard hooks."""
        family = self.layout.resolve(location).family
        if family is None:
            raise LocationError(location, "only leaf cells have addresses")
        if not family.key_types:
            return z3.IntVal(family.address, self.ctx)
        slot_of = z3.Function(
            f"address.{family.name}",
            *[sort_of(k, self.ctx) for k in family.key_types],
            z3.IntSort(self.ctx),
        )
        return slot_of(*[k.expr for k in location.keys])

    def snapshot(self, name: str | None = None) -> StorageSnapshot:
        return StorageSnapshot(MappingProxyType(dict(self._image)), name)

    def restore(self, snapshot: StorageSnapshot) -> None:
        """Replace the live image. Never fires hooks."""
        self._image = dict(snapshot.image)

    @contextmanager
    def viewing(self, snapshot: StorageSnapshot) -> Iterator[None]:
        """Temporarily read from ``snapshot``; the live image is restored on exit."""
        live = self._image
        self._image = dict(snapshot.image)
        try:
            yield
        finally:
            self._image = live

    def merge(self, cond: z3.BoolRef, then: StorageSnapshot, other: StorageSnapshot) -> None:
        """Set the image to ``If(cond, then, other)`` family by family."""
        merged: dict[str, z3.ExprRef] = {}
        for name in set(then.image) | set(other.image):
            family = self.layout.family(name)
            a = then.get(name)
            b = other.get(name)
            a = a if a is not None else self.initial(family)
            b = b if b is not None else self.initial(family)
            merged[name] = a if a.eq(b) else z3.If(cond, a, b)
        self._image = merged

    def zero_initialize(self) -> None:
        """Start from all-zero storage, as a freshly deployed system does."""
        self._zeroed = True
        self._initial = {f.name: self._zero_family(f) for f in self.layout.families()}
        self._image = {}

    def describe(self, model: z3.ModelRef) -> list[dict[str, Any]]:
        """Concrete values of every accessed cell under ``model``."""
        rows = []
        seen = set()
        for record in self.trace:
            keys = [model.eval(k.expr, model_completion=True) for k in record.location.keys]
            label = record.location.shape
            for key in keys:
                label = label.replace("[]", f"[{key}]", 1)
            value = model.eval(record.value.expr, model_completion=True)
            active = model.eval(record.guard, model_completion=True)
            if not z3.is_true(active):
                continue
            entry = (record.kind, label, str(value))
            if entry in seen:
                continue
            seen.add(entry)
            rows.append({"kind": record.kind, "location": label, "value": str(value)})
        return rows

    def __repr__(self) -> str:
        return f"StateModel(families={len(self._image)}, writes={self.write_count})"


__all__ = [
    "StorageSnapshot",
    "AccessRecord",
    "StateModel",
    "zero_of",
]
