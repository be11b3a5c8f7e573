"""Value model for specexec.
This module maps specification-level types onto Z3 sorts. All integers are
Z3 ``Int`` terms, so arithmetic is unbounded (``mathint``) and never wraps.
Bounded types only contribute a *domain* constraint; a value is narrowed to
a bounded type exclusively through an explicit cast, which the evaluator
performs in either asserting or assuming mode.
Type Hierarchy:
    ValueType
    ├── IntType        # mathint when bits is None, else uintN / intN
    ├── AddressType    # Int in [0, 2**160)
    ├── BoolType       # Z3 Bool
    ├── EnumType       # Int in [0, len(members))
    ├── OpaqueType     # Z3 uninterpreted sort
    └── StructType     # record of named fields, no single sort
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Any

import z3

from specexec.core.exceptions import EvaluationError


class ValueKind(Enum):
    """Kind discriminator for symbolic values."""

    INT = auto()
    BOOL = auto()
    ADDRESS = auto()
    ENUM = auto()
    OPAQUE = auto()
    STRUCT = auto()


class ValueType:
    """Base class for specification value types."""

    kind: ValueKind

    @property
    def is_integral(self) -> bool:
        """Whether values of this type are Z3 integers."""
        return self.kind in (ValueKind.INT, ValueKind.ADDRESS, ValueKind.ENUM)


@dataclass(frozen=True)
class IntType(ValueType):
    """Integer type. ``bits=None`` is the unbounded ``mathint``."""

    bits: int | None = None
    signed: bool = False
    kind = ValueKind.INT

    @property
    def bounded(self) -> bool:
        return self.bits is not None

    @property
    def min_value(self) -> int | None:
        if self.bits is None:
            return None
        return -(2 ** (self.bits - 1)) if self.signed else 0

    @property
    def max_value(self) -> int | None:
        if self.bits is None:
            return None
        return 2 ** (self.bits - 1) - 1 if self.signed else 2**self.bits - 1

    def __str__(self) -> str:
        if self.bits is None:
            return "mathint"
        return f"{'int' if self.signed else 'uint'}{self.bits}"


@dataclass(frozen=True)
class BoolType(ValueType):
    kind = ValueKind.BOOL

    def __str__(self) -> str:
        return "bool"


@dataclass(frozen=True)
class AddressType(ValueType):
    kind = ValueKind.ADDRESS
    bits = 160

    def __str__(self) -> str:
        return "address"


@dataclass(frozen=True)
class EnumType(ValueType):
    name: str
    members: tuple[str, ...]
    kind = ValueKind.ENUM

    def ordinal(self, member: str) -> int:
        try:
            return self.members.index(member)
        except ValueError:
            raise EvaluationError(f"{member!r} is not a member of enum {self.name}") from None

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class OpaqueType(ValueType):
    """An uninterpreted sort, e.g. an abstract identifier type."""

    name: str
    kind = ValueKind.OPAQUE

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class StructType(ValueType):
    """A record type.
    Field types may be any storage type (including mappings) when the struct
    lives in storage; only value-typed fields can be read as a value.
    """

    name: str
    fields: tuple[tuple[str, Any], ...]
    kind = ValueKind.STRUCT

    def field_type(self, name: str) -> Any:
        for field_name, field_type in self.fields:
            if field_name == name:
                return field_type
        raise EvaluationError(f"struct {self.name} has no field {name!r}")

    def field_names(self) -> list[str]:
        return [name for name, _ in self.fields]

    def __str__(self) -> str:
        return self.name


MATHINT = IntType()
UINT8 = IntType(8)
UINT32 = IntType(32)
UINT64 = IntType(64)
UINT128 = IntType(128)
UINT256 = IntType(256)
INT256 = IntType(256, signed=True)
BOOL = BoolType()
ADDRESS = AddressType()


def uint(bits: int) -> IntType:
    """Unsigned integer type of the given width."""
    return IntType(bits)


def sort_of(vtype: ValueType, ctx: z3.Context) -> z3.SortRef:
    """Get the Z3 sort used to represent values of ``vtype``."""
    if vtype.is_integral:
        return z3.IntSort(ctx)
    if vtype.kind == ValueKind.BOOL:
        return z3.BoolSort(ctx)
    if vtype.kind == ValueKind.OPAQUE:
        return z3.DeclareSort(vtype.name, ctx)
    raise EvaluationError(f"type {vtype} has no single Z3 sort")


def domain(vtype: ValueType, expr: z3.ExprRef) -> z3.BoolRef:
    """Constraint describing the values a type may take."""
    ctx = expr.ctx
    if isinstance(vtype, IntType):
        if not vtype.bounded:
            return z3.BoolVal(True, ctx)
        return z3.And(expr >= vtype.min_value, expr <= vtype.max_value)
    if isinstance(vtype, AddressType):
        return z3.And(expr >= 0, expr < 2**AddressType.bits)
    if isinstance(vtype, EnumType):
        return z3.And(expr >= 0, expr < len(vtype.members))
    return z3.BoolVal(True, ctx)


def conjunction(items: list[z3.BoolRef], ctx: z3.Context) -> z3.BoolRef:
    """And together a possibly empty list of constraints."""
    items = [c for c in items if not z3.is_true(c)]
    if not items:
        return z3.BoolVal(True, ctx)
    if len(items) == 1:
        return items[0]
    return z3.And(*items)


@dataclass(frozen=True, eq=False)
class SymbolicValue:
    """A typed symbolic value.
    Attributes:
        type: The specification type.
        expr: Z3 expression (None for struct values).
        fields: Field values of a struct value, in declaration order.
    """

    type: ValueType
    expr: z3.ExprRef | None
    fields: tuple[tuple[str, SymbolicValue], ...] = ()

    @property
    def kind(self) -> ValueKind:
        return self.type.kind

    @property
    def ctx(self) -> z3.Context:
        if self.expr is not None:
            return self.expr.ctx
        return self.fields[0][1].ctx

    def field(self, name: str) -> SymbolicValue:
        """Get a field of a struct value."""
        for field_name, value in self.fields:
            if field_name == name:
                return value
        raise EvaluationError(f"value of type {self.type} has no field {name!r}")

    def with_type(self, vtype: ValueType) -> SymbolicValue:
        return SymbolicValue(vtype, self.expr, self.fields)

    def is_concrete(self) -> bool:
        """Check whether the value simplifies to a literal."""
        if self.expr is None:
            return all(v.is_concrete() for _, v in self.fields)
        simplified = z3.simplify(self.expr)
        return z3.is_int_value(simplified) or z3.is_true(simplified) or z3.is_false(simplified)

    def as_python(self) -> Any:
        """Convert a concrete value to a Python value."""
        if self.expr is None:
            return {name: v.as_python() for name, v in self.fields}
        return z3_to_python(z3.simplify(self.expr))

    def __repr__(self) -> str:
        if self.expr is None:
            inner = ", ".join(f"{n}={v!r}" for n, v in self.fields)
            return f"{self.type}{{{inner}}}"
        return f"SymbolicValue({self.type}, {self.expr})"


def z3_to_python(value: z3.ExprRef) -> Any:
    """Convert a Z3 literal to a Python value (strings for anything else)."""
    if z3.is_int_value(value):
        return value.as_long()
    if z3.is_true(value):
        return True
    if z3.is_false(value):
        return False
    if z3.is_rational_value(value):
        return float(value.as_fraction())
    return str(value)


def const(ctx: z3.Context, vtype: ValueType, value: Any) -> SymbolicValue:
    """Create a concrete symbolic value."""
    if isinstance(vtype, BoolType):
        return SymbolicValue(vtype, z3.BoolVal(bool(value), ctx))
    if isinstance(vtype, EnumType) and isinstance(value, str):
        return SymbolicValue(vtype, z3.IntVal(vtype.ordinal(value), ctx))
    if vtype.is_integral:
        return SymbolicValue(vtype, z3.IntVal(int(value), ctx))
    if isinstance(vtype, StructType):
        if not isinstance(value, dict):
            raise EvaluationError(f"struct constant for {vtype} must be a dict")
        return SymbolicValue(
            vtype,
            None,
            tuple((name, const(ctx, ftype, value[name])) for name, ftype in vtype.fields),
        )
    raise EvaluationError(f"cannot build a constant of type {vtype}")


def from_bool(expr: z3.BoolRef) -> SymbolicValue:
    return SymbolicValue(BOOL, expr)


def from_int(expr: z3.ArithRef, vtype: ValueType = MATHINT) -> SymbolicValue:
    return SymbolicValue(vtype, expr)


def as_bool(value: SymbolicValue) -> z3.BoolRef:
    """Get the Z3 boolean of a boolean value."""
    if value.kind != ValueKind.BOOL:
        raise EvaluationError(f"expected bool, got {value.type}")
    return value.expr


def as_int(value: SymbolicValue) -> z3.ArithRef:
    """Get the Z3 integer of an integral value."""
    if not value.type.is_integral:
        raise EvaluationError(f"expected an integer, got {value.type}")
    return value.expr


def fits(value: SymbolicValue, target: ValueType) -> z3.BoolRef:
    """Formula stating that ``value`` is representable in ``target``."""
    if not value.type.is_integral or not target.is_integral:
        raise EvaluationError(f"cannot cast {value.type} to {target}")
    return domain(target, value.expr)


def add(a: SymbolicValue, b: SymbolicValue) -> SymbolicValue:
    return from_int(as_int(a) + as_int(b))


def sub(a: SymbolicValue, b: SymbolicValue) -> SymbolicValue:
    return from_int(as_int(a) - as_int(b))


def mul(a: SymbolicValue, b: SymbolicValue) -> SymbolicValue:
    return from_int(as_int(a) * as_int(b))


def div(a: SymbolicValue, b: SymbolicValue) -> SymbolicValue:
    return from_int(as_int(a) / as_int(b))


def mod(a: SymbolicValue, b: SymbolicValue) -> SymbolicValue:
    return from_int(as_int(a) % as_int(b))


def power(a: SymbolicValue, b: SymbolicValue) -> SymbolicValue:
    """Exponentiation with a literal, non-negative exponent."""
    exponent = z3.simplify(as_int(b))
    if not z3.is_int_value(exponent) or exponent.as_long() < 0:
        raise EvaluationError("exponent must be a non-negative literal")
    result = z3.IntVal(1, a.ctx)
    for _ in range(exponent.as_long()):
        result = result * as_int(a)
    return from_int(z3.simplify(result) if a.is_concrete() else result)


def neg(a: SymbolicValue) -> SymbolicValue:
    return from_int(-as_int(a))


def lt(a: SymbolicValue, b: SymbolicValue) -> SymbolicValue:
    return from_bool(as_int(a) < as_int(b))


def le(a: SymbolicValue, b: SymbolicValue) -> SymbolicValue:
    return from_bool(as_int(a) <= as_int(b))


def gt(a: SymbolicValue, b: SymbolicValue) -> SymbolicValue:
    return from_bool(as_int(a) > as_int(b))


def ge(a: SymbolicValue, b: SymbolicValue) -> SymbolicValue:
    return from_bool(as_int(a) >= as_int(b))


def eq(a: SymbolicValue, b: SymbolicValue) -> SymbolicValue:
    """Structural equality; struct values compare field by field."""
    if a.expr is None or b.expr is None:
        if a.type != b.type:
            raise EvaluationError(f"cannot compare {a.type} with {b.type}")
        parts = [as_bool(eq(x, y)) for (_, x), (_, y) in zip(a.fields, b.fields)]
        return from_bool(conjunction(parts, a.ctx))
    if a.expr.sort() != b.expr.sort():
        raise EvaluationError(f"cannot compare {a.type} with {b.type}")
    return from_bool(a.expr == b.expr)


def ne(a: SymbolicValue, b: SymbolicValue) -> SymbolicValue:
    return from_bool(z3.Not(as_bool(eq(a, b))))


def and_(a: SymbolicValue, b: SymbolicValue) -> SymbolicValue:
    return from_bool(z3.And(as_bool(a), as_bool(b)))


def or_(a: SymbolicValue, b: SymbolicValue) -> SymbolicValue:
    return from_bool(z3.Or(as_bool(a), as_bool(b)))


def not_(a: SymbolicValue) -> SymbolicValue:
    return from_bool(z3.Not(as_bool(a)))


def implies(a: SymbolicValue, b: SymbolicValue) -> SymbolicValue:
    return from_bool(z3.Implies(as_bool(a), as_bool(b)))


def iff(a: SymbolicValue, b: SymbolicValue) -> SymbolicValue:
    return from_bool(as_bool(a) == as_bool(b))


def ite(cond: z3.BoolRef, then: SymbolicValue, other: SymbolicValue) -> SymbolicValue:
    """Conditional value ``If(cond, then, other)``."""
    if then.expr is None or other.expr is None:
        if then.type != other.type:
            raise EvaluationError(f"branches have different types: {then.type}, {other.type}")
        return SymbolicValue(
            then.type,
            None,
            tuple(
                (name, ite(cond, x, y)) for (name, x), (_, y) in zip(then.fields, other.fields)
            ),
        )
    if z3.is_true(cond):
        return then
    if z3.is_false(cond):
        return other
    vtype = then.type if then.type == other.type else MATHINT
    return SymbolicValue(vtype, z3.If(cond, then.expr, other.expr))


class SymbolFactory:
    """Creates fresh, uniquely named symbols inside one Z3 context.
    Every verification unit owns its own factory (and therefore its own
    context), so names and terms never leak between units.
    """

    def __init__(self, ctx: z3.Context | None = None, prefix: str = ""):
        self.ctx = ctx if ctx is not None else z3.Context()
        self._prefix = prefix
        self._counters: dict[str, int] = {}

    def fresh_name(self, base: str) -> str:
        count = self._counters.get(base, 0)
        self._counters[base] = count + 1
        return f"{self._prefix}{base}!{count}"

    def fresh_const(self, sort: z3.SortRef, base: str) -> z3.ExprRef:
        return z3.Const(self.fresh_name(base), sort)

    def fresh(self, vtype: ValueType, base: str) -> tuple[SymbolicValue, z3.BoolRef]:
        """Create a fresh value of ``vtype`` and its domain constraint."""
        if isinstance(vtype, StructType):
            values = []
            constraints = []
            for name, ftype in vtype.fields:
                if not isinstance(ftype, ValueType):
                    raise EvaluationError(f"field {name} of {vtype} is not a value type")
                value, constraint = self.fresh(ftype, f"{base}.{name}")
                values.append((name, value))
                constraints.append(constraint)
            return SymbolicValue(vtype, None, tuple(values)), conjunction(constraints, self.ctx)
        expr = self.fresh_const(sort_of(vtype, self.ctx), base)
        return SymbolicValue(vtype, expr), domain(vtype, expr)

    def const(self, vtype: ValueType, value: Any) -> SymbolicValue:
        return const(self.ctx, vtype, value)

    def __repr__(self) -> str:
        return f"SymbolFactory(symbols={sum(self._counters.values())})"


__all__ = [
    "ValueKind",
    "ValueType",
    "IntType",
    "BoolType",
    "AddressType",
    "EnumType",
    "OpaqueType",
    "StructType",
    "MATHINT",
    "UINT8",
    "UINT32",
    "UINT64",
    "UINT128",
    "UINT256",
    "INT256",
    "BOOL",
    "ADDRESS",
    "uint",
    "sort_of",
    "domain",
    "conjunction",
    "SymbolicValue",
    "z3_to_python",
    "const",
    "from_bool",
    "from_int",
    "as_bool",
    "as_int",
    "fits",
    "add",
    "sub",
    "mul",
    "div",
    "mod",
    "power",
    "neg",
    "lt",
    "le",
    "gt",
    "ge",
    "eq",
    "ne",
    "and_",
    "or_",
    "not_",
    "implies",
    "iff",
    "ite",
    "SymbolFactory",
]
