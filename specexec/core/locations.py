"""Storage locations and layouts.
A ``Location`` names one addressable unit of persistent state: a root
variable plus a path of structural accessors. Locations sharing a shape
(same root, same accessor kinds and field names, keys abstracted) form a
``Family``; the state model stores one Z3 term per family, a nested array
indexed by the family's keys.
Example shapes:
    totalSupply            scalar family, no keys
    balances[]             mapping(address => uint256)
    allowance[][]          mapping(address => mapping(address => uint256))
    users[].balance        field of a struct inside a dynamic array
    users.length           length of a dynamic array
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Union

import z3

from specexec.core.exceptions import LocationError
from specexec.core.values import (
    UINT256,
    StructType,
    SymbolicValue,
    ValueKind,
    ValueType,
    conjunction,
)


@dataclass(frozen=True)
class FieldAccess:
    """Access to a named struct field."""

    name: str

    def __str__(self) -> str:
        return f".{self.name}"


@dataclass(frozen=True, eq=False)
class KeyAccess:
    """Access to a mapping entry."""

    key: SymbolicValue

    def __str__(self) -> str:
        return f"[{self.key.expr}]"


@dataclass(frozen=True, eq=False)
class IndexAccess:
    """Access to a dynamic array element."""

    index: SymbolicValue

    def __str__(self) -> str:
        return f"[{self.index.expr}]"


@dataclass(frozen=True)
class LengthAccess:
    """Access to the length of a dynamic array."""

    def __str__(self) -> str:
        return ".length"


Accessor = Union[FieldAccess, KeyAccess, IndexAccess, LengthAccess]


def _shape_part(accessor: Accessor) -> str:
    if isinstance(accessor, (KeyAccess, IndexAccess)):
        return "[]"
    return str(accessor)


def accessor_value(accessor: Accessor) -> SymbolicValue | None:
    """Get the key or index carried by an accessor, if any."""
    if isinstance(accessor, KeyAccess):
        return accessor.key
    if isinstance(accessor, IndexAccess):
        return accessor.index
    return None


@dataclass(frozen=True, eq=False)
class Location:
    """A root variable plus a path of accessors.
    Locations are immutable; the builder methods return new locations.
    Example:
        Location("users").index(i).field("balance")
    """

    root: str
    path: tuple[Accessor, ...] = ()

    def field(self, name: str) -> Location:
        return Location(self.root, self.path + (FieldAccess(name),))

    def key(self, key: SymbolicValue) -> Location:
        return Location(self.root, self.path + (KeyAccess(key),))

    def index(self, index: SymbolicValue) -> Location:
        return Location(self.root, self.path + (IndexAccess(index),))

    def length(self) -> Location:
        return Location(self.root, self.path + (LengthAccess(),))

    @property
    def shape(self) -> str:
        """The family name: the path with keys abstracted."""
        return self.root + "".join(_shape_part(a) for a in self.path)

    @property
    def keys(self) -> tuple[SymbolicValue, ...]:
        """Key and index values along the path, in order."""
        return tuple(v for v in (accessor_value(a) for a in self.path) if v is not None)

    def alias_condition(self, other: Location, ctx: z3.Context) -> z3.BoolRef | None:
        """Condition under which both locations denote the same cell.
        Returns None when the shapes differ (the locations never alias).
        """
        if self.shape != other.shape:
            return None
        return conjunction([a.expr == b.expr for a, b in zip(self.keys, other.keys)], ctx)

    def static_alias(self, other: Location) -> bool | None:
        """Decide aliasing without a solver.
        Returns:
            True if both locations provably name the same cell, False if they
            provably differ, None if it depends on symbolic keys.
        """
        if self.shape != other.shape:
            return False
        if not self.keys:
            return True
        simplified = z3.simplify(self.alias_condition(other, self.keys[0].ctx))
        if z3.is_true(simplified):
            return True
        if z3.is_false(simplified):
            return False
        return None

    def __str__(self) -> str:
        return self.root + "".join(str(a) for a in self.path)

    def __repr__(self) -> str:
        return f"Location({self})"


@dataclass(frozen=True)
class MappingType:
    """A storage mapping from ``key`` to ``value``."""

    key: ValueType
    value: StorageType

    def __str__(self) -> str:
        return f"mapping({self.key} => {self.value})"


@dataclass(frozen=True)
class ArrayType:
    """A dynamic storage array."""

    element: StorageType

    def __str__(self) -> str:
        return f"{self.element}[]"


StorageType = Union[ValueType, MappingType, ArrayType]


@dataclass(frozen=True)
class StorageVariable:
    """A named root of persistent storage."""

    name: str
    type: StorageType
    slot: int = 0


@dataclass(frozen=True)
class Family:
    """All cells sharing one location shape.
    Attributes:
        name: Shape string, e.g. ``users[].balance``.
        root: Root variable name.
        key_types: Types of the keys/indices along the path.
        value_type: Type of every cell in the family.
        address: Distinct integer used for raw storage addresses.
    """

    name: str
    root: str
    key_types: tuple[ValueType, ...]
    value_type: ValueType
    address: int = 0

    @property
    def arity(self) -> int:
        return len(self.key_types)


@dataclass(frozen=True)
class ResolvedLocation:
    """A location checked against the layout."""

    location: Location
    type: StorageType
    family: Family | None = None


def _key_compatible(declared: ValueType, actual: ValueType) -> bool:
    if declared.is_integral and actual.is_integral:
        return True
    if declared.kind != actual.kind:
        return False
    if declared.kind == ValueKind.OPAQUE:
        return declared == actual
    return True


def is_leaf_type(stype: StorageType) -> bool:
    """Whether a storage type is stored in a single family."""
    return isinstance(stype, ValueType) and not isinstance(stype, StructType)


@dataclass
class StorageLayout:
    """Describes the addressable storage of a target system.
    Families are enumerated eagerly when variables are added; the set is
    finite because storage types are not recursive.
    """

    variables: dict[str, StorageVariable] = field(default_factory=dict)
    _families: dict[str, Family] = field(default_factory=dict, repr=False)
    _next_slot: int = field(default=0, repr=False)

    @classmethod
    def of(cls, variables: Iterable[tuple[str, StorageType]]) -> StorageLayout:
        layout = cls()
        for name, stype in variables:
            layout.add(name, stype)
        return layout

    def add(self, name: str, stype: StorageType, slot: int | None = None) -> StorageVariable:
        """Declare a storage variable."""
        if name in self.variables:
            raise LocationError(name, "variable declared twice")
        if slot is None:
            slot = self._next_slot
        self._next_slot = max(self._next_slot, slot + 1)
        variable = StorageVariable(name, stype, slot)
        self.variables[name] = variable
        self._enumerate(name, name, stype, ())
        return variable

    def _enumerate(
        self, root: str, shape: str, stype: StorageType, keys: tuple[ValueType, ...]
    ) -> None:
        if isinstance(stype, MappingType):
            self._enumerate(root, shape + "[]", stype.value, keys + (stype.key,))
        elif isinstance(stype, ArrayType):
            self._add_family(root, shape + ".length", keys, UINT256)
            self._enumerate(root, shape + "[]", stype.element, keys + (UINT256,))
        elif isinstance(stype, StructType):
            for name, ftype in stype.fields:
                self._enumerate(root, f"{shape}.{name}", ftype, keys)
        else:
            self._add_family(root, shape, keys, stype)

    def _add_family(
        self, root: str, shape: str, keys: tuple[ValueType, ...], value_type: ValueType
    ) -> None:
        slot = self.variables[root].slot
        self._families[shape] = Family(
            name=shape,
            root=root,
            key_types=keys,
            value_type=value_type,
            address=(slot << 32) + len(self._families),
        )

    def variable(self, name: str) -> StorageVariable:
        try:
            return self.variables[name]
        except KeyError:
            raise LocationError(name, "no such storage variable") from None

    def families(self) -> list[Family]:
        return list(self._families.values())

    def family(self, shape: str) -> Family:
        try:
            return self._families[shape]
        except KeyError:
            raise LocationError(shape, "no such storage family") from None

    def resolve(self, location: Location) -> ResolvedLocation:
        """Check a location against the layout and find its family.
        Raises:
            LocationError: If the path does not exist or a key has the
                wrong type.
        """
        stype: StorageType = self.variable(location.root).type
        for position, accessor in enumerate(location.path):
            if isinstance(accessor, FieldAccess):
                if not isinstance(stype, StructType):
                    raise LocationError(location, f"{stype} has no fields")
                if accessor.name not in stype.field_names():
                    raise LocationError(location, f"{stype} has no field {accessor.name!r}")
                stype = stype.field_type(accessor.name)
            elif isinstance(accessor, KeyAccess):
                if not isinstance(stype, MappingType):
                    raise LocationError(location, f"{stype} is not a mapping")
                if not _key_compatible(stype.key, accessor.key.type):
                    raise LocationError(
                        location, f"key of type {accessor.key.type} for {stype.key} mapping"
                    )
                stype = stype.value
            elif isinstance(accessor, IndexAccess):
                if not isinstance(stype, ArrayType):
                    raise LocationError(location, f"{stype} is not an array")
                if not accessor.index.type.is_integral:
                    raise LocationError(location, "array index must be an integer")
                stype = stype.element
            elif isinstance(accessor, LengthAccess):
                if not isinstance(stype, ArrayType):
                    raise LocationError(location, f"{stype} has no length")
                if position != len(location.path) - 1:
                    raise LocationError(location, "length must be the last accessor")
                stype = UINT256
        family = self._families.get(location.shape) if is_leaf_type(stype) else None
        return ResolvedLocation(location=location, type=stype, family=family)

    def __contains__(self, name: str) -> bool:
        return name in self.variables


__all__ = [
    "FieldAccess",
    "KeyAccess",
    "IndexAccess",
    "LengthAccess",
    "Accessor",
    "accessor_value",
    "Location",
    "MappingType",
    "ArrayType",
    "StorageType",
    "StorageVariable",
    "Family",
    "ResolvedLocation",
    "StorageLayout",
    "is_leaf_type",
]
