"""Method universe of a target system.
The universe is closed: it is enumerated once at load time and never
changes while checking. "Any method" in a parametric item is one unit per
descriptor that survives the item's filter.
"""

from __future__ import annotations

import hashlib
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from specexec.core.exceptions import LoadError
from specexec.core.values import ValueType

# Descriptor attributes visible to filters and specification expressions.
DESCRIPTOR_FIELDS = {
    "selector": "selector",
    "isView": "view",
    "isPure": "pure",
    "isPayable": "payable",
    "isEnvFree": "envfree",
    "isFallback": "fallback",
    "contract": "contract",
    "name": "name",
    "numberOfArguments": "arity",
}


def default_selector(signature: str) -> int:
    """Deterministic 4-byte identity derived from a signature."""
    digest = hashlib.sha3_256(signature.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big")


@dataclass(frozen=True)
class MethodDescriptor:
    """An externally callable operation.
    Attributes:
        name: Method name.
        params: Ordered parameter types.
        returns: Ordered return types.
        view: Reads but never writes storage.
        pure: Neither reads nor writes storage.
        payable: Accepts a non-zero call value.
        envfree: Does not depend on the call environment.
        contract: Declaring contract.
        selector: Identity; derived from the signature when not given.
        param_names: Optional parameter names (for counterexamples).
    """

    name: str
    params: tuple[ValueType, ...] = ()
    returns: tuple[ValueType, ...] = ()
    view: bool = False
    pure: bool = False
    payable: bool = False
    envfree: bool = False
    fallback: bool = False
    contract: str = ""
    selector: int | None = None
    param_names: tuple[str, ...] = field(default=(), compare=False)

    def __post_init__(self) -> None:
        if self.selector is None:
            object.__setattr__(self, "selector", default_selector(self.signature))

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(str(p) for p in self.params)})"

    @property
    def qualified_name(self) -> str:
        return f"{self.contract}.{self.signature}" if self.contract else self.signature

    @property
    def arity(self) -> int:
        return len(self.params)

    @property
    def read_only(self) -> bool:
        return self.view or self.pure

    def attribute(self, name: str) -> Any:
        """Value of a descriptor field by its specification name."""
        try:
            return getattr(self, DESCRIPTOR_FIELDS[name])
        except KeyError:
            raise LoadError(f"method descriptors have no field {name!r}") from None

    def parameter_name(self, position: int) -> str:
        if position < len(self.param_names):
            return self.param_names[position]
        return f"arg{position}"

    def __str__(self) -> str:
        return self.qualified_name


class MethodUniverse:
    """The closed set of methods of a target system.
    Example:
        universe = MethodUniverse([transfer, balance_of])
        mutators = universe.filter(lambda m: not m.view)
    """

    def __init__(self, methods: Iterable[MethodDescriptor] = ()):
        self._methods: list[MethodDescriptor] = []
        self._by_signature: dict[str, MethodDescriptor] = {}
        self._by_selector: dict[int, MethodDescriptor] = {}
        for method in methods:
            self.add(method)

    def add(self, method: MethodDescriptor) -> None:
        """Add a method while the universe is being built.
        Raises:
            LoadError: On a duplicate signature or selector.
        """
        if method.qualified_name in self._by_signature:
            raise LoadError(f"method {method.qualified_name} declared twice")
        if method.selector in self._by_selector:
            other = self._by_selector[method.selector]
            raise LoadError(f"selector clash between {other} and {method}")
        self._methods.append(method)
        self._by_signature[method.qualified_name] = method
        self._by_selector[method.selector] = method

    def all_methods(self) -> list[MethodDescriptor]:
        return list(self._methods)

    def filter(self, predicate: Callable[[MethodDescriptor], bool]) -> list[MethodDescriptor]:
        """Methods satisfying a predicate over descriptor fields."""
        return [m for m in self._methods if predicate(m)]

    def by_name(self, name: str) -> list[MethodDescriptor]:
        return [m for m in self._methods if m.name == name]

    def lookup(self, name: str) -> MethodDescriptor:
        """Find a method by name, signature or qualified signature.
        Raises:
            LoadError: If no method matches or a bare name is overloaded.
        """
        if name in self._by_signature:
            return self._by_signature[name]
        for method in self._methods:
            if method.signature == name:
                return method
        candidates = self.by_name(name)
        if len(candidates) == 1:
            return candidates[0]
        if not candidates:
            raise LoadError(f"unknown method {name!r}")
        raise LoadError(f"method name {name!r} is overloaded; use a signature")

    def by_selector(self, selector: int) -> MethodDescriptor | None:
        return self._by_selector.get(selector)

    def __iter__(self) -> Iterator[MethodDescriptor]:
        return iter(self._methods)

    def __len__(self) -> int:
        return len(self._methods)

    def __contains__(self, method: object) -> bool:
        return method in self._methods

    def __repr__(self) -> str:
        return f"MethodUniverse({len(self._methods)} methods)"


__all__ = [
    "DESCRIPTOR_FIELDS",
    "default_selector",
    "MethodDescriptor",
    "MethodUniverse",
]
