"""Transition interface of target systems.
A target system is an oracle: given a method, an environment and
arguments, it reads and writes storage through the ``CallFrame`` it is
handed and reports when the call reverts. The engine never looks inside;
every mutation reaches the state model (and therefore the hooks) through
the frame.
``ContractModel`` builds such an oracle from decorated Python functions:
    token = ContractModel("Token")
    token.storage("balances", MappingType(ADDRESS, UINT256))
    @token.method(ADDRESS, UINT256, returns=(BOOL,))
    def transfer(frame, to, amount):
        src = frame.slot("balances").key(frame.env.sender)
        balance = frame.read(src)
        frame.revert_if(lt(balance, amount))
        ...
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import z3

from specexec.core.exceptions import LoadError
from specexec.core.locations import Location, StorageLayout, StorageType
from specexec.core.path import PathCondition
from specexec.core.state import StateModel
from specexec.core.values import (
    ADDRESS,
    UINT256,
    SymbolFactory,
    SymbolicValue,
    ValueType,
    as_bool,
    conjunction,
    const,
    fits,
)
from specexec.execution.methods import MethodDescriptor, MethodUniverse

ENV_FIELDS = ("sender", "value", "timestamp", "block_number")


class Environment:
    """Symbolic call environment.
    Field accesses are recorded so that load-time probes can tell whether
    an ``envfree`` method depends on its environment.
    """

    def __init__(
        self,
        sender: SymbolicValue,
        value: SymbolicValue,
        timestamp: SymbolicValue,
        block_number: SymbolicValue,
    ):
        self._fields = {
            "sender": sender,
            "value": value,
            "timestamp": timestamp,
            "block_number": block_number,
        }
        self.accessed: set[str] = set()

    @classmethod
    def fresh(cls, symbols: SymbolFactory, base: str = "env") -> tuple[Environment, z3.BoolRef]:
        """A fully symbolic environment and its domain constraint."""
        sender, c1 = symbols.fresh(ADDRESS, f"{base}.sender")
        value, c2 = symbols.fresh(UINT256, f"{base}.value")
        timestamp, c3 = symbols.fresh(UINT256, f"{base}.timestamp")
        block, c4 = symbols.fresh(UINT256, f"{base}.block_number")
        return cls(sender, value, timestamp, block), conjunction([c1, c2, c3, c4], symbols.ctx)

    def raw(self, name: str) -> SymbolicValue:
        """Read a field without recording the access."""
        return self._fields[name]

    def field(self, name: str) -> SymbolicValue:
        if name not in self._fields:
            raise LoadError(f"environments have no field {name!r}")
        self.accessed.add(name)
        return self._fields[name]

    @property
    def sender(self) -> SymbolicValue:
        return self.field("sender")

    @property
    def value(self) -> SymbolicValue:
        return self.field("value")

    @property
    def timestamp(self) -> SymbolicValue:
        return self.field("timestamp")

    @property
    def block_number(self) -> SymbolicValue:
        return self.field("block_number")

    def __repr__(self) -> str:
        return f"Environment(sender={self._fields['sender'].expr})"


@dataclass
class TransitionResult:
    """Outcome reported by a transition system."""

    returns: tuple[SymbolicValue, ...] = ()
    reverted: z3.BoolRef | None = None


class CallFrame:
    """Storage access and revert bookkeeping for one call."""

    def __init__(
        self,
        method: MethodDescriptor,
        env: Environment,
        args: Sequence[SymbolicValue],
        state: StateModel,
        path: PathCondition,
    ):
        self.method = method
        self.env = env
        self.args = tuple(args)
        self.state = state
        self.path = path
        self._reverts: list[z3.BoolRef] = []

    @property
    def ctx(self) -> z3.Context:
        return self.state.ctx

    def slot(self, root: str) -> Location:
        return Location(root)

    def read(self, location: Location) -> SymbolicValue:
        return self.state.read(location)

    def write(self, location: Location, value: SymbolicValue) -> None:
        self.state.write(location, value)

    def const(self, value: Any, vtype: ValueType = UINT256) -> SymbolicValue:
        return const(self.ctx, vtype, value)

    def fresh(self, vtype: ValueType, name: str) -> SymbolicValue:
        """A nondeterministic value, e.g. the result of an unmodelled call."""
        value, constraint = self.state.symbols.fresh(vtype, f"{self.method.name}.{name}")
        self.path.assume(constraint, tag="domain")
        return value

    def revert_if(self, condition: SymbolicValue | z3.BoolRef) -> None:
        """Revert the call when ``condition`` holds (under the active guard)."""
        cond = as_bool(condition) if isinstance(condition, SymbolicValue) else condition
        if self.path.guarded:
            cond = z3.And(self.path.guard, cond)
        self._reverts.append(cond)

    def require(self, condition: SymbolicValue | z3.BoolRef) -> None:
        """Revert unless ``condition`` holds."""
        cond = as_bool(condition) if isinstance(condition, SymbolicValue) else condition
        self.revert_if(z3.Not(cond))

    def checked(self, value: SymbolicValue, vtype: ValueType = UINT256) -> SymbolicValue:
        """Checked arithmetic: revert when ``value`` does not fit ``vtype``."""
        self.revert_if(z3.Not(fits(value, vtype)))
        return value.with_type(vtype)

    @contextmanager
    def when(self, condition: SymbolicValue | z3.BoolRef) -> Iterator[None]:
        """Run the block only on paths where ``condition`` holds."""
        cond = as_bool(condition) if isinstance(condition, SymbolicValue) else condition
        with self.path.under(cond):
            yield

    @property
    def reverted(self) -> z3.BoolRef:
        """Disjunction of every revert condition raised so far."""
        if not self._reverts:
            return z3.BoolVal(False, self.ctx)
        if len(self._reverts) == 1:
            return self._reverts[0]
        return z3.Or(*self._reverts)


@runtime_checkable
class TransitionSystem(Protocol):
    """What the engine needs from a target system."""

    layout: StorageLayout
    methods: MethodUniverse
    constructor: MethodDescriptor | None

    def apply(
        self,
        method: MethodDescriptor,
        env: Environment,
        args: Sequence[SymbolicValue],
        frame: CallFrame,
    ) -> TransitionResult: ...


Implementation = Callable[..., Any]


@dataclass
class ContractModel:
    """A transition system written as decorated Python functions.
    Each implementation receives the ``CallFrame`` followed by the symbolic
    arguments, and may return nothing, one value, a tuple of values or a
    ``TransitionResult``.
    """

    name: str
    layout: StorageLayout = field(default_factory=StorageLayout)
    methods: MethodUniverse = field(default_factory=MethodUniverse)
    constructor: MethodDescriptor | None = None
    _impls: dict[int, Implementation] = field(default_factory=dict, repr=False)

    def storage(self, name: str, stype: StorageType, slot: int | None = None) -> Location:
        """Declare a storage variable and return its root location."""
        self.layout.add(name, stype, slot)
        return Location(name)

    def method(
        self,
        *params: ValueType,
        returns: tuple[ValueType, ...] = (),
        view: bool = False,
        pure: bool = False,
        payable: bool = False,
        envfree: bool = False,
        name: str | None = None,
        selector: int | None = None,
    ) -> Callable[[Implementation], Implementation]:
        """Decorator registering a method implementation."""

        def decorator(fn: Implementation) -> Implementation:
            names = fn.__code__.co_varnames[1 : 1 + len(params)]
            descriptor = MethodDescriptor(
                name=name or fn.__name__,
                params=tuple(params),
                returns=tuple(returns),
                view=view,
                pure=pure,
                payable=payable,
                envfree=envfree,
                contract=self.name,
                selector=selector,
                param_names=tuple(names),
            )
            self.methods.add(descriptor)
            self._impls[descriptor.selector] = fn
            return fn

        return decorator

    def on_construct(self, *params: ValueType) -> Callable[[Implementation], Implementation]:
        """Decorator registering the constructor."""

        def decorator(fn: Implementation) -> Implementation:
            descriptor = MethodDescriptor(
                name="constructor", params=tuple(params), contract=self.name, payable=True
            )
            self.constructor = descriptor
            self._impls[descriptor.selector] = fn
            return fn

        return decorator

    def apply(
        self,
        method: MethodDescriptor,
        env: Environment,
        args: Sequence[SymbolicValue],
        frame: CallFrame,
    ) -> TransitionResult:
        try:
            impl = self._impls[method.selector]
        except KeyError:
            raise LoadError(f"{self.name} has no implementation of {method}") from None
        outcome = impl(frame, *args)
        if isinstance(outcome, TransitionResult):
            return outcome
        if outcome is None:
            returns: tuple[SymbolicValue, ...] = ()
        elif isinstance(outcome, tuple):
            returns = outcome
        else:
            returns = (outcome,)
        return TransitionResult(returns=returns)


__all__ = [
    "ENV_FIELDS",
    "Environment",
    "TransitionResult",
    "CallFrame",
    "TransitionSystem",
    "ContractModel",
]
