"""Storage hook dispatcher.
Hooks bind a location pattern to a trigger. Every write (or read) that goes
through the state model is matched against the registered bindings in
declaration order; each binding that matches, or may match, fires exactly
once before the write returns.
Example:
    dispatcher = HookDispatcher(layout, path)
    @dispatcher.on_write(LocationPattern("balances").key("who"))
    def track(hook):
        total = hook.ghosts.get("total")
        hook.ghosts.set("total", (), add(total, sub(hook.new, hook.old)))
Pinned-key patterns against a symbolic key fire under the guard
``key == pinned``; patterns that are statically disjoint never fire.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Union

import z3

from specexec.core.exceptions import LoadError
from specexec.core.locations import (
    ArrayType,
    FieldAccess,
    IndexAccess,
    KeyAccess,
    LengthAccess,
    Location,
    MappingType,
    StorageLayout,
    StorageType,
)
from specexec.core.path import PathCondition
from specexec.core.values import UINT256, StructType, SymbolicValue, ValueType, const
from specexec.logging import get_logger

if TYPE_CHECKING:
    from specexec.core.ghosts import GhostStore
    from specexec.core.state import StateModel
    from specexec.resources import ResourceTracker


class HookMode(Enum):
    """When a binding fires."""

    WRITE = auto()
    READ = auto()
    ANY_WRITE = auto()
    ANY_READ = auto()

    @property
    def is_write(self) -> bool:
        return self in (HookMode.WRITE, HookMode.ANY_WRITE)

    @property
    def is_wildcard(self) -> bool:
        return self in (HookMode.ANY_WRITE, HookMode.ANY_READ)


@dataclass(frozen=True)
class FieldPattern:
    name: str


@dataclass(frozen=True)
class KeyPattern:
    """Matches a mapping key; binds it to ``binder`` or pins it to a constant."""

    binder: str | None = None
    key_type: ValueType | None = None
    pinned: Any = None


@dataclass(frozen=True)
class IndexPattern:
    binder: str | None = None
    pinned: int | None = None


@dataclass(frozen=True)
class LengthPattern:
    pass


PatternStep = Union[FieldPattern, KeyPattern, IndexPattern, LengthPattern]


@dataclass(frozen=True)
class PatternMatch:
    """Outcome of matching a pattern against a location."""

    guard: z3.BoolRef
    keys: dict[str, SymbolicValue] = field(default_factory=dict)


@dataclass(frozen=True)
class LocationPattern:
    """A location shape with binders in place of keys.
    ``LocationPattern.wildcard()`` matches every location.
    """

    root: str
    path: tuple[PatternStep, ...] = ()
    value_type: ValueType | None = None

    @classmethod
    def wildcard(cls) -> LocationPattern:
        return cls("*")

    @property
    def is_wildcard(self) -> bool:
        return self.root == "*"

    def field(self, name: str) -> LocationPattern:
        return LocationPattern(self.root, self.path + (FieldPattern(name),), self.value_type)

    def key(
        self, binder: str | None = None, key_type: ValueType | None = None, pinned: Any = None
    ) -> LocationPattern:
        step = KeyPattern(binder, key_type, pinned)
        return LocationPattern(self.root, self.path + (step,), self.value_type)

    def index(self, binder: str | None = None, pinned: int | None = None) -> LocationPattern:
        return LocationPattern(self.root, self.path + (IndexPattern(binder, pinned),), self.value_type)

    def length(self) -> LocationPattern:
        return LocationPattern(self.root, self.path + (LengthPattern(),), self.value_type)

    def typed(self, value_type: ValueType) -> LocationPattern:
        return LocationPattern(self.root, self.path, value_type)

    def binders(self) -> list[str]:
        return [
            step.binder
            for step in self.path
            if isinstance(step, (KeyPattern, IndexPattern)) and step.binder is not None
        ]

    def match(self, location: Location, ctx: z3.Context) -> PatternMatch | None:
        """Match a concrete or symbolic location.
        The pattern is instantiated with the location's own keys at binders
        and its constants at pinned steps; the two locations are then
        compared for aliasing.
        Returns:
            None if the pattern cannot match; otherwise the guard under which
            it matches and the bound keys.
        """
        if self.is_wildcard:
            return PatternMatch(z3.BoolVal(True, ctx))
        if self.root != location.root or len(self.path) != len(location.path):
            return None
        instance = []
        keys: dict[str, SymbolicValue] = {}
        for step, accessor in zip(self.path, location.path):
            if isinstance(step, FieldPattern):
                if not isinstance(accessor, FieldAccess) or accessor.name != step.name:
                    return None
            elif isinstance(step, LengthPattern):
                if not isinstance(accessor, LengthAccess):
                    return None
            elif isinstance(step, KeyPattern) and isinstance(accessor, KeyAccess):
                if step.binder is not None:
                    keys[step.binder] = accessor.key
                if step.pinned is not None:
                    accessor = KeyAccess(const(ctx, accessor.key.type, step.pinned))
            elif isinstance(step, IndexPattern) and isinstance(accessor, IndexAccess):
                if step.binder is not None:
                    keys[step.binder] = accessor.index
                if step.pinned is not None:
                    accessor = IndexAccess(const(ctx, accessor.index.type, step.pinned))
            else:
                return None
            instance.append(accessor)
        pinned = Location(location.root, tuple(instance))
        aliased = location.static_alias(pinned)
        if aliased is False:
            return None
        if aliased:
            return PatternMatch(z3.BoolVal(True, ctx), keys)
        return PatternMatch(z3.simplify(location.alias_condition(pinned, ctx)), keys)

    def __str__(self) -> str:
        if self.is_wildcard:
            return "*"
        parts = [self.root]
        for step in self.path:
            if isinstance(step, FieldPattern):
                parts.append(f".{step.name}")
            elif isinstance(step, LengthPattern):
                parts.append(".length")
            else:
                inner = step.binder or ""
                if step.pinned is not None:
                    inner = repr(step.pinned)
                parts.append(f"[{inner}]")
        return "".join(parts)


@dataclass
class HookContext:
    """Values bound while a trigger runs.
    Attributes:
        location: The accessed location.
        mode: Why the binding fired.
        old: Pre-write value (write hooks).
        new: Written value (write hooks).
        value: Read value (read hooks).
        keys: Key binders of the pattern.
        address: Raw storage address (wildcard hooks).
    """

    location: Location
    mode: HookMode
    old: SymbolicValue | None = None
    new: SymbolicValue | None = None
    value: SymbolicValue | None = None
    keys: dict[str, SymbolicValue] = field(default_factory=dict)
    address: z3.ArithRef | None = None
    ghosts: GhostStore | None = None
    state: StateModel | None = None


Trigger = Callable[[HookContext], None]


@dataclass
class HookBinding:
    """A registered (pattern, trigger, mode) triple.
    ``trigger`` is either a Python callable taking a ``HookContext`` or a
    declaration run by the trigger runner (statement-list hooks).
    """

    pattern: LocationPattern
    trigger: Any
    mode: HookMode
    order: int = 0
    name: str = ""

    def __str__(self) -> str:
        return self.name or f"{self.mode.name.lower()} {self.pattern}"


TriggerRunner = Callable[[HookBinding, HookContext], None]


class HookDispatcher:
    """Dispatches storage accesses to registered hook bindings.
    The dispatcher belongs to one unit. ``state`` and ``ghosts`` are
    attached when the unit's state model and ghost store are built.
    """

    def __init__(
        self,
        layout: StorageLayout,
        path: PathCondition,
        ghosts: GhostStore | None = None,
        tracker: ResourceTracker | None = None,
    ):
        self.layout = layout
        self.path = path
        self.ghosts = ghosts
        self.tracker = tracker
        self.state: StateModel | None = None
        self.fire_counts: dict[int, int] = {}
        self._bindings: list[HookBinding] = []
        self._trigger_runner: TriggerRunner | None = None
        self._depth = 0
        self._logger = get_logger()

    @property
    def bindings(self) -> list[HookBinding]:
        return list(self._bindings)

    def set_trigger_runner(self, runner: TriggerRunner) -> None:
        """Set the runner for triggers that are not Python callables."""
        self._trigger_runner = runner

    def register(
        self, pattern: LocationPattern, trigger: Any, mode: HookMode = HookMode.WRITE, name: str = ""
    ) -> HookBinding:
        """Register a binding after validating it against the layout.
        Raises:
            LoadError: If the pattern does not fit the storage layout.
        """
        if mode.is_wildcard != pattern.is_wildcard:
            raise LoadError(f"hook mode {mode.name} does not fit pattern {pattern}", pattern=pattern)
        if not pattern.is_wildcard:
            self.validate(pattern)
        binding = HookBinding(pattern, trigger, mode, order=len(self._bindings), name=name)
        self._bindings.append(binding)
        self.fire_counts[binding.order] = 0
        self._logger.trace(f"registered hook {binding}", category="hooks")
        return binding

    def validate(self, pattern: LocationPattern) -> ValueType:
        """Check a pattern against the layout and return its leaf type."""
        if pattern.root not in self.layout:
            raise LoadError(f"hook pattern {pattern}: no storage variable {pattern.root!r}")
        stype: StorageType = self.layout.variable(pattern.root).type
        for position, step in enumerate(pattern.path):
            if isinstance(step, FieldPattern):
                if not isinstance(stype, StructType) or step.name not in stype.field_names():
                    raise LoadError(f"hook pattern {pattern}: {stype} has no field {step.name!r}")
                stype = stype.field_type(step.name)
            elif isinstance(step, KeyPattern):
                if not isinstance(stype, MappingType):
                    raise LoadError(f"hook pattern {pattern}: {stype} is not a mapping")
                if step.key_type is not None and step.key_type != stype.key:
                    raise LoadError(
                        f"hook pattern {pattern}: key declared {step.key_type}, mapping key is {stype.key}"
                    )
                stype = stype.value
            elif isinstance(step, IndexPattern):
                if not isinstance(stype, ArrayType):
                    raise LoadError(f"hook pattern {pattern}: {stype} is not an array")
                stype = stype.element
            elif isinstance(step, LengthPattern):
                if not isinstance(stype, ArrayType) or position != len(pattern.path) - 1:
                    raise LoadError(f"hook pattern {pattern}: misplaced length")
                stype = UINT256
        if not isinstance(stype, ValueType) or isinstance(stype, StructType):
            raise LoadError(f"hook pattern {pattern}: {stype} is not a value location")
        if pattern.value_type is not None and pattern.value_type != stype:
            raise LoadError(
                f"hook pattern {pattern}: value declared {pattern.value_type}, storage holds {stype}"
            )
        return stype

    def on_write(self, pattern: LocationPattern, name: str = "") -> Callable[[Trigger], Trigger]:
        """Decorator registering a write hook."""

        def decorator(trigger: Trigger) -> Trigger:
            self.register(pattern, trigger, HookMode.WRITE, name or trigger.__name__)
            return trigger

        return decorator

    def on_read(self, pattern: LocationPattern, name: str = "") -> Callable[[Trigger], Trigger]:
        """Decorator registering a read hook."""

        def decorator(trigger: Trigger) -> Trigger:
            self.register(pattern, trigger, HookMode.READ, name or trigger.__name__)
            return trigger

        return decorator

    def on_any_write(self, name: str = "") -> Callable[[Trigger], Trigger]:
        def decorator(trigger: Trigger) -> Trigger:
            self.register(LocationPattern.wildcard(), trigger, HookMode.ANY_WRITE, name or trigger.__name__)
            return trigger

        return decorator

    def on_any_read(self, name: str = "") -> Callable[[Trigger], Trigger]:
        def decorator(trigger: Trigger) -> Trigger:
            self.register(LocationPattern.wildcard(), trigger, HookMode.ANY_READ, name or trigger.__name__)
            return trigger

        return decorator

    @property
    def firing(self) -> bool:
        """Whether a trigger is currently running."""
        return self._depth > 0

    def dispatch_write(self, location: Location, old: SymbolicValue, new: SymbolicValue) -> None:
        self._dispatch(location, write=True, old=old, new=new)

    def dispatch_read(self, location: Location, value: SymbolicValue) -> None:
        self._dispatch(location, write=False, value=value)

    def _dispatch(
        self,
        location: Location,
        write: bool,
        old: SymbolicValue | None = None,
        new: SymbolicValue | None = None,
        value: SymbolicValue | None = None,
    ) -> None:
        # Storage accesses made by trigger bodies do not fire hooks.
        if self._depth > 0:
            return
        for binding in self._bindings:
            if binding.mode.is_write != write:
                continue
            match = binding.pattern.match(location, self.path.ctx)
            if match is None:
                continue
            context = HookContext(
                location=location,
                mode=binding.mode,
                old=old,
                new=new,
                value=value,
                keys=match.keys,
                ghosts=self.ghosts,
                state=self.state,
            )
            if binding.mode.is_wildcard and self.state is not None:
                context.address = self.state.raw_address(location)
            self._fire(binding, context, match.guard)

    def _fire(self, binding: HookBinding, context: HookContext, guard: z3.BoolRef) -> None:
        if self.tracker is not None:
            self.tracker.record_hook()
        self.fire_counts[binding.order] += 1
        self._logger.trace(f"fire {binding} at {context.location}", category="hooks")
        self._depth += 1
        try:
            if z3.is_true(guard):
                self._run(binding, context)
            else:
                with self.path.under(guard):
                    self._run(binding, context)
        finally:
            self._depth -= 1

    def _run(self, binding: HookBinding, context: HookContext) -> None:
        if callable(binding.trigger):
            binding.trigger(context)
            return
        if self._trigger_runner is None:
            raise LoadError(f"no runner for statement hook {binding}")
        self._trigger_runner(binding, context)

    def total_firings(self) -> int:
        return sum(self.fire_counts.values())

    def __repr__(self) -> str:
        return f"HookDispatcher({len(self._bindings)} bindings)"


__all__ = [
    "HookMode",
    "FieldPattern",
    "KeyPattern",
    "IndexPattern",
    "LengthPattern",
    "PatternStep",
    "PatternMatch",
    "LocationPattern",
    "HookContext",
    "HookBinding",
    "Trigger",
    "TriggerRunner",
    "HookDispatcher",
]
