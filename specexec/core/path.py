"""Path condition for one verification unit.
The path condition is an ordered ledger of assumptions and obligations.
Every obligation remembers how many assumptions were in force when it was
raised, so an ``assert`` is checked only against the requires that precede
it. Statements executed inside an ``if`` branch (or a hook whose pattern
may alias the mutated location) run under a *guard*; assumptions made under
a guard become implications and obligations record the guard.
Quantifier bodies evaluate inside a ``capture()`` block: assumptions and
obligations produced there are collected locally so the quantifier can fold
them into its body instead of leaking them onto the outer path.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum, auto

import z3

from specexec.core.values import conjunction


class ObligationKind(Enum):
    """What a solver check of an obligation has to establish."""

    ASSERT = auto()
    SATISFY = auto()
    CAST = auto()


@dataclass(frozen=True, eq=False)
class Assumption:
    """A constraint on the path.
    Attributes:
        condition: The constraint, already weakened by the active guard.
        tag: Origin of the assumption (``require``, ``domain``, ``havoc:<name>``, ...).
    """

    condition: z3.BoolRef
    tag: str = "require"

    @property
    def is_havoc(self) -> bool:
        return self.tag.startswith("havoc")


@dataclass(frozen=True, eq=False)
class Obligation:
    """A condition that must hold (or, for SATISFY, be witnessed)."""

    kind: ObligationKind
    condition: z3.BoolRef
    message: str
    guard: z3.BoolRef
    prefix: int
    index: int = 0

    def query(self, assumptions: list[z3.BoolRef]) -> list[z3.BoolRef]:
        """Formulas whose satisfiability decides this obligation.
        For ASSERT and CAST a model is a counterexample; for SATISFY a model
        is a witness.
        """
        goal = self.condition if self.kind == ObligationKind.SATISFY else z3.Not(self.condition)
        return [*assumptions, self.guard, goal]


@dataclass
class Capture:
    """Side conditions collected while evaluating a quantifier body."""

    depth: int = 0
    assumptions: list[z3.BoolRef] = field(default_factory=list)
    obligations: list[tuple[ObligationKind, z3.BoolRef, str]] = field(default_factory=list)


class PathCondition:
    """Assumptions, obligations and guards of a single unit."""

    def __init__(self, ctx: z3.Context):
        self.ctx = ctx
        self.assumptions: list[Assumption] = []
        self.obligations: list[Obligation] = []
        self._guards: list[z3.BoolRef] = []
        self._captures: list[Capture] = []

    @property
    def guard(self) -> z3.BoolRef:
        """Conjunction of the active guards."""
        return conjunction(self._guards, self.ctx)

    @property
    def guarded(self) -> bool:
        return bool(self._guards)

    @property
    def capturing(self) -> bool:
        return bool(self._captures)

    def assume(self, condition: z3.BoolRef, tag: str = "require", unconditional: bool = False) -> None:
        """Add an assumption.
        Args:
            condition: Constraint to add.
            tag: Origin, used for vacuity diagnosis.
            unconditional: Skip the guard. Used for facts that hold on every
                path, such as type domains of initial storage.
        """
        if self._captures:
            self._captures[-1].assumptions.append(self._local(condition))
            return
        if self._guards and not unconditional:
            condition = z3.Implies(self.guard, condition)
        self.assumptions.append(Assumption(condition, tag))

    def obligate(self, kind: ObligationKind, condition: z3.BoolRef, message: str) -> None:
        """Record a proof obligation at the current point of the path."""
        if self._captures:
            self._captures[-1].obligations.append((kind, self._local(condition), message))
            return
        self.obligations.append(
            Obligation(
                kind=kind,
                condition=condition,
                message=message,
                guard=self.guard,
                prefix=len(self.assumptions),
                index=len(self.obligations),
            )
        )

    def _local(self, condition: z3.BoolRef) -> z3.BoolRef:
        # Guards pushed inside the innermost capture still apply to its side conditions.
        local = self._guards[self._captures[-1].depth :]
        if not local:
            return condition
        return z3.Implies(conjunction(local, self.ctx), condition)

    @contextmanager
    def under(self, guard: z3.BoolRef) -> Iterator[None]:
        """Execute the block under an additional guard."""
        self._guards.append(guard)
        try:
            yield
        finally:
            self._guards.pop()

    @contextmanager
    def capture(self) -> Iterator[Capture]:
        """Collect side conditions locally instead of adding them to the path."""
        captured = Capture(depth=len(self._guards))
        self._captures.append(captured)
        try:
            yield captured
        finally:
            self._captures.pop()

    def constraints(self, upto: int | None = None, exclude_havoc: bool = False) -> list[z3.BoolRef]:
        """Assumption formulas, optionally only the first ``upto`` of them."""
        selected = self.assumptions if upto is None else self.assumptions[:upto]
        return [a.condition for a in selected if not (exclude_havoc and a.is_havoc)]

    def has_havoc(self) -> bool:
        return any(a.is_havoc for a in self.assumptions)

    def __repr__(self) -> str:
        return (
            f"PathCondition(assumptions={len(self.assumptions)}, "
            f"obligations={len(self.obligations)}, guards={len(self._guards)})"
        )


__all__ = [
    "ObligationKind",
    "Assumption",
    "Obligation",
    "Capture",
    "PathCondition",
]
