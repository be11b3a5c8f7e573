"""Verdicts and reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Verdict(Enum):
    """Outcome of checking one unit or item.
    ``rank`` orders verdicts for aggregation: the item verdict is the
    highest-ranked verdict among its units.
    """

    PROVED = "proved"
    REFUTED = "refuted"
    VACUOUS = "vacuous"
    UNKNOWN = "unknown"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return _RANK[self]

    @property
    def is_failure(self) -> bool:
        return self in (Verdict.REFUTED, Verdict.ERROR)


_RANK = {
    Verdict.VACUOUS: 0,
    Verdict.PROVED: 1,
    Verdict.UNKNOWN: 2,
    Verdict.REFUTED: 3,
    Verdict.ERROR: 4,
}


def aggregate(verdicts: list[Verdict]) -> Verdict:
    """Combine unit verdicts: ERROR > REFUTED > UNKNOWN > PROVED > VACUOUS.
    An empty list is VACUOUS (nothing was checked).
    """
    if not verdicts:
        return Verdict.VACUOUS
    return max(verdicts, key=lambda v: v.rank)


@dataclass
class Counterexample:
    """Concrete execution violating (or, for satisfy, witnessing) a check.
    Attributes:
        variables: Rule parameters and locals.
        storage: Accessed storage cells, in access order.
        ghosts: Ghost values at the end of the execution.
        calls: Calls performed, with sender, value and arguments.
    """

    variables: dict[str, Any] = field(default_factory=dict)
    storage: list[dict[str, Any]] = field(default_factory=list)
    ghosts: dict[str, Any] = field(default_factory=dict)
    calls: list[dict[str, Any]] = field(default_factory=list)

    def format(self) -> str:
        lines = []
        for name, value in self.variables.items():
            lines.append(f"  {name} = {value}")
        for call in self.calls:
            args = ", ".join(f"{k}={v}" for k, v in call["args"].items())
            suffix = " (reverted)" if call.get("reverted") else ""
            lines.append(f"  call {call['method']}({args}) from {call['sender']}{suffix}")
        for row in self.storage:
            lines.append(f"  {row['kind']} {row['location']} = {row['value']}")
        for name, value in self.ghosts.items():
            lines.append(f"  ghost {name} = {value}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "variables": self.variables,
            "storage": self.storage,
            "ghosts": self.ghosts,
            "calls": self.calls,
        }


@dataclass
class UnitResult:
    """Verdict of one verification unit.
    A parametric item has one unit per method; an invariant additionally has
    a base-case unit. ``method`` is None for non-parametric rules.
    """

    item: str
    verdict: Verdict
    method: str | None = None
    step: str = ""
    message: str = ""
    counterexample: Counterexample | None = None
    vacuity_reason: str = ""
    timed_out: bool = False
    resources: dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        parts = [self.item]
        if self.step:
            parts.append(self.step)
        if self.method:
            parts.append(self.method)
        return " / ".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "item": self.item,
            "method": self.method,
            "step": self.step,
            "verdict": self.verdict.value,
            "message": self.message,
            "counterexample": self.counterexample.to_dict() if self.counterexample else None,
            "vacuity_reason": self.vacuity_reason,
            "timed_out": self.timed_out,
            "resources": self.resources,
        }


@dataclass
class ItemReport:
    """Aggregated verdict of one rule or invariant."""

    item: str
    units: list[UnitResult] = field(default_factory=list)
    note: str = ""

    @property
    def verdict(self) -> Verdict:
        return aggregate([u.verdict for u in self.units])

    @property
    def counterexample(self) -> Counterexample | None:
        for unit in self.units:
            if unit.verdict == Verdict.REFUTED and unit.counterexample is not None:
                return unit.counterexample
        return None

    @property
    def vacuity_reason(self) -> str:
        if self.verdict != Verdict.VACUOUS:
            return ""
        if self.note:
            return self.note
        for unit in self.units:
            if unit.vacuity_reason:
                return unit.vacuity_reason
        return ""

    @property
    def timed_out(self) -> bool:
        return any(u.timed_out for u in self.units)

    def unit(self, method: str | None = None, step: str = "") -> UnitResult | None:
        """Find a unit by method (name or qualified name) and step."""
        for unit in self.units:
            if step and unit.step != step:
                continue
            if method is None or unit.method == method or (
                unit.method is not None and unit.method.split(".")[-1].startswith(f"{method}(")
            ):
                return unit
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "item": self.item,
            "verdict": self.verdict.value,
            "vacuity_reason": self.vacuity_reason,
            "timed_out": self.timed_out,
            "units": [u.to_dict() for u in self.units],
        }


@dataclass
class BatchReport:
    """Reports of every item of a batch."""

    items: list[ItemReport] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def __getitem__(self, name: str) -> ItemReport:
        for item in self.items:
            if item.item == name:
                return item
        raise KeyError(name)

    def __contains__(self, name: str) -> bool:
        return any(item.item == name for item in self.items)

    def verdicts(self) -> dict[str, Verdict]:
        return {item.item: item.verdict for item in self.items}

    def counts(self) -> dict[str, int]:
        counts = {v.value: 0 for v in Verdict}
        for item in self.items:
            counts[item.verdict.value] += 1
        return counts

    @property
    def ok(self) -> bool:
        """True when no item was refuted or errored."""
        return not any(item.verdict.is_failure for item in self.items)

    def format_summary(self) -> str:
        lines = [f"=== specexec: {len(self.items)} items in {self.elapsed_seconds:.2f}s ==="]
        for item in self.items:
            lines.append(f"{item.verdict.value.upper():8} {item.item}")
            for unit in item.units:
                if unit.verdict.is_failure and unit.message:
                    lines.append(f"    {unit.label}: {unit.message}")
                    if unit.counterexample is not None:
                        lines.append(unit.counterexample.format())
            if item.vacuity_reason:
                lines.append(f"    vacuous: {item.vacuity_reason}")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "elapsed_seconds": round(self.elapsed_seconds, 6),
            "counts": self.counts(),
            "items": [item.to_dict() for item in self.items],
        }


__all__ = [
    "Verdict",
    "aggregate",
    "Counterexample",
    "UnitResult",
    "ItemReport",
    "BatchReport",
]
