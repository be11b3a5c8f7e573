"""Z3 solver bridge.
Every verification unit owns one ``z3.Context``; the bridge builds a fresh
``z3.Solver`` in that context for each query, so no constraint can leak from
one unit into another. Queries are bounded by a per-query timeout, by an
optional ``SolverPool`` capping how many run at once, and by a
``CancelToken`` that interrupts the unit's context when a global deadline
passes.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum, auto

import z3

from specexec.core.exceptions import SolverCancelled
from specexec.logging import get_logger


class SolverStatus(Enum):
    SAT = auto()
    UNSAT = auto()
    UNKNOWN = auto()


@dataclass
class SolverResult:
    """Result of a satisfiability check."""

    status: SolverStatus
    model: z3.ModelRef | None = None
    reason: str = ""

    @property
    def is_sat(self) -> bool:
        return self.status == SolverStatus.SAT

    @property
    def is_unsat(self) -> bool:
        return self.status == SolverStatus.UNSAT

    @property
    def is_unknown(self) -> bool:
        return self.status == SolverStatus.UNKNOWN

    @staticmethod
    def sat(model: z3.ModelRef) -> SolverResult:
        return SolverResult(SolverStatus.SAT, model)

    @staticmethod
    def unsat() -> SolverResult:
        return SolverResult(SolverStatus.UNSAT)

    @staticmethod
    def unknown(reason: str = "") -> SolverResult:
        return SolverResult(SolverStatus.UNKNOWN, reason=reason)


class CancelToken:
    """Cooperative cancellation for the queries of one unit.
    ``cancel()`` is safe to call from any thread; it interrupts the bound
    Z3 context so a running ``check()`` returns ``unknown`` promptly.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._contexts: list[z3.Context] = []
        self.reason = "cancelled"

    def bind(self, ctx: z3.Context) -> None:
        with self._lock:
            self._contexts.append(ctx)
            cancelled = self._event.is_set()
        if cancelled:
            ctx.interrupt()

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            self.reason = reason
            self._event.set()
            contexts = list(self._contexts)
        for ctx in contexts:
            ctx.interrupt()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        """Raise ``SolverCancelled`` if the token was cancelled."""
        if self._event.is_set():
            raise SolverCancelled(self.reason)


class SolverPool:
    """Bounds the number of concurrently running solver queries."""

    def __init__(self, max_concurrent: int = 4):
        self.max_concurrent = max_concurrent
        self._semaphore = threading.BoundedSemaphore(max_concurrent)

    def acquire(self, token: CancelToken | None = None) -> None:
        while not self._semaphore.acquire(timeout=0.05):
            if token is not None:
                token.check()

    def release(self) -> None:
        self._semaphore.release()


class SolverBridge:
    """Runs satisfiability queries for one unit.
    Example:
        bridge = SolverBridge(ctx, timeout_ms=5000)
        result = bridge.solve([x > 0, x < 0])
        assert result.is_unsat
    """

    def __init__(
        self,
        ctx: z3.Context,
        timeout_ms: int = 10000,
        pool: SolverPool | None = None,
        token: CancelToken | None = None,
        tracker=None,
    ):
        self.ctx = ctx
        self.timeout_ms = timeout_ms
        self.pool = pool
        self.token = token
        self.tracker = tracker
        self._query_count = 0
        self._unknown_count = 0
        self._logger = get_logger()
        if token is not None:
            token.bind(ctx)

    def solve(self, formulas: Iterable[z3.BoolRef]) -> SolverResult:
        """Check the conjunction of ``formulas``.
        Raises:
            SolverCancelled: If the unit's token was cancelled before or
                during the query.
        """
        if self.token is not None:
            self.token.check()
        if self.pool is not None:
            self.pool.acquire(self.token)
        try:
            solver = z3.Solver(ctx=self.ctx)
            solver.set("timeout", self.timeout_ms)
            solver.add(*formulas)
            self._query_count += 1
            if self.tracker is not None:
                self.tracker.record_query()
            with self._logger.timer("query", category="solver"):
                answer = solver.check()
            if answer == z3.sat:
                return SolverResult.sat(solver.model())
            if answer == z3.unsat:
                return SolverResult.unsat()
            if self.token is not None:
                self.token.check()
            self._unknown_count += 1
            reason = solver.reason_unknown()
            self._logger.debug(f"query returned unknown: {reason}", category="solver")
            return SolverResult.unknown(reason)
        finally:
            if self.pool is not None:
                self.pool.release()

    def is_sat(self, formulas: Iterable[z3.BoolRef]) -> bool:
        return self.solve(formulas).is_sat

    def get_stats(self) -> dict[str, int]:
        return {"queries": self._query_count, "unknown": self._unknown_count}

    def __repr__(self) -> str:
        return f"SolverBridge(queries={self._query_count}, timeout_ms={self.timeout_ms})"


__all__ = [
    "SolverStatus",
    "SolverResult",
    "CancelToken",
    "SolverPool",
    "SolverBridge",
]
