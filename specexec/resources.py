"""Resource accounting for verification units.
Each unit owns a ``ResourceTracker`` counting solver queries, method calls
and hook firings. Optional limits turn runaway units (hook storms, very long
call sequences) into ``LimitExceeded``, which the runner reports as UNKNOWN.
"""

from __future__ import annotations

import sys
import threading
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any

if sys.platform != "win32":
    import resource as sys_resource
else:
    import psutil


class ResourceType(Enum):
    """Types of resources to track."""

    SOLVER_QUERIES = auto()
    CALLS = auto()
    HOOK_FIRINGS = auto()
    TIME = auto()


class LimitExceeded(Exception):
    """Exception raised when a resource limit is exceeded."""

    def __init__(self, resource_type: ResourceType, current: Any, limit: Any):
        self.resource_type = resource_type
        self.current = current
        self.limit = limit
        super().__init__(f"{resource_type.name} limit exceeded: {current} >= {limit}")


@dataclass
class ResourceSnapshot:
    """Snapshot of the resource usage of one unit."""

    solver_queries: int = 0
    calls: int = 0
    hook_firings: int = 0
    elapsed_time: float = 0.0
    memory_mb: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "solver_queries": self.solver_queries,
            "calls": self.calls,
            "hook_firings": self.hook_firings,
            "elapsed_time": round(self.elapsed_time, 6),
            "memory_mb": self.memory_mb,
        }


@dataclass
class ResourceLimits:
    """Per-unit limits; ``None`` means unlimited."""

    max_solver_queries: int | None = None
    max_calls: int | None = None
    max_hook_firings: int | None = None
    timeout_seconds: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_solver_queries": self.max_solver_queries,
            "max_calls": self.max_calls,
            "max_hook_firings": self.max_hook_firings,
            "timeout_seconds": self.timeout_seconds,
        }


class ResourceTracker:
    """Tracks and enforces the resource limits of one unit."""

    def __init__(self, limits: ResourceLimits | None = None):
        self.limits = limits or ResourceLimits()
        self._solver_queries = 0
        self._calls = 0
        self._hook_firings = 0
        self._start_time: float | None = None
        self._lock = threading.RLock()

    def start(self) -> None:
        """Start tracking and reset counters."""
        with self._lock:
            self._start_time = time.perf_counter()
            self._solver_queries = 0
            self._calls = 0
            self._hook_firings = 0

    @property
    def elapsed_time(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.perf_counter() - self._start_time

    @property
    def memory_usage_mb(self) -> float:
        """Peak resident memory of the process in MB."""
        if sys.platform == "win32":
            return psutil.Process().memory_info().rss / (1024 * 1024)
        usage = sys_resource.getrusage(sys_resource.RUSAGE_SELF)
        return usage.ru_maxrss / 1024

    def snapshot(self) -> ResourceSnapshot:
        with self._lock:
            return ResourceSnapshot(
                solver_queries=self._solver_queries,
                calls=self._calls,
                hook_firings=self._hook_firings,
                elapsed_time=self.elapsed_time,
                memory_mb=self.memory_usage_mb,
            )

    @staticmethod
    def _check(resource_type: ResourceType, current: Any, limit: Any) -> None:
        if limit is not None and current >= limit:
            raise LimitExceeded(resource_type, current, limit)

    def record_query(self) -> int:
        with self._lock:
            self.check_time_limit()
            self._check(ResourceType.SOLVER_QUERIES, self._solver_queries, self.limits.max_solver_queries)
            self._solver_queries += 1
            return self._solver_queries

    def record_call(self) -> int:
        with self._lock:
            self.check_time_limit()
            self._check(ResourceType.CALLS, self._calls, self.limits.max_calls)
            self._calls += 1
            return self._calls

    def record_hook(self) -> int:
        with self._lock:
            self._check(ResourceType.HOOK_FIRINGS, self._hook_firings, self.limits.max_hook_firings)
            self._hook_firings += 1
            return self._hook_firings

    def check_time_limit(self) -> None:
        self._check(ResourceType.TIME, self.elapsed_time, self.limits.timeout_seconds)


__all__ = [
    "ResourceType",
    "LimitExceeded",
    "ResourceSnapshot",
    "ResourceLimits",
    "ResourceTracker",
]
