"""Batch verification.
A batch loads a specification once (raising ``LoadError`` before any check
starts), then checks every unit on a thread pool. Units share nothing but
the read-only loaded specification and the ``SolverPool`` bounding how
many solver queries run at once.
A global timeout cancels the tokens of every unit still running; their
in-flight queries are interrupted and they report UNKNOWN. Units that
already finished keep their verdicts.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor

from specexec.config import SpecExecConfig
from specexec.core.solver import CancelToken, SolverPool
from specexec.execution.system import TransitionSystem
from specexec.logging import get_logger
from specexec.resources import ResourceLimits
from specexec.spec import ast
from specexec.spec.loader import LoadedSpecification, UnitPlan, load_specification
from specexec.verification.runner import UnitRunner
from specexec.verification.verdicts import BatchReport, ItemReport, UnitResult


class VerificationBatch:
    """Checks all items of a specification against a target system.
    Example:
        batch = VerificationBatch(spec, token_model)
        report = batch.run()
        print(report.format_summary())
    """

    def __init__(
        self,
        spec: ast.Specification,
        system: TransitionSystem,
        config: SpecExecConfig | None = None,
        limits: ResourceLimits | None = None,
    ):
        self.config = config or SpecExecConfig()
        self.limits = limits
        self._logger = get_logger()
        self.loaded: LoadedSpecification = load_specification(spec, system, self.config)

    def _run_unit(self, plan: UnitPlan, pool: SolverPool, token: CancelToken) -> UnitResult:
        runner = UnitRunner(self.loaded, self.config, pool, self.limits)
        return runner.run(plan, token)

    def run(self, parallel: bool = True) -> BatchReport:
        """Check every unit and aggregate the verdicts per item."""
        start = time.perf_counter()
        plans = self.loaded.units()
        tokens = [CancelToken() for _ in plans]
        pool = SolverPool(self.config.solver.max_concurrent_queries)
        timeout = self.config.runner.global_timeout_seconds
        timer = None
        if timeout is not None:
            timer = threading.Timer(timeout, self._cancel_all, args=(tokens,))
            timer.daemon = True
            timer.start()
        self._logger.verbose(f"checking {len(plans)} units", category="batch")
        try:
            if parallel and len(plans) > 1:
                with ThreadPoolExecutor(max_workers=self.config.runner.max_workers) as executor:
                    futures = [
                        executor.submit(self._run_unit, plan, pool, token)
                        for plan, token in zip(plans, tokens)
                    ]
                    results = [future.result() for future in futures]
            else:
                results = [self._run_unit(plan, pool, token) for plan, token in zip(plans, tokens)]
        finally:
            if timer is not None:
                timer.cancel()
        report = BatchReport(self._group(results), time.perf_counter() - start)
        self._logger.header(f"{len(report.items)} items checked in {report.elapsed_seconds:.2f}s")
        for item in report.items:
            self._logger.verdict(item.item, item.verdict.value, item.vacuity_reason)
        return report

    def _cancel_all(self, tokens: list[CancelToken]) -> None:
        self._logger.warning("global timeout reached, cancelling running units", category="batch")
        for token in tokens:
            token.cancel("timed out")

    def _group(self, results: list[UnitResult]) -> list[ItemReport]:
        reports = {
            name: ItemReport(name, note=self.loaded.notes.get(name, ""))
            for name in self.loaded.plans
        }
        for result in results:
            reports[result.item].units.append(result)
        return list(reports.values())


def verify(
    spec: ast.Specification,
    system: TransitionSystem,
    config: SpecExecConfig | None = None,
    parallel: bool = True,
) -> BatchReport:
    """Check ``spec`` against ``system`` and return the report."""
    return VerificationBatch(spec, system, config).run(parallel=parallel)


__all__ = ["VerificationBatch", "verify"]
