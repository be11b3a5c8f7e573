"""Shared fixtures: a small bank contract and per-test Z3 plumbing."""

from __future__ import annotations

import pytest
import z3

from specexec.core.ghosts import GhostStore
from specexec.core.locations import MappingType, StorageLayout
from specexec.core.path import PathCondition
from specexec.core.state import StateModel
from specexec.core.values import ADDRESS, UINT256, SymbolFactory, eq
from specexec.execution.dispatcher import HookDispatcher
from specexec.execution.system import ContractModel
from specexec.logging import LogLevel, configure_logging
from specexec.testing.models import make_bank


@pytest.fixture(autouse=True)
def quiet_logger():
    configure_logging(level=LogLevel.QUIET, color=False)


@pytest.fixture
def bank() -> ContractModel:
    return make_bank()


@pytest.fixture
def ctx() -> z3.Context:
    return z3.Context()


@pytest.fixture
def symbols(ctx) -> SymbolFactory:
    return SymbolFactory(ctx)


@pytest.fixture
def path(ctx) -> PathCondition:
    return PathCondition(ctx)


@pytest.fixture
def ledger_layout() -> StorageLayout:
    layout = StorageLayout()
    layout.add("balances", MappingType(ADDRESS, UINT256))
    layout.add("totalSupply", UINT256)
    return layout


@pytest.fixture
def unit(ledger_layout, symbols, path):
    """A bare state/ghost/dispatcher triple over the ledger layout."""
    ghosts = GhostStore(symbols, path)
    dispatcher = HookDispatcher(ledger_layout, path, ghosts)
    state = StateModel(ledger_layout, symbols, path, dispatcher)
    return state, ghosts, dispatcher


@pytest.fixture
def prove(path):
    """Check that ``goal`` follows from the path assumptions (and ``extra``)."""

    def check(goal, extra=()):
        solver = z3.Solver(ctx=path.ctx)
        solver.add(*path.constraints(), *extra)
        solver.add(z3.Not(goal))
        return solver.check() == z3.unsat

    return check


@pytest.fixture
def equal(prove):
    """Check that two symbolic values are provably equal."""

    def check(a, b):
        return prove(eq(a, b).expr)

    return check
