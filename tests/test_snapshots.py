"""Tests for named snapshots and snapshot-qualified evaluation."""

import pytest

from specexec.core.exceptions import EvaluationError
from specexec.core.locations import Location
from specexec.core.values import ADDRESS, MATHINT, UINT256, const
from specexec.execution.dispatcher import LocationPattern
from specexec.spec import ast
from specexec.spec.evaluator import Evaluator
from specexec.spec.snapshots import SnapshotManager


@pytest.fixture
def manager(unit):
    state, _, _ = unit
    return SnapshotManager(state)


def account(ctx, who):
    return Location("balances").key(const(ctx, ADDRESS, who))


def test_unknown_snapshot(manager):
    with pytest.raises(EvaluationError):
        manager.evaluate_at("missing", lambda: None)
    with pytest.raises(EvaluationError):
        manager.restore("missing")


def test_take_replaces(manager, unit, ctx, equal):
    state, _, _ = unit
    manager.take("s")
    state.write(account(ctx, 1), const(ctx, UINT256, 8))
    manager.take("s")
    assert manager.names() == ["s"]
    assert equal(manager.evaluate_at("s", lambda: state.load(account(ctx, 1))), const(ctx, MATHINT, 8))


def test_evaluate_at_has_no_side_effects(manager, unit, ctx, equal):
    state, _, dispatcher = unit
    dispatcher.register(LocationPattern("balances").key("who"), lambda hook: None)
    state.write(account(ctx, 1), const(ctx, UINT256, 100))
    manager.take("before")
    state.write(account(ctx, 1), const(ctx, UINT256, 60))
    firings = dispatcher.total_firings()
    trace = len(state.trace)

    seen = manager.evaluate_at("before", lambda: state.load(account(ctx, 1)))

    assert equal(seen, const(ctx, MATHINT, 100))
    assert dispatcher.total_firings() == firings
    assert len(state.trace) == trace
    assert equal(state.load(account(ctx, 1)), const(ctx, MATHINT, 60))
    assert manager.active is None


def test_live_view_restored_after_error(manager, unit, ctx, equal):
    state, _, _ = unit
    manager.take("before")
    state.write(account(ctx, 1), const(ctx, UINT256, 60))

    def explode():
        assert manager.active == "before"
        raise EvaluationError("boom")

    with pytest.raises(EvaluationError, match="boom"):
        manager.evaluate_at("before", explode)
    assert manager.active is None
    assert equal(state.load(account(ctx, 1)), const(ctx, MATHINT, 60))


def test_restore_is_silent(manager, unit, ctx, equal):
    state, _, dispatcher = unit
    dispatcher.register(LocationPattern("balances").key("who"), lambda hook: None)
    before = state.load(account(ctx, 1))
    manager.take("start")
    state.write(account(ctx, 1), const(ctx, UINT256, 60))
    manager.restore("start")
    assert dispatcher.total_firings() == 1
    assert equal(state.load(account(ctx, 1)), before)


def test_at_expression(unit, symbols, path, ctx, equal):
    state, ghosts, _ = unit
    snapshots = SnapshotManager(state)
    evaluator = Evaluator(symbols, path, state, ghosts, snapshots)
    a = const(ctx, ADDRESS, 1)
    state.write(account(ctx, 1), const(ctx, UINT256, 5))
    snapshots.take("init")
    state.write(account(ctx, 1), const(ctx, UINT256, 9))
    ref = ast.StorageRef("balances", (ast.KeyStep(ast.Var("a")),))
    delta = evaluator.evaluate(ast.BinOp("-", ref, ast.At(ref, "init")), {"a": a})
    assert equal(delta, const(ctx, MATHINT, 4))
    assert equal(evaluator.evaluate_at("init", ref, {"a": a}), const(ctx, MATHINT, 5))


def test_get_and_clear(manager):
    taken = manager.take("s")
    assert manager.get("s") is taken
    assert "s" in manager
    manager.clear()
    assert "s" not in manager
    with pytest.raises(EvaluationError):
        manager.get("s")
