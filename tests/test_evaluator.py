"""Tests for the expression evaluator."""

import pytest
import z3

from specexec.core.exceptions import EvaluationError
from specexec.core.ghosts import GhostShape
from specexec.core.locations import Location
from specexec.core.path import ObligationKind
from specexec.core.values import (
    ADDRESS,
    BOOL,
    MATHINT,
    UINT8,
    UINT32,
    UINT256,
    StructType,
    const,
)
from specexec.execution.dispatcher import HookMode, LocationPattern
from specexec.execution.methods import MethodDescriptor
from specexec.execution.system import Environment
from specexec.spec import ast
from specexec.spec.evaluator import Evaluator
from specexec.spec.snapshots import SnapshotManager


def balances(key):
    return ast.StorageRef("balances", (ast.KeyStep(key),))


@pytest.fixture
def evaluator(unit, symbols, path):
    state, ghosts, _ = unit
    definitions = {
        "double": ast.Definition("double", (ast.Param("x", MATHINT),), ast.BinOp("+", ast.Var("x"), ast.Var("x"))),
        "loop": ast.Definition("loop", (), ast.Apply("loop")),
    }
    return Evaluator(symbols, path, state, ghosts, SnapshotManager(state), definitions)


def value(evaluator, expr, **scope):
    return evaluator.evaluate(expr, scope).as_python()


class TestOperators:
    def test_arithmetic(self, evaluator):
        expr = ast.BinOp("*", ast.BinOp("+", ast.Const(2), ast.Const(3)), ast.Const(4))
        assert value(evaluator, expr) == 20
        assert value(evaluator, ast.BinOp("**", ast.Const(2), ast.Const(8))) == 256
        assert value(evaluator, ast.BinOp("%", ast.Const(7), ast.Const(3))) == 1
        assert value(evaluator, ast.UnaryOp("-", ast.Const(5))) == -5

    def test_logic(self, evaluator):
        t, f = ast.Const(True), ast.Const(False)
        assert value(evaluator, ast.BinOp("=>", f, f)) is True
        assert value(evaluator, ast.BinOp("<=>", t, f)) is False
        assert value(evaluator, ast.BinOp("||", f, t)) is True
        assert value(evaluator, ast.UnaryOp("!", t)) is False

    def test_comparison(self, evaluator):
        assert value(evaluator, ast.BinOp("<=", ast.Const(3), ast.Const(3))) is True
        assert value(evaluator, ast.BinOp("!=", ast.Const(3), ast.Const(3))) is False

    def test_unknown_variable(self, evaluator):
        with pytest.raises(EvaluationError):
            evaluator.evaluate(ast.Var("missing"))

    def test_unknown_operator(self, evaluator):
        with pytest.raises(EvaluationError):
            evaluator.evaluate(ast.BinOp("^", ast.Const(1), ast.Const(2)))

    def test_symbolic_exponent(self, evaluator, symbols):
        x, _ = symbols.fresh(MATHINT, "x")
        with pytest.raises(EvaluationError):
            evaluator.evaluate(ast.BinOp("**", ast.Const(2), ast.Var("x")), {"x": x})

    def test_ite(self, evaluator):
        expr = ast.Ite(ast.Const(False), ast.Const(1), ast.Const(2))
        assert value(evaluator, expr) == 2


class TestGuards:
    def test_and_guards_right_operand(self, evaluator, symbols, path):
        b, _ = symbols.fresh(BOOL, "b")
        y, _ = symbols.fresh(MATHINT, "y")
        expr = ast.BinOp("&&", ast.Var("b"), ast.BinOp(">", ast.Cast(ast.Var("y"), UINT8), ast.Const(0)))
        evaluator.evaluate(expr, {"b": b, "y": y})
        (obligation,) = path.obligations
        assert obligation.kind == ObligationKind.CAST
        assert obligation.guard.eq(b.expr)

    def test_or_guards_right_operand(self, evaluator, symbols, path):
        b, _ = symbols.fresh(BOOL, "b")
        y, _ = symbols.fresh(MATHINT, "y")
        expr = ast.BinOp("||", ast.Var("b"), ast.BinOp(">", ast.Cast(ast.Var("y"), UINT8), ast.Const(0)))
        evaluator.evaluate(expr, {"b": b, "y": y})
        (obligation,) = path.obligations
        assert obligation.guard.eq(z3.Not(b.expr))

    def test_ite_branches_are_guarded(self, evaluator, symbols, path):
        b, _ = symbols.fresh(BOOL, "b")
        y, _ = symbols.fresh(MATHINT, "y")
        expr = ast.Ite(ast.Var("b"), ast.Cast(ast.Var("y"), UINT8), ast.Const(0))
        evaluator.evaluate(expr, {"b": b, "y": y})
        (obligation,) = path.obligations
        assert obligation.guard.eq(b.expr)


class TestCasts:
    def test_assert_cast(self, evaluator, symbols, path):
        y, _ = symbols.fresh(MATHINT, "y")
        result = evaluator.evaluate(ast.Cast(ast.Var("y"), UINT8, ast.CastMode.ASSERT), {"y": y})
        assert result.type == UINT8
        assert len(path.obligations) == 1
        assert path.assumptions == []

    def test_assume_cast(self, evaluator, symbols, path, prove):
        y, _ = symbols.fresh(MATHINT, "y")
        evaluator.evaluate(ast.Cast(ast.Var("y"), UINT8, ast.CastMode.ASSUME), {"y": y})
        assert path.obligations == []
        assert [a.tag for a in path.assumptions] == ["cast"]
        assert prove(y.expr <= 255)

    def test_cannot_cast_bool(self, evaluator):
        with pytest.raises(EvaluationError):
            evaluator.evaluate(ast.Cast(ast.Const(True), UINT8))


class TestState:
    def test_storage_reference(self, evaluator, unit, ctx, equal):
        state, _, _ = unit
        a = const(ctx, ADDRESS, 1)
        state.write(Location("balances").key(a), const(ctx, UINT256, 70))
        result = evaluator.evaluate(balances(ast.Var("a")), {"a": a})
        assert equal(result, const(ctx, MATHINT, 70))

    def test_reading_does_not_fire_hooks(self, evaluator, unit):
        state, _, dispatcher = unit
        dispatcher.register(LocationPattern("totalSupply"), lambda hook: None, HookMode.READ)
        evaluator.evaluate(ast.StorageRef("totalSupply"))
        assert dispatcher.total_firings() == 0
        assert state.trace == []

    def test_ghost_reference(self, evaluator, unit, ctx, equal):
        _, ghosts, _ = unit
        ghosts.declare("credit", GhostShape.mapping((ADDRESS,), MATHINT))
        ghosts.reset()
        a = const(ctx, ADDRESS, 4)
        ghosts.set("credit", (a,), const(ctx, MATHINT, 12))
        result = evaluator.evaluate(ast.GhostRef("credit", (ast.Var("a"),)), {"a": a})
        assert equal(result, const(ctx, MATHINT, 12))

    def test_struct_field(self, evaluator, ctx):
        point = StructType("Point", (("x", UINT8), ("y", UINT8)))
        p = const(ctx, point, {"x": 3, "y": 4})
        assert value(evaluator, ast.StructField(ast.Var("p"), "y"), p=p) == 4


class TestQuantifiers:
    def test_forall_over_domain(self, evaluator, prove):
        expr = ast.Quantified(
            ast.QuantifierKind.FORALL, "x", UINT8, ast.BinOp("<=", ast.Var("x"), ast.Const(255))
        )
        assert prove(evaluator.evaluate_bool(expr))

    def test_exists(self, evaluator, prove):
        witness = ast.Quantified(
            ast.QuantifierKind.EXISTS, "x", UINT8, ast.BinOp("==", ast.Var("x"), ast.Const(7))
        )
        impossible = ast.Quantified(
            ast.QuantifierKind.EXISTS, "x", UINT8, ast.BinOp(">", ast.Var("x"), ast.Const(300))
        )
        assert prove(evaluator.evaluate_bool(witness))
        assert prove(z3.Not(evaluator.evaluate_bool(impossible)))

    def test_storage_domains_fold_into_body(self, evaluator, path, prove):
        expr = ast.Quantified(
            ast.QuantifierKind.FORALL,
            "a",
            ADDRESS,
            ast.BinOp("<", balances(ast.Var("a")), ast.Const(2**256)),
        )
        formula = evaluator.evaluate_bool(expr)
        assert path.assumptions == []
        assert prove(formula)

    def test_obligations_are_closed(self, evaluator, path, prove):
        expr = ast.Quantified(
            ast.QuantifierKind.FORALL,
            "x",
            UINT8,
            ast.BinOp(">=", ast.Cast(ast.Var("x"), UINT256), ast.Const(0)),
        )
        evaluator.evaluate(expr)
        (obligation,) = path.obligations
        assert z3.is_quantifier(obligation.condition)
        assert prove(obligation.condition)

    def test_cannot_quantify_struct(self, evaluator):
        point = StructType("Point", (("x", UINT8),))
        expr = ast.Quantified(ast.QuantifierKind.FORALL, "p", point, ast.Const(True))
        with pytest.raises(EvaluationError):
            evaluator.evaluate(expr)


class TestContext:
    def test_env_field(self, evaluator, symbols):
        env, _ = Environment.fresh(symbols)
        result = evaluator.evaluate(ast.EnvField("e", "sender"), {"e": env})
        assert result.type == ADDRESS
        assert env.accessed == {"sender"}
        with pytest.raises(EvaluationError):
            evaluator.evaluate(ast.EnvField("e", "sender"), {})

    def test_method_field(self, evaluator):
        method = MethodDescriptor("balanceOf", (ADDRESS,), view=True)
        scope = {"f": method}
        assert value(evaluator, ast.MethodField("f", "isView"), **scope) is True
        selector = evaluator.evaluate(ast.MethodField("f", "selector"), scope)
        assert selector.type == UINT32
        assert selector.as_python() == method.selector
        assert value(evaluator, ast.MethodField("f", "numberOfArguments"), **scope) == 1
        with pytest.raises(EvaluationError):
            evaluator.evaluate(ast.MethodField("f", "name"), scope)

    def test_last_reverted_defaults_false(self, evaluator):
        assert value(evaluator, ast.LastReverted()) is False


class TestDefinitions:
    def test_apply(self, evaluator):
        assert value(evaluator, ast.Apply("double", (ast.Const(21),))) == 42

    def test_arity(self, evaluator):
        with pytest.raises(EvaluationError):
            evaluator.evaluate(ast.Apply("double", ()))

    def test_unknown(self, evaluator):
        with pytest.raises(EvaluationError):
            evaluator.evaluate(ast.Apply("triple", (ast.Const(1),)))

    def test_recursion(self, evaluator):
        with pytest.raises(EvaluationError, match="recursive"):
            evaluator.evaluate(ast.Apply("loop"))

    def test_definition_body_sees_only_its_params(self, evaluator, symbols):
        y, _ = symbols.fresh(MATHINT, "y")
        evaluator.definitions["leak"] = ast.Definition("leak", (), ast.Var("y"))
        with pytest.raises(EvaluationError):
            evaluator.evaluate(ast.Apply("leak"), {"y": y})


class TestBuiltins:
    def test_abs(self, evaluator):
        assert value(evaluator, ast.Builtin("abs", (ast.Const(-3),))) == 3
        assert value(evaluator, ast.Builtin("abs", (ast.Const(3),))) == 3

    def test_min_max(self, evaluator):
        args = (ast.Const(2), ast.Const(5))
        assert value(evaluator, ast.Builtin("min", args)) == 2
        assert value(evaluator, ast.Builtin("max", args)) == 5

    def test_unknown_builtin(self, evaluator):
        with pytest.raises(EvaluationError):
            evaluator.evaluate(ast.Builtin("sqrt", (ast.Const(4),)))


class TestCalls:
    def test_no_handler(self, evaluator):
        with pytest.raises(EvaluationError):
            evaluator.evaluate(ast.CallExpr("balanceOf", args=(ast.Const(1),)))

    def test_call_inside_quantifier(self, evaluator):
        evaluator.calls = lambda call, scope: pytest.fail("call must not run")
        body = ast.BinOp("==", ast.CallExpr("balanceOf", args=(ast.Var("a"),)), ast.Const(0))
        expr = ast.Quantified(ast.QuantifierKind.FORALL, "a", ADDRESS, body)
        with pytest.raises(EvaluationError, match="quantifier"):
            evaluator.evaluate(expr)

    def test_call_inside_snapshot(self, evaluator):
        evaluator.calls = lambda call, scope: pytest.fail("call must not run")
        evaluator.snapshots.take("before")
        expr = ast.At(ast.CallExpr("balanceOf", args=(ast.Const(1),)), "before")
        with pytest.raises(EvaluationError, match="before"):
            evaluator.evaluate(expr)
