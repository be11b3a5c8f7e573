"""Tests for storage hook dispatch."""

import pytest
import z3
from hypothesis import given, settings

from specexec.core.exceptions import LoadError
from specexec.core.ghosts import GhostShape, GhostStore
from specexec.core.locations import Location, MappingType, StorageLayout
from specexec.core.path import PathCondition
from specexec.core.state import StateModel
from specexec.core.values import (
    ADDRESS,
    BOOL,
    MATHINT,
    UINT8,
    UINT256,
    StructType,
    SymbolFactory,
    add,
    const,
    sub,
)
from specexec.execution.dispatcher import HookDispatcher, HookMode, LocationPattern
from specexec.testing.strategies import write_sequences


def make_unit(zeroed=True):
    layout = StorageLayout()
    layout.add("balances", MappingType(ADDRESS, UINT256))
    layout.add("totalSupply", UINT256)
    symbols = SymbolFactory(z3.Context())
    path = PathCondition(symbols.ctx)
    ghosts = GhostStore(symbols, path)
    dispatcher = HookDispatcher(layout, path, ghosts)
    state = StateModel(layout, symbols, path, dispatcher)
    if zeroed:
        state.zero_initialize()
    return state, ghosts, dispatcher


def track_sum(dispatcher, ghosts, ctx):
    """Keep ghost ``sum`` equal to the sum of all balances."""
    ghosts.declare(
        "sum", GhostShape.scalar(MATHINT), init_axiom=lambda store: store.get("sum").expr == 0
    )
    ghosts.reset()

    @dispatcher.on_write(LocationPattern("balances").key("who"))
    def update(hook):
        total = hook.ghosts.get("sum")
        hook.ghosts.set("sum", (), add(total, sub(hook.new, hook.old)))


def proves(path, goal):
    solver = z3.Solver(ctx=path.ctx)
    solver.add(*path.constraints(), z3.Not(goal))
    return solver.check() == z3.unsat


def balance(ctx, who):
    return Location("balances").key(const(ctx, ADDRESS, who))


class TestPatterns:
    def test_binder_captures_key(self, ctx):
        who = const(ctx, ADDRESS, 3)
        match = LocationPattern("balances").key("who").match(Location("balances").key(who), ctx)
        assert match is not None
        assert z3.is_true(match.guard)
        assert match.keys["who"] is who

    def test_shape_mismatch(self, ctx):
        pattern = LocationPattern("balances").key("who")
        assert pattern.match(Location("totalSupply"), ctx) is None

    def test_pinned_key(self, ctx, symbols):
        pattern = LocationPattern("balances").key(pinned=1)
        assert pattern.match(balance(ctx, 2), ctx) is None
        assert z3.is_true(pattern.match(balance(ctx, 1), ctx).guard)
        k, _ = symbols.fresh(ADDRESS, "k")
        guard = pattern.match(Location("balances").key(k), ctx).guard
        assert not z3.is_true(guard)

    def test_pinned_and_bound_keys(self, ctx, symbols):
        pattern = LocationPattern("allowances").key(pinned=1).key("spender")
        k, _ = symbols.fresh(ADDRESS, "k")
        s, _ = symbols.fresh(ADDRESS, "s")
        match = pattern.match(Location("allowances").key(k).key(s), ctx)
        assert match.keys["spender"] is s
        solver = z3.Solver(ctx=ctx)
        solver.add(match.guard != (k.expr == 1))
        assert solver.check() == z3.unsat
        assert pattern.match(Location("allowances").key(const(ctx, ADDRESS, 2)).key(s), ctx) is None

    def test_str(self):
        assert str(LocationPattern("balances").key("who")) == "balances[who]"
        assert str(LocationPattern("users").index(pinned=0).field("active")) == "users[0].active"
        assert str(LocationPattern.wildcard()) == "*"


class TestValidation:
    @pytest.fixture
    def dispatcher(self, path):
        layout = StorageLayout()
        layout.add("balances", MappingType(ADDRESS, UINT256))
        layout.add("point", StructType("Point", (("x", UINT8), ("y", UINT8))))
        return HookDispatcher(layout, path)

    def test_unknown_root(self, dispatcher):
        with pytest.raises(LoadError):
            dispatcher.register(LocationPattern("missing"), lambda hook: None)

    def test_key_type_mismatch(self, dispatcher):
        with pytest.raises(LoadError):
            dispatcher.register(LocationPattern("balances").key("k", key_type=UINT256), lambda hook: None)

    def test_value_type_mismatch(self, dispatcher):
        pattern = LocationPattern("balances").key("k").typed(BOOL)
        with pytest.raises(LoadError):
            dispatcher.register(pattern, lambda hook: None)

    def test_pattern_must_reach_a_value(self, dispatcher):
        with pytest.raises(LoadError):
            dispatcher.register(LocationPattern("balances"), lambda hook: None)
        with pytest.raises(LoadError):
            dispatcher.register(LocationPattern("point"), lambda hook: None)

    def test_wildcard_needs_wildcard_mode(self, dispatcher):
        with pytest.raises(LoadError):
            dispatcher.register(LocationPattern.wildcard(), lambda hook: None, HookMode.WRITE)
        with pytest.raises(LoadError):
            dispatcher.register(LocationPattern("point").field("x"), lambda hook: None, HookMode.ANY_WRITE)

    def test_valid_field_pattern(self, dispatcher):
        binding = dispatcher.register(LocationPattern("point").field("x").typed(UINT8), lambda hook: None)
        assert binding.order == 0


class TestDispatch:
    def test_declaration_order(self):
        state, _, dispatcher = make_unit()
        fired = []
        pattern = LocationPattern("balances").key("who")
        dispatcher.register(pattern, lambda hook: fired.append("first"))
        dispatcher.register(pattern, lambda hook: fired.append("second"))
        dispatcher.register(LocationPattern("totalSupply"), lambda hook: fired.append("other"))
        state.write(balance(state.ctx, 1), const(state.ctx, UINT256, 5))
        assert fired == ["first", "second"]

    def test_fires_exactly_once_per_write(self):
        state, _, dispatcher = make_unit()
        dispatcher.register(LocationPattern("balances").key("who"), lambda hook: None)
        for who in (1, 2, 1):
            state.write(balance(state.ctx, who), const(state.ctx, UINT256, who))
        assert dispatcher.fire_counts == {0: 3}
        assert dispatcher.total_firings() == 3

    def test_old_and_new(self):
        state, _, dispatcher = make_unit()
        seen = []

        @dispatcher.on_write(LocationPattern("balances").key("who"))
        def record(hook):
            seen.append((hook.old.as_python(), hook.new.as_python()))

        ctx = state.ctx
        state.write(balance(ctx, 1), const(ctx, UINT256, 100))
        state.write(balance(ctx, 1), const(ctx, UINT256, 60))
        assert seen == [(0, 100), (100, 60)]

    def test_ghost_tracks_last_value(self):
        state, ghosts, dispatcher = make_unit()
        ctx = state.ctx
        ghosts.declare("last", GhostShape.mapping((ADDRESS,), MATHINT))
        ghosts.reset()

        @dispatcher.on_write(LocationPattern("balances").key("who"))
        def mirror(hook):
            hook.ghosts.set("last", (hook.keys["who"],), hook.new)

        state.write(balance(ctx, 1), const(ctx, UINT256, 100))
        state.write(balance(ctx, 1), const(ctx, UINT256, 60))
        a = const(ctx, ADDRESS, 1)
        assert proves(state.path, ghosts.get("last", (a,)).expr == 60)
        assert proves(state.path, ghosts.get("last", (a,)).expr == state.load(balance(ctx, 1)).expr)

    def test_disjoint_pinned_never_fires(self):
        state, _, dispatcher = make_unit()
        dispatcher.register(LocationPattern("balances").key(pinned=1), lambda hook: None)
        state.write(balance(state.ctx, 2), const(state.ctx, UINT256, 5))
        assert dispatcher.total_firings() == 0

    def test_pinned_key_fires_under_guard(self):
        state, ghosts, dispatcher = make_unit()
        ctx = state.ctx
        ghosts.declare("hit", GhostShape.scalar(BOOL))
        ghosts.reset()
        ghosts.set("hit", (), const(ctx, BOOL, False))
        dispatcher.register(
            LocationPattern("balances").key(pinned=1),
            lambda hook: hook.ghosts.set("hit", (), const(ctx, BOOL, True)),
        )
        k, _ = state.symbols.fresh(ADDRESS, "k")
        state.write(Location("balances").key(k), const(ctx, UINT256, 5))
        hit = ghosts.get("hit").expr
        assert dispatcher.total_firings() == 1
        assert proves(state.path, z3.Implies(k.expr == 1, hit))
        assert proves(state.path, z3.Implies(k.expr != 1, z3.Not(hit)))

    def test_hook_inherits_path_guard(self):
        state, ghosts, dispatcher = make_unit()
        ctx = state.ctx
        track_sum(dispatcher, ghosts, ctx)
        flag, _ = state.symbols.fresh(BOOL, "flag")
        with state.path.under(flag.expr):
            state.write(balance(ctx, 1), const(ctx, UINT256, 100))
        total = ghosts.get("sum").expr
        assert proves(state.path, z3.Implies(flag.expr, total == 100))
        assert proves(state.path, z3.Implies(z3.Not(flag.expr), total == 0))

    def test_trigger_writes_do_not_fire(self):
        state, _, dispatcher = make_unit()
        ctx = state.ctx
        supply_hooks = []

        @dispatcher.on_write(LocationPattern("balances").key("who"))
        def bump(hook):
            hook.state.write(Location("totalSupply"), hook.new)

        dispatcher.register(LocationPattern("totalSupply"), lambda hook: supply_hooks.append(hook))
        state.write(balance(ctx, 1), const(ctx, UINT256, 7))
        assert supply_hooks == []
        assert state.load(Location("totalSupply")).as_python() == 7

    def test_wildcard_binds_address(self):
        state, _, dispatcher = make_unit()
        addresses = []

        @dispatcher.on_any_write()
        def anything(hook):
            addresses.append(hook.address)

        state.write(Location("totalSupply"), const(state.ctx, UINT256, 1))
        state.write(balance(state.ctx, 1), const(state.ctx, UINT256, 1))
        family = state.layout.family("totalSupply")
        assert len(addresses) == 2
        assert z3.simplify(addresses[0]).as_long() == family.address

    def test_wildcard_read_hook(self):
        state, _, dispatcher = make_unit()
        reads = []

        @dispatcher.on_any_read()
        def anything(hook):
            reads.append(hook.value)

        ctx = state.ctx
        state.write(balance(ctx, 1), const(ctx, UINT256, 5))
        state.load(balance(ctx, 1))
        assert reads == []
        state.read(Location("totalSupply"))
        state.read(balance(ctx, 1))
        assert len(reads) == 2
        assert reads[1].as_python() == 5

    def test_read_hooks(self):
        state, _, dispatcher = make_unit()
        reads = []

        @dispatcher.on_read(LocationPattern("balances").key("who"))
        def observe(hook):
            reads.append(hook.value)

        ctx = state.ctx
        state.write(balance(ctx, 1), const(ctx, UINT256, 5))
        assert reads == []
        state.read(balance(ctx, 1))
        assert len(reads) == 1

    def test_restore_and_viewing_are_silent(self):
        state, _, dispatcher = make_unit()
        ctx = state.ctx
        dispatcher.register(LocationPattern("balances").key("who"), lambda hook: None)
        snapshot = state.snapshot()
        state.write(balance(ctx, 1), const(ctx, UINT256, 5))
        with state.viewing(snapshot):
            state.load(balance(ctx, 1))
        state.restore(snapshot)
        assert dispatcher.total_firings() == 1


class TestConservation:
    @settings(deadline=None, max_examples=40)
    @given(write_sequences(max_size=6))
    def test_ghost_sum_equals_storage_sum(self, writes):
        state, ghosts, dispatcher = make_unit()
        ctx = state.ctx
        track_sum(dispatcher, ghosts, ctx)
        final = {}
        for op in writes:
            state.write(balance(ctx, op.key), const(ctx, UINT256, op.value))
            final[op.key] = op.value
        total = ghosts.get("sum").expr
        assert proves(state.path, total == sum(final.values()))
        storage = sum((state.load(balance(ctx, k)).expr for k in range(1, 5)), z3.IntVal(0, ctx))
        assert proves(state.path, total == storage)
        assert dispatcher.total_firings() == len(writes)

    def test_symbolic_writes_conserve(self):
        state, ghosts, dispatcher = make_unit()
        ctx = state.ctx
        track_sum(dispatcher, ghosts, ctx)
        a, da = state.symbols.fresh(ADDRESS, "a")
        b, db = state.symbols.fresh(ADDRESS, "b")
        state.path.assume(z3.And(da, db, a.expr != b.expr))
        state.write(Location("balances").key(a), const(ctx, UINT256, 30))
        state.write(Location("balances").key(b), const(ctx, UINT256, 12))
        total = ghosts.get("sum").expr
        assert proves(state.path, total == 42)
