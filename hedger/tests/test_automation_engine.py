"""Tests for the automation control loop and its safety gates."""

import asyncio

import pytest

from hedger.automation import AutomationEngine, AutomationError, EngineState, Strategy
from hedger.types import HedgeStrategyParameters, PositionStatus, StrategyConfig


class StubStrategy(Strategy):
    """Always wants to enter; opens real hedges through the engine."""

    def __init__(self, hedge_engine, strategy_id="stub", size=10.0, fail=False):
        config = StrategyConfig(
            id=strategy_id,
            name=strategy_id.title(),
            parameters=HedgeStrategyParameters(max_position_size=size),
        )
        super().__init__(config, "u1", None, hedge_engine)
        self.fail = fail
        self.close = False
        self.executions = 0
        self.cleaned_up = False

    async def can_execute(self):
        return True

    async def execute(self):
        if self.fail:
            raise RuntimeError("strategy blew up")
        self.executions += 1
        hedge = await self._hedge_engine.open_hedge_position("u1", "SOL", self.position_size(), strategy_id=self.id)
        return [self._hedge_engine.opened_event(hedge, self.id)]

    async def should_close(self, hedge_group_id):
        return self.close

    async def cleanup(self):
        self.cleaned_up = True
        await super().cleanup()


class SlowStrategy(Strategy):
    """Blocks inside execute until released, once armed."""

    def __init__(self, hedge_engine):
        config = StrategyConfig(id="slow", name="Slow", parameters=HedgeStrategyParameters(max_position_size=10.0))
        super().__init__(config, "u1", None, hedge_engine)
        self.armed = False
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def can_execute(self):
        return self.armed

    async def execute(self):
        self.entered.set()
        await self.release.wait()
        return []

    async def should_close(self, hedge_group_id):
        return False


class BrokenInitStrategy(StubStrategy):
    async def initialize(self):
        raise ConnectionError("feed subscribe failed")


@pytest.fixture
def engine(hedge_engine, safety):
    return AutomationEngine(hedge_engine, safety, interval=3600)


# ------------------------------------------------------------------
# Lifecycle
# ------------------------------------------------------------------
@pytest.mark.asyncio
async def test_start_requires_strategy(engine):
    with pytest.raises(AutomationError):
        await engine.start()
    assert engine.state == EngineState.STOPPED


@pytest.mark.asyncio
async def test_start_runs_immediate_cycle(engine, hedge_engine):
    stub = StubStrategy(hedge_engine)
    engine.register_strategy(stub)
    await engine.start()
    try:
        assert engine.is_running
        assert stub.executions == 1
        assert len(stub.active_positions) == 1
        status = engine.get_status()
        assert status.positions_opened == 1
        assert status.mode == "live"
        assert engine.get_position_rate() == 1
    finally:
        await engine.stop()
    assert engine.state == EngineState.STOPPED
    assert stub.cleaned_up


@pytest.mark.asyncio
async def test_kill_switch_blocks_start_until_deactivated(engine, hedge_engine):
    engine.register_strategy(StubStrategy(hedge_engine))
    await engine.activate_kill_switch()
    with pytest.raises(AutomationError):
        await engine.start()

    engine.deactivate_kill_switch()
    await engine.start()
    assert engine.is_running
    await engine.stop()


@pytest.mark.asyncio
async def test_kill_switch_stops_running_engine(engine, hedge_engine):
    engine.register_strategy(StubStrategy(hedge_engine))
    await engine.start()
    await engine.activate_kill_switch()
    assert engine.state == EngineState.STOPPED
    assert engine.get_status().kill_switch


@pytest.mark.asyncio
async def test_kill_switch_checked_each_cycle(engine, hedge_engine):
    stub = StubStrategy(hedge_engine)
    engine.register_strategy(stub)
    await engine.start()
    engine.safety.kill_switch = True
    await engine.run_cycle()
    assert engine.state == EngineState.STOPPED
    assert stub.executions == 1


# ------------------------------------------------------------------
# Safety gates
# ------------------------------------------------------------------
@pytest.mark.asyncio
async def test_dry_run_counts_without_trading(engine, hedge_engine, venue):
    stub = StubStrategy(hedge_engine)
    engine.register_strategy(stub)
    engine.set_dry_run(True)
    await engine.start()
    try:
        assert stub.executions == 0
        assert venue.placed == []
        assert engine.get_status().positions_opened == 1
        assert engine.get_status().mode == "dry-run"
        assert engine.get_position_rate() == 0
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_hourly_rate_limit(engine, hedge_engine):
    engine.update_safety_config(max_positions_per_hour=2)
    stub = StubStrategy(hedge_engine)
    engine.register_strategy(stub)
    await engine.start()
    try:
        await engine.run_cycle()
        await engine.run_cycle()
        assert stub.executions == 2
        assert engine.get_position_rate() == 2
        assert engine.get_stats()["total_signals"] == 3
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_manual_approval_threshold(engine, hedge_engine):
    stub = StubStrategy(hedge_engine, size=2000.0)
    engine.register_strategy(stub)
    await engine.start()
    try:
        assert stub.executions == 0
        assert engine.get_status().signals_detected == 1
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_failing_strategy_does_not_abort_cycle(engine, hedge_engine):
    broken = StubStrategy(hedge_engine, strategy_id="broken", fail=True)
    healthy = StubStrategy(hedge_engine, strategy_id="healthy")
    engine.register_strategy(broken)
    engine.register_strategy(healthy)
    await engine.start()
    try:
        assert healthy.executions == 1
        assert engine.get_status().positions_opened == 1
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_disabled_strategy_skipped(engine, hedge_engine):
    stub = StubStrategy(hedge_engine)
    stub.disable()
    engine.register_strategy(stub)
    await engine.start()
    try:
        assert stub.executions == 0
        assert engine.get_stats()["strategies_active"] == 0
    finally:
        await engine.stop()


# ------------------------------------------------------------------
# Exits
# ------------------------------------------------------------------
@pytest.mark.asyncio
async def test_exit_closes_and_untracks(engine, hedge_engine, store):
    engine.update_safety_config(max_positions_per_hour=1)
    stub = StubStrategy(hedge_engine)
    engine.register_strategy(stub)
    await engine.start()
    try:
        group_id = stub.active_positions[0]
        stub.close = True
        await engine.run_cycle()

        assert stub.active_positions == []
        assert engine.get_status().positions_closed == 1
        legs = await store.list_positions(hedge_group_id=group_id)
        assert all(leg.status == PositionStatus.CLOSED for leg in legs)
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_vanished_position_is_untracked(engine, hedge_engine, positions):
    engine.update_safety_config(max_positions_per_hour=1)
    stub = StubStrategy(hedge_engine)
    engine.register_strategy(stub)
    await engine.start()
    try:
        group_id = stub.active_positions[0]
        await positions.close_hedge_position(group_id, 100.0, 100.0)
        await engine.run_cycle()
        assert stub.active_positions == []
        assert engine.get_status().positions_closed == 0
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_dry_run_close_keeps_position(engine, hedge_engine):
    engine.update_safety_config(max_positions_per_hour=1)
    stub = StubStrategy(hedge_engine)
    engine.register_strategy(stub)
    await engine.start()
    try:
        stub.close = True
        engine.set_dry_run(True)
        await engine.run_cycle()
        assert len(stub.active_positions) == 1
        assert engine.get_status().positions_closed == 0
    finally:
        await engine.stop()


# ------------------------------------------------------------------
# Management
# ------------------------------------------------------------------
def test_register_and_unregister(engine, hedge_engine):
    stub = StubStrategy(hedge_engine)
    engine.register_strategy(stub)
    assert engine.get_strategy("stub") is stub
    assert engine.unregister_strategy("stub")
    assert not engine.unregister_strategy("stub")
    assert engine.strategies == []


def test_update_safety_config_returns_copy(engine, safety):
    updated = engine.update_safety_config(manual_approval_threshold=50.0)
    assert updated.manual_approval_threshold == 50.0
    assert safety.manual_approval_threshold == 1000.0
    assert engine.safety is updated


# ------------------------------------------------------------------
# Start failures and cycle overlap
# ------------------------------------------------------------------
@pytest.mark.asyncio
async def test_failed_initialize_leaves_engine_stopped(engine, hedge_engine):
    healthy = StubStrategy(hedge_engine, strategy_id="healthy")
    engine.register_strategy(healthy)
    engine.register_strategy(BrokenInitStrategy(hedge_engine, strategy_id="broken"))

    with pytest.raises(ConnectionError):
        await engine.start()
    assert engine.state == EngineState.STOPPED
    assert not engine.is_running
    assert healthy.cleaned_up
    assert healthy.executions == 0

    engine.unregister_strategy("broken")
    await engine.start()
    try:
        assert engine.is_running
        assert healthy.executions == 1
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_overlapping_cycle_is_skipped(engine, hedge_engine):
    slow = SlowStrategy(hedge_engine)
    engine.register_strategy(slow)
    await engine.start()
    try:
        slow.armed = True
        first = asyncio.create_task(engine.run_cycle())
        await asyncio.wait_for(slow.entered.wait(), timeout=1)

        await engine.run_cycle()
        assert engine.get_stats()["skipped_cycles"] == 1

        slow.release.set()
        await first
        assert engine.get_stats()["cycles"] == 2
    finally:
        await engine.stop()
