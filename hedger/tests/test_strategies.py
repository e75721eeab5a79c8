"""Tests for the hedge strategy and the strategy registry."""

import pytest

from hedger.automation import HedgeStrategy, build_strategy
from hedger.tests.fakes import POOL
from hedger.types import HedgeStrategyParameters, StrategyConfig


@pytest.fixture
def config():
    return StrategyConfig(
        id="hedge-1",
        name="Hedge",
        parameters=HedgeStrategyParameters(
            max_positions=1,
            max_position_size=100.0,
            monitored_pools=["pool-a", "pool-b"],
        ),
    )


@pytest.fixture
def strategy(config, signals, hedge_engine):
    return build_strategy(config, "u1", signals, hedge_engine)


def test_build_strategy(strategy):
    assert isinstance(strategy, HedgeStrategy)
    assert strategy.id == "hedge-1"
    assert strategy.position_size() == 100.0


def test_update_parameters(strategy):
    strategy.update_parameters(stop_loss=0.2)
    assert strategy.config.parameters.stop_loss == 0.2
    assert strategy.config.parameters.max_position_size == 100.0


# ------------------------------------------------------------------
# Entry
# ------------------------------------------------------------------
@pytest.mark.asyncio
async def test_spread_entry_opens_hedge(strategy, feed):
    feed.set_price("pool-a", 101.0)
    feed.set_price("pool-b", 100.0)

    assert await strategy.can_execute()
    events = await strategy.execute()

    assert len(events) == 1
    assert events[0].strategy_id == "hedge-1"
    assert events[0].amount == 100.0
    assert strategy.execution_count == 1
    # Tracking is driven by the caller
    assert strategy.active_positions == []


@pytest.mark.asyncio
async def test_no_entry_without_signal(strategy, feed):
    feed.set_price("pool-a", 100.0)
    feed.set_price("pool-b", 100.0)
    assert not await strategy.can_execute()
    assert await strategy.execute() == []


@pytest.mark.asyncio
async def test_entry_blocked_at_max_positions(strategy, hedge_engine, feed):
    await hedge_engine.open_hedge_position("u1", "SOL", 10.0)
    feed.set_price("pool-a", 101.0)
    feed.set_price("pool-b", 100.0)
    assert not await strategy.can_execute()


@pytest.mark.asyncio
async def test_disabled_strategy_blocked(strategy):
    strategy.disable()
    valid, reason = await strategy.validate_entry()
    assert not valid
    assert reason == "Strategy is disabled"


@pytest.mark.asyncio
async def test_initialize_and_cleanup_monitor_pools(strategy, feed, signals):
    await strategy.initialize()
    assert set(feed.subscribers) == {"pool-a", "pool-b"}
    strategy.track("hedge_x")

    await strategy.cleanup()
    assert signals.get_monitoring_status()["monitored_pools"] == 0
    assert strategy.active_positions == []


# ------------------------------------------------------------------
# Exit
# ------------------------------------------------------------------
@pytest.mark.asyncio
@pytest.mark.parametrize("price,expected", [(89.0, True), (106.0, True), (100.0, False), (103.0, False)])
async def test_should_close_on_pnl(strategy, hedge_engine, feed, price, expected):
    hedge = await hedge_engine.open_hedge_position("u1", "SOL", 100.0)
    feed.set_price(POOL, price)
    assert await strategy.should_close(hedge.hedge_group_id) is expected


@pytest.mark.asyncio
async def test_should_close_on_drift(strategy, positions):
    hedge = await positions.create_hedge_position(
        "u1", POOL, "SOL", long_amount=120.0, short_amount=100.0, entry_price=100.0, hedge_ratio=1.0
    )
    assert await strategy.should_close(hedge.hedge_group_id)


@pytest.mark.asyncio
async def test_should_close_closed_or_unknown_group(strategy, hedge_engine):
    hedge = await hedge_engine.open_hedge_position("u1", "SOL", 100.0)
    await hedge_engine.close_hedge_position(hedge.hedge_group_id)
    assert not await strategy.should_close(hedge.hedge_group_id)
    assert not await strategy.should_close("hedge_missing")
