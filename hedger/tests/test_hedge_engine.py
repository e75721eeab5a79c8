"""Tests for opening, closing, rebalancing and monitoring hedge groups."""

import pytest

from hedger.errors import AtomicExecutionError, InsufficientFundsError, PoolError, RiskLimitError
from hedger.tests.fakes import POOL
from hedger.types import AlertType, HedgeKind, PositionSide, PositionStatus


# ------------------------------------------------------------------
# Open / close
# ------------------------------------------------------------------
@pytest.mark.asyncio
async def test_open_and_close_hedge(hedge_engine, feed, venue, sink, store):
    hedge = await hedge_engine.open_hedge_position("u1", "SOL", 100.0)

    assert hedge.long.amount == 100.0
    assert hedge.short.amount == 100.0
    assert hedge.long.hedge_group_id == hedge.short.hedge_group_id == hedge.hedge_group_id
    assert hedge.long.entry_price == hedge.short.entry_price == 100.0
    assert hedge.long.pool_ref == hedge.short.pool_ref == POOL
    assert [p[2] for p in venue.placed] == [100.0, 100.0]
    assert hedge_engine.monitored_groups() == [hedge.hedge_group_id]
    assert AlertType.POSITION_OPENED.value in sink.types()

    feed.queue_prices(POOL, 110.0, 95.0)
    event = await hedge_engine.close_hedge_position(hedge.hedge_group_id)

    assert event.long_pnl == pytest.approx(1000.0)
    assert event.short_pnl == pytest.approx(-500.0)
    assert event.total_pnl == pytest.approx(500.0)
    assert event.signature == f"closed_{hedge.hedge_group_id}"
    assert hedge_engine.monitored_groups() == []
    assert feed.subscribers[POOL] == []
    assert await store.list_positions(status=PositionStatus.OPEN) == []


@pytest.mark.asyncio
async def test_pairs_kind_uses_default_ratio(hedge_engine):
    hedge_engine.hedge.default_ratio = 1.5
    hedge = await hedge_engine.open_hedge_position("u1", "SOL", 100.0, HedgeKind.PAIRS)
    assert hedge.short.amount == pytest.approx(150.0)
    assert hedge.long.hedge_ratio == 1.5


@pytest.mark.asyncio
async def test_invalid_ratio_rejected(hedge_engine, venue):
    hedge_engine.hedge.default_ratio = 3.0
    with pytest.raises(RiskLimitError):
        await hedge_engine.open_hedge_position("u1", "SOL", 100.0, HedgeKind.PAIRS)
    assert venue.placed == []


@pytest.mark.asyncio
async def test_balance_must_cover_both_legs(hedge_engine, wallet, venue):
    wallet.balance = 150.0
    with pytest.raises(InsufficientFundsError):
        await hedge_engine.open_hedge_position("u1", "SOL", 100.0)
    assert venue.placed == []


@pytest.mark.asyncio
async def test_position_limit(hedge_engine, trading, venue):
    trading.max_positions = 2
    await hedge_engine.open_hedge_position("u1", "SOL", 10.0)
    with pytest.raises(RiskLimitError):
        await hedge_engine.open_hedge_position("u1", "SOL", 10.0)
    assert len(venue.placed) == 2


@pytest.mark.asyncio
async def test_failed_short_leaves_standalone_long(hedge_engine, venue, store, sink):
    venue.script("L1", PoolError("pool drained", pool_ref=POOL))
    with pytest.raises(AtomicExecutionError) as exc_info:
        await hedge_engine.open_hedge_position("u1", "SOL", 100.0)

    assert exc_info.value.successful == ["L1"]
    assert exc_info.value.failed == ["short"]

    legs = await store.list_positions(user_id="u1")
    assert len(legs) == 1
    assert legs[0].side == PositionSide.LONG
    assert legs[0].hedge_group_id is None
    assert hedge_engine.monitored_groups() == []
    assert AlertType.UNHEDGED_EXPOSURE.value in sink.types()


@pytest.mark.asyncio
async def test_failed_long_persists_nothing(hedge_engine, venue, store):
    venue.script(PoolError("pool drained", pool_ref=POOL))
    with pytest.raises(AtomicExecutionError):
        await hedge_engine.open_hedge_position("u1", "SOL", 100.0)
    assert await store.list_positions() == []


# ------------------------------------------------------------------
# P&L and rebalancing
# ------------------------------------------------------------------
@pytest.mark.asyncio
async def test_position_pnl_and_totals(hedge_engine, feed):
    hedge = await hedge_engine.open_hedge_position("u1", "SOL", 100.0)
    feed.set_price(POOL, 101.0)
    assert await hedge_engine.get_position_pnl(hedge.hedge_group_id) == pytest.approx(200.0)

    totals = await hedge_engine.calculate_total_pnl("u1")
    assert totals["unrealized_pnl"] == pytest.approx(200.0)
    assert totals["realized_pnl"] == 0.0


@pytest.mark.asyncio
async def test_rebalance_balanced_group_is_noop(hedge_engine):
    hedge = await hedge_engine.open_hedge_position("u1", "SOL", 100.0)
    action = await hedge_engine.rebalance_position(hedge.hedge_group_id)
    assert not action.rebalanced
    assert action.current_ratio == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_rebalance_overweight_long(hedge_engine, positions, feed, sink):
    hedge = await positions.create_hedge_position(
        "u1", POOL, "SOL", long_amount=120.0, short_amount=100.0, entry_price=100.0, hedge_ratio=1.0
    )
    action = await hedge_engine.rebalance_position(hedge.hedge_group_id)
    assert action.rebalanced
    assert action.adjusted_leg == PositionSide.LONG
    assert action.current_ratio == pytest.approx(1.2)
    assert action.excess_value == pytest.approx(2000.0)
    assert AlertType.REBALANCE_NEEDED.value in sink.types()


# ------------------------------------------------------------------
# Monitoring
# ------------------------------------------------------------------
@pytest.mark.asyncio
async def test_monitor_closes_on_stop_loss(hedge_engine, feed, sink, store):
    hedge = await hedge_engine.open_hedge_position("u1", "SOL", 100.0)
    feed.set_price(POOL, 89.0)
    await hedge_engine.monitor_position(hedge.hedge_group_id, 89.0)

    assert await store.list_positions(status=PositionStatus.OPEN) == []
    assert AlertType.STOP_LOSS_HIT.value in sink.types()
    assert hedge_engine.monitored_groups() == []


@pytest.mark.asyncio
async def test_monitor_marks_legs_within_limits(hedge_engine, store):
    hedge = await hedge_engine.open_hedge_position("u1", "SOL", 100.0)
    await hedge_engine.monitor_position(hedge.hedge_group_id, 103.0)

    legs = await store.list_positions(hedge_group_id=hedge.hedge_group_id)
    assert all(leg.is_open for leg in legs)
    assert all(leg.current_price == 103.0 for leg in legs)


@pytest.mark.asyncio
async def test_pushed_price_triggers_monitor(hedge_engine, feed, store):
    hedge = await hedge_engine.open_hedge_position("u1", "SOL", 100.0)
    feed.push(POOL, 115.0)
    await hedge_engine.close()

    legs = await store.list_positions(hedge_group_id=hedge.hedge_group_id)
    assert all(leg.status == PositionStatus.CLOSED for leg in legs)


@pytest.mark.asyncio
async def test_monitor_stops_for_closed_group(hedge_engine, positions):
    hedge = await hedge_engine.open_hedge_position("u1", "SOL", 100.0)
    await positions.close_hedge_position(hedge.hedge_group_id, 100.0, 100.0)
    await hedge_engine.monitor_position(hedge.hedge_group_id, 100.0)
    assert hedge_engine.monitored_groups() == []
