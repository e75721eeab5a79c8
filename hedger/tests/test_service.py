"""Tests for context wiring and the service health endpoint."""

import json

import pytest

from hedger.config import AppConfig
from hedger.context import TradingContext
from hedger.service import HedgeService, default_strategies
from hedger.storage import InMemoryStore


@pytest.fixture
def context(feed, venue, wallet, alerts):
    return TradingContext(
        config=AppConfig(),
        store=InMemoryStore(),
        price_feed=feed,
        venue=venue,
        wallet=wallet,
        alerts=alerts,
    )


def test_default_strategies():
    configs = default_strategies(["pool-a", "pool-b"])
    assert len(configs) == 1
    assert configs[0].parameters.monitored_pools == ["pool-a", "pool-b"]


@pytest.mark.asyncio
async def test_context_shares_components(context):
    await context.initialize()
    assert context.hedge_engine.positions is context.position_manager
    hedge = await context.hedge_engine.open_hedge_position("u1", "SOL", 10.0)
    assert len(await context.store.list_positions(hedge_group_id=hedge.hedge_group_id)) == 2
    await context.close()
    assert context.hedge_engine.monitored_groups() == []


@pytest.mark.asyncio
async def test_health_reports_status(context):
    service = HedgeService(context=context, strategies=default_strategies(["pool-a"]), user_id="u1")
    resp = await service._health_handler(None)
    body = json.loads(resp.text)

    assert body["status"] == "ok"
    assert body["automation"]["state"] == "stopped"
    assert body["risk"]["max_positions"] == context.config.trading.max_positions
    assert body["monitoring"]["monitored_pools"] == 0
