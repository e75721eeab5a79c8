import pytest

from hedger.config import HedgeConfig, RiskConfig, SafetyConfig, TradingConfig
from hedger.execution import HedgeEngine, OrderExecutor, PositionManager, RiskManager
from hedger.notifications import AlertService
from hedger.signals.engine import SignalEngine
from hedger.tests.fakes import POOL, FailingStore, FakePriceFeed, FakeSink, FakeVenue, FakeWallet


@pytest.fixture
def trading():
    return TradingConfig(
        max_positions=10,
        min_trade_amount=0.01,
        max_trade_amount=1000.0,
        default_slippage=0.01,
        max_slippage=0.02,
        base_asset="SOL",
    )


@pytest.fixture
def hedge_config():
    return HedgeConfig(
        default_ratio=1.0, min_ratio=0.5, max_ratio=2.0, rebalance_threshold=0.05, auto_rebalance=True
    )


@pytest.fixture
def risk_config():
    return RiskConfig(
        max_leverage=5.0,
        max_drawdown=0.2,
        stop_loss_pct=0.1,
        take_profit_pct=0.2,
        max_daily_loss=0.1,
        max_token_exposure=0.3,
    )


@pytest.fixture
def safety():
    return SafetyConfig(
        max_positions_per_hour=3, manual_approval_threshold=1000.0, dry_run=False, kill_switch=False
    )


@pytest.fixture
def store():
    return FailingStore()


@pytest.fixture
def feed():
    return FakePriceFeed({POOL: 100.0})


@pytest.fixture
def venue():
    return FakeVenue()


@pytest.fixture
def wallet():
    return FakeWallet()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def alerts(sink):
    return AlertService([sink])


@pytest.fixture
def sleeps():
    """Delays passed to the executor's sleep, in call order."""
    return []


@pytest.fixture
def executor(venue, wallet, feed, store, trading, alerts, sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    return OrderExecutor(venue, wallet, feed, store, trading, alerts, sleep=fake_sleep)


@pytest.fixture
def risk_manager(risk_config, hedge_config, trading, store, wallet):
    return RiskManager(risk_config, hedge_config, trading, store, wallet)


@pytest.fixture
def positions(store):
    return PositionManager(store)


@pytest.fixture
def hedge_engine(executor, positions, risk_manager, feed, venue, wallet, alerts):
    return HedgeEngine(executor, positions, risk_manager, feed, venue, wallet, alerts=alerts)


@pytest.fixture
def signals(feed, store):
    return SignalEngine(feed, store)
