"""Process-wide trading context.

One ``TradingContext`` is built at startup and passed to everything that
needs shared clients. It owns the store, the price feed, the venue and
wallet clients and the alert service, and wires the execution components
on top of them. ``initialize`` connects, ``close`` tears everything down in
reverse order.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from hedger.api.price_client import PriceClient
from hedger.api.venue_client import VenueClient, WalletClient
from hedger.config import ALERT_WEBHOOK_URL, STORAGE_BACKEND, AppConfig, load_config
from hedger.execution import HedgeEngine, OrderExecutor, PositionManager, RiskManager
from hedger.interfaces import ExecutionVenue, PriceFeed, WalletProvider
from hedger.notifications import AlertService, LoggingSink, WebhookSink
from hedger.signals.engine import SignalEngine
from hedger.storage import create_store

logger = logging.getLogger(__name__)


class TradingContext:
    """Explicitly constructed replacement for module-level client singletons."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        store: Any = None,
        price_feed: Optional[PriceFeed] = None,
        venue: Optional[ExecutionVenue] = None,
        wallet: Optional[WalletProvider] = None,
        alerts: Optional[AlertService] = None,
    ) -> None:
        self.config = config or load_config()
        self.store = store if store is not None else create_store(STORAGE_BACKEND)
        self.price_feed = price_feed or PriceClient()
        self.venue = venue or VenueClient()
        self.wallet = wallet or WalletClient()
        if alerts is None:
            sinks: list = [LoggingSink()]
            if ALERT_WEBHOOK_URL:
                sinks.append(WebhookSink(ALERT_WEBHOOK_URL))
            alerts = AlertService(sinks)
        self.alerts = alerts

        cfg = self.config
        self.risk_manager = RiskManager(cfg.risk, cfg.hedge, cfg.trading, self.store, self.wallet)
        self.position_manager = PositionManager(self.store)
        self.order_executor = OrderExecutor(
            self.venue, self.wallet, self.price_feed, self.store, cfg.trading, self.alerts
        )
        self.hedge_engine = HedgeEngine(
            self.order_executor,
            self.position_manager,
            self.risk_manager,
            self.price_feed,
            self.venue,
            self.wallet,
            alerts=self.alerts,
        )
        self.signal_engine = SignalEngine(self.price_feed, self.store)

    async def initialize(self) -> None:
        await self.store.initialize()
        start = getattr(self.price_feed, "start", None)
        if start is not None:
            await start()
        logger.info("trading_context_initialized")

    async def close(self) -> None:
        """Stop monitors and feeds, then close clients and the store. Never raises."""
        steps = [
            ("hedge_engine", self.hedge_engine.close),
            ("signal_engine", self._stop_signals),
            ("price_feed", getattr(self.price_feed, "close", None)),
            ("venue", getattr(self.venue, "close", None)),
            ("wallet", getattr(self.wallet, "close", None)),
            ("alerts", self.alerts.close),
            ("store", self.store.close),
        ]
        for name, step in steps:
            if step is None:
                continue
            try:
                await step()
            except Exception:
                logger.error("context_close_failed", extra={"component": name}, exc_info=True)
        logger.info("trading_context_closed")

    async def _stop_signals(self) -> None:
        self.signal_engine.stop_all()
