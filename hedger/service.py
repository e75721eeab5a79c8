"""Long-running hedge automation service."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any, Optional

from aiohttp import web

from hedger.automation import AutomationEngine, build_strategy
from hedger.config import (
    AUTOMATION_INTERVAL,
    AUTOMATION_POOLS,
    AUTOMATION_USER_ID,
    HEALTH_CHECK_PORT,
)
from hedger.context import TradingContext
from hedger.types import HedgeStrategyParameters, StrategyConfig

logger = logging.getLogger(__name__)


def default_strategies(pools: list[str]) -> list[StrategyConfig]:
    return [
        StrategyConfig(
            id="hedge-default",
            name="Hedge",
            parameters=HedgeStrategyParameters(monitored_pools=pools),
        )
    ]


class HedgeService:
    """Runs the automation engine and a health endpoint until shutdown."""

    def __init__(
        self,
        context: Optional[TradingContext] = None,
        strategies: Optional[list[StrategyConfig]] = None,
        user_id: str = AUTOMATION_USER_ID,
        health_port: int = HEALTH_CHECK_PORT,
    ) -> None:
        self._context = context or TradingContext()
        self._strategy_configs = strategies if strategies is not None else default_strategies(AUTOMATION_POOLS)
        self._user_id = user_id
        self._health_port = health_port
        self._automation = AutomationEngine(
            self._context.hedge_engine,
            self._context.config.safety,
            interval=AUTOMATION_INTERVAL,
        )
        self._shutdown_event = asyncio.Event()
        self._health_runner: web.AppRunner | None = None
        self._stopped = False

    @property
    def automation(self) -> AutomationEngine:
        return self._automation

    async def start(self) -> None:
        """Initialize clients, start automation, and block until shutdown."""
        loop = asyncio.get_running_loop()
        loop.set_exception_handler(self._loop_exception_handler)
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._signal_handler)

        try:
            await self._context.initialize()

            for cfg in self._strategy_configs:
                strategy = build_strategy(
                    cfg, self._user_id, self._context.signal_engine, self._context.hedge_engine
                )
                self._automation.register_strategy(strategy)

            await self._start_health_server()

            if self._context.config.safety.kill_switch:
                logger.warning("automation_not_started", extra={"reason": "kill switch active"})
            else:
                await self._automation.start()

            logger.info(
                "service_started",
                extra={"strategies": len(self._strategy_configs), "user_id": self._user_id},
            )
            await self._shutdown_event.wait()
        finally:
            await self._stop()

    async def _stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        logger.info("service_stopping")

        try:
            await self._automation.stop()
        except Exception:
            logger.error("automation_stop_failed", exc_info=True)

        await self._context.close()

        if self._health_runner:
            await self._health_runner.cleanup()

        logger.info("service_stopped")

    def _signal_handler(self) -> None:
        logger.info("shutdown_signal_received")
        self._shutdown_event.set()

    def _loop_exception_handler(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        logger.critical(
            "unhandled_loop_exception",
            extra={"loop_message": context.get("message")},
            exc_info=context.get("exception"),
        )
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Health check
    # ------------------------------------------------------------------

    async def _start_health_server(self) -> None:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)

        self._health_runner = web.AppRunner(app)
        await self._health_runner.setup()
        site = web.TCPSite(self._health_runner, "0.0.0.0", self._health_port)
        await site.start()
        logger.info("health_server_started", extra={"port": self._health_port})

    async def _health_handler(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "automation": self._automation.get_status().model_dump(mode="json"),
            "stats": self._automation.get_stats(),
            "risk": self._context.risk_manager.status(),
            "monitoring": self._context.signal_engine.get_monitoring_status(),
        })
