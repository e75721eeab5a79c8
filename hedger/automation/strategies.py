"""Trading strategies driven by the automation engine.

A strategy decides when to enter (``can_execute``), opens positions
(``execute``) and decides when a tracked position should be closed
(``should_close``). It never closes positions itself and never decides
what it is tracking: the automation engine feeds ``PositionOpened`` events
back through ``track`` and untracks on close.

Strategies are built from a tagged ``StrategyConfig`` via ``build_strategy``.
"""

from __future__ import annotations

import abc
import logging
from datetime import datetime
from typing import Any, Optional

from hedger.execution.hedge_engine import HedgeEngine
from hedger.signals.engine import SignalEngine
from hedger.types import PositionOpened, Signal, StrategyConfig, StrategyType, utcnow

logger = logging.getLogger(__name__)

BREAKOUT_THRESHOLD = 0.02


class Strategy(abc.ABC):
    """Base class: config access, position tracking and execution stats."""

    def __init__(
        self,
        config: StrategyConfig,
        user_id: str,
        signals: SignalEngine,
        hedge_engine: HedgeEngine,
    ) -> None:
        self.config = config
        self.user_id = user_id
        self._signals = signals
        self._hedge_engine = hedge_engine
        self._active: set[str] = set()
        self.execution_count = 0
        self.last_execution_time: Optional[datetime] = None

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def enable(self) -> None:
        self.config.enabled = True

    def disable(self) -> None:
        self.config.enabled = False

    def update_parameters(self, **changes: Any) -> None:
        self.config.parameters = self.config.parameters.model_copy(update=changes)

    @abc.abstractmethod
    async def can_execute(self) -> bool: ...

    @abc.abstractmethod
    async def execute(self) -> list[PositionOpened]: ...

    @abc.abstractmethod
    async def should_close(self, hedge_group_id: str) -> bool: ...

    def position_size(self) -> float:
        return self.config.parameters.max_position_size

    async def initialize(self) -> None:
        logger.info("strategy_initialized", extra={"strategy_id": self.id, "strategy": self.name})

    async def cleanup(self) -> None:
        self._active.clear()
        logger.info("strategy_cleaned_up", extra={"strategy_id": self.id})

    # ------------------------------------------------------------------
    # Tracking
    # ------------------------------------------------------------------

    @property
    def active_positions(self) -> list[str]:
        return sorted(self._active)

    def track(self, hedge_group_id: str) -> None:
        self._active.add(hedge_group_id)

    def untrack(self, hedge_group_id: str) -> None:
        self._active.discard(hedge_group_id)

    def record_execution(self) -> None:
        self.execution_count += 1
        self.last_execution_time = utcnow()

    def get_stats(self) -> dict:
        return {
            "execution_count": self.execution_count,
            "active_positions": len(self._active),
            "last_execution_time": self.last_execution_time.isoformat() if self.last_execution_time else None,
        }

    async def validate_entry(self) -> tuple[bool, Optional[str]]:
        if not self.enabled:
            return False, "Strategy is disabled"
        open_hedges = await self._hedge_engine.get_hedge_positions(self.user_id)
        limit = self.config.parameters.max_positions
        if len(open_hedges) >= limit:
            return False, f"Max positions reached ({limit})"
        return True, None


class HedgeStrategy(Strategy):
    """Opens hedge groups on spread or breakout signals across monitored pools.

    Exit rules, checked against live P&L as a fraction of entry value:
    stop-loss, take-profit, or ratio drift above ``close_drift`` while the
    loss is still smaller than ``drift_close_max_loss``.
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._pending: list[Signal] = []

    @property
    def monitored_pools(self) -> list[str]:
        return list(self.config.parameters.monitored_pools)

    async def initialize(self) -> None:
        for ref in self.monitored_pools:
            self._signals.start_monitoring(ref)
        await super().initialize()

    async def cleanup(self) -> None:
        for ref in self.monitored_pools:
            self._signals.stop_monitoring(ref)
        self._pending.clear()
        await super().cleanup()

    async def can_execute(self) -> bool:
        valid, reason = await self.validate_entry()
        if not valid:
            logger.info("strategy_entry_blocked", extra={"strategy_id": self.id, "reason": reason})
            return False

        self._pending = []
        params = self.config.parameters
        pools = self.monitored_pools

        for i, pool_a in enumerate(pools):
            for pool_b in pools[i + 1:]:
                signal = await self._signals.detect_spread_opportunity(pool_a, pool_b, params.min_spread)
                if signal is not None and signal.magnitude > params.min_spread:
                    self._pending.append(signal)
                    logger.info(
                        "spread_opportunity",
                        extra={"strategy_id": self.id, "pool_a": pool_a, "pool_b": pool_b,
                               "spread": signal.magnitude},
                    )
                    return True

        for ref in pools:
            signal = self._signals.detect_breakout(ref, params.breakout_threshold)
            if signal is not None and signal.magnitude > params.breakout_threshold:
                self._pending.append(signal)
                logger.info(
                    "breakout_opportunity",
                    extra={"strategy_id": self.id, "pool_ref": ref, "magnitude": signal.magnitude},
                )
                return True

        return False

    async def execute(self) -> list[PositionOpened]:
        live = [s for s in self._pending if not s.is_expired()]
        self._pending = []
        if not live:
            logger.info("strategy_no_signals", extra={"strategy_id": self.id})
            return []

        signal = max(live, key=lambda s: s.magnitude)
        params = self.config.parameters
        hedge = await self._hedge_engine.open_hedge_position(
            self.user_id,
            params.instrument,
            self.position_size(),
            params.hedge_kind,
            strategy_id=self.id,
        )
        self.record_execution()
        logger.info(
            "strategy_executed",
            extra={
                "strategy_id": self.id,
                "hedge_group_id": hedge.hedge_group_id,
                "signal_type": signal.type.value,
                "signal_reason": signal.reason,
            },
        )
        return [self._hedge_engine.opened_event(hedge, self.id)]

    async def should_close(self, hedge_group_id: str) -> bool:
        params = self.config.parameters
        try:
            hedge = await self._hedge_engine.positions.get_hedge_position(hedge_group_id)
            if not hedge.is_open:
                return False
            pnl = await self._hedge_engine.get_position_pnl(hedge_group_id)
            pnl_pct = pnl / hedge.entry_value if hedge.entry_value > 0 else 0.0

            if pnl_pct <= -params.stop_loss:
                logger.info("strategy_stop_loss", extra={"hedge_group_id": hedge_group_id, "pnl_pct": pnl_pct})
                return True
            if pnl_pct >= params.take_profit:
                logger.info("strategy_take_profit", extra={"hedge_group_id": hedge_group_id, "pnl_pct": pnl_pct})
                return True

            drift = await self._signals.check_rebalance_needed(hedge_group_id, params.close_drift)
            if drift is not None and drift.magnitude > params.close_drift and pnl_pct > -params.drift_close_max_loss:
                logger.info(
                    "strategy_drift_close",
                    extra={"hedge_group_id": hedge_group_id, "drift": drift.magnitude, "pnl_pct": pnl_pct},
                )
                return True
            return False
        except Exception:
            logger.warning("should_close_error", extra={"hedge_group_id": hedge_group_id}, exc_info=True)
            return False

    def get_strategy_stats(self) -> dict:
        return {
            "monitored_pools": len(self.monitored_pools),
            "pending_signals": len(self._pending),
        }


STRATEGY_TYPES: dict[StrategyType, type[Strategy]] = {
    StrategyType.HEDGE: HedgeStrategy,
}


def build_strategy(
    config: StrategyConfig,
    user_id: str,
    signals: SignalEngine,
    hedge_engine: HedgeEngine,
) -> Strategy:
    """Instantiate the strategy class registered for ``config.type``."""
    try:
        cls = STRATEGY_TYPES[config.type]
    except KeyError:
        raise ValueError(f"Unknown strategy type: {config.type}") from None
    return cls(config, user_id, signals, hedge_engine)
