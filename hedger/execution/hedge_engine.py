"""Hedge engine — open, close, rebalance and monitor long/short hedge groups.

The engine orchestrates the other execution components: the risk manager
gates every open, the order executor sends both legs strictly in sequence,
and the position manager is the only path to storage.

After a group opens, the engine subscribes to its pool's price stream. Each
tick marks both legs to market, closes the group when a leg breaches its
stop-loss, and otherwise rebalances when drift exceeds the threshold.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from hedger.config import HedgeConfig, RiskConfig, TradingConfig
from hedger.errors import AtomicExecutionError, InsufficientFundsError, RiskLimitError, TradingError
from hedger.execution.order_executor import OrderExecutor
from hedger.execution.position_manager import PositionManager
from hedger.execution.risk_manager import RiskManager
from hedger.interfaces import ExecutionVenue, PriceFeed, Unsubscribe, WalletProvider
from hedger.notifications import AlertService
from hedger.types import (
    HedgeKind,
    HedgePosition,
    Order,
    OrderSide,
    PositionClosed,
    PositionOpened,
    PositionSide,
    PositionStatus,
    RebalanceAction,
)

logger = logging.getLogger(__name__)

QUOTE_ASSET = "USDC"


class HedgeEngine:
    """Opens and manages hedge groups for users.

    Attributes:
        hedge: Ratio bounds, default ratio and auto-rebalance flag.
        risk: Stop-loss percentage used by passive monitoring.
        trading: Slippage tolerance and base asset for balance checks.
    """

    def __init__(
        self,
        executor: OrderExecutor,
        positions: PositionManager,
        risk_manager: RiskManager,
        price_feed: PriceFeed,
        venue: ExecutionVenue,
        wallet: WalletProvider,
        alerts: Optional[AlertService] = None,
        hedge: Optional[HedgeConfig] = None,
        risk: Optional[RiskConfig] = None,
        trading: Optional[TradingConfig] = None,
    ) -> None:
        self._executor = executor
        self._positions = positions
        self._risk = risk_manager
        self._feed = price_feed
        self._venue = venue
        self._wallet = wallet
        self._alerts = alerts
        self.hedge = hedge or risk_manager.hedge
        self.risk = risk or risk_manager.risk
        self.trading = trading or risk_manager.trading

        self._monitors: dict[str, Unsubscribe] = {}
        self._monitor_tasks: set[asyncio.Task] = set()
        self._busy: set[str] = set()

    @property
    def positions(self) -> PositionManager:
        return self._positions

    # ------------------------------------------------------------------
    # Open
    # ------------------------------------------------------------------

    def resolve_hedge_ratio(self, kind: HedgeKind) -> float:
        if kind == HedgeKind.DELTA_NEUTRAL:
            return 1.0
        return self.hedge.default_ratio

    async def open_hedge_position(
        self,
        user_id: str,
        instrument: str,
        amount: float,
        strategy_type: HedgeKind = HedgeKind.DELTA_NEUTRAL,
        strategy_id: Optional[str] = None,
    ) -> HedgePosition:
        """Run the risk gates, send both legs, persist the group and start monitoring.

        Raises:
            RiskLimitError: Ratio or open-position limit rejected the trade.
            InsufficientFundsError: Balance does not cover both legs plus fees.
            AtomicExecutionError: A leg failed. When the long leg filled and
                the short leg did not, the long leg is persisted as a
                standalone position for reconciliation.
        """
        ratio = self.resolve_hedge_ratio(strategy_type)
        check = self._risk.validate_hedge_ratio(ratio)
        if not check.valid:
            raise RiskLimitError(
                check.reason or "Invalid hedge ratio",
                limit_type="hedge_ratio",
                limit=self.hedge.max_ratio,
                current=ratio,
            )

        balance = await self._wallet.check_balance(user_id, self.trading.base_asset)
        required = amount * 2
        check = self._risk.check_sufficient_balance(required, balance)
        if not check.valid:
            raise InsufficientFundsError(required, balance, self.trading.base_asset)

        open_positions = await self._positions.get_open_positions(user_id)
        check = self._risk.validate_max_positions(len(open_positions))
        if not check.valid:
            raise RiskLimitError(
                check.reason or "Maximum positions reached",
                limit_type="max_positions",
                limit=self.trading.max_positions,
                current=len(open_positions),
            )

        quote = await self._venue.best_execution_pool(instrument, QUOTE_ASSET, amount)
        pool_ref = quote.ref
        entry_price = await self._feed.get_current_price(pool_ref)

        long_order = Order(
            user_id=user_id,
            side=OrderSide.BUY,
            instrument=instrument,
            pool_ref=pool_ref,
            amount=amount,
            price=entry_price,
            max_slippage=self.trading.default_slippage,
        )
        short_order = Order(
            user_id=user_id,
            side=OrderSide.SELL,
            instrument=instrument,
            pool_ref=pool_ref,
            amount=amount * ratio,
            price=entry_price,
            max_slippage=self.trading.default_slippage,
        )

        logger.info(
            "hedge_opening",
            extra={
                "user_id": user_id,
                "instrument": instrument,
                "pool_ref": pool_ref,
                "amount": amount,
                "hedge_ratio": ratio,
                "entry_price": entry_price,
            },
        )
        result = await self._executor.execute_hedge_orders(long_order, short_order)

        if not result.success:
            if result.successful_orders:
                await self._positions.create_position(
                    user_id,
                    PositionSide.LONG,
                    pool_ref,
                    instrument,
                    amount,
                    entry_price,
                    fees=result.long_order.fee if result.long_order else 0.0,
                )
            error = result.error
            if isinstance(error, TradingError):
                raise error
            raise AtomicExecutionError(
                "Hedge execution failed", result.successful_orders, result.failed_orders, str(error)
            )

        hedge = await self._positions.create_hedge_position(
            user_id,
            pool_ref,
            instrument,
            long_amount=amount,
            short_amount=amount * ratio,
            entry_price=entry_price,
            hedge_ratio=ratio,
            long_fees=result.long_order.fee if result.long_order else 0.0,
            short_fees=result.short_order.fee if result.short_order else 0.0,
        )

        self._start_monitoring(hedge.hedge_group_id, pool_ref)
        if self._alerts is not None:
            await self._alerts.position_opened(hedge)

        logger.info(
            "hedge_opened",
            extra={
                "hedge_group_id": hedge.hedge_group_id,
                "user_id": user_id,
                "strategy_id": strategy_id,
                "total_fees": result.total_fees,
            },
        )
        return hedge

    def opened_event(self, hedge: HedgePosition, strategy_id: Optional[str] = None) -> PositionOpened:
        return PositionOpened.from_hedge(hedge, strategy_id)

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    async def close_hedge_position(self, hedge_group_id: str, reason: str = "manual") -> PositionClosed:
        hedge = await self._positions.get_hedge_position(hedge_group_id, PositionStatus.OPEN)
        long_price = await self._feed.get_current_price(hedge.long.pool_ref)
        short_price = await self._feed.get_current_price(hedge.short.pool_ref)

        long_leg, short_leg = await self._positions.close_hedge_position(
            hedge_group_id, long_price, short_price
        )
        self._stop_monitoring(hedge_group_id)

        event = PositionClosed(
            hedge_group_id=hedge_group_id,
            user_id=hedge.user_id,
            long_pnl=long_leg.realized_pnl,
            short_pnl=short_leg.realized_pnl,
            total_pnl=long_leg.realized_pnl + short_leg.realized_pnl,
            reason=reason,
            signature=f"closed_{hedge_group_id}",
        )
        logger.info(
            "hedge_closed",
            extra={
                "hedge_group_id": hedge_group_id,
                "user_id": hedge.user_id,
                "reason": reason,
                "long_pnl": event.long_pnl,
                "short_pnl": event.short_pnl,
                "total_pnl": event.total_pnl,
            },
        )
        if self._alerts is not None:
            await self._alerts.position_closed(hedge.user_id, hedge_group_id, event.total_pnl, reason)
        return event

    # ------------------------------------------------------------------
    # Rebalance and P&L
    # ------------------------------------------------------------------

    async def rebalance_position(self, hedge_group_id: str) -> RebalanceAction:
        """Bring the overweight leg's tracked value back toward the target ratio.

        No resize trade is sent: the overweight leg is re-marked at its live
        price and the excess value is reported on the returned action.
        """
        hedge = await self._positions.get_hedge_position(hedge_group_id, PositionStatus.OPEN)
        long_price = await self._feed.get_current_price(hedge.long.pool_ref)
        short_price = await self._feed.get_current_price(hedge.short.pool_ref)

        long_value = hedge.long.amount * long_price
        short_value = hedge.short.amount * short_price
        target = hedge.target_ratio
        current = long_value / short_value if short_value > 0 else 0.0
        drift = abs(current - target) / target

        action = RebalanceAction(
            hedge_group_id=hedge_group_id,
            current_ratio=current,
            target_ratio=target,
            drift=drift,
        )
        if not self._risk.needs_rebalancing(current, target):
            return action

        if current > target:
            action.adjusted_leg = PositionSide.LONG
            action.excess_value = long_value - target * short_value
            await self._positions.update_position_price(hedge.long.id, long_price)
        else:
            action.adjusted_leg = PositionSide.SHORT
            action.excess_value = short_value - long_value / target
            await self._positions.update_position_price(hedge.short.id, short_price)
        action.rebalanced = True

        logger.info(
            "hedge_rebalanced",
            extra={
                "hedge_group_id": hedge_group_id,
                "current_ratio": round(current, 6),
                "target_ratio": target,
                "adjusted_leg": action.adjusted_leg.value,
                "excess_value": round(action.excess_value, 6),
            },
        )
        if self._alerts is not None:
            await self._alerts.rebalance_needed(hedge.user_id, hedge_group_id, current, target)
        return action

    async def get_position_pnl(self, hedge_group_id: str) -> float:
        """Live unrealized P&L for an open group, realized P&L for a closed one."""
        hedge = await self._positions.get_hedge_position(hedge_group_id)
        if not hedge.is_open:
            return hedge.realized_pnl

        long_price = await self._feed.get_current_price(hedge.long.pool_ref)
        short_price = await self._feed.get_current_price(hedge.short.pool_ref)
        long_leg = await self._positions.update_position_price(hedge.long.id, long_price)
        short_leg = await self._positions.update_position_price(hedge.short.id, short_price)
        return long_leg.unrealized_pnl + short_leg.unrealized_pnl

    async def get_hedge_positions(self, user_id: str) -> list[HedgePosition]:
        return await self._positions.get_hedge_positions(user_id)

    async def calculate_total_pnl(self, user_id: str) -> dict[str, float]:
        stats = await self._positions.get_position_stats(user_id)
        return {
            "realized_pnl": stats.total_realized_pnl,
            "unrealized_pnl": stats.total_unrealized_pnl,
            "total_pnl": stats.net_pnl,
        }

    # ------------------------------------------------------------------
    # Passive monitoring
    # ------------------------------------------------------------------

    def monitored_groups(self) -> list[str]:
        return list(self._monitors)

    def _start_monitoring(self, hedge_group_id: str, pool_ref: str) -> None:
        def on_price(ref: str, price: float, volume: Optional[float] = None) -> None:
            task = asyncio.get_running_loop().create_task(self.monitor_position(hedge_group_id, price))
            self._monitor_tasks.add(task)
            task.add_done_callback(self._monitor_tasks.discard)

        self._monitors[hedge_group_id] = self._feed.subscribe(pool_ref, on_price)

    def _stop_monitoring(self, hedge_group_id: str) -> None:
        unsubscribe = self._monitors.pop(hedge_group_id, None)
        if unsubscribe is not None:
            unsubscribe()

    async def monitor_position(self, hedge_group_id: str, price: float) -> None:
        """Handle one price tick for a monitored group. Never raises."""
        if hedge_group_id in self._busy:
            return
        self._busy.add(hedge_group_id)
        try:
            legs = await self._positions.get_hedge_legs(hedge_group_id, PositionStatus.OPEN)
            if not legs:
                self._stop_monitoring(hedge_group_id)
                return

            for leg in legs:
                if self._risk.should_trigger_stop_loss_with_default(
                    price, leg.entry_price, leg.side, self.risk.stop_loss_pct
                ):
                    logger.warning(
                        "hedge_stop_loss_triggered",
                        extra={"hedge_group_id": hedge_group_id, "side": leg.side.value, "price": price},
                    )
                    event = await self.close_hedge_position(hedge_group_id, reason="stop_loss")
                    if self._alerts is not None:
                        await self._alerts.stop_loss_hit(event.user_id, hedge_group_id, event.total_pnl)
                    return

            for leg in legs:
                await self._positions.update_position_price(leg.id, price)

            if self.hedge.auto_rebalance:
                await self.rebalance_position(hedge_group_id)
        except Exception:
            logger.error("monitor_position_failed", extra={"hedge_group_id": hedge_group_id}, exc_info=True)
        finally:
            self._busy.discard(hedge_group_id)

    async def close(self) -> None:
        """Unsubscribe every monitor and wait for in-flight ticks."""
        for group_id in list(self._monitors):
            self._stop_monitoring(group_id)
        if self._monitor_tasks:
            await asyncio.gather(*self._monitor_tasks, return_exceptions=True)
