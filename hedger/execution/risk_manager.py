"""Risk manager — pre-trade validation and portfolio-level limits.

Every mutating decision in the execution core is gated here. The checks
fall into three groups:

1. Pure validators over numbers: position size vs portfolio, trade amount
   bounds, hedge ratio bounds, balance sufficiency, drawdown.
2. Price triggers: stop-loss and take-profit levels, side-aware.
3. Portfolio checks over persisted positions: open-position count, single
   instrument concentration, trailing daily loss.

The risk manager never mutates position state. The one exception is
``emergency_exit``, which force-marks every open position closed when the
normal close flow cannot be trusted.
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Optional

from hedger.config import (
    RISK_BALANCE_BUFFER,
    RISK_FEE_RESERVE,
    RISK_WARNING_LEVEL,
    HedgeConfig,
    RiskConfig,
    TradingConfig,
)
from hedger.interfaces import PositionStore, WalletProvider
from hedger.types import (
    EmergencyCloseReport,
    Order,
    PortfolioRisk,
    Position,
    PositionSide,
    PositionStatus,
    RiskMetrics,
    TradeValidation,
    ValidationResult,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_STOP_LOSS_PCT = 0.10


def _ok() -> ValidationResult:
    return ValidationResult(valid=True)


def _fail(reason: str) -> ValidationResult:
    return ValidationResult(valid=False, reason=reason)


def _position_value(p: Position) -> float:
    return p.amount * (p.current_price or p.entry_price)


class RiskManager:
    """Validation rules for sizing, balances, ratios and portfolio exposure.

    Attributes:
        risk: Leverage, drawdown, stop-loss and take-profit limits.
        hedge: Hedge ratio bounds and rebalance threshold.
        trading: Trade size and position-count limits.
    """

    def __init__(
        self,
        risk: Optional[RiskConfig] = None,
        hedge: Optional[HedgeConfig] = None,
        trading: Optional[TradingConfig] = None,
        store: Optional[PositionStore] = None,
        wallet: Optional[WalletProvider] = None,
    ) -> None:
        self.risk = risk or RiskConfig()
        self.hedge = hedge or HedgeConfig()
        self.trading = trading or TradingConfig()
        self._store = store
        self._wallet = wallet

    # ------------------------------------------------------------------
    # Sizing and limits
    # ------------------------------------------------------------------

    @property
    def max_position_fraction(self) -> float:
        """Largest share of the portfolio one position may take."""
        return 1.0 / self.risk.max_leverage

    def validate_position_size(self, amount: float, portfolio_value: float) -> ValidationResult:
        if portfolio_value <= 0:
            return _fail("Portfolio value must be positive")
        if amount / portfolio_value > self.max_position_fraction:
            return _fail(
                f"Position size exceeds risk limit. Max "
                f"{self.max_position_fraction:.1%} of portfolio per position"
            )
        return _ok()

    def validate_max_positions(self, count: int) -> ValidationResult:
        if count >= self.trading.max_positions:
            return _fail(f"Maximum positions limit reached ({self.trading.max_positions})")
        return _ok()

    def enforce_max_position_size(
        self, amount: float, max_size: Optional[float] = None
    ) -> ValidationResult:
        limit = max_size or self.trading.max_trade_amount
        if amount > limit:
            return _fail(f"Position size {amount} exceeds maximum allowed {limit}")
        return _ok()

    def validate_trade_amount(self, amount: float) -> ValidationResult:
        if amount < self.trading.min_trade_amount:
            return _fail(f"Trade amount below minimum ({self.trading.min_trade_amount})")
        if amount > self.trading.max_trade_amount:
            return _fail(f"Trade amount exceeds maximum ({self.trading.max_trade_amount})")
        return _ok()

    def validate_hedge_ratio(self, ratio: float) -> ValidationResult:
        if not (self.hedge.min_ratio <= ratio <= self.hedge.max_ratio):
            return _fail(
                f"Hedge ratio must be between {self.hedge.min_ratio} "
                f"and {self.hedge.max_ratio}"
            )
        return _ok()

    def check_sufficient_balance(self, required: float, available: float) -> ValidationResult:
        """Require the amount itself, then the amount plus a 1% fee buffer."""
        if available < required:
            return _fail(
                f"Insufficient balance. Required: {required}, Available: {available}"
            )
        buffered = required * RISK_BALANCE_BUFFER
        if available < buffered:
            return _fail(
                f"Insufficient balance for trade + fees. Required: {buffered}, "
                f"Available: {available}"
            )
        return _ok()

    def validate_drawdown(self, current_value: float, peak_value: float) -> ValidationResult:
        if peak_value <= 0:
            return _ok()
        drawdown = (peak_value - current_value) / peak_value
        if drawdown > self.risk.max_drawdown:
            return _fail(
                f"Maximum drawdown exceeded. Current: {drawdown:.2%}, "
                f"Max: {self.risk.max_drawdown:.2%}"
            )
        return _ok()

    def validate_position_opening(
        self,
        amount: float,
        available_balance: float,
        current_positions: int,
        portfolio_value: float,
    ) -> tuple[bool, list[str]]:
        """Run every opening check and collect all failure reasons."""
        checks = [
            self.validate_max_positions(current_positions),
            self.enforce_max_position_size(amount),
            self.check_sufficient_balance(amount, available_balance),
        ]
        if portfolio_value > 0:
            checks.append(self.validate_position_size(amount, portfolio_value))
        checks.append(self.validate_trade_amount(amount))

        reasons = [c.reason for c in checks if not c.valid and c.reason]
        return not reasons, reasons

    def calculate_max_safe_position_size(
        self, available_balance: float, portfolio_value: float
    ) -> float:
        # Leave 1% of the balance for fees
        size = min(available_balance * 0.99, self.trading.max_trade_amount)
        if portfolio_value > 0:
            size = min(size, portfolio_value * self.max_position_fraction)
        return size

    # ------------------------------------------------------------------
    # Price triggers
    # ------------------------------------------------------------------

    def calculate_stop_loss(self, entry_price: float, side: PositionSide) -> float:
        if side == PositionSide.LONG:
            return entry_price * (1 - self.risk.stop_loss_pct)
        return entry_price * (1 + self.risk.stop_loss_pct)

    def calculate_take_profit(self, entry_price: float, side: PositionSide) -> float:
        if side == PositionSide.LONG:
            return entry_price * (1 + self.risk.take_profit_pct)
        return entry_price * (1 - self.risk.take_profit_pct)

    def should_trigger_stop_loss(
        self, current_price: float, entry_price: float, side: PositionSide
    ) -> bool:
        level = self.calculate_stop_loss(entry_price, side)
        if side == PositionSide.LONG:
            return current_price <= level
        return current_price >= level

    def should_trigger_take_profit(
        self, current_price: float, entry_price: float, side: PositionSide
    ) -> bool:
        level = self.calculate_take_profit(entry_price, side)
        if side == PositionSide.LONG:
            return current_price >= level
        return current_price <= level

    @staticmethod
    def should_trigger_stop_loss_with_default(
        current_price: float,
        entry_price: float,
        side: PositionSide,
        pct: float = DEFAULT_STOP_LOSS_PCT,
    ) -> bool:
        """Long fires when price fell by at least *pct*, short when it rose."""
        diff = current_price - entry_price
        move = abs(diff / entry_price)
        if side == PositionSide.LONG:
            return diff < 0 and move >= pct
        return diff > 0 and move >= pct

    @staticmethod
    def default_stop_loss_price(
        entry_price: float, side: PositionSide, pct: float = DEFAULT_STOP_LOSS_PCT
    ) -> float:
        if side == PositionSide.LONG:
            return entry_price * (1 - pct)
        return entry_price * (1 + pct)

    def needs_rebalancing(
        self,
        current_ratio: float,
        target_ratio: float,
        threshold: Optional[float] = None,
    ) -> bool:
        if threshold is None:
            threshold = self.hedge.rebalance_threshold
        return abs(current_ratio - target_ratio) / target_ratio > threshold

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    @staticmethod
    def calculate_risk_metrics(positions: list[Position]) -> RiskMetrics:
        """Win rate, profit factor, drawdown and Sharpe over closed trades."""
        closed = [p for p in positions if p.realized_pnl != 0]
        wins = [p.realized_pnl for p in closed if p.realized_pnl > 0]
        losses = [p.realized_pnl for p in closed if p.realized_pnl < 0]

        total_wins = sum(wins)
        total_losses = abs(sum(losses))
        if total_losses > 0:
            profit_factor = total_wins / total_losses
        else:
            profit_factor = math.inf if total_wins > 0 else 0.0

        peak = running = max_dd = 0.0
        for p in closed:
            running += p.realized_pnl
            peak = max(peak, running)
            if peak > 0:
                max_dd = max(max_dd, (peak - running) / peak)

        n = len(closed)
        sharpe = 0.0
        if n:
            mean = sum(p.realized_pnl for p in closed) / n
            std = math.sqrt(sum((p.realized_pnl - mean) ** 2 for p in closed) / n)
            sharpe = mean / std if std > 0 else 0.0

        return RiskMetrics(
            total_trades=n,
            winning_trades=len(wins),
            losing_trades=len(losses),
            win_rate=len(wins) / n if n else 0.0,
            avg_win=total_wins / len(wins) if wins else 0.0,
            avg_loss=total_losses / len(losses) if losses else 0.0,
            profit_factor=profit_factor,
            max_drawdown=max_dd,
            sharpe_ratio=sharpe,
        )

    # ------------------------------------------------------------------
    # Portfolio checks
    # ------------------------------------------------------------------

    async def validate_trade(self, order: Order) -> TradeValidation:
        """Aggregate pre-trade checks against the user's persisted positions.

        Errors while gathering state reject the trade rather than propagate.
        """
        if self._store is None:
            return TradeValidation(allowed=False, reason="Position store not available")

        reasons: list[str] = []
        warnings: list[str] = []
        try:
            if self._wallet is not None:
                balance = await self._wallet.check_balance(order.user_id, self.trading.base_asset)
                check = self.check_sufficient_balance(order.amount, balance)
                if not check.valid:
                    reasons.append(check.reason or "Insufficient balance")

            size = self.enforce_max_position_size(order.amount)
            if not size.valid:
                reasons.append(size.reason or "Position size exceeds limit")

            open_positions = await self._store.list_positions(
                user_id=order.user_id, status=PositionStatus.OPEN
            )
            count = len(open_positions)
            max_check = self.validate_max_positions(count)
            if not max_check.valid:
                reasons.append(max_check.reason or "Max positions limit reached")
            elif count >= self.trading.max_positions * RISK_WARNING_LEVEL:
                warnings.append(
                    f"Approaching max positions limit ({count}/{self.trading.max_positions})"
                )

            portfolio_value = sum(_position_value(p) for p in open_positions)
            if portfolio_value > 0:
                # Concentration in a single instrument
                exposure = sum(
                    p.amount * p.entry_price
                    for p in open_positions
                    if p.instrument == order.instrument
                )
                share = exposure / portfolio_value
                cap = self.risk.max_token_exposure
                if share > cap:
                    reasons.append(f"Token exposure exceeds {cap:.0%} (current: {share:.1%})")
                elif share > cap * RISK_WARNING_LEVEL:
                    warnings.append(f"Approaching max token exposure ({share:.1%}/{cap:.0%})")

                # Trailing 24h P&L
                day_pnl = await self._trailing_pnl(order.user_id, timedelta(days=1))
                day_return = day_pnl / portfolio_value
                limit = -self.risk.max_daily_loss
                if day_return < limit:
                    reasons.append(f"Daily loss limit exceeded ({day_return:.2%})")
                elif day_return < limit * RISK_WARNING_LEVEL:
                    warnings.append(f"Approaching daily loss limit ({day_return:.2%})")

            warnings.append(
                f"Ensure you have at least {RISK_FEE_RESERVE} "
                f"{self.trading.base_asset} for transaction fees"
            )
        except Exception as e:
            logger.error(
                "trade_validation_error",
                extra={"user_id": order.user_id, "error": str(e)},
                exc_info=True,
            )
            return TradeValidation(allowed=False, reason=f"Validation error: {e}")

        return TradeValidation(
            allowed=not reasons,
            reason="; ".join(reasons) if reasons else None,
            warnings=warnings,
        )

    async def get_portfolio_risk(self, user_id: str) -> PortfolioRisk:
        store = self._require_store()
        open_positions = await store.list_positions(user_id=user_id, status=PositionStatus.OPEN)
        values = [_position_value(p) for p in open_positions]

        closed = await store.list_positions(user_id=user_id, status=PositionStatus.CLOSED)
        closed.sort(key=lambda p: p.closed_at or p.updated_at)
        peak = running = max_dd = 0.0
        for p in closed:
            running += p.realized_pnl
            peak = max(peak, running)
            if peak > 0:
                max_dd = max(max_dd, (peak - running) / peak)

        return PortfolioRisk(
            total_exposure=sum(values),
            largest_position=max(values, default=0.0),
            open_positions=len(open_positions),
            day_pnl=await self._trailing_pnl(user_id, timedelta(days=1)),
            week_pnl=await self._trailing_pnl(user_id, timedelta(days=7)),
            max_drawdown=max_dd,
        )

    async def emergency_exit(self, user_id: str, reason: str) -> EmergencyCloseReport:
        """Mark every open position closed, skipping past individual failures.

        No trade is sent. The last mark is crystallized: unrealized P&L moves
        into realized P&L.
        """
        store = self._require_store()
        logger.warning("emergency_exit_started", extra={"user_id": user_id, "reason": reason})

        report = EmergencyCloseReport()
        for position in await store.list_positions(user_id=user_id, status=PositionStatus.OPEN):
            try:
                now = utcnow()
                position.realized_pnl += position.unrealized_pnl
                position.unrealized_pnl = 0.0
                position.status = PositionStatus.CLOSED
                position.closed_at = now
                position.updated_at = now
                await store.save_position(position)
                report.closed_count += 1
                report.total_pnl += position.realized_pnl
            except Exception as e:
                report.errors.append(f"{position.id}: {e}")
                logger.error(
                    "emergency_exit_position_failed",
                    extra={"position_id": position.id, "error": str(e)},
                    exc_info=True,
                )

        logger.warning(
            "emergency_exit_complete",
            extra={
                "user_id": user_id,
                "closed": report.closed_count,
                "failed": len(report.errors),
            },
        )
        return report

    def status(self) -> dict:
        """Return current limit settings for the health endpoint."""
        return {
            "max_positions": self.trading.max_positions,
            "max_trade_amount": self.trading.max_trade_amount,
            "max_position_fraction": self.max_position_fraction,
            "stop_loss_pct": self.risk.stop_loss_pct,
            "take_profit_pct": self.risk.take_profit_pct,
            "max_drawdown": self.risk.max_drawdown,
            "max_daily_loss": self.risk.max_daily_loss,
            "hedge_ratio_bounds": [self.hedge.min_ratio, self.hedge.max_ratio],
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _require_store(self) -> PositionStore:
        if self._store is None:
            raise RuntimeError("Position store not available")
        return self._store

    async def _trailing_pnl(self, user_id: str, window: timedelta) -> float:
        """P&L of open positions plus positions closed within *window*."""
        store = self._require_store()
        cutoff = utcnow() - window
        positions = await store.list_positions(user_id=user_id)
        return sum(
            p.unrealized_pnl + p.realized_pnl
            for p in positions
            if p.is_open or (p.closed_at is not None and p.closed_at >= cutoff)
        )
