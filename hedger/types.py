"""Domain models shared by the execution core.

All records are pydantic models so they validate on construction and
serialize cleanly into structured logs and storage rows.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from hedger.config import MAX_SLIPPAGE
from hedger.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex[:20]}"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PositionSide(str, Enum):
    LONG = "long"
    SHORT = "short"


class PositionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class OrderType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class OrderStatus(str, Enum):
    """Lifecycle status of an order record."""

    PENDING = "pending"   # Created, execution attempt in flight
    FILLED = "filled"
    FAILED = "failed"


class SignalType(str, Enum):
    BREAKOUT = "breakout"
    SPREAD = "spread"
    REBALANCE = "rebalance"
    VOLUME_SPIKE = "volume_spike"
    TREND = "trend"


class SignalDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    NEUTRAL = "neutral"


class HedgeKind(str, Enum):
    """How the hedge ratio is chosen when a position is opened."""

    DELTA_NEUTRAL = "delta-neutral"   # Always 1.0
    PAIRS = "pairs"                   # Configured default ratio


class StrategyType(str, Enum):
    HEDGE = "hedge"


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------


class Position(BaseModel):
    """One leg of exposure against a pool."""

    id: str = Field(default_factory=lambda: new_id("pos_"))
    user_id: str = Field(..., description="Owner of the position.")
    side: PositionSide
    pool_ref: str = Field(..., description="Pool / instrument reference at the venue.")
    instrument: str = Field(..., description="Traded asset symbol.")
    amount: float = Field(..., gt=0, description="Position size in base units.")
    entry_price: float = Field(..., gt=0)
    current_price: float = Field(default=0.0, description="Latest tracked price.")
    unrealized_pnl: float = Field(default=0.0, description="Only recomputed while open.")
    realized_pnl: float = Field(default=0.0, description="Fixed once closed.")
    fees: float = Field(default=0.0)
    hedge_group_id: Optional[str] = None
    hedge_ratio: Optional[float] = None
    status: PositionStatus = PositionStatus.OPEN
    opened_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    closed_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    @property
    def entry_value(self) -> float:
        return self.amount * self.entry_price

    @property
    def market_value(self) -> float:
        """Value at the latest tracked price."""
        return self.amount * self.current_price

    @property
    def total_pnl(self) -> float:
        return self.realized_pnl + self.unrealized_pnl

    @property
    def pnl_pct(self) -> float:
        """P&L as a fraction of entry value."""
        if self.entry_value <= 0:
            return 0.0
        return self.total_pnl / self.entry_value

    def mark_to_market(self, price: float) -> None:
        """Update the tracked price. No-op once the position is closed."""
        if not self.is_open:
            return
        self.current_price = price
        self.unrealized_pnl = (price - self.entry_price) * self.amount
        self.updated_at = utcnow()


class HedgePosition(BaseModel):
    """Exactly two legs, one long and one short, sharing a hedge group id."""

    hedge_group_id: str
    long: Position
    short: Position

    @classmethod
    def from_legs(cls, hedge_group_id: str, legs: list[Position]) -> HedgePosition:
        """Assemble a group, rejecting incomplete or malformed ones."""
        longs = [p for p in legs if p.side == PositionSide.LONG and p.hedge_group_id == hedge_group_id]
        shorts = [p for p in legs if p.side == PositionSide.SHORT and p.hedge_group_id == hedge_group_id]
        if len(longs) != 1 or len(shorts) != 1:
            raise ValidationError(
                f"Hedge group {hedge_group_id} is incomplete "
                f"({len(longs)} long, {len(shorts)} short legs)",
                field="hedge_group_id",
                value=hedge_group_id,
            )
        return cls(hedge_group_id=hedge_group_id, long=longs[0], short=shorts[0])

    @property
    def user_id(self) -> str:
        return self.long.user_id

    @property
    def instrument(self) -> str:
        return self.long.instrument

    @property
    def target_ratio(self) -> float:
        return self.long.hedge_ratio or 1.0

    @property
    def current_ratio(self) -> float:
        """Long value over short value at tracked prices."""
        short_value = self.short.market_value
        if short_value <= 0:
            return 0.0
        return self.long.market_value / short_value

    @property
    def is_open(self) -> bool:
        return self.long.is_open and self.short.is_open

    @property
    def unrealized_pnl(self) -> float:
        return self.long.unrealized_pnl + self.short.unrealized_pnl

    @property
    def realized_pnl(self) -> float:
        return self.long.realized_pnl + self.short.realized_pnl

    @property
    def entry_value(self) -> float:
        return self.long.entry_value + self.short.entry_value

    @property
    def pnl_pct(self) -> float:
        if self.entry_value <= 0:
            return 0.0
        return (self.unrealized_pnl + self.realized_pnl) / self.entry_value


class PositionStats(BaseModel):
    total_positions: int = 0
    open_positions: int = 0
    closed_positions: int = 0
    total_realized_pnl: float = 0.0
    total_unrealized_pnl: float = 0.0
    total_fees: float = 0.0
    net_pnl: float = 0.0


class EmergencyCloseReport(BaseModel):
    """Outcome of a mass close. Per-item failures are collected, not raised."""

    closed_count: int = 0
    total_pnl: float = 0.0
    errors: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


class Order(BaseModel):
    """An order record, created PENDING before execution and updated after."""

    id: str = Field(default_factory=lambda: new_id("ord_"))
    user_id: str
    order_type: OrderType = OrderType.MARKET
    side: OrderSide
    instrument: str
    pool_ref: str = Field(default="", description="Venue pool the order trades against.")
    amount: float
    price: Optional[float] = Field(
        default=None,
        description="Reference price for slippage, limit price or trigger price.",
    )
    max_slippage: float = Field(default=MAX_SLIPPAGE, description="Fraction, 0.02 = 2%.")
    status: OrderStatus = OrderStatus.PENDING
    filled_amount: float = 0.0
    average_price: Optional[float] = None
    fee: float = 0.0
    signature: Optional[str] = None
    error_msg: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    executed_at: Optional[datetime] = None


class ExecutionResult(BaseModel):
    """Result of executing one order, including retries."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool = False
    order_id: Optional[str] = None
    signature: Optional[str] = None
    executed_price: Optional[float] = None
    executed_amount: Optional[float] = None
    fee: float = 0.0
    error: Optional[Exception] = Field(default=None, exclude=True)
    retry_attempts: int = 0


class HedgeExecutionResult(BaseModel):
    """Result of a long-then-short pair execution."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool = False
    long_order: Optional[ExecutionResult] = None
    short_order: Optional[ExecutionResult] = None
    total_fees: float = 0.0
    successful_orders: list[str] = Field(default_factory=list, description="Signatures of filled legs.")
    failed_orders: list[str] = Field(default_factory=list, description="Names of failed legs.")
    error: Optional[Exception] = Field(default=None, exclude=True)


# ---------------------------------------------------------------------------
# Signals and market data
# ---------------------------------------------------------------------------


class PricePoint(BaseModel):
    price: float
    timestamp: datetime = Field(default_factory=utcnow)
    volume: Optional[float] = None


class Signal(BaseModel):
    """Ephemeral trading signal, consumed immediately by strategies."""

    id: str = Field(default_factory=lambda: new_id("sig_"))
    type: SignalType
    magnitude: float = Field(..., ge=0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    direction: SignalDirection = SignalDirection.NEUTRAL
    reason: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    pool_a: Optional[str] = None
    pool_b: Optional[str] = None
    hedge_group_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    @staticmethod
    def expiry(minutes: float) -> datetime:
        return utcnow() + timedelta(minutes=minutes)


class PoolQuote(BaseModel):
    """Best-execution pool returned by the venue."""

    ref: str
    expected_output: float = 0.0
    price_impact: float = 0.0


class SignatureStatus(BaseModel):
    """Execution status of a submitted transaction."""

    signature: str
    confirmation_status: Optional[str] = Field(
        default=None, description="processed, confirmed or finalized."
    )
    err: Optional[str] = None


# ---------------------------------------------------------------------------
# Risk results
# ---------------------------------------------------------------------------


class ValidationResult(BaseModel):
    valid: bool
    reason: Optional[str] = None


class TradeValidation(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    warnings: list[str] = Field(default_factory=list)


class PortfolioRisk(BaseModel):
    total_exposure: float = 0.0
    largest_position: float = 0.0
    open_positions: int = 0
    day_pnl: float = 0.0
    week_pnl: float = 0.0
    max_drawdown: float = 0.0


class RiskMetrics(BaseModel):
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    profit_factor: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0


# ---------------------------------------------------------------------------
# Hedge engine events
# ---------------------------------------------------------------------------


class PositionOpened(BaseModel):
    """Emitted when a hedge group has been opened and persisted."""

    hedge_group_id: str
    user_id: str
    instrument: str
    amount: float
    hedge_ratio: float
    entry_price: float
    strategy_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_hedge(cls, hedge: HedgePosition, strategy_id: Optional[str] = None) -> PositionOpened:
        return cls(
            hedge_group_id=hedge.hedge_group_id,
            user_id=hedge.user_id,
            instrument=hedge.instrument,
            amount=hedge.long.amount,
            hedge_ratio=hedge.target_ratio,
            entry_price=hedge.long.entry_price,
            strategy_id=strategy_id,
        )


class PositionClosed(BaseModel):
    """Emitted, and returned, when a hedge group has been closed."""

    hedge_group_id: str
    user_id: str
    total_pnl: float
    long_pnl: float
    short_pnl: float
    reason: str = "manual"
    signature: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class RebalanceAction(BaseModel):
    """What a rebalance did, or why it did nothing."""

    hedge_group_id: str
    rebalanced: bool = False
    current_ratio: float = 0.0
    target_ratio: float = 1.0
    drift: float = 0.0
    adjusted_leg: Optional[PositionSide] = None
    excess_value: float = 0.0


# ---------------------------------------------------------------------------
# Strategy configuration
# ---------------------------------------------------------------------------


class HedgeStrategyParameters(BaseModel):
    max_positions: int = Field(default=10, description="Open positions before entries stop.")
    max_position_size: float = Field(default=1000.0, description="Amount per hedge entry.")
    stop_loss: float = Field(default=0.1, description="Close at this fractional loss.")
    take_profit: float = Field(default=0.05, description="Close at this fractional gain.")
    min_spread: float = Field(default=0.005, description="Spread needed to enter.")
    breakout_threshold: float = Field(default=0.02)
    close_drift: float = Field(default=0.15, description="Drift that prompts an early close.")
    drift_close_max_loss: float = Field(
        default=0.03, description="Early close on drift only while loss is smaller than this."
    )
    instrument: str = Field(default="SOL")
    hedge_kind: HedgeKind = HedgeKind.DELTA_NEUTRAL
    monitored_pools: list[str] = Field(default_factory=list)


class StrategyConfig(BaseModel):
    """Tagged strategy configuration; ``type`` selects the implementation."""

    id: str
    name: str
    type: StrategyType = StrategyType.HEDGE
    enabled: bool = True
    parameters: HedgeStrategyParameters = Field(default_factory=HedgeStrategyParameters)


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class AlertType(str, Enum):
    POSITION_OPENED = "position_opened"
    POSITION_CLOSED = "position_closed"
    STOP_LOSS_APPROACHING = "stop_loss_approaching"
    STOP_LOSS_HIT = "stop_loss_hit"
    TAKE_PROFIT_HIT = "take_profit_hit"
    DAILY_LOSS_WARNING = "daily_loss_warning"
    DAILY_LOSS_LIMIT = "daily_loss_limit"
    RISK_LIMIT_WARNING = "risk_limit_warning"
    EMERGENCY_EXIT = "emergency_exit"
    REBALANCE_NEEDED = "rebalance_needed"
    UNHEDGED_EXPOSURE = "unhedged_exposure"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Alert(BaseModel):
    type: AlertType
    severity: AlertSeverity = AlertSeverity.INFO
    user_id: str
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
