"""Service configuration loaded from environment variables."""

from __future__ import annotations

import logging
import os
import sys

from pydantic import BaseModel, Field
from pythonjsonlogger import jsonlogger


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# ClickHouse connection
# ---------------------------------------------------------------------------
CLICKHOUSE_HOST = os.environ.get("CLICKHOUSE_HOST", "localhost")
CLICKHOUSE_PORT = int(os.environ.get("CLICKHOUSE_PORT", "8443"))
CLICKHOUSE_USER = os.environ.get("CLICKHOUSE_USER", "default")
CLICKHOUSE_PASSWORD = os.environ.get("CLICKHOUSE_PASSWORD", "")
CLICKHOUSE_DATABASE = os.environ.get("CLICKHOUSE_DATABASE", "hedger")
CLICKHOUSE_SECURE = _env_bool("CLICKHOUSE_SECURE", "true")

# Storage backend: "clickhouse" or "memory"
STORAGE_BACKEND = os.environ.get("STORAGE_BACKEND", "clickhouse").lower()

# ---------------------------------------------------------------------------
# Service endpoints
# ---------------------------------------------------------------------------
PRICE_API_URL = os.environ.get("PRICE_API_URL", "http://localhost:9000")
PRICE_WS_URL = os.environ.get("PRICE_WS_URL", "ws://localhost:9000/ws/prices")
VENUE_API_URL = os.environ.get("VENUE_API_URL", "http://localhost:9100")
ALERT_WEBHOOK_URL = os.environ.get("ALERT_WEBHOOK_URL", "")
HTTP_TIMEOUT = float(os.environ.get("HTTP_TIMEOUT", "30.0"))   # httpx timeout in seconds
WS_RECONNECT_BASE_DELAY = 1.0    # Seconds, doubles per retry
WS_RECONNECT_MAX_DELAY = 60.0

# ---------------------------------------------------------------------------
# Price cache / history
# ---------------------------------------------------------------------------
PRICE_CACHE_TTL = 30.0           # Seconds before a cached price is refetched
PRICE_HISTORY_MAX = 1000         # Points kept per instrument by the price client
SIGNAL_HISTORY_MAX = 100         # Points kept per instrument by the signal engine

# ---------------------------------------------------------------------------
# Trading limits
# ---------------------------------------------------------------------------
MAX_POSITIONS = int(os.environ.get("MAX_POSITIONS", "10"))
MIN_TRADE_AMOUNT = float(os.environ.get("MIN_TRADE_AMOUNT", "0.01"))
MAX_TRADE_AMOUNT = float(os.environ.get("MAX_TRADE_AMOUNT", "1000"))
DEFAULT_SLIPPAGE = float(os.environ.get("DEFAULT_SLIPPAGE", "0.01"))
MAX_SLIPPAGE = float(os.environ.get("MAX_SLIPPAGE", "0.02"))
BASE_ASSET = os.environ.get("BASE_ASSET", "SOL")

# ---------------------------------------------------------------------------
# Hedge settings
# ---------------------------------------------------------------------------
HEDGE_DEFAULT_RATIO = float(os.environ.get("HEDGE_DEFAULT_RATIO", "1.0"))
HEDGE_MIN_RATIO = float(os.environ.get("HEDGE_MIN_RATIO", "0.5"))
HEDGE_MAX_RATIO = float(os.environ.get("HEDGE_MAX_RATIO", "2.0"))
HEDGE_REBALANCE_THRESHOLD = float(os.environ.get("HEDGE_REBALANCE_THRESHOLD", "0.05"))
HEDGE_AUTO_REBALANCE = _env_bool("HEDGE_AUTO_REBALANCE", "true")

# ---------------------------------------------------------------------------
# Risk limits
# ---------------------------------------------------------------------------
RISK_MAX_LEVERAGE = float(os.environ.get("RISK_MAX_LEVERAGE", "5"))
RISK_MAX_DRAWDOWN = float(os.environ.get("RISK_MAX_DRAWDOWN", "0.2"))
RISK_STOP_LOSS_PCT = float(os.environ.get("RISK_STOP_LOSS_PCT", "0.1"))
RISK_TAKE_PROFIT_PCT = float(os.environ.get("RISK_TAKE_PROFIT_PCT", "0.2"))
RISK_MAX_DAILY_LOSS = float(os.environ.get("RISK_MAX_DAILY_LOSS", "0.1"))
RISK_MAX_TOKEN_EXPOSURE = 0.30   # Max share of the portfolio in one instrument
RISK_WARNING_LEVEL = 0.80        # Warn once a limit is this far used
RISK_FEE_RESERVE = 0.1           # Base asset to keep for network fees
RISK_BALANCE_BUFFER = 1.01       # Balance must cover required amount plus 1%

# ---------------------------------------------------------------------------
# Order execution
# ---------------------------------------------------------------------------
EXECUTION_MAX_RETRIES = 4
EXECUTION_RETRY_BASE_DELAY = 2.0     # Seconds, doubles per retry
EXECUTION_RETRY_MAX_DELAY = 16.0
EXECUTION_CONFIRM_TIMEOUT = float(os.environ.get("EXECUTION_CONFIRM_TIMEOUT", "30"))
EXECUTION_CONFIRM_POLL_INTERVAL = 1.0
EXECUTION_FEE_RATE = 0.001           # 0.1% of traded amount

# ---------------------------------------------------------------------------
# Automation
# ---------------------------------------------------------------------------
AUTOMATION_INTERVAL = int(os.environ.get("AUTOMATION_INTERVAL", "30"))
AUTOMATION_USER_ID = os.environ.get("AUTOMATION_USER_ID", "automation")
AUTOMATION_POOLS = [
    p.strip() for p in os.environ.get("AUTOMATION_POOLS", "").split(",") if p.strip()
]
MAX_POSITIONS_PER_HOUR = int(os.environ.get("MAX_POSITIONS_PER_HOUR", "3"))
MANUAL_APPROVAL_THRESHOLD = float(os.environ.get("MANUAL_APPROVAL_THRESHOLD", "1000"))
DRY_RUN = _env_bool("DRY_RUN", "false")
KILL_SWITCH = _env_bool("KILL_SWITCH", "false")

# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------
ALERT_STOP_LOSS_WARNING = -0.08
ALERT_DAILY_LOSS_WARNING = -0.05
ALERT_DAILY_LOSS_LIMIT = -0.10

# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------
HEALTH_CHECK_PORT = int(os.environ.get("HEALTH_CHECK_PORT", "8080"))

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()


# ---------------------------------------------------------------------------
# Typed config models
# ---------------------------------------------------------------------------


class TradingConfig(BaseModel):
    """Order-size and position-count limits."""

    max_positions: int = Field(default=MAX_POSITIONS, description="Max concurrent open positions.")
    min_trade_amount: float = Field(default=MIN_TRADE_AMOUNT)
    max_trade_amount: float = Field(default=MAX_TRADE_AMOUNT)
    default_slippage: float = Field(default=DEFAULT_SLIPPAGE, description="Fraction, 0.01 = 1%.")
    max_slippage: float = Field(default=MAX_SLIPPAGE, description="Fraction, 0.02 = 2%.")
    base_asset: str = Field(default=BASE_ASSET, description="Asset checked for balance.")


class HedgeConfig(BaseModel):
    """Hedge ratio bounds and rebalancing behaviour."""

    default_ratio: float = Field(default=HEDGE_DEFAULT_RATIO)
    min_ratio: float = Field(default=HEDGE_MIN_RATIO)
    max_ratio: float = Field(default=HEDGE_MAX_RATIO)
    rebalance_threshold: float = Field(default=HEDGE_REBALANCE_THRESHOLD)
    auto_rebalance: bool = Field(default=HEDGE_AUTO_REBALANCE)


class RiskConfig(BaseModel):
    """Portfolio risk limits. Percentages are fractions."""

    max_leverage: float = Field(default=RISK_MAX_LEVERAGE)
    max_drawdown: float = Field(default=RISK_MAX_DRAWDOWN)
    stop_loss_pct: float = Field(default=RISK_STOP_LOSS_PCT)
    take_profit_pct: float = Field(default=RISK_TAKE_PROFIT_PCT)
    max_daily_loss: float = Field(default=RISK_MAX_DAILY_LOSS)
    max_token_exposure: float = Field(default=RISK_MAX_TOKEN_EXPOSURE)


class SafetyConfig(BaseModel):
    """Automation safety gates, mutable at runtime."""

    max_positions_per_hour: int = Field(default=MAX_POSITIONS_PER_HOUR)
    manual_approval_threshold: float = Field(default=MANUAL_APPROVAL_THRESHOLD)
    dry_run: bool = Field(default=DRY_RUN)
    kill_switch: bool = Field(default=KILL_SWITCH)


class AppConfig(BaseModel):
    """Bundle of all typed config sections."""

    trading: TradingConfig = Field(default_factory=TradingConfig)
    hedge: HedgeConfig = Field(default_factory=HedgeConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)


def load_config() -> AppConfig:
    """Build the typed config from the environment-derived constants."""
    return AppConfig()


def setup_logging() -> None:
    """Configure structured JSON logging."""
    handler = logging.StreamHandler(sys.stdout)
    formatter = jsonlogger.JsonFormatter(
        fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(LOG_LEVEL)

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("clickhouse_connect").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
