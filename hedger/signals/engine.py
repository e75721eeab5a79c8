"""Signal engine — rolling price history and signal detection.

Each monitored pool gets a bounded history buffer fed by a push
subscription on the price feed. Detectors read the buffer (or fetch live
prices) and return a ``Signal`` or ``None``. Detectors never modify the
history, and any failure inside a detector is logged and reported as
"no signal" so one bad feed cannot break a strategy cycle.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Optional

from hedger.config import SIGNAL_HISTORY_MAX
from hedger.interfaces import PositionStore, PriceFeed, Unsubscribe
from hedger.signals import indicators
from hedger.types import (
    PositionSide,
    PositionStatus,
    PricePoint,
    Signal,
    SignalDirection,
    SignalType,
    utcnow,
)

logger = logging.getLogger(__name__)

BREAKOUT_EXPIRY_MIN = 5
SPREAD_EXPIRY_MIN = 2
VOLUME_SPIKE_EXPIRY_MIN = 5
MIN_BREAKOUT_POINTS = 10
MIN_VOLUME_POINTS = 10
MIN_TREND_POINTS = 30
TREND_CONFIDENCE = 0.7
CROSSING_CONFIDENCE = 0.9


class SignalEngine:
    """Per-pool price history plus breakout, spread, volume, trend and drift detectors."""

    def __init__(
        self,
        price_feed: PriceFeed,
        store: Optional[PositionStore] = None,
        history_size: int = SIGNAL_HISTORY_MAX,
    ) -> None:
        self._feed = price_feed
        self._store = store
        self._history_size = history_size
        self._history: dict[str, deque[PricePoint]] = {}
        self._unsubscribe: dict[str, Unsubscribe] = {}

    # ------------------------------------------------------------------
    # Monitoring / ingestion
    # ------------------------------------------------------------------

    def start_monitoring(self, ref: str) -> None:
        """Subscribe to price pushes for *ref*. Idempotent."""
        self._history.setdefault(ref, deque(maxlen=self._history_size))
        if ref in self._unsubscribe:
            return
        self._unsubscribe[ref] = self._feed.subscribe(ref, self._on_price)
        logger.info("monitoring_started", extra={"pool_ref": ref})

    def stop_monitoring(self, ref: str) -> None:
        unsubscribe = self._unsubscribe.pop(ref, None)
        if unsubscribe is not None:
            unsubscribe()
        self._history.pop(ref, None)
        logger.info("monitoring_stopped", extra={"pool_ref": ref})

    def stop_all(self) -> None:
        for ref in list(self._history):
            self.stop_monitoring(ref)

    def record_price(
        self,
        ref: str,
        price: float,
        volume: Optional[float] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """Append a point to *ref*'s history, evicting the oldest when full."""
        history = self._history.setdefault(ref, deque(maxlen=self._history_size))
        history.append(PricePoint(price=price, volume=volume, timestamp=timestamp or utcnow()))

    def _on_price(self, ref: str, price: float, volume: Optional[float] = None) -> None:
        self.record_price(ref, price, volume)

    def history(self, ref: str) -> list[PricePoint]:
        return list(self._history.get(ref, ()))

    def _prices(self, ref: str) -> list[float]:
        return [p.price for p in self._history.get(ref, ())]

    def _volumes(self, ref: str) -> list[float]:
        return [p.volume for p in self._history.get(ref, ()) if p.volume is not None]

    # ------------------------------------------------------------------
    # Detectors
    # ------------------------------------------------------------------

    def detect_breakout(self, ref: str, threshold: float = 0.02) -> Optional[Signal]:
        try:
            prices = self._prices(ref)
            if len(prices) < MIN_BREAKOUT_POINTS:
                return None

            current, historical = prices[-1], prices[:-1]
            breakout, direction, magnitude = indicators.detect_breakout(
                current, historical, threshold
            )
            if not breakout:
                return None

            return Signal(
                type=SignalType.BREAKOUT,
                pool_a=ref,
                magnitude=magnitude,
                confidence=min(magnitude / threshold, 1.0),
                direction=SignalDirection(direction or "neutral"),
                reason=f"Price {direction} breakout detected: {magnitude:.2%} move",
                metadata={
                    "current_price": current,
                    "threshold": threshold,
                    "historical_average": indicators.sma(historical, min(20, len(historical))),
                },
                expires_at=Signal.expiry(BREAKOUT_EXPIRY_MIN),
            )
        except Exception:
            logger.warning("detect_breakout_error", extra={"pool_ref": ref}, exc_info=True)
            return None

    async def detect_spread_opportunity(
        self, pool_a: str, pool_b: str, threshold: float = 0.005
    ) -> Optional[Signal]:
        try:
            price_a = await self._feed.get_current_price(pool_a)
            price_b = await self._feed.get_current_price(pool_b)
            if not price_a or not price_b:
                return None

            spread = abs(price_a - price_b) / ((price_a + price_b) / 2)
            if spread <= threshold:
                return None

            return Signal(
                type=SignalType.SPREAD,
                pool_a=pool_a,
                pool_b=pool_b,
                magnitude=spread,
                confidence=min(spread / threshold, 1.0),
                direction=SignalDirection.UP if price_a > price_b else SignalDirection.DOWN,
                reason=f"Spread opportunity detected: {spread:.3%} between pools",
                metadata={"price_a": price_a, "price_b": price_b, "spread": spread},
                expires_at=Signal.expiry(SPREAD_EXPIRY_MIN),
            )
        except Exception:
            logger.warning(
                "detect_spread_error",
                extra={"pool_a": pool_a, "pool_b": pool_b},
                exc_info=True,
            )
            return None

    def detect_volume_spike(self, ref: str, threshold: float = 2.0) -> Optional[Signal]:
        try:
            volumes = self._volumes(ref)
            if len(volumes) < MIN_VOLUME_POINTS:
                return None

            current, historical = volumes[-1], volumes[:-1]
            avg = sum(historical) / len(historical)
            if avg <= 0 or not indicators.is_volume_spike(current, avg, threshold):
                return None

            magnitude = current / avg
            return Signal(
                type=SignalType.VOLUME_SPIKE,
                pool_a=ref,
                magnitude=magnitude,
                confidence=min((magnitude - threshold) / threshold, 1.0),
                direction=SignalDirection.UP,
                reason=f"Volume spike detected: {magnitude:.2f}x average volume",
                metadata={"current_volume": current, "average_volume": avg, "threshold": threshold},
                expires_at=Signal.expiry(VOLUME_SPIKE_EXPIRY_MIN),
            )
        except Exception:
            logger.warning("detect_volume_spike_error", extra={"pool_ref": ref}, exc_info=True)
            return None

    def detect_trend_change(self, ref: str) -> Optional[Signal]:
        try:
            prices = self._prices(ref)
            if len(prices) < MIN_TREND_POINTS:
                return None

            trend = indicators.detect_trend(prices, 10, 30)
            if trend == "sideways":
                return None

            change = indicators.price_change_over_period(prices[-10:])
            return Signal(
                type=SignalType.TREND,
                pool_a=ref,
                magnitude=abs(change),
                confidence=TREND_CONFIDENCE,
                direction=SignalDirection.UP if trend == "uptrend" else SignalDirection.DOWN,
                reason=f"{trend} detected with {change:.2%} recent change",
                metadata={"trend": trend, "change": change},
            )
        except Exception:
            logger.warning("detect_trend_error", extra={"pool_ref": ref}, exc_info=True)
            return None

    def detect_threshold_crossing(
        self, ref: str, level: float, direction: str
    ) -> Optional[Signal]:
        """Fire when the last two points cross *level* going "above" or "below"."""
        try:
            prices = self._prices(ref)
            if len(prices) < 2:
                return None

            previous, current = prices[-2], prices[-1]
            crossed_above = previous <= level < current
            crossed_below = previous >= level > current
            if not ((direction == "above" and crossed_above) or (direction == "below" and crossed_below)):
                return None

            return Signal(
                type=SignalType.BREAKOUT,
                pool_a=ref,
                magnitude=abs(current - level) / level,
                confidence=CROSSING_CONFIDENCE,
                direction=SignalDirection.UP if direction == "above" else SignalDirection.DOWN,
                reason=f"Price crossed {direction} threshold of {level}",
                metadata={"current_price": current, "previous_price": previous, "level": level},
            )
        except Exception:
            logger.warning("detect_crossing_error", extra={"pool_ref": ref}, exc_info=True)
            return None

    async def check_rebalance_needed(
        self, hedge_group_id: str, threshold: float = 0.05
    ) -> Optional[Signal]:
        """Drift of the live long/short value ratio from the group's target."""
        if self._store is None:
            return None
        try:
            legs = await self._store.list_positions(
                hedge_group_id=hedge_group_id, status=PositionStatus.OPEN
            )
            long_leg = next((p for p in legs if p.side == PositionSide.LONG), None)
            short_leg = next((p for p in legs if p.side == PositionSide.SHORT), None)
            if long_leg is None or short_leg is None:
                return None

            long_value = long_leg.amount * await self._feed.get_current_price(long_leg.pool_ref)
            short_value = short_leg.amount * await self._feed.get_current_price(short_leg.pool_ref)
            if short_value <= 0:
                return None
            current_ratio = long_value / short_value
            target_ratio = long_leg.hedge_ratio or 1.0

            drift = abs(current_ratio - target_ratio) / target_ratio
            if drift <= threshold:
                return None

            return Signal(
                type=SignalType.REBALANCE,
                hedge_group_id=hedge_group_id,
                magnitude=drift,
                confidence=min(drift / threshold, 1.0),
                direction=SignalDirection.UP if current_ratio > target_ratio else SignalDirection.DOWN,
                reason=f"Hedge ratio drifted {drift:.2%} from target",
                metadata={
                    "current_ratio": current_ratio,
                    "target_ratio": target_ratio,
                    "long_value": long_value,
                    "short_value": short_value,
                },
            )
        except Exception:
            logger.warning(
                "check_rebalance_error",
                extra={"hedge_group_id": hedge_group_id},
                exc_info=True,
            )
            return None

    def scan_for_signals(self) -> list[Signal]:
        """Run breakout, volume and trend detectors over every monitored pool."""
        signals: list[Signal] = []
        for ref in list(self._history):
            for signal in (
                self.detect_breakout(ref, 0.02),
                self.detect_volume_spike(ref, 2.0),
                self.detect_trend_change(ref),
            ):
                if signal is not None:
                    signals.append(signal)
        return signals

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_volatility(self, ref: str) -> float:
        prices = self._prices(ref)
        if len(prices) < 2:
            return 0.0
        return indicators.volatility(prices)

    def get_price_change(self, ref: str, minutes: float = 5) -> float:
        """Fractional change across points recorded in the last *minutes*."""
        cutoff = utcnow() - timedelta(minutes=minutes)
        recent = [p.price for p in self._history.get(ref, ()) if p.timestamp >= cutoff]
        if len(recent) < 2:
            return 0.0
        return indicators.price_change(recent[-1], recent[0])

    def clear_history(self) -> None:
        for history in self._history.values():
            history.clear()

    def get_monitoring_status(self) -> dict:
        return {
            "monitored_pools": len(self._history),
            "total_data_points": sum(len(h) for h in self._history.values()),
            "pools": list(self._history),
        }
