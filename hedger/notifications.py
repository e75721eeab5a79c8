"""Alert service and notification sinks.

Alerts are fire-and-forget: a sink that fails is logged and skipped, and
``AlertService.send_alert`` never raises into trading code.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Optional

import httpx

from hedger.config import (
    ALERT_DAILY_LOSS_LIMIT,
    ALERT_DAILY_LOSS_WARNING,
    ALERT_STOP_LOSS_WARNING,
    HTTP_TIMEOUT,
)
from hedger.interfaces import NotificationSink
from hedger.types import Alert, AlertSeverity, AlertType, HedgePosition

logger = logging.getLogger(__name__)

RECENT_ALERTS_MAX = 200


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class LoggingSink:
    """Writes alerts to the structured log at a level matching severity."""

    _LEVELS = {
        AlertSeverity.INFO: logging.INFO,
        AlertSeverity.WARNING: logging.WARNING,
        AlertSeverity.ERROR: logging.ERROR,
        AlertSeverity.CRITICAL: logging.CRITICAL,
    }

    async def send(self, alert: Alert) -> None:
        logger.log(
            self._LEVELS[alert.severity],
            "alert",
            extra={
                "alert_type": alert.type.value,
                "severity": alert.severity.value,
                "user_id": alert.user_id,
                "title": alert.title,
                "alert_message": alert.message,
                "data": alert.data,
            },
        )


class WebhookSink:
    """POSTs alerts as JSON to a webhook URL."""

    def __init__(self, url: str, timeout: float = HTTP_TIMEOUT) -> None:
        self._url = url
        self._client = httpx.AsyncClient(timeout=timeout)

    async def send(self, alert: Alert) -> None:
        resp = await self._client.post(self._url, json=alert.model_dump(mode="json"))
        resp.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


# ---------------------------------------------------------------------------
# Alert service
# ---------------------------------------------------------------------------


class AlertService:
    """Builds typed alerts and fans them out to every configured sink."""

    def __init__(self, sinks: Optional[list[NotificationSink]] = None) -> None:
        self._sinks: list[NotificationSink] = list(sinks) if sinks is not None else [LoggingSink()]
        self._recent: deque[Alert] = deque(maxlen=RECENT_ALERTS_MAX)

    async def send_alert(self, alert: Alert) -> None:
        self._recent.append(alert)
        for sink in self._sinks:
            try:
                await sink.send(alert)
            except Exception:
                logger.warning(
                    "alert_sink_failed",
                    extra={"sink": type(sink).__name__, "alert_type": alert.type.value},
                    exc_info=True,
                )

    def recent_alerts(self, user_id: Optional[str] = None, limit: int = 10) -> list[Alert]:
        alerts = [a for a in self._recent if user_id is None or a.user_id == user_id]
        return list(reversed(alerts))[:limit]

    async def close(self) -> None:
        for sink in self._sinks:
            close = getattr(sink, "close", None)
            if close is not None:
                await close()

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    async def _emit(
        self,
        type_: AlertType,
        severity: AlertSeverity,
        user_id: str,
        title: str,
        message: str,
        **data: Any,
    ) -> None:
        await self.send_alert(
            Alert(type=type_, severity=severity, user_id=user_id, title=title, message=message, data=data)
        )

    async def position_opened(self, hedge: HedgePosition) -> None:
        await self._emit(
            AlertType.POSITION_OPENED,
            AlertSeverity.INFO,
            hedge.user_id,
            "Hedge position opened",
            f"Opened hedge {hedge.hedge_group_id} on {hedge.instrument}: "
            f"{hedge.long.amount} long / {hedge.short.amount} short at {hedge.long.entry_price}",
            hedge_group_id=hedge.hedge_group_id,
        )

    async def position_closed(self, user_id: str, hedge_group_id: str, pnl: float, reason: str) -> None:
        await self._emit(
            AlertType.POSITION_CLOSED,
            AlertSeverity.INFO if pnl >= 0 else AlertSeverity.WARNING,
            user_id,
            "Hedge position closed",
            f"Closed hedge {hedge_group_id} ({reason}). P&L: {pnl:.4f}",
            hedge_group_id=hedge_group_id,
            pnl=pnl,
            reason=reason,
        )

    async def stop_loss_hit(self, user_id: str, hedge_group_id: str, pnl: float) -> None:
        await self._emit(
            AlertType.STOP_LOSS_HIT,
            AlertSeverity.ERROR,
            user_id,
            "Stop-loss hit",
            f"Stop-loss triggered on {hedge_group_id}. Final P&L: {pnl:.4f}",
            hedge_group_id=hedge_group_id,
            pnl=pnl,
        )

    async def take_profit_hit(self, user_id: str, hedge_group_id: str, pnl: float) -> None:
        await self._emit(
            AlertType.TAKE_PROFIT_HIT,
            AlertSeverity.INFO,
            user_id,
            "Take-profit hit",
            f"Take-profit reached on {hedge_group_id}. Final P&L: {pnl:.4f}",
            hedge_group_id=hedge_group_id,
            pnl=pnl,
        )

    async def rebalance_needed(
        self, user_id: str, hedge_group_id: str, current_ratio: float, target_ratio: float
    ) -> None:
        await self._emit(
            AlertType.REBALANCE_NEEDED,
            AlertSeverity.WARNING,
            user_id,
            "Rebalance needed",
            f"Hedge {hedge_group_id} ratio {current_ratio:.3f} vs target {target_ratio:.3f}",
            hedge_group_id=hedge_group_id,
            current_ratio=current_ratio,
            target_ratio=target_ratio,
        )

    async def emergency_exit(self, user_id: str, reason: str, positions: int) -> None:
        await self._emit(
            AlertType.EMERGENCY_EXIT,
            AlertSeverity.CRITICAL,
            user_id,
            "Emergency exit",
            f"Emergency exit of {positions} positions: {reason}",
            reason=reason,
            positions=positions,
        )

    async def risk_limit_warning(self, user_id: str, message: str, **data: Any) -> None:
        await self._emit(
            AlertType.RISK_LIMIT_WARNING, AlertSeverity.WARNING, user_id, "Risk limit warning", message, **data
        )

    async def unhedged_exposure(
        self, user_id: str, successful: list[str], failed: list[str], reason: str
    ) -> None:
        await self._emit(
            AlertType.UNHEDGED_EXPOSURE,
            AlertSeverity.CRITICAL,
            user_id,
            "Unhedged exposure",
            f"Hedge leg(s) {failed} failed after {successful} filled: {reason}. "
            f"Manual reconciliation required.",
            successful=successful,
            failed=failed,
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Threshold checks
    # ------------------------------------------------------------------

    async def check_position(self, hedge: HedgePosition) -> None:
        """Warn when a hedge is approaching its stop-loss."""
        pnl_pct = hedge.pnl_pct
        if ALERT_DAILY_LOSS_LIMIT < pnl_pct <= ALERT_STOP_LOSS_WARNING:
            await self._emit(
                AlertType.STOP_LOSS_APPROACHING,
                AlertSeverity.WARNING,
                hedge.user_id,
                "Stop-loss approaching",
                f"Hedge {hedge.hedge_group_id} is at {pnl_pct:.2%}",
                hedge_group_id=hedge.hedge_group_id,
                pnl_pct=pnl_pct,
            )

    async def check_portfolio(self, user_id: str, day_pnl: float, portfolio_value: float) -> None:
        """Daily loss warning at -5%, limit alert at -10%."""
        if portfolio_value <= 0:
            return
        day_return = day_pnl / portfolio_value
        if day_return <= ALERT_DAILY_LOSS_LIMIT:
            await self._emit(
                AlertType.DAILY_LOSS_LIMIT,
                AlertSeverity.CRITICAL,
                user_id,
                "Daily loss limit reached",
                f"Daily P&L {day_return:.2%} reached the limit",
                day_pnl=day_pnl,
            )
        elif day_return <= ALERT_DAILY_LOSS_WARNING:
            await self._emit(
                AlertType.DAILY_LOSS_WARNING,
                AlertSeverity.WARNING,
                user_id,
                "Daily loss warning",
                f"Daily P&L {day_return:.2%}",
                day_pnl=day_pnl,
            )
