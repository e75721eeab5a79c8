"""Position manager — lifecycle and queries for positions and hedge groups.

The position manager is the only component that writes Position records.
Hedge groups are not stored separately: a group is the pair of legs that
share a ``hedge_group_id``, and any operation on a group whose long or short
leg is missing is rejected.

Realized P&L is recorded gross, ``(exit - entry) * amount`` for both sides;
fees are tracked separately on each leg and netted out in stats.
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import Optional

from hedger.errors import ValidationError
from hedger.interfaces import PositionStore
from hedger.types import (
    EmergencyCloseReport,
    HedgePosition,
    Position,
    PositionSide,
    PositionStats,
    PositionStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


def new_hedge_group_id() -> str:
    return f"hedge_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class PositionManager:
    """Creates, marks, closes and queries positions through a PositionStore."""

    def __init__(self, store: PositionStore) -> None:
        self._store = store

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_position(
        self,
        user_id: str,
        side: PositionSide,
        pool_ref: str,
        instrument: str,
        amount: float,
        entry_price: float,
        fees: float = 0.0,
        hedge_group_id: Optional[str] = None,
        hedge_ratio: Optional[float] = None,
    ) -> Position:
        position = Position(
            user_id=user_id,
            side=side,
            pool_ref=pool_ref,
            instrument=instrument,
            amount=amount,
            entry_price=entry_price,
            current_price=entry_price,
            fees=fees,
            hedge_group_id=hedge_group_id,
            hedge_ratio=hedge_ratio,
        )
        await self._store.save_position(position)

        logger.info(
            "position_opened",
            extra={
                "position_id": position.id,
                "user_id": user_id,
                "side": side.value,
                "instrument": instrument,
                "amount": amount,
                "entry_price": entry_price,
                "hedge_group_id": hedge_group_id,
            },
        )
        return position

    async def create_hedge_position(
        self,
        user_id: str,
        pool_ref: str,
        instrument: str,
        long_amount: float,
        short_amount: float,
        entry_price: float,
        hedge_ratio: float,
        long_fees: float = 0.0,
        short_fees: float = 0.0,
        hedge_group_id: Optional[str] = None,
    ) -> HedgePosition:
        """Persist both legs of a new group under one hedge group id."""
        group_id = hedge_group_id or new_hedge_group_id()
        long_leg = await self.create_position(
            user_id, PositionSide.LONG, pool_ref, instrument, long_amount, entry_price,
            fees=long_fees, hedge_group_id=group_id, hedge_ratio=hedge_ratio,
        )
        short_leg = await self.create_position(
            user_id, PositionSide.SHORT, pool_ref, instrument, short_amount, entry_price,
            fees=short_fees, hedge_group_id=group_id, hedge_ratio=hedge_ratio,
        )
        return HedgePosition(hedge_group_id=group_id, long=long_leg, short=short_leg)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_position(self, position_id: str) -> Optional[Position]:
        return await self._store.get_position(position_id)

    async def get_open_positions(self, user_id: Optional[str] = None) -> list[Position]:
        """Open positions, newest first."""
        positions = await self._store.list_positions(user_id=user_id, status=PositionStatus.OPEN)
        return sorted(positions, key=lambda p: p.opened_at, reverse=True)

    async def get_hedge_legs(
        self, hedge_group_id: str, status: Optional[PositionStatus] = None
    ) -> list[Position]:
        return await self._store.list_positions(hedge_group_id=hedge_group_id, status=status)

    async def get_hedge_position(
        self, hedge_group_id: str, status: Optional[PositionStatus] = None
    ) -> HedgePosition:
        """Both legs of a group. Raises ValidationError if either is missing."""
        legs = await self.get_hedge_legs(hedge_group_id, status)
        return HedgePosition.from_legs(hedge_group_id, legs)

    async def get_hedge_positions(
        self, user_id: Optional[str] = None, status: Optional[PositionStatus] = PositionStatus.OPEN
    ) -> list[HedgePosition]:
        """Complete groups only; a group with a missing leg is skipped and logged."""
        positions = await self._store.list_positions(user_id=user_id, status=status)
        groups: dict[str, list[Position]] = {}
        for p in positions:
            if p.hedge_group_id:
                groups.setdefault(p.hedge_group_id, []).append(p)

        hedges: list[HedgePosition] = []
        for group_id, legs in groups.items():
            try:
                hedges.append(HedgePosition.from_legs(group_id, legs))
            except ValidationError:
                logger.warning(
                    "incomplete_hedge_group",
                    extra={"hedge_group_id": group_id, "legs": len(legs)},
                )
        hedges.sort(key=lambda h: h.long.opened_at, reverse=True)
        return hedges

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    async def update_position_price(self, position_id: str, price: float) -> Position:
        position = await self._require(position_id)
        position.mark_to_market(price)
        await self._store.save_position(position)
        return position

    async def close_position(self, position_id: str, exit_price: float) -> Position:
        position = await self._require(position_id)
        if not position.is_open:
            raise ValidationError(
                f"Position {position_id} is already closed",
                field="position_id",
                value=position_id,
            )
        return await self._close(position, exit_price)

    async def close_hedge_position(
        self, hedge_group_id: str, long_exit_price: float, short_exit_price: float
    ) -> tuple[Position, Position]:
        """Close both open legs of a group. Returns (long, short)."""
        hedge = await self.get_hedge_position(hedge_group_id, PositionStatus.OPEN)
        long_leg = await self._close(hedge.long, long_exit_price)
        short_leg = await self._close(hedge.short, short_exit_price)
        return long_leg, short_leg

    async def _close(self, position: Position, exit_price: float) -> Position:
        now = utcnow()
        position.current_price = exit_price
        position.realized_pnl = (exit_price - position.entry_price) * position.amount
        position.unrealized_pnl = 0.0
        position.status = PositionStatus.CLOSED
        position.closed_at = now
        position.updated_at = now
        await self._store.save_position(position)

        logger.info(
            "position_closed",
            extra={
                "position_id": position.id,
                "user_id": position.user_id,
                "side": position.side.value,
                "exit_price": exit_price,
                "realized_pnl": round(position.realized_pnl, 6),
                "hedge_group_id": position.hedge_group_id,
            },
        )
        return position

    async def _require(self, position_id: str) -> Position:
        position = await self._store.get_position(position_id)
        if position is None:
            raise ValidationError(
                f"Position {position_id} not found", field="position_id", value=position_id
            )
        return position

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def get_position_stats(self, user_id: Optional[str] = None) -> PositionStats:
        positions = await self._store.list_positions(user_id=user_id)
        realized = sum(p.realized_pnl for p in positions)
        unrealized = sum(p.unrealized_pnl for p in positions if p.is_open)
        fees = sum(p.fees for p in positions)
        open_count = sum(1 for p in positions if p.is_open)
        return PositionStats(
            total_positions=len(positions),
            open_positions=open_count,
            closed_positions=len(positions) - open_count,
            total_realized_pnl=realized,
            total_unrealized_pnl=unrealized,
            total_fees=fees,
            net_pnl=realized + unrealized - fees,
        )

    # ------------------------------------------------------------------
    # Mass close
    # ------------------------------------------------------------------

    async def emergency_close_all_positions(
        self, user_id: str, prices: Optional[dict[str, float]] = None
    ) -> EmergencyCloseReport:
        """Close every open position for *user_id*, collecting per-item errors.

        Exit prices come from *prices* keyed by pool ref, falling back to the
        last tracked price and then the entry price.
        """
        prices = prices or {}
        report = EmergencyCloseReport()
        for position in await self.get_open_positions(user_id):
            try:
                exit_price = prices.get(position.pool_ref) or position.current_price or position.entry_price
                closed = await self._close(position, exit_price)
                report.closed_count += 1
                report.total_pnl += closed.realized_pnl
            except Exception as e:
                report.errors.append(f"{position.id}: {e}")
                logger.error(
                    "emergency_close_failed",
                    extra={"position_id": position.id, "user_id": user_id, "error": str(e)},
                    exc_info=True,
                )

        logger.warning(
            "emergency_close_complete",
            extra={
                "user_id": user_id,
                "closed": report.closed_count,
                "failed": len(report.errors),
                "total_pnl": round(report.total_pnl, 6),
            },
        )
        return report

    async def emergency_close_all_hedge_positions(
        self, user_id: str, prices: Optional[dict[str, float]] = None
    ) -> EmergencyCloseReport:
        """Close every complete open hedge group; a failed group does not stop the batch."""
        prices = prices or {}
        report = EmergencyCloseReport()
        for hedge in await self.get_hedge_positions(user_id):
            try:
                long_exit = prices.get(hedge.long.pool_ref) or hedge.long.current_price or hedge.long.entry_price
                short_exit = prices.get(hedge.short.pool_ref) or hedge.short.current_price or hedge.short.entry_price
                long_leg, short_leg = await self.close_hedge_position(
                    hedge.hedge_group_id, long_exit, short_exit
                )
                report.closed_count += 1
                report.total_pnl += long_leg.realized_pnl + short_leg.realized_pnl
            except Exception as e:
                report.errors.append(f"{hedge.hedge_group_id}: {e}")
                logger.error(
                    "emergency_hedge_close_failed",
                    extra={"hedge_group_id": hedge.hedge_group_id, "error": str(e)},
                    exc_info=True,
                )

        logger.warning(
            "emergency_hedge_close_complete",
            extra={"user_id": user_id, "closed": report.closed_count, "failed": len(report.errors)},
        )
        return report

    async def close_positions_exceeding_stop_loss(
        self, user_id: str, stop_loss_pct: float, prices: Optional[dict[str, float]] = None
    ) -> EmergencyCloseReport:
        """Close open positions whose adverse move from entry reached *stop_loss_pct*.

        Prices fall back to the last tracked price and then the entry price.
        """
        prices = prices or {}
        report = EmergencyCloseReport()
        for position in await self.get_open_positions(user_id):
            price = prices.get(position.pool_ref) or position.current_price or position.entry_price
            move = (price - position.entry_price) / position.entry_price
            adverse = -move if position.side == PositionSide.LONG else move
            if adverse < stop_loss_pct:
                continue
            try:
                closed = await self._close(position, price)
                report.closed_count += 1
                report.total_pnl += closed.realized_pnl
            except Exception as e:
                report.errors.append(f"{position.id}: {e}")
                logger.error(
                    "stop_loss_close_failed",
                    extra={"position_id": position.id, "error": str(e)},
                    exc_info=True,
                )
        return report
