"""In-process position and order store.

Used for dry runs and tests. Records are copied on the way in and out so
callers only see persisted state after an explicit save.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from hedger.types import Order, Position, PositionStatus


class InMemoryStore:
    """Dict-backed PositionStore and OrderStore."""

    def __init__(self) -> None:
        self._positions: dict[str, Position] = {}
        self._orders: dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    async def save_position(self, position: Position) -> None:
        async with self._lock:
            self._positions[position.id] = position.model_copy(deep=True)

    async def get_position(self, position_id: str) -> Optional[Position]:
        pos = self._positions.get(position_id)
        return pos.model_copy(deep=True) if pos else None

    async def list_positions(
        self,
        user_id: Optional[str] = None,
        status: Optional[PositionStatus] = None,
        hedge_group_id: Optional[str] = None,
    ) -> list[Position]:
        rows = [
            p for p in self._positions.values()
            if (user_id is None or p.user_id == user_id)
            and (status is None or p.status == status)
            and (hedge_group_id is None or p.hedge_group_id == hedge_group_id)
        ]
        return [p.model_copy(deep=True) for p in rows]

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def save_order(self, order: Order) -> None:
        async with self._lock:
            self._orders[order.id] = order.model_copy(deep=True)

    async def get_order(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def list_orders(self, user_id: Optional[str] = None) -> list[Order]:
        return [
            o.model_copy(deep=True) for o in self._orders.values()
            if user_id is None or o.user_id == user_id
        ]
