"""Collaborator interfaces the execution core depends on.

Concrete adapters live in ``hedger.api``, ``hedger.storage`` and
``hedger.notifications``; tests substitute in-process fakes.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Optional, Protocol, runtime_checkable

from hedger.types import Alert, Order, PoolQuote, Position, PositionStatus, SignatureStatus

PriceCallback = Callable[[str, float, Optional[float]], None]
Unsubscribe = Callable[[], None]


@runtime_checkable
class PriceFeed(Protocol):
    async def get_current_price(self, ref: str) -> float: ...

    def subscribe(self, ref: str, on_price: PriceCallback) -> Unsubscribe:
        """Register ``on_price(ref, price, volume)``; returns an unsubscribe handle."""
        ...


@runtime_checkable
class ExecutionVenue(Protocol):
    async def place_liquidity_order(
        self, user_id: str, ref: str, amount: float, slippage_bps: int
    ) -> str:
        """Submit an order and return its transaction signature."""
        ...

    async def best_execution_pool(self, asset_a: str, asset_b: str, amount: float) -> PoolQuote: ...

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]: ...


@runtime_checkable
class WalletProvider(Protocol):
    async def get_signing_key(self, user_id: str) -> str: ...

    async def check_balance(self, user_id: str, asset: str) -> float: ...


@runtime_checkable
class NotificationSink(Protocol):
    async def send(self, alert: Alert) -> None: ...


@runtime_checkable
class PositionStore(Protocol):
    async def save_position(self, position: Position) -> None: ...

    async def get_position(self, position_id: str) -> Optional[Position]: ...

    async def list_positions(
        self,
        user_id: Optional[str] = None,
        status: Optional[PositionStatus] = None,
        hedge_group_id: Optional[str] = None,
    ) -> list[Position]: ...


@runtime_checkable
class OrderStore(Protocol):
    async def save_order(self, order: Order) -> None: ...

    async def get_order(self, order_id: str) -> Optional[Order]: ...


Sleep = Callable[[float], Awaitable[None]]
