"""In-process stand-ins for the price feed, venue, wallet and alert sinks."""

from __future__ import annotations

from collections import deque
from typing import Optional

from hedger.errors import NetworkError
from hedger.storage.memory import InMemoryStore
from hedger.types import Alert, PoolQuote, Position, SignatureStatus

POOL = "pool-sol-usdc"


class FakePriceFeed:
    """Fixed prices per pool, with optional one-shot queues and manual pushes."""

    def __init__(self, prices: Optional[dict[str, float]] = None) -> None:
        self.prices = dict(prices or {})
        self.queues: dict[str, deque[float]] = {}
        self.subscribers: dict[str, list] = {}
        self.calls: list[str] = []

    def set_price(self, ref: str, price: float) -> None:
        self.prices[ref] = price

    def queue_prices(self, ref: str, *prices: float) -> None:
        self.queues.setdefault(ref, deque()).extend(prices)

    async def get_current_price(self, ref: str) -> float:
        self.calls.append(ref)
        queue = self.queues.get(ref)
        if queue:
            self.prices[ref] = queue.popleft()
        if ref not in self.prices:
            raise NetworkError(f"no price for {ref}", endpoint=f"/prices/{ref}")
        return self.prices[ref]

    def subscribe(self, ref: str, on_price):
        self.subscribers.setdefault(ref, []).append(on_price)

        def unsubscribe() -> None:
            callbacks = self.subscribers.get(ref, [])
            if on_price in callbacks:
                callbacks.remove(on_price)

        return unsubscribe

    def push(self, ref: str, price: float, volume: Optional[float] = None) -> None:
        self.prices[ref] = price
        for callback in list(self.subscribers.get(ref, ())):
            callback(ref, price, volume)


class FakeVenue:
    """Returns scripted outcomes per placed order, then sequential signatures."""

    def __init__(self, pool: str = POOL) -> None:
        self.pool = pool
        self.outcomes: deque = deque()
        self.placed: list[tuple[str, str, float, int]] = []
        self.statuses: dict[str, Optional[SignatureStatus]] = {}
        self.default_status = "confirmed"
        self._count = 0

    def script(self, *outcomes) -> None:
        """Each outcome is a signature string or an exception to raise."""
        self.outcomes.extend(outcomes)

    async def place_liquidity_order(self, user_id: str, ref: str, amount: float, slippage_bps: int) -> str:
        self.placed.append((user_id, ref, amount, slippage_bps))
        if self.outcomes:
            outcome = self.outcomes.popleft()
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        self._count += 1
        return f"sig{self._count}"

    async def best_execution_pool(self, asset_a: str, asset_b: str, amount: float) -> PoolQuote:
        return PoolQuote(ref=self.pool, expected_output=amount)

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        if signature in self.statuses:
            return self.statuses[signature]
        return SignatureStatus(signature=signature, confirmation_status=self.default_status)


class FakeWallet:
    def __init__(self, balance: float = 1_000_000.0, key: str = "key-1") -> None:
        self.balance = balance
        self.key = key

    async def get_signing_key(self, user_id: str) -> str:
        return self.key

    async def check_balance(self, user_id: str, asset: str) -> float:
        return self.balance


class FakeSink:
    def __init__(self, fail: bool = False) -> None:
        self.alerts: list[Alert] = []
        self.fail = fail

    async def send(self, alert: Alert) -> None:
        if self.fail:
            raise ConnectionError("sink down")
        self.alerts.append(alert)

    def types(self) -> list[str]:
        return [a.type.value for a in self.alerts]


class FailingStore(InMemoryStore):
    """InMemoryStore whose position writes fail for chosen ids."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_ids: set[str] = set()

    async def save_position(self, position: Position) -> None:
        if position.id in self.fail_ids:
            raise IOError(f"write failed for {position.id}")
        await super().save_position(position)
