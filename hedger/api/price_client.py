"""Price feed client: REST lookups with a short-lived cache, plus a push stream.

``get_current_price`` serves a cached price younger than ``cache_ttl`` and
otherwise fetches ``GET /prices/{ref}``. When a fetch fails and a stale price
is cached, the stale price is returned with a warning.

``subscribe`` registers a callback for a pool. While the stream is running
the client keeps one websocket connection open, subscribes every pool that
has callbacks, and reconnects with a doubling delay after a drop.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from datetime import timedelta
from typing import Any, Optional

import httpx
import websockets
import websockets.exceptions

from hedger.api.venue_client import request_json
from hedger.config import (
    HTTP_TIMEOUT,
    PRICE_API_URL,
    PRICE_CACHE_TTL,
    PRICE_HISTORY_MAX,
    PRICE_WS_URL,
    WS_RECONNECT_BASE_DELAY,
    WS_RECONNECT_MAX_DELAY,
)
from hedger.interfaces import PriceCallback, Unsubscribe
from hedger.types import PricePoint, utcnow

logger = logging.getLogger(__name__)


class PriceClient:
    """PriceFeed implementation over the price service."""

    def __init__(
        self,
        base_url: str = PRICE_API_URL,
        ws_url: str = PRICE_WS_URL,
        cache_ttl: float = PRICE_CACHE_TTL,
        history_max: int = PRICE_HISTORY_MAX,
        timeout: float = HTTP_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._ws_url = ws_url
        self.cache_ttl = cache_ttl
        self._history_max = history_max

        self._cache: dict[str, tuple[float, float]] = {}   # ref -> (price, monotonic ts)
        self._history: dict[str, deque[PricePoint]] = {}
        self._subscribers: dict[str, list[PriceCallback]] = {}

        self._running = False
        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None
        self._send_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # REST
    # ------------------------------------------------------------------

    async def get_current_price(self, ref: str) -> float:
        cached = self._cache.get(ref)
        if cached is not None and time.monotonic() - cached[1] < self.cache_ttl:
            return cached[0]

        try:
            data = await request_json(self._client, "GET", f"/prices/{ref}")
            price = float(data["price"])
        except Exception:
            if cached is not None:
                logger.warning("stale_price_used", extra={"pool_ref": ref, "price": cached[0]})
                return cached[0]
            raise

        self._record(ref, price)
        return price

    async def get_batch_prices(self, refs: list[str]) -> dict[str, float]:
        """Prices for several pools; a pool that fails maps to 0.0."""
        prices: dict[str, float] = {}
        for ref in refs:
            try:
                prices[ref] = await self.get_current_price(ref)
            except Exception:
                logger.warning("batch_price_error", extra={"pool_ref": ref}, exc_info=True)
                prices[ref] = 0.0
        return prices

    def _record(self, ref: str, price: float, volume: Optional[float] = None) -> None:
        self._cache[ref] = (price, time.monotonic())
        history = self._history.setdefault(ref, deque(maxlen=self._history_max))
        history.append(PricePoint(price=price, volume=volume))

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_price_history(self, ref: str, window: timedelta) -> list[PricePoint]:
        cutoff = utcnow() - window
        return [p for p in self._history.get(ref, ()) if p.timestamp >= cutoff]

    def get_price_statistics(self, ref: str) -> dict[str, float]:
        prices = [p.price for p in self._history.get(ref, ())]
        if not prices:
            return {"current": 0.0, "high": 0.0, "low": 0.0, "average": 0.0, "volatility": 0.0}
        avg = sum(prices) / len(prices)
        variance = sum((p - avg) ** 2 for p in prices) / len(prices)
        return {
            "current": prices[-1],
            "high": max(prices),
            "low": min(prices),
            "average": avg,
            "volatility": variance ** 0.5,
        }

    def is_stale(self, ref: str) -> bool:
        cached = self._cache.get(ref)
        return cached is None or time.monotonic() - cached[1] > self.cache_ttl

    def clear_cache(self) -> None:
        self._cache.clear()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, ref: str, on_price: PriceCallback) -> Unsubscribe:
        callbacks = self._subscribers.setdefault(ref, [])
        callbacks.append(on_price)
        if len(callbacks) == 1:
            self._send_soon({"action": "subscribe", "pools": [ref]})

        def unsubscribe() -> None:
            current = self._subscribers.get(ref, [])
            if on_price in current:
                current.remove(on_price)
            if not current:
                self._subscribers.pop(ref, None)
                self._send_soon({"action": "unsubscribe", "pools": [ref]})

        return unsubscribe

    def subscribed_pools(self) -> list[str]:
        return list(self._subscribers)

    def dispatch(self, ref: str, price: float, volume: Optional[float] = None) -> None:
        """Record a pushed price and fan it out. A failing callback is logged and skipped."""
        self._record(ref, price, volume)
        for callback in list(self._subscribers.get(ref, ())):
            try:
                callback(ref, price, volume)
            except Exception:
                logger.warning("price_callback_error", extra={"pool_ref": ref}, exc_info=True)

    def _send_soon(self, msg: dict) -> None:
        if self._ws is None:
            return
        task = asyncio.get_running_loop().create_task(self._send(msg))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    async def _send(self, msg: dict) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.send(json.dumps(msg))
        except websockets.exceptions.WebSocketException:
            logger.warning("ws_send_failed", extra={"action": msg.get("action")})

    # ------------------------------------------------------------------
    # Stream
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._listen_forever(), name="price-stream")
        logger.info("price_stream_started", extra={"pools": len(self._subscribers)})

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self._ws = None

    async def close(self) -> None:
        await self.stop()
        self._subscribers.clear()
        await self._client.aclose()

    async def _listen_forever(self) -> None:
        delay = WS_RECONNECT_BASE_DELAY
        while self._running:
            try:
                async with websockets.connect(self._ws_url) as ws:
                    self._ws = ws
                    delay = WS_RECONNECT_BASE_DELAY
                    if self._subscribers:
                        await ws.send(json.dumps({"action": "subscribe", "pools": list(self._subscribers)}))
                    logger.info("ws_subscribed", extra={"pools": len(self._subscribers)})

                    async for raw_msg in ws:
                        if not self._running:
                            break
                        try:
                            msg = json.loads(raw_msg)
                        except json.JSONDecodeError:
                            continue
                        self._handle_message(msg)

            except asyncio.CancelledError:
                return
            except (
                websockets.exceptions.ConnectionClosed,
                websockets.exceptions.WebSocketException,
                OSError,
            ):
                if not self._running:
                    return
                logger.warning("ws_reconnecting", extra={"delay": delay})
                await asyncio.sleep(delay)
                delay = min(delay * 2, WS_RECONNECT_MAX_DELAY)
            finally:
                self._ws = None

    def _handle_message(self, msg: dict) -> None:
        if not isinstance(msg, dict) or msg.get("type") != "price":
            return
        ref = msg.get("pool")
        if not ref:
            return
        try:
            price = float(msg["price"])
            volume = msg.get("volume")
            volume = float(volume) if volume is not None else None
        except (KeyError, TypeError, ValueError):
            logger.debug("ws_message_malformed", extra={"pool_ref": ref})
            return
        self.dispatch(ref, price, volume)
