"""Tests for the venue, wallet and price HTTP clients over a mock transport."""

import httpx
import pytest

from hedger.api.price_client import PriceClient
from hedger.api.venue_client import VenueClient, WalletClient
from hedger.errors import NetworkError, RateLimitError, TransactionTimeoutError, ValidationError

BASE = "http://venue.test"


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE)


# ------------------------------------------------------------------
# Venue
# ------------------------------------------------------------------
@pytest.mark.asyncio
async def test_place_order_returns_signature():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = request.content
        return httpx.Response(200, json={"signature": "abc"})

    venue = VenueClient(client=_client(handler))
    assert await venue.place_liquidity_order("u1", "pool-1", 5.0, 100) == "abc"
    assert seen["path"] == "/orders"
    assert b'"slippage_bps":100' in seen["body"].replace(b" ", b"")
    await venue.close()


@pytest.mark.asyncio
async def test_rate_limit_carries_retry_after():
    venue = VenueClient(client=_client(lambda r: httpx.Response(429, headers={"Retry-After": "3"})))
    with pytest.raises(RateLimitError) as exc_info:
        await venue.place_liquidity_order("u1", "pool-1", 5.0, 100)
    assert exc_info.value.retry_after == 3.0


@pytest.mark.asyncio
@pytest.mark.parametrize("status,error", [(503, NetworkError), (400, ValidationError)])
async def test_http_errors_mapped(status, error):
    venue = VenueClient(client=_client(lambda r: httpx.Response(status, text="nope")))
    with pytest.raises(error):
        await venue.best_execution_pool("SOL", "USDC", 1.0)


@pytest.mark.asyncio
async def test_timeout_mapped():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    venue = VenueClient(client=_client(handler))
    with pytest.raises(TransactionTimeoutError):
        await venue.best_execution_pool("SOL", "USDC", 1.0)


@pytest.mark.asyncio
async def test_best_pool_and_signature_status():
    def handler(request):
        if request.url.path == "/pools/best":
            assert request.url.params["a"] == "SOL"
            return httpx.Response(200, json={"pool": "pool-9", "price_impact": 0.001})
        if request.url.path == "/transactions/known":
            return httpx.Response(200, json={"confirmation_status": "finalized", "err": None})
        return httpx.Response(404)

    venue = VenueClient(client=_client(handler))
    quote = await venue.best_execution_pool("SOL", "USDC", 1.0)
    assert quote.ref == "pool-9"
    status = await venue.get_signature_status("known")
    assert status.confirmation_status == "finalized"
    assert await venue.get_signature_status("unknown") is None


@pytest.mark.asyncio
async def test_wallet_defaults_on_404():
    def handler(request):
        if request.url.path == "/wallets/u1/balances/SOL":
            return httpx.Response(200, json={"balance": 12.5})
        return httpx.Response(404)

    wallet = WalletClient(client=_client(handler))
    assert await wallet.check_balance("u1", "SOL") == 12.5
    assert await wallet.check_balance("u1", "BONK") == 0.0
    assert await wallet.get_signing_key("u1") == ""


# ------------------------------------------------------------------
# Prices
# ------------------------------------------------------------------
@pytest.mark.asyncio
async def test_price_is_cached():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(200, json={"price": 101.5})

    prices = PriceClient(client=_client(handler), cache_ttl=60)
    assert await prices.get_current_price("pool-1") == 101.5
    assert await prices.get_current_price("pool-1") == 101.5
    assert calls == ["/prices/pool-1"]
    assert not prices.is_stale("pool-1")


@pytest.mark.asyncio
async def test_stale_price_used_when_fetch_fails():
    responses = [httpx.Response(200, json={"price": 100.0}), httpx.Response(500)]
    prices = PriceClient(client=_client(lambda r: responses.pop(0)), cache_ttl=0)

    assert await prices.get_current_price("pool-1") == 100.0
    assert await prices.get_current_price("pool-1") == 100.0


@pytest.mark.asyncio
async def test_price_error_without_cache():
    prices = PriceClient(client=_client(lambda r: httpx.Response(500)))
    with pytest.raises(NetworkError):
        await prices.get_current_price("pool-1")
    assert await prices.get_batch_prices(["pool-1"]) == {"pool-1": 0.0}


def test_dispatch_fans_out_and_survives_bad_callback():
    prices = PriceClient(client=_client(lambda r: httpx.Response(404)))
    received = []

    def bad(ref, price, volume):
        raise RuntimeError("callback broke")

    prices.subscribe("pool-1", bad)
    unsubscribe = prices.subscribe("pool-1", lambda ref, price, volume: received.append((ref, price, volume)))
    prices._handle_message({"type": "price", "pool": "pool-1", "price": "99.5", "volume": 3})

    assert received == [("pool-1", 99.5, 3.0)]
    assert prices.get_price_statistics("pool-1")["current"] == 99.5

    unsubscribe()
    prices.dispatch("pool-1", 98.0)
    assert len(received) == 1
    assert prices.subscribed_pools() == ["pool-1"]


def test_malformed_messages_ignored():
    prices = PriceClient(client=_client(lambda r: httpx.Response(404)))
    prices._handle_message({"type": "heartbeat"})
    prices._handle_message({"type": "price", "pool": "pool-1", "price": "bad"})
    prices._handle_message({"type": "price", "pool": "pool-1", "price": 1.0, "volume": "lots"})
    prices._handle_message([{"type": "price", "pool": "pool-1", "price": 1.0}])
    assert prices.get_price_statistics("pool-1")["current"] == 0.0


def test_malformed_volume_does_not_stop_later_updates():
    prices = PriceClient(client=_client(lambda r: httpx.Response(404)))
    received = []
    prices.subscribe("pool-1", lambda ref, price, volume: received.append((price, volume)))

    prices._handle_message({"type": "price", "pool": "pool-1", "price": 1.0, "volume": "x"})
    prices._handle_message({"type": "price", "pool": "pool-1", "price": 2.0, "volume": "4"})
    prices._handle_message({"type": "price", "pool": "pool-1", "price": 3.0})

    assert received == [(2.0, 4.0), (3.0, None)]
