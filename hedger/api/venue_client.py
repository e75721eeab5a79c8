"""HTTP clients for the execution venue and the wallet service.

Transport failures are mapped onto the trading error taxonomy so the order
executor can decide what to retry: timeouts become
``TransactionTimeoutError``, 429 responses become ``RateLimitError`` carrying
the venue's ``Retry-After``, 5xx and connection errors become
``NetworkError``, and other 4xx responses become ``ValidationError``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from hedger.config import HTTP_TIMEOUT, VENUE_API_URL
from hedger.errors import (
    NetworkError,
    RateLimitError,
    TransactionTimeoutError,
    ValidationError,
)
from hedger.types import PoolQuote, SignatureStatus

logger = logging.getLogger(__name__)


def _retry_after(resp: httpx.Response) -> Optional[float]:
    raw = resp.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    path: str,
    *,
    allow_404: bool = False,
    **kwargs: Any,
) -> Any:
    """Send a request and decode the JSON body, raising trading errors on failure.

    Returns None for a 404 when *allow_404* is set.
    """
    try:
        resp = await client.request(method, path, **kwargs)
    except httpx.TimeoutException as e:
        raise TransactionTimeoutError(original_error=e) from e
    except httpx.TransportError as e:
        raise NetworkError(f"{method} {path} failed: {e}", endpoint=path, original_error=e) from e

    if resp.status_code == 404 and allow_404:
        return None
    if resp.status_code == 429:
        raise RateLimitError(
            f"Rate limited on {path}", retry_after=_retry_after(resp), endpoint=path
        )
    if resp.status_code >= 500:
        raise NetworkError(f"{method} {path} returned {resp.status_code}", endpoint=path)
    if resp.status_code >= 400:
        raise ValidationError(
            f"{method} {path} rejected ({resp.status_code}): {resp.text}",
            field=path,
            value=resp.status_code,
        )
    return resp.json()


class VenueClient:
    """Async client for the execution venue REST API."""

    def __init__(
        self,
        base_url: str = VENUE_API_URL,
        timeout: float = HTTP_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def place_liquidity_order(
        self, user_id: str, ref: str, amount: float, slippage_bps: int
    ) -> str:
        """POST /orders. Returns the transaction signature."""
        data = await request_json(
            self._client,
            "POST",
            "/orders",
            json={"user_id": user_id, "pool": ref, "amount": amount, "slippage_bps": slippage_bps},
        )
        signature = data.get("signature")
        if not signature:
            raise NetworkError("Venue returned no signature", endpoint="/orders")
        logger.info(
            "venue_order_submitted",
            extra={"user_id": user_id, "pool_ref": ref, "amount": amount, "signature": signature},
        )
        return signature

    async def best_execution_pool(self, asset_a: str, asset_b: str, amount: float) -> PoolQuote:
        """GET /pools/best for the pair."""
        data = await request_json(
            self._client,
            "GET",
            "/pools/best",
            params={"a": asset_a, "b": asset_b, "amount": amount},
        )
        return PoolQuote(
            ref=data["pool"],
            expected_output=float(data.get("expected_output", 0.0)),
            price_impact=float(data.get("price_impact", 0.0)),
        )

    async def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        """GET /transactions/{signature}. None while the venue has not seen it."""
        data = await request_json(
            self._client, "GET", f"/transactions/{signature}", allow_404=True
        )
        if data is None:
            return None
        return SignatureStatus(
            signature=signature,
            confirmation_status=data.get("confirmation_status"),
            err=data.get("err"),
        )


class WalletClient:
    """Async client for the wallet service: signing keys and balances."""

    def __init__(
        self,
        base_url: str = VENUE_API_URL,
        timeout: float = HTTP_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def get_signing_key(self, user_id: str) -> str:
        """Key reference for *user_id*, or an empty string when none exists."""
        data = await request_json(self._client, "GET", f"/wallets/{user_id}/key", allow_404=True)
        if data is None:
            return ""
        return data.get("key", "")

    async def check_balance(self, user_id: str, asset: str) -> float:
        data = await request_json(
            self._client, "GET", f"/wallets/{user_id}/balances/{asset}", allow_404=True
        )
        if data is None:
            return 0.0
        return float(data.get("balance", 0.0))
