"""Order executor — single orders with retry, and long/short hedge pairs.

An order goes through up to ``max_retries`` retries after its first attempt.
Each attempt validates the order, writes a PENDING record, dispatches on the
order type, waits for confirmation and writes the terminal record.

Failures are classified with ``hedger.errors.is_retryable_error``:
non-retryable errors return immediately, retryable ones sleep
``retry_delay(error, attempt)`` (the venue's retry-after for rate limits,
2s/4s/8s/16s otherwise) and try again.

Hedge pairs run strictly sequentially, long first. A failed long leg stops
before the short leg is sent. A failed short leg after a filled long leg is
reported as an ``AtomicExecutionError`` and raised as a CRITICAL
unhedged-exposure alert. No reversing trade is sent automatically.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Optional

from hedger.config import (
    EXECUTION_CONFIRM_POLL_INTERVAL,
    EXECUTION_CONFIRM_TIMEOUT,
    EXECUTION_FEE_RATE,
    EXECUTION_MAX_RETRIES,
    TradingConfig,
)
from hedger.errors import (
    AtomicExecutionError,
    InsufficientFundsError,
    PoolError,
    RateLimitError,
    SlippageError,
    TradingError,
    TransactionConfirmationError,
    TransactionTimeoutError,
    ValidationError,
    is_retryable_error,
    retry_delay,
)
from hedger.interfaces import ExecutionVenue, OrderStore, PriceFeed, Sleep, WalletProvider
from hedger.notifications import AlertService
from hedger.types import (
    ExecutionResult,
    HedgeExecutionResult,
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    utcnow,
)

logger = logging.getLogger(__name__)

CONFIRMED_STATES = ("confirmed", "finalized")


def classify_venue_error(error: Exception) -> Exception:
    """Map raw venue failures onto the retryable error kinds by message."""
    if isinstance(error, TradingError):
        return error
    text = str(error).lower()
    if "429" in text or "rate limit" in text:
        return RateLimitError(str(error), original_error=error)
    if "timeout" in text or "timed out" in text:
        return TransactionTimeoutError(original_error=error)
    return error


class OrderExecutor:
    """Executes orders against the venue with retry, slippage and confirmation checks.

    Attributes:
        max_retries: Retries after the first attempt.
        confirm_timeout: Seconds to wait for a signature to confirm.
        poll_interval: Seconds between confirmation polls.
    """

    def __init__(
        self,
        venue: ExecutionVenue,
        wallet: WalletProvider,
        price_feed: PriceFeed,
        store: OrderStore,
        trading: Optional[TradingConfig] = None,
        alerts: Optional[AlertService] = None,
        sleep: Sleep = asyncio.sleep,
        max_retries: int = EXECUTION_MAX_RETRIES,
        confirm_timeout: float = EXECUTION_CONFIRM_TIMEOUT,
        poll_interval: float = EXECUTION_CONFIRM_POLL_INTERVAL,
    ) -> None:
        self._venue = venue
        self._wallet = wallet
        self._feed = price_feed
        self._store = store
        self.trading = trading or TradingConfig()
        self._alerts = alerts
        self._sleep = sleep
        self.max_retries = max_retries
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval

    # ------------------------------------------------------------------
    # Single orders
    # ------------------------------------------------------------------

    async def execute_order(self, order: Order) -> ExecutionResult:
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                order.status = OrderStatus.PENDING
                order.updated_at = utcnow()
                await self._store.save_order(order)

                await self.validate_order(order)

                result = await self._dispatch(order)
                result.order_id = order.id
                result.retry_attempts = attempt
                await self._record_fill(order, result)

                logger.info(
                    "order_filled",
                    extra={
                        "order_id": order.id,
                        "user_id": order.user_id,
                        "side": order.side.value,
                        "order_type": order.order_type.value,
                        "amount": order.amount,
                        "executed_price": result.executed_price,
                        "signature": result.signature,
                        "attempt": attempt,
                    },
                )
                return result

            except Exception as e:
                last_error = e
                if isinstance(e, TradingError):
                    e.retry_attempt = attempt
                await self._record_failure(order, e)

                if not is_retryable_error(e):
                    logger.error(
                        "order_failed",
                        extra={
                            "order_id": order.id,
                            "error_type": type(e).__name__,
                            "error": str(e),
                            "attempt": attempt,
                        },
                    )
                    return ExecutionResult(
                        success=False, order_id=order.id, error=e, retry_attempts=attempt
                    )

                if attempt == self.max_retries:
                    break

                delay = retry_delay(e, attempt + 1)
                logger.warning(
                    "order_retry",
                    extra={
                        "order_id": order.id,
                        "error_type": type(e).__name__,
                        "error": str(e),
                        "attempt": attempt,
                        "delay": delay,
                    },
                )
                await self._sleep(delay)

        logger.error(
            "order_retries_exhausted",
            extra={"order_id": order.id, "retries": self.max_retries, "error": str(last_error)},
        )
        return ExecutionResult(
            success=False,
            order_id=order.id,
            error=last_error or TradingError("Max retries exceeded"),
            retry_attempts=self.max_retries,
        )

    async def validate_order(self, order: Order) -> None:
        """Signing key, balance, amount, then pool presence."""
        if not await self._wallet.get_signing_key(order.user_id):
            raise ValidationError("No signing key for user", field="user_id", value=order.user_id)
        balance = await self._wallet.check_balance(order.user_id, self.trading.base_asset)
        if balance < order.amount:
            raise InsufficientFundsError(order.amount, balance, self.trading.base_asset)
        if order.amount <= 0:
            raise ValidationError("Order amount must be positive", field="amount", value=order.amount)
        if not order.pool_ref:
            raise PoolError("Order has no pool", pool_ref="", error_type="missing")

    async def _dispatch(self, order: Order) -> ExecutionResult:
        if order.order_type == OrderType.MARKET:
            return await self._execute_market(order)
        if order.order_type == OrderType.LIMIT:
            return await self._execute_limit(order)
        if order.order_type in (OrderType.STOP_LOSS, OrderType.TAKE_PROFIT):
            return await self._execute_conditional(order)
        raise ValidationError(f"Unsupported order type: {order.order_type}", field="order_type")

    async def _execute_limit(self, order: Order) -> ExecutionResult:
        if order.price is None:
            raise ValidationError("Limit order requires a price", field="price")
        current = await self._feed.get_current_price(order.pool_ref)
        if order.side == OrderSide.BUY:
            reached = current <= order.price
        else:
            reached = current >= order.price
        if not reached:
            raise ValidationError(
                f"Limit price {order.price} not reached (current {current})",
                field="price",
                value=order.price,
            )
        return await self._execute_market(order, current_price=current, check_slippage=False)

    async def _execute_conditional(self, order: Order) -> ExecutionResult:
        if order.price is None:
            raise ValidationError("Conditional order requires a trigger price", field="price")
        current = await self._feed.get_current_price(order.pool_ref)
        if order.order_type == OrderType.STOP_LOSS:
            triggered = current <= order.price
        else:
            triggered = current >= order.price
        if not triggered:
            raise ValidationError(
                f"{order.order_type.value} trigger {order.price} not reached (current {current})",
                field="price",
                value=order.price,
            )
        return await self._execute_market(order, current_price=current, check_slippage=False)

    async def _execute_market(
        self,
        order: Order,
        current_price: Optional[float] = None,
        check_slippage: bool = True,
    ) -> ExecutionResult:
        if current_price is None:
            current_price = await self._feed.get_current_price(order.pool_ref)

        if check_slippage and order.price:
            slippage = abs(current_price - order.price) / order.price
            if slippage > order.max_slippage:
                raise SlippageError(order.price, current_price, slippage, order.max_slippage)

        slippage_bps = int(round(order.max_slippage * 10_000))
        try:
            signature = await self._venue.place_liquidity_order(
                order.user_id, order.pool_ref, order.amount, slippage_bps
            )
        except Exception as e:
            mapped = classify_venue_error(e)
            if mapped is e:
                raise
            raise mapped from e

        await self.wait_for_confirmation(signature)

        return ExecutionResult(
            success=True,
            signature=signature,
            executed_price=current_price,
            executed_amount=order.amount,
            fee=order.amount * EXECUTION_FEE_RATE,
        )

    async def wait_for_confirmation(self, signature: str, timeout: Optional[float] = None) -> None:
        """Poll the venue until *signature* confirms, fails on-chain, or times out."""
        timeout = self.confirm_timeout if timeout is None else timeout
        polls = max(1, math.ceil(timeout / self.poll_interval))

        for _ in range(polls):
            status = await self._venue.get_signature_status(signature)
            if status is not None and status.confirmation_status in CONFIRMED_STATES:
                if status.err:
                    raise TransactionConfirmationError(signature, status.err)
                return
            await self._sleep(self.poll_interval)

        raise TransactionTimeoutError(signature, timeout)

    async def _record_fill(self, order: Order, result: ExecutionResult) -> None:
        now = utcnow()
        order.status = OrderStatus.FILLED
        order.filled_amount = result.executed_amount or 0.0
        order.average_price = result.executed_price
        order.fee = result.fee
        order.signature = result.signature
        order.error_msg = ""
        order.executed_at = now
        order.updated_at = now
        await self._store.save_order(order)

    async def _record_failure(self, order: Order, error: Exception) -> None:
        order.status = OrderStatus.FAILED
        order.error_msg = str(error)
        order.updated_at = utcnow()
        try:
            await self._store.save_order(order)
        except Exception:
            logger.error("order_record_update_failed", extra={"order_id": order.id}, exc_info=True)

    # ------------------------------------------------------------------
    # Hedge pairs
    # ------------------------------------------------------------------

    async def execute_hedge_orders(self, long_order: Order, short_order: Order) -> HedgeExecutionResult:
        """Long leg, then short leg. Success only when both fill."""
        long_result = await self.execute_order(long_order)
        if not long_result.success:
            reason = str(long_result.error) if long_result.error else "Unknown error"
            logger.error("hedge_long_leg_failed", extra={"user_id": long_order.user_id, "reason": reason})
            return HedgeExecutionResult(
                success=False,
                long_order=long_result,
                failed_orders=["long"],
                error=AtomicExecutionError("Long order failed", [], ["long"], reason),
            )

        successful = [long_result.signature or long_order.id]
        short_result = await self.execute_order(short_order)
        if not short_result.success:
            reason = str(short_result.error) if short_result.error else "Unknown error"
            logger.critical(
                "unhedged_exposure",
                extra={
                    "user_id": long_order.user_id,
                    "long_signature": long_result.signature,
                    "long_order_id": long_order.id,
                    "reason": reason,
                },
            )
            if self._alerts is not None:
                await self._alerts.unhedged_exposure(long_order.user_id, successful, ["short"], reason)
            return HedgeExecutionResult(
                success=False,
                long_order=long_result,
                short_order=short_result,
                total_fees=long_result.fee,
                successful_orders=successful,
                failed_orders=["short"],
                error=AtomicExecutionError(
                    "Short order failed after long order succeeded",
                    successful,
                    ["short"],
                    reason,
                ),
            )

        successful.append(short_result.signature or short_order.id)
        total_fees = long_result.fee + short_result.fee
        logger.info(
            "hedge_orders_filled",
            extra={"user_id": long_order.user_id, "signatures": successful, "total_fees": total_fees},
        )
        return HedgeExecutionResult(
            success=True,
            long_order=long_result,
            short_order=short_result,
            total_fees=total_fees,
            successful_orders=successful,
        )
