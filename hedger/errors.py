"""Trading error taxonomy and retry helpers.

Every failure the execution core can produce is a ``TradingError`` subclass
carrying enough context to decide whether to retry, to log it with structured
fields, and to show the user a suggested next step.

Retryable kinds (network, rate limit, confirmation timeout or failure) are
retried inside the order executor with a bounded exponential backoff. All
other kinds propagate to the caller unchanged.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from hedger.config import EXECUTION_RETRY_BASE_DELAY, EXECUTION_RETRY_MAX_DELAY


class TradingError(Exception):
    """Base class for all trading failures."""

    suggested_action = "Please try again later."

    def __init__(
        self,
        message: str,
        *,
        retry_attempt: Optional[int] = None,
        original_error: Optional[BaseException] = None,
        suggested_action: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.retry_attempt = retry_attempt
        self.original_error = original_error
        if suggested_action is not None:
            self.suggested_action = suggested_action
        self.timestamp = datetime.now(timezone.utc)

    def context(self) -> dict[str, Any]:
        """Subclass-specific fields, merged into ``to_dict``."""
        return {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "retry_attempt": self.retry_attempt,
            "suggested_action": self.suggested_action,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_error) if self.original_error else None,
            **self.context(),
        }


class NetworkError(TradingError):
    suggested_action = "Check your network connection. The request will be retried."

    def __init__(self, message: str, endpoint: str = "", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.endpoint = endpoint

    def context(self) -> dict[str, Any]:
        return {"endpoint": self.endpoint}


class RateLimitError(TradingError):
    """Venue asked us to slow down; ``retry_after`` is in seconds."""

    suggested_action = "Too many requests. Waiting before retrying."

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        endpoint: str = "",
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = retry_after
        self.endpoint = endpoint

    def context(self) -> dict[str, Any]:
        return {"retry_after": self.retry_after, "endpoint": self.endpoint}


class SlippageError(TradingError):
    """Price moved further than the order tolerates. Fractions, 0.02 = 2%."""

    suggested_action = "Increase slippage tolerance or wait for calmer markets."

    def __init__(
        self,
        expected_price: float,
        actual_price: float,
        slippage: float,
        max_slippage: float,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            f"Slippage {slippage:.2%} exceeds maximum {max_slippage:.2%} "
            f"(expected {expected_price}, got {actual_price})",
            **kwargs,
        )
        self.expected_price = expected_price
        self.actual_price = actual_price
        self.slippage = slippage
        self.max_slippage = max_slippage

    def context(self) -> dict[str, Any]:
        return {
            "expected_price": self.expected_price,
            "actual_price": self.actual_price,
            "slippage": self.slippage,
            "max_slippage": self.max_slippage,
        }


class InsufficientFundsError(TradingError):
    suggested_action = "Deposit more funds or reduce the trade amount."

    def __init__(
        self,
        required: float,
        available: float,
        asset: str = "",
        **kwargs: Any,
    ) -> None:
        super().__init__(
            f"Insufficient {asset or 'funds'}: required {required}, available {available}",
            **kwargs,
        )
        self.required = required
        self.available = available
        self.asset = asset

    def context(self) -> dict[str, Any]:
        return {"required": self.required, "available": self.available, "asset": self.asset}


class TransactionTimeoutError(TradingError):
    suggested_action = "The network is congested. The transaction will be retried."

    def __init__(self, signature: str = "", timeout: float = 0.0, **kwargs: Any) -> None:
        super().__init__(
            f"Transaction {signature or '<unsent>'} not confirmed within {timeout}s",
            **kwargs,
        )
        self.signature = signature
        self.timeout = timeout

    def context(self) -> dict[str, Any]:
        return {"signature": self.signature, "timeout": self.timeout}


class TransactionConfirmationError(TradingError):
    suggested_action = "The transaction failed on-chain. It will be retried."

    def __init__(self, signature: str, status: str, **kwargs: Any) -> None:
        super().__init__(f"Transaction {signature} failed: {status}", **kwargs)
        self.signature = signature
        self.status = status

    def context(self) -> dict[str, Any]:
        return {"signature": self.signature, "status": self.status}


class PoolError(TradingError):
    suggested_action = "Choose a different pool or try again later."

    def __init__(self, message: str, pool_ref: str = "", error_type: str = "", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.pool_ref = pool_ref
        self.error_type = error_type

    def context(self) -> dict[str, Any]:
        return {"pool_ref": self.pool_ref, "error_type": self.error_type}


class AtomicExecutionError(TradingError):
    """A two-leg execution did not complete; needs external reconciliation."""

    suggested_action = "Review open positions. One leg may be unhedged."

    def __init__(
        self,
        message: str,
        successful: list[str],
        failed: list[str],
        reason: str,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.successful = list(successful)
        self.failed = list(failed)
        self.reason = reason

    def context(self) -> dict[str, Any]:
        return {"successful": self.successful, "failed": self.failed, "reason": self.reason}


class ValidationError(TradingError):
    suggested_action = "Check the input values and try again."

    def __init__(self, message: str, field: str = "", value: Any = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value

    def context(self) -> dict[str, Any]:
        return {"field": self.field, "value": self.value}


class RiskLimitError(TradingError):
    suggested_action = "Reduce position size or close existing positions."

    def __init__(
        self,
        message: str,
        limit_type: str,
        limit: float,
        current: float,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.limit_type = limit_type
        self.limit = limit
        self.current = current

    def context(self) -> dict[str, Any]:
        return {"limit_type": self.limit_type, "limit": self.limit, "current": self.current}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

RETRYABLE_ERRORS = (
    NetworkError,
    RateLimitError,
    TransactionTimeoutError,
    TransactionConfirmationError,
)


def is_retryable_error(error: BaseException) -> bool:
    """True for transient failures worth another attempt."""
    return isinstance(error, RETRYABLE_ERRORS)


def backoff(attempt: int) -> float:
    """Delay in seconds before retry number *attempt* (1-based).

    Doubles from EXECUTION_RETRY_BASE_DELAY and is capped at
    EXECUTION_RETRY_MAX_DELAY: 2, 4, 8, 16, 16, ...
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return min(EXECUTION_RETRY_BASE_DELAY * 2 ** (attempt - 1), EXECUTION_RETRY_MAX_DELAY)


def retry_delay(error: BaseException, attempt: int) -> float:
    """Venue-specified delay for rate limits, exponential backoff otherwise."""
    if isinstance(error, RateLimitError) and error.retry_after and error.retry_after > 0:
        return float(error.retry_after)
    return backoff(attempt)


def format_error_for_user(error: BaseException) -> str:
    """Human-readable message with the suggested next step, when there is one."""
    if isinstance(error, TradingError):
        return f"{error.message}\n\nSuggestion: {error.suggested_action}"
    return str(error)
