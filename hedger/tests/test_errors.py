"""Tests for the error taxonomy and retry helpers."""

import pytest

from hedger.errors import (
    AtomicExecutionError,
    InsufficientFundsError,
    NetworkError,
    PoolError,
    RateLimitError,
    SlippageError,
    TransactionConfirmationError,
    TransactionTimeoutError,
    ValidationError,
    backoff,
    format_error_for_user,
    is_retryable_error,
    retry_delay,
)


# ------------------------------------------------------------------
# Backoff
# ------------------------------------------------------------------
def test_backoff_doubles_and_caps():
    assert [backoff(n) for n in range(1, 6)] == [2.0, 4.0, 8.0, 16.0, 16.0]


def test_backoff_rejects_attempt_below_one():
    with pytest.raises(ValueError):
        backoff(0)


def test_retry_delay_prefers_rate_limit_retry_after():
    assert retry_delay(RateLimitError("slow down", retry_after=7), 1) == 7.0
    # No hint falls back to backoff
    assert retry_delay(RateLimitError("slow down"), 3) == 8.0
    assert retry_delay(NetworkError("down"), 2) == 4.0


# ------------------------------------------------------------------
# Classification
# ------------------------------------------------------------------
def test_retryable_kinds():
    assert is_retryable_error(NetworkError("down"))
    assert is_retryable_error(RateLimitError("slow"))
    assert is_retryable_error(TransactionTimeoutError("sig", 30))
    assert is_retryable_error(TransactionConfirmationError("sig", "InstructionError"))


def test_non_retryable_kinds():
    assert not is_retryable_error(SlippageError(100, 103, 0.03, 0.02))
    assert not is_retryable_error(InsufficientFundsError(100, 50, "SOL"))
    assert not is_retryable_error(ValidationError("bad"))
    assert not is_retryable_error(PoolError("gone"))
    assert not is_retryable_error(AtomicExecutionError("half", ["L1"], ["short"], "boom"))
    assert not is_retryable_error(ValueError("plain"))


# ------------------------------------------------------------------
# Formatting
# ------------------------------------------------------------------
def test_format_error_includes_suggestion():
    text = format_error_for_user(InsufficientFundsError(100, 50, "SOL"))
    assert "required 100" in text
    assert "Suggestion: Deposit more funds" in text


def test_format_plain_exception():
    assert format_error_for_user(RuntimeError("oops")) == "oops"


def test_to_dict_carries_context():
    err = SlippageError(100.0, 103.0, 0.03, 0.02, retry_attempt=2)
    data = err.to_dict()
    assert data["type"] == "SlippageError"
    assert data["retry_attempt"] == 2
    assert data["expected_price"] == 100.0
    assert data["max_slippage"] == 0.02


def test_atomic_error_lists_legs():
    err = AtomicExecutionError("half filled", ["L1"], ["short"], "pool drained")
    assert err.successful == ["L1"]
    assert err.failed == ["short"]
    assert err.to_dict()["reason"] == "pool drained"
