"""
Error Recovery Module

Error classification and bounded retry for the swap pipeline.
"""

from .errors import (
    BroadcastFailedError,
    BuildError,
    ConfirmationTimedOutError,
    ErrorContext,
    ErrorKind,
    InsufficientLiquidityError,
    InvalidAmountError,
    InvalidInputError,
    InvalidTransitionError,
    LedgerRejectedError,
    NetworkError,
    QuoteExpiredError,
    QuoteSupersededError,
    RecoverableError,
    SignatureDeclinedError,
    SwapError,
    SwapInProgressError,
    TransactionReusedError,
    TransactionAlreadyProcessedError,
    TransientBroadcastError,
    UnrecoverableError,
    UnresolvedTokenError,
    classify_error,
)
from .strategies import ExponentialBackoffStrategy, RetryConfig, RetryExhaustedError

__all__ = [
    # Errors
    "SwapError",
    "RecoverableError",
    "UnrecoverableError",
    "ErrorKind",
    "ErrorContext",
    "InvalidInputError",
    "InvalidAmountError",
    "UnresolvedTokenError",
    "InsufficientLiquidityError",
    "QuoteExpiredError",
    "QuoteSupersededError",
    "BuildError",
    "SignatureDeclinedError",
    "NetworkError",
    "TransientBroadcastError",
    "TransactionAlreadyProcessedError",
    "BroadcastFailedError",
    "LedgerRejectedError",
    "ConfirmationTimedOutError",
    "InvalidTransitionError",
    "TransactionReusedError",
    "SwapInProgressError",
    "classify_error",
    # Strategies
    "RetryConfig",
    "ExponentialBackoffStrategy",
    "RetryExhaustedError",
]
