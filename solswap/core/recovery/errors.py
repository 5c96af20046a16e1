"""
Error Classification

Defines the error kinds surfaced by the swap pipeline.
Errors are classified as recoverable (transient, may be retried where the
pipeline allows it) or unrecoverable (terminal for the current attempt).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Structured failure reasons carried by every terminal swap state."""

    INVALID_AMOUNT = "invalid_amount"
    INVALID_INPUT = "invalid_input"
    UNRESOLVED_TOKEN = "unresolved_token"
    INSUFFICIENT_LIQUIDITY = "insufficient_liquidity"
    QUOTE_EXPIRED = "quote_expired"
    BUILD_ERROR = "build_error"
    SIGNATURE_DECLINED = "signature_declined"
    BROADCAST_FAILED = "broadcast_failed"
    LEDGER_REJECTED = "ledger_rejected"
    CONFIRMATION_TIMED_OUT = "confirmation_timed_out"
    NETWORK_ERROR = "network_error"


@dataclass
class ErrorContext:
    """Additional context about an error."""

    kind: ErrorKind = ErrorKind.NETWORK_ERROR
    recoverable: bool = True
    retry_after_seconds: Optional[float] = None
    suggested_action: Optional[str] = None
    provider: Optional[str] = None
    signature: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class SwapError(Exception):
    """Base class for every error raised by the swap pipeline."""

    kind: ErrorKind = ErrorKind.NETWORK_ERROR
    recoverable: bool = False

    def __init__(self, message: str, context: Optional[ErrorContext] = None):
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext(kind=self.kind, recoverable=self.recoverable)


class RecoverableError(SwapError):
    """
    Transient failure.

    - Connection resets and timeouts
    - Rate limits
    - RPC node busy / behind
    """

    recoverable = True

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(
            message,
            context=context or ErrorContext(
                kind=self.kind,
                recoverable=True,
                retry_after_seconds=retry_after,
            ),
        )
        self.retry_after = retry_after


class UnrecoverableError(SwapError):
    """Terminal failure for the current attempt."""

    recoverable = False


class QuoteSupersededError(Exception):
    """A newer quote request replaced this one; its result was discarded."""

    def __init__(self, generation: int, latest: int):
        super().__init__(f"Quote request {generation} superseded by request {latest}")
        self.generation = generation
        self.latest = latest


class InvalidTransitionError(Exception):
    """Raised for a state transition the machine does not allow."""

    def __init__(self, from_state: Any, to_state: Any, message: Optional[str] = None):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            message or f"Invalid transition from {getattr(from_state, 'value', from_state)} "
            f"to {getattr(to_state, 'value', to_state)}"
        )


class TransactionReusedError(InvalidTransitionError):
    """An unsigned transaction was handed to a second submission attempt."""


class SwapInProgressError(Exception):
    """A swap is already building or submitting in this session."""


# Validation


class InvalidInputError(UnrecoverableError):
    """Request parameters are unusable (slippage range, identical mints)."""

    kind = ErrorKind.INVALID_INPUT


class InvalidAmountError(InvalidInputError):
    """Amount is negative, zero where positive is required, or not a number."""

    kind = ErrorKind.INVALID_AMOUNT

    def __init__(self, message: str = "Invalid amount", value: Any = None):
        super().__init__(
            message,
            context=ErrorContext(
                kind=ErrorKind.INVALID_AMOUNT,
                recoverable=False,
                suggested_action="Enter a positive decimal amount",
                details={"value": None if value is None else str(value)},
            ),
        )


class UnresolvedTokenError(InvalidInputError):
    """Token identifier could not be resolved to metadata."""

    kind = ErrorKind.UNRESOLVED_TOKEN

    def __init__(self, token_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Token not found: {token_id}",
            context=ErrorContext(
                kind=ErrorKind.UNRESOLVED_TOKEN,
                recoverable=False,
                suggested_action="Select a listed token",
                details={"token": token_id},
            ),
        )
        self.token_id = token_id


# Quote / build


class InsufficientLiquidityError(UnrecoverableError):
    """Quote service found no viable route."""

    kind = ErrorKind.INSUFFICIENT_LIQUIDITY

    def __init__(self, message: str = "No route found for this pair", error_code: Optional[str] = None):
        super().__init__(
            message,
            context=ErrorContext(
                kind=ErrorKind.INSUFFICIENT_LIQUIDITY,
                recoverable=False,
                provider="jupiter",
                suggested_action="Try a smaller amount or a different pair",
                details={"error_code": error_code} if error_code else {},
            ),
        )


class QuoteExpiredError(UnrecoverableError):
    """Quote outlived its TTL before it was built."""

    kind = ErrorKind.QUOTE_EXPIRED

    def __init__(self, quote_id: str, age_seconds: float, ttl_seconds: float):
        super().__init__(
            f"Quote {quote_id} expired ({age_seconds:.2f}s old, ttl {ttl_seconds:.2f}s)",
            context=ErrorContext(
                kind=ErrorKind.QUOTE_EXPIRED,
                recoverable=False,
                suggested_action="Request a fresh quote",
                details={"quote_id": quote_id, "age_seconds": age_seconds, "ttl_seconds": ttl_seconds},
            ),
        )


class BuildError(UnrecoverableError):
    """Route data malformed or payer/account configuration incompatible."""

    kind = ErrorKind.BUILD_ERROR


# Submission


class SignatureDeclinedError(UnrecoverableError):
    """The wallet did not produce a signature."""

    kind = ErrorKind.SIGNATURE_DECLINED

    def __init__(self, message: str = "Signature request declined by user"):
        super().__init__(
            message,
            context=ErrorContext(
                kind=ErrorKind.SIGNATURE_DECLINED,
                recoverable=False,
                suggested_action="Approve the transaction in your wallet to swap",
            ),
        )


class NetworkError(RecoverableError):
    """Transport failure talking to a remote service."""

    kind = ErrorKind.NETWORK_ERROR

    def __init__(self, message: str = "Network error", provider: Optional[str] = None, retry_after: float = 1.0):
        super().__init__(
            message,
            retry_after=retry_after,
            context=ErrorContext(
                kind=ErrorKind.NETWORK_ERROR,
                recoverable=True,
                retry_after_seconds=retry_after,
                provider=provider,
                suggested_action="Check network connectivity and retry",
            ),
        )


class TransientBroadcastError(RecoverableError):
    """Send failed in a way that may succeed with the same bytes later."""

    kind = ErrorKind.BROADCAST_FAILED

    def __init__(self, message: str = "RPC node busy", signature: Optional[str] = None):
        super().__init__(
            message,
            context=ErrorContext(
                kind=ErrorKind.BROADCAST_FAILED,
                recoverable=True,
                signature=signature,
                suggested_action="Retry with exponential backoff",
            ),
        )


class BroadcastFailedError(UnrecoverableError):
    """Broadcast retries exhausted or a non-transient send error."""

    kind = ErrorKind.BROADCAST_FAILED

    def __init__(self, message: str, attempts: int = 0, signature: Optional[str] = None):
        super().__init__(
            message,
            context=ErrorContext(
                kind=ErrorKind.BROADCAST_FAILED,
                recoverable=False,
                signature=signature,
                suggested_action="Request a new quote and try again",
                details={"attempts": attempts},
            ),
        )
        self.attempts = attempts


class TransactionAlreadyProcessedError(UnrecoverableError):
    """The node already holds these exact signed bytes from an earlier attempt."""

    kind = ErrorKind.BROADCAST_FAILED


class LedgerRejectedError(UnrecoverableError):
    """The ledger explicitly rejected the transaction."""

    kind = ErrorKind.LEDGER_REJECTED

    def __init__(self, message: str = "Transaction rejected by the network", signature: Optional[str] = None, reason: Any = None):
        super().__init__(
            message,
            context=ErrorContext(
                kind=ErrorKind.LEDGER_REJECTED,
                recoverable=False,
                signature=signature,
                suggested_action="Review amount and slippage, then request a new quote",
                details={"reason": str(reason)} if reason is not None else {},
            ),
        )


class ConfirmationTimedOutError(UnrecoverableError):
    """Expiry height passed without finalization; status unknown."""

    kind = ErrorKind.CONFIRMATION_TIMED_OUT

    def __init__(self, signature: str, expiry_height: int, explorer_url: Optional[str] = None):
        super().__init__(
            "Transaction status unknown, check explorer",
            context=ErrorContext(
                kind=ErrorKind.CONFIRMATION_TIMED_OUT,
                recoverable=False,
                signature=signature,
                suggested_action="Check the explorer before retrying",
                details={"expiry_height": expiry_height, "explorer_url": explorer_url},
            ),
        )


def classify_error(error: Exception) -> ErrorContext:
    """
    Classify an exception and return its error context.

    Raw transport and RPC messages are matched against known patterns; the
    pipeline's own errors return their attached context.
    """
    if isinstance(error, SwapError):
        return error.context

    message = str(error).lower()

    rate_limit_patterns = [
        "rate limit",
        "too many requests",
        "429",
        "throttl",
    ]
    if any(p in message for p in rate_limit_patterns):
        return ErrorContext(
            kind=ErrorKind.NETWORK_ERROR,
            recoverable=True,
            retry_after_seconds=2.0,
            suggested_action="Wait before retrying",
        )

    busy_patterns = [
        "node is behind",
        "node is unhealthy",
        "busy",
        "service unavailable",
        "503",
        "502",
        "504",
    ]
    if any(p in message for p in busy_patterns):
        return ErrorContext(
            kind=ErrorKind.NETWORK_ERROR,
            recoverable=True,
            retry_after_seconds=1.0,
            suggested_action="Retry with exponential backoff",
        )

    network_patterns = [
        "connection",
        "network",
        "unreachable",
        "refused",
        "reset",
        "timeout",
        "timed out",
    ]
    if any(p in message for p in network_patterns):
        return ErrorContext(
            kind=ErrorKind.NETWORK_ERROR,
            recoverable=True,
            retry_after_seconds=1.0,
            suggested_action="Check network connectivity",
        )

    rejection_patterns = [
        "simulation failed",
        "insufficient",
        "slippage",
        "custom program error",
        "instructionerror",
    ]
    if any(p in message for p in rejection_patterns):
        return ErrorContext(
            kind=ErrorKind.LEDGER_REJECTED,
            recoverable=False,
            suggested_action="Review transaction parameters",
        )

    # Unknown send errors are terminal
    return ErrorContext(
        kind=ErrorKind.BROADCAST_FAILED,
        recoverable=False,
        suggested_action="Request a new quote and try again",
    )
