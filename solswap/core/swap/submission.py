"""
Submission Engine

Signs, broadcasts and confirms a single UnsignedTransaction.

Per-attempt state machine:

    BUILT -> SIGNED -> BROADCAST -> CONFIRMED
    BUILT -> SIGNED -> BROADCAST -> FAILED
    BUILT -> REJECTED                 (wallet declined)

An unsigned transaction gets at most one attempt, one signature and one
broadcast sequence. Broadcast retries resend the identical signed bytes;
confirmation polling never resubmits.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set

from ...config import settings
from ...providers.base import LedgerRpc, WalletSigner
from ..recovery.errors import (
    BroadcastFailedError,
    ConfirmationTimedOutError,
    InvalidTransitionError,
    LedgerRejectedError,
    RecoverableError,
    SignatureDeclinedError,
    SwapError,
    TransactionAlreadyProcessedError,
    TransactionReusedError,
)
from ..recovery.strategies import ExponentialBackoffStrategy, RetryConfig, RetryExhaustedError
from .encoding import transaction_signature
from .models import (
    SignedTransaction,
    SubmissionOutcome,
    SubmissionResult,
    TransactionStatus,
    UnsignedTransaction,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

# Transaction ids remembered for reuse detection, oldest evicted first
MAX_TRACKED_TRANSACTIONS = 1024


class SubmissionState(str, Enum):
    BUILT = "built"
    SIGNED = "signed"
    BROADCAST = "broadcast"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REJECTED = "rejected"


TERMINAL_STATES = frozenset({
    SubmissionState.CONFIRMED,
    SubmissionState.FAILED,
    SubmissionState.REJECTED,
})


@dataclass
class StateChange:
    from_state: SubmissionState
    to_state: SubmissionState
    reason: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


TransitionListener = Callable[["SubmissionAttempt", StateChange], None]


@dataclass
class SubmissionAttempt:
    """The single submission attempt allowed for one unsigned transaction."""

    transaction: UnsignedTransaction
    state: SubmissionState = SubmissionState.BUILT
    signed: Optional[SignedTransaction] = None
    signature: Optional[str] = None
    broadcast_attempts: int = 0
    result: Optional[SubmissionResult] = None
    error: Optional[SwapError] = None
    history: List[StateChange] = field(default_factory=list)
    listener: Optional[TransitionListener] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class SubmissionEngine:
    """
    Drives submission attempts against a wallet and a ledger RPC endpoint.

    Usage:
        engine = SubmissionEngine(signer, get_solana_rpc())
        result = await engine.submit(unsigned_tx)
    """

    TRANSITIONS: Dict[SubmissionState, Set[SubmissionState]] = {
        SubmissionState.BUILT: {
            SubmissionState.SIGNED,
            SubmissionState.REJECTED,
        },
        SubmissionState.SIGNED: {
            SubmissionState.BROADCAST,
        },
        SubmissionState.BROADCAST: {
            SubmissionState.CONFIRMED,
            SubmissionState.FAILED,
        },
        SubmissionState.CONFIRMED: set(),
        SubmissionState.FAILED: set(),
        SubmissionState.REJECTED: set(),
    }

    def __init__(
        self,
        signer: WalletSigner,
        rpc: LedgerRpc,
        retry_config: Optional[RetryConfig] = None,
        sleep: Sleep = asyncio.sleep,
        poll_interval_seconds: Optional[float] = None,
        max_poll_interval_seconds: Optional[float] = None,
        max_consecutive_poll_errors: Optional[int] = None,
        explorer_url: Callable[[str], str] = settings.explorer_url,
    ):
        self._signer = signer
        self._rpc = rpc
        self._retry_config = retry_config or RetryConfig(
            max_retries=settings.broadcast_max_retries,
            initial_delay_seconds=settings.broadcast_base_delay_seconds,
            max_delay_seconds=settings.broadcast_max_delay_seconds,
        )
        self._sleep = sleep
        self._poll_interval = (
            poll_interval_seconds
            if poll_interval_seconds is not None
            else settings.confirm_poll_interval_seconds
        )
        self._max_poll_interval = max(
            max_poll_interval_seconds
            if max_poll_interval_seconds is not None
            else settings.confirm_max_poll_interval_seconds,
            self._poll_interval,
        )
        self._max_poll_errors = (
            max_consecutive_poll_errors
            if max_consecutive_poll_errors is not None
            else settings.confirm_max_consecutive_errors
        )
        self._explorer_url = explorer_url
        self._seen_transactions: "OrderedDict[str, None]" = OrderedDict()

    @property
    def retry_config(self) -> RetryConfig:
        return self._retry_config

    def explorer_url(self, signature: str) -> str:
        return self._explorer_url(signature)

    def begin(
        self,
        transaction: UnsignedTransaction,
        listener: Optional[TransitionListener] = None,
    ) -> SubmissionAttempt:
        """Open the one attempt allowed for ``transaction``."""
        if transaction.id in self._seen_transactions:
            raise TransactionReusedError(
                SubmissionState.BUILT,
                SubmissionState.BUILT,
                message=f"Transaction {transaction.id} was already submitted; request a new quote",
            )
        self._seen_transactions[transaction.id] = None
        while len(self._seen_transactions) > MAX_TRACKED_TRANSACTIONS:
            self._seen_transactions.popitem(last=False)
        return SubmissionAttempt(transaction=transaction, listener=listener)

    def _transition(
        self,
        attempt: SubmissionAttempt,
        to_state: SubmissionState,
        reason: Optional[str] = None,
    ) -> None:
        from_state = attempt.state
        allowed = self.TRANSITIONS.get(from_state, set())
        if to_state not in allowed:
            raise InvalidTransitionError(
                from_state,
                to_state,
                message=f"Invalid transition from {from_state.value} to {to_state.value}. "
                        f"Allowed: {sorted(s.value for s in allowed)}",
            )

        attempt.state = to_state
        change = StateChange(from_state=from_state, to_state=to_state, reason=reason)
        attempt.history.append(change)
        logger.info(
            f"Transaction {attempt.transaction.id}: {from_state.value} -> {to_state.value}"
            + (f" ({reason})" if reason else "")
        )
        if attempt.listener is not None:
            attempt.listener(attempt, change)

    def _fail(self, attempt: SubmissionAttempt, error: SwapError) -> None:
        attempt.error = error
        self._transition(attempt, SubmissionState.FAILED, error.message)

    def _require(self, attempt: SubmissionAttempt, state: SubmissionState, target: SubmissionState) -> None:
        if attempt.state != state:
            raise InvalidTransitionError(attempt.state, target)

    async def sign(self, attempt: SubmissionAttempt) -> SignedTransaction:
        """
        Ask the wallet for a signature. Never retried.

        Raises:
            SignatureDeclinedError: the wallet declined or failed to sign
        """
        self._require(attempt, SubmissionState.BUILT, SubmissionState.SIGNED)

        try:
            signed = await self._signer.sign(attempt.transaction)
        except SignatureDeclinedError as e:
            attempt.error = e
            self._transition(attempt, SubmissionState.REJECTED, e.message)
            raise
        except asyncio.CancelledError:
            self._transition(attempt, SubmissionState.REJECTED, "cancelled before signing")
            raise
        except Exception as e:
            error = SignatureDeclinedError(f"wallet signing failed: {e}")
            attempt.error = error
            self._transition(attempt, SubmissionState.REJECTED, error.message)
            raise error from e

        if signed.transaction_id != attempt.transaction.id:
            error = SignatureDeclinedError("Wallet returned a signature for a different transaction")
            attempt.error = error
            self._transition(attempt, SubmissionState.REJECTED, error.message)
            raise error

        attempt.signed = signed
        attempt.signature = signed.signature or transaction_signature(signed.payload)
        if attempt.signature is None:
            logger.warning(f"Transaction {attempt.transaction.id} signed without a readable fee payer signature")
        self._transition(attempt, SubmissionState.SIGNED)
        return signed

    def _record_signature(self, attempt: SubmissionAttempt, signature: str) -> None:
        if attempt.signature is None:
            attempt.signature = signature
        elif signature != attempt.signature:
            raise BroadcastFailedError(
                f"RPC reported signature {signature}, expected {attempt.signature}",
                attempts=attempt.broadcast_attempts,
                signature=attempt.signature,
            )

    async def broadcast(self, attempt: SubmissionAttempt) -> str:
        """
        Send the signed payload, retrying transient failures with backoff.

        Every retry sends the same bytes. Returns the transaction signature.

        Raises:
            BroadcastFailedError: retries exhausted or a non-transient send error
            LedgerRejectedError: the network refused the transaction outright
        """
        self._require(attempt, SubmissionState.SIGNED, SubmissionState.BROADCAST)
        payload = attempt.signed.payload
        self._transition(attempt, SubmissionState.BROADCAST)

        async def send() -> str:
            attempt.broadcast_attempts += 1
            try:
                signature = await self._rpc.send_transaction(payload)
            except TransactionAlreadyProcessedError:
                if attempt.signature is None:
                    raise
                # The node already holds these bytes from an earlier send
                logger.info(f"Transaction {attempt.transaction.id} already processed as {attempt.signature}")
                return attempt.signature
            self._record_signature(attempt, signature)
            return signature

        def on_retry(attempt_no: int, error: Exception, delay: float) -> None:
            logger.warning(
                f"Broadcast of {attempt.transaction.id} failed (attempt {attempt_no}), "
                f"resending same payload in {delay:.1f}s: {error}"
            )

        strategy = ExponentialBackoffStrategy(self._retry_config, logger=logger, sleep=self._sleep)
        try:
            return await strategy.execute(
                send,
                operation_name=f"broadcast {attempt.transaction.id}",
                on_retry=on_retry,
            )
        except RetryExhaustedError as e:
            error = BroadcastFailedError(
                f"Broadcast failed after {e.attempts} attempts: {e.last_error}",
                attempts=e.attempts,
                signature=attempt.signature,
            )
            self._fail(attempt, error)
            raise error from e.last_error
        except (BroadcastFailedError, LedgerRejectedError) as e:
            self._fail(attempt, e)
            raise
        except SwapError as e:
            error = BroadcastFailedError(e.message, attempts=attempt.broadcast_attempts, signature=attempt.signature)
            self._fail(attempt, error)
            raise error from e
        except Exception as e:
            logger.exception(f"Unexpected error broadcasting {attempt.transaction.id}")
            error = BroadcastFailedError(
                f"Unexpected broadcast error: {e}",
                attempts=attempt.broadcast_attempts,
                signature=attempt.signature,
            )
            self._fail(attempt, error)
            raise error from e

    async def confirm(self, signature: str, expiry_height: int) -> SubmissionResult:
        """
        Poll until the signature finalizes, is rejected, or the chain passes
        ``expiry_height``. Read-only; safe to repeat.

        Block height is read before status so a pending status seen after the
        expiry height is final.
        """
        interval = self._poll_interval
        consecutive_errors = 0
        last_height: Optional[int] = None

        while True:
            try:
                height = await self._rpc.get_block_height()
                status = await self._rpc.get_signature_status(signature)
            except RecoverableError as e:
                consecutive_errors += 1
                logger.warning(
                    f"Status poll for {signature} failed "
                    f"({consecutive_errors}/{self._max_poll_errors}): {e.message}"
                )
                if consecutive_errors >= self._max_poll_errors:
                    return SubmissionResult(
                        outcome=SubmissionOutcome.TIMED_OUT,
                        signature=signature,
                        reason=f"status unavailable: {e.message}",
                        last_height=last_height,
                    )
            else:
                consecutive_errors = 0
                last_height = height

                if status.status == TransactionStatus.FINALIZED:
                    return SubmissionResult(
                        outcome=SubmissionOutcome.CONFIRMED,
                        signature=signature,
                        slot=status.slot,
                        last_height=height,
                    )
                if status.status == TransactionStatus.REJECTED:
                    return SubmissionResult(
                        outcome=SubmissionOutcome.REJECTED,
                        signature=signature,
                        slot=status.slot,
                        reason=str(status.error),
                        last_height=height,
                    )
                if height > expiry_height:
                    return SubmissionResult(
                        outcome=SubmissionOutcome.TIMED_OUT,
                        signature=signature,
                        reason=f"block height {height} passed expiry {expiry_height}",
                        last_height=height,
                    )

            await self._sleep(interval)
            interval = min(interval * 1.5, self._max_poll_interval)

    async def await_confirmation(self, attempt: SubmissionAttempt) -> SubmissionResult:
        """
        Confirm a broadcast attempt and move it to its terminal state.

        Raises:
            LedgerRejectedError: the ledger recorded the transaction as failed
            ConfirmationTimedOutError: status unknown once polling stopped
        """
        self._require(attempt, SubmissionState.BROADCAST, SubmissionState.CONFIRMED)
        if attempt.signature is None:
            raise InvalidTransitionError(attempt.state, SubmissionState.CONFIRMED, "No signature to confirm")

        try:
            result = await self.confirm(attempt.signature, attempt.transaction.expiry_height)
        except Exception as e:
            logger.exception(f"Unexpected error confirming {attempt.signature}")
            error = ConfirmationTimedOutError(
                attempt.signature,
                attempt.transaction.expiry_height,
                explorer_url=self.explorer_url(attempt.signature),
            )
            self._fail(attempt, error)
            raise error from e
        attempt.result = result

        if result.outcome == SubmissionOutcome.CONFIRMED:
            self._transition(attempt, SubmissionState.CONFIRMED, f"slot {result.slot}")
            return result

        if result.outcome == SubmissionOutcome.REJECTED:
            error = LedgerRejectedError(
                f"Transaction {result.signature} failed on chain",
                signature=result.signature,
                reason=result.reason,
            )
        else:
            error = ConfirmationTimedOutError(
                result.signature,
                attempt.transaction.expiry_height,
                explorer_url=self.explorer_url(result.signature),
            )
        self._fail(attempt, error)
        raise error

    async def submit(
        self,
        transaction: UnsignedTransaction,
        listener: Optional[TransitionListener] = None,
    ) -> SubmissionResult:
        """Run the full attempt for ``transaction``: sign, broadcast, confirm."""
        attempt = self.begin(transaction, listener=listener)
        await self.sign(attempt)
        await self.broadcast(attempt)
        return await self.await_confirmation(attempt)


__all__ = [
    "StateChange",
    "SubmissionAttempt",
    "SubmissionEngine",
    "SubmissionState",
    "TERMINAL_STATES",
]
