"""
Swap Orchestrator

Top-level state machine for one user session. Composes the quote
negotiator, transaction builder and submission engine, and exposes the
swap as a stream of SwapStatus snapshots.

    IDLE -> QUOTE_PENDING -> QUOTE_READY -> BUILDING -> AWAITING_SIGNATURE
         -> BROADCASTING -> CONFIRMING -> SUCCEEDED

Any failure emits FAILED (with its error kind) and returns to IDLE.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set
from uuid import uuid4

from ...config import settings
from ...logging_config import bind_swap_context
from ..recovery.errors import (
    BroadcastFailedError,
    BuildError,
    ConfirmationTimedOutError,
    ErrorKind,
    InvalidInputError,
    InvalidTransitionError,
    NetworkError,
    QuoteSupersededError,
    SignatureDeclinedError,
    SwapError,
    SwapInProgressError,
)
from .builder import TransactionBuilder
from .models import Quote
from .quotes import QuoteNegotiator
from .submission import SubmissionEngine
from .units import HumanAmount

logger = logging.getLogger(__name__)


class SwapState(str, Enum):
    IDLE = "idle"
    QUOTE_PENDING = "quote_pending"
    QUOTE_READY = "quote_ready"
    BUILDING = "building"
    AWAITING_SIGNATURE = "awaiting_signature"
    BROADCASTING = "broadcasting"
    CONFIRMING = "confirming"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# States during which a transaction is being built or submitted
SUBMISSION_STATES = frozenset({
    SwapState.BUILDING,
    SwapState.AWAITING_SIGNATURE,
    SwapState.BROADCASTING,
    SwapState.CONFIRMING,
})


@dataclass(frozen=True)
class SwapStatus:
    """Externally observable snapshot of the orchestrator."""

    state: SwapState
    kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    quote: Optional[Quote] = None
    estimated_output: Optional[str] = None
    signature: Optional[str] = None
    explorer_url: Optional[str] = None
    swap_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.state in (SwapState.SUCCEEDED, SwapState.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "kind": self.kind.value if self.kind else None,
            "message": self.message,
            "quoteId": self.quote.id if self.quote else None,
            "estimatedOutput": self.estimated_output,
            "signature": self.signature,
            "explorerUrl": self.explorer_url,
            "swapId": self.swap_id,
            "timestamp": self.timestamp.isoformat(),
        }


TransitionCallback = Callable[[SwapStatus], None]


@dataclass
class _SwapRun:
    id: str
    queue: "asyncio.Queue[Optional[SwapStatus]]"
    task: Optional[asyncio.Task] = None
    quote: Optional[Quote] = None
    signature: Optional[str] = None
    expiry_height: Optional[int] = None
    signed: bool = False


class SwapOrchestrator:
    """
    Drives quote -> build -> sign -> broadcast -> confirm for one session.

    Usage:
        orchestrator = SwapOrchestrator(negotiator, builder, engine)
        async for status in orchestrator.execute_swap("SOL", "USDC", "1.5", 50, payer):
            print(status.state, status.estimated_output)

    Only one swap may be in flight. Quote requests made while a swap is
    building or submitting update the displayed quote but never the swap.
    """

    TRANSITIONS: Dict[SwapState, Set[SwapState]] = {
        SwapState.IDLE: {
            SwapState.QUOTE_PENDING,
        },
        SwapState.QUOTE_PENDING: {
            SwapState.QUOTE_PENDING,  # Newer request
            SwapState.QUOTE_READY,
            SwapState.FAILED,
            SwapState.IDLE,           # Superseded or cancelled
        },
        SwapState.QUOTE_READY: {
            SwapState.QUOTE_PENDING,  # Input change or refresh
            SwapState.BUILDING,
            SwapState.IDLE,
        },
        SwapState.BUILDING: {
            SwapState.AWAITING_SIGNATURE,
            SwapState.FAILED,
            SwapState.IDLE,           # Cancelled
        },
        SwapState.AWAITING_SIGNATURE: {
            SwapState.BROADCASTING,
            SwapState.FAILED,
            SwapState.IDLE,           # Cancelled before signing
        },
        SwapState.BROADCASTING: {
            SwapState.CONFIRMING,
            SwapState.FAILED,
        },
        SwapState.CONFIRMING: {
            SwapState.SUCCEEDED,
            SwapState.FAILED,
        },
        SwapState.SUCCEEDED: {
            SwapState.IDLE,
            SwapState.QUOTE_PENDING,
        },
        SwapState.FAILED: {
            SwapState.IDLE,
        },
    }

    def __init__(
        self,
        negotiator: QuoteNegotiator,
        builder: TransactionBuilder,
        engine: SubmissionEngine,
        payer: Optional[str] = None,
    ):
        self._negotiator = negotiator
        self._builder = builder
        self._engine = engine
        self._payer = payer
        self._status = SwapStatus(state=SwapState.IDLE)
        self._history: List[SwapStatus] = [self._status]
        self._callbacks: List[TransitionCallback] = []
        self._display_quote: Optional[Quote] = None
        self._last_request: Optional[tuple] = None
        self._run: Optional[_SwapRun] = None

    @property
    def state(self) -> SwapState:
        return self._status.state

    @property
    def status(self) -> SwapStatus:
        return self._status

    @property
    def history(self) -> List[SwapStatus]:
        return list(self._history)

    @property
    def quote(self) -> Optional[Quote]:
        """Quote currently shown to the user."""
        return self._display_quote

    @property
    def estimated_output(self) -> Optional[str]:
        """Human-readable output amount of the displayed quote."""
        return self._display_quote.out_human if self._display_quote else None

    @property
    def swap_active(self) -> bool:
        return self._run is not None

    @property
    def in_flight(self) -> bool:
        return self.state in SUBMISSION_STATES

    def register_transition_callback(self, callback: TransitionCallback) -> None:
        self._callbacks.append(callback)

    def _transition(self, to_state: SwapState, **fields: Any) -> SwapStatus:
        from_state = self.state
        allowed = self.TRANSITIONS.get(from_state, set())
        if to_state not in allowed:
            raise InvalidTransitionError(
                from_state,
                to_state,
                message=f"Invalid transition from {from_state.value} to {to_state.value}. "
                        f"Allowed: {sorted(s.value for s in allowed)}",
            )

        if "quote" in fields and "estimated_output" not in fields and fields["quote"] is not None:
            fields["estimated_output"] = fields["quote"].out_human
        if self._run is not None:
            fields.setdefault("swap_id", self._run.id)

        status = SwapStatus(state=to_state, **fields)
        self._status = status
        self._history.append(status)
        logger.info(
            f"Swap state: {from_state.value} -> {to_state.value}"
            + (f" ({status.kind.value}: {status.message})" if status.kind else "")
        )

        for callback in self._callbacks:
            try:
                callback(status)
            except Exception as e:
                logger.error(f"Transition callback failed: {e}")

        if self._run is not None:
            self._run.queue.put_nowait(status)
        return status

    def _set_display_quote(self, quote: Optional[Quote]) -> None:
        self._display_quote = quote

    def _fail(self, error: SwapError, signature: Optional[str] = None) -> None:
        signature = error.context.signature or signature
        explorer_url = self._engine.explorer_url(signature) if signature else None
        self._transition(
            SwapState.FAILED,
            kind=error.context.kind,
            message=error.message,
            signature=signature,
            explorer_url=explorer_url,
        )
        self._transition(SwapState.IDLE)

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def request_quote(
        self,
        input_token: str,
        output_token: str,
        human_amount: HumanAmount,
        slippage_bps: Optional[int] = None,
    ) -> Quote:
        """
        Fetch a quote for display. Errors are re-raised after being recorded.

        While a swap is active only the displayed quote changes.
        """
        self._last_request = (input_token, output_token, human_amount, slippage_bps)
        self._set_display_quote(None)
        tracked = not self.swap_active
        if tracked:
            self._transition(SwapState.QUOTE_PENDING)

        try:
            quote = await self._negotiator.request_quote(
                input_token, output_token, human_amount, slippage_bps
            )
        except QuoteSupersededError:
            raise
        except SwapError as e:
            if tracked and not self.swap_active and self.state == SwapState.QUOTE_PENDING:
                self._fail(e)
            raise

        self._set_display_quote(quote)
        if tracked and not self.swap_active:
            self._transition(SwapState.QUOTE_READY, quote=quote)
        return quote

    async def refresh_quote(self) -> Quote:
        """Re-request the last quote; the previous one is discarded."""
        if self._last_request is None:
            raise InvalidInputError("No quote has been requested yet")
        return await self.request_quote(*self._last_request)

    # ------------------------------------------------------------------
    # Swap execution
    # ------------------------------------------------------------------

    def execute_swap(
        self,
        input_token: str,
        output_token: str,
        human_amount: HumanAmount,
        slippage_bps: Optional[int] = None,
        payer: Optional[str] = None,
    ) -> AsyncIterator[SwapStatus]:
        """
        Start a swap and return its status stream.

        The pipeline runs in its own task. If the consumer stops iterating
        before the transaction is signed the swap is cancelled; after
        signing it always runs to a terminal state.

        Raises:
            SwapInProgressError: another swap is still running
        """
        if self._run is not None:
            raise SwapInProgressError(f"Swap {self._run.id} is still {self.state.value}")
        payer = payer or self._payer
        if not payer:
            raise InvalidInputError("A payer address is required to swap")

        if slippage_bps is None:
            slippage_bps = settings.default_slippage_bps
        run = _SwapRun(id=str(uuid4()), queue=asyncio.Queue())
        self._run = run
        run.task = asyncio.create_task(
            self._execute(run, input_token, output_token, human_amount, slippage_bps, payer)
        )
        return self._stream(run)

    async def _stream(self, run: _SwapRun) -> AsyncIterator[SwapStatus]:
        try:
            while True:
                status = await run.queue.get()
                if status is None:
                    break
                yield status
            await run.task
        finally:
            if not run.task.done() and not run.signed:
                logger.info(f"Swap {run.id} abandoned before signing; cancelling")
                run.task.cancel()
                try:
                    await run.task
                except asyncio.CancelledError:
                    pass

    async def _execute(
        self,
        run: _SwapRun,
        input_token: str,
        output_token: str,
        human_amount: HumanAmount,
        slippage_bps: int,
        payer: str,
    ) -> None:
        bind_swap_context(swap_id=run.id)
        try:
            await self._pipeline(run, input_token, output_token, human_amount, slippage_bps, payer)
        except QuoteSupersededError as e:
            self._transition(SwapState.IDLE, message=f"Quote superseded: {e}")
        except SwapError as e:
            self._fail(e, signature=run.signature)
        except Exception as e:
            logger.exception(f"Unexpected error in swap {run.id} while {self.state.value}")
            if SwapState.FAILED not in self.TRANSITIONS[self.state]:
                raise
            self._fail(self._unexpected_error(run, e), signature=run.signature)
        except asyncio.CancelledError:
            if SwapState.IDLE in self.TRANSITIONS[self.state]:
                self._transition(SwapState.IDLE, message="Swap cancelled before signing")
            raise
        finally:
            if run.quote is not None and self._display_quote is run.quote:
                self._set_display_quote(None)
            self._run = None
            run.queue.put_nowait(None)

    def _unexpected_error(self, run: _SwapRun, error: Exception) -> SwapError:
        """Map an error that escaped the pipeline to the failure of the current stage."""
        if self.state == SwapState.BUILDING:
            return BuildError(f"Unexpected build error: {error}")
        if self.state == SwapState.AWAITING_SIGNATURE:
            return SignatureDeclinedError(f"wallet signing failed: {error}")
        if self.state == SwapState.BROADCASTING:
            return BroadcastFailedError(f"Unexpected broadcast error: {error}", signature=run.signature)
        if self.state == SwapState.CONFIRMING and run.signature and run.expiry_height is not None:
            return ConfirmationTimedOutError(
                run.signature,
                run.expiry_height,
                explorer_url=self._engine.explorer_url(run.signature),
            )
        return NetworkError(f"Unexpected error: {error}")

    async def _pipeline(
        self,
        run: _SwapRun,
        input_token: str,
        output_token: str,
        human_amount: HumanAmount,
        slippage_bps: int,
        payer: str,
    ) -> None:
        quote = self._negotiator.live_quote(input_token, output_token, human_amount, slippage_bps)
        if quote is None or self.state != SwapState.QUOTE_READY:
            self._transition(SwapState.QUOTE_PENDING)
            if quote is None:
                quote = await self._negotiator.request_quote(
                    input_token, output_token, human_amount, slippage_bps
                )
            self._set_display_quote(quote)
            self._transition(SwapState.QUOTE_READY, quote=quote)
        run.quote = quote
        bind_swap_context(swap_id=run.id, quote_id=quote.id)

        self._transition(SwapState.BUILDING, quote=quote)
        unsigned = await self._builder.build(quote, payer)
        run.expiry_height = unsigned.expiry_height
        # A quote backs exactly one transaction
        self._negotiator.invalidate()

        attempt = self._engine.begin(unsigned)
        self._transition(SwapState.AWAITING_SIGNATURE, quote=quote)
        await self._engine.sign(attempt)
        run.signed = True
        run.signature = attempt.signature

        self._transition(SwapState.BROADCASTING, quote=quote, signature=attempt.signature)
        signature = await self._engine.broadcast(attempt)
        run.signature = signature

        explorer_url = self._engine.explorer_url(signature)
        self._transition(SwapState.CONFIRMING, quote=quote, signature=signature, explorer_url=explorer_url)
        result = await self._engine.await_confirmation(attempt)

        self._transition(
            SwapState.SUCCEEDED,
            quote=quote,
            signature=result.signature,
            explorer_url=explorer_url,
            message=f"Confirmed in slot {result.slot}" if result.slot is not None else "Confirmed",
        )

    async def swap(
        self,
        input_token: str,
        output_token: str,
        human_amount: HumanAmount,
        slippage_bps: Optional[int] = None,
        payer: Optional[str] = None,
    ) -> SwapStatus:
        """Run a swap to completion and return its terminal (or cancelled) status."""
        final: Optional[SwapStatus] = None
        async for status in self.execute_swap(input_token, output_token, human_amount, slippage_bps, payer):
            if final is None or not final.is_terminal:
                final = status
        assert final is not None
        return final


__all__ = [
    "SUBMISSION_STATES",
    "SwapOrchestrator",
    "SwapState",
    "SwapStatus",
]
