"""
Tests for the Swap Orchestrator

End-to-end scenarios over fake collaborators: status stream, failure
reasons, single flight and cancellation before signing.
"""

import asyncio

import pytest

from solswap.core.recovery.errors import (
    ErrorKind,
    InsufficientLiquidityError,
    InvalidInputError,
    QuoteSupersededError,
    SwapInProgressError,
    TransientBroadcastError,
)
from solswap.core.swap.builder import TransactionBuilder
from solswap.core.swap.models import TransactionStatus
from solswap.core.swap.orchestrator import SwapOrchestrator, SwapState
from solswap.core.swap.quotes import QuoteNegotiator


async def collect(stream):
    return [status async for status in stream]


async def _until(predicate, rounds: int = 200) -> None:
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


def states(statuses):
    return [status.state for status in statuses]


# =============================================================================
# Successful swaps
# =============================================================================

class TestExecuteSwap:
    """Tests for the happy path."""

    @pytest.mark.asyncio
    async def test_full_status_stream(self, orchestrator, signature):
        statuses = await collect(orchestrator.execute_swap("SOL", "USDC", "1.5", 50))

        assert states(statuses) == [
            SwapState.QUOTE_PENDING,
            SwapState.QUOTE_READY,
            SwapState.BUILDING,
            SwapState.AWAITING_SIGNATURE,
            SwapState.BROADCASTING,
            SwapState.CONFIRMING,
            SwapState.SUCCEEDED,
        ]
        ready = statuses[1]
        assert ready.estimated_output == "225"
        assert ready.quote.in_amount == 1_500_000_000

        final = statuses[-1]
        assert final.signature == signature
        assert final.explorer_url.endswith(signature)
        assert final.kind is None
        assert len({status.swap_id for status in statuses}) == 1
        assert orchestrator.state == SwapState.SUCCEEDED
        assert not orchestrator.swap_active

    @pytest.mark.asyncio
    async def test_reuses_live_quote(self, orchestrator, quote_service):
        quote = await orchestrator.request_quote("SOL", "USDC", "1.5", 50)
        assert orchestrator.state == SwapState.QUOTE_READY

        statuses = await collect(orchestrator.execute_swap("SOL", "USDC", "1.5", 50))

        assert len(quote_service.calls) == 1
        assert statuses[0].state == SwapState.BUILDING
        assert statuses[0].quote is quote

    @pytest.mark.asyncio
    async def test_expired_quote_is_refetched(self, orchestrator, quote_service, clock, build_service):
        await orchestrator.request_quote("SOL", "USDC", "1.5", 50)
        clock.advance(6.0)

        statuses = await collect(orchestrator.execute_swap("SOL", "USDC", "1.5", 50))

        assert len(quote_service.calls) == 2
        assert statuses[-1].state == SwapState.SUCCEEDED
        assert build_service.calls[0]["route"]["routePlan"] == [{"call": 1}]

    @pytest.mark.asyncio
    async def test_changed_amount_is_requoted(self, orchestrator, quote_service):
        await orchestrator.request_quote("SOL", "USDC", "1.5", 50)

        await collect(orchestrator.execute_swap("SOL", "USDC", "2", 50))

        assert [call["amount"] for call in quote_service.calls] == [1_500_000_000, 2_000_000_000]

    @pytest.mark.asyncio
    async def test_quote_is_consumed_by_swap(self, orchestrator, quote_service):
        await collect(orchestrator.execute_swap("SOL", "USDC", "1", 50))
        await collect(orchestrator.execute_swap("SOL", "USDC", "1", 50))

        assert len(quote_service.calls) == 2

    @pytest.mark.asyncio
    async def test_swap_returns_final_status(self, orchestrator):
        final = await orchestrator.swap("SOL", "USDC", "1", 50)

        assert final.state == SwapState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_transition_callbacks(self, orchestrator):
        seen = []
        orchestrator.register_transition_callback(lambda status: seen.append(status.state))

        await orchestrator.swap("SOL", "USDC", "1", 50)

        assert seen[0] == SwapState.QUOTE_PENDING
        assert seen[-1] == SwapState.SUCCEEDED


# =============================================================================
# Failures
# =============================================================================

class TestFailures:
    """Every failure emits FAILED with its kind and returns to IDLE."""

    @pytest.mark.asyncio
    async def test_declined_signature(self, orchestrator, signer, ledger):
        signer.decline = True

        statuses = await collect(orchestrator.execute_swap("SOL", "USDC", "1", 50))

        assert states(statuses)[-3:] == [SwapState.AWAITING_SIGNATURE, SwapState.FAILED, SwapState.IDLE]
        assert statuses[-2].kind == ErrorKind.SIGNATURE_DECLINED
        assert ledger.sent_payloads == []
        assert orchestrator.state == SwapState.IDLE

    @pytest.mark.asyncio
    async def test_swap_reports_failed_status(self, orchestrator, signer):
        signer.decline = True

        final = await orchestrator.swap("SOL", "USDC", "1", 50)

        assert final.state == SwapState.FAILED
        assert final.kind == ErrorKind.SIGNATURE_DECLINED

    @pytest.mark.asyncio
    async def test_transient_broadcast_failures_then_success(self, orchestrator, ledger, signature):
        ledger.send_script = [
            TransientBroadcastError("node is behind", signature=signature),
            TransientBroadcastError("node is behind", signature=signature),
        ]

        statuses = await collect(orchestrator.execute_swap("SOL", "USDC", "1", 50))

        confirming = [s for s in statuses if s.state == SwapState.CONFIRMING]
        assert len(confirming) == 1
        assert confirming[0].signature == signature
        assert len(ledger.sent_payloads) == 3
        assert len(set(ledger.sent_payloads)) == 1
        assert {s.signature for s in statuses if s.signature} == {signature}
        assert statuses[-1].state == SwapState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_broadcast_exhaustion(self, orchestrator, ledger):
        ledger.send_script = [TransientBroadcastError() for _ in range(4)]

        statuses = await collect(orchestrator.execute_swap("SOL", "USDC", "1", 50))

        assert statuses[-2].state == SwapState.FAILED
        assert statuses[-2].kind == ErrorKind.BROADCAST_FAILED
        assert len(ledger.sent_payloads) == 4

    @pytest.mark.asyncio
    async def test_every_retry_is_used_before_giving_up(self, orchestrator, ledger, signature):
        ledger.send_script = [TransientBroadcastError() for _ in range(3)]

        statuses = await collect(orchestrator.execute_swap("SOL", "USDC", "1", 50))

        assert statuses[-1].state == SwapState.SUCCEEDED
        assert statuses[-1].signature == signature
        assert len(ledger.sent_payloads) == 4

    @pytest.mark.asyncio
    async def test_unexpected_send_error_fails_and_recovers(self, orchestrator, ledger):
        ledger.send_script = [RuntimeError("unexpected rpc body")]

        statuses = await collect(orchestrator.execute_swap("SOL", "USDC", "1", 50))

        assert states(statuses)[-3:] == [SwapState.BROADCASTING, SwapState.FAILED, SwapState.IDLE]
        assert statuses[-2].kind == ErrorKind.BROADCAST_FAILED
        assert orchestrator.state == SwapState.IDLE

        again = await collect(orchestrator.execute_swap("SOL", "USDC", "1", 50))
        assert again[-1].state == SwapState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_unexpected_build_error_fails_and_recovers(self, orchestrator, build_service, ledger):
        build_service.error = RuntimeError("malformed build response")

        statuses = await collect(orchestrator.execute_swap("SOL", "USDC", "1", 50))

        assert states(statuses)[-3:] == [SwapState.BUILDING, SwapState.FAILED, SwapState.IDLE]
        assert statuses[-2].kind == ErrorKind.BUILD_ERROR
        assert "malformed build response" in statuses[-2].message
        assert ledger.sent_payloads == []

        build_service.error = None
        again = await collect(orchestrator.execute_swap("SOL", "USDC", "1", 50))
        assert again[-1].state == SwapState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_unexpected_status_error_reports_unknown_status(self, orchestrator, ledger, signature):
        ledger.status_script = [RuntimeError("unexpected rpc body")]

        statuses = await collect(orchestrator.execute_swap("SOL", "USDC", "1", 50))

        assert statuses[-2].kind == ErrorKind.CONFIRMATION_TIMED_OUT
        assert statuses[-2].signature == signature
        assert statuses[-1].state == SwapState.IDLE
        assert len(ledger.sent_payloads) == 1

    @pytest.mark.asyncio
    async def test_confirmation_timeout(self, orchestrator, ledger, build_service, signature):
        ledger.status_script = [TransactionStatus.PENDING]
        ledger.height_script = [build_service.expiry_height - 1, build_service.expiry_height + 1]

        statuses = await collect(orchestrator.execute_swap("SOL", "USDC", "1", 50))

        failed = statuses[-2]
        assert failed.state == SwapState.FAILED
        assert failed.kind == ErrorKind.CONFIRMATION_TIMED_OUT
        assert failed.message == "Transaction status unknown, check explorer"
        assert failed.signature == signature
        assert failed.explorer_url.endswith(signature)
        assert len(ledger.sent_payloads) == 1
        assert statuses[-1].state == SwapState.IDLE

    @pytest.mark.asyncio
    async def test_ledger_rejection(self, orchestrator, ledger):
        ledger.status_script = [TransactionStatus.REJECTED]

        statuses = await collect(orchestrator.execute_swap("SOL", "USDC", "1", 50))

        assert statuses[-2].kind == ErrorKind.LEDGER_REJECTED

    @pytest.mark.asyncio
    async def test_invalid_amount_fails_before_network(self, orchestrator, quote_service, build_service):
        statuses = await collect(orchestrator.execute_swap("SOL", "USDC", "0", 50))

        assert states(statuses) == [SwapState.QUOTE_PENDING, SwapState.FAILED, SwapState.IDLE]
        assert statuses[1].kind == ErrorKind.INVALID_AMOUNT
        assert quote_service.calls == []
        assert build_service.calls == []

    @pytest.mark.asyncio
    async def test_unresolved_token(self, orchestrator):
        statuses = await collect(orchestrator.execute_swap("SOL", "DOESNOTEXIST", "1", 50))

        assert statuses[-2].kind == ErrorKind.UNRESOLVED_TOKEN

    @pytest.mark.asyncio
    async def test_quote_expiring_before_build(self, resolver, quote_service, build_service, engine, payer):
        ticks = iter(range(0, 100, 10))
        clock = lambda: float(next(ticks))
        orchestrator = SwapOrchestrator(
            QuoteNegotiator(resolver, quote_service, clock=clock, ttl_seconds=5.0),
            TransactionBuilder(build_service, clock=clock),
            engine,
            payer=payer,
        )

        statuses = await collect(orchestrator.execute_swap("SOL", "USDC", "1", 50))

        assert states(statuses)[-3:] == [SwapState.BUILDING, SwapState.FAILED, SwapState.IDLE]
        assert statuses[-2].kind == ErrorKind.QUOTE_EXPIRED
        assert build_service.calls == []

    def test_missing_payer_is_rejected_up_front(self, negotiator, builder, engine, quote_service):
        orchestrator = SwapOrchestrator(negotiator, builder, engine)

        with pytest.raises(InvalidInputError):
            orchestrator.execute_swap("SOL", "USDC", "1", 50)
        assert quote_service.calls == []
        assert orchestrator.state == SwapState.IDLE


# =============================================================================
# Quotes outside a swap
# =============================================================================

class TestQuoteDisplay:
    """Tests for request_quote / refresh_quote."""

    @pytest.mark.asyncio
    async def test_estimated_output_follows_quote(self, orchestrator):
        await orchestrator.request_quote("SOL", "USDC", "1", 50)
        assert orchestrator.estimated_output == "150"

        await orchestrator.request_quote("SOL", "USDC", "2", 50)
        assert orchestrator.estimated_output == "300"

    @pytest.mark.asyncio
    async def test_quote_failure_returns_to_idle(self, orchestrator, quote_service):
        quote_service.error = InsufficientLiquidityError()

        with pytest.raises(InsufficientLiquidityError):
            await orchestrator.request_quote("SOL", "USDC", "1", 50)

        history = states(orchestrator.history)
        assert history[-2:] == [SwapState.FAILED, SwapState.IDLE]
        assert orchestrator.history[-2].kind == ErrorKind.INSUFFICIENT_LIQUIDITY
        assert orchestrator.quote is None

    @pytest.mark.asyncio
    async def test_superseded_resolver_failure_keeps_newer_quote(
        self, gated_resolver, quote_service, clock, builder, engine, payer
    ):
        orchestrator = SwapOrchestrator(
            QuoteNegotiator(gated_resolver, quote_service, clock=clock, ttl_seconds=5.0),
            builder,
            engine,
            payer=payer,
        )
        first = asyncio.create_task(orchestrator.request_quote("SLOW", "USDC", "1", 50))
        await _until(lambda: gated_resolver.waiting == 1)
        gate = quote_service.gate_next()
        second = asyncio.create_task(orchestrator.request_quote("SOL", "USDC", "1", 50))
        await _until(lambda: len(quote_service.calls) == 1)

        gated_resolver.gate.set()
        with pytest.raises(QuoteSupersededError):
            await first
        assert orchestrator.state == SwapState.QUOTE_PENDING

        gate.set()
        quote = await second

        assert orchestrator.state == SwapState.QUOTE_READY
        assert orchestrator.quote is quote
        assert SwapState.FAILED not in states(orchestrator.history)

    @pytest.mark.asyncio
    async def test_refresh_quote(self, orchestrator, quote_service):
        first = await orchestrator.request_quote("SOL", "USDC", "1", 50)

        refreshed = await orchestrator.refresh_quote()

        assert refreshed.id != first.id
        assert len(quote_service.calls) == 2
        assert orchestrator.quote is refreshed

    @pytest.mark.asyncio
    async def test_refresh_without_request(self, orchestrator):
        with pytest.raises(InvalidInputError):
            await orchestrator.refresh_quote()


# =============================================================================
# Concurrency
# =============================================================================

class TestConcurrency:
    """Single flight, display-only quotes during a swap, and cancellation."""

    @pytest.mark.asyncio
    async def test_single_flight(self, orchestrator, signer):
        signer.gate = asyncio.Event()
        seen = []

        async for status in orchestrator.execute_swap("SOL", "USDC", "1", 50):
            seen.append(status.state)
            if status.state == SwapState.AWAITING_SIGNATURE:
                with pytest.raises(SwapInProgressError):
                    orchestrator.execute_swap("SOL", "USDC", "1", 50)
                signer.gate.set()

        assert seen[-1] == SwapState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_quote_during_swap_only_updates_display(self, orchestrator, signer, signature):
        signer.gate = asyncio.Event()
        seen = []

        async for status in orchestrator.execute_swap("SOL", "USDC", "1", 50):
            seen.append(status)
            if status.state == SwapState.AWAITING_SIGNATURE:
                display = await orchestrator.request_quote("SOL", "USDC", "2", 50)
                assert orchestrator.state == SwapState.AWAITING_SIGNATURE
                assert orchestrator.quote is display
                assert orchestrator.estimated_output == "300"
                signer.gate.set()

        assert seen[-1].state == SwapState.SUCCEEDED
        assert seen[-1].signature == signature
        assert seen[-1].quote.in_amount == 1_000_000_000
        assert orchestrator.quote is display

    @pytest.mark.asyncio
    async def test_abandoning_before_signing_cancels(self, orchestrator, signer, ledger):
        signer.gate = asyncio.Event()
        stream = orchestrator.execute_swap("SOL", "USDC", "1", 50)

        async for status in stream:
            if status.state == SwapState.AWAITING_SIGNATURE:
                break
        await stream.aclose()

        assert orchestrator.state == SwapState.IDLE
        assert "cancelled" in orchestrator.status.message
        assert not orchestrator.swap_active
        assert ledger.sent_payloads == []

        # A new swap may start afterwards
        signer.gate = None
        final = await orchestrator.swap("SOL", "USDC", "1", 50)
        assert final.state == SwapState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_abandoning_after_signing_runs_to_completion(self, orchestrator, ledger):
        ledger.status_script = [TransactionStatus.PENDING, TransactionStatus.PENDING, TransactionStatus.FINALIZED]
        stream = orchestrator.execute_swap("SOL", "USDC", "1", 50)

        async for status in stream:
            if status.state == SwapState.BROADCASTING:
                break
        await stream.aclose()

        await _until(lambda: orchestrator.state == SwapState.SUCCEEDED)
        assert len(ledger.sent_payloads) == 1
