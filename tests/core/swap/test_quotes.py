"""
Tests for the Quote Negotiator.

Covers validation before any network call, last-call-wins delivery,
debouncing and quote TTL bookkeeping.
"""

import asyncio

import pytest

from solswap.core.recovery.errors import (
    ErrorKind,
    InsufficientLiquidityError,
    InvalidAmountError,
    InvalidInputError,
    NetworkError,
    QuoteSupersededError,
    UnresolvedTokenError,
)
from solswap.core.swap.quotes import QuoteNegotiator
from solswap.providers.tokens import NATIVE_SOL_MINT, USDC_MINT


async def _until(predicate, rounds: int = 20) -> None:
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


# =============================================================================
# Happy path
# =============================================================================

class TestRequestQuote:
    """Tests for successful quote requests."""

    @pytest.mark.asyncio
    async def test_quote_for_symbols(self, negotiator, quote_service, clock):
        quote = await negotiator.request_quote("SOL", "USDC", "1.5", 50)

        assert quote.input_token.address == NATIVE_SOL_MINT
        assert quote.output_token.address == USDC_MINT
        assert quote.in_amount == 1_500_000_000
        assert quote.out_amount == 225_000_000
        assert quote.out_human == "225"
        assert quote.slippage_bps == 50
        assert quote.created_at == clock.now
        assert quote.ttl_seconds == 5.0
        assert quote_service.calls == [{
            "input_mint": NATIVE_SOL_MINT,
            "output_mint": USDC_MINT,
            "amount": 1_500_000_000,
            "slippage_bps": 50,
        }]
        assert negotiator.current is quote

    @pytest.mark.asyncio
    async def test_amount_is_truncated_to_token_precision(self, negotiator, quote_service):
        quote = await negotiator.request_quote("USDC", "SOL", "10.1234569", 50)

        assert quote.in_amount == 10_123_456
        assert quote_service.calls[0]["amount"] == 10_123_456

    @pytest.mark.asyncio
    async def test_service_ttl_overrides_default(self, resolver, quote_service, clock):
        quote_service.ttl_seconds = 2.0
        negotiator = QuoteNegotiator(resolver, quote_service, clock=clock, ttl_seconds=5.0)

        quote = await negotiator.request_quote("SOL", "USDC", "1", 50)

        assert quote.ttl_seconds == 2.0

    @pytest.mark.asyncio
    async def test_route_is_kept_unmodified(self, negotiator):
        quote = await negotiator.request_quote("SOL", "USDC", "1", 50)

        assert quote.route["routePlan"] == [{"call": 0}]
        assert quote.route["inAmount"] == "1000000000"


# =============================================================================
# Validation
# =============================================================================

class TestValidation:
    """Invalid requests fail before reaching the quote service."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", ["0", "-1", "abc", ""])
    async def test_invalid_amount(self, negotiator, quote_service, amount):
        with pytest.raises(InvalidAmountError) as exc_info:
            await negotiator.request_quote("SOL", "USDC", amount, 50)

        assert exc_info.value.context.kind == ErrorKind.INVALID_AMOUNT
        assert quote_service.calls == []

    @pytest.mark.asyncio
    async def test_amount_below_smallest_unit(self, negotiator, quote_service):
        with pytest.raises(InvalidAmountError):
            await negotiator.request_quote("USDC", "SOL", "0.0000001", 50)
        assert quote_service.calls == []

    @pytest.mark.asyncio
    async def test_unresolved_token(self, negotiator, quote_service):
        with pytest.raises(UnresolvedTokenError) as exc_info:
            await negotiator.request_quote("SOL", "NOTATOKEN", "1", 50)

        assert exc_info.value.token_id == "NOTATOKEN"
        assert exc_info.value.context.kind == ErrorKind.UNRESOLVED_TOKEN
        assert quote_service.calls == []

    @pytest.mark.asyncio
    async def test_same_token_rejected(self, negotiator, quote_service):
        with pytest.raises(InvalidInputError):
            await negotiator.request_quote("SOL", NATIVE_SOL_MINT, "1", 50)
        assert quote_service.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("slippage", [-1, 10_001])
    async def test_slippage_out_of_range(self, negotiator, quote_service, slippage):
        with pytest.raises(InvalidInputError) as exc_info:
            await negotiator.request_quote("SOL", "USDC", "1", slippage)

        assert exc_info.value.context.kind == ErrorKind.INVALID_INPUT
        assert quote_service.calls == []


# =============================================================================
# Service errors
# =============================================================================

class TestServiceErrors:
    """Quote service failures are surfaced immediately, without retry."""

    @pytest.mark.asyncio
    async def test_no_route(self, negotiator, quote_service):
        quote_service.error = InsufficientLiquidityError(error_code="COULD_NOT_FIND_ANY_ROUTE")

        with pytest.raises(InsufficientLiquidityError):
            await negotiator.request_quote("SOL", "USDC", "1", 50)

        assert len(quote_service.calls) == 1
        assert negotiator.current is None

    @pytest.mark.asyncio
    async def test_network_error_not_retried(self, negotiator, quote_service):
        quote_service.error = NetworkError("connection reset", provider="jupiter")

        with pytest.raises(NetworkError):
            await negotiator.request_quote("SOL", "USDC", "1", 50)

        assert len(quote_service.calls) == 1


# =============================================================================
# Last call wins
# =============================================================================

class TestLastCallWins:
    """Only the most recent request's result is ever delivered."""

    @pytest.mark.asyncio
    async def test_slow_earlier_result_is_discarded(self, negotiator, quote_service):
        first_gate = quote_service.gate_next()
        first = asyncio.create_task(negotiator.request_quote("SOL", "USDC", "1", 50))
        await _until(lambda: len(quote_service.calls) == 1)

        second = await negotiator.request_quote("SOL", "USDC", "2", 50)
        first_gate.set()

        with pytest.raises(QuoteSupersededError) as exc_info:
            await first

        assert exc_info.value.generation == 1
        assert exc_info.value.latest == 2
        assert negotiator.current is second
        assert second.in_amount == 2_000_000_000

    @pytest.mark.asyncio
    async def test_many_overlapping_requests(self, negotiator, quote_service):
        gates = [quote_service.gate_next() for _ in range(3)]
        tasks = []
        for i, amount in enumerate(["1", "2", "3"]):
            tasks.append(asyncio.create_task(negotiator.request_quote("SOL", "USDC", amount, 50)))
            await _until(lambda: len(quote_service.calls) == i + 1)

        # Resolve out of order: newest first
        for gate in reversed(gates):
            gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert isinstance(results[0], QuoteSupersededError)
        assert isinstance(results[1], QuoteSupersededError)
        assert results[2].in_amount == 3_000_000_000
        assert negotiator.current is results[2]

    @pytest.mark.asyncio
    async def test_error_from_superseded_request_is_discarded(self, negotiator, quote_service):
        first_gate = quote_service.gate_next()
        first = asyncio.create_task(negotiator.request_quote("SOL", "USDC", "1", 50))
        await _until(lambda: len(quote_service.calls) == 1)

        second = await negotiator.request_quote("SOL", "USDC", "2", 50)
        quote_service.error = InsufficientLiquidityError()
        first_gate.set()

        with pytest.raises(QuoteSupersededError):
            await first
        assert negotiator.current is second

    @pytest.mark.asyncio
    async def test_resolver_error_from_superseded_request_is_discarded(self, gated_resolver, quote_service, clock):
        negotiator = QuoteNegotiator(gated_resolver, quote_service, clock=clock, ttl_seconds=5.0)
        first = asyncio.create_task(negotiator.request_quote("SLOW", "USDC", "1", 50))
        await _until(lambda: gated_resolver.waiting == 1)

        second = await negotiator.request_quote("SOL", "USDC", "2", 50)
        gated_resolver.gate.set()

        with pytest.raises(QuoteSupersededError) as exc_info:
            await first
        assert isinstance(exc_info.value.__cause__, UnresolvedTokenError)
        assert negotiator.current is second

    @pytest.mark.asyncio
    async def test_resolver_error_for_latest_request_is_reported(self, gated_resolver, quote_service, clock):
        negotiator = QuoteNegotiator(gated_resolver, quote_service, clock=clock, ttl_seconds=5.0)
        gated_resolver.gate.set()

        with pytest.raises(UnresolvedTokenError):
            await negotiator.request_quote("SLOW", "USDC", "1", 50)
        assert quote_service.calls == []

    @pytest.mark.asyncio
    async def test_debounce_skips_network_for_superseded_call(self, resolver, quote_service, clock, sleeps):
        negotiator = QuoteNegotiator(
            resolver, quote_service, clock=clock, ttl_seconds=5.0, debounce_seconds=1.0, sleep=sleeps
        )

        first = asyncio.create_task(negotiator.request_quote("SOL", "USDC", "1", 50))
        await asyncio.sleep(0)
        second = await negotiator.request_quote("SOL", "USDC", "2", 50)

        with pytest.raises(QuoteSupersededError):
            await first

        assert len(quote_service.calls) == 1
        assert quote_service.calls[0]["amount"] == 2_000_000_000
        assert second.in_amount == 2_000_000_000
        assert sleeps.delays == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_invalidate_discards_in_flight_result(self, negotiator, quote_service):
        gate = quote_service.gate_next()
        pending = asyncio.create_task(negotiator.request_quote("SOL", "USDC", "1", 50))
        await _until(lambda: len(quote_service.calls) == 1)

        negotiator.invalidate()
        gate.set()

        with pytest.raises(QuoteSupersededError):
            await pending
        assert negotiator.current is None


# =============================================================================
# Staleness
# =============================================================================

class TestStaleness:
    """Tests for TTL handling and live quote matching."""

    @pytest.mark.asyncio
    async def test_current_expires(self, negotiator, clock):
        quote = await negotiator.request_quote("SOL", "USDC", "1", 50)

        clock.advance(5.0)
        assert negotiator.current is quote
        clock.advance(0.5)
        assert negotiator.current is None

    @pytest.mark.asyncio
    async def test_live_quote_matches_exact_request(self, negotiator):
        quote = await negotiator.request_quote("SOL", "USDC", "1.5", 50)

        assert negotiator.live_quote("sol", "usdc", "1.5", 50) is quote
        assert negotiator.live_quote(NATIVE_SOL_MINT, USDC_MINT, "1.50", 50) is quote
        assert negotiator.live_quote("SOL", "USDC", "1.6", 50) is None
        assert negotiator.live_quote("SOL", "USDT", "1.5", 50) is None
        assert negotiator.live_quote("SOL", "USDC", "1.5", 100) is None

    @pytest.mark.asyncio
    async def test_new_request_replaces_current(self, negotiator, quote_service):
        await negotiator.request_quote("SOL", "USDC", "1", 50)
        quote_service.error = NetworkError("timeout")

        with pytest.raises(NetworkError):
            await negotiator.request_quote("SOL", "USDC", "2", 50)
        assert negotiator.current is None

    @pytest.mark.asyncio
    async def test_quote_matches_its_triple(self, negotiator):
        quote = await negotiator.request_quote("SOL", "USDC", "2", 50)

        assert quote.matches(NATIVE_SOL_MINT, USDC_MINT, 2_000_000_000)
        assert not quote.matches(NATIVE_SOL_MINT, USDC_MINT, 1_000_000_000)
        assert not quote.matches(USDC_MINT, NATIVE_SOL_MINT, 2_000_000_000)

    @pytest.mark.asyncio
    async def test_quote_to_dict(self, negotiator):
        quote = await negotiator.request_quote("SOL", "USDC", "2", 50)

        data = quote.to_dict()

        assert data["inAmount"] == "2000000000"
        assert data["outAmountHuman"] == "300"
        assert data["minOutAmountHuman"] == "298.5"
        assert "route" not in data
