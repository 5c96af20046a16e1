"""
Quote Negotiator

Turns (input token, output token, human amount) into a priced Quote.

Requests follow last-call-wins: every call takes a generation number and a
result that arrives after a newer call was issued is discarded, surfacing as
QuoteSupersededError. Failures are reported immediately; retrying is the
caller's decision.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from ...config import settings
from ...providers.base import QuoteService, TokenResolver
from ..recovery.errors import (
    InvalidAmountError,
    InvalidInputError,
    QuoteSupersededError,
    SwapError,
)
from .models import Quote, Token
from .units import HumanAmount, parse_amount, to_atomic

logger = logging.getLogger(__name__)

MAX_SLIPPAGE_BPS = 10_000

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


def refers_to(token: Token, token_id: str) -> bool:
    """True when ``token_id`` is the token's mint address or symbol."""
    key = (token_id or "").strip()
    return key == token.address or key.lower() == token.symbol.lower()


class QuoteNegotiator:
    """
    Requests quotes from a QuoteService on behalf of one session.

    Usage:
        negotiator = QuoteNegotiator(resolver, get_jupiter_swap_provider())
        quote = await negotiator.request_quote("SOL", "USDC", "1.5", 50)
    """

    def __init__(
        self,
        resolver: TokenResolver,
        service: QuoteService,
        clock: Clock = time.monotonic,
        ttl_seconds: Optional[float] = None,
        debounce_seconds: Optional[float] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._resolver = resolver
        self._service = service
        self._clock = clock
        self._ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.quote_ttl_seconds
        self._debounce_seconds = (
            debounce_seconds if debounce_seconds is not None else settings.quote_debounce_seconds
        )
        self._sleep = sleep
        self._generation = 0
        self._current: Optional[Quote] = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def current(self) -> Optional[Quote]:
        """Latest delivered quote, or None once invalidated or expired."""
        if self._current is not None and self._current.is_expired(self._clock()):
            return None
        return self._current

    def invalidate(self) -> None:
        """Discard the current quote and any result still in flight."""
        self._generation += 1
        self._current = None

    def live_quote(
        self,
        input_token: str,
        output_token: str,
        human_amount: HumanAmount,
        slippage_bps: int,
    ) -> Optional[Quote]:
        """The current quote if it was issued for exactly this request and is unexpired."""
        quote = self.current
        if quote is None or quote.slippage_bps != slippage_bps:
            return None
        if not (refers_to(quote.input_token, input_token) and refers_to(quote.output_token, output_token)):
            return None
        try:
            if to_atomic(human_amount, quote.input_token.decimals) != quote.in_amount:
                return None
        except InvalidAmountError:
            return None
        return quote

    def _check_latest(self, generation: int) -> None:
        if generation != self._generation:
            raise QuoteSupersededError(generation, self._generation)

    async def request_quote(
        self,
        input_token: str,
        output_token: str,
        human_amount: HumanAmount,
        slippage_bps: Optional[int] = None,
    ) -> Quote:
        """
        Request a quote for selling ``human_amount`` of ``input_token``.

        Raises:
            InvalidAmountError: amount not a positive number of input units
            InvalidInputError: slippage out of range or identical tokens
            UnresolvedTokenError: either token is unknown
            InsufficientLiquidityError: the service found no route
            NetworkError: transport failure
            QuoteSupersededError: a newer request was issued meanwhile
        """
        self._generation += 1
        generation = self._generation
        # Any new request replaces the displayed quote
        self._current = None

        if slippage_bps is None:
            slippage_bps = settings.default_slippage_bps
        if isinstance(slippage_bps, bool) or not isinstance(slippage_bps, int) or not 0 <= slippage_bps <= MAX_SLIPPAGE_BPS:
            raise InvalidInputError(f"Slippage must be 0..{MAX_SLIPPAGE_BPS} bps, got {slippage_bps!r}")

        amount = parse_amount(human_amount)
        if amount.is_zero():
            raise InvalidAmountError("Amount must be greater than zero", value=human_amount)

        try:
            source = await self._resolver.resolve(input_token)
            destination = await self._resolver.resolve(output_token)
        except SwapError as e:
            if generation != self._generation:
                raise QuoteSupersededError(generation, self._generation) from e
            raise
        self._check_latest(generation)

        if source.address == destination.address:
            raise InvalidInputError(f"Cannot swap {source.symbol} for itself")

        in_amount = to_atomic(amount, source.decimals)
        if in_amount <= 0:
            raise InvalidAmountError(
                f"Amount is below the smallest unit of {source.symbol} ({source.decimals} decimals)",
                value=human_amount,
            )

        if self._debounce_seconds > 0:
            await self._sleep(self._debounce_seconds)
            self._check_latest(generation)

        try:
            response = await self._service.quote(
                source.address,
                destination.address,
                in_amount,
                slippage_bps,
            )
        except SwapError as e:
            if generation != self._generation:
                raise QuoteSupersededError(generation, self._generation) from e
            logger.warning(f"Quote {source.symbol}->{destination.symbol} failed: {e.message}")
            raise
        self._check_latest(generation)

        if response.in_amount != in_amount:
            logger.warning(
                f"Quote service answered for {response.in_amount} units, requested {in_amount}"
            )

        quote = Quote(
            input_token=source,
            output_token=destination,
            in_amount=in_amount,
            out_amount=response.out_amount,
            other_amount_threshold=response.other_amount_threshold,
            slippage_bps=slippage_bps,
            route=response.route,
            context_slot=response.context_slot,
            price_impact_pct=response.price_impact_pct,
            swap_mode=response.swap_mode,
            created_at=self._clock(),
            ttl_seconds=response.ttl_seconds or self._ttl_seconds,
        )
        self._current = quote

        logger.info(
            f"Quote {quote.id}: {quote.in_human} {source.symbol} -> "
            f"{quote.out_human} {destination.symbol} (min {quote.min_out_human}, slot {quote.context_slot})"
        )
        return quote


__all__ = ["QuoteNegotiator", "refers_to", "MAX_SLIPPAGE_BPS"]
