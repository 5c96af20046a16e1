"""Transaction Builder: accepted Quote + payer -> UnsignedTransaction."""

import logging
import time
from typing import Callable

from ...providers.base import TransactionBuildService
from ..recovery.errors import BuildError, QuoteExpiredError
from .encoding import is_valid_solana_address
from .models import Quote, SwapInstructions, UnsignedTransaction

logger = logging.getLogger(__name__)


class TransactionBuilder:
    """
    Builds unsigned swap transactions for accepted quotes.

    Quotes are checked against their TTL before anything is sent; the quote
    itself is never modified.
    """

    def __init__(self, service: TransactionBuildService, clock: Callable[[], float] = time.monotonic):
        self._service = service
        self._clock = clock

    def ensure_fresh(self, quote: Quote) -> None:
        now = self._clock()
        if quote.is_expired(now):
            raise QuoteExpiredError(quote.id, quote.age(now), quote.ttl_seconds)

    def _validate(self, quote: Quote, payer_address: str) -> None:
        self.ensure_fresh(quote)
        if not payer_address:
            raise BuildError("Payer address is required")
        if not is_valid_solana_address(payer_address):
            raise BuildError(f"Payer address is not a valid Solana public key: {payer_address}")
        if not isinstance(quote.route, dict) or not quote.route:
            raise BuildError(f"Quote {quote.id} carries no route data")

    async def build(self, quote: Quote, payer_address: str) -> UnsignedTransaction:
        """
        Request an unsigned transaction for ``quote``.

        Raises:
            QuoteExpiredError: quote TTL elapsed (no network call is made)
            BuildError: bad payer/route, or the service refused or answered garbage
            NetworkError: transport failure
        """
        self._validate(quote, payer_address)

        response = await self._service.build(quote.route, payer_address)

        if not response.payload:
            raise BuildError("Build service returned an empty transaction")
        if response.last_valid_block_height <= 0:
            raise BuildError(
                f"Build service returned invalid expiry height {response.last_valid_block_height}"
            )

        unsigned = UnsignedTransaction(
            quote_id=quote.id,
            payload=response.payload,
            expiry_height=response.last_valid_block_height,
            payer=payer_address,
            priority_fee_lamports=response.priority_fee_lamports,
            compute_unit_limit=response.compute_unit_limit,
        )
        logger.info(
            f"Built transaction {unsigned.id} for quote {quote.id} "
            f"(expires after height {unsigned.expiry_height})"
        )
        return unsigned

    async def build_instructions(self, quote: Quote, payer_address: str) -> SwapInstructions:
        """Instruction-set form of the swap, for callers composing their own transaction."""
        self._validate(quote, payer_address)
        return await self._service.instructions(quote.route, payer_address, quote.id)


__all__ = ["TransactionBuilder"]
