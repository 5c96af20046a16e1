"""
Fakes for the swap pipeline's collaborators.

Every fake records its calls so tests can assert what did (and did not)
reach the network.
"""

import asyncio
from typing import Any, Dict, List, Optional, Union

import pytest
from solders.keypair import Keypair

from solswap.core.recovery.errors import SignatureDeclinedError, UnresolvedTokenError
from solswap.core.recovery.strategies import RetryConfig
from solswap.core.swap.builder import TransactionBuilder
from solswap.core.swap.models import (
    BuildResponse,
    Instruction,
    QuoteResponse,
    SignatureStatus,
    SignedTransaction,
    SwapInstructions,
    TransactionStatus,
    UnsignedTransaction,
)
from solswap.core.swap.orchestrator import SwapOrchestrator
from solswap.core.swap.quotes import QuoteNegotiator
from solswap.core.swap.submission import SubmissionEngine
from solswap.providers.base import LedgerRpc, QuoteService, TransactionBuildService, WalletSigner
from solswap.providers.tokens import InMemoryTokenResolver

PAYER = str(Keypair.from_seed(bytes([1] * 32)).pubkey())
SIGNATURE = "5VERv8NMvzbJMEkV8xnrLkEaWRtSz9CosKDYjCJjBRnbJLgp8uirBgmQpjKhoR4tjF3ZpRzrFmBV6UjKdiSZkQUW"


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Stands in for asyncio.sleep; records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeQuoteService(QuoteService):
    """Quotes 1 input unit -> ``rate`` output units; optional per-call gates."""

    def __init__(self, rate: int = 150, ttl_seconds: Optional[float] = None):
        self.rate = rate
        self.ttl_seconds = ttl_seconds
        self.error: Optional[Exception] = None
        self.calls: List[Dict[str, Any]] = []
        self.gates: List[asyncio.Event] = []

    def gate_next(self) -> asyncio.Event:
        event = asyncio.Event()
        self.gates.append(event)
        return event

    async def quote(self, input_mint, output_mint, amount, slippage_bps) -> QuoteResponse:
        index = len(self.calls)
        self.calls.append({
            "input_mint": input_mint,
            "output_mint": output_mint,
            "amount": amount,
            "slippage_bps": slippage_bps,
        })
        if index < len(self.gates):
            await self.gates[index].wait()
        if self.error is not None:
            raise self.error
        out_amount = amount * self.rate // 1000
        return QuoteResponse(
            in_amount=amount,
            out_amount=out_amount,
            other_amount_threshold=out_amount * (10_000 - slippage_bps) // 10_000,
            route={"inAmount": str(amount), "outAmount": str(out_amount), "routePlan": [{"call": index}]},
            context_slot=1000 + index,
            ttl_seconds=self.ttl_seconds,
        )


class FakeBuildService(TransactionBuildService):
    def __init__(self, expiry_height: int = 500):
        self.expiry_height = expiry_height
        self.payload = "dW5zaWduZWQ="
        self.error: Optional[Exception] = None
        self.calls: List[Dict[str, Any]] = []

    async def build(self, route, payer) -> BuildResponse:
        self.calls.append({"route": route, "payer": payer})
        if self.error is not None:
            raise self.error
        return BuildResponse(payload=self.payload, last_valid_block_height=self.expiry_height)

    async def instructions(self, route, payer, quote_id) -> SwapInstructions:
        self.calls.append({"route": route, "payer": payer, "instructions": True})
        return SwapInstructions(
            quote_id=quote_id,
            swap_instruction=Instruction(program_id="JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4", accounts=[], data=""),
        )


class FakeSigner(WalletSigner):
    def __init__(self, signature: Optional[str] = SIGNATURE):
        self.signature = signature
        self.payload: Optional[str] = None
        self.decline = False
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.calls: List[UnsignedTransaction] = []

    async def sign(self, transaction: UnsignedTransaction) -> SignedTransaction:
        self.calls.append(transaction)
        if self.gate is not None:
            await self.gate.wait()
        if self.decline:
            raise SignatureDeclinedError()
        if self.error is not None:
            raise self.error
        return SignedTransaction(
            transaction_id=transaction.id,
            payload=self.payload or f"signed:{transaction.payload}",
            signature=self.signature,
        )


class GatedResolver(InMemoryTokenResolver):
    """Holds lookups of ``SLOW`` until ``gate`` is set, then fails them."""

    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()
        self.waiting = 0

    async def resolve(self, token_id: str):
        if token_id == "SLOW":
            self.waiting += 1
            await self.gate.wait()
            raise UnresolvedTokenError(token_id)
        return await super().resolve(token_id)


class FakeLedger(LedgerRpc):
    """
    Scripted ledger.

    ``send_script`` entries are consumed per send: an exception is raised, a
    string is returned as the signature. Once exhausted, sends return
    ``signature``. Status and height scripts repeat their last entry.
    """

    def __init__(self, signature: str = SIGNATURE):
        self.signature = signature
        self.send_script: List[Union[Exception, str]] = []
        self.status_script: List[Union[Exception, TransactionStatus]] = [TransactionStatus.FINALIZED]
        self.height_script: List[Union[Exception, int]] = [100]
        self.sent_payloads: List[str] = []
        self.status_calls = 0
        self.height_calls = 0

    async def send_transaction(self, payload: str) -> str:
        self.sent_payloads.append(payload)
        if self.send_script:
            item = self.send_script.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return self.signature

    def _next(self, script, index):
        item = script[min(index, len(script) - 1)]
        if isinstance(item, Exception):
            raise item
        return item

    async def get_signature_status(self, signature: str) -> SignatureStatus:
        index = self.status_calls
        self.status_calls += 1
        status = self._next(self.status_script, index)
        return SignatureStatus(
            signature=signature,
            status=status,
            slot=4242 if status != TransactionStatus.PENDING else None,
            error={"InstructionError": [2, {"Custom": 6001}]} if status == TransactionStatus.REJECTED else None,
        )

    async def get_block_height(self) -> int:
        index = self.height_calls
        self.height_calls += 1
        return self._next(self.height_script, index)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def resolver() -> InMemoryTokenResolver:
    return InMemoryTokenResolver()


@pytest.fixture
def gated_resolver() -> GatedResolver:
    return GatedResolver()


@pytest.fixture
def quote_service() -> FakeQuoteService:
    return FakeQuoteService()


@pytest.fixture
def build_service() -> FakeBuildService:
    return FakeBuildService()


@pytest.fixture
def signer() -> FakeSigner:
    return FakeSigner()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def negotiator(resolver, quote_service, clock) -> QuoteNegotiator:
    return QuoteNegotiator(resolver, quote_service, clock=clock, ttl_seconds=5.0, debounce_seconds=0.0)


@pytest.fixture
def builder(build_service, clock) -> TransactionBuilder:
    return TransactionBuilder(build_service, clock=clock)


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(max_retries=3, initial_delay_seconds=1.0, max_delay_seconds=8.0)


@pytest.fixture
def engine(signer, ledger, retry_config, sleeps) -> SubmissionEngine:
    return SubmissionEngine(
        signer,
        ledger,
        retry_config=retry_config,
        sleep=sleeps,
        poll_interval_seconds=1.0,
        max_poll_interval_seconds=4.0,
        max_consecutive_poll_errors=3,
        explorer_url=lambda sig: f"https://explorer.solana.com/tx/{sig}",
    )


@pytest.fixture
def orchestrator(negotiator, builder, engine) -> SwapOrchestrator:
    return SwapOrchestrator(negotiator, builder, engine, payer=PAYER)


@pytest.fixture
def unsigned_tx() -> UnsignedTransaction:
    return UnsignedTransaction(
        quote_id="quote-1",
        payload="dW5zaWduZWQ=",
        expiry_height=200,
        payer=PAYER,
    )


@pytest.fixture
def payer() -> str:
    return PAYER


@pytest.fixture
def signature() -> str:
    return SIGNATURE
