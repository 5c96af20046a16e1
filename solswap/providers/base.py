from abc import ABC, abstractmethod
from typing import Any, Dict

from ..core.swap.models import (
    BuildResponse,
    QuoteResponse,
    SignatureStatus,
    SignedTransaction,
    SwapInstructions,
    Token,
    UnsignedTransaction,
)


class Provider(ABC):
    """Base provider interface"""

    name: str
    timeout_s: float = 10

    @abstractmethod
    async def ready(self) -> bool:
        """Check if provider is ready to serve requests"""
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Return provider health status"""
        pass


class TokenResolver(ABC):
    """Token metadata lookup. Raises UnresolvedTokenError for unknown ids."""

    @abstractmethod
    async def resolve(self, token_id: str) -> Token:
        pass


class QuoteService(ABC):
    """Swap-aggregator price discovery"""

    @abstractmethod
    async def quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> QuoteResponse:
        """Raises InsufficientLiquidityError when no route exists"""
        pass


class TransactionBuildService(ABC):
    """Turns an accepted route into a transaction for a payer"""

    @abstractmethod
    async def build(self, route: Dict[str, Any], payer: str) -> BuildResponse:
        pass

    @abstractmethod
    async def instructions(self, route: Dict[str, Any], payer: str, quote_id: str) -> SwapInstructions:
        pass


class WalletSigner(ABC):
    """Signing capability; may suspend while the user approves."""

    @abstractmethod
    async def sign(self, transaction: UnsignedTransaction) -> SignedTransaction:
        """Raises SignatureDeclinedError when the user (or wallet) declines"""
        pass


class LedgerRpc(ABC):
    """Network endpoint used to broadcast and confirm transactions"""

    @abstractmethod
    async def send_transaction(self, payload: str) -> str:
        """
        Broadcast a signed base64 transaction and return its signature.

        Raises TransientBroadcastError for retryable failures and
        LedgerRejectedError when the network refuses the transaction.
        """
        pass

    @abstractmethod
    async def get_signature_status(self, signature: str) -> SignatureStatus:
        pass

    @abstractmethod
    async def get_block_height(self) -> int:
        pass
