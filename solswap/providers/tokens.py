"""In-memory token resolver for well-known Solana mints."""

from __future__ import annotations

from typing import Dict, Iterable, Optional

from ..core.recovery.errors import UnresolvedTokenError
from ..core.swap.models import Token
from .base import TokenResolver

# Well-known token mints
NATIVE_SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"

WELL_KNOWN_TOKENS = (
    Token(address=NATIVE_SOL_MINT, symbol="SOL", name="Wrapped SOL", decimals=9),
    Token(address=USDC_MINT, symbol="USDC", name="USD Coin", decimals=6),
    Token(address=USDT_MINT, symbol="USDT", name="USDT", decimals=6),
)


class InMemoryTokenResolver(TokenResolver):
    """
    Resolves tokens from a fixed table, by mint address or symbol
    (case-insensitive). Optionally delegates misses to another resolver.
    """

    def __init__(
        self,
        tokens: Iterable[Token] = WELL_KNOWN_TOKENS,
        fallback: Optional[TokenResolver] = None,
    ) -> None:
        self._by_address: Dict[str, Token] = {}
        self._by_symbol: Dict[str, Token] = {}
        self._fallback = fallback
        for token in tokens:
            self.add(token)

    def add(self, token: Token) -> None:
        self._by_address[token.address] = token
        self._by_symbol.setdefault(token.symbol.lower(), token)

    async def resolve(self, token_id: str) -> Token:
        key = (token_id or "").strip()
        token = self._by_address.get(key) or self._by_symbol.get(key.lower())
        if token is not None:
            return token
        if self._fallback is not None:
            return await self._fallback.resolve(key)
        raise UnresolvedTokenError(token_id)


__all__ = [
    "InMemoryTokenResolver",
    "NATIVE_SOL_MINT",
    "USDC_MINT",
    "USDT_MINT",
    "WELL_KNOWN_TOKENS",
]
