"""
Jupiter providers for Solana.

- Token metadata (``/tokens/v1``), cached in memory with a TTL
- Swap quotes, transaction building and instruction sets (``/swap/v1``)

No API key required.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import httpx

from ..cache import TTLCache
from ..config import settings
from ..core.recovery.errors import (
    BuildError,
    InsufficientLiquidityError,
    InvalidInputError,
    NetworkError,
    UnresolvedTokenError,
)
from ..core.swap.models import (
    BuildResponse,
    Instruction,
    QuoteResponse,
    SwapInstructions,
    Token,
)
from .base import Provider, QuoteService, TokenResolver, TransactionBuildService

logger = logging.getLogger(__name__)

# errorCode values Jupiter uses when no route exists
NO_ROUTE_ERROR_CODES = frozenset({
    "COULD_NOT_FIND_ANY_ROUTE",
    "NO_ROUTES_FOUND",
    "TOKEN_NOT_TRADABLE",
    "ROUTE_PLAN_DOES_NOT_CONSUME_ALL_THE_AMOUNT",
})


def _error_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {"error": response.text}
    return data if isinstance(data, dict) else {"error": str(data)}


class _JupiterHttp:
    """Shared lazily-created AsyncClient handling."""

    timeout_s: float = 15

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class JupiterTokenProvider(_JupiterHttp, Provider, TokenResolver):
    """
    Jupiter token metadata and price provider.

    Resolved tokens are cached; a cache miss costs exactly one request to the
    token endpoint. Prices are fetched separately on demand.
    """

    name = "jupiter-tokens"

    def __init__(
        self,
        base_url: Optional[str] = None,
        price_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        cache: Optional[TTLCache] = None,
    ) -> None:
        super().__init__(client)
        self.base_url = (base_url or settings.jupiter_tokens_base_url).rstrip("/")
        self.price_url = price_url or settings.jupiter_price_url
        self.timeout_s = settings.request_timeout_seconds
        self._cache = cache or TTLCache(
            default_ttl=settings.token_cache_ttl_seconds,
            max_size=settings.token_cache_max_size,
        )

    async def ready(self) -> bool:
        return True

    async def health_check(self) -> Dict[str, Any]:
        try:
            client = await self._get_client()
            resp = await client.get(f"{self.base_url}/mints/tradable", timeout=5)
            resp.raise_for_status()
            return {
                "status": "healthy",
                "latency_ms": int(resp.elapsed.total_seconds() * 1000),
                "cached_tokens": self._cache.size(),
            }
        except httpx.HTTPError as e:
            return {"status": "error", "reason": str(e)}

    async def resolve(self, token_id: str) -> Token:
        mint = (token_id or "").strip()
        if not mint:
            raise UnresolvedTokenError(token_id, "Token id is empty")

        cached = await self._cache.get(mint)
        if cached is not None:
            return cached

        client = await self._get_client()
        try:
            response = await client.get(
                f"{self.base_url}/token/{mint}",
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"Token lookup failed: {e}", provider=self.name) from e

        if response.status_code in (400, 404):
            raise UnresolvedTokenError(mint)
        if response.status_code >= 400:
            raise NetworkError(f"Token lookup HTTP error: {response.status_code}", provider=self.name)

        try:
            data = response.json()
        except ValueError as e:
            raise NetworkError("Token lookup returned invalid JSON", provider=self.name) from e

        if not isinstance(data, dict) or "decimals" not in data:
            logger.info(f"Token not found or malformed metadata for {mint}")
            raise UnresolvedTokenError(mint)

        try:
            token = Token.from_api({**data, "address": data.get("address") or mint})
        except (TypeError, ValueError, InvalidOperation) as e:
            raise UnresolvedTokenError(mint, f"Malformed metadata for {mint}: {e}") from e

        await self._cache.set(mint, token)
        return token

    async def get_price(self, mint: str) -> Optional[Decimal]:
        """Reference USD price, or None when the price API has none."""
        client = await self._get_client()
        try:
            response = await client.get(self.price_url, params={"ids": mint})
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Price lookup failed for {mint}: {e}")
            return None

        price = ((data.get("data") or {}).get(mint) or {}).get("price")
        if price is None:
            return None
        try:
            return Decimal(str(price))
        except InvalidOperation:
            return None

    async def list_tradable_mints(self) -> List[str]:
        client = await self._get_client()
        try:
            response = await client.get(f"{self.base_url}/mints/tradable")
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise NetworkError(f"Failed to fetch tradable tokens: {e}", provider=self.name) from e

        if not isinstance(data, list):
            raise NetworkError("Unexpected response format from Jupiter API", provider=self.name)
        return [str(mint) for mint in data]

    def get_cached_token_count(self) -> int:
        return self._cache.size()


class JupiterSwapProvider(_JupiterHttp, Provider, QuoteService, TransactionBuildService):
    """
    Jupiter swap provider: quotes, swap transactions and swap instructions.

    Usage:
        provider = JupiterSwapProvider()

        response = await provider.quote(
            input_mint=NATIVE_SOL_MINT,
            output_mint=USDC_MINT,
            amount=1_000_000_000,  # 1 SOL in lamports
            slippage_bps=50,
        )

        built = await provider.build(response.route, payer="...")
    """

    name = "jupiter"

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        priority_level: str = "medium",  # "low", "medium", "high", "veryHigh"
        max_priority_fee_lamports: int = 10_000_000,  # 0.01 SOL max
    ) -> None:
        super().__init__(client)
        self.base_url = (base_url or settings.jupiter_swap_base_url).rstrip("/")
        self.timeout_s = settings.request_timeout_seconds
        self.priority_level = priority_level
        self.max_priority_fee_lamports = max_priority_fee_lamports

    async def ready(self) -> bool:
        return True

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "configured", "base_url": self.base_url}

    async def quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int,
    ) -> QuoteResponse:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": slippage_bps,
            "swapMode": "ExactIn",
        }

        client = await self._get_client()
        try:
            response = await client.get(f"{self.base_url}/quote", params=params)
        except httpx.HTTPError as e:
            raise NetworkError(f"Quote request failed: {e}", provider=self.name) from e

        if response.status_code >= 400:
            body = _error_body(response)
            error_code = body.get("errorCode")
            message = str(body.get("error") or f"HTTP error: {response.status_code}")
            if error_code in NO_ROUTE_ERROR_CODES:
                raise InsufficientLiquidityError(message, error_code=error_code)
            if response.status_code == 429 or response.status_code >= 500:
                raise NetworkError(f"Jupiter quote error: {message}", provider=self.name)
            raise InvalidInputError(f"Jupiter rejected quote request: {message}")

        try:
            data = response.json()
        except ValueError as e:
            raise NetworkError("Quote response was not valid JSON", provider=self.name) from e

        if "error" in data:
            error_code = data.get("errorCode")
            if error_code in NO_ROUTE_ERROR_CODES or not data.get("routePlan"):
                raise InsufficientLiquidityError(str(data["error"]), error_code=error_code)
            raise NetworkError(f"Jupiter quote error: {data['error']}", provider=self.name)

        return self.parse_quote(data)

    def parse_quote(self, data: Dict[str, Any]) -> QuoteResponse:
        if not data.get("routePlan"):
            raise InsufficientLiquidityError("Quote response contains no route plan")
        try:
            out_amount = int(data["outAmount"])
            return QuoteResponse(
                in_amount=int(data["inAmount"]),
                out_amount=out_amount,
                other_amount_threshold=int(data.get("otherAmountThreshold", out_amount)),
                route=data,
                context_slot=int(data.get("contextSlot") or 0),
                price_impact_pct=Decimal(str(data.get("priceImpactPct") or "0")),
                swap_mode=data.get("swapMode", "ExactIn"),
                ttl_seconds=float(data["ttl"]) if data.get("ttl") is not None else None,
            )
        except (KeyError, TypeError, ValueError, InvalidOperation) as e:
            raise NetworkError(f"Malformed quote response: {e}", provider=self.name) from e

    def _swap_payload(self, route: Dict[str, Any], payer: str) -> Dict[str, Any]:
        return {
            "quoteResponse": route,
            "userPublicKey": payer,
            "wrapAndUnwrapSol": True,
            "useSharedAccounts": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": {
                "priorityLevelWithMaxLamports": {
                    "maxLamports": self.max_priority_fee_lamports,
                    "priorityLevel": self.priority_level,
                }
            },
        }

    async def _post_build(self, path: str, route: Dict[str, Any], payer: str) -> Dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.base_url}/{path}",
                json=self._swap_payload(route, payer),
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"Swap build request failed: {e}", provider=self.name) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise NetworkError(f"Swap build HTTP error: {response.status_code}", provider=self.name)
        if response.status_code >= 400:
            body = _error_body(response)
            raise BuildError(f"Jupiter swap error: {body.get('error') or response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise BuildError("Swap response was not valid JSON") from e

        if not isinstance(data, dict):
            raise BuildError("Unexpected swap response format")
        if "error" in data:
            raise BuildError(f"Jupiter swap error: {data['error']}")
        return data

    async def build(self, route: Dict[str, Any], payer: str) -> BuildResponse:
        data = await self._post_build("swap", route, payer)

        if data.get("simulationError"):
            raise BuildError(f"Swap simulation failed: {data['simulationError']}")

        payload = data.get("swapTransaction")
        if not payload:
            raise BuildError("Swap response missing swapTransaction")

        try:
            return BuildResponse(
                payload=payload,
                last_valid_block_height=int(data.get("lastValidBlockHeight") or 0),
                priority_fee_lamports=int(data.get("prioritizationFeeLamports") or 0),
                compute_unit_limit=int(data["computeUnitLimit"]) if data.get("computeUnitLimit") else None,
            )
        except (TypeError, ValueError) as e:
            raise BuildError(f"Malformed swap response: {e}") from e

    async def instructions(self, route: Dict[str, Any], payer: str, quote_id: str) -> SwapInstructions:
        data = await self._post_build("swap-instructions", route, payer)

        try:
            cleanup = data.get("cleanupInstruction")
            return SwapInstructions(
                quote_id=quote_id,
                swap_instruction=Instruction.from_api(data["swapInstruction"]),
                compute_budget_instructions=[
                    Instruction.from_api(ix) for ix in data.get("computeBudgetInstructions") or []
                ],
                setup_instructions=[
                    Instruction.from_api(ix) for ix in data.get("setupInstructions") or []
                ],
                cleanup_instruction=Instruction.from_api(cleanup) if cleanup else None,
                address_lookup_table_addresses=list(data.get("addressLookupTableAddresses") or []),
            )
        except (KeyError, TypeError) as e:
            raise BuildError(f"Malformed swap-instructions response: {e}") from e


# Singleton instances
_jupiter_token_provider: Optional[JupiterTokenProvider] = None
_jupiter_swap_provider: Optional[JupiterSwapProvider] = None


def get_jupiter_token_provider() -> JupiterTokenProvider:
    """Get the singleton Jupiter token provider."""
    global _jupiter_token_provider
    if _jupiter_token_provider is None:
        _jupiter_token_provider = JupiterTokenProvider()
    return _jupiter_token_provider


def get_jupiter_swap_provider() -> JupiterSwapProvider:
    """Get the singleton Jupiter swap provider."""
    global _jupiter_swap_provider
    if _jupiter_swap_provider is None:
        _jupiter_swap_provider = JupiterSwapProvider()
    return _jupiter_swap_provider


__all__ = [
    "JupiterTokenProvider",
    "JupiterSwapProvider",
    "NO_ROUTE_ERROR_CODES",
    "get_jupiter_token_provider",
    "get_jupiter_swap_provider",
]
