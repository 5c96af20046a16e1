from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field
from typing import Any, Dict, Optional

from ..config import settings
from ..core.recovery.errors import ErrorKind, SwapError
from ..core.swap.quotes import MAX_SLIPPAGE_BPS, QuoteNegotiator
from ..providers.base import QuoteService, TokenResolver
from ..providers.jupiter import get_jupiter_swap_provider, get_jupiter_token_provider
from ..providers.tokens import InMemoryTokenResolver


router = APIRouter()

# HTTP status per error kind
_STATUS_BY_KIND = {
    ErrorKind.INVALID_AMOUNT: 400,
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.UNRESOLVED_TOKEN: 404,
    ErrorKind.INSUFFICIENT_LIQUIDITY: 422,
    ErrorKind.NETWORK_ERROR: 502,
}


def get_token_resolver() -> TokenResolver:
    return InMemoryTokenResolver(fallback=get_jupiter_token_provider())


def get_quote_service() -> QuoteService:
    return get_jupiter_swap_provider()


def _http_error(error: SwapError) -> HTTPException:
    return HTTPException(
        status_code=_STATUS_BY_KIND.get(error.context.kind, 500),
        detail={
            "kind": error.context.kind.value,
            "message": error.message,
            "suggested_action": error.context.suggested_action,
        },
    )


class SwapQuoteRequest(BaseModel):
    input_token: str = Field(description="Mint address or symbol of the token sold")
    output_token: str = Field(description="Mint address or symbol of the token bought")
    amount: str = Field(description="Human-readable decimal amount of the input token")
    slippage_bps: Optional[int] = Field(
        default=None, ge=0, le=MAX_SLIPPAGE_BPS, description="Allowed slippage in basis points"
    )


class SwapQuoteResponse(BaseModel):
    quote_id: str
    input_mint: str
    output_mint: str
    input_symbol: str
    output_symbol: str
    in_amount: str
    out_amount: str
    min_out_amount: str
    in_amount_atomic: str
    out_amount_atomic: str
    rate: Optional[str] = None
    price_impact_pct: str
    slippage_bps: int
    context_slot: int
    ttl_seconds: float


class TokenResponse(BaseModel):
    address: str
    symbol: str
    name: str
    decimals: int
    price: Optional[str] = None
    logo_uri: Optional[str] = None
    tags: list = []


@router.post("/swap/quote")
async def post_swap_quote(req: SwapQuoteRequest) -> SwapQuoteResponse:
    negotiator = QuoteNegotiator(get_token_resolver(), get_quote_service())
    try:
        quote = await negotiator.request_quote(
            req.input_token,
            req.output_token,
            req.amount,
            req.slippage_bps if req.slippage_bps is not None else settings.default_slippage_bps,
        )
    except SwapError as e:
        raise _http_error(e)

    rate = quote.rate
    return SwapQuoteResponse(
        quote_id=quote.id,
        input_mint=quote.input_token.address,
        output_mint=quote.output_token.address,
        input_symbol=quote.input_token.symbol,
        output_symbol=quote.output_token.symbol,
        in_amount=quote.in_human,
        out_amount=quote.out_human,
        min_out_amount=quote.min_out_human,
        in_amount_atomic=str(quote.in_amount),
        out_amount_atomic=str(quote.out_amount),
        rate=str(rate) if rate is not None else None,
        price_impact_pct=str(quote.price_impact_pct),
        slippage_bps=quote.slippage_bps,
        context_slot=quote.context_slot,
        ttl_seconds=quote.ttl_seconds,
    )


@router.get("/tokens/{mint}")
async def get_token(mint: str) -> TokenResponse:
    try:
        token = await get_token_resolver().resolve(mint)
    except SwapError as e:
        raise _http_error(e)
    data: Dict[str, Any] = token.to_dict()
    return TokenResponse(**data)
