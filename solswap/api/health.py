from fastapi import APIRouter
from typing import Dict, Any

from ..providers.jupiter import get_jupiter_swap_provider, get_jupiter_token_provider
from ..providers.solana_rpc import get_solana_rpc

router = APIRouter()


@router.get("/healthz")
async def health_check() -> Dict[str, Any]:
    """Health check endpoint that verifies provider status"""

    providers = {
        "jupiter_tokens": get_jupiter_token_provider(),
        "jupiter_swap": get_jupiter_swap_provider(),
        "solana_rpc": get_solana_rpc(),
    }

    provider_status = {}
    for name, provider in providers.items():
        provider_status[name] = await provider.health_check()

    available_providers = sum(
        1 for status in provider_status.values()
        if status["status"] in ("healthy", "configured")
    )

    return {
        "status": "healthy" if available_providers == len(provider_status) else "degraded",
        "providers": provider_status,
        "available_providers": available_providers,
        "total_providers": len(provider_status),
    }
