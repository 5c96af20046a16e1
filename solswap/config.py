from pathlib import Path
from typing import Any, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]

PUBLIC_SOLANA_RPC_URL = "https://api.mainnet-beta.solana.com"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Server Settings
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8000, description="Server port")
    log_level: str = Field(default="INFO", description="Logging level")

    # HTTP
    request_timeout_seconds: float = Field(default=15.0, description="Timeout for outbound HTTP calls")

    # Jupiter
    jupiter_swap_base_url: str = Field(
        default="https://api.jup.ag/swap/v1",
        description="Base URL for the Jupiter quote/swap API",
    )
    jupiter_tokens_base_url: str = Field(
        default="https://api.jup.ag/tokens/v1",
        description="Base URL for the Jupiter token metadata API",
    )
    jupiter_price_url: str = Field(
        default="https://api.jup.ag/price/v2",
        description="Jupiter price API endpoint",
    )
    token_cache_ttl_seconds: int = Field(
        default=600,
        description="TTL for resolved token metadata (default: 10 minutes)",
    )
    token_cache_max_size: int = Field(default=1000, description="Maximum cached tokens")

    # Solana RPC
    solana_rpc_url: str = Field(default="", description="Solana JSON-RPC endpoint")
    alchemy_api_key: str = Field(default="", description="Alchemy API key (Solana RPC fallback)")
    solana_commitment: str = Field(
        default="confirmed",
        description="Commitment level treated as finalized when confirming swaps",
    )
    explorer_base_url: str = Field(
        default="https://explorer.solana.com/tx",
        description="Block explorer URL prefix for transaction signatures",
    )
    explorer_cluster: str = Field(default="mainnet-beta", description="Explorer cluster query parameter")

    # Quotes
    default_slippage_bps: int = Field(default=50, ge=0, le=10_000, description="Default slippage in basis points")
    quote_ttl_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Seconds a quote stays valid when the service does not say otherwise",
    )
    quote_debounce_seconds: float = Field(
        default=0.0,
        ge=0,
        description="Delay before a quote request hits the network; superseded requests skip the call",
    )

    # Broadcast retry
    broadcast_max_retries: int = Field(
        default=3,
        ge=0,
        description="Broadcast retries allowed after the first send",
    )
    broadcast_base_delay_seconds: float = Field(default=1.0, ge=0, description="Initial broadcast backoff delay")
    broadcast_max_delay_seconds: float = Field(default=8.0, ge=0, description="Maximum broadcast backoff delay")

    # Confirmation polling
    confirm_poll_interval_seconds: float = Field(default=1.0, gt=0, description="Initial confirmation poll interval")
    confirm_max_poll_interval_seconds: float = Field(default=5.0, gt=0, description="Poll interval cap")
    confirm_max_consecutive_errors: int = Field(
        default=10,
        ge=1,
        description="Consecutive polling errors tolerated before reporting an unknown status",
    )

    def model_post_init(self, __context: Any) -> None:
        super().model_post_init(__context)
        if self.confirm_max_poll_interval_seconds < self.confirm_poll_interval_seconds:
            object.__setattr__(
                self,
                "confirm_max_poll_interval_seconds",
                self.confirm_poll_interval_seconds,
            )

    @property
    def has_alchemy_key(self) -> bool:
        return bool(self.alchemy_api_key)

    def resolve_rpc_url(self, override: Optional[str] = None) -> str:
        """
        RPC URL resolution order:
        1. Explicit override
        2. SOLANA_RPC_URL
        3. Alchemy Solana URL (built from ALCHEMY_API_KEY)
        4. Public Solana RPC (rate limited)
        """
        if override:
            return override
        if self.solana_rpc_url:
            return self.solana_rpc_url
        if self.has_alchemy_key:
            return f"https://solana-mainnet.g.alchemy.com/v2/{self.alchemy_api_key}"
        return PUBLIC_SOLANA_RPC_URL

    def explorer_url(self, signature: str) -> str:
        return f"{self.explorer_base_url.rstrip('/')}/{signature}?cluster={self.explorer_cluster}"


# Global settings instance
settings = Settings()
