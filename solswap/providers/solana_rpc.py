"""
Solana JSON-RPC client.

Broadcasts pre-signed transactions and reports signature status and block
height. Calls are single-shot: retry policy belongs to the submission engine.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from ..config import settings
from ..core.recovery.errors import (
    BroadcastFailedError,
    ErrorKind,
    LedgerRejectedError,
    NetworkError,
    TransactionAlreadyProcessedError,
    TransientBroadcastError,
    classify_error,
)
from ..core.swap.models import SignatureStatus, TransactionStatus
from .base import LedgerRpc, Provider

logger = logging.getLogger(__name__)

# JSON-RPC error codes that mean "try again later"
TRANSIENT_RPC_CODES = frozenset({
    -32005,  # node is behind / unhealthy
    -32004,  # block not available
    -32007,  # slot skipped
    -32014,  # block status not yet available
    -32603,  # internal error
})
# sendTransaction preflight failure
PREFLIGHT_FAILURE_CODE = -32002

COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


@dataclass
class SolanaRpcConfig:
    """Configuration for Solana RPC connection."""
    rpc_url: str
    commitment: str = "confirmed"
    timeout_s: float = 30.0
    skip_preflight: bool = False


class SolanaRpcError(Exception):
    """JSON-RPC level error response."""

    def __init__(self, code: Optional[int], message: str, data: Any = None):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data

    @property
    def transient(self) -> bool:
        if self.code in TRANSIENT_RPC_CODES:
            return True
        return classify_error(Exception(self.message)).recoverable


class SolanaRpcClient(Provider, LedgerRpc):
    """
    Ledger RPC backed by a Solana JSON-RPC endpoint.

    Usage:
        rpc = SolanaRpcClient(SolanaRpcConfig(
            rpc_url="https://api.mainnet-beta.solana.com"
        ))

        signature = await rpc.send_transaction(signed_tx_base64)
        status = await rpc.get_signature_status(signature)
    """

    name = "solana-rpc"

    def __init__(self, config: SolanaRpcConfig, client: Optional[httpx.AsyncClient] = None):
        self._config = config
        self._client = client
        self._owns_client = client is None
        self._request_id = 0

    @property
    def config(self) -> SolanaRpcConfig:
        return self._config

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._config.timeout_s)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def ready(self) -> bool:
        return bool(self._config.rpc_url)

    async def health_check(self) -> Dict[str, Any]:
        try:
            data = await self._rpc_call("getHealth", [])
            return {"status": "healthy" if data.get("result") == "ok" else "degraded"}
        except (NetworkError, SolanaRpcError) as e:
            return {"status": "error", "reason": str(e)}

    async def _rpc_call(self, method: str, params: List[Any]) -> Dict[str, Any]:
        """
        Make one RPC call.

        Raises NetworkError for transport failures, HTTP 429/5xx and
        malformed bodies; SolanaRpcError for JSON-RPC error responses.
        """
        client = await self._get_client()
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

        try:
            response = await client.post(
                self._config.rpc_url,
                json=payload,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"{method} transport error: {e}", provider=self.name) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise NetworkError(f"{method} HTTP error: {response.status_code}", provider=self.name)
        if response.status_code != 200:
            raise SolanaRpcError(response.status_code, f"HTTP error: {response.status_code}", response.text)

        try:
            data = response.json()
        except ValueError as e:
            raise NetworkError(f"{method} returned invalid JSON", provider=self.name) from e

        if not isinstance(data, dict):
            raise NetworkError(f"{method} returned unexpected body", provider=self.name)

        if "error" in data:
            error = data["error"] or {}
            if not isinstance(error, dict):
                error = {"message": str(error)}
            raise SolanaRpcError(error.get("code"), error.get("message", str(error)), error.get("data"))

        return data

    async def send_transaction(self, payload: str) -> str:
        """
        Send a signed transaction to the Solana network.

        maxRetries is 0 so the node never rebroadcasts on its own; the
        submission engine owns the retry budget.
        """
        options = {
            "encoding": "base64",
            "skipPreflight": self._config.skip_preflight,
            "preflightCommitment": self._config.commitment,
            "maxRetries": 0,
        }

        try:
            result = await self._rpc_call("sendTransaction", [payload, options])
        except NetworkError as e:
            raise TransientBroadcastError(e.message) from e
        except SolanaRpcError as e:
            if "already been processed" in e.message.lower():
                raise TransactionAlreadyProcessedError(e.message) from e
            if e.code == PREFLIGHT_FAILURE_CODE:
                err = (e.data or {}).get("err") if isinstance(e.data, dict) else e.data
                raise LedgerRejectedError(f"Preflight failed: {e.message}", reason=err) from e
            if e.transient:
                raise TransientBroadcastError(e.message) from e
            context = classify_error(Exception(e.message))
            if context.kind == ErrorKind.LEDGER_REJECTED:
                raise LedgerRejectedError(e.message, reason=e.data) from e
            raise BroadcastFailedError(f"sendTransaction failed: {e.message}") from e

        signature = result.get("result")
        if not signature or not isinstance(signature, str):
            raise BroadcastFailedError("No signature returned from sendTransaction")
        return signature

    async def get_signature_status(self, signature: str) -> SignatureStatus:
        """
        Current status of a transaction signature.

        A signature is FINALIZED once it reaches the configured commitment.
        """
        try:
            result = await self._rpc_call(
                "getSignatureStatuses",
                [[signature], {"searchTransactionHistory": True}],
            )
        except SolanaRpcError as e:
            raise NetworkError(f"getSignatureStatuses failed: {e.message}", provider=self.name) from e

        body = result.get("result") or {}
        values = body.get("value") if isinstance(body, dict) else body
        if values is not None and not isinstance(values, list):
            raise NetworkError("getSignatureStatuses returned unexpected body", provider=self.name)
        entry = (values or [None])[0]
        if entry is not None and not isinstance(entry, dict):
            raise NetworkError("getSignatureStatuses returned unexpected body", provider=self.name)

        if entry is None:
            # Not seen yet (or dropped)
            return SignatureStatus(signature=signature, status=TransactionStatus.PENDING)

        if entry.get("err") is not None:
            return SignatureStatus(
                signature=signature,
                status=TransactionStatus.REJECTED,
                slot=entry.get("slot"),
                confirmation_status=entry.get("confirmationStatus"),
                error=entry.get("err"),
            )

        reached = COMMITMENT_RANK.get(entry.get("confirmationStatus") or "", -1)
        wanted = COMMITMENT_RANK.get(self._config.commitment, COMMITMENT_RANK["confirmed"])
        return SignatureStatus(
            signature=signature,
            status=TransactionStatus.FINALIZED if reached >= wanted else TransactionStatus.PENDING,
            slot=entry.get("slot"),
            confirmation_status=entry.get("confirmationStatus"),
        )

    async def get_block_height(self) -> int:
        try:
            result = await self._rpc_call("getBlockHeight", [{"commitment": self._config.commitment}])
        except SolanaRpcError as e:
            raise NetworkError(f"getBlockHeight failed: {e.message}", provider=self.name) from e

        height = result.get("result")
        if not isinstance(height, int):
            raise NetworkError("getBlockHeight returned no height", provider=self.name)
        return height


# Singleton instance
_solana_rpc: Optional[SolanaRpcClient] = None


def get_solana_rpc(rpc_url: Optional[str] = None) -> SolanaRpcClient:
    """Get the singleton Solana RPC client (see Settings.resolve_rpc_url)."""
    global _solana_rpc

    if _solana_rpc is None:
        _solana_rpc = SolanaRpcClient(
            SolanaRpcConfig(
                rpc_url=settings.resolve_rpc_url(rpc_url),
                commitment=settings.solana_commitment,
                timeout_s=settings.request_timeout_seconds,
            )
        )

    return _solana_rpc


__all__ = [
    "SolanaRpcClient",
    "SolanaRpcConfig",
    "SolanaRpcError",
    "get_solana_rpc",
]
