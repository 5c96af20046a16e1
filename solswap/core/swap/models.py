"""Typed models used by the swap subsystem."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .units import HumanAmount, to_atomic, to_decimal, to_human


@dataclass(frozen=True)
class Token:
    """Resolved token metadata."""

    address: str  # Mint address (Base58)
    symbol: str
    name: str
    decimals: int
    price: Optional[Decimal] = None
    logo_uri: Optional[str] = None
    tags: tuple = ()

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Token":
        """Parse a token from a Jupiter token API response."""
        price = data.get("price")
        return cls(
            address=data.get("address", ""),
            symbol=data.get("symbol", ""),
            name=data.get("name", ""),
            decimals=int(data["decimals"]),
            price=Decimal(str(price)) if price is not None else None,
            logo_uri=data.get("logoURI"),
            tags=tuple(data.get("tags") or ()),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "symbol": self.symbol,
            "name": self.name,
            "decimals": self.decimals,
            "price": str(self.price) if self.price is not None else None,
            "logo_uri": self.logo_uri,
            "tags": list(self.tags),
        }


@dataclass(frozen=True)
class AtomicAmount:
    """Integer ledger amount tied to the precision it was derived under."""

    value: int
    decimals: int

    def __post_init__(self) -> None:
        # Validates both fields
        to_human(self.value, self.decimals)

    @classmethod
    def from_human(cls, amount: HumanAmount, decimals: int) -> "AtomicAmount":
        return cls(value=to_atomic(amount, decimals), decimals=decimals)

    @classmethod
    def for_token(cls, amount: HumanAmount, token: Token) -> "AtomicAmount":
        return cls.from_human(amount, token.decimals)

    @property
    def human(self) -> str:
        return to_human(self.value, self.decimals)

    def to_decimal(self) -> Decimal:
        return to_decimal(self.value, self.decimals)


@dataclass(frozen=True)
class QuoteResponse:
    """Normalized answer from a quote service."""

    in_amount: int
    out_amount: int
    other_amount_threshold: int
    route: Dict[str, Any]  # Inert; round-tripped to the build service unmodified
    context_slot: int = 0
    price_impact_pct: Decimal = Decimal("0")
    swap_mode: str = "ExactIn"
    ttl_seconds: Optional[float] = None


@dataclass(frozen=True)
class Quote:
    """A priced route, valid for one (input mint, output mint, input amount) triple."""

    input_token: Token
    output_token: Token
    in_amount: int                              # In smallest units (lamports)
    out_amount: int                             # In smallest units
    other_amount_threshold: int                 # Minimum output (with slippage)
    slippage_bps: int
    route: Dict[str, Any] = field(compare=False)
    context_slot: int = 0
    price_impact_pct: Decimal = Decimal("0")
    swap_mode: str = "ExactIn"
    created_at: float = 0.0                     # Negotiator clock reading
    ttl_seconds: float = 5.0
    id: str = field(default_factory=lambda: str(uuid4()))

    def age(self, now: float) -> float:
        return now - self.created_at

    def is_expired(self, now: float) -> bool:
        return self.age(now) > self.ttl_seconds

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def matches(self, input_mint: str, output_mint: str, in_amount: int) -> bool:
        return (
            self.input_token.address == input_mint
            and self.output_token.address == output_mint
            and self.in_amount == in_amount
        )

    @property
    def in_human(self) -> str:
        return to_human(self.in_amount, self.input_token.decimals)

    @property
    def out_human(self) -> str:
        return to_human(self.out_amount, self.output_token.decimals)

    @property
    def min_out_human(self) -> str:
        return to_human(self.other_amount_threshold, self.output_token.decimals)

    @property
    def rate(self) -> Optional[Decimal]:
        """Output tokens received per input token."""
        if self.in_amount == 0:
            return None
        return to_decimal(self.out_amount, self.output_token.decimals) / to_decimal(
            self.in_amount, self.input_token.decimals
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "inputToken": self.input_token.to_dict(),
            "outputToken": self.output_token.to_dict(),
            "inAmount": str(self.in_amount),
            "outAmount": str(self.out_amount),
            "otherAmountThreshold": str(self.other_amount_threshold),
            "inAmountHuman": self.in_human,
            "outAmountHuman": self.out_human,
            "minOutAmountHuman": self.min_out_human,
            "slippageBps": self.slippage_bps,
            "priceImpactPct": str(self.price_impact_pct),
            "contextSlot": self.context_slot,
            "ttlSeconds": self.ttl_seconds,
        }


@dataclass(frozen=True)
class BuildResponse:
    """Serialized unsigned transaction returned by a build service."""

    payload: str                                # Base64 encoded transaction
    last_valid_block_height: int
    priority_fee_lamports: int = 0
    compute_unit_limit: Optional[int] = None


@dataclass(frozen=True)
class UnsignedTransaction:
    """Unsigned swap transaction; consumed by exactly one submission attempt."""

    quote_id: str
    payload: str                                # Base64 encoded transaction
    expiry_height: int                          # lastValidBlockHeight
    payer: str
    priority_fee_lamports: int = 0
    compute_unit_limit: Optional[int] = None
    id: str = field(default_factory=lambda: str(uuid4()))


@dataclass(frozen=True)
class Instruction:
    program_id: str
    accounts: List[Dict[str, Any]]
    data: str                                   # Base64

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Instruction":
        return cls(
            program_id=data["programId"],
            accounts=list(data.get("accounts") or []),
            data=data.get("data", ""),
        )


@dataclass(frozen=True)
class SwapInstructions:
    """Instruction-set form of a swap, for callers composing their own transaction."""

    quote_id: str
    swap_instruction: Instruction
    compute_budget_instructions: List[Instruction] = field(default_factory=list)
    setup_instructions: List[Instruction] = field(default_factory=list)
    cleanup_instruction: Optional[Instruction] = None
    address_lookup_table_addresses: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SignedTransaction:
    """Wallet output; the payload bytes are fixed for every broadcast attempt."""

    transaction_id: str                         # UnsignedTransaction.id
    payload: str                                # Base64 encoded signed transaction
    signature: Optional[str] = None             # Base58, first signature slot


class TransactionStatus(str, Enum):
    """Ledger view of a broadcast transaction."""
    PENDING = "pending"
    FINALIZED = "finalized"
    REJECTED = "rejected"


@dataclass(frozen=True)
class SignatureStatus:
    signature: str
    status: TransactionStatus
    slot: Optional[int] = None
    confirmation_status: Optional[str] = None
    error: Optional[Any] = None


class SubmissionOutcome(str, Enum):
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class SubmissionResult:
    """Terminal result of confirmation polling."""

    outcome: SubmissionOutcome
    signature: str
    slot: Optional[int] = None
    reason: Optional[str] = None
    last_height: Optional[int] = None

    @property
    def confirmed(self) -> bool:
        return self.outcome == SubmissionOutcome.CONFIRMED


__all__ = [
    "Token",
    "AtomicAmount",
    "QuoteResponse",
    "Quote",
    "BuildResponse",
    "UnsignedTransaction",
    "Instruction",
    "SwapInstructions",
    "SignedTransaction",
    "TransactionStatus",
    "SignatureStatus",
    "SubmissionOutcome",
    "SubmissionResult",
]
