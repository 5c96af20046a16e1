"""Base58 helpers and Solana address validation."""

from __future__ import annotations

import base64
from functools import lru_cache
from typing import Optional

from solders.signature import Signature
from solders.transaction import VersionedTransaction

_BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_BASE58_INDEX = {char: index for index, char in enumerate(_BASE58_ALPHABET)}


def base58_decode(value: str) -> bytes:
    if not value:
        return b""
    num = 0
    for char in value:
        if char not in _BASE58_INDEX:
            raise ValueError("Invalid base58 character")
        num = num * 58 + _BASE58_INDEX[char]
    combined = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    pad = len(value) - len(value.lstrip("1"))
    return b"\x00" * pad + combined


def base58_encode(data: bytes) -> str:
    if not data:
        return ""
    num = int.from_bytes(data, "big")
    encoded = ""
    while num > 0:
        num, rem = divmod(num, 58)
        encoded = _BASE58_ALPHABET[rem] + encoded
    pad = len(data) - len(data.lstrip(b"\x00"))
    return "1" * pad + encoded


@lru_cache(maxsize=128)
def is_valid_solana_address(address: str) -> bool:
    """True for a base58 string that decodes to a 32-byte public key."""
    if not address or not 32 <= len(address) <= 44:
        return False
    try:
        return len(base58_decode(address)) == 32
    except ValueError:
        return False


def transaction_signature(payload: str) -> Optional[str]:
    """
    Signature of a base64 wire transaction: its first (fee payer) slot.

    None when the payload does not parse or the fee payer has not signed.
    """
    try:
        transaction = VersionedTransaction.from_bytes(base64.b64decode(payload, validate=True))
    except ValueError:
        return None
    if not transaction.signatures or transaction.signatures[0] == Signature.default():
        return None
    return str(transaction.signatures[0])


__all__ = ["base58_decode", "base58_encode", "is_valid_solana_address", "transaction_signature"]
