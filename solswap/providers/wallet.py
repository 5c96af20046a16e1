"""
Local keypair wallet.

Signs serialized Solana transactions (legacy or v0) with a solders Keypair
held in process. Intended for CLI and server-side use; browser wallets
implement the same WalletSigner contract on their side.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Union

from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from ..core.recovery.errors import SignatureDeclinedError
from ..core.swap.encoding import base58_decode
from ..core.swap.models import SignedTransaction, UnsignedTransaction
from .base import WalletSigner

logger = logging.getLogger(__name__)

ApprovalCallback = Callable[[UnsignedTransaction], Awaitable[bool]]


def load_keypair(source: Union[str, Path, bytes, List[int]]) -> Keypair:
    """
    Load an Ed25519 keypair.

    Accepts a path to a Solana CLI keypair file (JSON array of 64 ints), the
    array itself (as a list or JSON text), raw 64/32 secret bytes, or a
    base58 secret key string.
    """
    if isinstance(source, Path) or (isinstance(source, str) and source.strip().endswith(".json")):
        source = json.loads(Path(source).expanduser().read_text())

    if isinstance(source, str):
        value = source.strip()
        if value.startswith("["):
            source = json.loads(value)
        else:
            try:
                source = base58_decode(value)
            except ValueError as e:
                raise ValueError("Keypair string is not base58") from e

    secret = bytes(source)
    if len(secret) == 32:
        return Keypair.from_seed(secret)
    if len(secret) != 64:
        raise ValueError(f"Keypair must be 32 or 64 bytes, got {len(secret)}")

    keypair = Keypair.from_bytes(secret)
    if bytes(keypair.pubkey()) != secret[32:]:
        raise ValueError("Keypair public half does not match its secret")
    return keypair


class KeypairWalletSigner(WalletSigner):
    """
    WalletSigner backed by a local keypair.

    Usage:
        signer = KeypairWalletSigner(load_keypair("~/.config/solana/id.json"))
        signed = await signer.sign(unsigned_tx)

    An optional ``approve`` coroutine is awaited before signing; returning
    False declines the request.
    """

    def __init__(self, keypair: Keypair, approve: Optional[ApprovalCallback] = None):
        self._keypair = keypair
        self._approve = approve

    @property
    def public_key(self) -> str:
        return str(self._keypair.pubkey())

    async def sign(self, transaction: UnsignedTransaction) -> SignedTransaction:
        if self._approve is not None and not await self._approve(transaction):
            logger.info(f"Signing declined for transaction {transaction.id}")
            raise SignatureDeclinedError()

        try:
            raw = base64.b64decode(transaction.payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise SignatureDeclinedError(f"Wallet could not decode transaction: {e}") from e

        try:
            unsigned = VersionedTransaction.from_bytes(raw)
        except ValueError as e:
            raise SignatureDeclinedError(f"Wallet could not parse transaction: {e}") from e

        message = unsigned.message
        signers = list(message.account_keys[: message.header.num_required_signatures])
        pubkey = self._keypair.pubkey()
        if pubkey not in signers:
            raise SignatureDeclinedError(
                f"Wallet key {self.public_key} is not a required signer of this transaction"
            )
        index = signers.index(pubkey)
        signatures = list(unsigned.signatures)
        if index >= len(signatures):
            raise SignatureDeclinedError("Transaction has no signature slot for this wallet")

        signatures[index] = self._keypair.sign_message(to_bytes_versioned(message))
        signed = VersionedTransaction.populate(message, signatures)

        # The fee payer's slot is the transaction id on chain
        first = signatures[0]
        signature = str(first) if first != Signature.default() else None
        logger.debug(f"Signed transaction {transaction.id} as signer #{index}")

        return SignedTransaction(
            transaction_id=transaction.id,
            payload=base64.b64encode(bytes(signed)).decode("ascii"),
            signature=signature,
        )


__all__ = [
    "KeypairWalletSigner",
    "load_keypair",
]
