"""Solana token-swap execution pipeline."""

__version__ = "0.1.0"
