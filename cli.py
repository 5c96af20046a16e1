#!/usr/bin/env python3
"""Simple CLI for quoting and executing Solana swaps locally"""

import argparse
import asyncio
import sys
from typing import Optional

from solswap.config import settings
from solswap.core.recovery.errors import QuoteSupersededError, SwapError
from solswap.core.swap.builder import TransactionBuilder
from solswap.core.swap.models import Quote, UnsignedTransaction
from solswap.core.swap.orchestrator import SwapOrchestrator, SwapState, SwapStatus
from solswap.core.swap.quotes import QuoteNegotiator
from solswap.core.swap.submission import SubmissionEngine
from solswap.logging_config import setup_logging
from solswap.providers.jupiter import get_jupiter_swap_provider, get_jupiter_token_provider
from solswap.providers.solana_rpc import get_solana_rpc
from solswap.providers.tokens import InMemoryTokenResolver
from solswap.providers.wallet import KeypairWalletSigner, load_keypair


STATE_ICONS = {
    SwapState.QUOTE_PENDING: "🔄",
    SwapState.QUOTE_READY: "💱",
    SwapState.BUILDING: "🛠️ ",
    SwapState.AWAITING_SIGNATURE: "✍️ ",
    SwapState.BROADCASTING: "📡",
    SwapState.CONFIRMING: "⏳",
    SwapState.SUCCEEDED: "✅",
    SwapState.FAILED: "❌",
}


def print_quote(quote: Quote):
    """Pretty print a quote"""
    print("\n💱 Swap Quote")
    print("=" * 50)
    print(f"Sell:       {quote.in_human} {quote.input_token.symbol}")
    print(f"Receive:    ~{quote.out_human} {quote.output_token.symbol}")
    print(f"Minimum:    {quote.min_out_human} {quote.output_token.symbol} ({quote.slippage_bps} bps slippage)")
    if quote.rate is not None:
        print(f"Rate:       1 {quote.input_token.symbol} = {quote.rate:.8f} {quote.output_token.symbol}")
    print(f"Impact:     {quote.price_impact_pct}%")
    print(f"Valid for:  {quote.ttl_seconds:.0f}s (slot {quote.context_slot})")


def print_status(status: SwapStatus):
    icon = STATE_ICONS.get(status.state, "•")
    line = f"{icon} {status.state.value}"
    if status.estimated_output and status.state == SwapState.QUOTE_READY:
        line += f" (~{status.estimated_output})"
    if status.kind:
        line += f" [{status.kind.value}] {status.message}"
    elif status.message:
        line += f" {status.message}"
    print(line)
    if status.explorer_url and status.state in (SwapState.CONFIRMING, SwapState.SUCCEEDED, SwapState.FAILED):
        print(f"   🔗 {status.explorer_url}")


def _resolver() -> InMemoryTokenResolver:
    return InMemoryTokenResolver(fallback=get_jupiter_token_provider())


async def cli_token(token_id: str):
    """CLI command to look up token metadata"""
    try:
        token = await _resolver().resolve(token_id)
    except SwapError as e:
        print(f"❌ {e.message}")
        return 1

    print(f"\n🪙 {token.symbol} ({token.name})")
    print(f"Mint:     {token.address}")
    print(f"Decimals: {token.decimals}")
    if token.price is not None:
        print(f"Price:    ${token.price}")
    return 0


async def cli_quote(input_token: str, output_token: str, amount: str, slippage_bps: int):
    """CLI command to preview a swap quote"""
    negotiator = QuoteNegotiator(_resolver(), get_jupiter_swap_provider())
    try:
        quote = await negotiator.request_quote(input_token, output_token, amount, slippage_bps)
    except SwapError as e:
        print(f"❌ {e.message}")
        if e.context.suggested_action:
            print(f"   {e.context.suggested_action}")
        return 1

    print_quote(quote)
    return 0


async def _confirm_on_terminal(transaction: UnsignedTransaction) -> bool:
    prompt = f"\n✍️  Sign transaction (expires after block {transaction.expiry_height})? [y/N] "
    answer = await asyncio.to_thread(input, prompt)
    return answer.strip().lower() in ("y", "yes")


async def cli_swap(
    input_token: str,
    output_token: str,
    amount: str,
    slippage_bps: int,
    keypair_path: str,
    rpc_url: Optional[str],
    assume_yes: bool,
):
    """CLI command to execute a swap with a local keypair"""
    try:
        keypair = load_keypair(keypair_path)
    except (OSError, ValueError) as e:
        print(f"❌ Could not load keypair: {e}")
        return 1

    signer = KeypairWalletSigner(keypair, approve=None if assume_yes else _confirm_on_terminal)
    swap_provider = get_jupiter_swap_provider()
    orchestrator = SwapOrchestrator(
        QuoteNegotiator(_resolver(), swap_provider),
        TransactionBuilder(swap_provider),
        SubmissionEngine(signer, get_solana_rpc(rpc_url)),
        payer=signer.public_key,
    )

    print(f"👛 Wallet: {signer.public_key}")
    try:
        quote = await orchestrator.request_quote(input_token, output_token, amount, slippage_bps)
    except (SwapError, QuoteSupersededError) as e:
        print(f"❌ {e}")
        return 1
    print_quote(quote)

    final = None
    async for status in orchestrator.execute_swap(input_token, output_token, amount, slippage_bps):
        print_status(status)
        if status.is_terminal:
            final = status

    return 0 if final is not None and final.state == SwapState.SUCCEEDED else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="solswap CLI")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command")

    token_parser = subparsers.add_parser("token", help="Look up token metadata")
    token_parser.add_argument("token", help="Mint address or symbol")

    for name, help_text in (("quote", "Preview a swap quote"), ("swap", "Execute a swap")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("input_token", help="Token to sell (mint or symbol)")
        sub.add_argument("output_token", help="Token to buy (mint or symbol)")
        sub.add_argument("amount", help="Amount of the input token, e.g. 1.5")
        sub.add_argument(
            "--slippage-bps",
            type=int,
            default=settings.default_slippage_bps,
            help=f"Allowed slippage in basis points (default: {settings.default_slippage_bps})",
        )
        if name == "swap":
            sub.add_argument("--keypair", required=True, help="Path to a Solana CLI keypair JSON file")
            sub.add_argument("--rpc-url", help="Solana RPC endpoint (default: from settings)")
            sub.add_argument("-y", "--yes", action="store_true", help="Sign without prompting")

    return parser


async def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    setup_logging(args.log_level)

    if not args.command:
        parser.print_help()
        return 0

    if args.command == "token":
        return await cli_token(args.token)

    if args.command == "quote":
        return await cli_quote(args.input_token, args.output_token, args.amount, args.slippage_bps)

    if args.command == "swap":
        return await cli_swap(
            args.input_token,
            args.output_token,
            args.amount,
            args.slippage_bps,
            args.keypair,
            args.rpc_url,
            args.yes,
        )

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
