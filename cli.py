#!/usr/bin/env python3
"""
Marketplace Settlement - Command Line Interface

Operator commands for the settlement core:
- Pending: List settlement-log entries not yet reconciled
- Recover: Reconcile whatever landed on chain for those entries
- Secret: Generate a KEY_ENCRYPTION_SECRET
- Wallet: Create the custodial wallet of a user
- Listing: Show a listing and its bid history

Usage:
    python cli.py pending             # Unreconciled transactions
    python cli.py recover             # One recovery pass
    python cli.py secret              # New encryption secret
    python cli.py wallet <user_id>    # Create custodial wallet
    python cli.py listing <id>        # Listing details
"""

import asyncio
import argparse
import logging
import os

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "WARNING")),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class Colors:
    """ANSI color codes for terminal output."""
    HEADER = '\033[95m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'


def color(text: str, c: str) -> str:
    """Apply color to text."""
    return f"{c}{text}{Colors.ENDC}"


async def get_db_connection(config):
    """Get database connection pool."""
    import asyncpg
    return await asyncpg.create_pool(config.postgres_dsn, min_size=1, max_size=3)


async def build_cli_context(pool, config):
    from execution import Web3ChainClient
    from execution.context import build_context
    from ledger import LedgerStore

    chain = Web3ChainClient(config.rpc_url, poll_interval=config.receipt_poll_seconds)
    return build_context(config, LedgerStore(pool), chain)


async def cmd_pending(args, config):
    """List unreconciled settlement-log entries."""
    from ledger import LedgerStore

    print(color("\n===========================================", Colors.CYAN))
    print(color("       UNRECONCILED TRANSACTIONS", Colors.BOLD))
    print(color("===========================================\n", Colors.CYAN))

    pool = await get_db_connection(config)
    try:
        records = await LedgerStore(pool).list_open_settlements(args.limit)
        if not records:
            print(color("  Nothing pending", Colors.GREEN))
        for record in records:
            status = color(record.status.value.upper(), Colors.YELLOW)
            print(f"  {status:<20} {record.operation:<16} {record.tx_hash}")
            if record.error:
                print(f"      {color(record.error, Colors.RED)}")
    finally:
        await pool.close()

    print(color("\n===========================================\n", Colors.CYAN))


async def cmd_recover(args, config):
    """Run one recovery pass."""
    pool = await get_db_connection(config)
    try:
        ctx = await build_cli_context(pool, config)
        results = await ctx.orchestrator.recover_pending(args.limit)
        for result in results:
            print(f"  {color('RECOVERED', Colors.GREEN)} {result}")
        print(f"\n  {len(results)} transaction(s) reconciled")
    finally:
        await pool.close()


async def cmd_secret(args, config):
    """Print a fresh encryption secret."""
    from execution import generate_encryption_secret
    print(generate_encryption_secret())


async def cmd_wallet(args, config):
    """Create the custodial wallet of a user."""
    pool = await get_db_connection(config)
    try:
        ctx = await build_cli_context(pool, config)
        wallet = await ctx.wallets.create_wallet(args.user_id)
        print(f"  {color('CREATED', Colors.GREEN)} user {wallet.user_id}: {wallet.address}")
    finally:
        await pool.close()


async def cmd_listing(args, config):
    """Show a listing and its bids."""
    from ledger import LedgerStore

    pool = await get_db_connection(config)
    try:
        store = LedgerStore(pool)
        listing = await store.get_listing(args.listing_id)
        if listing is None:
            print(color(f"  Listing {args.listing_id} not found", Colors.RED))
            return

        print(color(f"\n  Listing #{listing.id}", Colors.BOLD))
        print(f"  Status:        {listing.status.value}")
        print(f"  Price:         {listing.price}")
        print(f"  Auction:       {listing.auction_id or '-'}")
        print(f"  Highest bid:   {listing.highest_bid_amount or '-'} (user {listing.highest_bidder_id or '-'})")
        if listing.winning_amount is not None:
            print(f"  Winner:        {listing.winner_address} (user {listing.winner_id or 'unknown'})")
        print(f"  Last tx:       {listing.transaction_hash or '-'}")

        bids = await store.list_bids(listing.id)
        if bids:
            print(color("\n  Bids", Colors.BOLD))
            for bid in bids:
                print(f"    {bid.amount:>14} by {bid.bidder_id or bid.bidder_address}  {bid.transaction_hash}")
    finally:
        await pool.close()


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Marketplace Settlement CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    pending_parser = subparsers.add_parser("pending", help="List unreconciled transactions")
    pending_parser.add_argument("--limit", type=int, default=100)

    recover_parser = subparsers.add_parser("recover", help="Reconcile landed transactions")
    recover_parser.add_argument("--limit", type=int, default=100)

    subparsers.add_parser("secret", help="Generate a KEY_ENCRYPTION_SECRET")

    wallet_parser = subparsers.add_parser("wallet", help="Create a custodial wallet")
    wallet_parser.add_argument("user_id", type=int, help="User id")

    listing_parser = subparsers.add_parser("listing", help="Show listing details")
    listing_parser.add_argument("listing_id", type=int, help="Listing id")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    from execution import SettlementConfig
    config = SettlementConfig.from_env()

    handlers = {
        "pending": cmd_pending,
        "recover": cmd_recover,
        "secret": cmd_secret,
        "wallet": cmd_wallet,
        "listing": cmd_listing,
    }

    handler = handlers.get(args.command)
    if handler:
        asyncio.run(handler(args, config))


if __name__ == "__main__":
    main()
