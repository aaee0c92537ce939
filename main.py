#!/usr/bin/env python3
"""
Marketplace Settlement Engine

Main entry point that wires the settlement core once per process:
- Ledger: PostgreSQL store of listings, offers, bids and the settlement log
- Chain: JSON-RPC client for the marketplace contracts
- Settlement: key custody, fee/nonce planning, submission, orchestration
- Recovery: periodic reconciliation of transactions with unknown outcome

Usage:
    python main.py                  # Run the recovery loop
    python main.py --once           # Run a single recovery pass
    python main.py --init-db        # Apply db/schema.sql before starting
"""

import asyncio
import logging
import os
import signal
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Configure logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("settlement")

SCHEMA_PATH = Path(__file__).parent / "db" / "schema.sql"


class SettlementEngine:
    """
    Owns the process-wide settlement context.

    The route layer calls engine.context.orchestrator / engine.context.wallets;
    the engine itself only keeps the ledger converged with the chain.
    """

    def __init__(self, config=None):
        from execution import SettlementConfig

        self.config = config or SettlementConfig.from_env()
        self._running = False
        self._tasks: list[asyncio.Task] = []

        self.db_pool = None
        self.chain = None
        self.context = None

    async def setup(self, init_db: bool = False) -> None:
        """Initialize connections and build the component graph."""
        logger.info("Setting up connections...")

        import asyncpg

        try:
            self.db_pool = await asyncpg.create_pool(self.config.postgres_dsn, min_size=2, max_size=10)
            logger.info("PostgreSQL connected")
        except (OSError, asyncpg.PostgresError) as e:
            logger.error(f"PostgreSQL connection failed: {e}")
            raise

        if init_db:
            async with self.db_pool.acquire() as conn:
                await conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
            logger.info("Schema applied")

        from execution import Web3ChainClient
        from execution.context import build_context
        from ledger import LedgerStore

        self.chain = Web3ChainClient(self.config.rpc_url, poll_interval=self.config.receipt_poll_seconds)
        if not await self.chain.w3.is_connected():
            raise ConnectionError(f"RPC node unreachable at {self.config.rpc_url}")
        logger.info(f"RPC connected (chain {self.config.chain_id})")

        self.context = build_context(self.config, LedgerStore(self.db_pool), self.chain)
        logger.info("All systems initialized")

    async def recover_once(self) -> int:
        results = await self.context.orchestrator.recover_pending()
        for result in results:
            logger.info(f"Recovered: {result}")
        return len(results)

    async def run(self) -> None:
        """Run the periodic recovery loop until stopped."""
        self._running = True

        async def recovery_loop():
            while self._running:
                try:
                    await self.recover_once()
                except Exception as e:
                    logger.error(f"Recovery loop error: {e}")
                await asyncio.sleep(self.config.recovery_interval_seconds)

        self._tasks.append(asyncio.create_task(recovery_loop(), name="recovery"))
        logger.info("Recovery loop started")

        try:
            while self._running:
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            logger.info("Shutdown requested...")
        finally:
            await self.shutdown()

    def stop(self) -> None:
        self._running = False

    async def shutdown(self) -> None:
        """Graceful shutdown."""
        logger.info("Shutting down...")
        self._running = False

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self.db_pool:
            await self.db_pool.close()
            self.db_pool = None

        logger.info("Shutdown complete")


# ============================================================================
# Main Entry Point
# ============================================================================

def main(argv: Optional[list] = None):
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Marketplace Settlement Engine")
    parser.add_argument("--once", action="store_true", help="Run a single recovery pass and exit")
    parser.add_argument("--init-db", action="store_true", help="Apply db/schema.sql on startup")
    args = parser.parse_args(argv)

    engine = SettlementEngine()

    async def run():
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, engine.stop)

        await engine.setup(init_db=args.init_db)
        if args.once:
            try:
                count = await engine.recover_once()
                logger.info(f"Recovered {count} transaction(s)")
            finally:
                await engine.shutdown()
        else:
            await engine.run()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
