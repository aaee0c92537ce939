"""Wallet Sequencer - per-wallet serialization of transaction planning."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict

logger = logging.getLogger(__name__)


class WalletSequencer:
    """
    Single-writer discipline for each custodial wallet.

    A settlement protocol holds its wallet for the whole plan/submit/confirm
    sequence, so two concurrent requests for the same wallet can never read
    the same pending count. The nonce is always the node's pending count:
    a transaction dropped from the mempool leaves no gap behind.

    Different wallets never block each other. Locks of idle wallets are
    discarded when the last holder or waiter leaves.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}
        self._owners: Dict[str, asyncio.Task] = {}

    @staticmethod
    def _key(address: str) -> str:
        return address.lower()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, address: str):
        """Hold the wallet for the duration of the block."""
        key = self._key(address)
        lock = self._lock_for(key)
        self._users[key] = self._users.get(key, 0) + 1

        if lock.locked():
            logger.debug(f"Waiting for wallet {address[:10]}...")

        try:
            async with lock:
                self._owners[key] = asyncio.current_task()
                try:
                    yield
                finally:
                    self._owners.pop(key, None)
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def is_held(self, address: str) -> bool:
        """True if the current task holds the wallet."""
        owner = self._owners.get(self._key(address))
        return owner is not None and owner is asyncio.current_task()

    def reserve(self, address: str, pending_count: int) -> int:
        """
        Issue the next nonce for a wallet.

        Args:
            address: Wallet address (must be held by the calling task)
            pending_count: Node's pending transaction count for the wallet

        Returns:
            pending_count
        """
        if not self.is_held(address):
            raise RuntimeError(f"Nonce requested for {address} without holding its sequencer lock")

        logger.debug(f"Nonce {pending_count} for {address[:10]}...")
        return pending_count

    @property
    def tracked_wallets(self) -> int:
        """Number of wallets currently held or waited on."""
        return len(self._locks)
