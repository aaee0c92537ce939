"""Ledger Store - asyncpg access to the settlement tables."""

import json
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, List, Optional, Sequence

import asyncpg

from .models import (
    NFT,
    Bid,
    Listing,
    ListingStatus,
    Offer,
    OfferStatus,
    SettlementRecord,
    SettlementStatus,
    Wallet,
)

logger = logging.getLogger(__name__)

LISTING_COLUMNS = {
    "price",
    "status",
    "auction_id",
    "auction_end_time",
    "highest_bid_amount",
    "highest_bidder_id",
    "winner_id",
    "winner_address",
    "winning_amount",
    "transaction_hash",
}


def _listing(row) -> Listing:
    return Listing(
        id=row["id"],
        nft_id=row["nft_id"],
        seller_id=row["seller_id"],
        price=row["price"],
        status=ListingStatus(row["status"]),
        auction_id=row["auction_id"],
        auction_end_time=row["auction_end_time"],
        highest_bid_amount=row["highest_bid_amount"],
        highest_bidder_id=row["highest_bidder_id"],
        winner_id=row["winner_id"],
        winner_address=row["winner_address"],
        winning_amount=row["winning_amount"],
        transaction_hash=row["transaction_hash"],
    )


def _offer(row) -> Offer:
    return Offer(
        id=row["id"],
        listing_id=row["listing_id"],
        buyer_id=row["buyer_id"],
        amount=row["amount"],
        status=OfferStatus(row["status"]),
        transaction_hash=row["transaction_hash"],
    )


def _nft(row) -> NFT:
    return NFT(
        id=row["id"],
        contract_address=row["contract_address"],
        token_id=row["token_id"],
        owner_id=row["owner_id"],
        metadata_uri=row["metadata_uri"],
    )


def _settlement(row) -> SettlementRecord:
    context = row["context"]
    if isinstance(context, str):
        context = json.loads(context)
    return SettlementRecord(
        tx_hash=row["tx_hash"],
        operation=row["operation"],
        wallet_address=row["wallet_address"],
        status=SettlementStatus(row["status"]),
        listing_id=row["listing_id"],
        offer_id=row["offer_id"],
        context=context or {},
        error=row["error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _value(value: Any) -> Any:
    return value.value if isinstance(value, (ListingStatus, OfferStatus, SettlementStatus)) else value


class LedgerStore:
    """
    Persisted marketplace ledger.

    Every method runs on the pool, or on a single connection when the store
    was obtained from transaction().
    """

    def __init__(self, pool: asyncpg.Pool, conn: Optional[asyncpg.Connection] = None):
        self.pool = pool
        self._conn = conn

    @property
    def _db(self):
        return self._conn if self._conn is not None else self.pool

    @asynccontextmanager
    async def transaction(self):
        """Yield a store whose writes commit or roll back together."""
        if self._conn is not None:
            async with self._conn.transaction():
                yield self
            return

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield LedgerStore(self.pool, conn)

    # =========================================================================
    # Users & wallets
    # =========================================================================

    async def get_wallet(self, user_id: int) -> Optional[Wallet]:
        row = await self._db.fetchrow(
            """
            SELECT id, username, custodial_address, encrypted_private_key
            FROM users WHERE id = $1 AND custodial_address IS NOT NULL
            """,
            user_id,
        )
        if row is None:
            return None
        return Wallet(
            user_id=row["id"],
            address=row["custodial_address"],
            encrypted_private_key=row["encrypted_private_key"],
            username=row["username"],
        )

    async def save_wallet(self, user_id: int, address: str, encrypted_private_key: str) -> None:
        """Attach a custodial wallet to a user that has none."""
        result = await self._db.execute(
            """
            UPDATE users SET custodial_address = $2, encrypted_private_key = $3
            WHERE id = $1 AND custodial_address IS NULL
            """,
            user_id, address, encrypted_private_key,
        )
        if result.endswith(" 0"):
            raise ValueError(f"User {user_id} does not exist or already has a wallet")

    async def find_user_by_address(self, address: Optional[str]) -> Optional[int]:
        if not address:
            return None
        return await self._db.fetchval(
            "SELECT id FROM users WHERE LOWER(custodial_address) = LOWER($1)",
            address,
        )

    # =========================================================================
    # NFTs
    # =========================================================================

    async def get_nft(self, nft_id: int) -> Optional[NFT]:
        row = await self._db.fetchrow("SELECT * FROM nfts WHERE id = $1", nft_id)
        return _nft(row) if row else None

    async def find_nft(self, contract_address: str, token_id: int) -> Optional[NFT]:
        row = await self._db.fetchrow(
            "SELECT * FROM nfts WHERE LOWER(contract_address) = LOWER($1) AND token_id = $2",
            contract_address, token_id,
        )
        return _nft(row) if row else None

    async def upsert_nft(
        self,
        contract_address: str,
        token_id: int,
        owner_id: Optional[int],
        metadata_uri: Optional[str] = None,
    ) -> NFT:
        row = await self._db.fetchrow(
            """
            INSERT INTO nfts (contract_address, token_id, owner_id, metadata_uri)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (contract_address, token_id) DO UPDATE
            SET owner_id = EXCLUDED.owner_id,
                metadata_uri = COALESCE(EXCLUDED.metadata_uri, nfts.metadata_uri)
            RETURNING *
            """,
            contract_address, token_id, owner_id, metadata_uri,
        )
        return _nft(row)

    async def update_nft_owner(self, nft_id: int, owner_id: Optional[int]) -> None:
        await self._db.execute("UPDATE nfts SET owner_id = $2 WHERE id = $1", nft_id, owner_id)

    # =========================================================================
    # Listings
    # =========================================================================

    async def get_listing(self, listing_id: int) -> Optional[Listing]:
        row = await self._db.fetchrow("SELECT * FROM listings WHERE id = $1", listing_id)
        return _listing(row) if row else None

    async def find_listing_by_nft(
        self,
        nft_id: int,
        statuses: Sequence[ListingStatus] = (ListingStatus.INACTIVE, ListingStatus.ACTIVE),
    ) -> Optional[Listing]:
        row = await self._db.fetchrow(
            """
            SELECT * FROM listings
            WHERE nft_id = $1 AND status = ANY($2::text[])
            ORDER BY id DESC LIMIT 1
            """,
            nft_id, [s.value for s in statuses],
        )
        return _listing(row) if row else None

    async def create_listing(self, nft_id: int, seller_id: int, price: Decimal = Decimal("0")) -> Listing:
        row = await self._db.fetchrow(
            """
            INSERT INTO listings (nft_id, seller_id, price, status)
            VALUES ($1, $2, $3, 'inactive')
            RETURNING *
            """,
            nft_id, seller_id, price,
        )
        return _listing(row)

    async def update_listing(self, listing_id: int, **fields) -> Listing:
        """Set listing columns. Values are absolute, never increments."""
        unknown = set(fields) - LISTING_COLUMNS
        if unknown:
            raise ValueError(f"Unknown listing columns: {sorted(unknown)}")

        names = sorted(fields)
        assignments = ", ".join(f"{name} = ${i + 2}" for i, name in enumerate(names))
        row = await self._db.fetchrow(
            f"UPDATE listings SET {assignments}, updated_at = NOW() WHERE id = $1 RETURNING *",
            listing_id, *[_value(fields[name]) for name in names],
        )
        if row is None:
            raise ValueError(f"Listing {listing_id} not found")
        return _listing(row)

    # =========================================================================
    # Offers & bids
    # =========================================================================

    async def get_offer(self, offer_id: int) -> Optional[Offer]:
        row = await self._db.fetchrow("SELECT * FROM offers WHERE id = $1", offer_id)
        return _offer(row) if row else None

    async def create_offer(self, listing_id: int, buyer_id: int, amount: Decimal, tx_hash: str) -> Offer:
        """Insert a pending offer; re-inserting the same tx_hash returns the existing row."""
        row = await self._db.fetchrow(
            """
            INSERT INTO offers (listing_id, buyer_id, amount, status, transaction_hash)
            VALUES ($1, $2, $3, 'pending', $4)
            ON CONFLICT (transaction_hash) DO NOTHING
            RETURNING *
            """,
            listing_id, buyer_id, amount, tx_hash,
        )
        if row is None:
            row = await self._db.fetchrow("SELECT * FROM offers WHERE transaction_hash = $1", tx_hash)
        return _offer(row)

    async def update_offer_status(self, offer_id: int, status: OfferStatus, tx_hash: Optional[str] = None) -> None:
        await self._db.execute(
            """
            UPDATE offers SET status = $2,
                transaction_hash = COALESCE($3, transaction_hash),
                updated_at = NOW()
            WHERE id = $1
            """,
            offer_id, status.value, tx_hash,
        )

    async def add_bid(
        self,
        listing_id: int,
        bidder_id: Optional[int],
        amount: Decimal,
        tx_hash: str,
        bidder_address: Optional[str] = None,
    ) -> bool:
        """Append a bid. Returns False if the tx_hash was already recorded."""
        result = await self._db.execute(
            """
            INSERT INTO bids (listing_id, bidder_id, bidder_address, amount, transaction_hash)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (transaction_hash) DO NOTHING
            """,
            listing_id, bidder_id, bidder_address, amount, tx_hash,
        )
        return result.endswith(" 1")

    async def list_bids(self, listing_id: int) -> List[Bid]:
        rows = await self._db.fetch(
            "SELECT * FROM bids WHERE listing_id = $1 ORDER BY id",
            listing_id,
        )
        return [
            Bid(
                id=r["id"],
                listing_id=r["listing_id"],
                bidder_id=r["bidder_id"],
                amount=r["amount"],
                transaction_hash=r["transaction_hash"],
                bidder_address=r["bidder_address"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # =========================================================================
    # Settlement log
    # =========================================================================

    async def record_settlement(self, record: SettlementRecord) -> None:
        await self._db.execute(
            """
            INSERT INTO settlement_log
                (tx_hash, operation, wallet_address, listing_id, offer_id, context, status)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
            ON CONFLICT (tx_hash) DO NOTHING
            """,
            record.tx_hash, record.operation, record.wallet_address,
            record.listing_id, record.offer_id, json.dumps(record.context), record.status.value,
        )

    async def get_settlement(self, tx_hash: str) -> Optional[SettlementRecord]:
        row = await self._db.fetchrow("SELECT * FROM settlement_log WHERE tx_hash = $1", tx_hash)
        return _settlement(row) if row else None

    async def update_settlement(
        self,
        tx_hash: str,
        status: SettlementStatus,
        error: Optional[str] = None,
        context: Optional[dict] = None,
    ) -> None:
        await self._db.execute(
            """
            UPDATE settlement_log SET status = $2, error = $3,
                context = COALESCE($4::jsonb, context),
                updated_at = NOW()
            WHERE tx_hash = $1
            """,
            tx_hash, status.value, error, json.dumps(context) if context is not None else None,
        )

    async def list_open_settlements(self, limit: int = 100) -> List[SettlementRecord]:
        rows = await self._db.fetch(
            """
            SELECT * FROM settlement_log
            WHERE status IN ('submitted', 'confirmed')
            ORDER BY created_at
            LIMIT $1
            """,
            limit,
        )
        return [_settlement(r) for r in rows]
