"""
Ledger Reconciler - writes confirmed on-chain outcomes into the ledger.

Every update is keyed on the transaction hash (settlement log marker,
unique bid/offer hashes) or the auction id, and writes absolute values
taken from the chain. Reconciling the same transaction twice leaves the
ledger exactly as reconciling it once.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import asyncpg
import backoff

from ledger.models import (
    NFT,
    Listing,
    ListingStatus,
    Offer,
    OfferStatus,
    Operation,
    SettlementRecord,
    SettlementStatus,
)
from ledger.store import LedgerStore

from .chain_client import Receipt
from .contracts import AuctionState, MarketplaceContracts, from_base_units
from .errors import ReconciliationError

logger = logging.getLogger(__name__)

PERSISTENCE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, ValueError)


@dataclass
class ProtocolResult:
    """Confirmed receipt of a protocol's settling transaction plus chain-side state."""

    operation: Operation
    receipt: Receipt
    wallet_address: str
    listing_id: Optional[int] = None
    offer_id: Optional[int] = None
    amount: Optional[int] = None  # base units
    auction_id: Optional[int] = None
    auction: Optional[AuctionState] = None  # read after confirmation
    token_id: Optional[int] = None
    user_id: Optional[int] = None
    metadata_uri: Optional[str] = None

    @property
    def tx_hash(self) -> str:
        return self.receipt.tx_hash

    def to_context(self) -> dict:
        """JSON-safe fields needed to rebuild this result from the settlement log."""
        return {
            "listing_id": self.listing_id,
            "offer_id": self.offer_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "auction_id": self.auction_id,
            "token_id": self.token_id,
            "user_id": self.user_id,
            "metadata_uri": self.metadata_uri,
        }

    @classmethod
    def from_record(cls, record: SettlementRecord, receipt: Receipt) -> "ProtocolResult":
        ctx = record.context or {}
        amount = ctx.get("amount")
        return cls(
            operation=Operation(record.operation),
            receipt=receipt,
            wallet_address=record.wallet_address,
            listing_id=record.listing_id if record.listing_id is not None else ctx.get("listing_id"),
            offer_id=record.offer_id if record.offer_id is not None else ctx.get("offer_id"),
            amount=int(amount) if amount is not None else None,
            auction_id=ctx.get("auction_id"),
            token_id=ctx.get("token_id"),
            user_id=ctx.get("user_id"),
            metadata_uri=ctx.get("metadata_uri"),
        )


@dataclass
class ReconciledRecord:
    """Ledger rows after reconciliation."""

    tx_hash: str
    listing: Optional[Listing] = None
    offer: Optional[Offer] = None
    nft: Optional[NFT] = None
    already_reconciled: bool = False
    extra: dict = field(default_factory=dict)


class LedgerReconciler:
    """
    Maps confirmed protocol results into ledger updates.

    Chain addresses are resolved to local users case-insensitively; an
    address without a local user leaves the reference unset.
    """

    def __init__(
        self,
        store: LedgerStore,
        contracts: MarketplaceContracts,
        token_decimals: int = 18,
        max_tries: int = 3,
    ):
        self.store = store
        self.contracts = contracts
        self.token_decimals = token_decimals
        self.max_tries = max_tries

    def _amount(self, value: Optional[int]) -> Optional[Decimal]:
        return from_base_units(value, self.token_decimals) if value is not None else None

    async def reconcile(self, result: ProtocolResult) -> ReconciledRecord:
        """
        Persist a confirmed protocol result, retrying transient write failures.

        Raises:
            ReconciliationError: Ledger could not be written; carries tx_hash
        """
        retry = backoff.on_exception(
            backoff.expo,
            ReconciliationError,
            max_tries=self.max_tries,
            max_value=10,
        )
        return await retry(self._reconcile_once)(result)

    async def _reconcile_once(self, result: ProtocolResult) -> ReconciledRecord:
        try:
            existing = await self.store.get_settlement(result.tx_hash)
            if existing is not None and existing.status == SettlementStatus.RECONCILED:
                logger.debug(f"{result.tx_hash} already reconciled")
                return await self._load(result, already_reconciled=True)

            if existing is None:
                await self.store.record_settlement(SettlementRecord(
                    tx_hash=result.tx_hash,
                    operation=result.operation.value,
                    wallet_address=result.wallet_address,
                    status=SettlementStatus.CONFIRMED,
                    listing_id=result.listing_id,
                    offer_id=result.offer_id,
                    context=result.to_context(),
                ))
            else:
                await self.store.update_settlement(
                    result.tx_hash, SettlementStatus.CONFIRMED, context=result.to_context()
                )

            async with self.store.transaction() as tx:
                record = await self._apply(tx, result)
                await tx.update_settlement(
                    result.tx_hash, SettlementStatus.RECONCILED, context=result.to_context()
                )
        except PERSISTENCE_ERRORS as e:
            logger.error(f"Reconciliation of {result.tx_hash} failed: {e}")
            raise ReconciliationError(
                f"Ledger update for {result.operation.value} failed: {e}",
                tx_hash=result.tx_hash,
            ) from e

        logger.info(f"Reconciled {result.operation.value} tx={result.tx_hash}")
        return record

    async def _load(self, result: ProtocolResult, already_reconciled: bool = False) -> ReconciledRecord:
        listing = await self.store.get_listing(result.listing_id) if result.listing_id else None
        offer = await self.store.get_offer(result.offer_id) if result.offer_id else None
        nft = await self.store.get_nft(listing.nft_id) if listing else None
        return ReconciledRecord(
            tx_hash=result.tx_hash,
            listing=listing,
            offer=offer,
            nft=nft,
            already_reconciled=already_reconciled,
        )

    async def _apply(self, store: LedgerStore, result: ProtocolResult) -> ReconciledRecord:
        op = result.operation

        if op == Operation.CREATE_LISTING:
            return await self._apply_create_listing(store, result)
        if op == Operation.PLACE_BID:
            return await self._apply_bid(store, result)
        if op == Operation.BUY_NOW:
            return await self._apply_buy_now(store, result)
        if op == Operation.END_AUCTION:
            listing = await store.get_listing(result.listing_id)
            listing = await self._apply_final_auction(store, listing, result.auction, result.tx_hash)
            return ReconciledRecord(tx_hash=result.tx_hash, listing=listing)
        if op == Operation.MAKE_OFFER:
            return await self._apply_make_offer(store, result)
        if op == Operation.ACCEPT_OFFER:
            return await self._apply_accept_offer(store, result)
        if op == Operation.CANCEL_OFFER:
            await store.update_offer_status(result.offer_id, OfferStatus.CANCELLED, result.tx_hash)
            return ReconciledRecord(tx_hash=result.tx_hash, offer=await store.get_offer(result.offer_id))
        if op == Operation.MINT_PROFILE:
            return await self._apply_mint(store, result)

        raise ValueError(f"No reconciliation for operation {op}")

    # =========================================================================
    # Per-operation updates
    # =========================================================================

    async def _apply_create_listing(self, store: LedgerStore, result: ProtocolResult) -> ReconciledRecord:
        auction = result.auction
        listing = await store.update_listing(
            result.listing_id,
            status=ListingStatus.ACTIVE,
            auction_id=result.auction_id,
            price=self._amount(auction.starting_bid),
            auction_end_time=datetime.fromtimestamp(auction.end_at, tz=timezone.utc),
            transaction_hash=result.tx_hash,
        )
        return ReconciledRecord(tx_hash=result.tx_hash, listing=listing)

    async def _apply_bid(self, store: LedgerStore, result: ProtocolResult) -> ReconciledRecord:
        bidder_id = await store.find_user_by_address(result.wallet_address)
        await store.add_bid(
            result.listing_id,
            bidder_id,
            self._amount(result.amount),
            result.tx_hash,
            bidder_address=result.wallet_address,
        )
        listing = await store.get_listing(result.listing_id)
        listing = await self._apply_auction_state(store, listing, result.auction, result.tx_hash)
        return ReconciledRecord(tx_hash=result.tx_hash, listing=listing)

    async def _apply_buy_now(self, store: LedgerStore, result: ProtocolResult) -> ReconciledRecord:
        """Winner and price come from the auction read after confirmation."""
        auction = result.auction
        if auction is not None and auction.has_winner:
            winner_address, amount = auction.highest_bidder, auction.highest_bid
        else:
            winner_address, amount = result.wallet_address, result.amount

        winner_id = await store.find_user_by_address(winner_address)
        listing = await store.update_listing(
            result.listing_id,
            status=ListingStatus.SOLD,
            winner_id=winner_id,
            winner_address=winner_address,
            winning_amount=self._amount(amount),
            highest_bid_amount=self._amount(amount),
            highest_bidder_id=winner_id,
            transaction_hash=result.tx_hash,
        )
        await store.update_nft_owner(listing.nft_id, winner_id)
        return ReconciledRecord(
            tx_hash=result.tx_hash, listing=listing, nft=await store.get_nft(listing.nft_id)
        )

    async def _apply_make_offer(self, store: LedgerStore, result: ProtocolResult) -> ReconciledRecord:
        buyer_id = await store.find_user_by_address(result.wallet_address)
        offer = await store.create_offer(
            result.listing_id, buyer_id, self._amount(result.amount), result.tx_hash
        )
        result.offer_id = offer.id
        return ReconciledRecord(tx_hash=result.tx_hash, offer=offer)

    async def _apply_accept_offer(self, store: LedgerStore, result: ProtocolResult) -> ReconciledRecord:
        offer = await store.get_offer(result.offer_id)
        buyer_wallet = await store.get_wallet(offer.buyer_id)

        await store.update_offer_status(offer.id, OfferStatus.ACCEPTED, result.tx_hash)
        listing = await store.update_listing(
            offer.listing_id,
            status=ListingStatus.SOLD,
            winner_id=offer.buyer_id,
            winner_address=buyer_wallet.address if buyer_wallet else None,
            winning_amount=offer.amount,
            transaction_hash=result.tx_hash,
        )
        await store.update_nft_owner(listing.nft_id, offer.buyer_id)
        return ReconciledRecord(
            tx_hash=result.tx_hash,
            listing=listing,
            offer=await store.get_offer(offer.id),
            nft=await store.get_nft(listing.nft_id),
        )

    async def _apply_mint(self, store: LedgerStore, result: ProtocolResult) -> ReconciledRecord:
        nft = await store.upsert_nft(
            self.contracts.addresses.profiles,
            result.token_id,
            result.user_id,
            result.metadata_uri,
        )
        listing = await store.find_listing_by_nft(nft.id)
        if listing is None:
            listing = await store.create_listing(nft.id, result.user_id)
        result.listing_id = listing.id
        return ReconciledRecord(tx_hash=result.tx_hash, listing=listing, nft=nft)

    # =========================================================================
    # Auction convergence
    # =========================================================================

    async def _apply_auction_state(
        self,
        store: LedgerStore,
        listing: Listing,
        auction: AuctionState,
        tx_hash: Optional[str] = None,
    ) -> Listing:
        """Converge an open listing's bid cache with the chain."""
        if auction.ended:
            return await self._apply_final_auction(store, listing, auction, tx_hash)

        fields = {"auction_end_time": datetime.fromtimestamp(auction.end_at, tz=timezone.utc)}
        if auction.has_winner:
            fields["highest_bid_amount"] = self._amount(auction.highest_bid)
            fields["highest_bidder_id"] = await store.find_user_by_address(auction.highest_bidder)
        if tx_hash:
            fields["transaction_hash"] = tx_hash
        return await store.update_listing(listing.id, **fields)

    async def _apply_final_auction(
        self,
        store: LedgerStore,
        listing: Listing,
        auction: AuctionState,
        tx_hash: Optional[str] = None,
    ) -> Listing:
        """Settle a listing from a finished auction: sold iff a bidder exists."""
        fields = {}
        if tx_hash:
            fields["transaction_hash"] = tx_hash

        if auction.has_winner:
            winner_id = await store.find_user_by_address(auction.highest_bidder)
            fields.update(
                status=ListingStatus.SOLD,
                winner_id=winner_id,
                winner_address=auction.highest_bidder,
                winning_amount=self._amount(auction.highest_bid),
                highest_bid_amount=self._amount(auction.highest_bid),
                highest_bidder_id=winner_id,
            )
            listing = await store.update_listing(listing.id, **fields)
            await store.update_nft_owner(listing.nft_id, winner_id)
        else:
            fields.update(
                status=ListingStatus.ENDED,
                winner_id=None,
                winner_address=None,
                winning_amount=None,
            )
            listing = await store.update_listing(listing.id, **fields)

        return listing

    async def resync_listing(self, listing: Listing) -> Listing:
        """
        Re-read the listing's auction from chain and converge the local row.

        Used whenever a local write would contradict chain state.
        """
        if listing.auction_id is None:
            return listing

        auction = await self.contracts.get_auction(listing.auction_id)
        try:
            async with self.store.transaction() as tx:
                listing = await self._apply_auction_state(tx, listing, auction)
        except PERSISTENCE_ERRORS as e:
            raise ReconciliationError(f"Resync of listing {listing.id} failed: {e}") from e

        logger.info(f"Resynced listing {listing.id} from auction {listing.auction_id}: {listing.status.value}")
        return listing
