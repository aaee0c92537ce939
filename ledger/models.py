"""Data models for the marketplace ledger."""

from dataclasses import dataclass, field
from decimal import Decimal
from datetime import datetime
from typing import Optional
from enum import Enum


class ListingStatus(str, Enum):
    """Marketplace state of a listing."""
    INACTIVE = "inactive"     # Minted, no auction on chain yet
    ACTIVE = "active"         # Auction live on chain
    SOLD = "sold"             # Settled with a winner
    ENDED = "ended"           # Settled without bids
    CANCELLED = "cancelled"   # Withdrawn before reaching the chain

    @property
    def is_terminal(self) -> bool:
        return self in (ListingStatus.SOLD, ListingStatus.ENDED, ListingStatus.CANCELLED)


class OfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    CANCELLED = "cancelled"


class Operation(str, Enum):
    """Operations run by the settlement core."""
    APPROVE_LISTING = "approve_listing"
    CREATE_LISTING = "create_listing"
    CANCEL_LISTING = "cancel_listing"
    PLACE_BID = "place_bid"
    BUY_NOW = "buy_now"
    END_AUCTION = "end_auction"
    MAKE_OFFER = "make_offer"
    ACCEPT_OFFER = "accept_offer"
    CANCEL_OFFER = "cancel_offer"
    MINT_PROFILE = "mint_profile"
    TRANSFER_TOKENS = "transfer_tokens"
    GRANT_TOKENS = "grant_tokens"


class SettlementStatus(str, Enum):
    """Progress of a submitted transaction through reconciliation."""
    SUBMITTED = "submitted"     # Broadcast, receipt not seen
    CONFIRMED = "confirmed"     # Receipt seen, ledger not yet written
    RECONCILED = "reconciled"   # Ledger written
    FAILED = "failed"           # Reverted on chain

    @property
    def is_open(self) -> bool:
        return self in (SettlementStatus.SUBMITTED, SettlementStatus.CONFIRMED)


@dataclass
class Wallet:
    """Custodial wallet of one user."""
    user_id: int
    address: str
    encrypted_private_key: str
    username: Optional[str] = None


@dataclass
class NFT:
    id: int
    contract_address: str
    token_id: int
    owner_id: Optional[int] = None
    metadata_uri: Optional[str] = None


@dataclass
class Listing:
    """Sale intent for one NFT, mirrored from the auction house."""
    id: int
    nft_id: int
    seller_id: int
    price: Decimal = Decimal("0")
    status: ListingStatus = ListingStatus.INACTIVE

    # Auction
    auction_id: Optional[int] = None
    auction_end_time: Optional[datetime] = None
    highest_bid_amount: Optional[Decimal] = None
    highest_bidder_id: Optional[int] = None

    # Settlement
    winner_id: Optional[int] = None
    winner_address: Optional[str] = None
    winning_amount: Optional[Decimal] = None
    transaction_hash: Optional[str] = None


@dataclass
class Offer:
    id: int
    listing_id: int
    buyer_id: int
    amount: Decimal
    status: OfferStatus = OfferStatus.PENDING
    transaction_hash: Optional[str] = None


@dataclass
class Bid:
    """Append-only record of one confirmed bid."""
    id: int
    listing_id: int
    bidder_id: Optional[int]
    amount: Decimal
    transaction_hash: str
    bidder_address: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class SettlementRecord:
    """
    One submitted ledger-affecting transaction.

    Written as soon as a hash exists so outcomes that land after a timeout
    or a cancelled request can still be reconciled.
    """
    tx_hash: str
    operation: str
    wallet_address: str
    status: SettlementStatus = SettlementStatus.SUBMITTED
    listing_id: Optional[int] = None
    offer_id: Optional[int] = None
    context: dict = field(default_factory=dict)
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
