"""Ledger - persisted mirror of marketplace state."""

from .models import (
    Wallet,
    NFT,
    Listing,
    Offer,
    Bid,
    SettlementRecord,
    ListingStatus,
    OfferStatus,
    SettlementStatus,
    Operation,
)
from .store import LedgerStore

__all__ = [
    "Wallet",
    "NFT",
    "Listing",
    "Offer",
    "Bid",
    "SettlementRecord",
    "ListingStatus",
    "OfferStatus",
    "SettlementStatus",
    "Operation",
    "LedgerStore",
]
