"""Shared fixtures: an in-memory ledger store and custodial test wallets."""

import copy
import itertools
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock

import pytest
from eth_account import Account

from execution.chain_client import Receipt
from execution.config import ContractAddresses, GasLimits, SettlementConfig
from execution.key_manager import AESKeyManager
from execution.pipeline import StepOutcome
from ledger.models import (
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

TEST_SECRET = "test-secret-with-enough-entropy-1234"
CHAIN_ID = 80002

TOKEN = "0x1000000000000000000000000000000000000001"
PROFILES = "0x2000000000000000000000000000000000000002"
AUCTION_HOUSE = "0x3000000000000000000000000000000000000003"
OFFER_BOOK = "0x4000000000000000000000000000000000000004"


class InMemoryLedgerStore:
    """LedgerStore double keeping rows in dicts; counts every write."""

    def __init__(self):
        self.users = {}
        self.nfts = {}
        self.listings = {}
        self.offers = {}
        self.bids = []
        self.settlements = {}
        self.writes = 0
        self._ids = {"nft": 0, "listing": 0, "offer": 0, "bid": 0}

    def _next(self, kind: str) -> int:
        self._ids[kind] += 1
        return self._ids[kind]

    # Test setup helpers (not counted as writes)

    def add_user(self, user_id: int, address: str, encrypted: Optional[str], username: str = None):
        self.users[user_id] = {
            "address": address,
            "encrypted": encrypted,
            "username": username or f"user{user_id}",
        }

    def add_nft(self, owner_id: int, token_id: int, contract: str = PROFILES) -> NFT:
        nft = NFT(id=self._next("nft"), contract_address=contract, token_id=token_id, owner_id=owner_id)
        self.nfts[nft.id] = nft
        return nft

    def add_listing(self, **fields) -> Listing:
        listing = Listing(id=self._next("listing"), **fields)
        self.listings[listing.id] = listing
        return listing

    def add_offer(self, **fields) -> Offer:
        offer = Offer(id=self._next("offer"), **fields)
        self.offers[offer.id] = offer
        return offer

    @asynccontextmanager
    async def transaction(self):
        snapshot = copy.deepcopy(
            (self.nfts, self.listings, self.offers, self.bids, self.settlements)
        )
        try:
            yield self
        except BaseException:
            self.nfts, self.listings, self.offers, self.bids, self.settlements = snapshot
            raise

    # Users & wallets

    async def get_wallet(self, user_id: int) -> Optional[Wallet]:
        user = self.users.get(user_id)
        if user is None or user["address"] is None:
            return None
        return Wallet(
            user_id=user_id,
            address=user["address"],
            encrypted_private_key=user["encrypted"],
            username=user["username"],
        )

    async def save_wallet(self, user_id: int, address: str, encrypted_private_key: str) -> None:
        user = self.users.get(user_id)
        if user is None or user["address"] is not None:
            raise ValueError(f"User {user_id} does not exist or already has a wallet")
        self.writes += 1
        user["address"] = address
        user["encrypted"] = encrypted_private_key

    async def find_user_by_address(self, address: Optional[str]) -> Optional[int]:
        if not address:
            return None
        for user_id, user in self.users.items():
            if user["address"] and user["address"].lower() == address.lower():
                return user_id
        return None

    # NFTs

    async def get_nft(self, nft_id: int) -> Optional[NFT]:
        return copy.copy(self.nfts.get(nft_id))

    async def find_nft(self, contract_address: str, token_id: int) -> Optional[NFT]:
        for nft in self.nfts.values():
            if nft.contract_address.lower() == contract_address.lower() and nft.token_id == token_id:
                return copy.copy(nft)
        return None

    async def upsert_nft(self, contract_address, token_id, owner_id, metadata_uri=None) -> NFT:
        self.writes += 1
        for nft in self.nfts.values():
            if nft.contract_address.lower() == contract_address.lower() and nft.token_id == token_id:
                nft.owner_id = owner_id
                nft.metadata_uri = metadata_uri or nft.metadata_uri
                return copy.copy(nft)
        nft = NFT(
            id=self._next("nft"),
            contract_address=contract_address,
            token_id=token_id,
            owner_id=owner_id,
            metadata_uri=metadata_uri,
        )
        self.nfts[nft.id] = nft
        return copy.copy(nft)

    async def update_nft_owner(self, nft_id: int, owner_id: Optional[int]) -> None:
        self.writes += 1
        self.nfts[nft_id].owner_id = owner_id

    # Listings

    async def get_listing(self, listing_id: int) -> Optional[Listing]:
        return copy.copy(self.listings.get(listing_id))

    async def find_listing_by_nft(
        self,
        nft_id: int,
        statuses=(ListingStatus.INACTIVE, ListingStatus.ACTIVE),
    ) -> Optional[Listing]:
        matches = [l for l in self.listings.values() if l.nft_id == nft_id and l.status in statuses]
        return copy.copy(matches[-1]) if matches else None

    async def create_listing(self, nft_id: int, seller_id: int, price: Decimal = Decimal("0")) -> Listing:
        self.writes += 1
        listing = Listing(id=self._next("listing"), nft_id=nft_id, seller_id=seller_id, price=price)
        self.listings[listing.id] = listing
        return copy.copy(listing)

    async def update_listing(self, listing_id: int, **fields) -> Listing:
        self.writes += 1
        listing = self.listings.get(listing_id)
        if listing is None:
            raise ValueError(f"Listing {listing_id} not found")
        for name, value in fields.items():
            if not hasattr(listing, name):
                raise ValueError(f"Unknown listing column: {name}")
            setattr(listing, name, value)
        return copy.copy(listing)

    # Offers & bids

    async def get_offer(self, offer_id: int) -> Optional[Offer]:
        return copy.copy(self.offers.get(offer_id))

    async def create_offer(self, listing_id, buyer_id, amount, tx_hash) -> Offer:
        self.writes += 1
        for offer in self.offers.values():
            if offer.transaction_hash == tx_hash:
                return copy.copy(offer)
        offer = Offer(
            id=self._next("offer"),
            listing_id=listing_id,
            buyer_id=buyer_id,
            amount=amount,
            transaction_hash=tx_hash,
        )
        self.offers[offer.id] = offer
        return copy.copy(offer)

    async def update_offer_status(self, offer_id: int, status: OfferStatus, tx_hash: Optional[str] = None) -> None:
        self.writes += 1
        offer = self.offers[offer_id]
        offer.status = status
        if tx_hash:
            offer.transaction_hash = tx_hash

    async def add_bid(self, listing_id, bidder_id, amount, tx_hash, bidder_address=None) -> bool:
        self.writes += 1
        if any(b.transaction_hash == tx_hash for b in self.bids):
            return False
        self.bids.append(Bid(
            id=self._next("bid"),
            listing_id=listing_id,
            bidder_id=bidder_id,
            amount=amount,
            transaction_hash=tx_hash,
            bidder_address=bidder_address,
        ))
        return True

    async def list_bids(self, listing_id: int):
        return [copy.copy(b) for b in self.bids if b.listing_id == listing_id]

    # Settlement log

    async def record_settlement(self, record: SettlementRecord) -> None:
        self.writes += 1
        if record.tx_hash not in self.settlements:
            self.settlements[record.tx_hash] = copy.deepcopy(record)

    async def get_settlement(self, tx_hash: str) -> Optional[SettlementRecord]:
        return copy.deepcopy(self.settlements.get(tx_hash))

    async def update_settlement(self, tx_hash, status: SettlementStatus, error=None, context=None) -> None:
        self.writes += 1
        record = self.settlements.get(tx_hash)
        if record is None:
            return
        record.status = status
        record.error = error
        if context is not None:
            record.context = dict(context)

    async def list_open_settlements(self, limit: int = 100):
        return [
            copy.deepcopy(r) for r in self.settlements.values() if r.status.is_open
        ][:limit]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def key_manager():
    return AESKeyManager(TEST_SECRET, chain_id=CHAIN_ID)


@pytest.fixture
def addresses():
    return ContractAddresses(
        token=TOKEN,
        profiles=PROFILES,
        auction_house=AUCTION_HOUSE,
        offer_book=OFFER_BOOK,
    )


@pytest.fixture
def settlement_config(addresses):
    return SettlementConfig(
        rpc_url="http://localhost:8545",
        chain_id=CHAIN_ID,
        key_encryption_secret=TEST_SECRET,
        admin_address="",
        admin_encrypted_key="",
        min_tip_gwei=Decimal("50"),
        approval_fee_cap_gwei=None,
        reconcile_max_tries=1,
        contracts=addresses,
        gas=GasLimits(),
    )


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def mock_pipeline():
    """Pipeline double honouring prechecks and skip conditions."""
    pipeline = AsyncMock()
    counter = itertools.count(1)

    async def execute(plan):
        outcomes = []
        for step in plan.steps:
            if step.precheck is not None:
                await step.precheck()
            if step.skip_when is not None and await step.skip_when():
                outcomes.append(StepOutcome(name=step.name, skipped=True))
                continue
            receipt = Receipt(
                tx_hash=f"0x{next(counter):064x}", block_number=100, status=1, gas_used=50_000
            )
            outcomes.append(StepOutcome(name=step.name, receipt=receipt))
        return outcomes

    pipeline.execute.side_effect = execute
    return pipeline


@pytest.fixture
def make_account(key_manager):
    """Create a real account; returns (address, encrypted key)."""
    def _make():
        account = Account.create()
        return account.address, key_manager.encrypt(bytes(account.key))
    return _make
