"""Tests for the Settlement Orchestrator module."""

import base64
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from execution.chain_client import Receipt
from execution.contracts import ZERO_ADDRESS, AuctionState, OfferState
from execution.errors import KeyCustodyError, PreconditionError
from execution.orchestrator import SettlementOrchestrator
from execution.reconciler import LedgerReconciler
from ledger.models import (
    ListingStatus,
    OfferStatus,
    Operation,
    SettlementRecord,
    SettlementStatus,
)

from conftest import PROFILES

NOW = 1_700_000_000
UNIT = 10**18

SELLER, BOB, CAROL, ALICE = 1, 2, 3, 4


def auction(highest=10, bidder=None, ended=False, end_at=NOW + 600, auction_id=3, seller=None):
    return AuctionState(
        auction_id=auction_id,
        seller=seller or ZERO_ADDRESS,
        nft_address=PROFILES,
        token_id=7,
        starting_bid=5 * UNIT,
        highest_bid=int(highest * UNIT),
        highest_bidder=bidder or ZERO_ADDRESS,
        end_at=end_at,
        ended=ended,
    )


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def wallets(store, make_account):
    """Custodial wallets for seller, Bob, Carol and Alice."""
    accounts = {}
    for user_id in (SELLER, BOB, CAROL, ALICE):
        address, encrypted = make_account()
        store.add_user(user_id, address, encrypted)
        accounts[user_id] = address
    return accounts


@pytest.fixture
def nft(store, wallets):
    return store.add_nft(owner_id=SELLER, token_id=7)


@pytest.fixture
def listing(store, nft, wallets):
    """Active auction with Alice holding the highest bid of 10."""
    return store.add_listing(
        nft_id=nft.id,
        seller_id=SELLER,
        price=Decimal("5"),
        status=ListingStatus.ACTIVE,
        auction_id=3,
        highest_bid_amount=Decimal("10"),
        highest_bidder_id=ALICE,
    )


@pytest.fixture
def mock_chain():
    """Mock chain client."""
    chain = AsyncMock()
    chain.get_latest_timestamp = AsyncMock(return_value=NOW)
    return chain


@pytest.fixture
def mock_contracts(addresses):
    """Mock marketplace contracts; call builders return placeholders."""
    contracts = MagicMock()
    contracts.addresses = addresses
    contracts.get_auction = AsyncMock()
    contracts.get_offer = AsyncMock()
    contracts.nft_owner = AsyncMock()
    contracts.token_balance = AsyncMock(return_value=1_000 * UNIT)
    contracts.token_allowance = AsyncMock(return_value=0)
    contracts.is_operator_approved = AsyncMock(return_value=True)
    return contracts


@pytest.fixture
def orchestrator(store, mock_chain, mock_contracts, key_manager, mock_pipeline, settlement_config):
    reconciler = LedgerReconciler(store, mock_contracts, max_tries=1)
    return SettlementOrchestrator(
        store=store,
        chain=mock_chain,
        contracts=mock_contracts,
        keys=key_manager,
        pipeline=mock_pipeline,
        reconciler=reconciler,
        config=settlement_config,
    )


# ============================================================================
# Bids
# ============================================================================

class TestPlaceBid:
    """Tests for bidding."""

    @pytest.mark.asyncio
    async def test_outbid_then_lower_bid_rejected(
        self, orchestrator, store, listing, wallets, mock_contracts, mock_pipeline
    ):
        """Bob outbids Alice with 15; Carol's 12 never reaches the chain."""
        mock_contracts.get_auction.side_effect = [
            auction(10, wallets[ALICE]),
            auction(15, wallets[BOB]),
        ]

        result = await orchestrator.place_bid(BOB, listing.id, Decimal("15"))

        row = store.listings[listing.id]
        assert row.highest_bid_amount == Decimal("15")
        assert row.highest_bidder_id == BOB
        assert row.transaction_hash == result.transaction_hash
        assert len(store.bids) == 1
        assert store.settlements[result.transaction_hash].status == SettlementStatus.RECONCILED
        assert len(result.approval_transaction_hashes) == 1

        with pytest.raises(PreconditionError):
            await orchestrator.place_bid(CAROL, listing.id, Decimal("12"))

        assert mock_pipeline.execute.await_count == 1
        assert mock_contracts.get_auction.await_count == 2
        assert store.listings[listing.id].highest_bidder_id == BOB

    @pytest.mark.asyncio
    async def test_existing_allowance_skips_approval(
        self, orchestrator, listing, wallets, mock_contracts
    ):
        mock_contracts.token_allowance.return_value = 100 * UNIT
        mock_contracts.get_auction.side_effect = [
            auction(10, wallets[ALICE]),
            auction(15, wallets[BOB]),
        ]

        result = await orchestrator.place_bid(BOB, listing.id, Decimal("15"))

        assert result.approval_transaction_hashes == []
        assert result.transaction_hash is not None

    @pytest.mark.asyncio
    async def test_stale_local_bid_resynced(
        self, orchestrator, store, listing, wallets, mock_contracts, mock_pipeline
    ):
        """Chain ahead of the ledger: row converges, bid rejected."""
        mock_contracts.get_auction.return_value = auction(14, wallets[ALICE])

        with pytest.raises(PreconditionError):
            await orchestrator.place_bid(CAROL, listing.id, Decimal("12"))

        assert store.listings[listing.id].highest_bid_amount == Decimal("14")
        mock_pipeline.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_tampered_key_touches_nothing(
        self, orchestrator, store, listing, mock_chain, mock_contracts, mock_pipeline
    ):
        """A corrupted key fails before any chain call or ledger write."""
        data = bytearray(base64.b64decode(store.users[BOB]["encrypted"]))
        data[-1] ^= 0x01
        store.users[BOB]["encrypted"] = base64.b64encode(bytes(data)).decode("utf-8")

        with pytest.raises(KeyCustodyError):
            await orchestrator.place_bid(BOB, listing.id, Decimal("15"))

        mock_contracts.get_auction.assert_not_awaited()
        mock_contracts.token_balance.assert_not_awaited()
        mock_chain.get_latest_timestamp.assert_not_awaited()
        mock_pipeline.execute.assert_not_awaited()
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_seller_cannot_bid(self, orchestrator, listing):
        with pytest.raises(PreconditionError):
            await orchestrator.place_bid(SELLER, listing.id, Decimal("50"))

    @pytest.mark.asyncio
    async def test_closed_auction(self, orchestrator, listing, wallets, mock_contracts, mock_pipeline):
        mock_contracts.get_auction.return_value = auction(10, wallets[ALICE], end_at=NOW - 1)

        with pytest.raises(PreconditionError):
            await orchestrator.place_bid(BOB, listing.id, Decimal("15"))

        mock_pipeline.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, orchestrator, listing, wallets, mock_contracts, mock_pipeline):
        mock_contracts.get_auction.return_value = auction(10, wallets[ALICE])
        mock_contracts.token_balance.return_value = 1 * UNIT

        with pytest.raises(PreconditionError):
            await orchestrator.place_bid(BOB, listing.id, Decimal("15"))

        mock_pipeline.execute.assert_not_awaited()


# ============================================================================
# Buy now / end auction
# ============================================================================

class TestSettlement:
    """Tests for buy-now and auction end."""

    @pytest.mark.asyncio
    async def test_buy_now(self, orchestrator, store, listing, nft, wallets, mock_contracts):
        mock_contracts.get_auction.side_effect = [
            auction(10, wallets[ALICE]),
            auction(10, wallets[BOB], ended=True),
        ]

        result = await orchestrator.buy_now(BOB, listing.id)

        row = store.listings[listing.id]
        assert result.listing_status == ListingStatus.SOLD
        assert row.winner_id == BOB
        assert row.winner_address == wallets[BOB]
        assert row.winning_amount == Decimal("10")
        assert store.nfts[nft.id].owner_id == BOB

    @pytest.mark.asyncio
    async def test_buy_now_takes_outcome_from_chain(
        self, orchestrator, store, listing, nft, wallets, mock_contracts
    ):
        """Ledger converges on the auction as read after confirmation."""
        mock_contracts.get_auction.side_effect = [
            auction(10, wallets[ALICE]),
            auction(11, wallets[BOB], ended=True),
        ]

        await orchestrator.buy_now(BOB, listing.id)

        row = store.listings[listing.id]
        assert row.status == ListingStatus.SOLD
        assert row.winning_amount == Decimal("11")
        assert row.highest_bid_amount == Decimal("11")
        assert row.highest_bidder_id == BOB
        assert store.nfts[nft.id].owner_id == BOB
        assert mock_contracts.get_auction.await_count == 2

    @pytest.mark.asyncio
    async def test_buy_now_without_price(self, orchestrator, store, nft, mock_contracts, mock_pipeline):
        """Zero price is rejected before reading the chain."""
        free = store.add_listing(
            nft_id=nft.id, seller_id=SELLER, price=Decimal("0"),
            status=ListingStatus.ACTIVE, auction_id=4,
        )

        with pytest.raises(PreconditionError):
            await orchestrator.buy_now(BOB, free.id)

        mock_contracts.get_auction.assert_not_awaited()
        mock_pipeline.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_buy_now_zero_on_chain(self, orchestrator, listing, mock_contracts, mock_pipeline):
        mock_contracts.get_auction.return_value = auction(0)

        with pytest.raises(PreconditionError):
            await orchestrator.buy_now(BOB, listing.id)

        mock_pipeline.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_end_auction_without_bids(self, orchestrator, store, listing, nft, mock_contracts):
        """No bidder: listing ends with no winner, NFT stays with the seller."""
        mock_contracts.get_auction.side_effect = [
            auction(5, end_at=NOW - 1),
            auction(5, ended=True, end_at=NOW - 1),
        ]

        result = await orchestrator.end_auction(SELLER, listing.id)

        row = store.listings[listing.id]
        assert result.listing_status == ListingStatus.ENDED
        assert row.winner_id is None
        assert row.winner_address is None
        assert row.winning_amount is None
        assert store.nfts[nft.id].owner_id == SELLER

    @pytest.mark.asyncio
    async def test_end_auction_with_winner(self, orchestrator, store, listing, nft, wallets, mock_contracts):
        mock_contracts.get_auction.side_effect = [
            auction(15, wallets[BOB], end_at=NOW - 1),
            auction(15, wallets[BOB], ended=True, end_at=NOW - 1),
        ]

        result = await orchestrator.end_auction(SELLER, listing.id)

        row = store.listings[listing.id]
        assert result.listing_status == ListingStatus.SOLD
        assert row.winner_id == BOB
        assert row.winning_amount == Decimal("15")
        assert store.nfts[nft.id].owner_id == BOB

    @pytest.mark.asyncio
    async def test_end_auction_too_early(self, orchestrator, listing, mock_contracts, mock_pipeline):
        mock_contracts.get_auction.return_value = auction(10, end_at=NOW + 60)

        with pytest.raises(PreconditionError):
            await orchestrator.end_auction(SELLER, listing.id)

        mock_pipeline.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_end_auction_settled_elsewhere(
        self, orchestrator, store, listing, wallets, mock_contracts, mock_pipeline
    ):
        """Already ended on chain: ledger resynced, nothing submitted."""
        mock_contracts.get_auction.return_value = auction(15, wallets[BOB], ended=True, end_at=NOW - 1)

        with pytest.raises(PreconditionError):
            await orchestrator.end_auction(SELLER, listing.id)

        assert store.listings[listing.id].status == ListingStatus.SOLD
        mock_pipeline.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_only_seller_ends(self, orchestrator, listing):
        with pytest.raises(PreconditionError):
            await orchestrator.end_auction(BOB, listing.id)


# ============================================================================
# Listings
# ============================================================================

class TestListings:
    """Tests for listing creation and cancellation."""

    @pytest.mark.asyncio
    async def test_create_listing(self, orchestrator, store, nft, wallets, mock_contracts):
        mock_contracts.nft_owner.return_value = wallets[SELLER]
        mock_contracts.auction_id_from_receipt.return_value = 9
        mock_contracts.get_auction.return_value = auction(5, auction_id=9, seller=wallets[SELLER])

        result = await orchestrator.create_listing(SELLER, nft.id, Decimal("5"))

        row = store.listings[result.listing_id]
        assert result.auction_id == 9
        assert row.status == ListingStatus.ACTIVE
        assert row.auction_id == 9
        assert row.price == Decimal("5")
        assert row.auction_end_time is not None

    @pytest.mark.asyncio
    async def test_create_listing_requires_approval(self, orchestrator, nft, wallets, mock_contracts, mock_pipeline):
        mock_contracts.nft_owner.return_value = wallets[SELLER]
        mock_contracts.is_operator_approved.return_value = False

        with pytest.raises(PreconditionError):
            await orchestrator.create_listing(SELLER, nft.id, Decimal("5"))

        mock_pipeline.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_approve_listing_already_approved(self, orchestrator, nft, wallets, mock_contracts):
        mock_contracts.nft_owner.return_value = wallets[SELLER]

        result = await orchestrator.approve_listing(SELLER, nft.id)

        assert result.transaction_hash is None

    @pytest.mark.asyncio
    async def test_cancel_inactive_listing(self, orchestrator, store, nft):
        draft = store.add_listing(nft_id=nft.id, seller_id=SELLER)

        result = await orchestrator.cancel_listing(SELLER, draft.id)

        assert result.listing_status == ListingStatus.CANCELLED
        assert store.listings[draft.id].status == ListingStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cannot_cancel_live_auction(self, orchestrator, listing):
        with pytest.raises(PreconditionError):
            await orchestrator.cancel_listing(SELLER, listing.id)


# ============================================================================
# Offers
# ============================================================================

class TestOffers:
    """Tests for the offer protocols."""

    @pytest.fixture
    def offer(self, store, listing):
        return store.add_offer(listing_id=listing.id, buyer_id=BOB, amount=Decimal("12"))

    @pytest.mark.asyncio
    async def test_make_offer(self, orchestrator, store, listing):
        result = await orchestrator.make_offer(CAROL, listing.id, Decimal("11"))

        offer = store.offers[result.offer_id]
        assert offer.buyer_id == CAROL
        assert offer.amount == Decimal("11")
        assert offer.status == OfferStatus.PENDING
        assert offer.transaction_hash == result.transaction_hash

    @pytest.mark.asyncio
    async def test_accept_offer(self, orchestrator, store, listing, nft, offer, wallets, mock_contracts):
        mock_contracts.nft_owner.return_value = wallets[SELLER]
        mock_contracts.get_offer.return_value = OfferState(amount=12 * UNIT, active=True)

        result = await orchestrator.accept_offer(SELLER, offer.id)

        row = store.listings[listing.id]
        assert result.listing_status == ListingStatus.SOLD
        assert store.offers[offer.id].status == OfferStatus.ACCEPTED
        assert row.winner_id == BOB
        assert row.winning_amount == Decimal("12")
        assert store.nfts[nft.id].owner_id == BOB

    @pytest.mark.asyncio
    async def test_withdrawn_offer_not_accepted(
        self, orchestrator, store, listing, offer, wallets, mock_contracts, mock_pipeline
    ):
        mock_contracts.nft_owner.return_value = wallets[SELLER]
        mock_contracts.get_offer.return_value = OfferState(amount=0, active=False)

        with pytest.raises(PreconditionError):
            await orchestrator.accept_offer(SELLER, offer.id)

        mock_pipeline.execute.assert_not_awaited()
        assert store.offers[offer.id].status == OfferStatus.PENDING

    @pytest.mark.asyncio
    async def test_offer_withdrawn_before_submission(
        self, orchestrator, store, listing, offer, wallets, mock_contracts
    ):
        """Re-validation right before the accept call catches a late cancel."""
        mock_contracts.nft_owner.return_value = wallets[SELLER]
        mock_contracts.get_offer.side_effect = [
            OfferState(amount=12 * UNIT, active=True),
            OfferState(amount=0, active=False),
        ]

        with pytest.raises(PreconditionError):
            await orchestrator.accept_offer(SELLER, offer.id)

        assert store.offers[offer.id].status == OfferStatus.PENDING
        assert store.listings[listing.id].status == ListingStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_changed_amount_not_accepted(self, orchestrator, offer, wallets, mock_contracts):
        mock_contracts.nft_owner.return_value = wallets[SELLER]
        mock_contracts.get_offer.return_value = OfferState(amount=3 * UNIT, active=True)

        with pytest.raises(PreconditionError):
            await orchestrator.accept_offer(SELLER, offer.id)

    @pytest.mark.asyncio
    async def test_cancel_offer(self, orchestrator, store, offer, mock_contracts):
        mock_contracts.get_offer.return_value = OfferState(amount=12 * UNIT, active=True)

        await orchestrator.cancel_offer(BOB, offer.id)

        assert store.offers[offer.id].status == OfferStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_only_buyer_cancels(self, orchestrator, offer):
        with pytest.raises(PreconditionError):
            await orchestrator.cancel_offer(CAROL, offer.id)


# ============================================================================
# Recovery
# ============================================================================

class TestRecovery:
    """Tests for reconciling transactions whose outcome was never recorded."""

    @pytest.fixture
    def pending_bid(self, store, listing, wallets):
        record = SettlementRecord(
            tx_hash="0x" + "aa" * 32,
            operation=Operation.PLACE_BID.value,
            wallet_address=wallets[BOB],
            listing_id=listing.id,
            context={"amount": str(15 * UNIT), "auction_id": 3},
        )
        store.settlements[record.tx_hash] = record
        return record

    @pytest.mark.asyncio
    async def test_landed_bid_reconciled(
        self, orchestrator, store, listing, pending_bid, wallets, mock_chain, mock_contracts
    ):
        mock_chain.get_receipt.return_value = Receipt(
            tx_hash=pending_bid.tx_hash, block_number=100, status=1, gas_used=1
        )
        mock_contracts.get_auction.return_value = auction(15, wallets[BOB])

        results = await orchestrator.recover_pending()

        assert len(results) == 1
        assert store.settlements[pending_bid.tx_hash].status == SettlementStatus.RECONCILED
        assert store.listings[listing.id].highest_bidder_id == BOB
        assert store.bids[0].amount == Decimal("15")

    @pytest.mark.asyncio
    async def test_still_pending_left_open(self, orchestrator, store, pending_bid, mock_chain):
        mock_chain.get_receipt.return_value = None

        assert await orchestrator.recover_pending() == []
        assert store.settlements[pending_bid.tx_hash].status == SettlementStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_reverted_marked_failed(self, orchestrator, store, pending_bid, mock_chain):
        mock_chain.get_receipt.return_value = Receipt(
            tx_hash=pending_bid.tx_hash, block_number=100, status=0, gas_used=1
        )

        assert await orchestrator.recover_pending() == []
        assert store.settlements[pending_bid.tx_hash].status == SettlementStatus.FAILED


# ============================================================================
# Result payloads
# ============================================================================

class TestSettlementResult:
    """Tests for the success payload."""

    @pytest.mark.asyncio
    async def test_to_dict(self, orchestrator, listing, wallets, mock_contracts):
        mock_contracts.get_auction.side_effect = [
            auction(10, wallets[ALICE]),
            auction(15, wallets[BOB]),
        ]

        result = await orchestrator.place_bid(BOB, listing.id, Decimal("15"))
        payload = result.to_dict()

        assert payload["operation"] == "place_bid"
        assert payload["transactionHash"] == result.transaction_hash
        assert payload["listingId"] == listing.id
        assert payload["status"] == "active"
        assert len(payload["approvalTransactionHashes"]) == 1
