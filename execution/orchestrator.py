"""
Settlement Orchestrator - marketplace protocols as ordered transaction steps.

Every operation follows the same flow:

    local preconditions → key check → on-chain preconditions
        → pipeline (approve?, act) → post-state read → reconcile

Nothing touches the chain before the caller's key authenticates, and no
transaction is submitted before every precondition passed. Once a hash
exists it is carried on every error raised afterwards.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from ledger.models import (
    Listing,
    ListingStatus,
    Offer,
    OfferStatus,
    Operation,
    SettlementStatus,
    Wallet,
)
from ledger.store import LedgerStore

from .chain_client import ChainClient, Receipt
from .config import SettlementConfig
from .contracts import AuctionState, MarketplaceContracts, same_address, to_base_units
from .errors import PreconditionError, SettlementError
from .key_manager import AESKeyManager
from .pipeline import SettlementPipeline, SettlementPlan, SettlementStep, StepOutcome
from .priority_fees import gwei_to_wei
from .reconciler import LedgerReconciler, ProtocolResult, ReconciledRecord

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    """Success payload returned to the route layer."""

    operation: Operation
    transaction_hash: Optional[str] = None
    approval_transaction_hashes: List[str] = field(default_factory=list)
    listing_id: Optional[int] = None
    offer_id: Optional[int] = None
    auction_id: Optional[int] = None
    token_id: Optional[int] = None
    listing_status: Optional[ListingStatus] = None

    def to_dict(self) -> dict:
        payload = {"operation": self.operation.value, "transactionHash": self.transaction_hash}
        if self.approval_transaction_hashes:
            payload["approvalTransactionHashes"] = list(self.approval_transaction_hashes)
        for key, value in (
            ("listingId", self.listing_id),
            ("offerId", self.offer_id),
            ("auctionId", self.auction_id),
            ("tokenId", self.token_id),
        ):
            if value is not None:
                payload[key] = value
        if self.listing_status is not None:
            payload["status"] = self.listing_status.value
        return payload

    def __str__(self) -> str:
        return f"{self.operation.value}: {self.transaction_hash or 'no transaction'}"


class SettlementOrchestrator:
    """
    Runs marketplace settlement protocols on behalf of custodial users.

    The chain is the arbiter of conflicting bids and purchases; the ledger is
    resynchronized from it whenever a local value would contradict it.
    """

    def __init__(
        self,
        store: LedgerStore,
        chain: ChainClient,
        contracts: MarketplaceContracts,
        keys: AESKeyManager,
        pipeline: SettlementPipeline,
        reconciler: LedgerReconciler,
        config: SettlementConfig,
    ):
        self.store = store
        self.chain = chain
        self.contracts = contracts
        self.keys = keys
        self.pipeline = pipeline
        self.reconciler = reconciler
        self.config = config

        self._approval_cap = (
            gwei_to_wei(config.approval_fee_cap_gwei)
            if config.approval_fee_cap_gwei is not None
            else None
        )

    # =========================================================================
    # Shared helpers
    # =========================================================================

    def _units(self, amount: Decimal) -> int:
        return to_base_units(amount, self.config.token_decimals)

    async def _wallet(self, user_id: int) -> Wallet:
        wallet = await self.store.get_wallet(user_id)
        if wallet is None:
            raise PreconditionError(f"User {user_id} has no custodial wallet")
        return wallet

    async def _listing(self, listing_id: int) -> Listing:
        listing = await self.store.get_listing(listing_id)
        if listing is None:
            raise PreconditionError(f"Listing {listing_id} not found")
        return listing

    async def _active_listing(self, listing_id: int) -> Listing:
        listing = await self._listing(listing_id)
        if listing.status != ListingStatus.ACTIVE:
            raise PreconditionError(f"Listing {listing_id} is {listing.status.value}, not active")
        if listing.auction_id is None:
            raise PreconditionError(f"Listing {listing_id} has no on-chain auction")
        return listing

    async def _pending_offer(self, offer_id: int) -> Offer:
        offer = await self.store.get_offer(offer_id)
        if offer is None:
            raise PreconditionError(f"Offer {offer_id} not found")
        if offer.status != OfferStatus.PENDING:
            raise PreconditionError(f"Offer {offer_id} is {offer.status.value}")
        return offer

    async def _nft_of(self, listing: Listing):
        nft = await self.store.get_nft(listing.nft_id)
        if nft is None:
            raise PreconditionError(f"NFT {listing.nft_id} of listing {listing.id} not found")
        return nft

    async def _open_auction(self, listing: Listing) -> AuctionState:
        """Chain auction for an active listing, resyncing and rejecting if it closed."""
        auction = await self.contracts.get_auction(listing.auction_id)
        now = await self.chain.get_latest_timestamp()
        if not auction.is_open(now):
            if auction.ended:
                await self.reconciler.resync_listing(listing)
            raise PreconditionError(f"Auction {listing.auction_id} is closed")
        return auction

    def _token_approval(self, owner: str, spender: str, amount: int) -> SettlementStep:
        async def allowance_sufficient() -> bool:
            return await self.contracts.token_allowance(owner, spender) >= amount

        return SettlementStep(
            name="approve_token",
            call=self.contracts.approve_token(spender, amount),
            skip_when=allowance_sufficient,
            max_fee_cap=self._approval_cap,
        )

    def _nft_approval(self, owner: str, operator: str, token_id: int, nft_address: str) -> SettlementStep:
        async def already_approved() -> bool:
            return await self.contracts.is_operator_approved(owner, operator, token_id, nft_address)

        return SettlementStep(
            name="approve_nft",
            call=self.contracts.approve_nft(operator, token_id, nft_address),
            skip_when=already_approved,
            max_fee_cap=self._approval_cap,
        )

    async def _run(self, plan: SettlementPlan) -> List[StepOutcome]:
        outcomes = await self.pipeline.execute(plan)
        logger.info(
            f"{plan.operation.value} for {plan.wallet_address[:10]}...: "
            + ", ".join(f"{o.name}={'skipped' if o.skipped else o.tx_hash}" for o in outcomes)
        )
        return outcomes

    async def _finish(self, outcomes: List[StepOutcome], build) -> SettlementResult:
        """
        Reconcile the settling step's receipt.

        `build(receipt)` reads post-confirmation chain state and returns the
        ProtocolResult; any error from here on carries the transaction hash.
        """
        receipt = outcomes[-1].receipt
        approvals = [o.tx_hash for o in outcomes[:-1] if o.tx_hash]

        try:
            result: ProtocolResult = await build(receipt)
            record: ReconciledRecord = await self.reconciler.reconcile(result)
        except SettlementError as e:
            if e.tx_hash is None:
                e.tx_hash = receipt.tx_hash
            raise

        return SettlementResult(
            operation=result.operation,
            transaction_hash=receipt.tx_hash,
            approval_transaction_hashes=approvals,
            listing_id=result.listing_id,
            offer_id=result.offer_id,
            auction_id=result.auction_id,
            token_id=result.token_id,
            listing_status=record.listing.status if record.listing else None,
        )

    # =========================================================================
    # Listings
    # =========================================================================

    async def approve_listing(self, seller_id: int, nft_id: int) -> SettlementResult:
        """Approve the auction house to transfer the seller's NFT."""
        nft = await self.store.get_nft(nft_id)
        if nft is None or nft.owner_id != seller_id:
            raise PreconditionError(f"User {seller_id} does not own NFT {nft_id}")
        wallet = await self._wallet(seller_id)
        self.keys.check(wallet.encrypted_private_key)

        owner = await self.contracts.nft_owner(nft.token_id, nft.contract_address)
        if not same_address(owner, wallet.address):
            raise PreconditionError(f"NFT {nft_id} is not held by the seller's wallet")

        plan = SettlementPlan(
            operation=Operation.APPROVE_LISTING,
            wallet_address=wallet.address,
            encrypted_key=wallet.encrypted_private_key,
            steps=[self._nft_approval(
                wallet.address, self.contracts.addresses.auction_house, nft.token_id, nft.contract_address
            )],
        )
        outcomes = await self._run(plan)
        return SettlementResult(
            operation=Operation.APPROVE_LISTING,
            transaction_hash=outcomes[0].tx_hash,
        )

    async def create_listing(
        self,
        seller_id: int,
        nft_id: int,
        starting_bid: Decimal,
        duration_seconds: Optional[int] = None,
    ) -> SettlementResult:
        """Create an auction for the seller's NFT: none → active."""
        if starting_bid <= 0:
            raise PreconditionError("Starting bid must be positive")

        nft = await self.store.get_nft(nft_id)
        if nft is None or nft.owner_id != seller_id:
            raise PreconditionError(f"User {seller_id} does not own NFT {nft_id}")

        listing = await self.store.find_listing_by_nft(nft_id)
        if listing is not None and listing.status != ListingStatus.INACTIVE:
            raise PreconditionError(f"NFT {nft_id} is already listed (listing {listing.id})")

        wallet = await self._wallet(seller_id)
        self.keys.check(wallet.encrypted_private_key)

        auction_house = self.contracts.addresses.auction_house
        owner = await self.contracts.nft_owner(nft.token_id, nft.contract_address)
        if not same_address(owner, wallet.address):
            raise PreconditionError(f"NFT {nft_id} is not held by the seller's wallet")
        if not await self.contracts.is_operator_approved(wallet.address, auction_house, nft.token_id, nft.contract_address):
            raise PreconditionError("Auction house is not approved for this NFT; approve the listing first")

        if listing is None:
            listing = await self.store.create_listing(nft_id, seller_id, starting_bid)

        duration = duration_seconds or self.config.auction_duration_seconds
        plan = SettlementPlan(
            operation=Operation.CREATE_LISTING,
            wallet_address=wallet.address,
            encrypted_key=wallet.encrypted_private_key,
            listing_id=listing.id,
            steps=[SettlementStep(
                name="create_auction",
                call=self.contracts.create_auction(
                    nft.contract_address, nft.token_id, self._units(starting_bid), duration
                ),
                settles=True,
            )],
        )
        outcomes = await self._run(plan)

        async def build(receipt: Receipt) -> ProtocolResult:
            auction_id = self.contracts.auction_id_from_receipt(receipt)
            return ProtocolResult(
                operation=Operation.CREATE_LISTING,
                receipt=receipt,
                wallet_address=wallet.address,
                listing_id=listing.id,
                auction_id=auction_id,
                auction=await self.contracts.get_auction(auction_id),
            )

        return await self._finish(outcomes, build)

    async def cancel_listing(self, seller_id: int, listing_id: int) -> SettlementResult:
        """Withdraw a listing that never reached the chain: inactive → cancelled."""
        listing = await self._listing(listing_id)
        if listing.seller_id != seller_id:
            raise PreconditionError("Only the seller can cancel a listing")
        if listing.status != ListingStatus.INACTIVE:
            raise PreconditionError(
                f"Listing {listing_id} is {listing.status.value}; only inactive listings can be cancelled"
            )

        listing = await self.store.update_listing(listing_id, status=ListingStatus.CANCELLED)
        logger.info(f"Cancelled listing {listing_id}")
        return SettlementResult(
            operation=Operation.CANCEL_LISTING,
            listing_id=listing_id,
            listing_status=listing.status,
        )

    # =========================================================================
    # Auctions
    # =========================================================================

    async def place_bid(self, bidder_id: int, listing_id: int, amount: Decimal) -> SettlementResult:
        """Bid on an active auction. Rejected before any transaction unless it beats the highest bid."""
        listing = await self._active_listing(listing_id)
        if listing.seller_id == bidder_id:
            raise PreconditionError("Seller cannot bid on their own listing")

        local_highest = listing.highest_bid_amount or listing.price or Decimal("0")
        if amount <= local_highest:
            raise PreconditionError(f"Bid {amount} does not exceed current highest {local_highest}")

        wallet = await self._wallet(bidder_id)
        self.keys.check(wallet.encrypted_private_key)

        auction = await self._open_auction(listing)
        amount_units = self._units(amount)
        if auction.highest_bid > self._units(local_highest):
            listing = await self.reconciler.resync_listing(listing)
        if amount_units <= auction.highest_bid:
            raise PreconditionError(f"Bid {amount} does not exceed current on-chain highest bid")
        if await self.contracts.token_balance(wallet.address) < amount_units:
            raise PreconditionError("Insufficient token balance for bid")

        auction_house = self.contracts.addresses.auction_house
        plan = SettlementPlan(
            operation=Operation.PLACE_BID,
            wallet_address=wallet.address,
            encrypted_key=wallet.encrypted_private_key,
            listing_id=listing.id,
            context={"amount": str(amount_units), "auction_id": listing.auction_id},
            steps=[
                self._token_approval(wallet.address, auction_house, amount_units),
                SettlementStep(
                    name="place_bid",
                    call=self.contracts.place_bid(listing.auction_id, amount_units),
                    settles=True,
                ),
            ],
        )
        outcomes = await self._run(plan)

        async def build(receipt: Receipt) -> ProtocolResult:
            return ProtocolResult(
                operation=Operation.PLACE_BID,
                receipt=receipt,
                wallet_address=wallet.address,
                listing_id=listing.id,
                amount=amount_units,
                auction_id=listing.auction_id,
                auction=await self.contracts.get_auction(listing.auction_id),
            )

        return await self._finish(outcomes, build)

    async def buy_now(self, buyer_id: int, listing_id: int) -> SettlementResult:
        """Buy at the current auction price: active → sold."""
        listing = await self._active_listing(listing_id)
        if listing.seller_id == buyer_id:
            raise PreconditionError("Seller cannot buy their own listing")

        local_price = listing.highest_bid_amount or listing.price or Decimal("0")
        if local_price <= 0:
            raise PreconditionError(f"Listing {listing_id} has no price to pay")

        wallet = await self._wallet(buyer_id)
        self.keys.check(wallet.encrypted_private_key)

        auction = await self._open_auction(listing)
        price = auction.highest_bid
        if price == 0:
            raise PreconditionError(f"Auction {listing.auction_id} has no price to pay")
        if await self.contracts.token_balance(wallet.address) < price:
            raise PreconditionError("Insufficient token balance to buy")

        auction_house = self.contracts.addresses.auction_house
        plan = SettlementPlan(
            operation=Operation.BUY_NOW,
            wallet_address=wallet.address,
            encrypted_key=wallet.encrypted_private_key,
            listing_id=listing.id,
            context={"amount": str(price), "auction_id": listing.auction_id},
            steps=[
                self._token_approval(wallet.address, auction_house, price),
                SettlementStep(
                    name="buy_now",
                    call=self.contracts.buy_now(listing.auction_id),
                    settles=True,
                ),
            ],
        )
        outcomes = await self._run(plan)

        async def build(receipt: Receipt) -> ProtocolResult:
            return ProtocolResult(
                operation=Operation.BUY_NOW,
                receipt=receipt,
                wallet_address=wallet.address,
                listing_id=listing.id,
                amount=price,
                auction_id=listing.auction_id,
                auction=await self.contracts.get_auction(listing.auction_id),
            )

        return await self._finish(outcomes, build)

    async def end_auction(self, seller_id: int, listing_id: int) -> SettlementResult:
        """Settle an elapsed auction: active → sold (winner) or ended (no bids)."""
        listing = await self._active_listing(listing_id)
        if listing.seller_id != seller_id:
            raise PreconditionError("Only the seller can end the auction")

        wallet = await self._wallet(seller_id)
        self.keys.check(wallet.encrypted_private_key)

        auction = await self.contracts.get_auction(listing.auction_id)
        if auction.ended:
            await self.reconciler.resync_listing(listing)
            raise PreconditionError(f"Auction {listing.auction_id} is already settled on chain")
        now = await self.chain.get_latest_timestamp()
        if now < auction.end_at:
            raise PreconditionError(
                f"Auction {listing.auction_id} ends in {auction.end_at - now}s"
            )

        plan = SettlementPlan(
            operation=Operation.END_AUCTION,
            wallet_address=wallet.address,
            encrypted_key=wallet.encrypted_private_key,
            listing_id=listing.id,
            context={"auction_id": listing.auction_id},
            steps=[SettlementStep(
                name="end_auction",
                call=self.contracts.end_auction(listing.auction_id),
                settles=True,
            )],
        )
        outcomes = await self._run(plan)

        async def build(receipt: Receipt) -> ProtocolResult:
            return ProtocolResult(
                operation=Operation.END_AUCTION,
                receipt=receipt,
                wallet_address=wallet.address,
                listing_id=listing.id,
                auction_id=listing.auction_id,
                auction=await self.contracts.get_auction(listing.auction_id),
            )

        return await self._finish(outcomes, build)

    # =========================================================================
    # Offers
    # =========================================================================

    async def make_offer(self, buyer_id: int, listing_id: int, amount: Decimal) -> SettlementResult:
        """Place a standing offer on a listed NFT."""
        if amount <= 0:
            raise PreconditionError("Offer amount must be positive")

        listing = await self._listing(listing_id)
        if listing.status != ListingStatus.ACTIVE:
            raise PreconditionError(f"Listing {listing_id} is {listing.status.value}, not open for offers")
        if listing.seller_id == buyer_id:
            raise PreconditionError("Seller cannot make an offer on their own listing")

        nft = await self._nft_of(listing)
        seller = await self._wallet(listing.seller_id)
        wallet = await self._wallet(buyer_id)
        self.keys.check(wallet.encrypted_private_key)

        amount_units = self._units(amount)
        if await self.contracts.token_balance(wallet.address) < amount_units:
            raise PreconditionError("Insufficient token balance for offer")

        offer_book = self.contracts.addresses.offer_book
        plan = SettlementPlan(
            operation=Operation.MAKE_OFFER,
            wallet_address=wallet.address,
            encrypted_key=wallet.encrypted_private_key,
            listing_id=listing.id,
            context={"amount": str(amount_units)},
            steps=[
                self._token_approval(wallet.address, offer_book, amount_units),
                SettlementStep(
                    name="make_offer",
                    call=self.contracts.make_offer(
                        nft.contract_address, nft.token_id, amount_units, seller.address
                    ),
                    settles=True,
                ),
            ],
        )
        outcomes = await self._run(plan)

        async def build(receipt: Receipt) -> ProtocolResult:
            return ProtocolResult(
                operation=Operation.MAKE_OFFER,
                receipt=receipt,
                wallet_address=wallet.address,
                listing_id=listing.id,
                amount=amount_units,
            )

        return await self._finish(outcomes, build)

    async def accept_offer(self, seller_id: int, offer_id: int) -> SettlementResult:
        """
        Accept a pending offer: offer accepted, listing sold, NFT to buyer.

        Chain state is re-validated immediately before the accept call is
        submitted; a stale local offer never reaches the chain.
        """
        offer = await self._pending_offer(offer_id)
        listing = await self._listing(offer.listing_id)
        if listing.seller_id != seller_id:
            raise PreconditionError("Only the seller can accept an offer")
        if listing.status != ListingStatus.ACTIVE:
            raise PreconditionError(f"Listing {listing.id} is {listing.status.value}")

        nft = await self._nft_of(listing)
        buyer = await self._wallet(offer.buyer_id)
        wallet = await self._wallet(seller_id)
        self.keys.check(wallet.encrypted_private_key)

        amount_units = self._units(offer.amount)

        async def revalidate() -> None:
            owner = await self.contracts.nft_owner(nft.token_id, nft.contract_address)
            if not same_address(owner, wallet.address):
                raise PreconditionError(f"Seller no longer holds NFT {nft.id}")
            state = await self.contracts.get_offer(nft.contract_address, nft.token_id, buyer.address)
            if not state.active or state.amount != amount_units:
                raise PreconditionError(f"Offer {offer_id} is no longer active on chain")

        await revalidate()

        offer_book = self.contracts.addresses.offer_book
        plan = SettlementPlan(
            operation=Operation.ACCEPT_OFFER,
            wallet_address=wallet.address,
            encrypted_key=wallet.encrypted_private_key,
            listing_id=listing.id,
            offer_id=offer.id,
            context={"amount": str(amount_units)},
            steps=[
                self._nft_approval(wallet.address, offer_book, nft.token_id, nft.contract_address),
                SettlementStep(
                    name="accept_offer",
                    call=self.contracts.accept_offer(
                        nft.contract_address, nft.token_id, amount_units, buyer.address
                    ),
                    precheck=revalidate,
                    settles=True,
                ),
            ],
        )
        outcomes = await self._run(plan)

        async def build(receipt: Receipt) -> ProtocolResult:
            return ProtocolResult(
                operation=Operation.ACCEPT_OFFER,
                receipt=receipt,
                wallet_address=wallet.address,
                listing_id=listing.id,
                offer_id=offer.id,
                amount=amount_units,
            )

        return await self._finish(outcomes, build)

    async def cancel_offer(self, buyer_id: int, offer_id: int) -> SettlementResult:
        """Withdraw a pending offer: pending → cancelled."""
        offer = await self._pending_offer(offer_id)
        if offer.buyer_id != buyer_id:
            raise PreconditionError("Only the buyer can cancel an offer")
        listing = await self._listing(offer.listing_id)
        if listing.status != ListingStatus.ACTIVE:
            raise PreconditionError(f"Listing {listing.id} is {listing.status.value}")

        nft = await self._nft_of(listing)
        wallet = await self._wallet(buyer_id)
        self.keys.check(wallet.encrypted_private_key)

        amount_units = self._units(offer.amount)
        state = await self.contracts.get_offer(nft.contract_address, nft.token_id, wallet.address)
        if not state.active:
            raise PreconditionError(f"Offer {offer_id} is not active on chain")

        plan = SettlementPlan(
            operation=Operation.CANCEL_OFFER,
            wallet_address=wallet.address,
            encrypted_key=wallet.encrypted_private_key,
            listing_id=listing.id,
            offer_id=offer.id,
            context={"amount": str(amount_units)},
            steps=[SettlementStep(
                name="cancel_offer",
                call=self.contracts.cancel_offer(nft.contract_address, nft.token_id, amount_units),
                settles=True,
            )],
        )
        outcomes = await self._run(plan)

        async def build(receipt: Receipt) -> ProtocolResult:
            return ProtocolResult(
                operation=Operation.CANCEL_OFFER,
                receipt=receipt,
                wallet_address=wallet.address,
                listing_id=listing.id,
                offer_id=offer.id,
                amount=amount_units,
            )

        return await self._finish(outcomes, build)

    # =========================================================================
    # Recovery
    # =========================================================================

    async def recover_pending(self, limit: int = 100) -> List[SettlementResult]:
        """
        Reconcile settlement-log entries whose outcome was never recorded.

        Covers confirmation timeouts, cancelled callers and failed ledger
        writes. Entries still without a receipt are left for the next pass.
        """
        recovered: List[SettlementResult] = []

        for record in await self.store.list_open_settlements(limit):
            try:
                result = await self._recover_one(record)
            except SettlementError as e:
                logger.error(f"Recovery of {record.tx_hash} failed: {e}")
                continue
            if result is not None:
                recovered.append(result)

        return recovered

    async def _recover_one(self, record) -> Optional[SettlementResult]:
        receipt = await self.chain.get_receipt(record.tx_hash)
        if receipt is None:
            logger.debug(f"{record.tx_hash} still pending")
            return None

        if not receipt.succeeded:
            await self.store.update_settlement(
                record.tx_hash, SettlementStatus.FAILED, error="reverted"
            )
            logger.warning(f"{record.operation} {record.tx_hash} reverted on chain")
            return None

        result = ProtocolResult.from_record(record, receipt)
        if result.operation == Operation.CREATE_LISTING and result.auction_id is None:
            result.auction_id = self.contracts.auction_id_from_receipt(receipt)
        if result.operation == Operation.MINT_PROFILE and result.token_id is None:
            result.token_id = self.contracts.profile_token_id_from_receipt(receipt)
        if result.auction_id is not None:
            result.auction = await self.contracts.get_auction(result.auction_id)

        reconciled = await self.reconciler.reconcile(result)
        logger.info(f"Recovered {record.operation} {record.tx_hash}")
        return SettlementResult(
            operation=result.operation,
            transaction_hash=receipt.tx_hash,
            listing_id=result.listing_id,
            offer_id=result.offer_id,
            auction_id=result.auction_id,
            token_id=result.token_id,
            listing_status=reconciled.listing.status if reconciled.listing else None,
        )
