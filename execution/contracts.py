"""
Marketplace Contracts - call encoding and typed state reads.

Covers the four deployed contracts: the ERC-20 payment token, the ERC-721
profile collection, the auction house and the offer book. Every read is
decoded into a fixed dataclass; anything that does not decode raises
ChainCallError instead of leaking a partially-parsed value.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional, Sequence

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address

from .chain_client import ChainClient, Receipt
from .config import ContractAddresses, GasLimits
from .errors import ChainCallError

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Assumed event layouts (no ABI shipped): the new id is the first indexed topic
AUCTION_CREATED_TOPIC = keccak(
    text="AuctionCreated(uint256,address,address,uint256,uint256,uint256)"
)
PROFILE_CREATED_TOPIC = keccak(text="ProfileCreated(uint256,address,string,string)")

# Assumed auctions(uint256) getter: (seller, nft, tokenId, startingBid, highestBid, highestBidder, endAt, ended)
AUCTION_STRUCT = ["address", "address", "uint256", "uint256", "uint256", "address", "uint256", "bool"]


def to_base_units(amount: Decimal, decimals: int = 18) -> int:
    """Convert a token amount to its integer on-chain representation."""
    return int(Decimal(amount).scaleb(decimals))


def from_base_units(value: int, decimals: int = 18) -> Decimal:
    return Decimal(value).scaleb(-decimals)


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


def _arg_types(signature: str) -> List[str]:
    inner = signature[signature.index("(") + 1:signature.rindex(")")]
    return [t for t in inner.split(",") if t]


def encode_call(signature: str, *args: Any) -> bytes:
    """ABI-encode a function call from its canonical signature."""
    try:
        return function_signature_to_4byte_selector(signature) + encode(_arg_types(signature), list(args))
    except (EncodingError, TypeError, ValueError) as e:
        raise ChainCallError(f"Cannot encode {signature}: {e}")


def decode_result(types: Sequence[str], data: bytes, method: str) -> tuple:
    try:
        return decode(list(types), data)
    except (DecodingError, TypeError, ValueError) as e:
        raise ChainCallError(f"Unexpected {method} result: {e}")


@dataclass(frozen=True)
class ContractCall:
    """A state-changing call ready to be planned and signed."""

    to: str
    data: bytes
    gas_limit: int
    description: str
    value: int = 0


@dataclass(frozen=True)
class AuctionState:
    """Auction struct as stored by the auction house, amounts in base units."""

    auction_id: int
    seller: str
    nft_address: str
    token_id: int
    starting_bid: int
    highest_bid: int
    highest_bidder: str
    end_at: int
    ended: bool

    @property
    def has_winner(self) -> bool:
        return not same_address(self.highest_bidder, ZERO_ADDRESS)

    def is_open(self, now: int) -> bool:
        return not self.ended and now < self.end_at


@dataclass(frozen=True)
class OfferState:
    amount: int
    active: bool


class MarketplaceContracts:
    """
    Encodes calls to and decodes reads from the marketplace contracts.

    Call builders return ContractCall objects and never touch the network;
    reads go through the injected chain client.
    """

    def __init__(self, chain: ChainClient, addresses: ContractAddresses, gas: GasLimits = None):
        self.chain = chain
        self.addresses = addresses
        self.gas = gas or GasLimits()

    async def _read(self, to: str, signature: str, returns: Sequence[str], *args: Any) -> tuple:
        data = await self.chain.call(to, encode_call(signature, *args))
        return decode_result(returns, data, signature)

    # =========================================================================
    # Reads
    # =========================================================================

    async def token_allowance(self, owner: str, spender: str) -> int:
        (value,) = await self._read(
            self.addresses.token, "allowance(address,address)", ["uint256"],
            to_checksum_address(owner), to_checksum_address(spender),
        )
        return value

    async def token_balance(self, address: str) -> int:
        (value,) = await self._read(
            self.addresses.token, "balanceOf(address)", ["uint256"], to_checksum_address(address)
        )
        return value

    async def nft_owner(self, token_id: int, nft_address: Optional[str] = None) -> str:
        (owner,) = await self._read(
            nft_address or self.addresses.profiles, "ownerOf(uint256)", ["address"], token_id
        )
        return to_checksum_address(owner)

    async def nft_balance(self, owner: str) -> int:
        (value,) = await self._read(
            self.addresses.profiles, "balanceOf(address)", ["uint256"], to_checksum_address(owner)
        )
        return value

    async def is_operator_approved(
        self,
        owner: str,
        operator: str,
        token_id: int,
        nft_address: Optional[str] = None,
    ) -> bool:
        """True if operator may transfer token_id, per token or collection-wide."""
        nft_address = nft_address or self.addresses.profiles
        (approved,) = await self._read(nft_address, "getApproved(uint256)", ["address"], token_id)
        if same_address(approved, operator):
            return True

        (for_all,) = await self._read(
            nft_address, "isApprovedForAll(address,address)", ["bool"],
            to_checksum_address(owner), to_checksum_address(operator),
        )
        return bool(for_all)

    async def get_auction(self, auction_id: int) -> AuctionState:
        fields = await self._read(
            self.addresses.auction_house, "auctions(uint256)", AUCTION_STRUCT, auction_id
        )
        seller, nft_address, token_id, starting_bid, highest_bid, highest_bidder, end_at, ended = fields

        if same_address(seller, ZERO_ADDRESS):
            raise ChainCallError(f"Auction {auction_id} does not exist on chain")

        return AuctionState(
            auction_id=auction_id,
            seller=to_checksum_address(seller),
            nft_address=to_checksum_address(nft_address),
            token_id=token_id,
            starting_bid=starting_bid,
            highest_bid=highest_bid,
            highest_bidder=to_checksum_address(highest_bidder),
            end_at=end_at,
            ended=bool(ended),
        )

    async def get_offer(self, nft_address: str, token_id: int, buyer: str) -> OfferState:
        # Assumed ABI: getOffer(address nft, uint256 tokenId, address buyer) returns (uint256 amount, bool active)
        amount, active = await self._read(
            self.addresses.offer_book, "getOffer(address,uint256,address)", ["uint256", "bool"],
            to_checksum_address(nft_address), token_id, to_checksum_address(buyer),
        )
        return OfferState(amount=amount, active=bool(active))

    # =========================================================================
    # Call builders
    # =========================================================================

    def approve_token(self, spender: str, amount: int) -> ContractCall:
        return ContractCall(
            to=self.addresses.token,
            data=encode_call("approve(address,uint256)", to_checksum_address(spender), amount),
            gas_limit=self.gas.token_approve,
            description="approve token allowance",
        )

    def transfer_token(self, recipient: str, amount: int) -> ContractCall:
        return ContractCall(
            to=self.addresses.token,
            data=encode_call("transfer(address,uint256)", to_checksum_address(recipient), amount),
            gas_limit=self.gas.token_transfer,
            description="transfer tokens",
        )

    def transfer_native(self, recipient: str, value: int) -> ContractCall:
        return ContractCall(
            to=to_checksum_address(recipient),
            data=b"",
            gas_limit=self.gas.native_transfer,
            description="fund gas",
            value=value,
        )

    def approve_nft(self, operator: str, token_id: int, nft_address: Optional[str] = None) -> ContractCall:
        return ContractCall(
            to=nft_address or self.addresses.profiles,
            data=encode_call("approve(address,uint256)", to_checksum_address(operator), token_id),
            gas_limit=self.gas.nft_approve,
            description="approve NFT operator",
        )

    def create_profile(self, username: str, metadata_uri: str) -> ContractCall:
        return ContractCall(
            to=self.addresses.profiles,
            data=encode_call("createProfile(string,string)", username, metadata_uri),
            gas_limit=self.gas.create_profile,
            description="mint profile NFT",
        )

    def create_auction(self, nft_address: str, token_id: int, starting_bid: int, duration: int) -> ContractCall:
        return ContractCall(
            to=self.addresses.auction_house,
            data=encode_call(
                "createAuction(address,uint256,uint256,uint256)",
                to_checksum_address(nft_address), token_id, starting_bid, duration,
            ),
            gas_limit=self.gas.create_auction,
            description="create auction",
        )

    def place_bid(self, auction_id: int, amount: int) -> ContractCall:
        return ContractCall(
            to=self.addresses.auction_house,
            data=encode_call("placeBid(uint256,uint256)", auction_id, amount),
            gas_limit=self.gas.place_bid,
            description="place bid",
        )

    def buy_now(self, auction_id: int) -> ContractCall:
        return ContractCall(
            to=self.addresses.auction_house,
            data=encode_call("buyNow(uint256)", auction_id),
            gas_limit=self.gas.buy_now,
            description="buy now",
        )

    def end_auction(self, auction_id: int) -> ContractCall:
        return ContractCall(
            to=self.addresses.auction_house,
            data=encode_call("endAuction(uint256)", auction_id),
            gas_limit=self.gas.end_auction,
            description="end auction",
        )

    def make_offer(self, nft_address: str, token_id: int, amount: int, seller: str) -> ContractCall:
        return ContractCall(
            to=self.addresses.offer_book,
            data=encode_call(
                "makeOffer(address,uint256,uint256,address)",
                to_checksum_address(nft_address), token_id, amount, to_checksum_address(seller),
            ),
            gas_limit=self.gas.make_offer,
            description="make offer",
        )

    def cancel_offer(self, nft_address: str, token_id: int, amount: int) -> ContractCall:
        return ContractCall(
            to=self.addresses.offer_book,
            data=encode_call(
                "cancelOffer(address,uint256,uint256)",
                to_checksum_address(nft_address), token_id, amount,
            ),
            gas_limit=self.gas.cancel_offer,
            description="cancel offer",
        )

    def accept_offer(self, nft_address: str, token_id: int, amount: int, buyer: str) -> ContractCall:
        return ContractCall(
            to=self.addresses.offer_book,
            data=encode_call(
                "acceptOffer(address,uint256,uint256,address)",
                to_checksum_address(nft_address), token_id, amount, to_checksum_address(buyer),
            ),
            gas_limit=self.gas.accept_offer,
            description="accept offer",
        )

    # =========================================================================
    # Events
    # =========================================================================

    def auction_id_from_receipt(self, receipt: Receipt) -> int:
        """Auction id from the AuctionCreated event (indexed, first topic)."""
        return self._indexed_uint(receipt, self.addresses.auction_house, AUCTION_CREATED_TOPIC, "AuctionCreated")

    def profile_token_id_from_receipt(self, receipt: Receipt) -> int:
        return self._indexed_uint(receipt, self.addresses.profiles, PROFILE_CREATED_TOPIC, "ProfileCreated")

    def _indexed_uint(self, receipt: Receipt, emitter: str, topic: bytes, event: str) -> int:
        for log in receipt.logs:
            if not log.topics or log.topics[0] != topic:
                continue
            if emitter and not same_address(log.address, emitter):
                continue
            if len(log.topics) < 2:
                raise ChainCallError(f"{event} event without indexed id", tx_hash=receipt.tx_hash)
            (value,) = decode_result(["uint256"], log.topics[1], event)
            return value

        raise ChainCallError(f"{event} event not found in receipt", tx_hash=receipt.tx_hash)
