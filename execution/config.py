"""Configuration for the settlement core."""

import json
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _optional_decimal(name: str) -> Optional[Decimal]:
    value = os.getenv(name)
    return Decimal(value) if value else None


@dataclass
class GasLimits:
    """Gas limit per contract call."""

    token_approve: int = 70_000
    token_transfer: int = 200_000
    nft_approve: int = 150_000
    create_profile: int = 300_000
    create_auction: int = 300_000
    place_bid: int = 300_000
    buy_now: int = 300_000
    end_auction: int = 300_000
    make_offer: int = 200_000
    cancel_offer: int = 200_000
    accept_offer: int = 300_000
    native_transfer: int = 21_000


@dataclass
class ContractAddresses:
    """Deployed marketplace contracts."""

    token: str = ""
    profiles: str = ""
    auction_house: str = ""
    offer_book: str = ""

    @classmethod
    def load(cls, path: Optional[str] = None) -> "ContractAddresses":
        """
        Load addresses from a deployment JSON file, falling back to env vars.

        The JSON file uses the deployment script's contract names as keys.
        """
        path = path or os.getenv("CONTRACT_ADDRESSES_PATH", "")
        data = {}
        if path and os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)

        return cls(
            token=data.get("NovaCoin_ProgrammableSupply") or os.getenv("TOKEN_ADDRESS", ""),
            profiles=data.get("NovaProfiles") or os.getenv("PROFILES_ADDRESS", ""),
            auction_house=data.get("NFTAuctionHouse") or os.getenv("AUCTION_HOUSE_ADDRESS", ""),
            offer_book=data.get("NFTOfferBook") or os.getenv("OFFER_BOOK_ADDRESS", ""),
        )


@dataclass
class SettlementConfig:
    """Runtime configuration for chain access, fees and custody."""

    # Chain
    rpc_url: str = field(
        default_factory=lambda: os.getenv("RPC_URL", "https://rpc-amoy.polygon.technology/")
    )
    chain_id: int = field(default_factory=lambda: int(os.getenv("CHAIN_ID", "80002")))

    # Custody
    key_encryption_secret: str = field(
        default_factory=lambda: os.getenv("KEY_ENCRYPTION_SECRET", "")
    )
    admin_address: str = field(default_factory=lambda: os.getenv("ADMIN_ADDRESS", ""))
    admin_encrypted_key: str = field(
        default_factory=lambda: os.getenv("ADMIN_ENCRYPTED_KEY", "")
    )

    # Fees (gwei)
    min_tip_gwei: Decimal = field(
        default_factory=lambda: Decimal(os.getenv("MIN_TIP_GWEI", "50"))
    )
    base_fee_multiplier: int = field(
        default_factory=lambda: int(os.getenv("BASE_FEE_MULTIPLIER", "2"))
    )
    fallback_tip_multiple: int = field(
        default_factory=lambda: int(os.getenv("FALLBACK_TIP_MULTIPLE", "2"))
    )
    approval_fee_cap_gwei: Optional[Decimal] = field(
        default_factory=lambda: _optional_decimal("APPROVAL_FEE_CAP_GWEI")
    )

    # Confirmation
    confirmations: int = field(default_factory=lambda: int(os.getenv("TX_CONFIRMATIONS", "1")))
    receipt_timeout_seconds: float = field(
        default_factory=lambda: float(os.getenv("RECEIPT_TIMEOUT_SECONDS", "180"))
    )
    receipt_poll_seconds: float = field(
        default_factory=lambda: float(os.getenv("RECEIPT_POLL_SECONDS", "2"))
    )

    # Marketplace
    auction_duration_seconds: int = field(
        default_factory=lambda: int(os.getenv("AUCTION_DURATION_SECONDS", "3600"))
    )
    token_decimals: int = field(default_factory=lambda: int(os.getenv("TOKEN_DECIMALS", "18")))
    min_gas_balance_eth: Decimal = field(
        default_factory=lambda: Decimal(os.getenv("MIN_GAS_BALANCE_ETH", "0.02"))
    )

    # Reconciliation
    reconcile_max_tries: int = field(
        default_factory=lambda: int(os.getenv("RECONCILE_MAX_TRIES", "3"))
    )
    recovery_interval_seconds: float = field(
        default_factory=lambda: float(os.getenv("RECOVERY_INTERVAL_SECONDS", "30"))
    )

    contracts: ContractAddresses = field(default_factory=ContractAddresses.load)
    gas: GasLimits = field(default_factory=GasLimits)

    @property
    def min_tip_wei(self) -> int:
        return int(self.min_tip_gwei * Decimal(10**9))

    @property
    def postgres_dsn(self) -> str:
        return (
            f"postgresql://{os.getenv('POSTGRES_USER', 'admin')}:"
            f"{os.getenv('POSTGRES_PASSWORD', 'password')}@"
            f"{os.getenv('POSTGRES_HOST', 'localhost')}:"
            f"{os.getenv('POSTGRES_PORT', '5432')}/"
            f"{os.getenv('POSTGRES_DB', 'marketplace')}"
        )

    @classmethod
    def from_env(cls) -> "SettlementConfig":
        return cls()
