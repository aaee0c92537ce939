"""Fee Planner - transaction fee parameters and nonce assignment."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
import logging

from .chain_client import ChainClient, FeeSuggestion
from .errors import FeeConfigurationError
from .nonce_sequencer import WalletSequencer

logger = logging.getLogger(__name__)

GWEI = 10**9


def gwei_to_wei(value: Decimal) -> int:
    return int(Decimal(value) * GWEI)


@dataclass(frozen=True)
class FeeParameters:
    """Fee and sequencing fields for one transaction."""

    nonce: int
    gas_limit: int
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    gas_price: Optional[int] = None

    @property
    def is_priority_fee(self) -> bool:
        return self.max_priority_fee_per_gas is not None

    def tx_fields(self) -> dict:
        """Fields to merge into a transaction dict before signing."""
        fields = {"nonce": self.nonce, "gas": self.gas_limit}
        if self.is_priority_fee:
            fields["maxFeePerGas"] = self.max_fee_per_gas
            fields["maxPriorityFeePerGas"] = self.max_priority_fee_per_gas
            fields["type"] = 2
        else:
            fields["gasPrice"] = self.gas_price
        return fields


class FeePlanner:
    """
    Computes fee parameters with a minimum tip floor.

    Priority-fee networks:
        tip     = max(suggested tip, min tip)
        max fee = base_fee_multiplier * last base fee + tip
                  (fallback_tip_multiple * min tip without a base fee)
    Legacy networks:
        gas price = max(suggested gas price, min tip)

    An optional cap clamps the ceiling but never pushes the tip below the
    floor; a cap under the floor is a configuration error.
    """

    def __init__(
        self,
        chain: ChainClient,
        sequencer: WalletSequencer,
        min_tip_wei: int = 50 * GWEI,
        base_fee_multiplier: int = 2,
        fallback_tip_multiple: int = 2,
    ):
        """
        Initialize fee planner.

        Args:
            chain: Chain client for fee suggestions and pending counts
            sequencer: Per-wallet sequencer issuing nonces
            min_tip_wei: Floor for the priority fee / legacy gas price
            base_fee_multiplier: Headroom over the last base fee
            fallback_tip_multiple: Ceiling as a multiple of the floor when
                the base fee is unavailable
        """
        self.chain = chain
        self.sequencer = sequencer
        self.min_tip_wei = min_tip_wei
        self.base_fee_multiplier = base_fee_multiplier
        self.fallback_tip_multiple = fallback_tip_multiple

    async def plan(
        self,
        wallet_address: str,
        gas_limit: int,
        max_fee_cap: Optional[int] = None,
    ) -> FeeParameters:
        """
        Plan fees and nonce for the next transaction of a wallet.

        Must be called while holding the wallet in the sequencer.

        Args:
            wallet_address: Sending wallet
            gas_limit: Gas limit for the call
            max_fee_cap: Optional ceiling in wei

        Raises:
            FeeConfigurationError: If max_fee_cap is below the tip floor
            RuntimeError: If the wallet is not held by the calling task
        """
        if not self.sequencer.is_held(wallet_address):
            raise RuntimeError(f"Fee planning for {wallet_address} outside its sequencer lock")

        if max_fee_cap is not None and max_fee_cap < self.min_tip_wei:
            raise FeeConfigurationError(
                f"Fee cap {max_fee_cap} wei is below the minimum tip {self.min_tip_wei} wei"
            )

        suggestion = await self.chain.get_fee_suggestion()
        pending = await self.chain.get_transaction_count(wallet_address, "pending")
        nonce = self.sequencer.reserve(wallet_address, pending)

        if suggestion.supports_priority_fee:
            fees = self._priority_fees(suggestion, max_fee_cap)
        else:
            fees = self._legacy_fees(suggestion, max_fee_cap)

        params = FeeParameters(nonce=nonce, gas_limit=gas_limit, **fees)
        logger.debug(f"Planned tx for {wallet_address[:10]}...: {params}")
        return params

    def _priority_fees(self, suggestion: FeeSuggestion, cap: Optional[int]) -> dict:
        tip = max(suggestion.max_priority_fee_per_gas, self.min_tip_wei)

        if suggestion.last_base_fee is not None:
            max_fee = self.base_fee_multiplier * suggestion.last_base_fee + tip
        else:
            max_fee = self.fallback_tip_multiple * self.min_tip_wei
        max_fee = max(max_fee, tip)

        if cap is not None:
            max_fee = min(max_fee, cap)
            tip = min(tip, max_fee)

        return {"max_fee_per_gas": max_fee, "max_priority_fee_per_gas": tip}

    def _legacy_fees(self, suggestion: FeeSuggestion, cap: Optional[int]) -> dict:
        gas_price = max(suggestion.gas_price or 0, self.min_tip_wei)
        if cap is not None:
            gas_price = min(gas_price, cap)
        return {"gas_price": gas_price}
