"""Custodial Wallet Manager - wallet creation, balances, transfers and profile minting."""

from decimal import Decimal
from typing import Optional
import logging

from ledger.models import Operation, Wallet
from ledger.store import LedgerStore

from .chain_client import ChainClient
from .config import SettlementConfig
from .contracts import MarketplaceContracts, from_base_units, to_base_units
from .errors import PreconditionError, SettlementError
from .key_manager import AESKeyManager
from .orchestrator import SettlementResult
from .pipeline import SettlementPipeline, SettlementPlan, SettlementStep
from .reconciler import LedgerReconciler, ProtocolResult

logger = logging.getLogger(__name__)

NATIVE_DECIMALS = 18


class CustodialWalletManager:
    """
    Manages the server-held wallets of marketplace users.

    Features:
    - One wallet per user, generated at registration
    - Token and native balance reads
    - User-to-user token transfers and admin token grants
    - Profile NFT minting, with gas funded by the admin wallet when short

    Security:
    - Private keys are encrypted at rest and only decrypted inside the
      signing scope of a single transaction
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

    async def _wallet(self, user_id: int) -> Wallet:
        wallet = await self.store.get_wallet(user_id)
        if wallet is None:
            raise PreconditionError(f"User {user_id} has no custodial wallet")
        return wallet

    def _admin(self) -> Wallet:
        if not self.config.admin_address or not self.config.admin_encrypted_key:
            raise PreconditionError("Admin wallet is not configured")
        return Wallet(
            user_id=0,
            address=self.config.admin_address,
            encrypted_private_key=self.config.admin_encrypted_key,
            username="admin",
        )

    async def create_wallet(self, user_id: int) -> Wallet:
        """
        Create the custodial wallet of a newly registered user.

        Returns:
            The persisted Wallet
        """
        address, encrypted = self.keys.generate_wallet()
        await self.store.save_wallet(user_id, address, encrypted)
        logger.info(f"Created custodial wallet for user {user_id}: {address[:10]}...")
        return Wallet(user_id=user_id, address=address, encrypted_private_key=encrypted)

    async def token_balance(self, user_id: int) -> Decimal:
        wallet = await self._wallet(user_id)
        value = await self.contracts.token_balance(wallet.address)
        return from_base_units(value, self.config.token_decimals)

    async def native_balance(self, user_id: int) -> Decimal:
        wallet = await self._wallet(user_id)
        return from_base_units(await self.chain.get_balance(wallet.address), NATIVE_DECIMALS)

    async def _transfer(self, sender: Wallet, recipient: Wallet, amount: Decimal, operation: Operation) -> SettlementResult:
        if amount <= 0:
            raise PreconditionError("Transfer amount must be positive")
        self.keys.check(sender.encrypted_private_key)

        units = to_base_units(amount, self.config.token_decimals)
        if await self.contracts.token_balance(sender.address) < units:
            raise PreconditionError("Insufficient token balance")

        plan = SettlementPlan(
            operation=operation,
            wallet_address=sender.address,
            encrypted_key=sender.encrypted_private_key,
            steps=[SettlementStep(
                name="transfer_token",
                call=self.contracts.transfer_token(recipient.address, units),
            )],
        )
        outcomes = await self.pipeline.execute(plan)
        logger.info(f"Transferred {amount} tokens {sender.address[:10]}... -> {recipient.address[:10]}...")
        return SettlementResult(operation=operation, transaction_hash=outcomes[0].tx_hash)

    async def transfer_tokens(self, from_user_id: int, to_user_id: int, amount: Decimal) -> SettlementResult:
        """Send tokens from one user to another (tips)."""
        if from_user_id == to_user_id:
            raise PreconditionError("Cannot transfer to yourself")
        sender = await self._wallet(from_user_id)
        recipient = await self._wallet(to_user_id)
        return await self._transfer(sender, recipient, amount, Operation.TRANSFER_TOKENS)

    async def grant_tokens(self, to_user_id: int, amount: Decimal) -> SettlementResult:
        """Send tokens from the admin wallet to a user."""
        recipient = await self._wallet(to_user_id)
        return await self._transfer(self._admin(), recipient, amount, Operation.GRANT_TOKENS)

    async def _fund_gas(self, wallet: Wallet) -> Optional[str]:
        """Top the wallet up to the minimum gas balance from the admin wallet."""
        minimum = to_base_units(self.config.min_gas_balance_eth, NATIVE_DECIMALS)
        balance = await self.chain.get_balance(wallet.address)
        if balance >= minimum:
            return None

        admin = self._admin()
        plan = SettlementPlan(
            operation=Operation.MINT_PROFILE,
            wallet_address=admin.address,
            encrypted_key=admin.encrypted_private_key,
            steps=[SettlementStep(
                name="fund_gas",
                call=self.contracts.transfer_native(wallet.address, minimum - balance),
            )],
        )
        outcomes = await self.pipeline.execute(plan)
        logger.info(f"Funded gas for {wallet.address[:10]}...: {minimum - balance} wei")
        return outcomes[0].tx_hash

    async def mint_profile(self, user_id: int, username: str, metadata_uri: str) -> SettlementResult:
        """
        Mint the user's profile NFT and register it as an inactive listing.

        Args:
            user_id: Owner of the new profile
            username: On-chain profile name
            metadata_uri: Content id returned by the metadata service
        """
        if not metadata_uri:
            raise PreconditionError("Metadata URI is required")

        wallet = await self._wallet(user_id)
        self.keys.check(wallet.encrypted_private_key)

        if await self.contracts.nft_balance(wallet.address) > 0:
            raise PreconditionError(f"User {user_id} already owns a profile NFT")

        approvals = []
        funding_tx = await self._fund_gas(wallet)
        if funding_tx:
            approvals.append(funding_tx)

        plan = SettlementPlan(
            operation=Operation.MINT_PROFILE,
            wallet_address=wallet.address,
            encrypted_key=wallet.encrypted_private_key,
            context={"user_id": user_id, "metadata_uri": metadata_uri},
            steps=[SettlementStep(
                name="create_profile",
                call=self.contracts.create_profile(username, metadata_uri),
                settles=True,
            )],
        )
        outcomes = await self.pipeline.execute(plan)
        receipt = outcomes[-1].receipt

        try:
            result = ProtocolResult(
                operation=Operation.MINT_PROFILE,
                receipt=receipt,
                wallet_address=wallet.address,
                token_id=self.contracts.profile_token_id_from_receipt(receipt),
                user_id=user_id,
                metadata_uri=metadata_uri,
            )
            record = await self.reconciler.reconcile(result)
        except SettlementError as e:
            if e.tx_hash is None:
                e.tx_hash = receipt.tx_hash
            raise

        logger.info(f"Minted profile #{result.token_id} for user {user_id}")
        return SettlementResult(
            operation=Operation.MINT_PROFILE,
            transaction_hash=receipt.tx_hash,
            approval_transaction_hashes=approvals,
            listing_id=result.listing_id,
            token_id=result.token_id,
            listing_status=record.listing.status if record.listing else None,
        )
