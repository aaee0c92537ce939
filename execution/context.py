"""Settlement Context - the per-process component graph."""

from dataclasses import dataclass

from ledger.store import LedgerStore

from .chain_client import ChainClient
from .config import SettlementConfig
from .contracts import MarketplaceContracts
from .key_manager import AESKeyManager
from .nonce_sequencer import WalletSequencer
from .orchestrator import SettlementOrchestrator
from .pipeline import SettlementPipeline
from .priority_fees import FeePlanner
from .reconciler import LedgerReconciler
from .submitter import TransactionSubmitter
from .wallets import CustodialWalletManager


@dataclass
class SettlementContext:
    """Every settlement component, constructed once and shared."""

    config: SettlementConfig
    store: LedgerStore
    chain: ChainClient
    keys: AESKeyManager
    sequencer: WalletSequencer
    planner: FeePlanner
    submitter: TransactionSubmitter
    contracts: MarketplaceContracts
    pipeline: SettlementPipeline
    reconciler: LedgerReconciler
    orchestrator: SettlementOrchestrator
    wallets: CustodialWalletManager


def build_context(
    config: SettlementConfig,
    store: LedgerStore,
    chain: ChainClient,
    keys: AESKeyManager = None,
) -> SettlementContext:
    """Wire the settlement components around a store and a chain client."""
    keys = keys or AESKeyManager(config.key_encryption_secret, config.chain_id)
    sequencer = WalletSequencer()
    planner = FeePlanner(
        chain,
        sequencer,
        min_tip_wei=config.min_tip_wei,
        base_fee_multiplier=config.base_fee_multiplier,
        fallback_tip_multiple=config.fallback_tip_multiple,
    )
    submitter = TransactionSubmitter(
        chain,
        confirmations=config.confirmations,
        receipt_timeout=config.receipt_timeout_seconds,
    )
    contracts = MarketplaceContracts(chain, config.contracts, config.gas)
    pipeline = SettlementPipeline(keys, planner, submitter, sequencer, store)
    reconciler = LedgerReconciler(
        store,
        contracts,
        token_decimals=config.token_decimals,
        max_tries=config.reconcile_max_tries,
    )
    components = dict(
        store=store,
        chain=chain,
        contracts=contracts,
        keys=keys,
        pipeline=pipeline,
        reconciler=reconciler,
        config=config,
    )

    return SettlementContext(
        config=config,
        store=store,
        chain=chain,
        keys=keys,
        sequencer=sequencer,
        planner=planner,
        submitter=submitter,
        contracts=contracts,
        pipeline=pipeline,
        reconciler=reconciler,
        orchestrator=SettlementOrchestrator(**components),
        wallets=CustodialWalletManager(**components),
    )
