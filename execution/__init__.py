"""Settlement Core - custody, fees, submission, orchestration and reconciliation."""

from .errors import (
    SettlementError,
    KeyCustodyError,
    PreconditionError,
    FeeConfigurationError,
    ChainCallError,
    ChainTimeoutError,
    ChainConnectivityError,
    ReconciliationError,
)
from .config import SettlementConfig, ContractAddresses, GasLimits
from .key_manager import AESKeyManager, generate_encryption_secret
from .nonce_sequencer import WalletSequencer
from .priority_fees import FeePlanner, FeeParameters
from .chain_client import Web3ChainClient, Receipt
from .contracts import MarketplaceContracts
from .submitter import TransactionSubmitter
from .pipeline import SettlementPipeline, SettlementPlan, SettlementStep
from .reconciler import LedgerReconciler, ProtocolResult
from .orchestrator import SettlementOrchestrator, SettlementResult
from .wallets import CustodialWalletManager

__all__ = [
    "SettlementError",
    "KeyCustodyError",
    "PreconditionError",
    "FeeConfigurationError",
    "ChainCallError",
    "ChainTimeoutError",
    "ChainConnectivityError",
    "ReconciliationError",
    "SettlementConfig",
    "ContractAddresses",
    "GasLimits",
    "AESKeyManager",
    "generate_encryption_secret",
    "WalletSequencer",
    "FeePlanner",
    "FeeParameters",
    "Web3ChainClient",
    "Receipt",
    "MarketplaceContracts",
    "TransactionSubmitter",
    "SettlementPipeline",
    "SettlementPlan",
    "SettlementStep",
    "LedgerReconciler",
    "ProtocolResult",
    "SettlementOrchestrator",
    "SettlementResult",
    "CustodialWalletManager",
]
