"""
Settlement Pipeline - runs an operation's ordered step list for one wallet.

Each step is planned, signed, submitted and confirmed before the next one
starts, all while holding the wallet in the sequencer. Approval steps carry
a skip_when query so an existing allowance costs no transaction; the
settling step may carry a precheck that re-reads chain state right before
submission.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from ledger.models import Operation, SettlementRecord, SettlementStatus

from .chain_client import Receipt
from .contracts import ContractCall, same_address
from .errors import ChainCallError, KeyCustodyError
from .key_manager import AESKeyManager, LocalSigner
from .nonce_sequencer import WalletSequencer
from .priority_fees import FeePlanner
from .submitter import TransactionSubmitter

logger = logging.getLogger(__name__)


@dataclass
class SettlementStep:
    """One transaction in a protocol."""

    name: str
    call: ContractCall
    skip_when: Optional[Callable[[], Awaitable[bool]]] = None
    precheck: Optional[Callable[[], Awaitable[None]]] = None
    max_fee_cap: Optional[int] = None  # wei
    settles: bool = False  # recorded in the settlement log


@dataclass
class StepOutcome:
    name: str
    skipped: bool = False
    receipt: Optional[Receipt] = None

    @property
    def tx_hash(self) -> Optional[str]:
        return self.receipt.tx_hash if self.receipt else None


@dataclass
class SettlementPlan:
    """Ordered steps of one operation, signed by one custodial wallet."""

    operation: Operation
    wallet_address: str
    encrypted_key: str
    steps: List[SettlementStep]
    listing_id: Optional[int] = None
    offer_id: Optional[int] = None
    context: dict = field(default_factory=dict)

    @property
    def settling_step(self) -> Optional[SettlementStep]:
        for step in self.steps:
            if step.settles:
                return step
        return None


class SettlementPipeline:
    """Executes settlement plans, one wallet at a time."""

    def __init__(
        self,
        keys: AESKeyManager,
        planner: FeePlanner,
        submitter: TransactionSubmitter,
        sequencer: WalletSequencer,
        store=None,
    ):
        """
        Initialize pipeline.

        Args:
            keys: Key custody for signers
            planner: Fee and nonce planner
            submitter: Transaction submitter
            sequencer: Per-wallet sequencer (shared with the planner)
            store: Ledger store for the settlement log (optional)
        """
        self.keys = keys
        self.planner = planner
        self.submitter = submitter
        self.sequencer = sequencer
        self.store = store

    async def execute(self, plan: SettlementPlan) -> List[StepOutcome]:
        """
        Run every step of the plan in order.

        Returns:
            One StepOutcome per step, skipped steps included
        """
        outcomes: List[StepOutcome] = []

        async with self.sequencer.hold(plan.wallet_address):
            for step in plan.steps:
                if step.precheck is not None:
                    await step.precheck()

                if step.skip_when is not None and await step.skip_when():
                    logger.info(f"{plan.operation.value}: skipping {step.name}, already satisfied")
                    outcomes.append(StepOutcome(name=step.name, skipped=True))
                    continue

                receipt = await self._run_step(plan, step)
                outcomes.append(StepOutcome(name=step.name, receipt=receipt))

        return outcomes

    async def _run_step(self, plan: SettlementPlan, step: SettlementStep) -> Receipt:
        fees = await self.planner.plan(plan.wallet_address, step.call.gas_limit, step.max_fee_cap)

        async def on_submitted(tx_hash: str) -> None:
            await self._record(plan, tx_hash)

        async def sign_and_submit(signer: LocalSigner) -> Receipt:
            if not same_address(signer.address, plan.wallet_address):
                raise KeyCustodyError("Stored key does not belong to the wallet address")
            return await self.submitter.submit(
                signer, step.call, fees, on_submitted if step.settles else None
            )

        try:
            return await self.keys.with_signer(plan.encrypted_key, sign_and_submit)
        except ChainCallError as e:
            # Anything short of a mined revert stays open for recovery
            if step.settles and e.reverted:
                await self._mark_failed(e)
            raise

    async def _record(self, plan: SettlementPlan, tx_hash: str) -> None:
        if self.store is None:
            return
        try:
            await self.store.record_settlement(SettlementRecord(
                tx_hash=tx_hash,
                operation=plan.operation.value,
                wallet_address=plan.wallet_address,
                listing_id=plan.listing_id,
                offer_id=plan.offer_id,
                context=plan.context,
            ))
        except Exception as e:
            # The transaction is already out; reconciliation still runs inline
            logger.error(f"Could not record settlement {tx_hash}: {e}")

    async def _mark_failed(self, error: ChainCallError) -> None:
        if self.store is None:
            return
        try:
            await self.store.update_settlement(
                error.tx_hash, SettlementStatus.FAILED, error=error.reason or error.message
            )
        except Exception as e:
            logger.error(f"Could not mark settlement {error.tx_hash} failed: {e}")

