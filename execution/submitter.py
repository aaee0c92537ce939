"""Transaction Submitter - sign, broadcast and confirm one transaction."""

import logging
from typing import Awaitable, Callable, Optional

from .chain_client import ChainClient, Receipt
from .contracts import ContractCall
from .errors import ChainCallError, SettlementError
from .key_manager import LocalSigner
from .priority_fees import FeeParameters

logger = logging.getLogger(__name__)

SubmittedHook = Callable[[str], Awaitable[None]]


class TransactionSubmitter:
    """
    Submits a single planned transaction and waits for its receipt.

    Never retries: a resubmission with the same nonce fails deterministically,
    so retrying is the caller's decision and requires a fresh plan.

    Failure modes:
    - ChainConnectivityError / ChainCallError without tx_hash: nothing was
      broadcast, the nonce can be reused
    - ChainTimeoutError: broadcast, outcome unknown
    - ChainCallError with tx_hash: mined and reverted
    """

    def __init__(
        self,
        chain: ChainClient,
        confirmations: int = 1,
        receipt_timeout: float = 180.0,
    ):
        self.chain = chain
        self.confirmations = confirmations
        self.receipt_timeout = receipt_timeout

    def build_transaction(self, signer: LocalSigner, call: ContractCall, fees: FeeParameters) -> dict:
        tx = {
            "from": signer.address,
            "to": call.to,
            "data": call.data,
            "value": call.value,
            "chainId": signer.chain_id,
        }
        tx.update(fees.tx_fields())
        return tx

    async def submit(
        self,
        signer: LocalSigner,
        call: ContractCall,
        fees: FeeParameters,
        on_submitted: Optional[SubmittedHook] = None,
    ) -> Receipt:
        """
        Sign, broadcast and confirm a contract call.

        Args:
            signer: Scoped signer from the key manager
            call: Encoded contract call
            fees: Planned fee parameters and nonce
            on_submitted: Awaited with the hash as soon as it exists

        Returns:
            Receipt of the successful transaction
        """
        tx = self.build_transaction(signer, call, fees)
        raw = signer.sign_transaction({k: v for k, v in tx.items() if k != "from"})
        tx_hash = await self.chain.send_raw_transaction(raw)

        logger.info(
            f"Submitted {call.description} from {signer.address[:10]}... "
            f"nonce={fees.nonce} tx={tx_hash}"
        )

        if on_submitted is not None:
            await on_submitted(tx_hash)

        try:
            receipt = await self.chain.wait_for_receipt(
                tx_hash, self.confirmations, self.receipt_timeout
            )
        except SettlementError as e:
            if e.tx_hash is None:
                e.tx_hash = tx_hash
            raise

        if not receipt.succeeded:
            reason = await self.chain.get_revert_reason(
                {"from": tx["from"], "to": tx["to"], "data": tx["data"], "value": tx["value"]},
                receipt.block_number,
            )
            logger.warning(f"{call.description} reverted: {reason or 'no reason'} tx={tx_hash}")
            raise ChainCallError(
                f"{call.description} reverted",
                reason=reason,
                tx_hash=tx_hash,
                reverted=True,
            )

        logger.info(f"Confirmed {call.description} in block {receipt.block_number} tx={tx_hash}")
        return receipt
