"""Settlement error taxonomy.

Every error raised by the settlement core derives from SettlementError and
carries the transaction hash whenever one exists, so callers can always
poll the chain independently of what happened locally.
"""

from typing import Optional


class SettlementError(Exception):
    """Base class for settlement failures."""

    kind = "settlement_error"

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.tx_hash = tx_hash

    @property
    def chain_state_mutated(self) -> bool:
        """True if a transaction may have changed chain state."""
        return self.tx_hash is not None

    def to_dict(self) -> dict:
        payload = {"error": self.kind, "message": self.message}
        if self.tx_hash:
            payload["transactionHash"] = self.tx_hash
        return payload


class KeyCustodyError(SettlementError):
    """Missing, corrupted or tampered custodial key. Fatal, no chain call made."""

    kind = "key_custody_error"


class PreconditionError(SettlementError):
    """Caller or listing state does not allow the operation. No chain call made."""

    kind = "precondition_error"


class FeeConfigurationError(SettlementError):
    """Fee cap conflicts with the configured minimum tip."""

    kind = "fee_configuration_error"


class ChainCallError(SettlementError):
    """Transaction reverted or the chain returned an unexpected shape.

    `reverted` is set only when a mined receipt reported failure.
    """

    kind = "chain_call_error"

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        tx_hash: Optional[str] = None,
        reverted: bool = False,
    ):
        super().__init__(message, tx_hash=tx_hash)
        self.reason = reason
        self.reverted = reverted

    def to_dict(self) -> dict:
        payload = super().to_dict()
        if self.reason:
            payload["reason"] = self.reason
        return payload


class ChainTimeoutError(SettlementError):
    """Confirmation not observed in time. Outcome unknown, not a failure."""

    kind = "chain_timeout"

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["outcome"] = "unknown"
        return payload


class ChainConnectivityError(SettlementError):
    """Transport failure before submission. Safe to retry with a fresh plan."""

    kind = "chain_connectivity_error"


class ReconciliationError(SettlementError):
    """Ledger write failed after a confirmed transaction.

    Must be retried against the known tx_hash, never by resubmitting.
    """

    kind = "reconciliation_error"
