"""
Tests for transaction submission and the settlement pipeline.

Run with: pytest tests/test_submitter.py -v
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from execution.chain_client import FeeSuggestion, Receipt
from execution.contracts import ContractCall
from execution.errors import (
    ChainCallError,
    ChainConnectivityError,
    ChainTimeoutError,
    KeyCustodyError,
    PreconditionError,
)
from execution.nonce_sequencer import WalletSequencer
from execution.pipeline import SettlementPipeline, SettlementPlan, SettlementStep
from execution.priority_fees import GWEI, FeeParameters, FeePlanner
from execution.submitter import TransactionSubmitter
from ledger.models import Operation, SettlementStatus

from conftest import AUCTION_HOUSE


def receipt(tx_hash="0xabc", status=1):
    return Receipt(tx_hash=tx_hash, block_number=100, status=status, gas_used=50_000)


def call(description="place bid"):
    return ContractCall(to=AUCTION_HOUSE, data=b"\x01\x02", gas_limit=300_000, description=description)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def mock_chain():
    chain = AsyncMock()
    chain.send_raw_transaction.return_value = "0xabc"
    chain.wait_for_receipt.return_value = receipt()
    chain.get_revert_reason.return_value = "Bid too low"
    chain.get_fee_suggestion.return_value = FeeSuggestion(
        gas_price=None, max_priority_fee_per_gas=60 * GWEI, last_base_fee=30 * GWEI
    )
    chain.get_transaction_count.return_value = 0
    return chain


@pytest.fixture
def mock_signer():
    signer = MagicMock()
    signer.address = "0x5555555555555555555555555555555555555555"
    signer.chain_id = 80002
    signer.sign_transaction.return_value = b"signed"
    return signer


@pytest.fixture
def fees():
    return FeeParameters(nonce=4, gas_limit=300_000, max_fee_per_gas=110 * GWEI, max_priority_fee_per_gas=50 * GWEI)


@pytest.fixture
def submitter(mock_chain):
    return TransactionSubmitter(mock_chain, confirmations=1, receipt_timeout=5)


@pytest.fixture
def sequencer():
    return WalletSequencer()


@pytest.fixture
def mock_submitter():
    """Submitter double recording the nonce of every submission."""
    submitter = AsyncMock()
    submitter.nonces = []

    async def submit(signer, call, fees, on_submitted=None):
        await asyncio.sleep(0)
        submitter.nonces.append(fees.nonce)
        tx_hash = f"0x{len(submitter.nonces):064x}"
        if on_submitted is not None:
            await on_submitted(tx_hash)
        return receipt(tx_hash)

    submitter.submit.side_effect = submit
    return submitter


@pytest.fixture
def pipeline(key_manager, mock_chain, sequencer, mock_submitter, store):
    planner = FeePlanner(mock_chain, sequencer, min_tip_wei=50 * GWEI)
    return SettlementPipeline(key_manager, planner, mock_submitter, sequencer, store)


@pytest.fixture
def wallet(make_account):
    return make_account()


def plan_for(wallet, *steps, operation=Operation.PLACE_BID):
    address, encrypted = wallet
    return SettlementPlan(
        operation=operation,
        wallet_address=address,
        encrypted_key=encrypted,
        listing_id=1,
        context={"amount": "15"},
        steps=list(steps),
    )


# ============================================================================
# Submitter
# ============================================================================

class TestTransactionSubmitter:
    """Tests for sign/broadcast/confirm."""

    @pytest.mark.asyncio
    async def test_submit_success(self, submitter, mock_chain, mock_signer, fees):
        result = await submitter.submit(mock_signer, call(), fees)

        assert result.tx_hash == "0xabc"
        mock_chain.send_raw_transaction.assert_awaited_once_with(b"signed")
        mock_chain.wait_for_receipt.assert_awaited_once_with("0xabc", 1, 5)

    @pytest.mark.asyncio
    async def test_signed_fields(self, submitter, mock_signer, fees):
        """Planned fees and nonce are what gets signed."""
        await submitter.submit(mock_signer, call(), fees)

        tx = mock_signer.sign_transaction.call_args[0][0]
        assert tx["nonce"] == 4
        assert tx["maxPriorityFeePerGas"] == 50 * GWEI
        assert tx["chainId"] == 80002
        assert tx["to"] == AUCTION_HOUSE
        assert "from" not in tx

    @pytest.mark.asyncio
    async def test_hash_reported_before_confirmation(self, submitter, mock_chain, mock_signer, fees):
        seen = []

        async def on_submitted(tx_hash):
            seen.append(tx_hash)
            mock_chain.wait_for_receipt.assert_not_awaited()

        await submitter.submit(mock_signer, call(), fees, on_submitted)

        assert seen == ["0xabc"]

    @pytest.mark.asyncio
    async def test_revert_carries_reason_and_hash(self, submitter, mock_chain, mock_signer, fees):
        mock_chain.wait_for_receipt.return_value = receipt(status=0)

        with pytest.raises(ChainCallError) as exc:
            await submitter.submit(mock_signer, call(), fees)

        assert exc.value.tx_hash == "0xabc"
        assert exc.value.reason == "Bid too low"
        assert exc.value.reverted
        assert exc.value.to_dict()["reason"] == "Bid too low"

    @pytest.mark.asyncio
    async def test_timeout_carries_hash(self, submitter, mock_chain, mock_signer, fees):
        """Unknown outcome still reports the hash."""
        mock_chain.wait_for_receipt.side_effect = ChainTimeoutError("not confirmed")

        with pytest.raises(ChainTimeoutError) as exc:
            await submitter.submit(mock_signer, call(), fees)

        assert exc.value.tx_hash == "0xabc"
        assert exc.value.to_dict()["outcome"] == "unknown"

    @pytest.mark.asyncio
    async def test_broadcast_failure_has_no_hash(self, submitter, mock_chain, mock_signer, fees):
        mock_chain.send_raw_transaction.side_effect = ChainConnectivityError("connection refused")

        with pytest.raises(ChainConnectivityError) as exc:
            await submitter.submit(mock_signer, call(), fees)

        assert exc.value.tx_hash is None
        assert not exc.value.chain_state_mutated
        mock_chain.wait_for_receipt.assert_not_awaited()


# ============================================================================
# Pipeline
# ============================================================================

class TestSettlementPipeline:
    """Tests for ordered step execution."""

    @pytest.mark.asyncio
    async def test_steps_run_in_order(self, pipeline, mock_submitter, wallet):
        outcomes = await pipeline.execute(plan_for(
            wallet,
            SettlementStep(name="approve_token", call=call("approve")),
            SettlementStep(name="place_bid", call=call(), settles=True),
        ))

        assert [o.name for o in outcomes] == ["approve_token", "place_bid"]
        assert mock_submitter.nonces == [0, 1]

    @pytest.mark.asyncio
    async def test_satisfied_approval_skipped(self, pipeline, mock_submitter, wallet):
        """An existing allowance costs no transaction."""
        outcomes = await pipeline.execute(plan_for(
            wallet,
            SettlementStep(name="approve_token", call=call("approve"), skip_when=AsyncMock(return_value=True)),
            SettlementStep(name="place_bid", call=call(), settles=True),
        ))

        assert outcomes[0].skipped
        assert outcomes[0].tx_hash is None
        assert mock_submitter.submit.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_precheck_submits_nothing(self, pipeline, mock_submitter, mock_chain, wallet):
        precheck = AsyncMock(side_effect=PreconditionError("offer withdrawn"))

        with pytest.raises(PreconditionError):
            await pipeline.execute(plan_for(
                wallet,
                SettlementStep(name="accept_offer", call=call(), precheck=precheck, settles=True),
            ))

        mock_submitter.submit.assert_not_awaited()
        mock_chain.get_transaction_count.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_settling_step_recorded(self, pipeline, store, wallet):
        """Settling hash lands in the settlement log; approvals do not."""
        outcomes = await pipeline.execute(plan_for(
            wallet,
            SettlementStep(name="approve_token", call=call("approve")),
            SettlementStep(name="place_bid", call=call(), settles=True),
        ))

        assert list(store.settlements) == [outcomes[1].tx_hash]
        record = store.settlements[outcomes[1].tx_hash]
        assert record.status == SettlementStatus.SUBMITTED
        assert record.operation == "place_bid"
        assert record.listing_id == 1
        assert record.context == {"amount": "15"}

    @pytest.mark.asyncio
    async def test_revert_marks_record_failed(self, pipeline, mock_submitter, store, wallet):
        async def reverting(signer, call, fees, on_submitted=None):
            await on_submitted("0xdead")
            raise ChainCallError("place bid reverted", reason="Bid too low", tx_hash="0xdead", reverted=True)

        mock_submitter.submit.side_effect = reverting

        with pytest.raises(ChainCallError):
            await pipeline.execute(plan_for(wallet, SettlementStep(name="place_bid", call=call(), settles=True)))

        assert store.settlements["0xdead"].status == SettlementStatus.FAILED
        assert store.settlements["0xdead"].error == "Bid too low"

    @pytest.mark.asyncio
    async def test_unreadable_outcome_stays_open(self, pipeline, mock_submitter, store, wallet):
        """Only a mined revert closes the record; recovery revisits the rest."""
        async def unreadable(signer, call, fees, on_submitted=None):
            await on_submitted("0xbeef")
            raise ChainCallError("Unexpected receipt shape", tx_hash="0xbeef")

        mock_submitter.submit.side_effect = unreadable

        with pytest.raises(ChainCallError):
            await pipeline.execute(plan_for(wallet, SettlementStep(name="place_bid", call=call(), settles=True)))

        assert store.settlements["0xbeef"].status == SettlementStatus.SUBMITTED
        assert [r.tx_hash for r in await store.list_open_settlements()] == ["0xbeef"]

    @pytest.mark.asyncio
    async def test_unsent_nonce_reused(self, pipeline, mock_submitter, wallet):
        """A broadcast failure frees its nonce for the next transaction."""
        mock_submitter.submit.side_effect = [ChainConnectivityError("connection refused"), receipt("0x01")]

        with pytest.raises(ChainConnectivityError):
            await pipeline.execute(plan_for(wallet, SettlementStep(name="place_bid", call=call())))
        await pipeline.execute(plan_for(wallet, SettlementStep(name="place_bid", call=call())))

        first, second = [c[0][2].nonce for c in mock_submitter.submit.call_args_list]
        assert first == second == 0

    @pytest.mark.asyncio
    async def test_key_for_other_wallet_rejected(self, pipeline, mock_submitter, wallet, make_account):
        other_address, _ = make_account()
        plan = plan_for(wallet, SettlementStep(name="place_bid", call=call()))
        plan.wallet_address = other_address

        with pytest.raises(KeyCustodyError):
            await pipeline.execute(plan)

        mock_submitter.submit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_plans_same_wallet(self, pipeline, mock_submitter, mock_chain, wallet):
        """Node counts what was broadcast; concurrent plans never collide."""
        async def pending_count(address, block="pending"):
            await asyncio.sleep(0)
            return len(mock_submitter.nonces)

        mock_chain.get_transaction_count.side_effect = pending_count
        plans = [
            plan_for(wallet, SettlementStep(name="place_bid", call=call()))
            for _ in range(5)
        ]

        await asyncio.gather(*[pipeline.execute(p) for p in plans])

        assert sorted(mock_submitter.nonces) == [0, 1, 2, 3, 4]
