"""Chain Client - JSON-RPC access to the marketplace chain via web3.py."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Tuple

import aiohttp
import backoff
from web3 import AsyncWeb3
from web3.exceptions import (
    ContractLogicError,
    TimeExhausted,
    TransactionNotFound,
    Web3Exception,
)

from .errors import ChainCallError, ChainConnectivityError, ChainTimeoutError

logger = logging.getLogger(__name__)

# Errors raised by the HTTP transport underneath web3
TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)

# Errors raised by the node for a well-formed request
RPC_ERRORS = (Web3Exception, ValueError)


@dataclass(frozen=True)
class FeeSuggestion:
    """Network fee suggestion, all values in wei."""

    gas_price: Optional[int]
    max_priority_fee_per_gas: Optional[int] = None
    last_base_fee: Optional[int] = None

    @property
    def supports_priority_fee(self) -> bool:
        return self.max_priority_fee_per_gas is not None


@dataclass(frozen=True)
class LogEntry:
    address: str
    topics: Tuple[bytes, ...]
    data: bytes


@dataclass(frozen=True)
class Receipt:
    """Confirmed transaction receipt, restricted to the fields we read."""

    tx_hash: str
    block_number: int
    status: int
    gas_used: int
    logs: Tuple[LogEntry, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class ChainClient(Protocol):
    """Protocol for the chain access the settlement core needs."""
    async def get_fee_suggestion(self) -> FeeSuggestion: ...
    async def get_transaction_count(self, address: str, block: str = "pending") -> int: ...
    async def get_balance(self, address: str) -> int: ...
    async def call(self, to: str, data: bytes) -> bytes: ...
    async def send_raw_transaction(self, raw: bytes) -> str: ...
    async def wait_for_receipt(self, tx_hash: str, confirmations: int, timeout: float) -> Receipt: ...
    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]: ...
    async def get_revert_reason(self, tx: dict, block_number: int) -> Optional[str]: ...
    async def get_latest_timestamp(self) -> int: ...


def to_hex(value: Any) -> str:
    """Normalize a hash returned by web3 (HexBytes, bytes or str) to 0x-hex."""
    if isinstance(value, str):
        return value if value.startswith("0x") else f"0x{value}"
    return "0x" + bytes(value).hex()


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, str):
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)
    return bytes(value)


def parse_receipt(raw: Any) -> Receipt:
    """
    Convert a web3 receipt into a Receipt.

    Raises:
        ChainCallError: If the node returned an unexpected shape
    """
    try:
        logs = tuple(
            LogEntry(
                address=str(log["address"]),
                topics=tuple(_to_bytes(t) for t in log["topics"]),
                data=_to_bytes(log["data"]),
            )
            for log in raw["logs"]
        )
        return Receipt(
            tx_hash=to_hex(raw["transactionHash"]),
            block_number=int(raw["blockNumber"]),
            status=int(raw["status"]),
            gas_used=int(raw["gasUsed"]),
            logs=logs,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ChainCallError(f"Unexpected receipt shape: {e}")


class Web3ChainClient:
    """
    ChainClient implementation over web3's AsyncWeb3 HTTP provider.

    Read-only calls retry transport failures with exponential backoff.
    Transaction submission is never retried here.
    """

    def __init__(
        self,
        rpc_url: str,
        poll_interval: float = 2.0,
        request_timeout: float = 30.0,
        w3: Optional[AsyncWeb3] = None,
    ):
        """
        Initialize chain client.

        Args:
            rpc_url: HTTP JSON-RPC endpoint
            poll_interval: Seconds between receipt / block polls
            request_timeout: Per-request HTTP timeout
            w3: Pre-built AsyncWeb3 instance (tests, custom providers)
        """
        self.rpc_url = rpc_url
        self.poll_interval = poll_interval
        self.w3 = w3 or AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout})
        )

    @backoff.on_exception(backoff.expo, ChainConnectivityError, max_tries=3, max_time=30)
    async def _read(self, method: str, factory):
        try:
            return await factory()
        except TRANSPORT_ERRORS as e:
            logger.warning(f"RPC {method} transport error: {e}")
            raise ChainConnectivityError(f"RPC {method} failed: {e}")
        except TransactionNotFound:
            raise
        except ContractLogicError as e:
            raise ChainCallError(f"RPC {method} reverted", reason=_revert_message(e))
        except RPC_ERRORS as e:
            raise ChainCallError(f"RPC {method} rejected: {e}", reason=str(e))

    async def get_fee_suggestion(self) -> FeeSuggestion:
        block = await self._read("eth_getBlockByNumber", lambda: self.w3.eth.get_block("latest"))
        base_fee = block.get("baseFeePerGas")
        gas_price = await self._read("eth_gasPrice", lambda: self.w3.eth.gas_price)

        try:
            tip = await self._read("eth_maxPriorityFeePerGas", lambda: self.w3.eth.max_priority_fee)
        except ChainCallError:
            # Node without priority-fee support
            tip = None

        return FeeSuggestion(
            gas_price=int(gas_price) if gas_price is not None else None,
            max_priority_fee_per_gas=int(tip) if tip is not None else None,
            last_base_fee=int(base_fee) if base_fee is not None else None,
        )

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        address = AsyncWeb3.to_checksum_address(address)
        return int(await self._read(
            "eth_getTransactionCount",
            lambda: self.w3.eth.get_transaction_count(address, block),
        ))

    async def get_balance(self, address: str) -> int:
        address = AsyncWeb3.to_checksum_address(address)
        return int(await self._read("eth_getBalance", lambda: self.w3.eth.get_balance(address)))

    async def call(self, to: str, data: bytes) -> bytes:
        tx = {"to": AsyncWeb3.to_checksum_address(to), "data": "0x" + data.hex()}
        return bytes(await self._read("eth_call", lambda: self.w3.eth.call(tx)))

    async def get_latest_timestamp(self) -> int:
        block = await self._read("eth_getBlockByNumber", lambda: self.w3.eth.get_block("latest"))
        return int(block["timestamp"])

    async def send_raw_transaction(self, raw: bytes) -> str:
        try:
            tx_hash = await self.w3.eth.send_raw_transaction(raw)
        except TRANSPORT_ERRORS as e:
            raise ChainConnectivityError(f"Transaction broadcast failed: {e}")
        except RPC_ERRORS as e:
            raise ChainCallError("Transaction rejected by node", reason=str(e))
        return to_hex(tx_hash)

    async def wait_for_receipt(
        self,
        tx_hash: str,
        confirmations: int = 1,
        timeout: float = 180.0,
    ) -> Receipt:
        """
        Wait until tx_hash is mined and has `confirmations` blocks on top.

        Once the transaction is broadcast every failure here means the
        outcome is unknown, so all of them surface as ChainTimeoutError
        carrying tx_hash.

        Raises:
            ChainTimeoutError: Not confirmed within timeout (outcome unknown)
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        try:
            raw = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=self.poll_interval
            )
            receipt = parse_receipt(raw)

            while confirmations > 1:
                head = await self.w3.eth.block_number
                if head - receipt.block_number + 1 >= confirmations:
                    break
                if loop.time() >= deadline:
                    raise ChainTimeoutError(
                        f"{confirmations} confirmations not reached", tx_hash=tx_hash
                    )
                await asyncio.sleep(self.poll_interval)
        except TimeExhausted:
            raise ChainTimeoutError(
                f"Transaction not confirmed within {timeout:.0f}s", tx_hash=tx_hash
            )
        except TRANSPORT_ERRORS as e:
            # Already broadcast: losing the node now says nothing about the outcome
            raise ChainTimeoutError(f"Lost connection while awaiting receipt: {e}", tx_hash=tx_hash)
        except RPC_ERRORS as e:
            logger.warning(f"RPC error while awaiting {tx_hash}: {e}")
            raise ChainTimeoutError(f"Node error while awaiting receipt: {e}", tx_hash=tx_hash)
        except ChainCallError as e:
            raise ChainTimeoutError(f"Unreadable receipt: {e.message}", tx_hash=tx_hash)

        return receipt

    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        try:
            raw = await self._read(
                "eth_getTransactionReceipt",
                lambda: self.w3.eth.get_transaction_receipt(tx_hash),
            )
        except TransactionNotFound:
            return None
        if raw is None:
            return None
        return parse_receipt(raw)

    async def get_revert_reason(self, tx: dict, block_number: int) -> Optional[str]:
        """Replay a reverted transaction with eth_call to recover its reason."""
        try:
            await self.w3.eth.call(tx, block_identifier=block_number)
        except ContractLogicError as e:
            return _revert_message(e)
        except TRANSPORT_ERRORS + RPC_ERRORS as e:
            logger.debug(f"Revert reason replay failed: {e}")
        return None


def _revert_message(error: ContractLogicError) -> str:
    message = getattr(error, "message", None) or str(error)
    return message.replace("execution reverted: ", "")
