"""
AttestGate — Ledger Client (web3 AsyncWeb3)

Read-mostly access to an EVM ledger over JSON-RPC: transactions, receipts,
heights, logs, read-only contract calls, and a single signed-submission
path used by the reward gate.

Every read is wrapped the same way:
  - asyncio.wait_for with ``request_timeout_s`` (per call, not per run)
  - transport failures translated to TransientNetworkError
  - retried by the injected RetryPolicy

web3's own exception types never leak past this module; callers only see
the AttestGate error taxonomy (TransactionNotFound, AbiMismatch,
LedgerRejected, ReplayRejected, ConfirmationTimeout, ...).

Lifecycle: construct → connect() → use → close(), or ``async with``.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, Any, TypeVar

import aiohttp
import structlog
from eth_abi.exceptions import DecodingError
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import (
    BadFunctionCallOutput,
    ContractLogicError,
    MismatchedABI,
    Web3RPCError,
    Web3ValidationError,
)
from web3.exceptions import TransactionNotFound as Web3TransactionNotFound

from attestgate.clients.retry import RetryPolicy
from attestgate.errors import (
    AbiMismatch,
    ConfirmationTimeout,
    LedgerRejected,
    ReplayRejected,
    TransientNetworkError,
    is_replay_rejection,
)
from attestgate.primitives.attestation import (
    LogEntry,
    ReceiptInfo,
    ReceiptStatus,
    TransactionInfo,
    compute_confirmations,
)

if TYPE_CHECKING:
    from attestgate.config import LedgerConfig

logger = structlog.get_logger()

T = TypeVar("T")

_TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    aiohttp.ClientError,
    asyncio.TimeoutError,
    ConnectionError,
    OSError,
)

_ABI_MISMATCH_ERRORS: tuple[type[BaseException], ...] = (
    BadFunctionCallOutput,
    DecodingError,
    MismatchedABI,
    Web3ValidationError,
)


def _hex(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return Web3.to_hex(value)


def _revert_reason(exc: BaseException) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return str(message)


def _is_empty_revert(exc: ContractLogicError) -> bool:
    """A revert with no reason data, which is what calling a missing selector produces."""
    data = getattr(exc, "data", None)
    return data in (None, "", "0x", b"")


def _log_entry(raw: Any) -> LogEntry:
    return LogEntry(
        address=Web3.to_checksum_address(raw["address"]),
        topics=tuple(_hex(t) for t in raw.get("topics", [])),
        data=_hex(raw.get("data", "0x")) or "0x",
        tx_hash=_hex(raw.get("transactionHash")),
        block_number=raw.get("blockNumber"),
        log_index=raw.get("logIndex"),
    )


def _receipt_status(value: Any) -> ReceiptStatus:
    if value is None:
        return ReceiptStatus.UNKNOWN
    return ReceiptStatus.SUCCESS if int(value) == 1 else ReceiptStatus.FAILURE


class LedgerClient:
    """
    Async web3 ledger client for AttestGate.

    A pre-built ``AsyncWeb3`` may be injected (tests, shared sessions);
    otherwise connect() builds one from ``LedgerConfig.rpc_url``.
    """

    def __init__(
        self,
        config: LedgerConfig,
        retry: RetryPolicy | None = None,
        w3: AsyncWeb3 | None = None,
    ) -> None:
        self._config = config
        self._retry = retry or RetryPolicy.from_config(config.retry)
        self._w3: AsyncWeb3 | None = w3
        self._owns_provider = w3 is None
        self._logger = logger.bind(system="clients.ledger")

    # ── Lifecycle ─────────────────────────────────────────────

    async def connect(self) -> None:
        if self._w3 is not None:
            return
        provider = AsyncHTTPProvider(
            self._config.rpc_url,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=self._config.request_timeout_s)},
        )
        self._w3 = AsyncWeb3(provider)
        self._logger.info("ledger_connected", rpc_url=self._config.rpc_url)

    async def close(self) -> None:
        if self._w3 is not None and self._owns_provider:
            disconnect = getattr(self._w3.provider, "disconnect", None)
            if disconnect is not None:
                try:
                    await disconnect()
                except Exception as e:
                    self._logger.warning("ledger_close_error", error=str(e))
            self._w3 = None
            self._logger.info("ledger_disconnected")

    async def __aenter__(self) -> LedgerClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ── Reads ─────────────────────────────────────────────────

    async def get_chain_id(self) -> int:
        w3 = self._require_w3()
        return int(await self._read("eth_chainId", lambda: w3.eth.chain_id))

    async def get_block_height(self) -> int:
        w3 = self._require_w3()
        return int(await self._read("eth_blockNumber", lambda: w3.eth.block_number))

    async def get_block_timestamp(self, block_number: int) -> int:
        w3 = self._require_w3()
        block = await self._read("eth_getBlockByNumber", lambda: w3.eth.get_block(block_number))
        return int(block["timestamp"])

    async def get_transaction(self, tx_hash: str) -> TransactionInfo | None:
        """Return the transaction, or None if the ledger does not know it."""
        w3 = self._require_w3()
        try:
            raw = await self._read("eth_getTransactionByHash", lambda: w3.eth.get_transaction(tx_hash))
        except Web3TransactionNotFound:
            return None
        if raw is None:
            return None
        to = raw.get("to")
        return TransactionInfo(
            tx_hash=_hex(raw.get("hash")) or tx_hash,
            from_address=raw.get("from", ""),
            to=Web3.to_checksum_address(to) if to else None,
            input_data=_hex(raw.get("input", "0x")) or "0x",
            value=int(raw.get("value", 0)),
            nonce=raw.get("nonce"),
            block_number=raw.get("blockNumber"),
        )

    async def get_receipt(self, tx_hash: str) -> ReceiptInfo | None:
        """Return the receipt, or None while the transaction is pending."""
        w3 = self._require_w3()
        try:
            raw = await self._read(
                "eth_getTransactionReceipt", lambda: w3.eth.get_transaction_receipt(tx_hash)
            )
        except Web3TransactionNotFound:
            return None
        if raw is None:
            return None
        to = raw.get("to")
        contract_address = raw.get("contractAddress")
        return ReceiptInfo(
            tx_hash=_hex(raw.get("transactionHash")) or tx_hash,
            block_number=int(raw["blockNumber"]),
            status=_receipt_status(raw.get("status")),
            to=Web3.to_checksum_address(to) if to else None,
            contract_address=Web3.to_checksum_address(contract_address) if contract_address else None,
            gas_used=raw.get("gasUsed"),
            logs=tuple(_log_entry(log) for log in raw.get("logs", [])),
        )

    async def get_logs(
        self,
        address: str,
        from_block: int,
        to_block: int | str,
        topics: Sequence[str | None] | None = None,
    ) -> list[LogEntry]:
        w3 = self._require_w3()
        params: dict[str, Any] = {
            "address": Web3.to_checksum_address(address),
            "fromBlock": from_block,
            "toBlock": to_block,
        }
        if topics:
            params["topics"] = list(topics)
        raw_logs = await self._read("eth_getLogs", lambda: w3.eth.get_logs(params))
        return [_log_entry(log) for log in raw_logs]

    async def call(self, address: str, abi_fragment: dict[str, Any], args: Sequence[Any]) -> Any:
        """
        Read-only call of ``abi_fragment`` at ``address``.

        Raises AbiMismatch when the contract does not understand the call
        shape (undecodable output, argument/ABI mismatch, reason-less
        revert). A revert that carries a reason is a real answer from the
        contract and is raised as LedgerRejected.
        """
        w3 = self._require_w3()
        contract = w3.eth.contract(address=Web3.to_checksum_address(address), abi=[abi_fragment])
        name = abi_fragment["name"]
        try:
            return await self._read(f"eth_call:{name}", lambda: contract.functions[name](*args).call())
        except _ABI_MISMATCH_ERRORS as exc:
            raise AbiMismatch(f"{name}: {type(exc).__name__}: {exc}") from exc
        except ContractLogicError as exc:
            if _is_empty_revert(exc):
                raise AbiMismatch(f"{name}: reverted without reason") from exc
            raise LedgerRejected(f"{name} reverted: {_revert_reason(exc)}") from exc

    async def estimate_gas(self, to: str, data: str, from_address: str | None = None) -> int:
        w3 = self._require_w3()
        tx: dict[str, Any] = {"to": Web3.to_checksum_address(to), "data": data}
        if from_address:
            tx["from"] = Web3.to_checksum_address(from_address)
        try:
            return int(await self._read("eth_estimateGas", lambda: w3.eth.estimate_gas(tx)))
        except (ContractLogicError, Web3RPCError) as exc:
            raise self._rejection(exc) from exc

    async def get_fee_data(self) -> dict[str, int | None]:
        """Gas price plus EIP-1559 fields where the chain supports them."""
        w3 = self._require_w3()
        gas_price = int(await self._read("eth_gasPrice", lambda: w3.eth.gas_price))
        latest = await self._read("eth_getBlockByNumber", lambda: w3.eth.get_block("latest"))
        base_fee = latest.get("baseFeePerGas")
        if base_fee is None:
            return {"gas_price": gas_price, "max_fee_per_gas": None, "max_priority_fee_per_gas": None}
        try:
            priority = int(await self._read("eth_maxPriorityFeePerGas", lambda: w3.eth.max_priority_fee))
        except (TransientNetworkError, ValueError):
            priority = 0
        return {
            "gas_price": gas_price,
            "max_fee_per_gas": int(base_fee) * 2 + priority,
            "max_priority_fee_per_gas": priority,
        }

    # ── Writes ────────────────────────────────────────────────

    async def build_transaction(self, to: str, data: str, from_address: str) -> dict[str, Any]:
        """Fill nonce, chain id, gas and fees for a zero-value call."""
        w3 = self._require_w3()
        sender = Web3.to_checksum_address(from_address)
        nonce = await self._read(
            "eth_getTransactionCount", lambda: w3.eth.get_transaction_count(sender, "pending")
        )
        chain_id = await self.get_chain_id()
        gas = await self.estimate_gas(to, data, sender)
        fees = await self.get_fee_data()
        tx: dict[str, Any] = {
            "from": sender,
            "to": Web3.to_checksum_address(to),
            "data": data,
            "value": 0,
            "nonce": int(nonce),
            "chainId": chain_id,
            "gas": gas,
        }
        if fees["max_fee_per_gas"] is not None:
            tx["maxFeePerGas"] = fees["max_fee_per_gas"]
            tx["maxPriorityFeePerGas"] = fees["max_priority_fee_per_gas"]
        else:
            tx["gasPrice"] = fees["gas_price"]
        return tx

    async def submit(self, to: str, data: str, signer_key: str) -> str:
        """
        Sign and broadcast a state-changing call. Returns the tx hash.

        Not retried: a broadcast either reaches the mempool or fails
        loudly, and the caller decides whether to re-run the whole gate.
        A node that refuses the raw transaction (insufficient funds, nonce
        too low, underpriced) raises LedgerRejected like a revert does.
        """
        w3 = self._require_w3()
        account = Account.from_key(signer_key)
        tx = await self.build_transaction(to, data, account.address)
        tx.pop("from", None)
        signed = account.sign_transaction(tx)
        try:
            tx_hash = await self._guarded(
                "eth_sendRawTransaction", lambda: w3.eth.send_raw_transaction(signed.raw_transaction)
            )
        except (ContractLogicError, Web3RPCError, ValueError) as exc:
            raise self._rejection(exc) from exc
        tx_hash_hex = _hex(tx_hash)
        self._logger.info("ledger_tx_submitted", tx_hash=tx_hash_hex, to=tx["to"], nonce=tx["nonce"])
        return tx_hash_hex

    async def wait_for_confirmations(
        self,
        tx_hash: str,
        confirmations: int,
        timeout_s: float,
        poll_interval_s: float = 3.0,
    ) -> ReceiptInfo:
        """
        Poll until ``tx_hash`` is ``confirmations`` deep.

        Raises LedgerRejected if the receipt shows a revert, and
        ConfirmationTimeout if the depth is not reached within ``timeout_s``.
        Abandoning the wait is always safe: the transaction stays on the
        ledger and a later call can resume polling.
        """
        deadline = time.monotonic() + timeout_s
        seen: int | None = None
        while True:
            receipt = await self.get_receipt(tx_hash)
            if receipt is not None:
                if receipt.status is ReceiptStatus.FAILURE:
                    raise LedgerRejected(f"Transaction {tx_hash} reverted on-chain.", tx_hash=tx_hash)
                seen = compute_confirmations(receipt.block_number, await self.get_block_height())
                if seen is not None and seen >= confirmations:
                    return receipt
            if time.monotonic() >= deadline:
                raise ConfirmationTimeout(tx_hash, seen, confirmations)
            await asyncio.sleep(poll_interval_s)

    # ── Internal helpers ──────────────────────────────────────

    async def _guarded(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(fn(), timeout=self._config.request_timeout_s)
        except _TRANSPORT_ERRORS as exc:
            raise TransientNetworkError(f"{operation} failed: {type(exc).__name__}: {exc}") from exc

    async def _read(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        return await self._retry.run(lambda: self._guarded(operation, fn), operation=operation)

    @staticmethod
    def _rejection(exc: BaseException) -> LedgerRejected:
        reason = _revert_reason(exc)
        if is_replay_rejection(reason):
            return ReplayRejected(f"Replay guard rejected the call: {reason}")
        return LedgerRejected(f"Ledger rejected the call: {reason}")

    def _require_w3(self) -> AsyncWeb3:
        if self._w3 is None:
            raise RuntimeError("LedgerClient not connected. Call connect() first.")
        return self._w3
