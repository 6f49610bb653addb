"""
AttestGate — Transaction Inspection

Read-only diagnostics for a single transaction: where it sits, how deep it
is, and what it called. Used by the ``inspect-attestation`` and
``inspect-reward`` commands; neither touches the proof store or writes to
the ledger.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from pydantic import Field
from web3 import Web3

from attestgate.errors import ReceiptPending, TransactionNotFound
from attestgate.primitives.attestation import ReceiptStatus, compute_confirmations
from attestgate.primitives.common import FrozenModel, same_hex, utc_now
from attestgate.primitives.reward import RewardRecord
from attestgate.systems.reward.abi import (
    decode_execute_reward_calldata,
    decode_reward_executed,
    is_reward_executed_log,
)
from attestgate.systems.verification.policies import ChainIdentityPolicy

if TYPE_CHECKING:
    from attestgate.clients.ledger import LedgerClient
    from attestgate.primitives.attestation import ReceiptInfo, TransactionInfo

REQUEST_ATTESTATION_SIGNATURE = "requestAttestation(bytes)"
REQUEST_ATTESTATION_SELECTOR = Web3.to_hex(Web3.keccak(text=REQUEST_ATTESTATION_SIGNATURE)[:4])


class TransactionInspection(FrozenModel):
    tx_hash: str
    chain_id: int
    block_number: int
    confirmations: int
    required_confirmations: int
    confirmed: bool
    status: ReceiptStatus
    from_address: str = ""
    to: str | None = None
    value: int = 0
    gas_used: int | None = None
    logs_count: int = 0
    method_name: str | None = None
    method_selector: str | None = None
    method_decode_reason: str | None = None
    decoded_args: dict[str, Any] = Field(default_factory=dict)
    reward_events: list[RewardRecord] = Field(default_factory=list)
    decode_errors: list[str] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=utc_now)


def decode_hub_method(input_data: str, value: int = 0) -> dict[str, Any]:
    """Decode an attestation-hub call, or explain why it could not be decoded."""
    if not input_data or input_data == "0x":
        return {"name": None, "selector": None, "args": {}, "reason": "No input data"}
    selector = input_data[:10]
    if not same_hex(selector, REQUEST_ATTESTATION_SELECTOR):
        return {"name": None, "selector": selector, "args": {}, "reason": "Unknown ABI for selector on attestation hub"}
    try:
        (request_bytes,) = decode(["bytes"], Web3.to_bytes(hexstr="0x" + input_data[10:]))
    except (DecodingError, ValueError) as exc:
        return {"name": None, "selector": selector, "args": {}, "reason": f"Undecodable requestAttestation input: {exc}"}
    return {
        "name": "requestAttestation",
        "selector": selector,
        "args": {"data": Web3.to_hex(request_bytes), "value": value},
        "reason": None,
    }


async def _load(
    ledger: LedgerClient,
    tx_hash: str,
    expected_chain_id: int | None,
) -> tuple[int, TransactionInfo, ReceiptInfo, int]:
    chain_id = await ledger.get_chain_id()
    if expected_chain_id is not None:
        ChainIdentityPolicy.enforce(expected_chain_id, chain_id)
    tx = await ledger.get_transaction(tx_hash)
    if tx is None:
        raise TransactionNotFound(f"Transaction not found: {tx_hash}")
    receipt = await ledger.get_receipt(tx_hash)
    if receipt is None:
        raise ReceiptPending(f"Receipt not found yet: {tx_hash}")
    height = await ledger.get_block_height()
    return chain_id, tx, receipt, height


async def inspect_attestation_tx(
    ledger: LedgerClient,
    tx_hash: str,
    required_confirmations: int,
    expected_chain_id: int | None = None,
) -> TransactionInspection:
    chain_id, tx, receipt, height = await _load(ledger, tx_hash, expected_chain_id)
    confirmations = compute_confirmations(receipt.block_number, height) or 0
    method = decode_hub_method(tx.input_data, tx.value)
    return TransactionInspection(
        tx_hash=tx_hash,
        chain_id=chain_id,
        block_number=receipt.block_number,
        confirmations=confirmations,
        required_confirmations=required_confirmations,
        confirmed=confirmations >= required_confirmations,
        status=receipt.status,
        from_address=tx.from_address,
        to=tx.to,
        value=tx.value,
        gas_used=receipt.gas_used,
        logs_count=len(receipt.logs),
        method_name=method["name"],
        method_selector=method["selector"],
        method_decode_reason=method["reason"],
        decoded_args=method["args"],
    )


async def inspect_reward_tx(
    ledger: LedgerClient,
    tx_hash: str,
    reward_contract: str,
    required_confirmations: int,
    expected_chain_id: int | None = None,
) -> TransactionInspection:
    chain_id, tx, receipt, height = await _load(ledger, tx_hash, expected_chain_id)
    confirmations = compute_confirmations(receipt.block_number, height) or 0

    name: str | None = None
    reason: str | None = None
    args: dict[str, Any] = {}
    selector = tx.input_data[:10] if tx.input_data and tx.input_data != "0x" else None
    if selector is None:
        reason = "No tx input data"
    else:
        try:
            decoded = decode_execute_reward_calldata(tx.input_data)
        except (DecodingError, ValueError) as exc:
            decoded = None
            reason = f"Undecodable executeReward input: {exc}"
        if decoded is not None:
            name = decoded.pop("name")
            args = decoded
        elif reason is None:
            reason = "Unknown function selector for reward executor ABI"

    events: list[RewardRecord] = []
    errors: list[str] = []
    for log in receipt.logs:
        if not same_hex(log.address, reward_contract) or not is_reward_executed_log(log):
            continue
        try:
            events.append(decode_reward_executed(log))
        except ValueError as exc:
            errors.append(str(exc))

    return TransactionInspection(
        tx_hash=tx_hash,
        chain_id=chain_id,
        block_number=receipt.block_number,
        confirmations=confirmations,
        required_confirmations=required_confirmations,
        confirmed=confirmations >= required_confirmations,
        status=receipt.status,
        from_address=tx.from_address,
        to=tx.to,
        value=tx.value,
        gas_used=receipt.gas_used,
        logs_count=len(receipt.logs),
        method_name=name,
        method_selector=selector,
        method_decode_reason=reason,
        decoded_args=args,
        reward_events=events,
        decode_errors=errors,
    )
