"""
AttestGate — Attestation Primitives

The inputs of one verification run: which transaction is being checked,
the proof artifact the attestation network produced for it, and the facts
the ledger reports about it.

ProofPayload is the single canonical shape. Every historical field-name
variant of the proof document is resolved at the proof-store boundary
(see clients/proof_store.py); nothing downstream branches on variants.
"""

from __future__ import annotations

import enum
from typing import Any

from pydantic import Field, computed_field, field_validator
from web3 import Web3

from attestgate.errors import ConfigurationError
from attestgate.primitives.common import FrozenModel, normalize_bytes32


class AttestationReference(FrozenModel):
    """Identifies one attestation attempt."""

    tx_hash: str
    target_contract: str
    chain_id: int

    @field_validator("tx_hash")
    @classmethod
    def _tx_hash_bytes32(cls, value: str) -> str:
        try:
            return normalize_bytes32(value, field="tx_hash")
        except ConfigurationError as exc:
            raise ValueError(str(exc)) from exc

    @field_validator("target_contract")
    @classmethod
    def _checksum(cls, value: str) -> str:
        if not Web3.is_address(value):
            raise ValueError(f"target_contract is not an EVM address: {value!r}")
        return Web3.to_checksum_address(value)


# ─── Proof payload ────────────────────────────────────────────────


class RequestBody(FrozenModel):
    """
    Union of the request-body fields of both verification ABIs.

    The older JsonApi shape only reads url, post_process_jq and
    abi_signature; the Web2Json shape reads all seven.
    """

    url: str = ""
    http_method: str = ""
    headers: str = ""
    query_params: str = ""
    body: str = ""
    post_process_jq: str = ""
    abi_signature: str = ""


class ResponseBody(FrozenModel):
    abi_encoded_data: str = "0x"


class ProofClaim(FrozenModel):
    attestation_type: str
    source_id: str
    voting_round: int = 0
    lowest_used_timestamp: int = 0
    request_body: RequestBody = Field(default_factory=RequestBody)
    response_body: ResponseBody = Field(default_factory=ResponseBody)


class ProofPayload(FrozenModel):
    proof_nodes: tuple[str, ...] = ()
    claim: ProofClaim
    voting_round_id: int | None = None   # Round the DA layer answered for, if recorded


class SubmissionRecord(FrozenModel):
    """The request-submission artifact written by the acquisition stage."""

    tx_hash: str | None = None
    computed_digest: str | None = None
    abi_encoded_request: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


# ─── Ledger facts ─────────────────────────────────────────────────


class ReceiptStatus(enum.StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"
    UNKNOWN = "unknown"


class LogEntry(FrozenModel):
    address: str
    topics: tuple[str, ...] = ()
    data: str = "0x"
    tx_hash: str = ""
    block_number: int | None = None
    log_index: int | None = None


class TransactionInfo(FrozenModel):
    tx_hash: str
    from_address: str = ""
    to: str | None = None
    input_data: str = "0x"
    value: int = 0
    nonce: int | None = None
    block_number: int | None = None


class ReceiptInfo(FrozenModel):
    tx_hash: str
    block_number: int
    status: ReceiptStatus
    to: str | None = None
    contract_address: str | None = None
    gas_used: int | None = None
    logs: tuple[LogEntry, ...] = ()


def compute_confirmations(block_number: int | None, current_height: int) -> int | None:
    """Blocks on top of (and including) the containing block. None while pending."""
    if block_number is None:
        return None
    return max(current_height - block_number + 1, 0)


class LedgerFacts(FrozenModel):
    """Observed, read-only facts about the attestation transaction."""

    block_number: int | None = None
    current_height: int
    receipt_status: ReceiptStatus = ReceiptStatus.UNKNOWN
    block_timestamp: int | None = None
    transaction_to: str | None = None
    logs_in_receipt: tuple[LogEntry, ...] = ()
    logs_in_block: tuple[LogEntry, ...] = ()
    request_fee_wei: int | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def confirmations(self) -> int | None:
        return compute_confirmations(self.block_number, self.current_height)

    @property
    def pending(self) -> bool:
        return self.receipt_status is ReceiptStatus.PENDING
