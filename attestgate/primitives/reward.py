"""
AttestGate — Reward Primitives

RewardIntent is what the caller wants recorded; RewardRecord is what the
ledger says was recorded (one per attestation tx hash, ever); RewardOutcome
is what one invocation of the gate did about it.
"""

from __future__ import annotations

import enum
from typing import Any

from pydantic import ValidationInfo, field_validator
from web3 import Web3

from attestgate.errors import ConfigurationError
from attestgate.primitives.common import AttestBaseModel, FrozenModel, normalize_bytes32
from attestgate.primitives.verdict import AttestationVerdict


class RewardIntent(FrozenModel):
    attestation_tx_hash: str
    payload_hash: str
    slot_key: str
    participant: str
    quantity: int

    @field_validator("attestation_tx_hash", "payload_hash", "slot_key")
    @classmethod
    def _bytes32(cls, value: str, info: ValidationInfo) -> str:
        try:
            return normalize_bytes32(value, field=info.field_name or "value")
        except ConfigurationError as exc:
            raise ValueError(str(exc)) from exc

    @field_validator("participant")
    @classmethod
    def _checksum(cls, value: str) -> str:
        if not Web3.is_address(value):
            raise ValueError(f"participant is not an EVM address: {value!r}")
        return Web3.to_checksum_address(value)

    @field_validator("quantity")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("quantity must be >= 0")
        return value


class RewardRecord(FrozenModel):
    """A decoded RewardExecuted event."""

    attestation_tx_hash: str
    payload_hash: str
    slot_key: str
    participant: str
    quantity: int
    tx_hash: str = ""
    block_number: int | None = None
    log_index: int | None = None


class RewardStatus(enum.StrEnum):
    DRY_RUN = "dry_run"
    EXECUTED = "executed"
    ALREADY_EXECUTED = "already_executed"
    AWAITING_SIGNATURE = "awaiting_signature"
    PENDING_CONFIRMATION = "pending_confirmation"
    VERIFICATION_NOT_PASSED = "verification_not_passed"
    REJECTED_BY_LEDGER = "rejected_by_ledger"


_SUCCESS_STATUSES = frozenset({RewardStatus.DRY_RUN, RewardStatus.EXECUTED})
_RETRYABLE_STATUSES = frozenset({RewardStatus.PENDING_CONFIRMATION, RewardStatus.AWAITING_SIGNATURE})


class RewardOutcome(AttestBaseModel):
    """
    The serialised result of one gate invocation.

    ``verdict`` is carried in full so an outcome file is auditable on its own.
    """

    status: RewardStatus
    dry_run: bool
    verdict: AttestationVerdict
    intent: RewardIntent | None = None
    estimated_gas: int | None = None
    gas_used: int | None = None
    max_fee_per_gas: int | None = None
    reward_tx_hash: str | None = None
    block_number: int | None = None
    confirmations: int | None = None
    calldata: str | None = None
    tx_request: dict[str, Any] | None = None
    record: RewardRecord | None = None
    error: str = ""

    @property
    def success(self) -> bool:
        return self.status in _SUCCESS_STATUSES

    @property
    def retryable(self) -> bool:
        return self.status in _RETRYABLE_STATUSES

    def to_report(self) -> dict[str, Any]:
        body = self.model_dump(mode="json")
        body["success"] = self.success
        body["verdict"] = self.verdict.to_report()
        return body


def unsigned_request_fields(tx: dict[str, Any]) -> dict[str, Any]:
    """Hex-quantity view of a transaction dict, the shape wallets accept."""
    out: dict[str, Any] = {}
    for key, value in tx.items():
        if isinstance(value, int):
            out[key] = hex(value)
        else:
            out[key] = value
    return out

