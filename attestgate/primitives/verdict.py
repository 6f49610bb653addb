"""
AttestGate — Verdict Primitives

PolicyVerdict is tri-state: passed=True, passed=False, or passed=None
(indeterminate, "could not check"). Aggregation treats None exactly like
False. An indeterminate check is "not proven", never "proven".

AttestationVerdict is the only object the reward gate may read. It is
assembled once per verification run, validated for internal consistency
(``verified`` can never disagree with its sub-verdicts), and persisted as
the audit report.
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from pydantic import Field, model_validator

from attestgate.errors import IntegrityMismatch, PolicyFailure, ReceiptPending
from attestgate.primitives.attestation import AttestationReference, LedgerFacts
from attestgate.primitives.common import FrozenModel, utc_now


class PolicyName(enum.StrEnum):
    CHAIN_IDENTITY = "chain_identity"
    CONFIRMATION_DEPTH = "confirmation_depth"
    PROOF_VALIDITY = "proof_validity"
    PAYLOAD_INTEGRITY = "payload_integrity"
    TIME_WINDOW = "time_window"
    TARGET_CONTRACT = "target_contract"


class PolicyVerdict(FrozenModel):
    policy: str
    passed: bool | None
    detail: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, policy: str, **detail: Any) -> PolicyVerdict:
        return cls(policy=policy, passed=True, detail=detail)

    @classmethod
    def fail(cls, policy: str, **detail: Any) -> PolicyVerdict:
        return cls(policy=policy, passed=False, detail=detail)

    @classmethod
    def indeterminate(cls, policy: str, **detail: Any) -> PolicyVerdict:
        return cls(policy=policy, passed=None, detail=detail)


# verified = confirmation && proof && integrity && time window, whatever else ran.
REQUIRED_POLICIES: tuple[PolicyName, ...] = (
    PolicyName.CONFIRMATION_DEPTH,
    PolicyName.PROOF_VALIDITY,
    PolicyName.PAYLOAD_INTEGRITY,
    PolicyName.TIME_WINDOW,
)


def missing_policies(verdicts: Mapping[str, PolicyVerdict]) -> list[str]:
    return [name.value for name in REQUIRED_POLICIES if name.value not in verdicts]


def aggregate_verified(verdicts: Mapping[str, PolicyVerdict]) -> bool:
    """True only if every required policy was evaluated and every verdict passed."""
    if missing_policies(verdicts):
        return False
    return all(v.passed is True for v in verdicts.values())


class AttestationVerdict(FrozenModel):
    reference: AttestationReference
    facts: LedgerFacts
    verdicts: dict[str, PolicyVerdict]
    verified: bool
    verification_function: str | None = None
    checked_at: datetime = Field(default_factory=utc_now)
    run_id: str | None = None

    @model_validator(mode="after")
    def _verified_matches_sub_verdicts(self) -> AttestationVerdict:
        if self.verified and not aggregate_verified(self.verdicts):
            raise ValueError("verified=True contradicts a failed, indeterminate or missing policy verdict")
        return self

    @classmethod
    def assemble(
        cls,
        reference: AttestationReference,
        facts: LedgerFacts,
        verdicts: Mapping[str, PolicyVerdict],
        verification_function: str | None = None,
        run_id: str | None = None,
    ) -> AttestationVerdict:
        return cls(
            reference=reference,
            facts=facts,
            verdicts=dict(verdicts),
            verified=aggregate_verified(verdicts),
            verification_function=verification_function,
            run_id=run_id,
        )

    @property
    def tx_hash(self) -> str:
        return self.reference.tx_hash

    def get(self, policy: str) -> PolicyVerdict | None:
        return self.verdicts.get(policy)

    def failing_policies(self) -> list[str]:
        """Policies that did not pass, followed by required policies that never ran."""
        failing = [name for name, v in self.verdicts.items() if v.passed is not True]
        return failing + missing_policies(self.verdicts)

    def _state(self, policy: str) -> str:
        v = self.verdicts.get(policy)
        if v is None:
            return "not evaluated"
        return "indeterminate" if v.passed is None else "failed"

    def raise_for_failure(self) -> None:
        """Raise the error-taxonomy exception matching a negative verdict."""
        if self.verified:
            return

        confirmation = self.get(PolicyName.CONFIRMATION_DEPTH)
        if confirmation is not None and confirmation.detail.get("pending"):
            raise ReceiptPending(f"Receipt for {self.tx_hash} is not available yet.")

        integrity = self.get(PolicyName.PAYLOAD_INTEGRITY)
        if integrity is not None and integrity.passed is False:
            raise IntegrityMismatch(
                f"Payload digest mismatch for {self.tx_hash}: "
                f"computed {integrity.detail.get('computed_digest')}",
                policies=[PolicyName.PAYLOAD_INTEGRITY.value],
                verdict=self,
                detail=dict(integrity.detail),
            )

        failing = self.failing_policies()
        states = ", ".join(f"{name}={self._state(name)}" for name in failing)
        raise PolicyFailure(
            f"Attestation {self.tx_hash} not verified ({states or 'no policies evaluated'}).",
            policies=failing,
            verdict=self,
        )

    def to_report(self) -> dict[str, Any]:
        """Serialisable audit artifact with flat summary fields first."""
        body = self.model_dump(mode="json")
        return {
            "run_id": self.run_id,
            "tx_hash": self.reference.tx_hash,
            "chain_id": self.reference.chain_id,
            "block_number": self.facts.block_number,
            "confirmations": self.facts.confirmations,
            "verified": self.verified,
            "verification_function": self.verification_function,
            "checked_at": body["checked_at"],
            "policies": body["verdicts"],
            "facts": body["facts"],
            "reference": body["reference"],
        }

    @classmethod
    def from_report(cls, report: Mapping[str, Any]) -> AttestationVerdict:
        return cls(
            reference=AttestationReference.model_validate(report["reference"]),
            facts=LedgerFacts.model_validate(report["facts"]),
            verdicts={
                name: PolicyVerdict.model_validate(v)
                for name, v in report["policies"].items()
            },
            verified=bool(report["verified"]),
            verification_function=report.get("verification_function"),
            checked_at=report["checked_at"],
            run_id=report.get("run_id"),
        )
