"""
AttestGate — Verification Policies

Each policy is one independent check over a PolicyContext, returning a
tri-state PolicyVerdict with a diagnostic detail dict.

A Policy knows:
  - Its name (the key it reports under)
  - How to evaluate one verification context (evaluate)

Policies must not mutate the context. Only ProofValidityPolicy performs I/O
(one read-only contract call); the rest are pure functions of the context.

Chain identity is not a Policy: ChainIdentityPolicy.enforce() raises
ChainMismatch and aborts the run instead of returning a failed verdict.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from urllib.parse import unquote, urlsplit

from attestgate.errors import ChainMismatch
from attestgate.primitives.attestation import (
    AttestationReference,
    LedgerFacts,
    ProofPayload,
    ReceiptStatus,
    SubmissionRecord,
)
from attestgate.primitives.common import same_hex
from attestgate.primitives.verdict import PolicyName, PolicyVerdict
from attestgate.systems.verification.strategies import (
    ProofCallStrategy,
    call_with_fallback,
)

if TYPE_CHECKING:
    from attestgate.clients.ledger import LedgerClient
    from attestgate.config import AttestationConfig


@dataclass(frozen=True)
class PolicyContext:
    """Everything a policy may read. Assembled once per verification run."""

    reference: AttestationReference
    payload: ProofPayload
    facts: LedgerFacts
    config: AttestationConfig
    attested_bytes: bytes | None = None
    submission: SubmissionRecord | None = None


class Policy(ABC):
    """Base class for the verification policies run after chain identity."""

    name: str = ""

    @abstractmethod
    async def evaluate(self, ctx: PolicyContext) -> PolicyVerdict:
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"


# ─── Chain identity ───────────────────────────────────────────────


class ChainIdentityPolicy:
    name = PolicyName.CHAIN_IDENTITY.value

    @staticmethod
    def enforce(expected: int, observed: int) -> PolicyVerdict:
        if int(expected) != int(observed):
            raise ChainMismatch(int(expected), int(observed))
        return PolicyVerdict.ok(PolicyName.CHAIN_IDENTITY.value, chain_id=int(observed))


# ─── Confirmation depth ───────────────────────────────────────────


class ConfirmationDepthPolicy(Policy):
    name = PolicyName.CONFIRMATION_DEPTH.value

    async def evaluate(self, ctx: PolicyContext) -> PolicyVerdict:
        facts = ctx.facts
        required = ctx.config.required_confirmations
        if facts.pending or facts.confirmations is None:
            return PolicyVerdict.indeterminate(
                self.name, pending=True, required=required, reason="receipt not available yet",
            )
        detail = {
            "block_number": facts.block_number,
            "current_height": facts.current_height,
            "confirmations": facts.confirmations,
            "required": required,
        }
        if facts.receipt_status is ReceiptStatus.FAILURE:
            return PolicyVerdict.fail(self.name, reason="attestation transaction reverted", **detail)
        if facts.confirmations >= required:
            return PolicyVerdict.ok(self.name, **detail)
        return PolicyVerdict.fail(self.name, **detail)


# ─── Proof validity ───────────────────────────────────────────────


class ProofValidityPolicy(Policy):
    """
    Read-only call against the verification contract, one call signature
    at a time until one matches the deployed ABI.
    """

    name = PolicyName.PROOF_VALIDITY.value

    def __init__(self, ledger: LedgerClient, strategies: Sequence[ProofCallStrategy]) -> None:
        self._ledger = ledger
        self._strategies = list(strategies)

    async def evaluate(self, ctx: PolicyContext) -> PolicyVerdict:
        address = ctx.config.verification_contract_address
        outcome = await call_with_fallback(self._ledger, address, self._strategies, ctx.payload)
        fallbacks = list(outcome.fallbacks)
        if outcome.function is None:
            return PolicyVerdict.indeterminate(
                self.name,
                reason="no call signature matched the verification contract",
                verification_contract=address,
                fallbacks=fallbacks,
            )
        detail = {
            "function": outcome.function,
            "verification_contract": address,
            "result": outcome.result if isinstance(outcome.result, bool) else repr(outcome.result),
            "fallbacks": fallbacks,
        }
        if outcome.result is True:
            return PolicyVerdict.ok(self.name, **detail)
        return PolicyVerdict.fail(self.name, **detail)


# ─── Payload integrity ────────────────────────────────────────────


def sha256_digest(data: bytes) -> str:
    """0x-prefixed lowercase SHA-256 of ``data``."""
    return "0x" + hashlib.sha256(data).hexdigest()


class PayloadIntegrityPolicy(Policy):
    """
    Recompute the digest of the attested bytes and compare it with the
    operator-supplied expected digest and the one recorded at submission.

    Fails if either present comparison disagrees. With nothing to compare
    against the result is a vacuous pass (``detail["vacuous"]``), or
    indeterminate when ``strict_integrity_check`` is set.
    """

    name = PolicyName.PAYLOAD_INTEGRITY.value

    async def evaluate(self, ctx: PolicyContext) -> PolicyVerdict:
        expected = ctx.config.expected_payload_digest
        recorded = ctx.submission.computed_digest if ctx.submission else None
        computed = sha256_digest(ctx.attested_bytes) if ctx.attested_bytes is not None else None

        match_expected = same_hex(computed, expected) if computed and expected else None
        match_submission = same_hex(computed, recorded) if computed and recorded else None

        detail = {
            "computed_digest": computed,
            "expected_digest": expected,
            "recorded_digest": recorded,
            "match_expected": match_expected,
            "match_submission": match_submission,
        }

        if match_expected is False or match_submission is False:
            return PolicyVerdict.fail(self.name, integrity_mismatch=True, **detail)
        if match_expected is None and match_submission is None:
            if ctx.config.strict_integrity_check:
                return PolicyVerdict.indeterminate(
                    self.name, reason="no reference digest to compare against", **detail,
                )
            return PolicyVerdict.ok(self.name, vacuous=True, **detail)
        return PolicyVerdict.ok(self.name, vacuous=False, **detail)


# ─── Time window ──────────────────────────────────────────────────


def _parse_timestamp(segment: str) -> datetime | None:
    text = unquote(segment).strip()
    if len(text) < 10 or not text[:4].isdigit():
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_url_time_range(url: str) -> tuple[datetime, datetime] | None:
    """
    First pair of adjacent path segments that both parse as ISO-8601
    timestamps, e.g. ``/intensity/2024-01-01T00:00Z/2024-01-01T00:30Z``.
    """
    if not url:
        return None
    segments = [s for s in urlsplit(url).path.split("/") if s]
    for first, second in zip(segments, segments[1:]):
        start = _parse_timestamp(first)
        if start is None:
            continue
        end = _parse_timestamp(second)
        if end is not None:
            return start, end
    return None


class TimeWindowPolicy(Policy):
    name = PolicyName.TIME_WINDOW.value

    async def evaluate(self, ctx: PolicyContext) -> PolicyVerdict:
        lowest = ctx.payload.claim.lowest_used_timestamp
        block_ts = ctx.facts.block_timestamp

        lower_bound_ok: bool | None
        if lowest == 0:
            lower_bound_ok = True
        elif block_ts is None:
            lower_bound_ok = None
        else:
            lower_bound_ok = block_ts >= lowest

        time_range = parse_url_time_range(ctx.payload.claim.request_body.url)
        range_ok = True if time_range is None else time_range[1] > time_range[0]

        detail = {
            "block_timestamp": block_ts,
            "lowest_used_timestamp": lowest,
            "lower_bound_ok": lower_bound_ok,
            "range_start": time_range[0].isoformat() if time_range else None,
            "range_end": time_range[1].isoformat() if time_range else None,
            "range_ok": range_ok,
        }
        if lower_bound_ok is False or range_ok is False:
            return PolicyVerdict.fail(self.name, **detail)
        if lower_bound_ok is None:
            return PolicyVerdict.indeterminate(self.name, reason="block timestamp unknown", **detail)
        return PolicyVerdict.ok(self.name, **detail)


# ─── Target contract ──────────────────────────────────────────────


class TargetContractPolicy(Policy):
    """The attestation transaction must have been sent to the attestation hub."""

    name = PolicyName.TARGET_CONTRACT.value

    async def evaluate(self, ctx: PolicyContext) -> PolicyVerdict:
        facts = ctx.facts
        detail = {
            "expected": ctx.reference.target_contract,
            "observed": facts.transaction_to,
            "logs_in_receipt": len(facts.logs_in_receipt),
            "logs_in_block": len(facts.logs_in_block),
        }
        if facts.transaction_to is None:
            return PolicyVerdict.indeterminate(self.name, reason="transaction target unknown", **detail)
        if same_hex(facts.transaction_to, ctx.reference.target_contract):
            return PolicyVerdict.ok(self.name, **detail)
        return PolicyVerdict.fail(self.name, **detail)


def default_policies(ledger: LedgerClient, strategies: Sequence[ProofCallStrategy]) -> list[Policy]:
    return [
        ConfirmationDepthPolicy(),
        ProofValidityPolicy(ledger, strategies),
        PayloadIntegrityPolicy(),
        TimeWindowPolicy(),
        TargetContractPolicy(),
    ]
