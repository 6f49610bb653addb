"""
AttestGate — Error Hierarchy

All exceptions raised by the verification and reward pipeline.

Propagation guide:
  ConfigurationError     FATAL      -- missing/invalid input, never retried
  TransientNetworkError  RETRYABLE  -- retried by RetryPolicy, then surfaced
  ProofUnavailable       RETRYABLE  -- caller polls the DA layer again later
  ReceiptPending         RETRYABLE  -- caller re-runs verification later
  PolicyFailure          FINAL      -- recorded in the report, never retried
  IntegrityMismatch      FINAL      -- never downgraded to a warning
  LedgerRejected         FINAL      -- never retried for the same attestation
  ReplayRejected         FINAL      -- idempotent no-op for the caller

AbiMismatch is an internal signal: the proof-validity policy catches it to
move on to the next call-signature strategy.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from attestgate.primitives.verdict import AttestationVerdict


class AttestGateError(RuntimeError):
    """Base for all AttestGate pipeline errors."""


# ─── Configuration ────────────────────────────────────────────────


class ConfigurationError(AttestGateError):
    """A required input is missing or invalid. Surfaced immediately."""


class ChainMismatch(ConfigurationError):
    """The ledger reports a different chain id than the one configured."""

    def __init__(self, expected: int, observed: int) -> None:
        super().__init__(f"Chain id mismatch. Expected {expected}, got {observed}.")
        self.expected = expected
        self.observed = observed


class ModeViolation(ConfigurationError):
    """A real-mode-only entry point was invoked in simulation mode (or vice versa)."""


# ─── Network / availability ───────────────────────────────────────


class TransientNetworkError(AttestGateError):
    """RPC or HTTP failure reaching the ledger or a remote service."""


class ProofUnavailable(AttestGateError):
    """The attestation network has not produced a proof for this request yet."""


class ProofMissing(ProofUnavailable):
    """No proof artifact exists in the proof store."""


class TransactionNotFound(AttestGateError):
    """The ledger has no transaction with the given id."""


class ReceiptPending(AttestGateError):
    """The transaction exists but has no receipt yet."""


class ConfirmationTimeout(AttestGateError):
    """A submitted transaction did not reach the required depth in time."""

    def __init__(self, tx_hash: str, confirmations: int | None, required: int) -> None:
        super().__init__(
            f"Transaction {tx_hash} has {confirmations} confirmations; requires {required}."
        )
        self.tx_hash = tx_hash
        self.confirmations = confirmations
        self.required = required


class AbiMismatch(AttestGateError):
    """A read-only call failed because the contract does not speak this ABI."""


# ─── Verification ─────────────────────────────────────────────────


class PolicyFailure(AttestGateError):
    """One or more named policies returned a negative or indeterminate verdict."""

    def __init__(
        self,
        message: str,
        policies: list[str],
        verdict: AttestationVerdict | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.policies = policies
        self.verdict = verdict
        self.detail = detail or {}


class IntegrityMismatch(PolicyFailure):
    """The recomputed payload digest disagrees with an expected or recorded one."""


# ─── Ledger writes ────────────────────────────────────────────────


class LedgerRejected(AttestGateError):
    """The ledger rejected a state-changing call (revert or failed receipt)."""

    def __init__(self, message: str, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class ReplayRejected(LedgerRejected):
    """The on-ledger replay guard refused a second reward for the same attestation."""


_REPLAY_PHRASES = (
    "already executed",
    "already rewarded",
    "replay",
    "attestation used",
)


def is_replay_rejection(reason: str) -> bool:
    lower = reason.lower()
    return any(phrase in lower for phrase in _REPLAY_PHRASES)
