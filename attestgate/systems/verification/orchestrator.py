"""
AttestGate — Verification Orchestrator

Sequences one verification run:

  1. Chain identity against the ledger (fatal ChainMismatch, before anything else)
  2. Proof payload, submission record and attested bytes from the ProofStore
  3. LedgerFacts for the attestation transaction
  4. The remaining policies, concurrently
  5. Aggregation into an AttestationVerdict
  6. The verification report, persisted whatever the outcome

Every run gets a ULID run id, bound to its log lines and stored in its
report. A run aborted by a missing proof or an unknown transaction still
leaves a report whose policies are indeterminate and carry the error.

A policy that raises is recorded as an indeterminate verdict carrying the
error, so a partial run still leaves a complete report behind.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import structlog

from attestgate.config import VERIFY_REQUIRED
from attestgate.errors import (
    AbiMismatch,
    LedgerRejected,
    ProofUnavailable,
    TransactionNotFound,
    TransientNetworkError,
)
from attestgate.primitives.attestation import (
    AttestationReference,
    LedgerFacts,
    ReceiptStatus,
)
from attestgate.primitives.common import Mode, new_id, require_real_mode, same_hex
from attestgate.primitives.verdict import AttestationVerdict, PolicyName, PolicyVerdict
from attestgate.systems.verification.policies import (
    ChainIdentityPolicy,
    Policy,
    PolicyContext,
    default_policies,
)
from attestgate.systems.verification.strategies import resolve_strategies

if TYPE_CHECKING:
    from attestgate.clients.ledger import LedgerClient
    from attestgate.clients.proof_store import ProofStore
    from attestgate.config import AttestGateConfig
    from attestgate.systems.verification.report import VerificationReportStore

logger = structlog.get_logger()

REQUEST_FEE_ABI: dict[str, Any] = {
    "inputs": [],
    "name": "requestFee",
    "outputs": [{"name": "", "type": "uint256"}],
    "stateMutability": "view",
    "type": "function",
}


class VerificationOrchestrator:
    """
    Runs every verification policy for one attestation transaction and
    produces the AttestationVerdict the reward gate is allowed to read.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        proof_store: ProofStore,
        config: AttestGateConfig,
        report_store: VerificationReportStore | None = None,
        policies: Sequence[Policy] | None = None,
    ) -> None:
        config.require(*VERIFY_REQUIRED)
        self._ledger = ledger
        self._proof_store = proof_store
        self._config = config
        self._reports = report_store
        self._policies = list(policies) if policies is not None else default_policies(
            ledger, resolve_strategies(config.attestation.proof_call_order),
        )
        self._logger = logger.bind(system="verification.orchestrator")

    def reference_for(self, tx_hash: str) -> AttestationReference:
        """Build the reference for ``tx_hash`` from the configured hub and chain."""
        return AttestationReference(
            tx_hash=tx_hash,
            target_contract=self._config.attestation.attestation_contract_address,
            chain_id=self._config.ledger.chain_id,
        )

    async def verify(
        self,
        reference: AttestationReference,
        *,
        mode: Mode = Mode.REAL,
    ) -> AttestationVerdict:
        require_real_mode(mode, "Attestation verification")
        run_id = new_id()
        log = self._logger.bind(tx_hash=reference.tx_hash, run_id=run_id)

        # ── 1. Chain identity ──
        observed_chain = await self._ledger.get_chain_id()
        chain_verdict = ChainIdentityPolicy.enforce(reference.chain_id, observed_chain)

        try:
            # ── 2. Proof store ──
            payload = self._proof_store.read_proof()
            submission = self._proof_store.read_submission_record()
            attested_bytes = self._proof_store.read_attested_bytes()

            # ── 3. Ledger facts ──
            facts = await self.gather_facts(reference)
        except (ProofUnavailable, TransactionNotFound) as exc:
            await self._save_aborted(reference, chain_verdict, exc, run_id, log)
            raise

        # ── 4. Policies ──
        ctx = PolicyContext(
            reference=reference,
            payload=payload,
            facts=facts,
            config=self._config.attestation,
            attested_bytes=attested_bytes,
            submission=submission,
        )
        results = await asyncio.gather(*(self._run_policy(p, ctx) for p in self._policies))

        # ── 5. Aggregate ──
        verdicts: dict[str, PolicyVerdict] = {chain_verdict.policy: chain_verdict}
        for policy, result in zip(self._policies, results):
            verdicts[policy.name] = result
        proof = verdicts.get(PolicyName.PROOF_VALIDITY.value)
        verdict = AttestationVerdict.assemble(
            reference=reference,
            facts=facts,
            verdicts=verdicts,
            verification_function=proof.detail.get("function") if proof else None,
            run_id=run_id,
        )

        # ── 6. Persist ──
        if self._reports is not None:
            self._reports.save(verdict)

        log.info(
            "verification_complete",
            verified=verdict.verified,
            confirmations=facts.confirmations,
            failing=verdict.failing_policies(),
            verification_function=verdict.verification_function,
        )
        return verdict

    async def _save_aborted(
        self,
        reference: AttestationReference,
        chain_verdict: PolicyVerdict,
        exc: Exception,
        run_id: str,
        log: Any,
    ) -> None:
        log.warning("verification_aborted", error=str(exc), error_type=type(exc).__name__)
        if self._reports is None:
            return
        try:
            height = await self._ledger.get_block_height()
        except TransientNetworkError as height_exc:
            log.warning("aborted_report_skipped", error=str(height_exc))
            return

        verdicts: dict[str, PolicyVerdict] = {chain_verdict.policy: chain_verdict}
        for policy in self._policies:
            verdicts[policy.name] = PolicyVerdict.indeterminate(
                policy.name, error=str(exc), error_type=type(exc).__name__,
            )
        self._reports.save(
            AttestationVerdict.assemble(
                reference=reference,
                facts=LedgerFacts(current_height=height),
                verdicts=verdicts,
                run_id=run_id,
            ),
        )

    async def gather_facts(self, reference: AttestationReference) -> LedgerFacts:
        """
        Read-only ledger facts about the attestation transaction.

        Raises TransactionNotFound if the ledger has never seen it. A
        transaction without a receipt yields facts with a pending status.
        """
        ledger = self._ledger
        tx = await ledger.get_transaction(reference.tx_hash)
        if tx is None:
            raise TransactionNotFound(f"Transaction {reference.tx_hash} not found on the ledger.")

        receipt, height, request_fee = await asyncio.gather(
            ledger.get_receipt(reference.tx_hash),
            ledger.get_block_height(),
            self._request_fee(reference.target_contract),
        )

        if receipt is None:
            return LedgerFacts(
                block_number=None,
                current_height=height,
                receipt_status=ReceiptStatus.PENDING,
                transaction_to=tx.to,
                request_fee_wei=request_fee,
            )

        block_timestamp, block_logs = await asyncio.gather(
            ledger.get_block_timestamp(receipt.block_number),
            ledger.get_logs(reference.target_contract, receipt.block_number, receipt.block_number),
        )
        return LedgerFacts(
            block_number=receipt.block_number,
            current_height=height,
            receipt_status=receipt.status,
            block_timestamp=block_timestamp,
            transaction_to=receipt.to or tx.to,
            logs_in_receipt=tuple(
                log for log in receipt.logs if same_hex(log.address, reference.target_contract)
            ),
            logs_in_block=tuple(
                log for log in block_logs if same_hex(log.tx_hash, reference.tx_hash)
            ),
            request_fee_wei=request_fee,
        )

    async def _request_fee(self, hub_address: str) -> int | None:
        try:
            return int(await self._ledger.call(hub_address, REQUEST_FEE_ABI, []))
        except (AbiMismatch, LedgerRejected, TransientNetworkError) as exc:
            self._logger.debug("request_fee_unavailable", error=str(exc))
            return None

    async def _run_policy(self, policy: Policy, ctx: PolicyContext) -> PolicyVerdict:
        try:
            return await policy.evaluate(ctx)
        except Exception as exc:
            self._logger.warning(
                "policy_evaluation_error",
                policy=policy.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return PolicyVerdict.indeterminate(
                policy.name, error=str(exc), error_type=type(exc).__name__,
            )
