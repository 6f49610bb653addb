"""
Tests for VerificationOrchestrator — one verification run end to end.

Covers the named scenarios (chain mismatch, stale confirmations, integrity
mismatch, success) and the run-level properties: idempotence modulo the
check time, monotonic confirmations, and that a raising policy still
yields a complete, persisted report.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from attestgate.clients.proof_store import ProofStore
from attestgate.errors import (
    ChainMismatch,
    ConfigurationError,
    IntegrityMismatch,
    LedgerRejected,
    ModeViolation,
    PolicyFailure,
    ProofMissing,
    ReceiptPending,
    TransactionNotFound,
    TransientNetworkError,
)
from attestgate.primitives.common import Mode
from attestgate.primitives.verdict import PolicyName, PolicyVerdict
from attestgate.systems.verification.orchestrator import VerificationOrchestrator
from attestgate.systems.verification.policies import ConfirmationDepthPolicy, Policy, PolicyContext
from attestgate.systems.verification.report import VerificationReportStore
from tests.fakes import ATT_TX, ATTESTED_DIGEST, OTHER_TX


def _orchestrator(ledger, proof_store, config, policies=None) -> VerificationOrchestrator:
    return VerificationOrchestrator(
        ledger,
        proof_store,
        config,
        report_store=VerificationReportStore(config.proof_store.report_dir),
        policies=policies,
    )


class _SpyPolicy(Policy):
    name = "spy"

    def __init__(self) -> None:
        self.evaluated = 0

    async def evaluate(self, ctx: PolicyContext) -> PolicyVerdict:
        self.evaluated += 1
        return PolicyVerdict.ok(self.name)


class _ExplodingPolicy(Policy):
    name = "exploding"

    async def evaluate(self, ctx: PolicyContext) -> PolicyVerdict:
        raise RuntimeError("rpc hiccup")


# ─── Successful run ───────────────────────────────────────────────


class TestSuccessfulRun:
    @pytest.mark.asyncio
    async def test_all_policies_pass(self, ledger, proof_store, config, reference):
        verdict = await _orchestrator(ledger, proof_store, config).verify(reference)

        assert verdict.verified is True
        assert set(verdict.verdicts) == {name.value for name in PolicyName}
        assert all(v.passed is True for v in verdict.verdicts.values())
        assert verdict.verification_function == "verifyJsonApi"
        assert verdict.facts.confirmations == 21
        verdict.raise_for_failure()  # no-op

    @pytest.mark.asyncio
    async def test_integrity_compares_against_submission_record(self, ledger, proof_store, config, reference):
        verdict = await _orchestrator(ledger, proof_store, config).verify(reference)

        integrity = verdict.get(PolicyName.PAYLOAD_INTEGRITY)
        assert integrity.detail["computed_digest"] == ATTESTED_DIGEST
        assert integrity.detail["match_submission"] is True
        assert integrity.detail["vacuous"] is False

    @pytest.mark.asyncio
    async def test_report_written_and_reloadable(self, ledger, proof_store, config, reference):
        store = VerificationReportStore(config.proof_store.report_dir)
        verdict = await _orchestrator(ledger, proof_store, config).verify(reference)

        path = store.path_for(ATT_TX)
        report = json.loads(path.read_text("utf-8"))
        assert report["verified"] is True
        assert report["tx_hash"] == ATT_TX
        assert report["confirmations"] == 21
        assert report["run_id"] == verdict.run_id
        assert len(verdict.run_id) == 26
        assert store.load(ATT_TX) == verdict

    @pytest.mark.asyncio
    async def test_receipt_logs_filtered_to_hub(self, ledger, proof_store, config, reference):
        verdict = await _orchestrator(ledger, proof_store, config).verify(reference)

        assert len(verdict.facts.logs_in_receipt) == 1
        assert len(verdict.facts.logs_in_block) == 1
        assert verdict.facts.request_fee_wei is None

    @pytest.mark.asyncio
    async def test_request_fee_recorded_when_hub_answers(self, ledger, proof_store, config, reference):
        ledger.call_results["requestFee"] = 10**15
        verdict = await _orchestrator(ledger, proof_store, config).verify(reference)
        assert verdict.facts.request_fee_wei == 10**15


# ─── Scenarios ────────────────────────────────────────────────────


class TestChainMismatch:
    @pytest.mark.asyncio
    async def test_aborts_before_any_policy(self, ledger, proof_store, config, reference):
        ledger.chain_id = 16
        spy = _SpyPolicy()
        orchestrator = _orchestrator(ledger, proof_store, config, policies=[spy])

        with pytest.raises(ChainMismatch) as exc_info:
            await orchestrator.verify(reference)

        assert exc_info.value.expected == 114
        assert exc_info.value.observed == 16
        assert spy.evaluated == 0
        assert ledger.calls == ["get_chain_id"]
        assert not VerificationReportStore(config.proof_store.report_dir).path_for(ATT_TX).exists()

    @pytest.mark.asyncio
    async def test_is_a_configuration_error(self, ledger, proof_store, config, reference):
        ledger.chain_id = 16
        with pytest.raises(ConfigurationError):
            await _orchestrator(ledger, proof_store, config).verify(reference)


class TestStaleConfirmations:
    @pytest.mark.asyncio
    async def test_six_of_twelve_fails(self, ledger, proof_store, config, reference):
        ledger.height = 105

        verdict = await _orchestrator(ledger, proof_store, config).verify(reference)

        depth = verdict.get(PolicyName.CONFIRMATION_DEPTH)
        assert verdict.facts.confirmations == 6
        assert depth.passed is False
        assert depth.detail["required"] == 12
        assert verdict.verified is False
        with pytest.raises(PolicyFailure) as exc_info:
            verdict.raise_for_failure()
        assert exc_info.value.policies == [PolicyName.CONFIRMATION_DEPTH.value]


class TestIntegrityMismatch:
    @pytest.mark.asyncio
    async def test_mismatch_fails_even_when_everything_else_passes(
        self, ledger, proof_store, config, reference,
    ):
        config.attestation.expected_payload_digest = "0xabc" + "0" * 61

        verdict = await _orchestrator(ledger, proof_store, config).verify(reference)

        integrity = verdict.get(PolicyName.PAYLOAD_INTEGRITY)
        assert integrity.passed is False
        assert integrity.detail["integrity_mismatch"] is True
        assert integrity.detail["match_expected"] is False
        others = [v for name, v in verdict.verdicts.items() if name != PolicyName.PAYLOAD_INTEGRITY]
        assert all(v.passed is True for v in others)
        assert verdict.verified is False
        with pytest.raises(IntegrityMismatch):
            verdict.raise_for_failure()


# ─── Properties ───────────────────────────────────────────────────


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_repeat_runs_agree_except_check_time_and_run_id(
        self, ledger, proof_store, config, reference,
    ):
        orchestrator = _orchestrator(ledger, proof_store, config)

        first = (await orchestrator.verify(reference)).to_report()
        second = (await orchestrator.verify(reference)).to_report()

        assert first.pop("run_id") != second.pop("run_id")
        first.pop("checked_at")
        second.pop("checked_at")
        assert first == second


class TestMonotonicConfirmations:
    @pytest.mark.asyncio
    async def test_confirmations_never_decrease_as_height_grows(
        self, ledger, proof_store, config, reference,
    ):
        orchestrator = _orchestrator(ledger, proof_store, config)
        seen: list[int] = []
        passed: list[bool | None] = []
        for height in (100, 105, 110, 111, 130):
            ledger.height = height
            verdict = await orchestrator.verify(reference)
            seen.append(verdict.facts.confirmations)
            passed.append(verdict.get(PolicyName.CONFIRMATION_DEPTH).passed)

        assert seen == sorted(seen)
        assert seen == [1, 6, 11, 12, 31]
        assert passed == [False, False, False, True, True]


class TestPendingAndMissing:
    @pytest.mark.asyncio
    async def test_pending_receipt_is_indeterminate(self, ledger, proof_store, config, reference):
        ledger.receipts.clear()

        verdict = await _orchestrator(ledger, proof_store, config).verify(reference)

        depth = verdict.get(PolicyName.CONFIRMATION_DEPTH)
        assert depth.passed is None
        assert depth.detail["pending"] is True
        assert verdict.facts.confirmations is None
        assert verdict.verified is False
        with pytest.raises(ReceiptPending):
            verdict.raise_for_failure()

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, ledger, proof_store, config):
        orchestrator = _orchestrator(ledger, proof_store, config)
        with pytest.raises(TransactionNotFound):
            await orchestrator.verify(orchestrator.reference_for(OTHER_TX))

        report = VerificationReportStore(config.proof_store.report_dir).load(OTHER_TX)
        assert report is not None
        assert report.verified is False
        assert report.get(PolicyName.CHAIN_IDENTITY).passed is True
        depth = report.get(PolicyName.CONFIRMATION_DEPTH)
        assert depth.passed is None
        assert depth.detail["error_type"] == "TransactionNotFound"
        assert report.facts.current_height == 120

    @pytest.mark.asyncio
    async def test_missing_proof_file(self, ledger, config, reference, artifacts):
        artifacts["proof"].unlink()
        orchestrator = _orchestrator(ledger, ProofStore.from_config(config.proof_store), config)
        with pytest.raises(ProofMissing):
            await orchestrator.verify(reference)

        report = VerificationReportStore(config.proof_store.report_dir).load(ATT_TX)
        assert report is not None
        assert report.verified is False
        assert report.run_id is not None
        aborted = [v for name, v in report.verdicts.items() if name != PolicyName.CHAIN_IDENTITY]
        assert {v.detail["error_type"] for v in aborted} == {"ProofMissing"}

    @pytest.mark.asyncio
    async def test_aborted_run_without_reachable_ledger_leaves_no_report(
        self, ledger, config, reference, artifacts,
    ):
        artifacts["proof"].unlink()
        ledger.get_block_height = AsyncMock(side_effect=TransientNetworkError("eth_blockNumber failed"))
        orchestrator = _orchestrator(ledger, ProofStore.from_config(config.proof_store), config)

        with pytest.raises(ProofMissing):
            await orchestrator.verify(reference)

        assert not VerificationReportStore(config.proof_store.report_dir).path_for(ATT_TX).exists()


class TestPolicyErrors:
    @pytest.mark.asyncio
    async def test_raising_policy_becomes_indeterminate(self, ledger, proof_store, config, reference):
        orchestrator = _orchestrator(ledger, proof_store, config, policies=[_SpyPolicy(), _ExplodingPolicy()])

        verdict = await orchestrator.verify(reference)

        exploded = verdict.get("exploding")
        assert exploded.passed is None
        assert exploded.detail["error_type"] == "RuntimeError"
        assert verdict.get("spy").passed is True
        assert verdict.verified is False
        assert VerificationReportStore(config.proof_store.report_dir).path_for(ATT_TX).exists()


class TestProofRevert:
    @pytest.mark.asyncio
    async def test_revert_with_reason_leaves_proof_indeterminate(
        self, ledger, proof_store, config, reference,
    ):
        ledger.call_results["verifyJsonApi"] = LedgerRejected("verifyJsonApi reverted: invalid merkle proof")
        ledger.call_results["verifyWeb2Json"] = True

        verdict = await _orchestrator(ledger, proof_store, config).verify(reference)

        proof = verdict.get(PolicyName.PROOF_VALIDITY)
        assert proof.passed is None
        assert proof.detail["error_type"] == "LedgerRejected"
        assert "invalid merkle proof" in proof.detail["error"]
        assert "call:verifyWeb2Json" not in ledger.calls
        assert verdict.verified is False
        assert verdict.verification_function is None


class TestRequiredPolicies:
    @pytest.mark.asyncio
    async def test_subset_of_policies_never_verifies(self, ledger, proof_store, config, reference):
        orchestrator = _orchestrator(ledger, proof_store, config, policies=[ConfirmationDepthPolicy()])

        verdict = await orchestrator.verify(reference)

        assert all(v.passed is True for v in verdict.verdicts.values())
        assert verdict.verified is False
        assert verdict.failing_policies() == [
            PolicyName.PROOF_VALIDITY.value,
            PolicyName.PAYLOAD_INTEGRITY.value,
            PolicyName.TIME_WINDOW.value,
        ]
        with pytest.raises(PolicyFailure, match="proof_validity=not evaluated"):
            verdict.raise_for_failure()


class TestModeAndConfig:
    @pytest.mark.asyncio
    async def test_simulation_mode_refused(self, ledger, proof_store, config, reference):
        with pytest.raises(ModeViolation):
            await _orchestrator(ledger, proof_store, config).verify(reference, mode=Mode.SIMULATION)
        assert ledger.calls == []

    def test_missing_required_config(self, ledger, proof_store, config):
        config.ledger.rpc_url = ""
        config.attestation.attestation_contract_address = ""
        with pytest.raises(ConfigurationError) as exc_info:
            _orchestrator(ledger, proof_store, config)
        assert "ledger.rpc_url" in str(exc_info.value)
        assert "attestation.attestation_contract_address" in str(exc_info.value)

    def test_reference_for_uses_configured_hub_and_chain(self, ledger, proof_store, config):
        ref = _orchestrator(ledger, proof_store, config).reference_for(ATT_TX.upper().replace("0X", "0x"))
        assert ref.tx_hash == ATT_TX
        assert ref.chain_id == 114
