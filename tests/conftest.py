"""Shared fixtures: an in-memory ledger, on-disk artifacts and a matching config."""

from __future__ import annotations

import json
import os
from collections.abc import Callable
from pathlib import Path

import pytest

from attestgate.clients.proof_store import ProofStore
from attestgate.config import LEGACY_ENV, LEGACY_MODE_ENV, AttestGateConfig, load_config
from attestgate.primitives.attestation import AttestationReference, LedgerFacts, ReceiptStatus
from attestgate.primitives.reward import RewardIntent
from attestgate.primitives.verdict import AttestationVerdict, PolicyName, PolicyVerdict
from tests.fakes import (
    ATT_TX,
    ATTESTED_BYTES,
    ATTESTED_DIGEST,
    HUB,
    PARTICIPANT,
    REWARD_CONTRACT,
    SIGNER_KEY,
    SLOT_KEY,
    VERIFIER,
    FakeLedger,
    proof_document,
    submission_document,
)


@pytest.fixture
def ledger() -> FakeLedger:
    fake = FakeLedger(chain_id=114, height=120)
    fake.add_attestation()
    fake.call_results["verifyJsonApi"] = True
    return fake


@pytest.fixture
def artifacts(tmp_path: Path) -> dict[str, Path]:
    paths = {
        "proof": tmp_path / "out" / "da_proof.json",
        "submission": tmp_path / "out" / "request_submission.json",
        "attested": tmp_path / "api_response.json",
        "reports": tmp_path / "out" / "reports",
    }
    paths["proof"].parent.mkdir(parents=True)
    paths["proof"].write_text(json.dumps(proof_document()), encoding="utf-8")
    paths["submission"].write_text(json.dumps(submission_document()), encoding="utf-8")
    paths["attested"].write_bytes(ATTESTED_BYTES)
    return paths


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Hide configuration variables of the surrounding shell from every test."""
    names = [name for name, *_ in LEGACY_ENV] + list(LEGACY_MODE_ENV)
    names += [name for name in os.environ if name.upper().startswith("ATTESTGATE_")]
    for name in names:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def env(artifacts: dict[str, Path], monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """The environment an operator's .env would provide, legacy names included."""
    values = {
        "FLARE_RPC_URL": "http://127.0.0.1:8545",
        "FLARE_CHAIN_ID": "114",
        "FDC_ATTESTATION_CONTRACT": HUB,
        "FDC_VERIFICATION_CONTRACT": VERIFIER,
        "CONFIRMATIONS": "12",
        "DA_PROOF_PATH": str(artifacts["proof"]),
        "REQUEST_SUBMISSION_PATH": str(artifacts["submission"]),
        "API_RESPONSE_PATH": str(artifacts["attested"]),
        "ATTESTGATE_PROOF_STORE__REPORT_DIR": str(artifacts["reports"]),
        "REWARD_CONTRACT_ADDRESS": REWARD_CONTRACT,
        "FLARE_SIGNER_KEY": SIGNER_KEY,
    }
    for name, value in values.items():
        monkeypatch.setenv(name, value)
    return values


@pytest.fixture
def config(env: dict[str, str]) -> AttestGateConfig:
    return load_config()


@pytest.fixture
def proof_store(config: AttestGateConfig) -> ProofStore:
    return ProofStore.from_config(config.proof_store)


@pytest.fixture
def reference() -> AttestationReference:
    return AttestationReference(tx_hash=ATT_TX, target_contract=HUB, chain_id=114)


@pytest.fixture
def intent() -> RewardIntent:
    return RewardIntent(
        attestation_tx_hash=ATT_TX,
        payload_hash=ATTESTED_DIGEST,
        slot_key=SLOT_KEY,
        participant=PARTICIPANT,
        quantity=1500,
    )


@pytest.fixture
def make_verdict(reference: AttestationReference) -> Callable[..., AttestationVerdict]:
    """
    Build an AttestationVerdict from per-policy states.

    Unnamed policies default to passing; pass ``None`` for indeterminate.
    """

    def _make(**states: bool | None) -> AttestationVerdict:
        verdicts: dict[str, PolicyVerdict] = {}
        for name in PolicyName:
            passed = states.get(name.value, True)
            verdicts[name.value] = PolicyVerdict(policy=name.value, passed=passed)
        facts = LedgerFacts(
            block_number=100,
            current_height=120,
            receipt_status=ReceiptStatus.SUCCESS,
            transaction_to=HUB,
        )
        return AttestationVerdict.assemble(reference, facts, verdicts, verification_function="verifyJsonApi")

    return _make
