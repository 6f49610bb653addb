"""
AttestGate — Command-line entry point.

Usage:
    attestgate verify [--tx <hash>]
    attestgate reward --slot <key> --participant <addr> --quantity <n> [--execute]
    attestgate inspect-attestation --tx <hash>
    attestgate inspect-reward --tx <hash>
    attestgate fetch-proof [--round <id>]

Configuration comes from an optional YAML file (--config), the environment
and a .env file. Exit codes:
    0  success
    2  configuration error
    3  verification failed or not yet provable
    4  ledger rejected the reward (or it was already recorded)
    5  reward not final: awaiting confirmations or an external signature;
       also network failure after retries
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

import structlog
from dotenv import load_dotenv
from pydantic import ValidationError

from attestgate.clients.data_availability import DataAvailabilityClient
from attestgate.clients.ledger import LedgerClient
from attestgate.clients.proof_store import ProofStore
from attestgate.config import REWARD_REQUIRED, VERIFY_REQUIRED, AttestGateConfig, load_config
from attestgate.errors import (
    ConfigurationError,
    LedgerRejected,
    PolicyFailure,
    ProofUnavailable,
    ReceiptPending,
    TransactionNotFound,
    TransientNetworkError,
)
from attestgate.primitives.common import Mode, require_real_mode
from attestgate.primitives.reward import RewardIntent, RewardOutcome, RewardStatus
from attestgate.primitives.verdict import AttestationVerdict, PolicyName
from attestgate.systems.inspection import inspect_attestation_tx, inspect_reward_tx
from attestgate.systems.reward.gate import RewardExecutionGate
from attestgate.systems.verification.orchestrator import VerificationOrchestrator
from attestgate.systems.verification.report import RewardOutcomeStore, VerificationReportStore
from attestgate.telemetry.logging import setup_logging

logger = structlog.get_logger()

EXIT_OK = 0
EXIT_CONFIGURATION = 2
EXIT_VERIFICATION = 3
EXIT_LEDGER = 4
EXIT_TRANSIENT = 5

_OUTCOME_EXIT: dict[RewardStatus, int] = {
    RewardStatus.DRY_RUN: EXIT_OK,
    RewardStatus.EXECUTED: EXIT_OK,
    RewardStatus.AWAITING_SIGNATURE: EXIT_TRANSIENT,
    RewardStatus.VERIFICATION_NOT_PASSED: EXIT_VERIFICATION,
    RewardStatus.ALREADY_EXECUTED: EXIT_LEDGER,
    RewardStatus.REJECTED_BY_LEDGER: EXIT_LEDGER,
    RewardStatus.PENDING_CONFIRMATION: EXIT_TRANSIENT,
}


# ── Output ───────────────────────────────────────────────────────────────────


def _print_verdict(verdict: AttestationVerdict) -> None:
    facts = verdict.facts
    print(f"Attestation tx hash: {verdict.tx_hash}")
    print(f"Block number: {facts.block_number}")
    print(f"Confirmations: {facts.confirmations}")
    for name, v in verdict.verdicts.items():
        state = "indeterminate" if v.passed is None else ("pass" if v.passed else "FAIL")
        print(f"  {name:<20} {state}")
    print(f"Verification function: {verdict.verification_function or 'unknown'}")
    print(f"Verified: {verdict.verified}")


def _print_outcome(outcome: RewardOutcome) -> None:
    print(f"Reward status: {outcome.status.value}")
    print(f"Dry run: {outcome.dry_run}")
    if outcome.calldata:
        print(f"Calldata: {outcome.calldata}")
    if outcome.estimated_gas is not None:
        print(f"Estimated gas: {outcome.estimated_gas}")
    if outcome.reward_tx_hash:
        print(f"Reward tx hash: {outcome.reward_tx_hash}")
    if outcome.confirmations is not None:
        print(f"Confirmations: {outcome.confirmations}")
    if outcome.status is RewardStatus.AWAITING_SIGNATURE and outcome.tx_request:
        print("Unsigned transaction request (sign and submit, then re-run with --reward-tx):")
        print(json.dumps(outcome.tx_request, indent=2))


def _error(message: str) -> None:
    print(f"[ERROR] {message}", file=sys.stderr)


# ── Commands ─────────────────────────────────────────────────────────────────


def _resolve_tx_hash(args: argparse.Namespace, proof_store: ProofStore) -> str:
    if args.tx:
        return args.tx
    submission = proof_store.read_submission_record()
    if submission is not None and submission.tx_hash:
        return submission.tx_hash
    raise ConfigurationError("Attestation tx hash missing. Pass --tx or provide a submission record.")


async def _verify(
    ledger: LedgerClient,
    config: AttestGateConfig,
    args: argparse.Namespace,
    mode: Mode,
) -> AttestationVerdict:
    proof_store = ProofStore.from_config(config.proof_store)
    orchestrator = VerificationOrchestrator(
        ledger,
        proof_store,
        config,
        report_store=VerificationReportStore(config.proof_store.report_dir),
    )
    reference = orchestrator.reference_for(_resolve_tx_hash(args, proof_store))
    return await orchestrator.verify(reference, mode=mode)


async def run_verify(config: AttestGateConfig, args: argparse.Namespace, mode: Mode) -> int:
    config.require(*VERIFY_REQUIRED)
    async with LedgerClient(config.ledger) as ledger:
        verdict = await _verify(ledger, config, args, mode)
    _print_verdict(verdict)
    verdict.raise_for_failure()
    return EXIT_OK


async def run_reward(config: AttestGateConfig, args: argparse.Namespace, mode: Mode) -> int:
    config.require(*REWARD_REQUIRED)
    async with LedgerClient(config.ledger) as ledger:
        verdict = await _verify(ledger, config, args, mode)
        _print_verdict(verdict)

        payload_hash = args.payload_hash
        if not payload_hash:
            integrity = verdict.get(PolicyName.PAYLOAD_INTEGRITY.value)
            payload_hash = integrity.detail.get("computed_digest") if integrity else None
        if not payload_hash:
            verdict.raise_for_failure()
            raise ConfigurationError("No payload hash available. Pass --payload-hash or provide the attested data file.")

        try:
            intent = RewardIntent(
                attestation_tx_hash=verdict.tx_hash,
                payload_hash=payload_hash,
                slot_key=args.slot,
                participant=args.participant,
                quantity=args.quantity,
            )
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid reward intent: {exc}") from exc

        gate = RewardExecutionGate(
            ledger,
            config.reward,
            outcome_store=RewardOutcomeStore(config.proof_store.report_dir),
        )
        outcome = await gate.execute_if_verified(
            verdict,
            intent,
            mode,
            dry_run=not args.execute,
            prior_tx_hash=args.reward_tx,
        )

    _print_outcome(outcome)
    if outcome.status is RewardStatus.ALREADY_EXECUTED:
        _error(f"Reward already recorded for {verdict.tx_hash} (tx {outcome.reward_tx_hash}).")
    elif outcome.status is RewardStatus.REJECTED_BY_LEDGER:
        _error(f"Ledger rejected the reward: {outcome.error}")
    elif outcome.status is RewardStatus.VERIFICATION_NOT_PASSED:
        _error(f"Verification failed: {outcome.error}")
    elif outcome.status is RewardStatus.PENDING_CONFIRMATION:
        _error(f"Reward pending confirmation: {outcome.error}. Re-run with --reward-tx {outcome.reward_tx_hash}.")
    return _OUTCOME_EXIT[outcome.status]


async def run_inspect_attestation(config: AttestGateConfig, args: argparse.Namespace, mode: Mode) -> int:
    require_real_mode(mode, "inspect-attestation")
    config.require("ledger.rpc_url", "ledger.chain_id")
    async with LedgerClient(config.ledger) as ledger:
        report = await inspect_attestation_tx(
            ledger,
            args.tx,
            config.attestation.required_confirmations,
            expected_chain_id=config.ledger.chain_id,
        )
    print(report.model_dump_json(indent=2))
    return EXIT_OK


async def run_inspect_reward(config: AttestGateConfig, args: argparse.Namespace, mode: Mode) -> int:
    require_real_mode(mode, "inspect-reward")
    config.require("ledger.rpc_url", "ledger.chain_id", "reward.contract_address")
    async with LedgerClient(config.ledger) as ledger:
        report = await inspect_reward_tx(
            ledger,
            args.tx,
            config.reward.contract_address,
            config.reward.reward_confirmations,
            expected_chain_id=config.ledger.chain_id,
        )
    print(report.model_dump_json(indent=2))
    return EXIT_OK


async def run_fetch_proof(config: AttestGateConfig, args: argparse.Namespace, mode: Mode) -> int:
    proof_store = ProofStore.from_config(config.proof_store)
    submission = proof_store.read_submission_record()
    if submission is None or not submission.abi_encoded_request:
        raise ConfigurationError(
            f"abiEncodedRequest missing; no usable submission record at {config.proof_store.submission_path}."
        )
    async with DataAvailabilityClient(config.data_availability) as da:
        proof = await da.fetch_proof(submission.abi_encoded_request, voting_round=args.round)
    path = proof_store.save_proof(
        proof.response,
        request_bytes=submission.abi_encoded_request,
        voting_round_id=proof.voting_round_id,
        source=proof.endpoint,
    )
    print(f"Proof fetched (round {proof.voting_round_id}). Saved: {path}")
    return EXIT_OK


_COMMANDS = {
    "verify": run_verify,
    "reward": run_reward,
    "inspect-attestation": run_inspect_attestation,
    "inspect-reward": run_inspect_reward,
    "fetch-proof": run_fetch_proof,
}


# ── Entry point ──────────────────────────────────────────────────────────────


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="attestgate",
        description="Attestation verification and replay-protected reward execution",
    )
    parser.add_argument("--config", default=None, help="YAML configuration file")
    parser.add_argument("--env-file", default=".env", help="dotenv file loaded before configuration")
    parser.add_argument("--mode", choices=[m.value for m in Mode], default=None, help="override the configured mode")
    parser.add_argument("--log-level", default=None, help="override logging.level")

    sub = parser.add_subparsers(dest="command", required=True)

    verify = sub.add_parser("verify", help="verify an attestation and write the report")
    verify.add_argument("--tx", default=None, help="attestation tx hash (default: from the submission record)")

    reward = sub.add_parser("reward", help="verify, then gate the reward call")
    reward.add_argument("--tx", default=None, help="attestation tx hash (default: from the submission record)")
    reward.add_argument("--slot", required=True, help="bytes32 slot key")
    reward.add_argument("--participant", required=True, help="participant address")
    reward.add_argument("--quantity", required=True, type=int, help="shifted quantity (integer units)")
    reward.add_argument("--payload-hash", default=None, help="bytes32 payload hash (default: computed digest)")
    reward.add_argument("--execute", action="store_true", help="submit instead of dry-run")
    reward.add_argument("--reward-tx", default=None, help="poll a previously submitted reward tx")

    inspect_att = sub.add_parser("inspect-attestation", help="inspect an attestation request tx")
    inspect_att.add_argument("--tx", required=True)

    inspect_rew = sub.add_parser("inspect-reward", help="inspect a reward tx")
    inspect_rew.add_argument("--tx", required=True)

    fetch = sub.add_parser("fetch-proof", help="poll the DA layer for the stored request's proof")
    fetch.add_argument("--round", type=int, default=None, help="voting round id (default: scan recent rounds)")

    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    if args.env_file and Path(args.env_file).exists():
        load_dotenv(args.env_file, override=False)

    try:
        config = load_config(args.config)
    except ConfigurationError as exc:
        _error(f"Configuration error: {exc}")
        return EXIT_CONFIGURATION

    if args.log_level:
        config.logging.level = args.log_level
    setup_logging(config.logging)
    mode = Mode(args.mode) if args.mode else config.mode

    handler = _COMMANDS[args.command]
    log = logger.bind(system="cli", command=args.command, mode=mode.value)
    try:
        return await handler(config, args, mode)
    except ConfigurationError as exc:
        log.error("configuration_error", error=str(exc))
        _error(f"Configuration error: {exc}")
        return EXIT_CONFIGURATION
    except (PolicyFailure, ReceiptPending, TransactionNotFound, ProofUnavailable) as exc:
        log.warning("verification_failed", error=str(exc), error_type=type(exc).__name__)
        _error(f"Verification failed: {exc}")
        return EXIT_VERIFICATION
    except LedgerRejected as exc:
        log.error("ledger_rejected", error=str(exc))
        _error(f"Ledger rejected: {exc}")
        return EXIT_LEDGER
    except TransientNetworkError as exc:
        log.error("network_failure", error=str(exc))
        _error(f"Network failure after retries: {exc}")
        return EXIT_TRANSIENT


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()

