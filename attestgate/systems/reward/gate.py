"""
AttestGate — Reward Execution Gate

The only path from a verification verdict to a ledger write.

Flow for one invocation:
  1. Real mode only (ModeViolation otherwise)
  2. verdict.verified must be True, or the outcome is verification_not_passed
     with zero ledger calls
  3. Read-then-write replay guard: an existing RewardExecuted record for the
     attestation makes the call a no-op (already_executed)
  4. Dry-run (default): calldata plus gas/fee estimate, never submits
  5. Execute: sign and submit, then wait for reward_confirmations, or hand
     an unsigned request to an external signer
  6. A submitted or polled transaction counts as executed only when its
     receipt carries this attestation's RewardExecuted record

The reward contract holds the authoritative replay guard. This gate's own
check only avoids submitting a transaction that is bound to revert.

Every outcome, including refusals, is persisted by the RewardOutcomeStore.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from eth_account import Account

from attestgate.errors import (
    ConfigurationError,
    ConfirmationTimeout,
    LedgerRejected,
    ReplayRejected,
    TransientNetworkError,
)
from attestgate.primitives.attestation import ReceiptInfo, ReceiptStatus, compute_confirmations
from attestgate.primitives.common import Mode, require_real_mode, same_hex
from attestgate.primitives.reward import (
    RewardIntent,
    RewardOutcome,
    RewardRecord,
    RewardStatus,
    unsigned_request_fields,
)
from attestgate.systems.reward.abi import (
    build_execute_reward_calldata,
    decode_reward_executed,
    is_reward_executed_log,
    reward_record_topics,
)

if TYPE_CHECKING:
    from attestgate.clients.ledger import LedgerClient
    from attestgate.config import RewardConfig
    from attestgate.primitives.verdict import AttestationVerdict
    from attestgate.systems.verification.report import RewardOutcomeStore

logger = structlog.get_logger()

SIGNER_PRIVATE_KEY = "private_key"
SIGNER_EXTERNAL = "external"
_SIGNER_ALIASES = {"metamask": SIGNER_EXTERNAL, "privatekey": SIGNER_PRIVATE_KEY}


class RewardExecutionGate:
    """
    Replay-protected reward execution for verified attestations.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        config: RewardConfig,
        outcome_store: RewardOutcomeStore | None = None,
    ) -> None:
        if not config.contract_address:
            raise ConfigurationError("reward.contract_address is required for reward execution.")
        signer_mode = _SIGNER_ALIASES.get(config.signer_mode.strip().lower(), config.signer_mode.strip().lower())
        if signer_mode not in (SIGNER_PRIVATE_KEY, SIGNER_EXTERNAL):
            raise ConfigurationError(
                f"reward.signer_mode must be 'private_key' or 'external', got {config.signer_mode!r}"
            )
        self._ledger = ledger
        self._config = config
        self._signer_mode = signer_mode
        self._store = outcome_store
        self._logger = logger.bind(system="reward.gate", contract=config.contract_address)

    # ── Replay guard ──────────────────────────────────────────

    async def find_reward_record(self, attestation_tx_hash: str) -> RewardRecord | None:
        """The RewardExecuted record for this attestation, if the ledger has one."""
        logs = await self._ledger.get_logs(
            self._config.contract_address,
            self._config.from_block,
            "latest",
            reward_record_topics(attestation_tx_hash),
        )
        for log in logs:
            if not is_reward_executed_log(log):
                continue
            record = decode_reward_executed(log)
            if same_hex(record.attestation_tx_hash, attestation_tx_hash):
                return record
        return None

    # ── Entry point ───────────────────────────────────────────

    async def execute_if_verified(
        self,
        verdict: AttestationVerdict,
        intent: RewardIntent,
        mode: Mode,
        *,
        dry_run: bool = True,
        prior_tx_hash: str | None = None,
    ) -> RewardOutcome:
        require_real_mode(mode, "Reward execution")
        log = self._logger.bind(tx_hash=verdict.tx_hash, dry_run=dry_run)

        if not verdict.verified:
            return self._finish(
                RewardOutcome(
                    status=RewardStatus.VERIFICATION_NOT_PASSED,
                    dry_run=dry_run,
                    verdict=verdict,
                    intent=intent,
                    error=f"Failing policies: {', '.join(verdict.failing_policies())}",
                )
            )

        if not same_hex(intent.attestation_tx_hash, verdict.tx_hash):
            raise ConfigurationError(
                f"Reward intent attestation {intent.attestation_tx_hash} does not match "
                f"verified attestation {verdict.tx_hash}."
            )

        calldata = build_execute_reward_calldata(intent)
        base: dict[str, Any] = {
            "dry_run": dry_run,
            "verdict": verdict,
            "intent": intent,
            "calldata": calldata,
        }

        if prior_tx_hash:
            log.info("reward_polling_prior", reward_tx_hash=prior_tx_hash)
            return self._finish(await self._poll_prior(prior_tx_hash, intent, base))

        existing = await self.find_reward_record(intent.attestation_tx_hash)
        if existing is not None:
            log.info("reward_already_executed", reward_tx_hash=existing.tx_hash)
            return self._finish(
                RewardOutcome(
                    status=RewardStatus.ALREADY_EXECUTED,
                    record=existing,
                    reward_tx_hash=existing.tx_hash or None,
                    block_number=existing.block_number,
                    **base,
                )
            )

        if dry_run:
            return self._finish(await self._dry_run(calldata, base))
        if self._signer_mode == SIGNER_EXTERNAL:
            return self._finish(await self._prepare_external(calldata, intent, base))
        return self._finish(await self._submit(calldata, intent, base))

    # ── Paths ─────────────────────────────────────────────────

    async def _dry_run(self, calldata: str, base: dict[str, Any]) -> RewardOutcome:
        estimated_gas: int | None = None
        max_fee: int | None = None
        error = ""
        try:
            estimated_gas = await self._ledger.estimate_gas(
                self._config.contract_address, calldata, self._sender_address(required=False),
            )
            fees = await self._ledger.get_fee_data()
            max_fee = fees["max_fee_per_gas"] or fees["gas_price"]
        except (LedgerRejected, TransientNetworkError) as exc:
            error = f"estimate failed: {exc}"
            self._logger.warning("reward_estimate_failed", error=str(exc))

        self._logger.info(
            "reward_dry_run", calldata=calldata, estimated_gas=estimated_gas, max_fee_per_gas=max_fee,
        )
        return RewardOutcome(
            status=RewardStatus.DRY_RUN,
            estimated_gas=estimated_gas,
            max_fee_per_gas=max_fee,
            error=error,
            **base,
        )

    async def _prepare_external(
        self, calldata: str, intent: RewardIntent, base: dict[str, Any],
    ) -> RewardOutcome:
        sender = self._sender_address(required=True)
        try:
            tx = await self._ledger.build_transaction(self._config.contract_address, calldata, sender)
        except LedgerRejected as exc:
            return await self._rejected(exc, intent, base)
        self._logger.info("reward_awaiting_signature", sender=sender, nonce=tx.get("nonce"))
        return RewardOutcome(
            status=RewardStatus.AWAITING_SIGNATURE,
            estimated_gas=tx.get("gas"),
            max_fee_per_gas=tx.get("maxFeePerGas") or tx.get("gasPrice"),
            tx_request=unsigned_request_fields(tx),
            **base,
        )

    async def _submit(self, calldata: str, intent: RewardIntent, base: dict[str, Any]) -> RewardOutcome:
        if not self._config.signer_key:
            raise ConfigurationError("reward.signer_key is required for signer_mode 'private_key'.")
        try:
            reward_tx = await self._ledger.submit(
                self._config.contract_address, calldata, self._config.signer_key,
            )
        except LedgerRejected as exc:
            return await self._rejected(exc, intent, base)

        self._logger.info("reward_submitted", reward_tx_hash=reward_tx)
        try:
            receipt = await self._ledger.wait_for_confirmations(
                reward_tx,
                self._config.reward_confirmations,
                timeout_s=self._config.confirmation_timeout_s,
                poll_interval_s=self._config.poll_interval_s,
            )
        except ConfirmationTimeout as exc:
            self._logger.warning("reward_confirmation_timeout", reward_tx_hash=reward_tx, error=str(exc))
            return RewardOutcome(
                status=RewardStatus.PENDING_CONFIRMATION,
                reward_tx_hash=reward_tx,
                confirmations=exc.confirmations,
                error=str(exc),
                **base,
            )
        except TransientNetworkError as exc:
            # The tx was sent; the outcome keeps its hash for --reward-tx.
            self._logger.warning("reward_confirmation_unreachable", reward_tx_hash=reward_tx, error=str(exc))
            return RewardOutcome(
                status=RewardStatus.PENDING_CONFIRMATION,
                reward_tx_hash=reward_tx,
                error=str(exc),
                **base,
            )
        except LedgerRejected as exc:
            return await self._rejected(exc, intent, base, reward_tx=reward_tx)

        return await self._executed(receipt, intent, base)

    async def _poll_prior(
        self, prior_tx_hash: str, intent: RewardIntent, base: dict[str, Any],
    ) -> RewardOutcome:
        receipt = await self._ledger.get_receipt(prior_tx_hash)
        if receipt is None:
            return RewardOutcome(
                status=RewardStatus.PENDING_CONFIRMATION,
                reward_tx_hash=prior_tx_hash,
                error="receipt not available yet",
                **base,
            )
        if receipt.status is ReceiptStatus.FAILURE:
            exc = LedgerRejected(f"Transaction {prior_tx_hash} reverted on-chain.", tx_hash=prior_tx_hash)
            return await self._rejected(exc, intent, base, reward_tx=prior_tx_hash)

        height = await self._ledger.get_block_height()
        confirmations = compute_confirmations(receipt.block_number, height)
        if confirmations is None or confirmations < self._config.reward_confirmations:
            return RewardOutcome(
                status=RewardStatus.PENDING_CONFIRMATION,
                reward_tx_hash=prior_tx_hash,
                block_number=receipt.block_number,
                confirmations=confirmations,
                error=f"{confirmations} of {self._config.reward_confirmations} confirmations",
                **base,
            )
        return await self._executed(receipt, intent, base, height=height)

    async def _executed(
        self,
        receipt: ReceiptInfo,
        intent: RewardIntent,
        base: dict[str, Any],
        height: int | None = None,
    ) -> RewardOutcome:
        record: RewardRecord | None = None
        if same_hex(receipt.to, self._config.contract_address):
            for log in receipt.logs:
                if is_reward_executed_log(log) and same_hex(log.address, self._config.contract_address):
                    candidate = decode_reward_executed(log)
                    if same_hex(candidate.attestation_tx_hash, intent.attestation_tx_hash):
                        record = candidate
                        break
        if record is None:
            return await self._not_a_reward(receipt.tx_hash, intent, base)

        if height is None:
            height = await self._ledger.get_block_height()
        self._logger.info(
            "reward_executed",
            reward_tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            gas_used=receipt.gas_used,
        )
        return RewardOutcome(
            status=RewardStatus.EXECUTED,
            reward_tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            confirmations=compute_confirmations(receipt.block_number, height),
            gas_used=receipt.gas_used,
            record=record,
            **base,
        )

    async def _not_a_reward(self, tx_hash: str, intent: RewardIntent, base: dict[str, Any]) -> RewardOutcome:
        """A confirmed tx that carries no RewardExecuted record for this attestation."""
        existing = await self.find_reward_record(intent.attestation_tx_hash)
        if existing is not None:
            self._logger.info("reward_already_executed", reward_tx_hash=existing.tx_hash, polled_tx_hash=tx_hash)
            return RewardOutcome(
                status=RewardStatus.ALREADY_EXECUTED,
                record=existing,
                reward_tx_hash=existing.tx_hash or None,
                block_number=existing.block_number,
                error=f"Transaction {tx_hash} is not the recorded reward for this attestation.",
                **base,
            )
        error = (
            f"Transaction {tx_hash} is not a reward for attestation {intent.attestation_tx_hash}: "
            f"no RewardExecuted record from {self._config.contract_address}."
        )
        self._logger.error("reward_record_missing", reward_tx_hash=tx_hash, error=error)
        return RewardOutcome(
            status=RewardStatus.REJECTED_BY_LEDGER,
            reward_tx_hash=tx_hash,
            error=error,
            **base,
        )

    async def _rejected(
        self,
        exc: LedgerRejected,
        intent: RewardIntent,
        base: dict[str, Any],
        reward_tx: str | None = None,
    ) -> RewardOutcome:
        """
        A rejection is final for this attestation. If another execution won a
        race against this one, the record now exists and the outcome is
        already_executed.
        """
        existing = await self.find_reward_record(intent.attestation_tx_hash)
        if existing is not None and not same_hex(existing.tx_hash, reward_tx):
            self._logger.info(
                "reward_already_executed",
                reward_tx_hash=existing.tx_hash,
                replay_rejected=isinstance(exc, ReplayRejected),
            )
            return RewardOutcome(
                status=RewardStatus.ALREADY_EXECUTED,
                record=existing,
                reward_tx_hash=existing.tx_hash or None,
                block_number=existing.block_number,
                error=str(exc),
                **base,
            )
        self._logger.error("reward_rejected_by_ledger", reward_tx_hash=reward_tx, error=str(exc))
        return RewardOutcome(
            status=RewardStatus.REJECTED_BY_LEDGER,
            reward_tx_hash=reward_tx,
            error=str(exc),
            **base,
        )

    # ── Helpers ───────────────────────────────────────────────

    def _sender_address(self, *, required: bool) -> str | None:
        if self._config.signer_address:
            return self._config.signer_address
        if self._config.signer_key:
            return Account.from_key(self._config.signer_key).address
        if required:
            raise ConfigurationError(
                "reward.signer_address (or reward.signer_key) is required to build an unsigned request."
            )
        return None

    def _finish(self, outcome: RewardOutcome) -> RewardOutcome:
        if self._store is not None:
            self._store.save(outcome)
        self._logger.info(
            "reward_outcome",
            tx_hash=outcome.verdict.tx_hash,
            status=outcome.status.value,
            success=outcome.success,
            reward_tx_hash=outcome.reward_tx_hash,
        )
        return outcome
