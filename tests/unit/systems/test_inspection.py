"""Tests for read-only transaction inspection."""

from __future__ import annotations

import pytest

from attestgate.errors import ChainMismatch, ReceiptPending, TransactionNotFound
from attestgate.primitives.attestation import ReceiptInfo, ReceiptStatus, TransactionInfo
from attestgate.primitives.reward import RewardRecord
from attestgate.systems.inspection import decode_hub_method, inspect_attestation_tx, inspect_reward_tx
from attestgate.systems.reward.abi import build_execute_reward_calldata
from tests.fakes import (
    ATT_TX,
    OTHER_TX,
    REWARD_CONTRACT,
    SENDER,
    FakeLedger,
    encode_reward_executed_log,
    request_attestation_input,
)


class TestDecodeHubMethod:
    def test_request_attestation(self):
        method = decode_hub_method(request_attestation_input(b"\x01\x02"), value=7)
        assert method["name"] == "requestAttestation"
        assert method["args"] == {"data": "0x0102", "value": 7}
        assert method["reason"] is None

    def test_empty_input(self):
        assert decode_hub_method("0x")["reason"] == "No input data"

    def test_unknown_selector(self):
        method = decode_hub_method("0x12345678" + "00" * 32)
        assert method["name"] is None
        assert method["selector"] == "0x12345678"
        assert "Unknown ABI" in method["reason"]


class TestInspectAttestation:
    @pytest.mark.asyncio
    async def test_reports_depth_and_method(self, ledger):
        report = await inspect_attestation_tx(ledger, ATT_TX, required_confirmations=12, expected_chain_id=114)

        assert report.block_number == 100
        assert report.confirmations == 21
        assert report.confirmed is True
        assert report.status is ReceiptStatus.SUCCESS
        assert report.method_name == "requestAttestation"
        assert report.logs_count == 1
        assert ledger.writes == 0

    @pytest.mark.asyncio
    async def test_shallow(self, ledger):
        ledger.height = 105
        report = await inspect_attestation_tx(ledger, ATT_TX, required_confirmations=12)
        assert report.confirmations == 6
        assert report.confirmed is False

    @pytest.mark.asyncio
    async def test_chain_checked_first(self, ledger):
        ledger.chain_id = 16
        with pytest.raises(ChainMismatch):
            await inspect_attestation_tx(ledger, ATT_TX, 12, expected_chain_id=114)
        assert ledger.calls == ["get_chain_id"]

    @pytest.mark.asyncio
    async def test_unknown_and_pending(self, ledger):
        with pytest.raises(TransactionNotFound):
            await inspect_attestation_tx(ledger, OTHER_TX, 12)
        ledger.receipts.clear()
        with pytest.raises(ReceiptPending):
            await inspect_attestation_tx(ledger, ATT_TX, 12)


class TestInspectReward:
    @pytest.mark.asyncio
    async def test_decodes_call_and_event(self, intent):
        ledger = FakeLedger(height=140)
        reward_tx = "0x" + "fe" * 32
        record = RewardRecord(
            attestation_tx_hash=intent.attestation_tx_hash,
            payload_hash=intent.payload_hash,
            slot_key=intent.slot_key,
            participant=intent.participant,
            quantity=intent.quantity,
            tx_hash=reward_tx,
            block_number=130,
            log_index=0,
        )
        ledger.transactions[reward_tx] = TransactionInfo(
            tx_hash=reward_tx, from_address=SENDER, to=REWARD_CONTRACT,
            input_data=build_execute_reward_calldata(intent),
        )
        ledger.receipts[reward_tx] = ReceiptInfo(
            tx_hash=reward_tx, block_number=130, status=ReceiptStatus.SUCCESS, to=REWARD_CONTRACT,
            logs=(encode_reward_executed_log(record, REWARD_CONTRACT),),
        )

        report = await inspect_reward_tx(ledger, reward_tx, REWARD_CONTRACT, required_confirmations=12)

        assert report.method_name == "executeReward"
        assert report.decoded_args["attestation_tx_hash"] == ATT_TX
        assert report.decoded_args["quantity"] == 1500
        assert report.reward_events == [record]
        assert report.confirmations == 11
        assert report.confirmed is False
        assert report.decode_errors == []

    @pytest.mark.asyncio
    async def test_foreign_call(self, ledger):
        report = await inspect_reward_tx(ledger, ATT_TX, REWARD_CONTRACT, required_confirmations=12)
        assert report.method_name is None
        assert "Unknown function selector" in report.method_decode_reason
        assert report.reward_events == []
