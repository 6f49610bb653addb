"""Tests for the reward contract calldata and event codecs."""

from __future__ import annotations

import pytest
from web3 import Web3

from attestgate.primitives.attestation import LogEntry
from attestgate.primitives.reward import RewardRecord
from attestgate.systems.reward.abi import (
    EXECUTE_REWARD_SELECTOR,
    REWARD_EXECUTED_TOPIC,
    build_execute_reward_calldata,
    decode_execute_reward_calldata,
    decode_reward_executed,
    is_reward_executed_log,
    reward_record_topics,
)
from tests.fakes import ATT_TX, PARTICIPANT, REWARD_CONTRACT, SLOT_KEY, encode_reward_executed_log


def test_selector_is_keccak_prefix():
    expected = Web3.keccak(text="executeReward(bytes32,bytes32,bytes32,address,uint256)")[:4]
    assert EXECUTE_REWARD_SELECTOR == "0x" + expected.hex().removeprefix("0x")
    assert len(EXECUTE_REWARD_SELECTOR) == 10


def test_calldata_carries_intent_fields(intent):
    calldata = build_execute_reward_calldata(intent)

    assert calldata.startswith(EXECUTE_REWARD_SELECTOR)
    # selector + five static 32-byte words
    assert len(calldata) == 10 + 5 * 64
    decoded = decode_execute_reward_calldata(calldata)
    assert decoded == {
        "name": "executeReward",
        "attestation_tx_hash": ATT_TX,
        "payload_hash": intent.payload_hash,
        "slot_key": SLOT_KEY,
        "participant": Web3.to_checksum_address(PARTICIPANT),
        "quantity": 1500,
    }


def test_other_selector_is_not_decoded():
    assert decode_execute_reward_calldata("0xa9059cbb" + "00" * 64) is None
    assert decode_execute_reward_calldata("") is None


def test_record_topics_select_one_attestation():
    topics = reward_record_topics(ATT_TX.upper().replace("0X", "0x"))
    assert topics == [REWARD_EXECUTED_TOPIC, ATT_TX]


def test_event_decodes_into_record():
    record = RewardRecord(
        attestation_tx_hash=ATT_TX,
        payload_hash="0x" + "12" * 32,
        slot_key=SLOT_KEY,
        participant=Web3.to_checksum_address(PARTICIPANT),
        quantity=42,
        tx_hash="0x" + "fe" * 32,
        block_number=130,
        log_index=2,
    )
    log = encode_reward_executed_log(record, REWARD_CONTRACT)

    assert is_reward_executed_log(log)
    assert decode_reward_executed(log) == record


def test_unrelated_log_rejected():
    log = LogEntry(address=REWARD_CONTRACT, topics=("0x" + "99" * 32,), data="0x")
    assert is_reward_executed_log(log) is False
    with pytest.raises(ValueError):
        decode_reward_executed(log)


def test_truncated_event_data_rejected():
    log = LogEntry(
        address=REWARD_CONTRACT,
        topics=(REWARD_EXECUTED_TOPIC, ATT_TX, "0x" + "12" * 32, SLOT_KEY),
        data="0x" + "00" * 16,
    )
    with pytest.raises(ValueError, match="undecodable"):
        decode_reward_executed(log)
