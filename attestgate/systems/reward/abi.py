"""
AttestGate — Reward Contract ABI

Calldata and event codecs for the reward executor contract:

  executeReward(bytes32 attestationTxHash, bytes32 payloadHash,
                bytes32 slotKey, address participant, uint256 shiftedKw)

  event RewardExecuted(bytes32 indexed attestationTxHash,
                       bytes32 indexed payloadHash,
                       bytes32 indexed slotKey,
                       address participant, uint256 shiftedKw)

The contract reverts a second executeReward for the same attestationTxHash;
RewardExecuted is the durable RewardRecord.
"""

from __future__ import annotations

from typing import Any

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from attestgate.primitives.attestation import LogEntry
from attestgate.primitives.common import same_hex
from attestgate.primitives.reward import RewardIntent, RewardRecord

EXECUTE_REWARD_SIGNATURE = "executeReward(bytes32,bytes32,bytes32,address,uint256)"
EXECUTE_REWARD_TYPES = ["bytes32", "bytes32", "bytes32", "address", "uint256"]
EXECUTE_REWARD_SELECTOR = Web3.to_hex(Web3.keccak(text=EXECUTE_REWARD_SIGNATURE)[:4])

REWARD_EXECUTED_SIGNATURE = "RewardExecuted(bytes32,bytes32,bytes32,address,uint256)"
REWARD_EXECUTED_TOPIC = Web3.to_hex(Web3.keccak(text=REWARD_EXECUTED_SIGNATURE))
EVENT_DATA_TYPES = ["address", "uint256"]


def _b32(value: str) -> bytes:
    return Web3.to_bytes(hexstr=value)


def build_execute_reward_calldata(intent: RewardIntent) -> str:
    """0x-hex calldata for executeReward carrying the five intent fields."""
    args = encode(
        EXECUTE_REWARD_TYPES,
        [
            _b32(intent.attestation_tx_hash),
            _b32(intent.payload_hash),
            _b32(intent.slot_key),
            intent.participant,
            intent.quantity,
        ],
    )
    return EXECUTE_REWARD_SELECTOR + args.hex()


def decode_execute_reward_calldata(data: str) -> dict[str, Any] | None:
    """Decode executeReward input, or None if ``data`` is another call."""
    if not data or not same_hex(data[:10], EXECUTE_REWARD_SELECTOR):
        return None
    attestation, payload_hash, slot_key, participant, quantity = decode(
        EXECUTE_REWARD_TYPES, Web3.to_bytes(hexstr="0x" + data[10:]),
    )
    return {
        "name": "executeReward",
        "attestation_tx_hash": Web3.to_hex(attestation),
        "payload_hash": Web3.to_hex(payload_hash),
        "slot_key": Web3.to_hex(slot_key),
        "participant": Web3.to_checksum_address(participant),
        "quantity": int(quantity),
    }


def reward_record_topics(attestation_tx_hash: str) -> list[str | None]:
    """Log filter topics selecting the RewardExecuted event for one attestation."""
    return [REWARD_EXECUTED_TOPIC, attestation_tx_hash.lower()]


def is_reward_executed_log(log: LogEntry) -> bool:
    return len(log.topics) == 4 and same_hex(log.topics[0], REWARD_EXECUTED_TOPIC)


def decode_reward_executed(log: LogEntry) -> RewardRecord:
    """
    Decode a RewardExecuted log into a RewardRecord.

    Raises ValueError for a log that is not a well-formed RewardExecuted event.
    """
    if not is_reward_executed_log(log):
        raise ValueError("log is not a RewardExecuted event")
    try:
        participant, quantity = decode(EVENT_DATA_TYPES, Web3.to_bytes(hexstr=log.data))
    except DecodingError as exc:
        raise ValueError(f"RewardExecuted data undecodable: {exc}") from exc
    return RewardRecord(
        attestation_tx_hash=log.topics[1].lower(),
        payload_hash=log.topics[2].lower(),
        slot_key=log.topics[3].lower(),
        participant=Web3.to_checksum_address(participant),
        quantity=int(quantity),
        tx_hash=log.tx_hash,
        block_number=log.block_number,
        log_index=log.log_index,
    )
