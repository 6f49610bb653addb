"""
AttestGate — Reward Execution

Public interface:
  RewardExecutionGate       — verdict-gated, replay-protected reward writes
  build_execute_reward_calldata / decode_reward_executed — contract codecs
"""

from attestgate.systems.reward.abi import (
    REWARD_EXECUTED_TOPIC,
    build_execute_reward_calldata,
    decode_execute_reward_calldata,
    decode_reward_executed,
)
from attestgate.systems.reward.gate import RewardExecutionGate

__all__ = [
    "RewardExecutionGate",
    "REWARD_EXECUTED_TOPIC",
    "build_execute_reward_calldata",
    "decode_execute_reward_calldata",
    "decode_reward_executed",
]
