"""
AttestGate — Proof-Verification Call Strategies

The on-chain verification contract has changed its ABI over time. Each
known call shape is one ProofCallStrategy: an ABI fragment plus a builder
that reshapes the canonical ProofPayload into that fragment's arguments.
Adding a signature means adding an entry to PROOF_CALL_STRATEGIES; the
fallback loop in call_with_fallback() never changes.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from web3 import Web3

from attestgate.errors import AbiMismatch, ConfigurationError
from attestgate.primitives.attestation import ProofPayload

if TYPE_CHECKING:
    from attestgate.clients.ledger import LedgerClient

logger = structlog.get_logger()


def _bytes32(value: str) -> bytes:
    if not value:
        return b"\x00" * 32
    raw = Web3.to_bytes(hexstr=value)
    if len(raw) > 32:
        raise ValueError(f"value longer than 32 bytes: {value!r}")
    return raw.ljust(32, b"\x00")


def _bytes(value: str) -> bytes:
    return Web3.to_bytes(hexstr=value) if value and value != "0x" else b""


def _proofs(payload: ProofPayload) -> list[bytes]:
    return [_bytes32(node) for node in payload.proof_nodes]


# ─── verifyJsonApi (older two-argument shape) ─────────────────────

VERIFY_JSON_API_ABI: dict[str, Any] = {
    "inputs": [
        {
            "components": [
                {
                    "components": [
                        {"name": "attestationType", "type": "bytes32"},
                        {"name": "sourceId", "type": "bytes32"},
                        {"name": "votingRound", "type": "uint256"},
                        {"name": "lowestUsedTimestamp", "type": "uint256"},
                        {
                            "components": [
                                {"name": "url", "type": "string"},
                                {"name": "postprocessJq", "type": "string"},
                                {"name": "abi_signature", "type": "string"},
                            ],
                            "name": "requestBody",
                            "type": "tuple",
                        },
                    ],
                    "name": "request",
                    "type": "tuple",
                },
                {
                    "components": [{"name": "abi_encoded_data", "type": "bytes"}],
                    "name": "responseBody",
                    "type": "tuple",
                },
            ],
            "name": "data",
            "type": "tuple",
        },
        {"name": "proofs", "type": "bytes32[]"},
    ],
    "name": "verifyJsonApi",
    "outputs": [{"name": "_proved", "type": "bool"}],
    "stateMutability": "view",
    "type": "function",
}


def build_json_api_args(payload: ProofPayload) -> tuple[Any, ...]:
    claim = payload.claim
    body = claim.request_body
    data = (
        (
            _bytes32(claim.attestation_type),
            _bytes32(claim.source_id),
            claim.voting_round,
            claim.lowest_used_timestamp,
            (body.url, body.post_process_jq, body.abi_signature),
        ),
        (_bytes(claim.response_body.abi_encoded_data),),
    )
    return (data, _proofs(payload))


# ─── verifyWeb2Json (newer single-struct shape) ───────────────────

VERIFY_WEB2_JSON_ABI: dict[str, Any] = {
    "inputs": [
        {
            "components": [
                {"name": "merkleProof", "type": "bytes32[]"},
                {
                    "name": "data",
                    "type": "tuple",
                    "components": [
                        {"name": "attestationType", "type": "bytes32"},
                        {"name": "sourceId", "type": "bytes32"},
                        {"name": "votingRound", "type": "uint64"},
                        {"name": "lowestUsedTimestamp", "type": "uint64"},
                        {
                            "name": "requestBody",
                            "type": "tuple",
                            "components": [
                                {"name": "url", "type": "string"},
                                {"name": "httpMethod", "type": "string"},
                                {"name": "headers", "type": "string"},
                                {"name": "queryParams", "type": "string"},
                                {"name": "body", "type": "string"},
                                {"name": "postProcessJq", "type": "string"},
                                {"name": "abiSignature", "type": "string"},
                            ],
                        },
                        {
                            "name": "responseBody",
                            "type": "tuple",
                            "components": [{"name": "abiEncodedData", "type": "bytes"}],
                        },
                    ],
                },
            ],
            "name": "_proof",
            "type": "tuple",
        },
    ],
    "name": "verifyWeb2Json",
    "outputs": [{"name": "_proved", "type": "bool"}],
    "stateMutability": "view",
    "type": "function",
}


def build_web2_json_args(payload: ProofPayload) -> tuple[Any, ...]:
    claim = payload.claim
    body = claim.request_body
    proof = (
        _proofs(payload),
        (
            _bytes32(claim.attestation_type),
            _bytes32(claim.source_id),
            claim.voting_round,
            claim.lowest_used_timestamp,
            (
                body.url,
                body.http_method,
                body.headers,
                body.query_params,
                body.body,
                body.post_process_jq,
                body.abi_signature,
            ),
            (_bytes(claim.response_body.abi_encoded_data),),
        ),
    )
    return (proof,)


# ─── Strategy registry ────────────────────────────────────────────


@dataclass(frozen=True)
class ProofCallStrategy:
    name: str
    abi_fragment: dict[str, Any]
    build_args: Callable[[ProofPayload], tuple[Any, ...]]


PROOF_CALL_STRATEGIES: dict[str, ProofCallStrategy] = {
    "verifyJsonApi": ProofCallStrategy("verifyJsonApi", VERIFY_JSON_API_ABI, build_json_api_args),
    "verifyWeb2Json": ProofCallStrategy("verifyWeb2Json", VERIFY_WEB2_JSON_ABI, build_web2_json_args),
}


def resolve_strategies(order: Sequence[str]) -> list[ProofCallStrategy]:
    unknown = [name for name in order if name not in PROOF_CALL_STRATEGIES]
    if unknown:
        raise ConfigurationError(
            f"Unknown proof call signature(s): {', '.join(unknown)}. "
            f"Known: {', '.join(PROOF_CALL_STRATEGIES)}"
        )
    if not order:
        raise ConfigurationError("proof_call_order must name at least one call signature.")
    return [PROOF_CALL_STRATEGIES[name] for name in order]


@dataclass(frozen=True)
class ProofCallResult:
    function: str | None   # None when no strategy matched
    result: Any
    fallbacks: tuple[dict[str, str], ...] = ()


async def call_with_fallback(
    ledger: LedgerClient,
    address: str,
    strategies: Sequence[ProofCallStrategy],
    payload: ProofPayload,
) -> ProofCallResult:
    """
    Try each strategy in order, moving on only when the contract does not
    speak that ABI. A logical ``false`` is an answer, not a mismatch, and
    ends the loop. Any other error, a revert carrying a reason included,
    propagates to the caller.
    """
    fallbacks: list[dict[str, str]] = []
    for strategy in strategies:
        try:
            args = strategy.build_args(payload)
        except ValueError as exc:
            fallbacks.append({"function": strategy.name, "error": f"argument build failed: {exc}"})
            continue
        try:
            result = await ledger.call(address, strategy.abi_fragment, args)
        except AbiMismatch as exc:
            logger.info("proof_call_fallback", function=strategy.name, error=str(exc))
            fallbacks.append({"function": strategy.name, "error": str(exc)})
            continue
        return ProofCallResult(function=strategy.name, result=result, fallbacks=tuple(fallbacks))

    return ProofCallResult(function=None, result=None, fallbacks=tuple(fallbacks))
