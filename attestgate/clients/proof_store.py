"""
AttestGate — Proof Store

Durable storage for the artifacts produced by the acquisition stage:

  - the Merkle-proof document fetched from the data-availability layer
  - the request-submission record (tx hash, computed digest, request bytes)
  - the exact bytes of the attested Web2 response

The proof document has been written in several shapes over time (the
payload at ``response``, nested at ``response.response``, or at the top
level) with camelCase and snake_case field variants. normalize_proof_document()
resolves all of them into one ProofPayload here, so nothing downstream
ever branches on a field-name variant.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from attestgate.errors import ConfigurationError, ProofMissing, ProofUnavailable
from attestgate.primitives.attestation import (
    ProofClaim,
    ProofPayload,
    RequestBody,
    ResponseBody,
    SubmissionRecord,
)
from attestgate.primitives.common import utc_now

if TYPE_CHECKING:
    from attestgate.config import ProofStoreConfig

logger = structlog.get_logger()


def _first(mapping: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = mapping.get(key)
        if value is not None:
            return value
    return default


def _as_int(value: Any, field: str) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(value, 0) if isinstance(value, str) else int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Proof field {field} is not an integer: {value!r}") from exc


def _locate_proof_node(document: Mapping[str, Any]) -> Mapping[str, Any]:
    """Find the mapping that holds ``proof`` next to the claim body."""
    response = document.get("response")
    if isinstance(response, Mapping):
        if "proof" in response:
            return response
        nested = response.get("response")
        if isinstance(nested, Mapping) and "proof" in nested:
            return nested
    if "proof" in document and ("response" in document or "data" in document):
        return document
    raise ConfigurationError("Could not locate proof payload in proof document.")


def normalize_proof_document(document: Mapping[str, Any]) -> ProofPayload:
    """
    Resolve any historical proof-document shape into a ProofPayload.

    Raises ConfigurationError for a document that has no recognisable proof
    payload, and ProofUnavailable for one whose proof list is still empty.
    """
    node = _locate_proof_node(document)
    proof_nodes = node.get("proof") or []
    if not isinstance(proof_nodes, list):
        raise ConfigurationError("Proof field 'proof' must be a list of bytes32 values.")
    if not proof_nodes:
        raise ProofUnavailable("Proof document holds an empty proof list.")

    claim_raw = _first(node, "response", "data", default={})
    request = claim_raw.get("request") or claim_raw
    request_body = request.get("requestBody") or {}
    response_body = claim_raw.get("responseBody") or {}

    claim = ProofClaim(
        attestation_type=request.get("attestationType", ""),
        source_id=request.get("sourceId", ""),
        voting_round=_as_int(request.get("votingRound"), "votingRound"),
        lowest_used_timestamp=_as_int(request.get("lowestUsedTimestamp"), "lowestUsedTimestamp"),
        request_body=RequestBody(
            url=request_body.get("url", "") or "",
            http_method=_first(request_body, "httpMethod", "http_method", default=""),
            headers=request_body.get("headers", "") or "",
            query_params=_first(request_body, "queryParams", "query_params", default=""),
            body=request_body.get("body", "") or "",
            post_process_jq=_first(request_body, "postprocessJq", "postProcessJq", "post_process_jq", default=""),
            abi_signature=_first(request_body, "abi_signature", "abiSignature", default=""),
        ),
        response_body=ResponseBody(
            abi_encoded_data=_first(response_body, "abi_encoded_data", "abiEncodedData", default="0x"),
        ),
    )

    voting_round_id = document.get("votingRoundId")
    return ProofPayload(
        proof_nodes=tuple(str(p) for p in proof_nodes),
        claim=claim,
        voting_round_id=_as_int(voting_round_id, "votingRoundId") if voting_round_id is not None else None,
    )


def parse_submission_record(document: Mapping[str, Any]) -> SubmissionRecord:
    known = {
        "txHash", "tx_hash",
        "computedMic", "computed_digest", "computedDigest",
        "abiEncodedRequest", "abi_encoded_request",
    }
    return SubmissionRecord(
        tx_hash=_first(document, "txHash", "tx_hash"),
        computed_digest=_first(document, "computedMic", "computedDigest", "computed_digest"),
        abi_encoded_request=_first(document, "abiEncodedRequest", "abi_encoded_request"),
        extra={k: v for k, v in document.items() if k not in known},
    )


class ProofStore:
    """
    File-backed proof store. Paths default to those in ProofStoreConfig;
    every method also accepts an explicit path.
    """

    def __init__(
        self,
        proof_path: str | Path,
        submission_path: str | Path | None = None,
        attested_data_path: str | Path | None = None,
    ) -> None:
        self._proof_path = Path(proof_path)
        self._submission_path = Path(submission_path) if submission_path else None
        self._attested_data_path = Path(attested_data_path) if attested_data_path else None
        self._logger = logger.bind(system="clients.proof_store")

    @classmethod
    def from_config(cls, config: ProofStoreConfig) -> ProofStore:
        return cls(
            proof_path=config.proof_path,
            submission_path=config.submission_path,
            attested_data_path=config.attested_data_path,
        )

    def read_proof(self, path: str | Path | None = None) -> ProofPayload:
        target = Path(path) if path else self._proof_path
        if not target.exists():
            raise ProofMissing(f"Proof file not found: {target}")
        document = self._read_json(target)
        payload = normalize_proof_document(document)
        self._logger.debug("proof_loaded", path=str(target), proof_nodes=len(payload.proof_nodes))
        return payload

    def read_submission_record(self, path: str | Path | None = None) -> SubmissionRecord | None:
        """The submission record is optional: a missing file yields None."""
        target = Path(path) if path else self._submission_path
        if target is None or not target.exists():
            return None
        return parse_submission_record(self._read_json(target))

    def read_attested_bytes(self, path: str | Path | None = None) -> bytes | None:
        """Exact bytes of the attested response, or None if not on disk."""
        target = Path(path) if path else self._attested_data_path
        if target is None or not target.exists():
            return None
        return target.read_bytes()

    def save_proof(
        self,
        response: Mapping[str, Any],
        *,
        request_bytes: str,
        voting_round_id: int | None,
        source: str,
        path: str | Path | None = None,
    ) -> Path:
        """Write a fetched DA response in the document shape read_proof() accepts."""
        target = Path(path) if path else self._proof_path
        target.parent.mkdir(parents=True, exist_ok=True)
        document = {
            "votingRoundId": voting_round_id,
            "requestBytes": request_bytes,
            "endpoint": source,
            "fetchedAtIso": utc_now().isoformat(),
            "response": dict(response),
        }
        target.write_text(json.dumps(document, indent=2), encoding="utf-8")
        self._logger.info("proof_saved", path=str(target), voting_round_id=voting_round_id)
        return target

    @staticmethod
    def _read_json(path: Path) -> dict[str, Any]:
        try:
            data = json.loads(path.read_text("utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"{path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a JSON object.")
        return data
