"""
AttestGate — Data-Availability Client (httpx)

Polls the attestation network's data-availability layer for the Merkle proof
of a submitted request. The network finalises a request some voting rounds
after submission, so "no proof yet" is the normal answer for a while and is
signalled as ProofUnavailable, which the shared RetryPolicy polls on.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx
import structlog

from attestgate.clients.retry import RetryPolicy
from attestgate.errors import ConfigurationError, ProofUnavailable, TransientNetworkError
from attestgate.primitives.common import FrozenModel, is_hex

if TYPE_CHECKING:
    from attestgate.config import DataAvailabilityConfig

logger = structlog.get_logger()


class DataAvailabilityProof(FrozenModel):
    """One non-empty DA response and where it came from."""

    response: dict[str, Any]
    voting_round_id: int | None = None
    endpoint: str = ""


def _has_proof(data: Any) -> bool:
    return isinstance(data, dict) and isinstance(data.get("proof"), list) and len(data["proof"]) > 0


class DataAvailabilityClient:
    """
    Async HTTP client for the DA layer.

    Round-specific lookups go to ``endpoint_round``. Without a known round,
    the rounds around the latest finalised one are tried in turn, then the
    round-agnostic ``endpoint_latest`` is tried.
    """

    def __init__(
        self,
        config: DataAvailabilityConfig,
        retry: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._retry = retry or RetryPolicy.from_config(config.retry)
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            timeout=httpx.Timeout(config.request_timeout_s, connect=5.0),
        )
        self._log = logger.bind(system="clients.data_availability", base_url=config.base_url)

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> DataAvailabilityClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ── Public API ─────────────────────────────────────────────

    async def fetch_proof(
        self,
        request_bytes: str,
        voting_round: int | None = None,
    ) -> DataAvailabilityProof:
        """
        Poll until the DA layer returns a non-empty proof for ``request_bytes``.

        Raises ProofUnavailable when the retry budget is spent without one.
        """
        if not request_bytes or not is_hex(request_bytes) or len(request_bytes) <= 2:
            raise ConfigurationError("abiEncodedRequest missing or not 0x-hex in the submission record.")

        async def attempt() -> DataAvailabilityProof:
            return await self.fetch_once(request_bytes, voting_round)

        proof = await self._retry.run(
            attempt,
            operation="da_fetch_proof",
            retry_on=(ProofUnavailable, TransientNetworkError),
        )
        self._log.info(
            "da_proof_fetched",
            voting_round_id=proof.voting_round_id,
            endpoint=proof.endpoint,
            proof_nodes=len(proof.response.get("proof", [])),
        )
        return proof

    async def fetch_once(
        self,
        request_bytes: str,
        voting_round: int | None = None,
    ) -> DataAvailabilityProof:
        """A single polling attempt. Raises ProofUnavailable if nothing is ready."""
        if voting_round is not None:
            rounds: list[int] = [voting_round]
        else:
            latest = await self.latest_voting_round()
            rounds = [latest - 2, latest - 1, latest, latest + 1] if latest is not None else []

        last_status: int | None = None
        for round_id in rounds:
            status, data = await self._post(
                self._config.endpoint_round,
                {"votingRoundId": round_id, "requestBytes": request_bytes},
            )
            last_status = status
            if 200 <= status < 300 and _has_proof(data):
                return DataAvailabilityProof(
                    response=data, voting_round_id=round_id, endpoint=self._config.endpoint_round,
                )

        if voting_round is None:
            status, data = await self._post(self._config.endpoint_latest, {"requestBytes": request_bytes})
            last_status = status
            if 200 <= status < 300 and _has_proof(data):
                return DataAvailabilityProof(
                    response=data, voting_round_id=None, endpoint=self._config.endpoint_latest,
                )

        raise ProofUnavailable(f"Proof not ready yet (last status {last_status}).")

    async def latest_voting_round(self) -> int | None:
        try:
            resp = await self._client.get(self._config.endpoint_latest_round)
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"latest voting round lookup failed: {exc}") from exc
        if resp.status_code >= 400:
            self._log.debug("da_latest_round_unavailable", status=resp.status_code)
            return None
        try:
            return int(resp.json()["voting_round_id"])
        except (ValueError, KeyError, TypeError):
            return None

    # ── Internal ───────────────────────────────────────────────

    async def _post(self, endpoint: str, body: dict[str, Any]) -> tuple[int, Any]:
        try:
            resp = await self._client.post(endpoint, json=body)
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"POST {endpoint} failed: {exc}") from exc
        try:
            data = resp.json()
        except ValueError:
            data = {"raw": resp.text}
        return resp.status_code, data
