"""Tests for DataAvailabilityClient against an httpx.MockTransport."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from attestgate.clients.data_availability import DataAvailabilityClient
from attestgate.clients.retry import RetryPolicy
from attestgate.config import DataAvailabilityConfig
from attestgate.errors import ConfigurationError, ProofUnavailable, TransientNetworkError

REQUEST_BYTES = "0x" + "ee" * 64
PROOF_RESPONSE = {"proof": ["0x" + "aa" * 32], "response": {"votingRound": 1001}}


class _DaLayer:
    """Answers like the DA layer: a proof only for ``ready_round``."""

    def __init__(self, latest_round: int | None = 1000, ready_round: int | None = 1001, latest_ready: bool = False):
        self.latest_round = latest_round
        self.ready_round = ready_round
        self.latest_ready = latest_ready
        self.requests: list[tuple[str, dict]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        config = DataAvailabilityConfig()
        body = json.loads(request.content) if request.content else {}
        self.requests.append((request.url.path, body))

        if request.url.path == config.endpoint_latest_round:
            if self.latest_round is None:
                return httpx.Response(503, text="unavailable")
            return httpx.Response(200, json={"voting_round_id": self.latest_round})
        if request.url.path == config.endpoint_round:
            if body["votingRoundId"] == self.ready_round:
                return httpx.Response(200, json=PROOF_RESPONSE)
            return httpx.Response(400, json={"error": "not finalized"})
        if request.url.path == config.endpoint_latest:
            if self.latest_ready:
                return httpx.Response(200, json=PROOF_RESPONSE)
            return httpx.Response(200, json={"proof": []})
        return httpx.Response(404)


def _client(layer: _DaLayer, max_attempts: int = 1) -> tuple[DataAvailabilityClient, AsyncMock]:
    config = DataAvailabilityConfig(base_url="https://da.test")
    sleep = AsyncMock()
    http = httpx.AsyncClient(base_url="https://da.test", transport=httpx.MockTransport(layer))
    retry = RetryPolicy(max_attempts=max_attempts, interval_s=15.0, backoff=1.0, sleep=sleep)
    return DataAvailabilityClient(config, retry=retry, client=http), sleep


class TestFetchOnce:
    @pytest.mark.asyncio
    async def test_scans_rounds_around_latest(self):
        layer = _DaLayer(latest_round=1000, ready_round=1001)
        client, _ = _client(layer)

        proof = await client.fetch_once(REQUEST_BYTES)

        assert proof.voting_round_id == 1001
        assert proof.response == PROOF_RESPONSE
        asked = [body["votingRoundId"] for path, body in layer.requests if "votingRoundId" in body]
        assert asked == [998, 999, 1000, 1001]
        assert all(body["requestBytes"] == REQUEST_BYTES for _, body in layer.requests if body)
        await client.close()

    @pytest.mark.asyncio
    async def test_explicit_round_skips_latest_lookup(self):
        layer = _DaLayer(ready_round=1200)
        client, _ = _client(layer)

        proof = await client.fetch_once(REQUEST_BYTES, voting_round=1200)

        assert proof.voting_round_id == 1200
        assert len(layer.requests) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_falls_back_to_round_agnostic_endpoint(self):
        layer = _DaLayer(latest_round=None, ready_round=None, latest_ready=True)
        client, _ = _client(layer)

        proof = await client.fetch_once(REQUEST_BYTES)

        assert proof.voting_round_id is None
        assert proof.endpoint == DataAvailabilityConfig().endpoint_latest
        await client.close()

    @pytest.mark.asyncio
    async def test_not_ready(self):
        client, _ = _client(_DaLayer(ready_round=None))
        with pytest.raises(ProofUnavailable, match="last status 200"):
            await client.fetch_once(REQUEST_BYTES)
        await client.close()


class TestFetchProof:
    @pytest.mark.asyncio
    async def test_polls_until_budget_spent(self):
        layer = _DaLayer(ready_round=None)
        client, sleep = _client(layer, max_attempts=3)

        with pytest.raises(ProofUnavailable):
            await client.fetch_proof(REQUEST_BYTES, voting_round=1001)

        assert len(layer.requests) == 3
        assert [c.args[0] for c in sleep.await_args_list] == [15.0, 15.0]
        await client.close()

    @pytest.mark.asyncio
    async def test_succeeds_once_round_finalises(self):
        layer = _DaLayer(ready_round=None)
        client, sleep = _client(layer, max_attempts=5)

        async def finalise(_delay: float) -> None:
            layer.ready_round = 1001

        sleep.side_effect = finalise
        proof = await client.fetch_proof(REQUEST_BYTES, voting_round=1001)

        assert proof.voting_round_id == 1001
        assert sleep.await_count == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_rejects_missing_request_bytes(self):
        client, _ = _client(_DaLayer())
        for bad in ("", "0x", "not-hex"):
            with pytest.raises(ConfigurationError):
                await client.fetch_proof(bad)
        await client.close()

    @pytest.mark.asyncio
    async def test_transport_failure_is_transient(self):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        config = DataAvailabilityConfig(base_url="https://da.test")
        http = httpx.AsyncClient(base_url="https://da.test", transport=httpx.MockTransport(refuse))
        client = DataAvailabilityClient(config, retry=RetryPolicy.none(), client=http)

        with pytest.raises(TransientNetworkError):
            await client.fetch_proof(REQUEST_BYTES, voting_round=1)
        await client.close()
