"""Tests for the relayer HTTP API via httpx ASGITransport."""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from shadow.api.main import create_app
from shadow.core.signer import encode_address
from shadow.tests.fakes import FakeLedgerClient, make_relay_request


def _body(request) -> dict:
    return request.model_dump(by_alias=True)


@pytest_asyncio.fixture
async def client_for(settings, signer):
    clients = []

    async def build(ledger_client: FakeLedgerClient | None = None) -> AsyncClient:
        app = create_app(settings, ledger_client=ledger_client or FakeLedgerClient(), signer=signer)
        client = AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver")
        clients.append(client)
        return client

    yield build
    for client in clients:
        await client.aclose()


class TestInfoEndpoints:
    @pytest.mark.asyncio
    async def test_health(self, client_for):
        client = await client_for()
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
        assert "X-Request-ID" in resp.headers

    @pytest.mark.asyncio
    async def test_relayer_address(self, client_for, signer, settings):
        client = await client_for()
        body = (await client.get("/relayer-address")).json()
        assert body == {"address": encode_address(signer.public_key()), "fee": settings.relayer_fee}

    @pytest.mark.asyncio
    async def test_stats(self, client_for, settings):
        client = await client_for(FakeLedgerClient(balance=10**9))
        await client.post("/relay-withdraw", json=_body(make_relay_request()))
        body = (await client.get("/stats")).json()
        assert body["balance"] == 10**9
        assert body["relayedCount"] == 1
        assert body["feesAccrued"] == settings.relayer_fee


class TestRelayWithdraw:
    @pytest.mark.asyncio
    async def test_success(self, client_for):
        client = await client_for()
        resp = await client.post("/relay-withdraw", json=_body(make_relay_request()))
        assert resp.status_code == 200
        assert resp.json() == {"signature": "sig-1"}

    @pytest.mark.asyncio
    async def test_replay_is_409(self, client_for):
        client = await client_for()
        await client.post("/relay-withdraw", json=_body(make_relay_request()))
        resp = await client.post("/relay-withdraw", json=_body(make_relay_request()))
        assert resp.status_code == 409
        body = resp.json()
        assert body["error"]["code"] == "REPLAY_DETECTED"
        assert isinstance(body["message"], str)
        assert body["message"] == body["error"]["message"]

    @pytest.mark.asyncio
    async def test_rate_limit_is_429(self, client_for, settings):
        client = await client_for()
        for i in range(settings.relayer_max_requests_per_minute):
            await client.post("/relay-withdraw", json=_body(make_relay_request(nullifier=bytes([i + 1]) * 32)))
        resp = await client.post("/relay-withdraw", json=_body(make_relay_request(nullifier=b"\x77" * 32)))
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "60"
        assert resp.json()["error"]["code"] == "RATE_LIMITED"

    @pytest.mark.asyncio
    async def test_underfunded_is_503(self, client_for):
        client = await client_for(FakeLedgerClient(balance=0))
        resp = await client.post("/relay-withdraw", json=_body(make_relay_request()))
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "RELAYER_UNDERFUNDED"

    @pytest.mark.asyncio
    async def test_oversized_instruction_is_413(self, client_for, settings):
        client = await client_for()
        request = make_relay_request(proof=b"\x00" * (settings.relayer_max_instruction_bytes + 10))
        resp = await client.post("/relay-withdraw", json=_body(request))
        assert resp.status_code == 413

    @pytest.mark.asyncio
    async def test_oversized_body_rejected_by_middleware(self, client_for, settings):
        client = await client_for()
        resp = await client.post(
            "/relay-withdraw",
            content=b"x" * (settings.max_request_body_bytes + 1),
            headers={"content-type": "application/json"},
        )
        assert resp.status_code == 413
        assert resp.json()["error"]["code"] == "PAYLOAD_TOO_LARGE"
        assert "too large" in resp.json()["message"]

    @pytest.mark.asyncio
    async def test_missing_fields_is_422(self, client_for):
        client = await client_for()
        resp = await client.post("/relay-withdraw", json={"poolAddress": "x"})
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert {d["field"] for d in error["details"]} >= {"instructionData", "nullifier"}

    @pytest.mark.asyncio
    async def test_invalid_instruction_is_400(self, client_for):
        client = await client_for()
        body = _body(make_relay_request())
        body["nullifier"] = "0b" * 32
        resp = await client.post("/relay-withdraw", json=body)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_INSTRUCTION"
