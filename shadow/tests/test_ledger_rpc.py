"""Tests for shadow.integrations.ledger_rpc against a mocked JSON-RPC node."""

from __future__ import annotations

import base64
import json

import httpx
import pytest

from shadow.core.errors import LedgerError
from shadow.core.signer import AccountMeta, UnsignedTransaction, encode_address
from shadow.integrations.ledger_rpc import RpcLedgerClient, _is_transient

BLOCKHASH = encode_address(b"\x09" * 32)
RPC_URL = "http://node.test"


class FakeNode:
    """Answers JSON-RPC calls from a per-method table and records them."""

    def __init__(self, **results) -> None:
        self.results = results
        self.calls: list[dict] = []
        self.failures: dict[str, list[httpx.Response]] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.calls.append(payload)
        pending = self.failures.get(payload["method"])
        if pending:
            return pending.pop(0)
        result = self.results.get(payload["method"])
        if isinstance(result, Exception):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "error": {"message": str(result)}})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})

    def fail(self, method: str, *statuses: int) -> None:
        self.failures.setdefault(method, []).extend(httpx.Response(s) for s in statuses)

    def methods(self) -> list[str]:
        return [call["method"] for call in self.calls]


def client_for(node: FakeNode, **kwargs) -> RpcLedgerClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(node))
    kwargs.setdefault("max_retries", 1)
    kwargs.setdefault("poll_interval", 0.0)
    return RpcLedgerClient(RPC_URL, client=http, **kwargs)


def confirmed_node(status: dict | None = None) -> FakeNode:
    return FakeNode(
        getLatestBlockhash={"value": {"blockhash": BLOCKHASH, "lastValidBlockHeight": 10}},
        sendTransaction="tx-signature",
        getSignatureStatuses={"value": [status or {"confirmationStatus": "confirmed", "err": None}]},
    )


def make_tx(signer) -> UnsignedTransaction:
    return UnsignedTransaction(
        fee_payer=signer.public_key(),
        program_id=b"\x04" * 32,
        accounts=[AccountMeta(pubkey=signer.public_key(), is_signer=True, is_writable=True)],
        data=b"\x01payload",
    )


class TestQueries:
    @pytest.mark.asyncio
    async def test_get_balance(self):
        node = FakeNode(getBalance={"context": {"slot": 1}, "value": 42})
        client = client_for(node)
        assert await client.get_balance(b"\x01" * 32) == 42
        assert node.calls[0]["params"][0] == encode_address(b"\x01" * 32)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_unexpected_result(self):
        client = client_for(FakeNode(getBalance=None))
        with pytest.raises(LedgerError):
            await client.get_balance(b"\x01" * 32)

    @pytest.mark.asyncio
    async def test_rpc_error_is_ledger_error(self):
        client = client_for(FakeNode(getBalance=RuntimeError("invalid param")))
        with pytest.raises(LedgerError, match="invalid param"):
            await client.get_balance(b"\x01" * 32)

    @pytest.mark.asyncio
    async def test_transient_http_status_is_retried(self):
        node = FakeNode(getBalance={"value": 7})
        node.fail("getBalance", 503)
        client = client_for(node)
        assert await client.get_balance(b"\x01" * 32) == 7
        assert node.methods() == ["getBalance", "getBalance"]

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        node = FakeNode(getBalance={"value": 7})
        node.fail("getBalance", 400)
        client = client_for(node)
        with pytest.raises(LedgerError):
            await client.get_balance(b"\x01" * 32)
        assert len(node.calls) == 1


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_signs_sends_and_confirms(self, signer):
        node = confirmed_node()
        client = client_for(node)
        signature = await client.submit(make_tx(signer), signer)

        assert signature == "tx-signature"
        assert node.methods() == ["getLatestBlockhash", "sendTransaction", "getSignatureStatuses"]
        wire = base64.b64decode(node.calls[1]["params"][0])
        assert wire.endswith(b"\x01payload")

    @pytest.mark.asyncio
    async def test_failed_transaction(self, signer):
        client = client_for(confirmed_node({"confirmationStatus": "processed", "err": {"Custom": 1}}))
        with pytest.raises(LedgerError, match="failed"):
            await client.submit(make_tx(signer), signer)

    @pytest.mark.asyncio
    async def test_confirmation_timeout_is_not_resent(self, signer):
        node = confirmed_node({"confirmationStatus": "processed", "err": None})
        client = client_for(node, confirmation_timeout=0.0)
        with pytest.raises(LedgerError, match="not confirmed"):
            await client.submit(make_tx(signer), signer)
        assert node.methods().count("sendTransaction") == 1

    @pytest.mark.asyncio
    async def test_expired_blockhash_is_retried(self, signer):
        node = confirmed_node()
        node.results["sendTransaction"] = RuntimeError("Blockhash not found")
        client = client_for(node)
        with pytest.raises(LedgerError):
            await client.submit(make_tx(signer), signer)
        assert node.methods().count("getLatestBlockhash") == 2

    @pytest.mark.asyncio
    async def test_status_poll_failures_do_not_resend(self, signer):
        node = confirmed_node()
        node.fail("getSignatureStatuses", 503, 503)
        client = client_for(node)
        assert await client.submit(make_tx(signer), signer) == "tx-signature"
        assert node.methods().count("sendTransaction") == 1
        assert node.methods().count("getSignatureStatuses") == 3

    @pytest.mark.asyncio
    async def test_ambiguous_send_failure_is_not_resent(self, signer):
        node = confirmed_node()
        node.fail("sendTransaction", 503)
        client = client_for(node)
        with pytest.raises(LedgerError, match="503"):
            await client.submit(make_tx(signer), signer)
        assert node.methods().count("sendTransaction") == 1

    @pytest.mark.asyncio
    async def test_rate_limited_send_is_retried(self, signer):
        node = confirmed_node()
        node.fail("sendTransaction", 429)
        client = client_for(node)
        assert await client.submit(make_tx(signer), signer) == "tx-signature"
        assert node.methods().count("sendTransaction") == 2


class TestTransientClassification:
    def test_flagged_ledger_error(self):
        assert _is_transient(LedgerError("x", transient=True))
        assert not _is_transient(LedgerError("x"))

    def test_network_errors(self):
        assert _is_transient(httpx.ConnectTimeout("slow"))

    def test_message_match(self):
        assert _is_transient(Exception("Connection reset by peer"))
        assert not _is_transient(Exception("invalid signature"))
