"""JSON-RPC client for the host ledger.

Speaks ``getBalance``, ``getLatestBlockhash``, ``sendTransaction`` and
``getSignatureStatuses`` over httpx. Transient failures (timeouts,
connection resets, expired blockhashes) are retried with exponential
back-off; everything else surfaces as :class:`LedgerError`. A transaction
is re-sent only when the node refused it.
"""

from __future__ import annotations

import asyncio
import base64
import itertools
import logging
import time
from typing import Any

import httpx

from shadow.core.config import ShadowSettings
from shadow.core.errors import LedgerError
from shadow.core.signer import Signer, UnsignedTransaction, encode_address

logger = logging.getLogger(__name__)

_TRANSIENT_MESSAGES = (
    "timeout",
    "timed out",
    "connection",
    "temporarily unavailable",
    "blockhash not found",
    "block height exceeded",
    "too many requests",
)


def _is_transient(exc: Exception) -> bool:
    """Return True if the exception looks transient (network / RPC node)."""
    if isinstance(exc, LedgerError) and exc.transient:
        return True
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    msg = str(exc).lower()
    return any(t in msg for t in _TRANSIENT_MESSAGES)


class RpcRefusedError(LedgerError):
    """The node answered and refused the request, so nothing was accepted."""


def _send_refused(exc: Exception) -> bool:
    """A send may be repeated only when the node refused it for a transient reason."""
    return isinstance(exc, RpcRefusedError) and exc.transient


async def _retry_async(
    coro_factory,  # callable returning a coroutine
    *,
    max_retries: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    label: str = "operation",
    retry_if=_is_transient,
):
    """Retry an async operation with exponential back-off on transient errors."""
    for attempt in range(max_retries + 1):
        try:
            return await coro_factory()
        except Exception as exc:
            if attempt >= max_retries or not retry_if(exc):
                raise
            delay = min(base_delay * (2 ** attempt), max_delay)
            logger.warning(
                "Transient error in %s (attempt %d/%d), retrying in %.1fs: %s",
                label, attempt + 1, max_retries, delay, exc,
            )
            await asyncio.sleep(delay)


class RpcLedgerClient:
    """Async JSON-RPC ledger client.

    Args:
        rpc_url: Node endpoint.
        commitment: Confirmation level to wait for.
        max_retries: Retries on transient failures.
        confirmation_timeout: Seconds to wait for a submitted signature.
        client: Optional preconfigured httpx client (tests inject a mock transport).
    """

    _CONFIRMED = {
        "processed": ("processed", "confirmed", "finalized"),
        "confirmed": ("confirmed", "finalized"),
        "finalized": ("finalized",),
    }

    def __init__(
        self,
        rpc_url: str,
        *,
        commitment: str = "confirmed",
        max_retries: int = 3,
        timeout: float = 30.0,
        confirmation_timeout: float = 60.0,
        poll_interval: float = 0.5,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.max_retries = max_retries
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    @classmethod
    def from_settings(cls, settings: ShadowSettings, client: httpx.AsyncClient | None = None) -> RpcLedgerClient:
        return cls(
            settings.rpc_url,
            commitment=settings.commitment_level,
            max_retries=settings.max_transaction_retries,
            timeout=settings.rpc_timeout_seconds,
            confirmation_timeout=settings.confirmation_timeout_seconds,
            client=client,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = await self._client.post(self.rpc_url, json=payload)
        except httpx.HTTPError as exc:
            raise LedgerError(f"{method} request failed: {exc}", transient=True) from exc
        if resp.status_code == 429:
            raise RpcRefusedError(f"{method} returned HTTP 429", transient=True)
        if resp.status_code >= 500:
            raise LedgerError(f"{method} returned HTTP {resp.status_code}", transient=True)
        if resp.status_code >= 400:
            raise LedgerError(f"{method} returned HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise LedgerError(f"{method} returned a non-JSON body") from exc
        if body.get("error"):
            err = body["error"]
            message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            raise RpcRefusedError(f"{method} failed: {message}", transient=_is_transient(Exception(message)))
        return body.get("result")

    async def rpc(self, method: str, params: list[Any]) -> Any:
        return await _retry_async(
            lambda: self._call(method, params),
            max_retries=self.max_retries,
            label=method,
        )

    # ── Queries ──────────────────────────────────────────────────────────

    async def get_balance(self, account: bytes) -> int:
        result = await self.rpc("getBalance", [encode_address(account), {"commitment": self.commitment}])
        try:
            return int(result["value"])
        except (KeyError, TypeError, ValueError) as exc:
            raise LedgerError("getBalance returned an unexpected result") from exc

    async def get_latest_blockhash(self) -> str:
        result = await self.rpc("getLatestBlockhash", [{"commitment": self.commitment}])
        try:
            return result["value"]["blockhash"]
        except (KeyError, TypeError) as exc:
            raise LedgerError("getLatestBlockhash returned an unexpected result") from exc

    async def signature_status(self, signature: str) -> dict[str, Any] | None:
        result = await self.rpc("getSignatureStatuses", [[signature], {"searchTransactionHistory": False}])
        try:
            return result["value"][0]
        except (KeyError, TypeError, IndexError) as exc:
            raise LedgerError("getSignatureStatuses returned an unexpected result") from exc

    # ── Submission ───────────────────────────────────────────────────────

    async def _send(self, tx: UnsignedTransaction, signer: Signer) -> str:
        """Sign with a fresh blockhash and send once. Returns the signature."""
        blockhash = await self.get_latest_blockhash()
        signed = signer.sign_transaction(tx.with_blockhash(blockhash))
        encoded = base64.b64encode(signed.serialize()).decode("ascii")
        return await self._call(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": self.commitment}],
        )

    async def submit(self, tx: UnsignedTransaction, signer: Signer) -> str:
        """Sign, send, and wait for confirmation.

        Sending is retried only when the node refused the transaction
        (for example an expired blockhash). Once a signature is returned the
        transaction is never sent again; only its status is polled.
        """
        signature = await _retry_async(
            lambda: self._send(tx, signer),
            max_retries=self.max_retries,
            label="sendTransaction",
            retry_if=_send_refused,
        )
        await self.wait_for_confirmation(signature)
        logger.info("Transaction %s confirmed", signature[:16])
        return signature

    async def wait_for_confirmation(self, signature: str) -> None:
        """Poll ``signature`` until it reaches the configured level or the deadline passes.

        Transient polling failures are tolerated until the deadline.
        """
        deadline = time.monotonic() + self.confirmation_timeout
        accepted = self._CONFIRMED.get(self.commitment, ("confirmed", "finalized"))
        while True:
            try:
                status = await self.signature_status(signature)
            except LedgerError as exc:
                if not exc.transient:
                    raise
                logger.warning("Status poll for %s failed, still waiting: %s", signature[:16], exc)
                status = None
            if status is not None:
                if status.get("err"):
                    raise LedgerError(f"transaction {signature[:16]} failed: {status['err']}")
                if status.get("confirmationStatus") in accepted:
                    return
            if time.monotonic() >= deadline:
                raise LedgerError(
                    f"transaction {signature[:16]} not confirmed within {self.confirmation_timeout:.0f}s"
                )
            await asyncio.sleep(self.poll_interval)
