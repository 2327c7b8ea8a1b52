"""HTTP client for a remote relayer service."""

from __future__ import annotations

import base64
import logging

import httpx

from shadow.core.config import ShadowSettings
from shadow.core.errors import LedgerError, error_for_code
from shadow.core.logging import fingerprint

logger = logging.getLogger(__name__)


class RelayerClient:
    """Submits prepared withdraw instructions to ``POST /relay-withdraw``.

    Rejections are raised as the typed error matching the relayer's code
    (``RateLimitedError``, ``ReplayDetectedError`` and so on).
    """

    def __init__(self, base_url: str, *, timeout: float = 30.0, client: httpx.AsyncClient | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    @classmethod
    def from_settings(cls, settings: ShadowSettings, client: httpx.AsyncClient | None = None) -> RelayerClient:
        return cls(settings.relayer_url, timeout=settings.relayer_timeout_seconds, client=client)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str) -> dict:
        try:
            resp = await self._client.get(path)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise LedgerError(f"relayer {path} unavailable: {exc}", transient=True) from exc
        return resp.json()

    async def health(self) -> dict:
        return await self._get("/health")

    async def relayer_info(self) -> dict:
        """Relayer address and fee, as published by ``GET /relayer-address``."""
        return await self._get("/relayer-address")

    async def relay_withdraw(
        self,
        *,
        pool_address: str,
        instruction: bytes,
        recipient: str,
        amount: int,
        nullifier: str,
    ) -> str:
        payload = {
            "poolAddress": pool_address,
            "instructionData": base64.b64encode(instruction).decode("ascii"),
            "recipient": recipient,
            "amount": amount,
            "nullifier": nullifier,
        }
        try:
            resp = await self._client.post("/relay-withdraw", json=payload)
        except httpx.HTTPError as exc:
            raise LedgerError(f"relayer request failed: {exc}", transient=True) from exc

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code == 200 and body.get("signature"):
            logger.info("Relayer forwarded nullifier %s", fingerprint(nullifier))
            return body["signature"]

        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict) and error.get("code"):
            raise error_for_code(error["code"], error.get("message", "relayer rejected the request"))
        raise LedgerError(f"relayer returned HTTP {resp.status_code}")
