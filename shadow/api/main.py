"""FastAPI application for the relayer service.

Run with ``uvicorn --factory shadow.api.main:create_app``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from shadow.api.errors import register_error_handlers
from shadow.api.middleware.request import RequestIDMiddleware, RequestSizeLimitMiddleware
from shadow.api.routes import health, relay
from shadow.core.config import ShadowSettings, load_settings
from shadow.core.logging import setup_logging
from shadow.core.relayer_guard import RelayerGuard
from shadow.core.signer import LocalKeypairSigner, Signer
from shadow.core.types import LedgerClient
from shadow.integrations.ledger_rpc import RpcLedgerClient

logger = logging.getLogger(__name__)


def _relayer_signer(settings: ShadowSettings) -> Signer:
    if settings.relayer_keypair_path is not None:
        return LocalKeypairSigner.from_file(settings.relayer_keypair_path)
    if settings.app_env == "production":
        raise RuntimeError("SHADOW_RELAYER_KEYPAIR_PATH must be set in production")
    signer = LocalKeypairSigner.generate()
    logger.warning("No relayer keypair configured; using ephemeral signer %s", signer.address)
    return signer


def create_app(
    settings: ShadowSettings | None = None,
    *,
    ledger_client: LedgerClient | None = None,
    signer: Signer | None = None,
) -> FastAPI:
    """Create and configure the relayer application.

    ``settings`` is built from the environment when not given. The ledger
    client and signer default to the JSON-RPC client and the configured
    keypair.
    """
    settings = settings or load_settings()
    owned_client = ledger_client is None
    client = ledger_client or RpcLedgerClient.from_settings(settings)
    guard = RelayerGuard(settings, client, signer or _relayer_signer(settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        setup_logging(env=settings.app_env, log_level="DEBUG" if settings.debug else settings.log_level)
        logger.info("Starting %s in %s mode", settings.app_name, settings.app_env)
        yield
        if owned_client:
            await client.aclose()
        logger.info("Shutting down %s", settings.app_name)

    app = FastAPI(
        title=settings.app_name,
        description="Submits shielded-pool withdrawals on behalf of users.",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None if settings.app_env == "production" else "/docs",
        redoc_url=None,
        openapi_url=None if settings.app_env == "production" else "/openapi.json",
    )
    app.state.settings = settings
    app.state.guard = guard

    # ── Middleware (outermost last) ──────────────────────────────────
    app.add_middleware(RequestSizeLimitMiddleware, max_size=settings.max_request_body_bytes)
    app.add_middleware(RequestIDMiddleware)

    @app.middleware("http")
    async def access_log(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = (time.perf_counter() - start) * 1000
        logger.info(
            "%s %s -> %d (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed,
            extra={"method": request.method, "path": request.url.path,
                   "status_code": response.status_code, "duration_ms": round(elapsed, 1)},
        )
        return response

    # ── Routes ───────────────────────────────────────────────────────
    app.include_router(health.router, tags=["health"])
    app.include_router(relay.router, tags=["relayer"])

    register_error_handlers(app)
    return app
