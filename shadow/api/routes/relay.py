"""Relayer endpoints: withdrawal relay, relayer identity and stats."""

from __future__ import annotations

import hashlib
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from shadow.api.errors import error_response, status_for
from shadow.core.errors import ErrorCode
from shadow.core.relayer_guard import RelayerGuard, RelayRequest
from shadow.core.signer import encode_address

logger = logging.getLogger(__name__)

router = APIRouter()


def get_guard(request: Request) -> RelayerGuard:
    return request.app.state.guard


def client_key(request: Request) -> str:
    """Stable, non-reversible key for the requesting origin."""
    identity = request.client.host if request.client else "unknown"
    return hashlib.sha256(identity.encode()).hexdigest()[:16]


@router.post("/relay-withdraw")
async def relay_withdraw(
    body: RelayRequest,
    request: Request,
    guard: RelayerGuard = Depends(get_guard),
) -> JSONResponse:
    outcome = await guard.relay(body, client_key(request))
    if outcome.ok:
        return JSONResponse(status_code=200, content={"signature": outcome.signature})

    response = error_response(request, status_for(outcome.code), outcome.code.value, outcome.message)
    if outcome.code is ErrorCode.RATE_LIMITED:
        response.headers["Retry-After"] = str(int(guard.settings.relayer_window_seconds))
    return response


@router.get("/relayer-address")
async def relayer_address(guard: RelayerGuard = Depends(get_guard)) -> dict:
    return {
        "address": encode_address(guard.signer.public_key()),
        "fee": guard.settings.relayer_fee,
    }


@router.get("/stats")
async def relayer_stats(guard: RelayerGuard = Depends(get_guard)) -> dict:
    stats = guard.stats()
    balance = await guard.ledger.get_balance(guard.signer.public_key())
    return {
        "balance": balance,
        "fee": stats.fee,
        "relayedCount": stats.relayed_count,
        "feesAccrued": stats.fees_accrued,
        "rejections": stats.rejections,
    }
