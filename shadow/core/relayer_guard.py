"""Anonymity-preserving submission gateway.

Each relay request walks a fixed sequence of checks and stops at the first
failure::

    received -> rate checked -> size bounded -> payload validated
             -> replay checked -> balance checked -> forwarded

Rejections are returned as a :class:`RelayOutcome` carrying the failed
check's :class:`ErrorCode`; nothing here raises for an expected rejection.
The instruction bytes are forwarded verbatim.
"""

from __future__ import annotations

import base64
import binascii
import logging
import math
import time
from collections import Counter, deque
from collections.abc import Callable

from pydantic import BaseModel, ConfigDict, Field

from .config import ShadowSettings
from .errors import ErrorCode, LedgerError, ShadowError
from .instructions import Withdraw, decode_instruction
from .locks import KeyedLock
from .logging import fingerprint
from .signer import AccountMeta, Signer, UnsignedTransaction, decode_address
from .types import LedgerClient

logger = logging.getLogger(__name__)

_PRUNE_THRESHOLD = 10_000


class RelayRequest(BaseModel):
    """Body of ``POST /relay-withdraw``."""

    model_config = ConfigDict(populate_by_name=True)

    pool_address: str = Field(alias="poolAddress")
    instruction_data: str = Field(alias="instructionData")
    recipient: str
    amount: int
    nullifier: str


class RelayOutcome(BaseModel):
    signature: str | None = None
    code: ErrorCode | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.signature is not None

    @classmethod
    def forwarded(cls, signature: str) -> RelayOutcome:
        return cls(signature=signature)

    @classmethod
    def rejected(cls, code: ErrorCode, message: str) -> RelayOutcome:
        return cls(code=code, message=message)


class RelayerStats(BaseModel):
    relayed_count: int
    fees_accrued: int
    fee: int
    rejections: dict[str, int]


# ── Rate limiting ────────────────────────────────────────────────────────────


class SlidingWindowRateLimiter:
    """Per-key sliding window. A rejected request does not consume a slot."""

    def __init__(self, limit: int, window: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.limit = limit
        self.window = window
        self._clock = clock
        self._windows: dict[str, deque[float]] = {}
        self._locks = KeyedLock()

    def allow(self, key: str) -> bool:
        now = self._clock()
        with self._locks.hold(key):
            stamps = self._windows.setdefault(key, deque())
            while stamps and stamps[0] <= now - self.window:
                stamps.popleft()
            if len(stamps) >= self.limit:
                return False
            stamps.append(now)
        if len(self._windows) > _PRUNE_THRESHOLD:
            self.prune()
        return True

    def remaining(self, key: str) -> int:
        now = self._clock()
        with self._locks.hold(key):
            stamps = self._windows.get(key, ())
            live = sum(1 for t in stamps if t > now - self.window)
        return max(0, self.limit - live)

    def prune(self) -> int:
        """Drop keys whose every timestamp has left the window."""
        cutoff = self._clock() - self.window
        stale = [key for key, stamps in list(self._windows.items()) if not stamps or stamps[-1] <= cutoff]
        for key in stale:
            with self._locks.hold(key):
                stamps = self._windows.get(key)
                if stamps is not None and (not stamps or stamps[-1] <= cutoff):
                    del self._windows[key]
        return len(stale)


# ── Guard ────────────────────────────────────────────────────────────────────


def _normalize_hex(text: str) -> str:
    text = text.lower()
    return text[2:] if text.startswith("0x") else text


class RelayerGuard:
    """Checks relay requests and forwards the ones that pass.

    Args:
        settings: Rate, size, balance and fee limits.
        ledger: Host-ledger client used for the balance check and submission.
        signer: The relayer's fee-paying identity.
        clock: Monotonic clock for the rate limiter.
    """

    def __init__(
        self,
        settings: ShadowSettings,
        ledger: LedgerClient,
        signer: Signer,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.ledger = ledger
        self.signer = signer
        self.program_id = decode_address(settings.program_id)
        self.limiter = SlidingWindowRateLimiter(
            settings.relayer_max_requests_per_minute,
            settings.relayer_window_seconds,
            clock=clock,
        )
        max_bytes = settings.relayer_max_instruction_bytes
        self._max_instruction_bytes = max_bytes
        self._max_encoded_chars = 4 * math.ceil(max_bytes / 3)

        self._relayed: set[str] = set()
        self._in_flight: set[str] = set()
        self._nullifier_locks = KeyedLock()
        self._rejections: Counter[str] = Counter()

    # ── Stats ────────────────────────────────────────────────────────────

    @property
    def relayed_count(self) -> int:
        return len(self._relayed)

    def stats(self) -> RelayerStats:
        return RelayerStats(
            relayed_count=self.relayed_count,
            fees_accrued=self.relayed_count * self.settings.relayer_fee,
            fee=self.settings.relayer_fee,
            rejections=dict(self._rejections),
        )

    def has_relayed(self, nullifier: str) -> bool:
        return _normalize_hex(nullifier) in self._relayed

    def _reject(self, code: ErrorCode, message: str, origin: str) -> RelayOutcome:
        self._rejections[code.value] += 1
        logger.info("Relay rejected: %s", message, extra={"code": code.value, "origin": origin})
        return RelayOutcome.rejected(code, message)

    # ── Checks ───────────────────────────────────────────────────────────

    def _decode_payload(self, request: RelayRequest) -> tuple[bytes | None, RelayOutcome | None, str]:
        """Bound, decode and cross-check the instruction. Returns (data, rejection, nullifier)."""
        nullifier = _normalize_hex(request.nullifier)
        if len(request.instruction_data) > self._max_encoded_chars:
            return None, RelayOutcome.rejected(
                ErrorCode.PAYLOAD_TOO_LARGE,
                f"instruction exceeds {self._max_instruction_bytes} bytes",
            ), nullifier
        try:
            data = base64.b64decode(request.instruction_data, validate=True)
        except (binascii.Error, ValueError):
            return None, RelayOutcome.rejected(
                ErrorCode.INVALID_INSTRUCTION, "instructionData is not valid base64"
            ), nullifier
        if len(data) > self._max_instruction_bytes:
            return None, RelayOutcome.rejected(
                ErrorCode.PAYLOAD_TOO_LARGE,
                f"instruction exceeds {self._max_instruction_bytes} bytes",
            ), nullifier

        if not 0 <= request.amount <= self.settings.relayer_max_amount:
            return None, RelayOutcome.rejected(
                ErrorCode.INVALID_AMOUNT,
                f"amount must be between 0 and {self.settings.relayer_max_amount}",
            ), nullifier

        try:
            decode_address(request.pool_address)
            recipient = decode_address(request.recipient)
            instruction = decode_instruction(data)
        except ValueError as exc:
            return None, RelayOutcome.rejected(ErrorCode.INVALID_INSTRUCTION, str(exc)), nullifier
        except ShadowError as exc:
            return None, RelayOutcome.rejected(ErrorCode.INVALID_INSTRUCTION, exc.message), nullifier

        if not isinstance(instruction, Withdraw):
            return None, RelayOutcome.rejected(
                ErrorCode.INVALID_INSTRUCTION, "only withdraw instructions can be relayed"
            ), nullifier
        if instruction.nullifier.hex() != nullifier:
            return None, RelayOutcome.rejected(
                ErrorCode.INVALID_INSTRUCTION, "declared nullifier does not match the instruction"
            ), nullifier
        if instruction.recipient != recipient or instruction.amount != request.amount:
            return None, RelayOutcome.rejected(
                ErrorCode.INVALID_INSTRUCTION, "declared recipient or amount does not match the instruction"
            ), nullifier
        return data, None, nullifier

    def _reserve(self, nullifier: str) -> bool:
        with self._nullifier_locks.hold(nullifier):
            if nullifier in self._relayed or nullifier in self._in_flight:
                return False
            self._in_flight.add(nullifier)
            return True

    def _settle(self, nullifier: str, forwarded: bool) -> None:
        with self._nullifier_locks.hold(nullifier):
            self._in_flight.discard(nullifier)
            if forwarded:
                self._relayed.add(nullifier)

    # ── Relay ────────────────────────────────────────────────────────────

    async def relay(self, request: RelayRequest, origin: str) -> RelayOutcome:
        if not self.limiter.allow(origin):
            return self._reject(ErrorCode.RATE_LIMITED, "too many relay requests from this origin", origin)

        data, rejection, nullifier = self._decode_payload(request)
        if rejection is not None:
            return self._reject(rejection.code, rejection.message, origin)

        if not self._reserve(nullifier):
            return self._reject(
                ErrorCode.REPLAY_DETECTED,
                f"nullifier {fingerprint(nullifier)} was already relayed",
                origin,
            )

        forwarded = False
        try:
            try:
                balance = await self.ledger.get_balance(self.signer.public_key())
            except LedgerError as exc:
                return self._reject(ErrorCode.LEDGER_ERROR, f"balance check failed: {exc.message}", origin)
            if balance < self.settings.relayer_min_balance:
                return self._reject(
                    ErrorCode.RELAYER_UNDERFUNDED,
                    "relayer balance is below its operating minimum",
                    origin,
                )

            tx = UnsignedTransaction(
                fee_payer=self.signer.public_key(),
                program_id=self.program_id,
                accounts=[
                    AccountMeta(pubkey=decode_address(request.pool_address), is_writable=True),
                    AccountMeta(pubkey=decode_address(request.recipient), is_writable=True),
                    AccountMeta(pubkey=self.signer.public_key(), is_signer=True, is_writable=True),
                ],
                data=data,
            )
            try:
                signature = await self.ledger.submit(tx, self.signer)
            except LedgerError as exc:
                return self._reject(ErrorCode.LEDGER_ERROR, f"transaction failed: {exc.message}", origin)

            forwarded = True
        finally:
            self._settle(nullifier, forwarded)

        logger.info("Relayed withdrawal for nullifier %s", fingerprint(nullifier), extra={"origin": origin})
        return RelayOutcome.forwarded(signature)
