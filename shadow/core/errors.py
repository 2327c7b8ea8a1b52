"""Error taxonomy for the shielded-note engine.

Every failure carries an :class:`ErrorCode` so callers can tell "pick a
different note" apart from "wait for confirmation" or "wrong password".
Accumulator, ledger and storage errors are structural and not retryable
without changing the input. :class:`ProofError` is retryable once the spend
ticket has been aborted.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    # Accumulator
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    INDEX_OUT_OF_RANGE = "INDEX_OUT_OF_RANGE"

    # Ledger
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    ALREADY_RESERVED_OR_SPENT = "ALREADY_RESERVED_OR_SPENT"
    DOUBLE_SPEND = "DOUBLE_SPEND"
    NOTE_NOT_FOUND = "NOTE_NOT_FOUND"
    NOTE_NOT_CONFIRMED = "NOTE_NOT_CONFIRMED"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_FIELD_ELEMENT = "INVALID_FIELD_ELEMENT"

    # Proving
    PROOF_ERROR = "PROOF_ERROR"
    PROOF_TIMEOUT = "PROOF_TIMEOUT"
    INVALID_RING_SIZE = "INVALID_RING_SIZE"
    INVALID_KEY_IMAGE = "INVALID_KEY_IMAGE"

    # Relayer
    RATE_LIMITED = "RATE_LIMITED"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    REPLAY_DETECTED = "REPLAY_DETECTED"
    RELAYER_UNDERFUNDED = "RELAYER_UNDERFUNDED"
    INVALID_INSTRUCTION = "INVALID_INSTRUCTION"
    LEDGER_ERROR = "LEDGER_ERROR"

    # Storage
    DECRYPTION_ERROR = "DECRYPTION_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"


class ShadowError(Exception):
    """Base error with a structured code and a message naming the invariant."""

    code: ErrorCode = ErrorCode.LEDGER_ERROR

    def __init__(self, message: str, *, code: ErrorCode | None = None) -> None:
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"


# ── Accumulator ──────────────────────────────────────────────────────────────


class CapacityExceededError(ShadowError):
    code = ErrorCode.CAPACITY_EXCEEDED


class IndexOutOfRangeError(ShadowError):
    code = ErrorCode.INDEX_OUT_OF_RANGE


# ── Ledger ───────────────────────────────────────────────────────────────────


class InsufficientBalanceError(ShadowError):
    code = ErrorCode.INSUFFICIENT_BALANCE


class AlreadyReservedOrSpentError(ShadowError):
    code = ErrorCode.ALREADY_RESERVED_OR_SPENT


class DoubleSpendError(ShadowError):
    code = ErrorCode.DOUBLE_SPEND


class NoteNotFoundError(ShadowError):
    code = ErrorCode.NOTE_NOT_FOUND


class NoteNotConfirmedError(ShadowError):
    code = ErrorCode.NOTE_NOT_CONFIRMED


class InvalidAmountError(ShadowError):
    code = ErrorCode.INVALID_AMOUNT


class InvalidFieldElementError(ShadowError):
    code = ErrorCode.INVALID_FIELD_ELEMENT


# ── Proving ──────────────────────────────────────────────────────────────────


class ProofError(ShadowError):
    """External prover failure. The reason string is opaque to the engine."""

    code = ErrorCode.PROOF_ERROR


class ProofTimeoutError(ProofError):
    code = ErrorCode.PROOF_TIMEOUT


class InvalidRingSizeError(ShadowError):
    code = ErrorCode.INVALID_RING_SIZE


class InvalidKeyImageError(ShadowError):
    code = ErrorCode.INVALID_KEY_IMAGE


# ── Relayer ──────────────────────────────────────────────────────────────────


class RelayerError(ShadowError):
    """Base for rejections reported by the relayer gateway."""


class RateLimitedError(RelayerError):
    code = ErrorCode.RATE_LIMITED


class PayloadTooLargeError(RelayerError):
    code = ErrorCode.PAYLOAD_TOO_LARGE


class ReplayDetectedError(RelayerError):
    code = ErrorCode.REPLAY_DETECTED


class RelayerUnderfundedError(RelayerError):
    code = ErrorCode.RELAYER_UNDERFUNDED


class InvalidInstructionError(ShadowError):
    code = ErrorCode.INVALID_INSTRUCTION


class LedgerError(ShadowError):
    """The host ledger rejected or failed to confirm a transaction."""

    code = ErrorCode.LEDGER_ERROR

    def __init__(self, message: str, *, transient: bool = False, code: ErrorCode | None = None) -> None:
        super().__init__(message, code=code)
        self.transient = transient


# ── Storage ──────────────────────────────────────────────────────────────────


class DecryptionError(ShadowError):
    """Authentication failed: wrong password or a corrupted note file."""

    code = ErrorCode.DECRYPTION_ERROR


class StorageError(ShadowError):
    code = ErrorCode.STORAGE_ERROR


_ERRORS_BY_CODE: dict[ErrorCode, type[ShadowError]] = {
    cls.code: cls
    for cls in (
        CapacityExceededError,
        IndexOutOfRangeError,
        InsufficientBalanceError,
        AlreadyReservedOrSpentError,
        DoubleSpendError,
        NoteNotFoundError,
        NoteNotConfirmedError,
        InvalidAmountError,
        InvalidFieldElementError,
        ProofError,
        ProofTimeoutError,
        InvalidRingSizeError,
        InvalidKeyImageError,
        RateLimitedError,
        PayloadTooLargeError,
        ReplayDetectedError,
        RelayerUnderfundedError,
        InvalidInstructionError,
        LedgerError,
        DecryptionError,
        StorageError,
    )
}


def error_for_code(code: str, message: str) -> ShadowError:
    """Rebuild a typed error from a code received over the wire."""
    try:
        error_code = ErrorCode(code)
    except ValueError:
        return LedgerError(message)
    return _ERRORS_BY_CODE.get(error_code, ShadowError)(message, code=error_code)
