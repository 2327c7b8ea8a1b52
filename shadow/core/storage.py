"""Encrypted at-rest storage for the note database.

The whole note set is serialized, encrypted with AES-256-GCM under a
scrypt-derived key and written as one JSON blob::

    {"iv": hex, "salt": hex, "data": hex(ciphertext || tag), "version": 1}

Every save draws a fresh salt and IV and replaces the file atomically, so a
reader never sees a half-written blob. Any authentication failure surfaces
as :class:`DecryptionError`. A missing file is the only way to get an empty
note set back.

Unencrypted storage exists only as the explicit :class:`InsecureDevStore`.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from pydantic import BaseModel, ValidationError

from .config import ShadowSettings
from .errors import DecryptionError, StorageError
from .types import Note

logger = logging.getLogger(__name__)

BLOB_VERSION = 1
_IV_SIZE = 16
_SALT_SIZE = 32
_KEY_SIZE = 32
_TAG_SIZE = 16

_DIR_MODE = 0o700
_FILE_MODE = 0o600


class EncryptedBlob(BaseModel):
    iv: str
    salt: str
    data: str
    version: int = BLOB_VERSION


# ── Helpers ──────────────────────────────────────────────────────────────────


def _serialize_notes(notes: list[Note]) -> bytes:
    payload = {"notes": [note.model_dump(mode="json") for note in notes]}
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def _deserialize_notes(raw: bytes) -> list[Note]:
    payload = json.loads(raw.decode("utf-8"))
    return [Note.model_validate(item) for item in payload["notes"]]


def _atomic_write(path: Path, data: bytes) -> None:
    """Write ``data`` to a temp file beside ``path`` and rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True, mode=_DIR_MODE)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        os.fchmod(fd, _FILE_MODE)
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except OSError as exc:
        Path(tmp_name).unlink(missing_ok=True)
        raise StorageError(f"failed to write {path}: {exc}") from exc


class EncryptedStore:
    """Password-protected note file.

    Args:
        path: Location of the encrypted note file.
        scrypt_n: scrypt CPU/memory cost (power of two).
        scrypt_r: scrypt block size.
        scrypt_p: scrypt parallelism.
    """

    def __init__(
        self,
        path: Path,
        *,
        scrypt_n: int = 2**14,
        scrypt_r: int = 8,
        scrypt_p: int = 1,
    ) -> None:
        self.path = Path(path)
        self._scrypt_n = scrypt_n
        self._scrypt_r = scrypt_r
        self._scrypt_p = scrypt_p
        self._write_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: ShadowSettings) -> EncryptedStore:
        return cls(
            settings.notes_path,
            scrypt_n=settings.scrypt_n,
            scrypt_r=settings.scrypt_r,
            scrypt_p=settings.scrypt_p,
        )

    def exists(self) -> bool:
        return self.path.exists()

    # ── Crypto ───────────────────────────────────────────────────────────

    def _derive_key(self, password: str, salt: bytes) -> bytes:
        kdf = Scrypt(salt=salt, length=_KEY_SIZE, n=self._scrypt_n, r=self._scrypt_r, p=self._scrypt_p)
        return kdf.derive(password.encode("utf-8"))

    def _encrypt(self, plaintext: bytes, password: str) -> EncryptedBlob:
        if not password:
            raise StorageError("an empty password cannot protect the note store")
        salt = secrets.token_bytes(_SALT_SIZE)
        iv = secrets.token_bytes(_IV_SIZE)
        key = self._derive_key(password, salt)
        data = AESGCM(key).encrypt(iv, plaintext, None)
        return EncryptedBlob(iv=iv.hex(), salt=salt.hex(), data=data.hex())

    def _decrypt(self, blob: EncryptedBlob, password: str) -> bytes:
        if blob.version != BLOB_VERSION:
            raise StorageError(f"unsupported note file version {blob.version}")
        try:
            iv = bytes.fromhex(blob.iv)
            salt = bytes.fromhex(blob.salt)
            data = bytes.fromhex(blob.data)
        except ValueError as exc:
            raise DecryptionError("note file is corrupted (bad hex encoding)") from exc
        if len(data) < _TAG_SIZE or len(iv) != _IV_SIZE:
            raise DecryptionError("note file is corrupted (truncated ciphertext)")

        key = self._derive_key(password, salt)
        try:
            return AESGCM(key).decrypt(iv, data, None)
        except InvalidTag as exc:
            raise DecryptionError("wrong password or corrupted note file") from exc

    def _read_blob(self, path: Path) -> EncryptedBlob:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"failed to read {path}: {exc}") from exc
        try:
            return EncryptedBlob.model_validate_json(text)
        except ValidationError as exc:
            raise DecryptionError(f"note file {path.name} is corrupted (not a valid blob)") from exc

    def _decrypt_notes(self, path: Path, password: str) -> list[Note]:
        plaintext = self._decrypt(self._read_blob(path), password)
        try:
            return _deserialize_notes(plaintext)
        except (ValueError, KeyError, TypeError) as exc:
            # Authenticated but unparseable means the writer was broken, not the password.
            raise StorageError(f"note file {path.name} decrypted to an invalid note set") from exc

    def _write_notes(self, path: Path, notes: list[Note], password: str) -> None:
        blob = self._encrypt(_serialize_notes(notes), password)
        _atomic_write(path, blob.model_dump_json().encode("utf-8"))

    # ── Public API ───────────────────────────────────────────────────────

    def save(self, notes: list[Note], password: str) -> None:
        """Encrypt and write the full note set, replacing the file as one unit."""
        with self._write_lock:
            self._write_notes(self.path, notes, password)
        logger.debug("Saved %d notes to %s", len(notes), self.path)

    def load(self, password: str) -> list[Note]:
        """Decrypt the note set. Returns ``[]`` only when no file exists yet."""
        if not self.path.exists():
            return []
        notes = self._decrypt_notes(self.path, password)
        logger.debug("Loaded %d notes from %s", len(notes), self.path)
        return notes

    def change_password(self, old_password: str, new_password: str) -> None:
        """Re-encrypt under a new key. Plaintext only ever lives in memory."""
        with self._write_lock:
            notes = self.load(old_password)
            self._write_notes(self.path, notes, new_password)
        logger.info("Note store password changed")

    def secure_delete(self) -> None:
        """Overwrite the file with random bytes, then zeros, then unlink it.

        Best effort: journaling filesystems and SSD remapping can keep copies.
        """
        with self._write_lock:
            if not self.path.exists():
                return
            size = self.path.stat().st_size
            try:
                with open(self.path, "r+b") as fh:
                    for filler in (secrets.token_bytes(size), bytes(size)):
                        fh.seek(0)
                        fh.write(filler)
                        fh.flush()
                        os.fsync(fh.fileno())
                self.path.unlink()
            except OSError as exc:
                raise StorageError(f"failed to securely delete {self.path}: {exc}") from exc
        logger.info("Note store securely deleted")

    def backup(self, destination: Path) -> Path:
        """Copy the encrypted file as-is. The copy stays encrypted."""
        if not self.path.exists():
            raise StorageError("no note file to back up")
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True, mode=_DIR_MODE)
        shutil.copyfile(self.path, destination)
        os.chmod(destination, _FILE_MODE)
        logger.info("Note store backed up to %s", destination)
        return destination

    def restore(self, source: Path, password: str) -> list[Note]:
        """Install a backup after proving it decrypts under ``password``."""
        source = Path(source)
        if not source.exists():
            raise StorageError(f"backup {source} does not exist")
        notes = self._decrypt_notes(source, password)
        with self._write_lock:
            _atomic_write(self.path, source.read_bytes())
        logger.info("Restored %d notes from %s", len(notes), source)
        return notes

    def export_encrypted(self, destination: Path, password: str, export_password: str) -> int:
        """Write the note set to ``destination`` under a separate export password."""
        notes = self.load(password)
        self._write_notes(Path(destination), notes, export_password)
        logger.info("Exported %d notes", len(notes))
        return len(notes)

    def import_encrypted(self, source: Path, password: str, import_password: str) -> int:
        """Merge notes from an exported file, skipping commitments already held.

        Returns the number of notes added.
        """
        incoming = self._decrypt_notes(Path(source), import_password)
        with self._write_lock:
            current = self.load(password)
            known = {note.commitment for note in current}
            added = [note for note in incoming if note.commitment not in known]
            if added:
                self._write_notes(self.path, current + added, password)
        logger.info("Imported %d new notes (%d skipped)", len(added), len(incoming) - len(added))
        return len(added)

    def unlock(self, password: str) -> UnlockedStore:
        """Bind a password to this store so the ledger can persist through it.

        The password is checked immediately when a file already exists.
        """
        self.load(password)
        return UnlockedStore(self, password)


class UnlockedStore:
    """An :class:`EncryptedStore` paired with its password for ledger use."""

    def __init__(self, store: EncryptedStore, password: str) -> None:
        self.store = store
        self._password = password

    def __repr__(self) -> str:
        return f"UnlockedStore(path={str(self.store.path)!r})"

    def save_notes(self, notes: list[Note]) -> None:
        self.store.save(notes, self._password)

    def load_notes(self) -> list[Note]:
        return self.store.load(self._password)


class InsecureDevStore:
    """Plaintext JSON note storage for local development only.

    Secrets are written unencrypted. This type must be chosen explicitly;
    nothing falls back to it.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._write_lock = threading.Lock()
        logger.warning("InsecureDevStore in use: note secrets at %s are NOT encrypted", self.path)

    def save_notes(self, notes: list[Note]) -> None:
        with self._write_lock:
            _atomic_write(self.path, _serialize_notes(notes))

    def load_notes(self) -> list[Note]:
        if not self.path.exists():
            return []
        try:
            return _deserialize_notes(self.path.read_bytes())
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise StorageError(f"unreadable development note file {self.path}: {exc}") from exc


def describe_store(store: Any) -> str:
    """Short label for log lines."""
    if isinstance(store, UnlockedStore):
        return f"encrypted:{store.store.path}"
    if isinstance(store, InsecureDevStore):
        return f"insecure:{store.path}"
    return type(store).__name__
