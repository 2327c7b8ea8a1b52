"""Core configuration for the Shadow privacy engine.

Settings are read once at process start through :func:`load_settings` and
the resulting object is handed to every component constructor. Nothing in
the engine looks configuration up on its own.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ShadowSettings(BaseSettings):
    """Engine settings loaded from ``SHADOW_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SHADOW_",
        case_sensitive=False,
    )

    # ── App ──────────────────────────────────────────────────────────────
    app_name: str = "Shadow Relayer"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    # ── Protocol ─────────────────────────────────────────────────────────
    merkle_tree_depth: int = Field(default=20, ge=1, le=32)
    ring_size: int = Field(default=11, ge=1)
    max_ring_size: int = 16
    decoy_recent_exclusion: int = Field(default=0, ge=0)
    denomination: int = 1_000_000_000  # 1 SOL in lamports

    # ── Note storage ─────────────────────────────────────────────────────
    data_dir: Path = Path("./data")
    notes_filename: str = "notes.enc"
    tree_filename: str = "merkle_tree.json"
    scrypt_n: int = 2**14
    scrypt_r: int = 8
    scrypt_p: int = 1

    # ── Spends ───────────────────────────────────────────────────────────
    spend_ticket_ttl_seconds: float = 600.0
    proof_timeout_seconds: float = 120.0

    # ── External prover ──────────────────────────────────────────────────
    prover_command: str = "snarkjs"
    circuits_dir: Path = Path("./circuits/build")

    # ── Host ledger RPC ──────────────────────────────────────────────────
    rpc_url: str = "https://api.devnet.solana.com"
    program_id: str = "x6ofF4ZJFtXd7BTGV8UB6TBYkE2Vwx7WMmuQCvJKLUV"
    commitment_level: Literal["processed", "confirmed", "finalized"] = "confirmed"
    rpc_timeout_seconds: float = 30.0
    confirmation_timeout_seconds: float = 60.0
    max_transaction_retries: int = 3

    # ── Relayer ──────────────────────────────────────────────────────────
    relayer_url: str = "http://localhost:3000"
    relayer_keypair_path: Path | None = None
    relayer_max_requests_per_minute: int = 5
    relayer_window_seconds: float = 60.0
    relayer_max_instruction_bytes: int = 10_000
    relayer_min_balance: int = 10_000_000  # 0.01 SOL
    relayer_fee: int = 1_000_000  # 0.001 SOL
    relayer_max_amount: int = 1_000 * 1_000_000_000
    relayer_timeout_seconds: float = 30.0
    max_request_body_bytes: int = 64 * 1024

    @field_validator("scrypt_n")
    @classmethod
    def _scrypt_n_power_of_two(cls, value: int) -> int:
        if value < 2 or value & (value - 1):
            raise ValueError("scrypt_n must be a power of two greater than 1")
        return value

    @field_validator("max_ring_size")
    @classmethod
    def _ring_bounds(cls, value: int) -> int:
        if value < 1 or value > 16:
            raise ValueError("max_ring_size must be between 1 and 16")
        return value

    @model_validator(mode="after")
    def _check_limits(self) -> ShadowSettings:
        if self.ring_size > self.max_ring_size:
            raise ValueError(
                f"ring_size {self.ring_size} exceeds max_ring_size {self.max_ring_size}"
            )
        # A ticket must outlive the slowest spend: proving plus every submit attempt.
        longest_spend = self.proof_timeout_seconds + self.confirmation_timeout_seconds * (
            self.max_transaction_retries + 1
        )
        if self.spend_ticket_ttl_seconds <= longest_spend:
            raise ValueError(
                f"spend_ticket_ttl_seconds {self.spend_ticket_ttl_seconds:.0f} must exceed "
                f"the longest spend ({longest_spend:.0f}s)"
            )
        return self

    @property
    def notes_path(self) -> Path:
        return self.data_dir / self.notes_filename

    @property
    def tree_path(self) -> Path:
        return self.data_dir / self.tree_filename


def load_settings(**overrides) -> ShadowSettings:
    """Build the settings value for this process.

    Keyword overrides take precedence over the environment and ``.env``.
    """
    return ShadowSettings(**overrides)
