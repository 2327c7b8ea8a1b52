"""Shared fixtures for the Shadow engine test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from shadow.core.config import ShadowSettings, load_settings
from shadow.core.ledger import NoteLedger
from shadow.core.merkle import MerkleAccumulator
from shadow.core.signer import LocalKeypairSigner
from shadow.pipeline.orchestrator import ProofOrchestrator
from shadow.tests.fakes import FakeClock, FakeLedgerClient, FakeProver

TEST_DEPTH = 8


@pytest.fixture
def settings(tmp_path: Path) -> ShadowSettings:
    """Small tree, cheap KDF, short timeouts."""
    return load_settings(
        data_dir=tmp_path,
        merkle_tree_depth=TEST_DEPTH,
        ring_size=4,
        scrypt_n=2**4,
        spend_ticket_ttl_seconds=30.0,
        proof_timeout_seconds=2.0,
        confirmation_timeout_seconds=5.0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def accumulator(settings: ShadowSettings) -> MerkleAccumulator:
    return MerkleAccumulator(settings.merkle_tree_depth)


@pytest.fixture
def ledger(settings: ShadowSettings, accumulator: MerkleAccumulator, clock: FakeClock) -> NoteLedger:
    return NoteLedger(settings, accumulator, clock=clock)


@pytest.fixture
def prover() -> FakeProver:
    return FakeProver()


@pytest.fixture
def orchestrator(settings, ledger, accumulator, prover) -> ProofOrchestrator:
    return ProofOrchestrator(settings, ledger, accumulator, prover)


@pytest.fixture
def ledger_client() -> FakeLedgerClient:
    return FakeLedgerClient()


@pytest.fixture
def signer() -> LocalKeypairSigner:
    return LocalKeypairSigner.from_seed(b"\x07" * 32)


@pytest.fixture
def confirmed_note(ledger: NoteLedger):
    """A 100-unit note owned by alice, confirmed at leaf 0."""
    note = ledger.create_note(100, "alice")
    return ledger.confirm_note(note.commitment, "deposit-sig")
