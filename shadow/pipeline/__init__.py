"""Proof orchestration and pool-level deposit, withdraw and transfer flows."""

from shadow.pipeline.orchestrator import (
    CIRCUIT_LAYOUTS,
    BalanceCircuitInputs,
    CircuitInputs,
    ProofOrchestrator,
    RingCircuitInputs,
    TransferCircuitInputs,
)
from shadow.pipeline.pool import BalanceProof, ShieldedPool

__all__ = [
    "CIRCUIT_LAYOUTS",
    "BalanceCircuitInputs",
    "BalanceProof",
    "CircuitInputs",
    "ProofOrchestrator",
    "RingCircuitInputs",
    "ShieldedPool",
    "TransferCircuitInputs",
]
