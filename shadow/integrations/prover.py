"""External Groth16 prover adapter.

The circuits and the proving math live outside this package. This module
hands circuit inputs to ``snarkjs groth16 fullprove`` and turns its JSON
proof into the 256-byte layout the on-chain verifier reads.
"""

from __future__ import annotations

import asyncio
import json
import logging
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Any, Protocol

from shadow.core.config import ShadowSettings
from shadow.core.errors import ProofError, ProofTimeoutError
from shadow.core.types import CircuitName, ProofResult

logger = logging.getLogger(__name__)

GROTH16_PROOF_SIZE = 256
_COORD_SIZE = 32


class Prover(Protocol):
    async def prove(self, circuit: CircuitName, inputs: dict[str, Any]) -> ProofResult: ...


def _coord(value: str | int) -> bytes:
    number = int(value)
    if number < 0 or number >= 1 << (8 * _COORD_SIZE):
        raise ProofError(f"proof coordinate out of range: {str(value)[:16]}")
    return number.to_bytes(_COORD_SIZE, "big")


def serialize_groth16_proof(proof: dict[str, Any]) -> bytes:
    """Pack a snarkjs proof as a.x|a.y|b.x.c1|b.x.c0|b.y.c1|b.y.c0|c.x|c.y."""
    try:
        a = proof["pi_a"]
        b = proof["pi_b"]
        c = proof["pi_c"]
        parts = [
            _coord(a[0]),
            _coord(a[1]),
            _coord(b[0][1]),
            _coord(b[0][0]),
            _coord(b[1][1]),
            _coord(b[1][0]),
            _coord(c[0]),
            _coord(c[1]),
        ]
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        raise ProofError(f"malformed groth16 proof: {exc}") from exc
    return b"".join(parts)


class SnarkjsProver:
    """Runs ``snarkjs groth16 fullprove`` in a worker thread.

    Artifacts are expected at ``<circuits_dir>/<circuit>.wasm`` and
    ``<circuits_dir>/<circuit>_final.zkey``.
    """

    def __init__(
        self,
        circuits_dir: Path,
        *,
        command: str = "snarkjs",
        timeout: float = 120.0,
    ) -> None:
        self.circuits_dir = Path(circuits_dir)
        self.command = command
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: ShadowSettings) -> SnarkjsProver:
        return cls(
            settings.circuits_dir,
            command=settings.prover_command,
            timeout=settings.proof_timeout_seconds,
        )

    def artifacts(self, circuit: CircuitName) -> tuple[Path, Path]:
        name = CircuitName(circuit).value
        return self.circuits_dir / f"{name}.wasm", self.circuits_dir / f"{name}_final.zkey"

    async def prove(self, circuit: CircuitName, inputs: dict[str, Any]) -> ProofResult:
        circuit = CircuitName(circuit)
        wasm, zkey = self.artifacts(circuit)
        for artifact in (wasm, zkey):
            if not artifact.exists():
                raise ProofError(f"missing {circuit.value} circuit artifact {artifact.name}")

        with tempfile.TemporaryDirectory(prefix="shadow-proof-") as workdir:
            work = Path(workdir)
            input_path = work / "input.json"
            proof_path = work / "proof.json"
            public_path = work / "public.json"
            input_path.write_text(json.dumps(inputs), encoding="utf-8")

            cmd = [
                self.command, "groth16", "fullprove",
                str(input_path), str(wasm), str(zkey),
                str(proof_path), str(public_path),
            ]
            start = time.time()
            try:
                result = await asyncio.to_thread(
                    subprocess.run,
                    cmd,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                )
            except subprocess.TimeoutExpired as exc:
                raise ProofTimeoutError(f"{circuit.value} proof exceeded {self.timeout:.0f}s") from exc
            except FileNotFoundError as exc:
                raise ProofError(f"prover command {self.command!r} not found") from exc

            elapsed_ms = (time.time() - start) * 1000
            if result.returncode != 0:
                reason = (result.stderr or result.stdout).strip().splitlines()
                raise ProofError(
                    f"{circuit.value} prover exited with {result.returncode}: "
                    f"{reason[-1] if reason else 'no output'}"
                )

            try:
                proof_json = json.loads(proof_path.read_text(encoding="utf-8"))
                public_signals = [str(s) for s in json.loads(public_path.read_text(encoding="utf-8"))]
            except (OSError, ValueError) as exc:
                raise ProofError(f"prover produced unreadable output: {exc}") from exc

        logger.info("Generated %s proof in %.0fms", circuit.value, elapsed_ms, extra={"duration_ms": elapsed_ms})
        return ProofResult(
            circuit=circuit,
            proof=serialize_groth16_proof(proof_json),
            public_signals=public_signals,
            raw=proof_json,
        )
