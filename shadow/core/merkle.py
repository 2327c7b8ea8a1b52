"""Append-only fixed-depth Merkle accumulator over note commitments.

The leaf sequence is the durable source of truth. Interior nodes are kept
per level and updated along one path per insert, so ``root()`` is O(1) and
``insert()`` is O(depth). Two accumulators fed the same leaves in the same
order always agree on the root.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
import tempfile
import threading
from pathlib import Path

from pydantic import BaseModel

from .commitment import field_from_hex, field_to_hex, hash_pair
from .errors import (
    CapacityExceededError,
    IndexOutOfRangeError,
    InvalidFieldElementError,
    StorageError,
)
from .logging import fingerprint

logger = logging.getLogger(__name__)

EMPTY_LEAF = 0


class MerkleProof(BaseModel):
    """Inclusion path for one leaf.

    ``path_indices[i]`` is 0 when the known node at level ``i`` is the left
    child (sibling on the right) and 1 when it is the right child.
    """

    leaf_index: int
    leaf: int
    root: int
    path_elements: list[int]
    path_indices: list[int]


class MerkleAccumulator:
    """Incremental Merkle tree with Poseidon hashing and zero-subtree defaults."""

    def __init__(self, depth: int = 20) -> None:
        if depth < 1 or depth > 32:
            raise ValueError(f"depth must be between 1 and 32, got {depth}")
        self.depth = depth
        self.capacity = 1 << depth
        self._zeros = self._compute_zeros(depth)
        # _levels[0] holds the leaves, _levels[depth] holds the root (once non-empty)
        self._levels: list[list[int]] = [[] for _ in range(depth + 1)]
        self._positions: dict[int, int] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _compute_zeros(depth: int) -> list[int]:
        zeros = [EMPTY_LEAF]
        for _ in range(depth):
            zeros.append(hash_pair(zeros[-1], zeros[-1]))
        return zeros

    # ── Queries ──────────────────────────────────────────────────────────

    @property
    def leaf_count(self) -> int:
        with self._lock:
            return len(self._levels[0])

    @property
    def is_full(self) -> bool:
        return self.leaf_count >= self.capacity

    def zero(self, level: int) -> int:
        return self._zeros[level]

    def root(self) -> int:
        with self._lock:
            if not self._levels[0]:
                return self._zeros[self.depth]
            return self._levels[self.depth][0]

    def leaf(self, index: int) -> int:
        with self._lock:
            self._check_index(index)
            return self._levels[0][index]

    def leaves(self) -> list[int]:
        with self._lock:
            return list(self._levels[0])

    def index_of(self, commitment: int) -> int | None:
        with self._lock:
            return self._positions.get(commitment)

    def proof(self, leaf_index: int) -> MerkleProof:
        with self._lock:
            self._check_index(leaf_index)
            elements: list[int] = []
            indices: list[int] = []
            idx = leaf_index
            for level in range(self.depth):
                nodes = self._levels[level]
                sibling = idx ^ 1
                elements.append(nodes[sibling] if sibling < len(nodes) else self._zeros[level])
                indices.append(idx & 1)
                idx >>= 1
            return MerkleProof(
                leaf_index=leaf_index,
                leaf=self._levels[0][leaf_index],
                root=self._levels[self.depth][0],
                path_elements=elements,
                path_indices=indices,
            )

    def _check_index(self, index: int) -> None:
        if index < 0 or index >= len(self._levels[0]):
            raise IndexOutOfRangeError(
                f"leaf index {index} is outside the {len(self._levels[0])} inserted leaves"
            )

    # ── Mutation ─────────────────────────────────────────────────────────

    def insert(self, commitment: int) -> int:
        """Append a commitment and return its leaf index."""
        with self._lock:
            index = len(self._levels[0])
            if index >= self.capacity:
                raise CapacityExceededError(
                    f"accumulator of depth {self.depth} is full ({self.capacity} leaves)"
                )
            # Compute the whole path before touching state so a failed hash
            # leaves the tree unchanged.
            updates: list[tuple[int, int, int]] = [(0, index, commitment)]
            node = commitment
            idx = index
            for level in range(self.depth):
                nodes = self._levels[level]
                if idx & 1:
                    node = hash_pair(nodes[idx - 1], node)
                else:
                    node = hash_pair(node, self._zeros[level])
                idx >>= 1
                updates.append((level + 1, idx, node))

            for level, position, value in updates:
                nodes = self._levels[level]
                if position == len(nodes):
                    nodes.append(value)
                else:
                    nodes[position] = value
            self._positions.setdefault(commitment, index)

        logger.debug("Inserted leaf %d (%s)", index, fingerprint(commitment))
        return index

    def sample_decoys(
        self,
        count: int,
        *,
        exclude: set[int] | None = None,
        recent_exclusion: int = 0,
    ) -> list[int]:
        """Draw up to ``count`` distinct leaves uniformly at random.

        Leaves in ``exclude`` and the ``recent_exclusion`` most recently
        inserted leaves are never returned. Fewer than ``count`` values come
        back when the eligible pool is smaller.
        """
        exclude = exclude or set()
        with self._lock:
            eligible_end = max(0, len(self._levels[0]) - recent_exclusion)
            pool = [leaf for leaf in self._levels[0][:eligible_end] if leaf not in exclude]
        pool = list(dict.fromkeys(pool))
        rng = secrets.SystemRandom()
        return rng.sample(pool, min(count, len(pool)))

    # ── Persistence ──────────────────────────────────────────────────────

    def save(self, path: Path) -> None:
        """Write the leaf sequence as JSON, atomically replacing ``path``."""
        with self._lock:
            payload = {
                "depth": self.depth,
                "leaves": [field_to_hex(leaf) for leaf in self._levels[0]],
            }
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, path)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise StorageError(f"failed to write accumulator to {path}: {exc}") from exc

    @classmethod
    def load(cls, path: Path, depth: int | None = None) -> MerkleAccumulator:
        """Rebuild an accumulator from a saved leaf sequence.

        A missing file yields an empty accumulator of ``depth``.
        """
        path = Path(path)
        if not path.exists():
            return cls(depth or 20)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            saved_depth = int(payload["depth"])
            leaves = [field_from_hex(text) for text in payload["leaves"]]
        except (OSError, ValueError, KeyError, TypeError, InvalidFieldElementError) as exc:
            raise StorageError(f"unreadable accumulator file {path}: {exc}") from exc
        if depth is not None and depth != saved_depth:
            raise StorageError(f"accumulator file has depth {saved_depth}, expected {depth}")

        tree = cls(saved_depth)
        for leaf in leaves:
            tree.insert(leaf)
        logger.info("Loaded accumulator with %d leaves from %s", len(leaves), path)
        return tree
