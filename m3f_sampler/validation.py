"""
validation.py
Entry checks for the offset sampler.

Every check here runs before the sampler writes a single value, so a
caller that violates the contract gets a descriptive exception and an
untouched offset matrix instead of silently corrupted state.
"""

from __future__ import annotations

import numpy as np

# ─────────────────────────────────────────────
# CUSTOM EXCEPTIONS
# ─────────────────────────────────────────────

class ContractViolation(ValueError):
    """Raised when the inputs of a sampling call break its contract."""
    pass

class ShapeError(ContractViolation):
    """Raised when array lengths or offset matrix shapes disagree."""
    pass

class TopicIndexError(ContractViolation):
    """Raised when a one-based topic id falls outside [1, K]."""
    pass

class AdjacencyError(ContractViolation):
    """Raised when an adjacency list or entity id does not match the interaction set."""
    pass


# ─────────────────────────────────────────────
# CHECKS
# ─────────────────────────────────────────────

def check_length(name: str, arr: np.ndarray, expected: int) -> None:
    if arr.ndim != 1 or arr.shape[0] != expected:
        raise ShapeError(
            f"{name} must be a flat array of length {expected}, got shape {arr.shape}"
        )


def check_offsets(name: str, offsets, rows: int, cols: int, writable: bool = False) -> None:
    if not isinstance(offsets, np.ndarray):
        raise ShapeError(f"{name} must be a numpy array, got {type(offsets).__name__}")

    if offsets.shape != (rows, cols):
        raise ShapeError(f"{name} must have shape ({rows}, {cols}), got {offsets.shape}")

    if writable:
        if not np.issubdtype(offsets.dtype, np.floating):
            raise ShapeError(f"{name} must hold floats to be sampled in place, got {offsets.dtype}")
        if not offsets.flags.writeable:
            raise ShapeError(f"{name} is read-only and cannot be sampled in place")


def _is_integer_valued(arr: np.ndarray) -> bool:
    if np.issubdtype(arr.dtype, np.integer):
        return True
    if np.issubdtype(arr.dtype, np.floating):
        return bool(np.all(np.isfinite(arr)) and np.all(arr == np.floor(arr)))
    return False


def check_topics(name: str, topics: np.ndarray, k: int) -> None:
    if topics.size == 0:
        return
    if not _is_integer_valued(topics):
        raise TopicIndexError(f"{name} ids must be whole numbers, got dtype {topics.dtype}")
    lo, hi = int(topics.min()), int(topics.max())
    if lo < 1 or hi > k:
        raise TopicIndexError(f"{name} ids must lie in [1, {k}], found range [{lo}, {hi}]")


def check_entity_ids(name: str, ids: np.ndarray, num_entities: int) -> None:
    if ids.size == 0:
        return
    if not _is_integer_valued(ids):
        raise AdjacencyError(f"{name} ids must be whole numbers, got dtype {ids.dtype}")
    lo, hi = int(ids.min()), int(ids.max())
    if lo < 1 or hi > num_entities:
        raise AdjacencyError(
            f"{name} ids must lie in [1, {num_entities}], found range [{lo}, {hi}]"
        )


def check_positive(name: str, value: float) -> None:
    if not np.isfinite(value) or value <= 0:
        raise ContractViolation(f"{name} must be a positive finite number, got {value}")


def check_adjacency(name: str, adjacency, owner_ids: np.ndarray, num_entities: int) -> None:
    """
    Verify a CSR adjacency against the id column it was built from:
        - indptr has num_entities + 1 non-decreasing entries from 0
        - every interaction index appears exactly once
        - each index sits in the row of its own (one-based) owner id
    """
    indptr = adjacency.indptr
    indices = adjacency.indices
    num_interactions = owner_ids.shape[0]

    if indptr.ndim != 1 or indptr.shape[0] != num_entities + 1:
        raise AdjacencyError(
            f"{name} must cover {num_entities} entities, got indptr of shape {indptr.shape}"
        )
    if indptr[0] != 0 or indptr[-1] != indices.shape[0] or np.any(np.diff(indptr) < 0):
        raise AdjacencyError(f"{name} has a malformed indptr")

    if indices.shape[0] != num_interactions:
        raise AdjacencyError(
            f"{name} lists {indices.shape[0]} interactions, expected {num_interactions}"
        )
    if num_interactions == 0:
        return

    if int(indices.min()) < 0 or int(indices.max()) >= num_interactions:
        raise AdjacencyError(
            f"{name} indices must lie in [0, {num_interactions}), "
            f"found range [{int(indices.min())}, {int(indices.max())}]"
        )

    seen = np.bincount(indices, minlength=num_interactions)
    if np.any(seen != 1):
        bad = int(np.flatnonzero(seen != 1)[0])
        raise AdjacencyError(f"{name} lists interaction {bad} {int(seen[bad])} times")

    rows = np.repeat(np.arange(num_entities), np.diff(indptr))
    misfiled = np.flatnonzero(owner_ids[indices] - 1 != rows)
    if misfiled.size:
        j = int(misfiled[0])
        raise AdjacencyError(
            f"{name} files interaction {int(indices[j])} under entity {int(rows[j]) + 1}, "
            f"but it belongs to entity {int(owner_ids[indices[j]])}"
        )


__all__ = [
    "ContractViolation",
    "ShapeError",
    "TopicIndexError",
    "AdjacencyError",
    "check_length",
    "check_offsets",
    "check_topics",
    "check_entity_ids",
    "check_positive",
    "check_adjacency",
]
