"""
rng.py
Per-worker random number generators for the offset sampler.

Each worker slot draws from its own generator, so no generator is ever
shared between threads. A pool built from the same seed and size yields
the same streams, which makes a whole sampling call reproducible.
"""

from __future__ import annotations

import logging
import threading
from typing import List, Optional, Sequence

import numpy as np

from config.settings import settings

LOGGER = logging.getLogger(__name__)


class RngPool:
    """Fixed-size collection of independent standard-normal generators."""

    def __init__(self, size: int, seed: Optional[int] = None):
        if size < 1:
            raise ValueError(f"RngPool needs at least one generator, got size={size}")

        self.seed = seed
        children = np.random.SeedSequence(seed).spawn(size)
        self._generators: List = [np.random.default_rng(s) for s in children]

    @classmethod
    def from_generators(cls, generators: Sequence) -> "RngPool":
        """
        Wrap existing generators. Anything with a standard_normal(size)
        method works, which lets tests pin the draws.
        """
        if not generators:
            raise ValueError("RngPool needs at least one generator")

        pool = cls.__new__(cls)
        pool.seed = None
        pool._generators = list(generators)
        return pool

    def __len__(self) -> int:
        return len(self._generators)

    def __getitem__(self, slot: int):
        return self._generators[slot]

    def __repr__(self) -> str:
        return f"RngPool(size={len(self)}, seed={self.seed})"


# ─────────────────────────────────────────────
# Process-wide default pool
# ─────────────────────────────────────────────

_DEFAULT_POOL: Optional[RngPool] = None
_DEFAULT_POOL_LOCK = threading.Lock()


def get_default_pool() -> RngPool:
    """Pool used when a caller passes none; created on first use."""
    global _DEFAULT_POOL
    if _DEFAULT_POOL is None:
        with _DEFAULT_POOL_LOCK:
            if _DEFAULT_POOL is None:
                _DEFAULT_POOL = RngPool(settings.MAX_THREADS, seed=settings.SEED)
                LOGGER.debug("Created default %r", _DEFAULT_POOL)
    return _DEFAULT_POOL


def reset_default_pool() -> None:
    global _DEFAULT_POOL
    with _DEFAULT_POOL_LOCK:
        _DEFAULT_POOL = None


__all__ = [
    "RngPool",
    "get_default_pool",
    "reset_default_pool",
]
