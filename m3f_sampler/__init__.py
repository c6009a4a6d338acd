"""Convenience exports for the M3F offset sampler package."""

from .dyadic import (
    Adjacency,
    DyadicData,
    OffsetModel,
    OffsetSample,
)
from .offsets import (
    accumulate_topic_stats,
    posterior_params,
    sample_offsets,
    update_offsets,
    run_offset_update,
)
from .rng import RngPool, get_default_pool, reset_default_pool
from .validation import (
    ContractViolation,
    ShapeError,
    TopicIndexError,
    AdjacencyError,
)

__all__ = [
    "Adjacency",
    "DyadicData",
    "OffsetModel",
    "OffsetSample",
    "accumulate_topic_stats",
    "posterior_params",
    "sample_offsets",
    "update_offsets",
    "run_offset_update",
    "RngPool",
    "get_default_pool",
    "reset_default_pool",
    "ContractViolation",
    "ShapeError",
    "TopicIndexError",
    "AdjacencyError",
]
