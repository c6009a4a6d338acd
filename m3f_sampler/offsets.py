"""
offsets.py
Gibbs updates for the topic-indexed offsets of the M3F model.

  c[u, i] : offset of user u for item-side topic i   (num_users × KM)
  d[j, k] : offset of item j for user-side topic k   (num_items × KU)

Both are resampled from their Gaussian full conditionals given the
residual ratings and the current topic assignments. One routine,
sample_offsets, is written from the user side; swapping the roles of
users and items gives the item side.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np

from config.settings import settings
from .dyadic import Adjacency, DyadicData, OffsetModel
from .rng import RngPool, get_default_pool
from . import validation

LOGGER = logging.getLogger(__name__)


# ─────────────────────────────────────────────
# Sufficient statistics + posterior
# ─────────────────────────────────────────────

def accumulate_topic_stats(
    examples: np.ndarray,
    buckets: np.ndarray,
    contributions: np.ndarray,
    sums: np.ndarray,
    counts: np.ndarray,
) -> None:
    """
    Overwrite sums / counts with one entity's per-topic statistics.

    examples      : interaction indices of the entity
    buckets       : zero-based topic slot of every interaction
    contributions : residual of every interaction, net of the other side's offset
    """
    sums.fill(0.0)
    counts.fill(0)
    slots = buckets[examples]
    np.add.at(sums, slots, contributions[examples])
    np.add.at(counts, slots, 1)


def posterior_params(
    sums: np.ndarray,
    counts: np.ndarray,
    inv_sigma_sqd: float,
    inv_sigma_sqd0: float,
    prior_mean: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Conjugate Gaussian update: prior N(prior_mean, 1/inv_sigma_sqd0) and
    counts[i] observations of precision inv_sigma_sqd summing to sums[i].
    Returns (mean, variance) per topic; empty topics get the prior back.
    """
    variance = 1.0 / (inv_sigma_sqd0 + counts * inv_sigma_sqd)
    mean = variance * (prior_mean * inv_sigma_sqd0 + sums * inv_sigma_sqd)
    return mean, variance


# ─────────────────────────────────────────────
# Worker scratch + blocks
# ─────────────────────────────────────────────

@contextmanager
def _scratch_buffers(width: int, k: int) -> Iterator[List[Tuple[np.ndarray, np.ndarray]]]:
    """One (sums, counts) pair per worker slot, dropped when the region exits."""
    buffers = [
        (np.zeros(k, dtype=np.float64), np.zeros(k, dtype=np.int64))
        for _ in range(width)
    ]
    try:
        yield buffers
    finally:
        buffers.clear()


def _block_bounds(n: int, width: int) -> np.ndarray:
    return np.linspace(0, n, width + 1).astype(np.int64)


def _sample_block(
    start: int,
    stop: int,
    adjacency: Adjacency,
    buckets: np.ndarray,
    contributions: np.ndarray,
    scratch: Tuple[np.ndarray, np.ndarray],
    rng,
    inv_sigma_sqd: float,
    inv_sigma_sqd0: float,
    prior_mean: float,
    primary_offsets: np.ndarray,
) -> None:
    sums, counts = scratch
    k = sums.shape[0]
    indptr, indices = adjacency.indptr, adjacency.indices

    for p in range(start, stop):
        examples = indices[indptr[p]:indptr[p + 1]]
        accumulate_topic_stats(examples, buckets, contributions, sums, counts)

        mean, variance = posterior_params(sums, counts, inv_sigma_sqd, inv_sigma_sqd0, prior_mean)
        primary_offsets[p] = mean + np.sqrt(variance) * rng.standard_normal(k)


def _pool_width(rng_pool: RngPool, max_workers: Optional[int], num_primary: int) -> int:
    limit = max_workers if max_workers is not None else settings.MAX_THREADS
    return max(1, min(len(rng_pool), limit, num_primary))


# ─────────────────────────────────────────────
# Offset sampler (one side)
# ─────────────────────────────────────────────

def _validate_side(
    primary_ids,
    secondary_ids,
    adjacency: Adjacency,
    k_primary: int,
    k_secondary: int,
    num_primary: int,
    inv_sigma_sqd: float,
    inv_sigma_sqd0: float,
    primary_offsets: np.ndarray,
    secondary_offsets: Optional[np.ndarray],
    z_primary,
    z_secondary,
    resids,
) -> Tuple[np.ndarray, np.ndarray, Optional[np.ndarray], np.ndarray, np.ndarray]:
    """
    Check every input of one side before anything is written.
    Returns (primary_ids, secondary_ids, z_primary, z_secondary, resids)
    as arrays; z_primary is None when k_secondary is 0.
    """
    primary_ids = np.asarray(primary_ids)
    secondary_ids = np.asarray(secondary_ids)
    z_secondary = np.asarray(z_secondary)
    resids = np.asarray(resids, dtype=np.float64)
    n = resids.shape[0] if resids.ndim == 1 else -1

    validation.check_length("resids", resids, n)
    validation.check_length("primary ids", primary_ids, n)
    validation.check_length("secondary ids", secondary_ids, n)
    validation.check_length("secondary topics", z_secondary, n)
    validation.check_positive("inv_sigma_sqd", inv_sigma_sqd)
    validation.check_positive("inv_sigma_sqd0", inv_sigma_sqd0)
    validation.check_offsets("primary offsets", primary_offsets, num_primary, k_primary, writable=True)
    validation.check_entity_ids("primary", primary_ids, num_primary)
    validation.check_topics("secondary topic", z_secondary, k_primary)
    validation.check_adjacency("adjacency", adjacency, primary_ids, num_primary)

    if k_secondary > 0:
        z_primary = np.asarray(z_primary)
        num_secondary = secondary_offsets.shape[0] if np.ndim(secondary_offsets) == 2 else -1
        validation.check_length("primary topics", z_primary, n)
        validation.check_offsets("secondary offsets", secondary_offsets, num_secondary, k_secondary)
        validation.check_entity_ids("secondary", secondary_ids, num_secondary)
        validation.check_topics("primary topic", z_primary, k_secondary)
    else:
        z_primary = None

    return primary_ids, secondary_ids, z_primary, z_secondary, resids


def sample_offsets(
    primary_ids,
    secondary_ids,
    adjacency: Adjacency,
    k_primary: int,
    k_secondary: int,
    num_primary: int,
    inv_sigma_sqd: float,
    inv_sigma_sqd0: float,
    prior_mean: float,
    primary_offsets: np.ndarray,
    secondary_offsets: Optional[np.ndarray],
    z_primary,
    z_secondary,
    resids,
    rng_pool: Optional[RngPool] = None,
    max_workers: Optional[int] = None,
) -> None:
    """
    Resample primary_offsets (num_primary × k_primary) in place.

    Written from the user side: primary = users, secondary = items,
    primary_offsets = c, secondary_offsets = d, z_primary = zU,
    z_secondary = zM. Each interaction lands in the bucket of its
    *secondary* topic, and the secondary offset it is corrected by is
    read at its *primary* topic: secondary_offsets[item, zU].

    Entity ids and topic ids are one-based. A k_primary of 0 is a no-op
    and primary_offsets is not touched.
    """
    if k_primary == 0:
        LOGGER.debug("k_primary is 0; nothing to sample")
        return

    # nothing below this call may raise on valid input
    primary_ids, secondary_ids, z_primary, z_secondary, resids = _validate_side(
        primary_ids, secondary_ids, adjacency, k_primary, k_secondary, num_primary,
        inv_sigma_sqd, inv_sigma_sqd0, primary_offsets, secondary_offsets,
        z_primary, z_secondary, resids,
    )

    buckets = z_secondary.astype(np.int64) - 1

    if k_secondary > 0:
        contributions = resids - secondary_offsets[
            secondary_ids.astype(np.int64) - 1, z_primary.astype(np.int64) - 1
        ]
    else:
        contributions = resids

    if num_primary == 0:
        return

    if rng_pool is None:
        rng_pool = get_default_pool()

    width = _pool_width(rng_pool, max_workers, num_primary)
    bounds = _block_bounds(num_primary, width)
    LOGGER.debug(
        "Sampling %d × %d offsets on %d worker(s)", num_primary, k_primary, width
    )

    with _scratch_buffers(width, k_primary) as scratch, ThreadPoolExecutor(
        max_workers=width, thread_name_prefix="m3f-offsets"
    ) as executor:
        futures = [
            executor.submit(
                _sample_block,
                int(bounds[w]),
                int(bounds[w + 1]),
                adjacency,
                buckets,
                contributions,
                scratch[w],
                rng_pool[w],
                inv_sigma_sqd,
                inv_sigma_sqd0,
                prior_mean,
                primary_offsets,
            )
            for w in range(width)
        ]
        for future in futures:
            future.result()


# ─────────────────────────────────────────────
# Driver (user side, then item side)
# ─────────────────────────────────────────────

def update_offsets(
    users,
    items,
    examples_by_user: Adjacency,
    examples_by_item: Adjacency,
    KU: int,
    KM: int,
    num_users: int,
    num_items: int,
    sigma_sqd: float,
    sigma_sqd0: float,
    c0: float,
    d0: float,
    c: np.ndarray,
    d: np.ndarray,
    zU,
    zM,
    resids,
    sample_user_params: bool = True,
    sample_item_params: bool = True,
    rng_pool: Optional[RngPool] = None,
    max_workers: Optional[int] = None,
) -> None:
    """
    One offset sweep: c given d, then d given the new c.

    c is resampled when KM > 0 and sample_user_params; d when KU > 0 and
    sample_item_params. A skipped side is left exactly as it was.
    """
    validation.check_positive("sigma_sqd", sigma_sqd)
    validation.check_positive("sigma_sqd0", sigma_sqd0)
    inv_sigma_sqd = 1.0 / sigma_sqd
    inv_sigma_sqd0 = 1.0 / sigma_sqd0

    run_users = KM > 0 and sample_user_params
    run_items = KU > 0 and sample_item_params
    LOGGER.info("Running offset update (c: %s, d: %s)", run_users, run_items)

    # Both sides are checked before c is written
    if run_users:
        _validate_side(
            users, items, examples_by_user, KM, KU, num_users,
            inv_sigma_sqd, inv_sigma_sqd0, c, d, zU, zM, resids,
        )
    if run_items:
        _validate_side(
            items, users, examples_by_item, KU, KM, num_items,
            inv_sigma_sqd, inv_sigma_sqd0, d, c, zM, zU, resids,
        )

    if run_users:
        sample_offsets(
            users, items, examples_by_user, KM, KU, num_users,
            inv_sigma_sqd, inv_sigma_sqd0, c0, c, d, zU, zM, resids,
            rng_pool=rng_pool, max_workers=max_workers,
        )

    if run_items:
        sample_offsets(
            items, users, examples_by_item, KU, KM, num_items,
            inv_sigma_sqd, inv_sigma_sqd0, d0, d, c, zM, zU, resids,
            rng_pool=rng_pool, max_workers=max_workers,
        )


def run_offset_update(
    data: DyadicData,
    model: OffsetModel,
    samp,
    zU,
    zM,
    resids,
    sample_user_params: bool = True,
    sample_item_params: bool = True,
    sample_params: Optional[Sequence[bool]] = None,
    rng_pool: Optional[RngPool] = None,
    max_workers: Optional[int] = None,
) -> None:
    """
    Resample samp.c and samp.d in place.

    sample_params, when given, is a (sample_user, sample_item) pair and
    overrides the two flags.
    """
    if sample_params is not None:
        if len(sample_params) != 2:
            raise validation.ContractViolation(
                f"sample_params must hold (sample_user, sample_item), got {sample_params!r}"
            )
        sample_user_params, sample_item_params = (bool(x) for x in sample_params)

    update_offsets(
        data.users,
        data.items,
        data.examples_by_user,
        data.examples_by_item,
        model.KU,
        model.KM,
        model.num_users,
        model.num_items,
        model.sigma_sqd,
        model.sigma_sqd0,
        model.c0,
        model.d0,
        samp.c,
        samp.d,
        zU,
        zM,
        resids,
        sample_user_params=sample_user_params,
        sample_item_params=sample_item_params,
        rng_pool=rng_pool,
        max_workers=max_workers,
    )


__all__ = [
    "accumulate_topic_stats",
    "posterior_params",
    "sample_offsets",
    "update_offsets",
    "run_offset_update",
]
