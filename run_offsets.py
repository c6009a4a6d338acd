"""
run_offsets.py — Offset sweep runner

Steps:
1. Build a synthetic interaction table (user_id, item_id, rating)
2. Convert it to DyadicData (CSR adjacency for users and items)
3. Draw topic assignments and residuals
4. Run offset sweeps and log how c and d move
"""

import logging
import os
import sys

import numpy as np
import pandas as pd

from config.settings import settings
from m3f_sampler import DyadicData, OffsetModel, OffsetSample, RngPool, run_offset_update

# -------------------------
# Logging
# -------------------------
def configure_logging():
    log_dir = os.path.dirname(settings.LOG_FILE)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(settings.LOG_FILE),
            logging.StreamHandler(sys.stdout),
        ],
    )


# -------------------------
# Synthetic Data
# -------------------------
def build_interactions(num_users, num_items, num_ratings, rng):
    """Random (user, item, rating) table with raw string ids."""
    users = rng.integers(0, num_users, size=num_ratings)
    items = rng.integers(0, num_items, size=num_ratings)

    return pd.DataFrame({
        "user_id": [f"user_{u}" for u in users],
        "item_id": [f"item_{i}" for i in items],
        "rating": rng.normal(3.5, 1.0, size=num_ratings).clip(1.0, 5.0),
    })


# -------------------------
# Sweeps
# -------------------------
def main(
    num_users=200,
    num_items=100,
    num_ratings=5000,
    KU=2,
    KM=3,
    sweeps=5,
    seed=None,
):
    if seed is None:
        seed = settings.SEED
    rng = np.random.default_rng(seed)

    df = build_interactions(num_users, num_items, num_ratings, rng)
    data, u_codes, i_codes = DyadicData.from_frame(df)

    model = OffsetModel(
        KU=KU,
        KM=KM,
        num_users=len(u_codes),
        num_items=len(i_codes),
        sigma_sqd=0.5,
        sigma_sqd0=1.0,
        c0=0.0,
        d0=0.0,
    )
    samp = OffsetSample.prior(model)

    n = data.num_interactions
    zU = rng.integers(1, KU + 1, size=n) if KU else np.zeros(n, dtype=np.int64)
    zM = rng.integers(1, KM + 1, size=n) if KM else np.zeros(n, dtype=np.int64)
    resids = df["rating"].to_numpy() - df["rating"].mean()

    pool = RngPool(settings.MAX_THREADS, seed=seed)

    for sweep in range(sweeps):
        run_offset_update(data, model, samp, zU, zM, resids, rng_pool=pool)
        logging.info(
            "Sweep %d/%d | mean c: %.4f | mean d: %.4f",
            sweep + 1,
            sweeps,
            float(samp.c.mean()) if samp.c.size else 0.0,
            float(samp.d.mean()) if samp.d.size else 0.0,
        )

    return samp


if __name__ == "__main__":
    configure_logging()
    main()
