"""
dyadic.py
Dyadic (user, item) interaction structures consumed by the offset sampler.

  • Adjacency: CSR view of entity → interaction indices
  • DyadicData: parallel interaction arrays plus both adjacency views
  • OffsetModel: immutable hyperparameters (topic counts, variances, prior means)
  • OffsetSample: the mutable c / d offset matrices of the current Gibbs sample
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Sequence, Tuple

import numpy as np
import scipy.sparse as sp
from pydantic import BaseModel, ConfigDict, Field

from .validation import check_entity_ids

LOGGER = logging.getLogger(__name__)

ID_DTYPE = np.int64
INDEX_DTYPE = np.int64


# ─────────────────────────────────────────────
# Adjacency (CSR)
# ─────────────────────────────────────────────

@dataclass
class Adjacency:
    """
    Entity → interaction lists in CSR form.

    The interactions of zero-based entity p are
    indices[indptr[p]:indptr[p + 1]] (zero-based interaction indices).
    """

    indptr: np.ndarray
    indices: np.ndarray

    @property
    def num_entities(self) -> int:
        return int(self.indptr.shape[0]) - 1

    def lengths(self) -> np.ndarray:
        return np.diff(self.indptr)

    def examples(self, entity: int) -> np.ndarray:
        return self.indices[self.indptr[entity]:self.indptr[entity + 1]]

    @classmethod
    def from_ids(cls, ids, num_entities: int) -> "Adjacency":
        """Group interactions by their one-based owner id."""
        ids = np.asarray(ids, dtype=ID_DTYPE)
        n = ids.shape[0]
        check_entity_ids("owner", ids, num_entities)

        mat = sp.coo_matrix(
            (np.ones(n, dtype=np.int8), (ids - 1, np.arange(n))),
            shape=(num_entities, n),
        ).tocsr()
        mat.sort_indices()

        return cls(
            indptr=mat.indptr.astype(INDEX_DTYPE),
            indices=mat.indices.astype(INDEX_DTYPE),
        )

    @classmethod
    def from_lists(cls, lists: Sequence[Sequence[int]], one_based: bool = False) -> "Adjacency":
        """
        Pack a jagged list-of-lists into CSR.
        one_based=True for lists that store one-based interaction indices.
        """
        lengths = np.fromiter((len(x) for x in lists), dtype=INDEX_DTYPE, count=len(lists))
        indptr = np.zeros(len(lists) + 1, dtype=INDEX_DTYPE)
        np.cumsum(lengths, out=indptr[1:])

        if indptr[-1] > 0:
            indices = np.concatenate([np.asarray(x, dtype=INDEX_DTYPE) for x in lists if len(x)])
        else:
            indices = np.zeros(0, dtype=INDEX_DTYPE)

        if one_based:
            indices = indices - 1

        return cls(indptr=indptr, indices=indices)


# ─────────────────────────────────────────────
# Interaction data
# ─────────────────────────────────────────────

@dataclass
class DyadicData:
    users: np.ndarray
    items: np.ndarray
    examples_by_user: Adjacency
    examples_by_item: Adjacency

    @property
    def num_interactions(self) -> int:
        return int(self.users.shape[0])

    @classmethod
    def from_arrays(cls, users, items, num_users: int, num_items: int) -> "DyadicData":
        """Build both adjacency views from one-based user / item id columns."""
        users = np.asarray(users, dtype=ID_DTYPE)
        items = np.asarray(items, dtype=ID_DTYPE)

        return cls(
            users=users,
            items=items,
            examples_by_user=Adjacency.from_ids(users, num_users),
            examples_by_item=Adjacency.from_ids(items, num_items),
        )

    @classmethod
    def from_frame(
        cls,
        df,
        user_col: str = "user_id",
        item_col: str = "item_id",
    ) -> Tuple["DyadicData", Dict, Dict]:
        """
        Build DyadicData from an interaction table with raw ids.
        Returns (data, u_codes, i_codes) where the code maps send a raw
        id to its one-based entity id.
        """
        if df.empty:
            raise RuntimeError("Interactions are empty.")

        # map ids
        u_codes = {u: i + 1 for i, u in enumerate(df[user_col].unique())}
        i_codes = {t: i + 1 for i, t in enumerate(df[item_col].unique())}

        users = df[user_col].map(u_codes).to_numpy(dtype=ID_DTYPE)
        items = df[item_col].map(i_codes).to_numpy(dtype=ID_DTYPE)

        LOGGER.info(
            "Dyadic data: %d interactions, %d users, %d items",
            len(df), len(u_codes), len(i_codes),
        )
        data = cls.from_arrays(users, items, len(u_codes), len(i_codes))
        return data, u_codes, i_codes


# ─────────────────────────────────────────────
# Hyperparameters + sample state
# ─────────────────────────────────────────────

class OffsetModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    KU: int = Field(ge=0)            # user-side topics
    KM: int = Field(ge=0)            # item-side topics
    num_users: int = Field(ge=0)
    num_items: int = Field(ge=0)
    sigma_sqd: float = Field(gt=0)   # observation noise variance
    sigma_sqd0: float = Field(gt=0)  # prior variance on offsets
    c0: float = 0.0                  # prior mean of c
    d0: float = 0.0                  # prior mean of d

    @property
    def inv_sigma_sqd(self) -> float:
        return 1.0 / self.sigma_sqd

    @property
    def inv_sigma_sqd0(self) -> float:
        return 1.0 / self.sigma_sqd0


@dataclass
class OffsetSample:
    """c: num_users × KM user offsets, d: num_items × KU item offsets."""

    c: np.ndarray
    d: np.ndarray

    @classmethod
    def prior(cls, model: OffsetModel) -> "OffsetSample":
        return cls(
            c=np.full((model.num_users, model.KM), model.c0, dtype=np.float64),
            d=np.full((model.num_items, model.KU), model.d0, dtype=np.float64),
        )


__all__ = [
    "Adjacency",
    "DyadicData",
    "OffsetModel",
    "OffsetSample",
]
