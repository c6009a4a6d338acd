import sys
from pathlib import Path

import pytest

np = pytest.importorskip("numpy")

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from m3f_sampler import offsets, validation
from m3f_sampler.dyadic import Adjacency, DyadicData, OffsetModel, OffsetSample
from m3f_sampler.rng import RngPool


class ConstantRng:
    """Stands in for a generator whose standard normal draws are pinned."""

    def __init__(self, value=0.0):
        self.value = value

    def standard_normal(self, size=None):
        return np.full(size, self.value)


def zero_pool(size=1):
    return RngPool.from_generators([ConstantRng(0.0) for _ in range(size)])


def make_problem(seed=0, num_users=6, num_items=5, n=40, KU=2, KM=3):
    rng = np.random.default_rng(seed)
    users = rng.integers(1, num_users + 1, size=n)
    items = rng.integers(1, num_items + 1, size=n)
    data = DyadicData.from_arrays(users, items, num_users, num_items)
    model = OffsetModel(
        KU=KU, KM=KM, num_users=num_users, num_items=num_items,
        sigma_sqd=0.5, sigma_sqd0=2.0, c0=0.25, d0=-0.5,
    )
    samp = OffsetSample(
        c=rng.normal(size=(num_users, KM)),
        d=rng.normal(size=(num_items, KU)),
    )
    zU = rng.integers(1, KU + 1, size=n)
    zM = rng.integers(1, KM + 1, size=n)
    resids = rng.normal(size=n)
    return data, model, samp, zU, zM, resids


def test_single_interaction_matches_closed_form_posterior():
    # one user, one item, zU = 2 selects d[0, 1] as the correction
    data = DyadicData.from_arrays([1], [1], 1, 1)
    c = np.zeros((1, 2))
    d = np.array([[0.3, -0.7]])
    inv_sigma_sqd, inv_sigma_sqd0, c0 = 2.0, 0.25, 1.0
    r = 2.0

    offsets.sample_offsets(
        data.users, data.items, data.examples_by_user,
        2, 2, 1, inv_sigma_sqd, inv_sigma_sqd0, c0,
        c, d, np.array([2]), np.array([1]), np.array([r]),
        rng_pool=zero_pool(),
    )

    expected = (c0 * inv_sigma_sqd0 + (r - (-0.7)) * inv_sigma_sqd) / (inv_sigma_sqd0 + inv_sigma_sqd)
    assert c[0, 0] == pytest.approx(expected)
    # topic 2 saw nothing → prior mean
    assert c[0, 1] == pytest.approx(c0)
    # d is only read
    assert d.tolist() == [[0.3, -0.7]]


def test_draw_is_scaled_by_posterior_standard_deviation():
    data = DyadicData.from_arrays([1], [1], 1, 1)
    c = np.zeros((1, 1))
    pool = RngPool.from_generators([ConstantRng(1.0)])

    offsets.sample_offsets(
        data.users, data.items, data.examples_by_user,
        1, 0, 1, 2.0, 0.25, 0.0,
        c, None, None, np.array([1]), np.array([3.0]),
        rng_pool=pool,
    )

    variance = 1.0 / (0.25 + 2.0)
    mean = variance * (3.0 * 2.0)
    assert c[0, 0] == pytest.approx(mean + np.sqrt(variance))


def test_no_secondary_topics_uses_raw_residuals():
    data = DyadicData.from_arrays([1, 1], [1, 2], 1, 2)
    c = np.zeros((1, 1))

    offsets.sample_offsets(
        data.users, data.items, data.examples_by_user,
        1, 0, 1, 1.0, 1.0, 0.0,
        c, None, None, np.array([1, 1]), np.array([1.0, 2.0]),
        rng_pool=zero_pool(),
    )

    assert c[0, 0] == pytest.approx(3.0 / 3.0)


def test_entities_without_interactions_draw_from_prior():
    num_users, KM = 3000, 2
    c0, sigma_sqd0 = 1.5, 0.25
    c = np.zeros((num_users, KM))
    empty = np.zeros(0, dtype=np.int64)

    offsets.sample_offsets(
        empty, empty, Adjacency.from_lists([[] for _ in range(num_users)]),
        KM, 0, num_users, 1.0, 1.0 / sigma_sqd0, c0,
        c, None, None, empty, np.zeros(0),
        rng_pool=RngPool(4, seed=7), max_workers=4,
    )

    draws = c.ravel()
    assert draws.mean() == pytest.approx(c0, abs=0.05)
    assert draws.var() == pytest.approx(sigma_sqd0, rel=0.1)


def test_fixed_seed_reproduces_offsets():
    data, model, samp, zU, zM, resids = make_problem(seed=3)
    first = OffsetSample(c=samp.c.copy(), d=samp.d.copy())
    second = OffsetSample(c=samp.c.copy(), d=samp.d.copy())

    offsets.run_offset_update(data, model, first, zU, zM, resids,
                              rng_pool=RngPool(3, seed=11), max_workers=3)
    offsets.run_offset_update(data, model, second, zU, zM, resids,
                              rng_pool=RngPool(3, seed=11), max_workers=3)

    assert np.array_equal(first.c, second.c)
    assert np.array_equal(first.d, second.d)

    other = OffsetSample(c=samp.c.copy(), d=samp.d.copy())
    offsets.run_offset_update(data, model, other, zU, zM, resids,
                              rng_pool=RngPool(3, seed=12), max_workers=3)
    assert not np.array_equal(first.c, other.c)


def test_zero_item_topics_never_touch_c():
    data, _, samp, zU, _, resids = make_problem(seed=1, KM=1)
    n = data.num_interactions

    # KM = 0: c is not even an array
    offsets.update_offsets(
        data.users, data.items, data.examples_by_user, data.examples_by_item,
        2, 0, 6, 5, 0.5, 2.0, 0.0, 0.0,
        None, samp.d, zU, np.zeros(n, dtype=np.int64), resids,
        rng_pool=zero_pool(),
    )

    offsets.sample_offsets(
        data.users, data.items, data.examples_by_user,
        0, 2, 6, 1.0, 1.0, 0.0,
        None, samp.d, zU, np.zeros(n, dtype=np.int64), resids,
    )


def test_disabled_user_side_leaves_c_byte_identical():
    data, model, samp, zU, zM, resids = make_problem(seed=5)
    c_before = samp.c.tobytes()
    d_before = samp.d.copy()

    offsets.run_offset_update(data, model, samp, zU, zM, resids,
                              sample_user_params=False, rng_pool=RngPool(2, seed=0))

    assert samp.c.tobytes() == c_before
    assert not np.array_equal(samp.d, d_before)


def test_sample_params_pair_overrides_flags():
    data, model, samp, zU, zM, resids = make_problem(seed=6)
    d_before = samp.d.tobytes()

    offsets.run_offset_update(data, model, samp, zU, zM, resids,
                              sample_params=[True, False], rng_pool=RngPool(2, seed=0))

    assert samp.d.tobytes() == d_before

    with pytest.raises(validation.ContractViolation):
        offsets.run_offset_update(data, model, samp, zU, zM, resids,
                                  sample_params=[True, False, True])


def test_user_then_item_order_differs_from_item_then_user():
    users = np.array([1, 1, 2, 2])
    items = np.array([1, 2, 1, 2])
    zU = np.array([1, 2, 1, 2])
    zM = np.array([1, 1, 2, 2])
    resids = np.array([1.0, 2.0, -1.0, 0.5])
    data = DyadicData.from_arrays(users, items, 2, 2)

    def user_side(c, d):
        offsets.sample_offsets(users, items, data.examples_by_user, 2, 2, 2,
                               1.0, 1.0, 0.0, c, d, zU, zM, resids, rng_pool=zero_pool())

    def item_side(c, d):
        offsets.sample_offsets(items, users, data.examples_by_item, 2, 2, 2,
                               1.0, 1.0, 0.0, d, c, zM, zU, resids, rng_pool=zero_pool())

    c_a, d_a = np.zeros((2, 2)), np.zeros((2, 2))
    user_side(c_a, d_a)
    item_side(c_a, d_a)

    c_b, d_b = np.zeros((2, 2)), np.zeros((2, 2))
    item_side(c_b, d_b)
    user_side(c_b, d_b)

    assert not np.allclose(d_a, d_b)

    # the driver runs the user side first
    model = OffsetModel(KU=2, KM=2, num_users=2, num_items=2,
                        sigma_sqd=1.0, sigma_sqd0=1.0, c0=0.0, d0=0.0)
    samp = OffsetSample(c=np.zeros((2, 2)), d=np.zeros((2, 2)))
    offsets.run_offset_update(data, model, samp, zU, zM, resids, rng_pool=zero_pool())
    assert np.allclose(samp.d, d_a)
    assert np.allclose(samp.c, c_a)


def test_topic_counts_cover_every_interaction():
    data, model, samp, zU, zM, resids = make_problem(seed=9, num_users=8, n=60)
    adjacency = data.examples_by_user
    buckets = zM - 1
    contributions = resids - samp.d[data.items - 1, zU - 1]
    sums = np.zeros(model.KM)
    counts = np.zeros(model.KM, dtype=np.int64)

    for p, length in enumerate(adjacency.lengths()):
        examples = adjacency.examples(p)
        offsets.accumulate_topic_stats(examples, buckets, contributions, sums, counts)
        assert counts.sum() == length
        assert sums.sum() == pytest.approx(contributions[examples].sum())


def test_posterior_params_with_empty_topic_is_prior():
    mean, variance = offsets.posterior_params(
        np.array([0.0, 4.0]), np.array([0, 2]), 1.0, 0.5, 2.0
    )
    assert mean[0] == pytest.approx(2.0)
    assert variance[0] == pytest.approx(2.0)
    assert variance[1] == pytest.approx(1.0 / 2.5)
    assert mean[1] == pytest.approx((2.0 * 0.5 + 4.0) / 2.5)


def test_out_of_range_topic_fails_before_writing():
    data, model, samp, zU, zM, resids = make_problem(seed=2)
    zM = zM.copy()
    zM[0] = model.KM + 1
    c_before = samp.c.copy()

    with pytest.raises(validation.TopicIndexError):
        offsets.run_offset_update(data, model, samp, zU, zM, resids, rng_pool=zero_pool())

    assert np.array_equal(samp.c, c_before)


def test_misfiled_adjacency_is_rejected():
    data = DyadicData.from_arrays([1, 2], [1, 1], 2, 1)
    swapped = Adjacency.from_lists([[1], [0]])
    c = np.zeros((2, 1))

    with pytest.raises(validation.AdjacencyError, match="belongs to entity"):
        offsets.sample_offsets(data.users, data.items, swapped, 1, 0, 2, 1.0, 1.0, 0.0,
                               c, None, None, np.array([1, 1]), np.array([1.0, 2.0]))

    duplicated = Adjacency.from_lists([[0, 0], []])
    with pytest.raises(validation.AdjacencyError):
        offsets.sample_offsets(data.users, data.items, duplicated, 1, 0, 2, 1.0, 1.0, 0.0,
                               c, None, None, np.array([1, 1]), np.array([1.0, 2.0]))

    assert not c.any()


def test_bad_offset_matrices_are_rejected():
    data, model, samp, zU, zM, resids = make_problem(seed=4)

    with pytest.raises(validation.ShapeError):
        offsets.run_offset_update(data, model, OffsetSample(c=samp.c[:, :2], d=samp.d),
                                  zU, zM, resids)

    frozen = samp.c.copy()
    frozen.setflags(write=False)
    with pytest.raises(validation.ShapeError, match="read-only"):
        offsets.run_offset_update(data, model, OffsetSample(c=frozen, d=samp.d),
                                  zU, zM, resids)

    with pytest.raises(validation.ShapeError):
        offsets.run_offset_update(data, model, samp, zU, zM, resids[:-1])


def test_non_positive_variance_is_rejected():
    data, model, samp, zU, zM, resids = make_problem(seed=8)

    with pytest.raises(validation.ContractViolation):
        offsets.update_offsets(
            data.users, data.items, data.examples_by_user, data.examples_by_item,
            model.KU, model.KM, model.num_users, model.num_items,
            0.0, 1.0, 0.0, 0.0, samp.c, samp.d, zU, zM, resids,
        )


def test_worker_count_follows_settings(monkeypatch):
    monkeypatch.setattr(offsets.settings, "MAX_THREADS", 2)
    assert offsets._pool_width(RngPool(8, seed=0), None, 100) == 2
    assert offsets._pool_width(RngPool(8, seed=0), 5, 100) == 5
    assert offsets._pool_width(RngPool(3, seed=0), 5, 100) == 3
    assert offsets._pool_width(RngPool(3, seed=0), 5, 1) == 1


def test_bad_item_side_fails_before_c_is_written():
    data = DyadicData.from_arrays([1, 2], [1, 2], 2, 2)
    data.examples_by_item = Adjacency.from_lists([[1], [0]])
    model = OffsetModel(KU=1, KM=1, num_users=2, num_items=2,
                        sigma_sqd=1.0, sigma_sqd0=1.0)
    samp = OffsetSample(c=np.full((2, 1), 9.0), d=np.zeros((2, 1)))
    c_before = samp.c.tobytes()
    ones = np.array([1, 1])

    with pytest.raises(validation.AdjacencyError):
        offsets.run_offset_update(data, model, samp, ones, ones, np.array([1.0, 2.0]),
                                  rng_pool=zero_pool())

    assert samp.c.tobytes() == c_before
    assert not samp.d.any()


def test_fractional_topic_ids_are_rejected():
    data = DyadicData.from_arrays([1], [1], 1, 1)
    c = np.zeros((1, 2))

    with pytest.raises(validation.TopicIndexError, match="whole numbers"):
        offsets.sample_offsets(data.users, data.items, data.examples_by_user,
                               2, 0, 1, 1.0, 1.0, 0.0,
                               c, None, None, np.array([1.7]), np.array([1.0]))
    assert not c.any()

    # whole-valued floats are still accepted
    offsets.sample_offsets(data.users, data.items, data.examples_by_user,
                           2, 0, 1, 1.0, 1.0, 0.0,
                           c, None, None, np.array([2.0]), np.array([1.0]),
                           rng_pool=zero_pool())
    assert c[0, 1] == pytest.approx(0.5)


def test_fractional_entity_ids_are_rejected():
    with pytest.raises(validation.AdjacencyError, match="whole numbers"):
        validation.check_entity_ids("primary", np.array([1.0, 1.5]), 2)
