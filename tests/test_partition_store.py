import numpy as np
import pytest
from numpy.testing import assert_allclose

from DPMM import NULL_BLOCK, InvalidReference, PartitionStore


def spread(values):
    """Toy likelihood penalizing spread and size of a set."""
    values = np.asarray(values, dtype=float)
    return float(-np.sum((values - values.mean()) ** 2) - 0.3 * len(values))


def make_store(values=(0.0, 0.1, 5.0, 5.2, 9.0)):
    return PartitionStore(list(values), spread)


def check_invariants(store):
    # every assigned item sits in exactly one open block
    sizes = store.sizes()
    assert sum(sizes) == store.working_count()
    assert NULL_BLOCK not in store.block_ids
    assert len(set(store.block_ids)) == store.cluster_count()
    seen = set()
    for block in store.partition():
        assert block
        assert not (seen & block)
        seen |= block
    for item, block_id in store.get_z().items():
        if block_id is None:
            assert item not in seen
        else:
            assert item in store.members(block_id)
    assert_allclose(store.total_log_likelihood(), store.recompute_total_log_likelihood(),
                    rtol=1e-9, atol=1e-12)


def test_empty_store():
    store = make_store()
    assert store.open_blocks() == [NULL_BLOCK]
    assert store.cluster_count() == 0
    assert store.working_count() == 0
    assert store.total_log_likelihood() == 0.0
    assert store.members(NULL_BLOCK) == frozenset()
    assert store.block_log_likelihood(NULL_BLOCK) == 0.0


def test_add_to_null_block_opens_new_block():
    store = make_store()
    assert store.add(0, NULL_BLOCK)
    assert store.add(2, NULL_BLOCK)
    assert store.open_blocks() == [NULL_BLOCK, 1, 2]
    assert store.block_of(0) == 1
    assert store.block_of(2) == 2

    store.add(1, 1)
    assert store.members(1) == {0, 1}
    assert store.members(NULL_BLOCK) == frozenset()
    assert_allclose(store.block_log_likelihood(1), spread([0.0, 0.1]))
    assert store.working_count() == 3
    check_invariants(store)


def test_remove_is_idempotent():
    store = make_store()
    store.add(0, NULL_BLOCK)
    store.add(1, 1)
    store.add(2, NULL_BLOCK)

    assert store.remove(1)
    total = store.total_log_likelihood()
    assert not store.remove(1)
    assert store.total_log_likelihood() == total
    assert store.block_of(1) is None
    assert store.working_count() == 2
    check_invariants(store)


def test_remove_unseen_item():
    store = make_store()
    assert not store.remove(3)
    assert store.total_log_likelihood() == 0.0


def test_emptied_block_is_closed_and_id_recycled():
    store = make_store()
    for item in range(3):
        store.add(item, NULL_BLOCK)
    assert store.open_blocks() == [NULL_BLOCK, 1, 2, 3]

    store.remove(1)
    assert store.open_blocks() == [NULL_BLOCK, 1, 3]
    assert not store.is_open(2)
    with pytest.raises(InvalidReference):
        store.add(1, 2)

    # smallest free id is taken first
    store.add(1, NULL_BLOCK)
    assert store.block_of(1) == 2
    store.add(3, NULL_BLOCK)
    assert store.block_of(3) == 4
    check_invariants(store)


def test_add_to_unknown_block():
    store = make_store()
    with pytest.raises(InvalidReference) as excinfo:
        store.add(0, 3)
    assert excinfo.value.block_id == 3
    assert store.working_count() == 0


def test_add_assigned_item():
    store = make_store()
    store.add(0, NULL_BLOCK)
    with pytest.raises(ValueError):
        store.add(0, 1)
    with pytest.raises(IndexError):
        store.add(10, NULL_BLOCK)


def test_log_likelihood_with_does_not_mutate():
    store = make_store()
    store.add(0, NULL_BLOCK)
    store.add(1, 1)
    before = store.total_log_likelihood()

    assert_allclose(store.log_likelihood_with(2, 1), spread([0.0, 0.1, 5.0]))
    assert_allclose(store.log_likelihood_with(2, NULL_BLOCK), spread([5.0]))
    assert store.members(1) == {0, 1}
    assert store.total_log_likelihood() == before


def test_incremental_total_matches_recomputed():
    rng = np.random.default_rng(3)
    values = rng.normal(size=12)
    store = PartitionStore(values, spread)

    for item in range(12):
        store.add(item, NULL_BLOCK)

    for _ in range(400):
        item = int(rng.integers(12))
        store.remove(item)
        candidates = store.open_blocks()
        store.add(item, candidates[int(rng.integers(len(candidates)))])
        check_invariants(store)

    assert store.working_count() == 12
