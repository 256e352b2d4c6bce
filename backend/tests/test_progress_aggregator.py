import random

import pytest

from services.progress_aggregator import ProgressAggregator


def test_three_chunks_completing_one_by_one():
    aggregator = ProgressAggregator(3)

    assert aggregator.complete(1) == 33
    assert aggregator.complete(0) == 66
    assert not aggregator.all_done
    assert aggregator.complete(2) == 100
    assert aggregator.all_done


def test_progress_is_floor_of_mean():
    aggregator = ProgressAggregator(4)
    aggregator.update(0, 50)
    aggregator.update(1, 25)
    aggregator.update(2, 1)

    assert aggregator.progress == (50 + 25 + 1 + 0) // 4


def test_chunk_progress_never_goes_down():
    aggregator = ProgressAggregator(2)
    aggregator.update(0, 80)
    aggregator.update(0, 10)
    aggregator.complete(1)
    aggregator.update(1, 0)

    assert aggregator.values == [80, 100]
    assert aggregator.progress == 90


def test_random_interleaving_is_monotonic_and_matches_mean():
    rng = random.Random(7)
    aggregator = ProgressAggregator(5)
    seen = []
    for _ in range(200):
        index = rng.randrange(5)
        seen.append(aggregator.update(index, rng.randint(0, 100)))
        assert aggregator.progress == sum(aggregator.values) // 5

    assert seen == sorted(seen)


def test_all_done_only_when_every_chunk_at_100():
    aggregator = ProgressAggregator(2)
    aggregator.update(0, 100)
    aggregator.update(1, 99)

    assert aggregator.progress == 99
    assert not aggregator.all_done


def test_zero_chunks_rejected():
    with pytest.raises(ValueError):
        ProgressAggregator(0)
