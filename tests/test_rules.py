import math
import random

from kart_gp.rules import (
    add_minutes,
    category_base_points,
    chunk,
    deal_round_robin,
    fisher_yates_shuffle,
    interleave_round_robin,
    is_clock_time,
    is_valid_time,
    opposite_category,
    start_positions,
)


def test_base_points_curve():
    assert category_base_points(1) == 40
    assert category_base_points(2) == 38
    assert category_base_points(11) == 20
    assert category_base_points(20) == 2
    assert category_base_points(25) == 2


def test_valid_time_rejects_non_positive_and_non_finite():
    assert is_valid_time(49.5)
    assert is_valid_time(1)
    assert not is_valid_time(0)
    assert not is_valid_time(-3.2)
    assert not is_valid_time(math.inf)
    assert not is_valid_time(math.nan)
    assert not is_valid_time(True)
    assert not is_valid_time("51.2")
    assert not is_valid_time(None)


def test_opposite_category():
    assert opposite_category("390cc") == "270cc"
    assert opposite_category("270cc") == "390cc"
    assert opposite_category(None) is None


def test_clock_helpers_wrap_at_midnight():
    assert is_clock_time("09:05")
    assert not is_clock_time("24:00")
    assert not is_clock_time("9:05")
    assert add_minutes("11:30", 10) == "11:40"
    assert add_minutes("23:50", 20) == "00:10"


def test_deal_and_interleave():
    assert deal_round_robin([1, 2, 3, 4, 5], 2) == [[1, 3, 5], [2, 4]]
    assert interleave_round_robin([[1, 2, 3], ["a"], [10, 20]]) == [1, "a", 10, 2, 20, 3]
    assert chunk([1, 2, 3, 4, 5], 2, 3) == [[1, 2], [3, 4], [5]]
    assert chunk([1], 2, 2) == [[1], []]
    assert start_positions(3, 1) == [1, 3, 5]
    assert start_positions(2, 2) == [2, 4]


def test_shuffle_is_a_permutation_and_reproducible():
    items = list(range(10))
    first = fisher_yates_shuffle(items, random.Random(7))
    second = fisher_yates_shuffle(items, random.Random(7))
    assert first == second
    assert sorted(first) == items
    assert items == list(range(10))
