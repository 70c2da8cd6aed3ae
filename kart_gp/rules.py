from __future__ import annotations

import math
import random
import re
from typing import List, Optional, Sequence, TypeVar


T = TypeVar("T")

CATEGORY_390 = "390cc"
CATEGORY_270 = "270cc"

LEVEL_PRIORITY = {"PRO": 0, "AMATEUR": 1, "PRINCIPIANTE": 2}
KART_PRIORITY = {CATEGORY_390: 0, CATEGORY_270: 1}

BASE_POINTS_TOP = 40
BASE_POINTS_STEP = 2
BASE_POINTS_FLOOR = 2
COLLECTIVE_BONUS = 20
INDIVIDUAL_BONUS = 20

TIME_DECIMALS = 3

QUALY_FIRST_START = "11:30"
QUALY_SESSION_GAP_MINUTES = 10
QUALY_DURATION_MINUTES = 5

MINUTES_PER_DAY = 24 * 60
CLOCK_PATTERN = r"^([01]\d|2[0-3]):([0-5]\d)$"
_CLOCK_RE = re.compile(CLOCK_PATTERN)


def is_valid_time(value: object) -> bool:
    """
    A lap/qualy time counts only when it is a finite number strictly above zero.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


def round_time(value: float) -> float:
    return round(float(value), TIME_DECIMALS)


def category_base_points(category_position: int) -> int:
    """
    Linear curve per category: 1st -> 40, 2nd -> 38, ... never below 2.
    """
    return max(BASE_POINTS_TOP - (category_position - 1) * BASE_POINTS_STEP, BASE_POINTS_FLOOR)


def opposite_category(category: Optional[str]) -> Optional[str]:
    if category == CATEGORY_390:
        return CATEGORY_270
    if category == CATEGORY_270:
        return CATEGORY_390
    return None


def is_clock_time(value: object) -> bool:
    return isinstance(value, str) and _CLOCK_RE.match(value) is not None


def clock_to_minutes(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def add_minutes(clock: str, minutes: int) -> str:
    """
    Shift an HH:mm clock reading, wrapping at midnight.
    """
    total = (clock_to_minutes(clock) + minutes) % MINUTES_PER_DAY
    return f"{total // 60:02d}:{total % 60:02d}"


def fisher_yates_shuffle(items: Sequence[T], rng: Optional[random.Random] = None) -> List[T]:
    rng = rng or random.Random()
    shuffled = list(items)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def deal_round_robin(items: Sequence[T], bucket_count: int) -> List[List[T]]:
    """
    Item i goes to bucket i % bucket_count.
    """
    buckets: List[List[T]] = [[] for _ in range(max(bucket_count, 1))]
    for idx, item in enumerate(items):
        buckets[idx % len(buckets)].append(item)
    return buckets


def interleave_round_robin(lists: Sequence[Sequence[T]]) -> List[T]:
    """
    Take one item from each list in turn. Shorter lists simply stop contributing.
    """
    merged: List[T] = []
    longest = max((len(items) for items in lists), default=0)
    for idx in range(longest):
        for items in lists:
            if idx < len(items):
                merged.append(items[idx])
    return merged


def chunk(items: Sequence[T], size: int, count: int) -> List[List[T]]:
    """
    Contiguous slices of `size`; always returns exactly `count` chunks (possibly empty).
    """
    return [list(items[idx * size : (idx + 1) * size]) for idx in range(count)]


def start_positions(count: int, first: int, step: int = 2) -> List[int]:
    return [first + idx * step for idx in range(count)]
