# Copyright (c) 2025 Marcus Dillavou <line72@line72.net>
# Part of the Crateflow Project
# Released under the AGPLv3 or later

import math
import re


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def as_number(value):
    """Convert value to a finite float, or None"""
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")


def tokenize(text) -> set:
    """Lower-cased alphanumeric tokens longer than one character"""
    if not isinstance(text, str):
        return set()
    return {x for x in _TOKEN_SPLIT.split(text.lower()) if len(x) > 1}


def jaccard(left: set, right: set, empty: float = 0.0) -> float:
    if not left or not right:
        return empty
    union = len(left | right)
    if not union:
        return empty
    return len(left & right) / union


def distance_to_score(diff, scale: float) -> float:
    """exp(-|diff|/scale), 0.5 when the difference is unknown"""
    if diff is None or not math.isfinite(diff):
        return 0.5
    return clamp(math.exp(-abs(diff) / scale))
