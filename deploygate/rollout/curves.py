"""
Rollout curves: pure functions from a target's ordinal position to a time
offset in seconds. Adding a curve means adding a map entry.
"""
from __future__ import annotations

import math
from typing import Callable, Dict

from deploygate.errors import PolicyMisconfigurationError

OffsetFn = Callable[[int, int, float, float], float]


def linear(position: int, total: int, interval_seconds: float, growth_factor: float) -> float:
    # Spreads the targets evenly so the last one lands on the full interval.
    if total <= 1:
        return 0.0
    return interval_seconds * (position - 1) / (total - 1)


def linear_normalized(position: int, total: int, interval_seconds: float, growth_factor: float) -> float:
    # The last target lands one step short of the full interval.
    if total <= 0:
        return 0.0
    return interval_seconds * (position - 1) / total


def linear_stepped(position: int, total: int, interval_seconds: float, growth_factor: float) -> float:
    return interval_seconds * (position - 1)


def exponential(position: int, total: int, interval_seconds: float, growth_factor: float) -> float:
    return interval_seconds * (1 - math.exp(-(position - 1) / growth_factor))


def exponential_normalized(position: int, total: int, interval_seconds: float, growth_factor: float) -> float:
    if total <= 1:
        return 0.0
    span = 1 - math.exp(-(total - 1) / growth_factor)
    return interval_seconds * (1 - math.exp(-(position - 1) / growth_factor)) / span


ROLLOUT_CURVES: Dict[str, OffsetFn] = {
    "linear": linear,
    "linear-normalized": linear_normalized,
    "linear-stepped": linear_stepped,
    "exponential": exponential,
    "exponential-normalized": exponential_normalized,
}


def get_curve(rollout_type: str) -> OffsetFn:
    key = str(rollout_type or "").strip().lower()
    try:
        return ROLLOUT_CURVES[key]
    except KeyError:
        raise PolicyMisconfigurationError(
            f"unknown rollout type {rollout_type!r}; expected one of {sorted(ROLLOUT_CURVES)}"
        ) from None
