################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Timing utilities for odometry calibration.

Measurement timestamps are integer nanoseconds. Trajectory queries and
delays are float seconds, since a delay may shift a query to a negative
offset from a stream's first sample.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from oasis_calibration.calibration_types.errors import InputError


NS_PER_SEC: int = 1_000_000_000


class TimeBaseError(InputError):
    """Raised when a timestamp or delay interval is unusable."""


def sec_to_ns(t_sec: float) -> int:
    """Convert a non-negative duration or stamp in seconds to nanoseconds.

    Rounds half to even, so the same float always maps to the same stamp.
    """
    if not math.isfinite(t_sec) or t_sec < 0.0:
        raise TimeBaseError(f"Cannot convert {t_sec!r} s to a timestamp")
    return int(round(t_sec * NS_PER_SEC))


def ns_to_sec(t_ns: int) -> float:
    """Convert a non-negative stamp in nanoseconds to seconds."""
    if t_ns < 0:
        raise TimeBaseError(f"Negative timestamp {t_ns} ns")
    return t_ns / NS_PER_SEC


def delay_interval(t_sec: float, bound_sec: float) -> tuple[float, float]:
    """Return every time a delayed query of ``t_sec`` can reach.

    A stream delay is clamped to ``[-bound_sec, bound_sec]``, so the query
    time ``t_sec + delay`` stays within the returned closed interval for the
    whole optimization.
    """
    if not math.isfinite(t_sec):
        raise TimeBaseError(f"Query time must be finite, got {t_sec!r}")
    if not math.isfinite(bound_sec) or bound_sec < 0.0:
        raise TimeBaseError(f"Delay bound must be finite and >= 0, got {bound_sec!r}")
    return t_sec - bound_sec, t_sec + bound_sec


def delay_interval_within(
    t_sec: float, bound_sec: float, t_min_sec: float, t_max_sec: float
) -> bool:
    """True if every delayed query of ``t_sec`` falls inside a time span."""
    low, high = delay_interval(t_sec, bound_sec)
    return t_min_sec <= low and high <= t_max_sec


@dataclass(frozen=True)
class StampOrder:
    """Ordering policy for the timestamps of one measurement stream.

    Attributes:
        strict: True to refuse a stamp equal to its predecessor
    """

    strict: bool = False

    def check(self, t_prev_ns: int | None, t_ns: int) -> None:
        if t_prev_ns is None:
            return
        if t_ns < t_prev_ns or (self.strict and t_ns == t_prev_ns):
            relation: str = "repeats" if t_ns == t_prev_ns else "precedes"
            raise TimeBaseError(
                f"Stamp {t_ns} ns {relation} the previous stamp {t_prev_ns} ns"
            )
