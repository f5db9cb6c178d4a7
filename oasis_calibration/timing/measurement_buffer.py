################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Ordered per-stream buffer of timestamped measurements."""

from __future__ import annotations

from typing import Generic
from typing import Protocol
from typing import TypeVar

from oasis_calibration.calibration_types.errors import InputError
from oasis_calibration.timing.time_base import StampOrder
from oasis_calibration.timing.time_base import TimeBaseError


class _Stamped(Protocol):
    @property
    def t_ns(self) -> int: ...


T = TypeVar("T", bound=_Stamped)


class MeasurementBufferError(InputError):
    """Raised when measurement buffer operations fail."""


class MeasurementBuffer(Generic[T]):
    """Store one stream's measurements in non-decreasing time order.

    A capacity of zero leaves the buffer unbounded. Otherwise the oldest
    measurement is dropped when a push exceeds the capacity.
    """

    def __init__(
        self,
        name: str,
        *,
        capacity: int = 0,
        order: StampOrder | None = None,
    ) -> None:
        """Initialize the buffer."""
        if capacity < 0:
            raise MeasurementBufferError("Capacity must be non-negative")
        self._name: str = name
        self._capacity: int = capacity
        self._order: StampOrder = order or StampOrder()
        self._items: list[T] = []
        self._dropped: int = 0

    def __len__(self) -> int:
        """Return the number of items stored."""
        return len(self._items)

    @property
    def name(self) -> str:
        """Return the stream name."""
        return self._name

    @property
    def dropped(self) -> int:
        """Return the number of items dropped by the capacity limit."""
        return self._dropped

    def is_empty(self) -> bool:
        """Return True if the buffer is empty."""
        return not self._items

    def clear(self) -> None:
        """Remove all items from the buffer."""
        self._items.clear()

    def push(self, item: T) -> None:
        """Append a measurement, enforcing monotonic time."""
        t_prev_ns: int | None = None
        if self._items:
            t_prev_ns = self._items[-1].t_ns
        try:
            self._order.check(t_prev_ns, item.t_ns)
        except TimeBaseError as exc:
            raise MeasurementBufferError(f"{self._name}: {exc}") from exc
        self._items.append(item)
        if self._capacity and len(self._items) > self._capacity:
            del self._items[0]
            self._dropped += 1

    def latest(self) -> T | None:
        """Return the newest item, if any."""
        if not self._items:
            return None
        return self._items[-1]

    def earliest(self) -> T | None:
        """Return the oldest item, if any."""
        if not self._items:
            return None
        return self._items[0]

    def span_ns(self) -> int:
        """Return the time covered by the buffer in nanoseconds."""
        if len(self._items) < 2:
            return 0
        return self._items[-1].t_ns - self._items[0].t_ns

    def items(self) -> list[T]:
        """Return items in increasing time order."""
        return list(self._items)

    def items_between(self, t_start_ns: int, t_end_ns: int) -> list[T]:
        """Return items with t_start_ns <= t_ns <= t_end_ns."""
        return [item for item in self._items if t_start_ns <= item.t_ns <= t_end_ns]

    def pop_older_than(self, t_ns_exclusive: int) -> list[T]:
        """Remove and return all items older than the given timestamp."""
        removed: list[T] = [item for item in self._items if item.t_ns < t_ns_exclusive]
        self._items = [item for item in self._items if item.t_ns >= t_ns_exclusive]
        return removed

    def pop_through(self, t_ns_inclusive: int) -> list[T]:
        """Remove and return all items at or before the given timestamp."""
        return self.pop_older_than(t_ns_inclusive + 1)
