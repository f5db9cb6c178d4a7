################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Windowing of buffered measurements.

A window opens at the earliest buffered pose and covers the configured
duration. It is ready once the pose stream spans that duration, or earlier
when the buffered measurement count reaches its ceiling. Completing a window
either drops everything it covered (batch) or keeps a trailing interval for
the next window (incremental).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from oasis_calibration.calibration_types.measurements import OdometryMeasurement
from oasis_calibration.calibration_types.measurements import PoseMeasurement
from oasis_calibration.config.calibrator_params import WindowParams
from oasis_calibration.timing.measurement_buffer import MeasurementBuffer
from oasis_calibration.timing.time_base import ns_to_sec
from oasis_calibration.timing.time_base import sec_to_ns


_LOG: logging.Logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Window:
    """Measurements of one solve.

    Attributes:
        index: Zero-based window sequence number
        t_start_ns: Start of the window in nanoseconds
        t_end_ns: End of the window in nanoseconds, inclusive
        poses: Pose measurements in the window
        odometry: Odometry measurements in the window
        forced: True when opened by the measurement ceiling
    """

    index: int
    t_start_ns: int
    t_end_ns: int
    poses: tuple[PoseMeasurement, ...]
    odometry: tuple[OdometryMeasurement, ...]
    forced: bool = False

    def duration_sec(self) -> float:
        """Return the window duration in seconds."""
        return ns_to_sec(self.t_end_ns - self.t_start_ns)


class WindowController:
    """Buffers measurements per stream and cuts them into windows."""

    def __init__(self, params: WindowParams, *, stream: str = "wheels") -> None:
        self._params: WindowParams = params
        self._duration_ns: int = sec_to_ns(params.duration_sec)
        self._retain_ns: int = sec_to_ns(params.retain_sec)
        self._poses: MeasurementBuffer[PoseMeasurement] = MeasurementBuffer("pose")
        self._odometry: MeasurementBuffer[OdometryMeasurement] = MeasurementBuffer(
            stream
        )
        self._next_index: int = 0
        self._last_end_ns: int | None = None

    @property
    def incremental(self) -> bool:
        """Return True when windows overlap."""
        return self._params.incremental

    @property
    def windows_completed(self) -> int:
        """Return the number of completed windows."""
        return self._next_index

    def add_pose(self, measurement: PoseMeasurement) -> None:
        """Buffer a pose measurement."""
        self._poses.push(measurement)

    def add_odometry(self, measurement: OdometryMeasurement) -> None:
        """Buffer an odometry measurement."""
        self._odometry.push(measurement)

    def measurement_count(self) -> int:
        """Return the number of buffered measurements across streams."""
        return len(self._poses) + len(self._odometry)

    def _has_new_data(self) -> bool:
        latest: PoseMeasurement | None = self._poses.latest()
        if latest is None or len(self._poses) < 2:
            return False
        return self._last_end_ns is None or latest.t_ns > self._last_end_ns

    def _count_limited(self) -> bool:
        limit: int = self._params.max_measurements
        return limit > 0 and self.measurement_count() >= limit

    def is_ready(self) -> bool:
        """Return True when a full or forced window is available."""
        if not self._has_new_data():
            return False
        return self._poses.span_ns() >= self._duration_ns or self._count_limited()

    def next_window(self, *, flush: bool = False) -> Window | None:
        """Return the next window, or None when none is ready.

        With flush set, any buffered data not yet covered by a window is
        returned as a final shorter window.
        """
        if not (self.is_ready() or (flush and self._has_new_data())):
            return None
        first: PoseMeasurement | None = self._poses.earliest()
        last: PoseMeasurement | None = self._poses.latest()
        if first is None or last is None:
            return None
        t_start_ns: int = first.t_ns
        t_end_ns: int = min(t_start_ns + self._duration_ns, last.t_ns)
        return Window(
            index=self._next_index,
            t_start_ns=t_start_ns,
            t_end_ns=t_end_ns,
            poses=tuple(self._poses.items_between(t_start_ns, t_end_ns)),
            odometry=tuple(self._odometry.items_between(t_start_ns, t_end_ns)),
            forced=self._poses.span_ns() < self._duration_ns,
        )

    def complete(self, window: Window) -> None:
        """Release the measurements of a solved window."""
        if window.index != self._next_index:
            raise ValueError(
                f"Window {window.index} completed out of order, "
                f"expected {self._next_index}"
            )
        if self._params.incremental:
            cutoff_ns: int = max(window.t_end_ns - self._retain_ns, 0)
            self._poses.pop_older_than(cutoff_ns)
            self._odometry.pop_older_than(cutoff_ns)
        else:
            self._poses.pop_through(window.t_end_ns)
            self._odometry.pop_through(window.t_end_ns)
        self._last_end_ns = window.t_end_ns
        self._next_index += 1
        _LOG.debug(
            "Completed window %d, %d measurements buffered",
            window.index,
            self.measurement_count(),
        )
