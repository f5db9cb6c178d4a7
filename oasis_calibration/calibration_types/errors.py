################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Error taxonomy for odometry calibration.

InputError is recoverable by the caller: skip the measurement or reject the
configuration. ConvergenceFailure is recoverable by retrying with different
settings or accepting the best-effort estimate. ObservabilityFailure is a
calibration design problem that retrying the same configuration cannot fix.
OutOfRangeQuery is a contract violation by the caller of the trajectory.
"""

from __future__ import annotations


class InputError(ValueError):
    """Raised when a measurement or configuration value is malformed."""


class ConvergenceFailure(RuntimeError):
    """Raised when the solver exhausts its iteration budget."""

    def __init__(self, message: str, *, iterations: int = 0) -> None:
        super().__init__(message)
        self.iterations: int = iterations


class ObservabilityFailure(RuntimeError):
    """Raised when the information matrix is rank deficient.

    Attributes:
        blocks: Names of the parameter blocks whose columns lost rank
    """

    def __init__(self, message: str, *, blocks: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.blocks: tuple[str, ...] = blocks


class OutOfRangeQuery(IndexError):
    """Raised when the trajectory is evaluated outside its fitted span."""

    def __init__(self, t_sec: float, t_min_sec: float, t_max_sec: float) -> None:
        super().__init__(
            f"Trajectory query at t={t_sec:.9f} s is outside "
            f"[{t_min_sec:.9f}, {t_max_sec:.9f}] s"
        )
        self.t_sec: float = t_sec
        self.t_min_sec: float = t_min_sec
        self.t_max_sec: float = t_max_sec
