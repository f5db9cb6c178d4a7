################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Immutable measurement records consumed by odometry calibration."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import numpy as np
from numpy.typing import NDArray

from oasis_calibration.calibration_types.errors import InputError
from oasis_calibration.math_utils.quat import Quaternion
from oasis_calibration.timing.time_base import ns_to_sec


# Index of the rear-left wheel in wheel-ordered arrays
WHEEL_RL: int = 0
# Index of the rear-right wheel in wheel-ordered arrays
WHEEL_RR: int = 1
# Index of the front-left wheel in wheel-ordered arrays
WHEEL_FL: int = 2
# Index of the front-right wheel in wheel-ordered arrays
WHEEL_FR: int = 3

# Units: m^2. Meaning: default position variance of pose measurements
POSE_POSITION_VARIANCE: float = 1e-4
# Units: rad^2. Meaning: default rotation variance of pose measurements
POSE_ROTATION_VARIANCE: float = 1e-7
# Units: (rad/s)^2. Meaning: default wheel angular rate variance
WHEEL_RATE_VARIANCE: float = 1e-3
# Units: rad^2. Meaning: default steering angle variance
STEERING_VARIANCE: float = 1e-3


def _as_float_array(
    value: Any, name: str, shape: tuple[int, ...]
) -> NDArray[np.float64]:
    """Coerce a value to a finite float64 array with a fixed shape."""
    try:
        array: NDArray[np.float64] = np.array(value, dtype=np.float64)
    except (TypeError, ValueError) as exc:
        raise InputError(f"{name} must be numeric") from exc
    if array.shape != shape:
        raise InputError(f"{name} must have shape {shape}")
    if not np.all(np.isfinite(array)):
        raise InputError(f"{name} must contain finite values")
    array.setflags(write=False)
    return array


def _as_covariance(value: Any, name: str, dim: int) -> NDArray[np.float64]:
    """Coerce a value to a symmetric positive definite covariance."""
    cov: NDArray[np.float64] = np.array(
        _as_float_array(value, name, (dim, dim)), dtype=np.float64
    )
    if not np.allclose(cov, cov.T, rtol=0.0, atol=1e-12):
        raise InputError(f"{name} must be symmetric")
    try:
        np.linalg.cholesky(cov)
    except np.linalg.LinAlgError as exc:
        raise InputError(f"{name} must be positive definite") from exc
    cov.setflags(write=False)
    return cov


def _validate_timestamp(t_ns: int) -> None:
    """Validate a measurement timestamp."""
    if isinstance(t_ns, bool) or not isinstance(t_ns, (int, np.integer)):
        raise InputError("t_ns must be an int")
    if t_ns < 0:
        raise InputError("t_ns must be non-negative")


def default_pose_covariance() -> NDArray[np.float64]:
    """Return the default 6x6 pose covariance (position, rotation)."""
    return np.diag(
        [POSE_POSITION_VARIANCE] * 3 + [POSE_ROTATION_VARIANCE] * 3
    ).astype(np.float64)


def default_wheel_covariance(
    lw_variance: float = WHEEL_RATE_VARIANCE,
    rw_variance: float = WHEEL_RATE_VARIANCE,
) -> NDArray[np.float64]:
    """Return the default 4x4 wheel rate covariance.

    The left channel variance applies to both left wheels and the right
    channel variance to both right wheels.
    """
    return np.diag([lw_variance, rw_variance, lw_variance, rw_variance]).astype(
        np.float64
    )


@dataclass(frozen=True)
class PoseMeasurement:
    """Measured pose of the body frame in the world frame.

    Attributes:
        t_ns: Measurement timestamp in nanoseconds
        p_m: Body position in the world frame, meters
        q_wxyz: Body orientation in the world frame, unit quaternion wxyz
        cov: 6x6 covariance over (position m, rotation tangent rad)
    """

    t_ns: int
    p_m: NDArray[np.float64]
    q_wxyz: NDArray[np.float64]
    cov: NDArray[np.float64]

    def __post_init__(self) -> None:
        """Validate timestamp, arrays and covariance."""
        _validate_timestamp(self.t_ns)
        object.__setattr__(self, "t_ns", int(self.t_ns))
        object.__setattr__(self, "p_m", _as_float_array(self.p_m, "p_m", (3,)))
        q: NDArray[np.float64] = _as_float_array(self.q_wxyz, "q_wxyz", (4,))
        norm: float = float(np.linalg.norm(q))
        if norm <= 0.0:
            raise InputError("q_wxyz must have non-zero norm")
        object.__setattr__(
            self, "q_wxyz", _as_float_array(q / norm, "q_wxyz", (4,))
        )
        object.__setattr__(self, "cov", _as_covariance(self.cov, "cov", 6))

    def t_sec(self) -> float:
        """Return the timestamp in seconds."""
        return ns_to_sec(self.t_ns)

    def rotation_matrix(self) -> NDArray[np.float64]:
        """Return the measured body-to-world rotation matrix."""
        return Quaternion(self.q_wxyz).as_matrix()


@dataclass(frozen=True)
class OdometryMeasurement:
    """Measured wheel angular rates of a four-wheeled vehicle.

    Attributes:
        t_ns: Measurement timestamp in nanoseconds, in the odometry clock
        wheel_rads: Wheel angular rates in rad/s ordered RL, RR, FL, FR
        cov_rads2: 4x4 wheel rate covariance in (rad/s)^2
        steering_rad: Measured front steering angle in rad, or None
        steering_var: Steering angle variance in rad^2
    """

    t_ns: int
    wheel_rads: NDArray[np.float64]
    cov_rads2: NDArray[np.float64]
    steering_rad: float | None = None
    steering_var: float = STEERING_VARIANCE

    def __post_init__(self) -> None:
        """Validate timestamp, rates, covariance and steering."""
        _validate_timestamp(self.t_ns)
        object.__setattr__(self, "t_ns", int(self.t_ns))
        object.__setattr__(
            self, "wheel_rads", _as_float_array(self.wheel_rads, "wheel_rads", (4,))
        )
        object.__setattr__(
            self, "cov_rads2", _as_covariance(self.cov_rads2, "cov_rads2", 4)
        )
        if self.steering_rad is not None:
            steering: NDArray[np.float64] = _as_float_array(
                self.steering_rad, "steering_rad", ()
            )
            object.__setattr__(self, "steering_rad", float(steering))
        steering_var: float = float(
            _as_float_array(self.steering_var, "steering_var", ())
        )
        if steering_var <= 0.0:
            raise InputError("steering_var must be positive")
        object.__setattr__(self, "steering_var", steering_var)

    def t_sec(self) -> float:
        """Return the timestamp in seconds."""
        return ns_to_sec(self.t_ns)

    def axle_rates(self, *, front: bool) -> NDArray[np.float64]:
        """Return the (left, right) wheel rates of one axle."""
        idx: list[int] = axle_wheel_indices(front=front)
        return np.array(self.wheel_rads[idx], dtype=np.float64)

    def axle_covariance(self, *, front: bool) -> NDArray[np.float64]:
        """Return the 2x2 rate covariance of one axle."""
        idx: list[int] = axle_wheel_indices(front=front)
        return np.array(self.cov_rads2[np.ix_(idx, idx)], dtype=np.float64)


def axle_wheel_indices(*, front: bool) -> list[int]:
    """Return the (left, right) wheel indices of one axle."""
    if front:
        return [WHEEL_FL, WHEEL_FR]
    return [WHEEL_RL, WHEEL_RR]
