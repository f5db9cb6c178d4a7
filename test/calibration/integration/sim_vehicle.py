################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Simulation helpers for odometry calibration integration tests."""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field

import numpy as np
from numpy.typing import NDArray

from oasis_calibration.calibration_types.measurements import WHEEL_FL
from oasis_calibration.calibration_types.measurements import WHEEL_FR
from oasis_calibration.calibration_types.measurements import WHEEL_RL
from oasis_calibration.calibration_types.measurements import WHEEL_RR
from oasis_calibration.math_utils.linalg import SO3
from oasis_calibration.math_utils.quat import Quaternion
from oasis_calibration.models.wheel_kinematics import predict_steering_angle
from oasis_calibration.models.wheel_kinematics import wheel_rates_from_motion


# ns, pose sample interval
POSE_DT_NS: int = 100_000_000

# Number of pose samples (0 s to 9.9 s)
POSE_COUNT: int = 100

# s, time of the first odometry sample
ODOMETRY_START_SEC: float = 0.2

# s, odometry sample interval
ODOMETRY_DT_SEC: float = 0.095

# Number of odometry samples
ODOMETRY_COUNT: int = 100

# s, Simpson integration step for the vehicle position
INTEGRATION_DT_SEC: float = 5e-3

# s, central difference step for the body angular velocity
RATE_STEP_SEC: float = 1e-5


@dataclass(frozen=True)
class VehicleTruth:
    """Ground-truth calibration of the simulated vehicle.

    Attributes:
        wheel_radii: Radii [RL, RR, FL, FR] in meters
        wheel_geometry: [e_R, e_F, L] in meters
        t_io: Odometry origin in the IMU frame in meters
        q_io_wxyz: Odometry-to-IMU rotation
        delay_sec: Offset added to odometry stamps to recover the true time
        yaw_rate: Mean yaw rate of the simulated drive in rad/s
        steering: Polynomial [a0, a1, a2, a3] from steering reading to angle
    """

    wheel_radii: NDArray[np.float64] = field(
        default_factory=lambda: np.full(4, 0.3, dtype=np.float64)
    )
    wheel_geometry: NDArray[np.float64] = field(
        default_factory=lambda: np.array([0.65, 0.65, 2.7], dtype=np.float64)
    )
    t_io: NDArray[np.float64] = field(
        default_factory=lambda: np.array([0.1, 0.0, 0.2], dtype=np.float64)
    )
    q_io_wxyz: NDArray[np.float64] = field(
        default_factory=lambda: np.array([1.0, 0.0, 0.0, 0.0], dtype=np.float64)
    )
    delay_sec: float = 0.02
    yaw_rate: float = 0.1
    steering: NDArray[np.float64] = field(
        default_factory=lambda: np.array([0.02, 0.95, 0.0, 0.0], dtype=np.float64)
    )


@dataclass(frozen=True)
class PoseSample:
    """Simulated IMU pose in the world frame."""

    t_ns: int
    p_m: NDArray[np.float64]
    q_wxyz: NDArray[np.float64]


@dataclass(frozen=True)
class WheelSample:
    """Simulated wheel rates stamped in the odometry clock."""

    t_ns: int
    wheel_rads: NDArray[np.float64]
    steering_rad: float | None = None


def _speed(t_sec: float) -> float:
    return 5.0 + np.sin(0.5 * t_sec)


def _vehicle_rotation(t_sec: float, yaw_rate: float) -> NDArray[np.float64]:
    """Return R_WO with yaw, pitch and roll excitation."""
    yaw: float = yaw_rate * t_sec - 0.75 * np.cos(0.4 * t_sec) + 0.75
    pitch: float = 0.04 * np.sin(0.9 * t_sec + 0.5)
    roll: float = 0.05 * np.sin(1.3 * t_sec)
    return (
        SO3.exp(np.array([0.0, 0.0, yaw]))
        @ SO3.exp(np.array([0.0, pitch, 0.0]))
        @ SO3.exp(np.array([roll, 0.0, 0.0]))
    )


def _vehicle_velocity(t_sec: float, yaw_rate: float) -> NDArray[np.float64]:
    """Return the odometry origin velocity in the world frame."""
    return _speed(t_sec) * _vehicle_rotation(t_sec, yaw_rate)[:, 0]


def _vehicle_angular_velocity(t_sec: float, yaw_rate: float) -> NDArray[np.float64]:
    """Return the odometry-frame angular velocity by central differences."""
    R_minus: NDArray[np.float64] = _vehicle_rotation(t_sec - RATE_STEP_SEC, yaw_rate)
    R_plus: NDArray[np.float64] = _vehicle_rotation(t_sec + RATE_STEP_SEC, yaw_rate)
    return SO3.log(R_minus.T @ R_plus) / (2.0 * RATE_STEP_SEC)


def simulate_poses(
    truth: VehicleTruth,
    *,
    rng: np.random.Generator,
    position_sigma: float,
    rotation_sigma: float,
) -> list[PoseSample]:
    """Return noisy IMU poses at 10 Hz."""
    C_IO: NDArray[np.float64] = Quaternion(truth.q_io_wxyz).as_matrix()
    samples: list[PoseSample] = []
    position: NDArray[np.float64] = np.zeros(3, dtype=np.float64)
    t_prev: float = 0.0
    for i in range(POSE_COUNT):
        t_ns: int = i * POSE_DT_NS
        t_sec: float = t_ns / 1e9
        if t_sec > t_prev:
            position = position + _segment_displacement(t_prev, t_sec, truth.yaw_rate)
            t_prev = t_sec
        R_WO: NDArray[np.float64] = _vehicle_rotation(t_sec, truth.yaw_rate)
        R_WI: NDArray[np.float64] = R_WO @ C_IO.T
        p_WI: NDArray[np.float64] = position - R_WI @ truth.t_io
        p_noisy: NDArray[np.float64] = p_WI + rng.normal(0.0, position_sigma, 3)
        R_noisy: NDArray[np.float64] = R_WI @ SO3.exp(
            rng.normal(0.0, rotation_sigma, 3)
        )
        samples.append(
            PoseSample(
                t_ns=t_ns,
                p_m=p_noisy,
                q_wxyz=Quaternion.from_matrix(R_noisy).to_wxyz(),
            )
        )
    return samples


def _segment_displacement(
    t_start_sec: float, t_end_sec: float, yaw_rate: float
) -> NDArray[np.float64]:
    """Integrate the velocity over [t_start, t_end] with Simpson steps."""
    steps: int = max(int(round((t_end_sec - t_start_sec) / INTEGRATION_DT_SEC)), 1)
    dt: float = (t_end_sec - t_start_sec) / steps
    displacement: NDArray[np.float64] = np.zeros(3, dtype=np.float64)
    for k in range(steps):
        t0: float = t_start_sec + k * dt
        displacement += (
            dt
            / 6.0
            * (
                _vehicle_velocity(t0, yaw_rate)
                + 4.0 * _vehicle_velocity(t0 + 0.5 * dt, yaw_rate)
                + _vehicle_velocity(t0 + dt, yaw_rate)
            )
        )
    return displacement


def _steering_reading(coefficients: NDArray[np.float64], angle: float) -> float:
    a0, a1, a2, a3 = (float(a) for a in coefficients)
    reading: float = (angle - a0) / a1
    for _ in range(20):
        value: float = a0 + reading * (a1 + reading * (a2 + reading * a3))
        slope: float = a1 + reading * (2.0 * a2 + 3.0 * a3 * reading)
        reading -= (value - angle) / slope
    return reading


def simulate_wheels(
    truth: VehicleTruth,
    *,
    rng: np.random.Generator,
    rate_sigma: float,
    steering_sigma: float | None = None,
) -> list[WheelSample]:
    """Return noisy wheel rates stamped delay_sec early.

    Steering readings are simulated only when steering_sigma is given.
    """
    samples: list[WheelSample] = []
    for i in range(ODOMETRY_COUNT):
        t_true: float = ODOMETRY_START_SEC + ODOMETRY_DT_SEC * i
        v_O: NDArray[np.float64] = np.array([_speed(t_true), 0.0, 0.0])
        omega_O: NDArray[np.float64] = _vehicle_angular_velocity(t_true, truth.yaw_rate)
        rates: NDArray[np.float64] = np.zeros(4, dtype=np.float64)
        rates[[WHEEL_RL, WHEEL_RR]] = wheel_rates_from_motion(
            v_O,
            omega_O,
            truth.wheel_geometry,
            truth.wheel_radii[[WHEEL_RL, WHEEL_RR]],
            front=False,
        )
        rates[[WHEEL_FL, WHEEL_FR]] = wheel_rates_from_motion(
            v_O,
            omega_O,
            truth.wheel_geometry,
            truth.wheel_radii[[WHEEL_FL, WHEEL_FR]],
            front=True,
        )
        rates += rng.normal(0.0, rate_sigma, 4)
        steering: float | None = None
        if steering_sigma is not None:
            angle: float = predict_steering_angle(
                v_O, omega_O, truth.wheel_geometry
            ).angle
            steering = _steering_reading(truth.steering, angle) + float(
                rng.normal(0.0, steering_sigma)
            )
        t_stamp_ns: int = int(round((t_true - truth.delay_sec) * 1e9))
        samples.append(
            WheelSample(t_ns=t_stamp_ns, wheel_rads=rates, steering_rad=steering)
        )
    return samples
