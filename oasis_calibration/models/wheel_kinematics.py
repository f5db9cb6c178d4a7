################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Wheel kinematics of a four-wheeled vehicle.

Frames:
    IMU frame (I): frame of the trajectory, body velocities v_I, omega_I
    Odometry frame (O): centered on the rear axle, x forward, y left, z up

Extrinsics:
    C_IO rotates odometry-frame vectors into the IMU frame
    t_IO is the odometry origin expressed in the IMU frame

Rear wheels roll along x at lateral offsets +/- e_R. Front wheels sit at
x = L with lateral offsets +/- e_F and are steered, so their rolling speed is
the horizontal speed of the contact point.

The front steering angle of the equivalent single-track vehicle is
atan(L omega_z / v_x). The steering sensor reading maps to it through the
polynomial a0 + a1 s + a2 s^2 + a3 s^3.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from oasis_calibration.math_utils.linalg import SO3
from oasis_calibration.math_utils.units import NumericConstants


# Index of the rear half-track in the geometry block
GEOMETRY_REAR_HALF_TRACK: int = 0
# Index of the front half-track in the geometry block
GEOMETRY_FRONT_HALF_TRACK: int = 1
# Index of the axle separation in the geometry block
GEOMETRY_AXLE_SEPARATION: int = 2


@dataclass(frozen=True)
class OdometryFrameVelocity:
    """Odometry-frame velocities with their partial derivatives.

    Attributes:
        v_O: Linear velocity of the odometry origin in the odometry frame
        omega_O: Angular velocity in the odometry frame
        dv_dv_I: d(v_O)/d(v_I)
        dv_domega_I: d(v_O)/d(omega_I)
        dv_dt: d(v_O)/d(t_IO)
        dv_drot: d(v_O)/d(delta), C_IO perturbed as exp(delta) C_IO
        domega_domega_I: d(omega_O)/d(omega_I)
        domega_drot: d(omega_O)/d(delta)
    """

    v_O: NDArray[np.float64]
    omega_O: NDArray[np.float64]
    dv_dv_I: NDArray[np.float64]
    dv_domega_I: NDArray[np.float64]
    dv_dt: NDArray[np.float64]
    dv_drot: NDArray[np.float64]
    domega_domega_I: NDArray[np.float64]
    domega_drot: NDArray[np.float64]


def odometry_frame_velocity(
    v_I: NDArray[np.float64],
    omega_I: NDArray[np.float64],
    t_IO: NDArray[np.float64],
    C_IO: NDArray[np.float64],
) -> OdometryFrameVelocity:
    """Transfer IMU body velocities to the odometry frame.

    v_O = C_IO^T (v_I + omega_I x t_IO), omega_O = C_IO^T omega_I
    """
    C_T: NDArray[np.float64] = np.asarray(C_IO, dtype=np.float64).T
    u: NDArray[np.float64] = v_I + np.cross(omega_I, t_IO)
    return OdometryFrameVelocity(
        v_O=C_T @ u,
        omega_O=C_T @ omega_I,
        dv_dv_I=C_T,
        dv_domega_I=-C_T @ SO3.hat(t_IO),
        dv_dt=C_T @ SO3.hat(omega_I),
        dv_drot=C_T @ SO3.hat(u),
        domega_domega_I=C_T,
        domega_drot=C_T @ SO3.hat(omega_I),
    )


@dataclass(frozen=True)
class AxleSpeeds:
    """Predicted (left, right) wheel rolling speeds of one axle.

    Attributes:
        speeds: Rolling speeds in m/s
        d_v: d(speeds)/d(v_O), (2, 3)
        d_omega: d(speeds)/d(omega_O), (2, 3)
        d_geometry: d(speeds)/d([e_R, e_F, L]), (2, 3)
    """

    speeds: NDArray[np.float64]
    d_v: NDArray[np.float64]
    d_omega: NDArray[np.float64]
    d_geometry: NDArray[np.float64]


def predict_axle_speeds(
    v_O: NDArray[np.float64],
    omega_O: NDArray[np.float64],
    geometry: NDArray[np.float64],
    *,
    front: bool,
) -> AxleSpeeds:
    """Predict wheel rolling speeds from odometry-frame motion."""
    v_x: float = float(v_O[0])
    v_y: float = float(v_O[1])
    w_z: float = float(omega_O[2])
    d_v: NDArray[np.float64] = np.zeros((2, 3), dtype=np.float64)
    d_omega: NDArray[np.float64] = np.zeros((2, 3), dtype=np.float64)
    d_geometry: NDArray[np.float64] = np.zeros((2, 3), dtype=np.float64)

    if not front:
        e_R: float = float(geometry[GEOMETRY_REAR_HALF_TRACK])
        speeds: NDArray[np.float64] = np.array(
            [v_x - e_R * w_z, v_x + e_R * w_z], dtype=np.float64
        )
        d_v[:, 0] = 1.0
        d_omega[:, 2] = [-e_R, e_R]
        d_geometry[:, GEOMETRY_REAR_HALF_TRACK] = [-w_z, w_z]
        return AxleSpeeds(speeds, d_v, d_omega, d_geometry)

    e_F: float = float(geometry[GEOMETRY_FRONT_HALF_TRACK])
    axle: float = float(geometry[GEOMETRY_AXLE_SEPARATION])
    lateral: float = v_y + axle * w_z
    longitudinal: NDArray[np.float64] = np.array(
        [v_x - e_F * w_z, v_x + e_F * w_z], dtype=np.float64
    )
    speeds = np.hypot(longitudinal, lateral)
    sides: NDArray[np.float64] = np.array([-1.0, 1.0], dtype=np.float64)
    for i in range(2):
        norm: float = max(float(speeds[i]), NumericConstants.EPS)
        a: float = float(longitudinal[i])
        d_v[i, 0] = a / norm
        d_v[i, 1] = lateral / norm
        d_omega[i, 2] = (sides[i] * e_F * a + axle * lateral) / norm
        d_geometry[i, GEOMETRY_FRONT_HALF_TRACK] = sides[i] * w_z * a / norm
        d_geometry[i, GEOMETRY_AXLE_SEPARATION] = w_z * lateral / norm
    return AxleSpeeds(speeds, d_v, d_omega, d_geometry)


def axle_mixing_matrix(half_track: float) -> NDArray[np.float64]:
    """Return M mapping (left, right) speeds to (speed, yaw rate)."""
    return np.array(
        [
            [0.5, 0.5],
            [-0.5 / half_track, 0.5 / half_track],
        ],
        dtype=np.float64,
    )


def axle_mixing_derivative(half_track: float) -> NDArray[np.float64]:
    """Return dM/d(half_track)."""
    scale: float = 0.5 / (half_track * half_track)
    return np.array(
        [
            [0.0, 0.0],
            [scale, -scale],
        ],
        dtype=np.float64,
    )


def axle_half_track(geometry: NDArray[np.float64], *, front: bool) -> float:
    """Return the half-track of the front or rear axle."""
    if front:
        return float(geometry[GEOMETRY_FRONT_HALF_TRACK])
    return float(geometry[GEOMETRY_REAR_HALF_TRACK])


def wheel_rates_from_motion(
    v_O: NDArray[np.float64],
    omega_O: NDArray[np.float64],
    geometry: NDArray[np.float64],
    radii: NDArray[np.float64],
    *,
    front: bool,
) -> NDArray[np.float64]:
    """Return the (left, right) wheel angular rates that a motion produces."""
    axle_speeds: AxleSpeeds = predict_axle_speeds(v_O, omega_O, geometry, front=front)
    return axle_speeds.speeds / np.asarray(radii, dtype=np.float64)


def is_degenerate_motion(
    v_O: NDArray[np.float64],
    omega_O: NDArray[np.float64],
) -> bool:
    """Return True when forward speed and yaw rate are numerically zero."""
    eps: float = NumericConstants.MACHINE_EPS
    return abs(float(v_O[0])) < eps and abs(float(omega_O[2])) < eps


@dataclass(frozen=True)
class SteeringAngle:
    """Kinematic front steering angle with its partial derivatives.

    Attributes:
        angle: Steering angle in rad, in (-pi/2, pi/2]
        d_v: d(angle)/d(v_O), (3,)
        d_omega: d(angle)/d(omega_O), (3,)
        d_geometry: d(angle)/d([e_R, e_F, L]), (3,)
    """

    angle: float
    d_v: NDArray[np.float64]
    d_omega: NDArray[np.float64]
    d_geometry: NDArray[np.float64]


def predict_steering_angle(
    v_O: NDArray[np.float64],
    omega_O: NDArray[np.float64],
    geometry: NDArray[np.float64],
) -> SteeringAngle:
    """Predict the front steering angle from odometry-frame motion.

    Evaluated as atan2(sign(v_x) L omega_z, |v_x|), which equals
    atan(L omega_z / v_x) and stays finite when reversing or turning in place.
    """
    v_x: float = float(v_O[0])
    w_z: float = float(omega_O[2])
    axle: float = float(geometry[GEOMETRY_AXLE_SEPARATION])
    sign: float = 1.0 if v_x >= 0.0 else -1.0
    x: float = abs(v_x)
    y: float = sign * axle * w_z
    norm2: float = max(x * x + y * y, NumericConstants.EPS)

    d_v: NDArray[np.float64] = np.zeros(3, dtype=np.float64)
    d_omega: NDArray[np.float64] = np.zeros(3, dtype=np.float64)
    d_geometry: NDArray[np.float64] = np.zeros(3, dtype=np.float64)
    d_v[0] = -sign * y / norm2
    d_omega[2] = sign * axle * x / norm2
    d_geometry[GEOMETRY_AXLE_SEPARATION] = sign * w_z * x / norm2
    return SteeringAngle(float(np.arctan2(y, x)), d_v, d_omega, d_geometry)


def steering_polynomial(
    coefficients: NDArray[np.float64], measured: float
) -> tuple[float, NDArray[np.float64]]:
    """Return a0 + a1 s + a2 s^2 + a3 s^3 and its gradient in the coefficients."""
    powers: NDArray[np.float64] = np.power(
        float(measured), np.arange(4, dtype=np.float64)
    )
    return float(np.dot(coefficients, powers)), powers
