################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Residual and Jacobian models connecting measurements to the state.

Every term reads parameter values from a snapshot indexed by arena handle
and returns a whitened residual with Jacobian blocks keyed by handle.
Rotation blocks are differentiated with respect to a left increment
exp(delta) C. Delay-aware terms query the trajectory at
t_measurement + delay, so the delay column is d(residual)/d(query time).
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from typing import Protocol
from typing import Sequence

import numpy as np
from numpy.typing import NDArray

from oasis_calibration.calibration_types.errors import InputError
from oasis_calibration.calibration_types.measurements import OdometryMeasurement
from oasis_calibration.calibration_types.measurements import PoseMeasurement
from oasis_calibration.calibration_types.measurements import axle_wheel_indices
from oasis_calibration.math_utils.linalg import SO3
from oasis_calibration.math_utils.linalg import Linalg
from oasis_calibration.math_utils.quat import Quaternion
from oasis_calibration.models.wheel_kinematics import GEOMETRY_FRONT_HALF_TRACK
from oasis_calibration.models.wheel_kinematics import GEOMETRY_REAR_HALF_TRACK
from oasis_calibration.models.wheel_kinematics import AxleSpeeds
from oasis_calibration.models.wheel_kinematics import OdometryFrameVelocity
from oasis_calibration.models.wheel_kinematics import SteeringAngle
from oasis_calibration.models.wheel_kinematics import axle_half_track
from oasis_calibration.models.wheel_kinematics import axle_mixing_derivative
from oasis_calibration.models.wheel_kinematics import axle_mixing_matrix
from oasis_calibration.models.wheel_kinematics import is_degenerate_motion
from oasis_calibration.models.wheel_kinematics import odometry_frame_velocity
from oasis_calibration.models.wheel_kinematics import predict_axle_speeds
from oasis_calibration.models.wheel_kinematics import predict_steering_angle
from oasis_calibration.models.wheel_kinematics import steering_polynomial
from oasis_calibration.solver.robust_loss import RobustPolicy
from oasis_calibration.state.parameter_arena import BLOCK_KIND_ROTATION
from oasis_calibration.trajectory.design_variable import SPLINE_STATE_DIM
from oasis_calibration.trajectory.design_variable import TrajectoryDesignVariable
from oasis_calibration.trajectory.design_variable import TrajectorySample


Values = Sequence[NDArray[np.float64]]


@dataclass(frozen=True)
class ErrorTermLinearization:
    """Whitened residual and Jacobian blocks of one error term.

    Attributes:
        residual: Whitened residual, shape (m,)
        jacobians: (m, dim) blocks keyed by arena handle
    """

    residual: NDArray[np.float64]
    jacobians: dict[int, NDArray[np.float64]]


class ErrorTerm(Protocol):
    """Capability shared by all error terms."""

    @property
    def dimension(self) -> int:
        """Return the residual dimension."""

    @property
    def robust(self) -> RobustPolicy:
        """Return the robust weighting policy."""

    def evaluate_residual(self, values: Values) -> NDArray[np.float64]:
        """Return the whitened residual."""

    def evaluate_jacobian_blocks(
        self, values: Values
    ) -> dict[int, NDArray[np.float64]]:
        """Return the whitened Jacobian blocks keyed by handle."""

    def linearize(self, values: Values) -> ErrorTermLinearization:
        """Return residual and Jacobian blocks together."""


def _query_time(t_sec: float, delay_handle: int | None, values: Values) -> float:
    if delay_handle is None:
        return t_sec
    return t_sec + float(values[delay_handle][0])


@dataclass(frozen=True)
class PoseErrorTerm:
    """Measured pose against the trajectory pose.

    residual = W [p(t) - p_m; log(R_m^T R(t))], dimension 6.
    """

    measurement: PoseMeasurement
    trajectory: TrajectoryDesignVariable
    delay_handle: int | None = None
    robust: RobustPolicy = field(default_factory=RobustPolicy)
    sqrt_info: NDArray[np.float64] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Precompute the whitening matrix."""
        object.__setattr__(
            self, "sqrt_info", Linalg.sqrt_information(self.measurement.cov)
        )

    @property
    def dimension(self) -> int:
        """Return the residual dimension."""
        return 6

    def _raw_error(
        self, sample: TrajectorySample
    ) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        e_p: NDArray[np.float64] = sample.position - self.measurement.p_m
        E: NDArray[np.float64] = self.measurement.rotation_matrix().T @ (
            sample.rotation_matrix()
        )
        return e_p, SO3.log(E)

    def evaluate_residual(self, values: Values) -> NDArray[np.float64]:
        """Return the whitened residual."""
        t_q: float = _query_time(self.measurement.t_sec(), self.delay_handle, values)
        sample: TrajectorySample = self.trajectory.sample(t_q, values)
        e_p, e_r = self._raw_error(sample)
        return self.sqrt_info @ np.concatenate([e_p, e_r])

    def evaluate_jacobian_blocks(
        self, values: Values
    ) -> dict[int, NDArray[np.float64]]:
        """Return the whitened Jacobian blocks keyed by handle."""
        return self.linearize(values).jacobians

    def linearize(self, values: Values) -> ErrorTermLinearization:
        """Return residual and Jacobian blocks together."""
        t_q: float = _query_time(self.measurement.t_sec(), self.delay_handle, values)
        sample: TrajectorySample = self.trajectory.sample(t_q, values)
        e_p, e_r = self._raw_error(sample)

        Q_s: NDArray[np.float64] = np.zeros((6, SPLINE_STATE_DIM), dtype=np.float64)
        Q_s[0:3, 0:3] = np.eye(3)
        Q_s[3:6, 3:6] = SO3.right_jacobian_inv(e_r) @ sample.right_jacobian()
        Q_s = self.sqrt_info @ Q_s

        jacobians: dict[int, NDArray[np.float64]] = sample.control_point_jacobians(Q_s)
        if self.delay_handle is not None:
            jacobians[self.delay_handle] = sample.time_jacobian(Q_s)
        residual: NDArray[np.float64] = self.sqrt_info @ np.concatenate([e_p, e_r])
        return ErrorTermLinearization(residual=residual, jacobians=jacobians)


@dataclass(frozen=True)
class OdometryHandles:
    """Arena handles of the parameters an odometry term reads.

    Attributes:
        wheel_radii: Radii block [r_RL, r_RR, r_FL, r_FR]
        wheel_geometry: Geometry block [e_R, e_F, L]
        extrinsic_translation: t_IO block
        extrinsic_rotation: C_IO quaternion block
        delay: Odometry stream delay block, or None for no delay
        steering: Steering polynomial block [a0, a1, a2, a3], or None
    """

    wheel_radii: int
    wheel_geometry: int
    extrinsic_translation: int
    extrinsic_rotation: int
    delay: int | None
    steering: int | None = None


@dataclass(frozen=True)
class _OdometryState:
    sample: TrajectorySample
    odometry: OdometryFrameVelocity
    dv_ds: NDArray[np.float64]
    domega_ds: NDArray[np.float64]


def _odometry_state(
    t_sec: float,
    trajectory: TrajectoryDesignVariable,
    handles: OdometryHandles,
    values: Values,
    *,
    with_jacobians: bool,
) -> _OdometryState:
    t_q: float = _query_time(t_sec, handles.delay, values)
    sample: TrajectorySample = trajectory.sample(t_q, values)
    C_IO: NDArray[np.float64] = Quaternion(
        values[handles.extrinsic_rotation]
    ).as_matrix()
    odometry: OdometryFrameVelocity = odometry_frame_velocity(
        sample.linear_velocity_body(),
        sample.angular_velocity_body(),
        np.asarray(values[handles.extrinsic_translation], dtype=np.float64),
        C_IO,
    )
    dv_ds: NDArray[np.float64] = np.zeros((3, SPLINE_STATE_DIM), dtype=np.float64)
    domega_ds: NDArray[np.float64] = np.zeros((3, SPLINE_STATE_DIM), dtype=np.float64)
    if with_jacobians:
        Q_v, Q_w = sample.body_velocity_jacobians()
        dv_ds = odometry.dv_dv_I @ Q_v + odometry.dv_domega_I @ Q_w
        domega_ds = odometry.domega_domega_I @ Q_w
    return _OdometryState(sample, odometry, dv_ds, domega_ds)


def wheel_sqrt_information(
    measurement: OdometryMeasurement,
    radii: NDArray[np.float64],
    geometry: NDArray[np.float64],
    *,
    front: bool,
) -> NDArray[np.float64]:
    """Return the whitening of one axle's (speed, yaw rate) residual.

    Wheel rate noise maps through the radii and the axle mixing matrix:
    cov = M D cov_rates D M^T with D = diag(r_left, r_right).
    """
    idx: list[int] = axle_wheel_indices(front=front)
    D: NDArray[np.float64] = np.diag(np.asarray(radii, dtype=np.float64)[idx])
    M: NDArray[np.float64] = axle_mixing_matrix(axle_half_track(geometry, front=front))
    cov_rates: NDArray[np.float64] = measurement.axle_covariance(front=front)
    cov: NDArray[np.float64] = M @ D @ cov_rates @ D @ M.T
    return Linalg.sqrt_information(cov)


@dataclass(frozen=True)
class WheelErrorTerm:
    """Wheel rates of one axle against trajectory motion.

    residual = W M(e) (predicted_speeds - radii * measured_rates), a
    (speed, yaw rate) pair. The front flag selects the steered front-axle
    model instead of the rear-axle default. W is fixed at construction.
    """

    measurement: OdometryMeasurement
    trajectory: TrajectoryDesignVariable
    handles: OdometryHandles
    sqrt_info: NDArray[np.float64]
    front: bool = False
    robust: RobustPolicy = field(default_factory=RobustPolicy)

    @property
    def dimension(self) -> int:
        """Return the residual dimension."""
        return 2

    def is_degenerate(self, values: Values) -> bool:
        """Return True when the predicted motion carries no information."""
        state: _OdometryState = _odometry_state(
            self.measurement.t_sec(),
            self.trajectory,
            self.handles,
            values,
            with_jacobians=False,
        )
        return is_degenerate_motion(state.odometry.v_O, state.odometry.omega_O)

    def _errors(
        self, state: _OdometryState, values: Values
    ) -> tuple[AxleSpeeds, NDArray[np.float64], NDArray[np.float64], float]:
        geometry: NDArray[np.float64] = np.asarray(
            values[self.handles.wheel_geometry], dtype=np.float64
        )
        radii: NDArray[np.float64] = np.asarray(
            values[self.handles.wheel_radii], dtype=np.float64
        )
        predicted: AxleSpeeds = predict_axle_speeds(
            state.odometry.v_O, state.odometry.omega_O, geometry, front=self.front
        )
        rates: NDArray[np.float64] = self.measurement.axle_rates(front=self.front)
        measured: NDArray[np.float64] = (
            radii[axle_wheel_indices(front=self.front)] * rates
        )
        half_track: float = axle_half_track(geometry, front=self.front)
        return predicted, predicted.speeds - measured, rates, half_track

    def evaluate_residual(self, values: Values) -> NDArray[np.float64]:
        """Return the whitened residual."""
        state: _OdometryState = _odometry_state(
            self.measurement.t_sec(),
            self.trajectory,
            self.handles,
            values,
            with_jacobians=False,
        )
        _, speed_error, _, half_track = self._errors(state, values)
        return self.sqrt_info @ axle_mixing_matrix(half_track) @ speed_error

    def evaluate_jacobian_blocks(
        self, values: Values
    ) -> dict[int, NDArray[np.float64]]:
        """Return the whitened Jacobian blocks keyed by handle."""
        return self.linearize(values).jacobians

    def linearize(self, values: Values) -> ErrorTermLinearization:
        """Return residual and Jacobian blocks together."""
        state: _OdometryState = _odometry_state(
            self.measurement.t_sec(),
            self.trajectory,
            self.handles,
            values,
            with_jacobians=True,
        )
        predicted, speed_error, rates, half_track = self._errors(state, values)
        M: NDArray[np.float64] = axle_mixing_matrix(half_track)
        WM: NDArray[np.float64] = self.sqrt_info @ M
        odometry: OdometryFrameVelocity = state.odometry

        Q_s: NDArray[np.float64] = WM @ (
            predicted.d_v @ state.dv_ds + predicted.d_omega @ state.domega_ds
        )
        jacobians: dict[int, NDArray[np.float64]] = (
            state.sample.control_point_jacobians(Q_s)
        )
        jacobians[self.handles.extrinsic_translation] = WM @ predicted.d_v @ (
            odometry.dv_dt
        )
        jacobians[self.handles.extrinsic_rotation] = WM @ (
            predicted.d_v @ odometry.dv_drot + predicted.d_omega @ odometry.domega_drot
        )

        J_radii: NDArray[np.float64] = np.zeros((2, 4), dtype=np.float64)
        J_radii[:, axle_wheel_indices(front=self.front)] = -WM @ np.diag(rates)
        jacobians[self.handles.wheel_radii] = J_radii

        J_geometry: NDArray[np.float64] = WM @ predicted.d_geometry
        half_track_index: int = (
            GEOMETRY_FRONT_HALF_TRACK if self.front else GEOMETRY_REAR_HALF_TRACK
        )
        J_geometry[:, half_track_index] += self.sqrt_info @ (
            axle_mixing_derivative(half_track) @ speed_error
        )
        jacobians[self.handles.wheel_geometry] = J_geometry

        if self.handles.delay is not None:
            jacobians[self.handles.delay] = state.sample.time_jacobian(Q_s)
        residual: NDArray[np.float64] = WM @ speed_error
        return ErrorTermLinearization(residual=residual, jacobians=jacobians)


@dataclass(frozen=True)
class SteeringErrorTerm:
    """Steering sensor reading against the kinematic front steering angle.

    residual = (atan(L omega_z / v_x) - poly(a, s_m)) / sigma, dimension 1.
    """

    measurement: OdometryMeasurement
    trajectory: TrajectoryDesignVariable
    handles: OdometryHandles
    robust: RobustPolicy = field(default_factory=RobustPolicy)
    steering: int = field(init=False, repr=False)
    measured: float = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Require a steering reading and a steering block."""
        if self.measurement.steering_rad is None:
            raise InputError("Steering term needs a steering measurement")
        if self.handles.steering is None:
            raise InputError("Steering term needs a steering block")
        object.__setattr__(self, "steering", self.handles.steering)
        object.__setattr__(self, "measured", self.measurement.steering_rad)

    @property
    def dimension(self) -> int:
        """Return the residual dimension."""
        return 1

    @property
    def _sqrt_info(self) -> float:
        return 1.0 / float(np.sqrt(self.measurement.steering_var))

    def is_degenerate(self, values: Values) -> bool:
        """Return True when the predicted motion carries no information."""
        state: _OdometryState = _odometry_state(
            self.measurement.t_sec(),
            self.trajectory,
            self.handles,
            values,
            with_jacobians=False,
        )
        return is_degenerate_motion(state.odometry.v_O, state.odometry.omega_O)

    def _error(
        self, state: _OdometryState, values: Values
    ) -> tuple[SteeringAngle, NDArray[np.float64], float]:
        predicted: SteeringAngle = predict_steering_angle(
            state.odometry.v_O,
            state.odometry.omega_O,
            np.asarray(values[self.handles.wheel_geometry], dtype=np.float64),
        )
        mapped, powers = steering_polynomial(
            np.asarray(values[self.steering], dtype=np.float64), self.measured
        )
        return predicted, powers, predicted.angle - mapped

    def evaluate_residual(self, values: Values) -> NDArray[np.float64]:
        """Return the whitened residual."""
        state: _OdometryState = _odometry_state(
            self.measurement.t_sec(),
            self.trajectory,
            self.handles,
            values,
            with_jacobians=False,
        )
        _, _, error = self._error(state, values)
        return np.array([self._sqrt_info * error], dtype=np.float64)

    def evaluate_jacobian_blocks(
        self, values: Values
    ) -> dict[int, NDArray[np.float64]]:
        """Return the whitened Jacobian blocks keyed by handle."""
        return self.linearize(values).jacobians

    def linearize(self, values: Values) -> ErrorTermLinearization:
        """Return residual and Jacobian blocks together."""
        state: _OdometryState = _odometry_state(
            self.measurement.t_sec(),
            self.trajectory,
            self.handles,
            values,
            with_jacobians=True,
        )
        predicted, powers, error = self._error(state, values)
        w: float = self._sqrt_info
        odometry: OdometryFrameVelocity = state.odometry
        d_v: NDArray[np.float64] = w * predicted.d_v[np.newaxis, :]
        d_omega: NDArray[np.float64] = w * predicted.d_omega[np.newaxis, :]

        Q_s: NDArray[np.float64] = d_v @ state.dv_ds + d_omega @ state.domega_ds
        jacobians: dict[int, NDArray[np.float64]] = (
            state.sample.control_point_jacobians(Q_s)
        )
        jacobians[self.handles.extrinsic_translation] = d_v @ odometry.dv_dt
        jacobians[self.handles.extrinsic_rotation] = (
            d_v @ odometry.dv_drot + d_omega @ odometry.domega_drot
        )
        jacobians[self.handles.wheel_geometry] = w * predicted.d_geometry[np.newaxis, :]
        jacobians[self.steering] = -w * powers[np.newaxis, :]
        if self.handles.delay is not None:
            jacobians[self.handles.delay] = state.sample.time_jacobian(Q_s)
        return ErrorTermLinearization(
            residual=np.array([w * error], dtype=np.float64), jacobians=jacobians
        )


@dataclass(frozen=True)
class NonholonomicErrorTerm:
    """Zero lateral and vertical velocity of the odometry origin.

    residual = W [v_O,y, v_O,z], dimension 2.
    """

    t_sec: float
    trajectory: TrajectoryDesignVariable
    handles: OdometryHandles
    sqrt_info: NDArray[np.float64]
    robust: RobustPolicy = field(default_factory=RobustPolicy)

    @property
    def dimension(self) -> int:
        """Return the residual dimension."""
        return 2

    def evaluate_residual(self, values: Values) -> NDArray[np.float64]:
        """Return the whitened residual."""
        state: _OdometryState = _odometry_state(
            self.t_sec, self.trajectory, self.handles, values, with_jacobians=False
        )
        return self.sqrt_info @ state.odometry.v_O[1:3]

    def evaluate_jacobian_blocks(
        self, values: Values
    ) -> dict[int, NDArray[np.float64]]:
        """Return the whitened Jacobian blocks keyed by handle."""
        return self.linearize(values).jacobians

    def linearize(self, values: Values) -> ErrorTermLinearization:
        """Return residual and Jacobian blocks together."""
        state: _OdometryState = _odometry_state(
            self.t_sec, self.trajectory, self.handles, values, with_jacobians=True
        )
        odometry: OdometryFrameVelocity = state.odometry
        W: NDArray[np.float64] = self.sqrt_info
        Q_s: NDArray[np.float64] = W @ state.dv_ds[1:3]
        jacobians: dict[int, NDArray[np.float64]] = (
            state.sample.control_point_jacobians(Q_s)
        )
        jacobians[self.handles.extrinsic_translation] = W @ odometry.dv_dt[1:3]
        jacobians[self.handles.extrinsic_rotation] = W @ odometry.dv_drot[1:3]
        if self.handles.delay is not None:
            jacobians[self.handles.delay] = state.sample.time_jacobian(Q_s)
        return ErrorTermLinearization(
            residual=W @ odometry.v_O[1:3],
            jacobians=jacobians,
        )


@dataclass(frozen=True)
class PriorErrorTerm:
    """Gaussian prior on one parameter block.

    Euclidean blocks: residual = W (x - mean).
    Rotation blocks: residual = W log(C C_mean^T).
    """

    handle: int
    mean: NDArray[np.float64]
    sqrt_info: NDArray[np.float64]
    kind: str
    robust: RobustPolicy = field(default_factory=RobustPolicy)

    @property
    def dimension(self) -> int:
        """Return the residual dimension."""
        return int(self.sqrt_info.shape[0])

    def _error(self, values: Values) -> NDArray[np.float64]:
        value: NDArray[np.float64] = np.asarray(values[self.handle], dtype=np.float64)
        if self.kind == BLOCK_KIND_ROTATION:
            C: NDArray[np.float64] = Quaternion(value).as_matrix()
            C_mean: NDArray[np.float64] = Quaternion(self.mean).as_matrix()
            return SO3.log(C @ C_mean.T)
        return value - self.mean

    def evaluate_residual(self, values: Values) -> NDArray[np.float64]:
        """Return the whitened residual."""
        return self.sqrt_info @ self._error(values)

    def evaluate_jacobian_blocks(
        self, values: Values
    ) -> dict[int, NDArray[np.float64]]:
        """Return the whitened Jacobian blocks keyed by handle."""
        return self.linearize(values).jacobians

    def linearize(self, values: Values) -> ErrorTermLinearization:
        """Return residual and Jacobian blocks together."""
        error: NDArray[np.float64] = self._error(values)
        J: NDArray[np.float64] = self.sqrt_info
        if self.kind == BLOCK_KIND_ROTATION:
            J = self.sqrt_info @ SO3.left_jacobian_inv(error)
        return ErrorTermLinearization(
            residual=self.sqrt_info @ error,
            jacobians={self.handle: J},
        )
