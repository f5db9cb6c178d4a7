################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Trajectory control points as estimation state.

A TrajectorySample holds the local spline state s = [p, phi, p_dot, phi_dot]
at one query time together with the basis weights that produced it. Error
terms express their residual derivatives with respect to s as a (m, 12)
matrix Q_s; the sample chains that matrix into per-control-point blocks and
into the derivative with respect to the query time, which is how a stream
delay receives its Jacobian column.
"""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from typing import Sequence

import numpy as np
from numpy.typing import NDArray

from oasis_calibration.math_utils.linalg import SO3
from oasis_calibration.state.parameter_arena import ParameterArena
from oasis_calibration.state.state_mapping import trajectory_block_name
from oasis_calibration.trajectory.pose_spline import CONTROL_POINT_DIM
from oasis_calibration.trajectory.pose_spline import PoseSpline


# Dimension of the local spline state [p, phi, p_dot, phi_dot]
SPLINE_STATE_DIM: int = 12

# Units: rad. Meaning: central-difference step for d(omega)/d(phi)
_ROTATION_FD_STEP: float = 1e-6


@dataclass(frozen=True)
class TrajectorySample:
    """Trajectory state at one query time.

    Attributes:
        t_sec: Query time in seconds
        handles: Arena handles of the contributing control points
        basis: (3, order) basis weights and their first two time derivatives
        value: [p, phi] at t_sec
        rate: First time derivative of [p, phi]
        accel: Second time derivative of [p, phi]
        reference: Reference rotation R_ref of the trajectory
    """

    t_sec: float
    handles: tuple[int, ...]
    basis: NDArray[np.float64]
    value: NDArray[np.float64]
    rate: NDArray[np.float64]
    accel: NDArray[np.float64]
    reference: NDArray[np.float64] = field(
        default_factory=lambda: np.eye(3, dtype=np.float64)
    )

    @property
    def position(self) -> NDArray[np.float64]:
        """Return p_WB."""
        return self.value[:3]

    @property
    def rotation_vector(self) -> NDArray[np.float64]:
        """Return phi, the rotation of R_ref^T R_WB."""
        return self.value[3:]

    def rotation_matrix(self) -> NDArray[np.float64]:
        """Return R_WB = R_ref exp(phi)."""
        return self.reference @ SO3.exp(self.rotation_vector)

    def right_jacobian(self) -> NDArray[np.float64]:
        """Return J_r at the sample rotation vector."""
        return SO3.right_jacobian(self.rotation_vector)

    def linear_velocity_body(self) -> NDArray[np.float64]:
        """Return v_B = R_WB^T p_dot."""
        return self.rotation_matrix().T @ self.rate[:3]

    def angular_velocity_body(self) -> NDArray[np.float64]:
        """Return omega_B = J_r(phi) phi_dot."""
        return self.right_jacobian() @ self.rate[3:]

    def state_rate(self) -> NDArray[np.float64]:
        """Return ds/dt for s = [p, phi, p_dot, phi_dot]."""
        return np.concatenate([self.rate, self.accel])

    def body_velocity_jacobians(
        self,
    ) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Return d(v_B)/ds and d(omega_B)/ds, each (3, 12).

        d(v_B)/d(phi) = [v_B]x J_r(phi) follows from the right perturbation
        of R_WB, which R_ref does not affect. d(omega_B)/d(phi) is evaluated
        by central differences.
        """
        R: NDArray[np.float64] = self.rotation_matrix()
        J_r: NDArray[np.float64] = self.right_jacobian()
        v_B: NDArray[np.float64] = R.T @ self.rate[:3]

        Q_v: NDArray[np.float64] = np.zeros((3, SPLINE_STATE_DIM), dtype=np.float64)
        Q_v[:, 3:6] = SO3.hat(v_B) @ J_r
        Q_v[:, 6:9] = R.T

        Q_w: NDArray[np.float64] = np.zeros((3, SPLINE_STATE_DIM), dtype=np.float64)
        phi: NDArray[np.float64] = self.rotation_vector
        phi_dot: NDArray[np.float64] = self.rate[3:]
        for axis in range(3):
            step: NDArray[np.float64] = np.zeros(3, dtype=np.float64)
            step[axis] = _ROTATION_FD_STEP
            plus: NDArray[np.float64] = SO3.right_jacobian(phi + step) @ phi_dot
            minus: NDArray[np.float64] = SO3.right_jacobian(phi - step) @ phi_dot
            Q_w[:, 3 + axis] = (plus - minus) / (2.0 * _ROTATION_FD_STEP)
        Q_w[:, 9:12] = J_r
        return Q_v, Q_w

    def control_point_jacobians(
        self,
        Q_s: NDArray[np.float64],
    ) -> dict[int, NDArray[np.float64]]:
        """Chain d(residual)/ds into (m, 6) blocks per control point."""
        Q: NDArray[np.float64] = np.asarray(Q_s, dtype=np.float64)
        jacobians: dict[int, NDArray[np.float64]] = {}
        for j, handle in enumerate(self.handles):
            b: float = float(self.basis[0, j])
            db: float = float(self.basis[1, j])
            block: NDArray[np.float64] = np.empty(
                (Q.shape[0], CONTROL_POINT_DIM), dtype=np.float64
            )
            block[:, 0:3] = Q[:, 0:3] * b + Q[:, 6:9] * db
            block[:, 3:6] = Q[:, 3:6] * b + Q[:, 9:12] * db
            jacobians[handle] = block
        return jacobians

    def time_jacobian(self, Q_s: NDArray[np.float64]) -> NDArray[np.float64]:
        """Chain d(residual)/ds into the (m, 1) query-time derivative."""
        Q: NDArray[np.float64] = np.asarray(Q_s, dtype=np.float64)
        return (Q @ self.state_rate()).reshape(-1, 1)


class TrajectoryDesignVariable:
    """Registers a spline's control points in an arena and samples them."""

    def __init__(self, spline: PoseSpline) -> None:
        self._spline: PoseSpline = spline
        self._handles: tuple[int, ...] = ()

    @property
    def spline(self) -> PoseSpline:
        """Return the spline whose knots define the trajectory."""
        return self._spline

    @property
    def handles(self) -> tuple[int, ...]:
        """Return the control point handles in index order."""
        return self._handles

    def time_span(self) -> tuple[float, float]:
        """Return the trajectory span in seconds."""
        return self._spline.time_span()

    def register(
        self, arena: ParameterArena, *, active: bool = True
    ) -> tuple[int, ...]:
        """Add one arena block per control point."""
        if self._handles:
            raise ValueError("Trajectory is already registered")
        control_points: NDArray[np.float64] = self._spline.control_points
        self._handles = tuple(
            arena.add_block(trajectory_block_name(i), control_points[i], active=active)
            for i in range(control_points.shape[0])
        )
        return self._handles

    def sample(
        self,
        t_sec: float,
        values: Sequence[NDArray[np.float64]],
        *,
        extrapolation_sec: float = 0.0,
    ) -> TrajectorySample:
        """Evaluate the trajectory from arena values at a query time."""
        if not self._handles:
            raise ValueError("Trajectory is not registered")
        first, basis = self._spline.local_basis(
            t_sec, extrapolation_sec=extrapolation_sec
        )
        handles: tuple[int, ...] = self._handles[first : first + self._spline.order]
        local: NDArray[np.float64] = np.vstack([values[h] for h in handles])
        curve: NDArray[np.float64] = basis @ local
        return TrajectorySample(
            t_sec=float(t_sec),
            handles=handles,
            basis=basis,
            value=curve[0],
            rate=curve[1],
            accel=curve[2],
            reference=self._spline.reference,
        )

    def read_back(self, arena: ParameterArena) -> PoseSpline:
        """Return the spline with the arena's current control points."""
        control_points: NDArray[np.float64] = np.vstack(
            [arena.value(handle) for handle in self._handles]
        )
        return self._spline.with_control_points(control_points)
