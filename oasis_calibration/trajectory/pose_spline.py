################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""B-spline pose trajectory over position and rotation vector.

The curve value is the 6-vector [p_WB, phi] with R_WB = R_ref exp(phi), where
R_ref is a fixed reference rotation of the spline. Fitting picks the middle
pose as R_ref so the rotation vectors of a window stay small.
Control points are 6-vectors on a clamped uniform knot vector. Basis
functions come from scipy.interpolate.BSpline evaluated with identity
coefficients, so each query yields the local basis weights and their time
derivatives that error terms chain into control-point Jacobians.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
import scipy.sparse
import scipy.sparse.linalg
from numpy.typing import NDArray
from scipy.interpolate import BSpline

from oasis_calibration.calibration_types.errors import InputError
from oasis_calibration.calibration_types.errors import OutOfRangeQuery
from oasis_calibration.math_utils.linalg import SO3
from oasis_calibration.trajectory.rotation_vectors import (
    rotation_vectors_from_matrices,
)


# Default spline order (polynomial degree + 1)
SPLINE_ORDER: int = 4

# Units: 1/s. Meaning: default target knot density
KNOTS_PER_SECOND: float = 5.0

# Units: unitless. Meaning: smoothness penalty floor keeping control points
# without measurement support well posed
_MIN_LAMBDA: float = 1e-6

# Dimension of a control point: position and rotation vector
CONTROL_POINT_DIM: int = 6


def segment_count(
    times_sec: NDArray[np.float64],
    knots_per_second: float,
    max_knots: int = 0,
) -> int:
    """Return the number of spline segments for a measurement sequence.

    Dense sequences get knots_per_second * duration segments, sparse ones one
    segment per measurement. max_knots caps the number of distinct knots
    (segments + 1); zero disables the cap.
    """
    times: NDArray[np.float64] = np.asarray(times_sec, dtype=np.float64)
    if times.size < 2:
        raise InputError("At least two timestamps are required")
    elapsed: float = float(times[-1] - times[0])
    if elapsed <= 0.0:
        raise InputError("Timestamps must span a positive duration")
    if knots_per_second <= 0.0:
        raise InputError("knots_per_second must be positive")
    rate: float = float(times.size) / elapsed
    segments: int
    if rate > knots_per_second:
        segments = int(knots_per_second * elapsed)
    else:
        segments = int(times.size)
    if max_knots > 0:
        segments = min(segments, max_knots - 1)
    return max(segments, 1)


def clamped_uniform_knots(
    t_min_sec: float,
    t_max_sec: float,
    num_segments: int,
    degree: int,
) -> NDArray[np.float64]:
    """Return a clamped knot vector with uniform interior spacing."""
    if num_segments < 1:
        raise InputError("num_segments must be positive")
    if t_max_sec <= t_min_sec:
        raise InputError("Knot span must be positive")
    breaks: NDArray[np.float64] = np.linspace(t_min_sec, t_max_sec, num_segments + 1)
    return np.concatenate(
        [
            np.full(degree, t_min_sec),
            breaks,
            np.full(degree, t_max_sec),
        ]
    ).astype(np.float64)


def _second_difference(n: int) -> scipy.sparse.spmatrix:
    return scipy.sparse.diags(
        [np.ones(n - 2), -2.0 * np.ones(n - 2), np.ones(n - 2)],
        [0, 1, 2],
        shape=(n - 2, n),
    )


class PoseSpline:
    """Continuous pose trajectory backed by a uniform B-spline."""

    def __init__(
        self,
        knots: NDArray[np.float64],
        order: int,
        control_points: NDArray[np.float64],
        reference: NDArray[np.float64] | None = None,
    ) -> None:
        knot_array: NDArray[np.float64] = np.array(knots, dtype=np.float64)
        if order < 2:
            raise InputError("Spline order must be at least 2")
        if knot_array.ndim != 1 or np.any(np.diff(knot_array) < 0.0):
            raise InputError("knots must be a non-decreasing 1-D array")
        num_control_points: int = int(knot_array.size - order)
        cp: NDArray[np.float64] = np.array(control_points, dtype=np.float64)
        if cp.shape != (num_control_points, CONTROL_POINT_DIM):
            raise InputError(
                f"control_points must have shape ({num_control_points}, "
                f"{CONTROL_POINT_DIM})"
            )
        if not np.all(np.isfinite(cp)):
            raise InputError("control_points must be finite")
        R_ref: NDArray[np.float64] = np.eye(3, dtype=np.float64)
        if reference is not None:
            R_ref = np.array(reference, dtype=np.float64)
            if R_ref.shape != (3, 3) or not np.allclose(
                R_ref.T @ R_ref, np.eye(3), atol=1e-9
            ):
                raise InputError("reference must be a 3x3 rotation matrix")
        self._knots: NDArray[np.float64] = knot_array
        self._order: int = order
        self._control_points: NDArray[np.float64] = cp
        self._reference: NDArray[np.float64] = R_ref

        degree: int = order - 1
        basis: BSpline = BSpline(
            knot_array,
            np.eye(num_control_points, dtype=np.float64),
            degree,
            extrapolate=True,
        )
        self._bases: list[BSpline | None] = [basis, basis.derivative(1)]
        self._bases.append(basis.derivative(2) if degree >= 2 else None)

    @classmethod
    def fit(
        cls,
        times_sec: NDArray[np.float64],
        positions: NDArray[np.float64],
        rotation_vectors: NDArray[np.float64],
        *,
        num_segments: int,
        order: int = SPLINE_ORDER,
        trans_lambda: float = 0.0,
        rot_lambda: float = 0.0,
        reference: NDArray[np.float64] | None = None,
    ) -> PoseSpline:
        """Fit control points by regularized sparse least squares.

        Minimizes |B c - y|^2 + lambda |D c|^2 per component group, where B
        is the basis design matrix at the sample times and D the second
        difference of consecutive control points. The rotation vectors are
        taken relative to reference.
        """
        times: NDArray[np.float64] = np.asarray(times_sec, dtype=np.float64)
        curve: NDArray[np.float64] = np.hstack(
            [
                np.asarray(positions, dtype=np.float64).reshape(-1, 3),
                np.asarray(rotation_vectors, dtype=np.float64).reshape(-1, 3),
            ]
        )
        if times.ndim != 1 or curve.shape[0] != times.size:
            raise InputError("times, positions and rotations must align")
        if np.any(np.diff(times) < 0.0):
            raise InputError("times must be non-decreasing")
        if trans_lambda < 0.0 or rot_lambda < 0.0:
            raise InputError("Smoothness penalties must be non-negative")

        degree: int = order - 1
        knots: NDArray[np.float64] = clamped_uniform_knots(
            float(times[0]), float(times[-1]), num_segments, degree
        )
        n: int = int(knots.size - order)
        B = BSpline.design_matrix(times, knots, degree)
        BtB = (B.T @ B).tocsc()
        penalty = None
        if n >= 3:
            D = _second_difference(n)
            penalty = (D.T @ D).tocsc()

        control_points: NDArray[np.float64] = np.zeros(
            (n, CONTROL_POINT_DIM), dtype=np.float64
        )
        groups: tuple[tuple[slice, float], ...] = (
            (slice(0, 3), trans_lambda),
            (slice(3, 6), rot_lambda),
        )
        for columns, smoothness in groups:
            A = BtB
            if penalty is not None:
                A = (BtB + max(smoothness, _MIN_LAMBDA) * penalty).tocsc()
            rhs: NDArray[np.float64] = np.asarray(
                B.T @ curve[:, columns], dtype=np.float64
            )
            try:
                solution = scipy.sparse.linalg.splu(A).solve(rhs)
            except RuntimeError as exc:
                raise InputError("Trajectory fit is singular") from exc
            control_points[:, columns] = solution
        return cls(knots, order, control_points, reference)

    @classmethod
    def from_poses(
        cls,
        times_sec: NDArray[np.float64],
        positions: NDArray[np.float64],
        rotations: Sequence[NDArray[np.float64]],
        *,
        knots_per_second: float = KNOTS_PER_SECOND,
        max_knots: int = 0,
        order: int = SPLINE_ORDER,
        trans_lambda: float = 0.0,
        rot_lambda: float = 0.0,
    ) -> PoseSpline:
        """Fit a trajectory to a pose sequence given as rotation matrices.

        Raises:
            InputError: if the rotations cannot be unwrapped continuously
        """
        times: NDArray[np.float64] = np.asarray(times_sec, dtype=np.float64)
        if len(rotations) == 0:
            raise InputError("At least two poses are required")
        reference: NDArray[np.float64] = np.asarray(
            rotations[len(rotations) // 2], dtype=np.float64
        )
        rotvecs: NDArray[np.float64] = rotation_vectors_from_matrices(
            rotations, reference=reference
        )
        return cls.fit(
            times,
            positions,
            rotvecs,
            num_segments=segment_count(times, knots_per_second, max_knots),
            order=order,
            trans_lambda=trans_lambda,
            rot_lambda=rot_lambda,
            reference=reference,
        )

    @property
    def order(self) -> int:
        """Return the spline order."""
        return self._order

    @property
    def knots(self) -> NDArray[np.float64]:
        """Return a copy of the knot vector."""
        return self._knots.copy()

    @property
    def reference(self) -> NDArray[np.float64]:
        """Return a copy of the reference rotation R_ref."""
        return self._reference.copy()

    @property
    def control_points(self) -> NDArray[np.float64]:
        """Return a copy of the (N, 6) control points."""
        return self._control_points.copy()

    def num_control_points(self) -> int:
        """Return the number of control points."""
        return int(self._control_points.shape[0])

    def with_control_points(self, control_points: NDArray[np.float64]) -> PoseSpline:
        """Return a spline on the same knots and reference with new control points."""
        return PoseSpline(self._knots, self._order, control_points, self._reference)

    def time_span(self) -> tuple[float, float]:
        """Return the fitted [t_min, t_max] in seconds."""
        degree: int = self._order - 1
        return float(self._knots[degree]), float(self._knots[-self._order])

    def check_time(self, t_sec: float, *, extrapolation_sec: float = 0.0) -> None:
        """Raise OutOfRangeQuery unless t lies in the span plus allowance."""
        t_min, t_max = self.time_span()
        if not np.isfinite(t_sec) or not (
            t_min - extrapolation_sec <= t_sec <= t_max + extrapolation_sec
        ):
            raise OutOfRangeQuery(float(t_sec), t_min, t_max)

    def local_basis(
        self,
        t_sec: float,
        *,
        extrapolation_sec: float = 0.0,
    ) -> tuple[int, NDArray[np.float64]]:
        """Return the first control point index and the local basis.

        The basis has shape (3, order): weights, first and second time
        derivatives of the order control points starting at the index.
        """
        self.check_time(t_sec, extrapolation_sec=extrapolation_sec)
        degree: int = self._order - 1
        n: int = self.num_control_points()
        interval: int = int(np.searchsorted(self._knots, t_sec, side="right")) - 1
        interval = int(np.clip(interval, degree, n - 1))
        first: int = interval - degree
        basis: NDArray[np.float64] = np.zeros((3, self._order), dtype=np.float64)
        for row, spline in enumerate(self._bases):
            if spline is None:
                continue
            values: NDArray[np.float64] = np.asarray(spline(t_sec), dtype=np.float64)
            basis[row] = values[first : first + self._order]
        return first, basis

    def curve(self, t_sec: float, derivative: int = 0) -> NDArray[np.float64]:
        """Return [p, phi] or one of its first two time derivatives."""
        if derivative not in (0, 1, 2):
            raise InputError("derivative must be 0, 1 or 2")
        first, basis = self.local_basis(t_sec)
        local: NDArray[np.float64] = self._control_points[first : first + self._order]
        return basis[derivative] @ local

    def position(self, t_sec: float) -> NDArray[np.float64]:
        """Return the body position in the world frame."""
        return self.curve(t_sec)[:3]

    def rotation_vector(self, t_sec: float) -> NDArray[np.float64]:
        """Return the unwrapped rotation vector of R_ref^T R_WB."""
        return self.curve(t_sec)[3:]

    def rotation_matrix(self, t_sec: float) -> NDArray[np.float64]:
        """Return R_WB."""
        return self._reference @ SO3.exp(self.rotation_vector(t_sec))

    def linear_velocity_world(self, t_sec: float) -> NDArray[np.float64]:
        """Return the body velocity expressed in the world frame."""
        return self.curve(t_sec, 1)[:3]

    def linear_velocity_body(self, t_sec: float) -> NDArray[np.float64]:
        """Return the body velocity expressed in the body frame."""
        return self.rotation_matrix(t_sec).T @ self.linear_velocity_world(t_sec)

    def angular_velocity_body(self, t_sec: float) -> NDArray[np.float64]:
        """Return the body angular velocity expressed in the body frame."""
        value: NDArray[np.float64] = self.curve(t_sec)
        rate: NDArray[np.float64] = self.curve(t_sec, 1)
        return SO3.right_jacobian(value[3:]) @ rate[3:]

    def angular_velocity_world(self, t_sec: float) -> NDArray[np.float64]:
        """Return the body angular velocity expressed in the world frame."""
        return self.rotation_matrix(t_sec) @ self.angular_velocity_body(t_sec)
