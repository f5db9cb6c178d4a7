################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Tests for the B-spline pose trajectory."""

from __future__ import annotations

import numpy as np
import pytest
from numpy.typing import NDArray

from oasis_calibration.calibration_types.errors import InputError
from oasis_calibration.calibration_types.errors import OutOfRangeQuery
from oasis_calibration.math_utils.linalg import SO3
from oasis_calibration.trajectory.pose_spline import PoseSpline
from oasis_calibration.trajectory.pose_spline import clamped_uniform_knots
from oasis_calibration.trajectory.pose_spline import segment_count


def _times(count: int, duration: float) -> NDArray[np.float64]:
    return np.linspace(0.0, duration, count)


def test_segment_count_dense_and_sparse() -> None:
    """Check knot density for dense and sparse sequences."""
    assert segment_count(_times(101, 10.0), 5.0) == 50
    assert segment_count(_times(4, 10.0), 5.0) == 4
    assert segment_count(_times(101, 10.0), 5.0, max_knots=11) == 10


def test_segment_count_rejects_degenerate_times() -> None:
    """Check single and zero-duration sequences are rejected."""
    with pytest.raises(InputError):
        segment_count(np.array([1.0]), 5.0)
    with pytest.raises(InputError):
        segment_count(np.array([1.0, 1.0]), 5.0)


def test_clamped_knots() -> None:
    """Check clamped knots repeat the end points."""
    knots: NDArray[np.float64] = clamped_uniform_knots(1.0, 3.0, 4, 3)

    np.testing.assert_allclose(
        knots, [1.0, 1.0, 1.0, 1.0, 1.5, 2.0, 2.5, 3.0, 3.0, 3.0, 3.0]
    )


def test_fit_reproduces_cubic_motion() -> None:
    """Check a cubic spline follows a cubic position profile."""
    times: NDArray[np.float64] = _times(41, 4.0)
    positions: NDArray[np.float64] = np.stack(
        [times**3 - 2.0 * times, 0.5 * times**2, np.ones_like(times)], axis=1
    )
    rotvecs: NDArray[np.float64] = np.stack(
        [np.zeros_like(times), np.zeros_like(times), 0.1 * times], axis=1
    )

    spline: PoseSpline = PoseSpline.fit(times, positions, rotvecs, num_segments=8)

    assert spline.num_control_points() == 11
    assert spline.time_span() == (0.0, 4.0)
    np.testing.assert_allclose(
        spline.position(1.3), [1.3**3 - 2.6, 0.845, 1.0], atol=1e-3
    )
    np.testing.assert_allclose(
        spline.linear_velocity_world(1.3), [3.0 * 1.3**2 - 2.0, 1.3, 0.0], atol=1e-3
    )
    np.testing.assert_allclose(
        spline.curve(2.2, 2)[:3], [6.0 * 2.2, 1.0, 0.0], atol=1e-2
    )
    np.testing.assert_allclose(
        spline.angular_velocity_body(3.1), [0.0, 0.0, 0.1], atol=1e-6
    )


def test_body_velocities() -> None:
    """Check body-frame velocities rotate the world-frame velocity."""
    times: NDArray[np.float64] = _times(21, 2.0)
    positions: NDArray[np.float64] = np.stack(
        [3.0 * times, np.zeros_like(times), np.zeros_like(times)], axis=1
    )
    rotvecs: NDArray[np.float64] = np.tile([0.0, 0.0, 0.5], (times.size, 1))

    spline: PoseSpline = PoseSpline.fit(times, positions, rotvecs, num_segments=4)

    R: NDArray[np.float64] = SO3.exp(np.array([0.0, 0.0, 0.5]))
    np.testing.assert_allclose(spline.rotation_matrix(1.0), R, atol=1e-12)
    np.testing.assert_allclose(
        spline.linear_velocity_body(1.0), R.T @ [3.0, 0.0, 0.0], atol=1e-5
    )
    np.testing.assert_allclose(spline.angular_velocity_world(1.0), 0.0, atol=1e-10)


def test_from_poses_unwraps_rotation() -> None:
    """Check a yaw sweep through pi stays continuous."""
    times: NDArray[np.float64] = _times(31, 3.0)
    yaws: NDArray[np.float64] = 2.5 + 0.5 * times
    rotations: list[NDArray[np.float64]] = [
        SO3.exp(np.array([0.0, 0.0, yaw])) for yaw in yaws
    ]

    spline: PoseSpline = PoseSpline.from_poses(
        times, np.zeros((times.size, 3)), rotations, knots_per_second=5.0
    )

    np.testing.assert_allclose(
        spline.reference, SO3.exp(np.array([0.0, 0.0, 3.25])), atol=1e-12
    )
    assert spline.rotation_vector(2.0)[2] == pytest.approx(0.25, abs=1e-5)
    np.testing.assert_allclose(
        spline.rotation_matrix(2.0), SO3.exp(np.array([0.0, 0.0, 3.5])), atol=1e-5
    )
    assert spline.angular_velocity_body(1.4)[2] == pytest.approx(0.5, abs=1e-5)


def _wobbling_rotation(t_sec: float) -> NDArray[np.float64]:
    return (
        SO3.exp(np.array([0.0, 0.0, 0.9 * t_sec]))
        @ SO3.exp(np.array([0.0, 0.04 * np.sin(0.9 * t_sec + 0.5), 0.0]))
        @ SO3.exp(np.array([0.05 * np.sin(1.3 * t_sec), 0.0, 0.0]))
    )


def test_from_poses_follows_multi_turn_rotation() -> None:
    """Check a tilted yaw spin past a full turn is fitted without jumps."""
    times: NDArray[np.float64] = _times(101, 10.0)
    rotations: list[NDArray[np.float64]] = [_wobbling_rotation(t) for t in times]

    spline: PoseSpline = PoseSpline.from_poses(
        times, np.zeros((times.size, 3)), rotations, knots_per_second=5.0
    )

    errors: list[float] = [
        float(
            np.linalg.norm(SO3.log(_wobbling_rotation(t).T @ spline.rotation_matrix(t)))
        )
        for t in times[:-1] + 0.05
    ]
    rotvecs: NDArray[np.float64] = np.array([spline.rotation_vector(t) for t in times])

    assert max(errors) < 1e-3
    assert np.max(np.linalg.norm(np.diff(rotvecs, axis=0), axis=1)) < 0.2
    assert np.max(np.linalg.norm(rotvecs, axis=1)) < 5.0


def test_derivatives_continuous_across_interior_knots() -> None:
    """Check value and first two derivatives agree on both sides of a knot."""
    rng: np.random.Generator = np.random.default_rng(3)
    knots: NDArray[np.float64] = clamped_uniform_knots(0.0, 2.0, 4, 3)
    spline: PoseSpline = PoseSpline(knots, 4, rng.standard_normal((7, 6)))
    eps: float = 1e-10

    for knot in (0.5, 1.0, 1.5):
        for derivative in (0, 1, 2):
            np.testing.assert_allclose(
                spline.curve(knot - eps, derivative),
                spline.curve(knot + eps, derivative),
                atol=1e-6,
            )
        np.testing.assert_allclose(
            spline.rotation_matrix(knot - eps),
            spline.rotation_matrix(knot + eps),
            atol=1e-8,
        )


def test_out_of_range_query() -> None:
    """Check queries outside the span raise unless allowed."""
    times: NDArray[np.float64] = _times(11, 1.0)
    spline: PoseSpline = PoseSpline.fit(
        times, np.zeros((11, 3)), np.zeros((11, 3)), num_segments=2
    )

    with pytest.raises(OutOfRangeQuery):
        spline.position(1.01)
    with pytest.raises(OutOfRangeQuery):
        spline.position(float("nan"))
    spline.check_time(1.01, extrapolation_sec=0.02)


def test_smoothness_penalty_flattens() -> None:
    """Check a large penalty pulls noisy data toward a line."""
    rng: np.random.Generator = np.random.default_rng(1)
    times: NDArray[np.float64] = _times(51, 5.0)
    positions: NDArray[np.float64] = np.zeros((51, 3))
    positions[:, 0] = times + 0.1 * rng.standard_normal(51)

    loose: PoseSpline = PoseSpline.fit(
        times, positions, np.zeros((51, 3)), num_segments=25
    )
    stiff: PoseSpline = PoseSpline.fit(
        times, positions, np.zeros((51, 3)), num_segments=25, trans_lambda=1e6
    )

    def roughness(spline: PoseSpline) -> float:
        return float(np.sum(np.diff(spline.control_points[:, 0], n=2) ** 2))

    assert roughness(stiff) < 0.01 * roughness(loose)


def test_with_control_points_keeps_knots() -> None:
    """Check replacing control points keeps the knot vector."""
    times: NDArray[np.float64] = _times(11, 1.0)
    spline: PoseSpline = PoseSpline.fit(
        times, np.zeros((11, 3)), np.zeros((11, 3)), num_segments=2
    )
    control_points: NDArray[np.float64] = np.ones((5, 6))

    moved: PoseSpline = spline.with_control_points(control_points)

    np.testing.assert_allclose(moved.knots, spline.knots)
    np.testing.assert_allclose(moved.position(0.3), [1.0, 1.0, 1.0])
    with pytest.raises(InputError):
        spline.with_control_points(np.ones((4, 6)))
