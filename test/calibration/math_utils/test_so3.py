################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Tests for SO(3) utilities."""

from __future__ import annotations

import numpy as np
import pytest
from numpy.typing import NDArray

from oasis_calibration.math_utils.linalg import SO3
from oasis_calibration.math_utils.linalg import Linalg


@pytest.mark.parametrize(
    "w",
    [
        np.array([0.0, 0.0, 0.0]),
        np.array([1e-10, -2e-10, 3e-10]),
        np.array([0.1, -0.2, 0.3]),
        np.array([1.0, 2.0, -0.5]),
        np.array([0.0, 0.0, np.pi - 1e-6]),
        (np.pi - 1e-9) * np.array([1.0, 1.0, 0.0]) / np.sqrt(2.0),
    ],
)
def test_exp_log_round_trip(w: NDArray[np.float64]) -> None:
    """Check log inverts exp including angles near pi."""
    R: NDArray[np.float64] = SO3.exp(w)

    np.testing.assert_allclose(R.T @ R, np.eye(3), atol=1e-12)
    assert np.linalg.det(R) == pytest.approx(1.0)
    np.testing.assert_allclose(SO3.log(R), w, atol=1e-7)


def test_log_at_pi_returns_pi_rotation() -> None:
    """Check a half turn maps to a rotation vector of length pi."""
    R: NDArray[np.float64] = np.diag([1.0, -1.0, -1.0])

    w: NDArray[np.float64] = SO3.log(R)

    assert np.linalg.norm(w) == pytest.approx(np.pi)
    np.testing.assert_allclose(SO3.exp(w), R, atol=1e-12)


def test_hat_vee() -> None:
    """Check hat builds the cross product matrix and vee inverts it."""
    a: NDArray[np.float64] = np.array([1.0, -2.0, 0.5])
    b: NDArray[np.float64] = np.array([0.3, 0.7, -1.1])

    np.testing.assert_allclose(SO3.hat(a) @ b, np.cross(a, b))
    np.testing.assert_allclose(SO3.vee(SO3.hat(a)), a)


@pytest.mark.parametrize(
    "w", [np.array([1e-4, 2e-4, -1e-4]), np.array([0.4, -0.3, 0.9])]
)
def test_right_jacobian_first_order(w: NDArray[np.float64]) -> None:
    """Check exp(w + d) = exp(w) exp(J_r(w) d) to first order."""
    d: NDArray[np.float64] = 1e-7 * np.array([0.3, -0.5, 0.8])

    lhs: NDArray[np.float64] = SO3.exp(w + d)
    rhs: NDArray[np.float64] = SO3.exp(w) @ SO3.exp(SO3.right_jacobian(w) @ d)

    np.testing.assert_allclose(lhs, rhs, atol=1e-13)


@pytest.mark.parametrize(
    "w", [np.array([1e-5, 0.0, 2e-5]), np.array([0.7, 0.2, -1.3])]
)
def test_jacobian_inverses(w: NDArray[np.float64]) -> None:
    """Check the inverse Jacobians invert J_r and J_l."""
    J_r: NDArray[np.float64] = SO3.right_jacobian(w)
    J_l: NDArray[np.float64] = SO3.right_jacobian(-w)

    np.testing.assert_allclose(SO3.right_jacobian_inv(w) @ J_r, np.eye(3), atol=1e-12)
    np.testing.assert_allclose(SO3.left_jacobian_inv(w) @ J_l, np.eye(3), atol=1e-12)


def test_angle() -> None:
    """Check the rotation angle of an exponential."""
    assert SO3.angle(SO3.exp(np.array([0.0, 0.6, 0.8]))) == pytest.approx(1.0)


def test_sqrt_information_whitens() -> None:
    """Check W^T W equals the inverse covariance."""
    cov: NDArray[np.float64] = np.array([[4.0, 1.0], [1.0, 2.0]])

    W: NDArray[np.float64] = Linalg.sqrt_information(cov)

    np.testing.assert_allclose(W.T @ W, np.linalg.inv(cov), atol=1e-12)
    np.testing.assert_allclose(W @ cov @ W.T, np.eye(2), atol=1e-12)


def test_sqrt_information_rejects_indefinite() -> None:
    """Check a non positive definite covariance is rejected."""
    with pytest.raises(ValueError):
        Linalg.sqrt_information(np.array([[1.0, 2.0], [2.0, 1.0]]))


def test_shape_validation() -> None:
    """Check malformed inputs are rejected."""
    with pytest.raises(ValueError):
        SO3.exp(np.zeros(4))
    with pytest.raises(ValueError):
        SO3.log(np.eye(2))
