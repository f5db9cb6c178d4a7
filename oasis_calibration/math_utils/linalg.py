################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Linear algebra utilities for rotations and matrices.

Rotation Jacobians follow the right-perturbation convention

    exp(phi + delta) ~= exp(phi) exp(J_r(phi) delta)

so that the body angular velocity of R(t) = exp(phi(t)) is
J_r(phi) phi_dot.
"""

from __future__ import annotations

import numpy as np
import scipy.linalg
from numpy.typing import NDArray

from .units import NumericConstants
from .units import assert_finite


class SO3:
    """SO(3) rotation utilities."""

    @staticmethod
    def hat(w: NDArray[np.float64]) -> NDArray[np.float64]:
        """Return the skew-symmetric matrix for a rotation vector."""
        vec: NDArray[np.float64] = np.asarray(w, dtype=float)
        Linalg.ensure_shape(vec, (3,), "w")
        wx: float = float(vec[0])
        wy: float = float(vec[1])
        wz: float = float(vec[2])
        return np.array(
            [
                [0.0, -wz, wy],
                [wz, 0.0, -wx],
                [-wy, wx, 0.0],
            ],
            dtype=float,
        )

    @staticmethod
    def vee(W: NDArray[np.float64]) -> NDArray[np.float64]:
        """Return the rotation vector from a skew-symmetric matrix."""
        mat: NDArray[np.float64] = np.asarray(W, dtype=float)
        Linalg.ensure_shape(mat, (3, 3), "W")
        return np.array([mat[2, 1], mat[0, 2], mat[1, 0]], dtype=float)

    @staticmethod
    def exp(w: NDArray[np.float64]) -> NDArray[np.float64]:
        """Exponentiate a rotation vector to a rotation matrix."""
        vec: NDArray[np.float64] = np.asarray(w, dtype=float)
        Linalg.ensure_shape(vec, (3,), "w")
        assert_finite(vec, "w")
        theta: float = float(np.linalg.norm(vec))
        W: NDArray[np.float64] = SO3.hat(vec)
        eye: NDArray[np.float64] = np.eye(3, dtype=float)
        if theta < 1e-8:
            return eye + W + 0.5 * (W @ W)
        A: float = float(np.sin(theta)) / theta
        B: float = (1.0 - float(np.cos(theta))) / (theta * theta)
        return eye + A * W + B * (W @ W)

    @staticmethod
    def log(R: NDArray[np.float64]) -> NDArray[np.float64]:
        """Compute the rotation vector from a rotation matrix.

        The returned angle lies in [0, pi]. Near pi the axis is recovered from
        the symmetric part of R, where the skew part vanishes.
        """
        mat: NDArray[np.float64] = np.asarray(R, dtype=float)
        Linalg.ensure_shape(mat, (3, 3), "R")
        assert_finite(mat, "R")
        cos_theta: float = float((np.trace(mat) - 1.0) * 0.5)
        cos_theta = float(np.clip(cos_theta, -1.0, 1.0))
        theta: float = float(np.arccos(cos_theta))
        skew: NDArray[np.float64] = SO3.vee(mat - mat.T)
        if theta < 1e-8:
            return 0.5 * skew
        sin_theta: float = float(np.sin(theta))
        if sin_theta > NumericConstants.SMALL_ANGLE_RAD or theta < 0.5 * np.pi:
            return (theta / (2.0 * sin_theta)) * skew

        # Angle close to pi: (R + R^T) / 2 = cos(theta) I + (1 - cos(theta)) a a^T
        sym: NDArray[np.float64] = 0.5 * (mat + mat.T)
        outer: NDArray[np.float64] = (sym - cos_theta * np.eye(3)) / (1.0 - cos_theta)
        idx: int = int(np.argmax(np.diag(outer)))
        axis: NDArray[np.float64] = outer[:, idx] / np.sqrt(max(outer[idx, idx], 0.0))
        axis = axis / np.linalg.norm(axis)
        if float(axis @ skew) < 0.0:
            axis = -axis
        return theta * axis

    @staticmethod
    def right_jacobian(w: NDArray[np.float64]) -> NDArray[np.float64]:
        """Return the right Jacobian J_r of SO(3) at a rotation vector."""
        vec: NDArray[np.float64] = np.asarray(w, dtype=float)
        Linalg.ensure_shape(vec, (3,), "w")
        theta: float = float(np.linalg.norm(vec))
        W: NDArray[np.float64] = SO3.hat(vec)
        a: float
        b: float
        if theta < NumericConstants.SMALL_ANGLE_RAD:
            theta2: float = theta * theta
            a = 0.5 - theta2 / 24.0 + theta2 * theta2 / 720.0
            b = 1.0 / 6.0 - theta2 / 120.0 + theta2 * theta2 / 5040.0
        else:
            a = (1.0 - float(np.cos(theta))) / (theta * theta)
            b = (theta - float(np.sin(theta))) / (theta * theta * theta)
        return np.eye(3, dtype=float) - a * W + b * (W @ W)

    @staticmethod
    def right_jacobian_inv(w: NDArray[np.float64]) -> NDArray[np.float64]:
        """Return the inverse right Jacobian of SO(3) at a rotation vector."""
        vec: NDArray[np.float64] = np.asarray(w, dtype=float)
        Linalg.ensure_shape(vec, (3,), "w")
        theta: float = float(np.linalg.norm(vec))
        W: NDArray[np.float64] = SO3.hat(vec)
        c: float
        if theta < NumericConstants.SMALL_ANGLE_RAD:
            theta2: float = theta * theta
            c = 1.0 / 12.0 + theta2 / 720.0 + theta2 * theta2 / 30240.0
        else:
            c = 1.0 / (theta * theta) - (1.0 + float(np.cos(theta))) / (
                2.0 * theta * float(np.sin(theta))
            )
        return np.eye(3, dtype=float) + 0.5 * W + c * (W @ W)

    @staticmethod
    def left_jacobian_inv(w: NDArray[np.float64]) -> NDArray[np.float64]:
        """Return the inverse left Jacobian, J_l^-1(w) = J_r^-1(-w)."""
        return SO3.right_jacobian_inv(-np.asarray(w, dtype=float))

    @staticmethod
    def angle(R: NDArray[np.float64]) -> float:
        """Return the rotation angle of a rotation matrix."""
        mat: NDArray[np.float64] = np.asarray(R, dtype=float)
        Linalg.ensure_shape(mat, (3, 3), "R")
        cos_theta: float = float((np.trace(mat) - 1.0) * 0.5)
        cos_theta = float(np.clip(cos_theta, -1.0, 1.0))
        return float(np.arccos(cos_theta))


class Linalg:
    """General linear algebra helpers."""

    @staticmethod
    def ensure_shape(x: NDArray[np.float64], shape: tuple[int, ...], name: str) -> None:
        """Ensure an array has the expected shape."""
        if x.shape != shape:
            raise ValueError(f"{name} must have shape {shape}")

    @staticmethod
    def sqrt_information(cov: NDArray[np.float64]) -> NDArray[np.float64]:
        """Return W with W^T W = cov^-1, the whitening matrix of a covariance.

        W is the inverse of the lower Cholesky factor of cov.
        """
        mat: NDArray[np.float64] = np.asarray(cov, dtype=float)
        if mat.ndim != 2 or mat.shape[0] != mat.shape[1]:
            raise ValueError("cov must be a square matrix")
        assert_finite(mat, "cov")
        sym: NDArray[np.float64] = 0.5 * (mat + mat.T)
        try:
            L: NDArray[np.float64] = np.linalg.cholesky(sym)
        except np.linalg.LinAlgError as exc:
            raise ValueError("cov must be positive definite") from exc
        eye: NDArray[np.float64] = np.eye(mat.shape[0], dtype=float)
        return np.asarray(
            scipy.linalg.solve_triangular(L, eye, lower=True),
            dtype=float,
        )
