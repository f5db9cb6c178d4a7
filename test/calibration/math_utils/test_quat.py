################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Tests for quaternion utilities."""

from __future__ import annotations

import numpy as np
import pytest
from numpy.typing import NDArray

from oasis_calibration.math_utils.linalg import SO3
from oasis_calibration.math_utils.quat import Quaternion


def test_rotvec_matrix_agree() -> None:
    """Check the quaternion matrix matches the SO(3) exponential."""
    w: NDArray[np.float64] = np.array([0.2, -0.4, 0.1])

    q: Quaternion = Quaternion.from_rotvec(w)

    np.testing.assert_allclose(q.as_matrix(), SO3.exp(w), atol=1e-12)
    np.testing.assert_allclose(q.as_rotvec(), w, atol=1e-12)
    assert np.linalg.norm(q.wxyz) == pytest.approx(1.0)


def test_product_composes_rotations() -> None:
    """Check the Hamilton product matches matrix composition."""
    a: Quaternion = Quaternion.from_rotvec(np.array([0.3, 0.0, 0.2]))
    b: Quaternion = Quaternion.from_rotvec(np.array([-0.1, 0.5, 0.0]))

    np.testing.assert_allclose(
        (a * b).as_matrix(), a.as_matrix() @ b.as_matrix(), atol=1e-12
    )
    np.testing.assert_allclose(
        (a * Quaternion.from_rotvec(-a.as_rotvec())).to_wxyz(),
        Quaternion.identity().to_wxyz(),
        atol=1e-12,
    )


def test_normalized_has_non_negative_scalar() -> None:
    """Check normalization picks the w >= 0 hemisphere."""
    q: Quaternion = Quaternion(np.array([-2.0, 0.0, 0.0, 0.0]))

    np.testing.assert_allclose(q.normalized().to_wxyz(), [1.0, 0.0, 0.0, 0.0])


def test_left_increment() -> None:
    """Check the increment multiplies on the left."""
    q: Quaternion = Quaternion.from_rotvec(np.array([0.1, 0.2, 0.3]))
    delta: NDArray[np.float64] = np.array([0.0, 0.05, -0.02])

    updated: Quaternion = q.apply_left_increment(delta)

    np.testing.assert_allclose(
        updated.as_matrix(), SO3.exp(delta) @ q.as_matrix(), atol=1e-12
    )


def test_from_matrix_round_trip() -> None:
    """Check conversion from a rotation matrix."""
    R: NDArray[np.float64] = SO3.exp(np.array([1.0, -0.5, 2.0]))

    np.testing.assert_allclose(Quaternion.from_matrix(R).as_matrix(), R, atol=1e-12)


def test_rejects_invalid() -> None:
    """Check zero and malformed quaternions are rejected."""
    with pytest.raises(ValueError):
        Quaternion(np.zeros(4))
    with pytest.raises(ValueError):
        Quaternion(np.ones(3))
    with pytest.raises(ValueError):
        Quaternion(np.array([1.0, np.nan, 0.0, 0.0]))
