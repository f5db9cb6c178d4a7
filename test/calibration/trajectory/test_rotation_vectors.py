################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Tests for rotation-vector unwrapping."""

from __future__ import annotations

import numpy as np
import pytest
from numpy.typing import NDArray

from oasis_calibration.calibration_types.errors import InputError
from oasis_calibration.math_utils.linalg import SO3
from oasis_calibration.trajectory.rotation_vectors import check_rotation_continuity
from oasis_calibration.trajectory.rotation_vectors import (
    rotation_vectors_from_matrices,
)
from oasis_calibration.trajectory.rotation_vectors import unwrap_rotation_vector
from oasis_calibration.trajectory.rotation_vectors import unwrap_rotation_vectors


def test_unwrap_across_pi() -> None:
    """Check a yaw just past pi continues from its predecessor."""
    previous: NDArray[np.float64] = np.array([0.0, 0.0, np.deg2rad(179.0)])
    wrapped: NDArray[np.float64] = SO3.log(SO3.exp(np.array([0.0, 0.0, 3.2])))

    unwrapped: NDArray[np.float64] = unwrap_rotation_vector(wrapped, previous)

    assert wrapped[2] < 0.0
    np.testing.assert_allclose(unwrapped, [0.0, 0.0, 3.2], atol=1e-9)


def test_unwrap_zero_rotation_follows_previous_turn() -> None:
    """Check an identity sample maps to the nearest full turn."""
    previous: NDArray[np.float64] = np.array([0.0, 0.0, 6.2])

    unwrapped: NDArray[np.float64] = unwrap_rotation_vector(np.zeros(3), previous)

    np.testing.assert_allclose(unwrapped, [0.0, 0.0, 2.0 * np.pi])


def test_unwrap_sequence_is_continuous() -> None:
    """Check a multi-turn sweep has no jumps after unwrapping."""
    yaws: NDArray[np.float64] = np.linspace(0.0, 4.0 * np.pi - 0.1, 50)
    rotations: list[NDArray[np.float64]] = [
        SO3.exp(np.array([0.0, 0.0, yaw])) for yaw in yaws
    ]

    rotvecs: NDArray[np.float64] = rotation_vectors_from_matrices(rotations)

    np.testing.assert_allclose(rotvecs[:, 2], yaws, atol=1e-7)
    assert np.max(np.abs(np.diff(rotvecs[:, 2]))) < 0.3


def test_initial_seed_continues_trajectory() -> None:
    """Check the first sample is unwrapped against the seed."""
    rotations: list[NDArray[np.float64]] = [SO3.exp(np.array([0.0, 0.0, 0.1]))]

    rotvecs: NDArray[np.float64] = rotation_vectors_from_matrices(
        rotations, initial=np.array([0.0, 0.0, 2.0 * np.pi])
    )

    assert rotvecs[0, 2] == pytest.approx(2.0 * np.pi + 0.1)


def test_unwrap_rejects_bad_shape() -> None:
    """Check sequences must be (N, 3)."""
    with pytest.raises(ValueError):
        unwrap_rotation_vectors(np.zeros(3))


def test_reference_keeps_tilted_spin_off_the_full_turn() -> None:
    """Check a tilted spin of 1.5 turns stays continuous about its middle."""
    yaws: NDArray[np.float64] = np.linspace(0.0, 3.0 * np.pi, 61)
    rotations: list[NDArray[np.float64]] = [
        SO3.exp(np.array([0.0, 0.0, yaw]))
        @ SO3.exp(np.array([0.05 * np.sin(2.0 * yaw), 0.03, 0.0]))
        for yaw in yaws
    ]
    reference: NDArray[np.float64] = rotations[30]

    rotvecs: NDArray[np.float64] = rotation_vectors_from_matrices(
        rotations, reference=reference
    )

    for R, rotvec in zip(rotations, rotvecs):
        np.testing.assert_allclose(reference @ SO3.exp(rotvec), R, atol=1e-6)
    assert np.max(np.linalg.norm(np.diff(rotvecs, axis=0), axis=1)) < 0.3
    assert np.max(np.linalg.norm(rotvecs, axis=1)) < 5.0


def test_continuity_check_rejects_jumps() -> None:
    """Check a step of pi or more between samples is refused."""
    smooth: NDArray[np.float64] = np.array([[0.0, 0.0, 0.0], [0.0, 0.1, 3.0]])
    jump: NDArray[np.float64] = np.array(
        [[0.0, 0.0, 0.1], [0.0, 0.0, 0.2], [-4.55, 3.02, 2.99]]
    )

    check_rotation_continuity(smooth)
    check_rotation_continuity(smooth[:1])
    with pytest.raises(InputError, match="samples 1 and 2"):
        check_rotation_continuity(jump)
