################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Continuous rotation-vector sequences from measured orientations.

SO(3) log returns angles in [0, pi], so an orientation sequence spinning past
a half turn jumps from +pi to -pi about the same axis. Before curve fitting,
every sample is replaced by the representation axis * (angle + 2 pi s),
s an integer, closest to the previous sample.

Near a norm of 2 pi the exponential map collapses every axis onto the
identity, so a sequence that winds through a full turn loses its axis there.
Sequences are therefore expressed relative to a reference rotation inside
the sequence, which keeps a window turning less than two full turns off that
shell, and an unwrapped sequence that still steps by pi or more is refused.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
from numpy.typing import NDArray

from oasis_calibration.calibration_types.errors import InputError
from oasis_calibration.math_utils.linalg import SO3
from oasis_calibration.math_utils.units import NumericConstants


# Range of full turns tried when unwrapping one sample
_TURN_CANDIDATES: range = range(-3, 4)

# Units: rad. Meaning: largest step between consecutive unwrapped samples
MAX_ROTATION_STEP: float = np.pi


def unwrap_rotation_vector(
    rotvec: NDArray[np.float64],
    previous: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Return the representation of rotvec closest to previous."""
    vec: NDArray[np.float64] = np.asarray(rotvec, dtype=np.float64)
    prev: NDArray[np.float64] = np.asarray(previous, dtype=np.float64)
    angle: float = float(np.linalg.norm(vec))
    axis: NDArray[np.float64]
    if angle > NumericConstants.EPS:
        axis = vec / angle
    else:
        prev_norm: float = float(np.linalg.norm(prev))
        if prev_norm <= NumericConstants.EPS:
            return vec.copy()
        axis = prev / prev_norm

    best: NDArray[np.float64] = vec.copy()
    best_dist: float = float(np.linalg.norm(vec - prev))
    for turns in _TURN_CANDIDATES:
        candidate: NDArray[np.float64] = axis * (angle + 2.0 * np.pi * turns)
        dist: float = float(np.linalg.norm(candidate - prev))
        if dist < best_dist:
            best = candidate
            best_dist = dist
    return best


def unwrap_rotation_vectors(rotvecs: NDArray[np.float64]) -> NDArray[np.float64]:
    """Unwrap an (N, 3) rotation-vector sequence sample by sample."""
    values: NDArray[np.float64] = np.asarray(rotvecs, dtype=np.float64)
    if values.ndim != 2 or values.shape[1] != 3:
        raise ValueError("rotvecs must have shape (N, 3)")
    unwrapped: NDArray[np.float64] = values.copy()
    for i in range(1, values.shape[0]):
        unwrapped[i] = unwrap_rotation_vector(values[i], unwrapped[i - 1])
    return unwrapped


def check_rotation_continuity(
    rotvecs: NDArray[np.float64], max_step: float = MAX_ROTATION_STEP
) -> None:
    """Raise InputError if consecutive rotation vectors are max_step apart."""
    values: NDArray[np.float64] = np.asarray(rotvecs, dtype=np.float64)
    if values.shape[0] < 2:
        return
    steps: NDArray[np.float64] = np.linalg.norm(np.diff(values, axis=0), axis=1)
    worst: int = int(np.argmax(steps))
    if steps[worst] >= max_step:
        raise InputError(
            f"Rotation vectors jump by {steps[worst]:.3f} rad between samples "
            f"{worst} and {worst + 1}"
        )


def rotation_vectors_from_matrices(
    rotations: Sequence[NDArray[np.float64]],
    *,
    reference: NDArray[np.float64] | None = None,
    initial: NDArray[np.float64] | None = None,
) -> NDArray[np.float64]:
    """Return a continuous (N, 3) rotation-vector sequence.

    Args:
        rotations: Rotation matrices R_i in sequence order
        reference: Rotation R_ref, so that sample i is log(R_ref^T R_i).
            Identity when omitted
        initial: Seeds the unwrapping of the first sample so a sequence
            continues an existing trajectory

    Raises:
        InputError: if the unwrapped sequence is still discontinuous
    """
    R_ref_T: NDArray[np.float64] = np.eye(3, dtype=np.float64)
    if reference is not None:
        R_ref_T = np.asarray(reference, dtype=np.float64).T
    logs: NDArray[np.float64] = np.array(
        [SO3.log(R_ref_T @ R) for R in rotations], dtype=np.float64
    ).reshape(-1, 3)
    if logs.shape[0] == 0:
        return logs
    if initial is not None:
        logs[0] = unwrap_rotation_vector(logs[0], initial)
    unwrapped: NDArray[np.float64] = unwrap_rotation_vectors(logs)
    check_rotation_continuity(unwrapped)
    return unwrapped
