################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Quaternion utilities using the wxyz convention."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from .linalg import SO3
from .units import NumericConstants
from .units import assert_finite


@dataclass(frozen=True)
class Quaternion:
    """Unit quaternion stored in wxyz order."""

    wxyz: NDArray[np.float64]

    def __post_init__(self) -> None:
        """Validate quaternion inputs."""
        wxyz: NDArray[np.float64] = np.asarray(self.wxyz, dtype=float)
        if wxyz.shape != (4,):
            raise ValueError("wxyz must be shape (4,)")
        assert_finite(wxyz, "wxyz")
        if float(np.linalg.norm(wxyz)) <= NumericConstants.EPS:
            raise ValueError("wxyz must have non-zero norm")
        object.__setattr__(self, "wxyz", wxyz)

    @staticmethod
    def identity() -> Quaternion:
        """Return the identity quaternion."""
        return Quaternion(np.array([1.0, 0.0, 0.0, 0.0], dtype=float))

    @staticmethod
    def from_rotvec(w: NDArray[np.float64]) -> Quaternion:
        """Create a quaternion from a rotation vector."""
        vec: NDArray[np.float64] = np.asarray(w, dtype=float)
        if vec.shape != (3,):
            raise ValueError("w must be shape (3,)")
        theta: float = float(np.linalg.norm(vec))
        half: float = 0.5 * theta
        scale: float
        if theta < NumericConstants.SMALL_ANGLE_RAD:
            scale = 0.5 - theta * theta / 48.0
        else:
            scale = float(np.sin(half)) / theta
        return Quaternion(np.concatenate([[np.cos(half)], scale * vec]))

    @staticmethod
    def from_matrix(R: NDArray[np.float64]) -> Quaternion:
        """Create a quaternion from a rotation matrix."""
        return Quaternion.from_rotvec(SO3.log(R))

    def normalized(self) -> Quaternion:
        """Return a normalized quaternion with non-negative scalar part."""
        q: NDArray[np.float64] = self.wxyz / float(np.linalg.norm(self.wxyz))
        if q[0] < 0.0:
            q = -q
        return Quaternion(q)

    def to_wxyz(self) -> NDArray[np.float64]:
        """Return a copy of the wxyz components."""
        return self.wxyz.copy()

    def as_rotvec(self) -> NDArray[np.float64]:
        """Return the rotation vector with angle in [0, pi]."""
        q: NDArray[np.float64] = self.normalized().wxyz
        xyz: NDArray[np.float64] = q[1:]
        sin_half: float = float(np.linalg.norm(xyz))
        if sin_half < NumericConstants.EPS:
            return 2.0 * xyz
        theta: float = 2.0 * float(np.arctan2(sin_half, q[0]))
        return (theta / sin_half) * xyz

    def as_matrix(self) -> NDArray[np.float64]:
        """Return the rotation matrix representation."""
        return SO3.exp(self.as_rotvec())

    def __mul__(self, other: Quaternion) -> Quaternion:
        """Return the Hamilton product self * other."""
        w1, x1, y1, z1 = (float(v) for v in self.wxyz)
        w2, x2, y2, z2 = (float(v) for v in other.wxyz)
        return Quaternion(
            np.array(
                [
                    w1 * w2 - x1 * x2 - y1 * y2 - z1 * z2,
                    w1 * x2 + x1 * w2 + y1 * z2 - z1 * y2,
                    w1 * y2 - x1 * z2 + y1 * w2 + z1 * x2,
                    w1 * z2 + x1 * y2 - y1 * x2 + z1 * w2,
                ],
                dtype=float,
            )
        )

    def apply_left_increment(self, delta: NDArray[np.float64]) -> Quaternion:
        """Return exp(delta) * self, the left-multiplicative update."""
        return (Quaternion.from_rotvec(delta) * self).normalized()
