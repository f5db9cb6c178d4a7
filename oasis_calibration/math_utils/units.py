################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Numeric constants and finiteness checks."""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray


class NumericConstants:
    """Numeric constants used by math utilities."""

    # Generic tolerance for divisions and normalizations
    EPS: float = 1e-12

    # Machine epsilon for float64
    MACHINE_EPS: float = float(np.finfo(np.float64).eps)

    # Angle below which rotation Jacobians switch to their Taylor series
    SMALL_ANGLE_RAD: float = 1e-3


def assert_finite(x: NDArray[np.float64], name: str) -> None:
    """Raise ValueError when the array contains non-finite values."""
    if not np.all(np.isfinite(x)):
        raise ValueError(f"{name} must be finite")
