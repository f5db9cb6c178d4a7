################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Covariance and observability diagnostics from the triangular factor.

With J = Q R the information matrix is R^T R. The marginal covariance of a
column range [a, b) is the corresponding block of (R^T R)^-1, obtained by
two triangular solves against the unit vectors of the range. When the range
ends the column order, the sum of log(R_jj) over it is half the
log-determinant of the marginal information of those parameters, which
compares calibration quality across windows without a full inverse.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import scipy.linalg
from numpy.typing import NDArray

from oasis_calibration.calibration_types.errors import ObservabilityFailure
from oasis_calibration.solver.optimizer import TriangularFactor
from oasis_calibration.state.covariance import Covariance
from oasis_calibration.state.state_mapping import StateMapping
from oasis_calibration.state.state_mapping import scalar_names


# Units: unitless. Meaning: diagonal floor relative to the column norm of R
DIAGONAL_TOLERANCE: float = 1e-12


def _check_range(R: NDArray[np.float64], start: int, stop: int) -> None:
    n: int = int(R.shape[0])
    if R.ndim != 2 or R.shape[1] != n:
        raise ValueError("R must be square")
    if not 0 <= start < stop <= n:
        raise ValueError(f"Invalid column range [{start}, {stop}) for dimension {n}")


def _check_diagonal(
    R: NDArray[np.float64],
    start: int,
    stop: int,
    tolerance: float,
) -> None:
    diag: NDArray[np.float64] = np.diag(R)[start:stop]
    column_norms: NDArray[np.float64] = np.linalg.norm(R[:, start:stop], axis=0)
    bad: NDArray[np.int64] = np.flatnonzero(diag <= tolerance * column_norms)
    bad = np.union1d(bad, np.flatnonzero(column_norms <= 0.0))
    if bad.size:
        columns: list[int] = [int(start + j) for j in bad]
        raise ObservabilityFailure(
            f"Triangular factor has non-positive diagonal at columns {columns}"
        )


def compute_marginal_covariance(
    R: NDArray[np.float64],
    start: int,
    stop: int,
    *,
    tolerance: float = DIAGONAL_TOLERANCE,
    names: tuple[str, ...] = (),
) -> Covariance:
    """Return the marginal covariance of columns [start, stop).

    Raises:
        ObservabilityFailure: when a diagonal entry of R is not positive
            relative to its column
    """
    R_in: NDArray[np.float64] = np.asarray(R, dtype=np.float64)
    _check_range(R_in, start, stop)
    n: int = int(R_in.shape[0])
    _check_diagonal(R_in, 0, n, tolerance)
    E: NDArray[np.float64] = np.zeros((n, stop - start), dtype=np.float64)
    E[start:stop, :] = np.eye(stop - start, dtype=np.float64)
    Y: NDArray[np.float64] = scipy.linalg.solve_triangular(R_in, E, trans="T")
    X: NDArray[np.float64] = scipy.linalg.solve_triangular(R_in, Y)
    return Covariance.from_block(X[start:stop, :], names)


def compute_sum_log_diag_r(
    R: NDArray[np.float64],
    start: int,
    stop: int,
    *,
    tolerance: float = DIAGONAL_TOLERANCE,
) -> float:
    """Return sum(log(R_jj)) over columns [start, stop)."""
    R_in: NDArray[np.float64] = np.asarray(R, dtype=np.float64)
    _check_range(R_in, start, stop)
    _check_diagonal(R_in, start, stop, tolerance)
    return float(np.sum(np.log(np.diag(R_in)[start:stop])))


@dataclass(frozen=True)
class CalibrationDiagnostics:
    """Covariance and information of the calibration parameters.

    Attributes:
        covariance: Marginal covariance with one name per scalar
        sum_log_diag_r: Information scalar over the same columns
        column_range: [start, stop) columns in the solve
    """

    covariance: Covariance
    sum_log_diag_r: float
    column_range: tuple[int, int]

    def standard_deviations(self) -> dict[str, float]:
        """Return one-sigma uncertainties keyed by scalar name."""
        return {
            name: float(np.sqrt(max(variance, 0.0)))
            for name, variance in self.covariance.named_variances().items()
        }


def calibration_diagnostics(
    factor: TriangularFactor,
    block_names: tuple[str, ...],
) -> CalibrationDiagnostics:
    """Return diagnostics for the active blocks among block_names."""
    mapping: StateMapping = factor.mapping
    start, stop = mapping.column_range(block_names)
    names: list[str] = []
    for block in mapping.blocks():
        if start <= block.start < stop:
            names.extend(scalar_names(block.name))
    covariance: Covariance = compute_marginal_covariance(
        factor.R, start, stop, names=tuple(names)
    )
    return CalibrationDiagnostics(
        covariance=covariance,
        sum_log_diag_r=compute_sum_log_diag_r(factor.R, start, stop),
        column_range=(start, stop),
    )
