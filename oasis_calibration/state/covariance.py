################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Covariance container for calibration parameter blocks."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from oasis_calibration.calibration_types.errors import InputError


# Symmetry tolerance relative to the largest entry
SYM_TOL: float = 1e-9

# Default PSD tolerance for eigenvalue checks
PSD_TOL: float = 1e-12


class CovarianceError(InputError):
    """Raised when covariance matrices are invalid or unsupported."""


@dataclass(frozen=True)
class Covariance:
    """Symmetric covariance matrix with optional scalar names.

    Attributes:
        P: Symmetric covariance matrix with shape (N, N)
        names: One name per row, or empty when unnamed
    """

    P: np.ndarray
    names: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Validate covariance shape, finiteness, symmetry and names."""
        P: np.ndarray = np.asarray(self.P, dtype=np.float64)
        if P.ndim != 2 or P.shape[0] != P.shape[1]:
            raise CovarianceError("Covariance must be a square matrix")
        if not np.all(np.isfinite(P)):
            raise CovarianceError("Covariance contains non-finite values")
        scale: float = max(float(np.max(np.abs(P))) if P.size else 0.0, 1.0)
        if not np.allclose(P, P.T, rtol=0.0, atol=SYM_TOL * scale):
            raise CovarianceError("Covariance must be symmetric")
        if self.names and len(self.names) != P.shape[0]:
            raise CovarianceError("names must match the covariance dimension")
        object.__setattr__(self, "P", P)
        object.__setattr__(self, "names", tuple(self.names))

    @classmethod
    def from_block(cls, P: np.ndarray, names: tuple[str, ...] = ()) -> Covariance:
        """Build a covariance from a nearly symmetric numerical block."""
        mat: np.ndarray = np.asarray(P, dtype=np.float64)
        return cls(0.5 * (mat + mat.T), names)

    def dim(self) -> int:
        """Return the dimension of the covariance matrix."""
        return int(self.P.shape[0])

    def as_array(self) -> np.ndarray:
        """Return a defensive copy of the covariance matrix."""
        return self.P.copy()

    def variances(self) -> np.ndarray:
        """Return the diagonal of the covariance."""
        return np.diag(self.P).copy()

    def named_variances(self) -> dict[str, float]:
        """Return the diagonal keyed by scalar name."""
        if not self.names:
            raise CovarianceError("Covariance has no scalar names")
        return {
            name: float(value) for name, value in zip(self.names, np.diag(self.P))
        }

    def is_psd(self, *, tol: float = PSD_TOL) -> bool:
        """Return True when the covariance is positive semi-definite."""
        eigvals: np.ndarray = np.linalg.eigvalsh(self.P)
        return bool(np.min(eigvals) >= -tol)
