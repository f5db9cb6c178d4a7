################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Robust loss helpers for odometry calibration.

Each loss maps the squared whitened residual norm of an error term to a
weight in (0, 1]. The problem scales residual and Jacobian by sqrt(weight),
so an outlier contributes less to both cost and step without being removed,
and can regain full weight once the estimate moves toward it.
"""

from __future__ import annotations

import functools
import math
from dataclasses import dataclass

import numpy as np
from scipy.stats import chi2

from oasis_calibration.calibration_types.errors import InputError


# Loss identifier for plain least squares
ROBUST_NONE: str = "none"
# Loss identifier for the Huber loss
ROBUST_HUBER: str = "huber"
# Loss identifier for the Cauchy loss
ROBUST_CAUCHY: str = "cauchy"
# Loss identifier for the Blake-Zisserman loss
ROBUST_BLAKE_ZISSERMAN: str = "blake_zisserman"

# Supported loss identifiers
ROBUST_LOSSES: tuple[str, ...] = (
    ROBUST_NONE,
    ROBUST_HUBER,
    ROBUST_CAUCHY,
    ROBUST_BLAKE_ZISSERMAN,
)

# Smallest weight returned, keeping weights strictly positive
_MIN_WEIGHT: float = float(np.finfo(np.float64).tiny)


def huber_weight(sq_norm: float, scale: float) -> float:
    """Return the Huber weight for a squared residual norm."""
    if scale <= 0.0:
        return 1.0
    if sq_norm <= scale * scale:
        return 1.0
    return max(float(scale / math.sqrt(sq_norm)), _MIN_WEIGHT)


def cauchy_weight(sq_norm: float, scale: float) -> float:
    """Return the Cauchy weight for a squared residual norm."""
    if scale <= 0.0:
        return 1.0
    return max(float(1.0 / (1.0 + sq_norm / (scale * scale))), _MIN_WEIGHT)


@functools.lru_cache(maxsize=64)
def _chi2_quantile(probability: float, dim: int) -> float:
    return float(chi2.ppf(probability, dim))


def blake_zisserman_weight(
    sq_norm: float,
    dim: int,
    inlier_probability: float,
    cutoff: float,
    scale: float = 1.0,
) -> float:
    """Return the Blake-Zisserman weight exp(-s) / (exp(-s) + eps).

    s is sq_norm / scale^2, so a larger scale moves the transition outward
    the same way it does for Huber and Cauchy.

    eps = ((1 - cutoff) / cutoff) exp(-chi2_quantile(p, dim)) places the
    transition where an inlier of the given dimension would fall with
    probability inlier_probability. cutoff is the weight at that point.
    """
    delta: float = _chi2_quantile(inlier_probability, dim)
    s: float = sq_norm / (scale * scale) if scale > 0.0 else sq_norm
    log_eps: float = math.log((1.0 - cutoff) / cutoff) - delta
    # 1 / (1 + eps exp(s)), evaluated in log space
    weight: float = float(np.exp(-np.logaddexp(0.0, log_eps + s)))
    return max(weight, _MIN_WEIGHT)


@dataclass(frozen=True)
class RobustPolicy:
    """Robust weighting policy fixed at error term construction.

    Attributes:
        loss: One of ROBUST_LOSSES
        scale: Residual scale in whitened units, applied by every loss
        inlier_probability: Blake-Zisserman inlier probability
        cutoff: Blake-Zisserman weight at the inlier quantile
    """

    loss: str = ROBUST_NONE
    scale: float = 1.0
    inlier_probability: float = 0.999
    cutoff: float = 0.1

    def __post_init__(self) -> None:
        """Validate loss name and parameters."""
        loss: str = self.loss.lower()
        if loss not in ROBUST_LOSSES:
            raise InputError(f"Unknown robust loss {self.loss}")
        if self.scale <= 0.0:
            raise InputError("Robust scale must be positive")
        if not 0.0 < self.inlier_probability < 1.0:
            raise InputError("inlier_probability must be in (0, 1)")
        if not 0.0 < self.cutoff < 1.0:
            raise InputError("cutoff must be in (0, 1)")
        object.__setattr__(self, "loss", loss)

    def weight(self, sq_norm: float, dim: int) -> float:
        """Return the attenuation factor for a squared whitened norm."""
        if self.loss == ROBUST_HUBER:
            return huber_weight(sq_norm, self.scale)
        if self.loss == ROBUST_CAUCHY:
            return cauchy_weight(sq_norm, self.scale)
        if self.loss == ROBUST_BLAKE_ZISSERMAN:
            return blake_zisserman_weight(
                sq_norm, dim, self.inlier_probability, self.cutoff, self.scale
            )
        return 1.0

    def relaxed(self, factor: float) -> RobustPolicy:
        """Return the policy with its scale multiplied by factor."""
        if factor <= 0.0:
            raise InputError("Relaxation factor must be positive")
        return RobustPolicy(
            loss=self.loss,
            scale=self.scale * factor,
            inlier_probability=self.inlier_probability,
            cutoff=self.cutoff,
        )


def robust_weight(residual: np.ndarray, policy: RobustPolicy) -> float:
    """Return the scalar robust weight for a whitened residual vector."""
    vec: np.ndarray = np.asarray(residual, dtype=np.float64)
    sq_norm: float = float(np.dot(vec, vec))
    return policy.weight(sq_norm, int(vec.size))
