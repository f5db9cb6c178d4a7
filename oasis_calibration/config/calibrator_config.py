################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""High-level configuration wrapper for odometry calibration."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from oasis_calibration.calibration_types.errors import InputError
from oasis_calibration.config.calibrator_params import CalibratorParams
from oasis_calibration.config.calibrator_params import CalibratorParamsError
from oasis_calibration.solver.robust_loss import ROBUST_LOSSES
from oasis_calibration.solver.robust_loss import RobustPolicy


class CalibratorConfigError(InputError):
    """Raised when calibrator configuration validation fails."""


@dataclass(frozen=True)
class CalibratorConfig:
    """Convenience wrapper around calibrator parameters."""

    params: CalibratorParams

    def __init__(self, params: CalibratorParams) -> None:
        """Initialize the configuration wrapper and validate."""
        object.__setattr__(self, "params", params)
        self.validate()

    def validate(self) -> None:
        """Validate parameter invariants and cross-namespace policies."""
        try:
            self.params.validate()
        except CalibratorParamsError as exc:
            raise CalibratorConfigError(str(exc)) from exc

        for name, loss in (
            ("robust.pose_loss", self.params.robust.pose_loss),
            ("robust.odometry_loss", self.params.robust.odometry_loss),
        ):
            if loss.lower() not in ROBUST_LOSSES:
                raise CalibratorConfigError(
                    f"{name} must be one of {', '.join(ROBUST_LOSSES)}"
                )

        window_sec: float = self.params.window.duration_sec
        if self.params.window.incremental:
            if self.params.window.retain_sec >= window_sec:
                raise CalibratorConfigError(
                    "window.retain_sec must be shorter than window.duration_sec"
                )
        if 2.0 * self.params.delay.bound_sec >= window_sec:
            raise CalibratorConfigError(
                "delay.bound_sec must be less than half of window.duration_sec"
            )

        odometry = self.params.odometry_noise
        if not (
            odometry.use_rear_wheels
            or odometry.use_front_wheels
            or odometry.use_nonholonomic
        ):
            raise CalibratorConfigError("At least one odometry term must be enabled")

    def pose_robust_policy(self) -> RobustPolicy:
        """Return the robust policy for pose terms."""
        robust = self.params.robust
        return RobustPolicy(
            loss=robust.pose_loss,
            scale=robust.pose_scale,
            inlier_probability=robust.inlier_probability,
            cutoff=robust.cutoff,
        )

    def odometry_robust_policy(self) -> RobustPolicy:
        """Return the robust policy for wheel and nonholonomic terms."""
        robust = self.params.robust
        return RobustPolicy(
            loss=robust.odometry_loss,
            scale=robust.odometry_scale,
            inlier_probability=robust.inlier_probability,
            cutoff=robust.cutoff,
        )

    def delay_stream(self) -> str:
        """Return the configured odometry stream name."""
        return self.params.delay.stream


def load_calibrator_config(path: str | Path) -> CalibratorConfig:
    """Load and validate a YAML configuration file."""
    config_path: Path = Path(path)
    try:
        text: str = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CalibratorConfigError(f"Cannot read {config_path}: {exc}") from exc
    try:
        data: Any = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise CalibratorConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
    if data is None:
        data = {}
    try:
        params: CalibratorParams = CalibratorParams.from_mapping(data)
    except CalibratorParamsError as exc:
        raise CalibratorConfigError(str(exc)) from exc
    return CalibratorConfig(params)
