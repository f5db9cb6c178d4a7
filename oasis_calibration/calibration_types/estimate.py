################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Static calibration estimate carried forward between windows."""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace

import numpy as np
from numpy.typing import NDArray

from oasis_calibration.calibration_types.errors import InputError
from oasis_calibration.config.calibrator_params import CalibratorParams
from oasis_calibration.math_utils.quat import Quaternion
from oasis_calibration.state.state_mapping import BLOCK_NAME_EXTRINSIC_ROTATION
from oasis_calibration.state.state_mapping import BLOCK_NAME_EXTRINSIC_TRANSLATION
from oasis_calibration.state.state_mapping import BLOCK_NAME_STEERING
from oasis_calibration.state.state_mapping import BLOCK_NAME_WHEEL_GEOMETRY
from oasis_calibration.state.state_mapping import BLOCK_NAME_WHEEL_RADII
from oasis_calibration.state.state_mapping import delay_block_name
from oasis_calibration.state.state_mapping import scalar_names


def _vector(value: NDArray[np.float64], name: str, size: int) -> NDArray[np.float64]:
    array: NDArray[np.float64] = np.array(value, dtype=np.float64).reshape(-1)
    if array.shape != (size,) or not np.all(np.isfinite(array)):
        raise InputError(f"{name} must be {size} finite values")
    return array


@dataclass(frozen=True)
class CalibrationEstimate:
    """Current values of the static calibration parameters.

    Attributes:
        wheel_radii: Radii [RL, RR, FL, FR] in meters
        wheel_geometry: [e_R, e_F, L] in meters
        t_io: Odometry origin in the IMU frame in meters
        q_io_wxyz: Odometry-to-IMU rotation as a unit quaternion
        delays: Delay in seconds keyed by stream name
        steering: Steering polynomial [a0, a1, a2, a3]
    """

    wheel_radii: NDArray[np.float64]
    wheel_geometry: NDArray[np.float64]
    t_io: NDArray[np.float64]
    q_io_wxyz: NDArray[np.float64]
    delays: dict[str, float] = field(default_factory=dict)
    steering: NDArray[np.float64] = field(
        default_factory=lambda: np.array([0.0, 1.0, 0.0, 0.0], dtype=np.float64)
    )

    def __post_init__(self) -> None:
        """Validate shapes and normalize the rotation."""
        object.__setattr__(
            self, "wheel_radii", _vector(self.wheel_radii, "wheel_radii", 4)
        )
        object.__setattr__(
            self, "wheel_geometry", _vector(self.wheel_geometry, "wheel_geometry", 3)
        )
        object.__setattr__(self, "t_io", _vector(self.t_io, "t_io", 3))
        q: NDArray[np.float64] = _vector(self.q_io_wxyz, "q_io_wxyz", 4)
        object.__setattr__(self, "q_io_wxyz", Quaternion(q).normalized().to_wxyz())
        object.__setattr__(
            self, "delays", {str(k): float(v) for k, v in self.delays.items()}
        )
        object.__setattr__(self, "steering", _vector(self.steering, "steering", 4))

    @classmethod
    def from_params(cls, params: CalibratorParams) -> CalibrationEstimate:
        """Return the nominal estimate from configuration."""
        return cls(
            wheel_radii=params.vehicle.wheel_radii,
            wheel_geometry=params.vehicle.wheel_geometry(),
            t_io=params.vehicle.extrinsic_translation,
            q_io_wxyz=params.vehicle.extrinsic_rotation_wxyz,
            delays={params.delay.stream: params.delay.initial_sec},
            steering=params.vehicle.steering_coefficients,
        )

    def delay(self, stream: str) -> float:
        """Return the delay of a stream, zero when unknown."""
        return self.delays.get(stream, 0.0)

    def with_delay(self, stream: str, delay_sec: float) -> CalibrationEstimate:
        """Return a copy with one stream delay replaced."""
        delays: dict[str, float] = dict(self.delays)
        delays[stream] = float(delay_sec)
        return replace(self, delays=delays)

    def named_values(self) -> dict[str, float]:
        """Return every scalar keyed by its report name.

        The rotation is reported as a rotation vector.
        """
        values: dict[str, float] = {}
        blocks: tuple[tuple[str, NDArray[np.float64]], ...] = (
            (BLOCK_NAME_WHEEL_RADII, self.wheel_radii),
            (BLOCK_NAME_WHEEL_GEOMETRY, self.wheel_geometry),
            (BLOCK_NAME_EXTRINSIC_TRANSLATION, self.t_io),
            (
                BLOCK_NAME_EXTRINSIC_ROTATION,
                Quaternion(self.q_io_wxyz).as_rotvec(),
            ),
            (BLOCK_NAME_STEERING, self.steering),
        )
        for block_name, vector in blocks:
            for name, value in zip(scalar_names(block_name), vector):
                values[name] = float(value)
        for stream, delay_sec in self.delays.items():
            values[delay_block_name(stream)] = delay_sec
        return values
