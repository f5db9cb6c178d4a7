################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Structured configuration schema for odometry calibration."""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import field
from dataclasses import fields
from dataclasses import replace
from typing import Any
from typing import Mapping

import numpy as np

from oasis_calibration.calibration_types.errors import InputError


# Window duration in seconds
WINDOW_DURATION_SEC: float = 10.0
# Solve once this many measurements are buffered (0 means unlimited)
WINDOW_MAX_MEASUREMENTS: int = 0
# Retain a trailing interval and trajectory tail between windows
WINDOW_INCREMENTAL: bool = False
# Trailing interval kept for the next window in incremental mode, in seconds
WINDOW_RETAIN_SEC: float = 0.0

# Log solver iterations at INFO instead of DEBUG
VERBOSE: bool = False

# Spline order (4 is cubic)
SPLINE_ORDER: int = 4
# Target knot density in knots per second
SPLINE_KNOTS_PER_SECOND: float = 5.0
# Maximum number of knots (0 means unlimited)
SPLINE_MAX_KNOTS: int = 0
# Smoothness penalty on translation control points
SPLINE_TRANS_LAMBDA: float = 0.0
# Smoothness penalty on rotation control points
SPLINE_ROT_LAMBDA: float = 0.0

# Pose position variance in m^2 for measurements built from raw values
POSE_POSITION_VARIANCE: float = 1e-4
# Pose rotation variance in rad^2 for measurements built from raw values
POSE_ROTATION_VARIANCE: float = 1e-7

# Left wheel angular rate variance in (rad/s)^2
ODOMETRY_LW_VARIANCE: float = 1e-3
# Right wheel angular rate variance in (rad/s)^2
ODOMETRY_RW_VARIANCE: float = 1e-3
# Lateral velocity constraint variance in (m/s)^2
ODOMETRY_VY_VARIANCE: float = 1e-1
# Vertical velocity constraint variance in (m/s)^2
ODOMETRY_VZ_VARIANCE: float = 1e-1
# Attach lateral/vertical velocity constraints to odometry measurements
ODOMETRY_USE_NONHOLONOMIC: bool = True
# Attach rear-axle wheel terms
ODOMETRY_USE_REAR_WHEELS: bool = True
# Attach front-axle wheel terms
ODOMETRY_USE_FRONT_WHEELS: bool = True
# Steering angle variance in rad^2
ODOMETRY_STEERING_VARIANCE: float = 1e-3
# Attach steering terms to odometry measurements that carry a steering angle
ODOMETRY_USE_STEERING: bool = True

# Maximum delay magnitude in seconds
DELAY_BOUND_SEC: float = 0.05
# Initial delay estimate in seconds
DELAY_INITIAL_SEC: float = 0.0
# Estimate the odometry delay (False holds it at its current value)
DELAY_ESTIMATE: bool = True
# Stream name of the odometry delay parameter
DELAY_STREAM: str = "wheels"

# Nominal wheel radius in meters
VEHICLE_WHEEL_RADIUS: float = 0.3
# Nominal rear half-track in meters
VEHICLE_REAR_HALF_TRACK: float = 0.65
# Nominal front half-track in meters
VEHICLE_FRONT_HALF_TRACK: float = 0.65
# Nominal axle separation in meters
VEHICLE_AXLE_SEPARATION: float = 2.7
# Nominal odometry origin in the IMU frame in meters
VEHICLE_EXTRINSIC_TRANSLATION: np.ndarray = np.zeros(3, dtype=np.float64)
# Nominal odometry-to-IMU rotation as a wxyz quaternion
VEHICLE_EXTRINSIC_ROTATION_WXYZ: np.ndarray = np.array(
    [1.0, 0.0, 0.0, 0.0], dtype=np.float64
)
# Nominal steering polynomial [a0, a1, a2, a3] from measured to actual angle
VEHICLE_STEERING_COEFFICIENTS: np.ndarray = np.array(
    [0.0, 1.0, 0.0, 0.0], dtype=np.float64
)

# Prior variance on wheel radii (None means free, 0 means fixed)
PRIOR_WHEEL_RADII_VARIANCE: float | None = None
# Prior variance on wheel geometry (None means free, 0 means fixed)
PRIOR_WHEEL_GEOMETRY_VARIANCE: float | None = 0.0
# Prior variance on extrinsic translation (None means free, 0 means fixed)
PRIOR_EXTRINSIC_TRANSLATION_VARIANCE: float | None = None
# Prior variance on extrinsic rotation (None means free, 0 means fixed)
PRIOR_EXTRINSIC_ROTATION_VARIANCE: float | None = None
# Prior variance on steering coefficients (None means free, 0 means fixed)
PRIOR_STEERING_VARIANCE: float | None = None

# Robust loss for pose terms
ROBUST_POSE_LOSS: str = "none"
# Robust scale for pose terms in whitened units
ROBUST_POSE_SCALE: float = 1.0
# Robust loss for wheel and nonholonomic terms. Under blake_zisserman, terms
# far outside the inlier region at the initial guess start near zero weight
ROBUST_ODOMETRY_LOSS: str = "none"
# Robust scale for wheel and nonholonomic terms in whitened units
ROBUST_ODOMETRY_SCALE: float = 1.0
# Blake-Zisserman inlier probability
ROBUST_INLIER_PROBABILITY: float = 0.999
# Blake-Zisserman weight at the inlier quantile
ROBUST_CUTOFF: float = 0.1

# Maximum Gauss-Newton iterations per window
SOLVER_MAX_ITERATIONS: int = 20
# Relative cost change below which the solve has converged
SOLVER_CONVERGENCE_DELTA_J: float = 1e-6
# Step norm below which the solve has converged
SOLVER_CONVERGENCE_DELTA_X: float = 1e-8
# Normalized pivot below which a column is rank deficient
SOLVER_RANK_TOLERANCE: float = 1e-10
# Worker threads for error term evaluation (1 disables the pool)
SOLVER_NUM_THREADS: int = 1
# Accept windows that hit the iteration budget
SOLVER_ACCEPT_MAX_ITERATIONS: bool = False
# Robust scale multiplier for one retry after non-convergence (0 disables)
SOLVER_RETRY_RELAX_FACTOR: float = 0.0

# Directory for per-window reports (None disables saving)
SAVE_OUTPUT_DIR: str | None = None
# Use atomic write for persistence
SAVE_ATOMIC_WRITE: bool = True

# Keys that must be present in a configuration mapping
REQUIRED_KEYS: tuple[str, ...] = (
    "window.duration_sec",
    "verbose",
    "delay.bound_sec",
    "splines.knots_per_second",
    "splines.trans_lambda",
    "splines.rot_lambda",
    "odometry_noise.lw_variance",
    "odometry_noise.rw_variance",
    "odometry_noise.vy_variance",
    "odometry_noise.vz_variance",
)


class CalibratorParamsError(InputError):
    """Raised when calibrator parameter validation fails."""


def _as_float_array(value: Any, name: str, size: int) -> np.ndarray:
    """Coerce a value to a finite float64 numpy array with shape (size,)."""
    array: np.ndarray = np.asarray(value, dtype=np.float64)
    if array.shape != (size,):
        raise CalibratorParamsError(f"{name} must have shape ({size},)")
    if not np.all(np.isfinite(array)):
        raise CalibratorParamsError(f"{name} must contain finite values")
    return array


def _require_positive(value: float, name: str) -> None:
    """Require a positive value."""
    if value <= 0.0:
        raise CalibratorParamsError(f"{name} must be positive")


def _require_non_negative(value: float, name: str) -> None:
    """Require a non-negative value."""
    if value < 0.0:
        raise CalibratorParamsError(f"{name} must be non-negative")


def _validate_optional_non_negative(value: float | None, name: str) -> None:
    """Validate an optional non-negative parameter."""
    if value is None:
        return
    _require_non_negative(value, name)


def _require_int(value: int, name: str, *, minimum: int) -> None:
    """Require an integer no smaller than minimum."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise CalibratorParamsError(f"{name} must be an int")
    if value < minimum:
        raise CalibratorParamsError(f"{name} must be at least {minimum}")


@dataclass(frozen=True)
class WindowParams:
    """Window sizing and carry-forward policy."""

    # Window duration in seconds
    duration_sec: float = WINDOW_DURATION_SEC
    # Solve once this many measurements are buffered (0 means unlimited)
    max_measurements: int = WINDOW_MAX_MEASUREMENTS
    # Retain a trailing interval and trajectory tail between windows
    incremental: bool = WINDOW_INCREMENTAL
    # Trailing interval kept for the next window in seconds
    retain_sec: float = WINDOW_RETAIN_SEC


@dataclass(frozen=True)
class SplineParams:
    """Trajectory spline fitting parameters."""

    # Spline order (4 is cubic)
    order: int = SPLINE_ORDER
    # Target knot density in knots per second
    knots_per_second: float = SPLINE_KNOTS_PER_SECOND
    # Maximum number of knots (0 means unlimited)
    max_knots: int = SPLINE_MAX_KNOTS
    # Smoothness penalty on translation control points
    trans_lambda: float = SPLINE_TRANS_LAMBDA
    # Smoothness penalty on rotation control points
    rot_lambda: float = SPLINE_ROT_LAMBDA


@dataclass(frozen=True)
class PoseNoiseParams:
    """Pose noise used for measurements built from raw values."""

    # Position variance in m^2
    position_variance: float = POSE_POSITION_VARIANCE
    # Rotation variance in rad^2
    rotation_variance: float = POSE_ROTATION_VARIANCE


@dataclass(frozen=True)
class OdometryNoiseParams:
    """Wheel noise and motion constraint parameters."""

    # Left wheel angular rate variance in (rad/s)^2
    lw_variance: float = ODOMETRY_LW_VARIANCE
    # Right wheel angular rate variance in (rad/s)^2
    rw_variance: float = ODOMETRY_RW_VARIANCE
    # Lateral velocity constraint variance in (m/s)^2
    vy_variance: float = ODOMETRY_VY_VARIANCE
    # Vertical velocity constraint variance in (m/s)^2
    vz_variance: float = ODOMETRY_VZ_VARIANCE
    # Attach lateral/vertical velocity constraints
    use_nonholonomic: bool = ODOMETRY_USE_NONHOLONOMIC
    # Attach rear-axle wheel terms
    use_rear_wheels: bool = ODOMETRY_USE_REAR_WHEELS
    # Attach front-axle wheel terms
    use_front_wheels: bool = ODOMETRY_USE_FRONT_WHEELS
    # Steering angle variance in rad^2
    steering_variance: float = ODOMETRY_STEERING_VARIANCE
    # Attach steering terms where a steering angle is measured
    use_steering: bool = ODOMETRY_USE_STEERING


@dataclass(frozen=True)
class DelayParams:
    """Odometry stream delay parameters."""

    # Maximum delay magnitude in seconds
    bound_sec: float = DELAY_BOUND_SEC
    # Initial delay estimate in seconds
    initial_sec: float = DELAY_INITIAL_SEC
    # Estimate the delay (False holds it fixed)
    estimate: bool = DELAY_ESTIMATE
    # Stream name of the delay parameter
    stream: str = DELAY_STREAM


@dataclass(frozen=True)
class VehicleParams:
    """Nominal vehicle parameters used as the initial estimate."""

    # Wheel radii [RL, RR, FL, FR] in meters
    wheel_radii: np.ndarray = field(
        default_factory=lambda: np.full(4, VEHICLE_WHEEL_RADIUS, dtype=np.float64)
    )
    # Rear half-track in meters
    rear_half_track: float = VEHICLE_REAR_HALF_TRACK
    # Front half-track in meters
    front_half_track: float = VEHICLE_FRONT_HALF_TRACK
    # Axle separation in meters
    axle_separation: float = VEHICLE_AXLE_SEPARATION
    # Odometry origin in the IMU frame in meters
    extrinsic_translation: np.ndarray = field(
        default_factory=lambda: VEHICLE_EXTRINSIC_TRANSLATION.copy()
    )
    # Odometry-to-IMU rotation as a wxyz quaternion
    extrinsic_rotation_wxyz: np.ndarray = field(
        default_factory=lambda: VEHICLE_EXTRINSIC_ROTATION_WXYZ.copy()
    )
    # Steering polynomial [a0, a1, a2, a3]
    steering_coefficients: np.ndarray = field(
        default_factory=lambda: VEHICLE_STEERING_COEFFICIENTS.copy()
    )

    def __post_init__(self) -> None:
        """Coerce vector parameters into float64 numpy arrays."""
        object.__setattr__(
            self,
            "wheel_radii",
            _as_float_array(self.wheel_radii, "vehicle.wheel_radii", 4),
        )
        object.__setattr__(
            self,
            "extrinsic_translation",
            _as_float_array(
                self.extrinsic_translation, "vehicle.extrinsic_translation", 3
            ),
        )
        object.__setattr__(
            self,
            "extrinsic_rotation_wxyz",
            _as_float_array(
                self.extrinsic_rotation_wxyz, "vehicle.extrinsic_rotation_wxyz", 4
            ),
        )
        object.__setattr__(
            self,
            "steering_coefficients",
            _as_float_array(
                self.steering_coefficients, "vehicle.steering_coefficients", 4
            ),
        )

    def wheel_geometry(self) -> np.ndarray:
        """Return [e_R, e_F, L]."""
        return np.array(
            [self.rear_half_track, self.front_half_track, self.axle_separation],
            dtype=np.float64,
        )


@dataclass(frozen=True)
class PriorParams:
    """Prior variances on static blocks (None free, 0 fixed)."""

    # Wheel radii variance in m^2
    wheel_radii_variance: float | None = PRIOR_WHEEL_RADII_VARIANCE
    # Wheel geometry variance in m^2
    wheel_geometry_variance: float | None = PRIOR_WHEEL_GEOMETRY_VARIANCE
    # Extrinsic translation variance in m^2
    extrinsic_translation_variance: float | None = (
        PRIOR_EXTRINSIC_TRANSLATION_VARIANCE
    )
    # Extrinsic rotation variance in rad^2
    extrinsic_rotation_variance: float | None = PRIOR_EXTRINSIC_ROTATION_VARIANCE
    # Steering coefficient variance, unitless
    steering_variance: float | None = PRIOR_STEERING_VARIANCE


@dataclass(frozen=True)
class RobustParams:
    """Robust loss selection per measurement type."""

    # Robust loss for pose terms
    pose_loss: str = ROBUST_POSE_LOSS
    # Robust scale for pose terms
    pose_scale: float = ROBUST_POSE_SCALE
    # Robust loss for wheel and nonholonomic terms
    odometry_loss: str = ROBUST_ODOMETRY_LOSS
    # Robust scale for wheel and nonholonomic terms
    odometry_scale: float = ROBUST_ODOMETRY_SCALE
    # Blake-Zisserman inlier probability
    inlier_probability: float = ROBUST_INLIER_PROBABILITY
    # Blake-Zisserman weight at the inlier quantile
    cutoff: float = ROBUST_CUTOFF


@dataclass(frozen=True)
class SolverParams:
    """Optimizer configuration parameters."""

    # Maximum Gauss-Newton iterations per window
    max_iterations: int = SOLVER_MAX_ITERATIONS
    # Relative cost change below which the solve has converged
    convergence_delta_j: float = SOLVER_CONVERGENCE_DELTA_J
    # Step norm below which the solve has converged
    convergence_delta_x: float = SOLVER_CONVERGENCE_DELTA_X
    # Normalized pivot below which a column is rank deficient
    rank_tolerance: float = SOLVER_RANK_TOLERANCE
    # Worker threads for error term evaluation
    num_threads: int = SOLVER_NUM_THREADS
    # Accept windows that hit the iteration budget
    accept_max_iterations: bool = SOLVER_ACCEPT_MAX_ITERATIONS
    # Robust scale multiplier for one retry after non-convergence
    retry_relax_factor: float = SOLVER_RETRY_RELAX_FACTOR


@dataclass(frozen=True)
class SaveParams:
    """Persistence and output file parameters."""

    # Directory for per-window reports
    output_dir: str | None = SAVE_OUTPUT_DIR
    # Use atomic write for persistence
    atomic_write: bool = SAVE_ATOMIC_WRITE


# Section name to section type for from_mapping()
_SECTIONS: dict[str, type] = {
    "window": WindowParams,
    "splines": SplineParams,
    "pose_noise": PoseNoiseParams,
    "odometry_noise": OdometryNoiseParams,
    "delay": DelayParams,
    "vehicle": VehicleParams,
    "prior": PriorParams,
    "robust": RobustParams,
    "solver": SolverParams,
    "save": SaveParams,
}


@dataclass(frozen=True)
class CalibratorParams:
    """Complete configuration tree for odometry calibration."""

    window: WindowParams
    splines: SplineParams
    pose_noise: PoseNoiseParams
    odometry_noise: OdometryNoiseParams
    delay: DelayParams
    vehicle: VehicleParams
    prior: PriorParams
    robust: RobustParams
    solver: SolverParams
    save: SaveParams
    verbose: bool = VERBOSE

    @classmethod
    def defaults(cls) -> CalibratorParams:
        """Return the default calibrator parameter tree."""
        return cls(
            window=WindowParams(),
            splines=SplineParams(),
            pose_noise=PoseNoiseParams(),
            odometry_noise=OdometryNoiseParams(),
            delay=DelayParams(),
            vehicle=VehicleParams(),
            prior=PriorParams(),
            robust=RobustParams(),
            solver=SolverParams(),
            save=SaveParams(),
        )

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> CalibratorParams:
        """Build parameters from a nested mapping such as parsed YAML.

        Every key in REQUIRED_KEYS must be present. Other keys fall back to
        their defaults. Unknown sections and keys are rejected.
        """
        if not isinstance(config, Mapping):
            raise CalibratorParamsError("Configuration must be a mapping")

        missing: list[str] = []
        for key in REQUIRED_KEYS:
            node: Any = config
            for part in key.split("."):
                if not isinstance(node, Mapping) or part not in node:
                    missing.append(key)
                    break
                node = node[part]
        if missing:
            raise CalibratorParamsError(
                f"Missing required configuration keys: {', '.join(missing)}"
            )

        sections: dict[str, Any] = {}
        for name, section_type in _SECTIONS.items():
            values: Any = config.get(name, {})
            if values is None:
                values = {}
            if not isinstance(values, Mapping):
                raise CalibratorParamsError(f"{name} must be a mapping")
            known: set[str] = {f.name for f in fields(section_type)}
            unknown: set[str] = set(values) - known
            if unknown:
                raise CalibratorParamsError(
                    f"Unknown keys in {name}: {', '.join(sorted(unknown))}"
                )
            try:
                sections[name] = section_type(**dict(values))
            except TypeError as exc:
                raise CalibratorParamsError(f"Invalid {name} section: {exc}") from exc

        unknown_sections: set[str] = set(config) - set(_SECTIONS) - {"verbose"}
        if unknown_sections:
            raise CalibratorParamsError(
                f"Unknown configuration sections: {', '.join(sorted(unknown_sections))}"
            )

        params: CalibratorParams = cls(verbose=bool(config["verbose"]), **sections)
        params.validate()
        return params

    def validate(self) -> None:
        """Validate parameter invariants and constraints."""
        _require_positive(self.window.duration_sec, "window.duration_sec")
        _require_int(self.window.max_measurements, "window.max_measurements", minimum=0)
        _require_non_negative(self.window.retain_sec, "window.retain_sec")

        _require_int(self.splines.order, "splines.order", minimum=2)
        _require_positive(self.splines.knots_per_second, "splines.knots_per_second")
        _require_int(self.splines.max_knots, "splines.max_knots", minimum=0)
        _require_non_negative(self.splines.trans_lambda, "splines.trans_lambda")
        _require_non_negative(self.splines.rot_lambda, "splines.rot_lambda")

        _require_positive(
            self.pose_noise.position_variance, "pose_noise.position_variance"
        )
        _require_positive(
            self.pose_noise.rotation_variance, "pose_noise.rotation_variance"
        )

        _require_positive(self.odometry_noise.lw_variance, "odometry_noise.lw_variance")
        _require_positive(self.odometry_noise.rw_variance, "odometry_noise.rw_variance")
        _require_positive(self.odometry_noise.vy_variance, "odometry_noise.vy_variance")
        _require_positive(self.odometry_noise.vz_variance, "odometry_noise.vz_variance")
        _require_positive(
            self.odometry_noise.steering_variance, "odometry_noise.steering_variance"
        )

        _require_non_negative(self.delay.bound_sec, "delay.bound_sec")
        if abs(self.delay.initial_sec) > self.delay.bound_sec:
            raise CalibratorParamsError("delay.initial_sec must be within the bound")
        if not self.delay.stream:
            raise CalibratorParamsError("delay.stream must be set")

        _require_positive(
            float(np.min(self.vehicle.wheel_radii)), "vehicle.wheel_radii"
        )
        _require_positive(self.vehicle.rear_half_track, "vehicle.rear_half_track")
        _require_positive(self.vehicle.front_half_track, "vehicle.front_half_track")
        _require_positive(self.vehicle.axle_separation, "vehicle.axle_separation")
        if float(np.linalg.norm(self.vehicle.extrinsic_rotation_wxyz)) <= 0.0:
            raise CalibratorParamsError(
                "vehicle.extrinsic_rotation_wxyz must be non-zero"
            )

        _validate_optional_non_negative(
            self.prior.wheel_radii_variance, "prior.wheel_radii_variance"
        )
        _validate_optional_non_negative(
            self.prior.wheel_geometry_variance, "prior.wheel_geometry_variance"
        )
        _validate_optional_non_negative(
            self.prior.extrinsic_translation_variance,
            "prior.extrinsic_translation_variance",
        )
        _validate_optional_non_negative(
            self.prior.extrinsic_rotation_variance,
            "prior.extrinsic_rotation_variance",
        )
        _validate_optional_non_negative(
            self.prior.steering_variance, "prior.steering_variance"
        )

        _require_positive(self.robust.pose_scale, "robust.pose_scale")
        _require_positive(self.robust.odometry_scale, "robust.odometry_scale")
        if not 0.0 < self.robust.inlier_probability < 1.0:
            raise CalibratorParamsError("robust.inlier_probability must be in (0, 1)")
        if not 0.0 < self.robust.cutoff < 1.0:
            raise CalibratorParamsError("robust.cutoff must be in (0, 1)")

        _require_int(self.solver.max_iterations, "solver.max_iterations", minimum=1)
        _require_positive(
            self.solver.convergence_delta_j, "solver.convergence_delta_j"
        )
        _require_positive(
            self.solver.convergence_delta_x, "solver.convergence_delta_x"
        )
        _require_positive(self.solver.rank_tolerance, "solver.rank_tolerance")
        _require_int(self.solver.num_threads, "solver.num_threads", minimum=1)
        _require_non_negative(
            self.solver.retry_relax_factor, "solver.retry_relax_factor"
        )

    def replace(self, **namespace_overrides: Any) -> CalibratorParams:
        """Return a modified copy of the parameters."""
        return replace(self, **namespace_overrides)

    def as_nested_dict(self) -> dict[str, Any]:
        """Return a nested dict representation for debugging."""
        return _dataclass_to_dict(self)


def _dataclass_to_dict(value: Any) -> Any:
    """Convert dataclasses and numpy arrays into plain Python values."""
    if hasattr(value, "__dataclass_fields__"):
        return {
            field.name: _dataclass_to_dict(getattr(value, field.name))
            for field in fields(value)
        }
    if isinstance(value, np.ndarray):
        return value.tolist()
    return value
