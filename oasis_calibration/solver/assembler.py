################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Build the calibration problem of one window.

Blocks are registered trajectory first, then wheel radii, wheel geometry,
extrinsic translation, extrinsic rotation, the steering polynomial and the
odometry delay, so the calibration parameters form the trailing column range
of the solve.

A static block with zero prior variance is held fixed, a positive variance
adds a Gaussian prior around the carried-forward value, and None leaves the
block free without a prior.
The steering polynomial is held fixed in windows without steering readings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np
from numpy.typing import NDArray

from oasis_calibration.calibration_types.errors import InputError
from oasis_calibration.calibration_types.estimate import CalibrationEstimate
from oasis_calibration.calibration_types.measurements import OdometryMeasurement
from oasis_calibration.calibration_types.measurements import PoseMeasurement
from oasis_calibration.config.calibrator_config import CalibratorConfig
from oasis_calibration.config.calibrator_params import CalibratorParams
from oasis_calibration.config.calibrator_params import SplineParams
from oasis_calibration.solver.error_terms import NonholonomicErrorTerm
from oasis_calibration.solver.error_terms import OdometryHandles
from oasis_calibration.solver.error_terms import PoseErrorTerm
from oasis_calibration.solver.error_terms import PriorErrorTerm
from oasis_calibration.solver.error_terms import SteeringErrorTerm
from oasis_calibration.solver.error_terms import WheelErrorTerm
from oasis_calibration.solver.error_terms import wheel_sqrt_information
from oasis_calibration.solver.problem import CalibrationProblem
from oasis_calibration.solver.robust_loss import RobustPolicy
from oasis_calibration.state.parameter_arena import BLOCK_KIND_EUCLIDEAN
from oasis_calibration.state.parameter_arena import BLOCK_KIND_ROTATION
from oasis_calibration.state.parameter_arena import ParameterArena
from oasis_calibration.state.state_mapping import BLOCK_NAME_EXTRINSIC_ROTATION
from oasis_calibration.state.state_mapping import BLOCK_NAME_EXTRINSIC_TRANSLATION
from oasis_calibration.state.state_mapping import BLOCK_NAME_STEERING
from oasis_calibration.state.state_mapping import BLOCK_NAME_WHEEL_GEOMETRY
from oasis_calibration.state.state_mapping import BLOCK_NAME_WHEEL_RADII
from oasis_calibration.state.state_mapping import CALIBRATION_BLOCK_NAMES
from oasis_calibration.state.state_mapping import delay_block_name
from oasis_calibration.timing.time_base import delay_interval_within
from oasis_calibration.trajectory.design_variable import TrajectoryDesignVariable
from oasis_calibration.trajectory.pose_spline import PoseSpline


_LOG: logging.Logger = logging.getLogger(__name__)

# Skip reason for odometry whose predicted motion is numerically zero
SKIP_ZERO_VELOCITY: str = "zero_velocity"

# Skip reason for odometry whose delay-shifted time can leave the trajectory
SKIP_OUT_OF_SPAN: str = "out_of_span"


@dataclass(frozen=True)
class CalibrationHandles:
    """Arena handles of one assembled window.

    Attributes:
        trajectory: Control point handles in index order
        odometry: Static parameter and delay handles
        delay_name: Block name of the odometry delay
    """

    trajectory: tuple[int, ...]
    odometry: OdometryHandles
    delay_name: str


@dataclass(frozen=True)
class AssembledProblem:
    """Problem, trajectory and bookkeeping of one window.

    Attributes:
        problem: Problem owning the arena and error terms
        trajectory: Trajectory design variable registered in the arena
        handles: Arena handles
        stream: Odometry stream name
        pose_terms: Number of pose terms attached
        odometry_used: Number of odometry measurements with attached terms
        skipped: Skipped odometry measurement counts keyed by reason
    """

    problem: CalibrationProblem
    trajectory: TrajectoryDesignVariable
    handles: CalibrationHandles
    stream: str
    pose_terms: int
    odometry_used: int
    skipped: dict[str, int]

    def calibration_block_names(self) -> tuple[str, ...]:
        """Return the names of the calibration blocks in column order."""
        return CALIBRATION_BLOCK_NAMES + (self.handles.delay_name,)


def fit_window_trajectory(
    poses: Sequence[PoseMeasurement],
    splines: SplineParams,
    *,
    previous: PoseSpline | None = None,
) -> PoseSpline:
    """Fit the window trajectory to its pose measurements.

    Where the previous window's optimized trajectory covers a pose time, its
    pose replaces the raw measurement.
    """
    if len(poses) < 2:
        raise InputError("At least two pose measurements are required")
    times: NDArray[np.float64] = np.array([p.t_sec() for p in poses])
    positions: NDArray[np.float64] = np.empty((len(poses), 3), dtype=np.float64)
    rotations: list[NDArray[np.float64]] = []
    t_min: float = np.inf
    t_max: float = -np.inf
    if previous is not None:
        t_min, t_max = previous.time_span()
    for i, pose in enumerate(poses):
        t: float = float(times[i])
        if previous is not None and t_min <= t <= t_max:
            positions[i] = previous.position(t)
            rotations.append(previous.rotation_matrix(t))
        else:
            positions[i] = pose.p_m
            rotations.append(pose.rotation_matrix())
    return PoseSpline.from_poses(
        times,
        positions,
        rotations,
        knots_per_second=splines.knots_per_second,
        max_knots=splines.max_knots,
        order=splines.order,
        trans_lambda=splines.trans_lambda,
        rot_lambda=splines.rot_lambda,
    )


def _add_static_block(
    arena: ParameterArena,
    problem: CalibrationProblem,
    name: str,
    value: NDArray[np.float64],
    kind: str,
    variance: float | None,
) -> int:
    handle: int = arena.add_block(name, value, kind=kind, active=variance != 0.0)
    if variance is not None and variance > 0.0:
        dim: int = arena.block(handle).tangent_dim()
        problem.add_error_term(
            PriorErrorTerm(
                handle=handle,
                mean=arena.value(handle),
                sqrt_info=np.eye(dim, dtype=np.float64) / np.sqrt(variance),
                kind=kind,
            )
        )
    return handle


def assemble_problem(
    poses: Sequence[PoseMeasurement],
    odometry: Sequence[OdometryMeasurement],
    spline: PoseSpline,
    estimate: CalibrationEstimate,
    config: CalibratorConfig,
    *,
    odometry_robust: RobustPolicy | None = None,
) -> AssembledProblem:
    """Register all blocks and attach every error term of a window."""
    params: CalibratorParams = config.params
    stream: str = config.delay_stream()
    pose_robust: RobustPolicy = config.pose_robust_policy()
    if odometry_robust is None:
        odometry_robust = config.odometry_robust_policy()

    arena: ParameterArena = ParameterArena()
    problem: CalibrationProblem = CalibrationProblem(arena)
    trajectory: TrajectoryDesignVariable = TrajectoryDesignVariable(spline)
    trajectory_handles: tuple[int, ...] = trajectory.register(arena)

    prior = params.prior
    radii: int = _add_static_block(
        arena,
        problem,
        BLOCK_NAME_WHEEL_RADII,
        estimate.wheel_radii,
        BLOCK_KIND_EUCLIDEAN,
        prior.wheel_radii_variance,
    )
    geometry: int = _add_static_block(
        arena,
        problem,
        BLOCK_NAME_WHEEL_GEOMETRY,
        estimate.wheel_geometry,
        BLOCK_KIND_EUCLIDEAN,
        prior.wheel_geometry_variance,
    )
    translation: int = _add_static_block(
        arena,
        problem,
        BLOCK_NAME_EXTRINSIC_TRANSLATION,
        estimate.t_io,
        BLOCK_KIND_EUCLIDEAN,
        prior.extrinsic_translation_variance,
    )
    rotation: int = _add_static_block(
        arena,
        problem,
        BLOCK_NAME_EXTRINSIC_ROTATION,
        estimate.q_io_wxyz,
        BLOCK_KIND_ROTATION,
        prior.extrinsic_rotation_variance,
    )
    bound: float = params.delay.bound_sec
    t_min, t_max = trajectory.time_span()
    noise = params.odometry_noise
    use_steering: bool = noise.use_steering and any(
        measurement.steering_rad is not None
        and delay_interval_within(measurement.t_sec(), bound, t_min, t_max)
        for measurement in odometry
    )
    steering: int = _add_static_block(
        arena,
        problem,
        BLOCK_NAME_STEERING,
        estimate.steering,
        BLOCK_KIND_EUCLIDEAN,
        prior.steering_variance if use_steering else 0.0,
    )
    delay_name: str = delay_block_name(stream)
    delay: int = arena.add_block(
        delay_name,
        np.array([estimate.delay(stream)], dtype=np.float64),
        active=params.delay.estimate,
        bound=bound,
    )
    handles: OdometryHandles = OdometryHandles(
        wheel_radii=radii,
        wheel_geometry=geometry,
        extrinsic_translation=translation,
        extrinsic_rotation=rotation,
        delay=delay,
        steering=steering,
    )

    for pose in poses:
        problem.add_error_term(
            PoseErrorTerm(measurement=pose, trajectory=trajectory, robust=pose_robust)
        )

    nonholonomic_sqrt_info: NDArray[np.float64] = np.diag(
        [1.0 / np.sqrt(noise.vy_variance), 1.0 / np.sqrt(noise.vz_variance)]
    )
    axles: list[bool] = []
    if noise.use_rear_wheels:
        axles.append(False)
    if noise.use_front_wheels:
        axles.append(True)

    values: tuple[NDArray[np.float64], ...] = arena.snapshot()
    skipped: dict[str, int] = {SKIP_ZERO_VELOCITY: 0, SKIP_OUT_OF_SPAN: 0}
    odometry_used: int = 0
    for measurement in odometry:
        t: float = measurement.t_sec()
        if not delay_interval_within(t, bound, t_min, t_max):
            skipped[SKIP_OUT_OF_SPAN] += 1
            continue
        wheel_terms: list[WheelErrorTerm] = [
            WheelErrorTerm(
                measurement=measurement,
                trajectory=trajectory,
                handles=handles,
                sqrt_info=wheel_sqrt_information(
                    measurement,
                    estimate.wheel_radii,
                    estimate.wheel_geometry,
                    front=front,
                ),
                front=front,
                robust=odometry_robust,
            )
            for front in axles
        ]
        steering_terms: list[SteeringErrorTerm] = []
        if use_steering and measurement.steering_rad is not None:
            steering_terms.append(
                SteeringErrorTerm(
                    measurement=measurement,
                    trajectory=trajectory,
                    handles=handles,
                    robust=odometry_robust,
                )
            )
        motion_terms: list[WheelErrorTerm | SteeringErrorTerm] = [
            *wheel_terms,
            *steering_terms,
        ]
        if motion_terms and motion_terms[0].is_degenerate(values):
            skipped[SKIP_ZERO_VELOCITY] += 1
            continue
        for term in motion_terms:
            problem.add_error_term(term)
        if noise.use_nonholonomic:
            problem.add_error_term(
                NonholonomicErrorTerm(
                    t_sec=t,
                    trajectory=trajectory,
                    handles=handles,
                    sqrt_info=nonholonomic_sqrt_info,
                    robust=odometry_robust,
                )
            )
        odometry_used += 1

    for reason, count in skipped.items():
        if count:
            _LOG.info("Skipped %d odometry measurements: %s", count, reason)

    return AssembledProblem(
        problem=problem,
        trajectory=trajectory,
        handles=CalibrationHandles(
            trajectory=trajectory_handles,
            odometry=handles,
            delay_name=delay_name,
        ),
        stream=stream,
        pose_terms=len(poses),
        odometry_used=odometry_used,
        skipped=skipped,
    )


def read_estimate(
    assembled: AssembledProblem, base: CalibrationEstimate
) -> CalibrationEstimate:
    """Return the static estimate held by the assembled arena.

    Delays of streams outside the window are taken from base.
    """
    arena: ParameterArena = assembled.problem.arena
    handles: OdometryHandles = assembled.handles.odometry
    delay_handle: int | None = handles.delay
    delays: dict[str, float] = dict(base.delays)
    if delay_handle is not None:
        delays[assembled.stream] = float(arena.value(delay_handle)[0])
    return CalibrationEstimate(
        wheel_radii=arena.value(handles.wheel_radii),
        wheel_geometry=arena.value(handles.wheel_geometry),
        t_io=arena.value(handles.extrinsic_translation),
        q_io_wxyz=arena.value(handles.extrinsic_rotation),
        delays=delays,
        steering=(
            base.steering
            if handles.steering is None
            else arena.value(handles.steering)
        ),
    )
