################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Odometry calibration pipeline orchestration.

Measurements are buffered per stream and cut into windows. Each window fits
a trajectory, assembles and solves the calibration problem, computes
diagnostics, optionally writes reports and carries the accepted estimate
forward to the next window.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from numpy.typing import NDArray

from oasis_calibration.calibration_types.errors import ConvergenceFailure
from oasis_calibration.calibration_types.errors import InputError
from oasis_calibration.calibration_types.errors import ObservabilityFailure
from oasis_calibration.calibration_types.estimate import CalibrationEstimate
from oasis_calibration.calibration_types.measurements import OdometryMeasurement
from oasis_calibration.calibration_types.measurements import PoseMeasurement
from oasis_calibration.calibration_types.measurements import default_wheel_covariance
from oasis_calibration.config.calibrator_config import CalibratorConfig
from oasis_calibration.config.calibrator_params import CalibratorParams
from oasis_calibration.solver.assembler import AssembledProblem
from oasis_calibration.solver.assembler import assemble_problem
from oasis_calibration.solver.assembler import fit_window_trajectory
from oasis_calibration.solver.assembler import read_estimate
from oasis_calibration.solver.diagnostics import CalibrationDiagnostics
from oasis_calibration.solver.diagnostics import calibration_diagnostics
from oasis_calibration.solver.optimizer import SolveReport
from oasis_calibration.solver.optimizer import SolveStatus
from oasis_calibration.solver.optimizer import optimize
from oasis_calibration.storage.path_utils import REPORT_KIND_COVARIANCE
from oasis_calibration.storage.path_utils import REPORT_KIND_ESTIMATE
from oasis_calibration.storage.path_utils import window_report_path
from oasis_calibration.storage.persistence import CalibrationPersistenceError
from oasis_calibration.storage.persistence import save_yaml_report
from oasis_calibration.storage.yaml_format import FORMAT_VERSION
from oasis_calibration.storage.yaml_format import CovarianceReportYaml
from oasis_calibration.storage.yaml_format import EstimateReportYaml
from oasis_calibration.storage.yaml_format import WindowInfoYaml
from oasis_calibration.timing.time_base import ns_to_sec
from oasis_calibration.trajectory.pose_spline import PoseSpline
from oasis_calibration.window.window_controller import Window
from oasis_calibration.window.window_controller import WindowController


_LOG: logging.Logger = logging.getLogger(__name__)


class OdometryCalibratorError(InputError):
    """Raised for calibrator contract violations."""


@dataclass(frozen=True)
class WindowResult:
    """Outcome of one solved window.

    Attributes:
        window: Window that was solved
        report: Solver report of the final attempt, None when the window
            data was rejected before solving
        estimate: Static estimate produced by the solve
        diagnostics: Calibration covariance and information, when observable
        skipped: Skipped odometry measurement counts keyed by reason
        accepted: True when the estimate was carried forward
        message: Failure description for windows that were not accepted
        saved_paths: Report files written for the window
    """

    window: Window
    report: SolveReport | None
    estimate: CalibrationEstimate
    diagnostics: CalibrationDiagnostics | None
    skipped: dict[str, int]
    accepted: bool
    message: str = ""
    saved_paths: tuple[Path, ...] = ()


class OdometryCalibrator:
    """End-to-end coordinator for wheel odometry calibration."""

    def __init__(self, *, config: CalibratorConfig) -> None:
        """Initialize the calibrator with configuration."""
        if not isinstance(config, CalibratorConfig):
            raise OdometryCalibratorError("config must be a CalibratorConfig")
        self._config: CalibratorConfig = config
        self._params: CalibratorParams = config.params
        self._controller: WindowController = WindowController(
            self._params.window, stream=config.delay_stream()
        )
        self._estimate: CalibrationEstimate = CalibrationEstimate.from_params(
            self._params
        )
        self._trajectory: PoseSpline | None = None
        self._results: list[WindowResult] = []
        self._save_fail_count: int = 0

    def reset(self) -> None:
        """Reset internal state to a clean startup condition."""
        self._controller = WindowController(
            self._params.window, stream=self._config.delay_stream()
        )
        self._estimate = CalibrationEstimate.from_params(self._params)
        self._trajectory = None
        self._results = []
        self._save_fail_count = 0

    @property
    def estimate(self) -> CalibrationEstimate:
        """Return the carried-forward calibration estimate."""
        return self._estimate

    @property
    def trajectory(self) -> PoseSpline | None:
        """Return the trajectory of the last accepted window."""
        return self._trajectory

    @property
    def results(self) -> tuple[WindowResult, ...]:
        """Return the results of all processed windows."""
        return tuple(self._results)

    @property
    def save_fail_count(self) -> int:
        """Return the total number of report save failures."""
        return self._save_fail_count

    def add_pose(self, measurement: PoseMeasurement) -> None:
        """Buffer a pose measurement."""
        self._controller.add_pose(measurement)

    def add_odometry(self, measurement: OdometryMeasurement) -> None:
        """Buffer a wheel odometry measurement."""
        self._controller.add_odometry(measurement)

    def add_pose_values(
        self,
        t_ns: int,
        p_m: NDArray[np.float64],
        q_wxyz: NDArray[np.float64],
    ) -> PoseMeasurement:
        """Buffer a pose with the configured pose noise."""
        noise = self._params.pose_noise
        measurement: PoseMeasurement = PoseMeasurement(
            t_ns=t_ns,
            p_m=p_m,
            q_wxyz=q_wxyz,
            cov=np.diag(
                [noise.position_variance] * 3 + [noise.rotation_variance] * 3
            ),
        )
        self.add_pose(measurement)
        return measurement

    def add_wheel_rates(
        self,
        t_ns: int,
        wheel_rads: NDArray[np.float64],
        steering_rad: float | None = None,
    ) -> OdometryMeasurement:
        """Buffer wheel rates and an optional steering angle.

        The configured wheel and steering noise is attached.
        """
        noise = self._params.odometry_noise
        measurement: OdometryMeasurement = OdometryMeasurement(
            t_ns=t_ns,
            wheel_rads=wheel_rads,
            cov_rads2=default_wheel_covariance(noise.lw_variance, noise.rw_variance),
            steering_rad=steering_rad,
            steering_var=noise.steering_variance,
        )
        self.add_odometry(measurement)
        return measurement

    def process(
        self,
        *,
        cancel_event: threading.Event | None = None,
        flush: bool = False,
    ) -> list[WindowResult]:
        """Solve every window that is ready.

        A cancelled solve leaves its window buffered and stops processing.
        """
        results: list[WindowResult] = []
        while True:
            window: Window | None = self._controller.next_window(flush=flush)
            if window is None:
                break
            result: WindowResult = self.solve_window(
                window, cancel_event=cancel_event
            )
            results.append(result)
            if result.report is not None and result.report.incomplete:
                break
        return results

    def flush(
        self, *, cancel_event: threading.Event | None = None
    ) -> list[WindowResult]:
        """Solve all remaining buffered data, including a short final window."""
        return self.process(cancel_event=cancel_event, flush=True)

    def solve_window(
        self,
        window: Window,
        *,
        cancel_event: threading.Event | None = None,
    ) -> WindowResult:
        """Solve one window and carry its estimate forward when accepted."""
        previous: PoseSpline | None = None
        if self._controller.incremental:
            previous = self._trajectory
        base: CalibrationEstimate = self._estimate
        try:
            spline: PoseSpline = fit_window_trajectory(
                window.poses, self._params.splines, previous=previous
            )
            assembled: AssembledProblem = assemble_problem(
                window.poses, window.odometry, spline, base, self._config
            )
        except InputError as exc:
            return self._reject_window(window, exc)

        report: SolveReport = optimize(
            assembled.problem,
            self._params.solver,
            cancel_event=cancel_event,
            verbose=self._params.verbose,
        )

        relax: float = self._params.solver.retry_relax_factor
        if report.status == SolveStatus.MAX_ITERATIONS and relax > 0.0:
            _LOG.info(
                "Window %d did not converge, retrying with robust scale x%.3g",
                window.index,
                relax,
            )
            assembled = assemble_problem(
                window.poses,
                window.odometry,
                spline,
                base,
                self._config,
                odometry_robust=self._config.odometry_robust_policy().relaxed(relax),
            )
            report = optimize(
                assembled.problem,
                self._params.solver,
                cancel_event=cancel_event,
                verbose=self._params.verbose,
            )

        solved: CalibrationEstimate = read_estimate(assembled, base)
        if report.incomplete:
            _LOG.info("Window %d cancelled", window.index)
            result: WindowResult = WindowResult(
                window=window,
                report=report,
                estimate=solved,
                diagnostics=None,
                skipped=dict(assembled.skipped),
                accepted=False,
                message="Solve cancelled",
            )
            self._results.append(result)
            return result

        message: str = ""
        try:
            report.raise_for_status()
        except ObservabilityFailure as exc:
            message = str(exc)
            _LOG.warning("Window %d unobservable: %s", window.index, message)
        except ConvergenceFailure as exc:
            message = str(exc)
            _LOG.warning("Window %d: %s", window.index, message)

        accepted: bool = report.status == SolveStatus.CONVERGED or (
            report.status == SolveStatus.MAX_ITERATIONS
            and self._params.solver.accept_max_iterations
        )

        diagnostics: CalibrationDiagnostics | None = None
        if report.factor is not None:
            names: tuple[str, ...] = assembled.calibration_block_names()
            if any(report.factor.mapping.has_named(name) for name in names):
                try:
                    diagnostics = calibration_diagnostics(report.factor, names)
                except ObservabilityFailure as exc:
                    _LOG.warning(
                        "Window %d covariance unavailable: %s", window.index, exc
                    )
                    if not message:
                        message = str(exc)

        saved_paths: tuple[Path, ...] = self._save_reports(
            window, report, solved, diagnostics, assembled.skipped
        )

        if accepted:
            self._estimate = solved
            self._trajectory = assembled.trajectory.read_back(assembled.problem.arena)
        self._controller.complete(window)

        _LOG.info(
            "Window %d [%.3f, %.3f] s: %s after %d iterations, cost %.6e%s",
            window.index,
            ns_to_sec(window.t_start_ns),
            ns_to_sec(window.t_end_ns),
            report.status.value,
            report.iterations,
            report.final_cost,
            "" if accepted else ", not accepted",
        )

        result = WindowResult(
            window=window,
            report=report,
            estimate=solved,
            diagnostics=diagnostics,
            skipped=dict(assembled.skipped),
            accepted=accepted,
            message=message,
            saved_paths=saved_paths,
        )
        self._results.append(result)
        return result

    def _reject_window(self, window: Window, exc: InputError) -> WindowResult:
        """Release a window whose data cannot form a problem."""
        _LOG.warning("Window %d skipped: %s", window.index, exc)
        self._controller.complete(window)
        result: WindowResult = WindowResult(
            window=window,
            report=None,
            estimate=self._estimate,
            diagnostics=None,
            skipped={},
            accepted=False,
            message=str(exc),
        )
        self._results.append(result)
        return result

    def _save_reports(
        self,
        window: Window,
        report: SolveReport,
        estimate: CalibrationEstimate,
        diagnostics: CalibrationDiagnostics | None,
        skipped: dict[str, int],
    ) -> tuple[Path, ...]:
        """Write the window's reports when an output directory is set."""
        output_dir: str | None = self._params.save.output_dir
        if output_dir is None or output_dir == "":
            return ()

        info: WindowInfoYaml = WindowInfoYaml(
            index=window.index,
            t_start_sec=ns_to_sec(window.t_start_ns),
            t_end_sec=ns_to_sec(window.t_end_ns),
            status=report.status.value,
            iterations=report.iterations,
            final_cost=report.final_cost,
            sum_log_diag_r=(
                None if diagnostics is None else diagnostics.sum_log_diag_r
            ),
            skipped=skipped,
        )
        reports: list[tuple[Path, EstimateReportYaml | CovarianceReportYaml]] = [
            (
                window_report_path(output_dir, window.index, REPORT_KIND_ESTIMATE),
                EstimateReportYaml(
                    format_version=FORMAT_VERSION,
                    window=info,
                    parameters=estimate.named_values(),
                ),
            )
        ]
        if diagnostics is not None:
            reports.append(
                (
                    window_report_path(
                        output_dir, window.index, REPORT_KIND_COVARIANCE
                    ),
                    CovarianceReportYaml(
                        format_version=FORMAT_VERSION,
                        window=info,
                        variances=diagnostics.covariance.named_variances(),
                    ),
                )
            )

        saved: list[Path] = []
        for path, content in reports:
            try:
                save_yaml_report(
                    path, content, atomic_write=self._params.save.atomic_write
                )
            except CalibrationPersistenceError as exc:
                self._save_fail_count += 1
                _LOG.warning("Failed to save %s: %s", path, exc)
                continue
            saved.append(path)
        return tuple(saved)
