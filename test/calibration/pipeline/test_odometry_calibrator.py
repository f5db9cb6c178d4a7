################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Tests for the odometry calibrator pipeline."""

from __future__ import annotations

import threading
from dataclasses import replace
from pathlib import Path

import numpy as np
import pytest

from oasis_calibration.config.calibrator_config import CalibratorConfig
from oasis_calibration.config.calibrator_params import CalibratorParams
from oasis_calibration.pipeline.odometry_calibrator import OdometryCalibrator
from oasis_calibration.pipeline.odometry_calibrator import OdometryCalibratorError
from oasis_calibration.pipeline.odometry_calibrator import WindowResult
from oasis_calibration.solver.optimizer import SolveStatus
from oasis_calibration.storage.persistence import load_yaml_report
from oasis_calibration.storage.yaml_format import EstimateReportYaml


# m/s, straight-line speed
_SPEED: float = 5.0

# m, true wheel radius
_RADIUS: float = 0.3


class _CancelOnSecondCheck(threading.Event):
    """Event that reads as set from its second check on."""

    def __init__(self) -> None:
        super().__init__()
        self.checks: int = 0

    def is_set(self) -> bool:
        self.checks += 1
        return self.checks > 1


def _params(
    *,
    translation_variance: float | None = 0.0,
    radii_variance: float | None = None,
    output_dir: str | None = None,
) -> CalibratorParams:
    defaults: CalibratorParams = CalibratorParams.defaults()
    return defaults.replace(
        window=replace(defaults.window, duration_sec=5.0),
        delay=replace(defaults.delay, estimate=False),
        vehicle=replace(defaults.vehicle, wheel_radii=np.full(4, 0.31)),
        prior=replace(
            defaults.prior,
            wheel_radii_variance=radii_variance,
            wheel_geometry_variance=0.0,
            extrinsic_translation_variance=translation_variance,
            extrinsic_rotation_variance=0.0,
        ),
        save=replace(defaults.save, output_dir=output_dir),
    )


def _feed_straight_line(calibrator: OdometryCalibrator) -> None:
    for i in range(50):
        t_ns: int = i * 100_000_000
        calibrator.add_pose_values(
            t_ns,
            np.array([_SPEED * t_ns * 1e-9, 0.0, 0.0]),
            np.array([1.0, 0.0, 0.0, 0.0]),
        )
    for i in range(44):
        calibrator.add_wheel_rates(
            250_000_000 + i * 100_000_000, np.full(4, _SPEED / _RADIUS)
        )


def test_rejects_non_config() -> None:
    """Check the calibrator requires a validated configuration."""
    with pytest.raises(OdometryCalibratorError):
        OdometryCalibrator(config=CalibratorParams.defaults())  # type: ignore[arg-type]


def test_short_window_waits_for_flush() -> None:
    """Check no window is solved until the duration is covered or flushed."""
    calibrator: OdometryCalibrator = OdometryCalibrator(
        config=CalibratorConfig(_params())
    )
    _feed_straight_line(calibrator)

    assert calibrator.process() == []
    results: list[WindowResult] = calibrator.flush()

    assert len(results) == 1
    assert calibrator.results == tuple(results)
    assert calibrator.flush() == []


def test_straight_line_recovers_wheel_radii() -> None:
    """Check free radii converge to the true radius on a straight line."""
    calibrator: OdometryCalibrator = OdometryCalibrator(
        config=CalibratorConfig(_params())
    )
    _feed_straight_line(calibrator)

    result: WindowResult = calibrator.flush()[0]

    assert result.report.status == SolveStatus.CONVERGED
    assert result.accepted
    assert result.message == ""
    np.testing.assert_allclose(calibrator.estimate.wheel_radii, _RADIUS, atol=1e-6)
    np.testing.assert_allclose(calibrator.estimate.t_io, np.zeros(3))
    assert calibrator.estimate.delay("wheels") == 0.0
    assert calibrator.trajectory is not None
    assert result.diagnostics is not None
    assert set(result.diagnostics.standard_deviations()) == {
        "r_RL",
        "r_RR",
        "r_FL",
        "r_FR",
    }
    assert result.saved_paths == ()


def test_radii_prior_keeps_estimate_near_mean() -> None:
    """Check a tight radii prior holds the estimate at the nominal value."""
    calibrator: OdometryCalibrator = OdometryCalibrator(
        config=CalibratorConfig(_params(radii_variance=1e-12))
    )
    _feed_straight_line(calibrator)

    result: WindowResult = calibrator.flush()[0]

    assert result.accepted
    np.testing.assert_allclose(calibrator.estimate.wheel_radii, 0.31, atol=1e-4)


def test_straight_line_translation_is_unobservable() -> None:
    """Check free translation without rotation is reported rank deficient."""
    calibrator: OdometryCalibrator = OdometryCalibrator(
        config=CalibratorConfig(_params(translation_variance=None))
    )
    _feed_straight_line(calibrator)

    result: WindowResult = calibrator.flush()[0]

    assert result.report.status == SolveStatus.RANK_DEFICIENT
    assert "extrinsic_translation" in result.report.deficient_blocks
    assert "extrinsic_translation" in result.message
    assert not result.accepted
    assert result.diagnostics is None
    np.testing.assert_allclose(calibrator.estimate.wheel_radii, 0.31)
    assert calibrator.trajectory is None
    assert calibrator.flush() == []


def test_cancelled_window_stays_buffered() -> None:
    """Check a cancelled solve does not consume its window."""
    calibrator: OdometryCalibrator = OdometryCalibrator(
        config=CalibratorConfig(_params())
    )
    _feed_straight_line(calibrator)
    cancel_event: threading.Event = threading.Event()
    cancel_event.set()

    cancelled: list[WindowResult] = calibrator.flush(cancel_event=cancel_event)

    assert len(cancelled) == 1
    assert cancelled[0].report.status == SolveStatus.CANCELLED
    assert not cancelled[0].accepted
    assert cancelled[0].message == "Solve cancelled"

    retried: list[WindowResult] = calibrator.flush()

    assert len(retried) == 1
    assert retried[0].window.index == 0
    assert retried[0].accepted


def test_cancel_after_first_iteration_keeps_best_estimate() -> None:
    """Check a solve cancelled mid-way is tagged incomplete with its best step."""
    calibrator: OdometryCalibrator = OdometryCalibrator(
        config=CalibratorConfig(_params())
    )
    _feed_straight_line(calibrator)

    cancelled: list[WindowResult] = calibrator.flush(
        cancel_event=_CancelOnSecondCheck()
    )

    assert len(cancelled) == 1
    result: WindowResult = cancelled[0]
    assert result.report is not None
    assert result.report.incomplete
    assert result.report.iterations == 1
    assert result.report.final_cost < result.report.initial_cost
    assert not result.accepted
    assert np.all(np.abs(result.estimate.wheel_radii - _RADIUS) < 0.005)
    np.testing.assert_allclose(calibrator.estimate.wheel_radii, 0.31)
    assert calibrator.flush()[0].window.index == 0


def test_zero_span_window_is_skipped() -> None:
    """Check a window whose poses share one stamp is released unsolved."""
    calibrator: OdometryCalibrator = OdometryCalibrator(
        config=CalibratorConfig(_params())
    )
    _feed_straight_line(calibrator)
    for t_ns in (5_000_000_000, 5_100_000_000, 5_100_000_000):
        calibrator.add_pose_values(
            t_ns,
            np.array([_SPEED * t_ns * 1e-9, 0.0, 0.0]),
            np.array([1.0, 0.0, 0.0, 0.0]),
        )

    solved: list[WindowResult] = calibrator.process()
    skipped: list[WindowResult] = calibrator.flush()

    assert len(solved) == 1
    assert solved[0].accepted
    assert len(skipped) == 1
    assert skipped[0].window.index == 1
    assert skipped[0].report is None
    assert not skipped[0].accepted
    assert "positive duration" in skipped[0].message
    assert skipped[0].estimate is calibrator.estimate
    assert calibrator.flush() == []
    assert len(calibrator.results) == 2


def test_reports_written_per_window(tmp_path: Path) -> None:
    """Check estimate and covariance reports are written when enabled."""
    output_dir: Path = tmp_path / "reports"
    calibrator: OdometryCalibrator = OdometryCalibrator(
        config=CalibratorConfig(_params(output_dir=str(output_dir)))
    )
    _feed_straight_line(calibrator)

    result: WindowResult = calibrator.flush()[0]

    assert result.saved_paths == (
        output_dir / "estimate_0000.yaml",
        output_dir / "covariance_0000.yaml",
    )
    report = load_yaml_report(result.saved_paths[0])
    assert isinstance(report, EstimateReportYaml)
    assert report.window.status == "converged"
    assert report.window.index == 0
    assert report.parameters["r_RL"] == pytest.approx(_RADIUS, abs=1e-6)
    assert calibrator.save_fail_count == 0


def test_save_failure_is_counted(tmp_path: Path) -> None:
    """Check report write failures are counted without failing the window."""
    blocker: Path = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    calibrator: OdometryCalibrator = OdometryCalibrator(
        config=CalibratorConfig(_params(output_dir=str(blocker / "reports")))
    )
    _feed_straight_line(calibrator)

    result: WindowResult = calibrator.flush()[0]

    assert result.accepted
    assert result.saved_paths == ()
    assert calibrator.save_fail_count == 2


def test_reset_restores_initial_state() -> None:
    """Check reset discards buffered data and the carried estimate."""
    calibrator: OdometryCalibrator = OdometryCalibrator(
        config=CalibratorConfig(_params())
    )
    _feed_straight_line(calibrator)
    calibrator.flush()

    calibrator.reset()

    np.testing.assert_allclose(calibrator.estimate.wheel_radii, 0.31)
    assert calibrator.trajectory is None
    assert calibrator.results == ()
    assert calibrator.flush() == []
