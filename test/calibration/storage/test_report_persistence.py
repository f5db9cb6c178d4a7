################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Tests for calibration report YAML persistence."""

from __future__ import annotations

from pathlib import Path

import pytest

from oasis_calibration.storage.path_utils import REPORT_KIND_COVARIANCE
from oasis_calibration.storage.path_utils import REPORT_KIND_ESTIMATE
from oasis_calibration.storage.path_utils import window_report_path
from oasis_calibration.storage.persistence import CalibrationPersistenceError
from oasis_calibration.storage.persistence import load_window_reports
from oasis_calibration.storage.persistence import load_yaml_report
from oasis_calibration.storage.persistence import save_yaml_report
from oasis_calibration.storage.yaml_format import CovarianceReportYaml
from oasis_calibration.storage.yaml_format import EstimateReportYaml
from oasis_calibration.storage.yaml_format import Report
from oasis_calibration.storage.yaml_format import WindowInfoYaml


def _window() -> WindowInfoYaml:
    """Create window metadata for persistence tests."""
    return WindowInfoYaml(
        index=2,
        t_start_sec=20.0,
        t_end_sec=30.0,
        status="converged",
        iterations=4,
        final_cost=12.5,
        sum_log_diag_r=31.25,
        skipped={"zero_velocity": 3},
    )


def test_save_and_load_estimate(tmp_path: Path) -> None:
    """Ensure estimate reports are persisted and loaded correctly."""
    report: EstimateReportYaml = EstimateReportYaml(
        format_version=1,
        window=_window(),
        parameters={"r_RL": 0.305, "t_x": -0.25, "delay_wheels": 0.012},
    )
    path: Path = tmp_path / "estimate_0002.yaml"

    save_yaml_report(path, report)
    loaded: Report = load_yaml_report(path)

    assert loaded == report


def test_non_atomic_write(tmp_path: Path) -> None:
    """Ensure plain writes create a valid YAML file."""
    report: CovarianceReportYaml = CovarianceReportYaml(
        format_version=1,
        window=_window(),
        variances={"r_RL": 1e-8, "t_x": 4e-6},
    )
    path: Path = tmp_path / "nested" / "covariance_0002.yml"

    save_yaml_report(path, report, atomic_write=False)

    assert path.exists()
    assert load_yaml_report(path) == report


def test_extension_gating(tmp_path: Path) -> None:
    """Ensure only YAML extensions are accepted."""
    report: EstimateReportYaml = EstimateReportYaml(
        format_version=1, window=_window(), parameters={}
    )
    invalid_path: Path = tmp_path / "estimate.json"

    with pytest.raises(CalibrationPersistenceError):
        save_yaml_report(invalid_path, report)

    with pytest.raises(CalibrationPersistenceError):
        load_yaml_report(invalid_path)


def test_load_failures_are_wrapped(tmp_path: Path) -> None:
    """Ensure missing and malformed files raise persistence errors."""
    with pytest.raises(CalibrationPersistenceError):
        load_yaml_report(tmp_path / "missing.yaml")

    broken: Path = tmp_path / "broken.yaml"
    broken.write_text("format_version: 2\n", encoding="utf-8")

    with pytest.raises(CalibrationPersistenceError):
        load_yaml_report(broken)


def test_load_window_reports_in_index_order(tmp_path: Path) -> None:
    """Ensure a run directory reads back sorted by window, one kind at a time."""
    for index in (10, 2, 7):
        save_yaml_report(
            window_report_path(tmp_path, index, REPORT_KIND_ESTIMATE),
            EstimateReportYaml(
                format_version=1, window=_window(), parameters={"r_RL": 0.3 + index}
            ),
        )
    save_yaml_report(
        window_report_path(tmp_path, 2, REPORT_KIND_COVARIANCE),
        CovarianceReportYaml(format_version=1, window=_window(), variances={}),
    )
    (tmp_path / "notes.yaml").write_text("{}\n", encoding="utf-8")

    estimates: list[tuple[int, Report]] = load_window_reports(tmp_path)
    covariances: list[tuple[int, Report]] = load_window_reports(
        tmp_path, REPORT_KIND_COVARIANCE
    )

    assert [index for index, _ in estimates] == [2, 7, 10]
    assert all(isinstance(report, EstimateReportYaml) for _, report in estimates)
    assert [index for index, _ in covariances] == [2]


def test_load_window_reports_rejects_mislabeled_file(tmp_path: Path) -> None:
    """Ensure an estimate file holding a covariance report is an error."""
    save_yaml_report(
        window_report_path(tmp_path, 0, REPORT_KIND_ESTIMATE),
        CovarianceReportYaml(format_version=1, window=_window(), variances={}),
    )

    with pytest.raises(CalibrationPersistenceError, match="estimate"):
        load_window_reports(tmp_path)


def test_load_window_reports_errors(tmp_path: Path) -> None:
    """Ensure a missing directory and an unknown kind raise."""
    with pytest.raises(CalibrationPersistenceError):
        load_window_reports(tmp_path / "missing")
    with pytest.raises(CalibrationPersistenceError):
        load_window_reports(tmp_path, "trajectory")
