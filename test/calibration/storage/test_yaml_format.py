################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Tests for the calibration report YAML schema."""

from __future__ import annotations

from typing import Any

import pytest
import yaml

from oasis_calibration.storage.yaml_format import CalibrationYamlError
from oasis_calibration.storage.yaml_format import CovarianceReportYaml
from oasis_calibration.storage.yaml_format import EstimateReportYaml
from oasis_calibration.storage.yaml_format import Report
from oasis_calibration.storage.yaml_format import WindowInfoYaml
from oasis_calibration.storage.yaml_format import dumps_yaml
from oasis_calibration.storage.yaml_format import loads_yaml
from oasis_calibration.storage.yaml_format import report_to_dict


def _window(**overrides: Any) -> WindowInfoYaml:
    """Create window metadata with optional overrides."""
    values: dict[str, Any] = {
        "index": 0,
        "t_start_sec": 0.0,
        "t_end_sec": 10.0,
        "status": "max_iterations",
        "iterations": 20,
        "final_cost": 3.0,
        "sum_log_diag_r": None,
        "skipped": {},
    }
    values.update(overrides)
    return WindowInfoYaml(**values)


def test_dump_layout() -> None:
    """Ensure the dumped YAML has the documented layout."""
    report: EstimateReportYaml = EstimateReportYaml(
        format_version=1, window=_window(), parameters={"r_RL": 0.3}
    )

    loaded: Any = yaml.safe_load(dumps_yaml(report))

    assert list(loaded) == ["format_version", "window", "parameters"]
    assert loaded["window"]["sum_log_diag_r"] is None
    assert loaded["parameters"] == {"r_RL": 0.3}


def test_loads_dispatches_on_payload() -> None:
    """Ensure text is parsed into the matching report type."""
    covariance: CovarianceReportYaml = CovarianceReportYaml(
        format_version=1, window=_window(), variances={"t_x": 0.01}
    )

    loaded: Report = loads_yaml(dumps_yaml(covariance))

    assert isinstance(loaded, CovarianceReportYaml)
    assert loaded.variances == {"t_x": 0.01}


def test_integer_values_are_accepted_as_floats() -> None:
    """Ensure YAML integers load into float fields."""
    data: dict[str, object] = report_to_dict(
        EstimateReportYaml(format_version=1, window=_window(), parameters={})
    )
    data["parameters"] = {"L": 3}

    loaded: Report = loads_yaml(yaml.safe_dump(data))

    assert isinstance(loaded, EstimateReportYaml)
    assert loaded.parameters == {"L": 3.0}
    assert isinstance(loaded.parameters["L"], float)


@pytest.mark.parametrize(
    "mutate",
    [
        lambda data: data.update(format_version=2),
        lambda data: data.update(extra=1),
        lambda data: data["window"].pop("status"),
        lambda data: data["window"].update(iterations=1.5),
        lambda data: data["window"].update(skipped={"zero_velocity": "3"}),
        lambda data: data.update(parameters={"r_RL": "big"}),
        lambda data: data.update(parameters={"r_RL": float("nan")}),
    ],
)
def test_invalid_reports_rejected(mutate: Any) -> None:
    """Ensure schema violations raise CalibrationYamlError."""
    data: dict[str, Any] = report_to_dict(
        EstimateReportYaml(
            format_version=1, window=_window(), parameters={"r_RL": 0.3}
        )
    )
    mutate(data)

    with pytest.raises(CalibrationYamlError):
        loads_yaml(yaml.safe_dump(data))


def test_negative_variance_rejected() -> None:
    """Ensure covariance reports hold non-negative variances."""
    with pytest.raises(CalibrationYamlError):
        CovarianceReportYaml(
            format_version=1, window=_window(), variances={"t_x": -1.0}
        )


def test_loads_rejects_non_mapping() -> None:
    """Ensure a YAML root that is not a mapping is rejected."""
    with pytest.raises(CalibrationYamlError):
        loads_yaml("- 1\n- 2\n")
    with pytest.raises(CalibrationYamlError):
        loads_yaml("a: [1\n")
