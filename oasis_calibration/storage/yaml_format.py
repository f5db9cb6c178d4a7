################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""YAML schema utilities for per-window calibration reports."""

from __future__ import annotations

import math
import numbers
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Union

import yaml

from oasis_calibration.calibration_types.errors import InputError


# Report format version written by this module
FORMAT_VERSION: int = 1


class CalibrationYamlError(InputError):
    """Raised when the calibration report YAML schema is invalid."""


@dataclass(frozen=True)
class WindowInfoYaml:
    """Window metadata shared by both reports.

    Attributes:
        index: Zero-based window number
        t_start_sec: Window start, seconds
        t_end_sec: Window end, seconds
        status: Solver status name
        iterations: Gauss-Newton iterations taken
        final_cost: Weighted cost at the returned estimate
        sum_log_diag_r: Information scalar, or None without a factor
        skipped: Skipped odometry counts keyed by reason
    """

    index: int
    t_start_sec: float
    t_end_sec: float
    status: str
    iterations: int
    final_cost: float
    sum_log_diag_r: float | None = None
    skipped: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate metadata values."""
        object.__setattr__(self, "index", _require_int(self.index, "index"))
        object.__setattr__(
            self, "t_start_sec", _require_float(self.t_start_sec, "t_start_sec")
        )
        object.__setattr__(
            self, "t_end_sec", _require_float(self.t_end_sec, "t_end_sec")
        )
        object.__setattr__(self, "status", _require_str(self.status, "status"))
        object.__setattr__(
            self, "iterations", _require_int(self.iterations, "iterations")
        )
        object.__setattr__(
            self, "final_cost", _require_float(self.final_cost, "final_cost")
        )
        if self.sum_log_diag_r is not None:
            object.__setattr__(
                self,
                "sum_log_diag_r",
                _require_float(self.sum_log_diag_r, "sum_log_diag_r"),
            )
        object.__setattr__(
            self,
            "skipped",
            {
                _require_str(k, "skipped key"): _require_int(v, f"skipped.{k}")
                for k, v in _require_mapping(self.skipped, "skipped").items()
            },
        )


@dataclass(frozen=True)
class EstimateReportYaml:
    """Parameter estimates of one window keyed by scalar name.

    Attributes:
        format_version: Report format version, must be 1
        window: Window metadata
        parameters: Parameter values keyed by scalar name
    """

    format_version: int
    window: WindowInfoYaml
    parameters: dict[str, float]

    def __post_init__(self) -> None:
        """Validate version and values."""
        _require_version(self.format_version)
        object.__setattr__(self, "parameters", _float_mapping(self.parameters))


@dataclass(frozen=True)
class CovarianceReportYaml:
    """Diagonal covariance of one window keyed by scalar name.

    Attributes:
        format_version: Report format version, must be 1
        window: Window metadata
        variances: Marginal variances keyed by scalar name
    """

    format_version: int
    window: WindowInfoYaml
    variances: dict[str, float]

    def __post_init__(self) -> None:
        """Validate version and values."""
        _require_version(self.format_version)
        variances: dict[str, float] = _float_mapping(self.variances)
        for name, value in variances.items():
            if value < 0.0:
                raise CalibrationYamlError(f"Variance of {name} must be non-negative")
        object.__setattr__(self, "variances", variances)


Report = Union[EstimateReportYaml, CovarianceReportYaml]


def report_to_dict(report: Report) -> dict[str, object]:
    """Convert a report to a YAML-safe dictionary."""
    window: WindowInfoYaml = report.window
    data: dict[str, object] = {
        "format_version": report.format_version,
        "window": {
            "index": window.index,
            "t_start_sec": window.t_start_sec,
            "t_end_sec": window.t_end_sec,
            "status": window.status,
            "iterations": window.iterations,
            "final_cost": window.final_cost,
            "sum_log_diag_r": window.sum_log_diag_r,
            "skipped": dict(window.skipped),
        },
    }
    if isinstance(report, EstimateReportYaml):
        data["parameters"] = dict(report.parameters)
    else:
        data["variances"] = dict(report.variances)
    return data


def _window_from_dict(data: dict[str, object]) -> WindowInfoYaml:
    _require_keys(
        "window",
        data,
        {
            "index",
            "t_start_sec",
            "t_end_sec",
            "status",
            "iterations",
            "final_cost",
            "sum_log_diag_r",
            "skipped",
        },
    )
    sum_log: object = data["sum_log_diag_r"]
    return WindowInfoYaml(
        index=_require_int(data["index"], "window.index"),
        t_start_sec=_require_float(data["t_start_sec"], "window.t_start_sec"),
        t_end_sec=_require_float(data["t_end_sec"], "window.t_end_sec"),
        status=_require_str(data["status"], "window.status"),
        iterations=_require_int(data["iterations"], "window.iterations"),
        final_cost=_require_float(data["final_cost"], "window.final_cost"),
        sum_log_diag_r=(
            None
            if sum_log is None
            else _require_float(sum_log, "window.sum_log_diag_r")
        ),
        skipped=_require_mapping(data["skipped"], "window.skipped"),
    )


def estimate_report_from_dict(data: dict[str, object]) -> EstimateReportYaml:
    """Parse a YAML dictionary into an estimate report."""
    if not isinstance(data, dict):
        raise CalibrationYamlError("YAML root must be a mapping")
    _require_keys("root", data, {"format_version", "window", "parameters"})
    return EstimateReportYaml(
        format_version=_require_int(data["format_version"], "format_version"),
        window=_window_from_dict(_require_mapping(data["window"], "window")),
        parameters=_require_mapping(data["parameters"], "parameters"),
    )


def covariance_report_from_dict(data: dict[str, object]) -> CovarianceReportYaml:
    """Parse a YAML dictionary into a covariance report."""
    if not isinstance(data, dict):
        raise CalibrationYamlError("YAML root must be a mapping")
    _require_keys("root", data, {"format_version", "window", "variances"})
    return CovarianceReportYaml(
        format_version=_require_int(data["format_version"], "format_version"),
        window=_window_from_dict(_require_mapping(data["window"], "window")),
        variances=_require_mapping(data["variances"], "variances"),
    )


def dumps_yaml(report: Report) -> str:
    """Serialize a report to deterministic YAML."""
    return yaml.safe_dump(
        report_to_dict(report),
        sort_keys=False,
        indent=2,
        default_flow_style=False,
    )


def loads_yaml(text: str) -> Report:
    """Parse an estimate or covariance report from YAML text."""
    try:
        loaded: Any = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise CalibrationYamlError(f"Invalid YAML: {exc}") from exc
    if not isinstance(loaded, dict):
        raise CalibrationYamlError("YAML root must be a mapping")
    if "parameters" in loaded:
        return estimate_report_from_dict(loaded)
    return covariance_report_from_dict(loaded)


def _require_version(value: object) -> None:
    """Ensure the format version is supported."""
    if _require_int(value, "format_version") != FORMAT_VERSION:
        raise CalibrationYamlError(f"format_version must be {FORMAT_VERSION}")


def _float_mapping(value: object) -> dict[str, float]:
    """Ensure the value maps names to finite floats."""
    result: dict[str, float] = {}
    for name, number in _require_mapping(value, "values").items():
        converted: float = _require_float(number, str(name))
        if not math.isfinite(converted):
            raise CalibrationYamlError(f"{name} must be finite")
        result[_require_str(name, "name")] = converted
    return result


def _require_keys(scope: str, data: dict[str, object], required: set[str]) -> None:
    """Ensure a mapping has exactly the required keys."""
    unknown: set[str] = {key for key in data.keys() if key not in required}
    if unknown:
        raise CalibrationYamlError(
            f"Unexpected keys in {scope}: {', '.join(sorted(unknown))}"
        )
    missing: set[str] = {key for key in required if key not in data}
    if missing:
        raise CalibrationYamlError(
            f"Missing keys in {scope}: {', '.join(sorted(missing))}"
        )


def _require_mapping(value: object, name: str) -> dict[str, Any]:
    """Ensure the value is a dictionary."""
    if not isinstance(value, dict):
        raise CalibrationYamlError(f"{name} must be a mapping")
    return value


def _require_str(value: object, name: str) -> str:
    """Ensure the value is a string."""
    if not isinstance(value, str):
        raise CalibrationYamlError(f"{name} must be a string")
    return value


def _require_int(value: object, name: str) -> int:
    """Ensure the value is an integer."""
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        raise CalibrationYamlError(f"{name} must be an integer")
    return int(value)


def _require_float(value: object, name: str) -> float:
    """Ensure the value is a float."""
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise CalibrationYamlError(f"{name} must be a float")
    return float(value)
