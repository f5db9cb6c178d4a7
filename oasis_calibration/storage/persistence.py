################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Reading and writing calibration reports as YAML files.

Each solved window produces one estimate report and, when diagnostics are
enabled, one covariance report. Files are named by
:func:`~oasis_calibration.storage.path_utils.window_report_path`, so a whole
run can be read back in window order with :func:`load_window_reports`.
"""

from __future__ import annotations

import os
from pathlib import Path

from oasis_calibration.calibration_types.errors import InputError
from oasis_calibration.storage.path_utils import REPORT_KIND_COVARIANCE
from oasis_calibration.storage.path_utils import REPORT_KIND_ESTIMATE
from oasis_calibration.storage.path_utils import parse_window_report_name
from oasis_calibration.storage.yaml_format import CalibrationYamlError
from oasis_calibration.storage.yaml_format import CovarianceReportYaml
from oasis_calibration.storage.yaml_format import EstimateReportYaml
from oasis_calibration.storage.yaml_format import Report
from oasis_calibration.storage.yaml_format import dumps_yaml
from oasis_calibration.storage.yaml_format import loads_yaml


class CalibrationPersistenceError(InputError):
    """Raised when loading or saving calibration reports fails."""


_REPORT_TYPES: dict[str, type] = {
    REPORT_KIND_ESTIMATE: EstimateReportYaml,
    REPORT_KIND_COVARIANCE: CovarianceReportYaml,
}


def is_yaml_path(path: str | os.PathLike[str]) -> bool:
    """Return True if the path has a YAML extension."""
    return Path(os.fspath(path)).suffix.lower() in (".yaml", ".yml")


def _yaml_path(path: str | os.PathLike[str]) -> Path:
    if not is_yaml_path(path):
        raise CalibrationPersistenceError(f"Not a YAML path: {os.fspath(path)}")
    return Path(os.fspath(path))


def _replace_file(path: Path, text: str) -> None:
    # Readers of the directory never observe a partially written report
    staging: Path = path.with_name(f".{path.name}.tmp.{os.getpid()}")
    try:
        with staging.open("w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(staging, path)
    except OSError:
        staging.unlink(missing_ok=True)
        raise


def save_yaml_report(
    path: str | os.PathLike[str],
    report: Report,
    *,
    atomic_write: bool = True,
) -> None:
    """Write one calibration report, creating parent directories as needed."""
    target: Path = _yaml_path(path)
    try:
        text: str = dumps_yaml(report)
        target.parent.mkdir(parents=True, exist_ok=True)
        if atomic_write:
            _replace_file(target, text)
        else:
            target.write_text(text, encoding="utf-8")
    except (OSError, CalibrationYamlError) as exc:
        raise CalibrationPersistenceError(f"Cannot save report to {target}") from exc


def load_yaml_report(path: str | os.PathLike[str]) -> Report:
    """Read one calibration report of either kind."""
    source: Path = _yaml_path(path)
    try:
        return loads_yaml(source.read_text(encoding="utf-8"))
    except (OSError, CalibrationYamlError) as exc:
        raise CalibrationPersistenceError(f"Cannot load report from {source}") from exc


def load_window_reports(
    output_dir: str | os.PathLike[str], kind: str = REPORT_KIND_ESTIMATE
) -> list[tuple[int, Report]]:
    """Read every report of one kind from an output directory.

    Args:
        output_dir: Directory the calibrator saved its reports to
        kind: REPORT_KIND_ESTIMATE or REPORT_KIND_COVARIANCE

    Returns:
        ``(window_index, report)`` pairs sorted by window index. Files not
        named like window reports are ignored.

    Raises:
        CalibrationPersistenceError: if the directory cannot be listed, a
            report cannot be read, or a file holds the other kind of report
    """
    if kind not in _REPORT_TYPES:
        raise CalibrationPersistenceError(f"Unknown report kind: {kind}")
    directory: Path = Path(os.fspath(output_dir))
    try:
        entries: list[Path] = [
            entry for entry in directory.iterdir() if entry.is_file()
        ]
    except OSError as exc:
        raise CalibrationPersistenceError(f"Cannot list {directory}") from exc

    found: list[tuple[int, Path]] = []
    for entry in entries:
        parsed: tuple[str, int] | None = parse_window_report_name(entry)
        if parsed is not None and parsed[0] == kind:
            found.append((parsed[1], entry))
    found.sort()

    reports: list[tuple[int, Report]] = []
    for window_index, entry in found:
        report: Report = load_yaml_report(entry)
        if not isinstance(report, _REPORT_TYPES[kind]):
            raise CalibrationPersistenceError(f"{entry} does not hold a {kind} report")
        reports.append((window_index, report))
    return reports
