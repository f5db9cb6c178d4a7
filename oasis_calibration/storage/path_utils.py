################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Path utilities for calibration report persistence."""

from __future__ import annotations

import os
import re
from pathlib import Path


REPORT_KIND_ESTIMATE: str = "estimate"
REPORT_KIND_COVARIANCE: str = "covariance"

_REPORT_NAME: re.Pattern[str] = re.compile(r"^(estimate|covariance)_(\d{4,})\.yaml$")


def window_report_path(
    output_dir: str | os.PathLike[str], window_index: int, kind: str
) -> Path:
    """Return the report path of one window, e.g. estimate_0003.yaml."""
    if kind not in (REPORT_KIND_ESTIMATE, REPORT_KIND_COVARIANCE):
        raise ValueError(f"Unknown report kind: {kind}")
    if window_index < 0:
        raise ValueError("window_index must be non-negative")
    return Path(os.fspath(output_dir)) / f"{kind}_{window_index:04d}.yaml"


def parse_window_report_name(path: str | os.PathLike[str]) -> tuple[str, int] | None:
    """Return the kind and window index encoded in a report file name.

    Names that :func:`window_report_path` would not produce give None.
    """
    match: re.Match[str] | None = _REPORT_NAME.match(Path(os.fspath(path)).name)
    if match is None:
        return None
    return match.group(1), int(match.group(2))
