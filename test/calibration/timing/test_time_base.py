################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

from __future__ import annotations

import pytest

from oasis_calibration.timing.time_base import StampOrder
from oasis_calibration.timing.time_base import TimeBaseError
from oasis_calibration.timing.time_base import delay_interval
from oasis_calibration.timing.time_base import delay_interval_within
from oasis_calibration.timing.time_base import ns_to_sec
from oasis_calibration.timing.time_base import sec_to_ns


def test_sec_ns_conversion() -> None:
    assert sec_to_ns(1.5) == 1_500_000_000
    assert sec_to_ns(0.1) == 100_000_000
    assert ns_to_sec(250_000_000) == pytest.approx(0.25)


@pytest.mark.parametrize("t_sec", [-0.1, float("inf"), float("nan")])
def test_sec_to_ns_rejects_invalid(t_sec: float) -> None:
    with pytest.raises(TimeBaseError):
        sec_to_ns(t_sec)


def test_ns_to_sec_rejects_negative() -> None:
    with pytest.raises(TimeBaseError):
        ns_to_sec(-1)


def test_delay_interval() -> None:
    assert delay_interval(2.0, 0.25) == (1.75, 2.25)
    assert delay_interval(0.0, 0.0) == (0.0, 0.0)

    with pytest.raises(TimeBaseError):
        delay_interval(1.0, -0.1)
    with pytest.raises(TimeBaseError):
        delay_interval(float("nan"), 0.1)


def test_delay_interval_within_span() -> None:
    assert delay_interval_within(1.0, 0.5, 0.5, 1.5)
    assert not delay_interval_within(0.25, 0.5, 0.0, 2.0)
    assert not delay_interval_within(1.75, 0.5, 0.0, 2.0)


def test_stamp_order() -> None:
    StampOrder().check(None, 5)
    StampOrder().check(5, 5)
    StampOrder(strict=True).check(5, 6)

    with pytest.raises(TimeBaseError, match="precedes"):
        StampOrder().check(5, 4)
    with pytest.raises(TimeBaseError, match="repeats"):
        StampOrder(strict=True).check(5, 5)
