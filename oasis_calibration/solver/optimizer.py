################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Gauss-Newton optimizer for odometry calibration.

Each iteration linearizes all error terms, factors the column-normalized
Jacobian with a QR decomposition and takes the undamped step R delta = -Q^T r.
The upper-triangular factor of the final linearization is returned for
covariance and observability diagnostics.

The problem is assembled sparse but factored dense. QR costs O(m n^2) time
and O(m n) memory for m residual rows and n state columns, which suits
windows of a few hundred spline control points. Longer windows should be
split by the window controller rather than factored whole.
"""

from __future__ import annotations

import enum
import logging
import threading
from concurrent.futures import Executor
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np
import scipy.linalg
import scipy.sparse
from numpy.typing import NDArray

from oasis_calibration.calibration_types.errors import ConvergenceFailure
from oasis_calibration.calibration_types.errors import ObservabilityFailure
from oasis_calibration.config.calibrator_params import SolverParams
from oasis_calibration.solver.problem import CalibrationProblem
from oasis_calibration.solver.problem import Linearization
from oasis_calibration.state.state_mapping import StateMapping


_LOG: logging.Logger = logging.getLogger(__name__)


class SolveStatus(enum.Enum):
    """Outcome of one optimization."""

    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"
    RANK_DEFICIENT = "rank_deficient"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TriangularFactor:
    """Upper-triangular factor R with J = Q R at the final estimate.

    Attributes:
        R: (n, n) upper-triangular factor with a positive diagonal
        mapping: Column layout of R
    """

    R: NDArray[np.float64]
    mapping: StateMapping


@dataclass(frozen=True)
class QrStep:
    """QR factorization of one linearization and its Gauss-Newton step.

    Attributes:
        R: Unscaled upper-triangular factor, or None when rank deficient
        step: Gauss-Newton step, or None when rank deficient
        deficient_columns: Columns whose normalized pivot fell below tolerance
    """

    R: NDArray[np.float64] | None
    step: NDArray[np.float64] | None
    deficient_columns: tuple[int, ...]


@dataclass(frozen=True)
class SolveReport:
    """Summary of an optimization run.

    Attributes:
        status: Final solve status
        iterations: Number of Gauss-Newton steps taken
        initial_cost: Cost at the initial estimate
        final_cost: Cost at the returned estimate
        final_rms: Weighted residual RMS at the returned estimate
        residual_count: Number of residual rows
        factor: Triangular factor at the returned estimate, if full rank
        deficient_blocks: Names of blocks that lost rank
    """

    status: SolveStatus
    iterations: int
    initial_cost: float
    final_cost: float
    final_rms: float
    residual_count: int
    factor: TriangularFactor | None
    deficient_blocks: tuple[str, ...] = ()

    @property
    def incomplete(self) -> bool:
        """Return True when the solve was aborted before finishing."""
        return self.status == SolveStatus.CANCELLED

    def raise_for_status(self) -> None:
        """Raise the error matching a failed status."""
        if self.status == SolveStatus.RANK_DEFICIENT:
            raise ObservabilityFailure(
                "Information matrix is rank deficient in blocks "
                f"{', '.join(self.deficient_blocks)}",
                blocks=self.deficient_blocks,
            )
        if self.status == SolveStatus.MAX_ITERATIONS:
            raise ConvergenceFailure(
                f"Solver did not converge in {self.iterations} iterations",
                iterations=self.iterations,
            )


def factorize(
    jacobian: scipy.sparse.spmatrix,
    residual: NDArray[np.float64],
    rank_tolerance: float,
) -> QrStep:
    """Factor J with normalized columns and solve for the Gauss-Newton step.

    J is densified before factoring.
    """
    J: NDArray[np.float64] = np.asarray(jacobian.toarray(), dtype=np.float64)
    m, n = J.shape
    if n == 0:
        return QrStep(np.zeros((0, 0), dtype=np.float64), np.zeros(0), ())

    scale: NDArray[np.float64] = np.linalg.norm(J, axis=0)
    deficient: set[int] = {int(j) for j in np.flatnonzero(scale <= 0.0)}
    if m < n:
        deficient.update(range(m, n))
    if deficient:
        return QrStep(None, None, tuple(sorted(deficient)))

    Q, Rs = scipy.linalg.qr(J / scale, mode="economic")
    diag: NDArray[np.float64] = np.abs(np.diag(Rs))
    threshold: float = rank_tolerance * float(np.max(diag))
    deficient.update(int(j) for j in np.flatnonzero(diag <= threshold))
    if deficient:
        return QrStep(None, None, tuple(sorted(deficient)))

    signs: NDArray[np.float64] = np.sign(np.diag(Rs))
    Rs = Rs * signs[:, np.newaxis]
    qtr: NDArray[np.float64] = signs * (Q.T @ residual)
    step_scaled: NDArray[np.float64] = -scipy.linalg.solve_triangular(Rs, qtr)
    R: NDArray[np.float64] = Rs * scale[np.newaxis, :]
    return QrStep(R, step_scaled / scale, ())


def _deficient_blocks(
    mapping: StateMapping, columns: tuple[int, ...]
) -> tuple[str, ...]:
    names: list[str] = []
    for column in columns:
        name: str = mapping.block_at(column).name
        if name not in names:
            names.append(name)
    return tuple(names)


def _run(
    problem: CalibrationProblem,
    params: SolverParams,
    executor: Executor | None,
    cancel_event: threading.Event | None,
    verbose: bool,
) -> SolveReport:
    level: int = logging.INFO if verbose else logging.DEBUG
    lin: Linearization = problem.linearize(executor)
    initial_cost: float = lin.cost
    best_cost: float = lin.cost
    best_snapshot: tuple[NDArray[np.float64], ...] = problem.arena.snapshot()
    status: SolveStatus = SolveStatus.MAX_ITERATIONS
    deficient_blocks: tuple[str, ...] = ()
    iterations: int = 0

    while iterations < params.max_iterations:
        if cancel_event is not None and cancel_event.is_set():
            status = SolveStatus.CANCELLED
            break
        if iterations > 0:
            lin = problem.linearize(executor)

        qr: QrStep = factorize(lin.jacobian, lin.residual, params.rank_tolerance)
        if qr.step is None:
            status = SolveStatus.RANK_DEFICIENT
            deficient_blocks = _deficient_blocks(lin.mapping, qr.deficient_columns)
            _LOG.warning("Rank deficient blocks: %s", ", ".join(deficient_blocks))
            break

        problem.apply_delta(qr.step, lin.mapping)
        iterations += 1
        cost: float = problem.cost(executor)
        step_norm: float = float(np.linalg.norm(qr.step))
        _LOG.log(
            level,
            "Iteration %d: cost %.6e -> %.6e, |dx| %.3e",
            iterations,
            lin.cost,
            cost,
            step_norm,
        )
        if cost < best_cost:
            best_cost = cost
            best_snapshot = problem.arena.snapshot()

        delta_j: float = abs(lin.cost - cost)
        if (
            delta_j < params.convergence_delta_j * max(1.0, lin.cost)
            or step_norm < params.convergence_delta_x
        ):
            status = SolveStatus.CONVERGED
            break

    problem.arena.restore(best_snapshot)
    factor: TriangularFactor | None = None
    final: Linearization = problem.linearize(executor)
    if status != SolveStatus.RANK_DEFICIENT:
        qr_final: QrStep = factorize(
            final.jacobian, final.residual, params.rank_tolerance
        )
        if qr_final.R is None:
            status = SolveStatus.RANK_DEFICIENT
            deficient_blocks = _deficient_blocks(
                final.mapping, qr_final.deficient_columns
            )
        else:
            factor = TriangularFactor(R=qr_final.R, mapping=final.mapping)

    return SolveReport(
        status=status,
        iterations=iterations,
        initial_cost=initial_cost,
        final_cost=final.cost,
        final_rms=final.rms,
        residual_count=final.residual_count,
        factor=factor,
        deficient_blocks=deficient_blocks,
    )


def optimize(
    problem: CalibrationProblem,
    params: SolverParams,
    *,
    cancel_event: threading.Event | None = None,
    verbose: bool = False,
) -> SolveReport:
    """Run Gauss-Newton iterations on the problem's arena in place.

    The arena holds the lowest-cost estimate on return. Cancellation is
    checked before each iteration.
    """
    report: SolveReport
    if params.num_threads > 1:
        with ThreadPoolExecutor(max_workers=params.num_threads) as executor:
            report = _run(problem, params, executor, cancel_event, verbose)
    else:
        report = _run(problem, params, None, cancel_event, verbose)

    _LOG.log(
        logging.INFO if verbose else logging.DEBUG,
        "Solve finished: %s after %d iterations, cost %.6e -> %.6e",
        report.status.value,
        report.iterations,
        report.initial_cost,
        report.final_cost,
    )
    return report
