################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Sparse linearization of the calibration least-squares problem."""

from __future__ import annotations

from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Sequence

import numpy as np
import scipy.sparse
from numpy.typing import NDArray

from oasis_calibration.solver.error_terms import ErrorTerm
from oasis_calibration.solver.error_terms import ErrorTermLinearization
from oasis_calibration.solver.robust_loss import robust_weight
from oasis_calibration.state.parameter_arena import ParameterArena
from oasis_calibration.state.state_mapping import StateBlock
from oasis_calibration.state.state_mapping import StateMapping


@dataclass(frozen=True)
class Linearization:
    """Robustly weighted Jacobian and residual at one parameter snapshot.

    Attributes:
        jacobian: Sparse (m, n) Jacobian over the active columns
        residual: Weighted residual, shape (m,)
        cost: 0.5 * ||residual||^2
        rms: Root mean square of the weighted residual
        residual_count: Number of residual rows
        mapping: Column layout the Jacobian was built against
    """

    jacobian: scipy.sparse.csr_matrix
    residual: NDArray[np.float64]
    cost: float
    rms: float
    residual_count: int
    mapping: StateMapping


def _weighted_term(
    term: ErrorTerm, values: Sequence[NDArray[np.float64]]
) -> ErrorTermLinearization:
    lin: ErrorTermLinearization = term.linearize(values)
    weight: float = robust_weight(lin.residual, term.robust)
    sqrt_weight: float = float(np.sqrt(weight))
    if sqrt_weight == 1.0:
        return lin
    return ErrorTermLinearization(
        residual=lin.residual * sqrt_weight,
        jacobians={
            handle: J * sqrt_weight for handle, J in lin.jacobians.items()
        },
    )


def _weighted_residual(
    term: ErrorTerm, values: Sequence[NDArray[np.float64]]
) -> NDArray[np.float64]:
    residual: NDArray[np.float64] = term.evaluate_residual(values)
    weight: float = robust_weight(residual, term.robust)
    return residual * float(np.sqrt(weight))


class CalibrationProblem:
    """Owns the parameter arena and the error terms of one window."""

    def __init__(self, arena: ParameterArena) -> None:
        self._arena: ParameterArena = arena
        self._terms: list[ErrorTerm] = []

    @property
    def arena(self) -> ParameterArena:
        """Return the parameter arena."""
        return self._arena

    @property
    def terms(self) -> tuple[ErrorTerm, ...]:
        """Return the attached error terms."""
        return tuple(self._terms)

    def add_error_term(self, term: ErrorTerm) -> None:
        """Attach an error term."""
        self._terms.append(term)

    def linearize(self, executor: Executor | None = None) -> Linearization:
        """Evaluate all terms at the current arena values."""
        mapping: StateMapping = StateMapping.from_arena(self._arena)
        values: tuple[NDArray[np.float64], ...] = self._arena.snapshot()
        terms: list[ErrorTermLinearization]
        if executor is None:
            terms = [_weighted_term(term, values) for term in self._terms]
        else:
            terms = list(
                executor.map(lambda term: _weighted_term(term, values), self._terms)
            )

        rows: list[NDArray[np.int64]] = []
        cols: list[NDArray[np.int64]] = []
        data: list[NDArray[np.float64]] = []
        residuals: list[NDArray[np.float64]] = []
        row_offset: int = 0
        for lin in terms:
            m: int = int(lin.residual.size)
            residuals.append(lin.residual)
            for handle, J in lin.jacobians.items():
                if not mapping.has(handle):
                    continue
                block: StateBlock = mapping.block(handle)
                r_idx, c_idx = np.meshgrid(
                    np.arange(row_offset, row_offset + m, dtype=np.int64),
                    np.arange(block.start, block.stop(), dtype=np.int64),
                    indexing="ij",
                )
                rows.append(r_idx.ravel())
                cols.append(c_idx.ravel())
                J_block: NDArray[np.float64] = np.asarray(J, dtype=np.float64)
                data.append(J_block.reshape(m, block.dim).ravel())
            row_offset += m

        residual: NDArray[np.float64] = (
            np.concatenate(residuals) if residuals else np.zeros(0, dtype=np.float64)
        )
        jacobian: scipy.sparse.csr_matrix = scipy.sparse.coo_matrix(
            (
                np.concatenate(data) if data else np.zeros(0, dtype=np.float64),
                (
                    np.concatenate(rows) if rows else np.zeros(0, dtype=np.int64),
                    np.concatenate(cols) if cols else np.zeros(0, dtype=np.int64),
                ),
            ),
            shape=(row_offset, mapping.dim()),
        ).tocsr()
        cost: float = float(0.5 * residual @ residual)
        rms: float = 0.0
        if residual.size:
            rms = float(np.sqrt(residual @ residual / residual.size))
        return Linearization(
            jacobian=jacobian,
            residual=residual,
            cost=cost,
            rms=rms,
            residual_count=row_offset,
            mapping=mapping,
        )

    def cost(self, executor: Executor | None = None) -> float:
        """Return the weighted cost at the current arena values."""
        values: tuple[NDArray[np.float64], ...] = self._arena.snapshot()
        residuals: list[NDArray[np.float64]]
        if executor is None:
            residuals = [_weighted_residual(term, values) for term in self._terms]
        else:
            residuals = list(
                executor.map(lambda term: _weighted_residual(term, values), self._terms)
            )
        return float(sum(0.5 * float(r @ r) for r in residuals))

    def apply_delta(self, delta: NDArray[np.float64], mapping: StateMapping) -> None:
        """Apply a tangent-space step to every active block."""
        step: NDArray[np.float64] = np.asarray(delta, dtype=np.float64)
        if step.shape != (mapping.dim(),):
            raise ValueError("Step does not match the state dimension")
        for block in mapping.blocks():
            self._arena.apply_increment(block.handle, step[block.sl()])
