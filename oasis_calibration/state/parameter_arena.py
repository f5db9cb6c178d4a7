################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""Arena of parameter blocks addressed by stable integer handles.

The arena is the sole owner of every estimated quantity: trajectory control
points, static wheel parameters, extrinsics and stream delays. Error terms
store handles and read values from immutable snapshots, so a linearization
never observes a half-applied update.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import NDArray

from oasis_calibration.calibration_types.errors import InputError
from oasis_calibration.math_utils.quat import Quaternion


# Block kind for vector-space parameters updated by addition
BLOCK_KIND_EUCLIDEAN: str = "euclidean"

# Block kind for wxyz quaternions updated by a left rotation increment
BLOCK_KIND_ROTATION: str = "rotation"


class ParameterArenaError(InputError):
    """Raised when parameter blocks are malformed or missing."""


@dataclass
class ParameterBlock:
    """A named estimation unknown.

    Attributes:
        name: Unique block name
        value: Current value; a wxyz quaternion for rotation blocks
        kind: BLOCK_KIND_EUCLIDEAN or BLOCK_KIND_ROTATION
        active: False to hold the block fixed during optimization
        bound: Symmetric magnitude bound applied after every update, or None
    """

    name: str
    value: NDArray[np.float64]
    kind: str
    active: bool
    bound: float | None

    def tangent_dim(self) -> int:
        """Return the dimension of the block's update vector."""
        if self.kind == BLOCK_KIND_ROTATION:
            return 3
        return int(self.value.size)


class ParameterArena:
    """Owns parameter blocks and hands out stable handles."""

    def __init__(self) -> None:
        self._blocks: list[ParameterBlock] = []
        self._handles: dict[str, int] = {}

    def __len__(self) -> int:
        """Return the number of blocks."""
        return len(self._blocks)

    def add_block(
        self,
        name: str,
        value: NDArray[np.float64],
        *,
        kind: str = BLOCK_KIND_EUCLIDEAN,
        active: bool = True,
        bound: float | None = None,
    ) -> int:
        """Register a block and return its handle."""
        if not name:
            raise ParameterArenaError("Block name must be non-empty")
        if name in self._handles:
            raise ParameterArenaError(f"Block {name} already exists")
        if kind not in (BLOCK_KIND_EUCLIDEAN, BLOCK_KIND_ROTATION):
            raise ParameterArenaError(f"Unknown block kind {kind}")
        if bound is not None and bound < 0.0:
            raise ParameterArenaError("bound must be non-negative")
        array: NDArray[np.float64] = self._coerce(name, value, kind)
        if bound is not None:
            array = np.clip(array, -bound, bound)
        handle: int = len(self._blocks)
        self._blocks.append(
            ParameterBlock(
                name=name,
                value=array,
                kind=kind,
                active=active,
                bound=bound,
            )
        )
        self._handles[name] = handle
        return handle

    def handle(self, name: str) -> int:
        """Return the handle of the named block."""
        try:
            return self._handles[name]
        except KeyError as exc:
            raise ParameterArenaError(f"Block {name} not found") from exc

    def block(self, handle: int) -> ParameterBlock:
        """Return the block for a handle."""
        if handle < 0 or handle >= len(self._blocks):
            raise ParameterArenaError(f"Invalid handle {handle}")
        return self._blocks[handle]

    def blocks(self) -> tuple[ParameterBlock, ...]:
        """Return all blocks in registration order."""
        return tuple(self._blocks)

    def value(self, handle: int) -> NDArray[np.float64]:
        """Return a copy of a block value."""
        return self.block(handle).value.copy()

    def set_active(self, handle: int, active: bool) -> None:
        """Mark a block free (True) or fixed (False)."""
        self.block(handle).active = active

    def snapshot(self) -> tuple[NDArray[np.float64], ...]:
        """Return read-only copies of every block value, indexed by handle."""
        values: list[NDArray[np.float64]] = []
        for block in self._blocks:
            copy: NDArray[np.float64] = block.value.copy()
            copy.setflags(write=False)
            values.append(copy)
        return tuple(values)

    def restore(self, snapshot: tuple[NDArray[np.float64], ...]) -> None:
        """Restore block values from a snapshot."""
        if len(snapshot) != len(self._blocks):
            raise ParameterArenaError("Snapshot does not match arena layout")
        for block, value in zip(self._blocks, snapshot):
            block.value = np.array(value, dtype=np.float64)

    def apply_increment(self, handle: int, delta: NDArray[np.float64]) -> None:
        """Apply a tangent-space increment to a block."""
        block: ParameterBlock = self.block(handle)
        step: NDArray[np.float64] = np.asarray(delta, dtype=np.float64)
        if step.shape != (block.tangent_dim(),):
            raise ParameterArenaError(
                f"Increment for {block.name} must have shape ({block.tangent_dim()},)"
            )
        if block.kind == BLOCK_KIND_ROTATION:
            block.value = Quaternion(block.value).apply_left_increment(step).to_wxyz()
            return
        updated: NDArray[np.float64] = block.value + step
        if block.bound is not None:
            updated = np.clip(updated, -block.bound, block.bound)
        block.value = updated

    @staticmethod
    def _coerce(
        name: str, value: NDArray[np.float64], kind: str
    ) -> NDArray[np.float64]:
        array: NDArray[np.float64] = np.array(value, dtype=np.float64).reshape(-1)
        if array.size == 0:
            raise ParameterArenaError(f"Block {name} must be non-empty")
        if not np.all(np.isfinite(array)):
            raise ParameterArenaError(f"Block {name} must be finite")
        if kind == BLOCK_KIND_ROTATION:
            if array.shape != (4,):
                raise ParameterArenaError(f"Rotation block {name} must be wxyz")
            array = Quaternion(array).normalized().to_wxyz()
        return array
