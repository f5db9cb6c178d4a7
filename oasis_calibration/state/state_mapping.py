################################################################################
#
#  Copyright (C) 2026 Garrett Brown
#  This file is part of OASIS - https://github.com/eigendude/OASIS
#
#  SPDX-License-Identifier: Apache-2.0
#  See DOCS/LICENSING.md for more information.
#
################################################################################

"""State vector block layout for odometry calibration."""

from __future__ import annotations

from dataclasses import dataclass

from oasis_calibration.calibration_types.errors import InputError
from oasis_calibration.state.parameter_arena import ParameterArena
from oasis_calibration.state.parameter_arena import ParameterBlock


# Prefix for trajectory control point block names
BLOCK_NAME_TRAJECTORY_PREFIX: str = "traj"

# Block name for the four wheel radii
BLOCK_NAME_WHEEL_RADII: str = "wheel_radii"

# Block name for rear half-track, front half-track and axle separation
BLOCK_NAME_WHEEL_GEOMETRY: str = "wheel_geometry"

# Block name for the odometry origin expressed in the IMU frame
BLOCK_NAME_EXTRINSIC_TRANSLATION: str = "extrinsic_translation"

# Block name for the odometry-to-IMU rotation
BLOCK_NAME_EXTRINSIC_ROTATION: str = "extrinsic_rotation"

# Block name for the steering polynomial coefficients
BLOCK_NAME_STEERING: str = "steering"

# Prefix for per-stream delay block names
BLOCK_NAME_DELAY_PREFIX: str = "delay"

# Calibration blocks in column order after the trajectory
CALIBRATION_BLOCK_NAMES: tuple[str, ...] = (
    BLOCK_NAME_WHEEL_RADII,
    BLOCK_NAME_WHEEL_GEOMETRY,
    BLOCK_NAME_EXTRINSIC_TRANSLATION,
    BLOCK_NAME_EXTRINSIC_ROTATION,
    BLOCK_NAME_STEERING,
)

# Scalar names reported for each calibration block
BLOCK_SCALAR_NAMES: dict[str, tuple[str, ...]] = {
    BLOCK_NAME_WHEEL_RADII: ("r_RL", "r_RR", "r_FL", "r_FR"),
    BLOCK_NAME_WHEEL_GEOMETRY: ("e_R", "e_F", "L"),
    BLOCK_NAME_EXTRINSIC_TRANSLATION: ("t_x", "t_y", "t_z"),
    BLOCK_NAME_EXTRINSIC_ROTATION: ("rot_x", "rot_y", "rot_z"),
    BLOCK_NAME_STEERING: ("a0", "a1", "a2", "a3"),
}


class StateMappingError(InputError):
    """Raised when state mapping construction is invalid."""


def trajectory_block_name(index: int) -> str:
    """Return the block name of a trajectory control point."""
    return f"{BLOCK_NAME_TRAJECTORY_PREFIX}_{index}"


def delay_block_name(stream: str) -> str:
    """Return the block name of a stream delay."""
    return f"{BLOCK_NAME_DELAY_PREFIX}_{stream}"


def scalar_names(block_name: str) -> tuple[str, ...]:
    """Return the scalar names reported for a block."""
    if block_name in BLOCK_SCALAR_NAMES:
        return BLOCK_SCALAR_NAMES[block_name]
    if block_name.startswith(f"{BLOCK_NAME_DELAY_PREFIX}_"):
        return (block_name,)
    raise StateMappingError(f"Block {block_name} has no reported scalars")


@dataclass(frozen=True)
class StateBlock:
    """Represents a named block in the solver's column space.

    Attributes:
        name: Block name identifier
        handle: Arena handle of the block
        start: Starting column
        dim: Block tangent dimension
    """

    name: str
    handle: int
    start: int
    dim: int

    def stop(self) -> int:
        """Return the exclusive stop column for the block."""
        return self.start + self.dim

    def sl(self) -> slice:
        """Return the slice covering the block columns."""
        return slice(self.start, self.stop())

    def validate(self) -> None:
        """Validate block indices and dimensions."""
        if not self.name:
            raise StateMappingError("Block name must be non-empty")
        if self.start < 0:
            raise StateMappingError("Block start must be non-negative")
        if self.dim <= 0:
            raise StateMappingError("Block dim must be positive")


@dataclass(frozen=True)
class StateMapping:
    """Deterministic column layout of the active parameter blocks.

    Fixed blocks receive no columns. Active blocks keep their registration
    order, so the assembler controls which blocks form the trailing column
    range used for covariance extraction.
    """

    _blocks: tuple[StateBlock, ...]
    _by_handle: dict[int, StateBlock]

    @classmethod
    def from_arena(cls, arena: ParameterArena) -> StateMapping:
        """Construct a state mapping from the active blocks of an arena."""
        blocks: list[StateBlock] = []
        offset: int = 0
        param_block: ParameterBlock
        for handle, param_block in enumerate(arena.blocks()):
            if not param_block.active:
                continue
            block: StateBlock = StateBlock(
                name=param_block.name,
                handle=handle,
                start=offset,
                dim=param_block.tangent_dim(),
            )
            block.validate()
            blocks.append(block)
            offset += block.dim
        mapping: StateMapping = cls(
            _blocks=tuple(blocks),
            _by_handle={block.handle: block for block in blocks},
        )
        mapping.validate()
        return mapping

    def dim(self) -> int:
        """Return the total number of columns."""
        if not self._blocks:
            return 0
        return self._blocks[-1].stop()

    def blocks(self) -> tuple[StateBlock, ...]:
        """Return the blocks in column order."""
        return self._blocks

    def has(self, handle: int) -> bool:
        """Return True when the handle owns columns."""
        return handle in self._by_handle

    def block(self, handle: int) -> StateBlock:
        """Return the block for an arena handle."""
        try:
            return self._by_handle[handle]
        except KeyError as exc:
            raise StateMappingError(f"Handle {handle} is not active") from exc

    def has_named(self, name: str) -> bool:
        """Return True when the named block owns columns."""
        return any(block.name == name for block in self._blocks)

    def block_at(self, column: int) -> StateBlock:
        """Return the block owning a column."""
        for block in self._blocks:
            if block.start <= column < block.stop():
                return block
        raise StateMappingError(f"Column {column} is out of range")

    def column_range(self, names: tuple[str, ...]) -> tuple[int, int]:
        """Return the contiguous [start, stop) columns spanned by named blocks.

        Names without columns (fixed blocks) are ignored.
        """
        present: list[StateBlock] = [
            block for block in self._blocks if block.name in names
        ]
        if not present:
            raise StateMappingError("None of the requested blocks are active")
        start: int = present[0].start
        stop: int = start
        for block in present:
            if block.start != stop:
                raise StateMappingError("Requested blocks are not contiguous")
            stop = block.stop()
        return start, stop

    def validate(self) -> None:
        """Validate the layout."""
        offset: int = 0
        for block in self._blocks:
            block.validate()
            if block.start != offset:
                raise StateMappingError("Blocks must be contiguous")
            offset = block.stop()
        names: list[str] = [block.name for block in self._blocks]
        if len(set(names)) != len(names):
            raise StateMappingError("Block names must be unique")
