#!/usr/bin/env python3
#===- blockplan/pipeline/params.py - Block Parameter Record ------------====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#
#
# Purpose:
#   Typed, validated parameter record of one convolution block. Activation
#   fields accept ids, names or kinds and are normalized to integer ids so
#   the record stays JSON-friendly.
#
#===---------------------------------------------------------------------===#

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional

from blockplan.back_end.activation import ActivationSpec, get_activation
from blockplan.back_end.pad_info import (
    DEPTHWISE_AVG,
    DEPTHWISE_MULTIPLIER_MAX,
    DEPTHWISE_NONE,
    StridesPad,
)
from blockplan.pipeline.block_types import BlockTypeInfo, resolve_block_type

# squeeze_excitation_divisor special values
SQUEEZE_EXCITATION_NONE = -2
SQUEEZE_EXCITATION_EXCITATION_ONLY = -1
SQUEEZE_EXCITATION_NO_INTERMEDIATE = 0


# --------------------------
# BlockParams
# --------------------------
@dataclass(frozen=True)
class BlockParams:
    input0_channels: int
    block_type_id: int
    pointwise20_channels: int
    pointwise1_channels: int = 0
    input0_height: int = 1
    input0_width: int = 1
    depthwise_op: int = DEPTHWISE_NONE
    depthwise_filter_height: int = 1
    depthwise_filter_width: int = 1
    depthwise_strides_pad: int = int(StridesPad.STRIDES_1_PAD_VALID)
    depthwise_activation: Any = 0
    pointwise20_activation: Any = 0
    squeeze_excitation_divisor: int = SQUEEZE_EXCITATION_NONE
    squeeze_excitation_prefix: bool = True
    activation: Any = 0
    input1_channels: Optional[int] = None
    pointwise1_bias: Optional[bool] = None
    depthwise_bias: Optional[bool] = None
    pointwise20_bias: Optional[bool] = None

    def __post_init__(self) -> None:
        resolve_block_type(self.block_type_id)
        object.__setattr__(self, "block_type_id", int(self.block_type_id))
        for name in ("depthwise_activation", "pointwise20_activation", "activation"):
            object.__setattr__(self, name, get_activation(getattr(self, name)).id)

        if self.input0_channels < 1:
            raise ValueError(f"input0_channels must be >= 1, got {self.input0_channels}")
        if self.input0_height < 1 or self.input0_width < 1:
            raise ValueError(f"input0 size must be >= 1, got {self.input0_height}x{self.input0_width}")
        if self.pointwise1_channels < 0:
            raise ValueError(f"pointwise1_channels must be >= 0, got {self.pointwise1_channels}")
        if self.pointwise20_channels < 1:
            raise ValueError(f"pointwise20_channels must be >= 1, got {self.pointwise20_channels}")
        if not (DEPTHWISE_AVG <= self.depthwise_op <= DEPTHWISE_MULTIPLIER_MAX):
            raise ValueError(
                f"depthwise_op must be in [{DEPTHWISE_AVG}, {DEPTHWISE_MULTIPLIER_MAX}], got {self.depthwise_op}"
            )
        if self.depthwise_filter_height < 1 or self.depthwise_filter_width < 1:
            raise ValueError(
                f"depthwise filter must be >= 1x1, got {self.depthwise_filter_height}x{self.depthwise_filter_width}"
            )
        try:
            StridesPad(int(self.depthwise_strides_pad))
        except ValueError:
            raise ValueError(f"depthwise_strides_pad must be in [0, 3], got {self.depthwise_strides_pad}") from None
        if self.squeeze_excitation_divisor < SQUEEZE_EXCITATION_NONE:
            raise ValueError(
                f"squeeze_excitation_divisor must be >= {SQUEEZE_EXCITATION_NONE}, got {self.squeeze_excitation_divisor}"
            )
        if self.input1_channels is not None and self.input1_channels < 0:
            raise ValueError(f"input1_channels must be >= 0, got {self.input1_channels}")

    @property
    def block_type(self) -> BlockTypeInfo:
        return resolve_block_type(self.block_type_id)

    @property
    def has_squeeze_excitation(self) -> bool:
        return self.squeeze_excitation_divisor != SQUEEZE_EXCITATION_NONE

    def activation_spec(self, name: str) -> ActivationSpec:
        return get_activation(getattr(self, name))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "BlockParams":
        known = {f.name for f in fields(BlockParams)}
        unknown = sorted(set(d) - known)
        if unknown:
            raise ValueError(f"Unknown BlockParams fields: {unknown}")
        return BlockParams(**d)
