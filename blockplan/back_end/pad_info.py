#!/usr/bin/env python3
#===- blockplan/back_end/pad_info.py - Depthwise Stride/Pad Geometry ---====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#
#
# Purpose:
#   Output geometry of a depthwise operation (conv, avg pool or max pool)
#   from its filter size and stride/pad mode, plus the predicates the planner
#   uses to decide whether the depthwise stage can be elided.
#
# Notes:
#   "same" padding is asymmetric like TensorFlow: the extra row/column of
#   an odd padding goes to the bottom/right.
#
#===---------------------------------------------------------------------===#

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from enum import IntEnum
from typing import Dict, Tuple

import torch

from blockplan.back_end.interval import DTYPE

# depthwise_avg_max_or_channel_multiplier special values
DEPTHWISE_AVG = -2
DEPTHWISE_MAX = -1
DEPTHWISE_NONE = 0
DEPTHWISE_MULTIPLIER_MAX = 32


class StridesPad(IntEnum):
    STRIDES_1_PAD_VALID = 0
    STRIDES_1_PAD_SAME = 1
    STRIDES_2_PAD_SAME = 2
    STRIDES_2_PAD_VALID = 3

    @property
    def strides(self) -> int:
        return 1 if self in (StridesPad.STRIDES_1_PAD_VALID, StridesPad.STRIDES_1_PAD_SAME) else 2

    @property
    def pad(self) -> str:
        return "valid" if self in (StridesPad.STRIDES_1_PAD_VALID, StridesPad.STRIDES_2_PAD_VALID) else "same"


def depthwise_op_name(op: int) -> str:
    if op == DEPTHWISE_AVG:
        return "avg"
    if op == DEPTHWISE_MAX:
        return "max"
    if op == DEPTHWISE_NONE:
        return "none"
    return f"conv_x{op}"


def _out_size_and_pad(in_size: int, filter_size: int, strides: int, pad: str) -> Tuple[int, int, int]:
    if pad == "valid":
        out = math.ceil((in_size - filter_size + 1) / strides)
        if out <= 0:
            raise ValueError(f"valid padding: filter {filter_size} larger than input {in_size}")
        return out, 0, 0
    out = math.ceil(in_size / strides)
    total = max(0, (out - 1) * strides + filter_size - in_size)
    before = total // 2
    return out, before, total - before


@dataclass(frozen=True)
class PadInfo:
    input_height: int
    input_width: int
    input_channels: int
    op: int
    filter_height: int
    filter_width: int
    strides_pad: StridesPad
    output_height: int
    output_width: int
    output_channels: int
    pad_top: int
    pad_bottom: int
    pad_left: int
    pad_right: int

    @property
    def strides(self) -> int:
        return self.strides_pad.strides

    @property
    def pad(self) -> str:
        return self.strides_pad.pad

    @property
    def channel_multiplier(self) -> int:
        return self.op if self.op > 0 else 1

    @property
    def is_pooling(self) -> bool:
        return self.op in (DEPTHWISE_AVG, DEPTHWISE_MAX)

    def output_channel_count_is_same(self) -> bool:
        return self.output_channels == self.input_channels

    def output_height_width_is_same(self) -> bool:
        return self.output_height == self.input_height and self.output_width == self.input_width

    def is_no_neighbor_analysis(self) -> bool:
        return self.filter_height == 1 and self.filter_width == 1

    def padding(self) -> Tuple[int, int, int, int]:
        """(left, right, top, bottom), the order torch.nn.functional.pad expects."""
        return (self.pad_left, self.pad_right, self.pad_top, self.pad_bottom)

    def pass_through_filter(self) -> torch.Tensor:
        """(fh, fw) filter that copies the input pixel aligned with each output pixel."""
        f = torch.zeros((self.filter_height, self.filter_width), dtype=DTYPE)
        f[self.pad_top, self.pad_left] = 1.0
        return f

    def to_dict(self) -> Dict[str, object]:
        d = asdict(self)
        d["strides_pad"] = int(self.strides_pad)
        d["op_name"] = depthwise_op_name(self.op)
        return d


def compute_pad_info(
    input_height: int,
    input_width: int,
    input_channels: int,
    op: int,
    filter_height: int,
    filter_width: int,
    strides_pad: int,
) -> PadInfo:
    if input_height < 1 or input_width < 1:
        raise ValueError(f"input size must be positive, got {input_height}x{input_width}")
    if filter_height < 1 or filter_width < 1:
        raise ValueError(f"filter size must be positive, got {filter_height}x{filter_width}")
    if op < DEPTHWISE_AVG or op > DEPTHWISE_MULTIPLIER_MAX:
        raise ValueError(f"depthwise op must be in [{DEPTHWISE_AVG}, {DEPTHWISE_MULTIPLIER_MAX}], got {op}")
    sp = StridesPad(int(strides_pad))

    if op == DEPTHWISE_NONE:
        return PadInfo(input_height, input_width, input_channels, op, filter_height, filter_width, sp,
                       input_height, input_width, input_channels, 0, 0, 0, 0)

    out_h, top, bottom = _out_size_and_pad(input_height, filter_height, sp.strides, sp.pad)
    out_w, left, right = _out_size_and_pad(input_width, filter_width, sp.strides, sp.pad)
    out_c = input_channels * op if op > 0 else input_channels
    return PadInfo(input_height, input_width, input_channels, op, filter_height, filter_width, sp,
                   out_h, out_w, out_c, top, bottom, left, right)
