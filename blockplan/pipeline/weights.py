#!/usr/bin/env python3
#===- blockplan/pipeline/weights.py - Flat Weight Buffer Cursor --------====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#
#
# Purpose:
#   Sequential reads from a caller-owned flat weight buffer and assembly of
#   the filter/bias tensors of one stage layout.
#
# Notes:
#   Within a stage all filters are read first, then all biases. Pointwise
#   filter blocks use the [in, out] order and depthwise filters use the
#   [fh, fw, in, multiplier] order of the exported models.
#
#===---------------------------------------------------------------------===#

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
import torch

from blockplan.back_end.errors import InsufficientWeightData
from blockplan.back_end.interval import DTYPE
from blockplan.back_end.stage_bounds import OpKind, PassThroughStyle, interleave_group_two
from blockplan.pipeline.partition import StageLayout


def as_flat_weights(weights) -> torch.Tensor:
    if isinstance(weights, torch.Tensor):
        return weights.detach().to(dtype=DTYPE, device="cpu").reshape(-1)
    return torch.from_numpy(np.asarray(weights, dtype=np.float64).reshape(-1).copy())


class WeightCursor:
    """Reads consecutive slices; offsets are begin-inclusive, end-exclusive."""

    def __init__(self, weights, offset: int = 0) -> None:
        self.weights = as_flat_weights(weights)
        if offset < 0 or offset > self.weights.numel():
            raise ValueError(f"weight offset {offset} outside buffer of length {self.weights.numel()}")
        self.begin = int(offset)
        self.offset = int(offset)

    @property
    def available(self) -> int:
        return int(self.weights.numel()) - self.offset

    @property
    def consumed(self) -> int:
        return self.offset - self.begin

    def read(self, n: int, stage: str = "") -> torch.Tensor:
        if n < 0:
            raise ValueError(f"cannot read a negative number of weights ({n})")
        if n > self.available:
            raise InsufficientWeightData(requested=n, available=self.available, offset=self.offset, stage=stage)
        out = self.weights[self.offset:self.offset + n]
        self.offset += n
        return out


def _index(values: Tuple[int, ...]) -> torch.Tensor:
    return torch.tensor(values, dtype=torch.long)


def build_pointwise(layout: StageLayout, cursor: WeightCursor) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
    """(out, in) filter matrix and bias of a pointwise layout."""
    W = torch.zeros((layout.output_channels, layout.input_channels), dtype=DTYPE)
    for blk in layout.weight_blocks:
        if blk.count == 0:
            continue
        vals = cursor.read(blk.count, layout.name).view(len(blk.cols), len(blk.rows)).t()
        W[_index(blk.rows).unsqueeze(1), _index(blk.cols).unsqueeze(0)] = vals
    for row, col in layout.copies:
        W[row, col] = 1.0

    bias: Optional[torch.Tensor] = None
    constant = layout.style is PassThroughStyle.FILTER_ZERO_BIAS_ONE and any(layout.pass_through)
    if layout.bias or constant:
        bias = torch.zeros(layout.output_channels, dtype=DTYPE)
        if constant:
            bias[torch.tensor(layout.pass_through, dtype=torch.bool)] = 1.0
        if layout.bias and layout.bias_rows:
            bias[_index(layout.bias_rows)] = cursor.read(len(layout.bias_rows), layout.name)

    if layout.shuffle_output:
        perm = interleave_group_two(layout.output_channels)
        W = W[perm]
        bias = bias[perm] if bias is not None else None
    return W, bias


def build_depthwise(
    layout: StageLayout, cursor: WeightCursor
) -> Tuple[Optional[torch.Tensor], Optional[torch.Tensor], Optional[torch.Tensor]]:
    """(out, fh, fw) filters, per-output source channel and bias of a depthwise layout."""
    info = layout.pad_info
    filters = source = None
    if layout.op_kind is OpKind.DEPTHWISE_CONV:
        fh, fw = info.filter_height, info.filter_width
        parts, sources = [], []
        for blk in layout.depthwise_blocks:
            n = len(blk.channels)
            vals = cursor.read(fh * fw * n * blk.multiplier, layout.name)
            parts.append(vals.view(fh, fw, n, blk.multiplier).permute(2, 3, 0, 1).reshape(n * blk.multiplier, fh, fw))
            sources.append(_index(blk.channels).repeat_interleave(blk.multiplier))
        if layout.depthwise_pass_through:
            passed = _index(layout.depthwise_pass_through)
            parts.append(info.pass_through_filter().unsqueeze(0).expand(passed.numel(), fh, fw))
            sources.append(passed)
        filters = torch.cat(parts, dim=0)
        source = torch.cat(sources, dim=0)

    bias = None
    if layout.bias:
        bias = torch.zeros(layout.output_channels, dtype=DTYPE)
        if layout.bias_rows:
            bias[_index(layout.bias_rows)] = cursor.read(len(layout.bias_rows), layout.name)
    return filters, source, bias
