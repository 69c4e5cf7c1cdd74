#!/usr/bin/env python3
#===- blockplan/pipeline/partition.py - Channel Partition Plan ---------====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#
#
# Purpose:
#   Derive, once per block, the static channel layout of every retained
#   stage: channel counts, lower/higher half split, pass-through flags,
#   which sub-operations are needed or elided, the linearity flags between
#   stages and how many weights each stage reads.
#
# Notes:
#   The derivation walks the block structurally (no bounds, no weights), so
#   the same plan drives weight counting, bounds propagation and reporting.
#
#===---------------------------------------------------------------------===#

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field, replace
from enum import IntEnum
from typing import Any, Dict, List, Optional, Tuple

from blockplan.back_end.activation import get_activation
from blockplan.back_end.errors import ChannelCountMismatch
from blockplan.back_end.pad_info import (
    DEPTHWISE_AVG,
    DEPTHWISE_MAX,
    DEPTHWISE_NONE,
    PadInfo,
    compute_pad_info,
)
from blockplan.back_end.stage_bounds import OpKind, PassThroughStyle
from blockplan.pipeline.block_types import BlockType, DepthwiseHigherHalf, PointwiseHigherHalf
from blockplan.pipeline.params import SQUEEZE_EXCITATION_EXCITATION_ONLY, BlockParams

logger = logging.getLogger(__name__)


class PlannerState(IntEnum):
    PARAMS_RESOLVED = 0
    POINTWISE1 = 1
    DEPTHWISE = 2
    CONCAT1 = 3
    SQUEEZE_EXCITATION_PREFIX = 4
    POINTWISE2 = 5
    SQUEEZE_EXCITATION_POSTFIX = 6
    ADD_INPUT_TO_OUTPUT = 7
    CONCAT_SHUFFLE_SPLIT = 8
    FINALIZED = 9
    FAILED = 10


def _span(start: int, count: int) -> Tuple[int, ...]:
    return tuple(range(start, start + count))


# --------------------------
# Layout records
# --------------------------
@dataclass(frozen=True)
class HigherHalfPassThrough:
    """Half sizes when the higher input half passes through a stage."""

    input_channels: int
    output_channels: int

    @property
    def input_lower(self) -> int:
        return math.ceil(self.input_channels / 2)

    @property
    def input_higher(self) -> int:
        return self.input_channels - self.input_lower

    @property
    def output_real(self) -> int:
        return self.output_channels if self.output_channels > 0 else self.input_channels

    @property
    def output_higher(self) -> int:
        return self.input_higher

    @property
    def output_lower(self) -> int:
        return self.output_real - self.output_higher


@dataclass(frozen=True)
class WeightBlock:
    """Dense sub-matrix of a pointwise filter read from the weight buffer."""

    rows: Tuple[int, ...]
    cols: Tuple[int, ...]

    @property
    def count(self) -> int:
        return len(self.rows) * len(self.cols)


@dataclass(frozen=True)
class DepthwiseBlock:
    """Input channels filtered by real depthwise filters, ``multiplier`` outputs each."""

    channels: Tuple[int, ...]
    multiplier: int = 1


@dataclass(frozen=True)
class StageLayout:
    name: str
    state: PlannerState
    op_kind: OpKind
    inputs: Tuple[str, ...]
    input_channels: int
    output_channels: int
    pass_through: Tuple[bool, ...]
    height: int
    width: int
    mode: str = "none"
    input_lower: int = 0
    input_higher: int = 0
    output_lower: int = 0
    output_higher: int = 0
    bias: bool = False
    activation: int = 0
    style: PassThroughStyle = PassThroughStyle.FILTER_ONE_BIAS_ZERO_WITH_ESCAPE
    shuffle_output: bool = False
    split_output: bool = False
    pad_info: Optional[PadInfo] = None
    weight_blocks: Tuple[WeightBlock, ...] = ()
    copies: Tuple[Tuple[int, int], ...] = ()
    depthwise_blocks: Tuple[DepthwiseBlock, ...] = ()
    depthwise_pass_through: Tuple[int, ...] = ()
    bias_rows: Tuple[int, ...] = ()

    @property
    def filter_weight_count(self) -> int:
        if self.op_kind is OpKind.POINTWISE:
            return sum(b.count for b in self.weight_blocks)
        if self.op_kind is OpKind.DEPTHWISE_CONV:
            fh, fw = self.pad_info.filter_height, self.pad_info.filter_width
            return sum(fh * fw * len(b.channels) * b.multiplier for b in self.depthwise_blocks)
        return 0

    @property
    def weight_count(self) -> int:
        return self.filter_weight_count + (len(self.bias_rows) if self.bias else 0)

    @property
    def is_filter_stage(self) -> bool:
        return self.op_kind in (OpKind.POINTWISE, OpKind.DEPTHWISE_CONV, OpKind.AVG_POOL, OpKind.MAX_POOL)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.name,
            "op_kind": self.op_kind.value,
            "inputs": list(self.inputs),
            "mode": self.mode,
            "input_channels": self.input_channels,
            "output_channels": self.output_channels,
            "halves": {
                "input_lower": self.input_lower, "input_higher": self.input_higher,
                "output_lower": self.output_lower, "output_higher": self.output_higher,
            },
            "pass_through": list(self.pass_through),
            "height": self.height,
            "width": self.width,
            "bias": self.bias,
            "activation": get_activation(self.activation).name,
            "style": self.style.value,
            "shuffle_output": self.shuffle_output,
            "split_output": self.split_output,
            "weight_count": self.weight_count,
            "pad_info": self.pad_info.to_dict() if self.pad_info is not None else None,
        }


@dataclass(frozen=True)
class NeedsFlags:
    pointwise1: bool = False
    depthwise: bool = False
    depthwise2: bool = False
    concat1: bool = False
    squeeze_excitation_prefix: bool = False
    squeeze_excitation_postfix: bool = False
    pointwise21: bool = False
    add_to_output0: bool = False
    add_to_output1: bool = False
    concat_shuffle_split: bool = False
    shuffle_pointwise20: bool = False


@dataclass(frozen=True)
class LinearityFlags:
    between_pointwise1_and_depthwise: bool
    between_depthwise_and_pointwise2: bool
    between_pointwise1_and_pointwise2: bool


@dataclass(frozen=True)
class ChannelPartitionPlan:
    params: BlockParams
    block_type: BlockType
    total_channels: int
    lower_half_len: int
    higher_half_len: int
    pass_through: Tuple[bool, ...]
    needs: NeedsFlags
    linearity: LinearityFlags
    input0_channels: int
    input1_channels: int
    output0_channels: int
    output1_channels: int
    output_height: int
    output_width: int
    stages: Tuple[StageLayout, ...]
    outputs: Tuple[str, ...]
    depthwise_pad_info: Optional[PadInfo] = None
    notes: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def derive(
        cls,
        block_type_id: int,
        input_channels: int,
        pointwise1_channels: int,
        pointwise20_channels: int,
        has_squeeze_excitation: bool = False,
        squeeze_excitation_prefix: bool = True,
        **block_kwargs: Any,
    ) -> "ChannelPartitionPlan":
        """Build ``BlockParams`` from channel counts (plus optional extras) and derive the plan."""
        if has_squeeze_excitation:
            block_kwargs.setdefault("squeeze_excitation_divisor", 0)
        else:
            block_kwargs["squeeze_excitation_divisor"] = -2
        params = BlockParams(
            input0_channels=input_channels,
            block_type_id=block_type_id,
            pointwise1_channels=pointwise1_channels,
            pointwise20_channels=pointwise20_channels,
            squeeze_excitation_prefix=squeeze_excitation_prefix,
            **block_kwargs,
        )
        return derive_partition_plan(params)

    @property
    def weight_count(self) -> int:
        return sum(s.weight_count for s in self.stages)

    @property
    def output_tensor_count(self) -> int:
        return len(self.outputs)

    def stage(self, name: str) -> StageLayout:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(name)

    def has_stage(self, name: str) -> bool:
        return any(s.name == name for s in self.stages)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "block_type": int(self.block_type),
            "block_type_name": self.block_type.name,
            "params": self.params.to_dict(),
            "total_channels": self.total_channels,
            "lower_half_len": self.lower_half_len,
            "higher_half_len": self.higher_half_len,
            "pass_through": list(self.pass_through),
            "needs": asdict(self.needs),
            "linearity": asdict(self.linearity),
            "input0_channels": self.input0_channels,
            "input1_channels": self.input1_channels,
            "output0_channels": self.output0_channels,
            "output1_channels": self.output1_channels,
            "output_height": self.output_height,
            "output_width": self.output_width,
            "weight_count": self.weight_count,
            "stages": [s.to_dict() for s in self.stages],
            "outputs": list(self.outputs),
            "notes": list(self.notes),
        }


# --------------------------
# Structural walk
# --------------------------
@dataclass(frozen=True)
class _Track:
    ref: str
    channels: int
    lower: int
    higher: int
    flags: Tuple[bool, ...]
    height: int
    width: int
    shuffled: bool = False


def _real(flags: Tuple[bool, ...]) -> Tuple[int, ...]:
    return tuple(i for i, f in enumerate(flags) if not f)


def _half_positions(t: _Track) -> Tuple[Tuple[int, ...], Tuple[int, ...]]:
    """Channel positions of the lower and higher half (interleaved after a shuffle)."""
    if t.higher == 0:
        return _span(0, t.channels), ()
    if t.shuffled:
        return tuple(range(0, t.channels, 2)), tuple(range(1, t.channels, 2))
    return _span(0, t.lower), _span(t.lower, t.higher)


def _interleave(flags: Tuple[bool, ...]) -> Tuple[bool, ...]:
    half = len(flags) // 2
    out: List[bool] = []
    for i in range(half):
        out.extend((flags[i], flags[half + i]))
    return tuple(out)


class _Builder:
    def __init__(self, params: BlockParams) -> None:
        self.p = params
        self.stages: List[StageLayout] = []
        self.notes: List[str] = []

    def add(self, layout: StageLayout) -> _Track:
        self.stages.append(layout)
        lower, higher = layout.output_lower, layout.output_higher
        if lower + higher != layout.output_channels:
            lower, higher = layout.output_channels, 0
        return _Track(layout.name, layout.output_channels, lower, higher, layout.pass_through,
                      layout.height, layout.width, layout.shuffle_output)

    # ---- pointwise ----
    def pointwise(self, name: str, state: PlannerState, src: _Track, *, out_lower: int, out_higher: int,
                  mode: PointwiseHigherHalf, blocks: Tuple[WeightBlock, ...], copies: Tuple[Tuple[int, int], ...],
                  flags: Tuple[bool, ...], bias: bool, activation: int, shuffle: bool = False,
                  in_lower: Optional[int] = None, in_higher: int = 0) -> _Track:
        out = out_lower + out_higher
        if shuffle:
            if out_lower != out_higher:
                raise ChannelCountMismatch(f"{name} shuffle needs equal halves", expected=out_lower, found=out_higher)
            flags = _interleave(flags)
        rows = tuple(r for b in blocks for r in b.rows)
        return self.add(StageLayout(
            name=name, state=state, op_kind=OpKind.POINTWISE, inputs=(src.ref,),
            input_channels=src.channels, output_channels=out, pass_through=flags,
            height=src.height, width=src.width, mode=mode.value,
            input_lower=src.channels if in_lower is None else in_lower, input_higher=in_higher,
            output_lower=out_lower, output_higher=out_higher, bias=bias, activation=activation,
            shuffle_output=shuffle, weight_blocks=blocks, copies=copies, bias_rows=rows,
        ))

    # ---- depthwise ----
    def depthwise(self, name: str, src: _Track, mode: DepthwiseHigherHalf, bias: bool) -> _Track:
        p = self.p
        info = compute_pad_info(src.height, src.width, src.channels, p.depthwise_op,
                                p.depthwise_filter_height, p.depthwise_filter_width, p.depthwise_strides_pad)
        m = info.channel_multiplier
        lower, higher = (src.lower, src.higher) if mode is not DepthwiseHigherHalf.NONE else (src.channels, 0)
        if p.depthwise_op in (DEPTHWISE_AVG, DEPTHWISE_MAX):
            op_kind = OpKind.AVG_POOL if p.depthwise_op == DEPTHWISE_AVG else OpKind.MAX_POOL
            flags = (False,) * lower + ((True,) * higher if mode is DepthwiseHigherHalf.PASS_THROUGH else (False,) * higher)
            return self.add(StageLayout(
                name=name, state=PlannerState.DEPTHWISE, op_kind=op_kind, inputs=(src.ref,),
                input_channels=src.channels, output_channels=src.channels, pass_through=flags,
                height=info.output_height, width=info.output_width, mode=mode.value,
                input_lower=lower, input_higher=higher, output_lower=lower, output_higher=higher,
                bias=bias, activation=p.depthwise_activation, pad_info=info, bias_rows=_real(flags),
            ))

        if mode is DepthwiseHigherHalf.PASS_THROUGH:
            blocks = (DepthwiseBlock(_span(0, lower), m),)
            passed = _span(lower, higher)
            out_lower, out_higher = lower * m, higher
        elif mode is DepthwiseHigherHalf.DEPTHWISE2:
            blocks = (DepthwiseBlock(_span(0, lower), m), DepthwiseBlock(_span(lower, higher), m))
            passed = ()
            out_lower, out_higher = lower * m, higher * m
        else:
            blocks = (DepthwiseBlock(_span(0, src.channels), m),)
            passed = ()
            out_lower, out_higher = src.channels * m, 0
        out = out_lower + out_higher
        flags = (False,) * (out - len(passed)) + (True,) * len(passed)
        return self.add(StageLayout(
            name=name, state=PlannerState.DEPTHWISE, op_kind=OpKind.DEPTHWISE_CONV, inputs=(src.ref,),
            input_channels=src.channels, output_channels=out, pass_through=flags,
            height=info.output_height, width=info.output_width, mode=mode.value,
            input_lower=lower, input_higher=higher, output_lower=out_lower, output_higher=out_higher,
            bias=bias, activation=p.depthwise_activation, pad_info=info, depthwise_blocks=blocks,
            depthwise_pass_through=passed, bias_rows=_span(0, out - len(passed)),
        ))

    # ---- carry / combine ----
    def concat(self, name: str, state: PlannerState, a: _Track, b: _Track) -> _Track:
        if (a.height, a.width) != (b.height, b.width):
            raise ChannelCountMismatch(f"{name} height/width", expected=(a.height, a.width), found=(b.height, b.width))
        return self.add(StageLayout(
            name=name, state=state, op_kind=OpKind.CONCAT, inputs=(a.ref, b.ref),
            input_channels=a.channels + b.channels, output_channels=a.channels + b.channels,
            pass_through=a.flags + b.flags, height=a.height, width=a.width,
            input_lower=a.channels, input_higher=b.channels, output_lower=a.channels, output_higher=b.channels,
        ))

    def squeeze_excitation(self, tag: str, state: PlannerState, src: _Track,
                           mode: PointwiseHigherHalf = PointwiseHigherHalf.NONE) -> _Track:
        """
        Squeeze, optional intermediate, excitation and multiply of one branch.

        With ``ANOTHER_POINTWISE`` the two halves get separate (block-diagonal)
        intermediate and excitation weights. With ``PASS_THROUGH`` the higher
        half is excited by the constant one.
        """
        p = self.p
        lower_pos, higher_pos = _half_positions(src)
        constant = list(src.flags)
        if mode is PointwiseHigherHalf.PASS_THROUGH:
            for i in higher_pos:
                constant[i] = True
        real = _real(tuple(constant))
        if not real:
            self.notes.append(f"{tag}: every channel is pass-through; squeeze-and-excitation skipped")
            return src
        if mode is PointwiseHigherHalf.ANOTHER_POINTWISE and higher_pos:
            groups = [tuple(i for i in pos if not constant[i]) for pos in (lower_pos, higher_pos)]
        else:
            groups = [real]
        groups = [g for g in groups if g]
        divisor = p.squeeze_excitation_divisor
        cur = src
        if divisor != SQUEEZE_EXCITATION_EXCITATION_ONLY and (src.height, src.width) != (1, 1):
            cur = self.add(StageLayout(
                name=f"{tag}.squeeze", state=state, op_kind=OpKind.GLOBAL_AVG, inputs=(src.ref,),
                input_channels=src.channels, output_channels=src.channels, pass_through=src.flags,
                height=1, width=1, input_lower=src.lower, input_higher=src.higher,
                output_lower=src.lower, output_higher=src.higher,
            ))
        in_cols = groups
        if divisor > 0:
            widths = [math.ceil(len(g) / divisor) for g in groups]
            starts = [sum(widths[:k]) for k in range(len(widths))]
            in_cols = [_span(s, w) for s, w in zip(starts, widths)]
            inter = sum(widths)
            split = len(groups) == 2
            cur = self.pointwise(
                f"{tag}.intermediate", state, cur, out_lower=widths[0] if split else inter,
                out_higher=widths[1] if split else 0,
                mode=mode if split else PointwiseHigherHalf.NONE,
                blocks=tuple(WeightBlock(cols, g) for g, cols in zip(groups, in_cols)), copies=(),
                flags=(False,) * inter, bias=True, activation=p.activation,
            )
        n = src.channels
        exc = self.add(StageLayout(
            name=f"{tag}.excitation", state=state, op_kind=OpKind.POINTWISE, inputs=(cur.ref,),
            input_channels=cur.channels, output_channels=n, pass_through=tuple(constant),
            height=cur.height, width=cur.width, mode="excitation",
            input_lower=cur.lower, input_higher=cur.higher, output_lower=src.lower, output_higher=src.higher,
            bias=True, activation=p.activation, style=PassThroughStyle.FILTER_ZERO_BIAS_ONE,
            weight_blocks=tuple(WeightBlock(g, cols) for g, cols in zip(groups, in_cols)),
            bias_rows=tuple(r for g in groups for r in g),
        ))
        out = self.add(StageLayout(
            name=f"{tag}.multiply", state=state, op_kind=OpKind.MULTIPLY, inputs=(src.ref, exc.ref),
            input_channels=n, output_channels=n, pass_through=src.flags, height=src.height, width=src.width,
            input_lower=src.lower, input_higher=src.higher, output_lower=src.lower, output_higher=src.higher,
        ))
        return replace(out, shuffled=src.shuffled)


def derive_partition_plan(params: BlockParams) -> ChannelPartitionPlan:
    """Derive the static channel layout of one block from its parameters."""
    info = params.block_type
    bt = info.block_type
    b = _Builder(params)

    C = params.input0_channels
    p1, p20 = params.pointwise1_channels, params.pointwise20_channels
    act_id = params.activation
    act_none = get_activation(act_id).is_none
    dw_act_none = get_activation(params.depthwise_activation).is_none
    se_prefix = params.has_squeeze_excitation and params.squeeze_excitation_prefix
    se_postfix = params.has_squeeze_excitation and not params.squeeze_excitation_prefix

    if info.input_count == 2:
        if params.input1_channels is not None:
            input1 = params.input1_channels
        else:
            input1 = p20 if bt in (BlockType.SHUFFLE_NET_V2_BODY, BlockType.SHUFFLE_NET_V2_TAIL) else C
        if input1 < 1:
            raise ChannelCountMismatch("input1 channels", expected=">= 1", found=input1)
    else:
        input1 = 0

    in0 = _Track("input0", C, C, 0, (False,) * C, params.input0_height, params.input0_width)
    hh = HigherHalfPassThrough(C, p1)
    lower_len, higher_len, total = C, 0, C

    # ---- pointwise1 ----
    pw1_bias = params.pointwise1_bias if params.pointwise1_bias is not None else not act_none
    pw1_needed = True
    if bt is BlockType.SHUFFLE_NET_V2_BY_MOBILE_NET_V1_HEAD:
        if p1 > 0:
            t = b.pointwise(
                "pointwise1", PlannerState.POINTWISE1, in0, out_lower=p1, out_higher=C,
                mode=PointwiseHigherHalf.COPY_LOWER_HALF, blocks=(WeightBlock(_span(0, p1), _span(0, C)),),
                copies=tuple((p1 + i, i) for i in range(C)), flags=(False,) * p1 + (True,) * C,
                bias=pw1_bias, activation=act_id,
            )
        else:
            t = b.pointwise(
                "pointwise1", PlannerState.POINTWISE1, in0, out_lower=C, out_higher=C,
                mode=PointwiseHigherHalf.COPY_LOWER_HALF__LOWER_HALF_PASS_THROUGH, blocks=(),
                copies=tuple((i, i) for i in range(C)) + tuple((C + i, i) for i in range(C)),
                flags=(True,) * (2 * C), bias=False, activation=0,
            )
        lower_len, higher_len, total = t.lower, t.higher, t.channels
    elif info.higher_half:
        lower_len, higher_len, total = hh.input_lower, hh.input_higher, C
        if p1 > 0:
            if hh.output_lower < 0:
                raise ChannelCountMismatch("pointwise1 lower half", expected=">= 0", found=hh.output_lower)
            t = b.pointwise(
                "pointwise1", PlannerState.POINTWISE1, in0, out_lower=hh.output_lower, out_higher=hh.output_higher,
                mode=PointwiseHigherHalf.PASS_THROUGH,
                blocks=(WeightBlock(_span(0, hh.output_lower), _span(0, hh.input_lower)),),
                copies=tuple((hh.output_lower + i, hh.input_lower + i) for i in range(hh.input_higher)),
                flags=(False,) * hh.output_lower + (True,) * hh.output_higher,
                bias=pw1_bias, activation=act_id, in_lower=hh.input_lower, in_higher=hh.input_higher,
            )
        else:
            pw1_needed = False
            t = _Track("input0", C, hh.input_lower, hh.input_higher, in0.flags, in0.height, in0.width)
    elif p1 > 0:
        t = b.pointwise(
            "pointwise1", PlannerState.POINTWISE1, in0, out_lower=p1, out_higher=0,
            mode=PointwiseHigherHalf.NONE, blocks=(WeightBlock(_span(0, p1), _span(0, C)),), copies=(),
            flags=(False,) * p1, bias=pw1_bias, activation=act_id,
        )
    else:
        pw1_needed = False
        t = in0
    pw1_activation_none = True
    if pw1_needed:
        pw1_activation_none = get_activation(b.stages[-1].activation).is_none

    # ---- linearity ----
    dw_none = params.depthwise_op == DEPTHWISE_NONE
    linear_dw_p2 = (not se_prefix) if dw_none else (dw_act_none and not se_prefix)
    linear_p1_dw = (not pw1_needed) or pw1_activation_none

    # ---- depthwise ----
    dw_bias = params.depthwise_bias if params.depthwise_bias is not None else not dw_act_none
    pad = compute_pad_info(t.height, t.width, t.channels, params.depthwise_op,
                           params.depthwise_filter_height, params.depthwise_filter_width,
                           params.depthwise_strides_pad)
    dw_needed = not dw_none and not (
        pad.output_channel_count_is_same()
        and pad.output_height_width_is_same()
        and pad.is_no_neighbor_analysis()
        and linear_dw_p2
        and not dw_bias
    )
    if dw_needed:
        linear_p1_p2 = linear_p1_dw and pad.pad == "valid" and linear_dw_p2
    else:
        linear_p1_p2 = linear_p1_dw and linear_dw_p2

    if bt is BlockType.SHUFFLE_NET_V2_BY_MOBILE_NET_V1_HEAD:
        dw_mode = DepthwiseHigherHalf.DEPTHWISE2
    elif info.higher_half:
        dw_mode = DepthwiseHigherHalf.PASS_THROUGH
    else:
        dw_mode = DepthwiseHigherHalf.NONE
    t_dw = b.depthwise("depthwise1", t, dw_mode, dw_bias) if dw_needed else t

    dw2_needed = info.depthwise2 and dw_needed
    t_dw2 = in0
    if dw2_needed:
        t_dw2 = b.depthwise("depthwise2", in0, DepthwiseHigherHalf.NONE, dw_bias)

    # ---- concat1 ----
    branch0 = t_dw
    branch1: Optional[_Track] = None
    if info.concat1:
        second = t_dw2 if info.depthwise2 else _Track("input1", input1, input1, 0, (False,) * input1,
                                                      t_dw.height, t_dw.width)
        branch0 = b.concat("concat1", PlannerState.CONCAT1, t_dw, second)
    if info.pointwise21:
        branch1 = t_dw2 if bt is BlockType.SHUFFLE_NET_V2_HEAD else branch0

    # ---- squeeze-and-excitation prefix ----
    if bt is BlockType.SHUFFLE_NET_V2_BY_MOBILE_NET_V1_HEAD:
        se_mode = PointwiseHigherHalf.ANOTHER_POINTWISE
    elif info.higher_half:
        se_mode = PointwiseHigherHalf.PASS_THROUGH
    else:
        se_mode = PointwiseHigherHalf.NONE
    if se_prefix:
        # each pointwise2 branch has its own squeeze-and-excitation weights
        branch0 = b.squeeze_excitation("squeeze_excitation_prefix0", PlannerState.SQUEEZE_EXCITATION_PREFIX,
                                       branch0, se_mode)
        if branch1 is not None:
            branch1 = b.squeeze_excitation("squeeze_excitation_prefix1", PlannerState.SQUEEZE_EXCITATION_PREFIX,
                                           branch1, se_mode)

    # ---- pointwise2 ----
    pw2_bias = params.pointwise20_bias if params.pointwise20_bias is not None else True
    pw2_act = params.pointwise20_activation
    src = branch0
    if bt is BlockType.SHUFFLE_NET_V2_BY_MOBILE_NET_V1_HEAD:
        ol = math.ceil(p20 / 2)
        oh = p20 - ol
        out0 = b.pointwise(
            "pointwise20", PlannerState.POINTWISE2, src, out_lower=ol, out_higher=oh,
            mode=PointwiseHigherHalf.ANOTHER_POINTWISE,
            blocks=(WeightBlock(_span(0, ol), _span(0, src.lower)),
                    WeightBlock(_span(ol, oh), _span(src.lower, src.higher))),
            copies=(), flags=(False,) * p20, bias=pw2_bias, activation=pw2_act,
            shuffle=info.shuffle_pointwise20, in_lower=src.lower, in_higher=src.higher,
        )
    elif info.higher_half:
        oh = src.higher
        ol = p20 - oh
        if ol < 0:
            raise ChannelCountMismatch("pointwise20 lower half", expected=f">= {oh} channels", found=p20)
        out0 = b.pointwise(
            "pointwise20", PlannerState.POINTWISE2, src, out_lower=ol, out_higher=oh,
            mode=PointwiseHigherHalf.PASS_THROUGH, blocks=(WeightBlock(_span(0, ol), _span(0, src.lower)),),
            copies=tuple((ol + i, src.lower + i) for i in range(oh)),
            flags=(False,) * ol + (True,) * oh, bias=pw2_bias, activation=pw2_act,
            shuffle=info.shuffle_pointwise20, in_lower=src.lower, in_higher=src.higher,
        )
    else:
        out0 = b.pointwise(
            "pointwise20", PlannerState.POINTWISE2, src, out_lower=p20, out_higher=0,
            mode=PointwiseHigherHalf.NONE, blocks=(WeightBlock(_span(0, p20), _span(0, src.channels)),),
            copies=(), flags=(False,) * p20, bias=pw2_bias, activation=pw2_act,
        )
    out1: Optional[_Track] = None
    if branch1 is not None:
        out1 = b.pointwise(
            "pointwise21", PlannerState.POINTWISE2, branch1, out_lower=p20, out_higher=0,
            mode=PointwiseHigherHalf.NONE, blocks=(WeightBlock(_span(0, p20), _span(0, branch1.channels)),),
            copies=(), flags=(False,) * p20, bias=pw2_bias, activation=pw2_act,
        )

    # ---- squeeze-and-excitation postfix ----
    if se_postfix:
        out0 = b.squeeze_excitation("squeeze_excitation_postfix0", PlannerState.SQUEEZE_EXCITATION_POSTFIX,
                                    out0, se_mode)
        if out1 is not None:
            out1 = b.squeeze_excitation("squeeze_excitation_postfix1", PlannerState.SQUEEZE_EXCITATION_POSTFIX,
                                        out1, se_mode)

    # ---- add input to output ----
    add0 = False
    if info.add_input_to_output:
        add0 = (out0.height, out0.width) == (in0.height, in0.width) and out0.channels == C
        if add0:
            sum_t = b.add(StageLayout(
                name="add_input_to_output0", state=PlannerState.ADD_INPUT_TO_OUTPUT, op_kind=OpKind.ADD,
                inputs=("input0", out0.ref), input_channels=C, output_channels=C, pass_through=(False,) * C,
                height=out0.height, width=out0.width, output_lower=C,
            ))
            out0 = sum_t
        else:
            b.notes.append("add_input_to_output0 skipped: output shape differs from input0")

    # ---- concat2 / shuffle / split ----
    outputs: Tuple[str, ...]
    output1_channels = 0
    if info.concat2:
        other = out1 if bt is BlockType.SHUFFLE_NET_V2_HEAD else _Track(
            "input1", input1, input1, 0, (False,) * input1, out0.height, out0.width)
        n = out0.channels + other.channels
        if info.split2 and n % 2 != 0:
            raise ChannelCountMismatch("concat2 split needs an even channel count", expected="even", found=n)
        flags = out0.flags + other.flags
        if info.shuffle2:
            flags = _interleave(flags)
        name = "concat2_shuffle_split" if info.split2 else "concat2"
        b.add(StageLayout(
            name=name, state=PlannerState.CONCAT_SHUFFLE_SPLIT, op_kind=OpKind.SHUFFLE_SPLIT,
            inputs=(out0.ref, other.ref), input_channels=n, output_channels=n, pass_through=flags,
            height=out0.height, width=out0.width, input_lower=out0.channels, input_higher=other.channels,
            output_lower=n // 2 if info.split2 else n, output_higher=n // 2 if info.split2 else 0,
            shuffle_output=info.shuffle2, split_output=info.split2,
        ))
        if info.split2:
            outputs = (f"{name}.0", f"{name}.1")
            output0_channels = output1_channels = n // 2
            pass_through = flags[: n // 2]
            lower_len, higher_len, total = n // 2, n // 2, n
        else:
            outputs = (name,)
            output0_channels = n
            pass_through = flags
            lower_len, higher_len, total = out0.channels, other.channels, n
    else:
        outputs = (out0.ref,) if out1 is None else (out0.ref, out1.ref)
        output0_channels = out0.channels
        output1_channels = out1.channels if out1 is not None else 0
        pass_through = out0.flags
        if not info.higher_half:
            lower_len, higher_len, total = out0.channels, 0, out0.channels

    if lower_len + higher_len != total:
        raise ChannelCountMismatch("half split", expected=total, found=lower_len + higher_len)

    needs = NeedsFlags(
        pointwise1=pw1_needed,
        depthwise=dw_needed,
        depthwise2=dw2_needed,
        concat1=info.concat1,
        squeeze_excitation_prefix=se_prefix and any(s.state is PlannerState.SQUEEZE_EXCITATION_PREFIX for s in b.stages),
        squeeze_excitation_postfix=se_postfix and any(s.state is PlannerState.SQUEEZE_EXCITATION_POSTFIX for s in b.stages),
        pointwise21=info.pointwise21,
        add_to_output0=add0,
        add_to_output1=False,
        concat_shuffle_split=info.concat2,
        shuffle_pointwise20=info.shuffle_pointwise20,
    )
    linearity = LinearityFlags(
        between_pointwise1_and_depthwise=linear_p1_dw,
        between_depthwise_and_pointwise2=linear_dw_p2,
        between_pointwise1_and_pointwise2=linear_p1_p2,
    )
    last = b.stages[-1]
    plan = ChannelPartitionPlan(
        params=params, block_type=bt, total_channels=total, lower_half_len=lower_len,
        higher_half_len=higher_len, pass_through=pass_through, needs=needs, linearity=linearity,
        input0_channels=C, input1_channels=input1, output0_channels=output0_channels,
        output1_channels=output1_channels, output_height=last.height, output_width=last.width,
        stages=tuple(b.stages), outputs=outputs, depthwise_pad_info=pad if dw_needed else None,
        notes=tuple(b.notes),
    )
    logger.debug("partition %s: %d stages, %d weights", bt.name, len(plan.stages), plan.weight_count)
    return plan
