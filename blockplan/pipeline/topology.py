#!/usr/bin/env python3
#===- blockplan/pipeline/topology.py - Block Topology Planner ----------====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#
#
# Purpose:
#   Walk the fixed stage sequence of one block, reading weights and
#   propagating value bounds stage by stage, and emit the ordered stage
#   descriptors an executor needs.
#
#   States (strictly ordered, elided states are skipped):
#     PARAMS_RESOLVED -> POINTWISE1 -> DEPTHWISE -> CONCAT1
#       -> SQUEEZE_EXCITATION_PREFIX -> POINTWISE2 -> SQUEEZE_EXCITATION_POSTFIX
#       -> ADD_INPUT_TO_OUTPUT -> CONCAT_SHUFFLE_SPLIT -> FINALIZED | FAILED
#
#===---------------------------------------------------------------------===#

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

import torch

from blockplan.back_end.errors import BlockPlanError, ChannelCountMismatch
from blockplan.back_end.escaping import ActivationEscapeSet
from blockplan.back_end.interval import BoundsArray
from blockplan.back_end.stage_bounds import (
    OpKind,
    StageBoundsSet,
    add,
    concat,
    conv_bias_activation,
    global_average,
    input_stage,
    multiply,
    shuffle_split,
)
from blockplan.pipeline.params import BlockParams
from blockplan.pipeline.partition import (
    ChannelPartitionPlan,
    PlannerState,
    StageLayout,
    derive_partition_plan,
)
from blockplan.pipeline.weights import WeightCursor, build_depthwise, build_pointwise

logger = logging.getLogger(__name__)

InputBounds = Union[BoundsArray, StageBoundsSet]


@dataclass(frozen=True, eq=False)
class StageDescriptor:
    name: str
    state: PlannerState
    op_kind: OpKind
    input_refs: Tuple[str, ...]
    output_channel_count: int
    pass_through_flags: torch.Tensor
    escape: ActivationEscapeSet
    weight_offset_begin: int
    weight_offset_end: int
    layout: StageLayout
    bounds: StageBoundsSet
    filters: Optional[torch.Tensor] = None
    bias: Optional[torch.Tensor] = None
    source: Optional[torch.Tensor] = None

    @property
    def escape_scale_translate(self) -> List[Dict[str, List[float]]]:
        return self.escape.to_list()

    @property
    def weight_count(self) -> int:
        return self.weight_offset_end - self.weight_offset_begin

    def to_dict(self, include_bounds: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "state": self.state.name,
            "op_kind": self.op_kind.value,
            "mode": self.layout.mode,
            "input_refs": list(self.input_refs),
            "output_channel_count": self.output_channel_count,
            "pass_through_flags": self.pass_through_flags.tolist(),
            "escape_scale_translate": self.escape_scale_translate,
            "weight_offsets": [self.weight_offset_begin, self.weight_offset_end],
            "height": self.bounds.height,
            "width": self.bounds.width,
            "activation": self.bounds.activation.name,
        }
        if include_bounds:
            d["bounds"] = self.bounds.to_dict()
        return d


@dataclass(frozen=True, eq=False)
class BlockPlan:
    partition: ChannelPartitionPlan
    stages: Tuple[StageDescriptor, ...]
    output0: StageBoundsSet
    output1: Optional[StageBoundsSet]
    step_count: int
    weight_offset_begin: int
    weight_offset_end: int

    @property
    def weights_consumed(self) -> int:
        return self.weight_offset_end - self.weight_offset_begin

    def stage(self, name: str) -> StageDescriptor:
        for s in self.stages:
            if s.name == name:
                return s
        raise KeyError(name)

    def to_dict(self, include_bounds: bool = False) -> Dict[str, Any]:
        return {
            "partition": self.partition.to_dict(),
            "stages": [s.to_dict(include_bounds=include_bounds) for s in self.stages],
            "output0": self.output0.to_dict(),
            "output1": self.output1.to_dict() if self.output1 is not None else None,
            "step_count": self.step_count,
            "weight_offsets": [self.weight_offset_begin, self.weight_offset_end],
            "weights_consumed": self.weights_consumed,
        }


class BlockTopologyPlanner:
    """
    Plans one block. ``step_count`` ticks once per retained stage and may be
    polled while ``plan`` runs; ``state`` ends as FINALIZED or FAILED.
    """

    def __init__(self, params: Union[BlockParams, ChannelPartitionPlan]) -> None:
        if isinstance(params, ChannelPartitionPlan):
            self.partition: Optional[ChannelPartitionPlan] = params
            self.params = params.params
        else:
            self.partition = None
            self.params = params
        self.state = PlannerState.PARAMS_RESOLVED
        self.step_count = 0
        self.result: Optional[BlockPlan] = None
        self.error: Optional[BaseException] = None

    def _enter(self, state: PlannerState) -> None:
        if state < self.state:
            raise RuntimeError(f"planner state moved backwards: {self.state.name} -> {state.name}")
        if state != self.state:
            logger.debug("state %s -> %s", self.state.name, state.name)
        self.state = state

    def plan(
        self,
        weights,
        input0: InputBounds,
        input1: Optional[InputBounds] = None,
        *,
        weight_offset: int = 0,
    ) -> BlockPlan:
        if self.state is not PlannerState.PARAMS_RESOLVED:
            raise RuntimeError(f"planner already ran (state={self.state.name})")
        try:
            result = self._run(weights, input0, input1, weight_offset)
        except (BlockPlanError, ValueError) as e:
            self.state = PlannerState.FAILED
            self.error = e
            logger.error("block %s planning failed at step %d: %s",
                         self.params.block_type.name, self.step_count, e)
            raise
        self.result = result
        self._enter(PlannerState.FINALIZED)
        logger.info("block %s finalized: %d stages, weights [%d, %d)",
                    result.partition.block_type.name, result.step_count,
                    result.weight_offset_begin, result.weight_offset_end)
        return result

    # ---- internals ----
    def _input(self, name: str, bounds: Optional[InputBounds], channels: int, height: int, width: int) -> StageBoundsSet:
        if bounds is None:
            raise ChannelCountMismatch(f"{name} bounds missing", expected=channels, found=None)
        stage = bounds if isinstance(bounds, StageBoundsSet) else input_stage(bounds, height, width)
        if stage.channel_count != channels:
            raise ChannelCountMismatch(name, expected=channels, found=stage.channel_count)
        if (stage.height, stage.width) != (height, width):
            raise ChannelCountMismatch(f"{name} height/width", expected=(height, width),
                                       found=(stage.height, stage.width))
        return stage

    def _run(self, weights, input0: InputBounds, input1: Optional[InputBounds], weight_offset: int) -> BlockPlan:
        if self.partition is None:
            self.partition = derive_partition_plan(self.params)
        part = self.partition
        p = self.params
        cursor = WeightCursor(weights, weight_offset)

        env: Dict[str, StageBoundsSet] = {
            "input0": self._input("input0", input0, part.input0_channels, p.input0_height, p.input0_width),
        }
        if part.input1_channels > 0:
            consumer = next(s for s in part.stages if "input1" in s.inputs)
            env["input1"] = self._input("input1", input1, part.input1_channels, consumer.height, consumer.width)

        descriptors: List[StageDescriptor] = []
        for layout in part.stages:
            self._enter(layout.state)
            begin = cursor.offset
            filters = bias = source = None
            ins = [env[ref] for ref in layout.inputs]
            if layout.op_kind is OpKind.POINTWISE:
                filters, bias = build_pointwise(layout, cursor)
                bounds = conv_bias_activation(
                    ins[0], op_kind=OpKind.POINTWISE, pass_through=layout.pass_through,
                    activation=layout.activation, filters=filters, bias=bias, style=layout.style,
                )
            elif layout.op_kind in (OpKind.DEPTHWISE_CONV, OpKind.AVG_POOL, OpKind.MAX_POOL):
                filters, source, bias = build_depthwise(layout, cursor)
                bounds = conv_bias_activation(
                    ins[0], op_kind=layout.op_kind, pass_through=layout.pass_through,
                    activation=layout.activation, filters=filters, bias=bias,
                    pad_info=layout.pad_info, source=source,
                )
            elif layout.op_kind is OpKind.GLOBAL_AVG:
                bounds = global_average(ins[0])
            elif layout.op_kind is OpKind.CONCAT:
                bounds = concat(ins)
            elif layout.op_kind is OpKind.SHUFFLE_SPLIT:
                parts = shuffle_split(concat(ins), shuffle=layout.shuffle_output, split=layout.split_output)
                if layout.split_output:
                    env[f"{layout.name}.0"], env[f"{layout.name}.1"] = parts
                bounds = concat(parts) if len(parts) > 1 else parts[0]
            elif layout.op_kind is OpKind.ADD:
                bounds = add(ins[0], ins[1])
            elif layout.op_kind is OpKind.MULTIPLY:
                bounds = multiply(ins[0], ins[1])
            else:
                raise ValueError(f"unsupported op kind {layout.op_kind.value!r} in stage {layout.name}")

            if bounds.channel_count != layout.output_channels:
                raise ChannelCountMismatch(layout.name, expected=layout.output_channels, found=bounds.channel_count)
            if cursor.offset - begin != layout.weight_count:
                raise RuntimeError(
                    f"stage {layout.name} read {cursor.offset - begin} weights, layout expects {layout.weight_count}"
                )
            env[layout.name] = bounds
            descriptors.append(StageDescriptor(
                name=layout.name, state=layout.state, op_kind=layout.op_kind, input_refs=layout.inputs,
                output_channel_count=bounds.channel_count, pass_through_flags=bounds.pass_through,
                escape=bounds.escape, weight_offset_begin=begin, weight_offset_end=cursor.offset,
                layout=layout, bounds=bounds, filters=filters, bias=bias, source=source,
            ))
            self.step_count += 1
            logger.debug("step %d: %s (%s) -> %d channels, weights [%d, %d)", self.step_count, layout.name,
                         layout.op_kind.value, bounds.channel_count, begin, cursor.offset)

        self._enter(PlannerState.CONCAT_SHUFFLE_SPLIT)
        outputs = [env[ref] for ref in part.outputs]
        return BlockPlan(
            partition=part,
            stages=tuple(descriptors),
            output0=outputs[0],
            output1=outputs[1] if len(outputs) > 1 else None,
            step_count=self.step_count,
            weight_offset_begin=cursor.begin,
            weight_offset_end=cursor.offset,
        )


def plan_block(
    params: Union[BlockParams, ChannelPartitionPlan],
    weights,
    input0: InputBounds,
    input1: Optional[InputBounds] = None,
    *,
    weight_offset: int = 0,
) -> BlockPlan:
    """Plan one block in a single call."""
    return BlockTopologyPlanner(params).plan(weights, input0, input1, weight_offset=weight_offset)
