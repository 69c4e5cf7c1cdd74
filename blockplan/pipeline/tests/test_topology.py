#!/usr/bin/env python3
#===- tests/test_topology.py - Block Topology Planner Tests ------------====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#

from __future__ import annotations

from typing import Optional

import pytest
import torch

from blockplan.back_end.errors import ChannelCountMismatch, DegenerateDomain, InsufficientWeightData
from blockplan.back_end.interval import BoundsArray
from blockplan.pipeline.block_types import BlockType
from blockplan.pipeline.params import BlockParams
from blockplan.pipeline.partition import ChannelPartitionPlan, PlannerState, derive_partition_plan
from blockplan.pipeline.sampler import random_weights
from blockplan.pipeline.topology import BlockTopologyPlanner, plan_block


def _params(block_type_id: int, **overrides) -> BlockParams:
    kw = dict(
        input0_channels=4, block_type_id=block_type_id, pointwise20_channels=4, pointwise1_channels=4,
        input0_height=3, input0_width=3, depthwise_op=1, depthwise_filter_height=3, depthwise_filter_width=3,
        depthwise_strides_pad=1, depthwise_activation="relu6", activation="relu6",
    )
    kw.update(overrides)
    return BlockParams(**kw)


def _inputs(part: ChannelPartitionPlan):
    input0 = BoundsArray.full(part.input0_channels, -1.0, 1.0)
    input1: Optional[BoundsArray] = None
    if part.input1_channels > 0:
        input1 = BoundsArray.full(part.input1_channels, -1.0, 1.0)
    return input0, input1


def _plan(params: BlockParams, seed: int = 0):
    part = derive_partition_plan(params)
    input0, input1 = _inputs(part)
    return part, plan_block(part, random_weights(part.weight_count, seed), input0, input1)


def test_every_block_type_plans_and_consumes_all_weights() -> None:
    for bt in BlockType:
        part, plan = _plan(_params(int(bt)))
        assert plan.weights_consumed == part.weight_count, bt.name
        assert plan.step_count == len(plan.stages) == len(part.stages), bt.name
        assert plan.output0.channel_count == part.output0_channels, bt.name
        if part.output1_channels:
            assert plan.output1 is not None and plan.output1.channel_count == part.output1_channels
        else:
            assert plan.output1 is None
        assert (plan.output0.height, plan.output0.width) == (part.output_height, part.output_width)


def test_weight_offsets_are_contiguous() -> None:
    part = derive_partition_plan(_params(int(BlockType.SHUFFLE_NET_V2_HEAD)))
    input0, _ = _inputs(part)
    weights = torch.cat([torch.full((5,), 99.0, dtype=torch.float64), random_weights(part.weight_count, 1)])
    plan = plan_block(part, weights, input0, weight_offset=5)
    assert (plan.weight_offset_begin, plan.weight_offset_end) == (5, 5 + part.weight_count)
    cursor = 5
    for s in plan.stages:
        assert s.weight_offset_begin == cursor
        cursor = s.weight_offset_end
    assert cursor == plan.weight_offset_end


def test_planner_finalizes_and_refuses_reuse() -> None:
    params = _params(0)
    part = derive_partition_plan(params)
    planner = BlockTopologyPlanner(params)
    assert planner.state is PlannerState.PARAMS_RESOLVED
    input0, _ = _inputs(part)
    planner.plan(random_weights(part.weight_count, 0), input0)
    assert planner.state is PlannerState.FINALIZED
    assert planner.result is not None and planner.step_count == len(planner.result.stages)
    with pytest.raises(RuntimeError):
        planner.plan(random_weights(part.weight_count, 0), input0)


def test_short_weights_fail_the_planner() -> None:
    params = _params(0)
    part = derive_partition_plan(params)
    planner = BlockTopologyPlanner(part)
    input0, _ = _inputs(part)
    with pytest.raises(InsufficientWeightData):
        planner.plan(random_weights(part.weight_count - 1, 0), input0)
    assert planner.state is PlannerState.FAILED
    assert isinstance(planner.error, InsufficientWeightData)
    assert planner.result is None


def test_input_channel_mismatch_fails() -> None:
    planner = BlockTopologyPlanner(_params(0))
    with pytest.raises(ChannelCountMismatch):
        planner.plan(random_weights(1000, 0), BoundsArray.full(3, -1.0, 1.0))
    assert planner.state is PlannerState.FAILED


def test_degenerate_pass_through_fails_the_planner() -> None:
    part = derive_partition_plan(_params(int(BlockType.SHUFFLE_NET_V2_BY_MOBILE_NET_V1_BODY)))
    planner = BlockTopologyPlanner(part)
    # the copied higher half is a point, so it has no linear-domain image
    input0 = BoundsArray([-1.0, -1.0, 0.5, 0.5], [1.0, 1.0, 0.5, 0.5])
    with pytest.raises(DegenerateDomain):
        planner.plan(random_weights(part.weight_count, 0), input0)
    assert planner.state is PlannerState.FAILED
    assert planner.result is None
    assert isinstance(planner.error, DegenerateDomain)


def test_two_input_block_requires_input1() -> None:
    part = derive_partition_plan(_params(int(BlockType.SHUFFLE_NET_V2_BODY)))
    input0, _ = _inputs(part)
    with pytest.raises(ChannelCountMismatch):
        plan_block(part, random_weights(part.weight_count, 0), input0, None)


def test_elided_depthwise_matches_identity_depthwise() -> None:
    common = dict(
        input0_channels=3, block_type_id=0, pointwise20_channels=2, pointwise1_channels=4,
        input0_height=2, input0_width=2, depthwise_op=1, depthwise_filter_height=1, depthwise_filter_width=1,
        depthwise_strides_pad=0,
    )
    elided = derive_partition_plan(BlockParams(**common))
    present = derive_partition_plan(BlockParams(depthwise_bias=True, **common))
    assert not elided.needs.depthwise
    assert present.needs.depthwise
    assert present.weight_count == elided.weight_count + 4 + 4

    w1 = random_weights(3 * 4, 3)
    w2 = random_weights(4 * 2 + 2, 4)
    identity = torch.cat([torch.ones(4, dtype=torch.float64), torch.zeros(4, dtype=torch.float64)])
    input0 = BoundsArray([-1.0, 0.0, 2.0], [1.0, 0.5, 3.0])
    a = plan_block(elided, torch.cat([w1, w2]), input0)
    b = plan_block(present, torch.cat([w1, identity, w2]), input0)
    assert a.output0.output.equals(b.output0.output, atol=1e-12)
    assert b.stage("depthwise1").bounds.output.equals(b.stage("pointwise1").bounds.output, atol=1e-12)


def test_pass_through_channels_survive_body_block() -> None:
    part, plan = _plan(_params(int(BlockType.SHUFFLE_NET_V2_BY_MOBILE_NET_V1_BODY)))
    pw1 = plan.stage("pointwise1")
    assert pw1.pass_through_flags.tolist() == [False, False, True, True]
    # the copied higher half comes back unchanged once its escape is undone
    restored = pw1.bounds.undone_output()
    assert restored[2].to_list() == pytest.approx([-1.0, 1.0])
    assert restored[3].to_list() == pytest.approx([-1.0, 1.0])
    dw = plan.stage("depthwise1")
    assert dw.layout.mode == "higher_half_pass_through"
    assert dw.bounds.undone_output()[3].to_list() == pytest.approx([-1.0, 1.0])


def test_squeeze_excitation_constant_channels_through_tanh() -> None:
    _, plan = _plan(_params(int(BlockType.SHUFFLE_NET_V2_BY_MOBILE_NET_V1_BODY), activation="tanh",
                            squeeze_excitation_divisor=0))
    exc = plan.stage("squeeze_excitation_prefix0.excitation")
    assert exc.pass_through_flags.tolist() == [False, False, True, True]
    for c in (2, 3):
        assert exc.bounds.after_bias[c].to_list() == [1.0, 1.0]
        assert exc.bounds.after_escape[c].to_list() == [0.0, 0.0]
        actual = float(torch.tanh(exc.bounds.after_escape.lb[c]))
        assert float(exc.bounds.output.lb[c]) <= actual <= float(exc.bounds.output.ub[c])
        assert exc.bounds.undone_output()[c].to_list() == [1.0, 1.0]
    mul = plan.stage("squeeze_excitation_prefix0.multiply")
    assert mul.pass_through_flags.tolist()[2:] == [True, True]


def test_descriptor_serialization() -> None:
    _, plan = _plan(_params(int(BlockType.SHUFFLE_NET_V2_BY_POINTWISE21_HEAD), squeeze_excitation_divisor=2))
    d = plan.to_dict(include_bounds=True)
    assert d["step_count"] == len(d["stages"])
    assert d["weights_consumed"] == plan.partition.weight_count
    first = d["stages"][0]
    assert first["name"] == "pointwise1"
    assert len(first["escape_scale_translate"]) == first["output_channel_count"]
    assert "bounds" in first
