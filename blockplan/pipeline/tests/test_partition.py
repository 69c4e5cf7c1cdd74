#!/usr/bin/env python3
#===- tests/test_partition.py - Channel Partition Plan Tests -----------====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#

from __future__ import annotations

import pytest

from blockplan.back_end.errors import ChannelCountMismatch, InvalidBlockTypeId
from blockplan.pipeline.block_types import BLOCK_TYPES, BlockType, resolve_block_type
from blockplan.pipeline.params import BlockParams
from blockplan.pipeline.partition import ChannelPartitionPlan, PlannerState


def test_block_type_table_covers_twelve_types() -> None:
    assert sorted(int(bt) for bt in BLOCK_TYPES) == list(range(12))
    assert resolve_block_type("shuffle_net_v2_head").output_count == 2
    with pytest.raises(InvalidBlockTypeId):
        resolve_block_type(12)
    with pytest.raises(InvalidBlockTypeId):
        resolve_block_type("no_such_block")


def test_invalid_block_type_id_from_derive() -> None:
    with pytest.raises(InvalidBlockTypeId):
        ChannelPartitionPlan.derive(-1, 4, 4, 4)


def test_block_params_range_checks() -> None:
    with pytest.raises(ValueError):
        BlockParams(input0_channels=0, block_type_id=0, pointwise20_channels=1)
    with pytest.raises(ValueError):
        BlockParams(input0_channels=1, block_type_id=0, pointwise20_channels=1, depthwise_strides_pad=4)
    with pytest.raises(ValueError):
        BlockParams.from_dict({"input0_channels": 1, "block_type_id": 0, "pointwise20_channels": 1, "bogus": 1})
    p = BlockParams(input0_channels=2, block_type_id=0, pointwise20_channels=3, activation="relu6")
    assert p.activation == 6
    assert BlockParams.from_dict(p.to_dict()) == p


def test_no_pointwise1_is_linear_before_depthwise() -> None:
    plan = ChannelPartitionPlan.derive(0, 4, 0, 4)
    assert not plan.needs.pointwise1
    assert not plan.has_stage("pointwise1")
    assert plan.linearity.between_pointwise1_and_depthwise


def test_identity_depthwise_is_elided() -> None:
    plan = ChannelPartitionPlan.derive(
        0, 4, 4, 4, depthwise_op=1, depthwise_filter_height=1, depthwise_filter_width=1, depthwise_strides_pad=0,
    )
    assert not plan.needs.depthwise
    assert not plan.has_stage("depthwise1")
    assert plan.depthwise_pad_info is None
    assert plan.linearity.between_pointwise1_and_pointwise2


def test_depthwise_kept_for_neighbour_analysis() -> None:
    plan = ChannelPartitionPlan.derive(
        0, 4, 4, 4, input0_height=3, input0_width=3, depthwise_op=1,
        depthwise_filter_height=3, depthwise_filter_width=3, depthwise_strides_pad=1,
    )
    assert plan.needs.depthwise
    assert plan.stage("depthwise1").pad_info.padding() == (1, 1, 1, 1)
    assert not plan.linearity.between_pointwise1_and_pointwise2


def test_half_split_holds_for_every_block_type() -> None:
    for bt in BlockType:
        plan = ChannelPartitionPlan.derive(int(bt), 4, 4, 4)
        assert plan.lower_half_len + plan.higher_half_len == plan.total_channels, bt.name
        assert plan.output_tensor_count == BLOCK_TYPES[bt].output_count, bt.name


def test_mobile_net_v1_head_copies_lower_half() -> None:
    plan = ChannelPartitionPlan.derive(5, 4, 3, 4)
    pw1 = plan.stage("pointwise1")
    assert (plan.lower_half_len, plan.higher_half_len, plan.total_channels) == (3, 4, 7)
    assert pw1.pass_through == (False,) * 3 + (True,) * 4
    assert pw1.copies == tuple((3 + i, i) for i in range(4))
    assert plan.stage("pointwise20").shuffle_output
    assert plan.output0_channels == 4

    no_p1 = ChannelPartitionPlan.derive(5, 4, 0, 4)
    assert no_p1.stage("pointwise1").pass_through == (True,) * 8
    assert no_p1.stage("pointwise1").weight_count == 0


def test_mobile_net_v1_body_passes_higher_half_through() -> None:
    plan = ChannelPartitionPlan.derive(6, 4, 4, 4)
    assert (plan.lower_half_len, plan.higher_half_len, plan.total_channels) == (2, 2, 4)
    pw1 = plan.stage("pointwise1")
    assert (pw1.output_lower, pw1.output_higher) == (2, 2)
    assert pw1.pass_through == (False, False, True, True)
    # shuffled output interleaves the two halves
    assert plan.stage("pointwise20").pass_through == (False, True, False, True)

    with pytest.raises(ChannelCountMismatch):
        ChannelPartitionPlan.derive(6, 4, 4, 3)
    with pytest.raises(ChannelCountMismatch):
        ChannelPartitionPlan.derive(7, 4, 4, 1)


def test_shuffle_net_v2_head_outputs_two_halves() -> None:
    plan = ChannelPartitionPlan.derive(2, 4, 4, 4)
    assert plan.outputs == ("concat2_shuffle_split.0", "concat2_shuffle_split.1")
    assert (plan.output0_channels, plan.output1_channels) == (4, 4)
    assert plan.needs.pointwise21 and plan.needs.concat_shuffle_split


def test_two_input_defaults() -> None:
    assert ChannelPartitionPlan.derive(3, 4, 4, 6).input1_channels == 6
    assert ChannelPartitionPlan.derive(10, 4, 4, 6).input1_channels == 4
    assert ChannelPartitionPlan.derive(0, 4, 4, 6).input1_channels == 0
    tail = ChannelPartitionPlan.derive(4, 4, 4, 6, input1_channels=3)
    assert tail.output0_channels == 9


def test_add_input_to_output_needs_matching_shape() -> None:
    plan = ChannelPartitionPlan.derive(1, 4, 8, 4)
    assert plan.needs.add_to_output0
    assert plan.stage("add_input_to_output0").inputs == ("input0", "pointwise20")
    assert not plan.needs.add_to_output1

    skipped = ChannelPartitionPlan.derive(1, 4, 8, 6)
    assert not skipped.needs.add_to_output0
    assert any("add_input_to_output0" in n for n in skipped.notes)


def test_weight_count_pointwise_with_bias() -> None:
    plan = ChannelPartitionPlan.derive(0, 4, 3, 5, activation="relu6")
    assert plan.stage("pointwise1").weight_count == 4 * 3 + 3
    assert plan.stage("pointwise20").weight_count == 3 * 5 + 5
    assert plan.weight_count == 35


def test_squeeze_excitation_prefix_stages() -> None:
    plan = ChannelPartitionPlan.derive(
        0, 4, 4, 4, has_squeeze_excitation=True, input0_height=3, input0_width=3, squeeze_excitation_divisor=2,
    )
    names = [s.name for s in plan.stages]
    assert names.index("squeeze_excitation_prefix0.multiply") < names.index("pointwise20")
    for suffix in ("squeeze", "intermediate", "excitation", "multiply"):
        assert f"squeeze_excitation_prefix0.{suffix}" in names
    assert plan.stage("squeeze_excitation_prefix0.intermediate").output_channels == 2
    assert plan.needs.squeeze_excitation_prefix


def test_squeeze_excitation_per_branch_when_branches_read_same_input() -> None:
    plan = ChannelPartitionPlan.derive(9, 4, 4, 4, has_squeeze_excitation=True)
    names = [s.name for s in plan.stages]
    for branch in ("0", "1"):
        assert f"squeeze_excitation_prefix{branch}.excitation" in names
        assert f"squeeze_excitation_prefix{branch}.multiply" in names
    assert plan.stage("pointwise20").inputs == ("squeeze_excitation_prefix0.multiply",)
    assert plan.stage("pointwise21").inputs == ("squeeze_excitation_prefix1.multiply",)
    assert plan.stage("squeeze_excitation_prefix1.excitation").inputs == ("concat1",)
    # concat1 is 8 channels wide; each branch reads its own 8x8 filter and bias
    assert plan.stage("squeeze_excitation_prefix0.excitation").weight_count == 8 * 8 + 8
    assert plan.stage("squeeze_excitation_prefix1.excitation").weight_count == 8 * 8 + 8


def test_excitation_only_per_branch_for_pointwise21_head() -> None:
    plan = ChannelPartitionPlan.derive(8, 4, 4, 4, has_squeeze_excitation=True, squeeze_excitation_divisor=-1)
    names = [s.name for s in plan.stages]
    assert "squeeze_excitation_prefix1.excitation" in names
    assert names.index("squeeze_excitation_prefix1.multiply") < names.index("pointwise21")


def test_squeeze_excitation_halves_stay_separate_for_mobile_net_v1_head() -> None:
    plan = ChannelPartitionPlan.derive(5, 2, 2, 4, has_squeeze_excitation=True, squeeze_excitation_divisor=-1,
                                       depthwise_op=1)
    exc = plan.stage("squeeze_excitation_prefix0.excitation")
    assert (exc.output_lower, exc.output_higher) == (2, 2)
    assert [(b.rows, b.cols) for b in exc.weight_blocks] == [((0, 1), (0, 1)), ((2, 3), (2, 3))]
    assert exc.weight_count == 2 * 2 + 2 * 2 + 4

    plan = ChannelPartitionPlan.derive(5, 2, 2, 4, has_squeeze_excitation=True, squeeze_excitation_divisor=2,
                                       depthwise_op=1)
    inter = plan.stage("squeeze_excitation_prefix0.intermediate")
    assert (inter.output_lower, inter.output_higher) == (1, 1)
    assert [(b.rows, b.cols) for b in inter.weight_blocks] == [((0,), (0, 1)), ((1,), (2, 3))]
    exc = plan.stage("squeeze_excitation_prefix0.excitation")
    assert [(b.rows, b.cols) for b in exc.weight_blocks] == [((0, 1), (0,)), ((2, 3), (1,))]


def test_squeeze_excitation_higher_half_is_constant_for_mobile_net_v1_body() -> None:
    plan = ChannelPartitionPlan.derive(6, 4, 0, 4, has_squeeze_excitation=True, squeeze_excitation_divisor=-1)
    exc = plan.stage("squeeze_excitation_prefix0.excitation")
    assert exc.pass_through == (False, False, True, True)
    assert [(b.rows, b.cols) for b in exc.weight_blocks] == [((0, 1), (0, 1))]
    assert exc.bias_rows == (0, 1)


def test_stage_states_are_monotonic() -> None:
    for bt in BlockType:
        plan = ChannelPartitionPlan.derive(int(bt), 4, 4, 4, has_squeeze_excitation=True,
                                           squeeze_excitation_prefix=False)
        states = [s.state for s in plan.stages]
        assert states == sorted(states), bt.name
        assert all(PlannerState.POINTWISE1 <= s <= PlannerState.CONCAT_SHUFFLE_SPLIT for s in states)
