#!/usr/bin/env python3
#===- tests/test_stage_bounds.py - Stage Bounds Propagation Tests ------====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#

from __future__ import annotations

import pytest
import torch

from blockplan.back_end.errors import ChannelCountMismatch
from blockplan.back_end.interval import BoundsArray
from blockplan.back_end.pad_info import DEPTHWISE_AVG, DEPTHWISE_MAX, compute_pad_info
from blockplan.back_end.stage_bounds import (
    OpKind,
    PassThroughStyle,
    add,
    avg_pool_after_filter,
    concat,
    conv_bias_activation,
    depthwise_after_filter,
    global_average,
    input_stage,
    interleave_group_two,
    max_pool_after_filter,
    multiply,
    pointwise_after_filter,
    shuffle_split,
)


def _t(values) -> torch.Tensor:
    return torch.tensor(values, dtype=torch.float64)


def _escaped_pointwise():
    prev = input_stage(BoundsArray([-1.0, 0.0], [1.0, 2.0]))
    return conv_bias_activation(
        prev, op_kind=OpKind.POINTWISE, pass_through=[False, True], activation="relu6",
        filters=_t([[1.0, -2.0], [0.5, 0.5]]), bias=_t([1.0, 0.0]),
    )


def test_pointwise_after_filter_sign_aware() -> None:
    B = BoundsArray([-1.0, 0.0], [1.0, 2.0])
    out = pointwise_after_filter(B, _t([[1.0, -2.0]]))
    assert out.to_dict() == {"lb": [-5.0], "ub": [1.0]}
    with pytest.raises(ChannelCountMismatch):
        pointwise_after_filter(B, _t([[1.0, 2.0, 3.0]]))


def test_depthwise_same_padding_counts_zero_pixels() -> None:
    info = compute_pad_info(3, 3, 1, 1, 3, 3, 1)
    out = depthwise_after_filter(BoundsArray([1.0], [2.0]), 3, 3, torch.ones((1, 3, 3), dtype=torch.float64), info)
    # corner windows see 4 real pixels, the centre window sees 9
    assert out.to_dict() == {"lb": [4.0], "ub": [18.0]}


def test_depthwise_multiplier_and_negative_weights() -> None:
    info = compute_pad_info(1, 2, 1, 2, 1, 2, 0)
    filters = _t([[[1.0, -1.0]], [[2.0, 0.0]]])
    out = depthwise_after_filter(BoundsArray([-1.0], [1.0]), 1, 2, filters, info)
    assert out.lb.tolist() == [-2.0, -2.0]
    assert out.ub.tolist() == [2.0, 2.0]


def test_pooling_bounds_stay_inside_input() -> None:
    B = BoundsArray([1.0, -3.0], [2.0, -1.0])
    avg = avg_pool_after_filter(B, 3, 3, compute_pad_info(3, 3, 2, DEPTHWISE_AVG, 3, 3, 1))
    mx = max_pool_after_filter(B, 3, 3, compute_pad_info(3, 3, 2, DEPTHWISE_MAX, 3, 3, 1))
    assert avg.equals(B, atol=1e-12)
    assert mx.equals(B)


def test_conv_bias_activation_escapes_pass_through_channel() -> None:
    s = _escaped_pointwise()
    assert s.after_filter.to_dict() == {"lb": [-5.0, -0.5], "ub": [1.0, 1.5]}
    assert s.after_bias.to_dict() == {"lb": [-4.0, -0.5], "ub": [2.0, 1.5]}
    assert s.escape.do.to_list() == [[1.0, 0.0], [3.0, 1.5]]
    assert s.after_escape.lb.tolist() == [-4.0, 0.0]
    assert s.after_escape.ub.tolist() == [2.0, 6.0]
    assert s.output.to_dict() == {"lb": [0.0, 0.0], "ub": [2.0, 6.0]}
    assert s.undone_output().equals(BoundsArray([0.0, -0.5], [2.0, 1.5]), atol=1e-12)


def test_conv_bias_activation_constant_one_channels() -> None:
    prev = input_stage(BoundsArray([-1.0, -1.0], [1.0, 1.0]))
    s = conv_bias_activation(
        prev, op_kind=OpKind.POINTWISE, pass_through=[False, True], activation="relu6",
        filters=_t([[1.0, 0.0], [0.0, 0.0]]), bias=_t([0.0, 1.0]), style=PassThroughStyle.FILTER_ZERO_BIAS_ONE,
    )
    assert bool(s.escape.is_identity().all())
    assert s.output.to_dict() == {"lb": [0.0, 1.0], "ub": [1.0, 1.0]}


def test_concat_and_shuffle_split_carry_escapes() -> None:
    a = _escaped_pointwise()
    b = input_stage(BoundsArray([10.0, 20.0], [11.0, 21.0]))
    cat = concat([a, b])
    assert cat.channel_count == 4
    assert cat.pass_through.tolist() == [False, True, False, False]

    assert interleave_group_two(4).tolist() == [0, 2, 1, 3]
    lo, hi = shuffle_split(cat)
    assert lo.output.lb.tolist() == [0.0, 10.0]
    assert hi.output.lb.tolist() == [0.0, 20.0]
    assert hi.pass_through.tolist() == [True, False]
    assert hi.escape.do.to_list()[0] == [3.0, 1.5]

    with pytest.raises(ChannelCountMismatch):
        shuffle_split(concat([a, input_stage(BoundsArray([0.0], [1.0]))]))


def test_concat_rejects_mismatched_spatial_size() -> None:
    a = input_stage(BoundsArray([0.0], [1.0]), 2, 2)
    b = input_stage(BoundsArray([0.0], [1.0]), 3, 3)
    with pytest.raises(ChannelCountMismatch):
        concat([a, b])


def test_add_uses_undone_bounds() -> None:
    a = _escaped_pointwise()
    b = input_stage(BoundsArray([1.0, 1.0], [2.0, 2.0]))
    s = add(a, b)
    assert s.output.equals(BoundsArray([1.0, 0.5], [4.0, 3.5]), atol=1e-12)
    assert not bool(s.pass_through.any())
    assert bool(s.escape.is_identity().all())


def test_multiply_keeps_escape_where_excitation_is_one() -> None:
    data = _escaped_pointwise()
    exc = input_stage(BoundsArray([0.5, 1.0], [1.0, 1.0]))
    s = multiply(data, exc)
    assert s.pass_through.tolist() == [False, True]
    assert s.output.lb.tolist() == [0.0, 0.0]
    assert s.output.ub.tolist() == [2.0, 6.0]
    assert s.escape.do.to_list() == [[1.0, 0.0], [3.0, 1.5]]


def _constant_excitation(activation: str):
    prev = input_stage(BoundsArray([-1.0, -1.0], [1.0, 1.0]))
    return conv_bias_activation(
        prev, op_kind=OpKind.POINTWISE, pass_through=[False, True], activation=activation,
        filters=_t([[1.0, 0.0], [0.0, 0.0]]), bias=_t([0.0, 1.0]), style=PassThroughStyle.FILTER_ZERO_BIAS_ONE,
    )


def test_constant_one_channel_is_escaped_through_tanh() -> None:
    s = _constant_excitation("tanh")
    assert s.escape.do.to_list()[1] == [1.0, -1.0]
    assert s.after_escape[1].to_list() == [0.0, 0.0]
    actual = torch.tanh(s.escape.do.apply_tensor(_t([[0.0, 1.0]]))[0])
    assert bool(s.output.contains(actual)[1])
    assert s.undone_output()[1].to_list() == [1.0, 1.0]

    s = multiply(_escaped_pointwise(), s)
    assert s.pass_through.tolist() == [False, True]


def test_constant_channel_without_identity_is_multiplied() -> None:
    s = _constant_excitation("sigmoid")
    assert s.output[1].to_list() == [0.5, 0.5]
    assert s.undone_output()[1].to_list() == [1.5, 1.5]

    out = multiply(_escaped_pointwise(), s)
    assert out.pass_through.tolist() == [False, False]
    assert bool(out.escape.is_identity().all())
    assert out.output[1].to_list() == pytest.approx([-0.75, 2.25])


def test_global_average_collapses_spatial_size() -> None:
    s = global_average(input_stage(BoundsArray([0.0], [1.0]), 4, 5))
    assert (s.height, s.width) == (1, 1)
    assert s.output.to_dict() == {"lb": [0.0], "ub": [1.0]}
