#!/usr/bin/env python3
#===- tests/test_interval_escape.py - Interval & Escape Tests ----------====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#

from __future__ import annotations

import math

import pytest
import torch

from blockplan.back_end.errors import DegenerateDomain
from blockplan.back_end.escaping import ActivationEscapeSet
from blockplan.back_end.interval import BoundsArray, Interval, ScaleTranslate, ScaleTranslateArray


def test_interval_normalizes_and_rejects_nan() -> None:
    iv = Interval(3, -1)
    assert iv.to_list() == [-1.0, 3.0]
    assert iv.difference == 4.0
    with pytest.raises(ValueError):
        Interval(float("nan"), 1.0)


def test_interval_multiply_treats_zero_times_inf_as_zero() -> None:
    iv = Interval(0.0, 2.0).multiply(Interval(-math.inf, 1.0))
    assert iv.lower == -math.inf
    assert iv.upper == 2.0
    assert Interval(0.0, 0.0).multiply(Interval(-math.inf, math.inf)).to_list() == [0.0, 0.0]


def test_interval_clamp_and_union() -> None:
    assert Interval(-5, 10).clamp(Interval(0, 6)).to_list() == [0.0, 6.0]
    assert Interval(7, 9).clamp(Interval(0, 6)).to_list() == [6.0, 6.0]
    assert Interval(-1, 1).union(Interval(2, 3)).to_list() == [-1.0, 3.0]


def test_scale_translate_from_endpoints_and_inverse() -> None:
    st = ScaleTranslate.from_endpoints(Interval(2, 6), Interval(-0.125, 0.125))
    assert st.scale == 0.0625
    assert st.translate == -0.25
    inv = st.invert()
    assert inv.scale == 16.0
    assert inv.translate == 4.0
    assert inv.compose(st).is_identity()


def test_scale_translate_rejects_zero_scale() -> None:
    with pytest.raises(ValueError):
        ScaleTranslate(0.0, 1.0)


def test_bounds_array_scale_by_is_sign_aware() -> None:
    B = BoundsArray([-1.0, 0.0], [2.0, 3.0])
    out = B.scale_by(torch.tensor([-2.0, 0.5], dtype=torch.float64))
    assert out.lb.tolist() == [-4.0, 0.0]
    assert out.ub.tolist() == [2.0, 1.5]


def test_escape_sigmoid_scenario() -> None:
    after_bias = BoundsArray([2.0], [6.0])
    esc = ActivationEscapeSet.compute(after_bias, [True], "sigmoid")
    assert esc.do.to_list() == [[0.0625, -0.25]]
    assert esc.undo.to_list() == [[16.0, 4.0]]
    escaped = esc.apply(after_bias)
    assert escaped.lb.tolist() == [-0.125]
    assert escaped.ub.tolist() == [0.125]
    assert esc.restore(escaped).equals(after_bias)


def test_escape_relu_is_translate_only() -> None:
    after_bias = BoundsArray([-3.0], [5.0])
    esc = ActivationEscapeSet.compute(after_bias, [True], "relu")
    assert esc.do.to_list() == [[1.0, 3.0]]
    assert esc.apply(after_bias).to_dict() == {"lb": [0.0], "ub": [8.0]}


def test_escape_identity_for_plain_channels_and_no_activation() -> None:
    after_bias = BoundsArray([-1.0, -2.0, 0.5], [1.0, 4.0, 0.75])
    esc = ActivationEscapeSet.compute(after_bias, [False, True, False], "tanh")
    ident = esc.is_identity()
    assert ident.tolist() == [True, False, True]

    none = ActivationEscapeSet.compute(after_bias, [True, True, True], "none")
    assert bool(none.is_identity().all())


def test_escape_exact_inverse_random_channels() -> None:
    g = torch.Generator().manual_seed(7)
    lo = torch.rand(16, generator=g, dtype=torch.float64) * 10 - 5
    hi = lo + torch.rand(16, generator=g, dtype=torch.float64) * 3 + 0.01
    after_bias = BoundsArray(lo, hi)
    for act in ("clip_n2_p2", "clip_n3_p3", "tanh", "sin", "cos", "relu6", "sigmoid", "relu"):
        esc = ActivationEscapeSet.compute(after_bias, [True], act)
        back = esc.restore(esc.apply(after_bias))
        assert back.equals(after_bias, atol=1e-9), act


def test_escape_point_interval_raises_degenerate_domain() -> None:
    after_bias = BoundsArray([0.0, 1.0], [1.0, 1.0])
    with pytest.raises(DegenerateDomain) as ei:
        ActivationEscapeSet.compute(after_bias, [True, True], "tanh")
    assert ei.value.details["channels"] == [1]


def test_from_endpoints_broadcasts_single_destination() -> None:
    src = BoundsArray([0.0, -1.0], [2.0, 1.0])
    st = ScaleTranslateArray.from_endpoints(src, BoundsArray([-1.0], [1.0]))
    out = st.apply(src)
    assert out.lb.tolist() == [-1.0, -1.0]
    assert out.ub.tolist() == [1.0, 1.0]
