#!/usr/bin/env python3
#===- blockplan/back_end/activation.py - Activation Catalog ------------====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#
#
# Purpose:
#   Static catalog of the activation functions a block stage may use, with
#   the three ranges the planner needs per kind:
#   - output_range: everything the activation can produce
#   - linear_domain: inputs on which the activation is (close to) identity
#     up to an affine map
#   - output_range_linear: outputs produced from linear_domain inputs
#
#===---------------------------------------------------------------------===#

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Union

import torch
import torch.nn.functional as F

from blockplan.back_end.interval import Interval

INF = math.inf


class ActivationKind(str, Enum):
    NONE = "none"
    CLIP_N2_P2 = "clip_n2_p2"
    CLIP_N3_P3 = "clip_n3_p3"
    TANH = "tanh"
    SIN = "sin"
    COS = "cos"
    RELU6 = "relu6"
    SIGMOID = "sigmoid"
    RELU = "relu"


@dataclass(frozen=True)
class ActivationSpec:
    kind: ActivationKind
    id: int
    output_range: Interval
    linear_domain: Interval
    output_range_linear: Interval
    fn: Callable[[torch.Tensor], torch.Tensor]

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def is_none(self) -> bool:
        return self.kind is ActivationKind.NONE

    def __call__(self, x: torch.Tensor) -> torch.Tensor:
        return self.fn(x)

    def to_dict(self) -> Dict[str, object]:
        return {
            "kind": self.kind.value,
            "id": self.id,
            "output_range": self.output_range.to_list(),
            "linear_domain": self.linear_domain.to_list(),
            "output_range_linear": self.output_range_linear.to_list(),
        }


_NEAR_ZERO = Interval(-0.005, 0.005)
_UNBOUNDED = Interval(-INF, INF)

ACTIVATIONS: Dict[ActivationKind, ActivationSpec] = {
    spec.kind: spec
    for spec in (
        ActivationSpec(ActivationKind.NONE, 0, _UNBOUNDED, _UNBOUNDED, _UNBOUNDED, lambda x: x),
        ActivationSpec(ActivationKind.CLIP_N2_P2, 1, Interval(-2, 2), Interval(-2, 2), Interval(-2, 2),
                       lambda x: torch.clamp(x, -2.0, 2.0)),
        ActivationSpec(ActivationKind.CLIP_N3_P3, 2, Interval(-3, 3), Interval(-3, 3), Interval(-3, 3),
                       lambda x: torch.clamp(x, -3.0, 3.0)),
        ActivationSpec(ActivationKind.TANH, 3, Interval(-1, 1), _NEAR_ZERO, _NEAR_ZERO, torch.tanh),
        ActivationSpec(ActivationKind.SIN, 4, Interval(-1, 1), _NEAR_ZERO, _NEAR_ZERO, torch.sin),
        # cos is near linear around -pi/2 where it crosses zero
        ActivationSpec(ActivationKind.COS, 5, Interval(-1, 1),
                       Interval(-(math.pi / 2 + 0.005), -(math.pi / 2 - 0.005)), _NEAR_ZERO, torch.cos),
        ActivationSpec(ActivationKind.RELU6, 6, Interval(0, 6), Interval(0, 6), Interval(0, 6), F.relu6),
        ActivationSpec(ActivationKind.SIGMOID, 7, Interval(0, 1), Interval(-0.125, 0.125),
                       Interval(0.468, 0.532), torch.sigmoid),
        ActivationSpec(ActivationKind.RELU, 8, Interval(0, INF), Interval(0, INF), Interval(0, INF), F.relu),
    )
}

_BY_ID: Dict[int, ActivationSpec] = {spec.id: spec for spec in ACTIVATIONS.values()}

ActivationLike = Union[ActivationSpec, ActivationKind, str, int, None]


def get_activation(x: ActivationLike) -> ActivationSpec:
    """Look up an activation by spec, kind, name (case-insensitive) or integer id."""
    if x is None:
        return ACTIVATIONS[ActivationKind.NONE]
    if isinstance(x, ActivationSpec):
        return x
    if isinstance(x, ActivationKind):
        return ACTIVATIONS[x]
    if isinstance(x, bool):
        raise ValueError(f"Unknown activation: {x!r}")
    if isinstance(x, int):
        if x not in _BY_ID:
            raise ValueError(f"Unknown activation id: {x} (valid: {sorted(_BY_ID)})")
        return _BY_ID[x]
    if isinstance(x, str):
        try:
            return ACTIVATIONS[ActivationKind(x.strip().lower())]
        except ValueError:
            raise ValueError(
                f"Unknown activation name: {x!r} (valid: {[k.value for k in ActivationKind]})"
            ) from None
    raise ValueError(f"Unknown activation: {x!r}")


def activation_ids() -> list:
    return sorted(_BY_ID)
