#!/usr/bin/env python3
#===- blockplan/back_end/escaping.py - Activation Escaping -------------====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#
#
# Purpose:
#   Per-channel "escape" corrections for pass-through channels. A
#   pass-through channel must cross a non-linear activation without losing
#   information, so its pre-activation interval is affinely squeezed into the
#   activation's linear domain ("do") and restored by the next stage
#   ("undo" = do^-1).
#
#===---------------------------------------------------------------------===#

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

import torch

from blockplan.back_end.activation import ActivationLike, get_activation
from blockplan.back_end.errors import DegenerateDomain
from blockplan.back_end.interval import BoundsArray, ScaleTranslateArray

logger = logging.getLogger(__name__)


def as_flags(flags, n: int) -> torch.Tensor:
    t = torch.as_tensor(flags, dtype=torch.bool).reshape(-1)
    if t.numel() == 1 and n != 1:
        t = t.expand(n).clone()
    if t.numel() != n:
        raise ValueError(f"pass-through flags length {t.numel()} != channel count {n}")
    return t


@dataclass(frozen=True, eq=False)
class ActivationEscapeSet:
    do: ScaleTranslateArray
    undo: ScaleTranslateArray

    def __post_init__(self) -> None:
        if len(self.do) != len(self.undo):
            raise ValueError(f"escape do/undo length mismatch: {len(self.do)} vs {len(self.undo)}")

    @staticmethod
    def identity(n: int) -> "ActivationEscapeSet":
        return ActivationEscapeSet(ScaleTranslateArray.identity(n), ScaleTranslateArray.identity(n))

    @staticmethod
    def compute(after_bias: BoundsArray, pass_through, activation: ActivationLike) -> "ActivationEscapeSet":
        """
        Escape corrections for one stage.

        Non-pass-through channels and stages without activation get the
        identity. Pass-through channels map ``after_bias`` endpoints onto the
        activation's linear domain; a point interval raises DegenerateDomain.
        """
        act = get_activation(activation)
        n = len(after_bias)
        flags = as_flags(pass_through, n)
        ident = ScaleTranslateArray.identity(n)
        if act.is_none or not bool(flags.any()):
            return ActivationEscapeSet(ident, ident)

        idx = torch.nonzero(flags, as_tuple=True)[0]
        dst = BoundsArray.from_interval(int(idx.numel()), act.linear_domain)
        try:
            sub = ScaleTranslateArray.from_endpoints(after_bias[idx], dst)
        except DegenerateDomain as e:
            channels = [int(idx[c]) for c in e.details["channels"]]
            raise DegenerateDomain(
                f"{act.name}: pass-through channels {channels} have degenerate pre-activation bounds "
                f"[{e.details['lower']}, {e.details['upper']}]",
                channels=channels, lower=e.details["lower"], upper=e.details["upper"],
            ) from e

        scale = ident.scale.clone()
        translate = ident.translate.clone()
        scale[idx] = sub.scale
        translate[idx] = sub.translate
        do = ScaleTranslateArray(scale, translate)
        logger.debug("escape %s: %d/%d channels escaped", act.name, int(idx.numel()), n)
        return ActivationEscapeSet(do, do.invert())

    @staticmethod
    def constant(after_bias: BoundsArray, pass_through, activation: ActivationLike) -> "ActivationEscapeSet":
        """
        Escape for constant (filter 0, bias 1) pass-through channels.

        A constant already inside the linear domain keeps the identity. Any
        other constant is translated onto the middle of the domain, so the
        undone activation output is the constant again.
        """
        act = get_activation(activation)
        n = len(after_bias)
        flags = as_flags(pass_through, n)
        ident = ScaleTranslateArray.identity(n)
        dom = act.linear_domain
        if act.is_none or not bool(flags.any()) or not dom.is_finite():
            return ActivationEscapeSet(ident, ident)

        inside = (after_bias.lb >= dom.lower) & (after_bias.ub <= dom.upper)
        moved = flags & ~inside
        if not bool(moved.any()):
            return ActivationEscapeSet(ident, ident)
        center = (after_bias.lb + after_bias.ub) / 2
        mid = (dom.lower + dom.upper) / 2
        translate = torch.where(moved, mid - center, ident.translate)
        do = ScaleTranslateArray(ident.scale.clone(), translate)
        logger.debug("escape %s: %d constant channels translated", act.name, int(moved.sum()))
        return ActivationEscapeSet(do, do.invert())

    @staticmethod
    def cat(parts: Sequence["ActivationEscapeSet"]) -> "ActivationEscapeSet":
        return ActivationEscapeSet(
            ScaleTranslateArray.cat([p.do for p in parts]), ScaleTranslateArray.cat([p.undo for p in parts])
        )

    def __len__(self) -> int:
        return len(self.do)

    def __getitem__(self, idx) -> "ActivationEscapeSet":
        if isinstance(idx, int):
            idx = slice(idx, idx + 1)
        return ActivationEscapeSet(self.do[idx], self.undo[idx])

    def permute(self, index: torch.Tensor) -> "ActivationEscapeSet":
        return ActivationEscapeSet(self.do.permute(index), self.undo.permute(index))

    def where(self, mask: torch.Tensor, other: "ActivationEscapeSet") -> "ActivationEscapeSet":
        return ActivationEscapeSet(self.do.where(mask, other.do), self.undo.where(mask, other.undo))

    def apply(self, after_bias: BoundsArray) -> BoundsArray:
        return self.do.apply(after_bias)

    def restore(self, escaped: BoundsArray) -> BoundsArray:
        return self.undo.apply(escaped)

    def is_identity(self) -> torch.Tensor:
        return self.do.is_identity() & self.undo.is_identity()

    def to_list(self) -> list:
        return [
            {"do": [float(ds), float(dt)], "undo": [float(us), float(ut)]}
            for ds, dt, us, ut in zip(
                self.do.scale.tolist(), self.do.translate.tolist(),
                self.undo.scale.tolist(), self.undo.translate.tolist(),
            )
        ]
