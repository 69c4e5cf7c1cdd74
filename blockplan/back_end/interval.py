#!/usr/bin/env python3
#===- blockplan/back_end/interval.py - Interval and Affine Primitives --====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#
#
# Purpose:
#   Interval and per-channel affine (scale, translate) primitives.
#   - Interval / ScaleTranslate: scalar records used for single channels
#   - BoundsArray / ScaleTranslateArray: torch-backed per-channel vectors
#
# Notes:
#   All tensors are 1-D float64 indexed by channel. Infinite endpoints are
#   allowed (e.g. relu output range); NaN endpoints are rejected.
#
#===---------------------------------------------------------------------===#

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Union

import torch

from blockplan.back_end.errors import DegenerateDomain

DTYPE = torch.float64

TensorLike = Union[torch.Tensor, Sequence[float], float]


def as_channel_tensor(x: TensorLike, n: int | None = None) -> torch.Tensor:
    """Convert ``x`` to a 1-D float64 tensor, broadcasting scalars to ``n``."""
    t = torch.as_tensor(x, dtype=DTYPE)
    if t.dim() == 0:
        if n is None:
            t = t.reshape(1)
        else:
            t = t.expand(n).clone()
    return t.reshape(-1)


def _safe_mul(a: torch.Tensor, b: torch.Tensor) -> torch.Tensor:
    """Elementwise product that treats 0 * inf as 0."""
    prod = a * b
    return torch.where((a == 0) | (b == 0), torch.zeros_like(prod), prod)


# -------- Scalar records --------
@dataclass(frozen=True)
class Interval:
    lower: float
    upper: float

    def __post_init__(self) -> None:
        lo, hi = float(self.lower), float(self.upper)
        if math.isnan(lo) or math.isnan(hi):
            raise ValueError(f"Interval endpoints must not be NaN, got [{lo}, {hi}]")
        if lo > hi:
            lo, hi = hi, lo
        object.__setattr__(self, "lower", lo)
        object.__setattr__(self, "upper", hi)

    @property
    def difference(self) -> float:
        return self.upper - self.lower

    def is_point(self) -> bool:
        return self.lower == self.upper

    def is_finite(self) -> bool:
        return math.isfinite(self.lower) and math.isfinite(self.upper)

    def contains(self, x: float) -> bool:
        return self.lower <= x <= self.upper

    def includes(self, other: "Interval") -> bool:
        return self.lower <= other.lower and other.upper <= self.upper

    def add(self, other: "Interval") -> "Interval":
        return Interval(self.lower + other.lower, self.upper + other.upper)

    def shift(self, bias: float) -> "Interval":
        return Interval(self.lower + bias, self.upper + bias)

    def scale_by(self, k: float) -> "Interval":
        if k == 0:
            return Interval(0.0, 0.0)
        return Interval(self.lower * k, self.upper * k)

    def multiply(self, other: "Interval") -> "Interval":
        cand = [
            _scalar_safe_mul(a, b)
            for a in (self.lower, self.upper)
            for b in (other.lower, other.upper)
        ]
        return Interval(min(cand), max(cand))

    def enlarge(self, value: float) -> "Interval":
        return Interval(min(self.lower, value), max(self.upper, value))

    def clamp(self, bound: "Interval") -> "Interval":
        lo = min(max(self.lower, bound.lower), bound.upper)
        hi = min(max(self.upper, bound.lower), bound.upper)
        return Interval(lo, hi)

    def union(self, other: "Interval") -> "Interval":
        return Interval(min(self.lower, other.lower), max(self.upper, other.upper))

    def to_list(self) -> List[float]:
        return [self.lower, self.upper]


def _scalar_safe_mul(a: float, b: float) -> float:
    return 0.0 if a == 0 or b == 0 else a * b


@dataclass(frozen=True)
class ScaleTranslate:
    scale: float = 1.0
    translate: float = 0.0

    def __post_init__(self) -> None:
        s, t = float(self.scale), float(self.translate)
        if s == 0 or not math.isfinite(s):
            raise ValueError(f"ScaleTranslate.scale must be finite and non-zero, got {s}")
        if not math.isfinite(t):
            raise ValueError(f"ScaleTranslate.translate must be finite, got {t}")
        object.__setattr__(self, "scale", s)
        object.__setattr__(self, "translate", t)

    def is_identity(self) -> bool:
        return self.scale == 1.0 and self.translate == 0.0

    def apply(self, x: float) -> float:
        return x * self.scale + self.translate

    def apply_to(self, iv: Interval) -> Interval:
        return Interval(self.apply(iv.lower), self.apply(iv.upper))

    def invert(self) -> "ScaleTranslate":
        return ScaleTranslate(1.0 / self.scale, -self.translate / self.scale)

    def compose(self, inner: "ScaleTranslate") -> "ScaleTranslate":
        """Return ``self ∘ inner`` (apply ``inner`` first)."""
        return ScaleTranslate(self.scale * inner.scale, self.scale * inner.translate + self.translate)

    @staticmethod
    def from_endpoints(src: Interval, dst: Interval) -> "ScaleTranslate":
        """Affine map taking ``src.lower -> dst.lower`` and ``src.upper -> dst.upper``."""
        arr = ScaleTranslateArray.from_endpoints(
            BoundsArray.from_intervals([src]), BoundsArray.from_intervals([dst])
        )
        return arr[0]

    def to_list(self) -> List[float]:
        return [self.scale, self.translate]


# -------- Per-channel vectors --------
@dataclass(frozen=True, eq=False)
class BoundsArray:
    lb: torch.Tensor
    ub: torch.Tensor

    def __post_init__(self) -> None:
        lb = as_channel_tensor(self.lb)
        ub = as_channel_tensor(self.ub)
        if lb.shape != ub.shape:
            raise ValueError(f"BoundsArray lb/ub shape mismatch: {tuple(lb.shape)} vs {tuple(ub.shape)}")
        if torch.isnan(lb).any() or torch.isnan(ub).any():
            raise ValueError("BoundsArray endpoints must not be NaN")
        object.__setattr__(self, "lb", torch.minimum(lb, ub))
        object.__setattr__(self, "ub", torch.maximum(lb, ub))

    # construction
    @staticmethod
    def from_intervals(intervals: Iterable[Interval]) -> "BoundsArray":
        ivs = list(intervals)
        return BoundsArray([iv.lower for iv in ivs], [iv.upper for iv in ivs])

    @staticmethod
    def full(n: int, lower: float, upper: float) -> "BoundsArray":
        return BoundsArray(torch.full((n,), float(lower), dtype=DTYPE), torch.full((n,), float(upper), dtype=DTYPE))

    @staticmethod
    def from_interval(n: int, iv: Interval) -> "BoundsArray":
        return BoundsArray.full(n, iv.lower, iv.upper)

    @staticmethod
    def cat(parts: Sequence["BoundsArray"]) -> "BoundsArray":
        if not parts:
            return BoundsArray(torch.zeros(0, dtype=DTYPE), torch.zeros(0, dtype=DTYPE))
        return BoundsArray(torch.cat([p.lb for p in parts]), torch.cat([p.ub for p in parts]))

    # access
    def __len__(self) -> int:
        return int(self.lb.numel())

    def __getitem__(self, idx):
        if isinstance(idx, int):
            return Interval(float(self.lb[idx]), float(self.ub[idx]))
        return BoundsArray(self.lb[idx], self.ub[idx])

    def to_intervals(self) -> List[Interval]:
        return [Interval(lo, hi) for lo, hi in zip(self.lb.tolist(), self.ub.tolist())]

    def permute(self, index: torch.Tensor) -> "BoundsArray":
        return BoundsArray(self.lb[index], self.ub[index])

    def equals(self, other: "BoundsArray", atol: float = 0.0) -> bool:
        if len(self) != len(other):
            return False
        if atol == 0.0:
            return bool(torch.equal(self.lb, other.lb) and torch.equal(self.ub, other.ub))
        return bool(
            torch.allclose(self.lb, other.lb, atol=atol, rtol=0.0)
            and torch.allclose(self.ub, other.ub, atol=atol, rtol=0.0)
        )

    def is_finite(self) -> bool:
        return bool(torch.isfinite(self.lb).all() and torch.isfinite(self.ub).all())

    # arithmetic
    def add(self, other: "BoundsArray") -> "BoundsArray":
        return BoundsArray(self.lb + other.lb, self.ub + other.ub)

    def shift(self, bias: TensorLike) -> "BoundsArray":
        b = as_channel_tensor(bias, len(self))
        return BoundsArray(self.lb + b, self.ub + b)

    def scale_by(self, k: TensorLike) -> "BoundsArray":
        a = as_channel_tensor(k, len(self))
        lo, hi = _safe_mul(a, self.lb), _safe_mul(a, self.ub)
        return BoundsArray(torch.where(a >= 0, lo, hi), torch.where(a >= 0, hi, lo))

    def multiply(self, other: "BoundsArray") -> "BoundsArray":
        cand = torch.stack([
            _safe_mul(self.lb, other.lb), _safe_mul(self.lb, other.ub),
            _safe_mul(self.ub, other.lb), _safe_mul(self.ub, other.ub),
        ], dim=0)
        return BoundsArray(torch.min(cand, 0).values, torch.max(cand, 0).values)

    def enlarge(self, values: TensorLike) -> "BoundsArray":
        v = as_channel_tensor(values, len(self))
        return BoundsArray(torch.minimum(self.lb, v), torch.maximum(self.ub, v))

    def clamp(self, bound: "BoundsArray") -> "BoundsArray":
        lo = torch.minimum(torch.maximum(self.lb, bound.lb), bound.ub)
        hi = torch.minimum(torch.maximum(self.ub, bound.lb), bound.ub)
        return BoundsArray(lo, hi)

    def union(self, other: "BoundsArray") -> "BoundsArray":
        return BoundsArray(torch.minimum(self.lb, other.lb), torch.maximum(self.ub, other.ub))

    def contains(self, x: TensorLike) -> torch.Tensor:
        v = as_channel_tensor(x, len(self))
        return (self.lb <= v) & (v <= self.ub)

    def includes(self, other: "BoundsArray", atol: float = 0.0) -> torch.Tensor:
        return (self.lb - atol <= other.lb) & (other.ub <= self.ub + atol)

    def to_dict(self) -> dict:
        return {"lb": self.lb.tolist(), "ub": self.ub.tolist()}


@dataclass(frozen=True, eq=False)
class ScaleTranslateArray:
    scale: torch.Tensor
    translate: torch.Tensor

    def __post_init__(self) -> None:
        s = as_channel_tensor(self.scale)
        t = as_channel_tensor(self.translate)
        if s.shape != t.shape:
            raise ValueError(f"ScaleTranslateArray shape mismatch: {tuple(s.shape)} vs {tuple(t.shape)}")
        if not bool(torch.isfinite(s).all()) or bool((s == 0).any()):
            raise ValueError("ScaleTranslateArray.scale must be finite and non-zero")
        if not bool(torch.isfinite(t).all()):
            raise ValueError("ScaleTranslateArray.translate must be finite")
        object.__setattr__(self, "scale", s)
        object.__setattr__(self, "translate", t)

    @staticmethod
    def identity(n: int) -> "ScaleTranslateArray":
        return ScaleTranslateArray(torch.ones(n, dtype=DTYPE), torch.zeros(n, dtype=DTYPE))

    @staticmethod
    def from_records(records: Iterable[ScaleTranslate]) -> "ScaleTranslateArray":
        recs = list(records)
        return ScaleTranslateArray([r.scale for r in recs], [r.translate for r in recs])

    @staticmethod
    def cat(parts: Sequence["ScaleTranslateArray"]) -> "ScaleTranslateArray":
        if not parts:
            return ScaleTranslateArray.identity(0)
        return ScaleTranslateArray(torch.cat([p.scale for p in parts]), torch.cat([p.translate for p in parts]))

    @staticmethod
    def from_endpoints(src: BoundsArray, dst: BoundsArray) -> "ScaleTranslateArray":
        """
        Per-channel affine map taking ``src.lb -> dst.lb`` and ``src.ub -> dst.ub``.

        A destination with exactly one infinite endpoint gives a pure
        translation anchoring the finite endpoint; a destination unbounded on
        both sides gives the identity. Raises DegenerateDomain when a channel
        that needs a scale has a point or non-finite source.
        """
        n = len(src)
        if len(dst) == 1 and n != 1:
            dst = BoundsArray.full(n, float(dst.lb[0]), float(dst.ub[0]))
        slo, shi, dlo, dhi = src.lb, src.ub, dst.lb, dst.ub
        lo_fin, hi_fin = torch.isfinite(dlo), torch.isfinite(dhi)
        both = lo_fin & hi_fin
        only_lo = lo_fin & ~hi_fin
        only_hi = hi_fin & ~lo_fin
        src_fin = torch.isfinite(slo) & torch.isfinite(shi)

        bad = (both & (~src_fin | (shi == slo) | (dhi == dlo))) | ((only_lo | only_hi) & ~src_fin)
        if bool(bad.any()):
            idx = torch.nonzero(bad, as_tuple=True)[0].tolist()
            c = idx[0]
            raise DegenerateDomain(
                f"Cannot map degenerate source interval [{float(slo[c])}, {float(shi[c])}] "
                f"onto [{float(dlo[c])}, {float(dhi[c])}] (channels={idx})",
                channels=idx, lower=float(slo[c]), upper=float(shi[c]),
            )

        # torch.where discards the non-finite values of unselected branches
        one = torch.ones(n, dtype=DTYPE)
        zero = torch.zeros(n, dtype=DTYPE)
        scale = torch.where(both, (dhi - dlo) / torch.where(both, shi - slo, one), one)
        translate = torch.where(both, dlo - scale * slo, zero)
        translate = torch.where(only_lo, dlo - slo, translate)
        translate = torch.where(only_hi, dhi - shi, translate)
        return ScaleTranslateArray(scale, translate)

    def __len__(self) -> int:
        return int(self.scale.numel())

    def __getitem__(self, idx):
        if isinstance(idx, int):
            return ScaleTranslate(float(self.scale[idx]), float(self.translate[idx]))
        return ScaleTranslateArray(self.scale[idx], self.translate[idx])

    def permute(self, index: torch.Tensor) -> "ScaleTranslateArray":
        return ScaleTranslateArray(self.scale[index], self.translate[index])

    def where(self, mask: torch.Tensor, other: "ScaleTranslateArray") -> "ScaleTranslateArray":
        """Take ``self`` where ``mask`` is true, else ``other``."""
        return ScaleTranslateArray(
            torch.where(mask, self.scale, other.scale), torch.where(mask, self.translate, other.translate)
        )

    def is_identity(self) -> torch.Tensor:
        return (self.scale == 1.0) & (self.translate == 0.0)

    def invert(self) -> "ScaleTranslateArray":
        return ScaleTranslateArray(1.0 / self.scale, -self.translate / self.scale)

    def compose(self, inner: "ScaleTranslateArray") -> "ScaleTranslateArray":
        return ScaleTranslateArray(self.scale * inner.scale, self.scale * inner.translate + self.translate)

    def apply(self, B: BoundsArray) -> BoundsArray:
        # scale is never zero, so sign-aware endpoints are just a swap
        lo = B.lb * self.scale + self.translate
        hi = B.ub * self.scale + self.translate
        return BoundsArray(torch.where(self.scale >= 0, lo, hi), torch.where(self.scale >= 0, hi, lo))

    def apply_tensor(self, x: torch.Tensor, channel_dim: int = 1) -> torch.Tensor:
        """Apply per-channel to a concrete tensor whose ``channel_dim`` indexes channels."""
        shape = [1] * x.dim()
        shape[channel_dim] = len(self)
        return x * self.scale.view(shape) + self.translate.view(shape)

    def to_list(self) -> List[List[float]]:
        return [[s, t] for s, t in zip(self.scale.tolist(), self.translate.tolist())]
