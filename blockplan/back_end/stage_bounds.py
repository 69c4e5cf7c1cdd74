#!/usr/bin/env python3
#===- blockplan/back_end/stage_bounds.py - Per-Stage Bounds Propagation ====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#
#
# Purpose:
#   Per-channel value bounds of every sub-result of one block stage.
#   - conv-bias-activation stages: pointwise, depthwise conv, avg/max pool
#   - carry stages: concat, channel shuffle/split, global average
#   - combining stages: add, multiply (squeeze-and-excitation)
#
# Notes:
#   Depthwise and pooling bounds are computed per pixel with sign-aware
#   torch convolutions over an image whose pixels carry the channel bounds,
#   so padded borders are accounted for, then reduced per channel.
#
#===---------------------------------------------------------------------===#

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

import torch
import torch.nn.functional as F

from blockplan.back_end.activation import ActivationLike, ActivationSpec, get_activation
from blockplan.back_end.errors import ChannelCountMismatch
from blockplan.back_end.escaping import ActivationEscapeSet, as_flags
from blockplan.back_end.interval import DTYPE, BoundsArray, _safe_mul
from blockplan.back_end.pad_info import PadInfo

logger = logging.getLogger(__name__)


class PassThroughStyle(str, Enum):
    # filter 1 / bias 0, escaped through the activation (pointwise, depthwise)
    FILTER_ONE_BIAS_ZERO_WITH_ESCAPE = "filter_one_bias_zero_with_escape"
    # filter 0 / bias 1, constant one (squeeze-and-excitation)
    FILTER_ZERO_BIAS_ONE = "filter_zero_bias_one"


class OpKind(str, Enum):
    INPUT = "input"
    POINTWISE = "pointwise"
    DEPTHWISE_CONV = "depthwise_conv"
    AVG_POOL = "avg_pool"
    MAX_POOL = "max_pool"
    GLOBAL_AVG = "global_avg"
    CONCAT = "concat"
    SHUFFLE_SPLIT = "shuffle_split"
    ADD = "add"
    MULTIPLY = "multiply"


@dataclass(frozen=True, eq=False)
class StageBoundsSet:
    input: BoundsArray
    after_undo_previous_escape: BoundsArray
    after_filter: BoundsArray
    after_bias: BoundsArray
    after_escape: BoundsArray
    output: BoundsArray
    escape: ActivationEscapeSet
    pass_through: torch.Tensor
    height: int = 1
    width: int = 1
    activation: ActivationSpec = field(default_factory=lambda: get_activation(None))
    style: PassThroughStyle = PassThroughStyle.FILTER_ONE_BIAS_ZERO_WITH_ESCAPE

    def __post_init__(self) -> None:
        n = len(self.output)
        for name in ("after_filter", "after_bias", "after_escape"):
            if len(getattr(self, name)) != n:
                raise ValueError(f"StageBoundsSet.{name} length {len(getattr(self, name))} != output length {n}")
        if len(self.escape) != n:
            raise ValueError(f"StageBoundsSet.escape length {len(self.escape)} != output length {n}")
        object.__setattr__(self, "pass_through", as_flags(self.pass_through, n))

    @property
    def channel_count(self) -> int:
        return len(self.output)

    def undone_output(self) -> BoundsArray:
        """Output with this stage's escape undone (what the next stage filters)."""
        return self.escape.restore(self.output)

    def to_dict(self) -> dict:
        return {
            "channel_count": self.channel_count,
            "height": self.height,
            "width": self.width,
            "activation": self.activation.name,
            "style": self.style.value,
            "input": self.input.to_dict(),
            "after_undo_previous_escape": self.after_undo_previous_escape.to_dict(),
            "after_filter": self.after_filter.to_dict(),
            "after_bias": self.after_bias.to_dict(),
            "after_escape": self.after_escape.to_dict(),
            "output": self.output.to_dict(),
            "escape": self.escape.to_list(),
            "pass_through": self.pass_through.tolist(),
        }


def input_stage(bounds: BoundsArray, height: int = 1, width: int = 1) -> StageBoundsSet:
    """Wrap raw input bounds as an un-escaped stage."""
    n = len(bounds)
    return StageBoundsSet(
        input=bounds, after_undo_previous_escape=bounds, after_filter=bounds, after_bias=bounds,
        after_escape=bounds, output=bounds, escape=ActivationEscapeSet.identity(n),
        pass_through=torch.zeros(n, dtype=torch.bool), height=height, width=width,
    )


def _carry(inp: BoundsArray, out: BoundsArray, escape: ActivationEscapeSet, flags: torch.Tensor,
           height: int, width: int, restored: Optional[BoundsArray] = None) -> StageBoundsSet:
    return StageBoundsSet(
        input=inp, after_undo_previous_escape=restored if restored is not None else escape.restore(out),
        after_filter=out, after_bias=out, after_escape=out, output=out, escape=escape,
        pass_through=flags, height=height, width=width,
    )


# -------- Filters --------
@torch.no_grad()
def pointwise_after_filter(B: BoundsArray, W: torch.Tensor) -> BoundsArray:
    """Sign-aware bounds of ``W @ x`` for ``x`` in ``B``; ``W`` is (out, in)."""
    W = torch.as_tensor(W, dtype=DTYPE)
    if W.dim() != 2 or W.shape[1] != len(B):
        raise ChannelCountMismatch("pointwise filter input", expected=len(B), found=tuple(W.shape))
    W_pos, W_neg = torch.clamp(W, min=0), torch.clamp(W, max=0)
    lb = (_safe_mul(W_pos, B.lb.unsqueeze(0)) + _safe_mul(W_neg, B.ub.unsqueeze(0))).sum(dim=1)
    ub = (_safe_mul(W_pos, B.ub.unsqueeze(0)) + _safe_mul(W_neg, B.lb.unsqueeze(0))).sum(dim=1)
    return BoundsArray(lb, ub)


def _bounds_images(B: BoundsArray, height: int, width: int):
    if not B.is_finite():
        raise ValueError("per-pixel depthwise bounds require finite input bounds")
    lb = B.lb.view(1, -1, 1, 1).expand(1, len(B), height, width)
    ub = B.ub.view(1, -1, 1, 1).expand(1, len(B), height, width)
    return lb, ub


def _reduce_pixels(lb_img: torch.Tensor, ub_img: torch.Tensor) -> BoundsArray:
    return BoundsArray(lb_img.amin(dim=(0, 2, 3)), ub_img.amax(dim=(0, 2, 3)))


def depthwise_source(channels: int, multiplier: int) -> torch.Tensor:
    """Source channel of each output of a plain depthwise conv (``c * m + k`` reads ``c``)."""
    return torch.arange(channels).repeat_interleave(multiplier)


@torch.no_grad()
def depthwise_after_filter(
    B: BoundsArray,
    height: int,
    width: int,
    filters: torch.Tensor,
    info: PadInfo,
    source: Optional[torch.Tensor] = None,
) -> BoundsArray:
    """
    Per-pixel bounds of a depthwise convolution.

    ``filters`` is (out, fh, fw) and output channel ``o`` filters input
    channel ``source[o]``. Without ``source`` the plain channel-multiplier
    layout is assumed.
    """
    filters = torch.as_tensor(filters, dtype=DTYPE)
    C = len(B)
    if source is None:
        if filters.shape[0] % max(C, 1) != 0:
            raise ChannelCountMismatch("depthwise filters", expected=f"multiple of {C}", found=filters.shape[0])
        source = depthwise_source(C, filters.shape[0] // max(C, 1))
    source = torch.as_tensor(source, dtype=torch.long)
    if filters.shape != (source.numel(), info.filter_height, info.filter_width):
        raise ChannelCountMismatch(
            "depthwise filters",
            expected=(source.numel(), info.filter_height, info.filter_width),
            found=tuple(filters.shape),
        )
    n = source.numel()
    if n == 0:
        return BoundsArray(torch.zeros(0, dtype=DTYPE), torch.zeros(0, dtype=DTYPE))
    lb_img, ub_img = _bounds_images(B.permute(source), height, width)
    lb_img = F.pad(lb_img, info.padding(), value=0.0)
    ub_img = F.pad(ub_img, info.padding(), value=0.0)
    weight = filters.unsqueeze(1)
    weight_pos, weight_neg = torch.clamp(weight, min=0), torch.clamp(weight, max=0)
    s = info.strides
    lb = F.conv2d(lb_img, weight_pos, stride=s, groups=n) + F.conv2d(ub_img, weight_neg, stride=s, groups=n)
    ub = F.conv2d(ub_img, weight_pos, stride=s, groups=n) + F.conv2d(lb_img, weight_neg, stride=s, groups=n)
    return _reduce_pixels(lb, ub)


@torch.no_grad()
def avg_pool_after_filter(B: BoundsArray, height: int, width: int, info: PadInfo) -> BoundsArray:
    """Per-pixel average over the non-padding pixels of each window."""
    C = len(B)
    lb_img, ub_img = _bounds_images(B, height, width)
    ones = torch.ones((C, 1, info.filter_height, info.filter_width), dtype=DTYPE)
    s = info.strides
    lb_sum = F.conv2d(F.pad(lb_img, info.padding(), value=0.0), ones, stride=s, groups=C)
    ub_sum = F.conv2d(F.pad(ub_img, info.padding(), value=0.0), ones, stride=s, groups=C)
    valid = F.pad(torch.ones((1, 1, height, width), dtype=DTYPE), info.padding(), value=0.0)
    count = F.conv2d(valid, ones[:1], stride=s)
    return _reduce_pixels(lb_sum / count, ub_sum / count)


@torch.no_grad()
def max_pool_after_filter(B: BoundsArray, height: int, width: int, info: PadInfo) -> BoundsArray:
    """Per-pixel max over each window; padding never wins."""
    lb_img, ub_img = _bounds_images(B, height, width)
    k = (info.filter_height, info.filter_width)
    lb = F.max_pool2d(F.pad(lb_img, info.padding(), value=float("-inf")), k, stride=info.strides)
    ub = F.max_pool2d(F.pad(ub_img, info.padding(), value=float("-inf")), k, stride=info.strides)
    return _reduce_pixels(lb, ub)


# -------- Conv-bias-activation --------
def _activation_output(after_escape: BoundsArray, flags: torch.Tensor, act: ActivationSpec,
                       constant: torch.Tensor) -> BoundsArray:
    if act.is_none:
        return after_escape
    n = len(after_escape)
    linear = after_escape.clamp(BoundsArray.from_interval(n, act.output_range_linear))
    whole = after_escape.clamp(BoundsArray.from_interval(n, act.output_range))
    out = BoundsArray(torch.where(flags, linear.lb, whole.lb), torch.where(flags, linear.ub, whole.ub))
    if not bool(constant.any()):
        return out
    # constant channels are points, evaluated through the activation itself
    at_lb, at_ub = act(after_escape.lb), act(after_escape.ub)
    lo, hi = torch.minimum(at_lb, at_ub), torch.maximum(at_lb, at_ub)
    return BoundsArray(torch.where(constant, lo, out.lb), torch.where(constant, hi, out.ub))


@torch.no_grad()
def conv_bias_activation(
    prev: StageBoundsSet,
    *,
    op_kind: OpKind,
    pass_through,
    activation: ActivationLike = None,
    filters: Optional[torch.Tensor] = None,
    bias: Optional[torch.Tensor] = None,
    pad_info: Optional[PadInfo] = None,
    source: Optional[torch.Tensor] = None,
    style: PassThroughStyle = PassThroughStyle.FILTER_ONE_BIAS_ZERO_WITH_ESCAPE,
) -> StageBoundsSet:
    """
    Propagate bounds through one filter + bias + activation stage.

    The previous stage's escape is undone first; the activation escape of
    this stage is then computed from ``after_bias`` and ``pass_through``.
    """
    act = get_activation(activation)
    before = prev.undone_output()
    height, width = prev.height, prev.width

    if op_kind is OpKind.POINTWISE:
        after_filter = pointwise_after_filter(before, filters)
    elif op_kind in (OpKind.DEPTHWISE_CONV, OpKind.AVG_POOL, OpKind.MAX_POOL):
        if pad_info is None:
            raise ValueError(f"{op_kind.value} stage requires pad_info")
        if op_kind is OpKind.DEPTHWISE_CONV:
            after_filter = depthwise_after_filter(before, height, width, filters, pad_info, source)
        elif op_kind is OpKind.AVG_POOL:
            after_filter = avg_pool_after_filter(before, height, width, pad_info)
        else:
            after_filter = max_pool_after_filter(before, height, width, pad_info)
        height, width = pad_info.output_height, pad_info.output_width
    else:
        raise ValueError(f"conv_bias_activation does not handle op kind {op_kind.value!r}")

    n = len(after_filter)
    after_bias = after_filter.shift(bias) if bias is not None else after_filter
    flags = as_flags(pass_through, n)
    if style is PassThroughStyle.FILTER_ZERO_BIAS_ONE:
        constant = flags
        escape = ActivationEscapeSet.constant(after_bias, flags, act)
    else:
        constant = torch.zeros(n, dtype=torch.bool)
        escape = ActivationEscapeSet.compute(after_bias, flags, act)
    after_escape = escape.apply(after_bias)
    output = _activation_output(after_escape, flags & ~constant, act, constant)
    logger.debug("%s: %d -> %d channels, act=%s", op_kind.value, len(before), n, act.name)
    return StageBoundsSet(
        input=prev.output, after_undo_previous_escape=before, after_filter=after_filter,
        after_bias=after_bias, after_escape=after_escape, output=output, escape=escape,
        pass_through=flags, height=height, width=width, activation=act, style=style,
    )


# -------- Carry stages --------
def concat(parts: Sequence[StageBoundsSet]) -> StageBoundsSet:
    """Channel concatenation; escapes and flags travel with their channels."""
    h, w = parts[0].height, parts[0].width
    for p in parts[1:]:
        if (p.height, p.width) != (h, w):
            raise ChannelCountMismatch("concat height/width", expected=(h, w), found=(p.height, p.width))
    out = BoundsArray.cat([p.output for p in parts])
    return _carry(out, out, ActivationEscapeSet.cat([p.escape for p in parts]),
                  torch.cat([p.pass_through for p in parts]), h, w)


def interleave_group_two(n: int) -> torch.Tensor:
    """Permutation ``perm`` such that ``new = old[perm]`` interleaves two halves."""
    if n % 2 != 0:
        raise ChannelCountMismatch("channel shuffle needs an even channel count", expected="even", found=n)
    return torch.arange(n).view(2, n // 2).t().reshape(-1)


def shuffle_split(stage: StageBoundsSet, *, shuffle: bool = True, split: bool = True) -> List[StageBoundsSet]:
    """Optionally interleave channels as group two, then optionally split in halves."""
    out, esc, flags = stage.output, stage.escape, stage.pass_through
    if shuffle:
        perm = interleave_group_two(len(out))
        out, esc, flags = out.permute(perm), esc.permute(perm), flags[perm]
    if not split:
        return [_carry(stage.output, out, esc, flags, stage.height, stage.width)]
    n = len(out)
    if n % 2 != 0:
        raise ChannelCountMismatch("split needs an even channel count", expected="even", found=n)
    half = n // 2
    return [
        _carry(stage.output, out[:half], esc[:half], flags[:half], stage.height, stage.width),
        _carry(stage.output, out[half:], esc[half:], flags[half:], stage.height, stage.width),
    ]


def global_average(stage: StageBoundsSet) -> StageBoundsSet:
    """Squeeze: the mean of a channel stays inside that channel's bounds."""
    return _carry(stage.output, stage.output, stage.escape, stage.pass_through, 1, 1)


# -------- Combining stages --------
def add(a: StageBoundsSet, b: StageBoundsSet) -> StageBoundsSet:
    if a.channel_count != b.channel_count:
        raise ChannelCountMismatch("add inputs", expected=a.channel_count, found=b.channel_count)
    total = a.undone_output().add(b.undone_output())
    n = len(total)
    return _carry(a.output, total, ActivationEscapeSet.identity(n), torch.zeros(n, dtype=torch.bool),
                  a.height, a.width, restored=total)


def multiply(data: StageBoundsSet, excitation: StageBoundsSet) -> StageBoundsSet:
    """
    Excitation multiply. Channels whose excitation is exactly one keep the
    data channel's escape and flag; others are un-escaped and multiplied.
    """
    if data.channel_count != excitation.channel_count:
        raise ChannelCountMismatch("multiply inputs", expected=data.channel_count, found=excitation.channel_count)
    n = data.channel_count
    exc = excitation.undone_output()
    keep = (exc.lb == 1.0) & (exc.ub == 1.0)
    product = data.undone_output().multiply(exc)
    out = BoundsArray(torch.where(keep, data.output.lb, product.lb), torch.where(keep, data.output.ub, product.ub))
    escape = data.escape.where(keep, ActivationEscapeSet.identity(n))
    flags = data.pass_through & keep
    return _carry(data.output, out, escape, flags, data.height, data.width)
