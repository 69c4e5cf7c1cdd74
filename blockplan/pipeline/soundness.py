#!/usr/bin/env python3
#===- blockplan/pipeline/soundness.py - Plan Invariants & Soundness ----====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#
#
# Purpose:
#   Checks run over a finalized block plan.
#   - check_stage_invariants / check_plan_invariants: escape invertibility,
#     identity escapes on ordinary channels, linear-domain containment of
#     escaped channels, half-split and elision consistency
#   - sample_stage_soundness: draw concrete inputs inside a stage's input
#     bounds, run its filter/bias/escape with torch and compare the results
#     per channel against the propagated bounds
#
#===---------------------------------------------------------------------===#

from __future__ import annotations

from typing import Any, Dict, List, Optional

import torch
import torch.nn.functional as F

from blockplan.back_end.interval import DTYPE, BoundsArray
from blockplan.back_end.pad_info import DEPTHWISE_NONE
from blockplan.back_end.stage_bounds import OpKind, PassThroughStyle, StageBoundsSet
from blockplan.pipeline.topology import BlockPlan, StageDescriptor


def _result(errors: List[str], violations: List[Dict[str, Any]], **extra: Any) -> Dict[str, Any]:
    status = "ERROR" if errors else ("FAIL" if violations else "PASS")
    out = {"status": status, "violations": violations, "errors": errors}
    out.update(extra)
    return out


def check_stage_invariants(stage: StageBoundsSet, *, name: str = "", atol: float = 1e-9) -> Dict[str, Any]:
    """Escape invariants of one stage; returns a PASS/FAIL/ERROR report."""
    errors: List[str] = []
    violations: List[Dict[str, Any]] = []
    do, undo = stage.escape.do, stage.escape.undo
    flags = stage.pass_through

    for field_name in ("after_filter", "after_bias", "after_escape", "output"):
        b = getattr(stage, field_name)
        if bool(torch.isnan(b.lb).any() or torch.isnan(b.ub).any()):
            errors.append(f"{name}: NaN in {field_name}")
    if errors:
        return _result(errors, violations, stage=name)

    # exact inverse
    prod = do.scale * undo.scale
    bad = ~torch.isclose(prod, torch.ones_like(prod), atol=atol, rtol=0.0)
    for c in torch.nonzero(bad, as_tuple=True)[0].tolist():
        violations.append({"stage": name, "channel": c, "check": "inverse_scale", "value": float(prod[c])})
    finite = torch.isfinite(stage.after_bias.lb) & torch.isfinite(stage.after_bias.ub)
    if bool(finite.any()):
        round_trip = undo.apply(do.apply(stage.after_bias))
        ok = torch.isclose(round_trip.lb, stage.after_bias.lb, atol=atol, rtol=1e-12) & \
            torch.isclose(round_trip.ub, stage.after_bias.ub, atol=atol, rtol=1e-12)
        for c in torch.nonzero(finite & ~ok, as_tuple=True)[0].tolist():
            violations.append({"stage": name, "channel": c, "check": "round_trip"})

    # ordinary channels keep the identity
    ident = stage.escape.is_identity()
    for c in torch.nonzero(~flags & ~ident, as_tuple=True)[0].tolist():
        violations.append({"stage": name, "channel": c, "check": "identity_when_not_pass_through"})

    # escaped channels sit in the linear domain
    if not stage.activation.is_none and stage.style is PassThroughStyle.FILTER_ONE_BIAS_ZERO_WITH_ESCAPE:
        dom = stage.activation.linear_domain
        inside = (stage.after_escape.lb >= dom.lower - atol) & (stage.after_escape.ub <= dom.upper + atol)
        scale_ok = torch.isfinite(do.scale) & (do.scale != 0)
        for c in torch.nonzero(flags & ~(inside & scale_ok), as_tuple=True)[0].tolist():
            violations.append({
                "stage": name, "channel": c, "check": "linear_domain",
                "after_escape": [float(stage.after_escape.lb[c]), float(stage.after_escape.ub[c])],
                "linear_domain": dom.to_list(),
            })
    return _result(errors, violations, stage=name)


def check_plan_invariants(plan: BlockPlan, *, atol: float = 1e-9) -> Dict[str, Any]:
    """All stage invariants plus half-split, elision and weight-count consistency."""
    errors: List[str] = []
    violations: List[Dict[str, Any]] = []
    stage_reports: List[Dict[str, Any]] = []
    part = plan.partition

    for desc in plan.stages:
        rep = check_stage_invariants(desc.bounds, name=desc.name, atol=atol)
        stage_reports.append({"stage": desc.name, "status": rep["status"]})
        violations.extend(rep["violations"])
        errors.extend(rep["errors"])

    if part.lower_half_len + part.higher_half_len != part.total_channels:
        violations.append({"check": "half_split", "lower": part.lower_half_len,
                           "higher": part.higher_half_len, "total": part.total_channels})

    p = part.params
    if not part.needs.depthwise and p.depthwise_op != DEPTHWISE_NONE and part.has_stage("depthwise1"):
        violations.append({"check": "elision", "detail": "depthwise1 emitted although elided"})
    if part.needs.depthwise and not part.has_stage("depthwise1"):
        violations.append({"check": "elision", "detail": "depthwise1 needed but missing"})

    if plan.weights_consumed != part.weight_count:
        violations.append({"check": "weight_count", "consumed": plan.weights_consumed, "expected": part.weight_count})
    if plan.step_count != len(plan.stages):
        violations.append({"check": "step_count", "step_count": plan.step_count, "stages": len(plan.stages)})
    return _result(errors, violations, stages=stage_reports, block_type=part.block_type.name)


# -------- Sampled concrete check --------
def compare_bounds_per_channel(
    *,
    bounds_by_name: Dict[str, BoundsArray],
    concrete_by_name: Dict[str, torch.Tensor],
    atol: float = 1e-9,
    topk: int = 10,
) -> Dict[str, Any]:
    """
    Compare concrete (N, C, ...) tensors against per-channel bounds.
    """
    errors: List[str] = []
    violations_topk: List[Dict[str, Any]] = []
    stats: List[Dict[str, Any]] = []
    violations_total = 0

    if set(bounds_by_name) != set(concrete_by_name):
        missing = set(bounds_by_name) - set(concrete_by_name)
        extra = set(concrete_by_name) - set(bounds_by_name)
        errors.append(f"Key mismatch: missing={sorted(missing)} extra={sorted(extra)}")
        return {"status": "ERROR", "violations_total": 0, "violations_topk": [], "stats": [], "errors": errors}

    candidates: List[Dict[str, Any]] = []
    for key, bounds in bounds_by_name.items():
        concrete = concrete_by_name[key]
        if concrete.shape[1] != len(bounds):
            errors.append(f"Channel mismatch at {key}: concrete={concrete.shape[1]} bounds={len(bounds)}")
            continue
        per_channel = concrete.transpose(0, 1).reshape(len(bounds), -1)
        if not bool(torch.isfinite(per_channel).all()):
            errors.append(f"Non-finite concrete value at {key}")
            continue
        lb, ub = bounds.lb.unsqueeze(1), bounds.ub.unsqueeze(1)
        gap = torch.clamp(torch.maximum((lb - atol) - per_channel, per_channel - (ub + atol)), min=0.0)
        worst = gap.amax(dim=1) if gap.numel() > 0 else torch.zeros(len(bounds), dtype=DTYPE)
        num = int((gap > 0).sum().item())
        violations_total += num
        stats.append({"name": key, "channels": len(bounds), "num_violations": num,
                      "max_gap": float(worst.max().item()) if worst.numel() > 0 else 0.0,
                      "status": "FAIL" if num > 0 else "PASS"})
        for c in torch.nonzero(worst > 0, as_tuple=True)[0].tolist():
            candidates.append({"name": key, "channel": c, "gap": float(worst[c]),
                               "lb": float(bounds.lb[c]), "ub": float(bounds.ub[c])})

    candidates.sort(key=lambda d: d["gap"], reverse=True)
    violations_topk = candidates[: max(0, int(topk))]
    status = "ERROR" if errors else ("FAIL" if violations_total > 0 else "PASS")
    return {"status": status, "violations_total": violations_total, "violations_topk": violations_topk,
            "stats": stats, "errors": errors}


def _sample_inside(bounds: BoundsArray, shape, generator: Optional[torch.Generator]) -> torch.Tensor:
    n = shape[0]
    u = torch.rand((n, len(bounds)) + tuple(shape[1:]), dtype=DTYPE, generator=generator)
    view = (1, len(bounds)) + (1,) * len(shape[1:])
    lb, ub = bounds.lb.view(view), bounds.ub.view(view)
    x = lb + u * (ub - lb)
    # corners too
    x[0] = lb[0].expand_as(x[0])
    if n > 1:
        x[1] = ub[0].expand_as(x[1])
    return x


@torch.no_grad()
def sample_stage_soundness(
    desc: StageDescriptor,
    *,
    num_samples: int = 32,
    generator: Optional[torch.Generator] = None,
    atol: float = 1e-6,
) -> Dict[str, Any]:
    """Run a filter stage on sampled inputs and compare against its bounds."""
    if desc.op_kind not in (OpKind.POINTWISE, OpKind.DEPTHWISE_CONV, OpKind.AVG_POOL, OpKind.MAX_POOL):
        return {"status": "SKIPPED", "stage": desc.name, "reason": f"{desc.op_kind.value} has no filter"}
    before = desc.bounds.after_undo_previous_escape
    if not before.is_finite():
        return {"status": "SKIPPED", "stage": desc.name, "reason": "non-finite input bounds"}

    n = max(2, int(num_samples))
    if desc.op_kind is OpKind.POINTWISE:
        x = _sample_inside(before, (n, 1, 1), generator)
        after_filter = torch.einsum("oi,nihw->nohw", desc.filters, x)
    else:
        info = desc.layout.pad_info
        x = _sample_inside(before, (n, info.input_height, info.input_width), generator)
        s = info.strides
        if desc.op_kind is OpKind.DEPTHWISE_CONV:
            xs = F.pad(x[:, desc.source], info.padding(), value=0.0)
            after_filter = F.conv2d(xs, desc.filters.unsqueeze(1), stride=s, groups=int(desc.source.numel()))
        elif desc.op_kind is OpKind.AVG_POOL:
            C = len(before)
            ones = torch.ones((C, 1, info.filter_height, info.filter_width), dtype=DTYPE)
            total = F.conv2d(F.pad(x, info.padding(), value=0.0), ones, stride=s, groups=C)
            valid = F.pad(torch.ones((1, 1, info.input_height, info.input_width), dtype=DTYPE),
                          info.padding(), value=0.0)
            after_filter = total / F.conv2d(valid, ones[:1], stride=s)
        else:
            after_filter = F.max_pool2d(F.pad(x, info.padding(), value=float("-inf")),
                                        (info.filter_height, info.filter_width), stride=s)

    after_bias = after_filter
    if desc.bias is not None:
        after_bias = after_filter + desc.bias.view(1, -1, 1, 1)
    after_escape = desc.escape.do.apply_tensor(after_bias, channel_dim=1)

    b = desc.bounds
    # output is checked on ordinary and constant channels; escaped ones are
    # covered by the linear_domain invariant
    checked = ~b.pass_through
    if b.style is PassThroughStyle.FILTER_ZERO_BIAS_ONE:
        checked = checked | b.pass_through
    idx = torch.nonzero(checked, as_tuple=True)[0]
    output = b.activation(after_escape[:, idx])
    rep = compare_bounds_per_channel(
        bounds_by_name={"after_filter": b.after_filter, "after_bias": b.after_bias, "after_escape": b.after_escape,
                        "output": b.output[idx]},
        concrete_by_name={"after_filter": after_filter, "after_bias": after_bias, "after_escape": after_escape,
                          "output": output},
        atol=atol,
    )
    rep["stage"] = desc.name
    return rep


def sample_plan_soundness(
    plan: BlockPlan,
    *,
    num_samples: int = 32,
    seed: int = 0,
    atol: float = 1e-6,
) -> Dict[str, Any]:
    """Sampled soundness over every filter stage of a plan."""
    g = torch.Generator().manual_seed(int(seed))
    reports = [sample_stage_soundness(d, num_samples=num_samples, generator=g, atol=atol) for d in plan.stages]
    statuses = {r["status"] for r in reports}
    status = "ERROR" if "ERROR" in statuses else ("FAIL" if "FAIL" in statuses else "PASS")
    return {
        "status": status,
        "violations_total": sum(int(r.get("violations_total", 0)) for r in reports),
        "stages": reports,
    }
