#!/usr/bin/env python3
#===- blockplan/pipeline/sampler.py - Random Block Sampler -------------====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#
#
# Purpose:
#   Draw random valid block parameters and weights, plan them, and turn the
#   outcome into an audit record.
#
#   This module:
#     - DOES: sample BlockParams, random weights, run planner + checks
#     - DOES NOT: write files (see jsonl.py / cli.py)
#
# Reproducibility:
#   Per-instance RNG is derived from (base_seed, idx, "block") using seeds.py
#
#===---------------------------------------------------------------------===#

from __future__ import annotations

import logging
import random
from typing import Any, Dict, Optional, Sequence, Tuple

import torch

from blockplan.back_end.errors import BlockPlanError
from blockplan.back_end.interval import DTYPE, BoundsArray
from blockplan.pipeline.block_types import BlockType
from blockplan.pipeline.config import input_bounds_from_config
from blockplan.pipeline.params import BlockParams
from blockplan.pipeline.partition import derive_partition_plan
from blockplan.pipeline.seeds import derive_seed
from blockplan.pipeline.soundness import check_plan_invariants, sample_plan_soundness
from blockplan.pipeline.topology import BlockTopologyPlanner

logger = logging.getLogger(__name__)


# -----------------------------
# Helpers
# -----------------------------

def _randint_inclusive(rng: random.Random, lo_hi: Sequence[int]) -> int:
    lo, hi = int(lo_hi[0]), int(lo_hi[1])
    if hi < lo:
        lo, hi = hi, lo
    return rng.randint(lo, hi)


def _choose(rng: random.Random, items: Sequence[Any], *, name: str) -> Any:
    if not items:
        raise ValueError(f"sampler.{name} must be non-empty")
    return rng.choice(list(items))


def _channel_counts(rng: random.Random, bt: BlockType, lo_hi: Sequence[int]) -> Tuple[int, int, int]:
    """(input0, pointwise1, pointwise20) channel counts valid for the block type."""
    lo, hi = max(1, int(lo_hi[0])), max(2, int(lo_hi[1]))
    if bt is BlockType.SHUFFLE_NET_V2_BY_MOBILE_NET_V1_HEAD:
        c = rng.randint(lo, hi)
        p1 = rng.choice([0, rng.randint(1, hi)])
        p20 = 2 * rng.randint(1, max(1, hi // 2))
        return c, p1, p20
    if bt in (BlockType.SHUFFLE_NET_V2_BY_MOBILE_NET_V1_BODY, BlockType.SHUFFLE_NET_V2_BY_MOBILE_NET_V1_TAIL):
        c = rng.randint(max(2, lo), hi)
        higher = c // 2
        p1 = rng.choice([0, rng.randint(higher + 1, hi + higher)])
        if bt is BlockType.SHUFFLE_NET_V2_BY_MOBILE_NET_V1_BODY:
            # shuffled output needs equal halves
            p20 = 2 * higher
        else:
            p20 = rng.randint(higher + 1, hi + higher)
        return c, p1, p20
    return rng.randint(lo, hi), rng.randint(0, hi), rng.randint(lo, hi)


# -----------------------------
# Public API
# -----------------------------

def sample_block_params(cfg: Dict[str, Any], idx: int) -> BlockParams:
    """Draw one valid BlockParams from the ``sampler`` section of ``cfg``."""
    sc = cfg["sampler"]
    seed = derive_seed(int(sc.get("base_seed", 0)), int(idx), "block")
    rng = random.Random(seed)

    bt = BlockType(int(_choose(rng, sc["block_type_ids"], name="block_type_ids")))
    c, p1, p20 = _channel_counts(rng, bt, sc["channels"])
    h = _randint_inclusive(rng, sc["spatial"])
    w = _randint_inclusive(rng, sc["spatial"])
    op = int(_choose(rng, sc["depthwise_ops"], name="depthwise_ops"))
    fh = min(int(_choose(rng, sc["filter_sizes"], name="filter_sizes")), h)
    fw = min(int(_choose(rng, sc["filter_sizes"], name="filter_sizes")), w)
    acts = sc["activations"]

    return BlockParams(
        input0_channels=c,
        block_type_id=int(bt),
        pointwise20_channels=p20,
        pointwise1_channels=p1,
        input0_height=h,
        input0_width=w,
        depthwise_op=op,
        depthwise_filter_height=fh,
        depthwise_filter_width=fw,
        depthwise_strides_pad=int(_choose(rng, sc["strides_pad_ids"], name="strides_pad_ids")),
        depthwise_activation=_choose(rng, acts, name="activations"),
        pointwise20_activation=_choose(rng, acts, name="activations"),
        activation=_choose(rng, acts, name="activations"),
        squeeze_excitation_divisor=int(_choose(rng, sc["squeeze_excitation_divisors"],
                                               name="squeeze_excitation_divisors")),
        squeeze_excitation_prefix=rng.random() < 0.5,
    )


def random_weights(count: int, seed: int, low: float = -0.5, high: float = 0.5) -> torch.Tensor:
    """Uniform float64 weights in [low, high)."""
    g = torch.Generator().manual_seed(int(seed))
    return torch.rand(int(count), generator=g, dtype=DTYPE) * (float(high) - float(low)) + float(low)


def make_weights(cfg: Dict[str, Any], count: int, seed: Optional[int] = None) -> torch.Tensor:
    wc = cfg["weights"]
    source = str(wc.get("source", "random")).lower()
    if source == "zeros":
        return torch.zeros(int(count), dtype=DTYPE)
    if source != "random":
        raise ValueError(f"Unsupported weight source: {source!r} (expected 'random' or 'zeros')")
    return random_weights(count, int(wc.get("seed", 0)) if seed is None else seed,
                          float(wc.get("low", -0.5)), float(wc.get("high", 0.5)))


def run_block(
    params: BlockParams,
    cfg: Dict[str, Any],
    *,
    weight_seed: Optional[int] = None,
    soundness_samples: int = 0,
) -> Dict[str, Any]:
    """
    Plan one block and check it.

    Returns a record with ``status`` PASS/FAIL/ERROR, the params, the
    invariant report and (when ``soundness_samples`` > 0) the sampled report.
    Planning errors become ERROR records; the ``plan`` key holds the
    BlockPlan on success.
    """
    rec: Dict[str, Any] = {
        "params": params.to_dict(),
        "block_type": params.block_type.name,
    }
    try:
        part = derive_partition_plan(params)
        weights = make_weights(cfg, part.weight_count, weight_seed)
        input0 = input_bounds_from_config(cfg, part.input0_channels)
        input1: Optional[BoundsArray] = None
        if part.input1_channels > 0:
            input1 = input_bounds_from_config(cfg, part.input1_channels)
        plan = BlockTopologyPlanner(part).plan(weights, input0, input1)
    except BlockPlanError as e:
        logger.warning("block %s: %s", params.block_type.name, e)
        rec.update(status="ERROR", error=e.to_dict())
        return rec

    rec.update(
        weight_count=part.weight_count,
        step_count=plan.step_count,
        stages=[s.name for s in plan.stages],
        notes=list(part.notes),
    )
    pc = cfg.get("planner", {})
    statuses = []
    if pc.get("check_invariants", True):
        inv = check_plan_invariants(plan, atol=float(pc.get("atol", 1e-9)))
        rec["invariants"] = {"status": inv["status"], "violations": inv["violations"], "errors": inv["errors"]}
        statuses.append(inv["status"])
    if soundness_samples > 0:
        snd = sample_plan_soundness(plan, num_samples=soundness_samples,
                                    seed=weight_seed if weight_seed is not None else 0)
        rec["soundness"] = {"status": snd["status"], "violations_total": snd["violations_total"]}
        statuses.append(snd["status"])
    rec["status"] = "ERROR" if "ERROR" in statuses else ("FAIL" if "FAIL" in statuses else "PASS")
    rec["plan"] = plan
    return rec


def sample_instances(cfg: Dict[str, Any], num: Optional[int] = None) -> list:
    """Sample, plan and check ``num`` blocks; records are JSON-ready."""
    sc = cfg["sampler"]
    n = int(sc.get("num_instances", 8) if num is None else num)
    k = int(sc.get("soundness_samples", 0))
    out = []
    for idx in range(n):
        params = sample_block_params(cfg, idx)
        rec = run_block(params, cfg, weight_seed=derive_seed(int(sc.get("base_seed", 0)), idx, "weights"),
                        soundness_samples=k)
        rec.pop("plan", None)
        rec["idx"] = idx
        out.append(rec)
        logger.debug("instance %d (%s): %s", idx, rec["block_type"], rec["status"])
    return out
