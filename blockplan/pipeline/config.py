#!/usr/bin/env python3
#===- blockplan/pipeline/config.py - Planner Configuration -------------====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#
#
# Purpose:
#   YAML configuration for the planner CLI: block parameters, input value
#   range, weight source and sampler choices. A missing file or section
#   falls back to _DEFAULT_CONFIG.
#
#===---------------------------------------------------------------------===#

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from blockplan.back_end.interval import BoundsArray
from blockplan.pipeline.params import BlockParams

_DEFAULT_CONFIG: Dict[str, Any] = {
    "block": {
        "input0_channels": 4,
        "block_type_id": 0,
        "pointwise20_channels": 4,
        "pointwise1_channels": 8,
        "input0_height": 5,
        "input0_width": 5,
        "depthwise_op": 1,
        "depthwise_filter_height": 3,
        "depthwise_filter_width": 3,
        "depthwise_strides_pad": 1,
        "depthwise_activation": "relu6",
        "pointwise20_activation": "none",
        "activation": "relu6",
    },
    "input": {
        "low": -1.0,
        "high": 1.0,
    },
    "weights": {
        "source": "random",
        "seed": 0,
        "low": -0.5,
        "high": 0.5,
    },
    "sampler": {
        "num_instances": 8,
        "base_seed": 0,
        "block_type_ids": list(range(12)),
        "channels": [1, 8],
        "spatial": [1, 6],
        "depthwise_ops": [-2, -1, 0, 1, 2],
        "filter_sizes": [1, 3],
        "strides_pad_ids": [0, 1, 2, 3],
        "activations": ["none", "clip_n2_p2", "clip_n3_p3", "tanh", "sin", "relu6", "relu"],
        "squeeze_excitation_divisors": [-2, -1, 0, 2],
        "soundness_samples": 16,
    },
    "planner": {
        "check_invariants": True,
        "atol": 1e-9,
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def default_config() -> Dict[str, Any]:
    return copy.deepcopy(_DEFAULT_CONFIG)


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Read a YAML config and merge it onto the defaults."""
    data: Dict[str, Any] = {}
    if path:
        cfg_path = Path(path)
        if cfg_path.exists():
            data = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"config {path} must hold a mapping, got {type(data).__name__}")
    return _deep_merge(_DEFAULT_CONFIG, data)


def block_params_from_config(cfg: Dict[str, Any]) -> BlockParams:
    return BlockParams.from_dict(dict(cfg.get("block", {})))


def input_bounds_from_config(cfg: Dict[str, Any], channels: int) -> BoundsArray:
    section = cfg.get("input", {})
    return BoundsArray.full(channels, float(section.get("low", -1.0)), float(section.get("high", 1.0)))
