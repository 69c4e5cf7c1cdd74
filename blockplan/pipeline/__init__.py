from __future__ import annotations

#===- blockplan/pipeline/__init__.py - Block Planner Pipeline ----------====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#
#
# Purpose:
#   Lightweight package init for the block planner. Exposes key classes
#   lazily so argument parsing does not import torch.
#===---------------------------------------------------------------------===#

import importlib
from typing import Any

__all__ = [
    "BlockType",
    "BlockTypeInfo",
    "BlockParams",
    "ChannelPartitionPlan",
    "PlannerState",
    "derive_partition_plan",
    "BlockTopologyPlanner",
    "BlockPlan",
    "StageDescriptor",
    "plan_block",
    "check_plan_invariants",
    "sample_plan_soundness",
    "load_config",
]

_lazy = {
    "BlockType": "blockplan.pipeline.block_types",
    "BlockTypeInfo": "blockplan.pipeline.block_types",
    "BlockParams": "blockplan.pipeline.params",
    "ChannelPartitionPlan": "blockplan.pipeline.partition",
    "PlannerState": "blockplan.pipeline.partition",
    "derive_partition_plan": "blockplan.pipeline.partition",
    "BlockTopologyPlanner": "blockplan.pipeline.topology",
    "BlockPlan": "blockplan.pipeline.topology",
    "StageDescriptor": "blockplan.pipeline.topology",
    "plan_block": "blockplan.pipeline.topology",
    "check_plan_invariants": "blockplan.pipeline.soundness",
    "sample_plan_soundness": "blockplan.pipeline.soundness",
    "load_config": "blockplan.pipeline.config",
}


def __getattr__(name: str) -> Any:
    if name in _lazy:
        module = importlib.import_module(_lazy[name])
        if hasattr(module, name):
            return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
