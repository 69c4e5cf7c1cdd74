#!/usr/bin/env python3
#===- blockplan/pipeline/cli.py - Block Planner CLI --------------------====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#
#
# Purpose:
#   Command-line driver: plan one configured block, print the partition
#   table of all block types, or sample and check random blocks.
#
#===---------------------------------------------------------------------===#

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

from blockplan.back_end.errors import BlockPlanError
from blockplan.pipeline.block_types import BlockType
from blockplan.pipeline.config import block_params_from_config, load_config
from blockplan.pipeline.jsonl import make_record, summarize_records, write_jsonl_records
from blockplan.pipeline.partition import ChannelPartitionPlan
from blockplan.pipeline.sampler import run_block, sample_instances
from blockplan.pipeline.utils_seed_logging import init_logging

logger = logging.getLogger(__name__)


def _write_json(path: Optional[str], payload: Any) -> None:
    if not path:
        return
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=True, indent=2)


def _partition_row(bt: BlockType, c: int, p1: int, p20: int) -> Dict[str, Any]:
    try:
        part = ChannelPartitionPlan.derive(int(bt), c, p1, p20)
    except BlockPlanError as e:
        return {"block_type": bt.name, "id": int(bt), "error": str(e)}
    return {
        "block_type": bt.name,
        "id": int(bt),
        "total": part.total_channels,
        "lower": part.lower_half_len,
        "higher": part.higher_half_len,
        "outputs": [part.output0_channels, part.output1_channels],
        "weights": part.weight_count,
        "needs": asdict(part.needs),
    }


def _print_table(rows: List[Dict[str, Any]]) -> None:
    for row in rows:
        if "error" in row:
            print(f"{row['id']:>2} {row['block_type']:<48} ERROR {row['error']}")
            continue
        needs = ",".join(k for k, v in row["needs"].items() if v) or "-"
        print(f"{row['id']:>2} {row['block_type']:<48} total={row['total']:<3} lower={row['lower']:<3} "
              f"higher={row['higher']:<3} out={row['outputs']} weights={row['weights']:<5} needs={needs}")


def main(argv: Optional[List[str]] = None) -> int:
    p = argparse.ArgumentParser(prog="blockplan", description="Conv block topology planner")
    p.add_argument("--log-level", type=str, default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = p.add_subparsers(dest="cmd", required=True)

    p_plan = sub.add_parser("plan", help="plan the block described by a YAML config")
    p_plan.add_argument("--config", type=str, default=None)
    p_plan.add_argument("--weights", type=str, default=None, choices=["random", "zeros"])
    p_plan.add_argument("--seed", type=int, default=None)
    p_plan.add_argument("--soundness-samples", type=int, default=0)
    p_plan.add_argument("--include-bounds", action="store_true")
    p_plan.add_argument("--out_json", type=str, default=None)

    p_table = sub.add_parser("table", help="print the partition flags of every block type")
    p_table.add_argument("--input-channels", type=int, default=4)
    p_table.add_argument("--pointwise1", type=int, default=4)
    p_table.add_argument("--pointwise20", type=int, default=4)
    p_table.add_argument("--out_json", type=str, default=None)

    p_sample = sub.add_parser("sample", help="plan and check random blocks")
    p_sample.add_argument("--config", type=str, default=None)
    p_sample.add_argument("--num", type=int, default=None)
    p_sample.add_argument("--seed", type=int, default=None)
    p_sample.add_argument("--soundness-samples", type=int, default=None)
    p_sample.add_argument("--out_jsonl", type=str, default=None)

    args = p.parse_args(argv)
    init_logging(getattr(logging, args.log_level))

    if args.cmd == "table":
        rows = [_partition_row(bt, args.input_channels, args.pointwise1, args.pointwise20) for bt in BlockType]
        _print_table(rows)
        _write_json(args.out_json, rows)
        return 1 if any("error" in r for r in rows) else 0

    if args.cmd == "plan":
        try:
            cfg = load_config(args.config)
            if args.weights is not None:
                cfg["weights"]["source"] = args.weights
            if args.seed is not None:
                cfg["weights"]["seed"] = args.seed
            params = block_params_from_config(cfg)
            rec = run_block(params, cfg, soundness_samples=args.soundness_samples)
        except (BlockPlanError, ValueError) as e:
            logger.error("plan failed: %s", e)
            return 1
        plan = rec.pop("plan", None)
        if plan is not None:
            for s in plan.stages:
                print(f"{s.name:<40} {s.op_kind.value:<16} ch={s.output_channel_count:<4} "
                      f"hw={s.bounds.height}x{s.bounds.width} weights=[{s.weight_offset_begin}, {s.weight_offset_end})")
            rec["plan"] = plan.to_dict(include_bounds=args.include_bounds)
        print(f"status: {rec['status']}")
        _write_json(args.out_json, rec)
        return 0 if rec["status"] == "PASS" else 1

    if args.cmd == "sample":
        try:
            cfg = load_config(args.config)
        except ValueError as e:
            logger.error("sample failed: %s", e)
            return 1
        if args.seed is not None:
            cfg["sampler"]["base_seed"] = args.seed
        if args.soundness_samples is not None:
            cfg["sampler"]["soundness_samples"] = args.soundness_samples
        records = [make_record(r) for r in sample_instances(cfg, args.num)]
        if args.out_jsonl:
            write_jsonl_records(args.out_jsonl, records)
        summary = summarize_records(records)
        print(json.dumps(summary, sort_keys=True))
        return 0 if summary["by_status"].get("PASS", 0) == summary["records"] else 1

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
