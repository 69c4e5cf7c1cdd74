#!/usr/bin/env python3
#===- blockplan/pipeline/jsonl.py - Plan Audit Records -----------------====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#
#
# Purpose:
#   Canonical hashing and JSONL persistence for sampled block plans.
#
#===---------------------------------------------------------------------===#

from __future__ import annotations

import hashlib
import json
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set

_VOLATILE_KEYS = {"timestamp", "timing"}


def _canonical_dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def _strip_keys(obj: Any, ignore_keys: Set[str]) -> Any:
    if isinstance(obj, dict):
        return {k: _strip_keys(v, ignore_keys) for k, v in obj.items() if k not in ignore_keys}
    if isinstance(obj, list):
        return [_strip_keys(v, ignore_keys) for v in obj]
    return obj


def canonical_hash(obj: Any, *, ignore_keys: Optional[Set[str]] = None) -> str:
    """SHA256 of the canonical JSON form, ignoring volatile keys."""
    stripped = _strip_keys(obj, _VOLATILE_KEYS if ignore_keys is None else ignore_keys)
    return hashlib.sha256(_canonical_dumps(stripped).encode("utf-8")).hexdigest()


def make_record(payload: Dict[str, Any], include_timestamp: bool = True) -> Dict[str, Any]:
    """
    Attach a stable hash (+ optional timestamp) to a payload.

    The hash covers the payload only.
    """
    rec: Dict[str, Any] = dict(payload)
    rec["hash"] = canonical_hash(payload)
    if include_timestamp:
        rec["timestamp"] = time.time()
    return rec


def write_jsonl_records(path: str, records: Iterable[Dict[str, Any]]) -> int:
    """Write records one per line, creating parent directories. Returns the count."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    n = 0
    with p.open("w", encoding="utf-8") as f:
        for rec in records:
            f.write(json.dumps(rec, ensure_ascii=True))
            f.write("\n")
            n += 1
    return n


def read_jsonl_records(path: str) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    with Path(path).open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                out.append(json.loads(line))
    return out


def summarize_records(records: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    """Count records by status and by block type."""
    by_status: Dict[str, int] = {}
    by_block_type: Dict[str, int] = {}
    total = 0
    for rec in records:
        total += 1
        status = str(rec.get("status", "unknown"))
        by_status[status] = by_status.get(status, 0) + 1
        bt = str(rec.get("block_type", "unknown"))
        by_block_type[bt] = by_block_type.get(bt, 0) + 1
    return {"records": total, "by_status": by_status, "by_block_type": by_block_type}
