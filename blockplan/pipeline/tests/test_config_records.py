#!/usr/bin/env python3
#===- tests/test_config_records.py - Config, Seed & JSONL Tests --------====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#

from __future__ import annotations

from pathlib import Path

import pytest
import torch
import yaml

from blockplan.pipeline.config import (
    block_params_from_config,
    default_config,
    input_bounds_from_config,
    load_config,
)
from blockplan.pipeline.jsonl import (
    canonical_hash,
    make_record,
    read_jsonl_records,
    summarize_records,
    write_jsonl_records,
)
from blockplan.pipeline.seeds import derive_seed, seeded


def test_missing_config_file_gives_defaults(tmp_path: Path) -> None:
    assert load_config(str(tmp_path / "absent.yaml")) == default_config()
    assert load_config(None) == default_config()


def test_yaml_overrides_are_deep_merged(tmp_path: Path) -> None:
    path = tmp_path / "block.yaml"
    path.write_text(yaml.safe_dump({
        "block": {"block_type_id": 6, "input0_channels": 6, "pointwise20_channels": 6},
        "input": {"low": 0.0, "high": 255.0},
    }), encoding="utf-8")
    cfg = load_config(str(path))
    assert cfg["block"]["depthwise_op"] == default_config()["block"]["depthwise_op"]
    assert cfg["weights"] == default_config()["weights"]

    params = block_params_from_config(cfg)
    assert params.block_type_id == 6
    assert params.input0_channels == 6
    bounds = input_bounds_from_config(cfg, 2)
    assert bounds.to_dict() == {"lb": [0.0, 0.0], "ub": [255.0, 255.0]}


def test_non_mapping_config_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "bad.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(str(path))


def test_unknown_block_field_is_rejected() -> None:
    cfg = default_config()
    cfg["block"]["kernel"] = 3
    with pytest.raises(ValueError):
        block_params_from_config(cfg)


def test_derive_seed_is_stable_and_distinct() -> None:
    assert derive_seed(0, 1, "block") == derive_seed(0, 1, "block")
    assert derive_seed(0, 1, "block") != derive_seed(0, 2, "block")
    assert derive_seed(0, 1, "block") != derive_seed(0, 1, "weights")
    assert 0 <= derive_seed(123, 4) < 2 ** 32
    with pytest.raises(TypeError):
        derive_seed("0", 1)  # type: ignore[arg-type]


def test_seeded_restores_rng_state() -> None:
    torch.manual_seed(1)
    expected = torch.rand(3)
    torch.manual_seed(1)
    with seeded(99):
        a = torch.rand(4)
    after = torch.rand(3)
    assert torch.equal(after, expected)
    with seeded(99):
        b = torch.rand(4)
    assert torch.equal(a, b)


def test_canonical_hash_ignores_key_order_and_timestamp() -> None:
    a = {"x": 1, "y": [1, 2, {"z": "w"}]}
    b = {"y": [1, 2, {"z": "w"}], "x": 1}
    assert canonical_hash(a) == canonical_hash(b)
    assert canonical_hash(a) == canonical_hash(dict(a, timestamp=123.0))
    assert canonical_hash(a) != canonical_hash(dict(a, x=2))


def test_records_round_trip_through_jsonl(tmp_path: Path) -> None:
    recs = [make_record({"status": "PASS", "block_type": "A"}),
            make_record({"status": "ERROR", "block_type": "A"}, include_timestamp=False)]
    assert "timestamp" in recs[0] and "timestamp" not in recs[1]
    path = tmp_path / "nested" / "out.jsonl"
    assert write_jsonl_records(str(path), recs) == 2
    back = read_jsonl_records(str(path))
    assert [r["hash"] for r in back] == [r["hash"] for r in recs]
    assert back[0]["hash"] == canonical_hash({"status": "PASS", "block_type": "A"})
    summary = summarize_records(back)
    assert summary == {"records": 2, "by_status": {"PASS": 1, "ERROR": 1}, "by_block_type": {"A": 2}}
