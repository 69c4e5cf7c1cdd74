#!/usr/bin/env python3
#===- blockplan/pipeline/seeds.py - Deterministic Seeding --------------====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#
#
# Purpose:
#   Stable per-block seeds and a scoped RNG context for sampled planning.
#
# Notes:
#   Python's hash() is salted per process, so seeds come from sha256.
#
#===---------------------------------------------------------------------===#

from __future__ import annotations

import hashlib
import random
from contextlib import contextmanager
from typing import Iterator, Optional

import numpy as np
import torch

from blockplan.pipeline.utils_seed_logging import set_global_seed


def derive_seed(base_seed: int, idx: int, instance_id: Optional[str] = None) -> int:
    """
    Derive a seed in [0, 2^32 - 1] from (base_seed, idx, instance_id).
    """
    if not isinstance(base_seed, int):
        raise TypeError(f"base_seed must be int, got {type(base_seed)}")
    if not isinstance(idx, int):
        raise TypeError(f"idx must be int, got {type(idx)}")
    payload = f"{base_seed}|{idx}|{instance_id or ''}".encode("utf-8")
    return int.from_bytes(hashlib.sha256(payload).digest()[:4], byteorder="little", signed=False)


@contextmanager
def seeded(seed: int) -> Iterator[None]:
    """Seed random/numpy/torch for the body, then restore the previous RNG states."""
    old_py = random.getstate()
    old_np = np.random.get_state()
    old_torch = torch.get_rng_state()
    old_det = torch.are_deterministic_algorithms_enabled()
    try:
        set_global_seed(seed, deterministic=False)
        yield
    finally:
        random.setstate(old_py)
        np.random.set_state(old_np)
        torch.set_rng_state(old_torch)
        torch.use_deterministic_algorithms(old_det, warn_only=True)
