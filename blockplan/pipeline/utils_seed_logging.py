#!/usr/bin/env python3
#===- blockplan/pipeline/utils_seed_logging.py - Seed & Logging Utils --====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#
#
# Purpose:
#   Process-wide seeding and logging setup shared by the CLI and tests.
#
#===---------------------------------------------------------------------===#

from __future__ import annotations

import logging
import random

import numpy as np
import torch

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def set_global_seed(seed: int, deterministic: bool = True) -> None:
    """
    Seed random, numpy and torch.

    Args:
        seed: Integer seed value.
        deterministic: If True, request deterministic torch kernels.
    """
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if deterministic:
        torch.use_deterministic_algorithms(True, warn_only=True)


def init_logging(level: int = logging.INFO, name: str = "blockplan") -> logging.Logger:
    """Configure the root logger once and return the named package logger."""
    root_logger = logging.getLogger()
    # pytest installs its own handlers; do not stack another one on top.
    if not root_logger.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    root_logger.setLevel(level)

    logger = logging.getLogger(name)
    logger.setLevel(level)
    return logger
