#!/usr/bin/env python3
#===- blockplan/back_end/errors.py - Block Planning Error Kinds --------====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#
#
# Purpose:
#   Typed error kinds raised while planning a convolution block. Every kind
#   carries a machine-readable ``kind`` tag and a ``details`` dict so CLI and
#   JSONL records can report failures without parsing messages.
#
#===---------------------------------------------------------------------===#

from __future__ import annotations

from typing import Any, Dict, Optional


class BlockPlanError(RuntimeError):
    """Base class for all planning failures."""

    kind = "BlockPlanError"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": str(self), "details": dict(self.details)}


class InsufficientWeightData(BlockPlanError):
    """The flat weight buffer ended before a stage read all its weights."""

    kind = "InsufficientWeightData"

    def __init__(self, *, requested: int, available: int, offset: int, stage: str = "") -> None:
        where = f" for stage '{stage}'" if stage else ""
        super().__init__(
            f"Insufficient weight data{where}: requested={requested} available={available} offset={offset}",
            {"requested": int(requested), "available": int(available), "offset": int(offset), "stage": stage},
        )


class DegenerateDomain(BlockPlanError):
    """A pass-through channel's pre-activation interval cannot be rescaled."""

    kind = "DegenerateDomain"

    def __init__(self, message: str, *, channels: Optional[list] = None, lower: Any = None, upper: Any = None) -> None:
        super().__init__(message, {"channels": list(channels or []), "lower": lower, "upper": upper})


class InvalidBlockTypeId(BlockPlanError):
    kind = "InvalidBlockTypeId"

    def __init__(self, block_type_id: Any) -> None:
        super().__init__(f"Invalid block type id: {block_type_id!r}", {"block_type_id": block_type_id})


class ChannelCountMismatch(BlockPlanError):
    kind = "ChannelCountMismatch"

    def __init__(self, what: str, *, expected: Any, found: Any) -> None:
        super().__init__(
            f"Channel count mismatch ({what}): expected={expected} found={found}",
            {"what": what, "expected": expected, "found": found},
        )
