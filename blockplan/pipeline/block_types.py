#!/usr/bin/env python3
#===- blockplan/pipeline/block_types.py - Block Type Catalog -----------====#
# ACT: Abstract Constraint Transformer
# Copyright (C) 2025– ACT Team
#
# Licensed under the GNU Affero General Public License v3.0 or later (AGPLv3+).
# Distributed without any warranty; see <http://www.gnu.org/licenses/>.
#===---------------------------------------------------------------------===#
#
# Purpose:
#   The fixed catalog of twelve convolution block topologies (MobileNetV1/V2,
#   ShuffleNetV2 and its two single-tensor rewrites) and the structural
#   traits each one implies.
#
#===---------------------------------------------------------------------===#

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum, IntEnum
from typing import Dict

from blockplan.back_end.errors import InvalidBlockTypeId


class BlockType(IntEnum):
    MOBILE_NET_V1_HEAD_BODY_TAIL = 0
    MOBILE_NET_V2_BODY_TAIL = 1
    SHUFFLE_NET_V2_HEAD = 2
    SHUFFLE_NET_V2_BODY = 3
    SHUFFLE_NET_V2_TAIL = 4
    SHUFFLE_NET_V2_BY_MOBILE_NET_V1_HEAD = 5
    SHUFFLE_NET_V2_BY_MOBILE_NET_V1_BODY = 6
    SHUFFLE_NET_V2_BY_MOBILE_NET_V1_TAIL = 7
    SHUFFLE_NET_V2_BY_POINTWISE21_HEAD_NO_DEPTHWISE2 = 8
    SHUFFLE_NET_V2_BY_POINTWISE21_HEAD = 9
    SHUFFLE_NET_V2_BY_POINTWISE21_BODY = 10
    SHUFFLE_NET_V2_BY_POINTWISE21_TAIL = 11


class PointwiseHigherHalf(str, Enum):
    NONE = "none"
    COPY_LOWER_HALF = "higher_half_copy_lower_half"
    COPY_LOWER_HALF__LOWER_HALF_PASS_THROUGH = "higher_half_copy_lower_half__lower_half_pass_through"
    ANOTHER_POINTWISE = "higher_half_another_pointwise"
    PASS_THROUGH = "higher_half_pass_through"


class DepthwiseHigherHalf(str, Enum):
    NONE = "none"
    DEPTHWISE2 = "higher_half_depthwise2"
    PASS_THROUGH = "higher_half_pass_through"


@dataclass(frozen=True)
class BlockTypeInfo:
    block_type: BlockType
    input_count: int
    output_count: int
    depthwise2: bool = False
    concat1: bool = False
    add_input_to_output: bool = False
    concat2: bool = False
    shuffle2: bool = False
    split2: bool = False
    pointwise21: bool = False
    higher_half: bool = False
    shuffle_pointwise20: bool = False

    @property
    def name(self) -> str:
        return self.block_type.name

    def to_dict(self) -> Dict[str, object]:
        d = asdict(self)
        d["block_type"] = int(self.block_type)
        d["name"] = self.name
        return d


BLOCK_TYPES: Dict[BlockType, BlockTypeInfo] = {
    info.block_type: info
    for info in (
        BlockTypeInfo(BlockType.MOBILE_NET_V1_HEAD_BODY_TAIL, 1, 1),
        BlockTypeInfo(BlockType.MOBILE_NET_V2_BODY_TAIL, 1, 1, add_input_to_output=True),
        BlockTypeInfo(BlockType.SHUFFLE_NET_V2_HEAD, 1, 2, depthwise2=True, concat2=True, shuffle2=True,
                      split2=True, pointwise21=True),
        BlockTypeInfo(BlockType.SHUFFLE_NET_V2_BODY, 2, 2, concat2=True, shuffle2=True, split2=True),
        BlockTypeInfo(BlockType.SHUFFLE_NET_V2_TAIL, 2, 1, concat2=True),
        BlockTypeInfo(BlockType.SHUFFLE_NET_V2_BY_MOBILE_NET_V1_HEAD, 1, 1, higher_half=True,
                      shuffle_pointwise20=True),
        BlockTypeInfo(BlockType.SHUFFLE_NET_V2_BY_MOBILE_NET_V1_BODY, 1, 1, higher_half=True,
                      shuffle_pointwise20=True),
        BlockTypeInfo(BlockType.SHUFFLE_NET_V2_BY_MOBILE_NET_V1_TAIL, 1, 1, higher_half=True),
        BlockTypeInfo(BlockType.SHUFFLE_NET_V2_BY_POINTWISE21_HEAD_NO_DEPTHWISE2, 1, 2, pointwise21=True),
        BlockTypeInfo(BlockType.SHUFFLE_NET_V2_BY_POINTWISE21_HEAD, 1, 2, depthwise2=True, concat1=True,
                      pointwise21=True),
        BlockTypeInfo(BlockType.SHUFFLE_NET_V2_BY_POINTWISE21_BODY, 2, 2, concat1=True, pointwise21=True),
        BlockTypeInfo(BlockType.SHUFFLE_NET_V2_BY_POINTWISE21_TAIL, 2, 1, concat1=True),
    )
}


def resolve_block_type(block_type_id) -> BlockTypeInfo:
    """Look up a block type by id or name; unknown values raise InvalidBlockTypeId."""
    if isinstance(block_type_id, BlockType):
        return BLOCK_TYPES[block_type_id]
    if isinstance(block_type_id, str):
        try:
            return BLOCK_TYPES[BlockType[block_type_id.strip().upper()]]
        except KeyError:
            raise InvalidBlockTypeId(block_type_id) from None
    if isinstance(block_type_id, bool) or not isinstance(block_type_id, int):
        raise InvalidBlockTypeId(block_type_id)
    try:
        return BLOCK_TYPES[BlockType(block_type_id)]
    except ValueError:
        raise InvalidBlockTypeId(block_type_id) from None
