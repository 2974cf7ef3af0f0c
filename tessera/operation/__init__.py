"""
operation provides parameter-free attention kernels and their helpers.
"""

from __future__ import annotations

from tessera.operation.attention_math import (
    masked_softmax,
    merge_heads,
    shape_heads,
    softmax_scale,
)
from tessera.operation.linear import elu_feature_map, linear_attention
from tessera.operation.lsh import hash_codes, lsh_attention, sample_rotations, starved_queries
from tessera.operation.mask import block_mask, local_mask, neighbour_table, strided_mask
from tessera.operation.reversible import (
    Coupling,
    reversible_forward,
    reversible_inverse,
    split_streams,
)
from tessera.operation.sparse import pattern_mask, sparse_attention

__all__ = [
    "Coupling",
    "block_mask",
    "elu_feature_map",
    "hash_codes",
    "linear_attention",
    "local_mask",
    "lsh_attention",
    "masked_softmax",
    "merge_heads",
    "neighbour_table",
    "pattern_mask",
    "reversible_forward",
    "reversible_inverse",
    "sample_rotations",
    "shape_heads",
    "softmax_scale",
    "sparse_attention",
    "split_streams",
    "starved_queries",
    "strided_mask",
]
