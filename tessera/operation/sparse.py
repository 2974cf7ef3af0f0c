"""
sparse provides mask-restricted softmax attention.

The mask works on "units": whole blocks for the block pattern, single
positions for the local and strided patterns. For every query unit we
gather only the connected key units, so cost scales with the largest row
degree of the mask instead of the sequence length.
"""

from __future__ import annotations

import torch
import torch.nn.functional as F
from torch import Tensor

from tessera.config import ConfigurationError
from tessera.config.layer import SoftmaxNorm, SparsePattern
from tessera.operation.attention_math import check_qkv, masked_softmax, softmax_scale
from tessera.operation.mask import (
    block_mask,
    local_mask,
    n_blocks,
    neighbour_table,
    strided_mask,
)


def pattern_mask(
    pattern: SparsePattern,
    seq_len: int,
    *,
    block_size: int,
    window_size: int,
    stride: int,
    device: torch.device | None = None,
) -> tuple[Tensor, int]:
    """Build the mask for `pattern` and return it with its unit size."""
    match pattern:
        case SparsePattern.BLOCK:
            return block_mask(seq_len, block_size, device=device), int(block_size)
        case SparsePattern.LOCAL:
            return local_mask(seq_len, window_size, device=device), 1
        case SparsePattern.STRIDED:
            return strided_mask(seq_len, window_size, stride, device=device), 1
        case _:
            raise ConfigurationError(f"Unsupported sparse pattern: {pattern!r}")


def _pad_units(x: Tensor, padded_len: int) -> Tensor:
    pad = padded_len - x.size(2)
    if pad == 0:
        return x
    return F.pad(x, (0, 0, 0, pad))


def sparse_attention(
    q: Tensor,
    k: Tensor,
    v: Tensor,
    *,
    mask: Tensor,
    unit_size: int,
    normalization: SoftmaxNorm = SoftmaxNorm.JOINT,
) -> tuple[Tensor, Tensor]:
    """Softmax attention restricted to the units connected in `mask`.

    Args:
        q, k, v: Head-split projections (B,H,T,D).
        mask: (N, N) bool over units, N = ceil(T / unit_size).
        unit_size: Positions per unit. The sequence is zero-padded to a
            whole number of units and padded keys are never attended to.
        normalization: JOINT normalizes across all connected keys of a
            query; PER_BLOCK normalizes each connected unit separately and
            sums the results.

    Returns:
        (output, weights) where weights is (B, H, N, U, M, U): for each
        query position inside each unit, the weight of every key slot of
        its M gathered neighbour units.
    """
    check_qkv(q, k, v)
    B, H, T, D = q.shape
    U = int(unit_size)
    N = n_blocks(T, U)
    if mask.shape != (N, N):
        raise ConfigurationError(
            f"Mask {tuple(mask.shape)} does not cover {N} units of size {U} "
            f"for seq_len={T}"
        )

    padded = N * U
    qb = _pad_units(q, padded).view(B, H, N, U, D)
    kb = _pad_units(k, padded).view(B, H, N, U, D)
    vb = _pad_units(v, padded).view(B, H, N, U, v.size(-1))

    index, valid = neighbour_table(mask.to(device=q.device))
    M = index.size(1)
    key_present = (torch.arange(padded, device=q.device) < T).view(N, U)
    # (N, 1, M, U): broadcast over the query positions of each unit
    allowed = (valid.unsqueeze(-1) & key_present[index]).unsqueeze(1)

    k_near = kb[:, :, index]
    v_near = vb[:, :, index]
    scores = torch.einsum("bhnud,bhnmwd->bhnumw", qb, k_near) * softmax_scale(D)

    match normalization:
        case SoftmaxNorm.JOINT:
            flat = scores.reshape(B, H, N, U, M * U)
            weights = masked_softmax(flat, allowed.reshape(N, 1, M * U))
            weights = weights.view(B, H, N, U, M, U)
        case SoftmaxNorm.PER_BLOCK:
            weights = masked_softmax(scores, allowed)
        case _:
            raise ConfigurationError(f"Unsupported normalization: {normalization!r}")

    out = torch.einsum("bhnumw,bhnmwe->bhnue", weights, v_near)
    out = out.reshape(B, H, padded, v.size(-1))[:, :, :T]
    return out.contiguous(), weights
