"""
mask provides connectivity masks for sparse attention.

Every generator is a pure function of the sequence length and the pattern
parameters, never of the data, so results are safe to cache. Masks are
square boolean tensors where mask[i, j] means "unit i may attend to unit j".
"""

from __future__ import annotations

import torch
from torch import Tensor

from tessera.config import ConfigurationError


def _require_positive(name: str, value: int) -> int:
    if value <= 0:
        raise ConfigurationError(f"{name} must be > 0, got {value}")
    return int(value)


def n_blocks(seq_len: int, block_size: int) -> int:
    """Number of blocks needed to cover seq_len positions."""
    _require_positive("block_size", block_size)
    return -(-int(seq_len) // int(block_size))


def block_mask(seq_len: int, block_size: int, *, device: torch.device | None = None) -> Tensor:
    """
    block_mask connects block i to blocks i-1, i, i+1 (clamped at the ends).

    Returns a (n_blocks, n_blocks) block-tridiagonal mask. The last block
    may be partial when seq_len is not a multiple of block_size.
    """
    n = n_blocks(seq_len, block_size)
    idx = torch.arange(n, device=device)
    return (idx.view(-1, 1) - idx.view(1, -1)).abs() <= 1


def local_mask(seq_len: int, window_size: int, *, device: torch.device | None = None) -> Tensor:
    """
    local_mask connects position i to every j with |i - j| <= window_size // 2.
    """
    half = _require_positive("window_size", window_size) // 2
    idx = torch.arange(int(seq_len), device=device)
    return (idx.view(-1, 1) - idx.view(1, -1)).abs() <= half


def strided_mask(
    seq_len: int,
    window_size: int,
    stride: int,
    *,
    device: torch.device | None = None,
) -> Tensor:
    """
    strided_mask is a local window plus global anchor columns.

    Every position additionally attends to each position j with
    j % stride == 0, wherever it sits relative to the window.
    """
    stride = _require_positive("stride", stride)
    mask = local_mask(seq_len, window_size, device=device)
    anchors = torch.arange(int(seq_len), device=device) % stride == 0
    return mask | anchors.view(1, -1)


def neighbour_table(mask: Tensor) -> tuple[Tensor, Tensor]:
    """
    neighbour_table lists the connected columns of every mask row.

    Returns (index, valid), both (N, M) where M is the largest row degree.
    index[i, :deg(i)] holds row i's connected columns in ascending order;
    the padding slots point at column 0 and are False in `valid`.
    """
    if mask.ndim != 2 or mask.shape[0] != mask.shape[1]:
        raise ConfigurationError(f"Mask must be square, got {tuple(mask.shape)}")
    n = mask.shape[0]
    degree = mask.sum(dim=-1)
    width = int(degree.max().item()) if n > 0 else 0

    # Stable sort puts connected columns first, in column order.
    order = torch.sort((~mask).to(torch.int32), dim=-1, stable=True).indices
    index = order[:, :width]
    valid = torch.arange(width, device=mask.device).view(1, -1) < degree.view(-1, 1)
    index = index.masked_fill(~valid, 0)
    return index, valid
