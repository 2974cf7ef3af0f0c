"""
attention_math provides small, pure attention helpers.
"""

from __future__ import annotations

import math

import torch
from torch import Tensor

from tessera.config import ConfigurationError


def shape_heads(x: Tensor, *, n_heads: int, head_dim: int) -> Tensor:
    """
    shape_heads reshapes (B,T,H*D) -> (B,H,T,D).
    """
    if x.ndim != 3:
        raise ConfigurationError(f"Expected rank-3 (B,T,D), got {tuple(x.shape)}")
    if n_heads <= 0:
        raise ConfigurationError(f"n_heads must be > 0, got {n_heads}")
    if head_dim <= 0:
        raise ConfigurationError(f"head_dim must be > 0, got {head_dim}")
    if x.shape[-1] != n_heads * head_dim:
        raise ConfigurationError(
            "Expected last dim to equal n_heads*head_dim, got "
            f"x={tuple(x.shape)}, n_heads={n_heads}, head_dim={head_dim}"
        )

    b, t, _ = x.shape
    return x.view(b, t, int(n_heads), int(head_dim)).transpose(1, 2).contiguous()


def merge_heads(x: Tensor) -> Tensor:
    """
    merge_heads reshapes (B,H,T,D) -> (B,T,H*D), the exact inverse of shape_heads.
    """
    if x.ndim != 4:
        raise ConfigurationError(f"Expected rank-4 (B,H,T,D), got {tuple(x.shape)}")
    b, h, t, d = x.shape
    return x.transpose(1, 2).contiguous().view(b, t, h * d)


def check_qkv(q: Tensor, k: Tensor, v: Tensor) -> None:
    """
    check_qkv validates that q, k, v share a (B,H,T,D) layout.
    """
    for name, t in (("q", q), ("k", k), ("v", v)):
        if t.ndim != 4:
            raise ConfigurationError(
                f"{name} must be rank-4 (B,H,T,D), got {tuple(t.shape)}"
            )
    if q.shape != k.shape or k.shape[:3] != v.shape[:3]:
        raise ConfigurationError(
            f"Mismatched q/k/v shapes: q={tuple(q.shape)}, "
            f"k={tuple(k.shape)}, v={tuple(v.shape)}"
        )


def softmax_scale(head_dim: int) -> float:
    """Standard 1/sqrt(d) score scaling."""
    return 1.0 / math.sqrt(float(head_dim))


def masked_softmax(scores: Tensor, valid: Tensor, dim: int = -1) -> Tensor:
    """
    Softmax over `dim` restricted to `valid` entries.

    Rows with no valid entry come back as all zeros instead of NaN, so an
    empty bucket or an unconnected block contributes nothing.
    """
    scores = scores.masked_fill(~valid, float("-inf"))
    weights = torch.softmax(scores, dim=dim)
    return weights.masked_fill(~valid, 0.0)
