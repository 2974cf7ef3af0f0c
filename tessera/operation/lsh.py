"""
lsh provides locality-sensitive-hashing attention.

Each round draws a random rotation, hashes every query and key to the sign
pattern of its projection, and lets a query attend only to the keys that
landed in the same bucket. Averaging several independent rounds reduces
the chance that a relevant key is missed by any single hash.

Buckets are never materialized as Python lists: keys are stably sorted by
code, so a bucket is a contiguous run in sorted order and "the first
bucket_size keys by sequence index" is simply the head of that run.
"""

from __future__ import annotations

import torch
from torch import Tensor

from tessera.config import ConfigurationError
from tessera.config.layer import MAX_HASHES
from tessera.operation.attention_math import check_qkv, masked_softmax, softmax_scale


def sample_rotations(
    head_dim: int,
    n_hashes: int,
    n_rounds: int,
    *,
    generator: torch.Generator | None = None,
    device: torch.device | None = None,
    dtype: torch.dtype = torch.float32,
) -> Tensor:
    """Draw (n_rounds, head_dim, n_hashes) standard-normal hash directions."""
    if head_dim <= 0 or n_rounds <= 0:
        raise ConfigurationError(
            f"head_dim and n_rounds must be > 0, got {head_dim}, {n_rounds}"
        )
    if not 0 < n_hashes <= MAX_HASHES:
        raise ConfigurationError(f"n_hashes must be in [1, {MAX_HASHES}], got {n_hashes}")
    source = generator.device if generator is not None else device
    r = torch.randn(
        (n_rounds, head_dim, n_hashes),
        generator=generator,
        device=source,
        dtype=dtype,
    )
    return r.to(device=device) if device is not None else r


def hash_codes(x: Tensor, rotation: Tensor) -> Tensor:
    """
    hash_codes packs the sign bits of x @ rotation into int64 codes.

    x is (..., D) and rotation is (D, n_hashes); bit i of the code is set
    when the projection onto direction i is positive.
    """
    if rotation.ndim != 2 or rotation.size(0) != x.size(-1):
        raise ConfigurationError(
            f"Rotation {tuple(rotation.shape)} does not match feature dim {x.size(-1)}"
        )
    proj = torch.matmul(x, rotation.to(dtype=x.dtype, device=x.device))
    bits = (proj > 0).to(torch.int64)
    weights = 2 ** torch.arange(rotation.size(1), device=x.device, dtype=torch.int64)
    return (bits * weights).sum(dim=-1)


def _gather_rows(x: Tensor, index: Tensor) -> Tensor:
    """Gather (B,H,T,S) row indices from (B,H,T,D) into (B,H,T,S,D)."""
    B, H, T, S = index.shape
    D = x.size(-1)
    flat = index.reshape(B, H, T * S, 1).expand(B, H, T * S, D)
    return torch.gather(x, 2, flat).view(B, H, T, S, D)


def lsh_attention(
    q: Tensor,
    k: Tensor,
    v: Tensor,
    *,
    rotations: Tensor,
    bucket_size: int,
) -> tuple[Tensor, Tensor]:
    """Bucketed softmax attention averaged over hashing rounds.

    Args:
        q, k, v: Head-split projections (B,H,T,D).
        rotations: (n_rounds, D, n_hashes), one rotation per round.
        bucket_size: Keys kept per bucket; only the earliest bucket_size
            keys by sequence index survive.

    Returns:
        (output, weights) where weights is (n_rounds, B, H, T, bucket_size):
        the softmax weights of each query over its bucket's key slots, all
        zero for a round in which the query's bucket had no keys.
    """
    check_qkv(q, k, v)
    if bucket_size <= 0:
        raise ConfigurationError(f"bucket_size must be > 0, got {bucket_size}")
    if rotations.ndim != 3:
        raise ConfigurationError(
            f"rotations must be (rounds, D, n_hashes), got {tuple(rotations.shape)}"
        )

    B, H, T, D = q.shape
    n_rounds = rotations.size(0)
    S = int(bucket_size)
    if T == 0:
        return v.new_zeros(v.shape), v.new_zeros((n_rounds, B, H, 0, S))

    scale = softmax_scale(D)
    slot = torch.arange(S, device=q.device)
    out = v.new_zeros(v.shape)
    per_round: list[Tensor] = []

    for r in range(n_rounds):
        q_codes = hash_codes(q, rotations[r])
        k_codes = hash_codes(k, rotations[r])

        sorted_codes, order = torch.sort(k_codes, dim=-1, stable=True)
        start = torch.searchsorted(sorted_codes, q_codes, side="left")
        stop = torch.searchsorted(sorted_codes, q_codes, side="right")
        count = (stop - start).clamp(max=S)

        valid = slot.view(1, 1, 1, S) < count.unsqueeze(-1)
        pos = (start.unsqueeze(-1) + slot).clamp(max=T - 1)
        key_index = torch.gather(order, 2, pos.view(B, H, T * S)).view(B, H, T, S)

        k_bucket = _gather_rows(k, key_index)
        v_bucket = _gather_rows(v, key_index)

        scores = torch.einsum("bhtd,bhtsd->bhts", q, k_bucket) * scale
        weights = masked_softmax(scores, valid)
        out = out + torch.einsum("bhts,bhtse->bhte", weights, v_bucket) / n_rounds
        per_round.append(weights)

    return out, torch.stack(per_round, dim=0)


def starved_queries(weights: Tensor) -> Tensor:
    """
    starved_queries flags queries that found no key in any round.

    Takes the weights returned by lsh_attention and returns a (B,H,T) bool.
    """
    return (weights.sum(dim=-1) == 0).all(dim=0)
