"""
linear provides chunked linear attention.

Linear attention swaps softmax(QK^T)V for φ(Q)(φ(K)^T V) with a positive
feature map φ, so the key-value product is a (D, D) aggregate rather than
a (T, T) score matrix. The sequence is walked in chunks to bound peak
memory; only one chunk × chunk block is ever materialized, and only in
causal mode.
"""

from __future__ import annotations

import torch
import torch.nn.functional as F
from torch import Tensor

from tessera.config import ConfigurationError
from tessera.config.layer import ChunkMode
from tessera.operation.attention_math import check_qkv


def elu_feature_map(x: Tensor) -> Tensor:
    """φ(x) = x + 1 for x > 0, exp(x) otherwise. Always strictly positive."""
    return F.elu(x) + 1.0


def _safe_divide(num: Tensor, denom: Tensor) -> Tensor:
    # φ > 0 keeps denom positive; the clamp only matters once exp underflows.
    return num / denom.clamp_min(torch.finfo(denom.dtype).tiny).unsqueeze(-1)


def linear_attention(
    q: Tensor,
    k: Tensor,
    v: Tensor,
    *,
    chunk_size: int,
    mode: ChunkMode = ChunkMode.LOCAL,
    normalize: bool = True,
) -> tuple[Tensor, None]:
    """Compute linear attention over (B,H,T,D) tensors.

    Args:
        q, k, v: Head-split projections.
        chunk_size: Positions per chunk; the last chunk may be shorter.
        mode: LOCAL restricts each chunk to its own keys, CAUSAL adds a
            running aggregate of every earlier chunk.
        normalize: Divide by φ(q)·Σφ(k) so each output is a convex
            combination of value rows. On by default, which departs from
            the raw φ(Q)(φ(K)ᵀV) aggregate; without the division the
            output norm grows with chunk length and is not bounded by the
            values. Pass False for the raw aggregate.

    Returns:
        (output, None). There is no score matrix to report.
    """
    check_qkv(q, k, v)
    if chunk_size <= 0:
        raise ConfigurationError(f"chunk_size must be > 0, got {chunk_size}")

    fq = elu_feature_map(q)
    fk = elu_feature_map(k)
    T = q.size(2)

    if mode == ChunkMode.LOCAL:
        chunks = _local_chunks(fq, fk, v, chunk_size=chunk_size, normalize=normalize)
    elif mode == ChunkMode.CAUSAL:
        chunks = _causal_chunks(fq, fk, v, chunk_size=chunk_size, normalize=normalize)
    else:
        raise ConfigurationError(f"Unsupported chunk mode: {mode!r}")

    if not chunks:
        return v.new_zeros(v.shape), None
    out = torch.cat(chunks, dim=2)
    if out.size(2) != T:
        raise RuntimeError(f"Chunked output covers {out.size(2)} of {T} positions")
    return out, None


def _local_chunks(
    fq: Tensor, fk: Tensor, v: Tensor, *, chunk_size: int, normalize: bool
) -> list[Tensor]:
    T = fq.size(2)
    chunks: list[Tensor] = []
    for start in range(0, T, chunk_size):
        end = min(T, start + chunk_size)
        qc = fq[:, :, start:end]
        kc = fk[:, :, start:end]
        vc = v[:, :, start:end]

        kv = torch.einsum("bhnd,bhne->bhde", kc, vc)
        num = torch.einsum("bhnd,bhde->bhne", qc, kv)
        if normalize:
            z = kc.sum(dim=2)
            denom = torch.einsum("bhnd,bhd->bhn", qc, z)
            num = _safe_divide(num, denom)
        chunks.append(num)
    return chunks


def _causal_chunks(
    fq: Tensor, fk: Tensor, v: Tensor, *, chunk_size: int, normalize: bool
) -> list[Tensor]:
    B, H, T, D = fq.shape
    kv_state = fq.new_zeros(B, H, D, v.size(-1))
    z_state = fq.new_zeros(B, H, D)
    chunks: list[Tensor] = []
    for start in range(0, T, chunk_size):
        end = min(T, start + chunk_size)
        qc = fq[:, :, start:end]
        kc = fk[:, :, start:end]
        vc = v[:, :, start:end]

        # Inside the chunk, position i sees keys 0..i only.
        intra = torch.matmul(qc, kc.transpose(-2, -1)).tril()
        num = torch.einsum("bhnd,bhde->bhne", qc, kv_state) + torch.matmul(intra, vc)
        if normalize:
            denom = torch.einsum("bhnd,bhd->bhn", qc, z_state) + intra.sum(dim=-1)
            num = _safe_divide(num, denom)
        chunks.append(num)

        kv_state = kv_state + torch.einsum("bhnd,bhne->bhde", kc, vc)
        z_state = z_state + kc.sum(dim=2)
    return chunks
