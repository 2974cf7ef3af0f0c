"""Efficient attention layer supporting linear, LSH, sparse and reversible modes.

Every non-reversible variant shares the same outer pipeline:

    x → LayerNorm → Wq/Wk/Wv → split heads → kernel → merge heads → Wo → dropout

and only the kernel in the middle changes:
- linear: ELU+1 feature map, aggregated chunk by chunk
- lsh: softmax inside random-rotation hash buckets, averaged over rounds
- sparse: softmax restricted to a block/local/strided connectivity mask

The reversible variant has no projections of its own. It owns two
half-width inner layers F and G and couples them so the input can be
rebuilt from the output (see `invert`).
"""
from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Any

import torch
import torch.nn.functional as F
from torch import Tensor, nn

from tessera.config import ConfigurationError
from tessera.config.layer import (
    AttentionLayerConfig,
    AttentionVariant,
    DropoutLayerConfig,
    LayerNormLayerConfig,
    SparsePattern,
)
from tessera.console import logger
from tessera.layer.dropout import DropoutLayer
from tessera.layer.layer_norm import LayerNormLayer
from tessera.operation.attention_math import merge_heads, shape_heads
from tessera.operation.linear import linear_attention
from tessera.operation.lsh import lsh_attention, sample_rotations, starved_queries
from tessera.operation.reversible import reversible_forward, reversible_inverse
from tessera.operation.sparse import pattern_mask, sparse_attention
from tessera.weight.dense import DenseWeight


@dataclass(frozen=True, slots=True)
class AttentionScratch:
    """Intermediates of the last training-mode forward.

    Projection variants fill q/k/v (head-split), the kernel's weights and
    the merged pre-projection output. Reversible layers fill output with
    the layer output and keep the sub-layer outputs fx2 = F(x2) and
    gy1 = G(y1) for exact inversion.
    """

    q: Tensor | None = None
    k: Tensor | None = None
    v: Tensor | None = None
    weights: Tensor | None = None
    output: Tensor | None = None
    fx2: Tensor | None = None
    gy1: Tensor | None = None


MASK_CACHE_SIZE = 32


@functools.lru_cache(maxsize=MASK_CACHE_SIZE)
def cached_pattern_mask(
    pattern: SparsePattern,
    seq_len: int,
    block_size: int,
    window_size: int,
    stride: int,
    device: torch.device,
) -> tuple[Tensor, int]:
    """Shared, bounded cache of sparse masks keyed on every input of pattern_mask.

    Callers must treat the returned mask as read-only.
    """
    return pattern_mask(
        pattern,
        seq_len,
        block_size=block_size,
        window_size=window_size,
        stride=stride,
        device=device,
    )


def make_generator(seed: int | None, device: torch.device | str = "cpu") -> torch.Generator:
    """A generator seeded from `seed`, or from fresh entropy when None."""
    generator = torch.Generator(device=device)
    if seed is None:
        generator.seed()
    else:
        generator.manual_seed(int(seed))
    return generator


class AttentionLayer(nn.Module):
    """Multi-head attention with a pluggable sub-quadratic kernel.

    All randomness (weight init, LSH rotations) comes from `generator`:
    the one passed in, or one seeded from `config.seed`. A forward call may
    also take its own generator to pin the LSH rotations of that call.
    """

    norm: LayerNormLayer | None
    q_proj: DenseWeight | None
    k_proj: DenseWeight | None
    v_proj: DenseWeight | None
    out_proj: DenseWeight | None
    dropout: DropoutLayer | None
    rotations: Tensor | None
    f: "AttentionLayer | None"
    g: "AttentionLayer | None"
    scratch: AttentionScratch | None

    def __init__(
        self,
        config: AttentionLayerConfig,
        *,
        generator: torch.Generator | None = None,
    ) -> None:
        super().__init__()
        self.config = config
        self.variant = config.variant
        self.d_model = config.d_model
        self.n_heads = config.n_heads
        self.head_dim = config.head_dim
        self.generator = generator if generator is not None else make_generator(config.seed)
        self.scratch = None
        self._warned_starvation = False

        if self.variant == AttentionVariant.REVERSIBLE:
            self._init_reversible(config)
        elif self.variant in (
            AttentionVariant.LINEAR,
            AttentionVariant.LSH,
            AttentionVariant.SPARSE,
        ):
            self._init_projections(config)
        else:
            raise ConfigurationError(f"Unsupported attention variant: {self.variant!r}")

    def _init_projections(self, config: AttentionLayerConfig) -> None:
        """Set up norm, Q/K/V/O projections and dropout for a kernel variant."""
        d = config.d_model
        self.norm = LayerNormLayer(LayerNormLayerConfig(d_model=d, eps=config.ln_eps))
        self.q_proj = DenseWeight(d, d, generator=self.generator)
        self.k_proj = DenseWeight(d, d, generator=self.generator)
        self.v_proj = DenseWeight(d, d, generator=self.generator)
        self.out_proj = DenseWeight(d, d, generator=self.generator)
        self.dropout = DropoutLayer(DropoutLayerConfig(p=config.dropout_p))

        if config.variant == AttentionVariant.LSH and config.fixed_rotations:
            self.register_buffer(
                "rotations",
                sample_rotations(
                    self.head_dim,
                    config.n_hashes,
                    config.n_rounds,
                    generator=self.generator,
                ),
            )
        else:
            self.register_buffer("rotations", None)

        # Reversible sub-layers unused in this mode
        self.f = None
        self.g = None

    def _init_reversible(self, config: AttentionLayerConfig) -> None:
        """Set up the F and G sub-layers, each at half the model width."""
        self.f = AttentionLayer(config.sublayer(config.f_variant), generator=self.generator)
        self.g = AttentionLayer(config.sublayer(config.g_variant), generator=self.generator)

        # Projection modules unused in this mode
        self.norm = None
        self.q_proj = None
        self.k_proj = None
        self.v_proj = None
        self.out_proj = None
        self.dropout = None
        self.register_buffer("rotations", None)

    @staticmethod
    def project(x: Tensor, weight: DenseWeight | None) -> Tensor:
        """Apply a bias-free projection."""
        if weight is None:
            raise RuntimeError("Projection weights not initialized")
        return F.linear(x, weight.weight)

    def _check_input(self, x: Tensor) -> None:
        if x.ndim != 3 or x.size(-1) != self.d_model:
            raise ConfigurationError(
                f"Expected input (B, T, {self.d_model}), got {tuple(x.shape)}"
            )

    def forward(self, x: Tensor, *, generator: torch.Generator | None = None) -> Tensor:
        """Compute attention over a (B, T, d_model) batch.

        Args:
            x: Input features (B, T, d_model)
            generator: Optional source for this call's LSH rotations

        Returns:
            Output features with the same shape as x
        """
        self._check_input(x)
        if self.variant == AttentionVariant.REVERSIBLE:
            return self._forward_reversible(x, generator=generator)
        return self._forward_projected(x, generator=generator)

    def _forward_projected(self, x: Tensor, *, generator: torch.Generator | None) -> Tensor:
        """Norm → Q/K/V → kernel → Wo → dropout."""
        if self.norm is None or self.dropout is None:
            raise RuntimeError("Projection modules not initialized")

        h = self.norm(x)
        qh = shape_heads(self.project(h, self.q_proj), n_heads=self.n_heads, head_dim=self.head_dim)
        kh = shape_heads(self.project(h, self.k_proj), n_heads=self.n_heads, head_dim=self.head_dim)
        vh = shape_heads(self.project(h, self.v_proj), n_heads=self.n_heads, head_dim=self.head_dim)

        out, weights = self._kernel(qh, kh, vh, generator=generator)
        merged = merge_heads(out)
        y = self.dropout(self.project(merged, self.out_proj))

        if self.training:
            self.scratch = AttentionScratch(q=qh, k=kh, v=vh, weights=weights, output=merged)
        return y

    def _kernel(
        self,
        qh: Tensor,
        kh: Tensor,
        vh: Tensor,
        *,
        generator: torch.Generator | None,
    ) -> tuple[Tensor, Tensor | None]:
        """Dispatch to the variant's attention kernel."""
        cfg = self.config
        match self.variant:
            case AttentionVariant.LINEAR:
                return linear_attention(
                    qh,
                    kh,
                    vh,
                    chunk_size=cfg.chunk_size,
                    mode=cfg.chunk_mode,
                    normalize=cfg.normalize,
                )
            case AttentionVariant.LSH:
                out, weights = lsh_attention(
                    qh,
                    kh,
                    vh,
                    rotations=self._rotations(qh, generator),
                    bucket_size=cfg.bucket_size,
                )
                self._report_starvation(weights)
                return out, weights
            case AttentionVariant.SPARSE:
                mask, unit_size = self._sparse_mask(qh.size(2), qh.device)
                return sparse_attention(
                    qh,
                    kh,
                    vh,
                    mask=mask,
                    unit_size=unit_size,
                    normalization=cfg.normalization,
                )
            case _:
                raise ConfigurationError(f"Unsupported attention variant: {self.variant!r}")

    def _rotations(self, qh: Tensor, generator: torch.Generator | None) -> Tensor:
        """Fixed rotations if configured, else a fresh draw for this call."""
        if self.rotations is not None:
            return self.rotations
        return sample_rotations(
            self.head_dim,
            self.config.n_hashes,
            self.config.n_rounds,
            generator=generator if generator is not None else self.generator,
            device=qh.device,
            dtype=qh.dtype,
        )

    def _report_starvation(self, weights: Tensor) -> None:
        """Warn once when some query found no key in any hashing round."""
        if self._warned_starvation:
            return
        starved = int(starved_queries(weights).sum().item())
        if starved > 0:
            self._warned_starvation = True
            logger.warning(
                f"LSH attention: {starved} query slot(s) matched no key in any of "
                f"{self.config.n_rounds} round(s) and produced zero output; "
                "consider more rounds or fewer hashes"
            )

    def _sparse_mask(self, seq_len: int, device: torch.device) -> tuple[Tensor, int]:
        """Connectivity mask for seq_len, cached since it never depends on data."""
        cfg = self.config
        return cached_pattern_mask(
            cfg.pattern,
            int(seq_len),
            cfg.block_size,
            cfg.window_size,
            cfg.stride,
            torch.device(device),
        )

    def _forward_reversible(self, x: Tensor, *, generator: torch.Generator | None) -> Tensor:
        """Split into two streams and couple them through F and G."""
        f, g = self._streams(generator)
        coupling = reversible_forward(x, f, g)
        y = coupling.joined()
        if self.training:
            self.scratch = AttentionScratch(output=y, fx2=coupling.fx2, gy1=coupling.gy1)
        return y

    def _streams(self, generator: torch.Generator | None) -> tuple[Any, Any]:
        if self.f is None or self.g is None:
            raise RuntimeError("Reversible sub-layers not initialized")
        f_layer, g_layer = self.f, self.g
        return (
            lambda t: f_layer(t, generator=generator),
            lambda t: g_layer(t, generator=generator),
        )

    def invert(
        self,
        y: Tensor,
        *,
        use_scratch: bool = True,
        generator: torch.Generator | None = None,
    ) -> Tensor:
        """Rebuild the input of a reversible layer from its output.

        If the scratch record holds this exact output, its cached F(x2) and
        G(y1) are reused and the result is exact even with dropout or
        per-call LSH rotations. Otherwise G(y1) and F(x2) are recomputed,
        which is exact only when both sub-layers are deterministic (eval
        mode, and fixed rotations or the same generator state for LSH).
        """
        if self.variant != AttentionVariant.REVERSIBLE:
            raise ConfigurationError(
                f"Only reversible attention can be inverted, this layer is {self.variant.value}"
            )
        self._check_input(y)

        fx2: Tensor | None = None
        gy1: Tensor | None = None
        s = self.scratch
        if (
            use_scratch
            and s is not None
            and s.output is not None
            and s.output.shape == y.shape
            and torch.equal(s.output, y)
        ):
            fx2, gy1 = s.fx2, s.gy1

        f, g = self._streams(generator)
        return reversible_inverse(y, f, g, fx2=fx2, gy1=gy1)

    def clear_scratch(self) -> None:
        """Drop the cached intermediates of this layer and its sub-layers."""
        self.scratch = None
        for sub in (self.f, self.g):
            if sub is not None:
                sub.clear_scratch()

    def summary(self) -> dict[str, Any]:
        """Key settings of this layer, by variant."""
        cfg = self.config
        out: dict[str, Any] = {
            "variant": cfg.variant.value,
            "d_model": cfg.d_model,
            "n_heads": cfg.n_heads,
            "head_dim": cfg.head_dim,
            "dropout_p": cfg.dropout_p,
        }
        match cfg.variant:
            case AttentionVariant.LINEAR:
                out.update(chunk_size=cfg.chunk_size, chunk_mode=cfg.chunk_mode.value)
            case AttentionVariant.LSH:
                out.update(
                    n_hashes=cfg.n_hashes,
                    n_rounds=cfg.n_rounds,
                    bucket_size=cfg.bucket_size,
                    fixed_rotations=cfg.fixed_rotations,
                )
            case AttentionVariant.SPARSE:
                out.update(pattern=cfg.pattern.value, normalization=cfg.normalization.value)
            case AttentionVariant.REVERSIBLE:
                out.update(f=cfg.f_variant.value, g=cfg.g_variant.value)
        return out

    def describe(self) -> None:
        """Print this layer's settings (and its sub-layers') to the console."""
        logger.key_value(self.summary(), title=f"AttentionLayer • {self.variant.value}")
        for name, sub in (("F", self.f), ("G", self.g)):
            if sub is not None:
                logger.key_value(sub.summary(), title=f"{name} sub-layer")

    def extra_repr(self) -> str:
        return (
            f"variant={self.variant.value}, d_model={self.d_model}, "
            f"n_heads={self.n_heads}"
        )
