"""Standard LayerNorm layer.

Every attention layer normalizes its input before projecting it to
queries, keys, and values: zero mean and unit variance per feature
vector, followed by a learnable scale and shift.
"""
from __future__ import annotations

from torch import Tensor, nn
from typing_extensions import override

from tessera.config.layer import LayerNormLayerConfig


class LayerNormLayer(nn.Module):
    """Standard layer normalization wrapping nn.LayerNorm."""

    def __init__(self, config: LayerNormLayerConfig) -> None:
        super().__init__()
        self.config = config
        self.norm = nn.LayerNorm(
            config.d_model,
            eps=float(config.eps),
        )

    @override
    def forward(self, x: Tensor) -> Tensor:
        """Apply layer normalization."""
        return self.norm(x)
