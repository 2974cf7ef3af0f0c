"""Dropout on the attention layer's output.

Only active during training (model.train()) and when p > 0; passes
through unchanged otherwise, which is what makes eval-mode forwards and
reversible reconstruction deterministic.
"""
from __future__ import annotations

from torch import Tensor, nn
from typing_extensions import override

from tessera.config.layer import DropoutLayerConfig


class DropoutLayer(nn.Module):
    """Dropout with our standard layer interface."""

    def __init__(self, config: DropoutLayerConfig) -> None:
        """Initialize dropout with the given probability.

        Args:
            config: Specifies dropout probability p (0 = no dropout, 1 = all zeros).
        """
        super().__init__()
        self.config = config
        self.dropout = nn.Dropout(config.p)

    @property
    def active(self) -> bool:
        """Whether a forward call would actually drop anything."""
        return self.training and self.config.p > 0.0

    @override
    def forward(self, x: Tensor) -> Tensor:
        """Apply dropout (only during training)."""
        if not self.active:
            return x
        return self.dropout(x)
