"""
dense provides bias-free projection weight containers.
"""

from __future__ import annotations

import math

import torch
from torch import Tensor, nn
from typing_extensions import override

from tessera.weight.guard import require_int


class DenseWeight(nn.Module):
    """
    DenseWeight stores a (d_out, d_in) projection matrix.

    Entries are drawn from N(0, 2 / d_in) using the generator passed to
    reset_parameters, so two layers built from the same seed match exactly.
    """
    def __init__(
        self,
        d_in: int,
        d_out: int,
        *,
        generator: torch.Generator | None = None,
    ) -> None:
        super().__init__()
        self.d_in: int = require_int("d_in", d_in, ge=1)
        self.d_out: int = require_int("d_out", d_out, ge=1)

        self.weight: nn.Parameter = nn.Parameter(
            torch.empty((self.d_out, self.d_in)),
        )
        self.reset_parameters(generator)

    @property
    def std(self) -> float:
        return math.sqrt(2.0 / float(self.d_in))

    def reset_parameters(self, generator: torch.Generator | None = None) -> None:
        """
        reset weight parameters.
        """
        device = generator.device if generator is not None else self.weight.device
        sample = torch.randn(
            self.weight.shape,
            generator=generator,
            device=device,
            dtype=self.weight.dtype,
        )
        with torch.no_grad():
            self.weight.copy_(sample * self.std)

    @override
    def forward(self, x: Tensor) -> Tensor:
        """
        forward is intentionally unsupported for weight containers.
        """
        _ = x
        raise RuntimeError(
            "DenseWeight is a weight container; call AttentionLayer.project."
        )
