"""
reversible provides the two-stream RevNet coupling.

    y1 = x1 + F(x2)
    y2 = x2 + G(y1)

and its inverse

    x2 = y2 - G(y1)
    x1 = y1 - F(x2)

Inputs never need to be stored for backprop since they can be rebuilt
from the outputs, as long as F and G are deterministic between the
forward pass and the reconstruction.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

import torch
from torch import Tensor

from tessera.config import ConfigurationError

StreamFn = Callable[[Tensor], Tensor]


@dataclass(frozen=True, slots=True)
class Coupling:
    """Both halves of a coupled forward pass plus the sub-layer outputs."""

    y1: Tensor
    y2: Tensor
    fx2: Tensor
    gy1: Tensor

    def joined(self) -> Tensor:
        return torch.cat([self.y1, self.y2], dim=-1)


def split_streams(x: Tensor) -> tuple[Tensor, Tensor]:
    """Split the feature axis evenly into (x1, x2)."""
    if x.size(-1) % 2 != 0:
        raise ConfigurationError(
            f"Reversible coupling needs an even feature dim, got {x.size(-1)}"
        )
    x1, x2 = x.chunk(2, dim=-1)
    return x1, x2


def reversible_forward(x: Tensor, f: StreamFn, g: StreamFn) -> Coupling:
    x1, x2 = split_streams(x)
    fx2 = f(x2)
    y1 = x1 + fx2
    gy1 = g(y1)
    y2 = x2 + gy1
    return Coupling(y1=y1, y2=y2, fx2=fx2, gy1=gy1)


def reversible_inverse(
    y: Tensor,
    f: StreamFn,
    g: StreamFn,
    *,
    fx2: Tensor | None = None,
    gy1: Tensor | None = None,
) -> Tensor:
    """Rebuild the coupling input from its output.

    Cached sub-layer outputs are used when given; otherwise G(y1) and
    F(x2) are recomputed, which is exact only if F and G are deterministic.
    """
    y1, y2 = split_streams(y)
    if gy1 is None:
        gy1 = g(y1)
    x2 = y2 - gy1
    if fx2 is None:
        fx2 = f(x2)
    x1 = y1 - fx2
    return torch.cat([x1, x2], dim=-1)
