"""
weight provides parameter containers for attention layers.
"""
from __future__ import annotations

from tessera.weight.dense import DenseWeight

__all__ = ["DenseWeight"]
