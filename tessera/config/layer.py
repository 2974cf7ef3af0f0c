"""Layer configuration with discriminated unions.

Each layer type (attention, normalization, dropout) has its own config class.
Pydantic's discriminated unions allow YAML like `type: AttentionLayer` to
automatically deserialize into the correct config class.
"""
from __future__ import annotations

import enum
from typing import Annotated, Literal, TypeAlias

from pydantic import Field, model_validator

from tessera.config import (
    Config,
    ConfigurationError,
    NonNegativeInt,
    PositiveFloat,
    PositiveInt,
    Probability,
    ValidationType,
)

# Hash codes are packed into int64; leave headroom for the sign bit.
MAX_HASHES = 62


class AttentionVariant(str, enum.Enum):
    """Which attention kernel to use.

    LINEAR: ELU+1 feature-mapped attention, processed in chunks
    LSH: Random-rotation hashing, softmax inside each bucket
    SPARSE: Softmax restricted to a block/local/strided connectivity mask
    REVERSIBLE: Invertible two-stream coupling of two inner attention layers
    """

    LINEAR = "linear"
    LSH = "lsh"
    SPARSE = "sparse"
    REVERSIBLE = "reversible"


class ChunkMode(str, enum.Enum):
    """How linear attention chunks see each other.

    LOCAL: each chunk attends only to keys within the same chunk
    CAUSAL: running key-value aggregate over all earlier chunks, plus a
        lower-triangular term inside the current chunk
    """

    LOCAL = "local"
    CAUSAL = "causal"


class SparsePattern(str, enum.Enum):
    """Connectivity pattern for sparse attention.

    BLOCK: block i connects to blocks i-1, i, i+1
    LOCAL: position i connects to |i-j| <= window_size // 2
    STRIDED: LOCAL plus every position that is a multiple of stride
    """

    BLOCK = "block"
    LOCAL = "local"
    STRIDED = "strided"


class SoftmaxNorm(str, enum.Enum):
    """Where sparse attention normalizes its scores.

    JOINT: one softmax over every connected key of a query
    PER_BLOCK: a separate softmax per connected key block, summed afterwards
    """

    JOINT = "joint"
    PER_BLOCK = "per_block"


class LayerType(str, enum.Enum):
    """Enumeration of layer types for type-safe config parsing.

    Using an enum prevents magic strings and gives better error messages
    when an unknown layer type is specified in YAML.
    """

    LAYER_NORM = "LayerNormLayer"
    DROPOUT = "DropoutLayer"
    ATTENTION = "AttentionLayer"

    @classmethod
    def from_str(cls, s: str) -> "LayerType":
        """Convert a string to a LayerType."""
        return cls(s)

    @staticmethod
    def module_name() -> str:
        """Return the Python module containing layer implementations."""
        return "tessera.layer"


class LayerNormLayerConfig(Config):
    """Configuration for standard LayerNorm."""

    type: Literal[LayerType.LAYER_NORM] = LayerType.LAYER_NORM
    d_model: PositiveInt
    eps: PositiveFloat = 1e-5


class DropoutLayerConfig(Config):
    """Configuration for dropout regularization."""

    type: Literal[LayerType.DROPOUT] = LayerType.DROPOUT
    p: Probability = 0.0


class AttentionLayerConfig(Config):
    """Configuration for the efficient attention layer.

    The variant field selects the kernel; only the fields of the selected
    variant are read. For the reversible variant, f_variant and g_variant
    pick the kernels of the two inner layers, which run at half width.
    """

    type: Literal[LayerType.ATTENTION] = LayerType.ATTENTION

    # Core dimensions
    variant: AttentionVariant = AttentionVariant.LINEAR
    d_model: PositiveInt
    n_heads: PositiveInt

    dropout_p: Probability = 0.0
    ln_eps: PositiveFloat = 1e-5

    # Seeds weight init and LSH rotations when no generator is injected
    seed: NonNegativeInt | None = None

    # Linear attention
    chunk_size: PositiveInt = 64
    chunk_mode: ChunkMode = ChunkMode.LOCAL
    normalize: bool = True

    # LSH attention
    n_hashes: PositiveInt = 4
    n_rounds: PositiveInt = 2
    bucket_size: PositiveInt = 32
    fixed_rotations: bool = False

    # Sparse attention
    pattern: SparsePattern = SparsePattern.BLOCK
    block_size: PositiveInt = 64
    window_size: PositiveInt = 64
    stride: PositiveInt = 64
    normalization: SoftmaxNorm = SoftmaxNorm.JOINT

    # Reversible attention
    f_variant: AttentionVariant = AttentionVariant.LINEAR
    g_variant: AttentionVariant = AttentionVariant.LINEAR

    @model_validator(mode="after")
    def _check_dimensions(self) -> "AttentionLayerConfig":
        Config.check(self.d_model, ValidationType.SHOULD_BE_DIVISIBLE_BY, self.n_heads)

        if self.variant == AttentionVariant.REVERSIBLE:
            if self.d_model % 2 != 0:
                raise ConfigurationError(
                    f"Reversible attention needs an even d_model, got {self.d_model}"
                )
            half = self.d_model // 2
            if half % self.n_heads != 0:
                raise ConfigurationError(
                    f"Reversible sub-layers run at d_model={half}, which is not "
                    f"divisible by n_heads={self.n_heads}"
                )
            for name, inner in (("f_variant", self.f_variant), ("g_variant", self.g_variant)):
                if inner == AttentionVariant.REVERSIBLE:
                    raise ConfigurationError(f"{name} cannot itself be reversible")

        if self.uses(AttentionVariant.LSH) and self.n_hashes > MAX_HASHES:
            raise ConfigurationError(
                f"n_hashes must be <= {MAX_HASHES}, got {self.n_hashes}"
            )

        if (
            self.uses(AttentionVariant.SPARSE)
            and self.normalization == SoftmaxNorm.PER_BLOCK
            and self.pattern != SparsePattern.BLOCK
        ):
            raise ConfigurationError(
                "per_block normalization needs pattern=block; "
                f"got pattern={self.pattern.value}"
            )
        return self

    def uses(self, variant: AttentionVariant) -> bool:
        """Whether this layer, or one of its reversible sub-layers, runs `variant`."""
        if self.variant == variant:
            return True
        if self.variant == AttentionVariant.REVERSIBLE:
            return variant in (self.f_variant, self.g_variant)
        return False

    @property
    def head_dim(self) -> int:
        """Per-head feature dimension."""
        return self.d_model // self.n_heads

    def sublayer(self, variant: AttentionVariant) -> "AttentionLayerConfig":
        """Config for one half-width inner layer of a reversible block."""
        payload = self.model_dump()
        payload.update(variant=variant, d_model=self.d_model // 2)
        return AttentionLayerConfig.model_validate(payload)


# Union type for any layer config, with automatic deserialization
LayerConfig: TypeAlias = Annotated[
    LayerNormLayerConfig
    | DropoutLayerConfig
    | AttentionLayerConfig,
    Field(discriminator="type"),
]
