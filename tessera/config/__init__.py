"""Configuration system: turning YAML into validated Python objects.

Attention layers are described by Pydantic models. Field-level constraints
live in the annotated primitives below, cross-field constraints live in
model validators, and any violation is reported as a ConfigurationError
before a single tensor is touched.
"""
from __future__ import annotations

import enum
import importlib
from typing import Annotated, Protocol, TypeVar, cast

from pydantic import AfterValidator, BaseModel
from torch import nn


T = TypeVar("T")


class ConfigurationError(ValueError):
    """A shape, dimension, or parameter choice that can never work.

    Raised before any computation and never retried. Inside Pydantic
    validators it surfaces wrapped in a ValidationError, which is also a
    ValueError.
    """


class ValidationType(enum.Enum):
    """Types of value validation we support."""

    SHOULD_BE_POSITIVE = "should_be_positive"
    SHOULD_BE_NON_NEGATIVE = "should_be_non_negative"
    SHOULD_BE_DIVISIBLE_BY = "should_be_divisible_by"


class Config(BaseModel):
    """Base class for all configuration objects.

    Provides a `build()` method that dynamically constructs the nn.Module
    corresponding to this config, and validation helpers for enforcing
    constraints on config values.
    """

    def build(self) -> nn.Module:
        """Construct the nn.Module this config describes.

        Uses dynamic imports based on the config's `type` field, so adding
        a new layer type only requires adding the module, with no central registry.
        """

        class _BuildType(Protocol):
            value: str
            name: str

            def module_name(self) -> str:
                ...

        t = cast(_BuildType, getattr(self, "type"))
        class_name = t.value
        module_name = t.name.lower()
        mod = importlib.import_module(f"{t.module_name()}.{module_name}")
        cls = getattr(mod, class_name)
        return cls(self)

    @staticmethod
    def check(left: T, validation_type: ValidationType, right: T | None = None) -> T:
        """Validate a value against a constraint, raising ConfigurationError on failure."""
        match validation_type:
            case ValidationType.SHOULD_BE_POSITIVE:
                if left <= 0:  # type: ignore[operator]
                    raise ConfigurationError(
                        f"Validation failed: {validation_type.name}: {left!r} <= 0"
                    )
                return left
            case ValidationType.SHOULD_BE_NON_NEGATIVE:
                if left < 0:  # type: ignore[operator]
                    raise ConfigurationError(
                        f"Validation failed: {validation_type.name}: {left!r} < 0"
                    )
                return left
            case ValidationType.SHOULD_BE_DIVISIBLE_BY:
                if right is None or right == 0 or left % right != 0:  # type: ignore[operator]
                    raise ConfigurationError(
                        f"Validation failed: {validation_type.name}: "
                        f"{left!r} is not divisible by {right!r}"
                    )
                return left
            case _:
                raise ConfigurationError(
                    f"Validation failed: unknown validation type {validation_type}"
                )

    @staticmethod
    def check_range(
        value: float,
        *,
        ge: float | None = None,
        gt: float | None = None,
        le: float | None = None,
        lt: float | None = None,
    ) -> float:
        """Validate a number is within a range."""
        v = float(value)
        if ge is not None and v < ge:
            raise ConfigurationError(f"Validation failed: {v} < {ge} (expected >= {ge})")
        if gt is not None and v <= gt:
            raise ConfigurationError(f"Validation failed: {v} <= {gt} (expected > {gt})")
        if le is not None and v > le:
            raise ConfigurationError(f"Validation failed: {v} > {le} (expected <= {le})")
        if lt is not None and v >= lt:
            raise ConfigurationError(f"Validation failed: {v} >= {lt} (expected < {lt})")
        return v


# Type aliases for validated primitives, use these in config models
PositiveInt = Annotated[
    int,
    AfterValidator(lambda v: Config.check(v, ValidationType.SHOULD_BE_POSITIVE)),
]
NonNegativeInt = Annotated[
    int,
    AfterValidator(lambda v: Config.check(v, ValidationType.SHOULD_BE_NON_NEGATIVE)),
]
PositiveFloat = Annotated[
    float,
    AfterValidator(lambda v: Config.check(v, ValidationType.SHOULD_BE_POSITIVE)),
]
Probability = Annotated[
    float,
    AfterValidator(lambda v: Config.check_range(v, ge=0.0, le=1.0)),
]
