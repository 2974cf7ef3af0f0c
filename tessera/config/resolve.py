"""
resolve provides layer-file loading and type-name normalization.
"""
from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import TypeAdapter

from tessera.config.layer import LayerConfig
from tessera.console import logger


# Maps shorthand type names to canonical class names
TYPE_ALIASES: dict[str, str] = {
    "attention": "AttentionLayer",
    "layer_norm": "LayerNormLayer",
    "dropout": "DropoutLayer",
}

# Shorthand variant names used directly as a type, e.g. `type: lsh`
VARIANT_ALIASES: frozenset[str] = frozenset({"linear", "lsh", "sparse", "reversible"})

_LAYER_ADAPTER: TypeAdapter[LayerConfig] = TypeAdapter(LayerConfig)


def normalize_type_names(payload: object) -> object:
    """
    Recursively normalize shorthand type names to canonical class names.

    `type: attention` becomes `type: AttentionLayer`, and `type: lsh`
    becomes `type: AttentionLayer` with `variant: lsh` (unless a variant
    is already given).
    """
    if isinstance(payload, Mapping):
        result: dict[str, object] = {}
        for k, v in payload.items():
            if k == "type" and isinstance(v, str):
                if v in VARIANT_ALIASES:
                    result[k] = "AttentionLayer"
                    result.setdefault("variant", v)
                else:
                    result[k] = TYPE_ALIASES.get(v, v)
            else:
                result[k] = normalize_type_names(v)
        return result
    if isinstance(payload, list):
        return [normalize_type_names(v) for v in payload]
    return payload


def parse_layer_config(payload: object) -> LayerConfig:
    """Validate a decoded payload into the matching layer config."""
    if not isinstance(payload, Mapping):
        raise ValueError(f"Layer payload must be a dict, got {type(payload)!r}")
    return _LAYER_ADAPTER.validate_python(normalize_type_names(payload))


def load_layer_config(path: Path) -> LayerConfig:
    """Load and validate a layer config from a JSON or YAML file."""
    text = path.read_text(encoding="utf-8")
    match path.suffix.lower():
        case ".json":
            payload = json.loads(text)
        case ".yml" | ".yaml":
            payload = yaml.safe_load(text)
        case s:
            raise ValueError(f"Unsupported format '{s}'")

    if payload is None:
        raise ValueError(f"Layer config {path} is empty.")

    config = parse_layer_config(payload)
    logger.info(f"Loaded {config.type.value} config from [path]{path}[/path]")
    return config
