"""Attention layers and their collaborators.

Each layer here is a configurable nn.Module built from a config in
tessera.config.layer, either directly or through `config.build()`.
"""
