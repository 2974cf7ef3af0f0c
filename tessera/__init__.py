"""Tessera: efficient attention kernels for long sequences.

Four interchangeable ways to compute attention without paying for a full
seq × seq score matrix:
- linear: ELU+1 feature map, aggregated chunk by chunk
- lsh: queries only see keys that hash into the same random bucket
- sparse: block, local-window, or strided connectivity masks
- reversible: a two-stream invertible coupling around any of the above

Layers are built from validated configs:

    from tessera.config.layer import AttentionLayerConfig

    layer = AttentionLayerConfig(variant="lsh", d_model=64, n_heads=4).build()
    y = layer(x)
"""
