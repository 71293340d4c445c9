"""Layer construction and verification module.

This module handles:
- Deterministic packing of directories into gzip'd tar layers
- Digest and diff ID computation
- Layer verification before manifest assembly
"""

from spacejar.layers.layer import DirectoryLayerSource, Layer, LayerSource

__all__ = ["DirectoryLayerSource", "Layer", "LayerSource"]
