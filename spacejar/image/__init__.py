"""Image assembly module.

This module handles:
- Project and per-layer image configuration
- OCI config and manifest construction
- Writing and verifying the on-disk OCI layout
"""

from spacejar.image.config import ImageConfig

__all__ = ["ImageConfig"]

# Lazy imports for submodules to avoid circular imports
# Access via spacejar.image.manifest, spacejar.image.layout
