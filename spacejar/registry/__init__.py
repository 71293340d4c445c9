"""Container registry module.

This module handles:
- Image reference parsing
- Token authentication against registry v2 endpoints
- Manifest and multi-architecture index resolution
- Base image download into a single verified layer
"""

from spacejar.registry.reference import parse_reference

__all__ = ["parse_reference"]

# Lazy imports for submodules to avoid circular imports
# Access via spacejar.registry.client
