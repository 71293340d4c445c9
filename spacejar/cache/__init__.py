"""Layer and config cache module.

This module handles:
- Mapping logical keys to content-addressed layer files
- Integrity checks on every read
- Age-based eviction and orphan cleanup
- Per-key file locks for concurrent builds
"""

from spacejar.cache.models import LayerMetadata
from spacejar.cache.store import CleanupResult, ContentAddressedCache, cache_lock

__all__ = ["CleanupResult", "ContentAddressedCache", "LayerMetadata", "cache_lock"]
