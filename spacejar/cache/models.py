"""Persisted cache index models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from spacejar.types import LayerKind


class LayerMetadata(BaseModel):
    """What a cached layer was built from."""

    layer_kind: LayerKind
    source_hash: str
    dependency_digests: list[str] = Field(default_factory=list)


class LayerCacheEntry(BaseModel):
    """Index entry pointing a logical key at a content-addressed layer file."""

    logical_key: str
    content_digest: str
    storage_path: str
    timestamp: datetime
    metadata: LayerMetadata


class ConfigCacheEntry(BaseModel):
    """Index entry pointing a logical key at a stored image config."""

    logical_key: str
    storage_path: str
    timestamp: datetime


class CacheIndex(BaseModel):
    """On-disk cache index (``index.json``).

    ``dependencies`` maps a requirements file hash to the logical key of
    the dependency layer built from it.
    """

    layers: dict[str, LayerCacheEntry] = Field(default_factory=dict)
    configs: dict[str, ConfigCacheEntry] = Field(default_factory=dict)
    dependencies: dict[str, str] = Field(default_factory=dict)


class LayerHeader(BaseModel):
    """JSON header line of a stored layer file (everything but the blob)."""

    media_type: str
    digest: str
    size: int
    compressed_size: int
    diff_id: str
    annotations: dict[str, str] = Field(default_factory=dict)


__all__ = [
    "CacheIndex",
    "ConfigCacheEntry",
    "LayerCacheEntry",
    "LayerHeader",
    "LayerMetadata",
]
