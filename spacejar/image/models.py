"""Pydantic models for OCI wire formats.

Field names are snake_case in Python and serialize to the OCI/Docker
JSON spelling (``schemaVersion``, ``mediaType``, ``Env`` ...) through
aliases. The same models parse registry responses and describe the
image this package writes.

Follows the OCI Image Specification
https://github.com/opencontainers/image-spec
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from spacejar.types import OCI_IMAGE_INDEX, OCI_IMAGE_MANIFEST


def canonical_json(data: Any) -> bytes:
    """Serialize *data* to canonical JSON (sorted keys, compact separators)."""
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


class OCIModel(BaseModel):
    """Base model with OCI alias handling."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_oci_dict(self) -> dict[str, Any]:
        """Dump using OCI field names, omitting unset optional fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_canonical_json(self) -> bytes:
        """Serialize to canonical JSON bytes."""
        return canonical_json(self.to_oci_dict())


class Platform(OCIModel):
    """Platform of an image index entry."""

    architecture: str
    os: str
    variant: str | None = None


class Descriptor(OCIModel):
    """Content descriptor (config, layer or index entry)."""

    media_type: str = Field(default="", alias="mediaType")
    size: int = 0
    digest: str
    urls: list[str] | None = None
    annotations: dict[str, str] | None = None
    platform: Platform | None = None


class Manifest(OCIModel):
    """Schema-2 image manifest."""

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str = Field(default=OCI_IMAGE_MANIFEST, alias="mediaType")
    config: Descriptor
    layers: list[Descriptor] = Field(default_factory=list)
    annotations: dict[str, str] | None = None


class ManifestIndex(OCIModel):
    """Multi-architecture index (OCI index or Docker manifest list)."""

    schema_version: int = Field(default=2, alias="schemaVersion")
    media_type: str = Field(default=OCI_IMAGE_INDEX, alias="mediaType")
    manifests: list[Descriptor] = Field(default_factory=list)
    annotations: dict[str, str] | None = None


class OCIConfig(OCIModel):
    """Container runtime configuration (the ``config`` section of an image config)."""

    env: list[str] | None = Field(default=None, alias="Env")
    cmd: list[str] | None = Field(default=None, alias="Cmd")
    working_dir: str | None = Field(default=None, alias="WorkingDir")
    entrypoint: list[str] | None = Field(default=None, alias="Entrypoint")
    labels: dict[str, str] | None = Field(default=None, alias="Labels")
    exposed_ports: dict[str, dict[str, Any]] | None = Field(
        default=None, alias="ExposedPorts"
    )
    volumes: dict[str, dict[str, Any]] | None = Field(default=None, alias="Volumes")


class RootFS(OCIModel):
    """Ordered layer diff IDs of an image."""

    type: str = "layers"
    diff_ids: list[str] = Field(default_factory=list)


class ImageConfiguration(OCIModel):
    """Full OCI image configuration blob."""

    architecture: str
    os: str
    config: OCIConfig
    rootfs: RootFS


__all__ = [
    "Descriptor",
    "ImageConfiguration",
    "Manifest",
    "ManifestIndex",
    "OCIConfig",
    "OCIModel",
    "Platform",
    "RootFS",
    "canonical_json",
]
