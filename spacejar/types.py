"""Shared type definitions for spacejar.

This module contains enums and media type constants shared across
subpackages to avoid circular imports.
"""

from enum import Enum

SHA256_PREFIX = "sha256:"

# OCI media types
OCI_LAYER_TAR = "application/vnd.oci.image.layer.v1.tar"
OCI_LAYER_TAR_GZIP = "application/vnd.oci.image.layer.v1.tar+gzip"
OCI_IMAGE_CONFIG = "application/vnd.oci.image.config.v1+json"
OCI_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"

# Docker distribution media types
DOCKER_MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"
DOCKER_LAYER_TAR_GZIP = "application/vnd.docker.image.rootfs.diff.tar.gzip"
DOCKER_LAYER_TAR = "application/vnd.docker.image.rootfs.diff.tar"

# Annotation keys
ANNOTATION_TITLE = "org.opencontainers.image.title"
ANNOTATION_BASE_NAME = "org.opencontainers.image.base.name"


class LayerKind(str, Enum):
    """Kind of layer recorded in cache metadata."""

    VIRTUAL_ENV = "VirtualEnv"
    DEPENDENCIES = "Dependencies"
    APPLICATION = "Application"


class BuildStage(str, Enum):
    """Stage of the build state machine."""

    INIT = "init"
    BASE_RESOLVED = "base_resolved"
    LAYERS_BUILT = "layers_built"
    VERIFIED = "verified"
    ASSEMBLED = "assembled"
    WRITTEN = "written"
    DONE = "done"
    FAILED = "failed"


__all__ = [
    "ANNOTATION_BASE_NAME",
    "ANNOTATION_TITLE",
    "BuildStage",
    "DOCKER_LAYER_TAR",
    "DOCKER_LAYER_TAR_GZIP",
    "DOCKER_MANIFEST_LIST",
    "DOCKER_MANIFEST_V2",
    "LayerKind",
    "OCI_IMAGE_CONFIG",
    "OCI_IMAGE_INDEX",
    "OCI_IMAGE_MANIFEST",
    "OCI_LAYER_TAR",
    "OCI_LAYER_TAR_GZIP",
    "SHA256_PREFIX",
]
