"""Manifest and config assembly.

This module handles:
- Merging per-layer configs into the runtime config
- Building the OCI image config blob (with rootfs diff IDs)
- Building the manifest that references the config and layers
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from spacejar.image.config import APP_DIR, VENV_DIR, ImageConfig
from spacejar.image.models import (
    Descriptor,
    ImageConfiguration,
    Manifest,
    OCIConfig,
    RootFS,
)
from spacejar.layers.layer import Layer, sha256_digest
from spacejar.registry.platform import TARGET_OS
from spacejar.types import OCI_IMAGE_CONFIG, OCI_IMAGE_MANIFEST

logger = logging.getLogger(__name__)

FIXED_ENV = (
    "PYTHONUNBUFFERED=1",
    "PYTHONDONTWRITEBYTECODE=1",
    "PYTHONPATH=/app/deps:/app",
)

DEFAULT_SCRIPT = "main.py"


def script_for(project: ImageConfig) -> str:
    """Return the script the entrypoint runs for a project."""
    return " ".join(project.entrypoint) or DEFAULT_SCRIPT


def entrypoint_for(script: str) -> list[str]:
    """Return the shell wrapper that activates the venv and runs *script*."""
    return [
        "/bin/sh",
        "-c",
        f". {VENV_DIR}/bin/activate && python {APP_DIR}/{script}",
    ]


def merge_configs(
    configs: Sequence[ImageConfig], script: str = DEFAULT_SCRIPT
) -> OCIConfig:
    """Merge per-layer configs, in order, into the runtime config.

    Env lists are concatenated and followed by the fixed Python
    variables. The last non-empty ``working_dir`` and ``cmd`` win. Labels,
    ports and volumes are unioned. The entrypoint is always the venv
    wrapper; per-layer entrypoints are ignored.
    """
    env: list[str] = []
    cmd: list[str] = []
    working_dir = ""
    labels: dict[str, str] = {}
    ports: dict[str, dict] = {}
    volumes: dict[str, dict] = {}

    for config in configs:
        env.extend(config.env)
        if config.working_dir:
            working_dir = config.working_dir
        if config.cmd:
            cmd = list(config.cmd)
        labels.update(config.labels)
        for port in config.exposed_ports:
            ports[port] = {}
        for volume in config.volumes:
            volumes[volume] = {}

    env.extend(FIXED_ENV)

    return OCIConfig(
        env=env,
        cmd=cmd or None,
        working_dir=working_dir or None,
        entrypoint=entrypoint_for(script),
        labels=labels or None,
        exposed_ports=ports or None,
        volumes=volumes or None,
    )


def build_image_config(
    config: OCIConfig, layers: Sequence[Layer], architecture: str
) -> ImageConfiguration:
    """Wrap the runtime config with platform and rootfs information."""
    return ImageConfiguration(
        architecture=architecture,
        os=TARGET_OS,
        config=config,
        rootfs=RootFS(diff_ids=[layer.diff_id for layer in layers]),
    )


def serialize_config(image_config: ImageConfiguration) -> bytes:
    """Serialize the config blob as canonical JSON."""
    return image_config.to_canonical_json()


def layer_descriptor(layer: Layer) -> Descriptor:
    """Return the manifest descriptor for a layer."""
    return Descriptor(
        media_type=layer.media_type,
        size=layer.compressed_size,
        digest=layer.digest,
        annotations=dict(layer.annotations) or None,
    )


def build_manifest(config_blob: bytes, layers: Sequence[Layer]) -> Manifest:
    """Build a manifest for a serialized config blob and ordered layers."""
    return Manifest(
        media_type=OCI_IMAGE_MANIFEST,
        config=Descriptor(
            media_type=OCI_IMAGE_CONFIG,
            size=len(config_blob),
            digest=sha256_digest(config_blob),
        ),
        layers=[layer_descriptor(layer) for layer in layers],
    )


@dataclass(frozen=True)
class AssembledImage:
    """Everything needed to write an image layout."""

    manifest: Manifest
    config_blob: bytes
    layers: tuple[Layer, ...]

    @property
    def manifest_blob(self) -> bytes:
        return self.manifest.to_canonical_json()

    @property
    def manifest_digest(self) -> str:
        return sha256_digest(self.manifest_blob)

    @property
    def config_digest(self) -> str:
        return self.manifest.config.digest


def assemble_image(
    configs: Sequence[ImageConfig],
    layers: Sequence[Layer],
    architecture: str,
    script: str = DEFAULT_SCRIPT,
) -> AssembledImage:
    """Merge configs and build the manifest for *layers*."""
    runtime_config = merge_configs(configs, script)
    config_blob = serialize_config(
        build_image_config(runtime_config, layers, architecture)
    )
    manifest = build_manifest(config_blob, layers)
    logger.debug(
        "Assembled manifest with %d layers, config %s",
        len(manifest.layers),
        manifest.config.digest[:19],
    )
    return AssembledImage(
        manifest=manifest, config_blob=config_blob, layers=tuple(layers)
    )


__all__ = [
    "AssembledImage",
    "DEFAULT_SCRIPT",
    "FIXED_ENV",
    "assemble_image",
    "build_image_config",
    "build_manifest",
    "entrypoint_for",
    "layer_descriptor",
    "merge_configs",
    "script_for",
    "serialize_config",
]
