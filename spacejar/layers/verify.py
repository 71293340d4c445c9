"""Layer verification.

Checks run before a layer is referenced from a manifest:
- no two layers share a digest
- media type is an OCI layer type
- the layer is not empty
- the digest matches a fresh sha256 over the blob
- the compressed size matches the blob length
- the diff ID is a well-formed sha256 digest
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence

from spacejar.concurrency import gather_first_error
from spacejar.errors import DigestMismatch, ValidationError
from spacejar.layers.layer import Layer, sha256_digest
from spacejar.types import OCI_LAYER_TAR, OCI_LAYER_TAR_GZIP, SHA256_PREFIX

logger = logging.getLogger(__name__)

VALID_LAYER_MEDIA_TYPES = frozenset({OCI_LAYER_TAR, OCI_LAYER_TAR_GZIP})

DIGEST_PATTERN = re.compile(r"^sha256:[0-9a-f]{64}$")


def is_valid_media_type(media_type: str) -> bool:
    """Return True if *media_type* is an accepted OCI layer media type."""
    return media_type in VALID_LAYER_MEDIA_TYPES


def verify_layer_digest(layer: Layer) -> None:
    """Recompute the blob digest and compare it with the layer's digest.

    Raises:
        ValidationError: If the digest does not use the sha256 algorithm.
        DigestMismatch: If the recomputed digest differs.
    """
    if not layer.digest.startswith(SHA256_PREFIX):
        raise ValidationError(
            f"Invalid digest format: {layer.digest}", code="invalid_digest"
        )

    calculated = sha256_digest(layer.data)
    if calculated != layer.digest:
        raise DigestMismatch(
            f"Layer digest mismatch: expected {layer.digest}, calculated {calculated}",
            expected=layer.digest,
            actual=calculated,
        )


def verify_single_layer(layer: Layer) -> None:
    """Verify one layer's metadata and integrity.

    Raises:
        ValidationError: On an unknown media type, zero size, a compressed
            size that differs from the blob length or a malformed diff ID.
        DigestMismatch: If the blob does not hash to its digest.
    """
    if not is_valid_media_type(layer.media_type):
        raise ValidationError(
            f"Invalid media type: {layer.media_type}", code="invalid_media_type"
        )

    if layer.size == 0:
        raise ValidationError("Layer size cannot be zero", code="empty_layer")

    verify_layer_digest(layer)

    if layer.compressed_size != len(layer.data):
        raise ValidationError(
            f"Layer compressed_size {layer.compressed_size} does not match "
            f"blob length {len(layer.data)}",
            code="invalid_size",
        )

    if not DIGEST_PATTERN.match(layer.diff_id):
        raise ValidationError(
            f"Invalid diff_id format: {layer.diff_id!r}", code="invalid_diff_id"
        )


def find_duplicate_digest(layers: Sequence[Layer]) -> str | None:
    """Return the first digest that appears more than once, if any."""
    seen: set[str] = set()
    for layer in layers:
        if layer.digest in seen:
            return layer.digest
        seen.add(layer.digest)
    return None


async def verify_layers(layers: Sequence[Layer]) -> None:
    """Verify a set of layers.

    Duplicates are rejected first; the per-layer checks then run
    concurrently in worker threads and the first violation is raised.

    Raises:
        ValidationError: On duplicate digests or invalid layer metadata.
        DigestMismatch: If any layer fails digest recomputation.
    """
    duplicate = find_duplicate_digest(layers)
    if duplicate is not None:
        raise ValidationError(
            f"Duplicate layer detected with digest: {duplicate}",
            code="duplicate_layer",
        )

    await gather_first_error(
        *(asyncio.to_thread(verify_single_layer, layer) for layer in layers)
    )
    logger.debug("Verified %d layers", len(layers))


__all__ = [
    "DIGEST_PATTERN",
    "VALID_LAYER_MEDIA_TYPES",
    "find_duplicate_digest",
    "is_valid_media_type",
    "verify_layer_digest",
    "verify_layers",
    "verify_single_layer",
]
