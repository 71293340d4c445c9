"""OCI image layout on disk.

Layout::

    <output>/oci-layout
    <output>/index.json
    <output>/manifest.json
    <output>/blobs/sha256/<hex>
"""

from __future__ import annotations

import json
import logging
import shutil
import stat
import tempfile
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from spacejar.errors import DigestMismatch, ValidationError
from spacejar.image.manifest import AssembledImage
from spacejar.image.models import Descriptor, Manifest, ManifestIndex
from spacejar.layers.layer import digest_hex, sha256_digest
from spacejar.types import OCI_IMAGE_MANIFEST

logger = logging.getLogger(__name__)

OCI_LAYOUT_FILE = "oci-layout"
OCI_LAYOUT_VERSION = "1.0.0"
INDEX_FILE = "index.json"
MANIFEST_FILE = "manifest.json"
BLOBS_DIR = Path("blobs") / "sha256"


def blob_path(root: Path, digest: str) -> Path:
    """Return the path of a blob inside a layout."""
    return root / BLOBS_DIR / digest_hex(digest)


def _check_output(output: Path) -> None:
    if not output.exists():
        return
    if not output.is_dir():
        raise ValidationError(
            f"Output path is not a directory: {output}", code="invalid_output"
        )
    if any(output.iterdir()) and not (output / OCI_LAYOUT_FILE).is_file():
        raise ValidationError(
            f"Refusing to overwrite non-layout directory: {output}",
            code="invalid_output",
        )


def _write_blob(root: Path, digest: str, data: bytes) -> None:
    path = blob_path(root, digest)
    if path.exists():
        return
    path.write_bytes(data)


def write_layout(output: Path, image: AssembledImage) -> Path:
    """Write *image* as an OCI layout at *output*.

    The layout is built in a temporary sibling directory and renamed into
    place, so a failed write never leaves a partial layout behind. An
    existing layout at *output* is replaced.

    Raises:
        ValidationError: If *output* exists and is not a replaceable layout.
        OSError: On write failures.
    """
    _check_output(output)
    output.parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(dir=output.parent, prefix=f".{output.name}."))

    try:
        (staging / BLOBS_DIR).mkdir(parents=True)
        # mkdtemp creates 0700; match a normally created directory instead
        staging.chmod(stat.S_IMODE((staging / BLOBS_DIR.parts[0]).stat().st_mode))
        for layer in image.layers:
            _write_blob(staging, layer.digest, layer.data)
        _write_blob(staging, image.config_digest, image.config_blob)

        manifest_blob = image.manifest_blob
        _write_blob(staging, image.manifest_digest, manifest_blob)
        (staging / MANIFEST_FILE).write_bytes(manifest_blob)

        index = ManifestIndex(
            manifests=[
                Descriptor(
                    media_type=OCI_IMAGE_MANIFEST,
                    size=len(manifest_blob),
                    digest=image.manifest_digest,
                )
            ]
        )
        (staging / INDEX_FILE).write_bytes(index.to_canonical_json())
        (staging / OCI_LAYOUT_FILE).write_text(
            json.dumps({"imageLayoutVersion": OCI_LAYOUT_VERSION})
        )

        if output.exists():
            shutil.rmtree(output)
        staging.rename(output)
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    logger.info("Wrote OCI layout to %s (manifest %s)", output, image.manifest_digest)
    return output


def read_manifest(path: Path) -> Manifest:
    """Read ``manifest.json`` from a layout.

    Raises:
        ValidationError: If the layout or manifest is missing or invalid.
    """
    if not (path / OCI_LAYOUT_FILE).is_file():
        raise ValidationError(f"Not an OCI layout: {path}", code="invalid_layout")
    try:
        return Manifest.model_validate_json((path / MANIFEST_FILE).read_bytes())
    except FileNotFoundError as e:
        raise ValidationError(
            f"Layout has no {MANIFEST_FILE}: {path}", code="invalid_layout"
        ) from e
    except PydanticValidationError as e:
        raise ValidationError(
            f"Invalid manifest in {path}: {e}", code="invalid_layout"
        ) from e


def verify_layout(path: Path) -> Manifest:
    """Check that every blob the manifest references exists and matches.

    Returns:
        The layout's manifest.

    Raises:
        ValidationError: If the layout is malformed or a blob is missing.
        DigestMismatch: If a blob does not hash to its file name or has
            the wrong size.
    """
    manifest = read_manifest(path)
    for descriptor in [manifest.config, *manifest.layers]:
        blob = blob_path(path, descriptor.digest)
        if not blob.is_file():
            raise ValidationError(
                f"Missing blob {descriptor.digest}", code="missing_blob"
            )
        data = blob.read_bytes()
        actual = sha256_digest(data)
        if actual != descriptor.digest:
            raise DigestMismatch(
                f"Blob {blob.name} does not match its digest",
                expected=descriptor.digest,
                actual=actual,
            )
        if len(data) != descriptor.size:
            raise DigestMismatch(
                f"Blob {blob.name} has size {len(data)}, expected {descriptor.size}",
                expected=descriptor.digest,
                actual=actual,
            )
    logger.debug("Verified layout %s", path)
    return manifest


__all__ = [
    "BLOBS_DIR",
    "INDEX_FILE",
    "MANIFEST_FILE",
    "OCI_LAYOUT_FILE",
    "blob_path",
    "read_manifest",
    "verify_layout",
    "write_layout",
]
