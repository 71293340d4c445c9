"""Layer construction.

This module handles:
- Walking a directory tree (following symlinks) in a deterministic order
- Packing regular files into a normalized tar stream
- Single-pass gzip compression at a fixed level
- Computing the blob digest (compressed) and diff ID (uncompressed)

The same tree always produces the same digest, which the cache and
reproducible builds rely on.
"""

from __future__ import annotations

import asyncio
import gzip
import hashlib
import io
import logging
import os
import stat
import tarfile
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from spacejar.types import OCI_LAYER_TAR_GZIP, SHA256_PREFIX

logger = logging.getLogger(__name__)

DEFAULT_COMPRESSION_LEVEL = 6


def sha256_digest(data: bytes) -> str:
    """Return 'sha256:<hex>' digest for *data*."""
    return f"{SHA256_PREFIX}{hashlib.sha256(data).hexdigest()}"


def digest_hex(digest: str) -> str:
    """Strip the algorithm prefix from a digest."""
    return digest.split(":", 1)[1] if ":" in digest else digest


@dataclass(frozen=True)
class Layer:
    """A single OCI layer blob.

    Attributes:
        media_type: OCI layer media type.
        digest: sha256 of ``data`` (the stored, compressed blob).
        size: Length of the uncompressed tar stream.
        compressed_size: Length of ``data``.
        data: Compressed layer bytes.
        diff_id: sha256 of the uncompressed tar stream.
        annotations: Descriptor annotations.
    """

    media_type: str
    digest: str
    size: int
    compressed_size: int
    data: bytes = field(repr=False)
    diff_id: str
    annotations: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_tar(
        cls,
        tar_bytes: bytes,
        compression_level: int = DEFAULT_COMPRESSION_LEVEL,
        annotations: dict[str, str] | None = None,
    ) -> Layer:
        """Compress an uncompressed tar stream into a layer."""
        compressed = compress(tar_bytes, compression_level)
        return cls(
            media_type=OCI_LAYER_TAR_GZIP,
            digest=sha256_digest(compressed),
            size=len(tar_bytes),
            compressed_size=len(compressed),
            data=compressed,
            diff_id=sha256_digest(tar_bytes),
            annotations=dict(annotations or {}),
        )

    @classmethod
    def from_dir(
        cls,
        path: Path,
        prefix: str = "",
        annotations: dict[str, str] | None = None,
        compression_level: int = DEFAULT_COMPRESSION_LEVEL,
    ) -> Layer:
        """Pack a directory into a layer.

        Args:
            path: Directory to pack.
            prefix: Optional directory inside the image under which the
                files are placed (e.g. ``venv``).
            annotations: Descriptor annotations for the layer.
            compression_level: gzip level; fixed per build.

        Returns:
            Layer holding the compressed archive.

        Raises:
            OSError: If a file cannot be read or a symlink is broken.
        """
        tar_bytes = archive_dir(path, prefix)
        layer = cls.from_tar(tar_bytes, compression_level, annotations)
        logger.debug(
            "Packed %s (%d bytes, %d compressed, digest=%s)",
            path,
            layer.size,
            layer.compressed_size,
            layer.digest[:19],
        )
        return layer


def compress(data: bytes, level: int = DEFAULT_COMPRESSION_LEVEL) -> bytes:
    """Gzip *data* deterministically (fixed level, zero header mtime)."""
    return gzip.compress(data, compresslevel=level, mtime=0)


def iter_regular_files(root: Path) -> Iterator[tuple[str, Path]]:
    """Yield ``(relative_posix_path, path)`` for every regular file under *root*.

    Symlinks are followed. A directory reached more than once through
    symlinks is only walked the first time. Results are sorted by
    relative path.

    Raises:
        OSError: If an entry cannot be stat'ed (including broken symlinks).
    """
    files: list[tuple[str, Path]] = []
    seen_dirs: set[tuple[int, int]] = set()
    stack: list[tuple[Path, str]] = [(root, "")]

    while stack:
        directory, rel_dir = stack.pop()
        dir_stat = directory.stat()
        dir_key = (dir_stat.st_dev, dir_stat.st_ino)
        if dir_key in seen_dirs:
            logger.debug("Skipping already visited directory %s", directory)
            continue
        seen_dirs.add(dir_key)

        with os.scandir(directory) as entries:
            for entry in entries:
                entry_path = Path(entry.path)
                rel_path = f"{rel_dir}/{entry.name}" if rel_dir else entry.name
                entry_stat = entry_path.stat()
                if stat.S_ISDIR(entry_stat.st_mode):
                    stack.append((entry_path, rel_path))
                elif stat.S_ISREG(entry_stat.st_mode):
                    files.append((rel_path, entry_path))

    files.sort(key=lambda item: item[0])
    yield from files


def _dir_info(name: str) -> tarfile.TarInfo:
    info = tarfile.TarInfo(name=name)
    info.type = tarfile.DIRTYPE
    info.mode = 0o755
    info.mtime = 0
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    return info


def archive_dir(path: Path, prefix: str = "") -> bytes:
    """Build a normalized, uncompressed tar stream of *path*.

    A non-empty *prefix* gets directory entries for each of its parts, so
    the same tree packed under different prefixes yields different layers.
    Entries carry mtime 0, uid/gid 0 and empty owner names; permission
    bits are kept.
    """
    prefix = prefix.strip("/")
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        parts = prefix.split("/") if prefix else []
        for depth in range(1, len(parts) + 1):
            tar.addfile(_dir_info("/".join(parts[:depth])))
        for rel_path, file_path in iter_regular_files(path):
            file_stat = file_path.stat()
            info = tarfile.TarInfo(name=f"{prefix}/{rel_path}" if prefix else rel_path)
            info.size = file_stat.st_size
            info.mode = stat.S_IMODE(file_stat.st_mode)
            info.mtime = 0
            info.uid = 0
            info.gid = 0
            info.uname = ""
            info.gname = ""
            with file_path.open("rb") as f:
                tar.addfile(info, f)
    return buf.getvalue()


class LayerSource(Protocol):
    """Anything that can produce a layer."""

    async def build(self) -> Layer:
        """Produce the layer."""
        ...


@dataclass
class DirectoryLayerSource:
    """Layer source backed by a directory on disk."""

    path: Path
    prefix: str = ""
    annotations: dict[str, str] = field(default_factory=dict)
    compression_level: int = DEFAULT_COMPRESSION_LEVEL

    async def build(self) -> Layer:
        return await asyncio.to_thread(
            Layer.from_dir,
            self.path,
            self.prefix,
            self.annotations,
            self.compression_level,
        )


__all__ = [
    "DEFAULT_COMPRESSION_LEVEL",
    "DirectoryLayerSource",
    "Layer",
    "LayerSource",
    "archive_dir",
    "compress",
    "digest_hex",
    "iter_regular_files",
    "sha256_digest",
]
