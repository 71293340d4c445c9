"""Content-addressed layer and config cache.

Layout under the cache directory::

    index.json                 logical key -> entry
    layer_<hex>.bin            JSON header line + compressed layer bytes
    config_<key>_<hash>.json   serialized ImageConfig
    .locks/                    per-key build locks

The index is the only source of truth. It is rewritten after every
mutation, and every file is written to a temporary name and renamed
into place. A crash can orphan a file (removed by the next cleanup) or
leave an entry whose file is gone (read as a miss).
"""

from __future__ import annotations

import fcntl
import gzip
import hashlib
import logging
import os
import re
import tempfile
import threading
import time
import zlib
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from spacejar.cache.models import (
    CacheIndex,
    ConfigCacheEntry,
    LayerCacheEntry,
    LayerHeader,
    LayerMetadata,
)
from spacejar.image.config import ImageConfig
from spacejar.layers.layer import Layer, digest_hex, sha256_digest
from spacejar.types import OCI_LAYER_TAR, LayerKind

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"
LOCK_DIR = ".locks"
LAYER_PREFIX = "layer_"
LAYER_SUFFIX = ".bin"
CONFIG_PREFIX = "config_"
CONFIG_SUFFIX = ".json"

DEPENDENCY_KEY_PREFIX = "deps:"

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class CacheCorruption(ValueError):
    """Raised internally when a stored layer file cannot be decoded."""


@dataclass
class CleanupResult:
    """Summary of a cleanup pass."""

    removed_layers: list[str] = field(default_factory=list)
    removed_configs: list[str] = field(default_factory=list)
    removed_files: list[str] = field(default_factory=list)
    bytes_freed: int = 0


def layer_filename(digest: str) -> str:
    """Return the storage file name for a layer digest."""
    return f"{LAYER_PREFIX}{digest_hex(digest)}{LAYER_SUFFIX}"


def config_filename(key: str) -> str:
    """Return the storage file name for a config key."""
    safe_key = _UNSAFE_KEY_CHARS.sub("_", key)[:64]
    key_hash = hashlib.sha256(key.encode("utf-8")).hexdigest()[:8]
    return f"{CONFIG_PREFIX}{safe_key}_{key_hash}{CONFIG_SUFFIX}"


def hash_file(path: Path) -> str:
    """Return the hex sha256 of a file's contents."""
    sha256 = hashlib.sha256()
    with path.open("rb") as f:
        while chunk := f.read(64 * 1024):
            sha256.update(chunk)
    return sha256.hexdigest()


def write_atomic(path: Path, data: bytes) -> None:
    """Write *data* to *path* through a temporary file and rename."""
    fd, tmp_name = tempfile.mkstemp(
        dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def encode_layer(layer: Layer) -> bytes:
    """Serialize a layer as a JSON header line followed by its blob."""
    header = LayerHeader(
        media_type=layer.media_type,
        digest=layer.digest,
        size=layer.size,
        compressed_size=layer.compressed_size,
        diff_id=layer.diff_id,
        annotations=layer.annotations,
    )
    return header.model_dump_json().encode("utf-8") + b"\n" + layer.data


def decode_layer(raw: bytes) -> Layer:
    """Inverse of :func:`encode_layer`.

    Raises:
        CacheCorruption: If the header is missing or malformed.
    """
    header_line, sep, data = raw.partition(b"\n")
    if not sep:
        raise CacheCorruption("Layer file has no header")
    try:
        header = LayerHeader.model_validate_json(header_line)
    except PydanticValidationError as e:
        raise CacheCorruption(f"Invalid layer header: {e}") from e
    return Layer(data=data, **header.model_dump())


def _layer_inconsistency(layer: Layer) -> str | None:
    """Describe how a decoded layer disagrees with its header, if it does."""
    if layer.compressed_size != len(layer.data):
        return f"compressed_size {layer.compressed_size} != {len(layer.data)}"
    if layer.media_type == OCI_LAYER_TAR:
        tar_bytes = layer.data
    else:
        try:
            tar_bytes = gzip.decompress(layer.data)
        except (OSError, EOFError, zlib.error) as e:
            return f"cannot decompress: {e}"
    if layer.size != len(tar_bytes):
        return f"size {layer.size} != {len(tar_bytes)}"
    diff_id = sha256_digest(tar_bytes)
    if layer.diff_id != diff_id:
        return f"diff_id {layer.diff_id} != {diff_id}"
    return None


@contextmanager
def cache_lock(
    cache_dir: Path,
    key: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire an exclusive lock for a logical cache key.

    Builds sharing a cache directory hold this lock so that only one of
    them populates a given key at a time.

    Args:
        cache_dir: Cache root; lock files live under ``.locks/``.
        key: Logical key to lock on.
        timeout: Acquisition timeout in seconds (None = blocking).

    Raises:
        TimeoutError: If the lock cannot be acquired within timeout.
    """
    lock_dir = cache_dir / LOCK_DIR
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_file = lock_dir / f"cache_{_UNSAFE_KEY_CHARS.sub('_', key)[:64]}.lock"

    logger.debug("Acquiring cache lock for key: %s", key)

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for cache lock on {key}"
                        ) from None
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Cache lock acquired for key: %s", key)
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Cache lock released for key: %s", key)
        os.close(fd)


class ContentAddressedCache:
    """Persistent key -> layer/config cache with integrity checks.

    Reads never fail: a missing, unreadable or tampered artifact is
    reported as a miss. Methods are blocking; async callers should run
    them in a worker thread.
    """

    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = cache_dir
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self.index = self._load_index()

    @property
    def index_path(self) -> Path:
        return self.cache_dir / INDEX_FILE

    def _load_index(self) -> CacheIndex:
        if not self.index_path.exists():
            return CacheIndex()
        try:
            return CacheIndex.model_validate_json(self.index_path.read_bytes())
        except (OSError, PydanticValidationError) as e:
            logger.warning("Ignoring unreadable cache index %s: %s", self.index_path, e)
            return CacheIndex()

    def _save_index(self) -> None:
        data = self.index.model_dump_json(indent=2).encode("utf-8")
        write_atomic(self.index_path, data)

    def get_layer(self, key: str) -> Layer | None:
        """Return the cached layer for *key*, or None on any kind of miss."""
        entry = self.index.layers.get(key)
        if entry is None:
            return None

        path = self.cache_dir / entry.storage_path
        try:
            layer = decode_layer(path.read_bytes())
        except FileNotFoundError:
            logger.warning("Cache file for %s is missing: %s", key, path)
            return None
        except (OSError, CacheCorruption) as e:
            logger.warning("Cannot read cached layer %s: %s", key, e)
            return None

        actual = sha256_digest(layer.data)
        if actual != entry.content_digest or actual != layer.digest:
            logger.warning(
                "Cached layer %s failed verification (expected %s, got %s)",
                key,
                entry.content_digest,
                actual,
            )
            return None

        problem = _layer_inconsistency(layer)
        if problem is not None:
            logger.warning("Cached layer %s is inconsistent: %s", key, problem)
            return None

        logger.debug("Cache hit for %s (%s)", key, layer.digest[:19])
        return layer

    def store_layer(self, key: str, layer: Layer, metadata: LayerMetadata) -> None:
        """Store *layer* under *key* and persist the index."""
        filename = layer_filename(layer.digest)
        with self._lock:
            write_atomic(self.cache_dir / filename, encode_layer(layer))
            self.index.layers[key] = LayerCacheEntry(
                logical_key=key,
                content_digest=layer.digest,
                storage_path=filename,
                timestamp=datetime.now(UTC),
                metadata=metadata,
            )
            self._save_index()
        logger.debug("Cached layer %s as %s", key, filename)

    def get_config(self, key: str) -> ImageConfig | None:
        """Return the cached config for *key*, or None on any kind of miss."""
        entry = self.index.configs.get(key)
        if entry is None:
            return None
        path = self.cache_dir / entry.storage_path
        try:
            return ImageConfig.model_validate_json(path.read_bytes())
        except (OSError, PydanticValidationError) as e:
            logger.warning("Cannot read cached config %s: %s", key, e)
            return None

    def store_config(self, key: str, config: ImageConfig) -> None:
        """Store *config* under *key* and persist the index."""
        filename = config_filename(key)
        with self._lock:
            data = config.model_dump_json().encode("utf-8")
            write_atomic(self.cache_dir / filename, data)
            self.index.configs[key] = ConfigCacheEntry(
                logical_key=key,
                storage_path=filename,
                timestamp=datetime.now(UTC),
            )
            self._save_index()

    def get_dependency_layer(self, requirements: Path) -> Layer | None:
        """Return the dependency layer built from this exact requirements file."""
        key = self.index.dependencies.get(hash_file(requirements))
        if key is None:
            return None
        return self.get_layer(key)

    def store_dependency_layer(self, requirements: Path, layer: Layer) -> str:
        """Cache a dependency layer keyed by the requirements file hash.

        Returns:
            The logical key the layer was stored under.
        """
        requirements_hash = hash_file(requirements)
        key = f"{DEPENDENCY_KEY_PREFIX}{requirements_hash}"
        metadata = LayerMetadata(
            layer_kind=LayerKind.DEPENDENCIES, source_hash=requirements_hash
        )
        self.store_layer(key, layer, metadata)
        with self._lock:
            self.index.dependencies[requirements_hash] = key
            self._save_index()
        return key

    def list_entries(self) -> list[LayerCacheEntry]:
        """Return layer entries, newest first."""
        return sorted(
            self.index.layers.values(), key=lambda e: e.timestamp, reverse=True
        )

    def list_configs(self) -> list[ConfigCacheEntry]:
        """Return config entries, newest first."""
        return sorted(
            self.index.configs.values(), key=lambda e: e.timestamp, reverse=True
        )

    def cleanup(self, max_age: timedelta, now: datetime | None = None) -> CleanupResult:
        """Evict old or dangling entries and delete unreferenced files.

        Entries aged ``max_age`` or more are removed, so a zero age clears
        the cache. Failure to delete a file is logged and skipped.
        """
        now = now or datetime.now(UTC)
        result = CleanupResult()

        with self._lock:
            for key, entry in list(self.index.layers.items()):
                expired = now - entry.timestamp >= max_age
                if expired or not (self.cache_dir / entry.storage_path).is_file():
                    del self.index.layers[key]
                    result.removed_layers.append(key)

            for key, config_entry in list(self.index.configs.items()):
                expired = now - config_entry.timestamp >= max_age
                config_path = self.cache_dir / config_entry.storage_path
                if expired or not config_path.is_file():
                    del self.index.configs[key]
                    result.removed_configs.append(key)

            self.index.dependencies = {
                requirements_hash: key
                for requirements_hash, key in self.index.dependencies.items()
                if key in self.index.layers
            }
            self._save_index()

            referenced = {e.storage_path for e in self.index.layers.values()}
            referenced |= {e.storage_path for e in self.index.configs.values()}
            for path in sorted(self.cache_dir.iterdir()):
                if not self._is_artifact(path) or path.name in referenced:
                    continue
                try:
                    size = path.stat().st_size
                    path.unlink()
                except OSError as e:
                    logger.warning("Failed to remove cache file %s: %s", path, e)
                    continue
                result.removed_files.append(path.name)
                result.bytes_freed += size

        logger.info(
            "Cache cleanup removed %d layers, %d configs, %d files (%d bytes)",
            len(result.removed_layers),
            len(result.removed_configs),
            len(result.removed_files),
            result.bytes_freed,
        )
        return result

    @staticmethod
    def _is_artifact(path: Path) -> bool:
        if not path.is_file():
            return False
        name = path.name
        return (name.startswith(LAYER_PREFIX) and name.endswith(LAYER_SUFFIX)) or (
            name.startswith(CONFIG_PREFIX) and name.endswith(CONFIG_SUFFIX)
        )


__all__ = [
    "CleanupResult",
    "ContentAddressedCache",
    "cache_lock",
    "config_filename",
    "decode_layer",
    "encode_layer",
    "hash_file",
    "layer_filename",
    "write_atomic",
]
