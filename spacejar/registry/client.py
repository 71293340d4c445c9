"""Container registry client.

This module handles:
- Bearer token authentication (probe, challenge parsing, token fetch)
- Manifest retrieval, including multi-architecture index resolution
- Concurrent blob download with digest verification
- Combining the base image's layers into a single layer
"""

from __future__ import annotations

import asyncio
import dataclasses
import gzip
import hashlib
import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from spacejar import __version__
from spacejar.concurrency import gather_first_error
from spacejar.config import Settings, get_settings
from spacejar.errors import (
    AuthenticationError,
    DigestMismatch,
    ManifestParseError,
    NetworkError,
    PlatformNotFound,
)
from spacejar.image.config import ImageConfig
from spacejar.image.models import Descriptor, Manifest, ManifestIndex
from spacejar.layers.layer import Layer, sha256_digest
from spacejar.registry.platform import TARGET_OS, host_architecture
from spacejar.registry.reference import (
    DEFAULT_REGISTRY,
    parse_reference,
    registry_endpoint,
)
from spacejar.types import (
    ANNOTATION_BASE_NAME,
    DOCKER_LAYER_TAR,
    DOCKER_MANIFEST_LIST,
    DOCKER_MANIFEST_V2,
    OCI_IMAGE_INDEX,
    OCI_IMAGE_MANIFEST,
    OCI_LAYER_TAR,
    OCI_LAYER_TAR_GZIP,
)

logger = logging.getLogger(__name__)

MANIFEST_ACCEPT = ", ".join(
    [DOCKER_MANIFEST_V2, DOCKER_MANIFEST_LIST, OCI_IMAGE_INDEX, OCI_IMAGE_MANIFEST]
)

DOCKER_HUB_AUTH_URL = "https://auth.docker.io/token"
DOCKER_HUB_SERVICE = "registry.docker.io"

GZIP_MAGIC = b"\x1f\x8b"

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


class TokenResponse(BaseModel):
    """Token endpoint response body."""

    token: str | None = None
    access_token: str | None = None
    expires_in: int | None = None


def parse_www_authenticate(header: str) -> dict[str, str] | None:
    """Parse a ``Bearer`` challenge into its parameters.

    Args:
        header: Value of the ``WWW-Authenticate`` response header.

    Returns:
        Mapping such as ``{"realm": ..., "service": ..., "scope": ...}``,
        or None if the challenge is not a Bearer challenge.
    """
    scheme, _, params = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return dict(_CHALLENGE_PARAM.findall(params))


def token_endpoint(registry: str, challenge: dict[str, str] | None) -> tuple[str, str]:
    """Return ``(realm, service)`` for the token request."""
    if challenge and challenge.get("realm"):
        return challenge["realm"], challenge.get("service", registry)
    if registry == DEFAULT_REGISTRY:
        return DOCKER_HUB_AUTH_URL, DOCKER_HUB_SERVICE
    return f"https://{registry}/token", registry


def is_attestation(entry: Descriptor) -> bool:
    """Return True if an index entry is an attestation manifest."""
    return any("attestation" in value for value in (entry.annotations or {}).values())


def is_index(content_type: str, body: dict[str, Any]) -> bool:
    """Return True if a manifest response is an index or manifest list."""
    if "manifest.list" in content_type or "image.index" in content_type:
        return True
    if body.get("mediaType") in (DOCKER_MANIFEST_LIST, OCI_IMAGE_INDEX):
        return True
    return "manifests" in body and "layers" not in body


def _is_gzip_layer(descriptor: Descriptor, blob: bytes) -> bool:
    if descriptor.media_type.endswith("gzip"):
        return True
    if descriptor.media_type in (OCI_LAYER_TAR, DOCKER_LAYER_TAR):
        return False
    if blob.startswith(GZIP_MAGIC):
        return True
    raise ManifestParseError(
        f"Unsupported layer media type: {descriptor.media_type}",
        code="unsupported_layer_type",
    )


def combine_layers(descriptors: Sequence[Descriptor], blobs: Sequence[bytes]) -> Layer:
    """Combine downloaded blobs, in manifest order, into one layer.

    The concatenation of gzip members is itself a valid gzip stream, so
    ``diff_id`` is the digest of the decompressed concatenation.

    Raises:
        ManifestParseError: If a blob uses an unsupported compression or
            gzip and plain tar layers are mixed.
    """
    gzipped = [_is_gzip_layer(d, b) for d, b in zip(descriptors, blobs, strict=True)]
    if any(gzipped) and not all(gzipped):
        raise ManifestParseError(
            "Cannot combine compressed and uncompressed layers",
            code="unsupported_layer_type",
        )

    combined = b"".join(blobs)
    uncompressed = hashlib.sha256()
    size = 0
    for blob, compressed in zip(blobs, gzipped, strict=True):
        try:
            part = gzip.decompress(blob) if compressed else blob
        except (OSError, EOFError) as e:
            raise ManifestParseError(
                f"Layer is not a valid gzip stream: {e}",
                code="unsupported_layer_type",
            ) from e
        uncompressed.update(part)
        size += len(part)

    return Layer(
        media_type=OCI_LAYER_TAR_GZIP if all(gzipped) else OCI_LAYER_TAR,
        digest=sha256_digest(combined),
        size=size,
        compressed_size=len(combined),
        data=combined,
        diff_id=f"sha256:{uncompressed.hexdigest()}",
    )


class RegistryClient:
    """Async client for the container registry v2 API.

    Use as an async context manager so the underlying connection pool is
    closed. An existing ``httpx.AsyncClient`` can be injected; it is then
    left open on exit.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        architecture: str | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.architecture = architecture or host_architecture()
        self._owns_client = client is None
        self._client = client or self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            self.settings.request_timeout, connect=self.settings.connect_timeout
        )
        limits = httpx.Limits(
            max_keepalive_connections=self.settings.max_idle_connections,
            keepalive_expiry=self.settings.pool_idle_timeout,
        )
        return httpx.AsyncClient(
            timeout=timeout,
            limits=limits,
            headers={"User-Agent": f"spacejar/{__version__}"},
        )

    async def __aenter__(self) -> RegistryClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the connection pool if this client created it."""
        if self._owns_client:
            await self._client.aclose()

    async def _get(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        auth: tuple[str, str] | None = None,
    ) -> httpx.Response:
        try:
            return await self._client.get(
                url,
                headers=headers,
                params=params,
                auth=auth,
                follow_redirects=True,
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"Timeout requesting {url}: {e}", code="timeout") from e
        except httpx.RequestError as e:
            raise NetworkError(f"Request failed for {url}: {e}") from e

    def _credentials(self) -> tuple[str, str] | None:
        if self.settings.registry_username and self.settings.registry_password:
            return (
                self.settings.registry_username,
                self.settings.registry_password.get_secret_value(),
            )
        return None

    async def authenticate(
        self, registry: str, repository: str, reference: str = "latest"
    ) -> str:
        """Obtain a pull token for *repository*, if the registry wants one.

        Probes the manifest endpoint without credentials. Only a 401
        response triggers a token request; any other status means no
        token is needed and an empty string is returned.

        Raises:
            AuthenticationError: If the token endpoint rejects the request
                or returns no token.
            NetworkError: On transport failures.
        """
        probe_url = f"{registry_endpoint(registry, repository)}/manifests/{reference}"
        probe = await self._get(probe_url, headers={"Accept": MANIFEST_ACCEPT})
        if probe.status_code != httpx.codes.UNAUTHORIZED:
            logger.debug("Registry %s did not request authentication", registry)
            return ""

        challenge = parse_www_authenticate(probe.headers.get("www-authenticate", ""))
        realm, service = token_endpoint(registry, challenge)
        params = {"service": service, "scope": f"repository:{repository}:pull"}
        logger.debug("Requesting token from %s for %s", realm, repository)

        response = await self._get(realm, params=params, auth=self._credentials())
        if not response.is_success:
            raise AuthenticationError(
                f"Token request failed with status {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = TokenResponse.model_validate(response.json())
        except (json.JSONDecodeError, PydanticValidationError) as e:
            raise AuthenticationError(
                f"Invalid token response: {e}", code="invalid_token_response"
            ) from e

        token = body.token or body.access_token
        if not token:
            raise AuthenticationError(
                "Token response contained no token", code="invalid_token_response"
            )
        return token

    def _check_manifest_response(self, response: httpx.Response, url: str) -> None:
        if response.is_success:
            return
        code = (
            "authentication_error"
            if response.status_code
            in (httpx.codes.UNAUTHORIZED, httpx.codes.FORBIDDEN)
            else "manifest_http_error"
        )
        raise AuthenticationError(
            f"HTTP {response.status_code} fetching manifest {url}",
            status_code=response.status_code,
            code=code,
        )

    @staticmethod
    def _json_body(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except json.JSONDecodeError as e:
            raise ManifestParseError(f"Manifest is not valid JSON: {e}") from e
        if not isinstance(body, dict):
            raise ManifestParseError("Manifest is not a JSON object")
        return body

    def select_platform(self, index: ManifestIndex) -> Descriptor:
        """Pick the index entry matching the host platform.

        Attestation entries are ignored.

        Raises:
            PlatformNotFound: If no entry matches.
        """
        for entry in index.manifests:
            if is_attestation(entry) or entry.platform is None:
                continue
            if (
                entry.platform.architecture == self.architecture
                and entry.platform.os == TARGET_OS
            ):
                return entry
        raise PlatformNotFound(self.architecture, TARGET_OS)

    async def fetch_manifest(
        self, registry: str, repository: str, tag: str, token: str
    ) -> Manifest:
        """Fetch the schema-2 image manifest for ``repository:tag``.

        An index or manifest list is resolved to the host platform's
        entry, which is then fetched by digest and checked against it.

        Raises:
            AuthenticationError: On 401/403.
            NetworkError: On transport failures or other HTTP errors.
            ManifestParseError: If the manifest is malformed or not schema-2.
            PlatformNotFound: If an index has no entry for the host.
            DigestMismatch: If the platform manifest does not match its digest.
        """
        base_url = f"{registry_endpoint(registry, repository)}/manifests"
        headers = {"Accept": MANIFEST_ACCEPT}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        url = f"{base_url}/{tag}"
        response = await self._get(url, headers=headers)
        self._check_manifest_response(response, url)
        body = self._json_body(response)

        if is_index(response.headers.get("content-type", ""), body):
            try:
                index = ManifestIndex.model_validate(body)
            except PydanticValidationError as e:
                raise ManifestParseError(f"Invalid image index: {e}") from e

            entry = self.select_platform(index)
            logger.info(
                "Resolved %s:%s for %s/%s to %s",
                repository,
                tag,
                TARGET_OS,
                self.architecture,
                entry.digest,
            )

            url = f"{base_url}/{entry.digest}"
            response = await self._get(url, headers=headers)
            self._check_manifest_response(response, url)
            actual = sha256_digest(response.content)
            if actual != entry.digest:
                raise DigestMismatch(
                    f"Manifest digest mismatch for {url}",
                    expected=entry.digest,
                    actual=actual,
                )
            body = self._json_body(response)
            if is_index(response.headers.get("content-type", ""), body):
                raise ManifestParseError("Nested image indexes are not supported")

        return self._parse_manifest(body)

    @staticmethod
    def _parse_manifest(body: dict[str, Any]) -> Manifest:
        if body.get("schemaVersion") != 2:
            raise ManifestParseError(
                f"Unsupported manifest schema version: {body.get('schemaVersion')}",
                code="unsupported_schema",
            )
        if "config" not in body or "layers" not in body:
            raise ManifestParseError("Manifest is missing config or layers")
        try:
            return Manifest.model_validate(body)
        except PydanticValidationError as e:
            raise ManifestParseError(f"Invalid manifest: {e}") from e

    async def download_blob(
        self, registry: str, repository: str, digest: str, token: str
    ) -> bytes:
        """Download one blob and verify it against *digest*.

        Raises:
            NetworkError: On transport failures or non-2xx responses.
            DigestMismatch: If the content does not hash to *digest*.
        """
        url = f"{registry_endpoint(registry, repository)}/blobs/{digest}"
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        response = await self._get(url, headers=headers)
        if not response.is_success:
            raise NetworkError(
                f"HTTP {response.status_code} downloading blob {digest}",
                code="http_error",
            )

        data = response.content
        actual = sha256_digest(data)
        if actual != digest:
            raise DigestMismatch(
                f"Blob digest mismatch for {digest}", expected=digest, actual=actual
            )
        logger.debug("Downloaded blob %s (%d bytes)", digest[:19], len(data))
        return data

    async def download_and_process_layers(
        self, registry: str, repository: str, manifest: Manifest, token: str
    ) -> Layer:
        """Download every layer of *manifest* and combine them into one layer.

        Downloads run concurrently, bounded by ``max_concurrent_downloads``;
        the blobs are combined in manifest order.
        """
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_downloads)

        async def fetch(descriptor: Descriptor) -> bytes:
            async with semaphore:
                return await self.download_blob(
                    registry, repository, descriptor.digest, token
                )

        blobs = await gather_first_error(
            *(fetch(descriptor) for descriptor in manifest.layers)
        )
        layer = await asyncio.to_thread(combine_layers, manifest.layers, blobs)
        logger.info(
            "Combined %d base layers into %s (%d bytes)",
            len(blobs),
            layer.digest[:19],
            layer.compressed_size,
        )
        return layer

    async def pull(self, reference: str) -> tuple[Layer, ImageConfig]:
        """Pull a base image as a single layer plus its (default) config."""
        registry, repository, tag = parse_reference(reference)
        logger.info("Pulling %s from %s", f"{repository}:{tag}", registry)

        token = await self.authenticate(registry, repository, tag)
        manifest = await self.fetch_manifest(registry, repository, tag, token)
        layer = await self.download_and_process_layers(
            registry, repository, manifest, token
        )
        annotations = {**layer.annotations, ANNOTATION_BASE_NAME: reference}
        return dataclasses.replace(layer, annotations=annotations), ImageConfig()


@dataclass
class RegistryLayerSource:
    """Layer source that pulls a base image from a registry."""

    client: RegistryClient
    reference: str

    async def build(self) -> Layer:
        layer, _ = await self.client.pull(self.reference)
        return layer


__all__ = [
    "MANIFEST_ACCEPT",
    "RegistryClient",
    "RegistryLayerSource",
    "TokenResponse",
    "combine_layers",
    "is_attestation",
    "is_index",
    "parse_www_authenticate",
    "token_endpoint",
]
