"""Image reference parsing.

Splits references such as ``python:3.12-slim``, ``myorg/img:1.2`` or
``registry.example.com/ns/img:tag`` into registry, repository and tag.
"""

from __future__ import annotations

from spacejar.errors import ValidationError

DEFAULT_REGISTRY = "registry-1.docker.io"
DEFAULT_TAG = "latest"
OFFICIAL_NAMESPACE = "library"


def split_tag(repo_tag: str) -> tuple[str, str]:
    """Split ``name[:tag]`` or ``name@digest`` into name and tag.

    Args:
        repo_tag: Last path segment of an image reference.

    Returns:
        Tuple of (name, tag-or-digest).

    Raises:
        ValidationError: If the segment has more than one ``:`` or an
            empty name or tag.
    """
    if "@" in repo_tag:
        name, _, digest = repo_tag.partition("@")
        if not name or not digest:
            raise ValidationError(
                f"Invalid repository@digest format: {repo_tag}",
                code="invalid_reference",
            )
        return name, digest

    parts = repo_tag.split(":")
    if len(parts) == 1:
        name, tag = parts[0], DEFAULT_TAG
    elif len(parts) == 2:
        name, tag = parts
    else:
        raise ValidationError(
            f"Invalid repository:tag format: {repo_tag}", code="invalid_reference"
        )

    if not name or not tag:
        raise ValidationError(
            f"Invalid repository:tag format: {repo_tag}", code="invalid_reference"
        )
    return name, tag


def _looks_like_registry(segment: str) -> bool:
    return "." in segment or ":" in segment


def parse_reference(reference: str) -> tuple[str, str, str]:
    """Parse an image reference.

    Args:
        reference: Image reference string.

    Returns:
        Tuple of (registry, repository, tag).

    Raises:
        ValidationError: If the reference has an unsupported shape.
    """
    parts = reference.split("/")
    if not reference or any(not part for part in parts):
        raise ValidationError(
            f"Invalid image reference format: {reference!r}", code="invalid_reference"
        )

    if len(parts) == 1:
        repo, tag = split_tag(parts[0])
        return DEFAULT_REGISTRY, f"{OFFICIAL_NAMESPACE}/{repo}", tag

    if len(parts) == 2:
        repo, tag = split_tag(parts[1])
        if _looks_like_registry(parts[0]):
            return parts[0], repo, tag
        return DEFAULT_REGISTRY, f"{parts[0]}/{repo}", tag

    if len(parts) == 3:
        repo, tag = split_tag(parts[2])
        return parts[0], f"{parts[1]}/{repo}", tag

    raise ValidationError(
        f"Invalid image reference format: {reference}", code="invalid_reference"
    )


def registry_endpoint(registry: str, repository: str) -> str:
    """Return the ``/v2/<repository>`` base URL for a repository.

    Docker Hub requires the ``library/`` prefix for unnamespaced images.
    """
    if registry == DEFAULT_REGISTRY and "/" not in repository:
        repository = f"{OFFICIAL_NAMESPACE}/{repository}"
    return f"https://{registry}/v2/{repository}"


__all__ = [
    "DEFAULT_REGISTRY",
    "DEFAULT_TAG",
    "OFFICIAL_NAMESPACE",
    "parse_reference",
    "registry_endpoint",
    "split_tag",
]
