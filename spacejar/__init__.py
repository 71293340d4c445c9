"""spacejar - OCI image builder for Python applications.

This package builds an OCI image layout for a Python project without an
image-build daemon: it pulls a base image from a registry, packs a virtual
environment, the project's dependencies and its source tree into layers,
and writes blobs, config and manifest to disk.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
