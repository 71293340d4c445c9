"""Host platform mapping for multi-architecture image selection."""

import platform

TARGET_OS = "linux"

_ARCH_MAP = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "ppc64le": "ppc64le",
    "powerpc64le": "ppc64le",
    "s390x": "s390x",
}


def host_architecture(machine: str | None = None) -> str:
    """Map a machine name to the OCI ``platform.architecture`` value.

    Args:
        machine: Machine name; defaults to ``platform.machine()``.

    Returns:
        OCI architecture name. Unknown machines map to ``amd64``.
    """
    if machine is None:
        machine = platform.machine()
    machine = machine.lower()
    if machine in _ARCH_MAP:
        return _ARCH_MAP[machine]
    if machine.startswith("arm"):
        return "arm"
    return "amd64"


__all__ = ["TARGET_OS", "host_architecture"]
