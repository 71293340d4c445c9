"""Error taxonomy for spacejar.

Every error carries a stable ``code`` for structured handling and an
``exit_code`` that the CLI maps to the process exit status.
"""

from __future__ import annotations


class SpacejarError(Exception):
    """Base error for all spacejar operations."""

    exit_code = 1

    def __init__(self, message: str, code: str = "spacejar_error") -> None:
        """Initialize SpacejarError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


class ValidationError(SpacejarError):
    """Raised for bad paths, reference syntax or rejected layers."""

    exit_code = 2

    def __init__(self, message: str, code: str = "validation") -> None:
        super().__init__(message, code)


class AuthenticationError(SpacejarError):
    """Raised when the registry refuses a token or manifest request."""

    exit_code = 3

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str = "authentication_error",
    ) -> None:
        super().__init__(message, code)
        self.status_code = status_code


class NetworkError(SpacejarError):
    """Raised on transport failures, timeouts and unexpected HTTP statuses."""

    exit_code = 4

    def __init__(self, message: str, code: str = "network_error") -> None:
        super().__init__(message, code)


class ManifestParseError(SpacejarError):
    """Raised when a manifest is malformed or uses an unsupported schema."""

    exit_code = 5

    def __init__(self, message: str, code: str = "manifest_parse_error") -> None:
        super().__init__(message, code)


class PlatformNotFound(SpacejarError):
    """Raised when an image index has no entry for the host platform."""

    exit_code = 6

    def __init__(
        self,
        architecture: str,
        os_name: str,
        code: str = "platform_not_found",
    ) -> None:
        super().__init__(
            f"No manifest found for platform {os_name}/{architecture}", code
        )
        self.architecture = architecture
        self.os_name = os_name


class DigestMismatch(SpacejarError):
    """Raised when content does not hash to its declared digest."""

    exit_code = 7

    def __init__(
        self,
        message: str,
        expected: str | None = None,
        actual: str | None = None,
        code: str = "digest_mismatch",
    ) -> None:
        super().__init__(message, code)
        self.expected = expected
        self.actual = actual


class ProcessExecutionError(SpacejarError):
    """Raised when an external environment or installer command fails."""

    exit_code = 8

    def __init__(
        self,
        message: str,
        command: list[str] | None = None,
        exit_code: int | None = None,
        stderr: str = "",
        code: str = "process_error",
    ) -> None:
        if stderr:
            message = f"{message}: {stderr.strip()}"
        super().__init__(message, code)
        self.command = command or []
        self.returncode = exit_code
        self.stderr = stderr


class BuildError(SpacejarError):
    """Raised by the orchestrator when a build stage fails.

    The original typed failure is kept as ``cause`` (and ``__cause__``) so
    callers can still tell a registry error from a process error.
    """

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"Build failed at stage '{stage}': {cause}", "build_failed")
        self.stage = stage
        self.cause = cause
        self.exit_code = getattr(cause, "exit_code", 1)


__all__ = [
    "AuthenticationError",
    "BuildError",
    "DigestMismatch",
    "ManifestParseError",
    "NetworkError",
    "PlatformNotFound",
    "ProcessExecutionError",
    "SpacejarError",
    "ValidationError",
]
