"""Exception hierarchy for the provisioning pipeline.

Every error carries a short machine-readable ``code`` next to its message.
Verification failures are not exceptions; they are reported as
``VerificationResult`` values by the verification engine.
"""

from __future__ import annotations


class NetbootError(Exception):
    """Base exception for pipeline errors."""

    default_code = "netboot_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        """Initialize NetbootError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class ChecksumMismatchError(NetbootError):
    """Raised when a file's digest differs from the expected digest."""

    default_code = "checksum_mismatch"

    def __init__(self, subject: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Checksum mismatch for {subject}: expected {expected}, got {actual}"
        )
        self.subject = subject
        self.expected = expected
        self.actual = actual


class DownloadError(NetbootError):
    """Raised when an asset cannot be downloaded."""

    default_code = "download_error"

    def __init__(
        self, message: str, code: str | None = None, retryable: bool = False
    ) -> None:
        super().__init__(message, code)
        self.retryable = retryable


class OfflineModeError(NetbootError):
    """Raised when a download is required but offline mode is enabled."""

    default_code = "offline_mode"


class ExtractionError(NetbootError):
    """Raised when entries cannot be extracted from a container."""

    default_code = "extraction_error"


class ToolError(NetbootError):
    """Raised when an external tool exits with a failure status."""

    default_code = "tool_error"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        argv: list[str] | None = None,
        returncode: int | None = None,
    ) -> None:
        super().__init__(message, code)
        self.argv = argv or []
        self.returncode = returncode


class MountError(ToolError):
    """Raised when mounting or unmounting fails."""

    default_code = "mount_error"


class LoopDeviceError(ToolError):
    """Raised when a loop device cannot be attached or detached."""

    default_code = "loop_device_error"


class SizeConstraintError(NetbootError):
    """Raised when a partition plan violates size constraints."""

    default_code = "size_constraint"


class MissingPrerequisiteError(NetbootError):
    """Raised when a phase's required predecessor output is absent."""

    default_code = "missing_prerequisite"


class TransportMisconfigurationError(NetbootError):
    """Raised when transport parameters are incomplete or invalid."""

    default_code = "transport_misconfiguration"


class UnresolvedPlaceholderError(NetbootError):
    """Raised when identifier placeholders remain after rendering."""

    default_code = "unresolved_placeholder"

    def __init__(self, source: str, placeholders: list[str]) -> None:
        super().__init__(
            f"Unresolved placeholders in {source}: {', '.join(sorted(placeholders))}"
        )
        self.source = source
        self.placeholders = placeholders


__all__ = [
    "ChecksumMismatchError",
    "DownloadError",
    "ExtractionError",
    "LoopDeviceError",
    "MissingPrerequisiteError",
    "MountError",
    "NetbootError",
    "OfflineModeError",
    "SizeConstraintError",
    "ToolError",
    "TransportMisconfigurationError",
    "UnresolvedPlaceholderError",
]
