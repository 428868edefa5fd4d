"""Error taxonomy for netbsd_imagegen.

Every error raised by the pipeline derives from ImageGenError and carries a
stable ``code`` string that the CLI reports alongside the message.
"""

from __future__ import annotations

# Error code constants
CONFIG_ERROR = "config_error"
RETRIEVAL_ERROR = "retrieval_error"
INTEGRITY_ERROR = "integrity_error"
SIGNATURE_INVALID = "signature_invalid"
CHECKSUM_MISMATCH = "checksum_mismatch"
CHECKSUM_MISSING = "checksum_missing"
TOOL_FAILED = "tool_failed"
TOOL_TIMEOUT = "tool_timeout"
TOOL_NOT_FOUND = "tool_not_found"
DEVICE_ERROR = "device_error"
CLEANUP_ERROR = "cleanup_error"


class ImageGenError(Exception):
    """Base exception for all image build failures."""

    def __init__(self, message: str, code: str = "imagegen_error") -> None:
        """Initialize ImageGenError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.message = message
        self.code = code


class ConfigError(ImageGenError):
    """Invalid or missing configuration, or a failed pre-flight check."""

    def __init__(self, message: str, code: str = CONFIG_ERROR) -> None:
        super().__init__(message, code=code)


class RetrievalError(ImageGenError):
    """Raised when an archive or auxiliary file cannot be downloaded."""

    def __init__(
        self, message: str, url: str | None = None, code: str = RETRIEVAL_ERROR
    ) -> None:
        super().__init__(message, code=code)
        self.url = url


class IntegrityError(ImageGenError):
    """Base exception for signature and checksum failures."""

    def __init__(self, message: str, code: str = INTEGRITY_ERROR) -> None:
        super().__init__(message, code=code)


class SignatureError(IntegrityError):
    """The checksum manifest signature did not verify."""

    def __init__(self, manifest_path: str, detail: str = "") -> None:
        message = f"Signature verification failed for {manifest_path}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, code=SIGNATURE_INVALID)
        self.manifest_path = manifest_path


class ChecksumMismatch(IntegrityError):
    """An archive's digest differs from the manifest's recorded value."""

    def __init__(self, archive: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Checksum mismatch for {archive}: "
            f"expected {expected[:16]}..., got {actual[:16]}...",
            code=CHECKSUM_MISMATCH,
        )
        self.archive = archive
        self.expected = expected
        self.actual = actual


class ChecksumMissingError(IntegrityError):
    """The manifest has no entry for an archive that must be verified."""

    def __init__(self, archive: str, key: str) -> None:
        super().__init__(
            f"No checksum recorded for {archive} (looked up {key})",
            code=CHECKSUM_MISSING,
        )
        self.archive = archive
        self.key = key


class ToolError(ImageGenError):
    """An external tool exited non-zero, timed out, or could not be started."""

    def __init__(
        self,
        message: str,
        command: str,
        exit_code: int | None = None,
        stderr: str = "",
        code: str = TOOL_FAILED,
    ) -> None:
        super().__init__(message, code=code)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class DeviceError(ImageGenError):
    """A block device, partitioning, filesystem or boot step failed."""

    def __init__(self, message: str, stage: str, code: str = DEVICE_ERROR) -> None:
        super().__init__(message, code=code)
        self.stage = stage


class CleanupError(ImageGenError):
    """Teardown failed. Logged by the caller, never raised out of cleanup."""

    def __init__(self, message: str, code: str = CLEANUP_ERROR) -> None:
        super().__init__(message, code=code)


__all__ = [
    "CHECKSUM_MISMATCH",
    "CHECKSUM_MISSING",
    "CLEANUP_ERROR",
    "CONFIG_ERROR",
    "DEVICE_ERROR",
    "INTEGRITY_ERROR",
    "RETRIEVAL_ERROR",
    "SIGNATURE_INVALID",
    "TOOL_FAILED",
    "TOOL_NOT_FOUND",
    "TOOL_TIMEOUT",
    "ChecksumMismatch",
    "ChecksumMissingError",
    "CleanupError",
    "ConfigError",
    "DeviceError",
    "ImageGenError",
    "IntegrityError",
    "RetrievalError",
    "SignatureError",
    "ToolError",
]
