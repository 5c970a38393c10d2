"""Error taxonomy for the firmware hub core.

The core raises these and never retries; the HTTP layer decides status codes
and logging.
"""


class FirmwareHubError(Exception):
    """Base class for all firmware hub errors."""


class ValidationError(FirmwareHubError):
    """A required field is missing or malformed."""


class NotFound(FirmwareHubError):
    """No matching release or device."""


class InvalidArtifact(FirmwareHubError):
    """Uploaded binary has a disallowed type."""


class ArtifactTooLarge(FirmwareHubError):
    """Uploaded binary exceeds the configured size ceiling."""

    def __init__(self, limit: int):
        super().__init__(f"Firmware exceeds maximum size of {limit} bytes")
        self.limit = limit


class ReleaseConflict(FirmwareHubError):
    """A release for this device class and version already exists."""


class StoreFailure(FirmwareHubError):
    """Underlying filesystem or database failure."""
