"""Custom exceptions for the buildpack lifecycle client."""


class PackError(Exception):
    """Base exception for all lifecycle-related errors."""

    pass


class EngineError(PackError):
    """Raised when a container engine operation fails."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class PhaseFailed(PackError):
    """Raised when a lifecycle phase container exits with a nonzero code."""

    def __init__(self, phase: str, exit_code: int) -> None:
        super().__init__(f"{phase} phase failed: non zero exit: {exit_code}")
        self.phase = phase
        self.exit_code = exit_code


class DetectionError(PackError):
    """Raised when detection produced no usable buildpack group."""

    pass


class ImageNotFound(PackError):
    """Raised when an image does not exist in the store."""

    pass


class ImageAccessError(PackError):
    """Raised when the registry or daemon cannot be read or written."""

    pass


class RegistryConnectionError(ImageAccessError):
    """Raised when unable to connect to the registry."""

    pass


class BlobUploadError(ImageAccessError):
    """Raised when blob upload fails."""

    pass


class ManifestError(ImageAccessError):
    """Raised when manifest operations fail."""

    pass


class TarReadError(PackError):
    """Raised when unable to read or parse a saved image archive."""

    pass


class LayerConstructionError(PackError):
    """Raised when a directory cannot be turned into a layer."""

    pass


class RebaseBoundaryNotFound(PackError):
    """Raised when the recorded run image layer is not part of the image."""

    pass
