"""Error taxonomy for the conversion and launch pipeline."""

from __future__ import annotations


class FcvmError(RuntimeError):
    """Base class for every fatal pipeline error."""


class ReferenceParseError(FcvmError, ValueError):
    """Malformed image reference string."""


class AuthError(FcvmError):
    """Bearer token could not be issued."""


class NoMatchingPlatform(FcvmError):
    """Manifest list has no linux/amd64 entry."""


class FetchError(FcvmError):
    """Manifest, blob or layer could not be fetched."""


class ExtractionError(FcvmError):
    """Layer extraction or whiteout application failed."""


class PackagingError(FcvmError):
    """The ext4 image could not be built."""


class ValidationError(FcvmError):
    """Launch preconditions are not met."""


class NetworkSetupError(FcvmError):
    """Tap device or NAT rules could not be installed."""


class LaunchError(FcvmError):
    """The hypervisor failed to start."""
