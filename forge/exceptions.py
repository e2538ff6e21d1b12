"""Custom exceptions for forge."""

from __future__ import annotations


class ForgeError(Exception):
    """Base exception for all forge errors."""


class ConfigError(ForgeError):
    """Raised when a configuration file or key is invalid."""


class NoAdapterFound(ForgeError):
    """Raised when no registered adapter can handle a directory."""

    def __init__(self, directory: str, formats: list[str]):
        self.directory = directory
        self.formats = formats
        super().__init__(
            f"No adapter found for {directory}. Supported formats: "
            f"{', '.join(formats)}. Use --format to specify explicitly."
        )


class UnsupportedFormat(ForgeError):
    """Raised when an explicitly requested format has no registered adapter."""

    def __init__(self, fmt: str, formats: list[str]):
        self.format = fmt
        self.formats = formats
        super().__init__(f"Unsupported format: {fmt}. Supported formats: {', '.join(formats)}")


class RegistryError(ForgeError):
    """Raised when a registry query fails or returns an unusable payload."""


class ResolutionEdgeFailure(ForgeError):
    """Raised when a single dependency edge cannot be resolved."""

    def __init__(self, name: str, constraint: str, reason: str):
        self.name = name
        self.constraint = constraint
        self.reason = reason
        super().__init__(f"{name}@{constraint}: {reason}")


class CircularDependency(ForgeError):
    """A dependency cycle. Recorded as a warning; never escapes the resolver."""

    def __init__(self, path: list[str]):
        self.path = path
        super().__init__("Circular dependency detected: " + " -> ".join(path))


class FetchFailure(ForgeError):
    """Raised after a fetch batch settles with at least one failed package.

    *failures* maps ``name@version`` to the error message for every failed
    package in the batch, not just the first one.
    """

    def __init__(self, failures: dict[str, str]):
        self.failures = failures
        detail = "; ".join(f"{k}: {v}" for k, v in failures.items())
        super().__init__(f"Failed to fetch {len(failures)} package(s): {detail}")


class IntegrityError(ForgeError):
    """Raised when a downloaded artifact does not match its registry digest."""


class LockWriteFailure(ForgeError):
    """Raised when a lock file cannot be written. Completed installs stay."""


class ManifestError(ForgeError):
    """Raised when a manifest file exists but cannot be parsed."""
