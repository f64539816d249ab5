"""Error taxonomy for fleetpack.

Every error carries a stable ``code`` for structured reporting:

- ManifestError: malformed manifest or duplicate package name; fatal before
  any build starts.
- ResolutionError: the dependency graph is unsafe to execute; fatal for the
  whole invocation.
- ProviderError / ComposeError: fatal only for the affected package and the
  packages that depend on it.
"""

from __future__ import annotations

from pathlib import Path

# Stable error codes
MANIFEST_ERROR = "manifest_error"
DUPLICATE_NAME = "duplicate_name"
UNKNOWN_REFERENCE = "unknown_reference"
UNKNOWN_PACKAGE = "unknown_package"
CYCLE_DETECTED = "cycle_detected"
BUILD_FAILED = "build_failed"
PROVENANCE_MISMATCH = "provenance_mismatch"
SOURCE_UNAVAILABLE = "source_unavailable"
MISSING_MANUAL_ARTIFACT = "missing_manual_artifact"
COMPOSE_ERROR = "compose_error"
IO_ERROR = "io_error"
DEPENDENCY_FAILED = "dependency_failed"
CANCELLED = "cancelled"


class FleetpackError(Exception):
    """Base class for all fleetpack errors."""

    def __init__(self, message: str, code: str = "fleetpack_error") -> None:
        super().__init__(message)
        self.code = code


class ManifestError(FleetpackError):
    """Raised when the manifest cannot be loaded or is malformed."""

    def __init__(self, message: str, code: str = MANIFEST_ERROR) -> None:
        super().__init__(message, code)


class DuplicateNameError(ManifestError):
    """Raised when two package entries share a name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Duplicate package name: {name}", code=DUPLICATE_NAME)
        self.name = name


class ResolutionError(FleetpackError):
    """Base class for dependency graph errors."""


class UnknownReferenceError(ResolutionError):
    """Raised when a composite references an artifact no active package produces."""

    def __init__(self, composite: str, member: str) -> None:
        super().__init__(
            f"Composite package '{composite}' references unknown artifact '{member}'",
            code=UNKNOWN_REFERENCE,
        )
        self.composite = composite
        self.member = member


class UnknownPackageError(ResolutionError):
    """Raised when a requested package is not active for the target configuration."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f"Package '{name}' is unknown or excluded for this target",
            code=UNKNOWN_PACKAGE,
        )
        self.name = name


class CycleDetectedError(ResolutionError):
    """Raised when a composite transitively depends on itself."""

    def __init__(self, path: list[str]) -> None:
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(path)}",
            code=CYCLE_DETECTED,
        )
        self.path = list(path)


class ProviderError(FleetpackError):
    """Base class for errors obtaining a package's raw artifact."""

    def __init__(self, package: str, message: str, code: str) -> None:
        super().__init__(message, code)
        self.package = package


class BuildFailedError(ProviderError):
    """Raised when the toolchain fails to build a local package."""

    def __init__(self, package: str, diagnostic: str) -> None:
        super().__init__(
            package, f"Build of '{package}' failed: {diagnostic}", BUILD_FAILED
        )
        self.diagnostic = diagnostic


class ProvenanceMismatchError(ProviderError):
    """Raised when a downloaded artifact does not match its pinned digest."""

    def __init__(self, package: str, expected: str, actual: str) -> None:
        super().__init__(
            package,
            f"Digest mismatch for '{package}': expected {expected}, got {actual}",
            PROVENANCE_MISMATCH,
        )
        self.expected = expected
        self.actual = actual


class SourceUnavailableError(ProviderError):
    """Raised when a prebuilt artifact cannot be fetched."""

    def __init__(self, package: str, reason: str, attempts: int = 0) -> None:
        super().__init__(
            package,
            f"Source for '{package}' unavailable after {attempts} attempt(s): {reason}",
            SOURCE_UNAVAILABLE,
        )
        self.reason = reason
        self.attempts = attempts


class MissingManualArtifactError(ProviderError):
    """Raised when a manually supplied artifact is absent."""

    def __init__(self, package: str, path: Path) -> None:
        super().__init__(
            package,
            f"Manual artifact for '{package}' not found: {path}",
            MISSING_MANUAL_ARTIFACT,
        )
        self.path = path


class ComposeError(FleetpackError):
    """Raised when a package output cannot be assembled."""

    def __init__(self, package: str, message: str, code: str = COMPOSE_ERROR) -> None:
        super().__init__(message, code)
        self.package = package


class ComposeIOError(ComposeError):
    """Raised when a declared input path is missing or unreadable."""

    def __init__(self, package: str, path: Path | str) -> None:
        super().__init__(package, f"Missing or unreadable path: {path}", IO_ERROR)
        self.path = Path(path)


class DependencyFailedError(FleetpackError):
    """Recorded for a package whose dependency did not build."""

    def __init__(self, package: str, dependency: str) -> None:
        super().__init__(
            f"'{package}' not built: dependency '{dependency}' failed",
            code=DEPENDENCY_FAILED,
        )
        self.package = package
        self.dependency = dependency


class BuildCancelledError(FleetpackError):
    """Recorded for a package whose task was cancelled under fail-fast."""

    def __init__(self, package: str) -> None:
        super().__init__(f"'{package}' cancelled", code=CANCELLED)
        self.package = package


__all__ = [
    "BuildCancelledError",
    "BuildFailedError",
    "ComposeError",
    "ComposeIOError",
    "CycleDetectedError",
    "DependencyFailedError",
    "DuplicateNameError",
    "FleetpackError",
    "ManifestError",
    "MissingManualArtifactError",
    "ProvenanceMismatchError",
    "ProviderError",
    "ResolutionError",
    "SourceUnavailableError",
    "UnknownPackageError",
    "UnknownReferenceError",
]
