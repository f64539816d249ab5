"""Shared type definitions for fleetpack.

This module contains enums and dataclasses shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class RunState(str, Enum):
    """State of a build invocation."""

    FILTERING = "filtering"
    RESOLVING = "resolving"
    BUILDING = "building"
    COMPOSING = "composing"
    DONE = "done"
    FAILED = "failed"


class PackageStatus(str, Enum):
    """Status of one package within a build invocation."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ArtifactHandle:
    """Reference to a completed on-disk artifact for one package.

    Attributes:
        package: Package name the artifact belongs to.
        path: Artifact file (or, for local builds, the toolchain output dir).
        sha256: SHA-256 of the file, when ``path`` is a file.
        size_bytes: File size, when ``path`` is a file.
        binaries: Built binaries (local sources only).
    """

    package: str
    path: Path
    sha256: str | None = None
    size_bytes: int | None = None
    binaries: tuple[Path, ...] = ()


@dataclass
class ArtifactInfo:
    """Information about a deliverable artifact."""

    package: str
    filename: str
    relative_path: str
    size_bytes: int
    sha256: str
    kind: str | None = None


__all__ = [
    "ArtifactHandle",
    "ArtifactInfo",
    "PackageStatus",
    "RunState",
]
