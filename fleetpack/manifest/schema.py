"""Pydantic models for package manifest entries.

Each ``[package.<name>]`` table of the manifest validates into a
``PackageSpec``. The ``source`` and ``output`` sections are tagged unions
discriminated by their ``type`` field, so each variant carries exactly the
fields it requires.
"""

import re
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# One path segment: names, repos and commits become directory names
PATH_SEGMENT_PATTERN = re.compile(r"^(?!\.+$)[a-zA-Z0-9_.\-]+$")
PACKAGE_NAME_PATTERN = PATH_SEGMENT_PATTERN
SHA256_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")

TARBALL_SUFFIX = ".tar"
ZONE_SUFFIX = ".tar.gz"


class PathMapping(BaseModel):
    """A file or directory copied into the package layout.

    Attributes:
        from_: Source path on the build host (relative to the base directory
            or absolute).
        to: Destination path inside the package.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    from_: str = Field(alias="from", min_length=1, description="Source path")
    to: str = Field(min_length=1, description="Destination path in the package")


class RustBuild(BaseModel):
    """Binaries produced by the toolchain for a local package."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    binary_names: tuple[str, ...] = Field(min_length=1)
    release: bool = False

    @field_validator("binary_names")
    @classmethod
    def validate_binary_names(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Binary names form a set: non-empty, no whitespace, no duplicates."""
        for item in v:
            if not item or any(c.isspace() for c in item):
                raise ValueError(f"invalid binary name '{item}'")
        if len(set(v)) != len(v):
            raise ValueError("binary_names must not contain duplicates")
        return v


class LocalSource(BaseModel):
    """Package built from this workspace."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["local"]
    rust: RustBuild | None = None
    paths: tuple[PathMapping, ...] = ()


class PrebuiltSource(BaseModel):
    """Package downloaded from the artifact store and pinned by digest."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["prebuilt"]
    repo: str = Field(min_length=1)
    commit: str = Field(min_length=1)
    sha256: str

    @field_validator("repo", "commit")
    @classmethod
    def validate_path_segment(cls, v: str) -> str:
        """Repo and commit name a single directory in the download cache."""
        if not PATH_SEGMENT_PATTERN.match(v):
            raise ValueError(
                f"must match pattern {PATH_SEGMENT_PATTERN.pattern}, got '{v}'"
            )
        return v

    @field_validator("sha256")
    @classmethod
    def validate_sha256(cls, v: str) -> str:
        """Digest must be a 64-character hex SHA-256."""
        if not SHA256_PATTERN.match(v):
            raise ValueError(
                f"sha256 must be 64 hexadecimal characters, got {len(v)} characters"
            )
        return v.lower()


class CompositeSource(BaseModel):
    """Package assembled from other packages' artifacts."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["composite"]
    packages: tuple[str, ...] = Field(min_length=1)


class ManualSource(BaseModel):
    """Package whose artifact is supplied out-of-band."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["manual"]


Source = Annotated[
    LocalSource | PrebuiltSource | CompositeSource | ManualSource,
    Field(discriminator="type"),
]


class TarballOutput(BaseModel):
    """Plain tar archive output."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["tarball"]


class ZoneOutput(BaseModel):
    """Zone image output (gzip-compressed tar with a zone layout)."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["zone"]
    intermediate_only: bool = False


Output = Annotated[TarballOutput | ZoneOutput, Field(discriminator="type")]


class PackageSpec(BaseModel):
    """One manifest entry.

    Attributes:
        name: Unique package name (the manifest table key).
        service_name: Logical service identity; not required to be unique.
        source: How the raw artifact is obtained.
        output: Shape of the produced artifact.
        only_for_targets: Target dimension -> value required for activation.
        setup_hint: Operator guidance shown when the package fails.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: Annotated[str, Field(min_length=1, max_length=255)]
    service_name: Annotated[str, Field(min_length=1, max_length=255)]
    source: Source
    output: Output
    only_for_targets: dict[str, str] = Field(default_factory=dict)
    setup_hint: str | None = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate name matches safe pattern (it becomes a directory name)."""
        if not PACKAGE_NAME_PATTERN.match(v):
            raise ValueError(
                f"name must match pattern {PACKAGE_NAME_PATTERN.pattern}, got '{v}'"
            )
        return v

    @property
    def target_constraints(self) -> dict[str, str]:
        """Constraints that must all hold for this entry to be active."""
        return self.only_for_targets

    @property
    def is_zone(self) -> bool:
        return isinstance(self.output, ZoneOutput)

    @property
    def is_composite(self) -> bool:
        return isinstance(self.source, CompositeSource)

    @property
    def intermediate_only(self) -> bool:
        return isinstance(self.output, ZoneOutput) and self.output.intermediate_only

    @property
    def artifact_filename(self) -> str:
        """Filename of the produced artifact, as referenced by composites."""
        suffix = ZONE_SUFFIX if self.is_zone else TARBALL_SUFFIX
        return f"{self.name}{suffix}"


__all__ = [
    "CompositeSource",
    "LocalSource",
    "ManualSource",
    "Output",
    "PackageSpec",
    "PathMapping",
    "PrebuiltSource",
    "RustBuild",
    "Source",
    "TARBALL_SUFFIX",
    "TarballOutput",
    "ZONE_SUFFIX",
    "ZoneOutput",
]
