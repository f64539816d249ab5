"""Package composition.

This module assembles a package's final output:
- Local sources: stage path mappings and binaries, then archive the tree
  (zones additionally get zone metadata and the service's manifests)
- Prebuilt and manual sources: publish the obtained archive unchanged
- Composite sources: merge the members' archives without touching payloads

Outputs are written to a temporary file inside the package's own output
directory and renamed into place only on success.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tarfile
import tempfile
import threading
import uuid
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Protocol

from fleetpack.builds.archive import (
    ArchiveConflictError,
    add_bytes,
    add_tree,
    is_tar_archive,
    merge_archives,
    open_archive_writer,
)
from fleetpack.builds.staging import (
    StagingError,
    stage_binaries,
    stage_blobs,
    stage_path_mappings,
)
from fleetpack.errors import BuildCancelledError, ComposeError, ComposeIOError
from fleetpack.manifest.schema import CompositeSource, LocalSource, PackageSpec
from fleetpack.prebuilt.fetch import compute_file_sha256
from fleetpack.types import ArtifactHandle

logger = logging.getLogger(__name__)

# Zone image layout
ZONE_ROOT = "root"
ZONE_METADATA_NAME = "zone.json"
ZONE_METADATA_VERSION = "1"
SERVICE_MANIFEST_DIR = "var/svc/manifest/site"
ZONE_BIN_DIR = "opt/oxide/{service}/bin"


class ServiceManifestSource(Protocol):
    """Provides a service's manifest files as opaque bytes."""

    def files(self, service_name: str) -> dict[str, bytes]: ...


class DirectoryServiceManifests:
    """Service manifests read from ``<root>/<service_name>/``."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def files(self, service_name: str) -> dict[str, bytes]:
        service_dir = self.root / service_name
        if not service_dir.is_dir():
            return {}
        return {
            path.relative_to(service_dir).as_posix(): path.read_bytes()
            for path in sorted(service_dir.rglob("*"))
            if path.is_file()
        }


def zone_metadata(spec: PackageSpec) -> bytes:
    """Return the metadata document stored at the root of a zone image."""
    document = {"v": ZONE_METADATA_VERSION, "t": "layer", "package": spec.name}
    return json.dumps(document, sort_keys=True).encode("utf-8") + b"\n"


class PackageComposer:
    """Builds package outputs under ``<output_dir>/<package name>/``."""

    def __init__(
        self,
        output_dir: Path,
        base_dir: Path,
        service_manifests: ServiceManifestSource | None = None,
    ) -> None:
        self.output_dir = output_dir
        self.base_dir = base_dir
        self.service_manifests = service_manifests

    def package_dir(self, spec: PackageSpec) -> Path:
        return self.output_dir / spec.name

    def output_path(self, spec: PackageSpec) -> Path:
        return self.package_dir(spec) / spec.artifact_filename

    def compose(
        self,
        spec: PackageSpec,
        obtained: ArtifactHandle | None,
        dependencies: Sequence[ArtifactHandle] = (),
        cancel_event: threading.Event | None = None,
    ) -> ArtifactHandle:
        """Assemble ``spec``'s output.

        Args:
            spec: Package to compose.
            obtained: Raw artifact from the provider (None for composites).
            dependencies: Member outputs, in the composite's declared order.
            cancel_event: When set before publishing, the output is discarded.

        Returns:
            Handle to the published output.

        Raises:
            ComposeIOError: If a declared input path is missing.
            ComposeError: If the output cannot be assembled.
            BuildCancelledError: If cancelled before publishing.
        """
        source = spec.source
        if isinstance(source, CompositeSource):
            writer = self._composite_writer(spec, source, dependencies)
        elif isinstance(source, LocalSource):
            writer = self._local_writer(spec, source, obtained)
        else:
            writer = self._passthrough_writer(spec, obtained)
        return self._publish(spec, writer, cancel_event)

    def _publish(
        self,
        spec: PackageSpec,
        write: Callable[[Path], None],
        cancel_event: threading.Event | None,
    ) -> ArtifactHandle:
        dest = self.output_path(spec)
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = dest.with_name(f".{dest.name}.{uuid.uuid4().hex[:8]}.tmp")

        try:
            write(tmp_path)
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Discarding output of %s (cancelled)", spec.name)
                raise BuildCancelledError(spec.name)
            os.replace(tmp_path, dest)
        except OSError as e:
            raise ComposeError(
                spec.name, f"Failed to write {dest}: {e}", code="write_error"
            ) from e
        finally:
            tmp_path.unlink(missing_ok=True)

        handle = ArtifactHandle(
            package=spec.name,
            path=dest,
            sha256=compute_file_sha256(dest),
            size_bytes=dest.stat().st_size,
        )
        logger.info("Composed %s (%d bytes)", dest, handle.size_bytes)
        return handle

    def _local_writer(
        self,
        spec: PackageSpec,
        source: LocalSource,
        obtained: ArtifactHandle | None,
    ) -> Callable[[Path], None]:
        binaries = obtained.binaries if obtained is not None else ()

        def write(tmp_path: Path) -> None:
            staging = Path(
                tempfile.mkdtemp(prefix=".staging-", dir=self.package_dir(spec))
            )
            try:
                root = staging / ZONE_ROOT if spec.is_zone else staging
                try:
                    stage_path_mappings(root, source.paths, self.base_dir)
                    if binaries:
                        bin_dir = (
                            root / ZONE_BIN_DIR.format(service=spec.service_name)
                            if spec.is_zone
                            else root
                        )
                        stage_binaries(bin_dir, binaries)
                    if spec.is_zone and self.service_manifests is not None:
                        stage_blobs(
                            root / SERVICE_MANIFEST_DIR / spec.service_name,
                            self.service_manifests.files(spec.service_name),
                        )
                except StagingError as e:
                    if e.code == "source_not_found" and e.path is not None:
                        raise ComposeIOError(spec.name, e.path) from e
                    raise ComposeError(spec.name, str(e), code=e.code) from e

                with open_archive_writer(tmp_path, compress=spec.is_zone) as tar:
                    if spec.is_zone:
                        add_bytes(tar, ZONE_METADATA_NAME, zone_metadata(spec))
                    add_tree(tar, staging)
            finally:
                shutil.rmtree(staging, ignore_errors=True)

        return write

    def _passthrough_writer(
        self, spec: PackageSpec, obtained: ArtifactHandle | None
    ) -> Callable[[Path], None]:
        if obtained is None:
            raise ComposeError(spec.name, f"No artifact obtained for '{spec.name}'")
        if not obtained.path.exists():
            raise ComposeIOError(spec.name, obtained.path)
        if not is_tar_archive(obtained.path):
            raise ComposeError(
                spec.name,
                f"Artifact for '{spec.name}' is not a tar archive: {obtained.path}",
                code="invalid_archive",
            )

        def write(tmp_path: Path) -> None:
            shutil.copyfile(obtained.path, tmp_path)

        return write

    def _composite_writer(
        self,
        spec: PackageSpec,
        source: CompositeSource,
        dependencies: Sequence[ArtifactHandle],
    ) -> Callable[[Path], None]:
        expected = len(source.packages)
        if len(dependencies) != expected:
            raise ComposeError(
                spec.name,
                f"Composite '{spec.name}' expects {expected} member(s), "
                f"got {len(dependencies)}",
            )
        for handle in dependencies:
            if not handle.path.is_file():
                raise ComposeIOError(spec.name, handle.path)

        def write(tmp_path: Path) -> None:
            try:
                with open_archive_writer(tmp_path, compress=spec.is_zone) as tar:
                    if spec.is_zone:
                        add_bytes(tar, ZONE_METADATA_NAME, zone_metadata(spec))
                    merge_archives(
                        tar,
                        [(handle.package, handle.path) for handle in dependencies],
                        skip_names=[ZONE_METADATA_NAME],
                    )
            except ArchiveConflictError as e:
                raise ComposeError(spec.name, str(e), code=e.code) from e
            except tarfile.TarError as e:
                raise ComposeError(
                    spec.name, f"Unreadable member archive: {e}", code="invalid_archive"
                ) from e

        return write


__all__ = [
    "DirectoryServiceManifests",
    "PackageComposer",
    "SERVICE_MANIFEST_DIR",
    "ServiceManifestSource",
    "ZONE_METADATA_NAME",
    "ZONE_ROOT",
    "zone_metadata",
]
