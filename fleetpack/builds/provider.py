"""Raw artifact acquisition.

This module handles:
- Building local packages with the toolchain
- Fetching prebuilt packages from the artifact store (digest-verified,
  retried on transport failures, cached on disk)
- Locating manually supplied artifacts

Composite packages have no raw artifact; they are assembled by the composer.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from fleetpack.builds.toolchain import Toolchain, ToolchainError
from fleetpack.errors import (
    BuildFailedError,
    MissingManualArtifactError,
    ProvenanceMismatchError,
    SourceUnavailableError,
)
from fleetpack.manifest.schema import (
    CompositeSource,
    LocalSource,
    ManualSource,
    PackageSpec,
    PrebuiltSource,
)
from fleetpack.prebuilt.fetch import (
    ArtifactStore,
    DownloadError,
    VerificationError,
    cached_file_matches,
    download_verified,
)
from fleetpack.prebuilt.retry import RetryPolicy
from fleetpack.types import ArtifactHandle

logger = logging.getLogger(__name__)

BUILD_LOG_NAME = "build.log"


class ArtifactProvider:
    """Obtains the raw artifact for a package according to its source."""

    def __init__(
        self,
        toolchain: Toolchain | None,
        store: ArtifactStore | None,
        base_dir: Path,
        download_dir: Path,
        manual_dir: Path,
        log_dir: Path,
        retry_policy: RetryPolicy | None = None,
        offline: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.toolchain = toolchain
        self.store = store
        self.base_dir = base_dir
        self.download_dir = download_dir
        self.manual_dir = manual_dir
        self.log_dir = log_dir
        self.retry_policy = retry_policy if retry_policy is not None else RetryPolicy()
        self.offline = offline
        self.sleep = sleep

    def obtain(self, spec: PackageSpec) -> ArtifactHandle | None:
        """Obtain ``spec``'s raw artifact.

        Returns:
            Handle to the artifact, or None for composite packages.

        Raises:
            BuildFailedError: If the toolchain build fails.
            ProvenanceMismatchError: If a download does not match its digest.
            SourceUnavailableError: If a prebuilt artifact cannot be fetched.
            MissingManualArtifactError: If a manual artifact is absent.
        """
        source = spec.source
        if isinstance(source, LocalSource):
            return self._obtain_local(spec, source)
        if isinstance(source, PrebuiltSource):
            return self._obtain_prebuilt(spec, source)
        if isinstance(source, ManualSource):
            return self._obtain_manual(spec)
        if isinstance(source, CompositeSource):
            return None
        raise TypeError(
            f"Unsupported source for '{spec.name}': {type(source).__name__}"
        )

    def build_log_path(self, spec: PackageSpec) -> Path:
        return self.log_dir / spec.name / BUILD_LOG_NAME

    def download_path(self, spec: PackageSpec, source: PrebuiltSource) -> Path:
        return self.download_dir / source.repo / source.commit / spec.artifact_filename

    def _obtain_local(self, spec: PackageSpec, source: LocalSource) -> ArtifactHandle:
        if source.rust is None:
            return ArtifactHandle(package=spec.name, path=self.base_dir)
        if self.toolchain is None:
            raise BuildFailedError(spec.name, "no toolchain configured")

        log_path = self.build_log_path(spec)
        logger.info(
            "Building %s: %s", spec.name, ", ".join(sorted(source.rust.binary_names))
        )
        try:
            result = self.toolchain.build(
                source.rust.binary_names, source.rust.release, log_path
            )
        except ToolchainError as e:
            raise BuildFailedError(spec.name, str(e)) from e

        if not result.success:
            raise BuildFailedError(spec.name, result.diagnostic())

        return ArtifactHandle(
            package=spec.name,
            path=result.out_dir,
            binaries=tuple(result.out_dir / name for name in source.rust.binary_names),
        )

    def _obtain_prebuilt(
        self, spec: PackageSpec, source: PrebuiltSource
    ) -> ArtifactHandle:
        dest = self.download_path(spec, source)
        if cached_file_matches(dest, source.sha256):
            logger.info("Using cached %s for %s", dest, spec.name)
            return self._file_handle(spec, dest, source.sha256)

        if self.offline:
            raise SourceUnavailableError(
                spec.name, f"offline mode and no verified copy at {dest}"
            )
        if self.store is None:
            raise SourceUnavailableError(spec.name, "no artifact store configured")

        try:
            result = download_verified(
                self.store,
                source.repo,
                source.commit,
                spec.artifact_filename,
                dest,
                source.sha256,
                policy=self.retry_policy,
                sleep=self.sleep,
            )
        except VerificationError as e:
            raise ProvenanceMismatchError(spec.name, e.expected, e.actual) from e
        except DownloadError as e:
            raise SourceUnavailableError(spec.name, str(e), attempts=e.attempts) from e

        return ArtifactHandle(
            package=spec.name,
            path=result.path,
            sha256=result.checksum,
            size_bytes=result.size_bytes,
        )

    def _obtain_manual(self, spec: PackageSpec) -> ArtifactHandle:
        path = self.manual_dir / spec.artifact_filename
        if not path.is_file():
            raise MissingManualArtifactError(spec.name, path)
        return self._file_handle(spec, path)

    @staticmethod
    def _file_handle(
        spec: PackageSpec, path: Path, sha256: str | None = None
    ) -> ArtifactHandle:
        return ArtifactHandle(
            package=spec.name,
            path=path,
            sha256=sha256,
            size_bytes=path.stat().st_size,
        )


__all__ = ["ArtifactProvider", "BUILD_LOG_NAME"]
