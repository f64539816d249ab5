"""Staging of package content before archiving.

This module handles:
- Copying declared (from, to) path mappings into a staging tree
- Placing built binaries into the package layout
- Writing opaque byte blobs (service manifests) verbatim

The staged tree is archived by the composer.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterable, Mapping
from pathlib import Path

from fleetpack.manifest.schema import PathMapping

logger = logging.getLogger(__name__)


class StagingError(Exception):
    """Raised when staging fails."""

    def __init__(
        self,
        message: str,
        path: Path | None = None,
        code: str = "staging_error",
    ) -> None:
        super().__init__(message)
        self.path = path
        self.code = code


def stage_file(source: Path, dest: Path) -> None:
    """Stage a single file, preserving its mode.

    Raises:
        StagingError: If staging fails.
    """
    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, dest)
    except OSError as e:
        raise StagingError(
            f"Failed to stage file {source} -> {dest}: {e}",
            path=source,
            code="file_stage_error",
        ) from e


def stage_directory(source_dir: Path, dest_dir: Path) -> None:
    """Stage an entire directory tree.

    Symlinks are copied as links so the package carries what the source
    tree declares.

    Raises:
        StagingError: If staging fails.
    """
    try:
        shutil.copytree(source_dir, dest_dir, symlinks=True, dirs_exist_ok=True)
    except (OSError, shutil.Error) as e:
        raise StagingError(
            f"Failed to stage directory {source_dir}: {e}",
            path=source_dir,
            code="dir_stage_error",
        ) from e


def _validate_path_within_base(path: Path, base: Path, path_type: str) -> Path:
    """Validate that a path is contained within a base directory.

    Returns:
        The resolved path.

    Raises:
        StagingError: If path escapes base directory.
    """
    resolved_path = path.resolve()
    resolved_base = base.resolve()

    try:
        resolved_path.relative_to(resolved_base)
    except ValueError:
        raise StagingError(
            f"{path_type} path traversal detected: {path} resolves outside {base}",
            path=path,
            code="path_traversal",
        ) from None

    return resolved_path


def stage_path_mappings(
    staging_root: Path,
    mappings: Iterable[PathMapping],
    base_path: Path,
) -> None:
    """Copy each mapping's source into ``staging_root`` at its destination.

    Relative sources resolve against ``base_path``; absolute sources are used
    as-is. Destinations are taken relative to ``staging_root`` and must stay
    inside it.

    Raises:
        StagingError: With code ``source_not_found`` for a missing source.
    """
    staging_root.mkdir(parents=True, exist_ok=True)

    for mapping in mappings:
        source = Path(mapping.from_)
        if not source.is_absolute():
            source = base_path / source
        if not source.exists():
            raise StagingError(
                f"Source path not found: {source}",
                path=source,
                code="source_not_found",
            )

        dest = staging_root / mapping.to.lstrip("/")
        _validate_path_within_base(dest, staging_root, "destination")

        logger.debug("Staging %s -> %s", source, dest)
        if source.is_dir():
            stage_directory(source, dest)
        else:
            stage_file(source, dest)


def stage_binaries(dest_dir: Path, binaries: Iterable[Path]) -> None:
    """Copy built binaries into ``dest_dir``.

    Raises:
        StagingError: With code ``source_not_found`` for a missing binary.
    """
    for binary in binaries:
        if not binary.is_file():
            raise StagingError(
                f"Built binary not found: {binary}",
                path=binary,
                code="source_not_found",
            )
        stage_file(binary, dest_dir / binary.name)


def stage_blobs(dest_dir: Path, blobs: Mapping[str, bytes]) -> None:
    """Write opaque blobs under ``dest_dir`` without interpreting them."""
    for rel_name, data in blobs.items():
        dest = dest_dir / rel_name
        _validate_path_within_base(dest, dest_dir, "blob")
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)


__all__ = [
    "StagingError",
    "stage_binaries",
    "stage_blobs",
    "stage_directory",
    "stage_file",
    "stage_path_mappings",
]
