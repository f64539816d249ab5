"""Deliverable discovery and manifest generation.

This module handles:
- Describing composed package outputs (kind, size, checksum)
- Generating the deliverables manifest for a build invocation
- Writing ``deliverables.json`` next to the package outputs
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fleetpack.manifest.schema import TARBALL_SUFFIX, ZONE_SUFFIX
from fleetpack.prebuilt.fetch import compute_file_sha256
from fleetpack.types import ArtifactHandle, ArtifactInfo

logger = logging.getLogger(__name__)

DELIVERABLES_FILENAME = "deliverables.json"
MANIFEST_VERSION = "1.0"


def classify_artifact(filename: str) -> str:
    """Classify an artifact by its filename.

    Returns:
        ``zone``, ``tarball`` or ``other``.
    """
    filename_lower = filename.lower()
    if filename_lower.endswith(ZONE_SUFFIX):
        return "zone"
    if filename_lower.endswith(TARBALL_SUFFIX):
        return "tarball"
    return "other"


def describe_artifact(
    handle: ArtifactHandle,
    output_root: Path,
) -> ArtifactInfo:
    """Build an ArtifactInfo for a composed output.

    The recorded checksum is reused when present; otherwise the file is hashed.
    """
    path = handle.path
    sha256 = handle.sha256 or compute_file_sha256(path)
    size_bytes = handle.size_bytes
    if size_bytes is None:
        size_bytes = path.stat().st_size
    try:
        relative_path = path.relative_to(output_root).as_posix()
    except ValueError:
        relative_path = path.name

    return ArtifactInfo(
        package=handle.package,
        filename=path.name,
        relative_path=relative_path,
        size_bytes=size_bytes,
        sha256=sha256,
        kind=classify_artifact(path.name),
    )


def collect_deliverables(
    handles: Iterable[ArtifactHandle],
    output_root: Path,
) -> list[ArtifactInfo]:
    """Describe every deliverable output, in the given order."""
    artifacts = [describe_artifact(handle, output_root) for handle in handles]
    logger.info("Collected %d deliverable(s) in %s", len(artifacts), output_root)
    return artifacts


def generate_manifest(
    artifacts: list[ArtifactInfo],
    target_config: dict[str, str] | None = None,
    requested: list[str] | None = None,
) -> dict[str, Any]:
    """Generate a deliverables manifest.

    Args:
        artifacts: Deliverable artifacts.
        target_config: Target configuration the packages were built for.
        requested: Package names requested by the invocation.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    now = datetime.now(timezone.utc)

    manifest: dict[str, Any] = {
        "version": MANIFEST_VERSION,
        "generated_at": now.isoformat(),
        "artifacts": [asdict(a) for a in artifacts],
    }

    if target_config:
        manifest["target"] = dict(target_config)
    if requested:
        manifest["requested"] = list(requested)

    manifest["summary"] = {
        "total_artifacts": len(artifacts),
        "total_size_bytes": sum(a.size_bytes for a in artifacts),
        "kinds": sorted({a.kind for a in artifacts if a.kind}),
    }

    return manifest


def write_manifest(manifest: dict[str, Any], output_dir: Path) -> Path:
    """Write the manifest to ``<output_dir>/deliverables.json``.

    Returns:
        Path to the written manifest file.
    """
    output_path = output_dir / DELIVERABLES_FILENAME
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote deliverables manifest to %s", output_path)
    return output_path


__all__ = [
    "DELIVERABLES_FILENAME",
    "classify_artifact",
    "collect_deliverables",
    "describe_artifact",
    "generate_manifest",
    "write_manifest",
]
